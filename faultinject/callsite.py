"""Control flow graph of the code that follows one call to a given function.

The listing is an objdump disassembly (x86, Intel syntax). The n-th direct
call to the target function is located, and the graph covers the code in
the 400 bytes after that call, which is where its result is usually checked.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .graph import ControlFlowGraph
from .sparcbuilder import _first_operand, _hex_value, _lines
from .x86builder import _INDIRECT_REGISTERS, _assemble_graph

logger = logging.getLogger(__name__)

_WINDOW = 400
_INSTRUCTION_LIMIT = 256
_TARGET_LIMIT = 16


@dataclass(frozen=True)
class CallSite:
    """A call to ``function`` and the graph of the code that follows it."""

    function: str
    ordinal: int
    address: int
    graph: ControlFlowGraph


def _called_function(instruction: str) -> str | None:
    """Name of the function a direct call targets, None for other calls."""
    rest, target = _first_operand(instruction)
    if len(target) >= _TARGET_LIMIT:
        logger.warning("jump target too big in %s", instruction)
        return None
    after = rest[len(target):].lstrip(" ")
    if not after.startswith("<"):
        return None
    return re.split(r"[@>]", after[1:], maxsplit=1)[0]


def build_call_site_graph(text: str, target_fn: str, call_count: int) -> CallSite | None:
    """Locate the ``call_count``-th call to ``target_fn`` (counting from 1).

    Returns None when the listing holds fewer calls to the function.
    """
    if call_count < 1:
        raise ValueError("call_count counts from 1")
    raw_lines = text.split("\n")
    lines = list(_lines(text))

    remaining = call_count
    for index, line in enumerate(lines):
        instruction = line.instruction
        if instruction is None:
            continue
        if len(instruction) >= _INSTRUCTION_LIMIT:
            logger.warning("what a long instruction: %s", instruction)
            continue
        if instruction.startswith("call") and _called_function(instruction) == target_fn:
            remaining -= 1
            if not remaining:
                break
    else:
        return None

    address = lines[index].offset
    following = lines[index + 1:]
    start = _hex_value("\n".join(raw_lines[index + 1:]))
    end = start + _WINDOW

    jump_targets: set[str] = set()
    for line in following:
        if line.offset >= end:
            logger.debug("stopped parsing (again) at offset %x", line.offset)
            break
        instruction = line.instruction
        if instruction is None:
            continue
        if len(instruction) >= _INSTRUCTION_LIMIT:
            logger.warning("what an instruction: %s", instruction)
            continue
        if instruction.startswith("j"):
            _, target = _first_operand(instruction)
            if target not in _INDIRECT_REGISTERS:
                jump_targets.add(target)

    graph = _assemble_graph(following, jump_targets, start, end, end, inline_tail_calls=False)
    return CallSite(target_fn, call_count, address, graph)