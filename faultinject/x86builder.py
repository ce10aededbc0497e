"""Control flow graph construction from x86 disassembly listings.

The listing is expected in objdump form (Intel syntax), one instruction
per line::

    address:[ ]*\\topcode bytes[ ]*\\tinstruction\\n

The listing is taken to hold a single function. Its end is the first
``jmp`` or ``ret`` lying past every jump target seen so far.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .graph import EXIT_NODE, BasicBlock, ControlFlowGraph
from .sparcbuilder import _first_operand, _hex_value, _last_offset, _lines

logger = logging.getLogger(__name__)

_WORD = 0xFFFFFFFF
_ADDRESS_LIMIT = 16
_INSTRUCTION_LIMIT = 256
_TARGET_LIMIT = 16
_INDIRECT_REGISTERS = frozenset({"eax", "ebx", "ecx", "edx", "esi", "edi"})
_RETURNS = ("ret", "repz ret")


def _assemble_graph(
    lines: Iterable,
    jump_targets: set[str],
    start: int,
    end: int,
    stop: int,
    inline_tail_calls: bool,
) -> ControlFlowGraph:
    """Split ``lines`` into basic blocks and link them.

    Lines at or past ``stop`` end the walk. Jumps outside ``start..end``
    are either rewritten as a call followed by a return
    (``inline_tail_calls``) or simply end the block.
    """
    graph = ControlFlowGraph()
    graph.blocks.append(BasicBlock())  # virtual start node
    current = BasicBlock()
    cut = ret = jmp = False
    prev = 0
    instruction = ""
    block_of_target: dict[str, int] = {}
    pending_edges: list[tuple[int, str]] = []

    for line in lines:
        if line.offset >= stop:
            logger.debug("stopped parsing (again) at offset %x", line.offset)
            break
        address, colon, _ = line.head.partition(":")
        if not colon or len(address) >= _ADDRESS_LIMIT or line.instruction is None:
            continue

        if cut or ret or address in jump_targets:
            if ret:
                graph.add(EXIT_NODE, prev + 1)
            if not jmp:
                graph.add(prev + 1, prev)
            prev += 1
            graph.blocks.append(current)
            current = BasicBlock()
            if address in jump_targets:
                block_of_target.setdefault(address, prev + 1)
            jmp = ret or (cut and instruction.startswith("jmp"))
            cut = ret = False

        instruction = line.instruction
        if instruction.startswith("j"):
            operand, target = _first_operand(instruction)
            if target in _INDIRECT_REGISTERS:
                pass  # indirect jump: target unknown
            elif not start <= _hex_value(target) <= end:
                if inline_tail_calls:
                    # tail call: rewrite as call followed by return
                    current.instructions.append(f"call   {operand}")
                    instruction = "ret"
                    ret = True
                else:
                    cut = True
            else:
                pending_edges.append((prev + 1, target))
                cut = True
        elif instruction.startswith(_RETURNS):
            ret = True
        current.instructions.append(instruction)

    if ret:
        graph.add(EXIT_NODE, prev + 1)
    if not jmp:
        graph.add(prev + 1, prev)
    graph.blocks.append(current)

    for source, target in pending_edges:
        if target in block_of_target:
            graph.add(block_of_target[target], source)
    return graph


def _scan_function(lines: list, end: int) -> tuple[int, int, set[str]]:
    """Find the start address, the stop offset and the jump targets."""
    start = 0
    limit = 0
    targets: set[str] = set()
    for line in lines:
        if not start:
            start = line.offset
            logger.debug("last off: %x %x", start, end)
        instruction = line.instruction
        if instruction is None:
            continue
        if len(instruction) >= _INSTRUCTION_LIMIT:
            logger.warning("what an instruction: %s", instruction)
            continue
        if instruction.startswith("j"):
            _, target = _first_operand(instruction)
            if len(target) >= _TARGET_LIMIT:
                logger.warning("what a jump target: %s", instruction)
            else:
                jump = _hex_value(target)
                if start <= jump <= end:
                    limit = max(limit, jump)
                    targets.add(target)
                elif not instruction.startswith("jmp"):
                    logger.warning(
                        "tail call detected in non-jmp instruction (%s). "
                        "Is this the entire function?",
                        instruction,
                    )
        if instruction.startswith(("jmp",) + _RETURNS) and line.offset >= limit:
            logger.debug("stopped parsing at offset %x", line.offset)
            limit = line.offset + 1
            break
    if not limit:
        logger.warning(
            "no jump or ret instructions encountered. Is this the entire function?"
        )
        limit = _WORD
    return start, limit, targets


def build_function_graph(text: str) -> ControlFlowGraph:
    """Build the control flow graph of the single x86 function listed in ``text``."""
    lines = list(_lines(text))
    end = _last_offset(text)
    start, limit, targets = _scan_function(lines, end)
    return _assemble_graph(lines, targets, start, end, limit, inline_tail_calls=True)