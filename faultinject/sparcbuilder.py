"""Control flow graph construction from SPARC disassembly listings.

The listing is expected in objdump form, one instruction per line::

    address:[ ]*\\topcode bytes[ ]*\\tinstruction\\n

Branches and calls on SPARC have a delay slot; the instruction after a
branch is placed before the branch in the resulting basic block.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator

from .graph import EXIT_NODE, BasicBlock, ControlFlowGraph

logger = logging.getLogger(__name__)

BRANCH_MNEMONICS = (
    "b", "ba", "bn", "bu", "bg", "bug", "bl", "bul", "blg", "bne", "be", "bue",
    "bge", "buge", "ble", "bule", "bo", "bcc", "bleu", "brz", "brlez", "brlz",
    "brgez", "brnz", "brgz", "bcs", "bpos", "bneg", "bvc", "bvs", "bpa", "bpn",
    "bpne", "bpe", "bpg", "bple", "bpge", "bpl", "bpgu", "bpleu", "bpcc", "bpcs",
    "bppos", "bpneg", "bpvc", "bpvs",
)

_HEX = re.compile(r"\s*(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_WORD = 0xFFFFFFFF
_ULONG_MAX = 2**64 - 1
_ADDRESS_LIMIT = 16
_INSTRUCTION_LIMIT = 256
_TARGET_LIMIT = 16


@dataclass(frozen=True)
class _Line:
    offset: int
    head: str
    instruction: str | None


def _hex_value(text: str) -> int:
    """Leading hexadecimal number of ``text`` as a 32-bit value, 0 if none."""
    match = _HEX.match(text)
    if not match:
        return 0
    return min(int(match.group(1), 16), _ULONG_MAX) & _WORD


def _lines(text: str) -> Iterator[_Line]:
    # Only newline-terminated lines are considered.
    for raw in text.split("\n")[:-1]:
        stripped = raw.lstrip(" ")
        parts = stripped.split("\t", 2)
        instruction = parts[2] if len(parts) == 3 else None
        yield _Line(_hex_value(stripped), parts[0], instruction)


def _last_offset(text: str) -> int:
    best = pending = 0
    for line in text.split("\n"):
        pending = max(pending, _hex_value(line))
        if "\t" in line:
            best = pending
    return best


def _first_operand(instruction: str) -> tuple[str, str]:
    """Return the text from the first operand onwards, and that operand."""
    space = instruction.find(" ", 1)
    if space < 0:
        return "", ""
    rest = instruction[space:].lstrip(" ")
    return rest, rest.split(" ", 1)[0]


def is_branch_instruction(instruction: str) -> bool:
    """Tell whether ``instruction`` is a SPARC branch (mnemonic then space or comma)."""
    return any(
        instruction.startswith(mnemonic)
        and instruction[len(mnemonic):len(mnemonic) + 1] in (" ", ",")
        for mnemonic in BRANCH_MNEMONICS
    )


def _scan_jump_targets(lines: list[_Line], end: int) -> tuple[int, int, set[str]]:
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
        if is_branch_instruction(instruction) or instruction.startswith("call"):
            _, target = _first_operand(instruction)
            if len(target) >= _TARGET_LIMIT:
                logger.warning("what a jump target: %s !", instruction)
            elif not target.startswith("%"):
                jump = _hex_value(target)
                if start <= jump <= end:
                    limit = max(limit, jump)
                    targets.add(target)
                elif instruction != "ba" and not instruction.startswith("call"):
                    logger.warning(
                        "tail call detected in non-ba instruction (%s). "
                        "Is this the entire function?",
                        instruction,
                    )
        if instruction.startswith("ret") and line.offset >= limit:
            logger.debug("stopped parsing at offset %x", line.offset)
            # the instruction in the delay slot after the return is kept too
            limit = line.offset + 5
            break
    if not limit:
        logger.warning(
            "no jump or ret instructions encountered. Is this the entire function?"
        )
        limit = _WORD
    return start, limit, targets


def build_sparc_graph(text: str) -> ControlFlowGraph:
    """Build the control flow graph of the single function listed in ``text``."""
    lines = list(_lines(text))
    end = _last_offset(text)
    start, limit, jump_targets = _scan_jump_targets(lines, end)

    graph = ControlFlowGraph()
    graph.blocks.append(BasicBlock())  # virtual start node
    current = BasicBlock()
    cut = ret = jmp = delay_slot = False
    prev = 0
    instruction = ""
    branch_instruction = ""
    block_of_target: dict[str, int] = {}
    pending_edges: list[tuple[int, str]] = []

    for line in lines:
        address, colon, _ = line.head.partition(":")
        if not colon:
            continue
        if line.offset >= limit:
            logger.debug("stopped parsing (again) at offset %x", line.offset)
            break
        if len(address) >= _ADDRESS_LIMIT or line.instruction is None:
            continue

        ignore_current = False
        if cut or ret or address in jump_targets:
            if delay_slot:
                ignore_current = True
                instruction = line.instruction
                current.instructions.extend([instruction, branch_instruction])
                delay_slot = False
            if ret:
                graph.add(EXIT_NODE, prev + 1)
            if not jmp:
                graph.add(prev + 1, prev)
            prev += 1
            graph.blocks.append(current)
            current = BasicBlock()
            if address in jump_targets:
                block_of_target.setdefault(address, prev + 1)
            jmp = ret or (cut and instruction.startswith("ba"))
            cut = ret = False

        if ignore_current:
            continue

        instruction = line.instruction
        delay_slot = True
        if is_branch_instruction(instruction):
            operand, target = _first_operand(instruction)
            if target.startswith("%"):
                pass  # indirect branch: target unknown
            elif not start <= _hex_value(target) <= end:
                # tail call: rewrite as call followed by return
                current.instructions.append(f"call   {operand}")
                instruction = "ret"
                ret = True
            else:
                pending_edges.append((prev + 1, target))
                cut = True
        elif instruction.startswith("call"):
            operand, target = _first_operand(instruction)
            if start < _hex_value(target) <= end:
                # a call inside the function is really a jump
                pending_edges.append((prev + 1, target))
                cut = True
                instruction = f"ba   {operand}"
        elif instruction.startswith("ret"):
            ret = True
        else:
            delay_slot = False

        if delay_slot:
            branch_instruction = instruction
        else:
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