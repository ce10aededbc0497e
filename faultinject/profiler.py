"""Tracing where a function's return value comes from, and spotting side effects.

A function's control flow graph is walked backwards from its exit node,
following the register or memory location that holds the return value
until a constant is found or the value is traced to another call.
The side-effect analyses walk forwards from the entry and look for
stores through pointers derived from the function's arguments or from
the base register used for global variables.
"""

from __future__ import annotations

import logging
import sys
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Sequence, TextIO

from .callcheck import _int32, _mnemonic
from .graph import EXIT_NODE, ControlFlowGraph
from .x86builder import _INDIRECT_REGISTERS, build_function_graph

logger = logging.getLogger(__name__)

MAGIC_FNPTR_CALL = "call 00000000 <function_pointer_call>"
"""Written to the reference file in place of a call through a pointer."""

ARGUMENT_SLOTS = (
    "[ebp+0x8]",
    "[ebp+0xc]",
    "[ebp+0x10]",
    "[ebp+0x14]",
    "[ebp+0x18]",
    "[ebp+0x1c]",
    "[ebp+0x20]",
)
"""Stack slots of the first seven arguments, watched by the argument analysis."""


@dataclass(frozen=True, order=True)
class PathElement:
    """A block and the location that holds the traced value on entry to it.

    Elements compare by block and location only; the parent fields record
    the element the walk came from.
    """

    bb_id: int
    target: str
    parent_id: int | None = field(default=None, compare=False)
    parent_target: str | None = field(default=None, compare=False)


@dataclass
class SideEffectElement:
    """A block and the set of locations known to hold watched values."""

    bb_id: int
    kind: int = 0  # 0: global variable, 1: argument
    targets: set[str] = field(default_factory=set)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SideEffectElement):
            return NotImplemented
        if self.bb_id != other.bb_id:
            return self.bb_id < other.bb_id
        if len(self.targets) != len(other.targets):
            return len(self.targets) < len(other.targets)
        return sorted(self.targets) < sorted(other.targets)

    def __str__(self) -> str:
        lines = [f"id {self.bb_id}\n", f"size {len(self.targets)}\n"]
        lines.extend(f"{target} \n" for target in sorted(self.targets))
        return "".join(lines)


def reverse_graph(graph: ControlFlowGraph) -> ControlFlowGraph:
    """Return a graph over the same blocks with every edge turned around.

    Nodes are visited from 0 upwards and the first node without
    successors ends the scan.
    """
    reversed_graph = ControlFlowGraph(blocks=list(graph.blocks))
    for node in range(EXIT_NODE + 1):
        successors = graph.successors(node)
        if not successors:
            break
        for successor in successors:
            reversed_graph.add(node, successor)
    return reversed_graph


def _instructions(graph: ControlFlowGraph, bb_id: int) -> list[str]:
    if 0 <= bb_id < len(graph.blocks):
        return graph.blocks[bb_id].instructions
    return []


def _skip_spaces(text: str, index: int) -> int:
    """First index after ``index`` that does not hold a space."""
    index += 1
    while index < len(text) and text[index] == " ":
        index += 1
    return index


def _x86_operands(instruction: str, search_from: int) -> tuple[str, str] | None:
    """Destination operand and the raw text after its comma."""
    start = _skip_spaces(instruction, search_from)
    comma = instruction.find(",", start + 1)
    if comma < 0:
        return None
    return instruction[start:comma], instruction[comma + 1:]


def _is_register_x86(target: str) -> bool:
    return target[:1] not in ("D", "[")


def _is_indirect_call(instruction: str) -> bool:
    return "DWORD PTR" in instruction or instruction in _INDIRECT_REGISTERS


@contextmanager
def _reference_file(path: str | Path | None) -> Iterator[TextIO | None]:
    if path is None:
        yield None
        return
    try:
        handle = open(path, "w", encoding="utf-8")
    except OSError:
        logger.error("Unable to open %s", path)
        yield None
        return
    with handle:
        yield handle


def _reconstruct(
    element: PathElement,
    visited: dict[PathElement, PathElement],
    target_blocks: set[int],
) -> None:
    current: PathElement | None = element
    while current is not None:
        target_blocks.add(current.bb_id)
        if current.parent_id is None or current.parent_target is None:
            break
        current = visited.get(PathElement(current.parent_id, current.parent_target))


def walk_return_values_x86(
    graph: ControlFlowGraph,
    start: int,
    target_blocks: set[int] | None = None,
    reference_path: str | Path | None = None,
) -> list[str]:
    """Trace the x86 return value (``eax``) backwards from node ``start``.

    ``graph`` is a reversed control flow graph. Returns the report lines.
    Blocks on the path to every constant found are added to
    ``target_blocks``. With ``reference_path``, the calls the value is
    traced to are written to that file instead of being reported.
    """
    if target_blocks is None:
        target_blocks = set()
    report: list[str] = []
    with _reference_file(reference_path) as reference:
        visited: dict[PathElement, PathElement] = {}
        queue: deque[PathElement] = deque()
        for successor in graph.successors(start):
            element = PathElement(successor, "eax")
            queue.append(element)
            visited.setdefault(element, element)

        while queue:
            element = queue.popleft()
            target = element.target
            ends_in_call = False
            for instruction in reversed(_instructions(graph, element.bb_id)):
                mnemonic = _mnemonic(instruction)
                if mnemonic == "mov":
                    operands = _x86_operands(instruction, 3)
                    if operands and operands[0] == target:
                        target = operands[1]
                elif _is_register_x86(target):
                    if mnemonic == "or":
                        operands = _x86_operands(instruction, 3)
                        if operands and operands[0] == target and operands[1] == "0xffffffff":
                            target = "0xffffffff"
                    elif mnemonic == "xor":
                        operands = _x86_operands(instruction, 3)
                        if operands and operands[0] == target and operands[1] == target:
                            target = "0x0"
                    elif target == "eax":
                        if mnemonic == "call":
                            if reference is not None:
                                line = MAGIC_FNPTR_CALL if _is_indirect_call(instruction) else instruction
                                reference.write(f"{line}\n")
                            else:
                                report.append(f"new return value: {instruction}")
                            ends_in_call = True
                            break
                        if mnemonic == "int" and "0x80" in instruction:
                            report.append(f"new return value: {instruction}")
                            ends_in_call = True
                            break

            if len(target) > 2 and target.startswith("0x"):
                report.append(f"new return value: {target} {_int32(target)}")
                _reconstruct(element, visited, target_blocks)
            elif not ends_in_call:
                for successor in graph.successors(element.bb_id):
                    following = PathElement(successor, target, element.bb_id, element.target)
                    if following not in visited:
                        visited[following] = following
                        queue.append(following)
    return report


def _sparc_mov(instruction: str) -> tuple[str, str] | None:
    """Source and destination of ``mov src, dst``."""
    start = _skip_spaces(instruction, 3)
    comma = instruction.find(",", start + 1)
    if comma < 0:
        return None
    begin = end = comma + 2
    while end < len(instruction) and instruction[end] not in (" ", "\t"):
        end += 1
    return instruction[start:comma], instruction[begin:end]


def _three_operands(instruction: str, search_from: int) -> tuple[str, str, str] | None:
    start = _skip_spaces(instruction, search_from)
    first_comma = instruction.find(",", start + 1)
    if first_comma < 0:
        return None
    second_start = first_comma + 2
    second_comma = instruction.find(",", second_start + 1)
    if second_comma < 0:
        return None
    return (
        instruction[start:first_comma],
        instruction[second_start:second_comma],
        instruction[second_comma + 2:],
    )


def _through_g0(target: str, first: str, second: str) -> str:
    """Value of ``first | second`` when one of them is the zero register."""
    if first == "%g0":
        target = second
    elif second == "%g0":
        target = first
    if first == "%g0" and second == "%g0":
        target = "0x0"
    return target


def walk_return_values_sparc(
    graph: ControlFlowGraph,
    start: int,
    reference_path: str | Path | None = None,
) -> list[str]:
    """Trace the SPARC return value (``%o0``) backwards from node ``start``.

    ``graph`` is a reversed control flow graph. Returns the report lines;
    with ``reference_path`` the calls the value comes from go to that file.
    """
    report: list[str] = []
    with _reference_file(reference_path) as reference:
        visited: set[PathElement] = set()
        queue: deque[PathElement] = deque(
            PathElement(successor, "%o0") for successor in graph.successors(start)
        )
        while queue:
            element = queue.popleft()
            target = element.target
            ends_in_call = False
            for instruction in reversed(_instructions(graph, element.bb_id)):
                mnemonic = _mnemonic(instruction)
                if mnemonic == "mov":
                    moved = _sparc_mov(instruction)
                    if moved and target == moved[1]:
                        target = moved[0]
                elif target.startswith("%"):
                    if mnemonic == "orcc":
                        operands = _three_operands(instruction, 4)
                        if operands and target == operands[2]:
                            target = _through_g0(target, operands[0], operands[1])
                    elif mnemonic == "restore":
                        if target == "%o0":
                            target = "%i0"
                        if len(instruction) > 8:
                            operands = _three_operands(instruction, 7)
                            if operands and target == "%i0" and operands[2] == "%o0":
                                target = _through_g0(target, operands[0], operands[1])
                    elif mnemonic == "clr":
                        begin = _skip_spaces(instruction, 4)
                        comma = instruction.find(",", begin + 1)
                        operand = instruction[begin:] if comma < 0 else instruction[begin:comma]
                        if target == operand:
                            target = "0"
                    elif target == "%o0" and mnemonic == "call":
                        if reference is not None:
                            reference.write(f"{instruction}\n")
                        else:
                            report.append(f"new return value: {instruction}")
                        ends_in_call = True
                        break

            if target and target[0] not in ("%", "["):
                report.append(f"new return value: {target} {target}")
            elif not ends_in_call:
                for successor in graph.successors(element.bb_id):
                    following = PathElement(successor, target)
                    if following not in visited:
                        visited.add(following)
                        queue.append(following)
    return report


def _is_included(seen: set[str], targets: set[str]) -> bool:
    """Merge ``targets`` into ``seen``; True when nothing new was added."""
    added = targets - seen
    seen |= targets
    return not added


def _apply_side_effect_instruction(
    instruction: str, targets: set[str], bb_id: int, interesting: set[int]
) -> None:
    mnemonic = _mnemonic(instruction)
    if mnemonic in ("mov", "movzx"):
        start = _skip_spaces(instruction, 3)
        marker = instruction[start:start + 1]
        if marker == "D":  # DWORD PTR
            start += 10
        elif marker == "B":  # BYTE PTR
            start += 9
        comma = instruction.find(",", start + 1)
        if comma < 0:
            return
        destination = instruction[start:comma]
        if instruction[comma + 1:comma + 2] == "D":
            comma += 10
        source = instruction[comma + 1:]
        if source in targets:
            targets.add(destination)
        elif destination[:2] == "[e":
            if destination[1:4] in targets:
                interesting.add(bb_id)
        else:
            targets.discard(destination)
    elif mnemonic in ("xor", "lea", "or"):
        operands = _x86_operands(instruction, 2 if mnemonic == "or" else 3)
        if operands:
            targets.discard(operands[0])


def _walk_side_effects(
    graph: ControlFlowGraph,
    seeds: Iterable[SideEffectElement],
    target_blocks: Iterable[int],
) -> bool:
    queue: deque[SideEffectElement] = deque(seeds)
    visited: defaultdict[int, set[str]] = defaultdict(set)
    interesting: set[int] = set()
    while queue:
        element = queue.popleft()
        if element.bb_id == EXIT_NODE or not 0 <= element.bb_id < len(graph.blocks):
            continue
        targets = set(element.targets)
        for instruction in _instructions(graph, element.bb_id):
            _apply_side_effect_instruction(instruction, targets, element.bb_id, interesting)
        for successor in graph.successors(element.bb_id):
            seen = visited[successor]
            if not _is_included(seen, targets):
                targets = set(seen)
                queue.append(SideEffectElement(successor, element.kind, set(targets)))

    wanted = set(target_blocks)
    for bb_id in sorted(interesting):
        logger.info("%d", bb_id)
        if bb_id in wanted:
            return True
    return False


def _global_base_registers(graph: ControlFlowGraph) -> set[str]:
    """Registers set up as the base for global variable access in block 1."""
    registers: set[str] = set()
    if len(graph.blocks) <= 1:
        return registers
    just_called = False
    for instruction in graph.blocks[1].instructions:
        mnemonic = _mnemonic(instruction)
        if mnemonic == "call":
            just_called = True
        elif just_called and mnemonic in ("add", "sub"):
            operands = _x86_operands(instruction, 3)
            if operands and operands[0][:1] == "e" and operands[1][:1] == "0":
                registers.add(operands[0])
        else:
            just_called = False
    return registers


def side_effects_globals(
    graph: ControlFlowGraph, start: int, target_blocks: Iterable[int]
) -> bool:
    """Tell whether a store through the global base register lies in ``target_blocks``.

    Only the base registers are detected; no block is seeded for the walk,
    so the answer is always False.
    """
    _global_base_registers(graph)
    return _walk_side_effects(graph, (), target_blocks)


def side_effects_arguments(
    graph: ControlFlowGraph, start: int, target_blocks: Iterable[int]
) -> bool:
    """Tell whether a store through a pointer argument lies in ``target_blocks``.

    The walk runs forwards from the successors of node ``start``.
    """
    seeds = [
        SideEffectElement(successor, 1, set(ARGUMENT_SLOTS))
        for successor in graph.successors(start)
    ]
    return _walk_side_effects(graph, seeds, target_blocks)


def main(argv: Sequence[str] | None = None) -> int:
    """Report the values an x86 function listing can return."""
    args = list(sys.argv[1:] if argv is None else argv)
    infile = args[0] if args else "x.asm"
    reference_path = args[1] if len(args) > 1 else None
    try:
        content = Path(infile).read_text(encoding="utf-8", errors="replace")
    except OSError:
        print(f"Invalid or non-existing file: {infile}", file=sys.stderr)
        return -1
    graph = build_function_graph(content + "\n")
    for line in walk_return_values_x86(reverse_graph(graph), EXIT_NODE, set(), reference_path):
        print(line)
    return 0