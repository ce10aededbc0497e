"""Finding call sites whose return value (or errno) is never checked.

For every call to a function of interest in a disassembled binary, the code
after the call is followed through its control flow graph, tracking where
the returned value (``eax``) and ``errno`` travel. The constants they are
compared with are collected. Call sites that check nothing become entries
of a fault injection plan.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Sequence

from .callsite import build_call_site_graph
from .graph import EXIT_NODE, ControlFlowGraph
from .sparcbuilder import _first_operand, _hex_value

logger = logging.getLogger(__name__)

RETURNED = -667
"""Marker in ``checked_against``: the value is passed on as the caller's result."""

ERRNO_LOCATION = "DWORD PTR [eax]"
DEFAULT_FUNCTIONS = (
    "opendir",
    "getcwd",
    "fdopen",
    "popen",
    "getlogin",
    "cuserid",
    "getspnam",
    "getspent",
)
DEFAULT_RETVAL = "-1"
DEFAULT_ERRNO = "EINVAL"
_READ_LIMIT = 1023


@dataclass
class ReturnChecks:
    """Constants that a call's return value and errno are compared with."""

    checked_against: list[int] = field(default_factory=list)
    errno_checked_against: list[int] = field(default_factory=list)

    @property
    def checks_return(self) -> bool:
        """True when the return value is checked or passed on."""
        return bool(self.checked_against)


def _mnemonic(instruction: str) -> str:
    space = instruction.find(" ", 1)
    return instruction if space < 0 else instruction[:space]


def _operands(instruction: str, mnemonic: str) -> tuple[str, str]:
    """Destination operand and the text of the source operand."""
    rest = instruction[len(mnemonic):].lstrip(" ")
    comma = rest.find(",", 1)
    if comma < 0:
        return rest, ""
    return rest[:comma], rest[comma + 1:].lstrip(" ")


def _int32(text: str) -> int:
    value = _hex_value(text)
    return value - 2**32 if value >= 2**31 else value


def _constant(operand: str) -> int | None:
    if len(operand) < 3 or operand[0] != "0":
        logger.warning("Comparing to non-const val: %s", operand)
        return None
    return _int32(operand)


def _record(values: list[int], locations: set[str], watched: str, other: str) -> None:
    if watched in locations:
        constant = _constant(other)
        if constant is not None:
            values.append(constant)


def check_return_value(graph: ControlFlowGraph, start: int = 0) -> ReturnChecks:
    """Follow the return value from node ``start`` breadth first through ``graph``."""
    result = ReturnChecks()
    queue: deque[tuple[int, set[str], set[str]]] = deque()
    visited: set[int] = set()
    for successor in graph.successors(start):
        queue.append((successor, {"eax"}, set()))
        visited.add(successor)

    while queue:
        block_id, returned, errno_at = queue.popleft()
        if block_id >= len(graph.blocks):
            continue
        for instruction in graph.blocks[block_id].instructions:
            mnemonic = _mnemonic(instruction)
            if mnemonic == "mov":
                dest, source = _operands(instruction, mnemonic)
                returned.discard(dest)
                if source in returned:
                    returned.add(dest)
                if source in errno_at:
                    errno_at.add(dest)
            elif mnemonic == "lea":
                dest, _ = _operands(instruction, mnemonic)
                returned.discard(dest)
            elif mnemonic == "call":
                returned.discard("eax")
                rest, target = _first_operand(instruction)
                if rest[len(target) + 1:] == "<__errno_location@plt>":
                    errno_at.add(ERRNO_LOCATION)
            elif mnemonic == "ret":
                if "eax" in returned:
                    result.checked_against.append(RETURNED)
            elif mnemonic in ("cmp", "test"):
                dest, source = _operands(instruction, mnemonic)
                source = source.split(" ", 1)[0]
                if mnemonic == "test" and dest == source and dest in returned:
                    result.checked_against.append(0)
                else:
                    _record(result.checked_against, returned, dest, source)
                    _record(result.checked_against, returned, source, dest)
                    _record(result.errno_checked_against, errno_at, dest, source)
                    _record(result.errno_checked_against, errno_at, source, dest)

        for successor in graph.successors(block_id):
            if successor != EXIT_NODE and successor not in visited:
                visited.add(successor)
                queue.append((successor, set(returned), set(errno_at)))
    return result


def source_location(binary: str, address: int) -> tuple[str, int] | None:
    """Source file and line of ``address`` in ``binary``, or None if unknown."""
    try:
        completed = subprocess.run(
            ["addr2line", "-e", str(binary), f"{address:x}"],
            capture_output=True,
            text=True,
        )
    except OSError:
        return None
    output = (completed.stdout or "")[:_READ_LIMIT]
    source, colon, rest = output.partition(":")
    if not colon or not source or source == "??":
        return None
    digits = ""
    for char in rest.lstrip():
        if not char.isdigit():
            break
        digits += char
    return source, int(digits) if digits else 0


def _count_before_colon(prefix: str) -> int:
    digits = prefix[len(prefix.rstrip("0123456789")):]
    before = prefix[: len(prefix) - len(digits)]
    if not digits:
        return 0
    if not before or before[-1].isspace():
        return int(digits)
    if before[-1] == "-":
        return -int(digits)
    if before[-1] == "+":
        return int(digits)
    return 0


def times_executed(source: str, line: int) -> int:
    """How often ``line`` of ``source`` ran, from gcov data; -1 if unknown."""
    directory = os.path.dirname(source) if source.startswith("/") else ""
    try:
        subprocess.run(
            ["gcov", source],
            cwd=directory or None,
            stdout=subprocess.DEVNULL,
        )
    except OSError:
        pass
    try:
        with open(f"{source}.gcov", encoding="utf-8", errors="replace") as report:
            matching = [text for text in report.read().splitlines() if f"{line}:" in text]
    except OSError:
        return -1
    buffer = "\n".join(matching)[:_READ_LIMIT]
    colon = buffer.find(":")
    if colon <= 0:
        return -1
    marker = buffer[colon - 1]
    if marker == "#":
        return 0
    if marker == "-":
        return -1
    return _count_before_colon(buffer[:colon])


def render_plan_entry(
    function: str,
    call_address: int,
    module: str,
    retval: str = DEFAULT_RETVAL,
    errno: str = DEFAULT_ERRNO,
) -> str:
    """Plan markup injecting a fault into ``function`` when called from ``call_address``."""
    address = f"{call_address:x}"
    return (
        f'  <trigger id="{address}" class="CallStackTrigger">\n'
        "    <args>\n"
        "      <frame>\n"
        f"        <module>{module}</module>\n"
        f"        <offset>{address}</offset>\n"
        "      </frame>\n"
        "    </args>\n"
        "  </trigger>\n"
        f'  <function name="{function}" retval="{retval}" errno="{errno}">\n'
        f'    <triggerx ref="{address}" />\n'
        "  </function>\n"
    )


def _err(message: str, end: str = "\n") -> None:
    print(message, end=end, file=sys.stderr)


def _describe_location(binary: str, address: int) -> tuple[str, int]:
    location = source_location(binary, address)
    if location is None:
        return "no line number information", -1
    source, line = location
    executed = times_executed(source, line)
    if executed == -1:
        detail = " - failed to retrieve line execution count. gcov file missing?"
    else:
        detail = f" - exec {executed} times"
    return f"{source}:{line}{detail}", executed


def _disassemble(binary: str) -> str:
    try:
        completed = subprocess.run(
            ["objdump", "-d", "-M", "intel", binary],
            capture_output=True,
            text=True,
        )
    except OSError:
        return ""
    return completed.stdout or ""


def main(argv: Sequence[str] | None = None) -> int:
    """Print a fault plan for the unchecked calls of a binary's functions."""
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "callcheck"
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        _err(f"{prog} <target executable> <function>|- [default retval] [default errno]")
        return 1

    binary, target = args[0], args[1]
    functions = [target] if not target.startswith("-") else list(DEFAULT_FUNCTIONS)
    retval = args[2] if len(args) > 2 else DEFAULT_RETVAL
    errno = args[3] if len(args) > 3 else DEFAULT_ERRNO

    listing = _disassemble(binary)
    if not listing:
        _err(f"Invalid or non-existing file: {binary}")
        return -1

    print("<plan>")
    for function in functions:
        _err(f"Analyzing calls to function {function}")
        ordinal = 1
        while True:
            site = build_call_site_graph(listing, function, ordinal)
            if site is None:
                _err(f"function {function} referenced {ordinal - 1} times\n")
                break
            ordinal += 1
            checks = check_return_value(site.graph, 0)
            where, executed = _describe_location(binary, site.address)
            if checks.checks_return:
                values = "".join(
                    "[ret] " if value == RETURNED else f"{value} "
                    for value in checks.checked_against
                )
                _err(
                    f"Call at address {site.address:x} ({where}) "
                    f"checks return value against: {values}"
                )
                if checks.errno_checked_against:
                    errnos = "".join(f"{value} " for value in checks.errno_checked_against)
                    _err(f"errno is checked against: {errnos}")
            else:
                _err(f"call at address {site.address:x} ({where}) does not check the return value")
                if executed:
                    print(
                        render_plan_entry(function, site.address, binary, retval, errno),
                        end="",
                    )
    print("</plan>")
    return 0