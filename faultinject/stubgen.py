"""Rendering of the interception stub source from an XML fault plan.

A plan holds ``<trigger>`` elements (each with an ``id``, a ``class`` and
optional ``<args>``) and ``<function>`` elements that name the intercepted
function, the value to return, and the triggers (``<triggerx ref=...>``)
that must all fire for the fault to be injected.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Iterable, Sequence

_EXAMINE_ARGS_EMPTY = (
    "char **examine_args_string[] = {};\n"
    "int examine_args_string_lastindex[] = {};\n"
    "int *examine_args_int[] = {};\n"
    "int examine_args_int_lastindex[] = {};\n"
)


@dataclass(frozen=True)
class StubSource:
    """The generated stub source and the symbols it exports."""

    source: str
    symbols: tuple[str, ...] = ()

    @property
    def symbols_text(self) -> str:
        """The exported symbol list, one symbol per line."""
        return "".join(f"{symbol}\n" for symbol in self.symbols)


def _escape_text(text: str) -> str:
    # Line breaks are escaped so the markup fits in one string literal.
    return text.replace("\r", "\\\r").replace("\n", "\\\n")


def _attributes(element: ET.Element) -> str:
    return " ".join(f' {name}=\\"{value}\\"' for name, value in element.attrib.items())


def _element(element: ET.Element) -> str:
    parts = [f"<{element.tag}{_attributes(element)}>", _escape_text(element.text or "")]
    for child in element:
        parts.append(_element(child))
        parts.append(_escape_text(child.tail or ""))
    parts.append(f"</{element.tag}>")
    return "".join(parts)


def _trigger_args(trigger: ET.Element) -> str:
    """Serialise the ``<args>`` child and every sibling that follows it."""
    children = list(trigger)
    for index, child in enumerate(children):
        if child.tag == "args":
            return "".join(
                _element(node) + _escape_text(node.tail or "") for node in children[index:]
            )
    return ""


def _trigger_lines(triggers: Iterable[ET.Element]) -> Iterable[str]:
    for trigger in triggers:
        trigger_id = trigger.get("id")
        trigger_class = trigger.get("class")
        if trigger_id is None or trigger_class is None:
            continue
        yield (
            f'struct TriggerDesc trigger_{trigger_id} = {{ "{trigger_id}", '
            f'"{trigger_class}", NULL, "{_trigger_args(trigger)}" }};\n'
        )


def _trigger_list(function: ET.Element, list_id: int) -> str:
    refs = "".join(
        f"&trigger_{child.get('ref')}, "
        for child in function
        if child.tag == "triggerx" and child.get("ref") is not None
    )
    return f"TriggerDesc* triggerList_{list_id}[] = {{ {refs}NULL }};\n"


def _function_entry(function: ET.Element, list_id: int) -> str | None:
    name = function.get("name")
    retval = function.get("retval")
    if name is None or retval is None:
        return None
    errno_value = function.get("errno", "0")
    call_original = function.get("calloriginal", "0")
    argc = function.get("argc", "0")
    return (
        f'\t{{ "{name}", {retval}, {errno_value}, {call_original}, {argc}, '
        f"triggerList_{list_id} }},\n"
    )


def _function_tables(functions: Sequence[ET.Element]) -> Iterable[str]:
    used: set[str] = set()
    next_id = 1
    for position, function in enumerate(functions):
        name = function.get("name")
        if name is None or name in used:
            continue
        used.add(name)
        group = [function] + [
            other for other in functions[position + 1:] if other.get("name") == name
        ]
        ids = range(next_id, next_id + len(group))
        next_id += len(group)
        for member, list_id in zip(group, ids):
            yield _trigger_list(member, list_id)
        yield f"struct fninfov2 function_info_{name}[] = {{\n"
        for member, list_id in zip(group, ids):
            entry = _function_entry(member, list_id)
            if entry is not None:
                yield entry
        yield '\t{ "", 0, 0, 0, 0, NULL }\n};\n'


def _stub_macros(functions: Sequence[ET.Element]) -> tuple[list[str], list[str]]:
    lines = ['extern "C" {\n']
    symbols: list[str] = []
    generated: set[str] = set()
    for function in functions:
        name = function.get("name")
        if name is None or name in generated:
            continue
        alias = function.get("alias")
        symbol = alias if alias is not None else name
        lines.append("#ifdef __x86_64__\n")
        lines.append(f"GENERATE_STUB_x64({name}, {symbol})\n")
        lines.append("#else\n")
        lines.append(f"GENERATE_STUBv2({name})\n")
        lines.append("#endif\n\n")
        symbols.append(f"_{symbol}")
        generated.add(name)
    lines.append("}\n")
    return lines, symbols


def render_stub(
    xml_text: str | bytes,
    default_enabled: int = 1,
    examineargs_path: str | None = None,
) -> StubSource:
    """Render the stub source for the fault plan in ``xml_text``.

    Raises ValueError when the plan is not well-formed XML.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise ValueError(f"invalid fault plan: {exc}") from exc

    parts = [
        '#include "inter.h"\n',
        "#include <sys/types.h>\n",
        "STUB_VAR_DECL\n\n",
        f"u_int8_t g_libfi_enabled = {default_enabled};\n",
    ]
    parts.extend(_trigger_lines(root.iter("trigger")))
    functions = list(root.iter("function"))
    parts.extend(_function_tables(functions))
    macros, symbols = _stub_macros(functions)
    parts.extend(macros)
    if examineargs_path is None:
        parts.append(_EXAMINE_ARGS_EMPTY)
    else:
        parts.append(f'#include "{examineargs_path}"\n')
    return StubSource("".join(parts), tuple(symbols))