import logging

import pytest

from faultinject.graph import EXIT_NODE
from faultinject.sparcbuilder import build_sparc_graph, is_branch_instruction


def _listing(*rows):
    return "".join(f"   {address}:\t01 00 00 00 \t{instruction}\n" for address, instruction in rows)


def _block_with(graph, instruction):
    matches = [i for i, block in enumerate(graph.blocks) if instruction in block.instructions]
    assert len(matches) == 1
    return matches[0]


@pytest.mark.parametrize(
    "instruction, expected",
    [
        ("ba  10020 <f+0x20>", True),
        ("bne,a  1000c <f+0xc>", True),
        ("brz  %o0, 10040", True),
        ("b  10000", True),
        ("ba", False),
        ("bset  1, %o0", False),
        ("call  10000 <g>", False),
        ("save  %sp, -104, %sp", False),
    ],
)
def test_is_branch_instruction(instruction, expected):
    assert is_branch_instruction(instruction) is expected


def test_empty_listing_warns_and_links_start(caplog):
    with caplog.at_level(logging.WARNING, logger="faultinject.sparcbuilder"):
        graph = build_sparc_graph("")
    assert "no jump or ret instructions" in caplog.text
    assert len(graph.blocks) == 2
    assert graph.successors(0) == [1]
    assert graph.blocks[1].instructions == []


BRANCHING = _listing(
    ("10000", "cmp  %o0, 0"),
    ("10004", "bne  10010 <f+0x10>"),
    ("10008", "nop"),
    ("1000c", "mov  1, %o0"),
    ("10010", "retl"),
    ("10014", "mov  %o0, %o1"),
    ("10018", "clr  %o2"),
)


def test_delay_slot_precedes_branch():
    graph = build_sparc_graph(BRANCHING)
    branch = _block_with(graph, "bne  10010 <f+0x10>")
    assert graph.blocks[branch].instructions == ["cmp  %o0, 0", "nop", "bne  10010 <f+0x10>"]
    assert graph.successors(0) == [branch]


def test_branch_links_to_target_block_and_return_to_exit():
    graph = build_sparc_graph(BRANCHING)
    branch = _block_with(graph, "bne  10010 <f+0x10>")
    fallthrough = _block_with(graph, "mov  1, %o0")
    returning = _block_with(graph, "retl")
    assert graph.blocks[returning].instructions == ["mov  %o0, %o1", "retl"]
    assert returning in graph.successors(branch)
    assert fallthrough in graph.successors(branch)
    assert graph.successors(fallthrough) == [returning]
    assert graph.successors(returning) == [EXIT_NODE]


def test_parsing_stops_after_return_delay_slot():
    graph = build_sparc_graph(BRANCHING)
    everything = [ins for block in graph.blocks for ins in block.instructions]
    assert "clr  %o2" not in everything
    assert graph.blocks[-1].instructions == []


def test_tail_branch_becomes_call_and_return(caplog):
    text = _listing(
        ("10000", "cmp  %o0, 0"),
        ("10004", "ba  20000 <other>"),
        ("10008", "nop"),
    )
    with caplog.at_level(logging.WARNING, logger="faultinject.sparcbuilder"):
        graph = build_sparc_graph(text)
    assert "tail call detected" in caplog.text
    block = _block_with(graph, "call   20000 <other>")
    assert graph.blocks[block].instructions == [
        "cmp  %o0, 0",
        "call   20000 <other>",
        "nop",
        "ret",
    ]
    assert graph.successors(block) == [EXIT_NODE]


def test_local_call_is_treated_as_jump():
    text = _listing(
        ("10000", "cmp  %o0, 0"),
        ("10004", "call  1000c <f+0xc>"),
        ("10008", "nop"),
        ("1000c", "retl"),
        ("10010", "mov  1, %o0"),
    )
    graph = build_sparc_graph(text)
    caller = _block_with(graph, "ba   1000c <f+0xc>")
    assert graph.blocks[caller].instructions == ["cmp  %o0, 0", "nop", "ba   1000c <f+0xc>"]
    returning = _block_with(graph, "retl")
    assert returning in graph.successors(caller)
    assert graph.successors(returning) == [EXIT_NODE]


def test_plain_instructions_form_one_block():
    text = _listing(
        ("10000", "save  %sp, -104, %sp"),
        ("10004", "mov  1, %o0"),
    )
    graph = build_sparc_graph(text)
    block = _block_with(graph, "mov  1, %o0")
    assert graph.blocks[block].instructions == ["save  %sp, -104, %sp", "mov  1, %o0"]
    assert graph.successors(0) == [block]