import pytest

from faultinject.graph import EXIT_NODE, BasicBlock, ControlFlowGraph


def test_new_graph_has_no_successors():
    graph = ControlFlowGraph()
    assert graph.successors(0) == []
    assert graph.blocks == []


def test_successors_are_newest_first():
    graph = ControlFlowGraph()
    graph.add(1, 0)
    graph.add(2, 0)
    graph.add(EXIT_NODE, 0)
    assert graph.successors(0) == [EXIT_NODE, 2, 1]


def test_edges_are_kept_per_node():
    graph = ControlFlowGraph()
    graph.add(2, 1)
    graph.add(3, 2)
    assert graph.successors(1) == [2]
    assert graph.successors(2) == [3]
    assert graph.successors(3) == []


def test_exit_node_may_hold_edges():
    graph = ControlFlowGraph()
    graph.add(4, EXIT_NODE)
    assert graph.successors(EXIT_NODE) == [4]


def test_exit_node_is_499():
    graph = ControlFlowGraph()
    graph.add(7, 499)
    assert graph.successors(EXIT_NODE) == [7]
    with pytest.raises(IndexError):
        graph.add(7, 500)


def test_returned_list_is_a_copy():
    graph = ControlFlowGraph()
    graph.add(1, 0)
    graph.successors(0).append(7)
    assert graph.successors(0) == [1]


@pytest.mark.parametrize("where", [-1, EXIT_NODE + 1])
def test_add_out_of_range_raises(where):
    graph = ControlFlowGraph()
    with pytest.raises(IndexError):
        graph.add(1, where)


def test_successors_out_of_range_raises():
    with pytest.raises(IndexError):
        ControlFlowGraph().successors(EXIT_NODE + 1)


def test_basic_blocks_do_not_share_instructions():
    first = BasicBlock()
    second = BasicBlock()
    first.instructions.append("nop")
    assert second.instructions == []
    graph = ControlFlowGraph([first, second])
    assert graph.blocks[0].instructions == ["nop"]