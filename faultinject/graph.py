"""Basic blocks and the adjacency-list control flow graph built from them."""

from __future__ import annotations

from dataclasses import dataclass, field

EXIT_NODE = 499
"""Index of the virtual exit node; also the highest node index a graph holds."""


@dataclass
class BasicBlock:
    """A straight-line run of disassembled instructions."""

    instructions: list[str] = field(default_factory=list)


@dataclass
class ControlFlowGraph:
    """Basic blocks indexed by node number, with per-node successor lists.

    Node 0 is conventionally a virtual start node without instructions.
    Successor lists are kept most-recently-added first.
    """

    blocks: list[BasicBlock] = field(default_factory=list)
    _edges: dict[int, list[int]] = field(default_factory=dict, init=False, repr=False)

    @staticmethod
    def _check(where: int) -> None:
        if not 0 <= where <= EXIT_NODE:
            raise IndexError(f"node {where} is outside 0..{EXIT_NODE}")

    def add(self, what: int, where: int) -> None:
        """Record ``what`` as a successor of node ``where``."""
        self._check(where)
        self._edges.setdefault(where, []).insert(0, what)

    def successors(self, where: int) -> list[int]:
        """Return the successors of node ``where``, newest edge first."""
        self._check(where)
        return list(self._edges.get(where, ()))