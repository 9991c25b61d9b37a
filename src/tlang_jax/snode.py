"""Hierarchical data-layout tree (SNode tree).

Containers (``dense``/``pointer``) bind iteration axes with per-axis extents;
leaves (``place``) hold one scalar field each and inherit every axis bound on
their path. The tree is open for declarations until it is sealed once.
"""

from __future__ import annotations

import itertools
import logging
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Sequence

from .dtypes import DataType
from .errors import TlangContractError, TlangLayoutSealedError, TlangProgramError, TlangTypeError
from .expr import GlobalVariableExpression

if TYPE_CHECKING:
    from .program import Program

logger = logging.getLogger(__name__)


class SNodeType(str, Enum):
    root = "root"
    dense = "dense"
    pointer = "pointer"
    place = "place"


@dataclass(frozen=True)
class Index:
    """Iteration axis selector (``Index(0)`` is ``i``, ``Index(1)`` is ``j`` ...)."""

    value: int

    def __post_init__(self) -> None:
        if not isinstance(self.value, int) or isinstance(self.value, bool) or self.value < 0:
            raise TlangTypeError(f"Axis index must be a non-negative int, got {self.value!r}")


def _as_axis(index: "Index | int") -> int:
    if isinstance(index, Index):
        return index.value
    return Index(index).value


def _as_sequence(value) -> tuple:
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


class SNode:
    def __init__(
        self,
        depth: int = 0,
        type: SNodeType = SNodeType.root,
        parent: "SNode | None" = None,
        *,
        program: "Program | None" = None,
    ) -> None:
        self.depth = depth
        self.type = SNodeType(type)
        self.parent = parent
        self.children: list[SNode] = []
        self.indices: tuple[int, ...] = ()
        self.extents: tuple[int, ...] = ()
        # Cumulative extent of every axis bound on the path from the root.
        self.axis_extents: dict[int, int] = dict(parent.axis_extents) if parent is not None else {}
        self.dt = DataType.unknown
        self.expr: GlobalVariableExpression | None = None
        if parent is None:
            self._ids = itertools.count()
            self._sealed = False
            self._program_ref = weakref.ref(program) if program is not None else None
        self.id = self.root()._next_id()

    def _next_id(self) -> int:
        return next(self._ids)

    @property
    def num_active_indices(self) -> int:
        return len(self.axis_extents)

    @property
    def physical_indices(self) -> tuple[int, ...]:
        """Bound axes in ascending order; subscripts supply indices in this order."""
        return tuple(sorted(self.axis_extents))

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.axis_extents[axis] for axis in self.physical_indices)

    @property
    def is_leaf(self) -> bool:
        return self.type == SNodeType.place

    @property
    def is_sealed(self) -> bool:
        return self.root()._sealed

    def root(self) -> "SNode":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    def program(self) -> "Program":
        root = self.root()
        program = root._program_ref() if root._program_ref is not None else None
        if program is None:
            raise TlangProgramError("SNode tree is not attached to a live Program")
        return program

    def data_type(self) -> DataType:
        return self.dt

    def ancestors(self) -> list["SNode"]:
        """Nodes from the root down to (and including) this one."""
        chain: list[SNode] = []
        node: SNode | None = self
        while node is not None:
            chain.append(node)
            node = node.parent
        chain.reverse()
        return chain

    def walk(self) -> Iterator["SNode"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def leaves(self) -> list["SNode"]:
        return [node for node in self.walk() if node.is_leaf]

    def _check_mutable(self, what: str) -> None:
        if self.is_sealed:
            raise TlangLayoutSealedError(f"Cannot {what} under {self.path()}: layout is sealed")
        if self.is_leaf:
            raise TlangContractError(f"Cannot {what} under leaf {self.path()}")

    def _child_container(self, type: SNodeType, indices: Sequence, extents: Sequence[int]) -> "SNode":
        axes = tuple(_as_axis(index) for index in indices)
        extents = tuple(extents)
        if len(axes) != len(extents):
            raise TlangContractError(f"{type.value} got {len(axes)} axes but {len(extents)} extents")
        if len(set(axes)) != len(axes):
            raise TlangContractError(f"{type.value} binds an axis more than once: {axes}")
        for extent in extents:
            if not isinstance(extent, int) or isinstance(extent, bool) or extent <= 0:
                raise TlangContractError(f"{type.value} extents must be positive ints, got {extents}")
        child = SNode(self.depth + 1, type, parent=self)
        child.indices = axes
        child.extents = extents
        for axis, extent in zip(axes, extents):
            child.axis_extents[axis] = child.axis_extents.get(axis, 1) * extent
        self.children.append(child)
        logger.debug("declared %s", child.path())
        return child

    def dense(self, indices: "Sequence[Index | int] | Index | int", extents: "Sequence[int] | int") -> "SNode":
        """Dense child: every element of the ``extents`` box is pre-allocated."""
        self._check_mutable("declare dense")
        return self._child_container(SNodeType.dense, _as_sequence(indices), _as_sequence(extents))

    def pointer(
        self,
        indices: "Sequence[Index | int] | Index | int" = (),
        extents: "Sequence[int] | int" = (),
    ) -> "SNode":
        """Sparse child: cells are materialized the first time they are written.

        Without axes the node is a single indirection over the parent cell.
        """
        self._check_mutable("declare pointer")
        return self._child_container(SNodeType.pointer, _as_sequence(indices), _as_sequence(extents))

    def place(self, *exprs: GlobalVariableExpression) -> "SNode":
        """Attach scalar fields as leaves; returns this container for chaining."""
        self._check_mutable("place")
        if not exprs:
            raise TlangContractError("place needs at least one field")
        for expr in exprs:
            if not isinstance(expr, GlobalVariableExpression):
                raise TlangTypeError(f"place expects a field declared with global_new, got {expr!r}")
            leaf = SNode(self.depth + 1, SNodeType.place, parent=self)
            leaf.dt = expr.dt
            leaf.expr = expr
            expr.bind_snode(leaf)
            self.children.append(leaf)
            logger.debug("placed %s", leaf.path())
        return self

    def seal(self) -> None:
        root = self.root()
        if root._sealed:
            raise TlangLayoutSealedError("Layout is already sealed")
        root._sealed = True
        logger.debug("sealed layout with %d nodes", sum(1 for _ in root.walk()))

    def _describe(self) -> str:
        if self.type == SNodeType.root:
            return "root"
        if self.type == SNodeType.place:
            return f"place({self.expr.serialize() if self.expr is not None else '?'})"
        axes = ",".join(f"i{axis}={extent}" for axis, extent in zip(self.indices, self.extents))
        return f"{self.type.value}({axes})"

    def path(self) -> str:
        return ".".join(node._describe() for node in self.ancestors())

    def __repr__(self) -> str:
        return f"SNode#{self.id}<{self.path()}>"


def seal_layout(root: SNode) -> SNode:
    if root.type != SNodeType.root:
        raise TlangContractError(f"Only the root can be sealed, got {root.path()}")
    root.seal()
    return root


def layout(root: SNode, func: Callable[[SNode], object]) -> SNode:
    """Run a layout declaration against ``root`` and seal the tree afterwards."""
    func(root)
    return seal_layout(root)


def pointer_ancestors(leaf: SNode) -> list[SNode]:
    return [node for node in leaf.ancestors() if node.type == SNodeType.pointer]


def cell_divisors(leaf: SNode, container: SNode) -> tuple[int, ...]:
    """Per-axis divisors mapping leaf indices to ``container`` cell indices.

    ``container`` must be an ancestor of ``leaf``; the result follows
    ``container.physical_indices``.
    """
    below: dict[int, int] = {}
    chain = leaf.ancestors()
    start = chain.index(container) + 1
    for node in chain[start:]:
        for axis, extent in zip(node.indices, node.extents):
            below[axis] = below.get(axis, 1) * extent
    return tuple(below.get(axis, 1) for axis in container.physical_indices)


def iter_fields(root: SNode) -> Iterable[GlobalVariableExpression]:
    for leaf in root.leaves():
        if leaf.expr is not None:
            yield leaf.expr
