"""Frontend statements and the blocks that own them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator

from .dtypes import DataType
from .errors import TlangContractError, TlangLvalueError, TlangTypeError
from .expr import (
    Expression,
    ExprGroup,
    GlobalPtrExpression,
    GlobalVariableExpression,
    IdExpression,
    Identifier,
    SourceLocation,
    as_expression,
    capture_source_location,
    load_if_ptr,
)


class Block:
    """Ordered statements of one scope; each statement belongs to one block."""

    def __init__(self, owner: "Stmt | None" = None, label: str = "body") -> None:
        self.owner = owner
        self.label = label
        self.statements: list[Stmt] = []

    def insert(self, stmt: "Stmt") -> "Stmt":
        if stmt.parent_block is not None:
            raise TlangContractError(f"{type(stmt).__name__} is already owned by another block")
        stmt.parent_block = self
        self.statements.append(stmt)
        return stmt

    def last(self) -> "Stmt | None":
        return self.statements[-1] if self.statements else None

    def __len__(self) -> int:
        return len(self.statements)

    def __iter__(self) -> Iterator["Stmt"]:
        return iter(self.statements)

    def __getitem__(self, index: int) -> "Stmt":
        return self.statements[index]

    def serialize_lines(self, indent: int = 0) -> list[str]:
        lines: list[str] = []
        for stmt in self.statements:
            lines.extend(stmt.serialize_lines(indent))
        return lines

    def serialize(self) -> str:
        return "\n".join(self.serialize_lines())

    def __repr__(self) -> str:
        return f"Block({self.label}, {len(self.statements)} stmts)"


def _pad(indent: int) -> str:
    return "  " * indent


class ScheduleKind(str, Enum):
    parallelize = "parallelize"
    vectorize = "vectorize"
    block_dim = "block_dim"
    cache = "cache"


class CacheMode(str, Enum):
    shared = "shared"
    l1 = "l1"
    read_only = "read_only"


@dataclass
class LoopSchedule:
    """Lowering hints for one loop. Same kind overrides, other kinds compose."""

    hints: dict[ScheduleKind, object] = field(default_factory=dict)

    def set(self, kind: ScheduleKind, value: object) -> None:
        self.hints[ScheduleKind(kind)] = value

    def get(self, kind: ScheduleKind, default: object = None) -> object:
        return self.hints.get(ScheduleKind(kind), default)

    @property
    def parallelize(self) -> int | None:
        return self.hints.get(ScheduleKind.parallelize)

    @property
    def vectorize(self) -> int | None:
        return self.hints.get(ScheduleKind.vectorize)

    @property
    def block_dim(self) -> int | None:
        return self.hints.get(ScheduleKind.block_dim)

    @property
    def cache(self) -> CacheMode | None:
        return self.hints.get(ScheduleKind.cache)

    def frozen(self) -> tuple[tuple[str, object], ...]:
        return tuple(sorted((kind.value, value) for kind, value in self.hints.items()))

    def serialize(self) -> str:
        if not self.hints:
            return ""
        parts = []
        for kind, value in self.frozen():
            if isinstance(value, Enum):
                value = value.value
            parts.append(f"{kind}={value}")
        return " [" + ", ".join(parts) + "]"


class Stmt:
    """Base class of recorded statements."""

    parent_block: Block | None = None
    location: SourceLocation | None = None

    def _stamp(self) -> None:
        self.parent_block = None
        self.location = capture_source_location()

    def child_blocks(self) -> tuple[Block, ...]:
        return ()

    def serialize_lines(self, indent: int = 0) -> list[str]:
        return [_pad(indent) + self.serialize()]

    def serialize(self) -> str:
        raise NotImplementedError


@dataclass(eq=False)
class FrontendAllocaStmt(Stmt):
    ident: Identifier
    dt: DataType = DataType.unknown

    def __post_init__(self) -> None:
        self._stamp()

    def serialize(self) -> str:
        return f"alloca {self.ident.display()}"


@dataclass(eq=False)
class FrontendAssignStmt(Stmt):
    lhs: Expression
    rhs: Expression

    def __post_init__(self) -> None:
        if not self.lhs.is_lvalue():
            raise TlangLvalueError(f"Cannot assign to non-l-value {self.lhs.serialize()}")
        self._stamp()

    def serialize(self) -> str:
        return f"{self.lhs.serialize()} = {self.rhs.serialize()}"


@dataclass(eq=False)
class GlobalLoadStmt(Stmt):
    ptr: GlobalPtrExpression

    def __post_init__(self) -> None:
        self._stamp()

    def serialize(self) -> str:
        return f"gbl load {self.ptr.serialize()}"


@dataclass(eq=False)
class GlobalStoreStmt(Stmt):
    ptr: GlobalPtrExpression
    value: Expression

    def __post_init__(self) -> None:
        self._stamp()

    def serialize(self) -> str:
        return f"gbl store {self.ptr.serialize()} <- {self.value.serialize()}"


@dataclass(eq=False)
class FrontendPrintStmt(Stmt):
    expr: Expression
    label: str = ""

    def __post_init__(self) -> None:
        self._stamp()

    def serialize(self) -> str:
        return f"print {self.label!r} {self.expr.serialize()}"


@dataclass(eq=False)
class FrontendIfStmt(Stmt):
    cond: Expression
    true_statements: Block = field(init=False)
    false_statements: Block = field(init=False)
    # Label of the branch whose scope is currently pushed, if any.
    open_branch: str | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self.true_statements = Block(owner=self, label="true")
        self.false_statements = Block(owner=self, label="false")
        self._stamp()

    def child_blocks(self) -> tuple[Block, ...]:
        return (self.true_statements, self.false_statements)

    def serialize(self) -> str:
        return f"if {self.cond.serialize()}"

    def serialize_lines(self, indent: int = 0) -> list[str]:
        pad = _pad(indent)
        lines = [f"{pad}if {self.cond.serialize()} {{"]
        lines.extend(self.true_statements.serialize_lines(indent + 1))
        if len(self.false_statements):
            lines.append(f"{pad}}} else {{")
            lines.extend(self.false_statements.serialize_lines(indent + 1))
        lines.append(f"{pad}}}")
        return lines


@dataclass(eq=False)
class FrontendForStmt(Stmt):
    """Range-for (``loop_var`` in ``[begin, end)``) or struct-for over a field."""

    loop_vars: tuple[IdExpression, ...]
    begin: Expression | None = None
    end: Expression | None = None
    global_var: GlobalVariableExpression | None = None
    body: Block = field(init=False)
    schedule: LoopSchedule = field(default_factory=LoopSchedule, init=False)

    def __post_init__(self) -> None:
        for var in self.loop_vars:
            if not isinstance(var, IdExpression):
                raise TlangTypeError(f"Loop variables must be identifiers, got {var.serialize()}")
        self.body = Block(owner=self, label="body")
        self._stamp()

    @classmethod
    def range_for(cls, loop_var: IdExpression, begin, end) -> "FrontendForStmt":
        return cls(loop_vars=(loop_var,), begin=as_expression(begin), end=as_expression(end))

    @classmethod
    def struct_for(cls, indices: "ExprGroup | tuple", global_var: Expression) -> "FrontendForStmt":
        if not isinstance(global_var, GlobalVariableExpression):
            raise TlangTypeError(f"Struct-for iterates over a field, got {global_var.serialize()}")
        return cls(loop_vars=tuple(indices), global_var=global_var)

    @property
    def is_struct_for(self) -> bool:
        return self.global_var is not None

    @property
    def loop_var(self) -> IdExpression:
        return self.loop_vars[0]

    def child_blocks(self) -> tuple[Block, ...]:
        return (self.body,)

    def serialize(self) -> str:
        names = ", ".join(var.serialize() for var in self.loop_vars)
        if self.is_struct_for:
            return f"for ({names}) in struct {self.global_var.serialize()}{self.schedule.serialize()}"
        return f"for {names} in range({self.begin.serialize()}, {self.end.serialize()}){self.schedule.serialize()}"

    def serialize_lines(self, indent: int = 0) -> list[str]:
        pad = _pad(indent)
        lines = [f"{pad}{self.serialize()} {{"]
        lines.extend(self.body.serialize_lines(indent + 1))
        lines.append(f"{pad}}}")
        return lines


def make_frontend_assign_stmt(lhs: Expression, rhs) -> FrontendAssignStmt:
    return FrontendAssignStmt(lhs=lhs, rhs=load_if_ptr(rhs))


def make_global_load_stmt(ptr: GlobalPtrExpression) -> GlobalLoadStmt:
    if not isinstance(ptr, GlobalPtrExpression):
        raise TlangTypeError(f"Global load expects a subscripted field, got {ptr.serialize()}")
    return GlobalLoadStmt(ptr=ptr)


def make_global_store_stmt(ptr: GlobalPtrExpression, value) -> GlobalStoreStmt:
    if not isinstance(ptr, GlobalPtrExpression):
        raise TlangLvalueError(f"Global store expects a subscripted field, got {ptr.serialize()}")
    return GlobalStoreStmt(ptr=ptr, value=load_if_ptr(value))


make_global_store = make_global_store_stmt


def iter_statements(block: Block) -> Iterator[Stmt]:
    """Pre-order walk over a block and all nested blocks."""
    for stmt in block:
        yield stmt
        for child in stmt.child_blocks():
            yield from iter_statements(child)
