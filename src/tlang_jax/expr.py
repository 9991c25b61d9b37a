"""Expression nodes and expression groups for recorded kernel bodies.

Expression nodes are pure values: once built their operands never change and
one node may be shared by any number of parents. The only late-bound slot is
the resolved data type, which lowering fills in exactly once.
"""

from __future__ import annotations

import itertools
import numbers
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Iterator, Union

from .dtypes import DataType, as_data_type, data_type_of_constant, promote_types
from .errors import TlangContractError, TlangTypeError

if TYPE_CHECKING:
    from .snode import SNode

_CAPTURE_LOCATIONS = os.environ.get("TLANG_JAX_DISABLE_SOURCE_LOCATIONS", "0") != "1"
_PACKAGE = __name__.rpartition(".")[0]
_IDENTIFIER_IDS = itertools.count()


@dataclass(frozen=True)
class SourceLocation:
    """Host call site that constructed an expression or statement."""

    filename: str
    lineno: int
    function: str | None = None

    def __str__(self) -> str:
        where = f"{self.filename}:{self.lineno}"
        if self.function:
            where += f" in {self.function}"
        return where


def capture_source_location() -> SourceLocation | None:
    """Return the first caller frame outside this package."""
    if not _CAPTURE_LOCATIONS:
        return None
    frame = sys._getframe(1)
    while frame is not None:
        module = frame.f_globals.get("__name__", "")
        if module != _PACKAGE and not module.startswith(_PACKAGE + "."):
            code = frame.f_code
            return SourceLocation(filename=code.co_filename, lineno=frame.f_lineno, function=code.co_name)
        frame = frame.f_back
    return None


@dataclass(frozen=True)
class Identifier:
    id: int
    name: str = ""

    @classmethod
    def fresh(cls, name: str = "") -> "Identifier":
        return cls(id=next(_IDENTIFIER_IDS), name=name)

    def display(self) -> str:
        return self.name if self.name else f"tmp{self.id}"


class BinaryOpType(str, Enum):
    add = "add"
    sub = "sub"
    mul = "mul"
    div = "div"
    mod = "mod"
    max = "max"
    min = "min"
    cmp_lt = "cmp_lt"
    cmp_le = "cmp_le"
    cmp_gt = "cmp_gt"
    cmp_ge = "cmp_ge"
    cmp_eq = "cmp_eq"
    cmp_ne = "cmp_ne"
    bit_and = "bit_and"
    bit_or = "bit_or"
    bit_xor = "bit_xor"

    @property
    def is_comparison(self) -> bool:
        return self.name.startswith("cmp_")


class UnaryOpType(str, Enum):
    neg = "neg"
    sqrt = "sqrt"
    floor = "floor"
    ceil = "ceil"
    abs = "abs"
    sin = "sin"
    cos = "cos"
    exp = "exp"
    log = "log"
    logic_not = "logic_not"
    bit_not = "bit_not"


_BINARY_SYMBOLS = {
    BinaryOpType.add: "+",
    BinaryOpType.sub: "-",
    BinaryOpType.mul: "*",
    BinaryOpType.div: "/",
    BinaryOpType.mod: "%",
    BinaryOpType.cmp_lt: "<",
    BinaryOpType.cmp_le: "<=",
    BinaryOpType.cmp_gt: ">",
    BinaryOpType.cmp_ge: ">=",
    BinaryOpType.cmp_eq: "==",
    BinaryOpType.cmp_ne: "!=",
    BinaryOpType.bit_and: "&",
    BinaryOpType.bit_or: "|",
    BinaryOpType.bit_xor: "^",
}


def binary_op_type_name(op: BinaryOpType) -> str:
    return BinaryOpType(op).value


def unary_op_type_name(op: UnaryOpType) -> str:
    return UnaryOpType(op).value


class Expression:
    """Base class of all expression nodes.

    Python operators build new nodes instead of computing values, so host code
    such as ``x[i] * 2 + 1`` records an expression tree.
    """

    __hash__ = object.__hash__

    def __post_init__(self) -> None:
        object.__setattr__(self, "_resolved_type", self._initial_type())
        object.__setattr__(self, "location", capture_source_location())

    def _initial_type(self) -> DataType:
        return DataType.unknown

    @property
    def resolved_type(self) -> DataType:
        return self._resolved_type

    def resolve_type(self, dt: DataType) -> DataType:
        """Fill the type slot; a second, different type is a contract violation."""
        dt = as_data_type(dt)
        current = self._resolved_type
        if current == dt:
            return dt
        if current != DataType.unknown:
            raise TlangTypeError(
                f"Type of {self.serialize()} already resolved to {current.name}, cannot re-resolve to {dt.name}"
            )
        object.__setattr__(self, "_resolved_type", dt)
        return dt

    def set_tb(self, tb: "str | SourceLocation") -> None:
        if isinstance(tb, str):
            tb = SourceLocation(filename=tb, lineno=0)
        object.__setattr__(self, "location", tb)

    def is_lvalue(self) -> bool:
        return False

    def operands(self) -> tuple["Expression", ...]:
        return ()

    def serialize(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.serialize()

    def __bool__(self) -> bool:
        raise TlangTypeError(
            f"Expression {self.serialize()} has no host truth value; record it with begin_if instead"
        )

    def __add__(self, other):
        return make_binary_op_expr(BinaryOpType.add, self, other)

    def __radd__(self, other):
        return make_binary_op_expr(BinaryOpType.add, other, self)

    def __sub__(self, other):
        return make_binary_op_expr(BinaryOpType.sub, self, other)

    def __rsub__(self, other):
        return make_binary_op_expr(BinaryOpType.sub, other, self)

    def __mul__(self, other):
        return make_binary_op_expr(BinaryOpType.mul, self, other)

    def __rmul__(self, other):
        return make_binary_op_expr(BinaryOpType.mul, other, self)

    def __truediv__(self, other):
        return make_binary_op_expr(BinaryOpType.div, self, other)

    def __rtruediv__(self, other):
        return make_binary_op_expr(BinaryOpType.div, other, self)

    def __mod__(self, other):
        return make_binary_op_expr(BinaryOpType.mod, self, other)

    def __rmod__(self, other):
        return make_binary_op_expr(BinaryOpType.mod, other, self)

    def __and__(self, other):
        return make_binary_op_expr(BinaryOpType.bit_and, self, other)

    def __or__(self, other):
        return make_binary_op_expr(BinaryOpType.bit_or, self, other)

    def __xor__(self, other):
        return make_binary_op_expr(BinaryOpType.bit_xor, self, other)

    def __lt__(self, other):
        return make_binary_op_expr(BinaryOpType.cmp_lt, self, other)

    def __le__(self, other):
        return make_binary_op_expr(BinaryOpType.cmp_le, self, other)

    def __gt__(self, other):
        return make_binary_op_expr(BinaryOpType.cmp_gt, self, other)

    def __ge__(self, other):
        return make_binary_op_expr(BinaryOpType.cmp_ge, self, other)

    def __eq__(self, other):
        return make_binary_op_expr(BinaryOpType.cmp_eq, self, other)

    def __ne__(self, other):
        return make_binary_op_expr(BinaryOpType.cmp_ne, self, other)

    def __neg__(self):
        return make_unary_op_expr(UnaryOpType.neg, self)

    def __invert__(self):
        return make_unary_op_expr(UnaryOpType.bit_not, self)

    def __getitem__(self, key):
        if isinstance(key, tuple):
            return subscript(self, ExprGroup(*key))
        return subscript(self, key)


@dataclass(frozen=True, eq=False)
class IdExpression(Expression):
    ident: Identifier

    def is_lvalue(self) -> bool:
        return True

    def serialize(self) -> str:
        return self.ident.display()


@dataclass(frozen=True, eq=False)
class ConstExpression(Expression):
    value: Union[int, float, bool]
    dt: DataType = DataType.unknown

    def __post_init__(self) -> None:
        if self.dt == DataType.unknown:
            object.__setattr__(self, "dt", data_type_of_constant(self.value))
        super().__post_init__()

    def _initial_type(self) -> DataType:
        return self.dt

    def serialize(self) -> str:
        return repr(self.value)


@dataclass(frozen=True, eq=False)
class BinaryOpExpression(Expression):
    op: BinaryOpType
    lhs: Expression
    rhs: Expression

    def operands(self) -> tuple[Expression, ...]:
        return (self.lhs, self.rhs)

    def serialize(self) -> str:
        symbol = _BINARY_SYMBOLS.get(self.op)
        if symbol is None:
            return f"{self.op.value}({self.lhs.serialize()}, {self.rhs.serialize()})"
        return f"({self.lhs.serialize()} {symbol} {self.rhs.serialize()})"


@dataclass(frozen=True, eq=False)
class UnaryOpExpression(Expression):
    op: UnaryOpType
    operand: Expression

    def operands(self) -> tuple[Expression, ...]:
        return (self.operand,)

    def serialize(self) -> str:
        if self.op == UnaryOpType.neg:
            return f"(-{self.operand.serialize()})"
        return f"{self.op.value}({self.operand.serialize()})"


@dataclass(frozen=True, eq=False)
class CastExpression(Expression):
    operand: Expression
    cast_type: DataType

    def _initial_type(self) -> DataType:
        return self.cast_type

    def operands(self) -> tuple[Expression, ...]:
        return (self.operand,)

    def serialize(self) -> str:
        return f"cast<{self.cast_type.name}>({self.operand.serialize()})"


@dataclass(frozen=True, eq=False)
class GlobalVariableExpression(Expression):
    """A scalar field; ``place`` binds it to a leaf SNode exactly once."""

    ident: Identifier
    dt: DataType

    def __post_init__(self) -> None:
        object.__setattr__(self, "_snode", None)
        super().__post_init__()

    def _initial_type(self) -> DataType:
        return self.dt

    def snode(self) -> "SNode | None":
        return self._snode

    def bind_snode(self, snode: "SNode") -> None:
        if self._snode is not None:
            raise TlangContractError(f"Field {self.serialize()} is already placed at {self._snode.path()}")
        object.__setattr__(self, "_snode", snode)

    def _placed_snode(self) -> "SNode":
        if self._snode is None:
            raise TlangContractError(f"Field {self.serialize()} has not been placed in the layout tree")
        return self._snode

    def val(self, *indices: int):
        """Read one element from the host side."""
        snode = self._placed_snode()
        return snode.program().read_field(self, tuple(int(i) for i in indices))

    def set_val(self, value, *indices: int) -> None:
        """Write one element from the host side (activates sparse cells)."""
        snode = self._placed_snode()
        snode.program().write_field(self, tuple(int(i) for i in indices), value)

    def serialize(self) -> str:
        return f"@{self.ident.display()}"


@dataclass(frozen=True, eq=False)
class GlobalPtrExpression(Expression):
    """Subscript of a field; arity is checked when the kernel is lowered."""

    var: GlobalVariableExpression
    indices: tuple[Expression, ...]

    def _initial_type(self) -> DataType:
        return self.var.dt

    def is_lvalue(self) -> bool:
        return True

    def operands(self) -> tuple[Expression, ...]:
        return (self.var, *self.indices)

    def serialize(self) -> str:
        inner = ", ".join(index.serialize() for index in self.indices)
        return f"{self.var.serialize()}[({inner})]"


@dataclass(frozen=True, eq=False)
class GlobalLoadExpression(Expression):
    ptr: GlobalPtrExpression

    def _initial_type(self) -> DataType:
        return self.ptr.var.dt

    def operands(self) -> tuple[Expression, ...]:
        return (self.ptr,)

    def serialize(self) -> str:
        return f"gbl load {self.ptr.serialize()}"


@dataclass(frozen=True, eq=False)
class ArgLoadExpression(Expression):
    arg_id: int
    dt: DataType

    def _initial_type(self) -> DataType:
        return self.dt

    def serialize(self) -> str:
        return f"arg[{self.arg_id}]"


class ExprGroup:
    """Ordered index tuple; append-only while it is being built."""

    def __init__(self, *exprs) -> None:
        self.exprs: list[Expression] = []
        for expr in exprs:
            self.push_back(expr)

    def push_back(self, expr) -> None:
        self.exprs.append(as_expression(expr))

    def __len__(self) -> int:
        return len(self.exprs)

    def __iter__(self) -> Iterator[Expression]:
        return iter(self.exprs)

    def __getitem__(self, index: int) -> Expression:
        return self.exprs[index]

    def serialize(self) -> str:
        return "(" + ", ".join(expr.serialize() for expr in self.exprs) + ")"

    def __repr__(self) -> str:
        return f"ExprGroup{self.serialize()}"


ExprLike = Union[Expression, int, float, bool]


def as_expression(value: object) -> Expression:
    if isinstance(value, Expression):
        return value
    if isinstance(value, (bool, numbers.Integral, numbers.Real)):
        return make_constant_expr(value)
    raise TlangTypeError(f"Cannot use {type(value).__name__} value {value!r} as an expression")


def as_expr_group(value: object) -> ExprGroup:
    if isinstance(value, ExprGroup):
        return value
    if isinstance(value, (tuple, list)):
        return ExprGroup(*value)
    return ExprGroup(value)


def make_id_expr(name: str = "") -> IdExpression:
    return IdExpression(ident=Identifier.fresh(name))


def make_constant_expr(value: Union[int, float, bool], dt: DataType | None = None) -> ConstExpression:
    if not isinstance(value, (bool, numbers.Integral, numbers.Real)):
        raise TlangTypeError(f"Constant of type {type(value).__name__} is not a supported scalar")
    if isinstance(value, numbers.Integral) and not isinstance(value, bool):
        value = int(value)
    elif not isinstance(value, bool):
        value = float(value)
    return ConstExpression(value=value, dt=as_data_type(dt) if dt is not None else DataType.unknown)


def make_binary_op_expr(op: BinaryOpType, lhs: ExprLike, rhs: ExprLike) -> BinaryOpExpression:
    return BinaryOpExpression(op=BinaryOpType(op), lhs=as_expression(lhs), rhs=as_expression(rhs))


def make_unary_op_expr(op: UnaryOpType, operand: ExprLike) -> UnaryOpExpression:
    return UnaryOpExpression(op=UnaryOpType(op), operand=as_expression(operand))


def value_cast(expr: ExprLike, dt: DataType) -> CastExpression:
    return CastExpression(operand=as_expression(expr), cast_type=as_data_type(dt))


def global_new(var: "IdExpression | str", dt: DataType) -> GlobalVariableExpression:
    """Declare a scalar field; it still has to be placed in the layout tree."""
    if isinstance(var, str):
        ident = Identifier.fresh(var)
    elif isinstance(var, IdExpression):
        ident = var.ident
    else:
        raise TlangTypeError(f"global_new expects an identifier expression or a name, got {type(var).__name__}")
    dt = as_data_type(dt)
    if dt == DataType.unknown:
        raise TlangTypeError("Fields need a concrete data type")
    return GlobalVariableExpression(ident=ident, dt=dt)


def make_global_ptr_expr(var: Expression, indices: "ExprGroup | Iterable[ExprLike]") -> GlobalPtrExpression:
    if not isinstance(var, GlobalVariableExpression):
        raise TlangTypeError(f"Only fields can be subscripted, got {var.serialize() if isinstance(var, Expression) else var!r}")
    group = as_expr_group(indices)
    return GlobalPtrExpression(var=var, indices=tuple(group))


def subscript(expr: Expression, indices) -> GlobalPtrExpression:
    return make_global_ptr_expr(expr, indices)


def expr_index(expr: Expression, index: ExprLike) -> GlobalPtrExpression:
    return make_global_ptr_expr(expr, ExprGroup(index))


def make_global_load(ptr: Expression) -> GlobalLoadExpression:
    if not isinstance(ptr, GlobalPtrExpression):
        raise TlangTypeError(f"Global load expects a subscripted field, got {ptr.serialize()}")
    return GlobalLoadExpression(ptr=ptr)


def load_if_ptr(expr: ExprLike) -> Expression:
    expr = as_expression(expr)
    if isinstance(expr, GlobalPtrExpression):
        return GlobalLoadExpression(ptr=expr)
    return expr


def is_lvalue(expr: object) -> bool:
    return isinstance(expr, Expression) and expr.is_lvalue()


def expr_add(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.add, a, b)


def expr_sub(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.sub, a, b)


def expr_mul(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.mul, a, b)


def expr_div(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.div, a, b)


def expr_mod(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.mod, a, b)


def expr_cmp_lt(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.cmp_lt, a, b)


def expr_cmp_le(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.cmp_le, a, b)


def expr_cmp_gt(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.cmp_gt, a, b)


def expr_cmp_ge(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.cmp_ge, a, b)


def expr_cmp_eq(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.cmp_eq, a, b)


def expr_cmp_ne(a: ExprLike, b: ExprLike) -> BinaryOpExpression:
    return make_binary_op_expr(BinaryOpType.cmp_ne, a, b)


def binary_result_type(op: BinaryOpType, lhs: DataType, rhs: DataType) -> DataType:
    if op.is_comparison:
        return DataType.i32
    return promote_types(lhs, rhs)
