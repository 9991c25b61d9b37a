"""Lowering of recorded kernel bodies into an executable IR.

The lowerer resolves expression types (filling each node's set-once slot),
checks field subscripts against the layout tree and rejects constructs the
selected target cannot run. Expressions become SSA-like ``IRNode`` entries,
lowered once per kernel even when shared by several parents.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

import jax

from .config import Arch, CompileConfig
from .dtypes import DataType
from .errors import TlangArityError, TlangLoweringError, TlangUnsupportedError
from .expr import (
    ArgLoadExpression,
    BinaryOpExpression,
    BinaryOpType,
    CastExpression,
    ConstExpression,
    Expression,
    GlobalLoadExpression,
    GlobalPtrExpression,
    GlobalVariableExpression,
    IdExpression,
    UnaryOpExpression,
    UnaryOpType,
    binary_result_type,
)
from .snode import SNode
from .stmt import (
    Block,
    FrontendAllocaStmt,
    FrontendAssignStmt,
    FrontendForStmt,
    FrontendIfStmt,
    FrontendPrintStmt,
    GlobalLoadStmt,
    GlobalStoreStmt,
    Stmt,
)

if TYPE_CHECKING:
    from .program import Kernel

logger = logging.getLogger(__name__)

_FLOAT_UNARY = {UnaryOpType.sqrt, UnaryOpType.sin, UnaryOpType.cos, UnaryOpType.exp, UnaryOpType.log}
_INTEGER_ONLY_BINARY = {BinaryOpType.bit_and, BinaryOpType.bit_or, BinaryOpType.bit_xor}


@dataclass(frozen=True)
class IRNode:
    """Single SSA-like expression node of a lowered kernel."""

    id: int
    op: str
    inputs: tuple[int, ...] = ()
    value: object | None = None
    dtype: DataType = DataType.unknown

    def serialize(self) -> str:
        args = " ".join(f"%{idx}" for idx in self.inputs)
        payload = "" if self.value is None else f" {self.value!r}"
        return f"%{self.id} = {self.op}{payload}{(' ' + args) if args else ''} : {self.dtype.name}"


@dataclass(frozen=True)
class AllocaOp:
    var: int


@dataclass(frozen=True)
class AssignOp:
    var: int
    value: int


@dataclass(frozen=True)
class LoadOp:
    field: int
    indices: tuple[int, ...]


@dataclass(frozen=True)
class StoreOp:
    field: int
    indices: tuple[int, ...]
    value: int


@dataclass(frozen=True)
class IfOp:
    cond: int
    true_body: tuple["LoweredStmt", ...]
    false_body: tuple["LoweredStmt", ...]


@dataclass(frozen=True)
class RangeForOp:
    var: int
    begin: int
    end: int
    body: tuple["LoweredStmt", ...]
    schedule: tuple[tuple[str, object], ...] = ()


@dataclass(frozen=True)
class StructForOp:
    vars: tuple[int, ...]
    field: int
    body: tuple["LoweredStmt", ...]
    schedule: tuple[tuple[str, object], ...] = ()


@dataclass(frozen=True)
class PrintOp:
    value: int
    label: str


LoweredStmt = Union[AllocaOp, AssignOp, LoadOp, StoreOp, IfOp, RangeForOp, StructForOp, PrintOp]


@dataclass(frozen=True)
class KernelIR:
    """Lowered kernel: expression node table plus nested lowered statements."""

    name: str
    arch: Arch
    nodes: tuple[IRNode, ...]
    body: tuple[LoweredStmt, ...]
    arg_types: tuple[DataType, ...]
    fields: tuple[int, ...]
    var_types: tuple[tuple[int, DataType], ...] = ()

    def serialize(self) -> str:
        lines = [f"kernel {self.name} ({self.arch.value})"]
        lines.extend(f"  {node.serialize()}" for node in self.nodes)
        lines.extend(_serialize_ops(self.body, 1))
        return "\n".join(lines)


def _serialize_ops(ops: tuple[LoweredStmt, ...], indent: int) -> list[str]:
    pad = "  " * indent
    lines: list[str] = []
    for op in ops:
        if isinstance(op, IfOp):
            lines.append(f"{pad}if %{op.cond} {{")
            lines.extend(_serialize_ops(op.true_body, indent + 1))
            lines.append(f"{pad}}} else {{")
            lines.extend(_serialize_ops(op.false_body, indent + 1))
            lines.append(f"{pad}}}")
        elif isinstance(op, RangeForOp):
            lines.append(f"{pad}for ${op.var} in range(%{op.begin}, %{op.end}) {dict(op.schedule)} {{")
            lines.extend(_serialize_ops(op.body, indent + 1))
            lines.append(f"{pad}}}")
        elif isinstance(op, StructForOp):
            names = ", ".join(f"${var}" for var in op.vars)
            lines.append(f"{pad}for ({names}) in snode#{op.field} {dict(op.schedule)} {{")
            lines.extend(_serialize_ops(op.body, indent + 1))
            lines.append(f"{pad}}}")
        else:
            lines.append(f"{pad}{op!r}")
    return lines


class _Lowerer:
    def __init__(self, *, name: str, arch: Arch, arg_types: tuple[DataType, ...]) -> None:
        self.name = name
        self.arch = arch
        self.arg_types = arg_types
        self.nodes: list[IRNode] = []
        self.fields: dict[int, SNode] = {}
        self._expr_cache: dict[int, int] = {}
        self.var_types: dict[int, DataType] = {}

    def _add(self, op: str, *, dtype: DataType, inputs: tuple[int, ...] = (), value: object | None = None) -> int:
        node_id = len(self.nodes)
        self.nodes.append(IRNode(id=node_id, op=op, inputs=inputs, value=value, dtype=dtype))
        return node_id

    def _cast_to(self, node_id: int, dtype: DataType) -> int:
        if self.nodes[node_id].dtype == dtype:
            return node_id
        return self._add("cast", dtype=dtype, inputs=(node_id,), value=dtype.name)

    def _fail(self, message: str, *, site=None, subject: str | None = None) -> TlangLoweringError:
        return TlangLoweringError(message=message, site=site, subject=subject)

    def _field_snode(self, var: GlobalVariableExpression, site) -> SNode:
        snode = var.snode()
        if snode is None:
            raise self._fail(f"Field {var.serialize()} is not placed in the layout tree", site=site)
        if not snode.is_sealed:
            raise self._fail("Layout must be sealed before kernels access fields", site=site, subject=snode.path())
        self.fields[snode.id] = snode
        return snode

    def _check_arity(self, snode: SNode, count: int, what: str, site) -> None:
        if count != snode.num_active_indices:
            where = f" (recorded at {site})" if site is not None else ""
            raise TlangArityError(
                f"{what} of {snode.path()} needs {snode.num_active_indices} indices, got {count}{where}"
            )

    def _lower_indices(self, ptr: GlobalPtrExpression) -> tuple[SNode, tuple[int, ...]]:
        snode = self._field_snode(ptr.var, ptr.location)
        self._check_arity(snode, len(ptr.indices), "Subscript", ptr.location)
        index_ids = []
        for index in ptr.indices:
            node_id = self.lower_expr(index)
            if not self.nodes[node_id].dtype.is_integral:
                raise self._fail("Field indices must be integers", site=index.location, subject=index.serialize())
            index_ids.append(node_id)
        return snode, tuple(index_ids)

    def lower_expr(self, expr: Expression) -> int:
        cached = self._expr_cache.get(id(expr))
        if cached is not None:
            return cached
        node_id = self._lower_expr_uncached(expr)
        expr.resolve_type(self.nodes[node_id].dtype)
        self._expr_cache[id(expr)] = node_id
        return node_id

    def _lower_expr_uncached(self, expr: Expression) -> int:
        if isinstance(expr, ConstExpression):
            return self._add("const", dtype=expr.dt, value=expr.value)

        if isinstance(expr, IdExpression):
            var_id = expr.ident.id
            if var_id not in self.var_types:
                raise self._fail(f"Identifier {expr.serialize()} is used before it is declared", site=expr.location)
            dtype = self.var_types[var_id]
            if dtype == DataType.unknown:
                raise self._fail(f"Type of identifier {expr.serialize()} is unresolved", site=expr.location)
            return self._add("var", dtype=dtype, value=var_id)

        if isinstance(expr, ArgLoadExpression):
            if expr.arg_id >= len(self.arg_types):
                raise self._fail(f"Kernel has no argument #{expr.arg_id}", site=expr.location)
            return self._add("arg", dtype=expr.dt, value=expr.arg_id)

        if isinstance(expr, BinaryOpExpression):
            lhs = self.lower_expr(expr.lhs)
            rhs = self.lower_expr(expr.rhs)
            lhs_type = self.nodes[lhs].dtype
            rhs_type = self.nodes[rhs].dtype
            if expr.op in _INTEGER_ONLY_BINARY and not (lhs_type.is_integral and rhs_type.is_integral):
                raise self._fail(f"{expr.op.value} needs integer operands", site=expr.location, subject=expr.serialize())
            operand_type = binary_result_type(BinaryOpType.add, lhs_type, rhs_type)
            if operand_type == DataType.u1:
                # lax arithmetic does not accept bool operands.
                operand_type = DataType.i32
            lhs = self._cast_to(lhs, operand_type)
            rhs = self._cast_to(rhs, operand_type)
            dtype = DataType.i32 if expr.op.is_comparison else operand_type
            return self._add(f"binary:{expr.op.value}", dtype=dtype, inputs=(lhs, rhs))

        if isinstance(expr, UnaryOpExpression):
            operand = self.lower_expr(expr.operand)
            dtype = self.nodes[operand].dtype
            if dtype == DataType.u1 and expr.op != UnaryOpType.logic_not:
                operand = self._cast_to(operand, DataType.i32)
                dtype = DataType.i32
            if expr.op == UnaryOpType.bit_not and not dtype.is_integral:
                raise self._fail("bit_not needs an integer operand", site=expr.location, subject=expr.serialize())
            if expr.op in _FLOAT_UNARY and not dtype.is_float:
                operand = self._cast_to(operand, DataType.f32)
                dtype = DataType.f32
            if expr.op == UnaryOpType.logic_not:
                dtype = DataType.i32
            return self._add(f"unary:{expr.op.value}", dtype=dtype, inputs=(operand,))

        if isinstance(expr, CastExpression):
            operand = self.lower_expr(expr.operand)
            return self._add("cast", dtype=expr.cast_type, inputs=(operand,), value=expr.cast_type.name)

        if isinstance(expr, (GlobalPtrExpression, GlobalLoadExpression)):
            ptr = expr.ptr if isinstance(expr, GlobalLoadExpression) else expr
            snode, index_ids = self._lower_indices(ptr)
            return self._add("load", dtype=snode.dt, inputs=index_ids, value=snode.id)

        if isinstance(expr, GlobalVariableExpression):
            raise self._fail(f"Field {expr.serialize()} must be subscripted to be read", site=expr.location)

        raise TlangUnsupportedError(
            message=f"Unsupported expression node {type(expr).__name__}", site=expr.location
        )

    def lower_block(self, block: Block) -> tuple[LoweredStmt, ...]:
        ops: list[LoweredStmt] = []
        for stmt in block:
            ops.extend(self.lower_stmt(stmt))
        return tuple(ops)

    def _declare(self, var_id: int, dtype: DataType) -> None:
        self.var_types[var_id] = dtype

    def _store(self, ptr: GlobalPtrExpression, value: Expression) -> StoreOp:
        snode, index_ids = self._lower_indices(ptr)
        ptr.resolve_type(snode.dt)
        value_id = self._cast_to(self.lower_expr(value), snode.dt)
        return StoreOp(field=snode.id, indices=index_ids, value=value_id)

    def lower_stmt(self, stmt: Stmt) -> list[LoweredStmt]:
        if isinstance(stmt, FrontendAllocaStmt):
            self._declare(stmt.ident.id, stmt.dt)
            return [AllocaOp(var=stmt.ident.id)]

        if isinstance(stmt, FrontendAssignStmt):
            if isinstance(stmt.lhs, GlobalPtrExpression):
                return [self._store(stmt.lhs, stmt.rhs)]
            if not isinstance(stmt.lhs, IdExpression):
                raise self._fail(f"Cannot assign to {stmt.lhs.serialize()}", site=stmt.location)
            var_id = stmt.lhs.ident.id
            if var_id not in self.var_types:
                raise self._fail(
                    f"Assignment to undeclared identifier {stmt.lhs.serialize()}", site=stmt.location
                )
            value_id = self.lower_expr(stmt.rhs)
            dtype = self.var_types[var_id]
            if dtype == DataType.unknown:
                dtype = self.nodes[value_id].dtype
                self._declare(var_id, dtype)
            stmt.lhs.resolve_type(dtype)
            return [AssignOp(var=var_id, value=self._cast_to(value_id, dtype))]

        if isinstance(stmt, GlobalStoreStmt):
            return [self._store(stmt.ptr, stmt.value)]

        if isinstance(stmt, GlobalLoadStmt):
            snode, index_ids = self._lower_indices(stmt.ptr)
            return [LoadOp(field=snode.id, indices=index_ids)]

        if isinstance(stmt, FrontendIfStmt):
            cond = self.lower_expr(stmt.cond)
            return [
                IfOp(
                    cond=cond,
                    true_body=self.lower_block(stmt.true_statements),
                    false_body=self.lower_block(stmt.false_statements),
                )
            ]

        if isinstance(stmt, FrontendForStmt):
            schedule = stmt.schedule.frozen()
            if stmt.is_struct_for:
                snode = self._field_snode(stmt.global_var, stmt.location)
                self._check_arity(snode, len(stmt.loop_vars), "Struct-for", stmt.location)
                var_ids = tuple(var.ident.id for var in stmt.loop_vars)
                for var in stmt.loop_vars:
                    self._declare(var.ident.id, DataType.i32)
                    var.resolve_type(DataType.i32)
                body = self.lower_block(stmt.body)
                return [StructForOp(vars=var_ids, field=snode.id, body=body, schedule=schedule)]

            begin = self.lower_expr(stmt.begin)
            end = self.lower_expr(stmt.end)
            for bound in (begin, end):
                if not self.nodes[bound].dtype.is_integral:
                    raise self._fail("Range-for bounds must be integers", site=stmt.location, subject=stmt.serialize())
            var = stmt.loop_var
            self._declare(var.ident.id, DataType.i32)
            var.resolve_type(DataType.i32)
            body = self.lower_block(stmt.body)
            return [RangeForOp(var=var.ident.id, begin=begin, end=end, body=body, schedule=schedule)]

        if isinstance(stmt, FrontendPrintStmt):
            if self.arch == Arch.gpu:
                raise TlangUnsupportedError(
                    message="print is not supported on the gpu target", site=stmt.location, subject=stmt.serialize()
                )
            return [PrintOp(value=self.lower_expr(stmt.expr), label=stmt.label)]

        raise TlangUnsupportedError(message=f"Unsupported statement {type(stmt).__name__}", site=stmt.location)


def target_device(arch: Arch):
    """JAX device that executes kernels lowered for ``arch``."""
    if arch == Arch.x86_64:
        return jax.devices("cpu")[0]
    try:
        devices = jax.devices("gpu")
    except RuntimeError:
        devices = []
    if not devices:
        raise TlangUnsupportedError(message="No JAX GPU device is available for the gpu target")
    return devices[0]


def lower_kernel(kernel: "Kernel", config: CompileConfig) -> KernelIR:
    """Lower a defined kernel body for ``config.arch``; all-or-nothing."""
    lowerer = _Lowerer(name=kernel.name, arch=config.arch, arg_types=kernel.arg_types)
    body = lowerer.lower_block(kernel.body)
    ir = KernelIR(
        name=kernel.name,
        arch=config.arch,
        nodes=tuple(lowerer.nodes),
        body=body,
        arg_types=kernel.arg_types,
        fields=tuple(sorted(lowerer.fields)),
        var_types=tuple(sorted(lowerer.var_types.items())),
    )
    if config.print_ir:
        logger.info("frontend IR of kernel %s:\n%s", kernel.name, kernel.body.serialize())
        logger.info("lowered IR:\n%s", ir.serialize())
    return ir
