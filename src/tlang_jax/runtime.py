"""Field storage and execution of lowered kernels on JAX."""

from __future__ import annotations

import functools
from typing import Callable, Final

import jax
from jax import lax
import jax.numpy as jnp

from .dtypes import DataType
from .errors import TlangArityError, TlangContractError, TlangRuntimeError
from .expr import GlobalVariableExpression
from .lowering import (
    AllocaOp,
    AssignOp,
    IfOp,
    KernelIR,
    LoadOp,
    LoweredStmt,
    PrintOp,
    RangeForOp,
    StoreOp,
    StructForOp,
)
from .snode import SNode, SNodeType, cell_divisors, pointer_ancestors

_JNP_DTYPES: Final[dict[DataType, object]] = {
    DataType.i8: jnp.int8,
    DataType.i16: jnp.int16,
    DataType.i32: jnp.int32,
    DataType.i64: jnp.int64,
    DataType.u8: jnp.uint8,
    DataType.u16: jnp.uint16,
    DataType.u32: jnp.uint32,
    DataType.u64: jnp.uint64,
    DataType.f32: jnp.float32,
    DataType.f64: jnp.float64,
    DataType.u1: jnp.bool_,
}


def _with_x64(fn: Callable) -> Callable:
    """Run ``fn`` with 64-bit JAX types enabled so i64/u64/f64 fields keep their width."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        with jax.enable_x64(True):
            return fn(*args, **kwargs)

    return wrapper


def jnp_dtype(dt: DataType):
    try:
        return _JNP_DTYPES[dt]
    except KeyError:
        raise TlangContractError(f"Data type {dt.name} has no storage representation") from None


def _scalar(value, dt: DataType) -> jnp.ndarray:
    try:
        return lax.convert_element_type(jnp.asarray(value), jnp_dtype(dt))
    except OverflowError as err:
        raise TlangRuntimeError(f"Value {value!r} does not fit in {dt.name}: {err}") from None


class FieldStorage:
    """Materialized memory for a sealed layout tree.

    Each leaf owns one array indexed by its axes in ascending order. Each
    pointer node owns an activation mask over its own cells; a leaf element is
    active when every pointer cell on its path is active.
    """

    @_with_x64
    def __init__(self, root: SNode | None) -> None:
        if root is not None and not root.is_sealed:
            raise TlangContractError("Field storage needs a sealed layout")
        self.root = root
        nodes = list(root.walk()) if root is not None else []
        self.leaves: dict[int, SNode] = {node.id: node for node in nodes if node.is_leaf}
        self.values: dict[int, jnp.ndarray] = {
            leaf.id: jnp.zeros(leaf.shape, dtype=jnp_dtype(leaf.dt)) for leaf in self.leaves.values()
        }
        self.masks: dict[int, jnp.ndarray] = {
            node.id: jnp.zeros(node.shape, dtype=jnp.bool_)
            for node in nodes
            if node.type == SNodeType.pointer
        }
        # leaf id -> [(pointer id, leaf positions of the pointer's axes, divisors)]
        self._pointer_paths: dict[int, list[tuple[int, tuple[int, ...], tuple[int, ...]]]] = {}
        for leaf in self.leaves.values():
            axes = leaf.physical_indices
            paths = []
            for node in pointer_ancestors(leaf):
                positions = tuple(axes.index(axis) for axis in node.physical_indices)
                paths.append((node.id, positions, cell_divisors(leaf, node)))
            self._pointer_paths[leaf.id] = paths

    def leaf_of(self, var: GlobalVariableExpression) -> SNode:
        snode = var.snode()
        if snode is None or snode.id not in self.leaves or self.leaves[snode.id] is not snode:
            raise TlangContractError(f"Field {var.serialize()} does not belong to this layout")
        return snode

    def _checked(self, leaf_id: int, indices: tuple[int, ...]) -> tuple[int, ...]:
        leaf = self.leaves[leaf_id]
        shape = leaf.shape
        if len(indices) != len(shape):
            raise TlangArityError(f"{leaf.path()} needs {len(shape)} indices, got {len(indices)}")
        for axis, (index, extent) in enumerate(zip(indices, shape)):
            if index < 0 or index >= extent:
                raise TlangRuntimeError(
                    f"Index {index} out of range [0, {extent}) on axis position {axis} of {leaf.path()}"
                )
        return indices

    @_with_x64
    def read(self, leaf_id: int, indices: tuple[int, ...]) -> jnp.ndarray:
        # Inactive elements were never written, so they still read as zero.
        return self.values[leaf_id][self._checked(leaf_id, indices)]

    @_with_x64
    def write(self, leaf_id: int, indices: tuple[int, ...], value) -> None:
        indices = self._checked(leaf_id, indices)
        leaf = self.leaves[leaf_id]
        self.values[leaf_id] = self.values[leaf_id].at[indices].set(_scalar(value, leaf.dt))
        for pointer_id, positions, divisors in self._pointer_paths[leaf_id]:
            cell = tuple(indices[pos] // div for pos, div in zip(positions, divisors))
            self.masks[pointer_id] = self.masks[pointer_id].at[cell].set(True)

    @_with_x64
    def active_mask(self, leaf_id: int) -> jnp.ndarray:
        leaf = self.leaves[leaf_id]
        active = jnp.ones(leaf.shape, dtype=jnp.bool_)
        paths = self._pointer_paths[leaf_id]
        if not paths:
            return active
        coords = jnp.indices(leaf.shape) if leaf.shape else ()
        for pointer_id, positions, divisors in paths:
            cell = tuple(coords[pos] // div for pos, div in zip(positions, divisors))
            active = active & self.masks[pointer_id][cell]
        return active

    @_with_x64
    def active_indices(self, leaf_id: int) -> list[tuple[int, ...]]:
        """Active elements of a leaf in row-major index order."""
        mask = self.active_mask(leaf_id)
        if mask.ndim == 0:
            return [()] if bool(mask) else []
        return [tuple(int(i) for i in row) for row in jnp.argwhere(mask).tolist()]

    @_with_x64
    def is_active(self, leaf_id: int, indices: tuple[int, ...]) -> bool:
        indices = self._checked(leaf_id, indices)
        for pointer_id, positions, divisors in self._pointer_paths[leaf_id]:
            cell = tuple(indices[pos] // div for pos, div in zip(positions, divisors))
            if not bool(self.masks[pointer_id][cell]):
                return False
        return True

    def to_array(self, leaf_id: int) -> jnp.ndarray:
        return self.values[leaf_id]


def _cmp(fn: Callable) -> Callable:
    return lambda a, b: lax.convert_element_type(fn(a, b), jnp.int32)


_BINARY_OPS: Final[dict[str, Callable]] = {
    "add": lax.add,
    "sub": lax.sub,
    "mul": lax.mul,
    # lax.div truncates integers toward zero; lax.rem keeps the dividend's sign.
    "div": lax.div,
    "mod": lax.rem,
    "max": lax.max,
    "min": lax.min,
    "cmp_lt": _cmp(lax.lt),
    "cmp_le": _cmp(lax.le),
    "cmp_gt": _cmp(lax.gt),
    "cmp_ge": _cmp(lax.ge),
    "cmp_eq": _cmp(lax.eq),
    "cmp_ne": _cmp(lax.ne),
    "bit_and": lax.bitwise_and,
    "bit_or": lax.bitwise_or,
    "bit_xor": lax.bitwise_xor,
}


def _float_only(fn: Callable) -> Callable:
    def apply(x):
        if jnp.issubdtype(x.dtype, jnp.floating):
            return fn(x)
        return x

    return apply


_UNARY_OPS: Final[dict[str, Callable]] = {
    "neg": lax.neg,
    "sqrt": lax.sqrt,
    "floor": _float_only(lax.floor),
    "ceil": _float_only(lax.ceil),
    "abs": lax.abs,
    "sin": lax.sin,
    "cos": lax.cos,
    "exp": lax.exp,
    "log": lax.log,
    "logic_not": lambda x: lax.convert_element_type(x == 0, jnp.int32),
    "bit_not": lax.bitwise_not,
}


class _Executor:
    def __init__(self, ir: KernelIR, storage: FieldStorage, args: tuple[jnp.ndarray, ...], printer: Callable) -> None:
        self.ir = ir
        self.storage = storage
        self.args = args
        self.printer = printer
        self.var_types = dict(ir.var_types)
        self.frame: dict[int, jnp.ndarray] = {}

    def eval(self, node_id: int, memo: dict[int, jnp.ndarray]) -> jnp.ndarray:
        if node_id in memo:
            return memo[node_id]
        node = self.ir.nodes[node_id]
        kind, _, payload = node.op.partition(":")
        if kind == "const":
            out = _scalar(node.value, node.dtype)
        elif kind == "var":
            out = self.frame[node.value]
        elif kind == "arg":
            out = self.args[node.value]
        elif kind == "binary":
            out = _BINARY_OPS[payload](self.eval(node.inputs[0], memo), self.eval(node.inputs[1], memo))
        elif kind == "unary":
            out = _UNARY_OPS[payload](self.eval(node.inputs[0], memo))
        elif kind == "cast":
            out = _scalar(self.eval(node.inputs[0], memo), node.dtype)
        elif kind == "load":
            out = self.storage.read(node.value, self._indices(node.inputs, memo))
        else:
            raise TlangRuntimeError(f"Unknown IR op {node.op!r}")
        memo[node_id] = out
        return out

    def _indices(self, inputs: tuple[int, ...], memo: dict[int, jnp.ndarray]) -> tuple[int, ...]:
        return tuple(int(self.eval(idx, memo)) for idx in inputs)

    def value(self, node_id: int) -> jnp.ndarray:
        return self.eval(node_id, {})

    def run(self, ops: tuple[LoweredStmt, ...]) -> None:
        for op in ops:
            self.step(op)

    def step(self, op: LoweredStmt) -> None:
        if isinstance(op, AllocaOp):
            dtype = self.var_types.get(op.var, DataType.unknown)
            if dtype != DataType.unknown:
                self.frame[op.var] = _scalar(0, dtype)
            return

        if isinstance(op, AssignOp):
            self.frame[op.var] = self.value(op.value)
            return

        if isinstance(op, StoreOp):
            memo: dict[int, jnp.ndarray] = {}
            indices = self._indices(op.indices, memo)
            self.storage.write(op.field, indices, self.eval(op.value, memo))
            return

        if isinstance(op, LoadOp):
            self.storage.read(op.field, self._indices(op.indices, {}))
            return

        if isinstance(op, IfOp):
            if bool(self.value(op.cond) != 0):
                self.run(op.true_body)
            else:
                self.run(op.false_body)
            return

        if isinstance(op, RangeForOp):
            # Bounds are evaluated once at loop entry.
            begin = int(self.value(op.begin))
            end = int(self.value(op.end))
            for i in range(begin, end):
                self.frame[op.var] = _scalar(i, DataType.i32)
                self.run(op.body)
            return

        if isinstance(op, StructForOp):
            # Snapshot so elements activated by the body are not visited in this pass.
            for coord in self.storage.active_indices(op.field):
                for var, index in zip(op.vars, coord):
                    self.frame[var] = _scalar(index, DataType.i32)
                self.run(op.body)
            return

        if isinstance(op, PrintOp):
            value = self.value(op.value)
            self.printer(f"[debug] {op.label} = {value.item()}")
            return

        raise TlangRuntimeError(f"Unknown lowered statement {type(op).__name__}")


@_with_x64
def execute_kernel_ir(
    ir: KernelIR,
    storage: FieldStorage,
    args: tuple[object, ...] = (),
    *,
    device=None,
    printer: Callable[[str], None] = print,
) -> None:
    """Run a lowered kernel against ``storage``; field updates land in place."""
    if len(args) != len(ir.arg_types):
        raise TlangRuntimeError(f"Kernel {ir.name!r} expects {len(ir.arg_types)} arguments, got {len(args)}")
    for leaf_id in ir.fields:
        if leaf_id not in storage.leaves:
            raise TlangRuntimeError(f"Kernel {ir.name!r} touches a field outside the current layout")
    if device is None:
        device = jax.devices("cpu")[0]
    with jax.default_device(device):
        arg_values = tuple(_scalar(arg, dt) for arg, dt in zip(args, ir.arg_types))
        _Executor(ir, storage, arg_values, printer).run(ir.body)
