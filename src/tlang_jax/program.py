"""Program context, kernel registry and the kernel lifecycle."""

from __future__ import annotations

import itertools
import logging
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator

from .builder import ASTBuilder
from .config import CompileConfig, default_compile_config
from .dtypes import DataType, as_data_type
from .errors import TlangContractError, TlangError, TlangKernelError, TlangProgramError
from .expr import ArgLoadExpression, GlobalVariableExpression
from .lowering import KernelIR, lower_kernel, target_device
from .runtime import FieldStorage, execute_kernel_ir
from .snode import SNode, seal_layout
from .stmt import Block

logger = logging.getLogger(__name__)

_PROGRAM_STACK: list["Program"] = []


class KernelState(str, Enum):
    DEFINING = "defining"
    DEFINED = "defined"
    COMPILED = "compiled"
    INVOKED = "invoked"
    FAILED = "failed"


@dataclass(frozen=True)
class CompiledKernel:
    ir: KernelIR
    fingerprint: tuple[object, ...]
    device: object = field(repr=False, default=None)


class Kernel:
    """Recorded kernel; compiled lazily on first call and cached per target."""

    def __init__(self, program: "Program", name: str, arg_types: tuple[DataType, ...], kernel_id: int) -> None:
        self.program = program
        self.name = name
        self.arg_types = arg_types
        self.id = kernel_id
        self.body = Block(label=f"kernel {name}")
        self.state = KernelState.DEFINING
        self.compile_count = 0
        self._compiled: CompiledKernel | None = None
        self._failures: dict[tuple[object, ...], tuple[TlangKernelError, TlangError]] = {}
        self._lock = threading.Lock()

    def arg_exprs(self) -> tuple[ArgLoadExpression, ...]:
        return tuple(ArgLoadExpression(arg_id=idx, dt=dt) for idx, dt in enumerate(self.arg_types))

    def compile(self) -> CompiledKernel:
        """Lower for the program's current configuration, reusing a cached result."""
        self.program.check_alive()
        if self.state == KernelState.DEFINING:
            raise TlangKernelError(kernel=self.name, stage="compile", message="kernel is still being defined")

        config = self.program.config
        fingerprint = config.fingerprint()
        with self._lock:
            compiled = self._compiled
            if compiled is not None and compiled.fingerprint == fingerprint:
                self.program.record_cache_lookup(hit=True)
                if self.state == KernelState.FAILED:
                    # A failure under another arch does not invalidate this entry.
                    self.state = KernelState.COMPILED
                return compiled
            self.program.record_cache_lookup(hit=False)
            failed = self._failures.get(fingerprint)
            if failed is not None:
                failure, cause = failed
                self.state = KernelState.FAILED
                raise failure from cause
            try:
                ir = lower_kernel(self, config)
                device = target_device(config.arch)
            except TlangError as err:
                failure = TlangKernelError(kernel=self.name, stage="compile", message=str(err), arch=config.arch.value)
                self._failures[fingerprint] = (failure, err)
                self.state = KernelState.FAILED
                logger.debug("kernel %s failed to compile for %s: %s", self.name, config.arch.value, err)
                raise failure from err
            compiled = CompiledKernel(ir=ir, fingerprint=fingerprint, device=device)
            self._compiled = compiled
            self.compile_count += 1
            self.state = KernelState.COMPILED
            logger.debug("compiled kernel %s for %s (%d nodes)", self.name, config.arch.value, len(ir.nodes))
            return compiled

    def __call__(self, *args) -> None:
        compiled = self.compile()
        storage = self.program.storage_for(compiled.ir)
        start = time.perf_counter()
        execute_kernel_ir(compiled.ir, storage, tuple(args), device=compiled.device)
        self.program.record_invocation(self.name, time.perf_counter() - start)
        self.state = KernelState.INVOKED

    def __repr__(self) -> str:
        return f"Kernel({self.name!r}, state={self.state.value})"


class KernelProxy:
    """Handle returned by ``Program.kernel``; ``define`` records the body."""

    def __init__(self, program: "Program", name: str, arg_types: tuple[DataType, ...]) -> None:
        self.program = program
        self.name = name
        self.arg_types = arg_types

    def define(self, func: Callable[..., object]) -> Kernel:
        return self.program.define_kernel(self.name, func, arg_types=self.arg_types)

    def __call__(self, func: Callable[..., object]) -> Kernel:
        return self.define(func)


class Program:
    """Recording session: owns the layout root, the scope stack and the kernels.

    Use as a context manager to make it the current program for the free
    functions in ``tlang_jax.lang``; leaving the block tears it down.
    """

    def __init__(self, config: CompileConfig | None = None) -> None:
        self.config = (config if config is not None else default_compile_config()).copy()
        self.root = SNode(program=self)
        self.builder = ASTBuilder()
        self.kernels: dict[str, Kernel] = {}
        self._kernel_ids = itertools.count()
        self._storage: FieldStorage | None = None
        self._alive = True
        self._profile: dict[str, dict[str, float]] = {}
        self._cache_stats: dict[str, int] = {"hits": 0, "misses": 0}

    def check_alive(self) -> None:
        if not self._alive:
            raise TlangProgramError("Program has been torn down")

    @property
    def alive(self) -> bool:
        return self._alive

    def __enter__(self) -> "Program":
        self.check_alive()
        _PROGRAM_STACK.append(self)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.teardown()
        return False

    @contextmanager
    def activated(self) -> Iterator["Program"]:
        """Make this the current program without tearing it down afterwards."""
        self.check_alive()
        _PROGRAM_STACK.append(self)
        try:
            yield self
        finally:
            _remove_from_stack(self)

    def teardown(self) -> None:
        """End the session; fields, kernels and layout nodes become unusable."""
        if not self._alive:
            return
        self._alive = False
        self.builder.reset()
        self.kernels.clear()
        self._storage = None
        self.root._program_ref = None
        _remove_from_stack(self)
        logger.debug("program torn down")

    def get_root(self) -> SNode:
        self.check_alive()
        return self.root

    def layout(self, func: Callable[[SNode], object]) -> SNode:
        """Declare the layout tree under the root, then seal it."""
        self.check_alive()
        func(self.root)
        return seal_layout(self.root)

    @property
    def storage(self) -> FieldStorage:
        self.check_alive()
        if self._storage is None:
            if not self.root.is_sealed:
                raise TlangContractError("Layout must be sealed before fields are accessed")
            self._storage = FieldStorage(self.root)
            logger.debug("materialized %d field(s)", len(self._storage.leaves))
        return self._storage

    def storage_for(self, ir: KernelIR) -> FieldStorage:
        if not ir.fields and not self.root.is_sealed:
            return FieldStorage(None)
        return self.storage

    def read_field(self, var: GlobalVariableExpression, indices: tuple[int, ...]):
        storage = self.storage
        return storage.read(storage.leaf_of(var).id, indices).item()

    def write_field(self, var: GlobalVariableExpression, indices: tuple[int, ...], value) -> None:
        storage = self.storage
        storage.write(storage.leaf_of(var).id, indices, value)

    def is_active(self, var: GlobalVariableExpression, *indices: int) -> bool:
        storage = self.storage
        return storage.is_active(storage.leaf_of(var).id, tuple(int(i) for i in indices))

    def field_array(self, var: GlobalVariableExpression):
        storage = self.storage
        return storage.to_array(storage.leaf_of(var).id)

    def kernel(self, name: str, arg_types: tuple = ()) -> KernelProxy:
        self.check_alive()
        return KernelProxy(self, name, tuple(as_data_type(dt) for dt in arg_types))

    def define_kernel(self, name: str, func: Callable[..., object], *, arg_types: tuple = ()) -> Kernel:
        self.check_alive()
        kernel = Kernel(self, name, tuple(as_data_type(dt) for dt in arg_types), next(self._kernel_ids))
        builder = self.builder
        with self.activated():
            builder.enter_root(kernel.body)
            try:
                func(*kernel.arg_exprs())
                builder.exit_root()
            except Exception as err:
                builder.reset()
                kernel.state = KernelState.FAILED
                logger.debug("definition of kernel %s aborted: %s", name, err)
                raise
        kernel.state = KernelState.DEFINED
        self.kernels[name] = kernel
        logger.debug("defined kernel %s (#%d, %d top-level stmts)", name, kernel.id, len(kernel.body))
        return kernel

    def record_cache_lookup(self, *, hit: bool) -> None:
        self._cache_stats["hits" if hit else "misses"] += 1

    def record_invocation(self, name: str, seconds: float) -> None:
        entry = self._profile.setdefault(name, {"calls": 0, "total_s": 0.0})
        entry["calls"] += 1
        entry["total_s"] += seconds

    def compile_cache_stats(self, *, reset: bool = False) -> dict[str, float | int]:
        hits = self._cache_stats["hits"]
        misses = self._cache_stats["misses"]
        total = hits + misses
        stats: dict[str, float | int] = {
            "hits": hits,
            "misses": misses,
            "size": sum(1 for kernel in self.kernels.values() if kernel._compiled is not None),
            "hit_rate": float(hits / total) if total else 0.0,
        }
        if reset:
            self._cache_stats["hits"] = 0
            self._cache_stats["misses"] = 0
        return stats

    def profiler_stats(self, *, reset: bool = False) -> dict[str, dict[str, float]]:
        stats = {name: dict(entry) for name, entry in self._profile.items()}
        if reset:
            self.profiler_clear()
        return stats

    def profiler_print(self, file=None) -> None:
        out = file if file is not None else sys.stdout
        for name, entry in sorted(self._profile.items()):
            calls = int(entry["calls"])
            total_ms = entry["total_s"] * 1000.0
            mean_ms = total_ms / calls if calls else 0.0
            print(f"{name}: {calls} call(s), total {total_ms:.3f} ms, mean {mean_ms:.3f} ms", file=out)

    def profiler_clear(self) -> None:
        self._profile.clear()


def _remove_from_stack(program: Program) -> None:
    for idx in range(len(_PROGRAM_STACK) - 1, -1, -1):
        if _PROGRAM_STACK[idx] is program:
            del _PROGRAM_STACK[idx]
            return


def get_current_program() -> Program:
    if not _PROGRAM_STACK:
        raise TlangProgramError("No current Program; use `with Program():` or Program.activated()")
    return _PROGRAM_STACK[-1]


def current_ast_builder() -> ASTBuilder:
    return get_current_program().builder


def current_compile_config() -> CompileConfig:
    return get_current_program().config
