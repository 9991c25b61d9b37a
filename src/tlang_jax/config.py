"""Compile configuration consumed by kernel lowering."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from enum import Enum


class Arch(str, Enum):
    x86_64 = "x86_64"
    gpu = "gpu"


def _arch_from_env() -> Arch:
    raw = os.environ.get("TLANG_JAX_ARCH", Arch.x86_64.value).strip().lower()
    try:
        return Arch(raw)
    except ValueError:
        raise ValueError(f"TLANG_JAX_ARCH must be one of {[a.value for a in Arch]}, got {raw!r}") from None


@dataclass
class CompileConfig:
    """Target selection and debug switches.

    - `arch`: architecture kernels are lowered for; changing it forces
      recompilation on the next invocation.
    - `print_ir`: log the recorded and lowered IR whenever a kernel compiles.
    """

    arch: Arch = Arch.x86_64
    print_ir: bool = False

    def __post_init__(self) -> None:
        self.arch = Arch(self.arch)

    def fingerprint(self) -> tuple[object, ...]:
        # print_ir does not change generated code.
        return (Arch(self.arch).value,)

    def copy(self) -> "CompileConfig":
        return replace(self)


_DEFAULT_COMPILE_CONFIG = CompileConfig(
    arch=_arch_from_env(),
    print_ir=os.environ.get("TLANG_JAX_PRINT_IR", "0") == "1",
)


def default_compile_config() -> CompileConfig:
    """Process-wide defaults; every new Program starts from a copy."""
    return _DEFAULT_COMPILE_CONFIG
