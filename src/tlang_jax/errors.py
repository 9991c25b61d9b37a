"""Structured error types for recording, lowering and kernel execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .expr import SourceLocation


class TlangError(Exception):
    """Base class for structured tlang-jax errors."""


class TlangProgramError(TlangError):
    """No current Program, or a Program used after teardown."""


class TlangContractError(TlangError):
    """The recording logic broke a construction-time contract."""


class TlangScopeError(TlangContractError):
    """Unbalanced or misdirected scope stack operation."""


class TlangLvalueError(TlangContractError):
    """Assignment target is not an l-value."""


class TlangArityError(TlangContractError):
    """Index group length does not match the field's active indices."""


class TlangLayoutSealedError(TlangContractError):
    """Structural mutation of a sealed layout tree."""


class TlangTypeError(TlangContractError):
    """Value cannot be used where an expression or data type is expected."""


@dataclass(frozen=True)
class TlangLoweringError(TlangError):
    """Failure while lowering a recorded kernel body."""

    message: str
    site: "SourceLocation | None" = None
    subject: str | None = None

    def __str__(self) -> str:
        subject = ""
        if self.subject is not None:
            subject = f" [{self.subject}]"
        site = ""
        if self.site is not None:
            site = f" (recorded at {self.site})"
        return f"{self.message}{subject}{site}"


@dataclass(frozen=True)
class TlangUnsupportedError(TlangLoweringError):
    """Construct exists in the IR but the selected target cannot lower it."""


class TlangRuntimeError(TlangError):
    """Failure while executing a compiled kernel."""


@dataclass(frozen=True)
class TlangKernelError(TlangError):
    """Kernel-scoped failure; the underlying error is chained as ``__cause__``."""

    kernel: str
    stage: str
    message: str
    arch: str | None = None

    def __str__(self) -> str:
        arch = f" for {self.arch}" if self.arch is not None else ""
        return f"kernel {self.kernel!r} failed during {self.stage}{arch}: {self.message}"
