"""tlang-jax public API."""

from .config import Arch, CompileConfig, default_compile_config
from .dtypes import DataType, data_type_name, data_type_short_name
from .errors import (
    TlangArityError,
    TlangContractError,
    TlangError,
    TlangKernelError,
    TlangLayoutSealedError,
    TlangLoweringError,
    TlangLvalueError,
    TlangProgramError,
    TlangRuntimeError,
    TlangScopeError,
    TlangTypeError,
    TlangUnsupportedError,
)
from .expr import (
    BinaryOpType,
    Expression,
    ExprGroup,
    SourceLocation,
    UnaryOpType,
    global_new,
    is_lvalue,
    make_binary_op_expr,
    make_constant_expr,
    make_global_ptr_expr,
    make_id_expr,
    make_unary_op_expr,
    subscript,
    value_cast,
)
from .builder import ASTBuilder, ScopeGuard
from .snode import Index, SNode, SNodeType, seal_layout
from .stmt import Block, CacheMode, ScheduleKind
from .program import (
    Kernel,
    KernelProxy,
    KernelState,
    Program,
    current_ast_builder,
    current_compile_config,
    get_current_program,
)

__all__ = [
    "Arch",
    "ASTBuilder",
    "BinaryOpType",
    "Block",
    "CacheMode",
    "CompileConfig",
    "DataType",
    "ExprGroup",
    "Expression",
    "Index",
    "Kernel",
    "KernelProxy",
    "KernelState",
    "Program",
    "SNode",
    "SNodeType",
    "ScheduleKind",
    "ScopeGuard",
    "SourceLocation",
    "TlangArityError",
    "TlangContractError",
    "TlangError",
    "TlangKernelError",
    "TlangLayoutSealedError",
    "TlangLoweringError",
    "TlangLvalueError",
    "TlangProgramError",
    "TlangRuntimeError",
    "TlangScopeError",
    "TlangTypeError",
    "TlangUnsupportedError",
    "UnaryOpType",
    "current_ast_builder",
    "current_compile_config",
    "data_type_name",
    "data_type_short_name",
    "default_compile_config",
    "get_current_program",
    "global_new",
    "is_lvalue",
    "make_binary_op_expr",
    "make_constant_expr",
    "make_global_ptr_expr",
    "make_id_expr",
    "make_unary_op_expr",
    "seal_layout",
    "subscript",
    "value_cast",
]
