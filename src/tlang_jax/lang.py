"""Free-function surface bound to the current Program.

These are the entry points a host script uses while a kernel is being
defined; each forwards to the current Program's builder or layout root.
"""

from __future__ import annotations

from typing import Callable

from .config import CompileConfig, default_compile_config
from .dtypes import DataType, data_type_name, data_type_short_name
from .expr import (
    Expression,
    ExprGroup,
    IdExpression,
    expr_add,
    expr_cmp_eq,
    expr_cmp_ge,
    expr_cmp_gt,
    expr_cmp_le,
    expr_cmp_lt,
    expr_cmp_ne,
    expr_div,
    expr_index,
    expr_mod,
    expr_mul,
    expr_sub,
    global_new,
    is_lvalue,
    make_binary_op_expr,
    make_constant_expr,
    make_global_load,
    make_global_ptr_expr,
    make_id_expr,
    make_unary_op_expr,
    subscript,
    value_cast,
)
from .program import KernelProxy, current_ast_builder, current_compile_config, get_current_program
from .snode import SNode
from .stmt import (
    CacheMode,
    FrontendAssignStmt,
    FrontendForStmt,
    FrontendIfStmt,
    FrontendPrintStmt,
    make_frontend_assign_stmt,
    make_global_load_stmt,
    make_global_store,
    make_global_store_stmt,
)


def expr_alloca(name: str = "") -> IdExpression:
    return current_ast_builder().expr_alloca(name)


def expr_var(value, name: str = "") -> IdExpression:
    return current_ast_builder().expr_var(value, name)


def expr_assign(lhs: Expression, rhs) -> FrontendAssignStmt:
    return current_ast_builder().expr_assign(lhs, rhs)


def print_(expr, label: str = "") -> FrontendPrintStmt:
    return current_ast_builder().print_(expr, label)


def begin_frontend_if(cond) -> FrontendIfStmt:
    return current_ast_builder().begin_if(cond)


def begin_frontend_if_true():
    return current_ast_builder().enter_true_branch()


def begin_frontend_if_false():
    return current_ast_builder().enter_false_branch()


def begin_range_for(loop_var: IdExpression, begin, end) -> FrontendForStmt:
    return current_ast_builder().begin_range_for(loop_var, begin, end)


def begin_struct_for(indices, global_var: Expression) -> FrontendForStmt:
    return current_ast_builder().begin_struct_for(indices, global_var)


def enter_body():
    return current_ast_builder().enter_body()


def begin_frontend_range_for(loop_var: IdExpression, begin, end):
    return current_ast_builder().begin_frontend_range_for(loop_var, begin, end)


def begin_frontend_struct_for(indices, global_var: Expression):
    return current_ast_builder().begin_frontend_struct_for(indices, global_var)


def end_frontend_range_for():
    return current_ast_builder().end_frontend_range_for()


def insert(stmt):
    return current_ast_builder().insert(stmt)


def pop_scope():
    return current_ast_builder().pop_scope()


def parallelize(num_threads: int) -> FrontendForStmt:
    return current_ast_builder().parallelize(num_threads)


def vectorize(width: int) -> FrontendForStmt:
    return current_ast_builder().vectorize(width)


def block_dim(size: int) -> FrontendForStmt:
    return current_ast_builder().block_dim(size)


def cache(mode: "CacheMode | str") -> FrontendForStmt:
    return current_ast_builder().cache(mode)


def get_root() -> SNode:
    return get_current_program().get_root()


def layout(func: Callable[[SNode], object]) -> SNode:
    return get_current_program().layout(func)


def create_kernel(name: str, arg_types: tuple = ()) -> KernelProxy:
    return get_current_program().kernel(name, arg_types)


__all__ = [
    "CompileConfig",
    "DataType",
    "ExprGroup",
    "begin_frontend_if",
    "begin_frontend_if_false",
    "begin_frontend_if_true",
    "begin_frontend_range_for",
    "begin_frontend_struct_for",
    "begin_range_for",
    "begin_struct_for",
    "block_dim",
    "cache",
    "create_kernel",
    "current_compile_config",
    "data_type_name",
    "data_type_short_name",
    "default_compile_config",
    "end_frontend_range_for",
    "enter_body",
    "expr_add",
    "expr_alloca",
    "expr_assign",
    "expr_cmp_eq",
    "expr_cmp_ge",
    "expr_cmp_gt",
    "expr_cmp_le",
    "expr_cmp_lt",
    "expr_cmp_ne",
    "expr_div",
    "expr_index",
    "expr_mod",
    "expr_mul",
    "expr_sub",
    "expr_var",
    "get_current_program",
    "get_root",
    "insert",
    "global_new",
    "is_lvalue",
    "layout",
    "make_binary_op_expr",
    "make_constant_expr",
    "make_frontend_assign_stmt",
    "make_global_load",
    "make_global_load_stmt",
    "make_global_ptr_expr",
    "make_global_store",
    "make_global_store_stmt",
    "make_id_expr",
    "make_unary_op_expr",
    "parallelize",
    "pop_scope",
    "print_",
    "subscript",
    "value_cast",
    "vectorize",
]
