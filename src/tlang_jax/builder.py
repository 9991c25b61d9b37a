"""Statement recording through an explicit scope stack.

Host control flow runs eagerly while a kernel is being defined, so every
``if``/``for`` the host wants recorded is mirrored by a push of the construct's
child block and exactly one matching pop. Nothing unwinds implicitly.
"""

from __future__ import annotations

import logging

from .errors import TlangArityError, TlangLvalueError, TlangScopeError, TlangTypeError
from .expr import (
    Expression,
    ExprGroup,
    IdExpression,
    as_expr_group,
    load_if_ptr,
    make_id_expr,
)
from .stmt import (
    Block,
    CacheMode,
    FrontendAllocaStmt,
    FrontendAssignStmt,
    FrontendForStmt,
    FrontendIfStmt,
    FrontendPrintStmt,
    ScheduleKind,
    Stmt,
)

logger = logging.getLogger(__name__)


class ScopeGuard:
    """One scope stack entry; usable as a context manager that pops itself."""

    def __init__(self, builder: "ASTBuilder", block: Block) -> None:
        self.builder = builder
        self.block = block

    def __enter__(self) -> Block:
        return self.block

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.builder.stack and self.builder.stack[-1] is self:
            self.builder.pop_scope()
        elif exc_type is None:
            raise TlangScopeError(f"Scope for {self.block!r} is no longer on top of the scope stack")
        return False


class ASTBuilder:
    def __init__(self) -> None:
        self.stack: list[ScopeGuard] = []
        # Number of bottom entries that belong to the enclosing kernel definition.
        self._floor = 0
        self._last_loop: FrontendForStmt | None = None

    @property
    def depth(self) -> int:
        return len(self.stack)

    @property
    def current_block(self) -> Block:
        if not self.stack:
            raise TlangScopeError("No active scope; statements can only be recorded inside a kernel definition")
        return self.stack[-1].block

    def create_scope(self, block: Block) -> ScopeGuard:
        guard = ScopeGuard(self, block)
        self.stack.append(guard)
        logger.debug("push scope %r (depth %d)", block, len(self.stack))
        return guard

    def pop_scope(self) -> Block:
        if not self.stack:
            raise TlangScopeError("pop_scope called on an empty scope stack")
        if len(self.stack) <= self._floor:
            raise TlangScopeError("pop_scope would close the kernel's outermost scope")
        guard = self.stack.pop()
        owner = guard.block.owner
        if isinstance(owner, FrontendIfStmt) and owner.open_branch == guard.block.label:
            owner.open_branch = None
        logger.debug("pop scope %r (depth %d)", guard.block, len(self.stack))
        return guard.block

    end_scope = pop_scope

    def enter_root(self, block: Block) -> ScopeGuard:
        """Pin ``block`` as the outermost scope of a kernel definition."""
        if self.stack:
            raise TlangScopeError("Kernel definitions cannot be nested")
        guard = self.create_scope(block)
        self._floor = 1
        self._last_loop = None
        return guard

    def exit_root(self) -> Block:
        if len(self.stack) != 1:
            open_scopes = len(self.stack) - 1
            raise TlangScopeError(f"Kernel definition ended with {open_scopes} unclosed scope(s)")
        self._floor = 0
        return self.pop_scope()

    def reset(self) -> None:
        """Drop every scope; used to recover after an aborted definition."""
        self.stack.clear()
        self._floor = 0
        self._last_loop = None

    def insert(self, stmt: Stmt) -> Stmt:
        self.current_block.insert(stmt)
        if isinstance(stmt, FrontendForStmt):
            self._last_loop = stmt
        return stmt

    def get_last_stmt(self) -> Stmt:
        last = self.current_block.last()
        if last is None:
            raise TlangScopeError("No statement has been recorded in the current scope")
        return last

    def expr_alloca(self, name: str = "") -> IdExpression:
        var = make_id_expr(name)
        self.insert(FrontendAllocaStmt(ident=var.ident))
        return var

    def expr_assign(self, lhs: Expression, rhs) -> FrontendAssignStmt:
        if not isinstance(lhs, Expression) or not lhs.is_lvalue():
            shown = lhs.serialize() if isinstance(lhs, Expression) else repr(lhs)
            raise TlangLvalueError(f"Cannot assign to non-l-value {shown}")
        stmt = FrontendAssignStmt(lhs=lhs, rhs=load_if_ptr(rhs))
        self.insert(stmt)
        return stmt

    def expr_var(self, value, name: str = "") -> IdExpression:
        var = self.expr_alloca(name)
        self.expr_assign(var, value)
        return var

    def print_(self, expr, label: str = "") -> FrontendPrintStmt:
        stmt = FrontendPrintStmt(expr=load_if_ptr(expr), label=label)
        self.insert(stmt)
        return stmt

    def begin_if(self, cond) -> FrontendIfStmt:
        stmt = FrontendIfStmt(cond=load_if_ptr(cond))
        self.insert(stmt)
        return stmt

    def _last_if(self, branch: str) -> FrontendIfStmt:
        block = self.current_block
        last = block.last()
        if not isinstance(last, FrontendIfStmt):
            owner = block.owner
            if isinstance(owner, FrontendIfStmt) and owner.open_branch is not None:
                raise TlangScopeError(
                    f"Cannot enter the {branch} branch: the {owner.open_branch} branch of "
                    f"'{owner.serialize()}' is still open"
                )
            raise TlangScopeError(f"Entering the {branch} branch requires an If as the last recorded statement")
        if last.open_branch is not None:
            raise TlangScopeError(f"The {last.open_branch} branch of '{last.serialize()}' is still open")
        return last

    def enter_true_branch(self) -> ScopeGuard:
        stmt = self._last_if("true")
        stmt.open_branch = stmt.true_statements.label
        return self.create_scope(stmt.true_statements)

    def enter_false_branch(self) -> ScopeGuard:
        stmt = self._last_if("false")
        stmt.open_branch = stmt.false_statements.label
        return self.create_scope(stmt.false_statements)

    def begin_range_for(self, loop_var: IdExpression, begin, end) -> FrontendForStmt:
        stmt = FrontendForStmt.range_for(loop_var, load_if_ptr(begin), load_if_ptr(end))
        self.insert(stmt)
        return stmt

    def begin_struct_for(self, indices: "ExprGroup | tuple | list", global_var: Expression) -> FrontendForStmt:
        group = as_expr_group(indices)
        if len(group) == 0:
            raise TlangArityError("Struct-for needs at least one loop index")
        stmt = FrontendForStmt.struct_for(group, global_var)
        snode = stmt.global_var.snode()
        if snode is not None and snode.num_active_indices != len(group):
            raise TlangArityError(
                f"Struct-for over {snode.path()} needs {snode.num_active_indices} indices, got {len(group)}"
            )
        self.insert(stmt)
        return stmt

    def enter_body(self) -> ScopeGuard:
        last = self.current_block.last()
        if not isinstance(last, FrontendForStmt):
            raise TlangScopeError("enter_body requires a For as the last recorded statement")
        return self.create_scope(last.body)

    def begin_frontend_range_for(self, loop_var: IdExpression, begin, end) -> ScopeGuard:
        self.begin_range_for(loop_var, begin, end)
        return self.enter_body()

    def begin_frontend_struct_for(self, indices, global_var: Expression) -> ScopeGuard:
        self.begin_struct_for(indices, global_var)
        return self.enter_body()

    def end_frontend_range_for(self) -> Block:
        return self.pop_scope()

    @property
    def last_loop(self) -> FrontendForStmt | None:
        return self._last_loop

    def _schedule_target(self, hint: str) -> FrontendForStmt:
        if self._last_loop is None:
            raise TlangScopeError(f"{hint} needs a recorded loop to attach to")
        return self._last_loop

    @staticmethod
    def _positive_int(hint: str, value) -> int:
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise TlangTypeError(f"{hint} expects a positive int, got {value!r}")
        return value

    def parallelize(self, num_threads: int) -> FrontendForStmt:
        loop = self._schedule_target("parallelize")
        loop.schedule.set(ScheduleKind.parallelize, self._positive_int("parallelize", num_threads))
        return loop

    def vectorize(self, width: int) -> FrontendForStmt:
        loop = self._schedule_target("vectorize")
        loop.schedule.set(ScheduleKind.vectorize, self._positive_int("vectorize", width))
        return loop

    def block_dim(self, size: int) -> FrontendForStmt:
        loop = self._schedule_target("block_dim")
        loop.schedule.set(ScheduleKind.block_dim, self._positive_int("block_dim", size))
        return loop

    def cache(self, mode: "CacheMode | str") -> FrontendForStmt:
        loop = self._schedule_target("cache")
        try:
            mode = CacheMode(mode)
        except ValueError:
            raise TlangTypeError(f"Unknown cache mode {mode!r}") from None
        loop.schedule.set(ScheduleKind.cache, mode)
        return loop
