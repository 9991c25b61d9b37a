from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required to import tlang_jax")
class ScopeStackTests(unittest.TestCase):
    def _builder(self):
        from tlang_jax import ASTBuilder, Block

        builder = ASTBuilder()
        root = Block(label="kernel k")
        builder.enter_root(root)
        return builder, root

    def test_pop_on_empty_stack_fails(self) -> None:
        from tlang_jax import ASTBuilder, TlangScopeError

        with self.assertRaises(TlangScopeError):
            ASTBuilder().pop_scope()

    def test_root_scope_cannot_be_popped_while_recording(self) -> None:
        from tlang_jax import TlangScopeError

        builder, root = self._builder()
        with self.assertRaises(TlangScopeError):
            builder.pop_scope()
        self.assertIs(builder.current_block, root)
        self.assertIs(builder.exit_root(), root)
        self.assertEqual(builder.depth, 0)

    def test_balanced_push_pop_restores_depth(self) -> None:
        from tlang_jax import Block

        builder, root = self._builder()
        inner = Block(label="inner")
        builder.create_scope(inner)
        self.assertEqual(builder.depth, 2)
        self.assertIs(builder.current_block, inner)
        self.assertIs(builder.pop_scope(), inner)
        self.assertEqual(builder.depth, 1)
        self.assertIs(builder.current_block, root)

    def test_guard_pops_itself_as_context_manager(self) -> None:
        from tlang_jax.expr import make_id_expr

        builder, root = self._builder()
        i = make_id_expr("i")
        builder.begin_range_for(i, 0, 4)
        with builder.enter_body() as body:
            self.assertIs(builder.current_block, body)
            builder.expr_var(i * 2, "twice")
        self.assertIs(builder.current_block, root)
        self.assertEqual(len(body), 2)

    def test_exit_root_with_open_scope_fails(self) -> None:
        from tlang_jax import TlangScopeError
        from tlang_jax.expr import make_id_expr

        builder, _ = self._builder()
        builder.begin_frontend_range_for(make_id_expr("i"), 0, 3)
        with self.assertRaises(TlangScopeError):
            builder.exit_root()
        builder.end_frontend_range_for()
        builder.exit_root()

    def test_nested_kernel_definitions_rejected(self) -> None:
        from tlang_jax import Block, TlangScopeError

        builder, _ = self._builder()
        with self.assertRaises(TlangScopeError):
            builder.enter_root(Block())

    def test_insert_outside_kernel_fails(self) -> None:
        from tlang_jax import ASTBuilder, TlangScopeError

        with self.assertRaises(TlangScopeError):
            ASTBuilder().expr_alloca("x")

    def test_statement_owned_by_one_block(self) -> None:
        from tlang_jax import Block, TlangContractError
        from tlang_jax.expr import make_id_expr
        from tlang_jax.stmt import make_frontend_assign_stmt

        stmt = make_frontend_assign_stmt(make_id_expr("a"), 1)
        first = Block()
        first.insert(stmt)
        self.assertIs(stmt.parent_block, first)
        with self.assertRaises(TlangContractError):
            Block().insert(stmt)

    def test_get_last_stmt(self) -> None:
        from tlang_jax import TlangScopeError
        from tlang_jax.stmt import FrontendAllocaStmt

        builder, _ = self._builder()
        with self.assertRaises(TlangScopeError):
            builder.get_last_stmt()
        builder.expr_alloca("tmp")
        self.assertIsInstance(builder.get_last_stmt(), FrontendAllocaStmt)

    def test_reset_clears_floor(self) -> None:
        builder, _ = self._builder()
        builder.reset()
        self.assertEqual(builder.depth, 0)
        self.assertIsNone(builder.last_loop)


if __name__ == "__main__":
    unittest.main()
