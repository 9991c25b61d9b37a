from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required to import tlang_jax")
class LangSurfaceTests(unittest.TestCase):
    def test_exports_resolve(self) -> None:
        import tlang_jax
        from tlang_jax import lang

        for name in lang.__all__:
            self.assertTrue(hasattr(lang, name), name)
        for name in tlang_jax.__all__:
            self.assertTrue(hasattr(tlang_jax, name), name)

    def test_free_functions_need_a_current_program(self) -> None:
        from tlang_jax import TlangProgramError
        from tlang_jax import lang

        with self.assertRaises(TlangProgramError):
            lang.expr_alloca("x")
        with self.assertRaises(TlangProgramError):
            lang.parallelize(2)

    def test_recording_outside_kernel_definition_fails(self) -> None:
        from tlang_jax import Program, TlangScopeError
        from tlang_jax import lang

        with Program():
            with self.assertRaises(TlangScopeError):
                lang.expr_alloca("x")
            with self.assertRaises(TlangScopeError):
                lang.pop_scope()

    def test_layout_and_create_kernel(self) -> None:
        from tlang_jax import Arch, CompileConfig, DataType, Program, global_new
        from tlang_jax import lang

        with Program(CompileConfig(arch=Arch.x86_64)):
            self.assertEqual(lang.current_compile_config().arch, Arch.x86_64)
            v = global_new("v", DataType.f32)
            root = lang.layout(lambda r: r.dense(0, 3).place(v))
            self.assertTrue(root.is_sealed)

            @lang.create_kernel("ramp")
            def ramp():
                i = lang.make_id_expr("i")
                lang.begin_range_for(i, 0, 3)
                lang.enter_body()
                lang.expr_assign(v[i], lang.value_cast(i, DataType.f32) + 0.25)
                lang.pop_scope()

            ramp()
            self.assertAlmostEqual(v.val(2), 2.25)

    def test_insert_and_store_statement(self) -> None:
        from tlang_jax import Arch, CompileConfig, DataType, Program, global_new
        from tlang_jax import lang

        with Program(CompileConfig(arch=Arch.x86_64)) as prog:
            w = global_new("w", DataType.i32)
            prog.layout(lambda r: r.dense(0, 2).place(w))

            def store():
                lang.insert(lang.make_global_store(w[1], 9))

            prog.kernel("store").define(store)()
            self.assertEqual(w.val(1), 9)
            self.assertEqual(w.val(0), 0)


if __name__ == "__main__":
    unittest.main()
