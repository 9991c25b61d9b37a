from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for kernel execution tests")
class KernelExecutionTests(unittest.TestCase):
    def _program(self):
        from tlang_jax import Arch, CompileConfig, Program

        return Program(CompileConfig(arch=Arch.x86_64))

    def test_range_for_fills_dense_field(self) -> None:
        from tlang_jax import DataType, Index, global_new
        from tlang_jax import lang

        with self._program() as prog:
            x = global_new("x", DataType.i32)
            prog.layout(lambda root: root.dense(Index(0), 10).place(x))

            def double_index():
                i = lang.make_id_expr("i")
                lang.begin_range_for(i, 0, 10)
                lang.enter_body()
                lang.expr_assign(x[i], i * 2)
                lang.pop_scope()

            kernel = prog.kernel("double_index").define(double_index)
            kernel()
            self.assertEqual([x.val(n) for n in range(10)], [2 * n for n in range(10)])

    def test_if_on_kernel_argument_picks_branch(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            y = global_new("y", DataType.i32)
            prog.layout(lambda root: root.place(y))

            def sign(x):
                lang.begin_frontend_if(x > 0)
                lang.begin_frontend_if_true()
                lang.expr_assign(y[()], 1)
                lang.pop_scope()
                lang.begin_frontend_if_false()
                lang.expr_assign(y[()], 2)
                lang.pop_scope()

            kernel = prog.kernel("sign", arg_types=(DataType.i32,)).define(sign)
            kernel(5)
            self.assertEqual(y.val(), 1)
            kernel(-3)
            self.assertEqual(y.val(), 2)

    def test_struct_for_visits_every_dense_element(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            a = global_new("a", DataType.i32)
            count = global_new("count", DataType.i32)

            def declare(root):
                root.dense([0, 1], [3, 4]).place(a)
                root.place(count)

            prog.layout(declare)

            def fill():
                i, j = lang.make_id_expr("i"), lang.make_id_expr("j")
                with lang.begin_frontend_struct_for([i, j], a):
                    lang.expr_assign(a[i, j], i * 10 + j)
                    lang.expr_assign(count[()], count[()] + 1)

            prog.kernel("fill").define(fill)()
            self.assertEqual(count.val(), 12)
            self.assertEqual(a.val(2, 3), 23)
            self.assertEqual(a.val(1, 0), 10)

    def test_struct_for_over_pointer_visits_only_written_cells(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            s = global_new("s", DataType.i32)
            visits = global_new("visits", DataType.i32)

            def declare(root):
                root.pointer(0, 16).place(s)
                root.place(visits)

            prog.layout(declare)
            s.set_val(5, 3)
            s.set_val(7, 13)
            self.assertTrue(prog.is_active(s, 3))
            self.assertFalse(prog.is_active(s, 4))
            self.assertEqual(s.val(4), 0)

            def scale():
                i = lang.make_id_expr("i")
                lang.begin_frontend_struct_for([i], s)
                lang.expr_assign(s[i], s[i] * 2)
                lang.expr_assign(visits[()], visits[()] + 1)
                lang.end_frontend_range_for()

            prog.kernel("scale").define(scale)()
            self.assertEqual(visits.val(), 2)
            self.assertEqual(s.val(3), 10)
            self.assertEqual(s.val(13), 14)

    def test_pointer_cell_activates_whole_block(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            s = global_new("s", DataType.f32)
            visits = global_new("visits", DataType.i32)

            def declare(root):
                root.pointer(0, 4).dense(0, 4).place(s)
                root.place(visits)

            prog.layout(declare)
            s.set_val(1.5, 6)
            self.assertTrue(prog.is_active(s, 4))
            self.assertFalse(prog.is_active(s, 8))

            def count_active():
                i = lang.make_id_expr("i")
                with lang.begin_frontend_struct_for([i], s):
                    lang.expr_assign(visits[()], visits[()] + 1)

            prog.kernel("count_active").define(count_active)()
            self.assertEqual(visits.val(), 4)
            self.assertAlmostEqual(s.val(6), 1.5)

    def test_kernel_writes_activate_pointer_cells(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            s = global_new("s", DataType.i32)
            prog.layout(lambda root: root.pointer(0, 8).place(s))

            def touch(k):
                lang.expr_assign(s[k], 1)

            kernel = prog.kernel("touch", arg_types=("i32",)).define(touch)
            kernel(2)
            kernel(5)
            active = [n for n in range(8) if prog.is_active(s, n)]
            self.assertEqual(active, [2, 5])

    def test_arity_mismatch_fails_at_compile(self) -> None:
        from tlang_jax import DataType, KernelState, TlangArityError, TlangKernelError, global_new
        from tlang_jax import lang

        with self._program() as prog:
            grid = global_new("grid", DataType.f32)
            prog.layout(lambda root: root.dense([0, 1], [4, 4]).place(grid))

            for indices in ((), (0,), (0, 0, 0)):
                with self.subTest(arity=len(indices)):
                    def bad():
                        lang.expr_assign(grid[indices], 1.0)

                    kernel = prog.kernel(f"bad{len(indices)}").define(bad)
                    self.assertEqual(kernel.state, KernelState.DEFINED)
                    with self.assertRaises(TlangKernelError) as ctx:
                        kernel()
                    self.assertIsInstance(ctx.exception.__cause__, TlangArityError)
                    self.assertEqual(ctx.exception.stage, "compile")
                    self.assertEqual(kernel.state, KernelState.FAILED)

    def test_sixty_four_bit_fields_keep_wide_values(self) -> None:
        from tlang_jax import DataType, TlangRuntimeError, global_new
        from tlang_jax import lang

        with self._program() as prog:
            big = global_new("big", DataType.i64)
            wide = global_new("wide", DataType.f64)

            def declare(root):
                root.place(big)
                root.place(wide)

            prog.layout(declare)

            def widen():
                lang.expr_assign(big[()], lang.value_cast(2**20, DataType.i64) * 2**20)
                lang.expr_assign(wide[()], lang.value_cast(1, DataType.f64) / 3)

            prog.kernel("widen").define(widen)()
            self.assertEqual(big.val(), 2**40)
            self.assertEqual(wide.val(), 1 / 3)

            big.set_val(2**40 + 1)
            self.assertEqual(big.val(), 2**40 + 1)
            with self.assertRaises(TlangRuntimeError):
                big.set_val(2**70)

    def test_bool_operands_are_widened_for_arithmetic(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            y = global_new("y", DataType.i32)
            z = global_new("z", DataType.i32)

            def declare(root):
                root.place(y)
                root.place(z)

            prog.layout(declare)

            def add_bools():
                lang.expr_assign(y[()], lang.make_constant_expr(True) + True)
                lang.expr_assign(z[()], -lang.make_constant_expr(True))

            prog.kernel("add_bools").define(add_bools)()
            self.assertEqual(y.val(), 2)
            self.assertEqual(z.val(), -1)

    def test_range_bound_from_argument_and_float_promotion(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            h = global_new("h", DataType.f32)
            prog.layout(lambda root: root.dense(0, 8).place(h))

            def halves(n):
                i = lang.make_id_expr("i")
                with lang.begin_frontend_range_for(i, 0, n):
                    lang.expr_assign(h[i], i * 0.5)

            prog.kernel("halves", arg_types=(DataType.i32,)).define(halves)(4)
            self.assertAlmostEqual(h.val(3), 1.5)
            self.assertEqual(h.val(4), 0.0)

    def test_integer_division_truncates(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            q = global_new("q", DataType.i32)
            r = global_new("r", DataType.i32)

            def declare(root):
                root.place(q)
                root.place(r)

            prog.layout(declare)

            def divide(a, b):
                lang.expr_assign(q[()], a / b)
                lang.expr_assign(r[()], a % b)

            prog.kernel("divide", arg_types=(DataType.i32, DataType.i32)).define(divide)(-7, 2)
            self.assertEqual(q.val(), -3)
            self.assertEqual(r.val(), -1)

    def test_local_variables(self) -> None:
        from tlang_jax import DataType, global_new
        from tlang_jax import lang

        with self._program() as prog:
            out = global_new("out", DataType.i32)
            prog.layout(lambda root: root.place(out))

            def accumulate():
                total = lang.expr_var(0, "total")
                i = lang.make_id_expr("i")
                with lang.begin_frontend_range_for(i, 1, 5):
                    lang.expr_assign(total, total + i)
                lang.expr_assign(out[()], total)

            prog.kernel("accumulate").define(accumulate)()
            self.assertEqual(out.val(), 10)

    def test_out_of_range_index_fails(self) -> None:
        from tlang_jax import DataType, TlangRuntimeError, global_new
        from tlang_jax import lang

        with self._program() as prog:
            x = global_new("x", DataType.i32)
            prog.layout(lambda root: root.dense(0, 10).place(x))

            def overflow():
                i = lang.make_id_expr("i")
                with lang.begin_frontend_range_for(i, 0, 11):
                    lang.expr_assign(x[i], i)

            kernel = prog.kernel("overflow").define(overflow)
            with self.assertRaises(TlangRuntimeError):
                kernel()
            with self.assertRaises(TlangRuntimeError):
                x.val(10)

    def test_argument_count_checked(self) -> None:
        from tlang_jax import DataType, TlangRuntimeError
        from tlang_jax import lang

        with self._program() as prog:
            def noop(a):
                lang.expr_var(a, "copy")

            kernel = prog.kernel("noop", arg_types=(DataType.i32,)).define(noop)
            with self.assertRaises(TlangRuntimeError):
                kernel()
            kernel(3)

    def test_print_writes_debug_line(self) -> None:
        import contextlib
        import io

        from tlang_jax import lang

        with self._program() as prog:
            def show():
                v = lang.expr_var(3, "v")
                lang.print_(v, "v")

            buf = io.StringIO()
            with contextlib.redirect_stdout(buf):
                prog.kernel("show").define(show)()
            self.assertEqual(buf.getvalue(), "[debug] v = 3\n")

    def test_host_access_after_teardown_fails(self) -> None:
        from tlang_jax import DataType, TlangProgramError, global_new

        with self._program() as prog:
            x = global_new("x", DataType.i32)
            prog.layout(lambda root: root.dense(0, 2).place(x))
            x.set_val(4, 1)
            self.assertEqual(x.val(1), 4)
        self.assertFalse(prog.alive)
        with self.assertRaises(TlangProgramError):
            x.val(1)
        with self.assertRaises(TlangProgramError):
            prog.kernel("late")

    def test_field_access_requires_sealed_layout(self) -> None:
        from tlang_jax import DataType, TlangContractError, global_new

        with self._program() as prog:
            x = global_new("x", DataType.i32)
            prog.get_root().dense(0, 2).place(x)
            with self.assertRaises(TlangContractError):
                x.val(0)


if __name__ == "__main__":
    unittest.main()
