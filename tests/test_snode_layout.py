from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required to import tlang_jax")
class SNodeLayoutTests(unittest.TestCase):
    def test_leaf_inherits_axes_of_its_path(self) -> None:
        from tlang_jax import DataType, Index, SNode, SNodeType, global_new

        x = global_new("x", DataType.f32)
        root = SNode()
        block = root.dense([Index(0), Index(1)], [4, 8])
        self.assertIs(block.place(x), block)
        leaf = x.snode()
        self.assertEqual(leaf.type, SNodeType.place)
        self.assertIs(leaf.expr, x)
        self.assertEqual(leaf.data_type(), DataType.f32)
        self.assertEqual(leaf.num_active_indices, 2)
        self.assertEqual(leaf.shape, (4, 8))
        self.assertEqual(leaf.depth, 2)
        self.assertIs(leaf.root(), root)

    def test_nested_containers_multiply_extents(self) -> None:
        from tlang_jax import DataType, SNode, global_new

        x = global_new("x", DataType.i32)
        SNode().dense(0, 4).pointer(0, 8).dense(1, 3).place(x)
        leaf = x.snode()
        self.assertEqual(leaf.axis_extents, {0: 32, 1: 3})
        self.assertEqual(leaf.physical_indices, (0, 1))
        self.assertEqual(leaf.shape, (32, 3))

    def test_zero_dimensional_leaf(self) -> None:
        from tlang_jax import DataType, SNode, global_new

        y = global_new("y", DataType.i32)
        root = SNode()
        root.place(y)
        self.assertEqual(y.snode().num_active_indices, 0)
        self.assertEqual(y.snode().shape, ())

    def test_place_after_seal_fails(self) -> None:
        from tlang_jax import DataType, SNode, TlangLayoutSealedError, global_new, seal_layout

        root = SNode()
        dense = root.dense(0, 16)
        dense.place(global_new("x", DataType.i32))
        seal_layout(root)
        self.assertTrue(dense.is_sealed)
        with self.assertRaises(TlangLayoutSealedError):
            dense.place(global_new("late", DataType.i32))
        with self.assertRaises(TlangLayoutSealedError):
            root.dense(1, 2)
        with self.assertRaises(TlangLayoutSealedError):
            root.pointer()

    def test_double_seal_fails(self) -> None:
        from tlang_jax import SNode, TlangLayoutSealedError, seal_layout

        root = SNode()
        seal_layout(root)
        with self.assertRaises(TlangLayoutSealedError):
            seal_layout(root)

    def test_only_root_can_be_sealed(self) -> None:
        from tlang_jax import SNode, TlangContractError, seal_layout

        with self.assertRaises(TlangContractError):
            seal_layout(SNode().dense(0, 2))

    def test_container_contract_checks(self) -> None:
        from tlang_jax import DataType, SNode, TlangContractError, TlangTypeError, global_new

        root = SNode()
        with self.assertRaises(TlangContractError):
            root.dense([0, 1], [4])
        with self.assertRaises(TlangContractError):
            root.dense(0, 0)
        with self.assertRaises(TlangContractError):
            root.dense([0, 0], [2, 2])
        with self.assertRaises(TlangTypeError):
            root.dense(-1, 2)
        with self.assertRaises(TlangContractError):
            root.place()
        with self.assertRaises(TlangTypeError):
            root.place("x")
        x = global_new("x", DataType.i32)
        root.dense(0, 2).place(x)
        with self.assertRaises(TlangContractError):
            root.dense(0, 3).place(x)
        with self.assertRaises(TlangContractError):
            x.snode().dense(1, 2)

    def test_ids_are_unique_per_tree(self) -> None:
        from tlang_jax import DataType, SNode, global_new

        root = SNode()
        a = root.dense(0, 2)
        b = root.pointer(1, 3)
        b.place(global_new("p", DataType.f32))
        ids = [node.id for node in root.walk()]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(root.id, 0)
        self.assertEqual([node.id for node in root.children], [a.id, b.id])

    def test_path_describes_nesting(self) -> None:
        from tlang_jax import DataType, SNode, global_new

        x = global_new("x", DataType.i32)
        SNode().dense(0, 10).place(x)
        self.assertEqual(x.snode().path(), "root.dense(i0=10).place(@x)")

    def test_detached_tree_has_no_program(self) -> None:
        from tlang_jax import SNode, TlangProgramError

        with self.assertRaises(TlangProgramError):
            SNode().program()


if __name__ == "__main__":
    unittest.main()
