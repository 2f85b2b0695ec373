from unittest import TestCase

import numpy as np

from scigrad import functional
from scigrad.errors import GraphError, ShapeMismatchError, UnknownVariableError
from scigrad.ops import OpKind
from scigrad.tensor import Context, Tensor
from scigrad.variables import VariableEnvironment


class TestContext(TestCase):
    def setUp(self) -> None:
        self.env = VariableEnvironment()
        self.env.set("w", np.ones((3, 4)))
        self.ctx = self.env.context()

    def test_node_ids_are_increasing_and_inputs_precede_consumers(self):
        x = self.ctx.placeholder("x", (None, 3))
        y = functional.relu(x @ self.ctx.variable("w")) + 1.0
        self.assertEqual(len(self.ctx), y.id + 1)
        for node in self.ctx:
            for input_id in node.inputs:
                self.assertLess(input_id, node.id)
        self.assertEqual([n.id for n in self.ctx], list(range(len(self.ctx))))

    def test_matmul_shape_inference_with_unresolved_batch(self):
        x = self.ctx.placeholder("x", (None, 3))
        out = x @ self.ctx.variable("w")
        self.assertEqual(out.shape, (None, 4))
        self.assertEqual(out.kind, OpKind.MATMUL)

    def test_matmul_shape_mismatch_is_reported_at_construction(self):
        x = self.ctx.placeholder("x", (None, 5))
        w = self.ctx.variable("w")
        would_be_id = len(self.ctx)
        with self.assertRaises(ShapeMismatchError) as cm:
            x @ w
        self.assertEqual(cm.exception.op, "matmul")
        self.assertEqual(cm.exception.node_id, would_be_id)
        self.assertEqual(cm.exception.expected, 5)
        self.assertEqual(cm.exception.actual, 3)
        # Nothing was appended
        self.assertEqual(len(self.ctx), would_be_id)

    def test_broadcast_shape_inference(self):
        a = self.ctx.placeholder("a", (None, 1, 3))
        b = self.ctx.constant(np.zeros((4, 3)))
        self.assertEqual((a + b).shape, (None, 4, 3))
        with self.assertRaises(ShapeMismatchError):
            self.ctx.constant(np.zeros((2, 3))) * self.ctx.constant(np.zeros((4, 3)))

    def test_minus_one_is_normalized(self):
        x = self.ctx.placeholder("x", [-1, 2])
        self.assertEqual(x.shape, (None, 2))

    def test_placeholder_redeclaration(self):
        x1 = self.ctx.placeholder("x", (None, 2))
        x2 = self.ctx.placeholder("x", (-1, 2))
        self.assertEqual(x1, x2)
        with self.assertRaises(ShapeMismatchError):
            self.ctx.placeholder("x", (None, 3))

    def test_constant_is_read_only_copy(self):
        data = np.array([1.0, 2.0])
        c = self.ctx.constant(data)
        data[0] = 100.0
        self.assertEqual(c.node.value[0], 1.0)
        self.assertEqual(c.node.value.dtype, np.float32)
        with self.assertRaises(ValueError):
            c.node.value[0] = 5.0

    def test_ones_and_zeros_need_a_known_shape(self):
        self.assertEqual(self.ctx.ones((2, 3)).shape, (2, 3))
        self.assertTrue(np.all(self.ctx.zeros((2,)).node.value == 0))
        with self.assertRaises(ShapeMismatchError):
            self.ctx.ones((None, 3))

    def test_variable_snapshot(self):
        w = self.ctx.variable("w")
        self.assertEqual(w.kind, OpKind.VARIABLE)
        self.assertEqual(w.name, "w")
        self.assertEqual(w.shape, (3, 4))
        with self.assertRaises(UnknownVariableError):
            self.ctx.variable("missing")

    def test_variable_without_environment(self):
        with self.assertRaises(UnknownVariableError):
            Context().variable("w")

    def test_mixing_contexts_raises(self):
        other = Context()
        a = self.ctx.constant(1.0)
        b = other.constant(2.0)
        with self.assertRaises(GraphError):
            a + b
        with self.assertRaises(GraphError):
            self.ctx.node(b)


class TestTensorOperators(TestCase):
    def setUp(self) -> None:
        self.ctx = Context()
        self.x = self.ctx.placeholder("x", (2, 3))
        self.feed = {"x": np.arange(6, dtype=np.float32).reshape(2, 3)}

    def evaluate(self, tensor):
        return self.ctx.run(tensor, self.feed)[0]

    def test_arithmetic(self):
        data = self.feed["x"]
        assert np.allclose(self.evaluate(self.x + 1), data + 1)
        assert np.allclose(self.evaluate(1 - self.x), 1 - data)
        assert np.allclose(self.evaluate(self.x * 2), data * 2)
        assert np.allclose(self.evaluate(2 / (self.x + 1)), 2 / (data + 1))
        assert np.allclose(self.evaluate(self.x**2), data**2)
        assert np.allclose(self.evaluate(-self.x), -data)

    def test_reflected_numpy_operand_builds_a_node(self):
        out = np.ones((2, 3)) + self.x
        self.assertIsInstance(out, Tensor)
        assert np.allclose(self.evaluate(out), self.feed["x"] + 1)

    def test_tensor_exponent_is_rejected(self):
        with self.assertRaises(GraphError):
            self.x ** self.x

    def test_reductions_and_movement(self):
        data = self.feed["x"]
        assert np.allclose(self.evaluate(self.x.sum()), data.sum())
        assert np.allclose(self.evaluate(self.x.mean(axis=0)), data.mean(axis=0))
        assert np.allclose(self.evaluate(self.x.sum(axis=1, keepdims=True)), data.sum(axis=1, keepdims=True))
        self.assertEqual(self.x.reshape(3, 2).shape, (3, 2))
        self.assertEqual(self.x.reshape(-1).shape, (6,))
        assert np.allclose(self.evaluate(self.x.T), data.T)

    def test_transpose_property_needs_2d(self):
        y = self.x.reshape(1, 2, 3)
        with self.assertRaises(ShapeMismatchError):
            y.T
        self.assertEqual(y.transpose(2, 0, 1).shape, (3, 1, 2))

    def test_equality_and_hash(self):
        same = Tensor(self.ctx, self.x.id)
        self.assertEqual(same, self.x)
        self.assertEqual(len({same, self.x}), 1)
        self.assertNotEqual(Tensor(Context(), 0), self.x)
        self.assertIn("placeholder", repr(self.x))
