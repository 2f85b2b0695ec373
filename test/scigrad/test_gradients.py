from unittest import TestCase

import numpy as np
import torch

from scigrad import functional
from scigrad.errors import NotImplementedOpError, ShapeMismatchError
from scigrad.gradients import gradient_pass
from scigrad.variables import VariableEnvironment


class TestGradientPass(TestCase):
    def setUp(self) -> None:
        self.env = VariableEnvironment(dtype=np.float64)
        self.x_data = np.array([[1.0, -2.0, 3.0], [0.5, 4.0, -1.0]])
        self.env.set("x", self.x_data)
        self.env.set("unused", np.ones(5))
        self.ctx = self.env.context()
        self.x = self.ctx.variable("x")

    def test_same_input_twice_accumulates_both_slots(self):
        grads = gradient_pass((self.x + self.x).sum())
        assert np.allclose(grads[self.x], np.full_like(self.x_data, 2.0))

        grads = gradient_pass((self.x * self.x).sum())
        assert np.allclose(grads[self.x], 2 * self.x_data)

    def test_matches_torch(self):
        self.env.set("w", np.random.randn(3, 2))
        w = self.ctx.variable("w")
        loss = functional.sigmoid(functional.tanh(self.x) @ w).mean()
        grads = self.ctx.gradients(loss)

        x_torch = torch.tensor(self.x_data, requires_grad=True)
        w_torch = torch.tensor(self.env.get("w"), requires_grad=True)
        loss_torch = torch.sigmoid(torch.tanh(x_torch) @ w_torch).mean()
        loss_torch.backward()

        self.assertAlmostEqual(float(grads.output), loss_torch.item())
        assert np.allclose(grads[self.x], x_torch.grad.numpy())
        assert np.allclose(grads[w], w_torch.grad.numpy())

    def test_only_differentiable_nodes_have_entries(self):
        unused = self.ctx.variable("unused")
        p = self.ctx.placeholder("p", (2, 3))
        c = self.ctx.constant(3.0)
        loss = (self.x * p * c).sum()
        grads = gradient_pass(loss, {"p": np.ones((2, 3))})

        self.assertIn(self.x, grads)
        self.assertNotIn(unused, grads)
        self.assertNotIn(p, grads)
        self.assertNotIn(c, grads)
        self.assertEqual(set(grads.variables()), {"x"})
        assert np.allclose(grads.get_or_zeros(unused), np.zeros(5))
        assert np.allclose(grads.get_or_zeros(p), np.zeros((2, 3)))

    def test_foreign_tensor_is_not_contained(self):
        other = VariableEnvironment().context().constant(1.0)
        grads = gradient_pass(self.x.sum())
        self.assertNotIn(other, grads)

    def test_stop_gradient_blocks_propagation(self):
        blocked = functional.stop_gradient(self.x * 3.0)
        loss = (blocked * self.x).sum()
        grads = gradient_pass(loss)
        # Only the direct slot contributes
        assert np.allclose(grads[self.x], 3.0 * self.x_data)
        self.assertNotIn(blocked, grads)

    def test_argmax_on_differentiable_path_raises(self):
        idx = functional.argmax(self.x, axis=1)
        loss = (idx * self.x.sum(axis=1)).sum()
        with self.assertRaises(NotImplementedOpError) as cm:
            gradient_pass(loss)
        self.assertEqual(cm.exception.op, "argmax")
        self.assertEqual(cm.exception.node_id, idx.id)

    def test_argmax_off_the_path_is_fine(self):
        idx = functional.argmax(self.ctx.constant(self.x_data), axis=1)
        loss = (idx * self.x.sum(axis=1)).sum()
        grads = gradient_pass(loss)
        expected = np.repeat(np.argmax(self.x_data, axis=1)[:, None], 3, axis=1)
        assert np.allclose(grads[self.x], expected)

    def test_non_scalar_output_needs_a_seed(self):
        out = self.x * 2.0
        with self.assertRaises(ShapeMismatchError):
            gradient_pass(out)
        with self.assertRaises(ShapeMismatchError):
            gradient_pass(out, seed=np.ones(3))

        seed = np.arange(6.0).reshape(2, 3)
        grads = gradient_pass(out, seed=seed)
        assert np.allclose(grads[self.x], 2.0 * seed)
        assert np.allclose(grads.output, 2.0 * self.x_data)

    def test_repeated_snapshots_are_summed_per_name(self):
        again = self.ctx.variable("x")
        loss = (self.x * 2.0 + again * 5.0).sum()
        grads = gradient_pass(loss)
        assert np.allclose(grads[self.x], np.full((2, 3), 2.0))
        assert np.allclose(grads[again], np.full((2, 3), 5.0))
        assert np.allclose(grads.variables()["x"], np.full((2, 3), 7.0))

    def test_broadcast_bias_gradient_keeps_its_shape(self):
        self.env.set("b", np.zeros((1, 3)))
        b = self.ctx.variable("b")
        grads = gradient_pass((self.x + b).sum())
        self.assertEqual(grads[b].shape, (1, 3))
        assert np.allclose(grads[b], [[2.0, 2.0, 2.0]])

    def test_gradients_do_not_touch_the_environment(self):
        before = self.env.get("x")
        gradient_pass((self.x**2).sum())
        assert np.array_equal(self.env.get("x"), before)
