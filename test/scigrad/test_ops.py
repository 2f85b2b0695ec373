from typing import Callable, List, NamedTuple
from unittest import TestCase

import numpy as np

from scigrad import functional, ops
from scigrad.errors import DomainError, NotImplementedOpError, ShapeMismatchError
from scigrad.ops import EPSILON, EXP_LIMIT, REGISTRY, OpKind
from scigrad.variables import VariableEnvironment


class GradCase(NamedTuple):
    kind: OpKind
    build: Callable
    inputs: List[np.ndarray]


def _away_from_zero(shape, low=0.2, high=1.5):
    magnitude = np.random.uniform(low, high, size=shape)
    sign = np.where(np.random.rand(*shape) < 0.5, -1.0, 1.0)
    return magnitude * sign


def _build(build, inputs):
    """Build ``build`` over float64 variable snapshots of ``inputs``."""
    env = VariableEnvironment(dtype=np.float64)
    names = [f"v{i}" for i in range(len(inputs))]
    for name, value in zip(names, inputs):
        env.set(name, value)
    ctx = env.context()
    out = build(*[ctx.variable(name) for name in names])
    return ctx, out, names


def _forward(build, inputs):
    ctx, out, _ = _build(build, inputs)
    (value,) = ctx.run(out)
    return value


def _analytic_gradients(build, inputs, seed):
    ctx, out, names = _build(build, inputs)
    grads = ctx.gradients(out, seed=seed).variables()
    return [grads.get(name) for name in names]


def finite_difference_gradients(build, inputs, seed, h=1e-6) -> List[np.ndarray]:
    """Central differences of ``sum(build(*inputs) * seed)`` for every input element."""
    numeric = []
    for i, x in enumerate(inputs):
        grad = np.zeros_like(x)
        for idx in np.ndindex(x.shape):
            plus = [v.copy() for v in inputs]
            minus = [v.copy() for v in inputs]
            plus[i][idx] += h
            minus[i][idx] -= h
            f_plus = np.sum(_forward(build, plus) * seed)
            f_minus = np.sum(_forward(build, minus) * seed)
            grad[idx] = (f_plus - f_minus) / (2 * h)
        numeric.append(grad)
    return numeric


def gradient_cases() -> List[GradCase]:
    x23 = lambda: np.random.randn(2, 3)
    positive = lambda *shape: np.random.uniform(0.5, 2.0, size=shape)
    return [
        GradCase(OpKind.ADD, lambda x, y: x + y, [x23(), np.random.randn(1, 3)]),
        GradCase(OpKind.SUB, lambda x, y: x - y, [x23(), np.random.randn(3)]),
        GradCase(OpKind.MUL, lambda x, y: x * y, [x23(), np.random.randn(2, 1)]),
        GradCase(OpKind.DIV, lambda x, y: x / y, [x23(), _away_from_zero((2, 3), 0.5, 2.0)]),
        GradCase(OpKind.NEG, lambda x: -x, [x23()]),
        GradCase(OpKind.POW, lambda x: x**3, [x23()]),
        GradCase(OpKind.MATMUL, lambda x, y: x @ y, [np.random.randn(2, 2, 3), np.random.randn(3, 4)]),
        GradCase(OpKind.RELU, functional.relu, [_away_from_zero((2, 3))]),
        GradCase(OpKind.SIGMOID, functional.sigmoid, [x23()]),
        GradCase(OpKind.TANH, functional.tanh, [x23()]),
        GradCase(OpKind.EXP, functional.exp, [x23()]),
        GradCase(OpKind.LN, functional.ln, [positive(2, 3)]),
        GradCase(OpKind.SQRT, functional.sqrt, [positive(2, 3)]),
        GradCase(
            OpKind.CLIP,
            lambda x: functional.clip(x, -0.5, 0.5),
            [np.array([[-0.9, -0.3, 0.1], [0.2, 0.45, 1.2]])],
        ),
        GradCase(OpKind.SUM, lambda x: functional.sum(x, axis=1, keepdims=True), [x23()]),
        GradCase(OpKind.MEAN, lambda x: functional.mean(x, axis=0), [x23()]),
        GradCase(OpKind.SOFTMAX, functional.softmax, [x23()]),
        GradCase(OpKind.RESHAPE, lambda x: functional.reshape(x, (3, -1)), [x23()]),
        GradCase(OpKind.TRANSPOSE, lambda x: functional.transpose(x, (1, 0)), [x23()]),
        GradCase(OpKind.CONCAT, lambda x, y: functional.concat([x, y], axis=1), [x23(), np.random.randn(2, 2)]),
        GradCase(OpKind.DROPOUT, lambda x: functional.dropout(x, 0.3, seed=7), [np.random.randn(4, 5)]),
    ]


class TestRegistry(TestCase):
    def test_every_kind_is_registered(self):
        self.assertEqual(set(REGISTRY), set(OpKind))
        for kind, cls in REGISTRY.items():
            self.assertIs(cls.kind, kind)
            self.assertTrue(issubclass(cls, ops.Function))

    def test_gradient_cases_cover_every_differentiable_kind(self):
        not_checked = {
            OpKind.PLACEHOLDER,
            OpKind.CONSTANT,
            OpKind.VARIABLE,
            # zero gradient by definition, see test_gradients
            OpKind.STOP_GRADIENT,
            OpKind.ARGMAX,
        }
        covered = {case.kind for case in gradient_cases()}
        self.assertEqual(covered, set(OpKind) - not_checked)

    def test_leaves_have_no_rules(self):
        for leaf in (ops.Placeholder(), ops.Constant(), ops.VariableRef()):
            self.assertTrue(leaf.is_leaf)
            with self.assertRaises(NotImplementedOpError):
                leaf.forward()
            with self.assertRaises(NotImplementedOpError):
                leaf.backward([], np.zeros(1), np.zeros(1))


class TestGradientCheck(TestCase):
    def test_finite_differences(self):
        for case in gradient_cases():
            with self.subTest(kind=case.kind.value):
                value = _forward(case.build, case.inputs)
                seed = np.random.randn(*value.shape)
                analytic = _analytic_gradients(case.build, case.inputs, seed)
                numeric = finite_difference_gradients(case.build, case.inputs, seed)
                for a, n, x in zip(analytic, numeric, case.inputs):
                    self.assertEqual(a.shape, x.shape)
                    assert np.allclose(a, n, rtol=1e-4, atol=1e-6), (a, n)


class TestStabilityContract(TestCase):
    def test_ln_clamps_zero_and_rejects_negative(self):
        ln = ops.Ln()
        self.assertAlmostEqual(float(ln.forward(np.array(0.0))), np.log(EPSILON))
        (grad,) = ln.backward([np.array([0.0, 1.0])], None, np.ones(2))
        assert np.allclose(grad, [0.0, 1.0])
        with self.assertRaises(DomainError):
            ln.forward(np.array([1.0, -1.0]))
        with self.assertRaises(DomainError):
            ln.forward(np.array([np.nan]))

    def test_div_clamps_denominator_keeping_sign(self):
        div = ops.Div()
        out = div.forward(np.array([1.0, 1.0, 1.0]), np.array([0.0, -1e-9, 2.0]))
        assert np.allclose(out, [1 / EPSILON, -1 / EPSILON, 0.5])
        self.assertTrue(np.all(np.isfinite(out)))

    def test_sqrt(self):
        sqrt = ops.Sqrt()
        with self.assertRaises(DomainError):
            sqrt.forward(np.array([-1.0]))
        (grad,) = sqrt.backward([np.array([0.0])], np.array([0.0]), np.ones(1))
        self.assertTrue(np.all(np.isfinite(grad)))

    def test_sigmoid_and_exp_stay_finite(self):
        big = np.array([-1000.0, 0.0, 1000.0], dtype=np.float32)
        with np.errstate(over="raise"):
            out = ops.Sigmoid().forward(big)
            assert np.allclose(out, [0.0, 0.5, 1.0])
            self.assertTrue(np.all(np.isfinite(ops.Exp().forward(big))))
        self.assertAlmostEqual(
            float(ops.Exp().forward(np.array(1000.0))), float(np.exp(EXP_LIMIT)), places=0
        )

    def test_pow_domain(self):
        with self.assertRaises(DomainError):
            ops.Pow(0.5).forward(np.array([-1.0]))
        assert np.allclose(ops.Pow(2.0).forward(np.array([-3.0])), [9.0])

    def test_pow_negative_exponent_clamps_base(self):
        x = np.array([0.0, -1e-9, 4.0])
        out = ops.Pow(-1.0).forward(x)
        assert np.allclose(out, [1 / EPSILON, -1 / EPSILON, 0.25])
        (grad,) = ops.Pow(-1.0).backward([x], out, np.ones(3))
        assert np.allclose(grad, [0.0, 0.0, -1 / 16])

    def test_pow_fractional_gradient_matches_sqrt(self):
        x = np.array([0.0, 4.0])
        (pow_grad,) = ops.Pow(0.5).backward([x], np.sqrt(x), np.ones(2))
        (sqrt_grad,) = ops.Sqrt().backward([x], np.sqrt(x), np.ones(2))
        self.assertTrue(np.all(np.isfinite(pow_grad)))
        assert np.allclose(pow_grad, sqrt_grad)
        (zero_grad,) = ops.Pow(0.0).backward([x], np.ones(2), np.ones(2))
        assert np.array_equal(zero_grad, [0.0, 0.0])

    def test_clip_bounds_validated(self):
        with self.assertRaises(ValueError):
            ops.Clip(1.0, 0.0)


class TestShapeRules(TestCase):
    def test_matmul(self):
        matmul = ops.MatMul()
        self.assertEqual(matmul.infer_shape((None, 3), (3, 4)), (None, 4))
        self.assertEqual(matmul.infer_shape((5, 1, 2, 3), (4, 3, 6)), (5, 4, 2, 6))
        with self.assertRaises(ShapeMismatchError):
            matmul.infer_shape((2, 3), (4, 5))
        with self.assertRaises(ShapeMismatchError):
            matmul.infer_shape((3,), (3, 4))

    def test_reductions(self):
        self.assertEqual(ops.Sum((1, 2), True).infer_shape((3, 4, 5)), (3, 1, 1))
        self.assertEqual(ops.Sum(None, False).infer_shape((3, 4, 5)), ())
        self.assertEqual(ops.Mean(-1, False).infer_shape((None, 4)), (None,))
        with self.assertRaises(ShapeMismatchError):
            ops.Sum(3).infer_shape((2, 2))
        with self.assertRaises(ShapeMismatchError):
            ops.Sum((1, 1)).infer_shape((2, 3))
        with self.assertRaises(ShapeMismatchError):
            ops.Mean((0, -2)).infer_shape((2, 3))

    def test_reshape(self):
        self.assertEqual(ops.Reshape((3, -1)).infer_shape((2, 3)), (3, 2))
        self.assertEqual(ops.Reshape((-1, 3)).infer_shape((None, 3)), (None, 3))
        with self.assertRaises(ShapeMismatchError):
            ops.Reshape((4, 2)).infer_shape((2, 3))
        with self.assertRaises(ValueError):
            ops.Reshape((-1, -1))

    def test_concat(self):
        concat = ops.Concat(axis=1)
        self.assertEqual(concat.infer_shape((None, 2), (None, 3)), (None, 5))
        with self.assertRaises(ShapeMismatchError):
            concat.infer_shape((2, 2), (3, 3))

    def test_argmax(self):
        argmax = ops.ArgMax(axis=-1)
        self.assertEqual(argmax.infer_shape((None, 4)), (None,))
        assert np.array_equal(argmax.forward(np.array([[1, 3, 2], [5, 0, 1]])), [1, 0])
        with self.assertRaises(NotImplementedOpError):
            argmax.backward([np.zeros((2, 3))], np.zeros(2), np.ones(2))

    def test_dropout_mask_is_seeded(self):
        x = np.ones((100, 100))
        out1 = ops.Dropout(0.5, seed=3).forward(x)
        out2 = ops.Dropout(0.5, seed=3).forward(x)
        out3 = ops.Dropout(0.5, seed=4).forward(x)
        assert np.array_equal(out1, out2)
        self.assertFalse(np.array_equal(out1, out3))
        # inverted scaling keeps the expectation
        self.assertAlmostEqual(float(out1.mean()), 1.0, delta=0.05)
        self.assertEqual(set(np.unique(out1)), {0.0, 2.0})
        with self.assertRaises(ValueError):
            ops.Dropout(1.0, seed=0)

    def test_unbroadcast(self):
        grad = np.ones((4, 2, 3))
        assert np.array_equal(ops.Function.unbroadcast(grad, (1, 3)), np.full((1, 3), 8.0))
        assert np.array_equal(ops.Function.unbroadcast(grad, (2, 1)), np.full((2, 1), 12.0))
        self.assertIs(ops.Function.unbroadcast(grad, (4, 2, 3)), grad)
