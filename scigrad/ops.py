"""
The closed set of operations a graph node can perform.

Each operation kind is a `Function` subclass registered under an `OpKind`. An
instance only carries the parameters specific to its kind (e.g. the bounds of
`Clip` or the axes of `Sum`); all array state lives in the evaluator's memo
table, which is why `forward` and `backward` are pure functions of their
arguments.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple, Type, Union

import numpy as np

from scigrad.errors import DomainError, NotImplementedOpError, ShapeMismatchError

logger = logging.getLogger(__name__)

# Lower bound used by every clamping rule below
EPSILON = 1e-7
# ln(max float32), exp() of anything larger overflows in float32
EXP_LIMIT = 88.72

Shape = Tuple[Optional[int], ...]
Axis = Optional[Union[int, Tuple[int, ...]]]


class OpKind(str, Enum):
    """Tag identifying what a node computes."""

    PLACEHOLDER = "placeholder"
    CONSTANT = "constant"
    VARIABLE = "variable"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    NEG = "neg"
    POW = "pow"
    MATMUL = "matmul"
    RELU = "relu"
    SIGMOID = "sigmoid"
    TANH = "tanh"
    EXP = "exp"
    LN = "ln"
    SQRT = "sqrt"
    CLIP = "clip"
    SUM = "sum"
    MEAN = "mean"
    SOFTMAX = "softmax"
    RESHAPE = "reshape"
    TRANSPOSE = "transpose"
    CONCAT = "concat"
    STOP_GRADIENT = "stop_gradient"
    DROPOUT = "dropout"
    ARGMAX = "argmax"


REGISTRY: Dict[OpKind, Type["Function"]] = {}


def register(kind: OpKind):
    """Class decorator binding a `Function` subclass to its `OpKind`."""

    def decorator(cls):
        if kind in REGISTRY:
            raise ValueError(f"Operation kind {kind.value} is already registered")
        cls.kind = kind
        REGISTRY[kind] = cls
        return cls

    return decorator


########### Shape helpers ###########
def normalize_shape(shape: Sequence[Optional[int]]) -> Shape:
    """
    Convert a user-declared shape to the internal form.

    ``-1`` and ``None`` both mark a dimension that stays unresolved until feed time.

    Args:
        shape (Sequence[Optional[int]]): Declared shape.

    Returns:
        Shape: A tuple of ints and ``None``.

    Raises:
        ShapeMismatchError: If a dimension is negative (other than -1) or not an integer.
    """
    if isinstance(shape, (int, np.integer)):
        shape = (shape,)
    out = []
    for dim in shape:
        if dim is None or dim == -1:
            out.append(None)
        elif isinstance(dim, (int, np.integer)) and dim >= 0:
            out.append(int(dim))
        else:
            raise ShapeMismatchError(
                "Invalid dimension in shape", expected="int >= 0 or -1", actual=shape
            )
    return tuple(out)


def is_fully_known(shape: Shape) -> bool:
    return all(dim is not None for dim in shape)


def shape_matches(declared: Shape, actual: Tuple[int, ...]) -> bool:
    """Whether a concrete shape satisfies a declared (possibly partial) shape."""
    if len(declared) != len(actual):
        return False
    return all(d is None or d == a for d, a in zip(declared, actual))


def broadcast_shapes(x_shape: Shape, y_shape: Shape, op: Optional[str] = None) -> Shape:
    """
    NumPy broadcasting over shapes that may contain unresolved dimensions.

    An unresolved dimension broadcast against a resolved one takes the resolved
    size unless that size is 1.

    Raises:
        ShapeMismatchError: If two resolved dimensions are different and neither is 1.
    """
    ndim = max(len(x_shape), len(y_shape))
    x_padded = (1,) * (ndim - len(x_shape)) + tuple(x_shape)
    y_padded = (1,) * (ndim - len(y_shape)) + tuple(y_shape)
    out = []
    for dx, dy in zip(x_padded, y_padded):
        if dx == dy:
            out.append(dx)
        elif dx == 1:
            out.append(dy)
        elif dy == 1:
            out.append(dx)
        elif dx is None:
            out.append(dy)
        elif dy is None:
            out.append(dx)
        else:
            raise ShapeMismatchError(
                "Shapes cannot be broadcast together",
                expected=x_shape,
                actual=y_shape,
                op=op,
            )
    return tuple(out)


def normalize_axes(axis: Axis, ndim: int, op: Optional[str] = None):
    """
    Turn an axis argument into a sorted tuple of non-negative axes.

    Returns:
        Optional[Tuple[int, ...]]: ``None`` when every axis is reduced.

    Raises:
        ShapeMismatchError: If an axis is out of range for ``ndim`` or repeated.
    """
    if axis is None:
        return None
    axes = (axis,) if isinstance(axis, (int, np.integer)) else tuple(axis)
    normalized = []
    for ax in axes:
        if not -ndim <= ax < ndim:
            raise ShapeMismatchError(
                f"Axis {ax} is out of range", expected=f"ndim > {ax}", actual=ndim, op=op
            )
        normalized.append(int(ax) % ndim)
    if len(set(normalized)) != len(normalized):
        raise ShapeMismatchError(
            f"Repeated axis in {axes}", expected="distinct axes", actual=axes, op=op
        )
    return tuple(sorted(normalized))


class Function:
    """
    Base class of every operation kind.

    Subclasses implement three rules:

    - ``infer_shape`` computes the output shape from the input shapes when the
      node is constructed, raising `ShapeMismatchError` right away if the inputs
      cannot be reconciled.
    - ``forward`` computes the output array from already-evaluated input arrays.
    - ``backward`` maps the gradient of the output to one gradient per input,
      each shaped like that input.
    """

    kind: OpKind
    is_leaf = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def infer_shape(self, *shapes: Shape) -> Shape:
        """
        Compute the output shape from the input shapes.

        Args:
            *shapes (Shape): One shape per input node.

        Returns:
            Shape: The output shape.
        """
        raise NotImplementedOpError(
            f"Shape inference not implemented for {self.kind.value}", op=self.kind.value
        )

    def forward(self, *inputs: np.ndarray) -> np.ndarray:
        """
        Compute the value of this operation.

        Args:
            *inputs (np.ndarray): Data arrays of the input nodes, in input order.

        Returns:
            np.ndarray: The output array.
        """
        raise NotImplementedOpError(
            f"Forward pass not implemented for {self.kind.value}", op=self.kind.value
        )

    def backward(
        self, inputs: Sequence[np.ndarray], output: np.ndarray, grad: np.ndarray
    ) -> Tuple[np.ndarray, ...]:
        """
        Compute the gradient with respect to every input.

        In this context:
        - ``grad`` is the gradient of the loss with respect to the *output* of this operation (dL/d[out]).
        - The return value holds the gradient of the loss with respect to each *input* (dL/d[input]).

        Args:
            inputs (Sequence[np.ndarray]): The forward input arrays.
            output (np.ndarray): The forward output array.
            grad (np.ndarray): The gradient with respect to the **output**.

        Returns:
            Tuple[np.ndarray, ...]: One gradient per input, shaped like that input.
        """
        raise NotImplementedOpError(
            f"Backward pass not implemented for {self.kind.value}", op=self.kind.value
        )

    @staticmethod
    def unbroadcast(grad_arr: np.ndarray, to_shape: Tuple[int, ...]) -> np.ndarray:
        """
        Sum out broadcasted dimensions so that grad_arr can match to_shape.
        Essentially the inverse of numpy's broadcasting.

        Args:
            grad_arr (np.ndarray): Gradient array to unbroadcast.
            to_shape (Tuple[int, ...]): Shape to unbroadcast to.

        Returns:
            np.ndarray: Unbroadcasted gradient array.
        """
        if grad_arr.shape == to_shape:
            return grad_arr

        # Sum across the extra leading dims first
        while grad_arr.ndim > len(to_shape):
            grad_arr = grad_arr.sum(axis=0)

        # Then every dim that was 1 in the input but got expanded
        for dim in range(len(to_shape)):
            if to_shape[dim] == 1 and grad_arr.shape[dim] != 1:
                grad_arr = grad_arr.sum(axis=dim, keepdims=True)
        return grad_arr


def _runtime_broadcast(x: np.ndarray, y: np.ndarray, kind: OpKind) -> None:
    # Unresolved dims can only be checked once real arrays arrive
    try:
        np.broadcast_shapes(x.shape, y.shape)
    except ValueError as err:
        raise ShapeMismatchError(
            "Operands cannot be broadcast together",
            expected=x.shape,
            actual=y.shape,
            op=kind.value,
        ) from err


"""
Leaves
"""


class _Leaf(Function):
    """Leaves hold no rule; the evaluator resolves them from feeds or inline values."""

    is_leaf = True

    def forward(self, *inputs: np.ndarray) -> np.ndarray:
        raise NotImplementedOpError(
            f"{self.kind.value} nodes are resolved by the evaluator, not computed",
            op=self.kind.value,
        )


@register(OpKind.PLACEHOLDER)
class Placeholder(_Leaf):
    """Named input slot whose value comes from the feeder."""


@register(OpKind.CONSTANT)
class Constant(_Leaf):
    """Inline, non-trainable value."""


@register(OpKind.VARIABLE)
class VariableRef(_Leaf):
    """Snapshot of a variable-environment entry taken when the node was created."""


"""
Binary Ops
"""


class _ElementwiseBinary(Function):
    def infer_shape(self, x_shape: Shape, y_shape: Shape) -> Shape:
        return broadcast_shapes(x_shape, y_shape, op=self.kind.value)

    def forward(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        _runtime_broadcast(x, y, self.kind)
        return self._compute(x, y)

    def _compute(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        raise NotImplementedError


@register(OpKind.ADD)
class Add(_ElementwiseBinary):
    """Element-wise addition with broadcasting."""

    def _compute(self, x, y):
        return x + y

    def backward(self, inputs, output, grad):
        x, y = inputs
        return self.unbroadcast(grad, x.shape), self.unbroadcast(grad, y.shape)


@register(OpKind.SUB)
class Sub(_ElementwiseBinary):
    """Element-wise subtraction with broadcasting."""

    def _compute(self, x, y):
        return x - y

    def backward(self, inputs, output, grad):
        x, y = inputs
        return self.unbroadcast(grad, x.shape), self.unbroadcast(-grad, y.shape)


@register(OpKind.MUL)
class Mul(_ElementwiseBinary):
    r"""
    Element-wise multiplication with broadcasting.

    $$
    \frac{\partial (x \cdot y)}{\partial x} = y, \quad \frac{\partial (x \cdot y)}{\partial y} = x
    $$
    """

    def _compute(self, x, y):
        return x * y

    def backward(self, inputs, output, grad):
        x, y = inputs
        return (
            self.unbroadcast(grad * y, x.shape),
            self.unbroadcast(grad * x, y.shape),
        )


@register(OpKind.DIV)
class Div(_ElementwiseBinary):
    r"""
    Element-wise division with broadcasting.

    The denominator's magnitude is clamped to at least `EPSILON` (keeping its sign,
    zero counts as positive) before dividing, so $x / 0$ yields $x / \epsilon$
    instead of infinity. Where the clamp applies, the gradient with respect to
    the denominator is zero.
    """

    @staticmethod
    def safe_denominator(y: np.ndarray) -> np.ndarray:
        return np.where(y >= 0, np.maximum(y, EPSILON), np.minimum(y, -EPSILON))

    def _compute(self, x, y):
        return x / self.safe_denominator(y)

    def backward(self, inputs, output, grad):
        x, y = inputs
        denom = self.safe_denominator(y)
        grad_x = grad / denom
        grad_y = -grad * x / denom**2 * (np.abs(y) >= EPSILON)
        return self.unbroadcast(grad_x, x.shape), self.unbroadcast(grad_y, y.shape)


@register(OpKind.MATMUL)
class MatMul(Function):
    r"""
    Matrix multiplication of the last two dimensions, batch dimensions broadcast.

    For $z = x \cdot y$:
        $$ \text{grad}_x = \text{grad} \cdot y^T $$
        $$ \text{grad}_y = x^T \cdot \text{grad} $$
    """

    def infer_shape(self, x_shape: Shape, y_shape: Shape) -> Shape:
        if len(x_shape) < 2 or len(y_shape) < 2:
            raise ShapeMismatchError(
                "matmul needs operands with at least 2 dimensions",
                expected="ndim >= 2",
                actual=(x_shape, y_shape),
                op=self.kind.value,
            )
        inner_x, inner_y = x_shape[-1], y_shape[-2]
        if inner_x is not None and inner_y is not None and inner_x != inner_y:
            raise ShapeMismatchError(
                "matmul inner dimensions do not match",
                expected=inner_x,
                actual=inner_y,
                op=self.kind.value,
            )
        batch = broadcast_shapes(x_shape[:-2], y_shape[:-2], op=self.kind.value)
        return batch + (x_shape[-2], y_shape[-1])

    def forward(self, x, y):
        if x.shape[-1] != y.shape[-2]:
            raise ShapeMismatchError(
                "matmul inner dimensions do not match",
                expected=x.shape[-1],
                actual=y.shape[-2],
                op=self.kind.value,
            )
        try:
            np.broadcast_shapes(x.shape[:-2], y.shape[:-2])
        except ValueError as err:
            raise ShapeMismatchError(
                "matmul batch dimensions cannot be broadcast together",
                expected=x.shape[:-2],
                actual=y.shape[:-2],
                op=self.kind.value,
            ) from err
        return np.matmul(x, y)

    def backward(self, inputs, output, grad):
        x, y = inputs
        # np.swapaxes(a, -1, -2) is a^T for every batch entry
        grad_x = np.matmul(grad, np.swapaxes(y, -1, -2))
        grad_y = np.matmul(np.swapaxes(x, -1, -2), grad)
        return self.unbroadcast(grad_x, x.shape), self.unbroadcast(grad_y, y.shape)


"""
Unary Ops
"""


class _ElementwiseUnary(Function):
    def infer_shape(self, x_shape: Shape) -> Shape:
        return tuple(x_shape)


@register(OpKind.NEG)
class Neg(_ElementwiseUnary):
    def forward(self, x):
        return -x

    def backward(self, inputs, output, grad):
        return (-grad,)


@register(OpKind.POW)
@dataclass(frozen=True)
class Pow(_ElementwiseUnary):
    r"""
    Raise every element to a constant power, $x^p$.

    Negative bases with a non-integer exponent are outside the real domain
    and raise `DomainError`. A negative exponent divides by the base, so the
    base is clamped the way `Div` clamps denominators and its gradient is zero
    where the clamp applies. For $p < 1$ the derivative $p x^{p-1}$ is
    evaluated at $\max(x, \epsilon)$, matching `Sqrt`.
    """

    exponent: float

    def forward(self, x):
        if not float(self.exponent).is_integer() and np.any(x < 0):
            raise DomainError(
                f"Negative base with non-integer exponent {self.exponent}",
                op=self.kind.value,
            )
        if self.exponent < 0:
            return Div.safe_denominator(x) ** self.exponent
        return x**self.exponent

    def backward(self, inputs, output, grad):
        (x,) = inputs
        p = self.exponent
        if p >= 1:
            return (grad * p * x ** (p - 1),)
        if p < 0:
            base = Div.safe_denominator(x)
            return (grad * p * base ** (p - 1) * (np.abs(x) >= EPSILON),)
        # Bases are non-negative here unless p == 0, where the factor p zeroes the gradient
        return (grad * p * np.maximum(x, EPSILON) ** (p - 1),)


@register(OpKind.RELU)
class Relu(_ElementwiseUnary):
    r"""
    Rectified Linear Unit, $ReLU(x) = max(0, x)$.
    """

    def forward(self, x):
        return np.maximum(x, 0)

    def backward(self, inputs, output, grad):
        (x,) = inputs
        return (grad * (x > 0),)


@register(OpKind.SIGMOID)
class Sigmoid(_ElementwiseUnary):
    r"""
    Logistic sigmoid, $\sigma(x) = \frac{1}{1 + e^{-x}}$.

    The argument is clipped to $[-88.72, 88.72]$ so that $e^{-x}$ stays finite in float32.
    The derivative $\sigma(x)(1 - \sigma(x))$ is computed from the output.
    """

    def forward(self, x):
        z = np.clip(x, -EXP_LIMIT, EXP_LIMIT)
        return 1 / (1 + np.exp(-z))

    def backward(self, inputs, output, grad):
        return (grad * output * (1 - output),)


@register(OpKind.TANH)
class Tanh(_ElementwiseUnary):
    def forward(self, x):
        return np.tanh(x)

    def backward(self, inputs, output, grad):
        # d(tanh(x))/dx = 1 - tanh(x)^2
        return (grad * (1 - output**2),)


@register(OpKind.EXP)
class Exp(_ElementwiseUnary):
    """Element-wise exponential; arguments above `EXP_LIMIT` are clipped, with zero gradient there."""

    def forward(self, x):
        return np.exp(np.minimum(x, EXP_LIMIT))

    def backward(self, inputs, output, grad):
        (x,) = inputs
        return (grad * output * (x <= EXP_LIMIT),)


@register(OpKind.LN)
class Ln(_ElementwiseUnary):
    r"""
    Natural logarithm.

    Inputs in $[0, \epsilon)$ are clamped up to $\epsilon$ = `EPSILON` so that
    $\ln(0)$ is finite; the gradient is zero where the clamp applied.
    Negative or NaN inputs are outside the domain and raise `DomainError`.
    """

    def forward(self, x):
        if np.any(np.isnan(x)) or np.any(x < 0):
            raise DomainError(
                "ln received negative or NaN input", op=self.kind.value
            )
        return np.log(np.maximum(x, EPSILON))

    def backward(self, inputs, output, grad):
        (x,) = inputs
        return (grad * (x >= EPSILON) / np.maximum(x, EPSILON),)


@register(OpKind.SQRT)
class Sqrt(_ElementwiseUnary):
    r"""
    Element-wise square root.

    The derivative $\frac{1}{2\sqrt{x}}$ clamps $x$ to `EPSILON` before dividing.
    Negative inputs raise `DomainError`.
    """

    def forward(self, x):
        if np.any(x < 0) or np.any(np.isnan(x)):
            raise DomainError("sqrt received negative or NaN input", op=self.kind.value)
        return np.sqrt(x)

    def backward(self, inputs, output, grad):
        (x,) = inputs
        return (grad * 0.5 / np.sqrt(np.maximum(x, EPSILON)),)


@register(OpKind.CLIP)
@dataclass(frozen=True)
class Clip(_ElementwiseUnary):
    """Clamp every element to ``[min, max]``; the gradient passes only where no clamping happened."""

    min: float
    max: float

    def __post_init__(self):
        if self.min > self.max:
            raise ValueError(f"clip bounds are inverted: min={self.min} > max={self.max}")

    def forward(self, x):
        return np.clip(x, self.min, self.max)

    def backward(self, inputs, output, grad):
        (x,) = inputs
        return (grad * ((x >= self.min) & (x <= self.max)),)


@register(OpKind.STOP_GRADIENT)
class StopGradient(_ElementwiseUnary):
    """Identity in the forward pass, zero gradient in the backward pass."""

    def forward(self, x):
        return x

    def backward(self, inputs, output, grad):
        return (np.zeros_like(inputs[0]),)


@register(OpKind.DROPOUT)
@dataclass(frozen=True)
class Dropout(_ElementwiseUnary):
    r"""
    Inverted dropout with an explicit seed.

    Each element is zeroed with probability ``rate`` and survivors are scaled by
    $\frac{1}{1 - rate}$. The mask is drawn from a generator seeded with ``seed``,
    so the forward pass is deterministic and the backward pass can redraw the
    exact same mask instead of caching it.
    """

    rate: float
    seed: int

    def __post_init__(self):
        if not 0.0 <= self.rate < 1.0:
            raise ValueError(f"Dropout rate must be in [0, 1), got {self.rate}")

    def mask(self, shape: Tuple[int, ...]) -> np.ndarray:
        rng = np.random.default_rng(self.seed)
        return rng.random(shape) >= self.rate

    def forward(self, x):
        return x * self.mask(x.shape) / (1.0 - self.rate)

    def backward(self, inputs, output, grad):
        (x,) = inputs
        return (grad * self.mask(x.shape) / (1.0 - self.rate),)


"""
Reduction Ops
"""


class _Reduction(Function):
    axis: Axis
    keepdims: bool

    def infer_shape(self, x_shape: Shape) -> Shape:
        axes = normalize_axes(self.axis, len(x_shape), op=self.kind.value)
        if axes is None:
            return (1,) * len(x_shape) if self.keepdims else ()
        if self.keepdims:
            return tuple(1 if i in axes else d for i, d in enumerate(x_shape))
        return tuple(d for i, d in enumerate(x_shape) if i not in axes)

    def _expand_grad(self, grad: np.ndarray, x_shape: Tuple[int, ...]) -> np.ndarray:
        axes = normalize_axes(self.axis, len(x_shape), op=self.kind.value)
        if axes is None:
            axes = tuple(range(len(x_shape)))
        if not self.keepdims:
            # Re-insert the reduced axes as size 1 so broadcasting lines up
            for ax in axes:
                grad = np.expand_dims(grad, ax)
        return np.broadcast_to(grad, x_shape).copy()

    def _reduced_count(self, x_shape: Tuple[int, ...]) -> int:
        axes = normalize_axes(self.axis, len(x_shape), op=self.kind.value)
        if axes is None:
            return int(np.prod(x_shape)) if x_shape else 1
        return int(np.prod([x_shape[ax] for ax in axes]))


@register(OpKind.SUM)
@dataclass(frozen=True)
class Sum(_Reduction):
    r"""
    Sum over ``axis`` (every axis when ``None``).

    $$
    y = \sum_{i \in A} x_i
    $$

    For example:
        - shape (3, 4, 5), axis (1, 2), keepdims True  → (3, 1, 1)
        - shape (3, 4, 5), axis None, keepdims False  → ()
    """

    axis: Axis = None
    keepdims: bool = False

    def forward(self, x):
        axes = normalize_axes(self.axis, x.ndim, op=self.kind.value)
        return np.asarray(np.sum(x, axis=axes, keepdims=self.keepdims))

    def backward(self, inputs, output, grad):
        return (self._expand_grad(grad, inputs[0].shape),)


@register(OpKind.MEAN)
@dataclass(frozen=True)
class Mean(_Reduction):
    r"""
    Mean over ``axis`` (every axis when ``None``).

    $$
    y = \frac{1}{N} \sum_{i \in A} x_i
    $$
    """

    axis: Axis = None
    keepdims: bool = False

    def forward(self, x):
        axes = normalize_axes(self.axis, x.ndim, op=self.kind.value)
        return np.asarray(np.mean(x, axis=axes, keepdims=self.keepdims))

    def backward(self, inputs, output, grad):
        x_shape = inputs[0].shape
        count = max(self._reduced_count(x_shape), 1)
        return (self._expand_grad(grad, x_shape) / count,)


@register(OpKind.SOFTMAX)
@dataclass(frozen=True)
class Softmax(Function):
    r"""
    Softmax along ``axis``.

    $$
    softmax(x)_i = \frac{e^{x_i}}{\sum_j e^{x_j}}
    $$
    """

    axis: int = -1

    def infer_shape(self, x_shape: Shape) -> Shape:
        normalize_axes(self.axis, len(x_shape), op=self.kind.value)
        return tuple(x_shape)

    def forward(self, x):
        exp_x = np.exp(x - np.max(x, axis=self.axis, keepdims=True))
        return exp_x / np.sum(exp_x, axis=self.axis, keepdims=True)

    def backward(self, inputs, output, grad):
        # dL/dx = y * (dL/dy - sum(dL/dy * y))
        sum_term = np.sum(grad * output, axis=self.axis, keepdims=True)
        return (output * (grad - sum_term),)


@register(OpKind.ARGMAX)
@dataclass(frozen=True)
class ArgMax(Function):
    """Index of the largest element along ``axis``. Forward only: it has no gradient."""

    axis: int = -1

    def infer_shape(self, x_shape: Shape) -> Shape:
        (ax,) = normalize_axes(self.axis, len(x_shape), op=self.kind.value)
        return tuple(d for i, d in enumerate(x_shape) if i != ax)

    def forward(self, x):
        return np.asarray(np.argmax(x, axis=self.axis))

    def backward(self, inputs, output, grad):
        raise NotImplementedOpError(
            "argmax is not differentiable; wrap it in stop_gradient or keep it off the loss path",
            op=self.kind.value,
        )


"""
Movement Ops
"""


@register(OpKind.RESHAPE)
@dataclass(frozen=True)
class Reshape(Function):
    """Same data, new shape. At most one dimension may be -1 (inferred)."""

    shape: Tuple[int, ...]

    def __post_init__(self):
        if sum(1 for d in self.shape if d == -1) > 1:
            raise ValueError("Only one -1 dimension is allowed in shape")

    def infer_shape(self, x_shape: Shape) -> Shape:
        target = tuple(self.shape)
        if not is_fully_known(x_shape):
            return tuple(None if d == -1 else d for d in target)
        size = int(np.prod(x_shape)) if x_shape else 1
        known = int(np.prod([d for d in target if d != -1])) if target else 1
        if -1 in target:
            if known == 0 or size % known != 0:
                raise ShapeMismatchError(
                    "Cannot reshape", expected=target, actual=x_shape, op=self.kind.value
                )
            return tuple(size // known if d == -1 else d for d in target)
        if known != size:
            raise ShapeMismatchError(
                "Cannot reshape", expected=target, actual=x_shape, op=self.kind.value
            )
        return target

    def forward(self, x):
        try:
            return x.reshape(self.shape)
        except ValueError as err:
            raise ShapeMismatchError(
                "Cannot reshape", expected=self.shape, actual=x.shape, op=self.kind.value
            ) from err

    def backward(self, inputs, output, grad):
        return (grad.reshape(inputs[0].shape),)


@register(OpKind.TRANSPOSE)
@dataclass(frozen=True)
class Transpose(Function):
    """Permute dimensions; ``axes=None`` reverses them."""

    axes: Optional[Tuple[int, ...]] = None

    def _axes_for(self, ndim: int) -> Tuple[int, ...]:
        if self.axes is None:
            return tuple(reversed(range(ndim)))
        axes = tuple(ax % ndim if -ndim <= ax < ndim else ax for ax in self.axes)
        if sorted(axes) != list(range(ndim)):
            raise ShapeMismatchError(
                "transpose axes must be a permutation of the input dimensions",
                expected=tuple(range(ndim)),
                actual=self.axes,
                op=self.kind.value,
            )
        return axes

    def infer_shape(self, x_shape: Shape) -> Shape:
        return tuple(x_shape[ax] for ax in self._axes_for(len(x_shape)))

    def forward(self, x):
        return np.transpose(x, self._axes_for(x.ndim))

    def backward(self, inputs, output, grad):
        axes = self._axes_for(inputs[0].ndim)
        return (np.transpose(grad, np.argsort(axes)),)


@register(OpKind.CONCAT)
@dataclass(frozen=True)
class Concat(Function):
    """Join any number of inputs along an existing axis."""

    axis: int = 0

    def infer_shape(self, *shapes: Shape) -> Shape:
        if not shapes:
            raise ShapeMismatchError(
                "concat needs at least one input", expected=">= 1", actual=0, op=self.kind.value
            )
        ndim = len(shapes[0])
        if any(len(s) != ndim for s in shapes):
            raise ShapeMismatchError(
                "concat inputs must have the same rank",
                expected=ndim,
                actual=[len(s) for s in shapes],
                op=self.kind.value,
            )
        (ax,) = normalize_axes(self.axis, ndim, op=self.kind.value)
        out = list(shapes[0])
        for shape in shapes[1:]:
            for i, dim in enumerate(shape):
                if i == ax:
                    continue
                if out[i] is None:
                    out[i] = dim
                elif dim is not None and dim != out[i]:
                    raise ShapeMismatchError(
                        f"concat inputs differ outside axis {ax}",
                        expected=shapes[0],
                        actual=shape,
                        op=self.kind.value,
                    )
        sizes = [s[ax] for s in shapes]
        out[ax] = None if any(d is None for d in sizes) else sum(sizes)
        return tuple(out)

    def forward(self, *inputs):
        try:
            return np.concatenate(inputs, axis=self.axis)
        except ValueError as err:
            raise ShapeMismatchError(
                "Cannot concatenate",
                expected=inputs[0].shape,
                actual=[x.shape for x in inputs],
                op=self.kind.value,
            ) from err

    def backward(self, inputs, output, grad):
        sizes = [x.shape[self.axis] for x in inputs]
        return tuple(np.split(grad, np.cumsum(sizes)[:-1], axis=self.axis))
