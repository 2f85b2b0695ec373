"""
Graph-building functions.

Every function appends nodes to the context of its tensor arguments and
returns a handle to the result. Plain numbers and arrays are lifted to
constant nodes of that context.
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from scigrad import ops
from scigrad.errors import GraphError, ShapeMismatchError
from scigrad.ops import EPSILON
from scigrad.tensor import Context, Tensor

logger = logging.getLogger(__name__)

Operand = Union[Tensor, float, int, np.ndarray]
Axis = Optional[Union[int, Tuple[int, ...]]]


def _context_of(*values: Operand) -> Context:
    for value in values:
        if isinstance(value, Tensor):
            return value.context
    raise GraphError("At least one argument must be a Tensor")


def _lift(context: Context, value: Operand) -> Tensor:
    if isinstance(value, Tensor):
        if value.context is not context:
            raise GraphError("Cannot combine tensors from different contexts")
        return value
    return context.constant(value)


def _apply(op: ops.Function, *values: Operand) -> Tensor:
    context = _context_of(*values)
    return context.new_node(op, tuple(_lift(context, v) for v in values))


########### Arithmetic ###############
def add(x: Operand, y: Operand) -> Tensor:
    return _apply(ops.Add(), x, y)


def sub(x: Operand, y: Operand) -> Tensor:
    return _apply(ops.Sub(), x, y)


def mul(x: Operand, y: Operand) -> Tensor:
    return _apply(ops.Mul(), x, y)


def div(x: Operand, y: Operand) -> Tensor:
    """Elementwise ``x / y``; denominators smaller than ``EPSILON`` in magnitude are clamped."""
    return _apply(ops.Div(), x, y)


def neg(x: Tensor) -> Tensor:
    return _apply(ops.Neg(), x)


def pow(x: Tensor, exponent: float) -> Tensor:
    return _apply(ops.Pow(float(exponent)), x)


def square(x: Tensor) -> Tensor:
    return pow(x, 2.0)


def matmul(x: Operand, y: Operand) -> Tensor:
    """
    Matrix product with NumPy ``@`` semantics for inputs of rank 2 or more.

    Args:
        x (Tensor): Shape ``(..., n, k)``.
        y (Tensor): Shape ``(..., k, m)``.

    Returns:
        Tensor: Shape ``(..., n, m)``, batch dimensions broadcast.
    """
    return _apply(ops.MatMul(), x, y)


########### Activation Functions ###############
def relu(x: Tensor) -> Tensor:
    """
    Applies the Rectified Linear Unit (ReLU) activation function.

    Args:
        x (Tensor): The input tensor.

    Returns:
        Tensor: The tensor after applying the ReLU function.
    """
    return _apply(ops.Relu(), x)


def sigmoid(x: Tensor) -> Tensor:
    """
    Applies the sigmoid activation function.

    Args:
        x (Tensor): The input tensor.

    Returns:
        Tensor: The tensor after applying the sigmoid function.
    """
    return _apply(ops.Sigmoid(), x)


def tanh(x: Tensor) -> Tensor:
    return _apply(ops.Tanh(), x)


def softmax(x: Tensor, axis: int = -1) -> Tensor:
    """
    Applies the softmax activation function along ``axis``.

    Args:
        x (Tensor): The input tensor containing logits.
        axis (int): Axis to normalize over. Defaults to the last one.

    Returns:
        Tensor: The tensor with softmax probabilities.
    """
    return _apply(ops.Softmax(axis), x)


########### Elementwise Math ###############
def exp(x: Tensor) -> Tensor:
    return _apply(ops.Exp(), x)


def ln(x: Tensor) -> Tensor:
    """Natural logarithm; inputs in ``[0, EPSILON)`` are clamped, negative inputs raise `DomainError`."""
    return _apply(ops.Ln(), x)


def sqrt(x: Tensor) -> Tensor:
    return _apply(ops.Sqrt(), x)


def clip(x: Tensor, min_value: float, max_value: float) -> Tensor:
    return _apply(ops.Clip(float(min_value), float(max_value)), x)


########### Reductions ###############
def _as_axis(axis: Axis) -> Axis:
    if axis is None or isinstance(axis, int):
        return axis
    return tuple(axis)


def sum(x: Tensor, axis: Axis = None, keepdims: bool = False) -> Tensor:
    return _apply(ops.Sum(_as_axis(axis), keepdims), x)


def mean(x: Tensor, axis: Axis = None, keepdims: bool = False) -> Tensor:
    return _apply(ops.Mean(_as_axis(axis), keepdims), x)


def argmax(x: Tensor, axis: int = -1) -> Tensor:
    """Index of the maximum along ``axis``. Not differentiable."""
    return _apply(ops.ArgMax(axis), x)


########### Movement ###############
def reshape(x: Tensor, shape: Sequence[int]) -> Tensor:
    return _apply(ops.Reshape(tuple(shape)), x)


def transpose(x: Tensor, axes: Optional[Sequence[int]] = None) -> Tensor:
    return _apply(ops.Transpose(None if axes is None else tuple(axes)), x)


def concat(tensors: Sequence[Operand], axis: int = 0) -> Tensor:
    """
    Join tensors along an existing ``axis``.

    Args:
        tensors (Sequence[Tensor]): Tensors with equal rank and matching
            dimensions everywhere except ``axis``.
        axis (int): Axis to join along. Defaults to 0.

    Returns:
        Tensor: The concatenated tensor.
    """
    if len(tensors) == 0:
        raise ShapeMismatchError(
            "concat needs at least one input", op=ops.OpKind.CONCAT.value
        )
    return _apply(ops.Concat(axis), *tensors)


########### Gradient Control ###############
def stop_gradient(x: Tensor) -> Tensor:
    """Identity whose gradient is zero; the branch behind it is treated as a constant."""
    return _apply(ops.StopGradient(), x)


def dropout(x: Tensor, rate: float, seed: int) -> Tensor:
    """
    Inverted dropout driven by an explicit seed.

    Args:
        x (Tensor): The input tensor.
        rate (float): Probability of zeroing an element, in ``[0, 1)``.
        seed (int): Seed of the mask generator. The same seed yields the same mask.

    Returns:
        Tensor: ``x`` with dropped elements zeroed and the rest scaled by ``1 / (1 - rate)``.
    """
    return _apply(ops.Dropout(float(rate), int(seed)), x)


########### Loss Functions ###############
def binary_cross_entropy(
    y_pred: Tensor, y_true: Union[Tensor, np.ndarray], eps: float = EPSILON
) -> Tensor:
    r"""
    Computes the binary cross entropy loss given predicted probabilities.

    Probabilities are clipped to $[\epsilon, 1 - \epsilon]$ before the logarithm:
    $$
    L = -\frac{1}{N}\sum_i \left(y_i \log(p_i) + (1 - y_i) \log(1 - p_i)\right)
    $$

    Args:
        y_pred (Tensor): Predicted probabilities.
        y_true (Union[Tensor, np.ndarray]): True binary labels, same shape as ``y_pred``.
        eps (float): Clipping margin. Defaults to ``EPSILON``.

    Returns:
        Tensor: Scalar mean loss.
    """
    context = _context_of(y_pred)
    y_true = _lift(context, y_true)
    p = clip(y_pred, eps, 1.0 - eps)
    per_element = y_true * ln(p) + (1.0 - y_true) * ln(1.0 - p)
    return -mean(per_element)


def cross_entropy(
    y_pred: Tensor, y_true: Union[Tensor, np.ndarray], axis: int = -1
) -> Tensor:
    """
    Computes the cross-entropy loss for multi-class classification with logits.

    Args:
        y_pred (Tensor): Raw logits of shape ``(batch, classes)``.
        y_true (Union[Tensor, np.ndarray]): Either a tensor of target
            probabilities (e.g. one-hot) shaped like ``y_pred``, or an integer array
            of class indices of shape ``(batch,)``.
        axis (int): Class axis. Defaults to the last one.

    Returns:
        Tensor: Scalar mean loss over the batch.
    """
    context = _context_of(y_pred)
    if not isinstance(y_true, Tensor):
        labels = np.asarray(y_true)
        if np.issubdtype(labels.dtype, np.integer):
            num_classes = y_pred.shape[axis]
            if num_classes is None:
                raise ShapeMismatchError(
                    "Class indices need a resolved class dimension",
                    expected="known class count",
                    actual=y_pred.shape,
                    op=ops.OpKind.SOFTMAX.value,
                )
            labels = np.eye(num_classes)[labels]
        y_true = context.constant(labels)
    probs = softmax(y_pred, axis=axis)
    return -mean(sum(y_true * ln(probs), axis=axis))


def mean_squared_loss(y_pred: Tensor, y_true: Union[Tensor, np.ndarray]) -> Tensor:
    r"""
    Computes the mean squared error loss, $\frac{1}{N}\sum_i (\hat{y}_i - y_i)^2$.

    Args:
        y_pred (Tensor): Predictions.
        y_true (Union[Tensor, np.ndarray]): Targets, broadcastable to ``y_pred``.

    Returns:
        Tensor: Scalar mean loss.
    """
    context = _context_of(y_pred)
    diff = y_pred - _lift(context, y_true)
    return mean(square(diff))
