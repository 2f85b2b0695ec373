"""
Initialization methods for weights of the neural network

Every initializer takes an explicit ``numpy.random.Generator`` (or an int
seed) so parameter creation is reproducible without touching global state.
"""

from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

RngLike = Optional[Union[np.random.Generator, int]]


def as_generator(rng: RngLike) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def glorot_uniform(
    shape: Sequence[int], rng: RngLike = None, dtype: Any = np.float32
) -> np.ndarray:
    r"""
    Draw weights with Xavier (Glorot) uniform initialization.

    Paper: https://proceedings.mlr.press/v9/glorot10a/glorot10a.pdf

    The weight array is assumed to have the shape:
        (input_size, output_size, additional_dimensions...)

    and values are drawn from $U(-\text{limit}, \text{limit})$ with
    $$
    \text{limit} = \sqrt{\frac{6}{\text{fan\_in} + \text{fan\_out}}}
    $$

    Args:
        shape (Sequence[int]): Shape of the weight array.
        rng (Optional[Union[np.random.Generator, int]]): Generator or seed.
        dtype: Dtype of the result. Defaults to float32.

    Returns:
        np.ndarray: The initialized weights.

    Examples:
        >>> w = glorot_uniform((2, 3), rng=np.random.default_rng(0))
        >>> w.shape
        (2, 3)
    """
    fan_in, fan_out = compute_fans(shape)
    limit = np.sqrt(6.0 / (fan_in + fan_out))
    return as_generator(rng).uniform(low=-limit, high=limit, size=tuple(shape)).astype(dtype)


def zeros(shape: Sequence[int], dtype: Any = np.float32) -> np.ndarray:
    return np.zeros(tuple(shape), dtype=dtype)


def ones(shape: Sequence[int], dtype: Any = np.float32) -> np.ndarray:
    return np.ones(tuple(shape), dtype=dtype)


def compute_fans(shape: Sequence[int]) -> Tuple[int, int]:
    r"""
    Computes the number of input and output connections (fan-in, fan-out) of a weight shape.

    Dimensions past the first two are treated as a receptive field:
    $$
    \begin{align}
    \text{fan\_in} &= \text{shape}[0] \times \prod_{i=2}^{n} \text{shape}[i] \\
    \text{fan\_out} &= \text{shape}[1] \times \prod_{i=2}^{n} \text{shape}[i]
    \end{align}
    $$

    Raises:
        ValueError: If the shape has fewer than 2 dimensions.

    Examples:
        >>> compute_fans((5, 10))
        (5, 10)
        >>> compute_fans((16, 4, 3, 3))
        (144, 36)
    """
    if len(shape) < 2:
        raise ValueError("Weight shape must have at least 2 dimensions")

    receptive_field_size = 1
    for s in shape[2:]:
        receptive_field_size *= s

    return shape[0] * receptive_field_size, shape[1] * receptive_field_size
