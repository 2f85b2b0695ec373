"""
Metrics for evaluating model predictions.

They operate on concrete arrays returned by `Context.run`, not on graph
tensors. Column vectors of shape ``(N, 1)`` are flattened first.
"""

from typing import Tuple

import numpy as np


def _flatten_pair(y_pred, y_true) -> Tuple[np.ndarray, np.ndarray]:
    y_pred = np.asarray(y_pred)
    y_true = np.asarray(y_true)
    if y_pred.ndim == 2 and y_pred.shape[1] == 1:
        y_pred = y_pred[:, 0]
    if y_true.ndim == 2 and y_true.shape[1] == 1:
        y_true = y_true[:, 0]
    if len(y_pred) != len(y_true):
        raise ValueError(
            f"y_pred and y_true must have the same length, got {len(y_pred)} and {len(y_true)}"
        )
    return y_pred, y_true


def binarize(probabilities, threshold: float = 0.5) -> np.ndarray:
    """Turn predicted probabilities into 0/1 labels."""
    return (np.asarray(probabilities) >= threshold).astype(np.int64)


def accuracy(y_pred, y_true) -> float:
    """Computes the accuracy of predictions.

    Args:
        y_pred (array-like): Predicted labels.
        y_true (array-like): Ground-truth labels.

    Returns:
        float: The fraction of predictions that match the labels.

    Raises:
        ValueError: If the length of y_pred and y_true differ.

    Example:
        >>> accuracy(np.array([1, 0, 1, 1]), np.array([1, 1, 1, 0]))
        0.5
    """
    y_pred, y_true = _flatten_pair(y_pred, y_true)
    if len(y_true) == 0:
        return 0.0
    return float(np.sum(y_pred == y_true) / len(y_true))


def precision(y_pred, y_true) -> float:
    """Computes the precision of binary predictions.

    Precision is defined as the fraction of positive predictions that were actually correct.

    Returns:
        float: The precision, ranging from 0.0 to 1.0. Returns 0.0 if there are no predicted positives.

    Example:
        >>> precision(np.array([1, 0, 1, 1]), np.array([1, 1, 1, 0]))
        0.6666666666666666
    """
    y_pred, y_true = _flatten_pair(y_pred, y_true)
    true_positives = np.sum((y_true == 1) & (y_pred == 1))
    predicted_positives = np.sum(y_pred == 1)
    return float(true_positives / predicted_positives) if predicted_positives != 0 else 0.0


def mean_squared_error(y_pred, y_true) -> float:
    """Computes the mean squared error (MSE) between predictions and ground truth.

    Example:
        >>> mean_squared_error(np.array([2.5, 0.0, 2, 8]), np.array([3.0, -0.5, 2, 7]))
        0.375
    """
    y_pred, y_true = _flatten_pair(y_pred, y_true)
    return float(np.mean((y_pred - y_true) ** 2))
