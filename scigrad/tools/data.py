import logging
from typing import Callable, Iterator, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Batch = Tuple[np.ndarray, np.ndarray]


def train_test_split(
    X: np.ndarray,
    y: np.ndarray,
    test_size: float = 0.2,
    random_state: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Shuffle rows and hold out ``test_size`` of them.

    Args:
        X (np.ndarray): Features, one sample per row.
        y (np.ndarray): Targets aligned with ``X``.
        test_size (float): Held-out fraction in ``[0, 1)``; the count is rounded down.
        random_state (Optional[int]): Seed of the permutation.

    Returns:
        Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
            ``X_train, X_test, y_train, y_test``.

    Examples:
        >>> X_train, X_test, y_train, y_test = train_test_split(
        ...     np.zeros((50, 2)), np.zeros(50), test_size=0.2, random_state=0)
        >>> len(X_train), len(X_test)
        (40, 10)
    """
    if not 0.0 <= test_size < 1.0:
        raise ValueError(f"test_size must be in [0, 1), got {test_size}")
    if len(X) != len(y):
        raise ValueError(f"X and y must have the same length, got {len(X)} and {len(y)}")

    order = np.random.default_rng(random_state).permutation(len(X))
    n_test = int(len(order) * test_size)
    test_idx, train_idx = order[:n_test], order[n_test:]
    return X[train_idx], X[test_idx], y[train_idx], y[test_idx]


class SimpleDataLoader:
    """
    In-memory minibatches of ``(X, y)`` pairs.

    Call `on_epoch_start` before each pass to reshuffle (when ``shuffle``).
    The permutation comes from the loader's own generator, so a fixed ``seed``
    reproduces the batch order without touching numpy's global state. The last
    batch of an epoch may be smaller than ``batch_size``.

    Examples:
        >>> loader = SimpleDataLoader(np.zeros((70, 4)), np.zeros((70, 1)), batch_size=32, seed=0)
        >>> loader.on_epoch_start()
        >>> [len(batch_y) for _, batch_y in loader]
        [32, 32, 6]
    """

    def __init__(
        self,
        X: np.ndarray,
        y: np.ndarray,
        batch_size: int = 32,
        shuffle: bool = True,
        seed: Optional[int] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if len(X) != len(y):
            raise ValueError(f"X and y must have the same length, got {len(X)} and {len(y)}")
        self.batch_size = batch_size
        self.shuffle = shuffle
        self._rng = np.random.default_rng(seed)
        self._set_data(X, y)

    def _set_data(self, X: np.ndarray, y: np.ndarray) -> None:
        self.X = X
        self.y = y
        self.num_samples = len(X)
        self.indices = np.arange(self.num_samples)

    def on_epoch_start(self) -> None:
        if self.shuffle:
            self._rng.shuffle(self.indices)

    def __iter__(self) -> Iterator[Batch]:
        for start in range(0, self.num_samples, self.batch_size):
            rows = self.indices[start : start + self.batch_size]
            yield self.X[rows], self.y[rows]

    def __len__(self) -> int:
        return -(-self.num_samples // self.batch_size)

    def preprocess(self, preprocess_func: Callable[[np.ndarray, np.ndarray], Batch]) -> None:
        """Replace the data with ``preprocess_func(X, y)``; the batch order restarts from the first row."""
        self._set_data(*preprocess_func(self.X, self.y))
