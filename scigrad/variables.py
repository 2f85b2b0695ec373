import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, TypeVar

import numpy as np

from scigrad.errors import UnknownVariableError
from scigrad.tensor import Context
from scigrad.tools.model import load_checkpoint, save_checkpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VariableEnvironment:
    """
    Named store of trainable arrays that outlives every `Context`.

    Contexts read variables by snapshot: ``context.variable(name)`` copies the
    value current at that moment, so a running evaluation never sees an
    update applied halfway through it. Every read and write goes through one
    re-entrant lock, so several worker threads can build their own contexts
    against the same environment while an optimizer applies updates.

    Examples:
        >>> env = VariableEnvironment()
        >>> env.set("w", np.zeros((2, 1)))
        >>> def forward(ctx):
        ...     x = ctx.placeholder("x", (None, 2))
        ...     return ctx.run(x @ ctx.variable("w"), {"x": [[1.0, 2.0]]})
        >>> env.run(forward)
        [array([[0.]], dtype=float32)]
    """

    def __init__(self, dtype: Any = np.float32) -> None:
        self.dtype = np.dtype(dtype)
        self._values: Dict[str, np.ndarray] = {}
        self._lock = threading.RLock()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._values)

    def _own(self, value: Any) -> np.ndarray:
        return np.array(value, dtype=self.dtype)

    def set(self, name: str, value: Any) -> None:
        """Create or replace ``name`` with a private copy of ``value``."""
        data = self._own(value)
        with self._lock:
            self._values[name] = data

    def get(self, name: str) -> np.ndarray:
        """
        Return a copy of the current value of ``name``.

        Raises:
            UnknownVariableError: If ``name`` was never set.
        """
        with self._lock:
            if name not in self._values:
                raise UnknownVariableError(name, tuple(self._values))
            return self._values[name].copy()

    def delete(self, name: str) -> None:
        with self._lock:
            if name not in self._values:
                raise UnknownVariableError(name, tuple(self._values))
            del self._values[name]

    def items(self) -> List[Tuple[str, np.ndarray]]:
        """Consistent copy of every (name, value) pair."""
        with self._lock:
            return [(name, value.copy()) for name, value in self._values.items()]

    def update(self, values: Mapping[str, Any]) -> None:
        """Set several variables at once; readers see either none or all of them."""
        owned = {name: self._own(value) for name, value in values.items()}
        with self._lock:
            self._values.update(owned)

    def apply_updates(
        self,
        update_fn: Callable[[Mapping[str, np.ndarray]], Mapping[str, Any]],
    ) -> None:
        """
        Atomically replace existing variables with values computed from the current ones.

        ``update_fn`` runs while the lock is held. It receives read-only views of
        the current values and returns the new value of every variable it wants
        to change.

        Args:
            update_fn: Maps the current name -> array table to name -> new array.

        Raises:
            UnknownVariableError: If ``update_fn`` returns a name that does not exist.
        """
        with self._lock:
            current = {}
            for name, value in self._values.items():
                view = value.view()
                view.setflags(write=False)
                current[name] = view
            new_values = update_fn(current)
            for name in new_values:
                if name not in self._values:
                    raise UnknownVariableError(name, tuple(self._values))
            self._values.update(
                {name: self._own(value) for name, value in new_values.items()}
            )

    def num_parameters(self) -> int:
        with self._lock:
            return int(sum(value.size for value in self._values.values()))

    def context(self, dtype: Optional[Any] = None) -> Context:
        """Create a fresh `Context` reading variables from this environment."""
        return Context(self, dtype=self.dtype if dtype is None else dtype)

    def run(self, fn: Callable[[Context], T]) -> T:
        """
        Call ``fn`` with a fresh context bound to this environment and return its result.

        The context is discarded afterwards; only what ``fn`` returns survives.
        """
        return fn(self.context())

    def state_dict(self) -> Dict[str, np.ndarray]:
        """
        Copy of every variable, keyed by name.

        .. code-block:: python

            {
                "hidden.weight": np.array(...),
                "hidden.bias": np.array(...),
            }
        """
        with self._lock:
            return {name: value.copy() for name, value in self._values.items()}

    def load_state_dict(self, state_dict: Mapping[str, Any], strict: bool = False) -> None:
        """
        Replace variables with the values in ``state_dict``.

        Args:
            state_dict (Mapping[str, Any]): Name -> array mapping, e.g. from `state_dict`.
            strict (bool): If True, every current variable must be present and no
                unknown name may appear.

        Raises:
            KeyError: If ``strict`` and the names do not match exactly.
        """
        with self._lock:
            if strict:
                missing = set(self._values) - set(state_dict)
                unexpected = set(state_dict) - set(self._values)
                if missing or unexpected:
                    raise KeyError(
                        f"State dict mismatch, missing: {sorted(missing)}, unexpected: {sorted(unexpected)}"
                    )
            self.update(state_dict)

    def save(self, json_path: str, npz_path: str) -> None:
        """Write every variable to a JSON + NPZ checkpoint pair."""
        save_checkpoint({"parameters": self.state_dict()}, json_path, npz_path)
        logger.debug(f"Saved {len(self)} variables to {npz_path}")

    def load(self, json_path: str, npz_path: str) -> None:
        """Restore variables written by `save` (or any checkpoint with a "parameters" entry)."""
        parameters = load_checkpoint(json_path, npz_path, weights_only=True)
        self.load_state_dict(parameters)
        logger.debug(f"Loaded {len(parameters)} variables from {npz_path}")
