"""
Exceptions raised by the graph engine.

Every error derives from `ScigradError` and from the closest builtin exception,
so callers can catch either the engine-specific type or the builtin one.
"""

from typing import Any, Optional, Tuple


class ScigradError(Exception):
    """
    Base class of all graph-engine errors.

    Errors carry the operation kind and node id that raised them whenever that
    context is known, so a failure can be traced back to the graph-building
    code that created the offending node.

    Attributes:
        op (Optional[str]): Name of the operation kind involved.
        node_id (Optional[int]): Id of the node involved.
    """

    def __init__(
        self, message: str, op: Optional[str] = None, node_id: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.op = op
        self.node_id = node_id

    def add_context(self, op: Optional[str] = None, node_id: Optional[int] = None):
        """
        Attach operation/node information if the error does not carry it yet.

        Returns:
            ScigradError: ``self``, so it can be re-raised directly.
        """
        if self.op is None:
            self.op = op
        if self.node_id is None:
            self.node_id = node_id
        return self

    def __str__(self) -> str:
        where = []
        if self.op is not None:
            where.append(f"op={self.op}")
        if self.node_id is not None:
            where.append(f"node={self.node_id}")
        if where:
            return f"{self.message} [{', '.join(where)}]"
        return self.message


class ShapeMismatchError(ScigradError, ValueError):
    """
    Raised when an operation's shape rule cannot reconcile its input shapes,
    or when fed data does not match a placeholder's declared shape.
    """

    def __init__(
        self,
        message: str,
        expected: Any = None,
        actual: Any = None,
        op: Optional[str] = None,
        node_id: Optional[int] = None,
    ) -> None:
        super().__init__(message, op=op, node_id=node_id)
        self.expected = expected
        self.actual = actual

    def __str__(self) -> str:
        text = super().__str__()
        if self.expected is not None or self.actual is not None:
            text += f" (expected {self.expected}, got {self.actual})"
        return text


class MissingFeedError(ScigradError, LookupError):
    """Raised when a reachable placeholder has no value in the feeder."""

    def __init__(self, name: str, node_id: Optional[int] = None) -> None:
        super().__init__(
            f"No value fed for placeholder '{name}'",
            op="placeholder",
            node_id=node_id,
        )
        self.name = name


class UnknownVariableError(ScigradError, LookupError):
    """Raised when a variable name is absent from the environment."""

    def __init__(self, name: str, available: Tuple[str, ...] = ()) -> None:
        message = f"Unknown variable '{name}'"
        if available:
            message += f"; known variables: {', '.join(sorted(available))}"
        super().__init__(message, op="variable")
        self.name = name


class DomainError(ScigradError, ValueError):
    """Raised by a kernel given input outside its domain that clamping does not cover."""


class NotImplementedOpError(ScigradError, NotImplementedError):
    """Raised when an operation does not support the requested pass (e.g. backward)."""


class GraphError(ScigradError, ValueError):
    """Raised on graph misuse, e.g. mixing tensors from two contexts."""
