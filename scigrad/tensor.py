import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np

from scigrad import ops
from scigrad.errors import GraphError, ScigradError, ShapeMismatchError, UnknownVariableError
from scigrad.ops import Shape, normalize_shape

if TYPE_CHECKING:
    from scigrad.evaluator import Evaluator, Feeder
    from scigrad.gradients import GradientMap
    from scigrad.variables import VariableEnvironment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Node:
    """
    One entry of a context's node table.

    Attributes:
        id (int): Position in the node table; unique within the context and never reused.
        op (ops.Function): The operation this node performs.
        inputs (Tuple[int, ...]): Ids of the parent nodes, in argument order. Always smaller than ``id``.
        shape (Shape): Inferred or declared shape; ``None`` marks a dimension resolved at feed time.
        name (Optional[str]): Placeholder or variable name.
        value (Optional[np.ndarray]): Inline value of constant and variable nodes.
    """

    id: int
    op: ops.Function
    inputs: Tuple[int, ...]
    shape: Shape
    name: Optional[str] = None
    value: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    @property
    def kind(self) -> ops.OpKind:
        return self.op.kind


class Tensor:
    """
    A `Tensor` is a lightweight handle to one node of a `Context`.

    It holds no data itself: it only knows its context and node id, so it is
    cheap to copy around while composing a graph. Arithmetic operators build
    new nodes in the same context; plain numbers and arrays are lifted to
    constant nodes.

    Examples:
        >>> ctx = Context()
        >>> x = ctx.placeholder("x", (None, 2))
        >>> y = (x * 2.0 + 1.0).sum()
        >>> ctx.run(y, {"x": [[1.0, 2.0]]})
        [array(8., dtype=float32)]
    """

    __slots__ = ("context", "id")

    # Make numpy defer to our reflected operators (np.ndarray + Tensor -> Tensor.__radd__)
    __array_ufunc__ = None

    def __init__(self, context: "Context", node_id: int) -> None:
        self.context = context
        self.id = node_id

    @property
    def node(self) -> Node:
        return self.context.node(self.id)

    @property
    def shape(self) -> Shape:
        """
        Return the inferred shape of this tensor.

        Returns:
            Shape: Dimensions of the node; ``None`` entries are resolved when data is fed.
        """
        return self.node.shape

    @property
    def ndim(self) -> int:
        return len(self.node.shape)

    @property
    def kind(self) -> ops.OpKind:
        return self.node.kind

    @property
    def name(self) -> Optional[str]:
        return self.node.name

    def _lift(self, other: Union["Tensor", float, int, np.ndarray]) -> "Tensor":
        if isinstance(other, Tensor):
            if other.context is not self.context:
                raise GraphError("Cannot combine tensors from different contexts")
            return other
        return self.context.constant(other)

    def __add__(self, other: Union["Tensor", float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Add(), (self, self._lift(other)))

    def __radd__(self, other: Union[float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Add(), (self._lift(other), self))

    def __sub__(self, other: Union["Tensor", float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Sub(), (self, self._lift(other)))

    def __rsub__(self, other: Union[float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Sub(), (self._lift(other), self))

    def __mul__(self, other: Union["Tensor", float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Mul(), (self, self._lift(other)))

    def __rmul__(self, other: Union[float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Mul(), (self._lift(other), self))

    def __truediv__(self, other: Union["Tensor", float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Div(), (self, self._lift(other)))

    def __rtruediv__(self, other: Union[float, int, np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.Div(), (self._lift(other), self))

    def __matmul__(self, other: Union["Tensor", np.ndarray]) -> "Tensor":
        return self.context.new_node(ops.MatMul(), (self, self._lift(other)))

    def __rmatmul__(self, other: np.ndarray) -> "Tensor":
        return self.context.new_node(ops.MatMul(), (self._lift(other), self))

    def __pow__(self, exponent: Union[float, int]) -> "Tensor":
        if isinstance(exponent, Tensor):
            raise GraphError("Only constant (numeric) exponents are supported")
        return self.context.new_node(ops.Pow(float(exponent)), (self,))

    def __neg__(self) -> "Tensor":
        return self.context.new_node(ops.Neg(), (self,))

    def sum(
        self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False
    ) -> "Tensor":
        """Sum over ``axis``; see :class:`scigrad.ops.Sum`."""
        return self.context.new_node(ops.Sum(_as_axis(axis), keepdims), (self,))

    def mean(
        self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False
    ) -> "Tensor":
        """Mean over ``axis``; see :class:`scigrad.ops.Mean`."""
        return self.context.new_node(ops.Mean(_as_axis(axis), keepdims), (self,))

    def reshape(self, *shape: int) -> "Tensor":
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        return self.context.new_node(ops.Reshape(tuple(shape)), (self,))

    def transpose(self, *axes: int) -> "Tensor":
        if len(axes) == 1 and isinstance(axes[0], (tuple, list)):
            axes = tuple(axes[0])
        return self.context.new_node(ops.Transpose(tuple(axes) or None), (self,))

    @property
    def T(self) -> "Tensor":
        """
        Convenience property to transpose a 2D tensor.

        Raises:
            ShapeMismatchError: If the tensor is not 2D.
        """
        if self.ndim != 2:
            raise ShapeMismatchError(
                "T is only defined for 2D tensors, use transpose() instead",
                expected=2,
                actual=self.ndim,
                op=ops.OpKind.TRANSPOSE.value,
            )
        return self.transpose(1, 0)

    def __eq__(self, other: Any) -> bool:
        return (
            isinstance(other, Tensor)
            and other.context is self.context
            and other.id == self.id
        )

    def __hash__(self) -> int:
        return hash((id(self.context), self.id))

    def __repr__(self) -> str:
        node = self.node
        label = f", name={node.name!r}" if node.name else ""
        return f"Tensor(id={self.id}, op={node.kind.value}, shape={node.shape}{label})"


def _as_axis(axis):
    if axis is None or isinstance(axis, int):
        return axis
    return tuple(axis)


class Context:
    """
    Owns the node table of one run.

    A context is created per training iteration or evaluation, grows by
    appending nodes, and is discarded once results are extracted. Nodes are
    never removed, and since every node is appended after its inputs, node ids
    are already a topological order.

    A context is meant to be used from a single thread. Parallel workers each
    build their own context against a shared `VariableEnvironment`.

    Args:
        env (Optional[VariableEnvironment]): Environment that ``variable()`` reads from.
        dtype: Floating dtype for constants, variable snapshots and feeds. Defaults to float32.
    """

    def __init__(
        self, env: Optional["VariableEnvironment"] = None, dtype: Any = np.float32
    ) -> None:
        self.env = env
        self.dtype = np.dtype(dtype)
        self._nodes: List[Node] = []
        self.placeholders: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def node(self, ref: Union[Tensor, int]) -> Node:
        return self._nodes[self._resolve_id(ref)]

    def _resolve_id(self, ref: Union[Tensor, int]) -> int:
        if isinstance(ref, Tensor):
            if ref.context is not self:
                raise GraphError(
                    f"Tensor {ref.id} belongs to a different context", node_id=ref.id
                )
            return ref.id
        if isinstance(ref, (int, np.integer)) and 0 <= ref < len(self._nodes):
            return int(ref)
        raise GraphError(f"No node {ref!r} in this context")

    def new_node(
        self,
        op: ops.Function,
        inputs: Sequence[Union[Tensor, int]] = (),
        shape: Optional[Sequence[Optional[int]]] = None,
        name: Optional[str] = None,
        value: Optional[np.ndarray] = None,
    ) -> Tensor:
        """
        Append a node to the table.

        Args:
            op (ops.Function): Operation of the new node.
            inputs (Sequence[Union[Tensor, int]]): Parent nodes, in argument order.
            shape (Optional[Sequence[Optional[int]]]): Declared shape. When omitted, the
                operation's shape rule infers it from the inputs.
            name (Optional[str]): Placeholder or variable name.
            value (Optional[np.ndarray]): Inline value for constant and variable nodes.

        Returns:
            Tensor: Handle to the new node.

        Raises:
            ShapeMismatchError: If the operation's shape rule rejects the input shapes.
        """
        input_ids = tuple(self._resolve_id(t) for t in inputs)
        node_id = len(self._nodes)
        if shape is None:
            try:
                shape = op.infer_shape(*(self._nodes[i].shape for i in input_ids))
            except ScigradError as err:
                raise err.add_context(op=op.kind.value, node_id=node_id)
        else:
            shape = normalize_shape(shape)

        node = Node(
            id=node_id, op=op, inputs=input_ids, shape=shape, name=name, value=value
        )
        self._nodes.append(node)
        logger.debug(f"Created node {node_id}: {op!r} inputs={input_ids} shape={shape}")
        return Tensor(self, node_id)

    def placeholder(self, name: str, shape: Sequence[Optional[int]]) -> Tensor:
        """
        Register a named input slot.

        Args:
            name (str): Name used to feed the placeholder.
            shape (Sequence[Optional[int]]): Declared shape; ``None`` or ``-1`` leave a
                dimension (e.g. the batch size) unresolved until feed time.

        Returns:
            Tensor: The placeholder. Declaring the same name again with the same
            shape returns the existing handle.

        Raises:
            ShapeMismatchError: If ``name`` was already declared with another shape.
        """
        shape = normalize_shape(shape)
        if name in self.placeholders:
            existing = self._nodes[self.placeholders[name]]
            if existing.shape != shape:
                raise ShapeMismatchError(
                    f"Placeholder '{name}' is already declared with another shape",
                    expected=existing.shape,
                    actual=shape,
                    op=ops.OpKind.PLACEHOLDER.value,
                    node_id=existing.id,
                )
            return Tensor(self, existing.id)
        tensor = self.new_node(ops.Placeholder(), shape=shape, name=name)
        self.placeholders[name] = tensor.id
        return tensor

    def constant(self, value: Union[np.ndarray, float, int, Sequence[float]]) -> Tensor:
        """Embed ``value`` into the graph as a non-trainable node."""
        data = np.array(value, dtype=self.dtype)
        data.setflags(write=False)
        return self.new_node(ops.Constant(), shape=data.shape, value=data)

    def ones(self, shape: Sequence[int]) -> Tensor:
        return self.constant(np.ones(self._concrete_shape(shape), dtype=self.dtype))

    def zeros(self, shape: Sequence[int]) -> Tensor:
        return self.constant(np.zeros(self._concrete_shape(shape), dtype=self.dtype))

    @staticmethod
    def _concrete_shape(shape: Sequence[int]) -> Tuple[int, ...]:
        normalized = normalize_shape(shape)
        if not ops.is_fully_known(normalized):
            raise ShapeMismatchError(
                "Constants need a fully resolved shape",
                expected="no unresolved dimensions",
                actual=tuple(shape),
                op=ops.OpKind.CONSTANT.value,
            )
        return normalized

    def variable(self, name: str) -> Tensor:
        """
        Snapshot the environment's current value of ``name`` into a new node.

        Later changes to the environment are not visible through this node;
        they show up in the next context.

        Raises:
            UnknownVariableError: If the context has no environment or the
                environment has no such variable.
        """
        if self.env is None:
            raise UnknownVariableError(name)
        data = np.array(self.env.get(name), dtype=self.dtype)
        data.setflags(write=False)
        return self.new_node(
            ops.VariableRef(), shape=data.shape, name=name, value=data
        )

    def evaluator(self) -> "Evaluator":
        from scigrad.evaluator import Evaluator

        return Evaluator(self)

    def run(
        self,
        targets: Union[Tensor, Sequence[Tensor]],
        feeder: Optional[Union["Feeder", Dict[Any, Any]]] = None,
    ) -> List[np.ndarray]:
        """Evaluate ``targets``; shorthand for ``self.evaluator().run(targets, feeder)``."""
        return self.evaluator().run(targets, feeder)

    def gradients(
        self,
        loss: Tensor,
        feeder: Optional[Union["Feeder", Dict[Any, Any]]] = None,
        seed: Optional[np.ndarray] = None,
    ) -> "GradientMap":
        """Reverse-mode gradients of ``loss``; see :func:`scigrad.gradients.gradient_pass`."""
        from scigrad.gradients import gradient_pass

        return gradient_pass(loss, feeder, seed=seed)
