import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from scigrad.errors import GraphError, MissingFeedError, ScigradError, ShapeMismatchError
from scigrad.ops import OpKind, shape_matches
from scigrad.tensor import Context, Node, Tensor

logger = logging.getLogger(__name__)

FeedKey = Union[Tensor, str, int]


class Feeder:
    """
    Concrete values for placeholders, supplied per evaluation.

    Keys can be placeholder handles, placeholder names or node ids; they are
    resolved against the context being evaluated.

    Examples:
        >>> feeder = Feeder().push(x, x_data).push("y", y_data)
        >>> ctx.run(loss, feeder)
    """

    def __init__(self, feeds: Optional[Dict[FeedKey, Any]] = None) -> None:
        self._feeds: List[Tuple[FeedKey, Any]] = []
        for key, value in (feeds or {}).items():
            self.push(key, value)

    def push(self, key: FeedKey, value: Any) -> "Feeder":
        """
        Add a value for one placeholder.

        Args:
            key (Union[Tensor, str, int]): The placeholder, its name or its node id.
            value (array-like): Data for the placeholder.

        Returns:
            Feeder: ``self``, so calls can be chained.
        """
        self._feeds.append((key, value))
        return self

    def __len__(self) -> int:
        return len(self._feeds)

    def resolve(self, context: Context) -> Dict[int, np.ndarray]:
        """
        Map every entry to a placeholder node id of ``context``.

        Values are copied, cast to the context's dtype and checked against the
        placeholder's declared shape.

        Raises:
            GraphError: If a key is not a placeholder of ``context``.
            ShapeMismatchError: If a value does not fit the declared shape.
        """
        resolved: Dict[int, np.ndarray] = {}
        for key, value in self._feeds:
            if isinstance(key, str):
                if key not in context.placeholders:
                    raise GraphError(f"No placeholder named '{key}' in this context")
                node = context.node(context.placeholders[key])
            else:
                node = context.node(key)
            if node.kind is not OpKind.PLACEHOLDER:
                raise GraphError(
                    f"Only placeholders can be fed, node {node.id} is {node.kind.value}",
                    op=node.kind.value,
                    node_id=node.id,
                )
            data = np.array(value, dtype=context.dtype)
            if not shape_matches(node.shape, data.shape):
                raise ShapeMismatchError(
                    f"Fed value does not fit placeholder '{node.name}'",
                    expected=node.shape,
                    actual=data.shape,
                    op=node.kind.value,
                    node_id=node.id,
                )
            data.setflags(write=False)
            resolved[node.id] = data
        return resolved


def as_feeder(feeder: Optional[Union[Feeder, Dict[FeedKey, Any]]]) -> Feeder:
    if feeder is None:
        return Feeder()
    if isinstance(feeder, Feeder):
        return feeder
    return Feeder(feeder)


class Evaluator:
    """
    Resolves concrete values of requested nodes.

    Each call to `run` owns a fresh memo table keyed by node id, so a node
    reachable from several targets is computed once per call, and nothing
    carries over from one call to the next.
    """

    def __init__(self, context: Context) -> None:
        self.context = context

    def run(
        self,
        targets: Union[Tensor, Sequence[Tensor]],
        feeder: Optional[Union[Feeder, Dict[FeedKey, Any]]] = None,
    ) -> List[np.ndarray]:
        """
        Evaluate the requested tensors.

        Args:
            targets (Union[Tensor, Sequence[Tensor]]): Nodes to evaluate.
            feeder (Optional[Union[Feeder, dict]]): Values for the placeholders the
                targets depend on.

        Returns:
            List[np.ndarray]: One array per target, in request order.

        Raises:
            MissingFeedError: If a reachable placeholder has no value.
            ShapeMismatchError: If a fed value or an intermediate result has the wrong shape.
            DomainError: If a kernel receives input outside its domain.
        """
        if isinstance(targets, Tensor):
            targets = [targets]
        target_ids = [self.context._resolve_id(t) for t in targets]
        memo = self.evaluate(target_ids, feeder)
        # Copies, so callers cannot mutate snapshots or constants through the result
        return [np.array(memo[node_id]) for node_id in target_ids]

    def evaluate(
        self,
        target_ids: Iterable[int],
        feeder: Optional[Union[Feeder, Dict[FeedKey, Any]]] = None,
    ) -> Dict[int, np.ndarray]:
        """
        Compute every ancestor of ``target_ids`` and return the whole memo table.

        The traversal is an explicit-stack post-order walk: a node is computed
        only after all of its inputs are.

        Returns:
            Dict[int, np.ndarray]: Forward value of every node the targets depend on.
        """
        feeds = as_feeder(feeder).resolve(self.context)
        memo: Dict[int, np.ndarray] = {}
        stack = [(node_id, False) for node_id in reversed(list(target_ids))]

        while stack:
            node_id, has_visited_inputs = stack.pop()
            if node_id in memo:
                continue
            node = self.context.node(node_id)
            if not has_visited_inputs:
                # First visit: come back once every input is computed
                stack.append((node_id, True))
                for input_id in reversed(node.inputs):
                    if input_id not in memo:
                        stack.append((input_id, False))
            else:
                memo[node_id] = self._compute(node, memo, feeds)

        logger.debug(f"Evaluated {len(memo)} nodes")
        return memo

    @staticmethod
    def _compute(
        node: Node, memo: Dict[int, np.ndarray], feeds: Dict[int, np.ndarray]
    ) -> np.ndarray:
        if node.kind is OpKind.PLACEHOLDER:
            if node.id not in feeds:
                raise MissingFeedError(node.name, node_id=node.id)
            return feeds[node.id]
        if node.kind in (OpKind.CONSTANT, OpKind.VARIABLE):
            return node.value

        try:
            out = node.op.forward(*(memo[i] for i in node.inputs))
        except ScigradError as err:
            raise err.add_context(op=node.kind.value, node_id=node.id)
        return np.asarray(out)
