"""
Reverse-mode gradient pass over a context's node table.

Node ids are assigned in creation order and every input id is smaller than
its consumer's id, so walking ids in decreasing order visits each node only
after all of its consumers have contributed to its gradient.
"""

import logging
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Set, Tuple, Union

import numpy as np

from scigrad.errors import ScigradError, ShapeMismatchError
from scigrad.evaluator import Evaluator, Feeder
from scigrad.ops import OpKind
from scigrad.tensor import Context, Tensor

logger = logging.getLogger(__name__)


class GradientMap(Mapping):
    """
    Accumulated gradients of one gradient pass, keyed by node id.

    Only nodes on a path from the seeded output to a variable snapshot have an
    entry. A missing entry means the gradient is zero. Lookups accept a node id
    or a `Tensor` handle of the same context.

    Attributes:
        context (Context): The context the pass ran in.
        output (np.ndarray): Forward value of the seeded output.
    """

    def __init__(
        self,
        context: Context,
        grads: Dict[int, np.ndarray],
        output: np.ndarray,
        shapes: Dict[int, Tuple[int, ...]],
    ) -> None:
        self.context = context
        self.output = output
        self._grads = grads
        self._shapes = shapes

    def __getitem__(self, key: Union[Tensor, int]) -> np.ndarray:
        return self._grads[self.context._resolve_id(key)]

    def __contains__(self, key: Any) -> bool:
        if isinstance(key, Tensor):
            if key.context is not self.context:
                return False
            key = key.id
        return key in self._grads

    def __iter__(self) -> Iterator[int]:
        return iter(self._grads)

    def __len__(self) -> int:
        return len(self._grads)

    def get_or_zeros(self, key: Union[Tensor, int]) -> np.ndarray:
        """
        Return the gradient of ``key``, or zeros shaped like its forward value
        when the node received no gradient.
        """
        node_id = self.context._resolve_id(key)
        if node_id in self._grads:
            return self._grads[node_id]
        shape = self._shapes.get(node_id, self.context.node(node_id).shape)
        return np.zeros(
            tuple(1 if dim is None else dim for dim in shape), dtype=self.context.dtype
        )

    def variables(self) -> Dict[str, np.ndarray]:
        """
        Gradient per variable name.

        A variable read several times in one context has several snapshot
        nodes; their gradients are summed.

        Returns:
            Dict[str, np.ndarray]: Variable name -> gradient, for every variable
            that received one.
        """
        by_name: Dict[str, np.ndarray] = {}
        for node_id in sorted(self._grads):
            node = self.context.node(node_id)
            if node.kind is not OpKind.VARIABLE:
                continue
            grad = self._grads[node_id]
            if node.name in by_name:
                by_name[node.name] = by_name[node.name] + grad
            else:
                by_name[node.name] = grad
        return by_name


def _differentiable(context: Context, node_ids: Iterable[int]) -> Set[int]:
    """Ids among ``node_ids`` that have a variable snapshot among their ancestors."""
    reachable: Set[int] = set()
    for node_id in sorted(node_ids):
        node = context.node(node_id)
        if node.kind is OpKind.VARIABLE:
            reachable.add(node_id)
        elif node.kind is OpKind.STOP_GRADIENT:
            continue
        elif any(i in reachable for i in node.inputs):
            reachable.add(node_id)
    return reachable


def gradient_pass(
    loss: Tensor,
    feeder: Optional[Union[Feeder, Dict[Any, Any]]] = None,
    seed: Optional[np.ndarray] = None,
) -> GradientMap:
    r"""
    Compute the gradients of ``loss`` with respect to every node that depends
    on a variable.

    For a node $v$ with consumers $c_1, \dots, c_k$ the accumulated gradient is
    $$
    \frac{\partial L}{\partial v} = \sum_{i=1}^{k} \frac{\partial L}{\partial c_i} \frac{\partial c_i}{\partial v}
    $$
    and each input slot of a consumer contributes separately, so ``x * x`` and
    ``x + x`` receive both contributions.

    Args:
        loss (Tensor): The output to differentiate.
        feeder (Optional[Union[Feeder, dict]]): Values for the placeholders ``loss`` depends on.
        seed (Optional[np.ndarray]): Initial gradient of ``loss``. Defaults to ones,
            which requires ``loss`` to hold a single element.

    Returns:
        GradientMap: The accumulated gradients and the forward value of ``loss``.

    Raises:
        ShapeMismatchError: If ``loss`` is not a scalar and no seed of its shape is given.
        NotImplementedOpError: If a differentiable path crosses an operation without a backward rule.
    """
    context = loss.context
    target_id = context._resolve_id(loss)
    memo = Evaluator(context).evaluate([target_id], feeder)
    output = memo[target_id]

    if seed is None:
        if output.size != 1:
            raise ShapeMismatchError(
                "An explicit seed is required to differentiate a non-scalar output",
                expected="a single element",
                actual=output.shape,
                op=context.node(target_id).kind.value,
                node_id=target_id,
            )
        seed_grad = np.ones_like(output, dtype=context.dtype)
    else:
        seed_grad = np.asarray(seed, dtype=context.dtype)
        if seed_grad.shape != output.shape:
            raise ShapeMismatchError(
                "Seed must have the shape of the differentiated output",
                expected=output.shape,
                actual=seed_grad.shape,
                op=context.node(target_id).kind.value,
                node_id=target_id,
            )

    needs_grad = _differentiable(context, memo.keys())
    grads: Dict[int, np.ndarray] = {}
    if target_id in needs_grad:
        grads[target_id] = seed_grad

    for node_id in sorted(memo, reverse=True):
        grad = grads.get(node_id)
        if grad is None:
            continue
        node = context.node(node_id)
        if node.op.is_leaf:
            continue

        try:
            input_grads = node.op.backward(
                [memo[i] for i in node.inputs], memo[node_id], grad
            )
        except ScigradError as err:
            raise err.add_context(op=node.kind.value, node_id=node_id)

        for input_id, input_grad in zip(node.inputs, input_grads):
            if input_id not in needs_grad:
                continue
            # Never accumulate in place: several slots may share one array
            if input_id in grads:
                grads[input_id] = grads[input_id] + input_grad
            else:
                grads[input_id] = np.asarray(input_grad)

    logger.debug(
        f"Gradient pass over {len(memo)} nodes produced {len(grads)} gradients"
    )
    return GradientMap(
        context,
        grads,
        np.array(output),
        {node_id: value.shape for node_id, value in memo.items()},
    )
