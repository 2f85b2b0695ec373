import logging
from abc import abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np

from scigrad import functional
from scigrad.init import RngLike, as_generator, glorot_uniform, zeros
from scigrad.tensor import Context, Tensor
from scigrad.variables import VariableEnvironment

logger = logging.getLogger(__name__)


class Module:
    """
    Base class for all neural network modules.

    A module does not own arrays. Its trainable parameters live in a
    `VariableEnvironment` under dotted names, and ``forward`` reads snapshots
    of them into the given context and composes graph nodes on top, like lego.

    Note that there is no backward() here: the gradient pass differentiates
    whatever graph ``forward`` built.

    Attributes:
        _parameter_names (List[str]): Environment names of this module's own parameters.
        _modules (Dict[str, Module]): Dictionary of submodules.
        _is_training (bool): Flag indicating training mode.
    """

    def __init__(self) -> None:
        self._parameter_names: List[str] = []
        self._modules: Dict[str, "Module"] = {}
        self._is_training: bool = True

    @abstractmethod
    def forward(self, ctx: Context, x: Tensor) -> Tensor:
        """
        Build the forward graph of the module.

        Args:
            ctx (Context): The context to add nodes to.
            x (Tensor): Input tensor.

        Returns:
            Tensor: The output tensor.

        Raises:
            NotImplementedError: If the method is not overridden by a subclass.
        """
        raise NotImplementedError

    def __call__(self, ctx: Context, x: Tensor) -> Tensor:
        return self.forward(ctx, x)

    def __setattr__(self, name: str, value: Any) -> None:
        """Register public `Module` attributes as submodules."""
        if not name.startswith("_") and isinstance(value, Module):
            self._modules[name] = value
        super().__setattr__(name, value)

    def register_parameter(
        self, env: VariableEnvironment, name: str, value: np.ndarray
    ) -> str:
        """Store ``value`` in ``env`` under ``name`` and record it as this module's parameter."""
        env.set(name, value)
        self._parameter_names.append(name)
        return name

    @property
    def parameter_names(self) -> List[str]:
        """
        Environment names of every parameter of the module and its submodules.

        Returns:
            List[str]: e.g. ``["hidden.weight", "hidden.bias", "output.weight", ...]``
        """
        names = list(self._parameter_names)
        for module in self._modules.values():
            names.extend(n for n in module.parameter_names if n not in names)
        return names

    def num_parameters(self, env: VariableEnvironment) -> int:
        """
        Calculate the total number of trainable parameters in the module and its submodules.

        Returns:
            int: The total number of parameters.
        """
        return int(sum(env.get(name).size for name in self.parameter_names))

    def train(self) -> None:
        """Set the module and all its submodules to training mode."""
        for module in self._modules.values():
            module.train()
        self._is_training = True

    def eval(self) -> None:
        """Set the module and all its submodules to evaluation mode."""
        for module in self._modules.values():
            module.eval()
        self._is_training = False

    @property
    def is_training(self) -> bool:
        return self._is_training


class Linear(Module):
    """
    A linear (fully connected) layer.

    This layer performs a linear transformation:
        $$
        y = xW + b
        $$

    where $W$ is the weight matrix and $b$ is the bias. They are stored in the
    environment as ``"{name}.weight"`` with shape ``(in_features, out_features)``
    and ``"{name}.bias"`` with shape ``(1, out_features)``.
    """

    def __init__(
        self,
        env: VariableEnvironment,
        name: str,
        in_features: int,
        out_features: int,
        rng: RngLike = None,
        bias: bool = True,
    ) -> None:
        """
        Initialize the Linear layer.

        Args:
            env (VariableEnvironment): Where the parameters are stored.
            name (str): Prefix of the parameter names.
            in_features (int): The size of the input features.
            out_features (int): The size of the output features.
            rng (Optional[Union[np.random.Generator, int]]): Generator or seed for the weights.
            bias (bool): Whether to add a bias. Defaults to True.
        """
        super().__init__()
        self.name = name
        self.in_features = in_features
        self.out_features = out_features
        self.weight_name = self.register_parameter(
            env,
            f"{name}.weight",
            glorot_uniform((in_features, out_features), rng, dtype=env.dtype),
        )
        self.bias_name: Optional[str] = None
        if bias:
            self.bias_name = self.register_parameter(
                env, f"{name}.bias", zeros((1, out_features), dtype=env.dtype)
            )

    def forward(self, ctx: Context, x: Tensor) -> Tensor:
        out = x @ ctx.variable(self.weight_name)
        if self.bias_name is not None:
            out = out + ctx.variable(self.bias_name)
        return out


class Dropout(Module):
    """
    Dropout layer.

    Randomly sets a fraction of input units to 0 during training to prevent overfitting.
    Paper: https://arxiv.org/abs/1207.0580

    Each forward call in training mode draws a fresh seed from the layer's own
    generator and bakes it into the `Dropout` node, so the mask is reproducible
    for a given layer seed. In evaluation mode the layer is the identity.
    """

    def __init__(self, rate: float = 0.5, seed: Optional[int] = None) -> None:
        super().__init__()
        if not 0.0 <= rate < 1.0:
            raise ValueError(f"Dropout rate must be in [0, 1), got {rate}")
        self.rate = rate
        self._rng = as_generator(seed)

    def forward(self, ctx: Context, x: Tensor) -> Tensor:
        if not self._is_training or self.rate == 0.0:
            return x
        seed = int(self._rng.integers(0, 2**31 - 1))
        return functional.dropout(x, self.rate, seed)


class Sequential(Module):
    """
    Chain layers and activations.

    Items are either modules, called as ``layer(ctx, x)``, or plain functions of
    one tensor such as `functional.relu`, called as ``fn(x)``.

    Examples:
        >>> model = Sequential(
        ...     Linear(env, "hidden", 2, 3, rng=0),
        ...     functional.relu,
        ...     Linear(env, "output", 3, 1, rng=1),
        ...     functional.sigmoid,
        ... )
        >>> y = model(ctx, x)
    """

    def __init__(self, *layers: Union[Module, Callable[[Tensor], Tensor]]) -> None:
        super().__init__()
        self.layers = list(layers)
        for i, layer in enumerate(self.layers):
            if isinstance(layer, Module):
                self._modules[str(i)] = layer

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, idx: int) -> Union[Module, Callable[[Tensor], Tensor]]:
        return self.layers[idx]

    def forward(self, ctx: Context, x: Tensor) -> Tensor:
        for layer in self.layers:
            x = layer(ctx, x) if isinstance(layer, Module) else layer(x)
        return x
