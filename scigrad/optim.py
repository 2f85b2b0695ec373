import logging
from abc import abstractmethod
from collections import defaultdict
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

import numpy as np

from scigrad.errors import UnknownVariableError
from scigrad.gradients import GradientMap
from scigrad.variables import VariableEnvironment

logger = logging.getLogger(__name__)

Gradients = Union[GradientMap, Mapping[str, np.ndarray]]


class LRScheduler:
    """
    Maps the optimizer's global step to a learning rate.

    Subclasses implement ``__call__``.
    """

    @abstractmethod
    def __call__(self, step: int, initial_lr: float, current_lr: float) -> float:
        """
        Args:
            step (int): Global step, i.e. the number of ``Optimizer.step`` calls so far.
            initial_lr (float): Learning rate the optimizer was created with.
            current_lr (float): Learning rate used by the previous step.

        Returns:
            float: Learning rate for this step.
        """
        raise NotImplementedError


class CosineScheduler(LRScheduler):
    r"""
    Linear warmup followed by cosine annealing to a floor.

    Cosine annealing as in Section 3 of "SGDR: Stochastic Gradient Descent with
    Warm Restarts" (https://arxiv.org/abs/1608.03983), without the restarts:
    $$
    \eta_t = \eta_{min} + \frac{1}{2}(\eta_0 - \eta_{min})\left(1 + \cos\left(\pi \frac{t - t_w}{t_d - t_w}\right)\right)
    $$
    for $t_w \le t \le t_d$, where $t_w$ is ``warmup_steps`` and $t_d$ is ``lr_decay_iters``.
    """

    def __init__(
        self,
        warmup_steps: int = 100,
        lr_decay_iters: int = 200,
        min_lr: float = 1e-4,
    ) -> None:
        if lr_decay_iters <= warmup_steps:
            raise ValueError(
                f"lr_decay_iters ({lr_decay_iters}) must be larger than warmup_steps ({warmup_steps})"
            )
        self.warmup_steps = warmup_steps
        self.lr_decay_iters = lr_decay_iters
        self.min_lr = min_lr

    def __call__(self, step: int, initial_lr: float, current_lr: float) -> float:
        if step < self.warmup_steps:
            return initial_lr * (step + 1) / (self.warmup_steps + 1)
        if step > self.lr_decay_iters:
            return self.min_lr
        progress = (step - self.warmup_steps) / (self.lr_decay_iters - self.warmup_steps)
        cosine = 0.5 * (1.0 + np.cos(np.pi * progress))
        return float(self.min_lr + cosine * (initial_lr - self.min_lr))


LR_SCHEDULERS: Dict[str, Type[LRScheduler]] = {
    "CosineScheduler": CosineScheduler,
}


def build_lr_scheduler(lr_scheduler_kwargs: Mapping[str, Any]) -> LRScheduler:
    """
    Instantiate a scheduler from ``{"lr_scheduler_cls": cls_or_name, **init_kwargs}``.

    Raises:
        ValueError: If the class is given by a name that is not in `LR_SCHEDULERS`.
    """
    init_kwargs = dict(lr_scheduler_kwargs)
    scheduler_cls = init_kwargs.pop("lr_scheduler_cls")
    if isinstance(scheduler_cls, str):
        if scheduler_cls not in LR_SCHEDULERS:
            raise ValueError(
                f"Unknown lr scheduler '{scheduler_cls}', expected one of {list(LR_SCHEDULERS)}"
            )
        scheduler_cls = LR_SCHEDULERS[scheduler_cls]
    return scheduler_cls(**init_kwargs)


class Optimizer:
    """
    Turns gradients into new variable values.

    The new values of one step are written to the environment with a single
    `VariableEnvironment.apply_updates` call, so contexts created concurrently
    see either the old or the new values of every variable.

    Per-variable state (momentum buffers and the like) lives in
    ``self._states[<state name>][<variable name>]``; scalars such as the
    global step live directly in ``self._states``.

    Example:

    .. code-block:: python

        optimizer = Adam(env, lr=0.01, lr_scheduler_kwargs={
            "lr_scheduler_cls": "CosineScheduler",
            "warmup_steps": 100,
            "lr_decay_iters": 5000,
        })
        for X, y in loader:
            ctx = env.context()
            loss = build_loss(ctx)
            optimizer.step(ctx.gradients(loss, {"x": X, "y": y}))
    """

    def __init__(
        self,
        env: VariableEnvironment,
        lr: float,
        lr_scheduler_kwargs: Optional[dict] = None,
        **kwargs: Any,
    ) -> None:
        """
        Use a concrete subclass such as `SGD` or `Adam`.

        Args:
            env (VariableEnvironment): Where the optimized variables live.
            lr (float): Learning rate, and the starting point of the scheduler.
            lr_scheduler_kwargs (Optional[dict]): Scheduler class or registered name under
                ``"lr_scheduler_cls"``, plus its constructor arguments.
            **kwargs: Extra hyperparameters. ``max_grad_norm`` enables global-norm clipping.

        Raises:
            ValueError: If the scheduler name is not registered.
        """
        self.env = env
        self.initial_lr = lr
        self._hyperparams: Dict[str, Any] = {"lr": lr, **kwargs}
        self._states: Dict[str, Any] = defaultdict(dict)
        self._states["timestep"] = 0
        self.lr_scheduler: Optional[LRScheduler] = (
            build_lr_scheduler(lr_scheduler_kwargs) if lr_scheduler_kwargs else None
        )

    @property
    def lr(self) -> float:
        return self._hyperparams["lr"]

    @lr.setter
    def lr(self, value: float) -> None:
        self._hyperparams["lr"] = value

    @property
    def timestep(self) -> int:
        return self._states["timestep"]

    @timestep.setter
    def timestep(self, value: int) -> None:
        self._states["timestep"] = value

    @staticmethod
    def _clip_grad_norm(
        grads: Dict[str, np.ndarray], max_norm: float, norm_type: float = 2.0
    ) -> Dict[str, np.ndarray]:
        r"""
        Rescale ``grads`` so that their joint norm does not exceed ``max_norm``.

        See "Clipping Gradients", Section 10.11.1 of the Deep Learning Book
        (Goodfellow et al.). When $\|g\|_n > \text{max\_norm}$ every gradient becomes
        $$
        g \cdot \frac{\text{max\_norm}}{\|g\|_n}
        $$

        Returns:
            Dict[str, np.ndarray]: ``grads`` itself when no clipping is needed,
            otherwise new arrays.
        """
        total = sum(float(np.sum(np.abs(g) ** norm_type)) for g in grads.values())
        total_norm = total ** (1.0 / norm_type)
        if total_norm <= max_norm:
            return grads
        scale = max_norm / (total_norm + 1e-10)
        return {name: g * scale for name, g in grads.items()}

    def _named_grads(self, grads: Gradients) -> Dict[str, np.ndarray]:
        if isinstance(grads, GradientMap):
            named = grads.variables()
        else:
            named = {name: np.asarray(g) for name, g in grads.items()}
        max_norm = self._hyperparams.get("max_grad_norm")
        if max_norm is not None:
            named = self._clip_grad_norm(named, max_norm)
        return named

    def state_dict(self) -> Dict[str, Any]:
        """
        Snapshot of the hyperparameters and the optimizer state, for checkpoints.

        .. code-block:: python

            {
                "hyperparams": {"lr": 0.01, "beta1": 0.9, ...},
                "states": {
                    "timestep": 10,
                    "m": {"hidden.weight": np.ndarray, ...},
                    "v": {"hidden.weight": np.ndarray, ...},
                },
            }
        """
        states = {}
        for key, value in self._states.items():
            states[key] = dict(value) if isinstance(value, dict) else value
        return {"hyperparams": dict(self._hyperparams), "states": states}

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """
        Restore what `state_dict` returned.

        Entries for variables that ``self.env`` does not hold are dropped with a warning.
        """
        self._hyperparams.update(state_dict["hyperparams"])

        known = set(self.env.names())
        for key, value in state_dict["states"].items():
            if not isinstance(value, dict):
                self._states[key] = value
                continue
            per_variable = {}
            for name, array in value.items():
                if name in known:
                    per_variable[name] = array
                else:
                    logger.warning(f"Dropping '{key}' state of unknown variable {name}")
            self._states[key] = per_variable

    def step(self, grads: Gradients) -> None:
        """
        Apply one update.

        The step count, learning rate and per-variable state only change once
        the environment has accepted the new values.

        Args:
            grads (Union[GradientMap, Mapping[str, np.ndarray]]): A gradient pass result,
                or gradients keyed by variable name. Variables without a gradient keep
                their value.

        Raises:
            UnknownVariableError: If a gradient names a variable ``self.env`` does not hold.
        """
        named = self._named_grads(grads)
        for name in named:
            if name not in self.env:
                raise UnknownVariableError(name, tuple(self.env.names()))

        timestep = self.timestep + 1
        lr = self.lr
        if self.lr_scheduler is not None:
            lr = self.lr_scheduler(timestep, self.initial_lr, self.lr)

        new_states: Dict[str, Dict[str, np.ndarray]] = {}

        def update_fn(current):
            updated, states = self._update(current, named, lr, timestep)
            new_states.update(states)
            return updated

        self.env.apply_updates(update_fn)
        self.timestep = timestep
        self.lr = lr
        for key, per_variable in new_states.items():
            self._states[key] = {**self._states[key], **per_variable}

    @abstractmethod
    def _update(
        self,
        values: Mapping[str, np.ndarray],
        grads: Dict[str, np.ndarray],
        lr: float,
        timestep: int,
    ) -> Tuple[Dict[str, np.ndarray], Dict[str, Dict[str, np.ndarray]]]:
        """
        New value of every variable in ``grads``, given the read-only current ``values``.

        Returns:
            Tuple: The new values, and the new per-variable state keyed by state name.
            Nothing is written to ``self._states`` here.
        """
        raise NotImplementedError


class SGD(Optimizer):
    r"""
    Stochastic gradient descent with optional (heavy-ball) momentum.

    $$
    v_t = \mu v_{t-1} + g_t, \quad \theta_t = \theta_{t-1} - \eta v_t
    $$
    With $\mu = 0$ this is plain $\theta_t = \theta_{t-1} - \eta g_t$.
    """

    def __init__(
        self, env: VariableEnvironment, lr: float, momentum: float = 0.0, **kwargs: Any
    ) -> None:
        super().__init__(env, lr=lr, **kwargs)
        self._hyperparams["momentum"] = momentum
        self._states["velocity"] = {}

    def _update(self, values, grads, lr, timestep):
        momentum = self._hyperparams["momentum"]
        velocity = self._states["velocity"]
        updated, new_velocity = {}, {}
        for name, grad in grads.items():
            direction = grad
            if momentum:
                direction = momentum * velocity.get(name, 0.0) + grad
                new_velocity[name] = direction
            updated[name] = values[name] - lr * direction
        return updated, {"velocity": new_velocity}


class Adam(Optimizer):
    r"""
    Adam: https://arxiv.org/abs/1412.6980

    $$
    m_t = \beta_1 m_{t-1} + (1 - \beta_1) g_t, \quad
    v_t = \beta_2 v_{t-1} + (1 - \beta_2) g_t^2
    $$
    $$
    \theta_t = \theta_{t-1} - \eta \frac{\hat{m}_t}{\sqrt{\hat{v}_t} + \epsilon}
    $$
    with bias-corrected $\hat{m}_t = m_t / (1 - \beta_1^t)$ and $\hat{v}_t = v_t / (1 - \beta_2^t)$.

    A non-zero ``weight_decay`` shrinks the parameters before the Adam step, as
    in AdamW ("Decoupled Weight Decay Regularization", https://arxiv.org/abs/1711.05101).
    """

    def __init__(
        self,
        env: VariableEnvironment,
        lr: float,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-7,
        weight_decay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(env, lr=lr, **kwargs)
        self._hyperparams.update(
            beta1=beta1, beta2=beta2, epsilon=epsilon, weight_decay=weight_decay
        )
        self._states["m"] = {}
        self._states["v"] = {}

    def _update(self, values, grads, lr, timestep):
        hp = self._hyperparams
        updated, first, second = {}, {}, {}
        for name, grad in grads.items():
            first[name] = hp["beta1"] * self._states["m"].get(name, 0.0) + (1 - hp["beta1"]) * grad
            second[name] = (
                hp["beta2"] * self._states["v"].get(name, 0.0) + (1 - hp["beta2"]) * grad**2
            )
            m_hat = first[name] / (1 - hp["beta1"] ** timestep)
            v_hat = second[name] / (1 - hp["beta2"] ** timestep)

            param = values[name]
            if hp["weight_decay"] > 0.0:
                param = param * (1 - lr * hp["weight_decay"])
            updated[name] = param - lr * m_hat / (np.sqrt(v_hat) + hp["epsilon"])
        return updated, {"m": first, "v": second}
