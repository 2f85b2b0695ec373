import logging
import os
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, Union

import numpy as np
from tqdm import tqdm

from scigrad import nn, optim
from scigrad.evaluator import Feeder
from scigrad.tensor import Context, Tensor
from scigrad.tools.config_schema import TrainingConfig
from scigrad.tools.data import SimpleDataLoader
from scigrad.tools.model import load_checkpoint, save_checkpoint
from scigrad.variables import VariableEnvironment

logger = logging.getLogger(__name__)

# (ctx, batch) -> (scalar loss tensor, feeds for the placeholders it uses)
LossBuilder = Callable[[Context, Any], Tuple[Tensor, Union[Feeder, Dict[Any, Any]]]]


class Trainer:
    """High-level training loop over a `VariableEnvironment`.

    Every batch gets a fresh context: ``loss_builder(ctx, batch)`` builds the
    graph and returns the loss with its feeds, the gradient pass differentiates
    it, and the optimizer writes the update back to the environment.

    Examples:
        >>> def build(ctx, batch):
        ...     X, y = batch
        ...     x = ctx.placeholder("x", (None, 2))
        ...     loss = functional.binary_cross_entropy(model(ctx, x), y)
        ...     return loss, {"x": X}
        >>> trainer = Trainer(env, build, optim.Adam, TrainingConfig(
        ...     total_epochs=10, optimizer_kwargs={"lr": 0.01}))
        >>> trainer.fit(trainer.make_loader(X, y))
    """

    def __init__(
        self,
        env: VariableEnvironment,
        loss_builder: LossBuilder,
        optimizer: Union[optim.Optimizer, Type[optim.Optimizer]],
        config: TrainingConfig,
        model: Optional[nn.Module] = None,
    ) -> None:
        """
        Args:
            env (VariableEnvironment): The variables to train.
            loss_builder (LossBuilder): Builds the loss graph of one batch.
            optimizer (Union[optim.Optimizer, Type[optim.Optimizer]]): An optimizer bound
                to ``env``, or an optimizer class instantiated with ``config.optimizer_kwargs``.
            config (TrainingConfig): Training configuration.
            model (Optional[nn.Module]): When given, switched to train mode while fitting
                and to eval mode while evaluating.
        """
        self.env = env
        self.loss_builder = loss_builder
        self.config = config
        self.model = model
        if isinstance(optimizer, type):
            optimizer = optimizer(env, **config.optimizer_kwargs)
        self.optimizer = optimizer
        self.start_epoch = 0
        self.metrics: Dict[str, List[Any]] = defaultdict(list)

    def make_loader(self, X: np.ndarray, y: np.ndarray, shuffle: bool = True) -> SimpleDataLoader:
        """Minibatch loader using the configured batch size and seed."""
        return SimpleDataLoader(
            X, y, batch_size=self.config.batch_size, shuffle=shuffle, seed=self.config.seed
        )

    def fit(self, train_data_loader: Iterable, val_data_loader: Optional[Iterable] = None) -> Dict[str, List[Any]]:
        """Performs the main training loop over the given data loaders.

        Args:
            train_data_loader: An iterable that yields training batches.
            val_data_loader: (Optional) An iterable that yields validation batches.

        Returns:
            Dict[str, List[Any]]: Recorded metrics, one entry per epoch
            (``epoch``, ``train_loss``, ``val_loss``) plus ``grad_l2_norm`` per step.
        """
        logger.info(
            f"Training {self.env.num_parameters()} parameters for {self.config.total_epochs} epochs"
        )
        for epoch in tqdm(
            range(self.start_epoch, self.config.total_epochs),
            desc="Training",
            leave=False,
            initial=self.start_epoch,
        ):
            if hasattr(train_data_loader, "on_epoch_start"):
                train_data_loader.on_epoch_start()

            if self.model is not None:
                self.model.train()
            train_loss = self._train_one_epoch(train_data_loader)

            val_loss = None
            if val_data_loader is not None:
                val_loss = self.evaluate(val_data_loader)

            self._on_epoch_end(epoch, train_loss, val_loss)
        return self.metrics

    def train_step(self, batch: Any) -> float:
        """Builds the loss of one batch, differentiates it and applies the update.

        Returns:
            float: The loss of the batch, before the update.
        """
        ctx = self.env.context()
        loss, feeder = self.loss_builder(ctx, batch)
        grads = ctx.gradients(loss, feeder)
        named = grads.variables()
        self.metrics["grad_l2_norm"].append(grad_l2_norm(named))
        self.optimizer.step(named)
        return float(grads.output)

    def _train_one_epoch(self, data_loader: Iterable) -> float:
        total_loss = 0.0
        batch_count = 0
        for batch in tqdm(data_loader, desc="Training Batches", leave=False):
            total_loss += self.train_step(batch)
            batch_count += 1
        return total_loss / max(batch_count, 1)

    def evaluate(self, data_loader: Iterable) -> float:
        """Average loss over ``data_loader`` without updating any variable."""
        if self.model is not None:
            self.model.eval()
        total_loss = 0.0
        batch_count = 0
        for batch in data_loader:
            ctx = self.env.context()
            loss, feeder = self.loss_builder(ctx, batch)
            (value,) = ctx.run([loss], feeder)
            total_loss += float(value)
            batch_count += 1
        if self.model is not None:
            self.model.train()
        return total_loss / max(batch_count, 1)

    def _on_epoch_end(self, epoch: int, train_loss: float, val_loss: Optional[float]) -> None:
        self.metrics["epoch"].append(epoch)
        self.metrics["train_loss"].append(train_loss)
        self.metrics["val_loss"].append(val_loss)

        is_last = epoch == self.config.total_epochs - 1
        log_every = self.config.log_every
        if is_last or (log_every is not None and epoch % log_every == 0):
            log_msg = f"[Epoch {epoch}] train_loss = {train_loss:.4f}"
            if val_loss is not None:
                log_msg += f", val_loss = {val_loss:.4f}"
            log_msg += f", LR = {self.optimizer.lr:.4f}"
            logger.info(log_msg)

        if self.config.checkpoint_path is not None:
            self.save_checkpoint(epoch)

    def _checkpoint_paths(self) -> Tuple[str, str]:
        if self.config.checkpoint_path is None:
            raise ValueError("config.checkpoint_path is not set")
        base = os.path.join(self.config.checkpoint_path, self.config.training_run_name)
        return f"{base}.json", f"{base}.npz"

    def save_checkpoint(self, epoch: int) -> None:
        """Saves the variables, the optimizer state and the next epoch to resume from."""
        json_path, npz_path = self._checkpoint_paths()
        save_checkpoint(
            {
                "epoch": epoch + 1,
                "parameters": self.env.state_dict(),
                "optimizer_state_dict": self.optimizer.state_dict(),
            },
            json_path=json_path,
            npz_path=npz_path,
        )
        logger.debug(f"Saved checkpoint to {json_path} and {npz_path}")

    def resume(self) -> int:
        """
        Restores the variables and the optimizer state from the run's checkpoint.

        Returns:
            int: The epoch training continues from.
        """
        json_path, npz_path = self._checkpoint_paths()
        checkpoint = load_checkpoint(json_path, npz_path)
        self.env.load_state_dict(checkpoint["parameters"])
        self.optimizer.load_state_dict(checkpoint["optimizer_state_dict"])
        self.start_epoch = checkpoint["epoch"]
        logger.info(f"Resumed from {json_path} at epoch {self.start_epoch}")
        return self.start_epoch


def grad_l2_norm(grads: Mapping[str, np.ndarray]) -> float:
    """Computes the L2 norm of all gradients together.

    Example:
        >>> grad_l2_norm({"weight": np.array([0.1, -0.2])})
        0.223606797749979
    """
    grad_norm = 0.0
    for grad in grads.values():
        grad_norm += float((np.asarray(grad) ** 2).sum())
    return float(grad_norm**0.5)
