"""
This module contains the schema for the configs of the training pipeline.
It's optional to use, but may provide some quality of life improvements
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class TrainingConfig:
    """
    Configuration for `scigrad.tools.trainer.Trainer`.

    ``optimizer_kwargs`` is passed to the optimizer class as keyword arguments,
    e.g. ``{"lr": 0.01, "lr_scheduler_kwargs": {"lr_scheduler_cls": "CosineScheduler"}}``.
    """

    total_epochs: int
    optimizer_kwargs: dict = field(default_factory=dict)
    batch_size: int = 32
    # Seeds the shuffling of loaders built by Trainer.make_loader
    seed: Optional[int] = None
    # Log the epoch loss every N epochs; None logs only the last epoch
    log_every: Optional[int] = None
    training_run_name: str = "default"
    # Directory for "<training_run_name>.json/.npz" checkpoints; None disables checkpointing
    checkpoint_path: Optional[str] = None

    def __post_init__(self):
        if self.total_epochs <= 0:
            raise ValueError(f"total_epochs must be positive, got {self.total_epochs}")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.log_every is not None and self.log_every <= 0:
            raise ValueError(f"log_every must be positive, got {self.log_every}")
