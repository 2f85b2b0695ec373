"""
Mini-batch training of a small classifier on the breast cancer dataset bundled with scikit-learn.

Shows the layer API (Linear, Dropout, Sequential), the Trainer loop with a
cosine learning-rate schedule, and checkpointing of the variable environment.
"""

import numpy as np
from sklearn.datasets import load_breast_cancer

from scigrad import functional, nn, optim
from scigrad.logger import setup_logger
from scigrad.tools.config_schema import TrainingConfig
from scigrad.tools.data import train_test_split
from scigrad.tools.metrics import accuracy, binarize
from scigrad.tools.trainer import Trainer
from scigrad.variables import VariableEnvironment

logger = setup_logger(__name__)


def make_dataset():
    X, y = load_breast_cancer(return_X_y=True)
    # Per-feature standardization
    X = (X - X.mean(axis=0)) / X.std(axis=0)
    return X, y.reshape(-1, 1).astype(np.float32)


def build_model(env: VariableEnvironment, num_features: int, seed: int = 0) -> nn.Sequential:
    rng = np.random.default_rng(seed)
    return nn.Sequential(
        nn.Linear(env, "hidden1", num_features, 16, rng),
        functional.relu,
        nn.Dropout(0.1, seed=seed),
        nn.Linear(env, "hidden2", 16, 16, rng),
        functional.relu,
        nn.Linear(env, "output", 16, 1, rng),
        functional.sigmoid,
    )


def main():
    X, y = make_dataset()
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=0)

    env = VariableEnvironment()
    model = build_model(env, X.shape[1])
    config = TrainingConfig(
        total_epochs=50,
        optimizer_kwargs={
            "lr": 0.01,
            "lr_scheduler_kwargs": {
                "lr_scheduler_cls": "CosineScheduler",
                "warmup_steps": 50,
                "lr_decay_iters": 750,
                "min_lr": 1e-4,
            },
        },
        batch_size=32,
        seed=0,
        log_every=10,
        training_run_name="minibatch",
        checkpoint_path="checkpoints",
    )

    def loss_builder(ctx, batch):
        batch_X, batch_y = batch
        x = ctx.placeholder("x", (None, X.shape[1]))
        target = ctx.placeholder("y", (None, 1))
        loss = functional.binary_cross_entropy(model(ctx, x), target)
        return loss, {"x": batch_X, "y": batch_y}

    trainer = Trainer(env, loss_builder, optim.Adam, config, model=model)
    trainer.fit(
        trainer.make_loader(X_train, y_train),
        trainer.make_loader(X_test, y_test, shuffle=False),
    )

    model.eval()

    def predict(ctx):
        x = ctx.placeholder("x", (None, X.shape[1]))
        (probs,) = ctx.run(model(ctx, x), {"x": X_test})
        return probs

    test_accuracy = accuracy(binarize(env.run(predict)), y_test)
    logger.info(f"Test accuracy: {test_accuracy:.4f}")


if __name__ == "__main__":
    main()
