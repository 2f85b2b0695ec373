"""
A minimal neural network learning XOR.

A 2-3-1 network (ReLU hidden layer, sigmoid output) trained with binary
cross-entropy. Every iteration builds its graph in a fresh context bound to
the same variable environment.
"""

import numpy as np

from scigrad import functional, optim
from scigrad.init import glorot_uniform, zeros
from scigrad.logger import setup_logger
from scigrad.variables import VariableEnvironment

logger = setup_logger(__name__)

X_DATA = np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])
Y_DATA = np.array([[0.0], [1.0], [1.0], [0.0]])


def build_env(seed: int = 0) -> VariableEnvironment:
    rng = np.random.default_rng(seed)
    env = VariableEnvironment()
    env.set("w1", glorot_uniform((2, 3), rng))
    env.set("b1", zeros((1, 3)))
    env.set("w2", glorot_uniform((3, 1), rng))
    env.set("b2", zeros((1, 1)))
    return env


def forward(ctx, x):
    h = functional.relu(x @ ctx.variable("w1") + ctx.variable("b1"))
    return functional.sigmoid(h @ ctx.variable("w2") + ctx.variable("b2"))


def train(env: VariableEnvironment, num_epochs: int = 1000, lr: float = 0.05) -> float:
    optimizer = optim.Adam(env, lr=lr)
    loss_value = float("nan")
    for epoch in range(num_epochs):
        ctx = env.context()
        x = ctx.placeholder("x", (None, 2))
        y = ctx.placeholder("y", (None, 1))
        loss = functional.binary_cross_entropy(forward(ctx, x), y)
        grads = ctx.gradients(loss, {"x": X_DATA, "y": Y_DATA})
        optimizer.step(grads)
        loss_value = float(grads.output)
        if epoch % 100 == 0 or epoch == num_epochs - 1:
            logger.info(f"Epoch {epoch}: Loss = {loss_value:.6f}")
    return loss_value


def predict(env: VariableEnvironment, x_data: np.ndarray) -> np.ndarray:
    def run(ctx):
        x = ctx.placeholder("x", (None, 2))
        (pred,) = ctx.run(forward(ctx, x), {"x": x_data})
        return pred

    return env.run(run)


if __name__ == "__main__":
    env = build_env()
    train(env)
    predictions = predict(env, X_DATA)
    logger.info("Input    | Target | Prediction")
    for inputs, target, pred in zip(X_DATA, Y_DATA, predictions):
        logger.info(f"{inputs[0]:.0f}, {inputs[1]:.0f}     | {target[0]:.0f}      | {pred[0]:.6f}")
