import os
import tempfile
from unittest import TestCase

import numpy as np

from scigrad import optim
from scigrad.tools.model import load_checkpoint, save_checkpoint
from scigrad.variables import VariableEnvironment


class TestCheckpoint(TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.json_path = os.path.join(self.tmpdir.name, "run", "model.json")
        self.npz_path = os.path.join(self.tmpdir.name, "run", "model.npz")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_nested_structure_round_trip(self):
        obj = {
            "epoch": 3,
            "loss": np.float32(0.25),
            "name": "run",
            "parameters": {"fc.weight": np.arange(6.0).reshape(2, 3)},
            "history": [1.0, 2.0],
            "shape": (2, 3),
            "nothing": None,
        }
        save_checkpoint(obj, self.json_path, self.npz_path)
        loaded = load_checkpoint(self.json_path, self.npz_path)

        self.assertEqual(loaded["epoch"], 3)
        self.assertAlmostEqual(loaded["loss"], 0.25)
        self.assertEqual(loaded["name"], "run")
        self.assertEqual(loaded["history"], [1.0, 2.0])
        self.assertEqual(loaded["shape"], (2, 3))
        self.assertIsNone(loaded["nothing"])
        assert np.array_equal(loaded["parameters"]["fc.weight"], obj["parameters"]["fc.weight"])

    def test_weights_only(self):
        save_checkpoint(
            {"parameters": {"w": np.ones(2)}, "epoch": 1}, self.json_path, self.npz_path
        )
        weights = load_checkpoint(self.json_path, self.npz_path, weights_only=True)
        self.assertEqual(list(weights), ["w"])

    def test_optimizer_state_survives(self):
        env = VariableEnvironment()
        env.set("w", np.ones(3))
        optimizer = optim.Adam(env, lr=0.01)
        optimizer.step({"w": np.ones(3)})
        save_checkpoint(
            {"parameters": env.state_dict(), "optimizer_state_dict": optimizer.state_dict()},
            self.json_path,
            self.npz_path,
        )

        restored = optim.Adam(env, lr=0.01)
        restored.load_state_dict(load_checkpoint(self.json_path, self.npz_path)["optimizer_state_dict"])
        self.assertEqual(restored.timestep, 1)
        assert np.allclose(restored._states["m"]["w"], optimizer._states["m"]["w"])

    def test_missing_files(self):
        with self.assertRaises(ValueError):
            load_checkpoint(self.json_path, self.npz_path)

    def test_unsupported_object(self):
        with self.assertRaises(TypeError):
            save_checkpoint({"fn": object()}, self.json_path, self.npz_path)
