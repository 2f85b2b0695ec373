from unittest import TestCase

import numpy as np

from scigrad import init


class TestComputeFans(TestCase):
    def test_dense(self):
        self.assertEqual(init.compute_fans((5, 10)), (5, 10))

    def test_receptive_field_uses_second_dim_for_fan_out(self):
        # (input, output, receptive...) with output != last dim
        self.assertEqual(init.compute_fans((16, 4, 3, 5)), (240, 60))

    def test_needs_two_dims(self):
        with self.assertRaises(ValueError):
            init.compute_fans((3,))


class TestGlorotUniform(TestCase):
    def test_limit_follows_fans(self):
        w = init.glorot_uniform((8, 2, 3), rng=0, dtype=np.float64)
        limit = np.sqrt(6.0 / (8 * 3 + 2 * 3))
        self.assertEqual(w.shape, (8, 2, 3))
        self.assertLessEqual(float(np.abs(w).max()), limit)

    def test_same_seed_same_weights(self):
        assert np.array_equal(init.glorot_uniform((3, 4), rng=1), init.glorot_uniform((3, 4), rng=1))
