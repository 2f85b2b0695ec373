from unittest import TestCase

import numpy as np

from scigrad.tools.metrics import accuracy, binarize, mean_squared_error, precision


class TestMetrics(TestCase):
    def test_accuracy(self):
        self.assertEqual(accuracy(np.array([1, 0, 1, 1]), np.array([1, 1, 1, 0])), 0.5)
        # Column vectors are flattened
        self.assertEqual(accuracy(np.array([[1], [0]]), np.array([[1], [0]])), 1.0)
        self.assertEqual(accuracy(np.array([]), np.array([])), 0.0)

    def test_precision(self):
        self.assertAlmostEqual(precision(np.array([1, 0, 1, 1]), np.array([1, 1, 1, 0])), 2 / 3)
        self.assertEqual(precision(np.array([0, 0]), np.array([1, 0])), 0.0)

    def test_mean_squared_error(self):
        self.assertAlmostEqual(
            mean_squared_error(np.array([2.5, 0.0, 2, 8]), np.array([3.0, -0.5, 2, 7])), 0.375
        )

    def test_binarize(self):
        labels = binarize(np.array([[0.2], [0.5], [0.9]]))
        assert np.array_equal(labels, [[0], [1], [1]])
        assert np.array_equal(binarize(np.array([0.2, 0.7]), threshold=0.8), [0, 0])

    def test_length_mismatch(self):
        with self.assertRaises(ValueError):
            accuracy(np.array([1, 0]), np.array([1]))
