import unittest

import numpy as np

from scigrad.tools.data import SimpleDataLoader, train_test_split


class TestSimpleDataLoader(unittest.TestCase):
    def setUp(self):
        self.X = np.arange(20).reshape(10, 2)
        self.y = np.arange(10)

    def test_batches_cover_the_data(self):
        loader = SimpleDataLoader(self.X, self.y, batch_size=4, shuffle=False)
        batches = list(loader)
        self.assertEqual(len(loader), 3)
        self.assertEqual([len(b[1]) for b in batches], [4, 4, 2])
        assert np.array_equal(np.concatenate([b[1] for b in batches]), self.y)
        assert np.array_equal(batches[0][0], self.X[:4])

    def test_shuffle_is_seeded(self):
        a = SimpleDataLoader(self.X, self.y, batch_size=10, seed=1)
        b = SimpleDataLoader(self.X, self.y, batch_size=10, seed=1)
        a.on_epoch_start()
        b.on_epoch_start()
        (xa, ya), (xb, yb) = next(iter(a)), next(iter(b))
        assert np.array_equal(ya, yb)
        assert np.array_equal(np.sort(ya), self.y)
        # Rows stay paired with their labels
        assert np.array_equal(xa[:, 0], ya * 2)

    def test_no_shuffle_keeps_order(self):
        loader = SimpleDataLoader(self.X, self.y, batch_size=10, shuffle=False)
        loader.on_epoch_start()
        assert np.array_equal(next(iter(loader))[1], self.y)

    def test_preprocess(self):
        loader = SimpleDataLoader(self.X, self.y, batch_size=3, shuffle=False)
        loader.preprocess(lambda X, y: (X[:6] * 2, y[:6]))
        self.assertEqual(len(loader), 2)
        assert np.array_equal(next(iter(loader))[0], self.X[:3] * 2)

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            SimpleDataLoader(self.X, self.y, batch_size=0)
        with self.assertRaises(ValueError):
            SimpleDataLoader(self.X, self.y[:5])


class TestTrainTestSplit(unittest.TestCase):
    def test_split_sizes_and_pairing(self):
        X = np.arange(100).reshape(50, 2)
        y = np.arange(50)
        X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=42)
        self.assertEqual((X_train.shape, X_test.shape), ((40, 2), (10, 2)))
        assert np.array_equal(X_test[:, 0], y_test * 2)
        assert np.array_equal(np.sort(np.concatenate([y_train, y_test])), y)

    def test_reproducible(self):
        X = np.arange(20).reshape(10, 2)
        y = np.arange(10)
        first = train_test_split(X, y, random_state=0)
        second = train_test_split(X, y, random_state=0)
        for a, b in zip(first, second):
            assert np.array_equal(a, b)

    def test_invalid_arguments(self):
        X = np.zeros((4, 2))
        with self.assertRaises(ValueError):
            train_test_split(X, np.zeros(4), test_size=1.0)
        with self.assertRaises(ValueError):
            train_test_split(X, np.zeros(3))
