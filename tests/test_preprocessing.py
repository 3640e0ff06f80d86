"""Unit tests for image -> tensor preprocessing."""
import unittest

import numpy as np

from activity_capture.errors import PreprocessingError
from activity_capture.preprocessing import check_shape, to_tensor
from tests.fakes import rgb_frame


class TestToTensor(unittest.TestCase):

    def test_layout_and_standard_scaling(self):
        t = to_tensor(rgb_frame(255, 0, 51, width=64, height=48), 101, 101)
        self.assertEqual(t.shape, (1, 3, 101, 101))
        self.assertEqual(t.dtype, np.float32)
        self.assertAlmostEqual(float(t[0, 0].mean()), 1.0, places=5)
        self.assertAlmostEqual(float(t[0, 1].mean()), 0.0, places=5)
        self.assertAlmostEqual(float(t[0, 2].mean()), 0.2, places=5)

    def test_signed_normalization(self):
        t = to_tensor(rgb_frame(255, 0, 0), 16, 16, "normalized")
        self.assertAlmostEqual(float(t[0, 0].max()), 1.0, places=5)
        self.assertAlmostEqual(float(t[0, 1].min()), -1.0, places=5)

    def test_imagenet_normalization(self):
        t = to_tensor(rgb_frame(0, 0, 0), 8, 8, "imagenet")
        self.assertAlmostEqual(float(t[0, 0, 0, 0]), -0.485 / 0.229, places=4)

    def test_gray_and_rgba_inputs(self):
        gray = np.full((20, 20), 128, dtype=np.uint8)
        self.assertEqual(to_tensor(gray, 10, 10).shape, (1, 3, 10, 10))
        rgba = np.zeros((20, 20, 4), dtype=np.uint8)
        self.assertEqual(to_tensor(rgba, 10, 12).shape, (1, 3, 12, 10))

    def test_rejects_bad_input(self):
        with self.assertRaises(PreprocessingError):
            to_tensor(np.zeros((0, 0, 3), dtype=np.uint8), 10, 10)
        with self.assertRaises(PreprocessingError):
            to_tensor(rgb_frame(), 10, 10, "zscore")
        with self.assertRaises(PreprocessingError):
            to_tensor(None, 10, 10)

    def test_check_shape(self):
        t = to_tensor(rgb_frame(), 101, 101)
        check_shape(t, (1, 3, 101, 101))
        with self.assertRaises(PreprocessingError):
            check_shape(t, (1, 64, 101, 101))


if __name__ == "__main__":
    unittest.main()
