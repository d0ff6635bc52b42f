import unittest

import numpy as np

from convkit.infrastructure.ops.layout_cpu import (
    chw_columns_as_nchw,
    hwc_columns_as_nchw,
    nchw_to_chw_columns,
    nchw_to_hwc_columns,
)
from convkit.infrastructure.ops.pool2d_cpu import (
    avgpool2d_backward_cpu,
    avgpool2d_forward_cpu,
    maxpool2d_backward_cpu,
    maxpool2d_forward_cpu,
)


class TestMaxPool2dCpu(unittest.TestCase):
    def test_forward_hand_checked(self):
        x = np.arange(16, dtype=np.float32).reshape(1, 1, 4, 4)
        y, _ = maxpool2d_forward_cpu(x, kernel=(2, 2), stride=(2, 2))
        np.testing.assert_array_equal(y[0, 0], [[5, 7], [13, 15]])

    def test_tie_goes_to_first_max(self):
        x = np.ones((1, 1, 2, 2), dtype=np.float32)
        y, idx = maxpool2d_forward_cpu(x, kernel=(2, 2), stride=(2, 2))
        dx = maxpool2d_backward_cpu(np.ones_like(y), idx, x_shape=x.shape)
        np.testing.assert_array_equal(dx[0, 0], [[1, 0], [0, 0]])

    def test_padding_never_wins(self):
        x = -np.ones((1, 1, 2, 2), dtype=np.float32)
        y, _ = maxpool2d_forward_cpu(x, kernel=(2, 2), stride=(1, 1), padding=(1, 1))
        self.assertTrue(np.all(y == -1))

    def test_backward_overlapping_windows_accumulate(self):
        x = np.array([[[[0, 1, 0], [0, 9, 0], [0, 0, 0]]]], dtype=np.float32)
        y, idx = maxpool2d_forward_cpu(x, kernel=(2, 2), stride=(1, 1))
        dx = maxpool2d_backward_cpu(np.ones_like(y), idx, x_shape=x.shape)
        self.assertEqual(dx[0, 0, 1, 1], 4.0)
        self.assertEqual(dx.sum(), 4.0)


class TestAvgPool2dCpu(unittest.TestCase):
    def test_forward_no_padding(self):
        x = np.arange(16, dtype=np.float64).reshape(1, 1, 4, 4)
        y = avgpool2d_forward_cpu(x, kernel=(2, 2), stride=(2, 2))
        np.testing.assert_allclose(y[0, 0], [[2.5, 4.5], [10.5, 12.5]])

    def test_padding_excluded_from_divisor(self):
        x = np.ones((1, 1, 3, 3), dtype=np.float32)
        y = avgpool2d_forward_cpu(x, kernel=(3, 3), stride=(1, 1), padding=(1, 1))
        np.testing.assert_allclose(y, np.ones_like(y))

    def test_backward_spreads_over_valid_positions(self):
        x_shape = (1, 1, 2, 2)
        dy = np.ones((1, 1, 2, 2), dtype=np.float64)
        dx = avgpool2d_backward_cpu(dy, x_shape=x_shape, kernel=(2, 2), stride=(1, 1), padding=(1, 1))
        # each window spreads its gradient over valid positions only
        self.assertAlmostEqual(float(dx.sum()), float(dy.sum()))

    def test_backward_matches_finite_difference(self):
        rng = np.random.default_rng(1)
        x = rng.standard_normal((2, 2, 5, 4))
        dy = rng.standard_normal((2, 2, 3, 2))
        kw = dict(kernel=(3, 2), stride=(2, 2), padding=(1, 0))
        self.assertEqual(avgpool2d_forward_cpu(x, **kw).shape, dy.shape)
        dx = avgpool2d_backward_cpu(dy, x_shape=x.shape, **kw)
        eps = 1e-6
        for pos in [(0, 0, 0, 0), (1, 1, 4, 3), (0, 1, 2, 1)]:
            xp = x.copy()
            xp[pos] += eps
            num = ((avgpool2d_forward_cpu(xp, **kw) - avgpool2d_forward_cpu(x, **kw)) * dy).sum() / eps
            self.assertAlmostEqual(num, dx[pos], places=4)


class TestLayoutCpu(unittest.TestCase):
    def test_hwc_roundtrip_and_index(self):
        w, h, c, n = 3, 2, 4, 2
        x = np.arange(n * c * h * w, dtype=np.float32).reshape(n, c, h, w)
        cols = nchw_to_hwc_columns(x)
        self.assertEqual(cols.shape, (w * h * c, n))
        # row = (y * W + x) * C + ch
        self.assertEqual(cols[(1 * w + 2) * c + 3, 1], x[1, 3, 1, 2])
        np.testing.assert_array_equal(hwc_columns_as_nchw(cols, w, h, c), x)

    def test_chw_roundtrip_and_index(self):
        w, h, c, n = 3, 2, 4, 2
        x = np.arange(n * c * h * w, dtype=np.float32).reshape(n, c, h, w)
        cols = nchw_to_chw_columns(x)
        # row = (ch * H + y) * W + x, i.e. the C-order flattening of one sample
        np.testing.assert_array_equal(cols[:, 1], x[1].ravel())
        np.testing.assert_array_equal(chw_columns_as_nchw(cols, w, h, c), x)

    def test_hwc_view_writes_through(self):
        cols = np.zeros((2 * 2 * 1, 1), dtype=np.float32, order="F")
        view = hwc_columns_as_nchw(cols, 2, 2, 1)
        view[0, 0, 1, 0] = 7.0
        self.assertEqual(cols[2, 0], 7.0)


if __name__ == "__main__":
    unittest.main()
