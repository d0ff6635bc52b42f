import unittest

import numpy as np

from convkit.domain import PoolKind, PoolingDescriptor, Tensor4D
from convkit.infrastructure.engines import (
    CuDnnConvolutionEngineFactory,
    CuDnnPoolingEngine,
    DefaultPoolingEngine,
)
from convkit.infrastructure.matrix import Matrix
from convkit.infrastructure.ops.layout_cpu import (
    chw_columns_as_nchw,
    hwc_columns_as_nchw,
    nchw_to_chw_columns,
    nchw_to_hwc_columns,
)

from ._fake_cudnn import FakeCuDnn


class TestCuDnnPoolingEngine(unittest.TestCase):
    def setUp(self) -> None:
        self.lib = FakeCuDnn()
        self.factory = CuDnnConvolutionEngineFactory("cpu", lib=self.lib)
        self.engine = self.factory.create_pool_engine()

    def test_max_forward(self):
        x = np.arange(16, dtype=np.float32).reshape(1, 1, 4, 4)
        in_t = self.factory.create_tensor(4, 4, 1, 1)
        out_t = self.factory.create_tensor(2, 2, 1, 1)
        pool = self.factory.create_pool_descriptor(PoolKind.MAX, 2, 2, 2, 2)
        out = Matrix.zeros(4, 1)
        self.engine.forward(in_t, Matrix.from_numpy(nchw_to_chw_columns(x)), pool, out_t, out)
        np.testing.assert_array_equal(out.to_numpy()[:, 0], [5, 7, 13, 15])

    def test_matches_default_engine(self):
        rng = np.random.default_rng(3)
        x = rng.standard_normal((2, 3, 5, 6)).astype(np.float32)
        dy = rng.standard_normal((2, 3, 3, 3)).astype(np.float32)
        for kind in (PoolKind.MAX, PoolKind.AVERAGE):
            with self.subTest(kind=kind):
                in_t = self.factory.create_tensor(6, 5, 3, 2)
                out_t = self.factory.create_tensor(3, 3, 3, 2)
                pool = self.factory.create_pool_descriptor(kind, 2, 2, 2, 2, 0, 1)
                in_ = Matrix.from_numpy(nchw_to_chw_columns(x))
                out = Matrix.zeros(27, 2)
                grad = Matrix.zeros(90, 2)
                self.engine.forward(in_t, in_, pool, out_t, out)
                self.engine.backward(
                    out_t, out, Matrix.from_numpy(nchw_to_chw_columns(dy)), pool, in_t, in_, grad
                )

                ref = DefaultPoolingEngine()
                ref_pool = PoolingDescriptor(kind, 2, 2, 2, 2, 0, 1)
                ref_in_t, ref_out_t = Tensor4D(6, 5, 3, 2), Tensor4D(3, 3, 3, 2)
                ref_in = Matrix.from_numpy(nchw_to_hwc_columns(x))
                ref_out = Matrix.zeros(27, 2)
                ref_grad = Matrix.zeros(90, 2)
                ref.forward(ref_in_t, ref_in, ref_pool, ref_out_t, ref_out)
                ref.backward(
                    ref_out_t, ref_out, Matrix.from_numpy(nchw_to_hwc_columns(dy)),
                    ref_pool, ref_in_t, ref_in, ref_grad,
                )

                np.testing.assert_allclose(
                    chw_columns_as_nchw(out.to_numpy(), 3, 3, 3),
                    hwc_columns_as_nchw(ref_out.to_numpy(), 3, 3, 3),
                    rtol=1e-6,
                )
                np.testing.assert_allclose(
                    chw_columns_as_nchw(grad.to_numpy(), 6, 5, 3),
                    hwc_columns_as_nchw(ref_grad.to_numpy(), 6, 5, 3),
                    rtol=1e-6,
                )

    def test_scaling_factors_and_accumulation(self):
        in_t = self.factory.create_tensor(2, 2, 1, 1)
        out_t = self.factory.create_tensor(1, 1, 1, 1)
        pool = self.factory.create_pool_descriptor(PoolKind.AVERAGE, 2, 2, 2, 2)
        in_ = Matrix.from_numpy(np.array([[1], [2], [3], [4]], dtype=np.float32))
        out = Matrix.zeros(1, 1)
        grad = Matrix.from_numpy(np.ones((4, 1), dtype=np.float32))

        self.engine.forward(in_t, in_, pool, out_t, out)
        self.engine.backward(out_t, out, Matrix.from_numpy(np.full((1, 1), 4.0, np.float32)), pool, in_t, in_, grad)

        self.assertEqual(out.to_numpy()[0, 0], 2.5)
        np.testing.assert_array_equal(grad.to_numpy()[:, 0], [2, 2, 2, 2])
        self.assertEqual(self.lib.calls, [("pooling_forward", 1.0, 0.0), ("pooling_backward", 1.0, 1.0)])

    def test_plain_descriptor_rejected(self):
        in_t = self.factory.create_tensor(2, 2, 1, 1)
        out_t = self.factory.create_tensor(1, 1, 1, 1)
        with self.assertRaises(TypeError):
            self.engine.forward(
                in_t, Matrix.zeros(4, 1), PoolingDescriptor(PoolKind.MAX, 2, 2, 2, 2), out_t, Matrix.zeros(1, 1)
            )

    def test_close_releases_handle(self):
        engine = CuDnnPoolingEngine("cpu", lib=self.lib)
        engine.close()
        engine.close()
        self.assertTrue(engine.closed)
        self.assertEqual(self.lib.destroyed["handle"], 1)


if __name__ == "__main__":
    unittest.main()
