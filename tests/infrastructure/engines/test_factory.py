import unittest
import warnings
from unittest import mock

import numpy as np

from convkit.domain import AccelerationUnavailableError, Device
from convkit.infrastructure import EngineConfig
from convkit.infrastructure.engines import (
    CuDnnConvolutionEngine,
    CuDnnConvolutionEngineFactory,
    DefaultConvolutionEngine,
    DefaultConvolutionEngineFactory,
    create_conv_engine,
    create_engine_factory,
    is_cudnn_supported,
)
from convkit.infrastructure.engines import _factory

from ._fake_cudnn import FakeCuDnn

_FACTORY = "convkit.infrastructure.engines._factory"
_MISSING = "/nonexistent/convkit-tests/libcudnn.so"
_RUNTIME = "convkit.infrastructure.native_cuda.python.cudart_ctypes.get_cuda_runtime"


def _unavailable(reason="libcudnn not found"):
    return mock.patch(f"{_FACTORY}.cudnn_unavailable_reason", return_value=reason)


def _available():
    return mock.patch(f"{_FACTORY}.cudnn_unavailable_reason", return_value="")


class TestCreateConvEngineOnHost(unittest.TestCase):
    def test_cpu_uses_default_engine_without_warning(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            engine = create_conv_engine("cpu", 4, EngineConfig())
        self.assertIsInstance(engine, DefaultConvolutionEngine)
        self.assertEqual(engine.max_temp_mem_samples, 4)
        self.assertEqual(engine.device, Device("cpu"))

    def test_negative_device_id_means_host(self):
        engine = create_conv_engine(-1, 0, EngineConfig())
        self.assertIsInstance(engine, DefaultConvolutionEngine)

    def test_budget_defaults_to_config(self):
        engine = create_conv_engine("cpu", config=EngineConfig(max_temp_mem_samples=16))
        self.assertEqual(engine.max_temp_mem_samples, 16)

    def test_config_defaults_to_environment(self):
        env = {"CONVKIT_ENGINE": "default", "CONVKIT_MAX_TEMP_MEM_SAMPLES": "3"}
        with mock.patch.dict("os.environ", env):
            engine = create_conv_engine("cpu")
        self.assertIsInstance(engine, DefaultConvolutionEngine)
        self.assertEqual(engine.max_temp_mem_samples, 3)

    def test_negative_budget_rejected(self):
        with self.assertRaises(ValueError):
            create_conv_engine("cpu", -1, EngineConfig())

    def test_forced_cudnn_unavailable_raises(self):
        with _unavailable():
            with self.assertRaises(AccelerationUnavailableError) as ctx:
                create_conv_engine("cpu", 0, EngineConfig(engine="cudnn"))
        self.assertIn("libcudnn not found", ctx.exception.reason)

    def test_forced_cudnn_on_host_raises(self):
        with _available():
            with self.assertRaises(AccelerationUnavailableError):
                create_conv_engine("cpu", 0, EngineConfig(engine="cudnn"))

    def test_auto_on_host_skips_cudnn_detection(self):
        with mock.patch(f"{_FACTORY}.cudnn_unavailable_reason") as reason:
            engine = create_conv_engine("cpu", 0, EngineConfig())
            create_engine_factory("cpu", EngineConfig())
        reason.assert_not_called()
        self.assertIsInstance(engine, DefaultConvolutionEngine)


class TestCreateConvEngineOnCuda(unittest.TestCase):
    """Engines that would allocate on the device are patched or built empty."""

    def test_falls_back_with_warning(self):
        with _unavailable(), mock.patch(f"{_FACTORY}.DefaultConvolutionEngine") as default_cls:
            with self.assertWarns(RuntimeWarning) as ctx:
                engine = create_conv_engine("cuda:0", 2, EngineConfig())
        default_cls.assert_called_once_with(Device("cuda:0"), 2)
        self.assertIs(engine, default_cls.return_value)
        self.assertIn("libcudnn not found", str(ctx.warning))

    def test_fallback_engine_builds_without_cuda_runtime(self):
        with _unavailable(), mock.patch(_RUNTIME, side_effect=OSError("libcudart not found")) as runtime:
            with self.assertWarns(RuntimeWarning):
                engine = create_conv_engine("cuda:0", 2, EngineConfig())
        runtime.assert_not_called()
        self.assertIsInstance(engine, DefaultConvolutionEngine)
        self.assertEqual(engine.device, Device("cuda:0"))
        self.assertEqual(engine.max_temp_mem_samples, 2)
        self.assertEqual(engine.temp.capacity, 0)

    def test_fallback_with_missing_cudnn_library(self):
        with mock.patch(_RUNTIME, side_effect=OSError("libcudart not found")):
            with self.assertWarns(RuntimeWarning) as ctx:
                engine = create_conv_engine("cuda:0", 0, EngineConfig(cudnn_library=_MISSING))
        self.assertIsInstance(engine, DefaultConvolutionEngine)
        self.assertIn(_MISSING, str(ctx.warning))

    def test_forced_default_skips_detection(self):
        with mock.patch(f"{_FACTORY}.cudnn_unavailable_reason") as reason, mock.patch(
            f"{_FACTORY}.DefaultConvolutionEngine"
        ) as default_cls:
            with warnings.catch_warnings():
                warnings.simplefilter("error")
                create_conv_engine("cuda:0", 0, EngineConfig(engine="default"))
        reason.assert_not_called()
        default_cls.assert_called_once()

    def test_selects_cudnn_when_available(self):
        fake = FakeCuDnn()
        with _available(), mock.patch(f"{_FACTORY}.get_cudnn", return_value=fake), mock.patch(
            f"{_FACTORY}.CuDnnConvolutionEngine"
        ) as cudnn_cls:
            engine = create_conv_engine("cuda:1", 5, EngineConfig(), dtype=np.float64)
        cudnn_cls.assert_called_once_with(Device("cuda:1"), 5, dtype=np.float64, lib=fake)
        self.assertIs(engine, cudnn_cls.return_value)

    def test_forced_cudnn_unavailable_raises(self):
        with _unavailable():
            with self.assertRaises(AccelerationUnavailableError):
                create_conv_engine("cuda:0", 0, EngineConfig(engine="cudnn"))


class TestCreateEngineFactory(unittest.TestCase):
    def test_host_gets_default_factory(self):
        factory = create_engine_factory("cpu", EngineConfig())
        self.assertIsInstance(factory, DefaultConvolutionEngineFactory)
        self.assertIsInstance(factory.create_conv_engine(0), DefaultConvolutionEngine)

    def test_cuda_fallback_warns(self):
        with _unavailable():
            with self.assertWarns(RuntimeWarning):
                factory = create_engine_factory("cuda:0", EngineConfig())
        self.assertIsInstance(factory, DefaultConvolutionEngineFactory)
        self.assertEqual(factory.device, Device("cuda:0"))

        with mock.patch(_RUNTIME, side_effect=OSError("libcudart not found")):
            engine = factory.create_conv_engine(1)
        self.assertIsInstance(engine, DefaultConvolutionEngine)
        self.assertEqual(engine.device, Device("cuda:0"))

    def test_cuda_with_cudnn(self):
        fake = FakeCuDnn()
        with _available(), mock.patch(
            "convkit.infrastructure.engines._cudnn_engine.get_cudnn", return_value=fake
        ):
            factory = create_engine_factory("cuda:0", EngineConfig(), dtype=np.float64)
        self.assertIsInstance(factory, CuDnnConvolutionEngineFactory)
        self.assertTrue(factory.available)
        self.assertEqual(factory.dtype, np.float64)

        t = factory.create_tensor(4, 4, 1, 2)
        self.assertEqual(fake.tensors[t.handle][0], 1)


class TestCuDnnFactoryWithoutLibrary(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = CuDnnConvolutionEngineFactory("cpu", library_path=_MISSING)

    def test_reports_unavailable(self):
        self.assertFalse(self.factory.available)

    def test_every_method_raises(self):
        f = self.factory
        calls = {
            "create_tensor": lambda: f.create_tensor(1, 1, 1, 1),
            "create_filter": lambda: f.create_filter(1, 1, 1, 1),
            "create_conv_descriptor": lambda: f.create_conv_descriptor(None, None, 1, 1, False),
            "create_pool_descriptor": lambda: f.create_pool_descriptor(None, 1, 1, 1, 1),
            "create_conv_engine": lambda: f.create_conv_engine(0),
            "create_pool_engine": lambda: f.create_pool_engine(),
        }
        for name, call in calls.items():
            with self.subTest(method=name):
                with self.assertRaises(AccelerationUnavailableError) as ctx:
                    call()
                self.assertEqual(ctx.exception.op, name)
                self.assertIn(_MISSING, ctx.exception.reason)

    def test_engine_without_library_raises(self):
        with mock.patch(
            "convkit.infrastructure.engines._cudnn_engine.get_cudnn", side_effect=OSError("missing")
        ):
            with self.assertRaises(AccelerationUnavailableError):
                CuDnnConvolutionEngine("cpu", 0)

    def test_unsupported_dtype(self):
        with self.assertRaises(TypeError):
            CuDnnConvolutionEngineFactory("cpu", np.float16, library_path=_MISSING)


class TestCapabilityDetection(unittest.TestCase):
    def test_missing_library_is_unsupported(self):
        self.assertFalse(is_cudnn_supported(EngineConfig(cudnn_library=_MISSING)))
        self.assertIn(_MISSING, _factory.cudnn_unavailable_reason(EngineConfig(cudnn_library=_MISSING)))

    def test_no_devices_is_unsupported(self):
        runtime = mock.Mock()
        runtime.device_count.return_value = 0
        _factory._probe_cudnn.cache_clear()
        try:
            with mock.patch(f"{_FACTORY}.get_cudnn"), mock.patch(
                f"{_FACTORY}.get_cuda_runtime", return_value=runtime
            ):
                reason = _factory.cudnn_unavailable_reason(EngineConfig(cudnn_library="a", cudart_library="b"))
        finally:
            _factory._probe_cudnn.cache_clear()
        self.assertEqual(reason, "no CUDA devices are visible")

    def test_result_is_cached(self):
        _factory._probe_cudnn.cache_clear()
        try:
            with mock.patch(f"{_FACTORY}.get_cudnn") as get_cudnn, mock.patch(
                f"{_FACTORY}.get_cuda_runtime"
            ) as get_runtime:
                get_runtime.return_value.device_count.return_value = 1
                config = EngineConfig(cudnn_library="c", cudart_library="d")
                self.assertTrue(is_cudnn_supported(config))
                self.assertTrue(is_cudnn_supported(config))
            get_cudnn.assert_called_once_with("c")
        finally:
            _factory._probe_cudnn.cache_clear()


if __name__ == "__main__":
    unittest.main()
