"""
Engine selection.

`create_conv_engine` and `create_engine_factory` pick the engine family for a
device at construction time:

- CUDA device and cuDNN loadable -> cuDNN engine
- anything else -> default (im2col + GEMM) engine

Selection itself never fails in "auto" mode. A CUDA device that falls back to
the default engine produces a `RuntimeWarning`. `EngineConfig.engine` can
force either family; forcing "cudnn" when it cannot be loaded raises
`AccelerationUnavailableError`.

The capability probe `is_cudnn_supported` loads the CUDA runtime and cuDNN
and asks for the device count. Its result is cached per library-path pair.
"""

from __future__ import annotations

import logging
import warnings
from functools import lru_cache
from typing import Optional

import numpy as np

from ...domain._engine import ConvolutionEngine, ConvolutionEngineFactory
from ...domain._errors import AccelerationUnavailableError, NativeLibraryError
from ...domain.device._device import Device, DeviceSpec, as_device
from .._config import EngineConfig
from ..native_cuda.python.cudart_ctypes import get_cuda_runtime
from ..native_cuda.python.cudnn_ctypes import get_cudnn
from ._cudnn_engine import CuDnnConvolutionEngine, CuDnnConvolutionEngineFactory
from ._default_engine import DefaultConvolutionEngine, DefaultConvolutionEngineFactory

logger = logging.getLogger("convkit.engines")


@lru_cache(maxsize=None)
def _probe_cudnn(cudnn_path: Optional[str], cudart_path: Optional[str]) -> str:
    """Return "" when cuDNN is usable, otherwise the reason it is not."""
    try:
        get_cudnn(cudnn_path)
        count = get_cuda_runtime(cudart_path).device_count()
    except (OSError, AttributeError, NativeLibraryError) as e:
        logger.debug("cuDNN probe failed: %s", e)
        return str(e)
    if count <= 0:
        return "no CUDA devices are visible"
    return ""


def cudnn_unavailable_reason(config: Optional[EngineConfig] = None) -> str:
    """Return why cuDNN cannot be used, or "" if it can."""
    config = EngineConfig.from_env() if config is None else config
    return _probe_cudnn(config.cudnn_library, config.cudart_library)


def is_cudnn_supported(config: Optional[EngineConfig] = None) -> bool:
    """
    Runtime capability probe for the accelerated engine.

    Parameters
    ----------
    config : EngineConfig, optional
        Supplies explicit library paths. Defaults to `EngineConfig.from_env()`.

    Returns
    -------
    bool
        True if cuDNN and the CUDA runtime load and at least one CUDA device
        is visible.
    """
    return cudnn_unavailable_reason(config) == ""


def _use_cudnn(op: str, device: Device, config: EngineConfig) -> bool:
    if config.engine == "default":
        return False

    if config.engine == "cudnn":
        reason = cudnn_unavailable_reason(config)
        if reason:
            raise AccelerationUnavailableError(op, reason)
        if not device.is_cuda():
            raise AccelerationUnavailableError(op, f"device '{device}' is not a CUDA device")
        return True

    if not device.is_cuda():
        return False
    reason = cudnn_unavailable_reason(config)
    if reason:
        warnings.warn(
            f"{op}: cuDNN is unavailable for device '{device}' ({reason}); "
            "falling back to the default convolution engine.",
            RuntimeWarning,
            stacklevel=3,
        )
        return False
    return True


def create_conv_engine(
    device: DeviceSpec,
    max_temp_mem_samples: Optional[int] = None,
    config: Optional[EngineConfig] = None,
    *,
    dtype: np.dtype = np.float32,
) -> ConvolutionEngine:
    """
    Create the convolution engine best suited to `device`.

    Parameters
    ----------
    device : Device | str | int
        Target device ("cpu", "cuda:0", or an integer id, negative = CPU).
    max_temp_mem_samples : int, optional
        Scratch-memory limit in samples; 0 means unbounded. Defaults to
        `config.max_temp_mem_samples`.
    config : EngineConfig, optional
        Selection settings. Defaults to `EngineConfig.from_env()`.
    dtype : np.dtype, optional
        Element type for the cuDNN engine.

    Returns
    -------
    ConvolutionEngine
        `CuDnnConvolutionEngine` or `DefaultConvolutionEngine`.
    """
    device = as_device(device)
    config = EngineConfig.from_env() if config is None else config
    if max_temp_mem_samples is None:
        max_temp_mem_samples = config.max_temp_mem_samples

    if _use_cudnn("create_conv_engine", device, config):
        logger.debug("create_conv_engine: cuDNN engine on %s", device)
        return CuDnnConvolutionEngine(
            device,
            max_temp_mem_samples,
            dtype=dtype,
            lib=get_cudnn(config.cudnn_library),
        )
    logger.debug("create_conv_engine: default engine on %s", device)
    return DefaultConvolutionEngine(device, max_temp_mem_samples)


def create_engine_factory(
    device: DeviceSpec,
    config: Optional[EngineConfig] = None,
    *,
    dtype: np.dtype = np.float32,
) -> ConvolutionEngineFactory:
    """
    Create the descriptor/engine factory best suited to `device`.

    Uses the same selection rules as `create_conv_engine`.
    """
    device = as_device(device)
    config = EngineConfig.from_env() if config is None else config

    if _use_cudnn("create_engine_factory", device, config):
        logger.debug("create_engine_factory: cuDNN factory on %s", device)
        return CuDnnConvolutionEngineFactory(
            device, dtype, library_path=config.cudnn_library
        )
    logger.debug("create_engine_factory: default factory on %s", device)
    return DefaultConvolutionEngineFactory(device)
