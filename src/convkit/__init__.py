"""
convkit: pluggable convolution and pooling engines.

Descriptors, engine interfaces and errors live in ``convkit.domain``; the
matrix backend and the engine implementations live in
``convkit.infrastructure``. The most common entry points are re-exported
here.

Example
-------
>>> import numpy as np
>>> from convkit import Matrix, create_engine_factory
>>> factory = create_engine_factory("cpu")
>>> in_t = factory.create_tensor(4, 4, 1, 2)
>>> filter_t = factory.create_filter(3, 3, 1, 2)
>>> conv = factory.create_conv_descriptor(in_t, filter_t, 1, 1, False)
>>> out_t = factory.create_tensor(2, 2, 2, 2)
>>> engine = factory.create_conv_engine(0)
>>> x = Matrix.from_numpy(np.ones((16, 2), dtype=np.float32))
>>> w = Matrix.from_numpy(np.ones((2, 9), dtype=np.float32))
>>> y = Matrix(8, 2)
>>> engine.forward(in_t, x, filter_t, w, conv, out_t, y)
"""

from .domain import (
    AccelerationUnavailableError,
    AlgorithmSelectionError,
    ConvolutionDescriptor,
    ConvolutionEngine,
    ConvolutionEngineFactory,
    ConvolutionFilter,
    Device,
    DeviceMismatchError,
    DeviceNotSupportedError,
    DeviceType,
    MatrixLike,
    NativeLibraryError,
    PoolingDescriptor,
    PoolingEngine,
    PoolKind,
    ShapeMismatchError,
    Tensor4D,
    UnsupportedOperationError,
    as_device,
)
from .infrastructure import EngineConfig
from .infrastructure.engines import (
    CuDnnConvolutionEngine,
    CuDnnConvolutionEngineFactory,
    CuDnnPoolingEngine,
    DefaultConvolutionEngine,
    DefaultConvolutionEngineFactory,
    DefaultPoolingEngine,
    create_conv_engine,
    create_engine_factory,
    is_cudnn_supported,
)
from .infrastructure.matrix import Matrix

__version__ = "0.1.0"
