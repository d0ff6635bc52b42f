from ._descriptors import (
    ConvolutionDescriptor,
    ConvolutionFilter,
    PoolingDescriptor,
    PoolKind,
    Tensor4D,
)
from ._engine import ConvolutionEngine, ConvolutionEngineFactory, PoolingEngine
from ._errors import (
    AccelerationUnavailableError,
    AlgorithmSelectionError,
    DeviceMismatchError,
    DeviceNotSupportedError,
    NativeLibraryError,
    ShapeMismatchError,
    UnsupportedOperationError,
)
from ._matrix_protocol import MatrixLike
from .device import Device, DeviceType, as_device
