"""
Convolution and pooling engine implementations.

This package provides the two engine families behind the domain interfaces
and the logic that chooses between them:

- ``DefaultConvolutionEngine`` / ``DefaultPoolingEngine``: portable engines
  (input unrolling + GEMM for convolution, NumPy kernels for pooling)
- ``CuDnnConvolutionEngine`` / ``CuDnnPoolingEngine``: engines delegating to
  cuDNN through ctypes
- ``create_conv_engine`` / ``create_engine_factory``: runtime selection based
  on the device and the ``is_cudnn_supported`` probe

Public API
----------
- ``DefaultConvolutionEngine``, ``DefaultPoolingEngine``,
  ``DefaultConvolutionEngineFactory``
- ``CuDnnConvolutionEngine``, ``CuDnnPoolingEngine``,
  ``CuDnnConvolutionEngineFactory``
- ``CuDnnTensor4D``, ``CuDnnFilter``, ``CuDnnConvolutionDescriptor``,
  ``CuDnnPoolingDescriptor``
- ``create_conv_engine``, ``create_engine_factory``, ``is_cudnn_supported``
"""

from ._cudnn_descriptors import (
    CuDnnConvolutionDescriptor,
    CuDnnFilter,
    CuDnnPoolingDescriptor,
    CuDnnTensor4D,
)
from ._cudnn_engine import (
    CuDnnConvolutionEngine,
    CuDnnConvolutionEngineFactory,
    CuDnnPoolingEngine,
)
from ._default_engine import (
    DefaultConvolutionEngine,
    DefaultConvolutionEngineFactory,
    DefaultPoolingEngine,
)
from ._factory import (
    create_conv_engine,
    create_engine_factory,
    cudnn_unavailable_reason,
    is_cudnn_supported,
)

__all__ = [
    CuDnnConvolutionDescriptor.__name__,
    CuDnnFilter.__name__,
    CuDnnPoolingDescriptor.__name__,
    CuDnnTensor4D.__name__,
    CuDnnConvolutionEngine.__name__,
    CuDnnConvolutionEngineFactory.__name__,
    CuDnnPoolingEngine.__name__,
    DefaultConvolutionEngine.__name__,
    DefaultConvolutionEngineFactory.__name__,
    DefaultPoolingEngine.__name__,
    create_conv_engine.__name__,
    create_engine_factory.__name__,
    cudnn_unavailable_reason.__name__,
    is_cudnn_supported.__name__,
]
