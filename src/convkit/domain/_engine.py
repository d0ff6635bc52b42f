"""
Engine capability interfaces.

This module defines the abstract interfaces every engine variant implements:

- `ConvolutionEngine`: forward, backward w.r.t. data, backward w.r.t. filter,
  bias add and bias backward for 2D convolution
- `PoolingEngine`: forward and backward 2D pooling
- `ConvolutionEngineFactory`: creates descriptors and engines that belong
  together (an accelerated engine requires descriptors that carry native
  handles, so descriptors and engines must come from the same factory)

Callers program against these interfaces only; which variant backs them is
decided once, when the factory is created.

Accumulation policy
-------------------
- `forward` (convolution and pooling) overwrites its destination.
- `backward_data`, `backward_filter`, `backward_bias` and pooling
  `backward` accumulate into their destination (gradient accumulation
  across calls); callers zero the buffer when that is not desired.
- `add_bias` adds the bias into the destination.

Concurrency
-----------
Engines own mutable scratch buffers and are not safe for concurrent use from
multiple threads. Use one engine instance per layer (or per thread).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ._descriptors import (
    ConvolutionDescriptor,
    ConvolutionFilter,
    PoolingDescriptor,
    PoolKind,
    Tensor4D,
)
from ._matrix_protocol import MatrixLike
from .device._device import Device


class _Closeable:
    """Context-manager support for objects that own releasable resources."""

    def close(self) -> None:
        """Release owned resources. Idempotent; the default owns nothing."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ConvolutionEngine(_Closeable, ABC):
    """
    Abstract 2D convolution engine.

    Parameters
    ----------
    device : Device
        Device on which the engine's temporary buffer lives.
    max_temp_mem_samples : int
        Upper bound on scratch memory expressed in samples. `0` means
        unbounded (the whole batch is processed in one pass).
    """

    def __init__(self, device: Device, max_temp_mem_samples: int) -> None:
        max_temp_mem_samples = int(max_temp_mem_samples)
        if max_temp_mem_samples < 0:
            raise ValueError(
                f"max_temp_mem_samples must be >= 0, got {max_temp_mem_samples}"
            )
        self._device = device
        self._max_temp_mem_samples = max_temp_mem_samples

    @property
    def device(self) -> Device:
        return self._device

    @property
    def max_temp_mem_samples(self) -> int:
        return self._max_temp_mem_samples

    @abstractmethod
    def forward(
        self,
        in_t: Tensor4D,
        in_: MatrixLike,
        filter_t: ConvolutionFilter,
        filter_: MatrixLike,
        conv_desc: ConvolutionDescriptor,
        out_t: Tensor4D,
        out: MatrixLike,
    ) -> None:
        """Compute `out = conv(in_, filter_)`, overwriting `out`."""

    @abstractmethod
    def backward_data(
        self,
        src_grad_t: Tensor4D,
        src_grad: MatrixLike,
        filter_t: ConvolutionFilter,
        filter_: MatrixLike,
        conv_desc: ConvolutionDescriptor,
        grad_t: Tensor4D,
        grad: MatrixLike,
    ) -> None:
        """Accumulate the gradient w.r.t. the convolution input into `grad`."""

    @abstractmethod
    def backward_filter(
        self,
        src_grad_t: Tensor4D,
        src_grad: MatrixLike,
        in_t: Tensor4D,
        in_: MatrixLike,
        conv_desc: ConvolutionDescriptor,
        filter_t: ConvolutionFilter,
        filter_grad: MatrixLike,
        allow_reuse: bool = False,
    ) -> None:
        """Accumulate the gradient w.r.t. the filter weights into `filter_grad`."""

    @abstractmethod
    def add_bias(
        self,
        bias_t: Tensor4D,
        bias: MatrixLike,
        dst_t: Tensor4D,
        dst: MatrixLike,
    ) -> None:
        """Add a per-channel bias into `dst`."""

    @abstractmethod
    def backward_bias(
        self,
        src_grad_t: Tensor4D,
        src_grad: MatrixLike,
        bias_t: Tensor4D,
        bias_grad: MatrixLike,
    ) -> None:
        """Accumulate the gradient w.r.t. the bias into `bias_grad`."""

    @abstractmethod
    def create_tensor(self, w: int, h: int, c: int, n: int) -> Tensor4D:
        """Create a tensor descriptor compatible with this engine."""


class PoolingEngine(_Closeable, ABC):
    """Abstract 2D pooling engine."""

    @abstractmethod
    def forward(
        self,
        in_t: Tensor4D,
        in_: MatrixLike,
        pool_desc: PoolingDescriptor,
        out_t: Tensor4D,
        out: MatrixLike,
    ) -> None:
        """Compute pooled `out` from `in_`, overwriting `out`."""

    @abstractmethod
    def backward(
        self,
        out_t: Tensor4D,
        out: MatrixLike,
        src_grad: MatrixLike,
        pool_desc: PoolingDescriptor,
        in_t: Tensor4D,
        in_: MatrixLike,
        grad: MatrixLike,
    ) -> None:
        """Accumulate the gradient w.r.t. the pooling input into `grad`."""


class ConvolutionEngineFactory(ABC):
    """
    Abstract factory for descriptors and engines of one engine family.

    Parameters
    ----------
    device : Device
        Device the produced engines operate on.
    """

    def __init__(self, device: Device) -> None:
        self._device = device

    @property
    def device(self) -> Device:
        return self._device

    @abstractmethod
    def create_tensor(self, w: int, h: int, c: int, n: int) -> Tensor4D: ...

    @abstractmethod
    def create_filter(self, w: int, h: int, c: int, k: int) -> ConvolutionFilter: ...

    @abstractmethod
    def create_conv_descriptor(
        self,
        in_t: Tensor4D,
        filter_t: ConvolutionFilter,
        w_stride: int,
        h_stride: int,
        padding: bool,
    ) -> ConvolutionDescriptor: ...

    @abstractmethod
    def create_pool_descriptor(
        self,
        kind: PoolKind,
        w: int,
        h: int,
        w_stride: int,
        h_stride: int,
        w_pad: int,
        h_pad: int,
    ) -> PoolingDescriptor: ...

    @abstractmethod
    def create_conv_engine(self, max_temp_mem_samples: int) -> ConvolutionEngine: ...

    @abstractmethod
    def create_pool_engine(self) -> PoolingEngine: ...
