"""
Descriptor wrappers that own cuDNN native descriptor handles.

Each wrapper extends the corresponding domain descriptor and owns exactly one
native handle through `_NativeHandle`:

- `CuDnnTensor4D` -> cudnnTensorDescriptor_t (NCHW)
- `CuDnnFilter` -> cudnnFilterDescriptor_t (KCRS)
- `CuDnnConvolutionDescriptor` -> cudnnConvolutionDescriptor_t
- `CuDnnPoolingDescriptor` -> cudnnPoolingDescriptor_t

Ownership
---------
- The handle is created in the constructor and destroyed by `close()`, by
  context-manager exit, or by garbage collection (`weakref.finalize`),
  whichever comes first. `close()` is idempotent.
- If configuring a freshly created handle fails, the handle is destroyed
  before the error propagates.
- The Python-side shape and the native descriptor are kept in sync:
  `CuDnnTensor4D.set_n` re-issues `cudnnSetTensor4dDescriptor`.
"""

from __future__ import annotations

import weakref
from typing import Callable

import numpy as np

from ...domain._descriptors import (
    ConvolutionDescriptor,
    ConvolutionFilter,
    PoolingDescriptor,
    PoolKind,
    Tensor4D,
)
from ...domain._engine import _Closeable
from ..native_cuda.python.cudnn_ctypes import (
    CUDNN_POOLING_AVERAGE_COUNT_EXCLUDE_PADDING,
    CUDNN_POOLING_MAX,
    CuDnnLibrary,
    data_type_for,
)


def _destroy_quietly(destroy: Callable[[int], None], value: int) -> None:
    # Best-effort: at interpreter shutdown the library may already be gone
    try:
        destroy(value)
    except Exception:
        pass


class _NativeHandle:
    """
    Owner of one native handle value and the call that destroys it.

    Parameters
    ----------
    value : int
        Handle returned by a cuDNN create call.
    destroy : Callable[[int], None]
        Function releasing the handle.

    Notes
    -----
    `release()` destroys the handle at most once and propagates errors from
    the destroy call. The garbage-collection path is best-effort.
    """

    __slots__ = ("_value", "_destroy", "_finalizer", "__weakref__")

    def __init__(self, value: int, destroy: Callable[[int], None]) -> None:
        self._value = int(value)
        self._destroy = destroy
        self._finalizer = weakref.finalize(self, _destroy_quietly, destroy, self._value)

    @property
    def value(self) -> int:
        if not self._finalizer.alive:
            raise RuntimeError("native handle has been released")
        return self._value

    @property
    def alive(self) -> bool:
        return self._finalizer.alive

    def release(self) -> None:
        if self._finalizer.detach() is not None:
            self._destroy(self._value)


def _acquire(
    create: Callable[[], int],
    destroy: Callable[[int], None],
    configure: Callable[[int], None],
) -> _NativeHandle:
    """Create a handle and configure it, destroying it if configuration fails."""
    handle = _NativeHandle(create(), destroy)
    try:
        configure(handle.value)
    except BaseException:
        handle.release()
        raise
    return handle


class _OwnsNativeHandle(_Closeable):
    """Mixin for wrappers holding a `_native` handle."""

    _native: _NativeHandle

    @property
    def handle(self) -> int:
        """The native descriptor handle."""
        return self._native.value

    @property
    def closed(self) -> bool:
        return not self._native.alive

    def close(self) -> None:
        """Destroy the native descriptor (idempotent)."""
        native = getattr(self, "_native", None)
        if native is not None:
            native.release()


class CuDnnTensor4D(_OwnsNativeHandle, Tensor4D):
    """
    `Tensor4D` bound to a cuDNN NCHW tensor descriptor.

    Parameters
    ----------
    w, h, c, n : int
        Tensor shape.
    lib : CuDnnLibrary
        Bindings used to create, configure and destroy the descriptor.
    dtype : np.dtype
        Element type (float32 or float64).
    """

    def __init__(
        self, w: int, h: int, c: int, n: int, *, lib: CuDnnLibrary, dtype: np.dtype
    ) -> None:
        Tensor4D.__init__(self, w, h, c, n)
        self._lib = lib
        self._data_type = data_type_for(dtype)
        self._dtype = np.dtype(dtype)
        self._native = _acquire(
            lib.create_tensor_descriptor, lib.destroy_tensor_descriptor, self._configure
        )

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    def _configure(self, handle: int) -> None:
        self._lib.set_tensor4d_descriptor(
            handle, self._data_type, self.n, self.c, self.h, self.w
        )

    def set_n(self, n: int) -> None:
        """
        Update the batch size and refresh the native descriptor.

        Raises
        ------
        NativeLibraryError
            If cuDNN rejects the new shape; the previous batch size is kept.
        """
        previous = self.n
        Tensor4D.set_n(self, n)
        try:
            self._configure(self.handle)
        except Exception:
            Tensor4D.set_n(self, previous)
            raise


class CuDnnFilter(_OwnsNativeHandle, ConvolutionFilter):
    """`ConvolutionFilter` bound to a cuDNN KCRS filter descriptor."""

    def __init__(
        self, w: int, h: int, c: int, k: int, *, lib: CuDnnLibrary, dtype: np.dtype
    ) -> None:
        ConvolutionFilter.__init__(self, w, h, c, k)
        self._lib = lib
        self._dtype = np.dtype(dtype)
        data_type = data_type_for(dtype)
        self._native = _acquire(
            lib.create_filter_descriptor,
            lib.destroy_filter_descriptor,
            lambda handle: lib.set_filter4d_descriptor(handle, data_type, k, c, h, w),
        )

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def volume(self) -> int:
        """Number of weights (`k * c * h * w`)."""
        return self.k * self.c * self.h * self.w


class CuDnnConvolutionDescriptor(_OwnsNativeHandle, ConvolutionDescriptor):
    """
    `ConvolutionDescriptor` bound to a cuDNN convolution descriptor.

    The padding amount is fixed from `filter_t` at construction
    (`filter_t.w // 2`, `filter_t.h // 2` when `padding` is set). The mode is
    cross-correlation with unit dilation.
    """

    def __init__(
        self,
        w_stride: int,
        h_stride: int,
        padding: bool,
        filter_t: ConvolutionFilter,
        *,
        lib: CuDnnLibrary,
        dtype: np.dtype,
    ) -> None:
        ConvolutionDescriptor.__init__(self, w_stride, h_stride, padding)
        self._lib = lib
        self._w_pad, self._h_pad = self.pads_for(filter_t)
        data_type = data_type_for(dtype)
        self._native = _acquire(
            lib.create_convolution_descriptor,
            lib.destroy_convolution_descriptor,
            lambda handle: lib.set_convolution2d_descriptor(
                handle, self._h_pad, self._w_pad, self.h_stride, self.w_stride, data_type
            ),
        )

    @property
    def w_pad(self) -> int:
        return self._w_pad

    @property
    def h_pad(self) -> int:
        return self._h_pad


_POOLING_MODES = {
    PoolKind.MAX: CUDNN_POOLING_MAX,
    PoolKind.AVERAGE: CUDNN_POOLING_AVERAGE_COUNT_EXCLUDE_PADDING,
}


class CuDnnPoolingDescriptor(_OwnsNativeHandle, PoolingDescriptor):
    """`PoolingDescriptor` bound to a cuDNN pooling descriptor."""

    def __init__(
        self,
        kind: PoolKind,
        w: int,
        h: int,
        w_stride: int,
        h_stride: int,
        w_pad: int = 0,
        h_pad: int = 0,
        *,
        lib: CuDnnLibrary,
    ) -> None:
        PoolingDescriptor.__init__(self, kind, w, h, w_stride, h_stride, w_pad, h_pad)
        self._lib = lib
        mode = _POOLING_MODES[kind]
        self._native = _acquire(
            lib.create_pooling_descriptor,
            lib.destroy_pooling_descriptor,
            lambda handle: lib.set_pooling2d_descriptor(
                handle, mode, self.h, self.w, self.h_pad, self.w_pad, self.h_stride, self.w_stride
            ),
        )
