"""
cuDNN-backed convolution and pooling engines.

`CuDnnConvolutionEngine` delegates forward, backward-data, backward-filter,
bias add and bias backward to cuDNN. `CuDnnPoolingEngine` delegates max and
average pooling. `CuDnnConvolutionEngineFactory` creates the descriptor
wrappers (which own native descriptor handles) together with the engines.

Algorithm selection
-------------------
For each convolution kind (forward, backward-data, backward-filter) the
engine runs cuDNN's measured search once, asking for up to
`MAX_ALGO_COUNT` ranked candidates, and keeps the first one that

- reports `CUDNN_STATUS_SUCCESS`, and
- needs no more workspace than the budget
  `volume_per_sample * max_temp_mem_samples * element_size`
  (unbounded when `max_temp_mem_samples == 0`).

The choice is cached in `_AlgoCache` keyed by the shapes it was selected
for. Calls with the same shapes reuse it; a shape change on a live engine is
logged as a warning and triggers a new search. If no candidate qualifies,
`AlgorithmSelectionError` is raised before any computation.

Scaling factors
---------------
===============  =====  ====
operation        alpha  beta
===============  =====  ====
forward          1      0
backward_data    1      1
backward_filter  1      1
add_bias         1      1
backward_bias    1      1
pool forward     1      0
pool backward    1      1
===============  =====  ====

A beta of 1 accumulates into the destination; callers zero gradient buffers
when accumulation is not wanted.

Layout
------
Data matrices hold one NCHW sample per column; filter matrices hold the KCRS
weights contiguously.
"""

from __future__ import annotations

import ctypes
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from ...domain._descriptors import (
    ConvolutionDescriptor,
    ConvolutionFilter,
    PoolingDescriptor,
    PoolKind,
    Tensor4D,
)
from ...domain._engine import ConvolutionEngine, ConvolutionEngineFactory, PoolingEngine
from ...domain._errors import (
    AccelerationUnavailableError,
    AlgorithmSelectionError,
    ShapeMismatchError,
)
from ...domain._matrix_protocol import MatrixLike
from ...domain.device._device import Device, DeviceSpec, as_device
from ..matrix._matrix import Matrix
from ..native_cuda.python.cudnn_ctypes import (
    CUDNN_STATUS_SUCCESS,
    MAX_ALGO_COUNT,
    AlgoPerf,
    CuDnnLibrary,
    Scalar,
    data_type_for,
    get_cudnn,
)
from ._cudnn_descriptors import (
    CuDnnConvolutionDescriptor,
    CuDnnFilter,
    CuDnnPoolingDescriptor,
    CuDnnTensor4D,
    _acquire,
    _OwnsNativeHandle,
)

logger = logging.getLogger("convkit.engines.cudnn")

FORWARD = "forward"
BACKWARD_DATA = "backward_data"
BACKWARD_FILTER = "backward_filter"


def _load_library(op: str, lib: Optional[CuDnnLibrary], path: Optional[str] = None) -> CuDnnLibrary:
    if lib is not None:
        return lib
    try:
        return get_cudnn(path)
    except OSError as e:
        raise AccelerationUnavailableError(op, str(e)) from e


def _bind_device(device: Device) -> None:
    """Make `device` current so new cuDNN handles attach to it."""
    if device.is_cuda():
        from ..native_cuda.python.cudart_ctypes import get_cuda_runtime

        get_cuda_runtime().set_device(int(device.index))


def _scalars(dtype: np.dtype) -> Tuple[Scalar, Scalar]:
    """Return `(one, zero)` as ctypes scalars matching `dtype`."""
    data_type_for(dtype)
    ctype = ctypes.c_float if np.dtype(dtype) == np.float32 else ctypes.c_double
    return ctype(1.0), ctype(0.0)


def _handle_of(op: str, desc: object, cls: type) -> int:
    if not isinstance(desc, cls):
        raise TypeError(
            f"{op}: expected {cls.__name__}, got {type(desc).__name__}; "
            f"create descriptors with CuDnnConvolutionEngineFactory"
        )
    return desc.handle


def _expect(op: str, what: str, expected: object, actual: object) -> None:
    if expected != actual:
        raise ShapeMismatchError(op, what, expected, actual)


def _check_data(op: str, t: Tensor4D, m: MatrixLike, label: str) -> None:
    _expect(op, f"{label} rows (volume per sample)", t.volume_per_sample, m.num_rows)
    _expect(op, f"{label} columns (batch size)", t.n, m.num_cols)


def _check_dtype(op: str, dtype: np.dtype, *matrices: MatrixLike) -> None:
    for m in matrices:
        if m.dtype != dtype:
            raise TypeError(f"{op}: engine dtype is {dtype}, matrix dtype is {m.dtype}")


def _conv_key(conv_desc: CuDnnConvolutionDescriptor) -> Tuple[int, int, int, int]:
    return (conv_desc.w_stride, conv_desc.h_stride, conv_desc.w_pad, conv_desc.h_pad)


@dataclass
class _CacheSlot:
    key: tuple
    perf: AlgoPerf


class _AlgoCache:
    """
    One selected algorithm per convolution kind.

    A slot remembers the shape key it was selected for. Looking up a
    different key reports a miss (and logs a warning), so the caller
    searches again and overwrites the slot.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, _CacheSlot] = {}

    def get(self, kind: str) -> Optional[AlgoPerf]:
        slot = self._slots.get(kind)
        return None if slot is None else slot.perf

    def lookup(self, kind: str, key: tuple) -> Optional[AlgoPerf]:
        slot = self._slots.get(kind)
        if slot is None:
            return None
        if slot.key != key:
            logger.warning(
                "%s: shapes changed on a live engine (%s -> %s); re-selecting the algorithm",
                kind, slot.key, key,
            )
            return None
        return slot.perf

    def store(self, kind: str, key: tuple, perf: AlgoPerf) -> None:
        self._slots[kind] = _CacheSlot(key=key, perf=perf)


class CuDnnConvolutionEngine(_OwnsNativeHandle, ConvolutionEngine):
    """
    Convolution engine backed by cuDNN.

    Parameters
    ----------
    device : Device | str | int
        Device the data lives on. The workspace matrix is allocated there.
    max_temp_mem_samples : int
        Workspace budget in samples; `0` means unbounded.
    dtype : np.dtype, optional
        Element type of descriptors and data (float32 or float64).
    lib : CuDnnLibrary, optional
        cuDNN bindings. Defaults to the process-wide loaded library.
    stream : int, optional
        CUDA stream the handle is bound to (0 = default stream).

    Raises
    ------
    AccelerationUnavailableError
        If no `lib` is given and cuDNN cannot be loaded.
    """

    def __init__(
        self,
        device: DeviceSpec,
        max_temp_mem_samples: int = 0,
        *,
        dtype: np.dtype = np.float32,
        lib: Optional[CuDnnLibrary] = None,
        stream: int = 0,
    ) -> None:
        super().__init__(as_device(device), max_temp_mem_samples)
        self._dtype = np.dtype(dtype)
        self._one, self._zero = _scalars(self._dtype)
        self._lib = _load_library(type(self).__name__, lib)
        self._temp = Matrix(dtype=self._dtype, device=self._device)
        self._algos = _AlgoCache()
        _bind_device(self._device)
        self._native = _acquire(
            self._lib.create,
            self._lib.destroy,
            lambda handle: self._lib.set_stream(handle, stream),
        )

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def temp(self) -> Matrix:
        """Workspace matrix sized for the last selected algorithm."""
        return self._temp

    def selected_algorithm(self, kind: str) -> Optional[AlgoPerf]:
        """Return the cached algorithm for `kind` ("forward", "backward_data", "backward_filter")."""
        return self._algos.get(kind)

    def create_tensor(self, w: int, h: int, c: int, n: int) -> CuDnnTensor4D:
        return CuDnnTensor4D(w, h, c, n, lib=self._lib, dtype=self._dtype)

    # ----------------------------
    # algorithm selection
    # ----------------------------

    def _budget(self, volume_per_sample: int) -> Optional[int]:
        if not self._max_temp_mem_samples:
            return None
        return volume_per_sample * self._max_temp_mem_samples * self._dtype.itemsize

    def _find_best(
        self,
        kind: str,
        call: str,
        key: tuple,
        search: Callable[[], List[AlgoPerf]],
        volume_per_sample: int,
    ) -> AlgoPerf:
        cached = self._algos.lookup(kind, key)
        if cached is not None:
            return cached

        budget = self._budget(volume_per_sample)
        for perf in search():
            if perf.status != CUDNN_STATUS_SUCCESS:
                continue
            if budget is not None and perf.memory > budget:
                continue
            logger.debug(
                "%s: selected algo=%d workspace=%d bytes time=%.3f ms (budget=%s)",
                call, perf.algo, perf.memory, perf.time, budget,
            )
            self._algos.store(kind, key, perf)
            return perf
        raise AlgorithmSelectionError(call, budget)

    def _workspace(self, perf: AlgoPerf) -> Tuple[int, int]:
        """Resize the temp matrix for `perf` and return `(pointer, size in bytes)`."""
        elem = self._temp.element_size
        self._temp.resize((perf.memory + elem - 1) // elem, 1)
        return self._temp.buffer_pointer(), self._temp.size * elem

    # ----------------------------
    # convolution
    # ----------------------------

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
        """
        Compute `out = conv(in_, filter_)` with cuDNN (alpha 1, beta 0).

        Raises
        ------
        ShapeMismatchError
            If descriptors and matrices disagree.
        AlgorithmSelectionError
            If no forward algorithm fits the workspace budget.
        NativeLibraryError
            If a cuDNN call fails.
        """
        op = "CuDnnConvolutionEngine.forward"
        x_desc = _handle_of(op, in_t, CuDnnTensor4D)
        w_desc = _handle_of(op, filter_t, CuDnnFilter)
        c_desc = _handle_of(op, conv_desc, CuDnnConvolutionDescriptor)
        y_desc = _handle_of(op, out_t, CuDnnTensor4D)
        _check_data(op, in_t, in_, "input")
        _check_data(op, out_t, out, "output")
        _expect(op, "filter elements", filter_t.volume, filter_.num_rows * filter_.num_cols)
        _expect(op, "filter channels", in_t.c, filter_t.c)
        _expect(op, "filter count (out_t.c)", out_t.c, filter_t.k)
        _expect(op, "output spatial size", conv_desc.output_size(in_t, filter_t), (out_t.w, out_t.h))
        _check_dtype(op, self._dtype, in_, filter_, out)

        handle = self.handle
        key = (in_t.shape, filter_t.shape, _conv_key(conv_desc), out_t.shape)
        perf = self._find_best(
            FORWARD,
            "cudnnConvolutionForward",
            key,
            lambda: self._lib.find_convolution_forward_algorithm(
                handle, x_desc, w_desc, c_desc, y_desc, MAX_ALGO_COUNT
            ),
            in_t.volume_per_sample,
        )
        ws_ptr, ws_size = self._workspace(perf)
        self._lib.convolution_forward(
            handle, self._one, x_desc, in_.buffer_pointer(), w_desc, filter_.buffer_pointer(),
            c_desc, perf.algo, ws_ptr, ws_size, self._zero, y_desc, out.buffer_pointer(),
        )

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
        """
        Accumulate the gradient w.r.t. the convolution input into `grad`
        (alpha 1, beta 1).
        """
        op = "CuDnnConvolutionEngine.backward_data"
        dy_desc = _handle_of(op, src_grad_t, CuDnnTensor4D)
        w_desc = _handle_of(op, filter_t, CuDnnFilter)
        c_desc = _handle_of(op, conv_desc, CuDnnConvolutionDescriptor)
        dx_desc = _handle_of(op, grad_t, CuDnnTensor4D)
        _check_data(op, src_grad_t, src_grad, "output gradient")
        _check_data(op, grad_t, grad, "input gradient")
        _expect(op, "filter elements", filter_t.volume, filter_.num_rows * filter_.num_cols)
        _expect(op, "filter channels", grad_t.c, filter_t.c)
        _expect(op, "filter count", src_grad_t.c, filter_t.k)
        _check_dtype(op, self._dtype, src_grad, filter_, grad)

        handle = self.handle
        key = (src_grad_t.shape, filter_t.shape, _conv_key(conv_desc), grad_t.shape)
        perf = self._find_best(
            BACKWARD_DATA,
            "cudnnConvolutionBackwardData",
            key,
            lambda: self._lib.find_convolution_backward_data_algorithm(
                handle, w_desc, dy_desc, c_desc, dx_desc, MAX_ALGO_COUNT
            ),
            grad_t.volume_per_sample,
        )
        ws_ptr, ws_size = self._workspace(perf)
        self._lib.convolution_backward_data(
            handle, self._one, w_desc, filter_.buffer_pointer(), dy_desc, src_grad.buffer_pointer(),
            c_desc, perf.algo, ws_ptr, ws_size, self._one, dx_desc, grad.buffer_pointer(),
        )

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
        """
        Accumulate the gradient w.r.t. the filter weights into `filter_grad`
        (alpha 1, beta 1).

        `allow_reuse` has no effect here: cuDNN keeps no unrolled input
        between calls.
        """
        op = "CuDnnConvolutionEngine.backward_filter"
        dy_desc = _handle_of(op, src_grad_t, CuDnnTensor4D)
        x_desc = _handle_of(op, in_t, CuDnnTensor4D)
        c_desc = _handle_of(op, conv_desc, CuDnnConvolutionDescriptor)
        dw_desc = _handle_of(op, filter_t, CuDnnFilter)
        _check_data(op, src_grad_t, src_grad, "output gradient")
        _check_data(op, in_t, in_, "input")
        _expect(
            op, "filter gradient elements", filter_t.volume,
            filter_grad.num_rows * filter_grad.num_cols,
        )
        _expect(op, "filter channels", in_t.c, filter_t.c)
        _check_dtype(op, self._dtype, src_grad, in_, filter_grad)

        handle = self.handle
        key = (src_grad_t.shape, in_t.shape, _conv_key(conv_desc), filter_t.shape)
        perf = self._find_best(
            BACKWARD_FILTER,
            "cudnnConvolutionBackwardFilter",
            key,
            lambda: self._lib.find_convolution_backward_filter_algorithm(
                handle, x_desc, dy_desc, c_desc, dw_desc, MAX_ALGO_COUNT
            ),
            in_t.volume_per_sample,
        )
        ws_ptr, ws_size = self._workspace(perf)
        self._lib.convolution_backward_filter(
            handle, self._one, x_desc, in_.buffer_pointer(), dy_desc, src_grad.buffer_pointer(),
            c_desc, perf.algo, ws_ptr, ws_size, self._one, dw_desc, filter_grad.buffer_pointer(),
        )

    # ----------------------------
    # bias
    # ----------------------------

    def add_bias(
        self,
        bias_t: Tensor4D,
        bias: MatrixLike,
        dst_t: Tensor4D,
        dst: MatrixLike,
    ) -> None:
        """Add the per-channel `bias` into `dst` (alpha 1, beta 1)."""
        op = "CuDnnConvolutionEngine.add_bias"
        b_desc = _handle_of(op, bias_t, CuDnnTensor4D)
        d_desc = _handle_of(op, dst_t, CuDnnTensor4D)
        _expect(op, "bias elements", bias_t.volume_per_sample * bias_t.n, bias.num_rows * bias.num_cols)
        _expect(op, "bias channels", dst_t.c, bias_t.c)
        _check_data(op, dst_t, dst, "destination")
        _check_dtype(op, self._dtype, bias, dst)

        self._lib.add_tensor(
            self.handle, self._one, b_desc, bias.buffer_pointer(),
            self._one, d_desc, dst.buffer_pointer(),
        )

    def backward_bias(
        self,
        src_grad_t: Tensor4D,
        src_grad: MatrixLike,
        bias_t: Tensor4D,
        bias_grad: MatrixLike,
    ) -> None:
        """Accumulate the gradient w.r.t. the bias into `bias_grad` (alpha 1, beta 1)."""
        op = "CuDnnConvolutionEngine.backward_bias"
        dy_desc = _handle_of(op, src_grad_t, CuDnnTensor4D)
        db_desc = _handle_of(op, bias_t, CuDnnTensor4D)
        _check_data(op, src_grad_t, src_grad, "output gradient")
        _expect(
            op, "bias gradient elements", bias_t.volume_per_sample * bias_t.n,
            bias_grad.num_rows * bias_grad.num_cols,
        )
        _expect(op, "bias channels", src_grad_t.c, bias_t.c)
        _check_dtype(op, self._dtype, src_grad, bias_grad)

        self._lib.convolution_backward_bias(
            self.handle, self._one, dy_desc, src_grad.buffer_pointer(),
            self._one, db_desc, bias_grad.buffer_pointer(),
        )


class CuDnnPoolingEngine(_OwnsNativeHandle, PoolingEngine):
    """
    Pooling engine backed by cuDNN.

    Parameters
    ----------
    device : Device | str | int
        Device the data lives on.
    dtype : np.dtype, optional
        Element type (float32 or float64).
    lib : CuDnnLibrary, optional
        cuDNN bindings. Defaults to the process-wide loaded library.
    stream : int, optional
        CUDA stream the handle is bound to.
    """

    def __init__(
        self,
        device: DeviceSpec,
        *,
        dtype: np.dtype = np.float32,
        lib: Optional[CuDnnLibrary] = None,
        stream: int = 0,
    ) -> None:
        self._device = as_device(device)
        self._dtype = np.dtype(dtype)
        self._one, self._zero = _scalars(self._dtype)
        self._lib = _load_library(type(self).__name__, lib)
        _bind_device(self._device)
        self._native = _acquire(
            self._lib.create,
            self._lib.destroy,
            lambda handle: self._lib.set_stream(handle, stream),
        )

    @property
    def device(self) -> Device:
        return self._device

    def forward(
        self,
        in_t: Tensor4D,
        in_: MatrixLike,
        pool_desc: PoolingDescriptor,
        out_t: Tensor4D,
        out: MatrixLike,
    ) -> None:
        """Pool `in_` into `out` (alpha 1, beta 0)."""
        op = "CuDnnPoolingEngine.forward"
        x_desc = _handle_of(op, in_t, CuDnnTensor4D)
        p_desc = _handle_of(op, pool_desc, CuDnnPoolingDescriptor)
        y_desc = _handle_of(op, out_t, CuDnnTensor4D)
        _check_data(op, in_t, in_, "input")
        _check_data(op, out_t, out, "output")
        _check_dtype(op, self._dtype, in_, out)

        self._lib.pooling_forward(
            self.handle, p_desc, self._one, x_desc, in_.buffer_pointer(),
            self._zero, y_desc, out.buffer_pointer(),
        )

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
        """Accumulate the gradient w.r.t. the pooling input into `grad` (alpha 1, beta 1)."""
        op = "CuDnnPoolingEngine.backward"
        y_desc = _handle_of(op, out_t, CuDnnTensor4D)
        p_desc = _handle_of(op, pool_desc, CuDnnPoolingDescriptor)
        x_desc = _handle_of(op, in_t, CuDnnTensor4D)
        _check_data(op, out_t, out, "output")
        _check_data(op, out_t, src_grad, "output gradient")
        _check_data(op, in_t, in_, "input")
        _check_data(op, in_t, grad, "input gradient")
        _check_dtype(op, self._dtype, out, src_grad, in_, grad)

        self._lib.pooling_backward(
            self.handle, p_desc, self._one,
            y_desc, out.buffer_pointer(), y_desc, src_grad.buffer_pointer(),
            x_desc, in_.buffer_pointer(),
            self._one, x_desc, grad.buffer_pointer(),
        )


class CuDnnConvolutionEngineFactory(ConvolutionEngineFactory):
    """
    Factory for cuDNN descriptor wrappers and engines.

    Parameters
    ----------
    device : Device | str | int
        Device the engines operate on.
    dtype : np.dtype, optional
        Element type, float32 or float64.
    lib : CuDnnLibrary, optional
        cuDNN bindings. When omitted the library is loaded from
        `library_path` or the default search locations.
    library_path : str, optional
        Explicit cuDNN library file.
    stream : int, optional
        CUDA stream for the engines' handles.

    Raises
    ------
    TypeError
        If `dtype` is not float32/float64.

    Notes
    -----
    A factory can be constructed when cuDNN is missing; every factory method
    then raises `AccelerationUnavailableError`.
    """

    def __init__(
        self,
        device: DeviceSpec,
        dtype: np.dtype = np.float32,
        *,
        lib: Optional[CuDnnLibrary] = None,
        library_path: Optional[str] = None,
        stream: int = 0,
    ) -> None:
        super().__init__(as_device(device))
        data_type_for(dtype)
        self._dtype = np.dtype(dtype)
        self._stream = int(stream)
        self._unavailable_reason = ""
        self._lib = lib
        if lib is None:
            try:
                self._lib = get_cudnn(library_path)
            except OSError as e:
                self._unavailable_reason = str(e)
                logger.debug("cuDNN unavailable: %s", e)

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def available(self) -> bool:
        return self._lib is not None

    def _require(self, op: str) -> CuDnnLibrary:
        if self._lib is None:
            raise AccelerationUnavailableError(op, self._unavailable_reason)
        return self._lib

    def create_tensor(self, w: int, h: int, c: int, n: int) -> CuDnnTensor4D:
        lib = self._require("create_tensor")
        return CuDnnTensor4D(w, h, c, n, lib=lib, dtype=self._dtype)

    def create_filter(self, w: int, h: int, c: int, k: int) -> CuDnnFilter:
        lib = self._require("create_filter")
        return CuDnnFilter(w, h, c, k, lib=lib, dtype=self._dtype)

    def create_conv_descriptor(
        self,
        in_t: Tensor4D,
        filter_t: ConvolutionFilter,
        w_stride: int,
        h_stride: int,
        padding: bool,
    ) -> CuDnnConvolutionDescriptor:
        lib = self._require("create_conv_descriptor")
        return CuDnnConvolutionDescriptor(
            w_stride, h_stride, padding, filter_t, lib=lib, dtype=self._dtype
        )

    def create_pool_descriptor(
        self,
        kind: PoolKind,
        w: int,
        h: int,
        w_stride: int,
        h_stride: int,
        w_pad: int = 0,
        h_pad: int = 0,
    ) -> CuDnnPoolingDescriptor:
        lib = self._require("create_pool_descriptor")
        return CuDnnPoolingDescriptor(kind, w, h, w_stride, h_stride, w_pad, h_pad, lib=lib)

    def create_conv_engine(self, max_temp_mem_samples: int = 0) -> CuDnnConvolutionEngine:
        lib = self._require("create_conv_engine")
        return CuDnnConvolutionEngine(
            self._device, max_temp_mem_samples, dtype=self._dtype, lib=lib, stream=self._stream
        )

    def create_pool_engine(self) -> CuDnnPoolingEngine:
        lib = self._require("create_pool_engine")
        return CuDnnPoolingEngine(self._device, dtype=self._dtype, lib=lib, stream=self._stream)
