"""
In-process stand-in for `CuDnnLibrary` used by the engine tests.

`FakeCuDnn` exposes the same methods as the ctypes binding layer but keeps
descriptor state in dictionaries and computes on host memory, reading and
writing buffers through the raw pointers the engines pass in (host
`Matrix.buffer_pointer()` values). It records enough to assert on:

- live / destroyed handles per kind
- the number of algorithm searches per convolution kind
- every compute call with its alpha/beta values and workspace size
- failure injection via `fail_on` (method names that raise)
"""

from __future__ import annotations

import ctypes
import itertools
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Tuple

import numpy as np

from convkit.domain._errors import NativeLibraryError
from convkit.infrastructure.native_cuda.python.cudnn_ctypes import (
    CUDNN_DATA_DOUBLE,
    CUDNN_DATA_FLOAT,
    CUDNN_POOLING_MAX,
    AlgoPerf,
)
from convkit.infrastructure.ops.pool2d_cpu import (
    avgpool2d_backward_cpu,
    avgpool2d_forward_cpu,
    maxpool2d_backward_cpu,
    maxpool2d_forward_cpu,
)

CUDNN_STATUS_BAD_PARAM = 3

_DTYPES = {CUDNN_DATA_FLOAT: np.float32, CUDNN_DATA_DOUBLE: np.float64}


def _array(ptr: int, shape: Tuple[int, ...], dtype) -> np.ndarray:
    """Writable C-ordered view of `shape` elements starting at host address `ptr`."""
    ctype = ctypes.c_float if np.dtype(dtype) == np.float32 else ctypes.c_double
    return np.ctypeslib.as_array(ctypes.cast(int(ptr), ctypes.POINTER(ctype)), shape=shape)


class FakeCuDnn:
    """Host-memory implementation of the `CuDnnLibrary` surface."""

    def __init__(self, candidates: Optional[List[AlgoPerf]] = None) -> None:
        self.candidates = list(candidates) if candidates is not None else [
            AlgoPerf(algo=0, status=0, time=0.5, memory=64),
        ]
        self.fail_on: set[str] = set()
        self._ids = itertools.count(1)
        self.live: Dict[str, set] = defaultdict(set)
        self.destroyed: Counter = Counter()
        self.find_calls: Counter = Counter()
        self.set_calls: Counter = Counter()
        self.calls: List[Tuple[str, float, float]] = []
        self.workspace_sizes: List[int] = []
        self.streams: Dict[int, int] = {}
        self.tensors: Dict[int, Tuple[int, int, int, int, int]] = {}
        self.filters: Dict[int, Tuple[int, int, int, int, int]] = {}
        self.convs: Dict[int, Tuple[int, int, int, int, int]] = {}
        self.pools: Dict[int, Tuple[int, ...]] = {}

    # ----------------------------
    # bookkeeping
    # ----------------------------

    def _maybe_fail(self, name: str, call: str) -> None:
        if name in self.fail_on:
            raise NativeLibraryError("cuDNN", call, CUDNN_STATUS_BAD_PARAM, "CUDNN_STATUS_BAD_PARAM")

    def _new(self, kind: str, name: str, call: str) -> int:
        self._maybe_fail(name, call)
        h = next(self._ids)
        self.live[kind].add(h)
        return h

    def _free(self, kind: str, handle: int) -> None:
        self.live[kind].remove(handle)
        self.destroyed[kind] += 1

    def get_error_string(self, status: int) -> str:
        return f"FAKE_STATUS_{status}"

    # ----------------------------
    # context and descriptors
    # ----------------------------

    def create(self) -> int:
        return self._new("handle", "create", "cudnnCreate")

    def destroy(self, handle: int) -> None:
        self._free("handle", handle)

    def set_stream(self, handle: int, stream: int) -> None:
        self._maybe_fail("set_stream", "cudnnSetStream")
        self.streams[handle] = stream

    def create_tensor_descriptor(self) -> int:
        return self._new("tensor", "create_tensor_descriptor", "cudnnCreateTensorDescriptor")

    def set_tensor4d_descriptor(self, desc, data_type, n, c, h, w) -> None:
        self._maybe_fail("set_tensor4d_descriptor", "cudnnSetTensor4dDescriptor")
        self.set_calls["tensor"] += 1
        self.tensors[desc] = (data_type, n, c, h, w)

    def destroy_tensor_descriptor(self, desc: int) -> None:
        self._free("tensor", desc)

    def create_filter_descriptor(self) -> int:
        return self._new("filter", "create_filter_descriptor", "cudnnCreateFilterDescriptor")

    def set_filter4d_descriptor(self, desc, data_type, k, c, h, w) -> None:
        self._maybe_fail("set_filter4d_descriptor", "cudnnSetFilter4dDescriptor")
        self.set_calls["filter"] += 1
        self.filters[desc] = (data_type, k, c, h, w)

    def destroy_filter_descriptor(self, desc: int) -> None:
        self._free("filter", desc)

    def create_convolution_descriptor(self) -> int:
        return self._new("conv", "create_convolution_descriptor", "cudnnCreateConvolutionDescriptor")

    def set_convolution2d_descriptor(self, desc, pad_h, pad_w, stride_h, stride_w, data_type) -> None:
        self._maybe_fail("set_convolution2d_descriptor", "cudnnSetConvolution2dDescriptor")
        self.set_calls["conv"] += 1
        self.convs[desc] = (pad_h, pad_w, stride_h, stride_w, data_type)

    def destroy_convolution_descriptor(self, desc: int) -> None:
        self._free("conv", desc)

    def create_pooling_descriptor(self) -> int:
        return self._new("pool", "create_pooling_descriptor", "cudnnCreatePoolingDescriptor")

    def set_pooling2d_descriptor(
        self, desc, mode, window_h, window_w, pad_h, pad_w, stride_h, stride_w
    ) -> None:
        self._maybe_fail("set_pooling2d_descriptor", "cudnnSetPooling2dDescriptor")
        self.set_calls["pool"] += 1
        self.pools[desc] = (mode, window_h, window_w, pad_h, pad_w, stride_h, stride_w)

    def destroy_pooling_descriptor(self, desc: int) -> None:
        self._free("pool", desc)

    # ----------------------------
    # algorithm search
    # ----------------------------

    def _find(self, kind: str, requested: int) -> List[AlgoPerf]:
        self.find_calls[kind] += 1
        return list(self.candidates[:requested])

    def find_convolution_forward_algorithm(self, handle, x_desc, w_desc, conv_desc, y_desc, requested=10):
        return self._find("forward", requested)

    def find_convolution_backward_data_algorithm(self, handle, w_desc, dy_desc, conv_desc, dx_desc, requested=10):
        return self._find("backward_data", requested)

    def find_convolution_backward_filter_algorithm(self, handle, x_desc, dy_desc, conv_desc, dw_desc, requested=10):
        return self._find("backward_filter", requested)

    # ----------------------------
    # buffer helpers
    # ----------------------------

    def _tensor(self, desc: int, ptr: int) -> np.ndarray:
        data_type, n, c, h, w = self.tensors[desc]
        return _array(ptr, (n, c, h, w), _DTYPES[data_type])

    def _filter(self, desc: int, ptr: int) -> np.ndarray:
        data_type, k, c, h, w = self.filters[desc]
        return _array(ptr, (k, c, h, w), _DTYPES[data_type])

    def _record(self, name: str, alpha, beta, workspace_size: int = 0) -> None:
        self.calls.append((name, float(alpha.value), float(beta.value)))
        self.workspace_sizes.append(int(workspace_size))

    def _padded(self, x: np.ndarray, pad_h: int, pad_w: int) -> np.ndarray:
        return np.pad(x, ((0, 0), (0, 0), (pad_h, pad_h), (pad_w, pad_w)))

    # ----------------------------
    # convolution
    # ----------------------------

    def convolution_forward(
        self, handle, alpha, x_desc, x, w_desc, w, conv_desc, algo, workspace, workspace_size,
        beta, y_desc, y,
    ) -> None:
        self._maybe_fail("convolution_forward", "cudnnConvolutionForward")
        self._record("convolution_forward", alpha, beta, workspace_size)
        X = self._tensor(x_desc, x)
        W = self._filter(w_desc, w)
        Y = self._tensor(y_desc, y)
        pad_h, pad_w, s_h, s_w, _ = self.convs[conv_desc]
        Xp = self._padded(X, pad_h, pad_w)
        _, _, H_out, W_out = Y.shape
        res = np.zeros_like(Y)
        for fy in range(W.shape[2]):
            for fx in range(W.shape[3]):
                win = Xp[:, :, fy : fy + (H_out - 1) * s_h + 1 : s_h, fx : fx + (W_out - 1) * s_w + 1 : s_w]
                res += np.einsum("nchw,kc->nkhw", win, W[:, :, fy, fx])
        Y[...] = alpha.value * res + beta.value * Y

    def convolution_backward_data(
        self, handle, alpha, w_desc, w, dy_desc, dy, conv_desc, algo, workspace, workspace_size,
        beta, dx_desc, dx,
    ) -> None:
        self._maybe_fail("convolution_backward_data", "cudnnConvolutionBackwardData")
        self._record("convolution_backward_data", alpha, beta, workspace_size)
        W = self._filter(w_desc, w)
        DY = self._tensor(dy_desc, dy)
        DX = self._tensor(dx_desc, dx)
        pad_h, pad_w, s_h, s_w, _ = self.convs[conv_desc]
        N, C, H, Wd = DX.shape
        _, _, H_out, W_out = DY.shape
        dxp = np.zeros((N, C, H + 2 * pad_h, Wd + 2 * pad_w), dtype=DX.dtype)
        for fy in range(W.shape[2]):
            for fx in range(W.shape[3]):
                dxp[:, :, fy : fy + (H_out - 1) * s_h + 1 : s_h, fx : fx + (W_out - 1) * s_w + 1 : s_w] += (
                    np.einsum("nkhw,kc->nchw", DY, W[:, :, fy, fx])
                )
        res = dxp[:, :, pad_h : pad_h + H, pad_w : pad_w + Wd]
        DX[...] = alpha.value * res + beta.value * DX

    def convolution_backward_filter(
        self, handle, alpha, x_desc, x, dy_desc, dy, conv_desc, algo, workspace, workspace_size,
        beta, dw_desc, dw,
    ) -> None:
        self._maybe_fail("convolution_backward_filter", "cudnnConvolutionBackwardFilter")
        self._record("convolution_backward_filter", alpha, beta, workspace_size)
        X = self._tensor(x_desc, x)
        DY = self._tensor(dy_desc, dy)
        DW = self._filter(dw_desc, dw)
        pad_h, pad_w, s_h, s_w, _ = self.convs[conv_desc]
        Xp = self._padded(X, pad_h, pad_w)
        _, _, H_out, W_out = DY.shape
        res = np.zeros_like(DW)
        for fy in range(DW.shape[2]):
            for fx in range(DW.shape[3]):
                win = Xp[:, :, fy : fy + (H_out - 1) * s_h + 1 : s_h, fx : fx + (W_out - 1) * s_w + 1 : s_w]
                res[:, :, fy, fx] = np.einsum("nkhw,nchw->kc", DY, win)
        DW[...] = alpha.value * res + beta.value * DW

    def add_tensor(self, handle, alpha, a_desc, a, beta, c_desc, c) -> None:
        self._record("add_tensor", alpha, beta)
        A = self._tensor(a_desc, a)
        Cc = self._tensor(c_desc, c)
        Cc[...] = alpha.value * A + beta.value * Cc

    def convolution_backward_bias(self, handle, alpha, dy_desc, dy, beta, db_desc, db) -> None:
        self._record("convolution_backward_bias", alpha, beta)
        DY = self._tensor(dy_desc, dy)
        DB = self._tensor(db_desc, db)
        res = DY.sum(axis=(0, 2, 3)).reshape(DB.shape)
        DB[...] = alpha.value * res + beta.value * DB

    # ----------------------------
    # pooling
    # ----------------------------

    def _pool_params(self, pool_desc: int):
        mode, k_h, k_w, p_h, p_w, s_h, s_w = self.pools[pool_desc]
        return mode, (k_h, k_w), (s_h, s_w), (p_h, p_w)

    def pooling_forward(self, handle, pool_desc, alpha, x_desc, x, beta, y_desc, y) -> None:
        self._record("pooling_forward", alpha, beta)
        X = self._tensor(x_desc, x)
        Y = self._tensor(y_desc, y)
        mode, kernel, stride, padding = self._pool_params(pool_desc)
        if mode == CUDNN_POOLING_MAX:
            res, _ = maxpool2d_forward_cpu(X, kernel=kernel, stride=stride, padding=padding)
        else:
            res = avgpool2d_forward_cpu(X, kernel=kernel, stride=stride, padding=padding)
        Y[...] = alpha.value * res + beta.value * Y

    def pooling_backward(
        self, handle, pool_desc, alpha, y_desc, y, dy_desc, dy, x_desc, x, beta, dx_desc, dx,
    ) -> None:
        self._record("pooling_backward", alpha, beta)
        X = self._tensor(x_desc, x)
        DY = self._tensor(dy_desc, dy)
        DX = self._tensor(dx_desc, dx)
        mode, kernel, stride, padding = self._pool_params(pool_desc)
        if mode == CUDNN_POOLING_MAX:
            _, idx = maxpool2d_forward_cpu(X, kernel=kernel, stride=stride, padding=padding)
            res = maxpool2d_backward_cpu(DY, idx, x_shape=X.shape, padding=padding)
        else:
            res = avgpool2d_backward_cpu(DY, x_shape=X.shape, kernel=kernel, stride=stride, padding=padding)
        DX[...] = alpha.value * res + beta.value * DX
