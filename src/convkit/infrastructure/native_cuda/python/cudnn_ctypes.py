"""
ctypes bindings for the cuDNN calls used by the accelerated engines.

`CuDnnLibrary` wraps a loaded cuDNN `ctypes.CDLL`. It binds call signatures
once (lazily), converts Python ints into native handles/pointers, and turns
every non-success `cudnnStatus_t` into a `NativeLibraryError` carrying the
failing call's name and cuDNN's own description of the status.

Conventions
-----------
- Handles (cudnnHandle_t and every descriptor type) and device pointers are
  plain Python ints.
- Scaling factors (`alpha`/`beta`) are ctypes scalars whose type matches the
  tensor data type (`c_float` for float32, `c_double` for float64), as cuDNN
  requires. They are passed by pointer.
- Tensor descriptors always use the NCHW format; filter descriptors use KCRS
  (also spelled NCHW in cuDNN).

Algorithm search
----------------
The `find_*_algorithm` methods run cuDNN's measured benchmark (blocking) and
return the ranked candidates as `AlgoPerf` records, fastest first.
"""

from __future__ import annotations

import ctypes
from ctypes import c_char_p, c_float, c_int, c_size_t, c_void_p
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np

from ....domain._errors import NativeLibraryError
from ._native_loader import load_cudnn_native

Handle = int
DevPtr = int
Scalar = Union[ctypes.c_float, ctypes.c_double]

CUDNN_STATUS_SUCCESS = 0
CUDNN_STATUS_NOT_INITIALIZED = 1

# cudnnTensorFormat_t
CUDNN_TENSOR_NCHW = 0

# cudnnDataType_t
CUDNN_DATA_FLOAT = 0
CUDNN_DATA_DOUBLE = 1

# cudnnConvolutionMode_t
CUDNN_CROSS_CORRELATION = 1

# cudnnPoolingMode_t
CUDNN_POOLING_MAX = 0
CUDNN_POOLING_AVERAGE_COUNT_INCLUDE_PADDING = 1
CUDNN_POOLING_AVERAGE_COUNT_EXCLUDE_PADDING = 2

# cudnnNanPropagation_t
CUDNN_NOT_PROPAGATE_NAN = 0

MAX_ALGO_COUNT = 10


class _AlgoPerfStruct(ctypes.Structure):
    """
    Shared layout of cudnnConvolution{Fwd,BwdData,BwdFilter}AlgoPerf_t.
    """

    _fields_ = [
        ("algo", c_int),
        ("status", c_int),
        ("time", c_float),
        ("memory", c_size_t),
        ("determinism", c_int),
        ("mathType", c_int),
        ("reserved", c_int * 3),
    ]


@dataclass(frozen=True)
class AlgoPerf:
    """
    One ranked algorithm candidate returned by a cuDNN find call.

    Attributes
    ----------
    algo : int
        Algorithm enum value.
    status : int
        cuDNN status of the benchmark run for this algorithm.
    time : float
        Measured execution time in milliseconds.
    memory : int
        Workspace size in bytes required by the algorithm.
    """

    algo: int
    status: int
    time: float
    memory: int


def data_type_for(dtype: np.dtype) -> int:
    """
    Map a NumPy dtype onto a cuDNN data type.

    Raises
    ------
    TypeError
        If `dtype` is not float32 or float64.
    """
    dtype = np.dtype(dtype)
    if dtype == np.float32:
        return CUDNN_DATA_FLOAT
    if dtype == np.float64:
        return CUDNN_DATA_DOUBLE
    raise TypeError(f"cuDNN engines support float32/float64 only, got {dtype}")


def _ptr(value: Optional[int]) -> c_void_p:
    return c_void_p(int(value or 0))


def _scalar_ptr(scalar: Scalar) -> c_void_p:
    return ctypes.cast(ctypes.pointer(scalar), c_void_p)


class CuDnnLibrary:
    """
    Thin binding layer around the cuDNN shared library.

    Parameters
    ----------
    lib : ctypes.CDLL
        Loaded cuDNN handle.
    """

    def __init__(self, lib: ctypes.CDLL) -> None:
        self.lib = lib
        self._bound = False

    def _bind(self) -> None:
        """Bind argtypes/restype for the cuDNN exports (idempotent)."""
        if self._bound:
            return
        lib = self.lib
        vp = c_void_p
        pvp = ctypes.POINTER(c_void_p)

        def sig(name: str, *argtypes) -> None:
            fn = getattr(lib, name)
            fn.argtypes = list(argtypes)
            fn.restype = c_int

        lib.cudnnGetErrorString.argtypes = [c_int]
        lib.cudnnGetErrorString.restype = c_char_p

        sig("cudnnCreate", pvp)
        sig("cudnnDestroy", vp)
        sig("cudnnSetStream", vp, vp)

        sig("cudnnCreateTensorDescriptor", pvp)
        sig("cudnnSetTensor4dDescriptor", vp, c_int, c_int, c_int, c_int, c_int, c_int)
        sig("cudnnDestroyTensorDescriptor", vp)

        sig("cudnnCreateFilterDescriptor", pvp)
        sig("cudnnSetFilter4dDescriptor", vp, c_int, c_int, c_int, c_int, c_int, c_int)
        sig("cudnnDestroyFilterDescriptor", vp)

        sig("cudnnCreateConvolutionDescriptor", pvp)
        sig(
            "cudnnSetConvolution2dDescriptor",
            vp, c_int, c_int, c_int, c_int, c_int, c_int, c_int, c_int,
        )
        sig("cudnnDestroyConvolutionDescriptor", vp)

        sig("cudnnCreatePoolingDescriptor", pvp)
        sig(
            "cudnnSetPooling2dDescriptor",
            vp, c_int, c_int, c_int, c_int, c_int, c_int, c_int, c_int,
        )
        sig("cudnnDestroyPoolingDescriptor", vp)

        perf_p = ctypes.POINTER(_AlgoPerfStruct)
        for name in (
            "cudnnFindConvolutionForwardAlgorithm",
            "cudnnFindConvolutionBackwardDataAlgorithm",
            "cudnnFindConvolutionBackwardFilterAlgorithm",
        ):
            sig(name, vp, vp, vp, vp, vp, c_int, ctypes.POINTER(c_int), perf_p)

        for name in (
            "cudnnConvolutionForward",
            "cudnnConvolutionBackwardData",
            "cudnnConvolutionBackwardFilter",
        ):
            sig(name, vp, vp, vp, vp, vp, vp, vp, c_int, vp, c_size_t, vp, vp, vp)

        sig("cudnnAddTensor", vp, vp, vp, vp, vp, vp, vp)
        sig("cudnnConvolutionBackwardBias", vp, vp, vp, vp, vp, vp, vp)
        sig("cudnnPoolingForward", vp, vp, vp, vp, vp, vp, vp, vp)
        sig("cudnnPoolingBackward", vp, vp, vp, vp, vp, vp, vp, vp, vp, vp, vp, vp)

        self._bound = True

    # ----------------------------
    # status handling
    # ----------------------------

    def get_error_string(self, status: int) -> str:
        """Return cuDNN's description of a `cudnnStatus_t` value."""
        self._bind()
        raw = self.lib.cudnnGetErrorString(int(status))
        return raw.decode("utf-8", errors="replace") if raw else f"status {status}"

    def _check(self, status: int, call: str) -> None:
        if int(status) != CUDNN_STATUS_SUCCESS:
            raise NativeLibraryError("cuDNN", call, int(status), self.get_error_string(status))

    def _create(self, call: str) -> Handle:
        self._bind()
        out = c_void_p(0)
        self._check(getattr(self.lib, call)(ctypes.byref(out)), call)
        return int(out.value or 0)

    def _destroy(self, call: str, handle: Handle) -> None:
        self._bind()
        self._check(getattr(self.lib, call)(_ptr(handle)), call)

    # ----------------------------
    # library context
    # ----------------------------

    def create(self) -> Handle:
        return self._create("cudnnCreate")

    def destroy(self, handle: Handle) -> None:
        self._destroy("cudnnDestroy", handle)

    def set_stream(self, handle: Handle, stream: int) -> None:
        self._bind()
        self._check(self.lib.cudnnSetStream(_ptr(handle), _ptr(stream)), "cudnnSetStream")

    # ----------------------------
    # descriptors
    # ----------------------------

    def create_tensor_descriptor(self) -> Handle:
        return self._create("cudnnCreateTensorDescriptor")

    def set_tensor4d_descriptor(
        self, desc: Handle, data_type: int, n: int, c: int, h: int, w: int
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnSetTensor4dDescriptor(
                _ptr(desc), CUDNN_TENSOR_NCHW, int(data_type), int(n), int(c), int(h), int(w)
            ),
            "cudnnSetTensor4dDescriptor",
        )

    def destroy_tensor_descriptor(self, desc: Handle) -> None:
        self._destroy("cudnnDestroyTensorDescriptor", desc)

    def create_filter_descriptor(self) -> Handle:
        return self._create("cudnnCreateFilterDescriptor")

    def set_filter4d_descriptor(
        self, desc: Handle, data_type: int, k: int, c: int, h: int, w: int
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnSetFilter4dDescriptor(
                _ptr(desc), int(data_type), CUDNN_TENSOR_NCHW, int(k), int(c), int(h), int(w)
            ),
            "cudnnSetFilter4dDescriptor",
        )

    def destroy_filter_descriptor(self, desc: Handle) -> None:
        self._destroy("cudnnDestroyFilterDescriptor", desc)

    def create_convolution_descriptor(self) -> Handle:
        return self._create("cudnnCreateConvolutionDescriptor")

    def set_convolution2d_descriptor(
        self,
        desc: Handle,
        pad_h: int,
        pad_w: int,
        stride_h: int,
        stride_w: int,
        data_type: int,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnSetConvolution2dDescriptor(
                _ptr(desc),
                int(pad_h),
                int(pad_w),
                int(stride_h),
                int(stride_w),
                1,
                1,
                CUDNN_CROSS_CORRELATION,
                int(data_type),
            ),
            "cudnnSetConvolution2dDescriptor",
        )

    def destroy_convolution_descriptor(self, desc: Handle) -> None:
        self._destroy("cudnnDestroyConvolutionDescriptor", desc)

    def create_pooling_descriptor(self) -> Handle:
        return self._create("cudnnCreatePoolingDescriptor")

    def set_pooling2d_descriptor(
        self,
        desc: Handle,
        mode: int,
        window_h: int,
        window_w: int,
        pad_h: int,
        pad_w: int,
        stride_h: int,
        stride_w: int,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnSetPooling2dDescriptor(
                _ptr(desc),
                int(mode),
                CUDNN_NOT_PROPAGATE_NAN,
                int(window_h),
                int(window_w),
                int(pad_h),
                int(pad_w),
                int(stride_h),
                int(stride_w),
            ),
            "cudnnSetPooling2dDescriptor",
        )

    def destroy_pooling_descriptor(self, desc: Handle) -> None:
        self._destroy("cudnnDestroyPoolingDescriptor", desc)

    # ----------------------------
    # algorithm search
    # ----------------------------

    def _find(self, call: str, handle: Handle, a: Handle, b: Handle, conv: Handle, d: Handle, requested: int) -> List[AlgoPerf]:
        self._bind()
        perf = (_AlgoPerfStruct * int(requested))()
        returned = c_int(0)
        self._check(
            getattr(self.lib, call)(
                _ptr(handle), _ptr(a), _ptr(b), _ptr(conv), _ptr(d),
                int(requested), ctypes.byref(returned), perf,
            ),
            call,
        )
        return [
            AlgoPerf(
                algo=int(p.algo), status=int(p.status), time=float(p.time), memory=int(p.memory)
            )
            for p in perf[: int(returned.value)]
        ]

    def find_convolution_forward_algorithm(
        self, handle: Handle, x_desc: Handle, w_desc: Handle, conv_desc: Handle, y_desc: Handle,
        requested: int = MAX_ALGO_COUNT,
    ) -> List[AlgoPerf]:
        return self._find(
            "cudnnFindConvolutionForwardAlgorithm", handle, x_desc, w_desc, conv_desc, y_desc, requested
        )

    def find_convolution_backward_data_algorithm(
        self, handle: Handle, w_desc: Handle, dy_desc: Handle, conv_desc: Handle, dx_desc: Handle,
        requested: int = MAX_ALGO_COUNT,
    ) -> List[AlgoPerf]:
        return self._find(
            "cudnnFindConvolutionBackwardDataAlgorithm", handle, w_desc, dy_desc, conv_desc, dx_desc, requested
        )

    def find_convolution_backward_filter_algorithm(
        self, handle: Handle, x_desc: Handle, dy_desc: Handle, conv_desc: Handle, dw_desc: Handle,
        requested: int = MAX_ALGO_COUNT,
    ) -> List[AlgoPerf]:
        return self._find(
            "cudnnFindConvolutionBackwardFilterAlgorithm", handle, x_desc, dy_desc, conv_desc, dw_desc, requested
        )

    # ----------------------------
    # compute
    # ----------------------------

    def convolution_forward(
        self, handle: Handle, alpha: Scalar, x_desc: Handle, x: DevPtr, w_desc: Handle, w: DevPtr,
        conv_desc: Handle, algo: int, workspace: DevPtr, workspace_size: int,
        beta: Scalar, y_desc: Handle, y: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnConvolutionForward(
                _ptr(handle), _scalar_ptr(alpha), _ptr(x_desc), _ptr(x), _ptr(w_desc), _ptr(w),
                _ptr(conv_desc), int(algo), _ptr(workspace), c_size_t(int(workspace_size)),
                _scalar_ptr(beta), _ptr(y_desc), _ptr(y),
            ),
            "cudnnConvolutionForward",
        )

    def convolution_backward_data(
        self, handle: Handle, alpha: Scalar, w_desc: Handle, w: DevPtr, dy_desc: Handle, dy: DevPtr,
        conv_desc: Handle, algo: int, workspace: DevPtr, workspace_size: int,
        beta: Scalar, dx_desc: Handle, dx: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnConvolutionBackwardData(
                _ptr(handle), _scalar_ptr(alpha), _ptr(w_desc), _ptr(w), _ptr(dy_desc), _ptr(dy),
                _ptr(conv_desc), int(algo), _ptr(workspace), c_size_t(int(workspace_size)),
                _scalar_ptr(beta), _ptr(dx_desc), _ptr(dx),
            ),
            "cudnnConvolutionBackwardData",
        )

    def convolution_backward_filter(
        self, handle: Handle, alpha: Scalar, x_desc: Handle, x: DevPtr, dy_desc: Handle, dy: DevPtr,
        conv_desc: Handle, algo: int, workspace: DevPtr, workspace_size: int,
        beta: Scalar, dw_desc: Handle, dw: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnConvolutionBackwardFilter(
                _ptr(handle), _scalar_ptr(alpha), _ptr(x_desc), _ptr(x), _ptr(dy_desc), _ptr(dy),
                _ptr(conv_desc), int(algo), _ptr(workspace), c_size_t(int(workspace_size)),
                _scalar_ptr(beta), _ptr(dw_desc), _ptr(dw),
            ),
            "cudnnConvolutionBackwardFilter",
        )

    def add_tensor(
        self, handle: Handle, alpha: Scalar, a_desc: Handle, a: DevPtr,
        beta: Scalar, c_desc: Handle, c: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnAddTensor(
                _ptr(handle), _scalar_ptr(alpha), _ptr(a_desc), _ptr(a),
                _scalar_ptr(beta), _ptr(c_desc), _ptr(c),
            ),
            "cudnnAddTensor",
        )

    def convolution_backward_bias(
        self, handle: Handle, alpha: Scalar, dy_desc: Handle, dy: DevPtr,
        beta: Scalar, db_desc: Handle, db: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnConvolutionBackwardBias(
                _ptr(handle), _scalar_ptr(alpha), _ptr(dy_desc), _ptr(dy),
                _scalar_ptr(beta), _ptr(db_desc), _ptr(db),
            ),
            "cudnnConvolutionBackwardBias",
        )

    def pooling_forward(
        self, handle: Handle, pool_desc: Handle, alpha: Scalar, x_desc: Handle, x: DevPtr,
        beta: Scalar, y_desc: Handle, y: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnPoolingForward(
                _ptr(handle), _ptr(pool_desc), _scalar_ptr(alpha), _ptr(x_desc), _ptr(x),
                _scalar_ptr(beta), _ptr(y_desc), _ptr(y),
            ),
            "cudnnPoolingForward",
        )

    def pooling_backward(
        self, handle: Handle, pool_desc: Handle, alpha: Scalar,
        y_desc: Handle, y: DevPtr, dy_desc: Handle, dy: DevPtr, x_desc: Handle, x: DevPtr,
        beta: Scalar, dx_desc: Handle, dx: DevPtr,
    ) -> None:
        self._bind()
        self._check(
            self.lib.cudnnPoolingBackward(
                _ptr(handle), _ptr(pool_desc), _scalar_ptr(alpha),
                _ptr(y_desc), _ptr(y), _ptr(dy_desc), _ptr(dy), _ptr(x_desc), _ptr(x),
                _scalar_ptr(beta), _ptr(dx_desc), _ptr(dx),
            ),
            "cudnnPoolingBackward",
        )


_cudnn_singleton: Optional[CuDnnLibrary] = None


def get_cudnn(path: Optional[str] = None) -> CuDnnLibrary:
    """
    Return a cached `CuDnnLibrary` bound to the loaded cuDNN library.

    Raises
    ------
    OSError
        If cuDNN cannot be loaded.
    """
    global _cudnn_singleton
    lib = load_cudnn_native(path)
    if _cudnn_singleton is None or _cudnn_singleton.lib is not lib:
        _cudnn_singleton = CuDnnLibrary(lib)
    return _cudnn_singleton
