"""
ctypes bindings for the subset of the CUDA runtime used by convkit.

`CudaRuntime` binds `argtypes`/`restype` once (lazily) and exposes the calls
needed to back device matrices and to probe accelerator availability:
device selection and count, allocation, memcpy, memset and synchronization.

Every call that returns a non-zero `cudaError_t` raises `NativeLibraryError`
carrying the call name and the runtime's error string.

Device pointers are represented as Python ints.
"""

from __future__ import annotations

import ctypes
from ctypes import c_char_p, c_int, c_size_t, c_void_p
from typing import Optional

import numpy as np

from ....domain._errors import NativeLibraryError
from ._native_loader import load_cudart_native

DevPtr = int

CUDA_SUCCESS = 0

# cudaMemcpyKind
CUDA_MEMCPY_HOST_TO_DEVICE = 1
CUDA_MEMCPY_DEVICE_TO_HOST = 2
CUDA_MEMCPY_DEVICE_TO_DEVICE = 3


class CudaRuntime:
    """
    Thin binding layer around the CUDA runtime library.

    Parameters
    ----------
    lib : ctypes.CDLL
        Loaded CUDA runtime handle.
    """

    def __init__(self, lib: ctypes.CDLL) -> None:
        self.lib = lib
        self._bound = False

    def _bind(self) -> None:
        """Bind argtypes/restype for the runtime exports (idempotent)."""
        if self._bound:
            return
        lib = self.lib

        lib.cudaGetErrorString.argtypes = [c_int]
        lib.cudaGetErrorString.restype = c_char_p

        lib.cudaGetDeviceCount.argtypes = [ctypes.POINTER(c_int)]
        lib.cudaGetDeviceCount.restype = c_int

        lib.cudaSetDevice.argtypes = [c_int]
        lib.cudaSetDevice.restype = c_int

        lib.cudaMalloc.argtypes = [ctypes.POINTER(c_void_p), c_size_t]
        lib.cudaMalloc.restype = c_int

        lib.cudaFree.argtypes = [c_void_p]
        lib.cudaFree.restype = c_int

        lib.cudaMemcpy.argtypes = [c_void_p, c_void_p, c_size_t, c_int]
        lib.cudaMemcpy.restype = c_int

        lib.cudaMemset.argtypes = [c_void_p, c_int, c_size_t]
        lib.cudaMemset.restype = c_int

        lib.cudaDeviceSynchronize.argtypes = []
        lib.cudaDeviceSynchronize.restype = c_int

        self._bound = True

    def get_error_string(self, status: int) -> str:
        """Return the runtime's description of a `cudaError_t` value."""
        self._bind()
        raw = self.lib.cudaGetErrorString(int(status))
        return raw.decode("utf-8", errors="replace") if raw else f"status {status}"

    def _check(self, status: int, call: str) -> None:
        if int(status) != CUDA_SUCCESS:
            raise NativeLibraryError("CUDA", call, int(status), self.get_error_string(status))

    def device_count(self) -> int:
        """Return the number of visible CUDA devices."""
        self._bind()
        out = c_int(0)
        self._check(self.lib.cudaGetDeviceCount(ctypes.byref(out)), "cudaGetDeviceCount")
        return int(out.value)

    def set_device(self, device: int) -> None:
        self._bind()
        self._check(self.lib.cudaSetDevice(int(device)), "cudaSetDevice")

    def malloc(self, nbytes: int) -> DevPtr:
        """
        Allocate `nbytes` of device memory.

        Raises
        ------
        NativeLibraryError
            If allocation fails.
        """
        self._bind()
        out = c_void_p(0)
        self._check(self.lib.cudaMalloc(ctypes.byref(out), c_size_t(int(nbytes))), "cudaMalloc")
        return int(out.value or 0)

    def free(self, dev_ptr: DevPtr) -> None:
        """Free device memory. Passing 0 is a no-op."""
        if not dev_ptr:
            return
        self._bind()
        self._check(self.lib.cudaFree(c_void_p(int(dev_ptr))), "cudaFree")

    def memcpy_h2d(self, dst_dev: DevPtr, src_host: np.ndarray) -> None:
        """
        Copy raw bytes of a host array to device memory.

        The array's memory order is preserved byte-for-byte; callers decide
        whether that is C or Fortran order.
        """
        self._bind()
        if not (src_host.flags["C_CONTIGUOUS"] or src_host.flags["F_CONTIGUOUS"]):
            src_host = np.asfortranarray(src_host)
        self._check(
            self.lib.cudaMemcpy(
                c_void_p(int(dst_dev)),
                c_void_p(int(src_host.ctypes.data)),
                c_size_t(int(src_host.nbytes)),
                CUDA_MEMCPY_HOST_TO_DEVICE,
            ),
            "cudaMemcpy(HostToDevice)",
        )

    def memcpy_d2h(self, dst_host: np.ndarray, src_dev: DevPtr) -> None:
        """
        Copy device memory into a contiguous host array.

        Raises
        ------
        ValueError
            If `dst_host` is not contiguous.
        """
        self._bind()
        if not (dst_host.flags["C_CONTIGUOUS"] or dst_host.flags["F_CONTIGUOUS"]):
            raise ValueError("dst_host must be contiguous")
        self._check(
            self.lib.cudaMemcpy(
                c_void_p(int(dst_host.ctypes.data)),
                c_void_p(int(src_dev)),
                c_size_t(int(dst_host.nbytes)),
                CUDA_MEMCPY_DEVICE_TO_HOST,
            ),
            "cudaMemcpy(DeviceToHost)",
        )

    def memset(self, dev_ptr: DevPtr, value: int, nbytes: int) -> None:
        self._bind()
        self._check(
            self.lib.cudaMemset(c_void_p(int(dev_ptr)), c_int(int(value)), c_size_t(int(nbytes))),
            "cudaMemset",
        )

    def synchronize(self) -> None:
        """Block until all device work has completed."""
        self._bind()
        self._check(self.lib.cudaDeviceSynchronize(), "cudaDeviceSynchronize")


_runtime_singleton: Optional[CudaRuntime] = None


def get_cuda_runtime(path: Optional[str] = None) -> CudaRuntime:
    """
    Return a cached `CudaRuntime` bound to the loaded CUDA runtime library.

    Raises
    ------
    OSError
        If the CUDA runtime cannot be loaded.
    """
    global _runtime_singleton
    lib = load_cudart_native(path)
    if _runtime_singleton is None or _runtime_singleton.lib is not lib:
        _runtime_singleton = CudaRuntime(lib)
    return _runtime_singleton
