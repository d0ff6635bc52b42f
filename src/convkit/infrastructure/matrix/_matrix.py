"""
Column-major dense matrix backend used by the engines.

`Matrix` is the concrete implementation of the `MatrixLike` contract. It is
deliberately small: it provides exactly the primitives the convolution and
pooling engines consume, on host memory (NumPy) or CUDA device memory
(`_CudaStorage` through the CUDA runtime bindings).

Storage model
-------------
- Elements are stored column-major in a flat buffer. An `R x C` matrix at
  element offset `o` occupies `[o, o + R*C)`; column `j` occupies
  `[o + j*R, o + (j+1)*R)`.
- `column_slice` returns a view sharing the buffer (no copy).
- `reshape` reinterprets the extents of the same storage (no copy).
- `resize` changes the logical shape of an owning matrix. Capacity only
  grows: shrinking keeps the allocation so later growth up to the previous
  size does not reallocate. Contents are undefined after a resize.

Host vs. device
---------------
- Host matrices expose NumPy views (`numpy_view`) and support `multiply`.
- CUDA matrices expose device pointers for native libraries and support
  host transfer (`copy_from_numpy`, `to_numpy`), but no host compute.
"""

from __future__ import annotations

import weakref
from typing import Optional

import numpy as np
from typing_extensions import Self

from ...domain._errors import (
    DeviceMismatchError,
    DeviceNotSupportedError,
    ShapeMismatchError,
)
from ...domain._matrix_protocol import MatrixLike
from ...domain.device._device import Device, DeviceSpec, as_device
from ._cuda_storage import _CudaStorage


def _check_dims(rows: int, cols: int) -> tuple[int, int]:
    rows, cols = int(rows), int(cols)
    if rows < 0 or cols < 0:
        raise ValueError(f"matrix dimensions must be non-negative, got ({rows}, {cols})")
    return rows, cols


class Matrix:
    """
    Dense column-major matrix on the host or a CUDA device.

    Parameters
    ----------
    rows, cols : int
        Initial shape. Contents are uninitialized.
    dtype : np.dtype, optional
        Element type. Defaults to float32.
    device : Device | str | int, optional
        Placement. Defaults to the host.
    """

    def __init__(
        self,
        rows: int = 0,
        cols: int = 0,
        *,
        dtype: np.dtype = np.float32,
        device: DeviceSpec = "cpu",
    ) -> None:
        self._device: Device = as_device(device)
        self._dtype = np.dtype(dtype)
        self._rows = 0
        self._cols = 0
        self._offset = 0
        self._is_view = False
        self._host: Optional[np.ndarray] = None
        self._storage: Optional[_CudaStorage] = None
        self._release: Optional[weakref.finalize] = None
        self._capacity = 0
        rows, cols = _check_dims(rows, cols)
        self._allocate(rows * cols)
        self._rows, self._cols = rows, cols

    # ----------------------------
    # construction helpers
    # ----------------------------

    @classmethod
    def from_numpy(cls, arr: np.ndarray, *, device: DeviceSpec = "cpu") -> "Matrix":
        """
        Create a matrix holding a copy of a 2D NumPy array.

        Parameters
        ----------
        arr : np.ndarray
            Source array of shape (rows, cols).
        device : Device | str | int, optional
            Placement of the new matrix.
        """
        arr = np.asarray(arr)
        if arr.ndim != 2:
            raise ValueError(f"from_numpy expects a 2D array, got shape {arr.shape}")
        m = cls(arr.shape[0], arr.shape[1], dtype=arr.dtype, device=device)
        m.copy_from_numpy(arr)
        return m

    @classmethod
    def zeros(
        cls, rows: int, cols: int, *, dtype: np.dtype = np.float32, device: DeviceSpec = "cpu"
    ) -> "Matrix":
        m = cls(rows, cols, dtype=dtype, device=device)
        m.fill(0)
        return m

    def _allocate(self, size: int) -> None:
        """(Re)allocate owned storage for `size` elements."""
        if self._device.is_cpu():
            self._host = np.empty(max(int(size), 0), dtype=self._dtype)
        else:
            from ..native_cuda.python.cudart_ctypes import get_cuda_runtime

            if self._release is not None:
                self._release()
                self._release = None
            self._storage = None
            if size <= 0:
                # empty device matrices hold no allocation and need no runtime
                self._capacity = 0
                self._offset = 0
                return
            storage = _CudaStorage.allocate(
                get_cuda_runtime(),
                int(self._device.index),
                int(size) * self._dtype.itemsize,
                self._dtype,
            )
            self._storage = storage
            self._release = weakref.finalize(self, storage.decref)
        self._capacity = int(size)
        self._offset = 0

    def _view(self, offset: int, rows: int, cols: int) -> "Matrix":
        v = Matrix.__new__(Matrix)
        v._device = self._device
        v._dtype = self._dtype
        v._rows = rows
        v._cols = cols
        v._offset = offset
        v._is_view = True
        v._host = self._host
        v._storage = self._storage
        v._release = None
        v._capacity = rows * cols
        if v._storage is not None:
            v._storage.incref()
            v._release = weakref.finalize(v, v._storage.decref)
        return v

    # ----------------------------
    # properties
    # ----------------------------

    @property
    def num_rows(self) -> int:
        return self._rows

    @property
    def num_cols(self) -> int:
        return self._cols

    @property
    def shape(self) -> tuple[int, int]:
        return (self._rows, self._cols)

    @property
    def size(self) -> int:
        return self._rows * self._cols

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def element_size(self) -> int:
        """Size of one element in bytes."""
        return self._dtype.itemsize

    @property
    def device(self) -> Device:
        return self._device

    @property
    def capacity(self) -> int:
        """Number of elements the current allocation can hold."""
        return self._capacity

    @property
    def is_view(self) -> bool:
        return self._is_view

    # ----------------------------
    # backend primitives
    # ----------------------------

    def resize(self, rows: int, cols: int) -> None:
        """
        Change the logical shape; contents are undefined afterwards.

        Owned storage grows when needed and is retained otherwise. A
        column-slice view cannot change its element count.

        Raises
        ------
        ShapeMismatchError
            If a view is resized to a different element count.
        """
        rows, cols = _check_dims(rows, cols)
        size = rows * cols
        if self._is_view:
            if size != self.size:
                raise ShapeMismatchError(
                    "resize", "element count of a column-slice view", self.size, size
                )
        elif size > self._capacity:
            self._allocate(size)
        self._rows, self._cols = rows, cols

    def column_slice(self, start: int, num_cols: int) -> Self:
        """
        Return a view over columns `[start, start + num_cols)`.

        Raises
        ------
        ShapeMismatchError
            If the requested range exceeds the matrix.
        """
        start, num_cols = int(start), int(num_cols)
        if start < 0 or num_cols < 0 or start + num_cols > self._cols:
            raise ShapeMismatchError(
                "column_slice", "column range", f"within [0, {self._cols})",
                f"[{start}, {start + num_cols})",
            )
        return self._view(self._offset + start * self._rows, self._rows, num_cols)

    def reshape(self, rows: int, cols: int) -> None:
        """
        Reinterpret the matrix as `rows x cols` without moving data.

        Raises
        ------
        ShapeMismatchError
            If `rows * cols` differs from the current element count.
        """
        rows, cols = _check_dims(rows, cols)
        if rows * cols != self.size:
            raise ShapeMismatchError("reshape", "element count", self.size, rows * cols)
        self._rows, self._cols = rows, cols

    def buffer_pointer(self) -> int:
        """Return the address of the first element (host or device)."""
        byte_offset = self._offset * self._dtype.itemsize
        if self._device.is_cpu():
            return int(self._host.ctypes.data) + byte_offset
        if self._storage is None or not self._storage.dev_ptr:
            return 0
        return int(self._storage.dev_ptr) + byte_offset

    def numpy_view(self) -> np.ndarray:
        """
        Return a writable NumPy view of a host matrix (Fortran order).

        Raises
        ------
        DeviceNotSupportedError
            For device-resident matrices.
        """
        if not self._device.is_cpu():
            raise DeviceNotSupportedError("numpy_view", str(self._device))
        flat = self._host[self._offset : self._offset + self.size]
        return flat.reshape((self._rows, self._cols), order="F")

    def to_numpy(self) -> np.ndarray:
        """Return a host copy of the matrix contents."""
        if self._device.is_cpu():
            return np.array(self.numpy_view(), order="F", copy=True)
        out = np.empty((self._rows, self._cols), dtype=self._dtype, order="F")
        if self.size:
            self._storage.runtime.set_device(int(self._device.index))
            self._storage.runtime.memcpy_d2h(out, self.buffer_pointer())
        return out

    def copy_from_numpy(self, arr: np.ndarray) -> None:
        """
        Overwrite the matrix contents with a host array of the same shape.

        Raises
        ------
        ShapeMismatchError
            If `arr.shape` differs from the matrix shape.
        """
        arr = np.asarray(arr)
        if arr.shape != self.shape:
            raise ShapeMismatchError("copy_from_numpy", "array shape", self.shape, arr.shape)
        if self._device.is_cpu():
            self.numpy_view()[...] = arr
            return
        if self.size:
            src = np.asfortranarray(arr, dtype=self._dtype)
            self._storage.runtime.set_device(int(self._device.index))
            self._storage.runtime.memcpy_h2d(self.buffer_pointer(), src)

    def fill(self, value: float) -> None:
        """Set every element to `value`."""
        if self._device.is_cpu():
            self.numpy_view().fill(value)
        elif value == 0:
            if self.size:
                self._storage.runtime.set_device(int(self._device.index))
                self._storage.runtime.memset(self.buffer_pointer(), 0, self.size * self.element_size)
        else:
            self.copy_from_numpy(np.full(self.shape, value, dtype=self._dtype))

    @staticmethod
    def multiply(
        a: MatrixLike, transpose_a: bool, b: MatrixLike, transpose_b: bool, c: MatrixLike
    ) -> None:
        """
        General matrix multiply: `c = op(a) @ op(b)`.

        `c` is written in place (which updates a parent matrix when `c` is a
        column-slice view) and must already have the result shape.

        Raises
        ------
        DeviceMismatchError
            If the operands live on different devices.
        DeviceNotSupportedError
            If the operands are not host matrices.
        ShapeMismatchError
            If the operand shapes are incompatible.
        """
        for m in (b, c):
            if m.device != a.device:
                raise DeviceMismatchError(str(a.device), str(m.device))
        if not a.device.is_cpu():
            raise DeviceNotSupportedError("multiply", str(a.device))

        A = a.numpy_view().T if transpose_a else a.numpy_view()
        B = b.numpy_view().T if transpose_b else b.numpy_view()
        if A.shape[1] != B.shape[0]:
            raise ShapeMismatchError("multiply", "inner dimension", A.shape[1], B.shape[0])
        expected = (A.shape[0], B.shape[1])
        actual = (c.num_rows, c.num_cols)
        if actual != expected:
            raise ShapeMismatchError("multiply", "result shape", expected, actual)
        c.numpy_view()[...] = A @ B

    def __repr__(self) -> str:
        kind = "view" if self._is_view else "owner"
        return (
            f"Matrix(rows={self._rows}, cols={self._cols}, dtype={self._dtype.name}, "
            f"device='{self._device}', {kind})"
        )
