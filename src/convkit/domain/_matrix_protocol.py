"""
Matrix backend contract consumed by the engines.

Engines never depend on a concrete matrix class. They rely only on the
structural `MatrixLike` protocol below, which captures the primitives a
convolution engine needs from a dense matrix library:

- resize to a (rows, cols) shape (contents undefined afterwards)
- column-slice views over a contiguous run of columns (no copy)
- raw buffer pointer access (host or device address)
- reshape without copy (reinterpret row/column extents of the same storage)
- a writable NumPy view for host matrices (used by host-only engines)

General matrix multiplication is exposed by the concrete backend as a static
method (`Matrix.multiply`) because it involves three operands.

Storage is column-major: column `j` of an `R x C` matrix occupies elements
`[j * R, (j + 1) * R)` of the underlying buffer. This is what makes column
slices contiguous and reshapes copy-free.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from .device._device import Device


@runtime_checkable
class MatrixLike(Protocol):
    """
    Duck-typed dense column-major matrix.

    Notes
    -----
    `buffer_pointer()` returns an integer address. For host matrices this is
    a CPU address; for CUDA matrices it is a device address suitable for
    passing to native kernels.
    """

    @property
    def num_rows(self) -> int: ...

    @property
    def num_cols(self) -> int: ...

    @property
    def dtype(self) -> np.dtype: ...

    @property
    def device(self) -> Device: ...

    def resize(self, rows: int, cols: int) -> None: ...

    def column_slice(self, start: int, num_cols: int) -> "MatrixLike": ...

    def reshape(self, rows: int, cols: int) -> None: ...

    def buffer_pointer(self) -> int: ...

    def numpy_view(self) -> np.ndarray: ...
