"""
Host-side layout conversions between sample-column matrices and NCHW arrays.

Engines receive data as column-major matrices with one sample per column.
Two per-sample layouts are in use:

- "hwc" (channel fastest): row = (y * W + x) * C + c
  Used by the default engines; it is the layout GEMM produces when a
  `k x P` filter matrix multiplies an unrolled input.
- "chw" (width fastest): row = (c * H + y) * W + x
  The NCHW layout consumed by cuDNN.

The helpers return NumPy *views* whenever the input is a contiguous
Fortran-ordered matrix view, so writes through the result update the matrix.
"""

from __future__ import annotations

import numpy as np


def hwc_columns_as_nchw(cols: np.ndarray, w: int, h: int, c: int) -> np.ndarray:
    """
    View an HWC sample-column matrix as an (N, C, H, W) array.

    Parameters
    ----------
    cols : np.ndarray
        Array of shape (w*h*c, n), Fortran ordered.
    w, h, c : int
        Per-sample width, height, channels.

    Returns
    -------
    np.ndarray
        Array of shape (n, c, h, w) sharing memory with `cols` when possible.
    """
    n = cols.shape[1]
    return cols.reshape((c, w, h, n), order="F").transpose(3, 0, 2, 1)


def chw_columns_as_nchw(cols: np.ndarray, w: int, h: int, c: int) -> np.ndarray:
    """View a CHW sample-column matrix of shape (w*h*c, n) as (N, C, H, W)."""
    n = cols.shape[1]
    return cols.reshape((w, h, c, n), order="F").transpose(3, 2, 1, 0)


def nchw_to_hwc_columns(x: np.ndarray) -> np.ndarray:
    """Pack an (N, C, H, W) array into an HWC sample-column matrix (Fortran order)."""
    n, c, h, w = x.shape
    return np.asfortranarray(x.transpose(1, 3, 2, 0).reshape((c * w * h, n), order="F"))


def nchw_to_chw_columns(x: np.ndarray) -> np.ndarray:
    """Pack an (N, C, H, W) array into a CHW sample-column matrix (Fortran order)."""
    n, c, h, w = x.shape
    return np.asfortranarray(x.transpose(3, 2, 1, 0).reshape((w * h * c, n), order="F"))
