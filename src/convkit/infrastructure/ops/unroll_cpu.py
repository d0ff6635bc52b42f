"""
Input unrolling ("im2col") for the default convolution engine.

Unrolling copies every receptive field of a convolution into one column of a
matrix so that the whole convolution reduces to a single GEMM:

    out (k x P_out*n) = filter (k x P) @ unrolled (P x P_out*n)

where `P = fw * fh * c` is the packed patch length and `P_out = out_w * out_h`
is the number of output positions per channel.

Layouts
-------
- Input columns: one sample per column, HWC (channel fastest):
  row = (y * in_w + x) * c + ch
- Unrolled rows: row = (fy * fw + fx) * c + ch
- Unrolled columns: col = s * P_out + (oy * out_w + ox)

Padding
-------
Receptive fields start at `(ox * w_stride - w_pad, oy * h_stride - h_pad)`.
Positions that fall outside the input read as zero.
"""

from __future__ import annotations

import numpy as np


def packed_input_rows(filter_w: int, filter_h: int, channels: int) -> int:
    """Number of rows of the unrolled matrix (`fw * fh * c`)."""
    return int(filter_w) * int(filter_h) * int(channels)


def unroll_convolution_input_cpu(
    src: np.ndarray,
    dst: np.ndarray,
    *,
    in_w: int,
    in_h: int,
    in_c: int,
    out_w: int,
    out_h: int,
    filter_w: int,
    filter_h: int,
    w_stride: int,
    h_stride: int,
    w_pad: int,
    h_pad: int,
) -> None:
    """
    Unroll a batch of HWC sample columns into `dst` (in place).

    Parameters
    ----------
    src : np.ndarray
        Input of shape (in_w * in_h * in_c, n), Fortran ordered.
    dst : np.ndarray
        Destination of shape (filter_w * filter_h * in_c, out_w * out_h * n),
        Fortran ordered (typically a view over an engine's temp matrix).
    in_w, in_h, in_c : int
        Input sample dimensions.
    out_w, out_h : int
        Output spatial dimensions.
    filter_w, filter_h : int
        Kernel dimensions.
    w_stride, h_stride : int
        Strides.
    w_pad, h_pad : int
        Zero padding applied on each side.

    Raises
    ------
    ValueError
        If the array shapes do not match the given dimensions, or the output
        positions read past the padded input.
    """
    n = src.shape[1]
    if src.shape[0] != in_w * in_h * in_c:
        raise ValueError(
            f"unroll: src has {src.shape[0]} rows, expected {in_w * in_h * in_c}"
        )
    expected_dst = (filter_w * filter_h * in_c, out_w * out_h * n)
    if dst.shape != expected_dst:
        raise ValueError(f"unroll: dst shape {dst.shape}, expected {expected_dst}")

    w_last = (out_w - 1) * w_stride + filter_w
    h_last = (out_h - 1) * h_stride + filter_h
    if w_last > in_w + 2 * w_pad or h_last > in_h + 2 * h_pad:
        raise ValueError(
            f"unroll: output {out_w}x{out_h} reads past padded input "
            f"{in_w + 2 * w_pad}x{in_h + 2 * h_pad}"
        )

    # x[ch, x, y, s]
    x = src.reshape((in_c, in_w, in_h, n), order="F")
    if w_pad or h_pad:
        x_pad = np.zeros(
            (in_c, in_w + 2 * w_pad, in_h + 2 * h_pad, n), dtype=src.dtype
        )
        x_pad[:, w_pad : w_pad + in_w, h_pad : h_pad + in_h, :] = x
    else:
        x_pad = x

    # cols[ch, fx, fy, ox, oy, s] aliases dst when dst is Fortran-contiguous.
    cols = dst.reshape((in_c, filter_w, filter_h, out_w, out_h, n), order="F")
    w_span = (out_w - 1) * w_stride + 1
    h_span = (out_h - 1) * h_stride + 1
    for fy in range(filter_h):
        for fx in range(filter_w):
            cols[:, fx, fy, :, :, :] = x_pad[
                :, fx : fx + w_span : w_stride, fy : fy + h_span : h_stride, :
            ]

    if not np.shares_memory(cols, dst):
        dst[...] = cols.reshape(expected_dst, order="F")
