"""
CPU implementations for 2D max and average pooling (NumPy backend).

These kernels back `DefaultPoolingEngine` and double as the numerical
reference that the accelerated pooling engine is tested against. All
functions operate on **NCHW** arrays; engines convert their sample-column
matrices with the helpers in `layout_cpu`.

Implemented variants
--------------------
- Max pooling (forward + backward)
- Average pooling (forward + backward), padding excluded from the divisor

Design notes
------------
- Max pooling pads with `-inf` so padded positions never win. Ties resolve to
  the first maximum in row-major window order; the backward pass routes the
  whole output gradient to that position.
- Average pooling divides each window sum by the number of *non-padded*
  positions it covers, matching cuDNN's
  `CUDNN_POOLING_AVERAGE_COUNT_EXCLUDE_PADDING` mode.
- Backward functions return a fresh gradient; the engine decides whether it
  overwrites or accumulates.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np


def _out_hw(
    H: int, W: int, k: Tuple[int, int], s: Tuple[int, int], p: Tuple[int, int]
) -> Tuple[int, int]:
    """Output `(H_out, W_out)` for kernel `k`, stride `s`, padding `p` (all (h, w))."""
    k_h, k_w = k
    s_h, s_w = s
    p_h, p_w = p
    H_out = (H + 2 * p_h - k_h) // s_h + 1
    W_out = (W + 2 * p_w - k_w) // s_w + 1
    return H_out, W_out


def maxpool2d_forward_cpu(
    x: np.ndarray,
    *,
    kernel: Tuple[int, int],
    stride: Tuple[int, int],
    padding: Tuple[int, int] = (0, 0),
) -> tuple[np.ndarray, np.ndarray]:
    """
    Max pooling forward pass, NCHW.

    Parameters
    ----------
    x : np.ndarray
        Input of shape (N, C, H, W).
    kernel, stride, padding : tuple[int, int]
        Window, stride and padding as `(h, w)` pairs.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        y :
            Output of shape (N, C, H_out, W_out).
        argmax_idx :
            Flat index into the padded input plane of each selected maximum.
    """
    N, C, H, W = x.shape
    k_h, k_w = kernel
    s_h, s_w = stride
    p_h, p_w = padding
    H_out, W_out = _out_hw(H, W, kernel, stride, padding)

    x_pad = np.pad(
        x,
        pad_width=((0, 0), (0, 0), (p_h, p_h), (p_w, p_w)),
        mode="constant",
        constant_values=-np.inf,
    )
    W_pad = x_pad.shape[3]

    y = np.empty((N, C, H_out, W_out), dtype=x.dtype)
    argmax_idx = np.empty((N, C, H_out, W_out), dtype=np.int64)

    for n in range(N):
        for c in range(C):
            for i in range(H_out):
                h0 = i * s_h
                for j in range(W_out):
                    w0 = j * s_w
                    patch = x_pad[n, c, h0 : h0 + k_h, w0 : w0 + k_w]
                    flat_idx = int(np.argmax(patch))
                    y[n, c, i, j] = patch.reshape(-1)[flat_idx]
                    argmax_idx[n, c, i, j] = (h0 + flat_idx // k_w) * W_pad + (
                        w0 + flat_idx % k_w
                    )

    return y, argmax_idx


def maxpool2d_backward_cpu(
    grad_out: np.ndarray,
    argmax_idx: np.ndarray,
    *,
    x_shape: tuple[int, int, int, int],
    padding: Tuple[int, int] = (0, 0),
) -> np.ndarray:
    """
    Max pooling backward pass, NCHW.

    Parameters
    ----------
    grad_out : np.ndarray
        Gradient w.r.t. the output, shape (N, C, H_out, W_out).
    argmax_idx : np.ndarray
        Indices returned by `maxpool2d_forward_cpu`.
    x_shape : tuple[int, int, int, int]
        Input shape (N, C, H, W).
    padding : tuple[int, int]
        Padding `(h, w)` used in the forward pass.

    Returns
    -------
    np.ndarray
        Gradient w.r.t. the input, shape (N, C, H, W).
    """
    N, C, H, W = x_shape
    p_h, p_w = padding
    H_pad = H + 2 * p_h
    W_pad = W + 2 * p_w

    grad_x_pad = np.zeros((N, C, H_pad, W_pad), dtype=grad_out.dtype)
    H_out, W_out = grad_out.shape[2], grad_out.shape[3]
    for n in range(N):
        for c in range(C):
            for i in range(H_out):
                for j in range(W_out):
                    idx = int(argmax_idx[n, c, i, j])
                    grad_x_pad[n, c, idx // W_pad, idx % W_pad] += grad_out[n, c, i, j]

    return grad_x_pad[:, :, p_h : p_h + H, p_w : p_w + W]


def _window_counts(
    H: int,
    W: int,
    kernel: Tuple[int, int],
    stride: Tuple[int, int],
    padding: Tuple[int, int],
) -> np.ndarray:
    """Number of non-padded input positions covered by each output window."""
    k_h, k_w = kernel
    s_h, s_w = stride
    p_h, p_w = padding
    H_out, W_out = _out_hw(H, W, kernel, stride, padding)
    counts = np.empty((H_out, W_out), dtype=np.int64)
    for i in range(H_out):
        h0 = i * s_h - p_h
        rows = min(h0 + k_h, H) - max(h0, 0)
        for j in range(W_out):
            w0 = j * s_w - p_w
            cols = min(w0 + k_w, W) - max(w0, 0)
            counts[i, j] = max(rows, 0) * max(cols, 0)
    return counts


def avgpool2d_forward_cpu(
    x: np.ndarray,
    *,
    kernel: Tuple[int, int],
    stride: Tuple[int, int],
    padding: Tuple[int, int] = (0, 0),
) -> np.ndarray:
    """
    Average pooling forward pass, NCHW.

    Notes
    -----
    Windows that lie entirely in the padding (possible only with padding
    larger than the window) produce zero.
    """
    N, C, H, W = x.shape
    k_h, k_w = kernel
    s_h, s_w = stride
    p_h, p_w = padding
    H_out, W_out = _out_hw(H, W, kernel, stride, padding)

    x_pad = np.pad(
        x,
        pad_width=((0, 0), (0, 0), (p_h, p_h), (p_w, p_w)),
        mode="constant",
        constant_values=0.0,
    )
    counts = _window_counts(H, W, kernel, stride, padding)

    y = np.zeros((N, C, H_out, W_out), dtype=x.dtype)
    for i in range(H_out):
        h0 = i * s_h
        for j in range(W_out):
            w0 = j * s_w
            denom = counts[i, j]
            if denom == 0:
                continue
            patch = x_pad[:, :, h0 : h0 + k_h, w0 : w0 + k_w]
            y[:, :, i, j] = patch.sum(axis=(2, 3)) / denom

    return y


def avgpool2d_backward_cpu(
    grad_out: np.ndarray,
    *,
    x_shape: tuple[int, int, int, int],
    kernel: Tuple[int, int],
    stride: Tuple[int, int],
    padding: Tuple[int, int] = (0, 0),
) -> np.ndarray:
    """
    Average pooling backward pass, NCHW.

    Each output gradient is spread evenly over the non-padded positions of
    its window.
    """
    N, C, H, W = x_shape
    k_h, k_w = kernel
    s_h, s_w = stride
    p_h, p_w = padding
    H_out, W_out = grad_out.shape[2], grad_out.shape[3]
    counts = _window_counts(H, W, kernel, stride, padding)

    grad_x_pad = np.zeros((N, C, H + 2 * p_h, W + 2 * p_w), dtype=grad_out.dtype)
    for i in range(H_out):
        h0 = i * s_h
        for j in range(W_out):
            w0 = j * s_w
            denom = counts[i, j]
            if denom == 0:
                continue
            go = grad_out[:, :, i, j] / denom
            grad_x_pad[:, :, h0 : h0 + k_h, w0 : w0 + k_w] += go[:, :, None, None]

    return grad_x_pad[:, :, p_h : p_h + H, p_w : p_w + W]
