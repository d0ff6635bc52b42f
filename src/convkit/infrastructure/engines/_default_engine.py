"""
Portable (default) convolution and pooling engines.

`DefaultConvolutionEngine` implements the forward convolution as input
unrolling ("im2col") followed by one GEMM per sub-batch:

    out[:, sub-batch columns] = filter (k x P) @ unrolled (P x P_out*nb)

with `P = fw * fh * c` and `P_out = out_w * out_h`. The batch is split into
sub-batches of at most `max_temp_mem_samples` samples so the unrolled
matrix (the engine's temp buffer) stays bounded; `0` processes the whole
batch at once. After the last sub-batch, `out` is reinterpreted without a
copy from `k x (P_out * n)` to `(k * P_out) x n`, one sample per column.

Only the forward pass is provided. Backward and bias operations raise
`UnsupportedOperationError`.

`DefaultPoolingEngine` provides max and average pooling with the same
overwrite/accumulate policy as the accelerated pooling engine.

Layout
------
Data matrices use the channel-fastest ("HWC") per-sample layout, which is
what the GEMM above produces: `row = (y * W + x) * C + ch`. Filters are
`k x P` matrices with column `(fy * fw + fx) * c + ch`.

Notes
-----
Host matrices only: unrolling and GEMM run through NumPy views, so device
matrices raise `DeviceNotSupportedError`.
"""

from __future__ import annotations

import logging

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
    DeviceMismatchError,
    DeviceNotSupportedError,
    ShapeMismatchError,
    UnsupportedOperationError,
)
from ...domain._matrix_protocol import MatrixLike
from ...domain.device._device import DeviceSpec, as_device
from ..matrix._matrix import Matrix
from ..ops.layout_cpu import hwc_columns_as_nchw, nchw_to_hwc_columns
from ..ops.pool2d_cpu import (
    avgpool2d_backward_cpu,
    avgpool2d_forward_cpu,
    maxpool2d_backward_cpu,
    maxpool2d_forward_cpu,
)
from ..ops.unroll_cpu import packed_input_rows, unroll_convolution_input_cpu

logger = logging.getLogger("convkit.engines.default")


def _expect(op: str, what: str, expected: object, actual: object) -> None:
    if expected != actual:
        raise ShapeMismatchError(op, what, expected, actual)


def _host_view(op: str, m: MatrixLike) -> np.ndarray:
    if not m.device.is_cpu():
        raise DeviceNotSupportedError(op, str(m.device))
    return m.numpy_view()


class DefaultConvolutionEngine(ConvolutionEngine):
    """
    im2col + GEMM convolution engine.

    Parameters
    ----------
    device : Device | str | int
        Device of the temp buffer (must match the data matrices).
    max_temp_mem_samples : int
        Maximum number of samples unrolled at once; `0` means the whole batch.
    """

    def __init__(self, device: DeviceSpec, max_temp_mem_samples: int = 0) -> None:
        super().__init__(as_device(device), max_temp_mem_samples)
        self._temp = Matrix(device=self._device)

    @property
    def temp(self) -> Matrix:
        """Scratch matrix holding the unrolled input of the last sub-batch."""
        return self._temp

    def create_tensor(self, w: int, h: int, c: int, n: int) -> Tensor4D:
        return Tensor4D(w, h, c, n)

    def _check_forward(
        self,
        in_t: Tensor4D,
        in_: MatrixLike,
        filter_t: ConvolutionFilter,
        filter_: MatrixLike,
        conv_desc: ConvolutionDescriptor,
        out_t: Tensor4D,
        out: MatrixLike,
    ) -> None:
        op = "DefaultConvolutionEngine.forward"
        for m in (in_, filter_, out):
            if m.device != self._device:
                raise DeviceMismatchError(str(self._device), str(m.device))
        if not self._device.is_cpu():
            raise DeviceNotSupportedError(op, str(self._device))
        _expect(op, "input columns (in_t.n)", in_t.n, in_.num_cols)
        _expect(op, "input rows (in_t volume per sample)", in_t.volume_per_sample, in_.num_rows)
        _expect(op, "output columns (out_t.n)", out_t.n, out.num_cols)
        _expect(op, "output batch size", in_t.n, out_t.n)
        _expect(op, "filter channels", in_t.c, filter_t.c)
        _expect(op, "filter count (out_t.c)", out_t.c, filter_t.k)
        _expect(
            op,
            "filter columns (packed input rows)",
            packed_input_rows(filter_t.w, filter_t.h, in_t.c),
            filter_.num_cols,
        )
        _expect(op, "filter rows (out_t.c)", out_t.c, filter_.num_rows)
        _expect(
            op,
            "output spatial size",
            conv_desc.output_size(in_t, filter_t),
            (out_t.w, out_t.h),
        )
        _expect(op, "output rows", out_t.volume_per_sample, out.num_rows)

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
        Compute the convolution forward pass, overwriting `out`.

        Parameters
        ----------
        in_t, in_ : Tensor4D, MatrixLike
            Input descriptor and data (`in_t.volume_per_sample x n`).
        filter_t, filter_ : ConvolutionFilter, MatrixLike
            Filter descriptor and weights (`k x fw*fh*c`).
        conv_desc : ConvolutionDescriptor
            Strides and padding flag.
        out_t, out : Tensor4D, MatrixLike
            Output descriptor and buffer (`out_t.volume_per_sample x n`).

        Raises
        ------
        ShapeMismatchError
            If descriptors and matrices disagree.
        DeviceMismatchError
            If a matrix is not on the engine's device.
        DeviceNotSupportedError
            If the engine (and so its matrices) is not on the host.
        """
        self._check_forward(in_t, in_, filter_t, filter_, conv_desc, out_t, out)

        batch_size = in_t.n
        packed_rows = packed_input_rows(filter_t.w, filter_t.h, in_t.c)
        out_size_per_channel = out_t.w * out_t.h
        w_pad, h_pad = conv_desc.pads_for(filter_t)

        sub_batch = batch_size
        if self._max_temp_mem_samples:
            sub_batch = min(batch_size, self._max_temp_mem_samples)

        if self._temp.dtype != in_.dtype:
            self._temp = Matrix(dtype=in_.dtype, device=self._device)

        logger.debug(
            "conv forward: batch=%d sub_batch=%d packed_rows=%d out_size_per_channel=%d",
            batch_size, sub_batch, packed_rows, out_size_per_channel,
        )

        out.resize(out_t.c, out_size_per_channel * batch_size)
        for start in range(0, batch_size, sub_batch):
            nb = min(sub_batch, batch_size - start)
            self._temp.resize(packed_rows, out_size_per_channel * nb)

            in_slice = in_.column_slice(start, nb)
            unroll_convolution_input_cpu(
                _host_view("unroll", in_slice),
                _host_view("unroll", self._temp),
                in_w=in_t.w,
                in_h=in_t.h,
                in_c=in_t.c,
                out_w=out_t.w,
                out_h=out_t.h,
                filter_w=filter_t.w,
                filter_h=filter_t.h,
                w_stride=conv_desc.w_stride,
                h_stride=conv_desc.h_stride,
                w_pad=w_pad,
                h_pad=h_pad,
            )

            out_slice = out.column_slice(start * out_size_per_channel, nb * out_size_per_channel)
            Matrix.multiply(filter_, False, self._temp, False, out_slice)

        out.reshape(out_t.c * out_size_per_channel, batch_size)

    def backward_data(self, src_grad_t, src_grad, filter_t, filter_, conv_desc, grad_t, grad) -> None:
        raise UnsupportedOperationError("backward_data", type(self).__name__)

    def backward_filter(
        self, src_grad_t, src_grad, in_t, in_, conv_desc, filter_t, filter_grad, allow_reuse=False
    ) -> None:
        raise UnsupportedOperationError("backward_filter", type(self).__name__)

    def add_bias(self, bias_t, bias, dst_t, dst) -> None:
        raise UnsupportedOperationError("add_bias", type(self).__name__)

    def backward_bias(self, src_grad_t, src_grad, bias_t, bias_grad) -> None:
        raise UnsupportedOperationError("backward_bias", type(self).__name__)


class DefaultPoolingEngine(PoolingEngine):
    """
    Portable max/average pooling over HWC sample-column matrices.

    Average pooling excludes padded positions from the divisor. Max pooling
    sends each output gradient to the first maximal input of its window.
    """

    def _check(self, op: str, t: Tensor4D, m: MatrixLike, label: str) -> None:
        _expect(op, f"{label} rows (volume per sample)", t.volume_per_sample, m.num_rows)
        _expect(op, f"{label} columns (batch size)", t.n, m.num_cols)

    @staticmethod
    def _check_pool_shape(
        op: str, in_t: Tensor4D, pool_desc: PoolingDescriptor, out_t: Tensor4D
    ) -> None:
        _expect(op, "output channels", in_t.c, out_t.c)
        _expect(op, "output batch size", in_t.n, out_t.n)
        _expect(op, "output spatial size", pool_desc.output_size(in_t), (out_t.w, out_t.h))

    def forward(
        self,
        in_t: Tensor4D,
        in_: MatrixLike,
        pool_desc: PoolingDescriptor,
        out_t: Tensor4D,
        out: MatrixLike,
    ) -> None:
        op = "DefaultPoolingEngine.forward"
        self._check(op, in_t, in_, "input")
        self._check(op, out_t, out, "output")
        self._check_pool_shape(op, in_t, pool_desc, out_t)

        x = hwc_columns_as_nchw(_host_view(op, in_), in_t.w, in_t.h, in_t.c)
        kernel = (pool_desc.h, pool_desc.w)
        stride = (pool_desc.h_stride, pool_desc.w_stride)
        padding = (pool_desc.h_pad, pool_desc.w_pad)
        if pool_desc.kind is PoolKind.MAX:
            y, _ = maxpool2d_forward_cpu(x, kernel=kernel, stride=stride, padding=padding)
        else:
            y = avgpool2d_forward_cpu(x, kernel=kernel, stride=stride, padding=padding)
        _host_view(op, out)[...] = nchw_to_hwc_columns(y)

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
        op = "DefaultPoolingEngine.backward"
        self._check(op, out_t, out, "output")
        self._check(op, out_t, src_grad, "output gradient")
        self._check(op, in_t, in_, "input")
        self._check(op, in_t, grad, "input gradient")
        self._check_pool_shape(op, in_t, pool_desc, out_t)

        x = hwc_columns_as_nchw(_host_view(op, in_), in_t.w, in_t.h, in_t.c)
        dy = hwc_columns_as_nchw(_host_view(op, src_grad), out_t.w, out_t.h, out_t.c)
        kernel = (pool_desc.h, pool_desc.w)
        stride = (pool_desc.h_stride, pool_desc.w_stride)
        padding = (pool_desc.h_pad, pool_desc.w_pad)
        if pool_desc.kind is PoolKind.MAX:
            _, argmax_idx = maxpool2d_forward_cpu(x, kernel=kernel, stride=stride, padding=padding)
            dx = maxpool2d_backward_cpu(dy, argmax_idx, x_shape=x.shape, padding=padding)
        else:
            dx = avgpool2d_backward_cpu(
                dy, x_shape=x.shape, kernel=kernel, stride=stride, padding=padding
            )
        _host_view(op, grad)[...] += nchw_to_hwc_columns(dx)


class DefaultConvolutionEngineFactory(ConvolutionEngineFactory):
    """Factory for plain descriptors and the portable engines."""

    def __init__(self, device: DeviceSpec = "cpu") -> None:
        super().__init__(as_device(device))

    def create_tensor(self, w: int, h: int, c: int, n: int) -> Tensor4D:
        return Tensor4D(w, h, c, n)

    def create_filter(self, w: int, h: int, c: int, k: int) -> ConvolutionFilter:
        return ConvolutionFilter(w, h, c, k)

    def create_conv_descriptor(
        self,
        in_t: Tensor4D,
        filter_t: ConvolutionFilter,
        w_stride: int,
        h_stride: int,
        padding: bool,
    ) -> ConvolutionDescriptor:
        return ConvolutionDescriptor(w_stride, h_stride, padding)

    def create_pool_descriptor(
        self,
        kind: PoolKind,
        w: int,
        h: int,
        w_stride: int,
        h_stride: int,
        w_pad: int = 0,
        h_pad: int = 0,
    ) -> PoolingDescriptor:
        return PoolingDescriptor(kind, w, h, w_stride, h_stride, w_pad, h_pad)

    def create_conv_engine(self, max_temp_mem_samples: int = 0) -> DefaultConvolutionEngine:
        return DefaultConvolutionEngine(self._device, max_temp_mem_samples)

    def create_pool_engine(self) -> DefaultPoolingEngine:
        return DefaultPoolingEngine()
