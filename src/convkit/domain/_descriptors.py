"""
Shape descriptors shared by every engine variant.

This module defines the value objects that describe *what* a convolution or
pooling call operates on, independent of *how* an engine executes it:

- `Tensor4D`: activation tensor shape (w, h, c, n)
- `ConvolutionFilter`: filter bank shape (w, h, c, k)
- `ConvolutionDescriptor`: strides and the auto-padding flag
- `PoolKind` / `PoolingDescriptor`: pooling kind, window, stride, padding

Conventions
-----------
- Dimension order in constructors is always width first, then height, then
  channels, then batch size (or filter count), matching the engine factory
  signatures (`create_tensor(w, h, c, n)`, `create_filter(w, h, c, k)`).
- Data matrices passed to engines hold one sample per column; a sample column
  therefore has `w * h * c` rows (see `Tensor4D.volume_per_sample`).
- Accelerated engines subclass these descriptors to attach a native handle.
  Subclasses must keep the native state in sync with the Python-side shape
  (see `Tensor4D.set_n`).
"""

from __future__ import annotations

from enum import Enum
from typing import Tuple


def _check_positive(name: str, value: int) -> int:
    """Validate that a descriptor dimension is a positive integer."""
    value = int(value)
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def _check_non_negative(name: str, value: int) -> int:
    """Validate that a descriptor dimension is a non-negative integer."""
    value = int(value)
    if value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value}")
    return value


class Tensor4D:
    """
    Shape descriptor for a batch of 3D activation maps.

    Parameters
    ----------
    w, h, c : int
        Width, height, and channel count of one sample.
    n : int
        Batch size (number of samples).

    Notes
    -----
    The shape is immutable except for the batch size, which can be updated in
    place with `set_n` so that a layer can reuse one descriptor across
    minibatches of different sizes.
    """

    def __init__(self, w: int, h: int, c: int, n: int) -> None:
        self._w = _check_positive("w", w)
        self._h = _check_positive("h", h)
        self._c = _check_positive("c", c)
        self._n = _check_positive("n", n)

    @property
    def w(self) -> int:
        return self._w

    @property
    def h(self) -> int:
        return self._h

    @property
    def c(self) -> int:
        return self._c

    @property
    def n(self) -> int:
        return self._n

    @property
    def volume_per_sample(self) -> int:
        """Number of elements in one sample (`w * h * c`)."""
        return self._w * self._h * self._c

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        """The `(w, h, c, n)` tuple."""
        return (self._w, self._h, self._c, self._n)

    def set_n(self, n: int) -> None:
        """
        Update the batch size in place.

        Parameters
        ----------
        n : int
            New batch size.
        """
        self._n = _check_positive("n", n)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tensor4D):
            return NotImplemented
        return self.shape == other.shape

    def __hash__(self) -> int:
        # n is mutable through set_n
        return hash((self._w, self._h, self._c))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(w={self._w}, h={self._h}, c={self._c}, n={self._n})"


class ConvolutionFilter:
    """
    Shape descriptor for a bank of `k` convolution kernels.

    Parameters
    ----------
    w, h : int
        Kernel width and height.
    c : int
        Number of input channels each kernel spans.
    k : int
        Number of kernels (output channels).
    """

    __slots__ = ("_w", "_h", "_c", "_k", "__weakref__")

    def __init__(self, w: int, h: int, c: int, k: int) -> None:
        self._w = _check_positive("w", w)
        self._h = _check_positive("h", h)
        self._c = _check_positive("c", c)
        self._k = _check_positive("k", k)

    @property
    def w(self) -> int:
        return self._w

    @property
    def h(self) -> int:
        return self._h

    @property
    def c(self) -> int:
        return self._c

    @property
    def k(self) -> int:
        return self._k

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        """The `(w, h, c, k)` tuple."""
        return (self._w, self._h, self._c, self._k)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConvolutionFilter):
            return NotImplemented
        return self.shape == other.shape

    def __hash__(self) -> int:
        return hash(self.shape)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(w={self._w}, h={self._h}, c={self._c}, k={self._k})"


class ConvolutionDescriptor:
    """
    Convolution hyperparameters: strides and the auto-padding flag.

    Parameters
    ----------
    w_stride, h_stride : int
        Horizontal and vertical strides.
    padding : bool
        When True, inputs are zero-padded by half the filter size on each
        side (`filter.w // 2`, `filter.h // 2`); the amount is derived from
        the filter at call time and is not stored here.
    """

    __slots__ = ("_w_stride", "_h_stride", "_padding", "__weakref__")

    def __init__(self, w_stride: int, h_stride: int, padding: bool) -> None:
        self._w_stride = _check_positive("w_stride", w_stride)
        self._h_stride = _check_positive("h_stride", h_stride)
        self._padding = bool(padding)

    @property
    def w_stride(self) -> int:
        return self._w_stride

    @property
    def h_stride(self) -> int:
        return self._h_stride

    @property
    def padding(self) -> bool:
        return self._padding

    def pads_for(self, filter_t: ConvolutionFilter) -> Tuple[int, int]:
        """
        Return the `(w_pad, h_pad)` amounts implied for a given filter.

        Parameters
        ----------
        filter_t : ConvolutionFilter
            Filter the descriptor is used with.

        Returns
        -------
        tuple[int, int]
            `(filter_t.w // 2, filter_t.h // 2)` when padding is enabled,
            otherwise `(0, 0)`.
        """
        if not self._padding:
            return (0, 0)
        return (filter_t.w // 2, filter_t.h // 2)

    def output_size(
        self, in_t: Tensor4D, filter_t: ConvolutionFilter
    ) -> Tuple[int, int]:
        """
        Compute the `(w, h)` spatial size of the convolution output.

        Returns
        -------
        tuple[int, int]
            - w_out = (in.w + 2 * w_pad - filter.w) // w_stride + 1
            - h_out = (in.h + 2 * h_pad - filter.h) // h_stride + 1

        Raises
        ------
        ValueError
            If the (padded) input is smaller than the filter.
        """
        w_pad, h_pad = self.pads_for(filter_t)
        w_span = in_t.w + 2 * w_pad - filter_t.w
        h_span = in_t.h + 2 * h_pad - filter_t.h
        if w_span < 0 or h_span < 0:
            raise ValueError(
                f"filter {filter_t.w}x{filter_t.h} does not fit input "
                f"{in_t.w}x{in_t.h} with padding ({w_pad}, {h_pad})"
            )
        return (w_span // self._w_stride + 1, h_span // self._h_stride + 1)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(w_stride={self._w_stride}, "
            f"h_stride={self._h_stride}, padding={self._padding})"
        )


class PoolKind(Enum):
    """Supported pooling reductions."""

    MAX = "max"
    AVERAGE = "average"


class PoolingDescriptor:
    """
    Pooling hyperparameters.

    Parameters
    ----------
    kind : PoolKind
        Max or average pooling.
    w, h : int
        Window width and height.
    w_stride, h_stride : int
        Horizontal and vertical strides.
    w_pad, h_pad : int
        Explicit zero padding on each side.
    """

    __slots__ = ("_kind", "_w", "_h", "_w_stride", "_h_stride", "_w_pad", "_h_pad", "__weakref__")

    def __init__(
        self,
        kind: PoolKind,
        w: int,
        h: int,
        w_stride: int,
        h_stride: int,
        w_pad: int = 0,
        h_pad: int = 0,
    ) -> None:
        if not isinstance(kind, PoolKind):
            raise ValueError(f"kind must be a PoolKind, got {kind!r}")
        self._kind = kind
        self._w = _check_positive("w", w)
        self._h = _check_positive("h", h)
        self._w_stride = _check_positive("w_stride", w_stride)
        self._h_stride = _check_positive("h_stride", h_stride)
        self._w_pad = _check_non_negative("w_pad", w_pad)
        self._h_pad = _check_non_negative("h_pad", h_pad)

    @property
    def kind(self) -> PoolKind:
        return self._kind

    @property
    def w(self) -> int:
        return self._w

    @property
    def h(self) -> int:
        return self._h

    @property
    def w_stride(self) -> int:
        return self._w_stride

    @property
    def h_stride(self) -> int:
        return self._h_stride

    @property
    def w_pad(self) -> int:
        return self._w_pad

    @property
    def h_pad(self) -> int:
        return self._h_pad

    def output_size(self, in_t: Tensor4D) -> Tuple[int, int]:
        """Compute the `(w, h)` spatial size of the pooling output."""
        w_span = in_t.w + 2 * self._w_pad - self._w
        h_span = in_t.h + 2 * self._h_pad - self._h
        if w_span < 0 or h_span < 0:
            raise ValueError(
                f"pooling window {self._w}x{self._h} does not fit input "
                f"{in_t.w}x{in_t.h} with padding ({self._w_pad}, {self._h_pad})"
            )
        return (w_span // self._w_stride + 1, h_span // self._h_stride + 1)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self._kind.name}, w={self._w}, h={self._h}, "
            f"w_stride={self._w_stride}, h_stride={self._h_stride}, "
            f"w_pad={self._w_pad}, h_pad={self._h_pad})"
        )
