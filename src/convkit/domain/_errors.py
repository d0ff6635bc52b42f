"""
Error taxonomy for convkit engines.

This module defines the exceptions raised by convolution/pooling engines and
their supporting layers (matrix backend, native library bindings, engine
selection). Engines never recover from these errors internally: every failure
propagates to the caller as a terminating error.

Categories
----------
- ShapeMismatchError:
    A precondition on tensor/filter/matrix shapes was violated.
- DeviceNotSupportedError / DeviceMismatchError:
    A primitive is not implemented for a device, or operands live on
    different devices.
- AccelerationUnavailableError:
    The accelerated (cuDNN) path was requested but cannot be loaded.
- NativeLibraryError:
    A native call (cuDNN or CUDA runtime) returned a non-success status.
- AlgorithmSelectionError:
    No cuDNN algorithm candidate satisfies the workspace memory budget.
- UnsupportedOperationError:
    The engine variant does not implement the requested operation.
"""

from __future__ import annotations


class ShapeMismatchError(ValueError):
    """
    Raised when tensor, filter, or buffer shapes violate an operation's
    preconditions.

    Attributes
    ----------
    op : str
        Operation whose precondition failed (e.g., "forward").
    what : str
        Human-readable name of the checked quantity.
    expected : object
        Expected value.
    actual : object
        Observed value.
    """

    def __init__(self, op: str, what: str, expected: object, actual: object) -> None:
        super().__init__(
            f"{op}: shape mismatch for {what}: expected {expected}, got {actual}."
        )
        self.op = op
        self.what = what
        self.expected = expected
        self.actual = actual


class DeviceNotSupportedError(RuntimeError):
    """
    Raised when a primitive is requested on a device backend that does not
    implement it (e.g., host GEMM on a CUDA-backed matrix).

    Attributes
    ----------
    op : str
        The name of the operation that was attempted.
    device : str
        String representation of the device on which the operation was
        attempted.
    """

    def __init__(self, op: str, device: str) -> None:
        super().__init__(f"{op} is not implemented for device '{device}'.")
        self.op = op
        self.device = device


class DeviceMismatchError(RuntimeError):
    """
    Raised when an operation combines matrices that live on different devices.
    """

    def __init__(self, device_a: str, device_b: str) -> None:
        super().__init__(f"Device mismatch: '{device_a}' vs '{device_b}'.")
        self.device_a = device_a
        self.device_b = device_b


class AccelerationUnavailableError(RuntimeError):
    """
    Raised when the accelerated engine is requested but the cuDNN library
    (or the CUDA runtime it depends on) cannot be loaded in this process.

    Attributes
    ----------
    op : str
        Factory method or entry point that required acceleration.
    reason : str
        Why the library is unavailable (typically the loader error).
    """

    def __init__(self, op: str, reason: str = "") -> None:
        msg = f"{op}: convkit was unable to load cuDNN; the accelerated engine is unavailable."
        if reason:
            msg += f" Reason: {reason}"
        super().__init__(msg)
        self.op = op
        self.reason = reason


class NativeLibraryError(RuntimeError):
    """
    Raised when a native library call returns a non-success status.

    Attributes
    ----------
    library : str
        Library name ("cuDNN" or "CUDA").
    call : str
        Name of the failing native function.
    status : int
        Raw status code returned by the call.
    description : str
        Textual description of the status reported by the library.
    """

    def __init__(self, library: str, call: str, status: int, description: str) -> None:
        super().__init__(
            f"{library} failure {status}: {description} ; call: {call}"
        )
        self.library = library
        self.call = call
        self.status = status
        self.description = description


class AlgorithmSelectionError(RuntimeError):
    """
    Raised when no candidate algorithm reported by cuDNN succeeds within the
    configured workspace memory budget.

    Attributes
    ----------
    call : str
        The cuDNN operation the algorithm was searched for
        (e.g., "cudnnConvolutionForward").
    budget : int | None
        Workspace budget in bytes, or None when unbounded.
    """

    def __init__(self, call: str, budget: int | None) -> None:
        limit = "unbounded" if budget is None else f"{budget} bytes"
        super().__init__(
            f"cuDNN could not find suitable algorithm for {call} "
            f"(workspace budget: {limit})."
        )
        self.call = call
        self.budget = budget


class UnsupportedOperationError(NotImplementedError):
    """
    Raised when an engine variant does not implement an operation.

    Attributes
    ----------
    op : str
        Name of the requested operation.
    engine : str
        Name of the engine class.
    """

    def __init__(self, op: str, engine: str) -> None:
        super().__init__(f"{op} is not supported by {engine}.")
        self.op = op
        self.engine = engine
