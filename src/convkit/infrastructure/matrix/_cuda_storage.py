"""
Reference-counted CUDA allocations backing device matrices.

`_CudaStorage` wraps a single device allocation that may be shared by a
matrix and any number of its column-slice views. The allocation is freed
exactly once, when the last reference is released; a `weakref.finalize`
callback acts as a safety net when explicit releases are missed.

Design notes
------------
- No `__del__`: finalization goes through `weakref.finalize`, which captures
  only plain values (runtime binding, device index, pointer) to avoid
  reference cycles and interpreter-shutdown ordering issues.
- Finalizers are best-effort and never raise.
- Reference count updates are protected by a lock so views can be shared
  across threads; the CUDA calls themselves are not synchronized here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
import weakref

import numpy as np


@dataclass
class _CudaStorage:
    """
    Reference-counted wrapper around a CUDA device allocation.

    Attributes
    ----------
    runtime : object
        `CudaRuntime` binding used to free the allocation.
    device_index : int
        CUDA device that owns the allocation.
    dev_ptr : int
        Device address of the allocation.
    nbytes : int
        Allocation size in bytes.
    dtype : np.dtype
        Element type stored in the allocation.
    """

    runtime: object
    device_index: int
    dev_ptr: int
    nbytes: int
    dtype: np.dtype

    _refcnt: int = 1
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _finalizer: weakref.finalize | None = None

    def __post_init__(self) -> None:
        runtime = self.runtime
        device_index = int(self.device_index)
        dev_ptr = int(self.dev_ptr)

        def _free_ptr() -> None:
            # Best-effort: at interpreter shutdown modules may be None
            try:
                runtime.set_device(device_index)
                runtime.free(dev_ptr)
            except Exception:
                pass

        if dev_ptr != 0 and int(self.nbytes) > 0:
            self._finalizer = weakref.finalize(self, _free_ptr)

    @classmethod
    def allocate(
        cls, runtime, device_index: int, nbytes: int, dtype: np.dtype
    ) -> "_CudaStorage":
        """
        Allocate `nbytes` on `device_index` and wrap the allocation.

        A zero-byte request produces an empty storage with a null pointer.
        """
        nbytes = int(nbytes)
        dev_ptr = 0
        if nbytes > 0:
            runtime.set_device(int(device_index))
            dev_ptr = runtime.malloc(nbytes)
        return cls(
            runtime=runtime,
            device_index=int(device_index),
            dev_ptr=int(dev_ptr),
            nbytes=nbytes,
            dtype=np.dtype(dtype),
        )

    @property
    def refcount(self) -> int:
        return self._refcnt

    def incref(self) -> None:
        """Register one more owner (matrix or view) of this allocation."""
        with self._lock:
            self._refcnt += 1

    def decref(self) -> None:
        """
        Release one owner; free the allocation when no owners remain.

        Idempotent with respect to freeing: calls after the count reached zero
        have no effect.
        """
        with self._lock:
            if self._refcnt <= 0:
                return
            self._refcnt -= 1
            if self._refcnt == 0:
                if self._finalizer is not None and self._finalizer.alive:
                    self._finalizer()
                self.dev_ptr = 0
                self.nbytes = 0
