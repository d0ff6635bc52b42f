"""
Runtime loader for the CUDA runtime and cuDNN shared libraries.

This module locates and loads `libcudart` and `libcudnn` (`cudart64_*.dll` /
`cudnn64_*.dll` on Windows) through `ctypes`. Loading happens lazily and at
most once per resolved path, so the accelerated engine can be probed at
runtime instead of being compiled in or out.

Search order
------------
1. An explicit path (argument, or the `CONVKIT_CUDART_LIBRARY` /
   `CONVKIT_CUDNN_LIBRARY` environment variables). When given, it is the
   only candidate.
2. Versioned library files under `CUDA_PATH` / `CUDNN_PATH`
   (`bin`, `lib64`, `lib` subdirectories).
3. The platform loader search path (`ctypes.util.find_library` and the usual
   versioned sonames).

Windows notes
-------------
On Windows the directories that hold the libraries are registered with
`os.add_dll_directory` so transitive dependencies resolve. Some setups raise
WinError 206 for long paths; in that case the directory is prepended to
`PATH` for the current process instead.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import glob
import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Iterable, List, Optional

_IS_WINDOWS = sys.platform.startswith("win")

_CUDART_SONAMES = ("libcudart.so", "libcudart.so.12", "libcudart.so.11.0")
_CUDNN_SONAMES = ("libcudnn.so", "libcudnn.so.9", "libcudnn.so.8")


def _add_dll_dir_or_path(dir_path: str) -> None:
    """
    Register a directory for Windows DLL dependency resolution.

    Non-existent or empty paths are ignored. Falls back to prepending to
    `PATH` when `os.add_dll_directory` fails with WinError 206.

    Raises
    ------
    OSError
        Re-raised if `os.add_dll_directory` fails for other reasons.
    """
    if not _IS_WINDOWS or not dir_path or not os.path.isdir(dir_path):
        return
    try:
        os.add_dll_directory(dir_path)
    except OSError as e:
        # WinError 206: The filename or extension is too long
        if getattr(e, "winerror", None) == 206:
            cur = os.environ.get("PATH", "")
            parts = cur.split(os.pathsep) if cur else []
            if dir_path not in parts:
                os.environ["PATH"] = dir_path + os.pathsep + cur if cur else dir_path
        else:
            raise


def _root_dirs(env_var: str) -> List[str]:
    root = os.environ.get(env_var, "")
    if not root:
        return []
    return [os.path.join(root, sub) for sub in ("bin", "lib64", "lib", "")]


def _candidates(
    explicit: Optional[str],
    env_file_var: str,
    env_root_vars: Iterable[str],
    win_pattern: str,
    sonames: Iterable[str],
    short_name: str,
) -> List[str]:
    """Build the ordered list of paths/sonames to try for one library."""
    if explicit:
        return [explicit]
    env_file = os.environ.get(env_file_var, "")
    if env_file:
        return [env_file]

    out: List[str] = []
    for var in env_root_vars:
        for d in _root_dirs(var):
            if not os.path.isdir(d):
                continue
            if _IS_WINDOWS:
                out.extend(sorted(glob.glob(os.path.join(d, win_pattern)), reverse=True))
            else:
                for so in sonames:
                    p = os.path.join(d, so)
                    if os.path.exists(p):
                        out.append(p)

    found = ctypes.util.find_library(short_name)
    if found:
        out.append(found)
    if not _IS_WINDOWS:
        out.extend(sonames)
    return out


def _load_first(candidates: List[str], what: str) -> ctypes.CDLL:
    """
    Load the first candidate that the platform loader accepts.

    Raises
    ------
    OSError
        If no candidate could be loaded; the message lists what was tried.
    """
    errors: List[str] = []
    for cand in candidates:
        p = Path(cand)
        if p.is_absolute():
            if not p.exists():
                errors.append(f"{cand}: not found")
                continue
            _add_dll_dir_or_path(str(p.parent))
        try:
            return ctypes.CDLL(str(cand))
        except OSError as e:
            errors.append(f"{cand}: {e}")
    tried = "; ".join(errors) if errors else "no candidates"
    raise OSError(f"Unable to load the {what} library ({tried})")


@lru_cache(maxsize=None)
def load_cudart_native(path: Optional[str] = None) -> ctypes.CDLL:
    """
    Load and cache the CUDA runtime library.

    Parameters
    ----------
    path : str, optional
        Explicit library file. Overrides the environment search.

    Returns
    -------
    ctypes.CDLL
        Loaded CUDA runtime handle.

    Raises
    ------
    OSError
        If the library cannot be located or loaded.
    """
    for d in _root_dirs("CUDA_PATH"):
        _add_dll_dir_or_path(d)
    return _load_first(
        _candidates(
            path,
            "CONVKIT_CUDART_LIBRARY",
            ("CUDA_PATH",),
            "cudart64_*.dll",
            _CUDART_SONAMES,
            "cudart",
        ),
        "CUDA runtime",
    )


@lru_cache(maxsize=None)
def load_cudnn_native(path: Optional[str] = None) -> ctypes.CDLL:
    """
    Load and cache the cuDNN library.

    Parameters
    ----------
    path : str, optional
        Explicit library file. Overrides the environment search.

    Returns
    -------
    ctypes.CDLL
        Loaded cuDNN handle.

    Raises
    ------
    OSError
        If the library cannot be located or loaded.
    """
    for var in ("CUDA_PATH", "CUDNN_PATH"):
        for d in _root_dirs(var):
            _add_dll_dir_or_path(d)
    return _load_first(
        _candidates(
            path,
            "CONVKIT_CUDNN_LIBRARY",
            ("CUDNN_PATH", "CUDA_PATH"),
            "cudnn64_*.dll",
            _CUDNN_SONAMES,
            "cudnn",
        ),
        "cuDNN",
    )
