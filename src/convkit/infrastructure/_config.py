"""
Engine configuration resolved from the environment.

`EngineConfig` collects the knobs that influence engine selection:

- `engine`: "auto" (pick cuDNN for CUDA devices when it loads, otherwise the
  default engine), "default", or "cudnn" (fail if cuDNN is unavailable)
- `max_temp_mem_samples`: scratch-memory limit in samples, 0 = unbounded
- `cudnn_library` / `cudart_library`: explicit shared-library files

Environment variables
---------------------
- CONVKIT_ENGINE
- CONVKIT_MAX_TEMP_MEM_SAMPLES
- CONVKIT_CUDNN_LIBRARY
- CONVKIT_CUDART_LIBRARY
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENGINE_CHOICES = ("auto", "default", "cudnn")


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable engine-selection settings.

    Raises
    ------
    ValueError
        If `engine` is not one of `ENGINE_CHOICES` or
        `max_temp_mem_samples` is negative.
    """

    engine: str = "auto"
    max_temp_mem_samples: int = 0
    cudnn_library: Optional[str] = None
    cudart_library: Optional[str] = None

    def __post_init__(self) -> None:
        if self.engine not in ENGINE_CHOICES:
            raise ValueError(
                f"engine must be one of {ENGINE_CHOICES}, got {self.engine!r}"
            )
        if int(self.max_temp_mem_samples) < 0:
            raise ValueError(
                f"max_temp_mem_samples must be >= 0, got {self.max_temp_mem_samples}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build a config from environment variables.

        Parameters
        ----------
        environ : Mapping[str, str], optional
            Variables to read. Defaults to `os.environ`.

        Raises
        ------
        ValueError
            If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        engine = env.get("CONVKIT_ENGINE", "auto").strip().lower() or "auto"

        raw_samples = env.get("CONVKIT_MAX_TEMP_MEM_SAMPLES", "").strip()
        try:
            samples = int(raw_samples) if raw_samples else 0
        except ValueError as e:
            raise ValueError(
                f"CONVKIT_MAX_TEMP_MEM_SAMPLES must be an integer, got {raw_samples!r}"
            ) from e

        return cls(
            engine=engine,
            max_temp_mem_samples=samples,
            cudnn_library=env.get("CONVKIT_CUDNN_LIBRARY") or None,
            cudart_library=env.get("CONVKIT_CUDART_LIBRARY") or None,
        )
