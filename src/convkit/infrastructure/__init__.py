from ._config import EngineConfig

__all__ = ["EngineConfig"]
