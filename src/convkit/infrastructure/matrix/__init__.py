from ._matrix import Matrix

__all__ = ["Matrix"]
