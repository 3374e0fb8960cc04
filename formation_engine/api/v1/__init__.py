from . import formations

__all__ = ["formations"]
