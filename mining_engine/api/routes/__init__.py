"""API routes package."""

from . import earnings, slots

__all__ = ["earnings", "slots"]
