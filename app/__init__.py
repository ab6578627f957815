"""Application helper package."""

from . import constants, errors

__all__ = ["constants", "errors"]
