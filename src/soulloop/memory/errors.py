"""Errors raised by the soul store."""

from __future__ import annotations


class StoreError(RuntimeError):
    """Raised when the soul store cannot read or persist state."""


class SoulNotFoundError(StoreError):
    """Raised when no soul matches the requested identifier or project path."""


class SoulConflictError(StoreError):
    """Raised when a soul already exists for the requested project path."""


__all__ = ["SoulConflictError", "SoulNotFoundError", "StoreError"]
