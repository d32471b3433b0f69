"""Core utilities for the Chirp backend."""

from .clock import as_utc, utcnow

__all__ = ["as_utc", "utcnow"]
