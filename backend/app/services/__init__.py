"""Application service helpers."""

from .cache import get_cache
from .errors import AccessDeniedError, ChatError, NotFoundError, ValidationError

__all__ = [
    "get_cache",
    "ChatError",
    "AccessDeniedError",
    "NotFoundError",
    "ValidationError",
]
