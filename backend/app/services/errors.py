"""Errors raised by the conversation and notification services."""

from __future__ import annotations

from fastapi import HTTPException


class ChatError(Exception):
    """Base class for rejected chat operations."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class AccessDeniedError(ChatError):
    status_code = 403


class NotFoundError(ChatError):
    status_code = 404


class ValidationError(ChatError):
    status_code = 400
