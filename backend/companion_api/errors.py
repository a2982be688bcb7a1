"""Typed domain errors.

Services raise these instead of choosing HTTP status codes themselves;
`main.py` registers a single handler that renders any `AppError` as a
JSON `{"error": message}` envelope with the class's status code.
"""

from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(AppError):
    """The requested record does not exist."""
    status_code = 404


class AccessDenied(AppError):
    """The record exists but belongs to someone else, or the plan forbids the action."""
    status_code = 403


class ValidationFailed(AppError, ValueError):
    """Client input was rejected."""
    status_code = 400


class Conflict(AppError):
    status_code = 409


class ProviderError(AppError):
    """An upstream provider (voice, language, storage) failed."""
    status_code = 500

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class QuizFormatError(ProviderError):
    """The language provider returned something that is not a valid question list."""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message, body=raw_response)
        self.raw_response = raw_response
