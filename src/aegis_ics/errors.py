from __future__ import annotations


class AegisError(Exception):
    """Base class for errors surfaced to callers with a specific message."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(AegisError):
    status_code = 401


class AuthorizationError(AegisError):
    status_code = 403


class ValidationError(AegisError):
    status_code = 400


class InvalidTransitionError(ValidationError):
    status_code = 409


class NotFoundError(AegisError):
    status_code = 404


class UpstreamQuotaExhausted(AegisError):
    status_code = 402


class UpstreamRateLimited(AegisError):
    status_code = 429


class InternalError(AegisError):
    """Storage or programming failure. The message stays server-side."""

    status_code = 500
    public_message = "Internal server error"


class UpstreamError(InternalError):
    pass
