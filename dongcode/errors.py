"""Exception taxonomy shared by adapters, auth and the session layer."""

from __future__ import annotations


class DongCodeError(Exception):
    """Base class for all errors raised by dongcode."""


class ProtocolError(DongCodeError):
    """Upstream returned malformed or unexpected wire data."""


class ApiError(DongCodeError):
    """HTTP-level failure from a generation or auth endpoint.

    ``status`` is the HTTP status code (None for transport failures).
    ``code`` carries the provider error code when the body had one.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.retry_after = retry_after


class AuthError(ApiError):
    """401/403 or expired-token class failure."""


class QuotaExceededError(ApiError):
    """Quota exhausted. Never retried."""


class RateLimitedError(ApiError):
    """HTTP 429 that is not a quota exhaustion. Retryable."""


class CancelledError(DongCodeError):
    """Operation aborted by the user or the system.

    Distinct from asyncio.CancelledError, which is reserved for task
    cancellation and always propagates untouched.
    """


class TokenUnavailable(DongCodeError):
    """No valid OAuth access token could be obtained."""


class DeviceFlowError(DongCodeError):
    """Device authorization flow ended without credentials.

    ``reason`` is one of: cancelled, timeout, rate_limit, error.
    """

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class SessionLimitError(DongCodeError):
    """Turn or token budget of a session was exceeded.

    A controlled stop, not a failure; the session layer reports it as an
    event rather than raising across a stream.
    """

    def __init__(self, message: str, current: int, limit: int) -> None:
        super().__init__(message)
        self.current = current
        self.limit = limit


def get_error_message(error: BaseException | object) -> str:
    """Best-effort human readable message for any error value."""
    if isinstance(error, ApiError):
        return error.message
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    return str(error)


def get_error_status(error: object) -> int | None:
    """Extract an HTTP status from an exception or error dict, if any."""
    if isinstance(error, ApiError):
        return error.status
    if isinstance(error, dict):
        status = error.get("status") or error.get("code")
        if isinstance(status, int):
            return status
        nested = error.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("code"), int):
            return nested["code"]
        return None
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    return status if isinstance(status, int) else None
