"""Quota and throttling error detection.

Accepts the shapes errors arrive in across providers: plain strings,
exceptions (ApiError or anything with a message), structured dicts
``{"message": ..., "status": ...}`` and API error envelopes
``{"error": {"code": ..., "message": ...}}``.

Plain substring checks are used instead of regexes.
"""

from __future__ import annotations

from typing import Any

from dongcode.errors import ApiError, get_error_status


def is_api_error(error: Any) -> bool:
    """True for ``{"error": {"message": ...}}`` envelopes."""
    return (
        isinstance(error, dict)
        and isinstance(error.get("error"), dict)
        and "message" in error["error"]
    )


def is_structured_error(error: Any) -> bool:
    """True for objects carrying a string message."""
    if isinstance(error, dict):
        return isinstance(error.get("message"), str)
    if isinstance(error, ApiError):
        return True
    return isinstance(error, BaseException)


def _message_of(error: Any) -> str | None:
    if isinstance(error, str):
        return error
    if isinstance(error, ApiError):
        return error.message
    if isinstance(error, BaseException):
        return str(error)
    if is_structured_error(error):
        return error["message"]
    if is_api_error(error):
        return str(error["error"]["message"])
    return None


def is_pro_quota_exceeded_error(error: Any) -> bool:
    """Gemini Pro daily quota, e.g. "Quota exceeded for quota metric 'Gemini 2.5 Pro Requests'"."""
    message = _message_of(error)
    if message is None:
        return False
    return (
        "Quota exceeded for quota metric 'Gemini" in message
        and "Pro Requests'" in message
    )


def is_generic_quota_exceeded_error(error: Any) -> bool:
    message = _message_of(error)
    return message is not None and "Quota exceeded for quota metric" in message


def is_qwen_quota_exceeded_error(error: Any) -> bool:
    """Qwen insufficient quota. Must not be retried."""
    message = _message_of(error)
    if message is None:
        return False
    lower = message.lower()
    return (
        "insufficient_quota" in lower
        or "free allocated quota exceeded" in lower
        or ("quota" in lower and "exceeded" in lower)
    )


def _is_throttling_message(message: str) -> bool:
    lower = message.lower()
    return (
        "throttling" in lower
        or "requests throttling triggered" in lower
        or "rate limit" in lower
        or "too many requests" in lower
    )


def is_qwen_throttling_error(error: Any) -> bool:
    """Qwen throttling (HTTP 429 + throttling message). Retryable."""
    if isinstance(error, str):
        return "throttling" in error
    if is_api_error(error):
        return error["error"].get("code") == 429 and _is_throttling_message(
            str(error["error"]["message"])
        )
    message = _message_of(error)
    if message is None:
        return False
    return get_error_status(error) == 429 and _is_throttling_message(message)


def is_quota_exhausted(error: Any) -> bool:
    """Any quota exhaustion the retry policy must surface immediately."""
    return is_qwen_quota_exceeded_error(error) or is_pro_quota_exceeded_error(error)
