"""Shared httpx plumbing: client construction and error body parsing."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from dongcode.config import Settings
from dongcode.errors import (
    ApiError,
    AuthError,
    ProtocolError,
    QuotaExceededError,
    RateLimitedError,
)
from dongcode.utils.quota import is_quota_exhausted

logger = logging.getLogger(__name__)


def build_http_client(settings: Settings, **kwargs: Any) -> httpx.AsyncClient:
    """Create an AsyncClient with the configured timeouts and proxy.

    The client carries no base URL or credentials; those are supplied per
    request so concurrent calls never share mutable auth state.
    """
    timeout = httpx.Timeout(
        connect=settings.connect_timeout,
        read=settings.timeout,
        write=10.0,
        pool=10.0,
    )
    limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
    if settings.proxy:
        kwargs.setdefault("proxy", settings.proxy)
    return httpx.AsyncClient(timeout=timeout, limits=limits, **kwargs)


def _parse_retry_after(headers: httpx.Headers | dict[str, str]) -> float | None:
    value = headers.get("retry-after") if headers else None
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_from_response(
    status: int,
    body: bytes | str,
    headers: httpx.Headers | dict[str, str] | None = None,
) -> ApiError:
    """Build a typed ApiError from an HTTP error response.

    Understands both {"error": {"message", "code", "status"}} (Gemini)
    and {"error": {"message", "type", "code"}} (OpenAI) envelopes.
    """
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    message = f"HTTP {status}: {text[:500]}"
    code: str | None = None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            message = str(err.get("message") or message)
            raw_code = err.get("type") or err.get("status") or err.get("code")
            code = str(raw_code) if raw_code is not None else None
        elif isinstance(err, str):
            code = err
            message = str(data.get("error_description") or err)

    retry_after = _parse_retry_after(headers or {})
    if is_quota_exhausted(message) or code == "insufficient_quota":
        return QuotaExceededError(message, status=status, code=code)
    if status in (401, 403):
        return AuthError(message, status=status, code=code)
    if status == 429:
        return RateLimitedError(message, status=status, code=code, retry_after=retry_after)
    return ApiError(message, status=status, code=code, retry_after=retry_after)


async def raise_for_api_error(response: httpx.Response) -> None:
    """Raise a typed ApiError for non-2xx responses (works for streams too)."""
    if response.status_code < 400:
        return
    body = await response.aread()
    raise error_from_response(response.status_code, body, response.headers)


def parse_json(text: str | bytes, what: str) -> Any:
    """json.loads that reports malformed upstream data as ProtocolError."""
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed JSON in {what}: {e}") from e
