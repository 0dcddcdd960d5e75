"""Access-token lifecycle for the Qwen adapter.

Only one refresh runs at a time: concurrent callers that need a fresh
token all await the same asyncio.Task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from dongcode.core.generator import ClientConfig
from dongcode.errors import TokenUnavailable, get_error_message, get_error_status
from dongcode.qwen.oauth2 import QwenOAuth2Client

logger = logging.getLogger(__name__)

DEFAULT_QWEN_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"

T = TypeVar("T")

_AUTH_ERROR_PHRASES = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid access token",
    "token expired",
    "authentication",
    "access denied",
)


def is_auth_error(error: object) -> bool:
    """True for errors that a fresh access token might fix."""
    if error is None:
        return False
    if get_error_status(error) in (400, 401, 403):
        return True
    message = get_error_message(error).lower()
    if any(phrase in message for phrase in _AUTH_ERROR_PHRASES):
        return True
    return "token" in message and "expired" in message


def normalize_endpoint(endpoint: str | None) -> str:
    base = endpoint or DEFAULT_QWEN_BASE_URL
    if not base.startswith("http"):
        base = f"https://{base}"
    return base if base.endswith("/v1") else f"{base}/v1"


class TokenManager:
    def __init__(self, oauth_client: QwenOAuth2Client) -> None:
        self._client = oauth_client
        self._current_token: str | None = None
        self._current_endpoint: str | None = None
        self._refresh_task: asyncio.Task[str] | None = None

    def _adopt_credentials(self) -> str | None:
        credentials = self._client.get_credentials()
        if credentials is None:
            return None
        self._current_token = credentials.access_token
        self._current_endpoint = credentials.resource_url
        return credentials.access_token

    async def get_valid_token(self) -> str:
        """Return a usable access token, refreshing only when needed.

        Raises TokenUnavailable when no token can be obtained.
        """
        if self._refresh_task is None and self._client.is_token_valid():
            token = self._adopt_credentials()
            if token:
                return token
        return await self.refresh_token()

    async def refresh_token(self, stale_token: str | None = None) -> str:
        """Refresh, joining any refresh already in flight.

        With ``stale_token`` set, a token that has already been replaced by
        another caller's refresh is returned without a second round trip.
        """
        if (
            stale_token is not None
            and self._refresh_task is None
            and self._current_token
            and self._current_token != stale_token
            and self._client.is_token_valid()
        ):
            return self._current_token

        if self._refresh_task is None:
            task = asyncio.create_task(self._perform_refresh())
            task.add_done_callback(self._refresh_done)
            self._refresh_task = task
        # shield so one cancelled caller does not abort the shared refresh
        return await asyncio.shield(self._refresh_task)

    def _refresh_done(self, task: asyncio.Task[str]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # mark retrieved; callers that awaited it already saw the error
            task.exception()

    async def _perform_refresh(self) -> str:
        logger.debug("Refreshing Qwen access token")
        try:
            await self._client.refresh_access_token()
        except Exception as e:
            logger.warning("Qwen token refresh failed: %s", e)
            raise TokenUnavailable(
                f"Failed to obtain valid Qwen access token: {get_error_message(e)}. "
                "Please re-authenticate."
            ) from e
        token = self._adopt_credentials()
        if not token:
            raise TokenUnavailable("Token refresh returned no access token")
        return token

    def client_config(self, token: str) -> ClientConfig:
        return ClientConfig(base_url=self.get_current_endpoint(), api_key=token)

    async def with_valid_token(self, operation: Callable[[ClientConfig], Awaitable[T]]) -> T:
        """Run ``operation`` with a valid token, retrying once on auth failure."""
        token = await self.get_valid_token()
        try:
            return await operation(self.client_config(token))
        except Exception as e:
            if not is_auth_error(e):
                raise
            logger.info("Qwen API rejected the access token, refreshing and retrying once")
        token = await self.refresh_token(stale_token=token)
        return await operation(self.client_config(token))

    def get_current_token(self) -> str | None:
        return self._current_token

    def get_current_endpoint(self) -> str:
        return normalize_endpoint(self._current_endpoint)

    def clear_token(self) -> None:
        self._current_token = None
        self._current_endpoint = None
        self._client.set_credentials(None)

    async def close(self) -> None:
        """Release the OAuth client's HTTP connections."""
        await self._client.close()
