"""Qwen OAuth2 device authorization flow (RFC 8628) with PKCE.

The flow runs as an explicit state machine::

    IDLE -> REQUESTING -> POLLING -> SUCCEEDED | CANCELLED | EXPIRED
                                     | RATE_LIMITED | FAILED

UI code observes it through two callbacks given at construction:
``on_progress(AuthProgress)`` and ``on_device_authorization(DeviceAuthorization)``.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import math
import secrets
import webbrowser
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from dongcode.config import Settings
from dongcode.core.http import build_http_client, error_from_response, parse_json
from dongcode.errors import (
    ApiError,
    AuthError,
    DeviceFlowError,
    ProtocolError,
    TokenUnavailable,
)
from dongcode.qwen.credentials import CredentialStore, QwenCredentials, now_ms

logger = logging.getLogger(__name__)

QWEN_OAUTH_BASE_URL = "https://chat.qwen.ai"
QWEN_OAUTH_CLIENT_ID = "f0304373b74a44d2b584a3fb70ca9e56"
QWEN_OAUTH_SCOPE = "openid profile email model.completion"
QWEN_OAUTH_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEVICE_CODE_PATH = "/api/v1/oauth2/device/code"
TOKEN_PATH = "/api/v1/oauth2/token"

INITIAL_POLL_INTERVAL_MS = 2000
MAX_POLL_INTERVAL_MS = 10000
SLOW_DOWN_FACTOR = 1.5
CANCEL_CHECK_MS = 100

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


# ── PKCE ─────────────────────────────────────────────────────────────


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 chars)."""
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(code_verifier: str) -> str:
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, code_challenge)."""
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier)


# ── Flow types ───────────────────────────────────────────────────────


class DeviceFlowState(StrEnum):
    IDLE = "idle"
    REQUESTING = "requesting"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


class AuthStatus(StrEnum):
    POLLING = "polling"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"


@dataclass(frozen=True)
class AuthProgress:
    status: AuthStatus
    message: str = ""


class DeviceAuthorization(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int | None = None


@dataclass
class PollResult:
    """Outcome of one token poll that did not raise."""

    credentials: QwenCredentials | None = None
    slow_down: bool = False

    @property
    def pending(self) -> bool:
        return self.credentials is None


ProgressCallback = Callable[[AuthProgress], None]
DeviceAuthorizationCallback = Callable[[DeviceAuthorization], None]


def _credentials_from_token(
    data: dict[str, Any], previous_refresh_token: str | None = None
) -> QwenCredentials:
    access_token = data.get("access_token")
    if not access_token:
        raise ProtocolError("Token response missing access_token")
    expires_in = data.get("expires_in")
    return QwenCredentials(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or previous_refresh_token,
        token_type=data.get("token_type") or "Bearer",
        resource_url=data.get("resource_url"),
        expiry_date=now_ms() + int(expires_in) * 1000 if expires_in else None,
    )


# ── HTTP client ──────────────────────────────────────────────────────


class QwenOAuth2Client:
    """Talks to the Qwen OAuth endpoints and owns the in-memory credentials."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: CredentialStore,
        base_url: str = QWEN_OAUTH_BASE_URL,
    ) -> None:
        self._http = http
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._credentials: QwenCredentials | None = None

    @property
    def store(self) -> CredentialStore:
        return self._store

    def get_credentials(self) -> QwenCredentials | None:
        return self._credentials

    def set_credentials(self, credentials: QwenCredentials | None) -> None:
        self._credentials = credentials

    def is_token_valid(self) -> bool:
        return self._credentials is not None and self._credentials.is_valid()

    async def request_device_authorization(self, code_challenge: str) -> DeviceAuthorization:
        response = await self._http.post(
            self._base_url + DEVICE_CODE_PATH,
            data={
                "client_id": QWEN_OAUTH_CLIENT_ID,
                "scope": QWEN_OAUTH_SCOPE,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            },
            headers=_FORM_HEADERS,
        )
        if response.status_code >= 400:
            raise error_from_response(response.status_code, response.content, response.headers)
        data = parse_json(response.content, "device authorization")
        try:
            return DeviceAuthorization.model_validate(data)
        except ValidationError as e:
            error = data.get("error") if isinstance(data, dict) else None
            raise ProtocolError(f"Device authorization failed: {error or e}") from e

    async def poll_device_token(self, device_code: str, code_verifier: str) -> PollResult:
        """Poll once. Pending responses return; terminal errors raise ApiError."""
        response = await self._http.post(
            self._base_url + TOKEN_PATH,
            data={
                "grant_type": QWEN_OAUTH_GRANT_TYPE,
                "client_id": QWEN_OAUTH_CLIENT_ID,
                "device_code": device_code,
                "code_verifier": code_verifier,
            },
            headers=_FORM_HEADERS,
        )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            error = body.get("error") if isinstance(body, dict) else None
            if response.status_code == 400 and error == "authorization_pending":
                return PollResult()
            if response.status_code == 429 and error == "slow_down":
                return PollResult(slow_down=True)
            raise error_from_response(response.status_code, response.content, response.headers)

        data = parse_json(response.content, "device token")
        if isinstance(data, dict) and data.get("error"):
            raise ApiError(
                f"Token polling failed: {data['error']} - "
                f"{data.get('error_description') or 'No details provided'}",
                status=response.status_code,
                code=str(data["error"]),
            )
        return PollResult(credentials=_credentials_from_token(data))

    async def refresh_access_token(self) -> QwenCredentials:
        """Exchange the refresh token, persist and return the new credentials."""
        current = self._credentials
        if current is None or not current.refresh_token:
            raise AuthError("No refresh token available")

        response = await self._http.post(
            self._base_url + TOKEN_PATH,
            data={
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
                "client_id": QWEN_OAUTH_CLIENT_ID,
            },
            headers=_FORM_HEADERS,
        )
        if response.status_code == 400:
            self._store.clear()
            self._credentials = None
            raise AuthError(
                "Refresh token expired or invalid. Please re-authenticate.",
                status=400,
            )
        if response.status_code >= 400:
            raise error_from_response(response.status_code, response.content, response.headers)

        data = parse_json(response.content, "token refresh")
        if isinstance(data, dict) and data.get("error"):
            raise AuthError(
                f"Token refresh failed: {data['error']} - "
                f"{data.get('error_description') or 'No details provided'}",
                status=response.status_code,
            )
        credentials = _credentials_from_token(data, current.refresh_token)
        self._credentials = credentials
        self._store.save(credentials)
        logger.info("Qwen access token refreshed")
        return credentials

    async def close(self) -> None:
        await self._http.aclose()


# ── Device flow ──────────────────────────────────────────────────────


class DeviceFlow:
    """Runs the device authorization + polling loop once.

    ``sleep`` is injectable so tests can drive the wait ticks without real
    time passing. ``poll_intervals_ms`` records the interval in effect at
    each poll.
    """

    def __init__(
        self,
        client: QwenOAuth2Client,
        *,
        on_progress: ProgressCallback | None = None,
        on_device_authorization: DeviceAuthorizationCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        open_browser: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._on_progress = on_progress
        self._on_device_authorization = on_device_authorization
        self._cancel = cancel_event or asyncio.Event()
        self._open_browser = open_browser
        self._sleep = sleep
        self.state = DeviceFlowState.IDLE
        self.poll_intervals_ms: list[int] = []

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _emit(self, status: AuthStatus, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(AuthProgress(status, message))

    def _finish(self, state: DeviceFlowState, status: AuthStatus, message: str) -> DeviceFlowState:
        self.state = state
        logger.info("Qwen device flow ended: %s (%s)", state, message)
        self._emit(status, message)
        return state

    def _cancelled(self) -> DeviceFlowState:
        return self._finish(
            DeviceFlowState.CANCELLED, AuthStatus.ERROR, "Authentication cancelled by user."
        )

    async def _wait(self, interval_ms: int) -> None:
        elapsed = 0
        while elapsed < interval_ms and not self.cancelled:
            await self._sleep(CANCEL_CHECK_MS / 1000)
            elapsed += CANCEL_CHECK_MS

    def _launch_browser(self, url: str) -> None:
        try:
            if webbrowser.open(url):
                return
        except webbrowser.Error as e:
            logger.debug("Browser launch failed: %s", e)
        logger.info("Open %s in a browser to authorize", url)

    async def run(self) -> DeviceFlowState:
        self.state = DeviceFlowState.REQUESTING
        verifier, challenge = generate_pkce_pair()
        try:
            auth = await self._client.request_device_authorization(challenge)
        except (ApiError, ProtocolError, httpx.HTTPError) as e:
            return self._finish(
                DeviceFlowState.FAILED, AuthStatus.ERROR, f"Device authorization failed: {e}"
            )

        if self._on_device_authorization is not None:
            self._on_device_authorization(auth)
        if self._open_browser:
            self._launch_browser(auth.verification_uri_complete)

        self.state = DeviceFlowState.POLLING
        self._emit(AuthStatus.POLLING, "Waiting for authorization...")

        interval = INITIAL_POLL_INTERVAL_MS
        max_attempts = math.ceil(auth.expires_in / (INITIAL_POLL_INTERVAL_MS / 1000))

        for attempt in range(max_attempts):
            if self.cancelled:
                return self._cancelled()

            self.poll_intervals_ms.append(interval)
            try:
                result = await self._client.poll_device_token(auth.device_code, verifier)
            except (ApiError, ProtocolError, httpx.HTTPError) as e:
                status = e.status if isinstance(e, ApiError) else None
                if status == 401:
                    return self._finish(
                        DeviceFlowState.FAILED,
                        AuthStatus.ERROR,
                        "Device code expired or invalid, please restart the authorization process.",
                    )
                if status == 429:
                    return self._finish(
                        DeviceFlowState.RATE_LIMITED,
                        AuthStatus.RATE_LIMIT,
                        "Too many requests. The server is rate limiting our requests. "
                        "Please try again later.",
                    )
                logger.warning("Error polling for Qwen token: %s", e)
                self._emit(AuthStatus.ERROR, f"Error polling for token: {e}")
                if self.cancelled:
                    return self._cancelled()
                await self._wait(interval)
                continue

            if result.credentials is not None:
                self._client.set_credentials(result.credentials)
                self._client.store.save(result.credentials)
                return self._finish(
                    DeviceFlowState.SUCCEEDED,
                    AuthStatus.SUCCESS,
                    "Authentication successful! Access token obtained.",
                )

            if result.slow_down:
                interval = min(int(interval * SLOW_DOWN_FACTOR), MAX_POLL_INTERVAL_MS)
                logger.debug("Server requested slow down, poll interval now %dms", interval)

            self._emit(AuthStatus.POLLING, f"Polling... (attempt {attempt + 1}/{max_attempts})")
            await self._wait(interval)
            if self.cancelled:
                return self._cancelled()

        return self._finish(
            DeviceFlowState.EXPIRED,
            AuthStatus.TIMEOUT,
            "Authorization timeout, please restart the process.",
        )


_FAILURE_MESSAGES = {
    DeviceFlowState.EXPIRED: ("Qwen OAuth authentication timed out", "timeout"),
    DeviceFlowState.CANCELLED: ("Qwen OAuth authentication was cancelled by user", "cancelled"),
    DeviceFlowState.RATE_LIMITED: (
        "Too many requests for Qwen OAuth authentication, please try again later.",
        "rate_limit",
    ),
}


async def get_qwen_oauth_client(
    settings: Settings,
    *,
    on_progress: ProgressCallback | None = None,
    on_device_authorization: DeviceAuthorizationCallback | None = None,
    cancel_event: asyncio.Event | None = None,
    http: httpx.AsyncClient | None = None,
    force_login: bool = False,
) -> QwenOAuth2Client:
    """Return an authenticated OAuth client.

    Cached credentials are reused (refreshed when stale). Without a usable
    cache the interactive device flow runs; its failure states map to
    DeviceFlowError.
    """
    store = CredentialStore(settings.qwen_credentials_path)
    client = QwenOAuth2Client(
        http or build_http_client(settings),
        store,
        base_url=settings.qwen_oauth_base_url,
    )

    cached = None if force_login else store.load()
    if cached is not None:
        client.set_credentials(cached)
        if cached.is_valid():
            logger.debug("Using cached Qwen credentials")
            return client
        if cached.refresh_token:
            try:
                await client.refresh_access_token()
            except (ApiError, ProtocolError, httpx.HTTPError) as e:
                if http is None:
                    await client.close()
                raise TokenUnavailable(
                    f"Failed to refresh cached Qwen credentials: {e}. Please re-authenticate."
                ) from e
            return client
        client.set_credentials(None)

    flow = DeviceFlow(
        client,
        on_progress=on_progress,
        on_device_authorization=on_device_authorization,
        cancel_event=cancel_event,
        open_browser=not settings.no_browser,
    )
    state = await flow.run()
    if state == DeviceFlowState.SUCCEEDED:
        return client

    if http is None:
        await client.close()
    message, reason = _FAILURE_MESSAGES.get(
        state, ("Qwen OAuth authentication failed", "error")
    )
    raise DeviceFlowError(message, reason)
