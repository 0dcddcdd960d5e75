"""Tests for PKCE helpers, the OAuth client and the device flow."""

import asyncio
import base64
import hashlib
import json

import httpx
import pytest
from conftest import form_of, mock_http

from dongcode.errors import AuthError, DeviceFlowError, TokenUnavailable
from dongcode.qwen.credentials import CredentialStore, QwenCredentials, now_ms
from dongcode.qwen.oauth2 import (
    QWEN_OAUTH_CLIENT_ID,
    QWEN_OAUTH_GRANT_TYPE,
    AuthStatus,
    DeviceFlow,
    DeviceFlowState,
    QwenOAuth2Client,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    get_qwen_oauth_client,
)
from dongcode.qwen.token_manager import TokenManager

DEVICE_AUTH = {
    "device_code": "dev-123",
    "user_code": "ABCD-EFGH",
    "verification_uri": "https://chat.qwen.ai/authorize",
    "verification_uri_complete": "https://chat.qwen.ai/authorize?user_code=ABCD-EFGH",
    "expires_in": 600,
}

TOKEN = {
    "access_token": "new-access",
    "refresh_token": "new-refresh",
    "token_type": "Bearer",
    "expires_in": 3600,
    "resource_url": "portal.qwen.ai",
}


async def no_sleep(_seconds: float) -> None:
    return None


class Server:
    """Scripted OAuth endpoints; poll responses are consumed in order."""

    def __init__(self, polls=(), device_status=200):
        self.polls = list(polls)
        self.device_status = device_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/device/code"):
            if self.device_status != 200:
                return httpx.Response(self.device_status, json={"error": "server_error"})
            return httpx.Response(200, json=DEVICE_AUTH)
        return self.polls.pop(0)

    @property
    def poll_count(self) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/token"))


def pending():
    return httpx.Response(400, json={"error": "authorization_pending"})


def slow_down():
    return httpx.Response(429, json={"error": "slow_down"})


def success():
    return httpx.Response(200, json=TOKEN)


def make_client(server, tmp_path) -> QwenOAuth2Client:
    return QwenOAuth2Client(mock_http(server), CredentialStore(tmp_path / "oauth_creds.json"))


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------


class TestPKCE:
    def test_verifier_length_and_alphabet(self):
        verifier = generate_code_verifier()
        assert 43 <= len(verifier) <= 128
        assert "=" not in verifier
        assert "+" not in verifier and "/" not in verifier

    def test_challenge_is_sha256_base64url(self):
        verifier = generate_code_verifier()
        expected = base64.urlsafe_b64encode(
            hashlib.sha256(verifier.encode()).digest()
        ).rstrip(b"=").decode()
        assert generate_code_challenge(verifier) == expected

    def test_pair_matches(self):
        verifier, challenge = generate_pkce_pair()
        assert generate_code_challenge(verifier) == challenge

    def test_verifiers_are_random(self):
        assert generate_code_verifier() != generate_code_verifier()


# ---------------------------------------------------------------------------
# Device flow
# ---------------------------------------------------------------------------


class TestDeviceFlow:
    @pytest.mark.asyncio
    async def test_end_to_end_with_slow_down(self, tmp_path):
        server = Server([slow_down(), pending(), success()])
        client = make_client(server, tmp_path)
        progress = []
        authorizations = []
        flow = DeviceFlow(
            client,
            on_progress=progress.append,
            on_device_authorization=authorizations.append,
            sleep=no_sleep,
        )

        state = await flow.run()

        assert state == DeviceFlowState.SUCCEEDED
        assert flow.poll_intervals_ms == [2000, 3000, 3000]
        assert authorizations[0].user_code == "ABCD-EFGH"
        assert progress[-1].status == AuthStatus.SUCCESS

        cached = json.loads((tmp_path / "oauth_creds.json").read_text())
        assert cached["access_token"] == "new-access"
        assert cached["refresh_token"] == "new-refresh"

        manager = TokenManager(client)
        assert await manager.get_valid_token() == "new-access"
        assert manager.get_current_token() == "new-access"
        assert manager.get_current_endpoint() == "https://portal.qwen.ai/v1"
        assert server.poll_count == 3

    @pytest.mark.asyncio
    async def test_device_request_carries_pkce(self, tmp_path):
        server = Server([success()])
        flow = DeviceFlow(make_client(server, tmp_path), sleep=no_sleep)
        await flow.run()

        device_form = form_of(server.requests[0])
        poll_form = form_of(server.requests[1])
        assert device_form["client_id"] == QWEN_OAUTH_CLIENT_ID
        assert device_form["code_challenge_method"] == "S256"
        assert poll_form["grant_type"] == QWEN_OAUTH_GRANT_TYPE
        assert poll_form["device_code"] == "dev-123"
        assert generate_code_challenge(poll_form["code_verifier"]) == device_form["code_challenge"]

    @pytest.mark.asyncio
    async def test_pending_keeps_interval(self, tmp_path):
        server = Server([pending(), pending(), success()])
        flow = DeviceFlow(make_client(server, tmp_path), sleep=no_sleep)
        await flow.run()
        assert flow.poll_intervals_ms == [2000, 2000, 2000]

    @pytest.mark.asyncio
    async def test_slow_down_is_capped(self, tmp_path):
        server = Server([slow_down()] * 8 + [success()])
        flow = DeviceFlow(make_client(server, tmp_path), sleep=no_sleep)
        await flow.run()
        assert max(flow.poll_intervals_ms) == 10000
        assert flow.poll_intervals_ms[-1] == 10000

    @pytest.mark.asyncio
    async def test_cancel_before_first_poll(self, tmp_path):
        server = Server([success()])
        cancel = asyncio.Event()
        progress = []
        flow = DeviceFlow(
            make_client(server, tmp_path),
            on_progress=progress.append,
            on_device_authorization=lambda _auth: cancel.set(),
            cancel_event=cancel,
            sleep=no_sleep,
        )

        assert await flow.run() == DeviceFlowState.CANCELLED
        assert server.poll_count == 0
        assert progress[-1].status == AuthStatus.ERROR
        assert not (tmp_path / "oauth_creds.json").exists()

    @pytest.mark.asyncio
    async def test_cancel_during_wait(self, tmp_path):
        server = Server([pending(), success()])
        flow = DeviceFlow(make_client(server, tmp_path), sleep=no_sleep)
        ticks = 0

        async def cancelling_sleep(_seconds):
            nonlocal ticks
            ticks += 1
            if ticks == 3:
                flow.cancel()

        flow._sleep = cancelling_sleep
        assert await flow.run() == DeviceFlowState.CANCELLED
        assert server.poll_count == 1
        assert ticks == 3

    @pytest.mark.asyncio
    async def test_401_fails(self, tmp_path):
        server = Server([httpx.Response(401, json={"error": "invalid_grant"})])
        progress = []
        flow = DeviceFlow(make_client(server, tmp_path), on_progress=progress.append, sleep=no_sleep)
        assert await flow.run() == DeviceFlowState.FAILED
        assert "expired or invalid" in progress[-1].message

    @pytest.mark.asyncio
    async def test_other_429_rate_limits(self, tmp_path):
        server = Server([httpx.Response(429, json={"error": "too_many_requests"})])
        progress = []
        flow = DeviceFlow(make_client(server, tmp_path), on_progress=progress.append, sleep=no_sleep)
        assert await flow.run() == DeviceFlowState.RATE_LIMITED
        assert progress[-1].status == AuthStatus.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_transient_error_keeps_polling(self, tmp_path):
        server = Server([httpx.Response(500, text="boom"), success()])
        progress = []
        flow = DeviceFlow(make_client(server, tmp_path), on_progress=progress.append, sleep=no_sleep)
        assert await flow.run() == DeviceFlowState.SUCCEEDED
        assert any(p.status == AuthStatus.ERROR for p in progress)

    @pytest.mark.asyncio
    async def test_expires_after_max_attempts(self, tmp_path, monkeypatch):
        monkeypatch.setitem(DEVICE_AUTH, "expires_in", 6)
        server = Server([pending()] * 3)
        progress = []
        flow = DeviceFlow(make_client(server, tmp_path), on_progress=progress.append, sleep=no_sleep)
        assert await flow.run() == DeviceFlowState.EXPIRED
        assert server.poll_count == 3
        assert progress[-1].status == AuthStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_device_authorization_failure(self, tmp_path):
        server = Server(device_status=500)
        flow = DeviceFlow(make_client(server, tmp_path), sleep=no_sleep)
        assert await flow.run() == DeviceFlowState.FAILED


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def _stale(refresh_token="old-refresh") -> QwenCredentials:
    return QwenCredentials(
        access_token="old-access",
        refresh_token=refresh_token,
        expiry_date=now_ms() - 1000,
    )


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_preserves_refresh_token(self, tmp_path):
        body = {"access_token": "fresh", "token_type": "Bearer", "expires_in": 3600}
        server = Server([httpx.Response(200, json=body)])
        client = make_client(server, tmp_path)
        client.set_credentials(_stale())

        creds = await client.refresh_access_token()

        assert creds.access_token == "fresh"
        assert creds.refresh_token == "old-refresh"
        assert form_of(server.requests[0])["grant_type"] == "refresh_token"
        assert CredentialStore(tmp_path / "oauth_creds.json").load() == creds

    @pytest.mark.asyncio
    async def test_refresh_400_clears_cache(self, tmp_path):
        server = Server([httpx.Response(400, json={"error": "invalid_grant"})])
        client = make_client(server, tmp_path)
        client.store.save(_stale())
        client.set_credentials(_stale())

        with pytest.raises(AuthError, match="Refresh token expired or invalid"):
            await client.refresh_access_token()
        assert not (tmp_path / "oauth_creds.json").exists()
        assert client.get_credentials() is None

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(self, tmp_path):
        client = make_client(Server(), tmp_path)
        client.set_credentials(_stale(refresh_token=None))
        with pytest.raises(AuthError):
            await client.refresh_access_token()


# ---------------------------------------------------------------------------
# get_qwen_oauth_client
# ---------------------------------------------------------------------------


class TestGetQwenOAuthClient:
    @pytest.mark.asyncio
    async def test_valid_cache_needs_no_network(self, settings):
        def handler(request):
            raise AssertionError(f"unexpected request to {request.url}")

        valid = QwenCredentials(access_token="cached", expiry_date=now_ms() + 3_600_000)
        CredentialStore(settings.qwen_credentials_path).save(valid)

        client = await get_qwen_oauth_client(settings, http=mock_http(handler))
        assert client.get_credentials().access_token == "cached"

    @pytest.mark.asyncio
    async def test_stale_cache_is_refreshed(self, settings):
        server = Server([httpx.Response(200, json=TOKEN)])
        CredentialStore(settings.qwen_credentials_path).save(_stale())

        client = await get_qwen_oauth_client(settings, http=mock_http(server))
        assert client.get_credentials().access_token == "new-access"
        assert server.poll_count == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_raises_token_unavailable(self, settings):
        server = Server([httpx.Response(400, json={"error": "invalid_grant"})])
        CredentialStore(settings.qwen_credentials_path).save(_stale())

        with pytest.raises(TokenUnavailable):
            await get_qwen_oauth_client(settings, http=mock_http(server))

    @pytest.mark.asyncio
    async def test_cancelled_flow_maps_to_error(self, settings):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(DeviceFlowError) as exc_info:
            await get_qwen_oauth_client(settings, http=mock_http(Server()), cancel_event=cancel)
        assert exc_info.value.reason == "cancelled"
