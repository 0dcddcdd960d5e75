"""Tests for TokenManager: single-flight refresh and auth retry."""

import asyncio

import pytest
from conftest import FakeOAuthClient
from conftest import valid_credentials as _valid

from dongcode.errors import ApiError, AuthError, TokenUnavailable
from dongcode.qwen.credentials import QwenCredentials, now_ms
from dongcode.qwen.token_manager import (
    DEFAULT_QWEN_BASE_URL,
    TokenManager,
    is_auth_error,
    normalize_endpoint,
)


def _expired():
    return QwenCredentials(access_token="old", refresh_token="r", expiry_date=now_ms() - 1)


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_cached_token_skips_refresh(self):
        client = FakeOAuthClient(_valid())
        manager = TokenManager(client)
        assert await manager.get_valid_token() == "cached"
        assert client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        client = FakeOAuthClient(_expired())
        manager = TokenManager(client)

        tokens = await asyncio.gather(*(manager.get_valid_token() for _ in range(5)))

        assert tokens == ["token-1"] * 5
        assert client.refresh_calls == 1
        assert manager.get_current_token() == "token-1"

    @pytest.mark.asyncio
    async def test_failed_refresh_raises_for_every_caller(self):
        client = FakeOAuthClient(_expired(), fail=True)
        manager = TokenManager(client)

        results = await asyncio.gather(
            *(manager.get_valid_token() for _ in range(3)), return_exceptions=True
        )

        assert all(isinstance(r, TokenUnavailable) for r in results)
        assert client.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_next_call_after_failure_refreshes_again(self):
        client = FakeOAuthClient(_expired(), fail=True)
        manager = TokenManager(client)
        with pytest.raises(TokenUnavailable):
            await manager.get_valid_token()

        client.fail = False
        assert await manager.get_valid_token() == "token-2"

    @pytest.mark.asyncio
    async def test_refresh_updates_endpoint(self):
        manager = TokenManager(FakeOAuthClient(_expired()))
        await manager.get_valid_token()
        assert manager.get_current_endpoint() == "https://portal.qwen.ai/v1"

    @pytest.mark.asyncio
    async def test_clear_token(self):
        client = FakeOAuthClient(_valid())
        manager = TokenManager(client)
        await manager.get_valid_token()
        manager.clear_token()
        assert manager.get_current_token() is None
        assert client.credentials is None


class TestWithValidToken:
    @pytest.mark.asyncio
    async def test_operation_gets_request_scoped_config(self):
        manager = TokenManager(FakeOAuthClient(_valid()))
        seen = []

        async def op(config):
            seen.append(config)
            return "ok"

        assert await manager.with_valid_token(op) == "ok"
        assert seen[0].api_key == "cached"
        assert seen[0].base_url == DEFAULT_QWEN_BASE_URL

    @pytest.mark.asyncio
    async def test_auth_error_refreshes_and_retries_once(self):
        client = FakeOAuthClient(_valid("stale"))
        manager = TokenManager(client)
        keys = []

        async def op(config):
            keys.append(config.api_key)
            if len(keys) == 1:
                raise AuthError("Unauthorized", status=401)
            return "ok"

        assert await manager.with_valid_token(op) == "ok"
        assert keys == ["stale", "token-1"]
        assert client.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_second_auth_error_propagates(self):
        client = FakeOAuthClient(_valid())
        manager = TokenManager(client)
        calls = 0

        async def op(config):
            nonlocal calls
            calls += 1
            raise AuthError("Unauthorized", status=401)

        with pytest.raises(AuthError):
            await manager.with_valid_token(op)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_non_auth_error_is_not_retried(self):
        client = FakeOAuthClient(_valid())
        manager = TokenManager(client)

        async def op(config):
            raise ApiError("server exploded", status=500)

        with pytest.raises(ApiError):
            await manager.with_valid_token(op)
        assert client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_auth_failures_refresh_once(self):
        client = FakeOAuthClient(_valid("stale"))
        manager = TokenManager(client)

        async def op(config):
            await asyncio.sleep(0)
            if config.api_key == "stale":
                raise AuthError("Unauthorized", status=401)
            return config.api_key

        results = await asyncio.gather(*(manager.with_valid_token(op) for _ in range(4)))
        assert results == ["token-1"] * 4
        assert client.refresh_calls == 1


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            ApiError("nope", status=401),
            ApiError("nope", status=403),
            ApiError("bad request", status=400),
            Exception("Unauthorized"),
            Exception("Invalid API key provided"),
            Exception("The access token has expired"),
            Exception("Access denied"),
            {"status": 401, "message": "x"},
        ],
    )
    def test_auth_errors(self, error):
        assert is_auth_error(error)

    @pytest.mark.parametrize(
        "error",
        [None, ApiError("server", status=500), Exception("connection reset"), "timeout"],
    )
    def test_non_auth_errors(self, error):
        assert not is_auth_error(error)

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (None, DEFAULT_QWEN_BASE_URL),
            ("portal.qwen.ai", "https://portal.qwen.ai/v1"),
            ("https://example.com/v1", "https://example.com/v1"),
            ("http://localhost:8080", "http://localhost:8080/v1"),
        ],
    )
    def test_normalize_endpoint(self, raw, expected):
        assert normalize_endpoint(raw) == expected
