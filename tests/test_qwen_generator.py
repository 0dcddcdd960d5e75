"""Tests for QwenContentGenerator (OpenAI-compatible inner + token source)."""

import asyncio

import pytest
from conftest import FakeOAuthClient
from conftest import valid_credentials as _valid

from dongcode.config import AuthType
from dongcode.core.generator import create_content_generator
from dongcode.core.models import GenerationRequest, GenerationResponse, Message, Part
from dongcode.errors import ApiError, AuthError
from dongcode.qwen.generator import QwenContentGenerator
from dongcode.qwen.token_manager import TokenManager


def _request():
    return GenerationRequest(model="qwen3-coder-plus", contents=[Message.user("hi")])


def _chunk(text):
    return GenerationResponse(parts=[Part(text=text)])


class FakeInner:
    """Scripted OpenAI-compatible generator recording the configs it saw."""

    def __init__(self, stream_scripts=(), generate_errors=()):
        self.stream_scripts = list(stream_scripts)
        self.generate_errors = list(generate_errors)
        self.configs = []
        self.closed = False

    async def generate(self, request, prompt_id="", *, client_config=None):
        self.configs.append(client_config)
        if self.generate_errors:
            raise self.generate_errors.pop(0)
        return _chunk(f"answer with {client_config.api_key}")

    async def generate_stream(self, request, prompt_id="", *, client_config=None):
        self.configs.append(client_config)
        for item in self.stream_scripts.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item

    async def count_tokens(self, request, *, client_config=None):
        return 42

    async def embed(self, texts, model=None, *, client_config=None):
        self.configs.append(client_config)
        return [[0.1] for _ in texts]

    async def close(self):
        self.closed = True


def _generator(inner, credentials=None):
    client = FakeOAuthClient(credentials or _valid("stale"))
    return QwenContentGenerator(inner, TokenManager(client)), client


async def _collect(stream):
    return [chunk async for chunk in stream]


class TestGenerate:
    @pytest.mark.asyncio
    async def test_uses_current_token_and_endpoint(self):
        inner = FakeInner()
        generator, _ = _generator(inner)
        result = await generator.generate(_request())
        assert result.text == "answer with stale"
        assert inner.configs[0].api_key == "stale"
        assert inner.configs[0].base_url.endswith("/v1")

    @pytest.mark.asyncio
    async def test_401_refreshes_and_retries(self):
        inner = FakeInner(generate_errors=[AuthError("Unauthorized", status=401)])
        generator, client = _generator(inner)
        result = await generator.generate(_request())
        assert result.text == "answer with token-1"
        assert client.refresh_calls == 1
        assert [c.api_key for c in inner.configs] == ["stale", "token-1"]

    @pytest.mark.asyncio
    async def test_count_tokens_needs_no_token(self):
        generator, client = _generator(FakeInner())
        assert await generator.count_tokens(_request()) == 42
        assert client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_embed_passes_config(self):
        inner = FakeInner()
        generator, _ = _generator(inner)
        assert await generator.embed(["a", "b"]) == [[0.1], [0.1]]
        assert inner.configs[0].api_key == "stale"

    @pytest.mark.asyncio
    async def test_close_releases_inner_and_oauth_client(self):
        inner = FakeInner()
        generator, client = _generator(inner)
        await generator.close()
        assert inner.closed
        assert client.closed


class TestGenerateStream:
    @pytest.mark.asyncio
    async def test_streams_chunks(self):
        inner = FakeInner(stream_scripts=[[_chunk("a"), _chunk("b")]])
        generator, _ = _generator(inner)
        chunks = await _collect(generator.generate_stream(_request()))
        assert [c.text for c in chunks] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_auth_error_before_first_chunk_retries(self):
        inner = FakeInner(
            stream_scripts=[
                [AuthError("Unauthorized", status=401)],
                [_chunk("fresh")],
            ]
        )
        generator, client = _generator(inner)
        chunks = await _collect(generator.generate_stream(_request()))
        assert [c.text for c in chunks] == ["fresh"]
        assert client.refresh_calls == 1
        assert [c.api_key for c in inner.configs] == ["stale", "token-1"]

    @pytest.mark.asyncio
    async def test_auth_error_after_first_chunk_propagates(self):
        inner = FakeInner(
            stream_scripts=[[_chunk("partial"), AuthError("Unauthorized", status=401)]]
        )
        generator, client = _generator(inner)
        seen = []
        with pytest.raises(AuthError):
            async for chunk in generator.generate_stream(_request()):
                seen.append(chunk.text)
        assert seen == ["partial"]
        assert client.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        inner = FakeInner(stream_scripts=[[ApiError("bad gateway", status=502)]])
        generator, client = _generator(inner)
        with pytest.raises(ApiError):
            await _collect(generator.generate_stream(_request()))
        assert client.refresh_calls == 0


class TestFactory:
    @pytest.mark.asyncio
    async def test_qwen_oauth_forwards_callbacks_and_cancel(self, settings, monkeypatch):
        settings.auth_type = AuthType.QWEN_OAUTH
        client = FakeOAuthClient(_valid())
        seen = {}

        async def fake_get_client(settings, **kwargs):
            seen.update(kwargs)
            return client

        monkeypatch.setattr("dongcode.qwen.oauth2.get_qwen_oauth_client", fake_get_client)
        cancel = asyncio.Event()

        def on_progress(progress):
            pass

        generator = await create_content_generator(
            settings, on_progress=on_progress, cancel_event=cancel
        )
        try:
            assert isinstance(generator, QwenContentGenerator)
            assert seen["cancel_event"] is cancel
            assert seen["on_progress"] is on_progress
            assert seen["on_device_authorization"] is None
        finally:
            await generator.close()
        assert client.closed
