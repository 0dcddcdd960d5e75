"""Shared fixtures: isolated settings and small HTTP helpers."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from dongcode.config import AuthType, Settings
from dongcode.errors import AuthError
from dongcode.qwen.credentials import QwenCredentials, now_ms


@pytest.fixture
def settings(tmp_path):
    """Settings that never read the developer's environment or home dir."""
    return Settings(
        _env_file=None,
        auth_type=AuthType.USE_GEMINI,
        gemini_api_key="gemini-test-key",
        openai_api_key="sk-test",
        openai_base_url="https://api.example.com/v1",
        qwen_credentials_path=str(tmp_path / "oauth_creds.json"),
        openai_log_dir=str(tmp_path / "logs"),
        no_browser=True,
    )


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decode an application/x-www-form-urlencoded request body."""
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def json_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


def sse_body(*chunks, done: bool = True) -> bytes:
    """Encode dict chunks as an SSE stream."""
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeOAuthClient:
    """In-memory stand-in for QwenOAuth2Client."""

    def __init__(self, credentials=None, fail=False):
        self.credentials = credentials
        self.fail = fail
        self.refresh_calls = 0
        self.closed = False

    def get_credentials(self):
        return self.credentials

    async def close(self):
        self.closed = True

    def set_credentials(self, credentials):
        self.credentials = credentials

    def is_token_valid(self):
        return self.credentials is not None and self.credentials.is_valid()

    async def refresh_access_token(self):
        self.refresh_calls += 1
        await asyncio.sleep(0.01)
        if self.fail:
            raise AuthError("Refresh token expired or invalid", status=400)
        self.credentials = QwenCredentials(
            access_token=f"token-{self.refresh_calls}",
            refresh_token="refresh",
            resource_url="portal.qwen.ai",
            expiry_date=now_ms() + 3_600_000,
        )
        return self.credentials


def valid_credentials(token="cached") -> QwenCredentials:
    return QwenCredentials(access_token=token, refresh_token="r", expiry_date=now_ms() + 3_600_000)


class FakeGenerator:
    """Scripted ContentGenerator.

    ``streams`` is a list of turns; each turn is a list of GenerationResponse
    chunks or exceptions, consumed in order. ``replies`` feeds ``generate``.
    ``tokens`` is an int or a callable taking the GenerationRequest.
    """

    def __init__(self, streams=None, replies=None, tokens=10, embeddings=None):
        self.streams = list(streams or [])
        self.replies = list(replies or [])
        self.tokens = tokens
        self.embeddings = embeddings or []
        self.stream_requests = []
        self.generate_requests = []
        self.count_requests = []
        self.embed_calls = []
        self.closed = False

    async def generate(self, request, prompt_id=""):
        self.generate_requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def generate_stream(self, request, prompt_id=""):
        self.stream_requests.append(request)
        for item in self.streams.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item

    async def count_tokens(self, request):
        self.count_requests.append(request)
        if isinstance(self.tokens, Exception):
            raise self.tokens
        return self.tokens(request) if callable(self.tokens) else self.tokens

    async def embed(self, texts, model=None):
        self.embed_calls.append((texts, model))
        return self.embeddings

    async def close(self):
        self.closed = True
