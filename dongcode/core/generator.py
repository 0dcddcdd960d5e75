"""Content generator contract and backend factory.

Every backend implements the same four capabilities over the canonical
model in dongcode.core.models. Backends are chosen by Settings.auth_type.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from dongcode.config import AuthType, Settings
from dongcode.core.models import GenerationRequest, GenerationResponse
from dongcode.errors import ProtocolError

if TYPE_CHECKING:
    from dongcode.qwen.oauth2 import DeviceAuthorizationCallback, ProgressCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientConfig:
    """Request-scoped connection settings.

    Passed into each outbound call instead of being stored on a shared
    client, so interleaved calls can use different tokens and endpoints.
    """

    base_url: str
    api_key: str = ""
    timeout: float | None = None  # seconds; None keeps the client default

    def auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}


@runtime_checkable
class ContentGenerator(Protocol):
    """The capability set every backend adapter provides."""

    async def generate(
        self, request: GenerationRequest, prompt_id: str = ""
    ) -> GenerationResponse: ...

    def generate_stream(
        self, request: GenerationRequest, prompt_id: str = ""
    ) -> AsyncIterator[GenerationResponse]: ...

    async def count_tokens(self, request: GenerationRequest) -> int: ...

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]: ...

    async def close(self) -> None: ...


async def create_content_generator(
    settings: Settings,
    *,
    on_progress: ProgressCallback | None = None,
    on_device_authorization: DeviceAuthorizationCallback | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ContentGenerator:
    """Build the adapter for settings.auth_type.

    Qwen OAuth may run the interactive device flow; the two callbacks are
    forwarded to it for UI display and ``cancel_event`` aborts it.
    """
    auth_type = settings.auth_type

    if auth_type in (
        AuthType.USE_GEMINI,
        AuthType.USE_VERTEX_AI,
        AuthType.LOGIN_WITH_GOOGLE,
        AuthType.CLOUD_SHELL,
    ):
        from dongcode.core.gemini import GeminiContentGenerator

        return GeminiContentGenerator(settings)

    if auth_type == AuthType.USE_OPENAI:
        if not settings.openai_api_key:
            raise ValueError("OpenAI API key is required (set OPENAI_API_KEY)")
        from dongcode.core.openai_compat import OpenAIContentGenerator

        return OpenAIContentGenerator(
            settings,
            ClientConfig(base_url=settings.openai_base_url, api_key=settings.openai_api_key),
        )

    if auth_type == AuthType.QWEN_OAUTH:
        from dongcode.core.openai_compat import OpenAIContentGenerator
        from dongcode.qwen.generator import QwenContentGenerator
        from dongcode.qwen.oauth2 import get_qwen_oauth_client
        from dongcode.qwen.token_manager import TokenManager

        oauth_client = await get_qwen_oauth_client(
            settings,
            on_progress=on_progress,
            on_device_authorization=on_device_authorization,
            cancel_event=cancel_event,
        )
        inner = OpenAIContentGenerator(settings)
        return QwenContentGenerator(inner, TokenManager(oauth_client))

    raise ValueError(f"Unsupported auth type: {auth_type}")


def validate_embeddings(texts: list[str], vectors: list[Any]) -> list[list[float]]:
    """Check an embedding batch lines up with its inputs."""
    if not vectors:
        raise ProtocolError("No embeddings found in API response")
    if len(vectors) != len(texts):
        raise ProtocolError(
            f"API returned a mismatched number of embeddings. "
            f"Expected {len(texts)}, got {len(vectors)}"
        )
    for index, values in enumerate(vectors):
        if not values:
            raise ProtocolError(
                f"API returned an empty embedding for input text at index {index}: "
                f"{texts[index]!r}"
            )
    return vectors
