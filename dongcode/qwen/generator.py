"""Qwen OAuth adapter: an OpenAI-compatible generator plus a token source."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from dongcode.core.models import GenerationRequest, GenerationResponse
from dongcode.core.openai_compat import OpenAIContentGenerator
from dongcode.qwen.token_manager import TokenManager, is_auth_error

logger = logging.getLogger(__name__)


class QwenContentGenerator:
    """Delegates to ``inner`` with a per-call token and endpoint."""

    def __init__(self, inner: OpenAIContentGenerator, token_manager: TokenManager) -> None:
        self._inner = inner
        self._tokens = token_manager

    @property
    def token_manager(self) -> TokenManager:
        return self._tokens

    async def generate(
        self, request: GenerationRequest, prompt_id: str = ""
    ) -> GenerationResponse:
        return await self._tokens.with_valid_token(
            lambda config: self._inner.generate(request, prompt_id, client_config=config)
        )

    async def generate_stream(
        self, request: GenerationRequest, prompt_id: str = ""
    ) -> AsyncIterator[GenerationResponse]:
        token = await self._tokens.get_valid_token()
        started = False
        try:
            async for chunk in self._inner.generate_stream(
                request, prompt_id, client_config=self._tokens.client_config(token)
            ):
                started = True
                yield chunk
            return
        except Exception as e:
            # chunks already handed out cannot be taken back
            if started or not is_auth_error(e):
                raise
            logger.info("Qwen stream rejected the access token, refreshing and retrying once")

        token = await self._tokens.refresh_token(stale_token=token)
        async for chunk in self._inner.generate_stream(
            request, prompt_id, client_config=self._tokens.client_config(token)
        ):
            yield chunk

    async def count_tokens(self, request: GenerationRequest) -> int:
        # local estimate, no credentials involved
        return await self._inner.count_tokens(request)

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        return await self._tokens.with_valid_token(
            lambda config: self._inner.embed(texts, model, client_config=config)
        )

    async def close(self) -> None:
        try:
            await self._inner.close()
        finally:
            await self._tokens.close()
