"""Native pass-through adapter for the Gemini generateContent REST API.

The canonical model mirrors Gemini's wire shape, so translation is mostly
role folding (system -> systemInstruction, tool -> user) and id
back-filling for function calls.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

import httpx

from dongcode.config import AuthType, Settings
from dongcode.core.generator import ClientConfig, validate_embeddings
from dongcode.core.http import build_http_client, parse_json, raise_for_api_error
from dongcode.core.models import (
    ROLE_MODEL,
    ROLE_SYSTEM,
    ROLE_USER,
    FunctionCall,
    GenerationRequest,
    GenerationResponse,
    Message,
    Part,
    UsageMetadata,
)
from dongcode.errors import ProtocolError

logger = logging.getLogger(__name__)


def _call_id(name: str) -> str:
    return f"{name}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def to_gemini_contents(contents: list[Message]) -> tuple[list[dict[str, Any]], list[str]]:
    """Split canonical contents into Gemini contents + extra system text."""
    wire: list[dict[str, Any]] = []
    system_texts: list[str] = []
    for content in contents:
        if content.role == ROLE_SYSTEM:
            system_texts.extend(p.text for p in content.parts if p.text)
            continue
        role = ROLE_MODEL if content.role == ROLE_MODEL else ROLE_USER
        wire.append({"role": role, "parts": [p.to_dict() for p in content.parts]})
    return wire, system_texts


def build_gemini_payload(
    request: GenerationRequest, configured: dict[str, float | int]
) -> dict[str, Any]:
    contents, system_texts = to_gemini_contents(request.contents)
    if request.system_instruction:
        system_texts.insert(0, request.system_instruction)

    payload: dict[str, Any] = {"contents": contents}
    if system_texts:
        payload["systemInstruction"] = {
            "parts": [{"text": "\n\n".join(system_texts)}],
        }
    if request.tools:
        payload["tools"] = [{
            "functionDeclarations": [
                {
                    "name": t.name,
                    "description": t.description,
                    **({"parameters": t.parameters} if t.parameters else {}),
                }
                for t in request.tools
            ],
        }]

    cfg = request.config
    generation_config: dict[str, Any] = {}
    temperature = configured.get("temperature", cfg.temperature)
    top_p = configured.get("top_p", cfg.top_p)
    max_tokens = configured.get("max_tokens", cfg.max_output_tokens)
    if temperature is not None:
        generation_config["temperature"] = temperature
    if top_p is not None:
        generation_config["topP"] = top_p
    if max_tokens is not None:
        generation_config["maxOutputTokens"] = max_tokens
    if cfg.response_schema is not None:
        generation_config["responseSchema"] = cfg.response_schema
    if cfg.response_mime_type:
        generation_config["responseMimeType"] = cfg.response_mime_type
    if generation_config:
        payload["generationConfig"] = generation_config
    return payload


def from_gemini_response(data: dict[str, Any]) -> GenerationResponse:
    """Convert a generateContent response (or one SSE chunk) to canonical form."""
    if not isinstance(data, dict):
        raise ProtocolError("Gemini response is not a JSON object")

    candidates = data.get("candidates") or []
    parts: list[Part] = []
    finish_reason = None
    if candidates:
        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        for raw in (candidate.get("content") or {}).get("parts") or []:
            part = Part.from_dict(raw)
            if part.function_call is not None and not part.function_call.id:
                fc = part.function_call
                part = Part(function_call=FunctionCall(
                    id=_call_id(fc.name), name=fc.name, args=fc.args,
                ))
            parts.append(part)

    usage = None
    meta = data.get("usageMetadata")
    if meta:
        usage = UsageMetadata(
            prompt_tokens=int(meta.get("promptTokenCount") or 0),
            completion_tokens=int(meta.get("candidatesTokenCount") or 0),
            total_tokens=int(meta.get("totalTokenCount") or 0),
        )

    return GenerationResponse(
        parts=parts,
        finish_reason=finish_reason,
        usage=usage,
        response_id=data.get("responseId"),
        model_version=data.get("modelVersion"),
    )


class GeminiContentGenerator:
    """ContentGenerator backed by generativelanguage.googleapis.com."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._http = http or build_http_client(settings)
        self._owns_http = http is None
        self._client_config = ClientConfig(base_url=settings.gemini_base_url.rstrip("/"))

    def _headers(self) -> dict[str, str]:
        settings = self._settings
        if settings.auth_type in (AuthType.LOGIN_WITH_GOOGLE, AuthType.CLOUD_SHELL):
            if settings.google_access_token:
                return {"Authorization": f"Bearer {settings.google_access_token}"}
            return {}
        key = settings.gemini_api_key
        if settings.auth_type == AuthType.USE_VERTEX_AI:
            key = settings.google_api_key or key
        return {"x-goog-api-key": key} if key else {}

    def _url(self, model: str, method: str) -> str:
        model_path = model if model.startswith("models/") else f"models/{model}"
        return f"{self._client_config.base_url}/{model_path}:{method}"

    async def generate(
        self, request: GenerationRequest, prompt_id: str = ""
    ) -> GenerationResponse:
        payload = build_gemini_payload(request, self._settings.sampling_params)
        response = await self._http.post(
            self._url(request.model, "generateContent"),
            json=payload,
            headers=self._headers(),
        )
        await raise_for_api_error(response)
        result = from_gemini_response(parse_json(response.content, "generateContent"))
        logger.debug("Gemini call done (prompt_id=%s, finish=%s)", prompt_id, result.finish_reason)
        return result

    async def generate_stream(
        self, request: GenerationRequest, prompt_id: str = ""
    ) -> AsyncIterator[GenerationResponse]:
        payload = build_gemini_payload(request, self._settings.sampling_params)
        async with self._http.stream(
            "POST",
            self._url(request.model, "streamGenerateContent"),
            params={"alt": "sse"},
            json=payload,
            headers=self._headers(),
        ) as response:
            await raise_for_api_error(response)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = parse_json(line[5:].strip(), "stream chunk")
                yield from_gemini_response(chunk)

    async def count_tokens(self, request: GenerationRequest) -> int:
        contents, system_texts = to_gemini_contents(request.contents)
        if request.system_instruction:
            system_texts.insert(0, request.system_instruction)
        if system_texts:
            # countTokens rejects systemInstruction on some models; count it as user text
            contents.insert(0, {"role": ROLE_USER, "parts": [{"text": t} for t in system_texts]})
        response = await self._http.post(
            self._url(request.model, "countTokens"),
            json={"contents": contents},
            headers=self._headers(),
        )
        await raise_for_api_error(response)
        data = parse_json(response.content, "countTokens")
        total = data.get("totalTokens")
        if not isinstance(total, int):
            raise ProtocolError("countTokens response missing totalTokens")
        return total

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        model = model or self._settings.embedding_model
        model_path = model if model.startswith("models/") else f"models/{model}"
        response = await self._http.post(
            self._url(model, "batchEmbedContents"),
            json={
                "requests": [
                    {"model": model_path, "content": {"parts": [{"text": t}]}}
                    for t in texts
                ],
            },
            headers=self._headers(),
        )
        await raise_for_api_error(response)
        data = parse_json(response.content, "batchEmbedContents")
        vectors = [e.get("values") for e in data.get("embeddings") or []]
        return validate_embeddings(texts, vectors)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
