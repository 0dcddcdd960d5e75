"""OpenAI-compatible chat-completions adapter.

Translates canonical requests to /chat/completions payloads and back,
including streaming reassembly of tool calls. Conversion helpers are
module-level pure functions so the request path and the interaction log
share exactly the same cleanup.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from dongcode.config import Settings
from dongcode.core.generator import ClientConfig, validate_embeddings
from dongcode.core.http import (
    build_http_client,
    error_from_response,
    parse_json,
    raise_for_api_error,
)
from dongcode.core.models import (
    FINISH_MAX_TOKENS,
    FINISH_SAFETY,
    FINISH_STOP,
    FINISH_UNSPECIFIED,
    ROLE_MODEL,
    ROLE_SYSTEM,
    FunctionCall,
    FunctionDeclaration,
    GenerationRequest,
    GenerationResponse,
    Part,
    UsageMetadata,
)
from dongcode.core.openai_logger import OpenAILogger
from dongcode.errors import ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.0
DEFAULT_TOP_P = 1.0

# Approximate chars per token when the backend has no counting endpoint
CHARS_PER_TOKEN = 4

_FINISH_REASONS = {
    "stop": FINISH_STOP,
    "length": FINISH_MAX_TOKENS,
    "content_filter": FINISH_SAFETY,
    "tool_calls": FINISH_STOP,
    "function_call": FINISH_STOP,
}


# ------------------------------------------------------------------
# Canonical -> OpenAI
# ------------------------------------------------------------------


def _tool_response_content(response: dict[str, Any]) -> str:
    output = response.get("output")
    if isinstance(output, str) and len(response) == 1:
        return output
    return json.dumps(response)


def to_openai_messages(request: GenerationRequest) -> list[dict[str, Any]]:
    """Convert canonical contents into OpenAI chat messages.

    Function responses become ``tool`` messages keyed by tool_call_id;
    function calls become assistant ``tool_calls`` with JSON-encoded args.
    """
    messages: list[dict[str, Any]] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})

    for content in request.contents:
        texts = [p.text for p in content.parts if p.text and not p.thought]

        if content.role == ROLE_SYSTEM:
            messages.append({"role": "system", "content": "\n".join(texts)})
            continue

        if content.role == ROLE_MODEL:
            tool_calls = [
                {
                    "id": fc.id,
                    "type": "function",
                    "function": {"name": fc.name, "arguments": json.dumps(fc.args)},
                }
                for fc in content.function_calls
            ]
            if not texts and not tool_calls:
                continue
            message: dict[str, Any] = {
                "role": "assistant",
                "content": "".join(texts) or None,
            }
            if tool_calls:
                message["tool_calls"] = tool_calls
            messages.append(message)
            continue

        # user / tool: tool results first, then any accompanying text
        for fr in content.function_responses:
            messages.append({
                "role": "tool",
                "tool_call_id": fr.id,
                "content": _tool_response_content(fr.response),
            })
        if texts:
            messages.append({"role": "user", "content": "\n".join(texts)})

    return messages


def clean_orphaned_tool_calls(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop tool results and tool calls that have lost their counterpart.

    - a ``tool`` message survives only if an earlier assistant message
      declared its tool_call_id and no tool message answered that
      declaration yet (first answer wins);
    - an assistant ``tool_calls`` entry survives only if a tool message
      after that assistant message answers it;
    - an assistant message left with neither content nor calls is dropped.

    Idempotent: clean(clean(m)) == clean(m). Input is not mutated.
    """
    # call id -> index of the latest assistant message awaiting its answer
    pending: dict[str, int] = {}
    answered: set[tuple[int, str]] = set()
    keep_tool: list[bool] = []

    for i, msg in enumerate(messages):
        role = msg.get("role")
        if role == "assistant":
            for call in msg.get("tool_calls") or []:
                if call.get("id"):
                    pending[call["id"]] = i
        elif role == "tool":
            call_id = msg.get("tool_call_id")
            ok = bool(call_id) and call_id in pending
            if ok:
                answered.add((pending.pop(call_id), call_id))
            keep_tool.append(ok)

    cleaned: list[dict[str, Any]] = []
    tool_index = 0
    for i, msg in enumerate(messages):
        role = msg.get("role")
        if role == "tool":
            ok = keep_tool[tool_index]
            tool_index += 1
            if ok:
                cleaned.append(dict(msg))
            continue
        if role == "assistant" and msg.get("tool_calls"):
            calls = [c for c in msg["tool_calls"] if (i, c.get("id")) in answered]
            new_msg = {k: v for k, v in msg.items() if k != "tool_calls"}
            if calls:
                new_msg["tool_calls"] = calls
            elif not new_msg.get("content"):
                continue
            cleaned.append(new_msg)
            continue
        cleaned.append(dict(msg))
    return cleaned


def merge_consecutive_assistant_messages(
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Merge runs of assistant messages into one.

    Text is concatenated in order; tool_calls are unioned by id keeping the
    first-seen order.
    """
    merged: list[dict[str, Any]] = []
    for msg in messages:
        prev = merged[-1] if merged else None
        if msg.get("role") != "assistant" or prev is None or prev.get("role") != "assistant":
            merged.append(dict(msg))
            continue

        text = (prev.get("content") or "") + (msg.get("content") or "")
        prev["content"] = text or None

        calls = list(prev.get("tool_calls") or [])
        seen = {c.get("id") for c in calls}
        for call in msg.get("tool_calls") or []:
            if call.get("id") not in seen:
                calls.append(call)
                seen.add(call.get("id"))
        if calls:
            prev["tool_calls"] = calls
    return merged


def _normalize_schema(schema: Any) -> Any:
    """Lower-case Gemini-style schema types (OBJECT -> object) recursively."""
    if isinstance(schema, dict):
        out = {}
        for key, value in schema.items():
            if key == "type" and isinstance(value, str):
                out[key] = value.lower()
            else:
                out[key] = _normalize_schema(value)
        return out
    if isinstance(schema, list):
        return [_normalize_schema(v) for v in schema]
    return schema


def to_openai_tools(tools: list[FunctionDeclaration]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": _normalize_schema(tool.parameters or {"type": "object", "properties": {}}),
            },
        }
        for tool in tools
    ]


def build_sampling_parameters(
    request: GenerationRequest, configured: dict[str, float | int]
) -> dict[str, Any]:
    """Configured settings > request config > defaults."""
    cfg = request.config
    params: dict[str, Any] = {
        "temperature": configured.get(
            "temperature",
            cfg.temperature if cfg.temperature is not None else DEFAULT_TEMPERATURE,
        ),
        "top_p": configured.get(
            "top_p", cfg.top_p if cfg.top_p is not None else DEFAULT_TOP_P
        ),
    }
    max_tokens = configured.get("max_tokens", cfg.max_output_tokens)
    if max_tokens is not None:
        params["max_tokens"] = max_tokens
    return params


def build_chat_messages(request: GenerationRequest) -> list[dict[str, Any]]:
    """Convert, clean and merge: the exact message list sent upstream."""
    return merge_consecutive_assistant_messages(
        clean_orphaned_tool_calls(to_openai_messages(request))
    )


# ------------------------------------------------------------------
# OpenAI -> Canonical
# ------------------------------------------------------------------


def map_finish_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    return _FINISH_REASONS.get(reason, FINISH_UNSPECIFIED)


def _parse_arguments(raw: str | None, name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed arguments for tool call '{name}': {e}") from e
    if not isinstance(args, dict):
        raise ProtocolError(f"Arguments for tool call '{name}' are not a JSON object")
    return args


def _usage_from(data: dict[str, Any] | None) -> UsageMetadata | None:
    if not data:
        return None
    prompt = int(data.get("prompt_tokens") or 0)
    completion = int(data.get("completion_tokens") or 0)
    return UsageMetadata(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(data.get("total_tokens") or prompt + completion),
    )


def from_openai_response(data: dict[str, Any]) -> GenerationResponse:
    """Convert a non-streaming chat completion into a GenerationResponse."""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ProtocolError("Chat completion response has no choices")
    choice = choices[0]
    message = choice.get("message") or {}

    parts: list[Part] = []
    if message.get("content"):
        parts.append(Part(text=message["content"]))
    for call in message.get("tool_calls") or []:
        fn = call.get("function") or {}
        name = fn.get("name", "")
        parts.append(Part(function_call=FunctionCall(
            id=call.get("id", ""),
            name=name,
            args=_parse_arguments(fn.get("arguments"), name),
        )))

    return GenerationResponse(
        parts=parts,
        finish_reason=map_finish_reason(choice.get("finish_reason")),
        usage=_usage_from(data.get("usage")),
        response_id=data.get("id"),
        model_version=data.get("model"),
    )


class StreamAccumulator:
    """Reassembles streamed chat-completion chunks.

    Text deltas pass through immediately. Tool-call deltas are buffered by
    ``index``; their argument fragments are concatenated and parsed only
    when a chunk carries ``finish_reason``.
    """

    def __init__(self) -> None:
        self._tool_calls: dict[int, dict[str, Any]] = {}
        self.response_id: str | None = None

    def feed(self, chunk: dict[str, Any]) -> GenerationResponse | None:
        self.response_id = chunk.get("id") or self.response_id
        usage = _usage_from(chunk.get("usage"))
        choices = chunk.get("choices") or []

        if not choices:
            if usage is None:
                return None
            return GenerationResponse(usage=usage, response_id=self.response_id)

        choice = choices[0]
        delta = choice.get("delta") or {}
        parts: list[Part] = []

        if delta.get("content"):
            parts.append(Part(text=delta["content"]))

        for tc in delta.get("tool_calls") or []:
            index = tc.get("index", 0)
            acc = self._tool_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if tc.get("id"):
                acc["id"] = tc["id"]
            fn = tc.get("function") or {}
            if fn.get("name"):
                acc["name"] = fn["name"]
            if fn.get("arguments"):
                acc["arguments"] += fn["arguments"]

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            for index in sorted(self._tool_calls):
                acc = self._tool_calls[index]
                parts.append(Part(function_call=FunctionCall(
                    id=acc["id"] or f"call_{index}",
                    name=acc["name"],
                    args=_parse_arguments(acc["arguments"], acc["name"]),
                )))
            self._tool_calls.clear()

        if not parts and not finish_reason and usage is None:
            return None
        return GenerationResponse(
            parts=parts,
            finish_reason=map_finish_reason(finish_reason),
            usage=usage,
            response_id=self.response_id,
        )


def combine_stream_responses(responses: list[GenerationResponse]) -> GenerationResponse:
    """Fold streamed chunks into one response (for logging and history)."""
    text = "".join(r.text for r in responses)
    parts: list[Part] = [Part(text=text)] if text else []
    for r in responses:
        parts.extend(Part(function_call=fc) for fc in r.function_calls)
    finish = next((r.finish_reason for r in reversed(responses) if r.finish_reason), None)
    usage = next((r.usage for r in reversed(responses) if r.usage), None)
    response_id = next((r.response_id for r in responses if r.response_id), None)
    return GenerationResponse(parts=parts, finish_reason=finish, usage=usage, response_id=response_id)


def approximate_token_count(messages: list[dict[str, Any]]) -> int:
    return math.ceil(len(json.dumps(messages)) / CHARS_PER_TOKEN)


# ------------------------------------------------------------------
# Adapter
# ------------------------------------------------------------------


class OpenAIContentGenerator:
    """ContentGenerator for any OpenAI-compatible /chat/completions backend.

    ``client_config`` is the default endpoint/key; every public method also
    accepts a per-call ``client_config`` which takes precedence and is
    never stored.
    """

    def __init__(
        self,
        settings: Settings,
        client_config: ClientConfig | None = None,
        http: httpx.AsyncClient | None = None,
        interaction_logger: OpenAILogger | None = None,
    ) -> None:
        self._settings = settings
        self._client_config = client_config
        self._http = http or build_http_client(settings)
        self._owns_http = http is None
        if interaction_logger is None and settings.enable_openai_logging:
            interaction_logger = OpenAILogger(settings.openai_log_dir)
        self._interaction_logger = interaction_logger

    def _resolve(self, client_config: ClientConfig | None) -> ClientConfig:
        cfg = client_config or self._client_config
        if cfg is None:
            raise RuntimeError("No client configuration for OpenAI-compatible call")
        return cfg

    @staticmethod
    def _timeout(cfg: ClientConfig) -> Any:
        return cfg.timeout if cfg.timeout is not None else httpx.USE_CLIENT_DEFAULT

    def build_payload(self, request: GenerationRequest, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": build_chat_messages(request),
            **build_sampling_parameters(request, self._settings.sampling_params),
        }
        if request.tools:
            payload["tools"] = to_openai_tools(request.tools)
        if request.config.response_mime_type == "application/json":
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _log(
        self,
        payload: dict[str, Any],
        response: GenerationResponse | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self._interaction_logger is None:
            return
        try:
            await self._interaction_logger.log_interaction(payload, response, error)
        except OSError as e:
            logger.warning("Failed to write OpenAI interaction log: %s", e)

    async def generate(
        self,
        request: GenerationRequest,
        prompt_id: str = "",
        *,
        client_config: ClientConfig | None = None,
    ) -> GenerationResponse:
        cfg = self._resolve(client_config)
        payload = self.build_payload(request)
        start = time.monotonic()
        try:
            response = await self._http.post(
                f"{cfg.base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=cfg.auth_headers(),
                timeout=self._timeout(cfg),
            )
            await raise_for_api_error(response)
            result = from_openai_response(parse_json(response.content, "chat completion"))
        except Exception as e:
            logger.debug("OpenAI call failed (prompt_id=%s): %s", prompt_id, e)
            await self._log(payload, error=e)
            raise

        logger.debug(
            "OpenAI call finished in %d ms (prompt_id=%s, finish=%s)",
            int((time.monotonic() - start) * 1000),
            prompt_id,
            result.finish_reason,
        )
        await self._log(payload, result)
        return result

    async def generate_stream(
        self,
        request: GenerationRequest,
        prompt_id: str = "",
        *,
        client_config: ClientConfig | None = None,
    ) -> AsyncIterator[GenerationResponse]:
        """Stream canonical chunks.

        Errors raised before the first chunk (e.g. HTTP 401) reach the
        caller before anything is yielded, which lets wrappers retry.
        """
        cfg = self._resolve(client_config)
        payload = self.build_payload(request, stream=True)
        accumulator = StreamAccumulator()
        collected: list[GenerationResponse] = []

        try:
            async with self._http.stream(
                "POST",
                f"{cfg.base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=cfg.auth_headers(),
                timeout=self._timeout(cfg),
            ) as response:
                await raise_for_api_error(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    chunk = parse_json(data, "stream chunk")
                    err = chunk.get("error")
                    if isinstance(err, dict):
                        # HTTP 200 with an error in the body
                        code = err.get("code")
                        raise error_from_response(
                            code if isinstance(code, int) else 500, json.dumps(chunk)
                        )
                    out = accumulator.feed(chunk)
                    if out is not None:
                        collected.append(out)
                        yield out
        except Exception as e:
            logger.debug("OpenAI stream failed (prompt_id=%s): %s", prompt_id, e)
            await self._log(payload, error=e)
            raise

        await self._log(payload, combine_stream_responses(collected))

    async def count_tokens(
        self,
        request: GenerationRequest,
        *,
        client_config: ClientConfig | None = None,
    ) -> int:
        """Approximate: no counting endpoint on OpenAI-compatible APIs."""
        return approximate_token_count(build_chat_messages(request))

    async def embed(
        self,
        texts: list[str],
        model: str | None = None,
        *,
        client_config: ClientConfig | None = None,
    ) -> list[list[float]]:
        cfg = self._resolve(client_config)
        response = await self._http.post(
            f"{cfg.base_url.rstrip('/')}/embeddings",
            json={"model": model or self._settings.embedding_model, "input": texts},
            headers=cfg.auth_headers(),
            timeout=self._timeout(cfg),
        )
        await raise_for_api_error(response)
        data = parse_json(response.content, "embedding response").get("data") or []
        vectors = [
            item.get("embedding") for item in sorted(data, key=lambda x: x.get("index", 0))
        ]
        return validate_embeddings(texts, vectors)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
