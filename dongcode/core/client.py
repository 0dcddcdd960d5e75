"""Session orchestrator: history, turn loop, limits, fallback and compaction.

One ChatSession owns one conversation. ``send_message_stream`` runs a user
message through compaction, the session limits and the retry policy, then
streams normalized SessionEvents back. Auto-continuation is an explicit
bounded loop rather than recursion.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import platform
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from datetime import datetime
from typing import Any

import httpx

from dongcode.config import DEFAULT_GEMINI_FLASH_MODEL, AuthType, Settings
from dongcode.core.compaction import HistoryCompactor
from dongcode.core.events import SessionEvent, SessionEventType
from dongcode.core.generator import ContentGenerator, validate_embeddings
from dongcode.core.models import (
    ROLE_MODEL,
    ROLE_SYSTEM,
    CompressionResult,
    FunctionDeclaration,
    GenerationConfig,
    GenerationRequest,
    GenerationResponse,
    Message,
    Part,
    UsageMetadata,
)
from dongcode.core.next_speaker import check_next_speaker
from dongcode.core.retry import RetryOptions, cancellable, retry_with_backoff
from dongcode.errors import CancelledError, DongCodeError, get_error_message, get_error_status
from dongcode.qwen.token_manager import is_auth_error
from dongcode.utils.quota import is_qwen_quota_exceeded_error, is_qwen_throttling_error

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Please continue."
JSON_FUNCTION_NAME = "respond_in_schema"

# (current_model, fallback_model, error) -> accept the switch?
FallbackHandler = Callable[[str, str, BaseException], Awaitable[bool]]


def default_environment() -> list[str]:
    today = datetime.now().strftime("%A, %B %d, %Y")
    return [
        "We are setting up the context for our chat.",
        f"Today's date is {today}.",
        f"My operating system is: {platform.system().lower()}",
        f"I'm currently working in the directory: {os.getcwd()}",
    ]


def _merge_parts(parts: list[Part]) -> list[Part]:
    """Join adjacent text parts; function calls stay separate."""
    merged: list[Part] = []
    for part in parts:
        if (
            part.text is not None
            and merged
            and merged[-1].text is not None
            and merged[-1].function_call is None
        ):
            merged[-1] = Part(text=merged[-1].text + part.text)
        else:
            merged.append(part)
    return merged


async def _next_chunk(stream: AsyncIterator[GenerationResponse]) -> GenerationResponse | None:
    return await anext(stream, None)


# ------------------------------------------------------------------
# Loop detection
# ------------------------------------------------------------------


class LoopDetector:
    """Flags a turn stuck repeating itself.

    Two signals: the same tool call (name + args) requested
    TOOL_CALL_THRESHOLD times in a row, or one CHUNK_SIZE-character
    window of streamed text recurring CONTENT_THRESHOLD times at short
    spacing.
    """

    TOOL_CALL_THRESHOLD = 5
    CONTENT_THRESHOLD = 10
    CHUNK_SIZE = 50

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._last_call_key: str | None = None
        self._call_repeats = 0
        self._content = ""
        self._scan_pos = 0
        self._chunk_positions: dict[str, list[int]] = {}
        self.detected = False

    def add_and_check(self, event: SessionEvent) -> bool:
        if self.detected:
            return True
        if event.type == SessionEventType.TOOL_CALL_REQUEST:
            call = event.value
            key = f"{call.name}:{json.dumps(call.args, sort_keys=True, default=str)}"
            if key == self._last_call_key:
                self._call_repeats += 1
            else:
                self._last_call_key = key
                self._call_repeats = 1
            self.detected = self._call_repeats >= self.TOOL_CALL_THRESHOLD
        elif event.type == SessionEventType.CONTENT:
            self._last_call_key = None
            self._call_repeats = 0
            self._content += event.value
            self.detected = self._scan_content()
        if self.detected:
            logger.warning("Loop detected in model output")
        return self.detected

    def _scan_content(self) -> bool:
        size = self.CHUNK_SIZE
        while len(self._content) - self._scan_pos >= size:
            chunk = self._content[self._scan_pos:self._scan_pos + size]
            positions = self._chunk_positions.setdefault(chunk, [])
            positions.append(self._scan_pos)
            self._scan_pos += 1
            if len(positions) >= self.CONTENT_THRESHOLD:
                recent = positions[-self.CONTENT_THRESHOLD:]
                spacing = (recent[-1] - recent[0]) / (self.CONTENT_THRESHOLD - 1)
                if spacing <= size * 1.5:
                    return True
        return False


# ------------------------------------------------------------------
# Session
# ------------------------------------------------------------------


class ChatSession:
    """A conversation with one backend.

    ``system_instruction`` is the preamble; the environment context is
    appended to it on every request.
    """

    MAX_TURNS = 100

    def __init__(
        self,
        settings: Settings,
        generator: ContentGenerator,
        *,
        system_instruction: str = "",
        tools: list[FunctionDeclaration] | None = None,
        history: list[Message] | None = None,
        environment: list[str] | None = None,
        compactor: HistoryCompactor | None = None,
        fallback_handler: FallbackHandler | None = None,
    ) -> None:
        self._settings = settings
        self._generator = generator
        self.model = settings.effective_model
        self.fallback_mode = False
        self.system_instruction = system_instruction
        self.tools = list(tools or [])
        self.environment = default_environment() if environment is None else list(environment)
        self._history: list[Message] = list(history or [])
        self._compactor = compactor or HistoryCompactor(settings)
        self._fallback_handler = fallback_handler
        self.loop_detector = LoopDetector()
        self.session_turn_count = 0
        self._last_prompt_id: str | None = None

    @property
    def generator(self) -> ContentGenerator:
        return self._generator

    # -- history -------------------------------------------------------

    def get_history(self) -> list[Message]:
        return list(self._history)

    def set_history(self, history: list[Message]) -> None:
        self._history = list(history)

    def add_history(self, message: Message) -> None:
        self._history.append(message)

    def reset_chat(self) -> None:
        self._history = []
        self.loop_detector.reset()
        self._last_prompt_id = None

    # -- request building ------------------------------------------------

    def _full_system_instruction(self) -> str:
        return "\n\n".join(t for t in (self.system_instruction, "\n".join(self.environment)) if t)

    def _request(
        self,
        contents: list[Message],
        model: str | None = None,
        config: GenerationConfig | None = None,
        tools: list[FunctionDeclaration] | None = None,
    ) -> GenerationRequest:
        return GenerationRequest(
            model=model or self.model,
            contents=contents,
            system_instruction=self._full_system_instruction() or None,
            tools=self.tools if tools is None else tools,
            config=config or GenerationConfig(),
        )

    def _retry_options(self, cancel: asyncio.Event | None = None) -> RetryOptions:
        return RetryOptions(
            max_attempts=self._settings.max_retries,
            on_persistent_429=self.handle_flash_fallback,
            auth_type=self._settings.auth_type,
            cancel_event=cancel,
        )

    # -- fallback ----------------------------------------------------------

    async def handle_flash_fallback(
        self, auth_type: str | None, error: BaseException
    ) -> str | None:
        """Model to retry with after persistent 429/quota errors, if any."""
        if auth_type == AuthType.QWEN_OAUTH:
            return self.handle_qwen_oauth_error(error)
        if auth_type != AuthType.LOGIN_WITH_GOOGLE:
            return None

        current = self.model
        fallback = DEFAULT_GEMINI_FLASH_MODEL
        if current == fallback:
            return None
        if self._fallback_handler is not None:
            try:
                accepted = await self._fallback_handler(current, fallback, error)
            except Exception as e:
                logger.warning("Flash fallback handler failed: %s", e)
                return None
            if not accepted:
                return None

        logger.warning("Switching from %s to %s after repeated rate limiting", current, fallback)
        self.model = fallback
        self.fallback_mode = True
        return fallback

    def handle_qwen_oauth_error(self, error: BaseException) -> None:
        """Qwen never switches models; classify and log only."""
        if is_qwen_quota_exceeded_error(error):
            logger.warning("Qwen quota exceeded: %s", get_error_message(error))
        elif is_auth_error(error):
            logger.warning("Qwen OAuth authentication error: %s", get_error_message(error))
        elif is_qwen_throttling_error(error) or get_error_status(error) == 429:
            logger.info("Qwen API rate limited: %s", get_error_message(error))
        return None

    # -- compaction --------------------------------------------------------

    async def try_compress_chat(
        self, prompt_id: str = "", force: bool = False
    ) -> CompressionResult | None:
        outcome = await self._compactor.try_compress(
            self._history, self._generator, self.model, force=force, prompt_id=prompt_id
        )
        if outcome is None:
            return None
        self._history, result = outcome
        return result

    async def _request_token_count(self, request: Message) -> int | None:
        system = Message(
            role=ROLE_SYSTEM,
            parts=[Part(text=t) for t in (self.system_instruction, *self.environment) if t],
        )
        contents = [system, *self._history, request]
        try:
            return await self._generator.count_tokens(
                GenerationRequest(model=self.model, contents=contents)
            )
        except (DongCodeError, httpx.HTTPError) as e:
            logger.warning("Could not count session tokens: %s", e)
            return None

    # -- streaming turn ------------------------------------------------------

    async def send_message_stream(
        self,
        message: Message | str,
        prompt_id: str,
        cancel: asyncio.Event | None = None,
        turns: int = MAX_TURNS,
    ) -> AsyncIterator[SessionEvent]:
        """Send a user message and stream the resulting events.

        The model may be asked to continue on its own ("Please continue.")
        up to ``turns`` times in total.
        """
        if self._last_prompt_id != prompt_id:
            self.loop_detector.reset()
            self._last_prompt_id = prompt_id

        request = Message.user(message) if isinstance(message, str) else message
        initial_model = self.model
        remaining = min(turns, self.MAX_TURNS)

        while remaining > 0:
            remaining -= 1

            self.session_turn_count += 1
            max_turns = self._settings.max_session_turns
            if max_turns > 0 and self.session_turn_count > max_turns:
                yield SessionEvent(
                    SessionEventType.MAX_SESSION_TURNS,
                    {"current": self.session_turn_count, "limit": max_turns},
                    prompt_id,
                )
                return

            try:
                compressed = await self.try_compress_chat(prompt_id)
            except (DongCodeError, httpx.HTTPError) as e:
                yield SessionEvent.error(
                    get_error_message(e), "compression", get_error_status(e), prompt_id
                )
                return
            if compressed is not None:
                yield SessionEvent.compressed(compressed, prompt_id)

            token_limit = self._settings.session_token_limit
            if token_limit > 0:
                total = await self._request_token_count(request)
                if total is not None and total > token_limit:
                    yield SessionEvent(
                        SessionEventType.SESSION_TOKEN_LIMIT_EXCEEDED,
                        {
                            "current": total,
                            "limit": token_limit,
                            "message": (
                                f"Session token limit exceeded: {total} tokens > "
                                f"{token_limit} limit. Please start a new session or "
                                "increase the session token limit."
                            ),
                        },
                        prompt_id,
                    )
                    return

            pending_calls = 0
            failed = False
            async with aclosing(self._run_turn(request, prompt_id, cancel)) as events:
                async for event in events:
                    if event.type in (
                        SessionEventType.CONTENT,
                        SessionEventType.TOOL_CALL_REQUEST,
                    ) and self.loop_detector.add_and_check(event):
                        yield SessionEvent(SessionEventType.LOOP_DETECTED, None, prompt_id)
                        return
                    if event.type == SessionEventType.TOOL_CALL_REQUEST:
                        pending_calls += 1
                    elif event.type == SessionEventType.ERROR:
                        failed = True
                    yield event

            if failed or pending_calls or (cancel is not None and cancel.is_set()):
                return
            if self.model != initial_model:
                yield SessionEvent(
                    SessionEventType.MODEL_SWITCHED,
                    {"from": initial_model, "to": self.model},
                    prompt_id,
                )
                return
            if not self._settings.next_speaker_check_enabled or remaining <= 0:
                return

            verdict = await check_next_speaker(self._history, self.generate_json)
            if not verdict or verdict.get("next_speaker") != "model":
                return
            logger.debug("Model continues (prompt_id=%s): %s", prompt_id, verdict.get("reasoning"))
            request = Message.user(CONTINUE_PROMPT)

    async def _run_turn(
        self,
        request: Message,
        prompt_id: str,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[SessionEvent]:
        """One model call. History is committed only when the call produced output."""
        contents = [*self._history, request]

        async def open_stream() -> tuple[GenerationResponse | None, AsyncIterator[GenerationResponse]]:
            # errors before the first chunk go through the retry policy
            stream = self._generator.generate_stream(self._request(contents), prompt_id)
            first = await anext(stream, None)
            return first, stream

        model_parts: list[Part] = []
        finish_reason: str | None = None
        usage: UsageMetadata | None = None
        stream: AsyncIterator[GenerationResponse] | None = None

        try:
            first, stream = await retry_with_backoff(open_stream, self._retry_options(cancel))
            chunk = first
            while chunk is not None:
                for part in chunk.parts:
                    if part.thought:
                        continue
                    if part.function_call is not None:
                        model_parts.append(part)
                        yield SessionEvent.tool_call(part.function_call, prompt_id)
                    elif part.text:
                        model_parts.append(Part(text=part.text))
                        yield SessionEvent.content(part.text, prompt_id)
                finish_reason = chunk.finish_reason or finish_reason
                usage = chunk.usage or usage
                if cancel is not None and cancel.is_set():
                    break
                try:
                    chunk = await cancellable(_next_chunk(stream), cancel)
                except CancelledError:
                    break
        except (DongCodeError, httpx.HTTPError) as e:
            logger.warning("Turn failed (prompt_id=%s): %s", prompt_id, e)
            self._commit(request, model_parts)
            yield SessionEvent.error(get_error_message(e), "generate", get_error_status(e), prompt_id)
            return
        finally:
            if stream is not None and hasattr(stream, "aclose"):
                await stream.aclose()

        self._commit(request, model_parts)
        yield SessionEvent.finished(finish_reason, usage, prompt_id)

    def _commit(self, request: Message, model_parts: list[Part]) -> None:
        if not model_parts:
            return
        self._history.append(request)
        self._history.append(Message(role=ROLE_MODEL, parts=_merge_parts(model_parts)))

    # -- one-shot calls ------------------------------------------------------

    async def generate_json(
        self,
        contents: list[Message],
        schema: dict[str, Any],
        model: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Structured output via a forced ``respond_in_schema`` function call."""
        declaration = FunctionDeclaration(
            name=JSON_FUNCTION_NAME,
            description="Provide the response in provided schema",
            parameters=schema,
        )
        config = GenerationConfig(temperature=0.0, top_p=1.0)

        async def call() -> GenerationResponse:
            return await self._generator.generate(
                self._request(contents, model=model, config=config, tools=[declaration])
            )

        result = await retry_with_backoff(call, self._retry_options(cancel))
        for fc in result.function_calls:
            if fc.name == JSON_FUNCTION_NAME:
                return fc.args
        return {}

    async def generate_content(
        self,
        contents: list[Message],
        config: GenerationConfig | None = None,
        model: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> GenerationResponse:
        async def call() -> GenerationResponse:
            return await self._generator.generate(self._request(contents, model=model, config=config))

        return await retry_with_backoff(call, self._retry_options(cancel))

    async def generate_embedding(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = await self._generator.embed(texts, self._settings.embedding_model)
        return validate_embeddings(texts, vectors)
