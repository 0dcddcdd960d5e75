"""Events yielded by ChatSession.send_message_stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from dongcode.core.models import CompressionResult, FunctionCall, UsageMetadata


class SessionEventType(StrEnum):
    CONTENT = "content"
    TOOL_CALL_REQUEST = "tool_call_request"
    FINISHED = "finished"
    CHAT_COMPRESSED = "chat_compressed"
    MAX_SESSION_TURNS = "max_session_turns"
    SESSION_TOKEN_LIMIT_EXCEEDED = "session_token_limit_exceeded"
    LOOP_DETECTED = "loop_detected"
    MODEL_SWITCHED = "model_switched"
    ERROR = "error"


@dataclass
class SessionEvent:
    """A typed event from a session turn.

    ``value`` depends on ``type``: text for CONTENT, a FunctionCall for
    TOOL_CALL_REQUEST, a CompressionResult for CHAT_COMPRESSED, a dict for
    the limit, finish and error events.
    """

    type: SessionEventType
    value: Any = None
    prompt_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def content(cls, text: str, prompt_id: str = "") -> SessionEvent:
        return cls(SessionEventType.CONTENT, text, prompt_id)

    @classmethod
    def tool_call(cls, call: FunctionCall, prompt_id: str = "") -> SessionEvent:
        return cls(SessionEventType.TOOL_CALL_REQUEST, call, prompt_id)

    @classmethod
    def finished(
        cls, reason: str | None, usage: UsageMetadata | None, prompt_id: str = ""
    ) -> SessionEvent:
        return cls(
            SessionEventType.FINISHED,
            {"reason": reason, "usage": usage},
            prompt_id,
        )

    @classmethod
    def compressed(cls, result: CompressionResult, prompt_id: str = "") -> SessionEvent:
        return cls(SessionEventType.CHAT_COMPRESSED, result, prompt_id)

    @classmethod
    def error(cls, message: str, stage: str, status: int | None = None, prompt_id: str = "") -> SessionEvent:
        return cls(
            SessionEventType.ERROR,
            {"message": message, "stage": stage, "status": status},
            prompt_id,
        )
