"""Canonical, provider-neutral data model.

Adapters translate these shapes to and from each backend's wire format;
nothing here touches the network.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_MODEL = "model"

# Finish reasons (Gemini vocabulary, shared by all adapters)
FINISH_STOP = "STOP"
FINISH_MAX_TOKENS = "MAX_TOKENS"
FINISH_SAFETY = "SAFETY"
FINISH_UNSPECIFIED = "FINISH_REASON_UNSPECIFIED"


@dataclass
class FunctionCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionResponse:
    id: str
    name: str
    response: dict[str, Any] = field(default_factory=dict)


@dataclass
class Part:
    """One element of a message: text, a function call or a function response."""

    text: str | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    thought: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.function_call is not None:
            fc = self.function_call
            return {"functionCall": {"id": fc.id, "name": fc.name, "args": fc.args}}
        if self.function_response is not None:
            fr = self.function_response
            return {
                "functionResponse": {"id": fr.id, "name": fr.name, "response": fr.response}
            }
        data: dict[str, Any] = {"text": self.text or ""}
        if self.thought:
            data["thought"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Part:
        if "functionCall" in data:
            fc = data["functionCall"] or {}
            return cls(function_call=FunctionCall(
                id=fc.get("id") or "",
                name=fc.get("name", ""),
                args=fc.get("args") or {},
            ))
        if "functionResponse" in data:
            fr = data["functionResponse"] or {}
            return cls(function_response=FunctionResponse(
                id=fr.get("id") or "",
                name=fr.get("name", ""),
                response=fr.get("response") or {},
            ))
        return cls(text=data.get("text", ""), thought=bool(data.get("thought", False)))


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # system | user | model
    parts: list[Part] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=ROLE_USER, parts=[Part(text=text)])

    @classmethod
    def model(cls, text: str) -> Message:
        return cls(role=ROLE_MODEL, parts=[Part(text=text)])

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text and not p.thought)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def function_responses(self) -> list[FunctionResponse]:
        return [p.function_response for p in self.parts if p.function_response is not None]

    def is_function_response(self) -> bool:
        """True if every part is a function response (a tool-result turn)."""
        return bool(self.parts) and all(p.function_response is not None for p in self.parts)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "parts": [p.to_dict() for p in self.parts]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data.get("role", ROLE_USER),
            parts=[Part.from_dict(p) for p in data.get("parts", [])],
        )

    def serialized_length(self) -> int:
        """Length of the JSON encoding, used for character-volume budgeting."""
        return len(json.dumps(self.to_dict()))


@dataclass
class FunctionDeclaration:
    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


@dataclass
class GenerationConfig:
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    response_schema: dict[str, Any] | None = None
    response_mime_type: str | None = None


@dataclass
class GenerationRequest:
    """A single model call in canonical form."""

    model: str
    contents: list[Message]
    system_instruction: str | None = None
    tools: list[FunctionDeclaration] = field(default_factory=list)
    config: GenerationConfig = field(default_factory=GenerationConfig)


@dataclass
class UsageMetadata:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class GenerationResponse:
    """Result of a model call, or one streamed chunk of it."""

    parts: list[Part] = field(default_factory=list)
    finish_reason: str | None = None
    usage: UsageMetadata | None = None
    response_id: str | None = None
    model_version: str | None = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text and not p.thought)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]


@dataclass
class CompressionResult:
    original_token_count: int
    new_token_count: int
