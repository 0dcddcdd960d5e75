"""Decide whether the model should keep talking after its last reply."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from dongcode.core.models import ROLE_MODEL, Message
from dongcode.errors import DongCodeError

logger = logging.getLogger(__name__)

CHECK_PROMPT = """\
Analyze *only* the content and structure of your immediately preceding response (your last turn in the conversation history). Based *strictly* on that response, determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1. **Model Continues:** If your last response explicitly states an immediate next action *you* intend to take (e.g., "Next, I will...", "Now I'll process..."), or if the response seems clearly incomplete (cut off mid-thought), then the **'model'** should speak next.
2. **Question to User:** If your last response ends with a direct question addressed *to the user*, then the **'user'** should speak next.
3. **Waiting for User:** If your last response completed a thought, statement, or task and meets neither rule above, the **'user'** should speak next.

**Output Format:**
Respond *only* in JSON with the fields `reasoning` (a brief explanation) and `next_speaker` ('user' or 'model')."""

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Brief explanation justifying the 'next_speaker' choice.",
        },
        "next_speaker": {
            "type": "string",
            "enum": ["user", "model"],
            "description": "Who should speak next based only on the preceding turn.",
        },
    },
    "required": ["reasoning", "next_speaker"],
}

GenerateJson = Callable[[list[Message], dict[str, Any]], Awaitable[dict[str, Any]]]


async def check_next_speaker(
    history: list[Message], generate_json: GenerateJson
) -> dict[str, Any] | None:
    """Return ``{"reasoning", "next_speaker"}`` or None when undecidable.

    Cheap structural checks run first; the model is only asked when the
    last turn is a non-empty model reply.
    """
    if not history:
        return None
    last = history[-1]

    if last.is_function_response():
        return {
            "reasoning": "The last message was a function response, so the model should speak next.",
            "next_speaker": "model",
        }
    if last.role != ROLE_MODEL:
        return None
    if not last.parts or all(not p.text and p.function_call is None for p in last.parts):
        return {
            "reasoning": "The last message was an empty model response, so the model should speak next.",
            "next_speaker": "model",
        }

    try:
        result = await generate_json([*history, Message.user(CHECK_PROMPT)], RESPONSE_SCHEMA)
    except (DongCodeError, httpx.HTTPError) as e:
        logger.warning("Next speaker check failed: %s", e)
        return None

    if result.get("next_speaker") in ("user", "model"):
        return result
    return None
