"""History compaction: replace old turns with a model-written state snapshot.

Compaction runs before a turn when the history's token count reaches
``compression_token_threshold`` of the model's context window. The oldest
``1 - compression_preserve_threshold`` of the history (by serialized size)
is summarised; the rest is kept verbatim.
"""

from __future__ import annotations

import logging
import time

import httpx

from dongcode.config import Settings
from dongcode.core.generator import ContentGenerator
from dongcode.core.models import (
    ROLE_MODEL,
    CompressionResult,
    GenerationRequest,
    Message,
)
from dongcode.core.token_limits import token_limit
from dongcode.errors import DongCodeError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompt
# ------------------------------------------------------------------

COMPRESSION_PROMPT = """\
You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill the entire history into a concise, structured XML snapshot. This snapshot is CRITICAL, as it will become the agent's *only* memory of the past. The agent will resume its work based solely on this snapshot. All crucial details, plans, errors, and user directives MUST be preserved.

First, you will think through the entire history in a private <scratchpad>. Review the user's overall goal, the agent's actions, tool outputs, file modifications, and any unresolved questions. Identify every piece of information that is essential for future actions.

After your reasoning is complete, generate the final <state_snapshot> XML object. Be incredibly dense with information. Omit any irrelevant conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- A single, concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions, and constraints the agent must remember. Use bullet points. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files that have been created, read, modified, or deleted, with their status. -->
    </file_system_state>

    <recent_actions>
        <!-- The last few significant agent actions and their outcomes. Facts only. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan. Mark completed steps. -->
    </current_plan>
</state_snapshot>"""

SNAPSHOT_REQUEST = "First, reason in your scratchpad. Then, generate the <state_snapshot>."
SNAPSHOT_ACK = "Got it. Thanks for the additional context!"


def find_cut_index(history: list[Message], preserve_fraction: float) -> int:
    """Index of the first message kept verbatim.

    The messages before it hold at least ``1 - preserve_fraction`` of the
    history's serialized size.
    """
    if not 0 < preserve_fraction < 1:
        raise ValueError("preserve_fraction must be between 0 and 1")
    lengths = [m.serialized_length() for m in history]
    target = sum(lengths) * (1 - preserve_fraction)
    so_far = 0
    for i, length in enumerate(lengths):
        so_far += length
        if so_far >= target:
            return i + 1
    return len(lengths)


def advance_to_turn_start(history: list[Message], index: int) -> int:
    """Move ``index`` forward past model replies and tool results."""
    while index < len(history) and (
        history[index].role == ROLE_MODEL or history[index].is_function_response()
    ):
        index += 1
    return index


class HistoryCompactor:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def _count(
        self, generator: ContentGenerator, model: str, history: list[Message]
    ) -> int | None:
        try:
            return await generator.count_tokens(GenerationRequest(model=model, contents=history))
        except (DongCodeError, httpx.HTTPError) as e:
            logger.warning("Could not determine token count for model %s: %s", model, e)
            return None

    async def try_compress(
        self,
        history: list[Message],
        generator: ContentGenerator,
        model: str,
        *,
        force: bool = False,
        prompt_id: str = "",
    ) -> tuple[list[Message], CompressionResult] | None:
        """Return (new_history, result), or None when nothing was compressed.

        The caller's history is never mutated.
        """
        if not history:
            return None

        original = await self._count(generator, model, history)
        if original is None:
            return None
        threshold = self._settings.compression_token_threshold * token_limit(model)
        if not force and original < threshold:
            return None

        cut = find_cut_index(history, self._settings.compression_preserve_threshold)
        cut = advance_to_turn_start(history, cut)
        to_compress, to_keep = history[:cut], history[cut:]
        if not to_compress:
            return None

        start = time.monotonic()
        response = await generator.generate(
            GenerationRequest(
                model=model,
                contents=[*to_compress, Message.user(SNAPSHOT_REQUEST)],
                system_instruction=COMPRESSION_PROMPT,
            ),
            prompt_id,
        )
        summary = response.text
        if not summary.strip():
            logger.warning("Compression produced an empty summary, keeping history")
            return None

        new_history = [Message.user(summary), Message.model(SNAPSHOT_ACK), *to_keep]
        new_count = await self._count(generator, model, new_history)
        if new_count is None:
            return None

        logger.info(
            "Compressed history: %d messages -> %d, %d -> %d tokens (%d ms)",
            len(history),
            len(new_history),
            original,
            new_count,
            int((time.monotonic() - start) * 1000),
        )
        return new_history, CompressionResult(original, new_count)
