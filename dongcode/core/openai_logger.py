"""File logger for OpenAI-compatible requests and responses.

One JSON file per interaction, named by timestamp. The logged request is
the payload actually sent upstream (after orphan cleanup and merging).
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from dongcode.core.models import GenerationResponse

logger = logging.getLogger(__name__)


class OpenAILogger:
    def __init__(self, log_dir: str | Path) -> None:
        self.log_dir = Path(log_dir).expanduser()

    async def log_interaction(
        self,
        request: dict[str, Any],
        response: GenerationResponse | None = None,
        error: BaseException | None = None,
    ) -> Path:
        """Write one interaction record and return its path."""
        now = datetime.now(UTC)
        record: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "request": request,
            "response": asdict(response) if response is not None else None,
            "error": None,
        }
        if error is not None:
            record["error"] = {"type": error.__class__.__name__, "message": str(error)}

        stamp = now.strftime("%Y%m%dT%H%M%S%f")
        path = self.log_dir / f"openai-{stamp}-{uuid.uuid4().hex[:8]}.json"
        await asyncio.to_thread(self._write, path, record)
        logger.debug("Logged OpenAI interaction to %s", path)
        return path

    def _write(self, path: Path, record: dict[str, Any]) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(record, indent=2, default=str), encoding="utf-8")

    def get_log_files(self, limit: int | None = None) -> list[Path]:
        """Log files, most recent first."""
        if not self.log_dir.exists():
            return []
        files = sorted(self.log_dir.glob("openai-*.json"), reverse=True)
        return files[:limit] if limit is not None else files

    def read_log_file(self, path: str | Path) -> dict[str, Any]:
        return json.loads(Path(path).read_text(encoding="utf-8"))
