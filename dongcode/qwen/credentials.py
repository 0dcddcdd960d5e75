"""On-disk cache for Qwen OAuth credentials (~/.qwen/oauth_creds.json)."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

# Token is treated as expired this long before its real expiry
TOKEN_REFRESH_BUFFER_MS = 30 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


class QwenCredentials(BaseModel):
    """OAuth token material. Field names match the cache file exactly."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    resource_url: str | None = None
    expiry_date: int | None = None  # epoch ms

    def is_valid(self, at_ms: int | None = None) -> bool:
        """False once within TOKEN_REFRESH_BUFFER_MS of expiry (or no expiry known)."""
        if not self.access_token or self.expiry_date is None:
            return False
        current = now_ms() if at_ms is None else at_ms
        return current < self.expiry_date - TOKEN_REFRESH_BUFFER_MS


class CredentialStore:
    """Loads, saves and clears the single credential record for Qwen."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> QwenCredentials | None:
        """Cached credentials, or None when missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return QwenCredentials.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("Ignoring unreadable Qwen credentials at %s: %s", self.path, e)
            return None

    def save(self, credentials: QwenCredentials) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(credentials.model_dump(), indent=2) + "\n",
            encoding="utf-8",
        )
        self.path.chmod(0o600)
        logger.debug("Cached Qwen credentials to %s", self.path)

    def clear(self) -> None:
        """Remove the cache file. Missing file counts as cleared."""
        try:
            self.path.unlink()
            logger.info("Cached Qwen credentials cleared")
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Failed to clear cached Qwen credentials: %s", e)
