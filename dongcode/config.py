"""Settings via pydantic-settings with DONG_ env prefix.

Provider API keys use validation_alias to read the same unprefixed env vars
(GEMINI_API_KEY, OPENAI_API_KEY, ...) that other tooling uses, so one shell
environment drives every backend.
"""

from enum import StrEnum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GEMINI_MODEL = "gemini-2.5-pro"
DEFAULT_GEMINI_FLASH_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_EMBEDDING_MODEL = "gemini-embedding-001"
DEFAULT_QWEN_MODEL = "qwen3-coder-plus"


class AuthType(StrEnum):
    LOGIN_WITH_GOOGLE = "oauth-personal"
    USE_GEMINI = "gemini-api-key"
    USE_VERTEX_AI = "vertex-ai"
    CLOUD_SHELL = "cloud-shell"
    USE_OPENAI = "openai"
    QWEN_OAUTH = "qwen-oauth"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DONG_", env_file=".env", populate_by_name=True
    )

    # Active backend
    model: str = DEFAULT_GEMINI_MODEL
    auth_type: AuthType = AuthType.USE_GEMINI
    embedding_model: str = DEFAULT_GEMINI_EMBEDDING_MODEL
    log_level: str = "info"

    # Provider credentials (unprefixed, shared with other tools)
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")
    google_api_key: str = Field("", validation_alias="GOOGLE_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(
        "https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL"
    )
    openai_model: str = Field("", validation_alias="OPENAI_MODEL")
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    # Bearer token for the native provider under end-user OAuth
    google_access_token: str = Field("", validation_alias="GOOGLE_ACCESS_TOKEN")

    # Transport
    proxy: str | None = None
    timeout: float = 120.0  # seconds, read timeout for generation calls
    connect_timeout: float = 10.0
    max_retries: int = 5

    # Sampling (None = let request/defaults decide)
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None

    # Session limits (0 = unlimited)
    max_session_turns: int = 0
    session_token_limit: int = 0

    # Compression
    compression_token_threshold: float = 0.7  # fraction of model token limit
    compression_preserve_threshold: float = 0.3  # fraction of history kept

    # Auto-continuation via next-speaker check
    next_speaker_check_enabled: bool = True

    # Interaction logging (OpenAI-compatible backends)
    enable_openai_logging: bool = False
    openai_log_dir: str = "~/.qwen/logs/openai"

    # Qwen OAuth
    qwen_credentials_path: str = "~/.qwen/oauth_creds.json"
    qwen_oauth_base_url: str = "https://chat.qwen.ai"
    no_browser: bool = Field(False, validation_alias="NO_BROWSER")

    @model_validator(mode="after")
    def _validate_compression(self) -> "Settings":
        for name in ("compression_token_threshold", "compression_preserve_threshold"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise ValueError(f"{name} must be between 0 and 1 (got {value})")
        return self

    @property
    def sampling_params(self) -> dict[str, float | int]:
        """Configured sampling parameters, omitting unset ones."""
        params: dict[str, float | int] = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.top_p is not None:
            params["top_p"] = self.top_p
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        return params

    @property
    def effective_model(self) -> str:
        """Model id to use for the configured auth type."""
        if self.auth_type == AuthType.USE_OPENAI and self.openai_model:
            return self.openai_model
        if self.auth_type == AuthType.QWEN_OAUTH and self.model == DEFAULT_GEMINI_MODEL:
            return DEFAULT_QWEN_MODEL
        return self.model
