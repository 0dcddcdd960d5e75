"""Context window sizes per model."""

DEFAULT_TOKEN_LIMIT = 1_048_576

_TOKEN_LIMITS: dict[str, int] = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.5-pro-preview-05-06": 1_048_576,
    "gemini-2.5-pro-preview-06-05": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash-preview-05-20": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.5-flash-lite": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-2.0-flash-preview-image-generation": 32_000,
    "qwen3-coder-plus": 1_048_576,
    "qwen3-coder-flash": 1_048_576,
    "qwen-plus": 131_072,
    "qwen-turbo": 1_000_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_047_576,
}


def token_limit(model: str) -> int:
    """Context window for ``model``; unknown models get the default."""
    return _TOKEN_LIMITS.get(model.removeprefix("models/"), DEFAULT_TOKEN_LIMIT)
