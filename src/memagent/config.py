import json
from typing import Any, Dict, List, Optional

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TRUTHY = {"1", "true", "yes", "on"}
MEMORY_MODES = ("fast", "balanced", "deep")
PROVIDERS = ("anthropic", "openai")

# field -> (fallback, min, max)
INT_BOUNDS = {
    "EVIDENCE_LIMIT": (12, 1, 50),
    "MAX_TOKENS": (900, 128, 2048),
    "MAX_ROUNDS": (8, 1, 8),
    "LLM_TIMEOUT_MS": (120_000, 1_000, 600_000),
}


def truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value if value is not None else "").strip().lower() in TRUTHY


def clamp_int(value: Any, fallback: int, low: int, high: int) -> int:
    """Parse an int and clamp it into [low, high]; unparseable input yields the fallback."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        n = value if isinstance(value, int) else int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return max(low, min(high, n))


def parse_history(raw: str) -> List[Dict[str, str]]:
    """Decode HISTORY_JSON, keeping only well-formed user/assistant string turns."""
    try:
        data = json.loads(raw) if raw and raw.strip() else []
    except ValueError:
        return []
    if not isinstance(data, list):
        return []
    return [
        {"role": m["role"], "content": m["content"]}
        for m in data
        if isinstance(m, dict)
        and m.get("role") in ("user", "assistant")
        and isinstance(m.get("content"), str)
    ]


class Settings(BaseSettings):
    """Run configuration.

    Every field is total: malformed values fall back to their defaults so that
    loading configuration can never prevent the run from reporting a result.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Run parameters
    SESSION_ID: str = Field("", description="Agent session id")
    PROJECT_ID: str = Field("", description="Project whose memories are searched")
    PROMPT: str = Field("", description="User question for this run")
    API_BASE_URL: str = Field("", description="Knowledge service base URL")
    AUTHORIZATION: SecretStr | None = Field(None, description="Forwarded Authorization header value")
    HISTORY_JSON: str = Field("", description="Prior turns as a JSON list of {role, content}")

    # Feature toggles
    DRY_RUN: bool = Field(False, description="Retrieval only, skip synthesis")
    INCLUDE_ASSETS: bool = Field(False, description="Include linked asset metadata in retrieval")
    MEMORY_MODE: str = Field("balanced", description="Memory retrieval profile: fast, balanced or deep")
    EVIDENCE_LIMIT: int = Field(12, description="Memories per retrieval (1-50)")
    MAX_TOKENS: int = Field(900, description="Token budget per model round (128-2048)")
    MAX_ROUNDS: int = Field(8, description="Upper bound on model rounds (1-8)")

    # Model provider
    LLM_PROVIDER: str = Field("anthropic", description="anthropic or openai")
    LLM_TIMEOUT_MS: int = Field(120_000, description="Deadline for one model call")
    ANTHROPIC_API_KEY: SecretStr | None = Field(None, description="Anthropic API Key")
    ANTHROPIC_MODEL: str = Field("", description="Model override; empty uses the client default")
    ANTHROPIC_VERSION: str = Field("", description="anthropic-version header override")
    ANTHROPIC_BASE_URL: str = Field("https://api.anthropic.com", description="Messages API origin")
    OPENAI_API_KEY: SecretStr | None = Field(None, description="OpenAI API Key")
    OPENAI_MODEL_AGENT: str = Field("gpt-5", description="Model for agentic reasoning")

    # Observability
    PROGRESS_PATH: Optional[str] = Field(None, description="Progress event file; stderr when unset")
    LOG_LEVEL: str = Field("INFO", description="Root log level")

    @field_validator("EVIDENCE_LIMIT", "MAX_TOKENS", "MAX_ROUNDS", "LLM_TIMEOUT_MS", mode="before")
    @classmethod
    def clamp_bounds(cls, v, info: ValidationInfo):
        fallback, low, high = INT_BOUNDS[info.field_name]
        return clamp_int(v, fallback, low, high)

    @field_validator("DRY_RUN", "INCLUDE_ASSETS", mode="before")
    @classmethod
    def parse_truthy(cls, v):
        return truthy(v)

    @field_validator(
        "SESSION_ID", "PROJECT_ID", "PROMPT", "API_BASE_URL",
        "HISTORY_JSON", "ANTHROPIC_MODEL", "ANTHROPIC_VERSION",
        mode="before",
    )
    @classmethod
    def strip_text(cls, v):
        return str(v if v is not None else "").strip()

    @field_validator("MEMORY_MODE", mode="before")
    @classmethod
    def known_memory_mode(cls, v):
        s = str(v or "").strip().lower()
        return s if s in MEMORY_MODES else "balanced"

    @field_validator("LLM_PROVIDER", mode="before")
    @classmethod
    def known_provider(cls, v):
        s = str(v or "").strip().lower()
        return s if s in PROVIDERS else "anthropic"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def known_log_level(cls, v):
        s = str(v or "").strip().upper()
        return s if s in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL") else "INFO"

    @field_validator("AUTHORIZATION", "ANTHROPIC_API_KEY", "OPENAI_API_KEY", mode="before")
    @classmethod
    def blank_secret_is_none(cls, v):
        if v is None:
            return None
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        s = str(v).strip()
        return s or None

    def secret(self, name: str) -> str:
        value = getattr(self, name)
        return value.get_secret_value() if value else ""

    @property
    def history(self) -> List[Dict[str, str]]:
        return parse_history(self.HISTORY_JSON)

    @property
    def provider_key_name(self) -> str:
        return "OPENAI_API_KEY" if self.LLM_PROVIDER == "openai" else "ANTHROPIC_API_KEY"

    @property
    def provider_model(self) -> str:
        return self.OPENAI_MODEL_AGENT if self.LLM_PROVIDER == "openai" else self.ANTHROPIC_MODEL


# Singleton instance
settings = Settings()
