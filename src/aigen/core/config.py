"""Engine settings loaded from the environment."""

import json
import os
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_POLICY_ERROR_PATTERNS = [
    "content policy",
    "safety",
    "moderation",
    "blocked",
    "inappropriate",
]

DEFAULT_NETWORK_ERROR_PATTERNS = [
    "network",
    "timeout",
    "socket",
    "econnrefused",
    "enotfound",
    "fetch failed",
    "connection",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env"), env_file_encoding="utf-8")

    # App
    APP_NAME: str = "aigen"
    ENVIRONMENT: str = "development"  # development | production | test
    LOG_LEVEL: str | None = None

    # Queue polling
    POLL_INTERVAL_SECONDS: float = 3.0
    MAX_POLL_SECONDS: float = 600.0
    MAX_CONSECUTIVE_POLL_ERRORS: int = 5
    RESUME_POLL_INTERVAL_SECONDS: float = 5.0

    # Orchestration
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    LIFECYCLE_COMPLETE_DELAY_SECONDS: float = 0.5
    LIFECYCLE_RESET_DELAY_SECONDS: float = 1.0

    # Error classification vocabularies
    # Accept list or CSV/JSON string from env; normalized to list[str] by validators
    POLICY_ERROR_PATTERNS: list[str] | str = DEFAULT_POLICY_ERROR_PATTERNS
    NETWORK_ERROR_PATTERNS: list[str] | str = DEFAULT_NETWORK_ERROR_PATTERNS

    # Connectivity probe
    CONNECTIVITY_CHECK_URL: str = "https://clients3.google.com/generate_204"
    CONNECTIVITY_TIMEOUT_SECONDS: float = 3.0

    # Fal provider; FAL_KEY is optional, prefer storing secrets in .env.dev/.env.prod
    FAL_KEY: str | None = None
    FAL_RUN_BASE_URL: str = "https://fal.run"
    FAL_QUEUE_BASE_URL: str = "https://queue.fal.run"

    @field_validator("ENVIRONMENT")
    @classmethod
    def _validate_environment(cls, v: str) -> str:
        env = v.strip().lower()
        if env not in {"development", "production", "test"}:
            raise ValueError(
                "ENVIRONMENT must be 'development', 'production', or 'test'"
            )
        return env

    @field_validator("POLICY_ERROR_PATTERNS", "NETWORK_ERROR_PATTERNS", mode="before")
    @classmethod
    def assemble_patterns(cls, v: object) -> list[str]:
        """Allow list, CSV string, or JSON array string for pattern sets."""
        if isinstance(v, list):
            return [str(i).strip().lower() for i in v if str(i).strip()]
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    parsed = json.loads(s)
                except json.JSONDecodeError as e:
                    raise ValueError(
                        "Error patterns must be a CSV list or JSON array string"
                    ) from e
                if not isinstance(parsed, list):
                    raise ValueError("Error pattern JSON must be a list")
                return [str(i).strip().lower() for i in parsed if str(i).strip()]
            # CSV fallback
            return [i.strip().lower() for i in s.split(",") if i.strip()]
        raise ValueError("Invalid error pattern type; expected str or list[str]")

    @field_validator(
        "POLL_INTERVAL_SECONDS",
        "MAX_POLL_SECONDS",
        "RESUME_POLL_INTERVAL_SECONDS",
        "GENERATION_TIMEOUT_SECONDS",
        "CONNECTIVITY_TIMEOUT_SECONDS",
    )
    @classmethod
    def _require_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator(
        "LIFECYCLE_COMPLETE_DELAY_SECONDS", "LIFECYCLE_RESET_DELAY_SECONDS"
    )
    @classmethod
    def _require_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("MAX_CONSECUTIVE_POLL_ERRORS")
    @classmethod
    def _require_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def policy_patterns(self) -> list[str]:
        # The union type allows a stray string at runtime
        if isinstance(self.POLICY_ERROR_PATTERNS, str):
            return self.assemble_patterns(self.POLICY_ERROR_PATTERNS)
        return list(self.POLICY_ERROR_PATTERNS)

    @property
    def network_patterns(self) -> list[str]:
        if isinstance(self.NETWORK_ERROR_PATTERNS, str):
            return self.assemble_patterns(self.NETWORK_ERROR_PATTERNS)
        return list(self.NETWORK_ERROR_PATTERNS)


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in {"development", "production", "test"}:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    if env == "production":
        env_file = ".env.prod"
    elif env == "development":
        env_file = ".env.dev"
    else:
        # test environment - no env file needed, use defaults
        env_file = ""

    if env_file and not os.path.exists(env_file):
        env_file = ""

    # The Settings initializer accepts a runtime-only `_env_file` kwarg used by
    # pydantic-settings; mypy's stub doesn't allow this call argument.
    return Settings(_env_file=env_file or None)  # type: ignore[call-arg]
