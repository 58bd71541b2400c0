# config.py
# Settings from the environment (and a local .env file).
#
# Every variable is prefixed DEPLOY_PILOT_. Numbers that do not parse fall
# back to their defaults instead of failing the run.

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from deploy_pilot.models import ProviderConfig

LOGGER = logging.getLogger(__name__)

PREFIX = "DEPLOY_PILOT_"

# Checked in order when DEPLOY_PILOT_API_KEY is unset.
FALLBACK_KEY_VARS = ("OPENROUTER_API_KEY", "OPENAI_API_KEY", "GROQ_API_KEY")

MIN_RECOVERY_ATTEMPTS = 1
MAX_RECOVERY_ATTEMPTS = 5


def _env(name: str) -> str | None:
    value = os.getenv(PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _to_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("invalid_setting", extra={"setting": PREFIX + name, "value": raw, "default": default})
        return default


def _to_float(name: str, default: float | None) -> float | None:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("invalid_setting", extra={"setting": PREFIX + name, "value": raw, "default": default})
        return default


class Settings(BaseModel):
    provider: str = "openai-compatible"
    api_key: str | None = None
    base_url: str | None = None
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    max_steps: int = 50
    loop_timeout: float = 1800.0
    chat_timeout: float = 30.0
    max_retries: int = 5
    max_backoff: float = 120.0
    recovery_max_attempts: int = Field(default=3, ge=MIN_RECOVERY_ATTEMPTS, le=MAX_RECOVERY_ATTEMPTS)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        if load_env_file:
            load_dotenv()

        api_key = _env("API_KEY")
        if api_key is None:
            api_key = next((os.getenv(var) for var in FALLBACK_KEY_VARS if os.getenv(var)), None)

        max_tokens = _to_int("MAX_TOKENS", 0)
        attempts = _to_int("RECOVERY_MAX_ATTEMPTS", 3)

        return cls(
            provider=_env("PROVIDER") or "openai-compatible",
            api_key=api_key,
            base_url=_env("BASE_URL"),
            model=_env("MODEL") or "",
            temperature=_to_float("TEMPERATURE", None),
            max_tokens=max_tokens if max_tokens > 0 else None,
            max_steps=max(1, _to_int("MAX_STEPS", 50)),
            loop_timeout=_positive(_to_float("LOOP_TIMEOUT", 1800.0), 1800.0),
            chat_timeout=_positive(_to_float("CHAT_TIMEOUT", 30.0), 30.0),
            max_retries=max(0, _to_int("MAX_RETRIES", 5)),
            max_backoff=_positive(_to_float("MAX_BACKOFF", 120.0), 120.0),
            recovery_max_attempts=min(MAX_RECOVERY_ATTEMPTS, max(MIN_RECOVERY_ATTEMPTS, attempts)),
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        )

    def provider_config(self) -> ProviderConfig:
        return ProviderConfig(
            type=self.provider,
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            max_steps=self.max_steps,
            max_retries=self.max_retries,
            max_backoff=self.max_backoff,
            chat_timeout=self.chat_timeout,
            loop_timeout=self.loop_timeout,
        )


def _positive(value: float | None, default: float) -> float:
    return value if value is not None and value > 0 else default
