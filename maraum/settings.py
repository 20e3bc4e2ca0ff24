import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

# Channels
CHANNEL_MAIN = "main"
CHANNEL_HELPER = "helper"
CHANNELS = (CHANNEL_MAIN, CHANNEL_HELPER)

CONTENT_MAX_CHARS = 8000
COMPLETION_MARKER = "[SCENARIO_COMPLETE]"


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name, "1" if default else "0").strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_delays(name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        delays = tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError:
        return default
    return delays or default


@dataclass(frozen=True)
class ChannelConfig:
    """Generation settings for one channel, resolved once per request."""

    channel: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delays_seconds: Tuple[float, ...] = (1.0, 2.0, 4.0)

    def delay_after(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        if not self.delays_seconds:
            return 0.0
        idx = min(attempt - 1, len(self.delays_seconds) - 1)
        return self.delays_seconds[max(idx, 0)]


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    seed_scenarios: bool
    log_level: str
    cors_allow_origins: Tuple[str, ...]
    channels: Dict[str, ChannelConfig]
    retry: RetryPolicy

    def channel_config(self, channel: str) -> ChannelConfig:
        try:
            return self.channels[channel]
        except KeyError:
            raise ValueError(f"unknown channel: {channel!r}") from None


def load_settings() -> Settings:
    """Read settings from the environment.

    Defaults:
      - main: temperature 0.9, 2000 output tokens, 30s timeout
      - helper: temperature 0.7, 1000 output tokens, 20s timeout
      - retry: 3 attempts, 1s/2s/4s between attempts
    """
    channels = {
        CHANNEL_MAIN: ChannelConfig(
            channel=CHANNEL_MAIN,
            temperature=_env_float("AI_MAIN_TEMPERATURE", 0.9),
            max_tokens=_env_int("AI_MAIN_MAX_TOKENS", 2000),
            timeout_seconds=_env_float("AI_MAIN_TIMEOUT_SECONDS", 30.0),
        ),
        CHANNEL_HELPER: ChannelConfig(
            channel=CHANNEL_HELPER,
            temperature=_env_float("AI_HELPER_TEMPERATURE", 0.7),
            max_tokens=_env_int("AI_HELPER_MAX_TOKENS", 1000),
            timeout_seconds=_env_float("AI_HELPER_TIMEOUT_SECONDS", 20.0),
        ),
    }
    retry = RetryPolicy(
        max_attempts=max(1, _env_int("GENERATION_MAX_ATTEMPTS", 3)),
        delays_seconds=_env_delays("GENERATION_RETRY_DELAYS", (1.0, 2.0, 4.0)),
    )
    origins = tuple(
        o.strip() for o in _env_str("CORS_ALLOW_ORIGINS", "http://localhost:4321").split(",") if o.strip()
    )
    return Settings(
        database_url=_env_str("DATABASE_URL", "sqlite:///./maraum.db"),
        db_echo=_env_bool("DB_ECHO", False),
        seed_scenarios=_env_bool("SEED_SCENARIOS", True),
        log_level=_env_str("LOG_LEVEL", "INFO").upper() or "INFO",
        cors_allow_origins=origins,
        channels=channels,
        retry=retry,
    )


def provider_for(kind: str, explicit: Optional[str] = None) -> str:
    """Resolve the provider name for a client kind.

    Env precedence:
      - AI_PROVIDER_<KIND>
      - AI_PROVIDER
      - defaults to 'mock'
    """
    return (explicit or _env_str(f"AI_PROVIDER_{kind.upper()}") or _env_str("AI_PROVIDER") or "mock").lower()
