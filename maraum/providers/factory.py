import json
import logging
from typing import Optional

from maraum.settings import _env_str, provider_for

from .base import GenerationClient
from .mock import MockGenerationClient

logger = logging.getLogger("maraum.gateway")


def get_generation_client(provider: Optional[str] = None, model: Optional[str] = None) -> GenerationClient:
    """Return a generation client based on env or explicit overrides.

    Env precedence:
      - AI_PROVIDER_CHAT
      - AI_PROVIDER
      - defaults to 'mock'
    Model from AI_CHAT_MODEL if not given. A provider whose key is missing
    falls back to mock.
    """
    prov = provider_for("chat", provider)
    mdl = model or _env_str("AI_CHAT_MODEL") or None

    if prov in ("mock", "test"):
        return MockGenerationClient(model=mdl)

    if prov in ("anthropic", "claude"):
        try:
            from .anthropic import AnthropicGenerationClient
            return AnthropicGenerationClient(model=mdl)
        except RuntimeError as e:
            _log_fallback(prov, e)
            return MockGenerationClient(model=mdl)

    if prov in ("openrouter", "router"):
        try:
            from .openrouter import OpenRouterGenerationClient
            return OpenRouterGenerationClient(model=mdl)
        except RuntimeError as e:
            _log_fallback(prov, e)
            return MockGenerationClient(model=mdl)

    # Unknown -> mock
    _log_fallback(prov, None)
    return MockGenerationClient(model=mdl)


def _log_fallback(provider: str, err: Optional[Exception]) -> None:
    logger.warning(json.dumps({
        "event": "provider_fallback_mock",
        "provider": provider,
        "reason": str(err) if err else "unknown_provider",
    }))
