import os
from typing import Any, Dict, Optional, Sequence

import httpx

from maraum.settings import ChannelConfig

from .base import (
    FailureKind,
    GenerationClient,
    ProviderFailure,
    ProviderResult,
    ProviderSuccess,
    Turn,
    classify_status,
    turns_as_chat,
)

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"


class AnthropicGenerationClient(GenerationClient):
    provider_name: str = "anthropic"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_CHAT_MODEL") or "claude-3-5-haiku-20241022")
        api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is required for Anthropic provider")
        self._api_key = api_key

    async def generate(
        self,
        turns: Sequence[Turn],
        config: ChannelConfig,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ProviderResult:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
            "Content-Type": "application/json",
            "User-Agent": "maraum-api/0.1.0",
        }
        if request_id:
            headers["X-Request-Id"] = request_id
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "messages": turns_as_chat(turns),
        }
        if system:
            payload["system"] = system

        # The gateway bounds the whole attempt; this only stops a hung socket
        try:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                resp = await client.post(API_URL, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            return ProviderFailure(FailureKind.TIMEOUT, f"anthropic timeout: {type(e).__name__}")
        except httpx.HTTPError as e:
            return ProviderFailure(FailureKind.SERVER_ERROR, f"anthropic transport error: {type(e).__name__}")

        if resp.status_code >= 400:
            return ProviderFailure(
                classify_status(resp.status_code),
                f"anthropic error {resp.status_code}",
                status=resp.status_code,
            )

        try:
            data = resp.json()
            blocks = data.get("content") or []
            text = "".join(b.get("text") or "" for b in blocks if b.get("type") == "text")
            usage = data.get("usage") or {}
            return ProviderSuccess(
                text=text.strip(),
                input_units=int(usage.get("input_tokens") or 0),
                output_units=int(usage.get("output_tokens") or 0),
            )
        except (ValueError, AttributeError, TypeError) as e:
            return ProviderFailure(FailureKind.SERVER_ERROR, f"anthropic malformed response: {type(e).__name__}")
