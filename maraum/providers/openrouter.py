import os
from typing import Any, Dict, List, Optional, Sequence

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

API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterGenerationClient(GenerationClient):
    provider_name: str = "openrouter"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or os.getenv("AI_CHAT_MODEL") or "anthropic/claude-3.5-haiku")
        api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is required for OpenRouter provider")
        self._api_key = api_key
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:4321").strip() or "http://localhost:4321"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "Maraum").strip() or "Maraum"

    async def generate(
        self,
        turns: Sequence[Turn],
        config: ChannelConfig,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ProviderResult:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "User-Agent": "maraum-api/0.1.0",
            "HTTP-Referer": self._referer,
            "X-Title": self._title,
        }
        if request_id:
            headers["X-Request-Id"] = request_id
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend(turns_as_chat(turns))
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }

        try:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                resp = await client.post(API_URL, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            return ProviderFailure(FailureKind.TIMEOUT, f"openrouter timeout: {type(e).__name__}")
        except httpx.HTTPError as e:
            return ProviderFailure(FailureKind.SERVER_ERROR, f"openrouter transport error: {type(e).__name__}")

        if resp.status_code >= 400:
            return ProviderFailure(
                classify_status(resp.status_code),
                f"openrouter error {resp.status_code}",
                status=resp.status_code,
            )

        try:
            data = resp.json()
            msg = (((data or {}).get("choices") or [{}])[0].get("message") or {})
            text = (msg.get("content") or "").strip()
            usage = data.get("usage") or {}
            return ProviderSuccess(
                text=text,
                input_units=int(usage.get("prompt_tokens") or 0),
                output_units=int(usage.get("completion_tokens") or 0),
            )
        except (ValueError, AttributeError, TypeError, IndexError) as e:
            return ProviderFailure(FailureKind.SERVER_ERROR, f"openrouter malformed response: {type(e).__name__}")
