import asyncio
from collections import deque
from typing import Iterable, List, Optional, Sequence, Union

from maraum.settings import CHANNEL_MAIN, COMPLETION_MARKER, ChannelConfig

from .base import (
    SPEAKER_HUMAN,
    GenerationClient,
    ProviderFailure,
    ProviderResult,
    ProviderSuccess,
    Turn,
)

# Saying goodbye in the scenario channel ends the mock roleplay
_FAREWELLS = ("tschüss", "auf wiedersehen", "bye")

ScriptStep = Union[str, ProviderSuccess, ProviderFailure, BaseException]


class MockGenerationClient(GenerationClient):
    """Deterministic generation for local runs and tests.

    An optional script is consumed one step per call: a string or
    ProviderSuccess is returned as success, a ProviderFailure as failure, and
    an exception instance is raised. When the script runs out, replies are
    derived from the last human turn.
    """

    provider_name: str = "mock"

    def __init__(
        self,
        model: Optional[str] = None,
        script: Optional[Iterable[ScriptStep]] = None,
        delay_seconds: float = 0.0,
    ):
        super().__init__(model=model or "mock-chat-1")
        self._script = deque(script or [])
        self._delay = delay_seconds
        self.calls: List[dict] = []

    async def generate(
        self,
        turns: Sequence[Turn],
        config: ChannelConfig,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ProviderResult:
        self.calls.append({
            "turns": list(turns),
            "channel": config.channel,
            "system": system,
            "request_id": request_id,
        })
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._script:
            step = self._script.popleft()
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, str):
                return _success(step, turns)
            return step
        return _success(_default_reply(turns, config), turns)


def _last_human(turns: Sequence[Turn]) -> str:
    for t in reversed(turns):
        if t.speaker == SPEAKER_HUMAN:
            return t.text
    return ""


def _default_reply(turns: Sequence[Turn], config: ChannelConfig) -> str:
    said = _last_human(turns).strip()
    if config.channel == CHANNEL_MAIN:
        reply = f"Ach so, \"{said[:80]}\". Und was noch?"
        if any(word in said.lower() for word in _FAREWELLS):
            reply = f"Alles klar, bis zum nächsten Mal! {COMPLETION_MARKER}"
        return reply
    return f"You said \"{said[:80]}\". Bold choice. Try again, with feeling."


def _success(text: str, turns: Sequence[Turn]) -> ProviderSuccess:
    return ProviderSuccess(
        text=text,
        input_units=sum(len(t.text.split()) for t in turns),
        output_units=len(text.split()),
    )
