from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from maraum.settings import ChannelConfig

SPEAKER_HUMAN = "human"
SPEAKER_ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    speaker: str
    text: str


class FailureKind(str, enum.Enum):
    CLIENT_ERROR = "client_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"


def classify_status(status: int) -> FailureKind:
    """Map an HTTP status from a provider to a failure kind."""
    if status == 429:
        return FailureKind.RATE_LIMITED
    if status >= 500:
        return FailureKind.SERVER_ERROR
    return FailureKind.CLIENT_ERROR


def is_retryable(kind: FailureKind) -> bool:
    return kind is not FailureKind.CLIENT_ERROR


@dataclass(frozen=True)
class ProviderSuccess:
    text: str
    input_units: int = 0
    output_units: int = 0


@dataclass(frozen=True)
class ProviderFailure:
    kind: FailureKind
    message: str
    status: Optional[int] = None


ProviderResult = Union[ProviderSuccess, ProviderFailure]


class GenerationClient(abc.ABC):
    """Abstract text-generation client.

    Implementations take the ordered conversation and return either a
    ProviderSuccess or a classified ProviderFailure. Provider errors are
    returned, not raised; the gateway owns retries and the timeout.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None):
        self.model = model

    @abc.abstractmethod
    async def generate(
        self,
        turns: Sequence[Turn],
        config: ChannelConfig,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ProviderResult:
        ...


def turns_as_chat(turns: Sequence[Turn]) -> List[dict]:
    """OpenAI/Anthropic style role/content pairs."""
    return [
        {"role": "user" if t.speaker == SPEAKER_HUMAN else "assistant", "content": t.text}
        for t in turns
    ]
