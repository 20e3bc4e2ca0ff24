from .base import (
    FailureKind,
    GenerationClient,
    ProviderFailure,
    ProviderResult,
    ProviderSuccess,
    Turn,
    classify_status,
    is_retryable,
)
from .factory import get_generation_client

__all__ = [
    "FailureKind",
    "GenerationClient",
    "ProviderFailure",
    "ProviderResult",
    "ProviderSuccess",
    "Turn",
    "classify_status",
    "get_generation_client",
    "is_retryable",
]
