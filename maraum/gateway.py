"""Generation gateway: one retrying, timeout-bounded call per submission.

Each attempt is bounded by the channel timeout. Failures are classified
(client_error, rate_limited, server_error, timeout); client errors stop
immediately and everything else is retried up to the policy's attempt budget
with the policy's delays in between.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from maraum.errors import GenerationFailure, GenerationTimeout
from maraum.metrics import GENERATION_ATTEMPTS_TOTAL, GENERATION_SECONDS, GENERATION_TOKENS_TOTAL
from maraum.providers.base import (
    FailureKind,
    GenerationClient,
    ProviderFailure,
    ProviderSuccess,
    Turn,
    is_retryable,
)
from maraum.settings import CHANNEL_MAIN, COMPLETION_MARKER, ChannelConfig, RetryPolicy

logger = logging.getLogger("maraum.gateway")

SAVED_NOTE = "Your message was saved; it is safe to try again."


@dataclass
class GenerationReport:
    provider: str
    model: Optional[str]
    channel: str
    attempts: int = 0
    duration_ms: int = 0
    input_units: int = 0
    output_units: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "channel": self.channel,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
            "input_units": self.input_units,
            "output_units": self.output_units,
            "failures": list(self.failures),
        }


@dataclass
class GenerationResult:
    text: str
    completion_detected: bool
    report: GenerationReport


def strip_completion_marker(text: str) -> Tuple[str, bool]:
    """Remove every completion marker from `text`; report whether one was present."""
    if COMPLETION_MARKER not in text:
        return text, False
    return text.replace(COMPLETION_MARKER, "").strip(), True


class GenerationGateway:
    def __init__(
        self,
        client: GenerationClient,
        retry: RetryPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.retry = retry
        self._sleep = sleep

    async def _attempt(
        self,
        turns: Sequence[Turn],
        config: ChannelConfig,
        system: Optional[str],
        request_id: Optional[str],
    ):
        try:
            return await asyncio.wait_for(
                self.client.generate(turns, config, system=system, request_id=request_id),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ProviderFailure(FailureKind.TIMEOUT, f"no response within {config.timeout_seconds:g}s")
        except (httpx.HTTPError, OSError) as e:
            # Providers should return failures; a leaked transport error counts as a server fault
            logger.error(json.dumps({
                "event": "generation_client_raised",
                "provider": self.client.provider_name,
                "channel": config.channel,
                "error": type(e).__name__,
            }))
            return ProviderFailure(FailureKind.SERVER_ERROR, f"client raised {type(e).__name__}")

    async def generate(
        self,
        turns: Sequence[Turn],
        config: ChannelConfig,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        """Generate a reply for `turns` on the channel described by `config`.

        Raises GenerationTimeout when the budget ran out on a timeout and
        GenerationFailure otherwise. Both carry the report.
        """
        provider = self.client.provider_name
        model = self.client.model
        report = GenerationReport(provider=provider, model=model, channel=config.channel)
        t0 = time.perf_counter()
        last: Optional[ProviderFailure] = None
        max_attempts = max(1, self.retry.max_attempts)

        for attempt in range(1, max_attempts + 1):
            report.attempts = attempt
            result = await self._attempt(turns, config, system, request_id)

            if isinstance(result, ProviderSuccess):
                report.input_units += result.input_units
                report.output_units += result.output_units
                report.duration_ms = int((time.perf_counter() - t0) * 1000)
                text, detected = strip_completion_marker(result.text)
                detected = detected and config.channel == CHANNEL_MAIN
                self._observe_success(report)
                logger.info(json.dumps({
                    "event": "generation_succeeded",
                    "requestId": request_id,
                    "provider": provider,
                    "model": model,
                    "channel": config.channel,
                    "attempts": attempt,
                    "durationMs": report.duration_ms,
                    "inputUnits": report.input_units,
                    "outputUnits": report.output_units,
                    "completionDetected": detected,
                }))
                return GenerationResult(text=text, completion_detected=detected, report=report)

            last = result
            report.failures.append(result.kind.value)
            GENERATION_ATTEMPTS_TOTAL.labels(provider=provider, channel=config.channel, outcome=result.kind.value).inc()
            retryable = is_retryable(result.kind)
            logger.warning(json.dumps({
                "event": "generation_attempt_failed",
                "requestId": request_id,
                "provider": provider,
                "channel": config.channel,
                "attempt": attempt,
                "kind": result.kind.value,
                "status": result.status,
                "retryable": retryable,
            }))
            if not retryable or attempt >= max_attempts:
                break
            await self._sleep(self.retry.delay_after(attempt))

        report.duration_ms = int((time.perf_counter() - t0) * 1000)
        GENERATION_SECONDS.labels(provider=provider, model=model or "", channel=config.channel).observe(
            report.duration_ms / 1000.0
        )
        kind = last.kind if last else FailureKind.SERVER_ERROR
        details = {"channel": config.channel, "attempts": report.attempts, "failure": kind.value}
        logger.error(json.dumps({
            "event": "generation_failed",
            "requestId": request_id,
            "provider": provider,
            "channel": config.channel,
            "attempts": report.attempts,
            "durationMs": report.duration_ms,
            "kind": kind.value,
        }))
        if kind is FailureKind.TIMEOUT:
            raise GenerationTimeout(
                f"The assistant did not respond after {report.attempts} attempts. {SAVED_NOTE}",
                details,
                report=report,
            )
        if kind is FailureKind.CLIENT_ERROR:
            raise GenerationFailure(f"The assistant rejected the request. {SAVED_NOTE}", details, report=report)
        raise GenerationFailure(
            f"The assistant failed after {report.attempts} attempts. {SAVED_NOTE}",
            details,
            report=report,
        )

    def _observe_success(self, report: GenerationReport) -> None:
        labels = {"provider": report.provider, "model": report.model or "", "channel": report.channel}
        GENERATION_ATTEMPTS_TOTAL.labels(provider=report.provider, channel=report.channel, outcome="success").inc()
        GENERATION_SECONDS.labels(**labels).observe(report.duration_ms / 1000.0)
        if report.input_units:
            GENERATION_TOKENS_TOTAL.labels(direction="input", **labels).inc(report.input_units)
        if report.output_units:
            GENERATION_TOKENS_TOTAL.labels(direction="output", **labels).inc(report.output_units)
