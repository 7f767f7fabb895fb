"""
Bias Flows — Retrying Generator

Submit -> await (with timeout) -> normalize -> validate -> accept or loop.

Every failure inside an attempt (timeout, provider error, unrepairable
JSON, shape violation) is transient: the generator appends a failure-context
block to the prompt, waits a fixed delay and asks again. Only
GenerationExhaustedError and GenerationCancelledError leave this module.
Callers must not wrap their own retry loop around it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, TypeVar

from .normalizer import ResponseNormalizer
from .racing import race
from .types import (
    AttemptOutcome,
    AttemptRecord,
    AttemptTimeoutError,
    CompletionProvider,
    ErrorFeedbackFormat,
    GenerationCancelledError,
    GenerationExhaustedError,
    GenerationResult,
    GeneratorConfig,
    LLMRequest,
    NormalizationExhaustedError,
    ParseError,
    ProviderCallError,
    RetryEvent,
    RetrySession,
    ShapeValidationError,
    StructuredOutputError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Validator = Callable[[Any], T]

__all__ = ["RetryingGenerator", "Validator", "classify", "format_failure_context"]


def classify(error: StructuredOutputError) -> AttemptOutcome:
    """Map an attempt failure onto its session state."""
    if isinstance(error, AttemptTimeoutError):
        return AttemptOutcome.TIMED_OUT
    if isinstance(error, ProviderCallError):
        return AttemptOutcome.PROVIDER_FAILED
    if isinstance(error, (NormalizationExhaustedError, ParseError)):
        return AttemptOutcome.NORMALIZING_FAILED
    return AttemptOutcome.VALIDATING_FAILED


def _error_messages(error: StructuredOutputError) -> list[str]:
    if isinstance(error, ShapeValidationError):
        return list(error.errors)
    if isinstance(error, NormalizationExhaustedError):
        return [f"Your response was not valid JSON ({error.last_error})."]
    if isinstance(error, AttemptTimeoutError):
        return ["Your previous response took too long. Answer more concisely."]
    return [str(error)]


def format_failure_context(
    attempt: int,
    error: StructuredOutputError,
    fmt: ErrorFeedbackFormat = "structured",
    previous_output: str | None = None,
    constraints: str | None = None,
) -> str:
    """Block appended to the prompt after a failed attempt."""
    outcome = classify(error).value
    lines = [f"--- Attempt {attempt} failed ({outcome}) ---"]
    if previous_output:
        lines += ["Previous output:", previous_output, ""]

    errors = _error_messages(error)
    if fmt == "structured":
        lines += [
            "Your previous response had validation errors:",
            json.dumps(errors, indent=2),
        ]
    else:
        lines.append("Your previous response didn't match the expected format.")
        lines += [f"{i + 1}. {e}" for i, e in enumerate(errors)]

    if constraints:
        lines += ["", "The response must satisfy:", constraints]
    lines.append("Please fix these errors and return only valid JSON matching the required structure.")
    return "\n".join(lines)


class RetryingGenerator:
    """
    Obtains a validated record from an unreliable completion provider.

    Each ``generate`` call owns a private RetrySession, so independent
    sessions may run concurrently on one generator.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        normalizer: ResponseNormalizer | None = None,
        config: GeneratorConfig | None = None,
    ) -> None:
        self._provider = provider
        self._normalizer = normalizer or ResponseNormalizer()
        self._config = config or GeneratorConfig()

    @property
    def config(self) -> GeneratorConfig:
        return self._config

    async def generate(
        self,
        prompt: str,
        validator: Validator[T],
        *,
        identity: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> GenerationResult:
        """
        Drive the attempt loop until ``validator`` accepts a completion.

        Raises GenerationExhaustedError when the attempt budget is spent and
        GenerationCancelledError as soon as ``cancel`` is set.
        """
        cfg = self._config
        start = time.perf_counter()
        session = RetrySession.open(prompt, cfg.max_attempts)
        constraints = getattr(validator, "description", None)

        while True:
            if cancel is not None and cancel.is_set():
                session.state = "cancelled"
                raise GenerationCancelledError(session.history)

            attempt = session.begin_attempt()
            attempt_start = time.perf_counter()
            raw: str | None = None
            try:
                raw = await self._complete(session.prompt, identity, cancel)
                normalized = await self._normalize(raw, cancel)
                data = self._validate(validator, json.loads(normalized))
            except GenerationCancelledError:
                session.state = "cancelled"
                raise GenerationCancelledError(session.history) from None
            except StructuredOutputError as err:
                record = AttemptRecord(
                    attempt=attempt,
                    outcome=classify(err),
                    latency_ms=(time.perf_counter() - attempt_start) * 1000,
                    error=err,
                    raw=raw,
                )
                session.record_failure(record)
                logger.warning(
                    "attempt %d/%d failed (%s): %s",
                    attempt, cfg.max_attempts, record.outcome.value, err,
                )
                if session.exhausted:
                    break
                session.append_context(
                    format_failure_context(
                        attempt,
                        err,
                        cfg.error_feedback_format,
                        self._excerpt(raw),
                        constraints,
                    )
                )
                if cfg.on_retry:
                    cfg.on_retry(
                        RetryEvent(
                            attempt=attempt,
                            max_attempts=cfg.max_attempts,
                            outcome=record.outcome,
                            error=err,
                            delay_s=cfg.retry_delay_s,
                        )
                    )
                if cfg.retry_delay_s > 0:
                    try:
                        await race(asyncio.sleep(cfg.retry_delay_s), cancel=cancel)
                    except GenerationCancelledError:
                        session.state = "cancelled"
                        raise GenerationCancelledError(session.history) from None
                continue

            elapsed_ms = (time.perf_counter() - start) * 1000
            session.record_success(
                AttemptRecord(
                    attempt=attempt,
                    outcome=AttemptOutcome.SUCCEEDED,
                    latency_ms=(time.perf_counter() - attempt_start) * 1000,
                    raw=raw,
                )
            )
            logger.info("generation succeeded on attempt %d/%d", attempt, cfg.max_attempts)
            return GenerationResult(
                data=data,
                raw=raw,
                attempts=attempt,
                repaired=normalized != raw,
                total_latency_ms=elapsed_ms,
                prompt=session.prompt,
                history=session.history,
            )

        exhausted = GenerationExhaustedError(
            session.history, (time.perf_counter() - start) * 1000
        )
        logger.error("generation exhausted after %d attempts: %s", cfg.max_attempts, session.last_error)
        if cfg.on_exhausted:
            cfg.on_exhausted(exhausted)
        raise exhausted

    async def _complete(self, prompt: str, identity: str | None, cancel: asyncio.Event | None) -> str:
        request = LLMRequest(prompt=prompt, identity=identity)
        try:
            response = await race(
                self._provider(request),
                timeout_s=self._config.attempt_timeout_s,
                cancel=cancel,
            )
        except StructuredOutputError:
            raise
        except Exception as exc:
            raise ProviderCallError(exc) from exc
        return response.message

    async def _normalize(self, raw: str, cancel: asyncio.Event | None) -> str:
        try:
            return await race(
                self._normalizer.normalize(raw, self._config.repair_budget),
                cancel=cancel,
            )
        except StructuredOutputError:
            raise
        except Exception as exc:
            # A repair phase crashed; the LLM phase wraps its own provider errors.
            raise ParseError(f"Repair phase failed: {exc}", raw) from exc

    @staticmethod
    def _validate(validator: Validator[T], parsed: Any) -> T:
        try:
            return validator(parsed)
        except StructuredOutputError:
            raise
        except ValueError as exc:
            raise ShapeValidationError([str(exc)]) from exc
        except Exception as exc:
            raise ShapeValidationError([f"{type(exc).__name__}: {exc}"]) from exc

    def _excerpt(self, raw: str | None) -> str | None:
        cfg = self._config
        if not raw or not cfg.echo_previous_output:
            return None
        if len(raw) > cfg.previous_output_chars:
            return raw[: cfg.previous_output_chars] + "..."
        return raw
