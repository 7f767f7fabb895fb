"""
Bias Flows — Type Definitions

Core types for the normalize -> validate -> retry pipeline.
Errors are tagged: ``transient`` errors are absorbed by the retry loop,
everything else crosses the generator boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Literal


@dataclass
class LLMRequest:
    """A request to a completion provider."""

    prompt: str

    # Opaque personality/identity selector handed through to the provider.
    identity: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class LLMResponse:
    """A response from a completion provider."""

    message: str
    model: str | None = None
    finish_reason: str | None = None


# A completion provider — any async callable matching this signature works.
CompletionProvider = Callable[[LLMRequest], Awaitable[LLMResponse]]

# Error feedback format for retry prompts.
ErrorFeedbackFormat = Literal["structured", "natural"]

SessionState = Literal["idle", "attempting", "succeeded", "exhausted", "cancelled"]


class AttemptOutcome(str, Enum):
    """How a single attempt ended."""

    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    PROVIDER_FAILED = "provider_failed"
    NORMALIZING_FAILED = "normalizing_failed"
    VALIDATING_FAILED = "validating_failed"


# ── Errors ────────────────────────────────────────────────────────────


class StructuredOutputError(Exception):
    """Base class for every error raised by the pipeline."""

    transient: bool = True


class ParseError(StructuredOutputError):
    """Text is not syntactically valid JSON."""

    def __init__(self, message: str, text: str) -> None:
        super().__init__(message)
        self.text = text


class NormalizationExhaustedError(StructuredOutputError):
    """The repair budget ran out before the text parsed."""

    def __init__(self, last_error: str, last_candidate: str, budget: int) -> None:
        self.last_error = last_error
        self.last_candidate = last_candidate
        self.budget = budget
        snippet = last_candidate.strip().replace("\n", " ")
        snippet = (snippet[:120] + "...") if len(snippet) > 120 else snippet
        super().__init__(
            f"Unable to produce valid JSON within a repair budget of {budget}: "
            f"{last_error} (candidate: {snippet!r})"
        )


class ShapeValidationError(StructuredOutputError):
    """Parsed JSON has the wrong shape, cardinality or value range."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        if len(errors) == 1:
            summary = errors[0]
        else:
            summary = f"{len(errors)} validation errors: {'; '.join(errors)}"
        super().__init__(summary)


class AttemptTimeoutError(StructuredOutputError):
    """The provider did not answer within the per-attempt window."""

    def __init__(self, timeout_s: float | None) -> None:
        self.timeout_s = timeout_s
        super().__init__(f"Provider did not respond within {timeout_s}s")


class ProviderCallError(StructuredOutputError):
    """The provider (or an LLM repair call) raised."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Provider call failed: {cause}")


@dataclass
class AttemptRecord:
    """Record of a single attempt within a session."""

    attempt: int
    outcome: AttemptOutcome
    latency_ms: float
    error: StructuredOutputError | None = None
    raw: str | None = None


class GenerationExhaustedError(StructuredOutputError):
    """Raised when every attempt of a session failed."""

    transient = False

    def __init__(self, attempts: list[AttemptRecord], total_latency_ms: float) -> None:
        self.attempts = attempts
        self.total_latency_ms = total_latency_ms
        self.last_error = attempts[-1].error if attempts else None
        super().__init__(
            f"Failed to generate valid output after {len(attempts)} attempts. "
            f"Last error: {self.last_error}"
        )


class GenerationCancelledError(StructuredOutputError):
    """Raised when the host cancels a session."""

    transient = False

    def __init__(self, attempts: list[AttemptRecord] | None = None) -> None:
        self.attempts = attempts or []
        super().__init__(f"Generation cancelled after {len(self.attempts)} attempts")


# ── Session ───────────────────────────────────────────────────────────


@dataclass
class RetrySession:
    """State of one "produce a validated result" request.

    Owned exclusively by a single ``RetryingGenerator.generate`` call.
    The prompt is append-only.
    """

    prompt: str
    max_attempts: int
    attempts_remaining: int
    state: SessionState = "idle"
    last_error: StructuredOutputError | None = None
    history: list[AttemptRecord] = field(default_factory=list)

    @classmethod
    def open(cls, prompt: str, max_attempts: int) -> RetrySession:
        return cls(prompt=prompt, max_attempts=max_attempts, attempts_remaining=max_attempts)

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt in flight (or next to run)."""
        return self.max_attempts - self.attempts_remaining + 1

    @property
    def exhausted(self) -> bool:
        return self.attempts_remaining <= 0

    def begin_attempt(self) -> int:
        self.state = "attempting"
        return self.attempt_number

    def record_failure(self, record: AttemptRecord) -> None:
        self.history.append(record)
        self.last_error = record.error
        self.attempts_remaining -= 1
        if self.exhausted:
            self.state = "exhausted"

    def record_success(self, record: AttemptRecord) -> None:
        self.history.append(record)
        self.state = "succeeded"

    def append_context(self, block: str) -> None:
        self.prompt = f"{self.prompt}\n\n{block}"


# ── Events / Config / Result ──────────────────────────────────────────


@dataclass
class RetryEvent:
    """Fired before the generator sleeps ahead of the next attempt."""

    attempt: int
    max_attempts: int
    outcome: AttemptOutcome
    error: StructuredOutputError
    delay_s: float


@dataclass
class GeneratorConfig:
    """Configuration for the RetryingGenerator."""

    # Total provider calls per session (initial call included).
    max_attempts: int = 3

    # Per-attempt provider timeout. None disables the race.
    attempt_timeout_s: float | None = 90.0

    # Fixed pause before every retry.
    retry_delay_s: float = 2.0

    # Outer iterations handed to the ResponseNormalizer per completion.
    repair_budget: int = 3

    # How to format violated constraints in the failure-context block.
    error_feedback_format: ErrorFeedbackFormat = "structured"

    # Whether to quote the rejected completion back to the model.
    echo_previous_output: bool = True
    previous_output_chars: int = 500

    # Callback fired before each retry sleep.
    on_retry: Callable[[RetryEvent], None] | None = None

    # Callback fired once when the session is exhausted.
    on_exhausted: Callable[[GenerationExhaustedError], None] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.retry_delay_s < 0:
            raise ValueError("retry_delay_s must not be negative")
        if self.attempt_timeout_s is not None and self.attempt_timeout_s <= 0:
            raise ValueError("attempt_timeout_s must be positive")


@dataclass
class GenerationResult:
    """A validated record plus how it was obtained."""

    # The typed, validated data returned by the validator.
    data: Any

    # The raw completion of the successful attempt.
    raw: str

    # Provider calls made (1 = first attempt succeeded).
    attempts: int

    # Whether normalization had to change the completion text.
    repaired: bool

    total_latency_ms: float

    # Prompt sent on the successful attempt, failure context included.
    prompt: str

    history: list[AttemptRecord] = field(default_factory=list)
