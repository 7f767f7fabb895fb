"""
Retrying Generator — Tests

Three categories:
1. Unit tests — session bookkeeping, config validation, failure-context text
2. Failure mode tests — exhaustion, timeouts, provider errors, cancellation
3. Integration tests — end-to-end sessions against the mock provider
"""

from __future__ import annotations

import asyncio
import json
import time

import pytest

from bias_flows import (
    HANG,
    AttemptOutcome,
    AttemptRecord,
    GenerationCancelledError,
    GenerationExhaustedError,
    GeneratorConfig,
    LLMRequest,
    LLMResponse,
    MockProvider,
    ProviderCallError,
    RepairPhase,
    ResponseNormalizer,
    RetryingGenerator,
    RetrySession,
    Shape,
    ShapeValidationError,
    format_failure_context,
)
from bias_flows.records import (
    bias_scores_shape,
    detailed_explanations_shape,
    quadrant_analysis_shape,
    scored_biases_shape,
)
from bias_flows.shapes import field, required

VALID_SCORES = {"biases": ["framing"], "scores": [4], "explanations": ["Leans on loaded terms"]}


def _config(**overrides) -> GeneratorConfig:
    defaults = dict(max_attempts=3, attempt_timeout_s=1.0, retry_delay_s=0, repair_budget=1)
    defaults.update(overrides)
    return GeneratorConfig(**defaults)


def _reject(parsed):
    raise ShapeValidationError(["never good enough"])


# ============================================================================
# Unit Tests
# ============================================================================


class TestRetrySession:
    def test_open(self):
        session = RetrySession.open("prompt", 3)
        assert session.state == "idle"
        assert session.attempts_remaining == 3
        assert session.attempt_number == 1

    def test_record_failure_until_exhausted(self):
        session = RetrySession.open("prompt", 2)
        for n in (1, 2):
            assert session.begin_attempt() == n
            session.record_failure(
                AttemptRecord(n, AttemptOutcome.VALIDATING_FAILED, 1.0, error=ShapeValidationError(["x"]))
            )
        assert session.exhausted
        assert session.state == "exhausted"
        assert len(session.history) == 2

    def test_append_context_only_grows(self):
        session = RetrySession.open("base", 3)
        session.append_context("first")
        session.append_context("second")
        assert session.prompt == "base\n\nfirst\n\nsecond"


class TestGeneratorConfig:
    def test_defaults(self):
        cfg = GeneratorConfig()
        assert cfg.max_attempts == 3
        assert cfg.attempt_timeout_s == 90.0
        assert cfg.retry_delay_s == 2.0
        assert cfg.repair_budget == 3

    @pytest.mark.parametrize(
        "overrides",
        [{"max_attempts": 0}, {"retry_delay_s": -1}, {"attempt_timeout_s": 0}],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValueError):
            GeneratorConfig(**overrides)

    def test_timeout_can_be_disabled(self):
        assert GeneratorConfig(attempt_timeout_s=None).attempt_timeout_s is None


class TestFailureContext:
    def test_structured(self):
        block = format_failure_context(
            2, ShapeValidationError(["a: bad", "b: worse"]), "structured", '{"a": 1}', "Be good."
        )
        assert block.startswith("--- Attempt 2 failed (validating_failed) ---")
        assert 'Previous output:\n{"a": 1}' in block
        assert json.dumps(["a: bad", "b: worse"], indent=2) in block
        assert "The response must satisfy:\nBe good." in block

    def test_natural(self):
        block = format_failure_context(1, ShapeValidationError(["a: bad", "b: worse"]), "natural")
        assert "1. a: bad" in block
        assert "2. b: worse" in block
        assert "Previous output" not in block


# ============================================================================
# Failure Mode Tests
# ============================================================================


class TestExhaustion:
    @pytest.mark.asyncio
    async def test_exactly_max_attempts_calls(self):
        provider = MockProvider.scripted(default=json.dumps({"a": 1}))
        generator = RetryingGenerator(provider, config=_config(max_attempts=4))

        with pytest.raises(GenerationExhaustedError) as exc_info:
            await generator.generate("prompt", _reject)

        assert provider.call_count == 4
        err = exc_info.value
        assert len(err.attempts) == 4
        assert all(a.outcome == AttemptOutcome.VALIDATING_FAILED for a in err.attempts)
        assert isinstance(err.last_error, ShapeValidationError)
        assert err.transient is False

    @pytest.mark.asyncio
    async def test_single_attempt_budget(self):
        provider = MockProvider.scripted(default="not json")
        generator = RetryingGenerator(provider, config=_config(max_attempts=1))

        with pytest.raises(GenerationExhaustedError) as exc_info:
            await generator.generate("prompt", _reject)

        assert provider.call_count == 1
        assert exc_info.value.attempts[0].outcome == AttemptOutcome.NORMALIZING_FAILED
        assert exc_info.value.attempts[0].raw == "not json"

    @pytest.mark.asyncio
    async def test_callbacks(self):
        events = []
        exhausted = []
        provider = MockProvider.scripted(default="{}")
        generator = RetryingGenerator(
            provider,
            config=_config(on_retry=events.append, on_exhausted=exhausted.append),
        )

        with pytest.raises(GenerationExhaustedError):
            await generator.generate("prompt", _reject)

        assert [e.attempt for e in events] == [1, 2]
        assert all(e.max_attempts == 3 for e in events)
        assert len(exhausted) == 1
        assert len(exhausted[0].attempts) == 3


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_hanging_provider_is_bounded(self):
        provider = MockProvider.scripted(HANG, HANG)
        generator = RetryingGenerator(
            provider, config=_config(max_attempts=2, attempt_timeout_s=0.05, retry_delay_s=0.01)
        )

        start = time.perf_counter()
        try:
            with pytest.raises(GenerationExhaustedError) as exc_info:
                await generator.generate("prompt", _reject)
        finally:
            provider.release()
        elapsed = time.perf_counter() - start

        assert elapsed < 1.0
        assert provider.call_count == 2
        assert [a.outcome for a in exc_info.value.attempts] == [AttemptOutcome.TIMED_OUT] * 2

    @pytest.mark.asyncio
    async def test_timeout_then_success(self):
        provider = MockProvider.scripted(HANG, json.dumps(VALID_SCORES))
        generator = RetryingGenerator(provider, config=_config(attempt_timeout_s=0.05))

        try:
            result = await generator.generate("prompt", bias_scores_shape(1))
        finally:
            provider.release()

        assert result.attempts == 2
        assert "--- Attempt 1 failed (timed_out) ---" in provider.prompts[1]


class TestProviderErrors:
    @pytest.mark.asyncio
    async def test_provider_exception_is_retried(self):
        provider = MockProvider.scripted(ConnectionError("reset by peer"), json.dumps(VALID_SCORES))
        generator = RetryingGenerator(provider, config=_config())

        result = await generator.generate("prompt", bias_scores_shape(1))

        assert result.attempts == 2
        assert result.history[0].outcome == AttemptOutcome.PROVIDER_FAILED
        assert isinstance(result.history[0].error, ProviderCallError)
        assert "reset by peer" in provider.prompts[1]

    @pytest.mark.asyncio
    async def test_plain_value_error_counts_as_validation_failure(self):
        def validator(parsed):
            if parsed.get("ok") is not True:
                raise ValueError("ok must be true")
            return parsed

        provider = MockProvider.scripted('{"ok": false}', '{"ok": true}')
        generator = RetryingGenerator(provider, config=_config())

        result = await generator.generate("prompt", validator)

        assert result.data == {"ok": True}
        assert result.history[0].outcome == AttemptOutcome.VALIDATING_FAILED
        assert "ok must be true" in provider.prompts[1]

    @pytest.mark.asyncio
    async def test_validator_crash_counts_as_validation_failure(self):
        def validator(parsed):
            return parsed["missing"]

        provider = MockProvider.scripted(default='{"present": 1}')
        generator = RetryingGenerator(provider, config=_config())

        with pytest.raises(GenerationExhaustedError) as exc_info:
            await generator.generate("prompt", validator)

        assert provider.call_count == 3
        assert [a.outcome for a in exc_info.value.attempts] == [AttemptOutcome.VALIDATING_FAILED] * 3
        assert "KeyError" in provider.prompts[1]

    @pytest.mark.asyncio
    async def test_repair_phase_crash_counts_as_normalizing_failure(self):
        def explode(text, error):
            raise RuntimeError("phase bug")

        provider = MockProvider.scripted(default="not json")
        generator = RetryingGenerator(
            provider,
            normalizer=ResponseNormalizer([RepairPhase("Explode", explode)]),
            config=_config(max_attempts=1),
        )

        with pytest.raises(GenerationExhaustedError) as exc_info:
            await generator.generate("prompt", dict)

        assert exc_info.value.attempts[0].outcome == AttemptOutcome.NORMALIZING_FAILED
        assert "phase bug" in str(exc_info.value.last_error)

    @pytest.mark.asyncio
    async def test_repair_call_failure_counts_as_provider_failure(self):
        provider = MockProvider.scripted("garbage", RuntimeError("repair endpoint down"))
        generator = RetryingGenerator(
            provider,
            normalizer=ResponseNormalizer.with_llm_repair(provider.call),
            config=_config(max_attempts=1),
        )

        with pytest.raises(GenerationExhaustedError) as exc_info:
            await generator.generate("prompt", dict)

        assert exc_info.value.attempts[0].outcome == AttemptOutcome.PROVIDER_FAILED
        assert isinstance(exc_info.value.last_error, ProviderCallError)


class TestUnusableRecords:
    @pytest.mark.asyncio
    async def test_non_list_quotes_are_retried(self):
        entry = {
            "bias_type": "framing",
            "score_explanation": "why",
            "supporting_quotes": 5,
            "positive_analysis": "pos",
            "negative_analysis": "neg",
            "impact_analysis": "impact",
        }
        provider = MockProvider.scripted(default=json.dumps({"detailed_explanations": [entry]}))
        generator = RetryingGenerator(provider, config=_config())

        with pytest.raises(GenerationExhaustedError) as exc_info:
            await generator.generate("prompt", detailed_explanations_shape(1))

        assert provider.call_count == 3
        assert all(a.outcome == AttemptOutcome.VALIDATING_FAILED for a in exc_info.value.attempts)
        assert "supporting_quotes" in provider.prompts[1]

    @pytest.mark.asyncio
    async def test_infinite_quadrant_is_retried(self):
        raw = '{"biases": [{"name": "a", "score": 0.5, "quadrant": 1e999}], "explanations": ["x"]}'
        provider = MockProvider.scripted(raw, json.dumps(
            {"biases": [{"name": "a", "score": 0.5, "quadrant": 2}], "explanations": ["x"]}
        ))
        generator = RetryingGenerator(provider, config=_config())

        result = await generator.generate("prompt", quadrant_analysis_shape(1))

        assert result.attempts == 2
        assert result.history[0].outcome == AttemptOutcome.VALIDATING_FAILED
        assert "quadrant must be a finite number" in provider.prompts[1]
        assert result.data.biases[0].quadrant == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        provider = MockProvider.scripted('{"a": 1}')
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(GenerationCancelledError):
            await RetryingGenerator(provider, config=_config()).generate("prompt", dict, cancel=cancel)

        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pending_call(self):
        provider = MockProvider.scripted(HANG)
        generator = RetryingGenerator(provider, config=_config(attempt_timeout_s=None))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        start = time.perf_counter()
        try:
            with pytest.raises(GenerationCancelledError):
                await generator.generate("prompt", dict, cancel=cancel)
        finally:
            provider.release()

        assert time.perf_counter() - start < 1.0
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_cancel_interrupts_retry_delay(self):
        provider = MockProvider.scripted(default="{}")
        generator = RetryingGenerator(provider, config=_config(retry_delay_s=10))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        start = time.perf_counter()
        with pytest.raises(GenerationCancelledError) as exc_info:
            await generator.generate("prompt", _reject, cancel=cancel)

        assert time.perf_counter() - start < 1.0
        assert provider.call_count == 1
        assert len(exc_info.value.attempts) == 1


# ============================================================================
# Integration Tests
# ============================================================================


class TestGenerate:
    @pytest.mark.asyncio
    async def test_fenced_output_succeeds_first_time(self):
        raw = f"```json\n{json.dumps(VALID_SCORES)}\n```"
        provider = MockProvider.scripted(raw)
        generator = RetryingGenerator(provider, config=_config())

        result = await generator.generate("Score the text.", bias_scores_shape(1))

        assert provider.call_count == 1
        assert result.attempts == 1
        assert result.repaired is True
        assert result.raw == raw
        assert result.data.biases == ["framing"]
        assert result.prompt == "Score the text."

    @pytest.mark.asyncio
    async def test_clean_output_is_not_marked_repaired(self):
        provider = MockProvider.scripted(json.dumps(VALID_SCORES))
        result = await RetryingGenerator(provider, config=_config()).generate("p", bias_scores_shape(1))
        assert result.repaired is False

    @pytest.mark.asyncio
    async def test_eventual_compliance(self):
        provider = MockProvider.scripted("not json at all", '{"ok": true}')
        generator = RetryingGenerator(provider, config=_config())

        result = await generator.generate("Original prompt", Shape("Ok", required("ok")))

        assert provider.call_count == 2
        assert result.attempts == 2
        second = provider.prompts[1]
        assert second.startswith("Original prompt\n\n")
        assert "--- Attempt 1 failed (normalizing_failed) ---" in second
        assert "not json at all" in second

    @pytest.mark.asyncio
    async def test_out_of_range_score_fed_back(self):
        first = {"scored_biases": [{"bias_type": "x", "score": 15, "detailed_explanation": "y"}]}
        second = {"scored_biases": [{"bias_type": "x", "score": 7, "detailed_explanation": "y"}]}
        provider = MockProvider.scripted(json.dumps(first), json.dumps(second))
        generator = RetryingGenerator(provider, config=_config())

        result = await generator.generate("Score biases.", scored_biases_shape())

        assert result.attempts == 2
        assert result.data.scored_biases[0].score == 7
        assert "score must be between 0 and 10" in provider.prompts[1]

    @pytest.mark.asyncio
    async def test_prompts_are_append_only(self):
        provider = MockProvider.scripted(default="{}")
        generator = RetryingGenerator(provider, config=_config(max_attempts=3))

        with pytest.raises(GenerationExhaustedError):
            await generator.generate("base", Shape("Needs", field("x")))

        prompts = provider.prompts
        assert len(prompts) == 3
        for earlier, later in zip(prompts, prompts[1:]):
            assert later.startswith(earlier)
            assert len(later) > len(earlier)

    @pytest.mark.asyncio
    async def test_previous_output_can_be_suppressed(self):
        provider = MockProvider.scripted("secret garbage", '{"ok": true}')
        generator = RetryingGenerator(
            provider, config=_config(echo_previous_output=False, error_feedback_format="natural")
        )

        await generator.generate("p", Shape("Ok", required("ok")))

        assert "secret garbage" not in provider.prompts[1]
        assert "didn't match the expected format" in provider.prompts[1]

    @pytest.mark.asyncio
    async def test_identity_is_forwarded(self):
        provider = MockProvider.scripted('{"ok": true}')
        await RetryingGenerator(provider, config=_config()).generate("p", dict, identity="Skeptic")
        assert provider.requests[0].identity == "Skeptic"

    @pytest.mark.asyncio
    async def test_llm_repair_inside_attempt(self):
        provider = MockProvider.scripted("garbage", '{"ok": true}')
        generator = RetryingGenerator(
            provider,
            normalizer=ResponseNormalizer.with_llm_repair(provider.call),
            config=_config(),
        )

        result = await generator.generate("p", Shape("Ok", required("ok")))

        assert result.attempts == 1
        assert result.repaired is True
        assert provider.call_count == 2
        assert provider.requests[1].metadata == {"purpose": "json_repair"}

    @pytest.mark.asyncio
    async def test_concurrent_sessions_are_independent(self):
        async def provider(request: LLMRequest) -> LLMResponse:
            await asyncio.sleep(0.01)
            if request.identity == "flaky" and "Attempt 1 failed" not in request.prompt:
                return LLMResponse(message="nope")
            return LLMResponse(message=json.dumps({"who": request.identity}))

        generator = RetryingGenerator(provider, config=_config())
        steady, flaky = await asyncio.gather(
            generator.generate("p", dict, identity="steady"),
            generator.generate("p", dict, identity="flaky"),
        )

        assert steady.attempts == 1
        assert steady.data == {"who": "steady"}
        assert flaky.attempts == 2
        assert flaky.data == {"who": "flaky"}
