"""
Bias Flows

Normalize -> validate -> retry pipeline that turns unreliable LLM
completions into typed bias-analysis records.
Package entry point — re-exports the core API.
"""

from .generator import RetryingGenerator, format_failure_context
from .mock_provider import HANG, MockProvider, MockProviderConfig
from .normalizer import (
    DEFAULT_PHASES,
    RepairPhase,
    ResponseNormalizer,
    build_repair_prompt,
    llm_repair_phase,
)
from .shapes import PydanticShape, Shape
from .types import (
    AttemptOutcome,
    AttemptRecord,
    AttemptTimeoutError,
    CompletionProvider,
    GenerationCancelledError,
    GenerationExhaustedError,
    GenerationResult,
    GeneratorConfig,
    LLMRequest,
    LLMResponse,
    NormalizationExhaustedError,
    ParseError,
    ProviderCallError,
    RetryEvent,
    RetrySession,
    ShapeValidationError,
    StructuredOutputError,
)

__all__ = [
    "RetryingGenerator",
    "format_failure_context",
    "ResponseNormalizer",
    "RepairPhase",
    "DEFAULT_PHASES",
    "build_repair_prompt",
    "llm_repair_phase",
    "Shape",
    "PydanticShape",
    "MockProvider",
    "MockProviderConfig",
    "HANG",
    "AttemptOutcome",
    "AttemptRecord",
    "AttemptTimeoutError",
    "CompletionProvider",
    "GenerationCancelledError",
    "GenerationExhaustedError",
    "GenerationResult",
    "GeneratorConfig",
    "LLMRequest",
    "LLMResponse",
    "NormalizationExhaustedError",
    "ParseError",
    "ProviderCallError",
    "RetryEvent",
    "RetrySession",
    "ShapeValidationError",
    "StructuredOutputError",
]
