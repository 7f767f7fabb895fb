"""
Bias Flows — host tasks

Each flow builds a prompt, hands it to the RetryingGenerator with a shape,
and writes the validated result through the injected document store.
"""

from .analyze import AnalysisReport, AnalyzeBiasFlow, GenerateAnalysisFlow
from .base import (
    Chapter,
    Document,
    DocumentStore,
    Flow,
    FlowContext,
    FlowError,
    Paragraph,
    Personality,
    PersonalityDirectory,
    save_document,
)
from .edit import BiasEditRejectedError, EditBiasFlow, apply_bias_edit
from .explained import ExplainedAnalysisFlow, ExplanationReport, extract_source
from .multi_source import AnalyzeMultiSourceFlow, ComparativeReport, Source

__all__ = [
    "AnalysisReport",
    "AnalyzeBiasFlow",
    "AnalyzeMultiSourceFlow",
    "BiasEditRejectedError",
    "Chapter",
    "ComparativeReport",
    "Document",
    "DocumentStore",
    "EditBiasFlow",
    "ExplainedAnalysisFlow",
    "ExplanationReport",
    "Flow",
    "FlowContext",
    "FlowError",
    "GenerateAnalysisFlow",
    "Paragraph",
    "Personality",
    "PersonalityDirectory",
    "Source",
    "apply_bias_edit",
    "extract_source",
    "save_document",
]
