"""
Single-text bias analysis flows.

GenerateAnalysisFlow returns signed per-bias scores; AnalyzeBiasFlow places
the top biases on the quadrant chart and writes a report document.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..records import (
    BIAS_SCORES_SCHEMA,
    QUADRANT_SCHEMA,
    SCORE_MAX,
    SCORE_MIN,
    BiasScores,
    QuadrantAnalysis,
    bias_scores_shape,
    quadrant_analysis_shape,
)
from .base import Chapter, Document, Flow, FlowContext, FlowError, Paragraph, save_document
from .report import DETAILED_ANALYSIS, DETECTED_BIASES, format_biases_list, format_explanations

DEFAULT_FOCUS = "Analyze the text for any potential biases"
DEFAULT_INSTRUCTIONS = "Focus on the most significant biases"


def generate_analysis_prompt(
    text: str,
    personality: str,
    description: str,
    top_biases: int,
    focus: str | None = None,
) -> str:
    return f"""You are analyzing this text with the following personality and context:

Personality: {personality}
Description: {description}

User's Analysis Focus: {focus or DEFAULT_FOCUS}

Text to analyze:
{text}

IMPORTANT:
- Return exactly {top_biases} most significant biases
- For each bias, provide a score between {SCORE_MIN} and {SCORE_MAX}
- Negative scores indicate negative bias, positive scores indicate positive bias
- Provide a detailed explanation for each bias
- Format your response in JSON with this exact structure:
{BIAS_SCORES_SCHEMA}"""


def quadrant_analysis_prompt(text: str, top_biases: int, instructions: str | None = None) -> str:
    lines = [
        "Analyze the following text for potential biases. For each bias:",
        "1. Identify the bias type and its counter-bias",
        "2. Score the bias strength (0-1)",
        "3. Assign it to a quadrant (1-4)",
        "4. Provide a detailed explanation",
        "",
    ]
    if instructions is not None:
        lines.append(f"Additional instructions: {instructions}")
    lines += [
        f"Number of biases to detect: {top_biases}",
        "",
        "Text to analyze:",
        text,
        "",
        "Provide the analysis in the following JSON format:",
        QUADRANT_SCHEMA,
    ]
    return "\n".join(lines)


def _check_top_biases(top_biases: int) -> int:
    top = int(top_biases)
    if top < 1:
        raise FlowError("top_biases must be at least 1")
    return top


class GenerateAnalysisFlow(Flow[BiasScores]):
    task_type = "BiasAnalysis"

    def __init__(
        self,
        context: FlowContext,
        *,
        text: str,
        personality: str,
        top_biases: int = 5,
        prompt: str | None = None,
    ) -> None:
        super().__init__(context)
        self.text = text
        self.personality_name = personality
        self.top_biases = _check_top_biases(top_biases)
        self.focus = prompt

    async def _run(self) -> BiasScores:
        personality = await self.context.personality(self.personality_name)
        prompt = generate_analysis_prompt(
            self.text, personality.name, personality.description, self.top_biases, self.focus
        )
        return await self._generate(prompt, bias_scores_shape(self.top_biases), identity=personality.name)


@dataclass
class AnalysisReport:
    document_id: str
    analysis: QuadrantAnalysis


def build_analysis_document(analysis: QuadrantAnalysis) -> Document:
    return Document(
        title="Bias Analysis Report",
        type="bias_analysis",
        chapters=[
            Chapter(DETECTED_BIASES, [Paragraph(format_biases_list(analysis.biases))]),
            Chapter(DETAILED_ANALYSIS, [Paragraph(format_explanations(analysis))]),
        ],
    )


class AnalyzeBiasFlow(Flow[AnalysisReport]):
    task_type = "AnalyzeBias"

    def __init__(
        self,
        context: FlowContext,
        *,
        text: str,
        personality: str,
        top_biases: int = 5,
        prompt: str | None = None,
    ) -> None:
        super().__init__(context)
        self.text = text
        self.personality_name = personality
        self.top_biases = _check_top_biases(top_biases)
        self.focus = prompt

    async def _run(self) -> AnalysisReport:
        store = self.context.require_documents()
        personality = await self.context.personality(self.personality_name)
        prompt = quadrant_analysis_prompt(self.text, self.top_biases, self.focus or DEFAULT_INSTRUCTIONS)
        analysis = await self._generate(
            prompt, quadrant_analysis_shape(self.top_biases), identity=personality.name
        )
        document = build_analysis_document(analysis)
        document_id = await save_document(store, self.context.space_id, document)
        return AnalysisReport(document_id=document_id, analysis=analysis)
