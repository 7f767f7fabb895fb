"""Detailed explanations for the bias pairs of an existing analysis document."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import ValidationError

from ..records import BiasPair, DetailedExplanation, DetailedExplanations, detailed_explanations_shape
from .base import Chapter, Document, Flow, FlowContext, FlowError, Paragraph, save_document

# "Name (Positive: {...}, Negative: {...})"
_PAIR_TITLE = re.compile(r"(.+?)\s*\(Positive:\s*(\{.*?\}),\s*Negative:\s*(\{.*?\})\)")

EXPLANATION_SCHEMA = """{
    "detailed_explanations": [
        {
            "bias_type": "name of bias",
            "score_explanation": "detailed explanation of why these scores were chosen",
            "supporting_quotes": ["quote 1", "quote 2"],
            "positive_analysis": "detailed analysis of positive manifestation",
            "negative_analysis": "detailed analysis of negative manifestation",
            "impact_analysis": "analysis of the bias impact"
        }
    ]
}"""


def parse_bias_pair(chapter: Chapter) -> BiasPair | None:
    """Recover a bias pair from a chapter titled like the scoring flow writes it."""
    match = _PAIR_TITLE.match(chapter.title)
    if not match:
        return None
    paragraphs = chapter.paragraphs
    try:
        return BiasPair.model_validate(
            {
                "bias_type": match.group(1).strip(),
                "positive": {
                    "score": json.loads(match.group(2)),
                    "explanation": paragraphs[0].text if len(paragraphs) > 0 else "",
                },
                "negative": {
                    "score": json.loads(match.group(3)),
                    "explanation": paragraphs[1].text if len(paragraphs) > 1 else "",
                },
            }
        )
    except (json.JSONDecodeError, ValidationError):
        return None


def extract_source(document: Document) -> tuple[str, list[BiasPair]]:
    """Original text (first paragraph of the first chapter) and the bias pairs after it."""
    if not document.chapters or not document.chapters[0].paragraphs:
        raise FlowError("Original text not found in source document")
    original = document.chapters[0].paragraphs[0].text
    if not original:
        raise FlowError("Original text not found in source document")
    pairs = [pair for pair in map(parse_bias_pair, document.chapters[1:]) if pair is not None]
    return original, pairs


def explanation_prompt(personality: str, original_text: str, pairs: list[BiasPair]) -> str:
    pairs_json = json.dumps([p.model_dump() for p in pairs], indent=2)
    return f"""As {personality}, analyze the following text and explain the bias scores in detail:

Original Text:
{original_text}

For each bias pair, explain:
1. Why these specific scores were chosen
2. Find and quote relevant parts of the text that demonstrate this bias
3. Analyze how the bias manifests in both positive and negative ways
4. Explain the impact of this bias on the reader's understanding

Bias Pairs to analyze:
{pairs_json}

Return exactly {len(pairs)} entries, in the same order as the pairs above.
Format your response as a JSON object with this structure:
{EXPLANATION_SCHEMA}"""


def explanation_chapter(explanation: DetailedExplanation) -> Chapter:
    return Chapter(
        explanation.bias_type,
        [
            Paragraph(f"Score Analysis:\n{explanation.score_explanation}"),
            Paragraph("Supporting Quotes:\n" + "\n\n".join(explanation.supporting_quotes)),
            Paragraph(f"Positive Manifestation:\n{explanation.positive_analysis}"),
            Paragraph(f"Negative Manifestation:\n{explanation.negative_analysis}"),
            Paragraph(f"Impact Analysis:\n{explanation.impact_analysis}"),
        ],
    )


@dataclass
class ExplanationReport:
    document_id: str
    explanations: list[DetailedExplanation]


class ExplainedAnalysisFlow(Flow[ExplanationReport]):
    task_type = "BiasExplained"

    def __init__(self, context: FlowContext, *, personality: str, source_document_id: str) -> None:
        super().__init__(context)
        self.personality_id = personality
        self.source_document_id = source_document_id

    async def _resolve_personality(self) -> str:
        directory = self.context.personalities
        if directory is None:
            return self.personality_id
        found = await directory.get_personality(self.context.space_id, self.personality_id)
        if found is None:
            raise FlowError("Personality not found by ID")
        return (await self.context.personality(found.name)).name

    async def _run(self) -> ExplanationReport:
        store = self.context.require_documents()
        space_id = self.context.space_id

        personality = await self._resolve_personality()
        source = await store.get_document(space_id, self.source_document_id)
        if source is None:
            raise FlowError("Source document not found")
        original_text, pairs = extract_source(source)
        if not pairs:
            raise FlowError("Source document holds no scored bias pairs")

        result: DetailedExplanations = await self._generate(
            explanation_prompt(personality, original_text, pairs),
            detailed_explanations_shape(len(pairs)),
            identity=personality,
        )

        timestamp = datetime.now(timezone.utc).isoformat()
        document = Document(
            title=f"bias_explained_{timestamp}",
            type="bias_explained",
            chapters=[explanation_chapter(e) for e in result.detailed_explanations],
            abstract={
                "type": "bias_explained",
                "sourceDocumentId": self.source_document_id,
                "personality": personality,
                "timestamp": timestamp,
            },
        )
        document_id = await save_document(store, space_id, document)
        return ExplanationReport(document_id=document_id, explanations=result.detailed_explanations)
