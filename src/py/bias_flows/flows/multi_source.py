"""Comparative bias analysis across several sources."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from ..records import QuadrantAnalysis, quadrant_analysis_shape
from .analyze import _check_top_biases, quadrant_analysis_prompt
from .base import Chapter, Document, Flow, FlowContext, FlowError, Paragraph, save_document
from .report import format_biases_list, format_comparative_analysis, format_explanations

SOURCE_ANALYSIS = "Source Analysis"
COMPARATIVE_ANALYSIS = "Comparative Analysis"

logger = logging.getLogger(__name__)


@dataclass
class Source:
    name: str
    text: str


@dataclass
class ComparativeReport:
    document_id: str
    results: list[QuadrantAnalysis]


def format_source_analysis(results: Sequence[QuadrantAnalysis], sources: Sequence[Source]) -> str:
    sections = [
        "\n\n".join(
            [
                f"# {source.name}",
                format_biases_list(result.biases),
                f"## Detailed Analysis\n{format_explanations(result)}",
            ]
        )
        for source, result in zip(sources, results)
    ]
    return "\n\n---\n\n".join(sections)


def build_comparative_document(results: Sequence[QuadrantAnalysis], sources: Sequence[Source]) -> Document:
    names = [s.name for s in sources]
    return Document(
        title="Comparative Bias Analysis Report",
        type="bias_comparison",
        chapters=[
            Chapter(SOURCE_ANALYSIS, [Paragraph(format_source_analysis(results, sources))]),
            Chapter(COMPARATIVE_ANALYSIS, [Paragraph(format_comparative_analysis(results, names))]),
        ],
        abstract={"sources": names},
    )


class AnalyzeMultiSourceFlow(Flow[ComparativeReport]):
    """
    Runs one generation session per source concurrently.
    If any session fails, the others are cancelled and nothing is written.
    """

    task_type = "AnalyzeMultiSource"

    def __init__(
        self,
        context: FlowContext,
        *,
        sources: Sequence[Source],
        personality: str,
        top_biases: int = 5,
    ) -> None:
        super().__init__(context)
        if not sources:
            raise FlowError("AnalyzeMultiSourceFlow requires at least one source")
        self.sources = list(sources)
        self.personality_name = personality
        self.top_biases = _check_top_biases(top_biases)

    async def _analyze(self, source: Source, identity: str) -> QuadrantAnalysis:
        prompt = quadrant_analysis_prompt(source.text, self.top_biases)
        return await self._generate(prompt, quadrant_analysis_shape(self.top_biases), identity=identity)

    async def _run(self) -> ComparativeReport:
        store = self.context.require_documents()
        personality = await self.context.personality(self.personality_name)
        tasks = [asyncio.ensure_future(self._analyze(source, personality.name)) for source in self.sources]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Read every failure so none is reported as never retrieved.
        failures = [
            task.exception() for task in tasks
            if task in done and not task.cancelled() and task.exception() is not None
        ]
        if failures:
            if len(failures) > 1:
                logger.warning("%s: %d sources failed", self.task_type, len(failures))
            raise failures[0]
        results = [task.result() for task in tasks]

        document = build_comparative_document(results, self.sources)
        document_id = await save_document(store, self.context.space_id, document)
        return ComparativeReport(document_id=document_id, results=results)
