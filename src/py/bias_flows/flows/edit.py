"""Apply a user's edit to one bias of an analysis report, after the model vets it."""

from __future__ import annotations

import copy
from typing import Sequence

from ..records import BiasEditVerdict, QuadrantBias, bias_edit_shape
from .base import Document, Flow, FlowContext, FlowError, Paragraph
from .report import DETAILED_ANALYSIS, DETECTED_BIASES, find_bias_section, format_bias


class BiasEditRejectedError(FlowError):
    """The model judged the edited bias inconsistent."""


def edit_validation_prompt(bias: QuadrantBias, explanation: str) -> str:
    return f"""Validate and normalize the following bias analysis:

Bias: {bias.name}
Counter-bias: {bias.counter_bias}
Score: {bias.score}
Quadrant: {bias.quadrant}

Explanation: {explanation}

Please validate:
1. The bias and counter-bias are logically opposed
2. The score is between 0 and 1
3. The quadrant is between 1 and 4
4. The explanation is consistent with the bias

Return the validated bias in JSON format:
{{
    "name": "validated bias name",
    "counterBias": "validated counter-bias",
    "score": normalized score (0-1),
    "quadrant": normalized quadrant (1-4),
    "isValid": true/false,
    "validationMessage": "explanation if invalid"
}}"""


def replace_section(lines: Sequence[str], bias_index: int, new_lines: Sequence[str]) -> list[str]:
    """Swap the ``bias_index``-th ``## `` section for ``new_lines``."""
    out = list(lines)
    start = find_bias_section(out, bias_index)
    if start < 0:
        return out
    end = start + 1
    while end < len(out) and not out[end].startswith("## "):
        end += 1
    replacement = list(new_lines)
    if end < len(out):
        replacement.append("")
    out[start:end] = replacement
    return out


def _rewrite_chapter(document: Document, title: str, bias_index: int, new_lines: Sequence[str]) -> None:
    chapter = document.chapter(title)
    if chapter is None:
        raise FlowError(f"Document has no '{title}' chapter")
    lines = chapter.text.split("\n")
    chapter.paragraphs = [Paragraph("\n".join(replace_section(lines, bias_index, new_lines)))]


def apply_bias_edit(document: Document, bias_index: int, bias: QuadrantBias, explanation: str) -> Document:
    """Copy of ``document`` with the bias at ``bias_index`` rewritten."""
    updated = copy.deepcopy(document)
    _rewrite_chapter(updated, DETECTED_BIASES, bias_index, format_bias(bias))
    _rewrite_chapter(updated, DETAILED_ANALYSIS, bias_index, [f"## {bias.name}", explanation])
    return updated


class EditBiasFlow(Flow[QuadrantBias]):
    task_type = "EditBias"

    def __init__(
        self,
        context: FlowContext,
        *,
        personality: str,
        document_id: str,
        bias_index: int,
        edited_bias: QuadrantBias,
        edited_explanation: str,
    ) -> None:
        super().__init__(context)
        self.personality_name = personality
        self.document_id = document_id
        self.bias_index = bias_index
        self.edited_bias = edited_bias
        self.edited_explanation = edited_explanation

    async def _run(self) -> QuadrantBias:
        store = self.context.require_documents()
        document = await store.get_document(self.context.space_id, self.document_id)
        if document is None:
            raise FlowError("Document not found")

        verdict: BiasEditVerdict = await self._generate(
            edit_validation_prompt(self.edited_bias, self.edited_explanation),
            bias_edit_shape(),
            identity=self.personality_name,
        )
        if not verdict.is_valid:
            raise BiasEditRejectedError(f"Invalid bias edit: {verdict.validation_message}")

        bias = verdict.as_bias()
        updated = apply_bias_edit(document, self.bias_index, bias, self.edited_explanation)
        await store.update_document(self.context.space_id, self.document_id, updated)
        return bias
