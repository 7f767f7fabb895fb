"""Markdown sections the bias reports are assembled from."""

from __future__ import annotations

from typing import Sequence

from ..records import QuadrantAnalysis, QuadrantBias

DETECTED_BIASES = "Detected Biases"
DETAILED_ANALYSIS = "Detailed Analysis"


def format_bias(bias: QuadrantBias) -> list[str]:
    return [
        f"## {bias.name}",
        f"- Score: {bias.score * 100:.1f}%",
        f"- Counter-bias: {bias.counter_bias}",
        f"- Quadrant: {bias.quadrant}",
    ]


def format_biases_list(biases: Sequence[QuadrantBias]) -> str:
    return "\n\n".join("\n".join(format_bias(b)) for b in biases)


def format_explanations(analysis: QuadrantAnalysis) -> str:
    return "\n\n".join(
        f"## {bias.name}\n{analysis.explanations[i]}" for i, bias in enumerate(analysis.biases)
    )


def group_similar_biases(results: Sequence[QuadrantAnalysis]) -> dict[str, list[QuadrantBias | None]]:
    """Bias name -> the matching bias from each source (None where absent)."""
    groups: dict[str, list[QuadrantBias | None]] = {}
    for source_index, result in enumerate(results):
        for bias in result.biases:
            slots = groups.setdefault(bias.name, [None] * len(results))
            slots[source_index] = bias
    return groups


def format_comparative_analysis(results: Sequence[QuadrantAnalysis], source_names: Sequence[str]) -> str:
    sections = []
    for bias_name, per_source in group_similar_biases(results).items():
        lines = [f"# {bias_name}", ""]
        for name, bias in zip(source_names, per_source):
            if bias is None:
                lines.append(f"{name}: Not detected")
            else:
                lines.append(f"{name}: Score {bias.score * 100:.1f}%")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def find_bias_section(lines: Sequence[str], bias_index: int) -> int:
    """Line index of the ``bias_index``-th ``## `` heading, or -1."""
    current = -1
    for i, line in enumerate(lines):
        if line.startswith("## "):
            current += 1
            if current == bias_index:
                return i
    return -1
