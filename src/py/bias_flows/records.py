"""Typed records the bias flows extract from model output."""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .shapes import (
    PydanticShape,
    Shape,
    each,
    field,
    in_range,
    is_number,
    is_string,
    length,
    min_length,
    required,
)

SCORE_MIN = -10
SCORE_MAX = 10


def coerce_string_list(value: object) -> List[str]:
    """Turn model-provided content into a clean list of non-blank strings."""

    if value is None:
        return []
    if isinstance(value, str):
        candidate = value.strip()
        return [candidate] if candidate else []
    if isinstance(value, Iterable):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    raise ValueError("Expected a string or iterable of strings")


def finite_number(value: object, name: str) -> float:
    """Coerce ``value`` to a float, rejecting NaN and infinities."""
    try:
        number = float(value)
    except TypeError as err:
        raise ValueError(f"{name} must be a number") from err
    if not math.isfinite(number):
        raise ValueError(f"{name} must be a finite number, got {number}")
    return number


# --- Signed scores (one score per bias, -10..10) ---


class BiasScores(BaseModel):
    """Parallel arrays: one name, score and explanation per detected bias."""

    biases: List[str]
    scores: List[float]
    explanations: List[str]

    def rows(self) -> list[tuple[str, float, str]]:
        return list(zip(self.biases, self.scores, self.explanations))


BIAS_SCORES_SCHEMA = """{
    "biases": ["string"],
    "scores": [number],
    "explanations": ["string"]
}"""

BIAS_SCORES_EXAMPLE = """{
    "biases": ["gender_bias", "age_bias"],
    "scores": [-5, 3],
    "explanations": ["Shows preference towards male perspectives", "Favors younger viewpoints"]
}"""


def bias_scores_shape(top_biases: int) -> Shape[BiasScores]:
    return Shape(
        "BiasScores",
        field("biases", length(top_biases), each(is_string)),
        field("scores", length(top_biases), each(in_range(SCORE_MIN, SCORE_MAX))),
        field("explanations", length(top_biases), each(is_string)),
        build=BiasScores.model_validate,
        description=(
            f"Exactly {top_biases} entries in each of biases, scores and explanations; "
            f"every score between {SCORE_MIN} and {SCORE_MAX}.\n{BIAS_SCORES_SCHEMA}"
        ),
    )


# --- Scored biases (0..10 strength) ---


class ScoredBias(BaseModel):
    bias_type: str
    score: float
    detailed_explanation: str


class ScoredBiases(BaseModel):
    scored_biases: List[ScoredBias]


def scored_biases_shape(count: Optional[int] = None, lo: float = 0, hi: float = 10) -> Shape[ScoredBiases]:
    size = length(count) if count is not None else min_length(1)
    return Shape(
        "ScoredBiases",
        field(
            "scored_biases",
            size,
            each(
                required("bias_type", "detailed_explanation"),
                field("score", in_range(lo, hi)),
            ),
        ),
        build=ScoredBiases.model_validate,
        description=f"Every scored_biases[].score must be between {lo:g} and {hi:g}.",
    )


# --- Quadrant analysis (score 0..1, quadrant 1..4) ---


class QuadrantBias(BaseModel):
    """A bias placed on the quadrant chart; out-of-range values are clamped."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    counter_bias: str = Field("", alias="counterBias")
    score: float
    quadrant: int

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: object) -> float:
        return max(0.0, min(1.0, finite_number(value, "score")))

    @field_validator("quadrant", mode="before")
    @classmethod
    def _clamp_quadrant(cls, value: object) -> int:
        return max(1, min(4, round(finite_number(value, "quadrant"))))


class QuadrantAnalysis(BaseModel):
    biases: List[QuadrantBias]
    explanations: List[str] = Field(default_factory=list)

    @field_validator("explanations", mode="before")
    @classmethod
    def _clean_explanations(cls, value: object) -> List[str]:
        return coerce_string_list(value)

    @model_validator(mode="after")
    def _one_explanation_per_bias(self) -> "QuadrantAnalysis":
        if len(self.explanations) < len(self.biases):
            raise ValueError(
                f"expected an explanation for each of the {len(self.biases)} biases, "
                f"got {len(self.explanations)}"
            )
        return self

    def top(self, n: int) -> "QuadrantAnalysis":
        return QuadrantAnalysis(biases=self.biases[:n], explanations=self.explanations[:n])


QUADRANT_SCHEMA = """{
    "biases": [
        {
            "name": "bias name",
            "counterBias": "counter-bias name",
            "score": 0.0-1.0,
            "quadrant": 1-4
        }
    ],
    "explanations": [
        "detailed explanation for each bias"
    ]
}"""


def quadrant_analysis_shape(top_biases: int) -> Shape[QuadrantAnalysis]:
    return Shape(
        "QuadrantAnalysis",
        field(
            "biases",
            min_length(1),
            each(required("name"), field("score", is_number), field("quadrant", is_number)),
        ),
        field("explanations", each(is_string)),
        build=lambda parsed: QuadrantAnalysis.model_validate(parsed).top(top_biases),
        description=QUADRANT_SCHEMA,
    )


# --- Detailed explanations of bias pairs ---


class PointScore(BaseModel):
    x: float
    y: float


class BiasSide(BaseModel):
    score: PointScore
    explanation: str = ""


class BiasPair(BaseModel):
    bias_type: str
    positive: BiasSide
    negative: BiasSide


class DetailedExplanation(BaseModel):
    bias_type: str
    score_explanation: str
    supporting_quotes: List[str] = Field(default_factory=list)
    positive_analysis: str
    negative_analysis: str
    impact_analysis: str

    @field_validator("supporting_quotes", mode="before")
    @classmethod
    def _clean_quotes(cls, value: object) -> List[str]:
        return coerce_string_list(value)


class DetailedExplanations(BaseModel):
    detailed_explanations: List[DetailedExplanation]


def detailed_explanations_shape(pair_count: int) -> Shape[DetailedExplanations]:
    return PydanticShape(
        DetailedExplanations,
        field("detailed_explanations", length(pair_count)),
    )


# --- Bias edit verdict ---


class BiasEditVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    counter_bias: str = Field("", alias="counterBias")
    score: float = Field(ge=0, le=1)
    quadrant: int = Field(ge=1, le=4)
    is_valid: bool = Field(alias="isValid")
    validation_message: Optional[str] = Field(None, alias="validationMessage")

    def as_bias(self) -> QuadrantBias:
        return QuadrantBias(
            name=self.name, counter_bias=self.counter_bias, score=self.score, quadrant=self.quadrant
        )


def bias_edit_shape() -> Shape[BiasEditVerdict]:
    return PydanticShape(BiasEditVerdict, required("name", "isValid"))
