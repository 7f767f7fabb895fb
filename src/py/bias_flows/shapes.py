"""
Bias Flows — Shapes

Small combinator library for validating parsed LLM output.

A check is ``(value, path) -> list[str]``: it returns one message per
violated constraint, phrased so it can be fed straight back to the model.
``Shape`` bundles checks with an optional ``build`` step that turns the
validated JSON into a typed record. ``PydanticShape`` does the same with a
Pydantic model.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Generic, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .types import ShapeValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

Check = Callable[[Any, str], list[str]]

__all__ = [
    "Check",
    "Shape",
    "PydanticShape",
    "is_object",
    "is_array",
    "is_string",
    "is_number",
    "required",
    "length",
    "min_length",
    "in_range",
    "one_of",
    "field",
    "each",
    "all_of",
]


# JSON type names by Python runtime type, matching json.loads output.
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "number",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
    type(None): "null",
}


def _json_type(value: Any) -> str:
    return _TYPE_MAP.get(type(value), type(value).__name__)


def _at(path: str, message: str) -> str:
    return f"{path}: {message}" if path else message


def _fmt(number: float) -> str:
    return f"{number:g}"


def _label(path: str) -> str:
    """Last segment of a path, e.g. ``items[0].score`` -> ``score``."""
    tail = path.rsplit(".", 1)[-1]
    return tail.split("[", 1)[0] or "value"


# --- Type checks ---


def _type_check(expected: str) -> Check:
    def check(value: Any, path: str) -> list[str]:
        actual = _json_type(value)
        if actual != expected:
            return [_at(path, f"expected {expected}, got {actual}")]
        return []

    return check


is_object = _type_check("object")
is_array = _type_check("array")
is_string = _type_check("string")
is_number = _type_check("number")


# --- Constraint checks ---


def required(*names: str) -> Check:
    """Every named field must be present and not null."""

    def check(value: Any, path: str) -> list[str]:
        if not isinstance(value, dict):
            return [_at(path, f"expected object, got {_json_type(value)}")]
        return [
            _at(path, f'Missing required field: "{name}"')
            for name in names
            if value.get(name) is None
        ]

    return check


def length(n: int) -> Check:
    """Array must hold exactly ``n`` items."""

    def check(value: Any, path: str) -> list[str]:
        if not isinstance(value, list):
            return [_at(path, f"expected array, got {_json_type(value)}")]
        if len(value) != n:
            return [_at(path, f"expected {n} items, got {len(value)}")]
        return []

    return check


def min_length(n: int) -> Check:
    def check(value: Any, path: str) -> list[str]:
        if not isinstance(value, list):
            return [_at(path, f"expected array, got {_json_type(value)}")]
        if len(value) < n:
            return [_at(path, f"expected at least {n} items, got {len(value)}")]
        return []

    return check


def in_range(lo: float, hi: float) -> Check:
    """Number must fall in the closed interval [lo, hi]."""

    def check(value: Any, path: str) -> list[str]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return [_at(path, f"expected number, got {_json_type(value)}")]
        if not lo <= value <= hi:
            return [
                _at(path, f"{_label(path)} must be between {_fmt(lo)} and {_fmt(hi)}, got {_fmt(value)}")
            ]
        return []

    return check


def one_of(values: Sequence[Any]) -> Check:
    def check(value: Any, path: str) -> list[str]:
        if value not in values:
            return [_at(path, f"value {json.dumps(value)} not in allowed values: {json.dumps(list(values))}")]
        return []

    return check


# --- Structural combinators ---


def all_of(*checks: Check) -> Check:
    def check(value: Any, path: str) -> list[str]:
        errors: list[str] = []
        for c in checks:
            errors.extend(c(value, path))
        return errors

    return check


def field(name: str, *checks: Check, optional: bool = False) -> Check:
    """Run ``checks`` against ``value[name]``."""

    def check(value: Any, path: str) -> list[str]:
        child = f"{path}.{name}" if path else name
        if not isinstance(value, dict):
            return [_at(path, f"expected object, got {_json_type(value)}")]
        if value.get(name) is None:
            return [] if optional else [_at(path, f'Missing required field: "{name}"')]
        return all_of(*checks)(value[name], child)

    return check


def each(*checks: Check) -> Check:
    """Run ``checks`` against every item of an array."""

    def check(value: Any, path: str) -> list[str]:
        if not isinstance(value, list):
            return [_at(path, f"expected array, got {_json_type(value)}")]
        errors: list[str] = []
        for i, item in enumerate(value):
            errors.extend(all_of(*checks)(item, f"{path}[{i}]"))
        return errors

    return check


# --- Shapes ---


class Shape(Generic[T]):
    """
    A named validator: checks first, then an optional ``build`` step.

    Calling a shape returns the built record or raises ShapeValidationError
    listing every violated constraint. A ValueError, TypeError or
    ArithmeticError raised by ``build`` is reported the same way.
    """

    def __init__(
        self,
        name: str,
        *checks: Check,
        build: Callable[[Any], T] | None = None,
        description: str | None = None,
    ) -> None:
        self.name = name
        self._check = all_of(*checks)
        self._build = build
        self.description = description

    def errors(self, parsed: Any) -> list[str]:
        return self._check(parsed, "")

    def __call__(self, parsed: Any) -> T:
        errors = self.errors(parsed)
        if errors:
            raise ShapeValidationError(errors)
        if self._build is None:
            return parsed
        try:
            return self._build(parsed)
        except ValidationError as err:
            raise ShapeValidationError(_pydantic_messages(err)) from err
        except (ValueError, TypeError, ArithmeticError) as err:
            raise ShapeValidationError([str(err)]) from err

    def to_prompt_instructions(self) -> str:
        lines = [f'Respond with a JSON value matching the "{self.name}" shape.']
        if self.description:
            lines.append(self.description)
        lines.append("Return ONLY the JSON. No markdown, no explanation, no additional text.")
        return "\n".join(lines)


def _pydantic_messages(err: ValidationError) -> list[str]:
    messages: list[str] = []
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(_at(loc, item.get("msg", "invalid value")))
    return messages


class PydanticShape(Shape[M]):
    """Validate with a Pydantic model; its errors become ShapeValidationError."""

    def __init__(
        self,
        model: Type[M],
        *checks: Check,
        description: str | None = None,
    ) -> None:
        super().__init__(
            model.__name__,
            *checks,
            build=model.model_validate,
            description=description or json.dumps(model.model_json_schema()),
        )
        self.model = model
