"""
Bias Flows — Response Normalizer

Turns a completion that is *supposed* to be JSON into text that parses.
An ordered chain of repair phases runs until the candidate parses or the
repair budget is spent. Cheap deterministic phases come first; the
LLM-backed repair phase, when configured, always comes last.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, Union

from .racing import race
from .types import (
    CompletionProvider,
    LLMRequest,
    NormalizationExhaustedError,
    ParseError,
    ProviderCallError,
    StructuredOutputError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "RepairPhase",
    "ResponseNormalizer",
    "DEFAULT_PHASES",
    "try_parse",
    "strip_fence_markers",
    "extract_fenced_block",
    "remove_newlines",
    "strip_control_characters",
    "trim_whitespace",
    "extract_json_span",
    "repair_brackets",
    "build_repair_prompt",
    "llm_repair_phase",
]

PhaseFn = Callable[[str, str], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class RepairPhase:
    """A named ``(text, last_parse_error) -> text`` transform."""

    name: str
    apply: PhaseFn


def try_parse(text: str) -> ParseError | None:
    """Return None when ``text`` is valid JSON, else the parse error."""
    try:
        json.loads(text)
    except (json.JSONDecodeError, TypeError) as err:
        return ParseError(str(err), text)
    return None


# --- Deterministic phases ---


_LEADING_FENCE = re.compile(r"^```(?:json|JSON)?")
_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def strip_fence_markers(text: str, error: str = "") -> str:
    """Drop a fence opening the text and the fence closing it."""
    match = _LEADING_FENCE.match(text)
    if not match:
        return text
    text = text[match.end():]
    if text.endswith("```"):
        text = text[:-3]
    return text


def extract_fenced_block(text: str, error: str = "") -> str:
    """Keep only the first fenced block, wherever it sits in the text."""
    match = _FENCED_BLOCK.search(text)
    if match:
        return match.group(1)
    # An opening fence with no closing one: keep everything after it.
    idx = text.find("```json")
    if idx != -1:
        return text[idx + len("```json"):]
    return text


def remove_newlines(text: str, error: str = "") -> str:
    return text.replace("\r", "").replace("\n", "")


def strip_control_characters(text: str, error: str = "") -> str:
    return _CONTROL_CHARS.sub("", text)


def trim_whitespace(text: str, error: str = "") -> str:
    return text.strip()


def extract_json_span(text: str, error: str = "") -> str:
    """
    Keep the first balanced JSON object or array, dropping prose around it.
    Unbalanced spans run to the end of the text so repair_brackets can close them.
    """
    obj_start = text.find("{")
    arr_start = text.find("[")
    if obj_start == -1 and arr_start == -1:
        return text

    if arr_start == -1 or (obj_start != -1 and obj_start < arr_start):
        start, opener, closer = obj_start, "{", "}"
    else:
        start, opener, closer = arr_start, "[", "]"

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        char = text[i]
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return text[start:]


def repair_brackets(text: str, error: str = "") -> str:
    """Remove trailing commas and close unbalanced brackets in reverse order."""
    text = re.sub(r",\s*([\]}])", r"\1", text.strip())
    text = re.sub(r",\s*$", "", text)

    open_stack: list[str] = []
    in_string = False
    escape = False
    for char in text:
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            open_stack.append(char)
        elif char == "}" and open_stack and open_stack[-1] == "{":
            open_stack.pop()
        elif char == "]" and open_stack and open_stack[-1] == "[":
            open_stack.pop()

    if in_string:
        text += '"'
    while open_stack:
        text += "}" if open_stack.pop() == "{" else "]"
    return text


DEFAULT_PHASES: tuple[RepairPhase, ...] = (
    RepairPhase("RemoveJsonMark", strip_fence_markers),
    RepairPhase("RemoveOutsideJson", extract_fenced_block),
    RepairPhase("RemoveNewLine", remove_newlines),
    RepairPhase("RemoveControlChars", strip_control_characters),
    RepairPhase("TrimSpaces", trim_whitespace),
    RepairPhase("ExtractJsonSpan", extract_json_span),
    RepairPhase("RepairBrackets", repair_brackets),
)


# --- LLM repair phase ---


def build_repair_prompt(
    text: str,
    error: str,
    schema: str | None = None,
    example: str | None = None,
) -> str:
    """Instruction asking a model to rewrite invalid JSON so it parses."""
    lines = [
        "** Role:**",
        "- You are a global expert in correcting an invalid JSON string to a valid JSON string "
        "that is parsable by a JSON parser.",
        "** Instructions:**",
        "- You will be provided with an invalid JSON string that needs to be corrected.",
        "- You will be provided with the error message given by the parser.",
    ]
    if schema:
        lines.append("- You will be provided with a JSON schema the corrected string must adhere to.")
    if example:
        lines.append("- You will be provided with an example of a correct JSON string.")
    lines += [
        "",
        "** Input JSON string that needs to be corrected:**",
        f'"{text}"',
        "",
        "** Error message given by the parser:**",
        f'"{error}"',
    ]
    if schema:
        lines += ["", "** JSON Schema Template:**", f'"{schema}"']
    if example:
        lines += ["", "** Example of a correct JSON string that adheres to the schema:**", f'"{example}"']
    lines += [
        "",
        "** Output Specifications:**",
        "- Provide the corrected JSON string that is valid and parsable by a JSON parser.",
        "- Your answer should not include any code block markers (e.g., ```json).",
        "- Your answer should not include additional text, information, metadata or meta-commentary.",
    ]
    return "\n".join(lines)


def llm_repair_phase(
    provider: CompletionProvider,
    *,
    schema: str | None = None,
    example: str | None = None,
    identity: str | None = None,
    timeout_s: float | None = None,
) -> RepairPhase:
    """Build the last-resort phase that asks the provider to fix the JSON."""

    async def _apply(text: str, error: str) -> str:
        prompt = build_repair_prompt(text, error, schema, example)
        logger.debug("requesting LLM JSON repair (error=%s)", error)
        try:
            response = await race(
                provider(LLMRequest(prompt=prompt, identity=identity, metadata={"purpose": "json_repair"})),
                timeout_s=timeout_s,
            )
        except StructuredOutputError:
            raise
        except Exception as exc:
            raise ProviderCallError(exc) from exc
        return response.message

    return RepairPhase("LlmHelper", _apply)


# --- Normalizer ---


@dataclass
class _NormalizationAttempt:
    text: str
    remaining: int
    last_error: str = ""


class ResponseNormalizer:
    """
    Applies an ordered repair chain until the text parses as JSON.

    Each outer iteration walks the phase list, checking for a successful parse
    before every phase. A successful parse returns the candidate immediately,
    so valid input comes back unchanged.
    """

    def __init__(
        self,
        phases: Sequence[RepairPhase] | None = None,
        on_phase: Callable[[str, str], None] | None = None,
    ) -> None:
        self._phases = tuple(phases) if phases is not None else DEFAULT_PHASES
        if not self._phases:
            raise ValueError("ResponseNormalizer requires at least one phase")
        self._on_phase = on_phase

    @classmethod
    def with_llm_repair(
        cls,
        provider: CompletionProvider,
        *,
        schema: str | None = None,
        example: str | None = None,
        identity: str | None = None,
        timeout_s: float | None = None,
    ) -> ResponseNormalizer:
        """The default chain followed by the LLM repair phase."""
        helper = llm_repair_phase(
            provider, schema=schema, example=example, identity=identity, timeout_s=timeout_s
        )
        return cls((*DEFAULT_PHASES, helper))

    @property
    def phase_names(self) -> list[str]:
        return [phase.name for phase in self._phases]

    async def normalize(self, raw: str, budget: int = 1) -> str:
        """
        Return a JSON-parseable version of ``raw``.
        Raises NormalizationExhaustedError once ``budget`` iterations fail.
        """
        if budget <= 0:
            raise NormalizationExhaustedError("no repair budget", raw, budget)

        state = _NormalizationAttempt(text=raw, remaining=budget)
        while state.remaining > 0:
            for phase in self._phases:
                err = try_parse(state.text)
                if err is None:
                    return state.text
                state.last_error = str(err)
                state.text = await self._run_phase(phase, state.text, state.last_error)
            state.remaining -= 1

        err = try_parse(state.text)
        if err is None:
            return state.text
        raise NormalizationExhaustedError(str(err), state.text, budget)

    async def _run_phase(self, phase: RepairPhase, text: str, error: str) -> str:
        result = phase.apply(text, error)
        if inspect.isawaitable(result):
            result = await result
        if result != text:
            logger.debug("repair phase %s changed candidate (%d -> %d chars)", phase.name, len(text), len(result))
        if self._on_phase:
            self._on_phase(phase.name, result)
        return result
