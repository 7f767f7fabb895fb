"""
Bias Flows — Flow plumbing

Collaborator protocols the host injects, the document value types the flows
write, and the Flow base class. A flow fails the whole task when its
generation session is exhausted; documents are only written after every
session has succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from ..generator import RetryingGenerator
from ..types import GenerationCancelledError, GenerationExhaustedError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class FlowError(Exception):
    """A collaborator lookup failed or the input was unusable."""


@dataclass
class Personality:
    name: str
    description: str = ""
    id: str | None = None


@dataclass
class Paragraph:
    text: str
    commands: dict[str, Any] = field(default_factory=dict)


@dataclass
class Chapter:
    title: str
    paragraphs: list[Paragraph] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.paragraphs)


@dataclass
class Document:
    title: str
    type: str
    chapters: list[Chapter] = field(default_factory=list)
    abstract: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    def chapter(self, title: str) -> Chapter | None:
        return next((c for c in self.chapters if c.title == title), None)


@runtime_checkable
class DocumentStore(Protocol):
    async def get_document(self, space_id: str, document_id: str) -> Document | None: ...

    async def add_document(self, space_id: str, document: Document) -> str: ...

    async def add_chapter(self, space_id: str, document_id: str, chapter: Chapter) -> str: ...

    async def add_paragraph(
        self, space_id: str, document_id: str, chapter_id: str, paragraph: Paragraph
    ) -> str: ...

    async def update_document(self, space_id: str, document_id: str, document: Document) -> None: ...


@runtime_checkable
class PersonalityDirectory(Protocol):
    async def get_personality(self, space_id: str, personality_id: str) -> Personality | None: ...

    async def get_personality_by_name(self, space_id: str, name: str) -> Personality | None: ...


@dataclass
class FlowContext:
    """Everything a flow needs from the host for one task."""

    space_id: str
    generator: RetryingGenerator
    documents: DocumentStore | None = None
    personalities: PersonalityDirectory | None = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)

    def require_documents(self) -> DocumentStore:
        if self.documents is None:
            raise FlowError("This flow needs a document store")
        return self.documents

    async def personality(self, name: str) -> Personality:
        if self.personalities is None:
            return Personality(name=name)
        found = await self.personalities.get_personality_by_name(self.space_id, name)
        if found is None:
            raise FlowError(f"Personality not found: {name}")
        return found


async def save_document(store: DocumentStore, space_id: str, document: Document) -> str:
    """Create ``document`` and write its chapters and paragraphs in order."""
    document_id = await store.add_document(space_id, document)
    for chapter in document.chapters:
        chapter_id = await store.add_chapter(space_id, document_id, chapter)
        for paragraph in chapter.paragraphs:
            await store.add_paragraph(space_id, document_id, chapter_id, paragraph)
    return document_id


class Flow(Generic[R]):
    """
    Base class for a host task.

    Subclasses implement ``_run``. ``run`` logs the outcome and re-raises
    exhaustion and cancellation so the host marks the task failed.
    """

    task_type = "Flow"

    def __init__(self, context: FlowContext) -> None:
        self.context = context

    async def run(self) -> R:
        logger.info("%s: starting", self.task_type)
        try:
            result = await self._run()
        except GenerationExhaustedError as err:
            logger.error("%s: giving up after %d attempts: %s", self.task_type, len(err.attempts), err.last_error)
            raise
        except GenerationCancelledError:
            logger.info("%s: cancelled", self.task_type)
            raise
        logger.info("%s: completed", self.task_type)
        return result

    def cancel(self) -> None:
        self.context.cancel.set()

    async def _run(self) -> R:
        raise NotImplementedError

    async def _generate(self, prompt: str, validator: Any, identity: str | None = None) -> Any:
        result = await self.context.generator.generate(
            prompt, validator, identity=identity, cancel=self.context.cancel
        )
        return result.data
