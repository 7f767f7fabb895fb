"""
Shared fixtures — fast generator configs and in-memory host collaborators.

Flows only see the DocumentStore / PersonalityDirectory protocols, so the
fakes below stand in for the host runtime.
"""

from __future__ import annotations

import copy

import pytest

from bias_flows import GeneratorConfig
from bias_flows.flows import Chapter, Document, Paragraph, Personality


class InMemoryDocumentStore:
    """DocumentStore that keeps documents in a dict."""

    def __init__(self) -> None:
        self.documents: dict[str, Document] = {}
        self.updates: list[str] = []
        self._next_id = 0

    def preload(self, document: Document) -> str:
        self._next_id += 1
        document_id = f"doc-{self._next_id}"
        self.documents[document_id] = copy.deepcopy(document)
        return document_id

    async def get_document(self, space_id: str, document_id: str) -> Document | None:
        found = self.documents.get(document_id)
        return copy.deepcopy(found) if found is not None else None

    async def add_document(self, space_id: str, document: Document) -> str:
        return self.preload(
            Document(title=document.title, type=document.type, abstract=dict(document.abstract))
        )

    async def add_chapter(self, space_id: str, document_id: str, chapter: Chapter) -> str:
        chapters = self.documents[document_id].chapters
        chapters.append(Chapter(chapter.title))
        return str(len(chapters) - 1)

    async def add_paragraph(
        self, space_id: str, document_id: str, chapter_id: str, paragraph: Paragraph
    ) -> str:
        paragraphs = self.documents[document_id].chapters[int(chapter_id)].paragraphs
        paragraphs.append(copy.deepcopy(paragraph))
        return f"{chapter_id}.{len(paragraphs) - 1}"

    async def update_document(self, space_id: str, document_id: str, document: Document) -> None:
        self.documents[document_id] = copy.deepcopy(document)
        self.updates.append(document_id)


class StaticPersonalities:
    """PersonalityDirectory over a fixed list."""

    def __init__(self, *personalities: Personality) -> None:
        self._people = list(personalities)

    async def get_personality(self, space_id: str, personality_id: str) -> Personality | None:
        return next((p for p in self._people if p.id == personality_id), None)

    async def get_personality_by_name(self, space_id: str, name: str) -> Personality | None:
        return next((p for p in self._people if p.name == name), None)


@pytest.fixture
def fast_config() -> GeneratorConfig:
    return GeneratorConfig(max_attempts=3, attempt_timeout_s=1.0, retry_delay_s=0, repair_budget=1)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def personalities() -> StaticPersonalities:
    return StaticPersonalities(
        Personality(name="Skeptic", description="Questions every claim", id="p-1"),
    )


@pytest.fixture
def no_personalities() -> StaticPersonalities:
    return StaticPersonalities()
