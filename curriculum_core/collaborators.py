"""
Interfaces of the external collaborators the core depends on.

AI-backed text generation, transcription and source loading live outside
this package; the orchestrator, graph builder and architect only rely on
the structural contracts below. ``SqliteRepository`` in
``curriculum_core.db`` implements ``Repository``.
"""

from typing import Any, List, Mapping, Optional, Protocol, Sequence, Union

from curriculum_core.models import (
    ClassificationResult,
    Concept,
    ConceptRelationship,
    RelationshipCandidate,
    Roadmap,
    Source,
    Transcription,
    TranscriptionState,
    ValidationResults,
)

CandidateLike = Union[RelationshipCandidate, Mapping[str, Any]]


class SourceLoader(Protocol):
    async def fetch(self, source_id: str) -> Source:
        """Load a source. Raises ``SourceNotFound`` when absent."""
        ...


class Classifier(Protocol):
    """Pass 1: content routing."""

    async def classify(
        self, text: str, duration_seconds: Optional[float]
    ) -> ClassificationResult:
        ...

    async def select_epitome(
        self, concepts: Sequence[Concept], thesis_statement: Optional[str]
    ) -> Optional[str]:
        """Return the name of the best thesis-level concept, or ``None``."""
        ...


class ConceptExtractor(Protocol):
    """Pass 2: concept extraction."""

    async def extract(
        self, text: str, classification: ClassificationResult
    ) -> List[Concept]:
        ...


class RelationshipIdentifier(Protocol):
    async def identify(self, concepts: Sequence[Concept]) -> List[CandidateLike]:
        ...


class TranscriptionProvider(Protocol):
    async def start(self, source_id: str) -> str:
        """Start transcribing; returns the transcription job id."""
        ...

    async def poll_status(self, transcription_id: str) -> TranscriptionState:
        ...

    async def fetch(self, source_id: str) -> Transcription:
        ...

    async def cancel(self, transcription_id: str) -> None:
        ...


# ---------------------------------------------------------------------------
# Optional stage collaborators
# ---------------------------------------------------------------------------


class ChapterGenerator(Protocol):
    async def generate(self, source: Source, transcription: Transcription) -> Any:
        ...


class PrerequisiteDetector(Protocol):
    async def detect(self, project_id: str, concepts: Sequence[Concept]) -> Any:
        ...


class AgendaGenerator(Protocol):
    async def generate(
        self,
        project_id: str,
        concepts: Sequence[Concept],
        classification: ClassificationResult,
    ) -> Any:
        ...


class MisconceptionGenerator(Protocol):
    async def generate(self, project_id: str, concepts: Sequence[Concept]) -> Any:
        ...


class SummaryGenerator(Protocol):
    async def generate(self, project_id: str, roadmap: Roadmap) -> Any:
        ...


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class Repository(Protocol):
    async def insert_concepts(self, concepts: Sequence[Concept]) -> int:
        ...

    async def list_concepts(self, project_id: str) -> List[Concept]:
        ...

    async def get_concepts(self, concept_ids: Sequence[str]) -> List[Concept]:
        ...

    async def upsert_relationships(
        self, relationships: Sequence[ConceptRelationship]
    ) -> List[ConceptRelationship]:
        ...

    async def list_relationships(self, project_id: str) -> List[ConceptRelationship]:
        ...

    async def find_relationships(
        self,
        *,
        from_concept_id: Optional[str] = None,
        to_concept_id: Optional[str] = None,
        relationship_type: Optional[str] = None,
    ) -> List[ConceptRelationship]:
        ...

    async def save_classification(
        self, source_id: str, project_id: str, result: ClassificationResult
    ) -> None:
        ...

    async def get_classification(self, source_id: str) -> Optional[ClassificationResult]:
        ...

    async def insert_roadmap(self, roadmap: Roadmap) -> Roadmap:
        ...

    async def get_latest_roadmap(self, project_id: str) -> Optional[Roadmap]:
        ...

    async def update_roadmap_validation(
        self, roadmap_id: str, results: ValidationResults
    ) -> None:
        ...
