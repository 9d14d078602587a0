"""
Pydantic models for the curriculum core.

Sources and pass-1 classification, extracted concepts and relationships,
the leveled roadmap (levels, mastery gates, time calibration, validation)
and the per-source pipeline status record.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =========================================================================
# Literals
# =========================================================================

SourceType = Literal["video", "audio", "document", "article", "text"]

ContentType = Literal["survey", "conceptual", "procedural"]

ExtractionDepth = Literal["mentions", "explanations"]

CognitiveType = Literal[
    "declarative",
    "conceptual",
    "procedural",
    "conditional",
    "metacognitive",
]

BloomLevel = Literal[
    "remember",
    "understand",
    "apply",
    "analyze",
    "evaluate",
    "create",
]

ConceptTier = Literal[1, 2, 3]

RelationshipType = Literal[
    "prerequisite",
    "causal",
    "taxonomic",
    "temporal",
    "contrasts_with",
    "elaboration_of",
    "evidence_for",
    "example_of",
    "definition_of",
]

TranscriptionState = Literal["pending", "processing", "completed", "failed"]

PipelineStage = Literal[
    "pending",
    "transcribing",
    "routing_content",
    "extracting_concepts",
    "generating_chapters",
    "detecting_prerequisites",
    "generating_agenda",
    "generating_misconceptions",
    "building_graph",
    "architecting_roadmap",
    "generating_summary",
    "validating",
    "completed",
    "failed",
]

RoadmapStatus = Literal["draft", "active", "archived"]

RELATIONSHIP_TYPES = (
    "prerequisite",
    "causal",
    "taxonomic",
    "temporal",
    "contrasts_with",
    "elaboration_of",
    "evidence_for",
    "example_of",
    "definition_of",
)

# Descriptive relationship types carried into the roadmap plan.
RHETORICAL_RELATIONSHIP_TYPES = (
    "elaboration_of",
    "evidence_for",
    "example_of",
    "definition_of",
)

BLOOM_LEVEL_ORDER: List[str] = [
    "remember",
    "understand",
    "apply",
    "analyze",
    "evaluate",
    "create",
]

MODE_MULTIPLIERS: Dict[str, float] = {
    "survey": 1.5,
    "conceptual": 2.5,
    "procedural": 4.0,
}

TRANSCRIBED_SOURCE_TYPES = ("video", "audio")


def mode_multiplier_for(content_type: str) -> float:
    """Return the fixed time multiplier for a classified content type."""
    return MODE_MULTIPLIERS[content_type]


# =========================================================================
# Sources & pass 1
# =========================================================================


class Source(BaseModel):
    """A piece of learning content as returned by the source loader."""

    id: str
    project_id: str
    name: str = ""
    content_type: SourceType
    duration_seconds: Optional[float] = None
    text_content: Optional[str] = None

    @property
    def requires_transcription(self) -> bool:
        return self.content_type in TRANSCRIBED_SOURCE_TYPES


class Transcription(BaseModel):
    id: str
    source_id: str
    text: str
    duration_seconds: Optional[float] = None


class ClassificationResult(BaseModel):
    """Pass 1 (content routing) output."""

    content_type: ContentType
    thesis_statement: Optional[str] = None
    bloom_ceiling: BloomLevel = "understand"
    mode_multiplier: float
    extraction_depth: ExtractionDepth = "explanations"
    source_duration_seconds: Optional[float] = None


# =========================================================================
# Concepts & relationships
# =========================================================================


class SourceSpan(BaseModel):
    """Time span in the source where a concept is explained."""

    model_config = ConfigDict(frozen=True)

    start_sec: float
    end_sec: float


class Concept(BaseModel):
    """A single extracted concept. Immutable once extracted."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    source_id: Optional[str] = None
    name: str
    definition: str = ""
    key_points: List[str] = Field(default_factory=list)
    difficulty: Optional[int] = Field(default=None, ge=1, le=10)
    cognitive_type: CognitiveType = "conceptual"
    tier: ConceptTier = 2
    mentioned_only: bool = False
    bloom_level: Optional[BloomLevel] = None
    source_mapping: Optional[SourceSpan] = None


class RelationshipCandidate(BaseModel):
    """Unvalidated, name-based relationship produced by the identifier."""

    from_concept_name: str
    to_concept_name: str
    relationship_type: str
    strength: float


class ConceptRelationship(BaseModel):
    """Mirrors a single row of the ``ConceptRelationships`` table."""

    id: Optional[int] = None
    project_id: str
    from_concept_id: str
    to_concept_id: str
    relationship_type: RelationshipType
    strength: float = Field(ge=0.0, le=1.0)


# =========================================================================
# Roadmap
# =========================================================================


class ElaborationLevel(BaseModel):
    level: int
    title: str
    concept_ids: List[str] = Field(default_factory=list)
    estimated_minutes: int = 0
    bloom_target: Optional[BloomLevel] = None


class MasteryGate(BaseModel):
    after_level: int
    required_score: float = 0.8
    quiz_concept_ids: List[str] = Field(default_factory=list)


class TimeCalibration(BaseModel):
    """Components of ``source minutes x mode x density x knowledge type``."""

    mode_multiplier: float
    density_modifier: float
    knowledge_type_factor: float
    source_duration_seconds: Optional[float] = None
    calculated_learning_time_minutes: int


class ValidationResults(BaseModel):
    proportionality_passed: bool = True
    bloom_ceiling_passed: bool = True
    time_sanity_passed: bool = True
    source_mapping_passed: bool = True
    warnings: List[str] = Field(default_factory=list)


class RoadmapPlan(BaseModel):
    """In-memory roadmap produced by the architect, before persistence."""

    epitome_concept_id: Optional[str] = None
    levels: List[ElaborationLevel] = Field(default_factory=list)
    relationships: List[ConceptRelationship] = Field(default_factory=list)
    time_calibration: TimeCalibration
    mastery_gates: List[MasteryGate] = Field(default_factory=list)
    validation_results: ValidationResults = Field(default_factory=ValidationResults)


class Roadmap(BaseModel):
    """Mirrors a single row of the ``Roadmaps`` table."""

    id: Optional[str] = None
    project_id: str
    title: str = "Learning Roadmap"
    levels: List[ElaborationLevel] = Field(default_factory=list)
    total_estimated_minutes: int = 0
    mastery_gates: List[MasteryGate] = Field(default_factory=list)
    status: RoadmapStatus = "draft"
    epitome_concept_id: Optional[str] = None
    time_calibration: Optional[TimeCalibration] = None
    validation_results: ValidationResults = Field(default_factory=ValidationResults)
    created_at: Optional[datetime] = None


# =========================================================================
# Pipeline
# =========================================================================


class PipelineStatus(BaseModel):
    """Status of the most recent analysis run for one source."""

    source_id: str
    project_id: str
    stage: PipelineStage = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    last_failed_stage: Optional[PipelineStage] = None
    started_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
