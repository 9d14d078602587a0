"""
Exception hierarchy for the curriculum core.

Every error carries a machine-readable ``code`` and an optional
``details`` mapping so callers can branch without parsing messages.
"""

from typing import Any, Dict, Optional


class CurriculumError(Exception):
    """Base class for all curriculum-core errors."""

    code = "CURRICULUM_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


class NotFoundError(CurriculumError):
    code = "NOT_FOUND"


class SourceNotFound(NotFoundError):
    code = "SOURCE_NOT_FOUND"


class AnalysisNotFound(NotFoundError):
    code = "ANALYSIS_NOT_FOUND"


class RoadmapNotFound(NotFoundError):
    code = "ROADMAP_NOT_FOUND"


class ValidationError(CurriculumError):
    """Malformed relationship or concept fields."""

    code = "VALIDATION_ERROR"


class CircularDependency(CurriculumError):
    code = "CIRCULAR_DEPENDENCY"


class NoEligibleConcepts(CurriculumError):
    code = "NO_CONCEPTS"


class AnalysisCancelled(CurriculumError):
    code = "CANCELLED"

    def __init__(self, message: str = "Analysis cancelled", details=None):
        super().__init__(message, details)


class CannotRetry(CurriculumError):
    code = "CANNOT_RETRY"


class StageFailed(CurriculumError):
    """A collaborator or persistence error raised inside a pipeline stage."""

    code = "STAGE_FAILED"

    def __init__(
        self,
        stage: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.stage = stage
        self.details.setdefault("stage", stage)
