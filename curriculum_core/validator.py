"""
Validation gate run after the roadmap is architected.

Checks are advisory: each returns ``(passed, warning)`` and the gate
collects the warnings into ``ValidationResults``. A failed check never
fails the pipeline.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

from curriculum_core.models import (
    BLOOM_LEVEL_ORDER,
    ClassificationResult,
    Concept,
    TimeCalibration,
    ValidationResults,
)

logger = logging.getLogger(__name__)

CheckResult = Tuple[bool, Optional[str]]

MAX_CONCEPTS_PER_MINUTE = 3

# Upper bound on learning minutes per source minute, by content type.
MAX_TIME_MULTIPLIER = {
    "survey": 2,
    "conceptual": 5,
    "procedural": 10,
}


def _name_list(concepts: Sequence[Concept], limit: int = 3) -> str:
    names = ", ".join(c.name for c in concepts[:limit])
    extra = len(concepts) - limit
    return f"{names} and {extra} more" if extra > 0 else names


def check_proportionality(
    concepts: Sequence[Concept], duration_seconds: Optional[float]
) -> CheckResult:
    if not duration_seconds:
        return True, None

    minutes = duration_seconds / 60
    max_concepts = math.ceil(minutes * MAX_CONCEPTS_PER_MINUTE)
    count = len(concepts)

    if count > max_concepts:
        return False, (
            f"Too many learning objectives ({count}) for {round(minutes)} min content. "
            f"Expected max ~{max_concepts}."
        )

    min_concepts = max(1, math.floor(minutes * 0.3))
    if count < min_concepts and minutes > 3:
        return True, (
            f"Few learning objectives ({count}) for {round(minutes)} min content; "
            "important concepts may be marked mentioned-only."
        )
    return True, None


def check_bloom_ceiling(concepts: Sequence[Concept], ceiling: str) -> CheckResult:
    ceiling_index = BLOOM_LEVEL_ORDER.index(ceiling)
    violations = [
        c for c in concepts
        if c.bloom_level and BLOOM_LEVEL_ORDER.index(c.bloom_level) > ceiling_index
    ]
    if violations:
        return False, (
            f"{len(violations)} concept(s) exceed Bloom's ceiling \"{ceiling}\": "
            f"{_name_list(violations)}."
        )
    return True, None


def check_time_sanity(
    learning_minutes: int,
    duration_seconds: Optional[float],
    content_type: str,
) -> CheckResult:
    if not duration_seconds:
        return True, None

    source_minutes = duration_seconds / 60
    max_minutes = source_minutes * MAX_TIME_MULTIPLIER.get(content_type, 10)

    if learning_minutes > max_minutes:
        return False, (
            f"Learning time ({learning_minutes} min) exceeds reasonable limit "
            f"({round(max_minutes)} min) for {content_type} content."
        )
    if learning_minutes < source_minutes * 0.8:
        return True, (
            f"Learning time ({learning_minutes} min) is less than source duration "
            f"({round(source_minutes)} min)."
        )
    return True, None


def check_source_mapping(concepts: Sequence[Concept]) -> CheckResult:
    invalid = [
        c for c in concepts
        if c.source_mapping is not None
        and (c.source_mapping.start_sec < 0 or c.source_mapping.end_sec <= c.source_mapping.start_sec)
    ]
    if invalid:
        return False, (
            f"{len(invalid)} concept(s) have invalid source timestamps "
            f"(negative or start >= end): {_name_list(invalid)}."
        )
    return True, None


def validate_analysis(
    concepts: Sequence[Concept],
    calibration: TimeCalibration,
    classification: ClassificationResult,
) -> ValidationResults:
    """Run every check over the eligible (not mentioned-only) concepts."""
    eligible = [c for c in concepts if not c.mentioned_only]
    duration = classification.source_duration_seconds
    warnings: List[str] = []

    checks = {
        "proportionality_passed": check_proportionality(eligible, duration),
        "bloom_ceiling_passed": check_bloom_ceiling(eligible, classification.bloom_ceiling),
        "time_sanity_passed": check_time_sanity(
            calibration.calculated_learning_time_minutes,
            duration,
            classification.content_type,
        ),
        "source_mapping_passed": check_source_mapping(eligible),
    }
    for passed, warning in checks.values():
        if warning:
            warnings.append(warning)

    results = ValidationResults(
        **{name: passed for name, (passed, _) in checks.items()},
        warnings=warnings,
    )
    if warnings:
        logger.warning("Validation produced %d warning(s).", len(warnings))
    return results
