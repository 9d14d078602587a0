"""
Leveling and time calibration: the pure half of the roadmap architect.

- Per-concept minute estimates (difficulty band x cognitive-type modifier).
- Longest-prerequisite-path leveling with an explicit in-progress set.
- Epitome installation at level 0 and mastery-gate synthesis.
- Deterministic epitome fallback.
- Aggregate calibration:
  ``base minutes x mode multiplier x density modifier x knowledge type``.

Nothing here performs I/O.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from curriculum_core.models import (
    ClassificationResult,
    Concept,
    ConceptRelationship,
    ElaborationLevel,
    MasteryGate,
    TimeCalibration,
)
from curriculum_core.utils import round_half_up

logger = logging.getLogger(__name__)

# =========================================================================
# Constants
# =========================================================================

# (upper difficulty bound, base minutes)
DIFFICULTY_BASE_MINUTES: Tuple[Tuple[int, int], ...] = (
    (3, 5),
    (6, 10),
    (8, 15),
    (10, 20),
)

DEFAULT_DIFFICULTY = 5

COGNITIVE_TYPE_MODIFIER: Dict[str, float] = {
    "declarative": 1.0,
    "conceptual": 1.2,
    "procedural": 1.5,
    "conditional": 1.3,
    "metacognitive": 1.4,
}

MASTERY_REQUIRED_SCORE = 0.8

EPITOME_TITLE = "Core Understanding (Epitome)"

UMBRELLA_KEYWORDS = (
    "overview",
    "introduction",
    "scenarios",
    "types",
    "ways",
    "methods",
    "approaches",
    "principles",
    "fundamentals",
    "theory",
    "framework",
)


# =========================================================================
# Time estimation
# =========================================================================


def base_minutes_for_difficulty(difficulty: Optional[int]) -> int:
    """Map a 1-10 difficulty to its base minute band (absent -> 5)."""
    value = DEFAULT_DIFFICULTY if difficulty is None else difficulty
    for upper, minutes in DIFFICULTY_BASE_MINUTES:
        if value <= upper:
            return minutes
    return DIFFICULTY_BASE_MINUTES[-1][1]


def estimate_concept_minutes(concept: Concept) -> int:
    """Minutes needed to learn one concept, rounded half up."""
    modifier = COGNITIVE_TYPE_MODIFIER.get(concept.cognitive_type, 1.0)
    return round_half_up(base_minutes_for_difficulty(concept.difficulty) * modifier)


def density_modifier(concept_count: int, duration_seconds: Optional[float]) -> float:
    """0.8 below 0.5 concepts/minute, 1.0 below 1.5, else 1.3."""
    if not duration_seconds:
        return 1.0
    concepts_per_minute = concept_count / (duration_seconds / 60)
    if concepts_per_minute < 0.5:
        return 0.8
    if concepts_per_minute < 1.5:
        return 1.0
    return 1.3


def knowledge_type_factor(concepts: Sequence[Concept]) -> float:
    """1.5 when over half the concepts are procedural, 1.2 over a quarter."""
    if not concepts:
        return 1.0
    procedural_ratio = sum(
        1 for c in concepts if c.cognitive_type == "procedural"
    ) / len(concepts)
    if procedural_ratio > 0.5:
        return 1.5
    if procedural_ratio > 0.25:
        return 1.2
    return 1.0


def calculate_calibrated_time(
    classification: ClassificationResult,
    concepts: Sequence[Concept],
) -> TimeCalibration:
    """Aggregate learning time for the eligible *concepts*.

    Base minutes come from the source duration when known, otherwise from
    the sum of per-concept estimates.
    """
    duration = classification.source_duration_seconds
    density = density_modifier(len(concepts), duration)
    knowledge = knowledge_type_factor(concepts)

    if duration:
        base_minutes = duration / 60
    else:
        base_minutes = sum(estimate_concept_minutes(c) for c in concepts)

    calculated = round_half_up(
        base_minutes * classification.mode_multiplier * density * knowledge
    )
    return TimeCalibration(
        mode_multiplier=classification.mode_multiplier,
        density_modifier=density,
        knowledge_type_factor=knowledge,
        source_duration_seconds=duration,
        calculated_learning_time_minutes=calculated,
    )


# =========================================================================
# Leveling
# =========================================================================


def prerequisite_map(
    concept_ids: Sequence[str],
    relationships: Iterable[ConceptRelationship],
) -> Dict[str, List[str]]:
    """``{concept_id: [prerequisite ids]}`` restricted to *concept_ids*."""
    known = set(concept_ids)
    prereqs: Dict[str, List[str]] = {cid: [] for cid in concept_ids}
    for rel in relationships:
        if rel.relationship_type != "prerequisite":
            continue
        if rel.to_concept_id in known and rel.from_concept_id in known:
            bucket = prereqs[rel.to_concept_id]
            if rel.from_concept_id not in bucket:
                bucket.append(rel.from_concept_id)
    return prereqs


def compute_levels(
    concept_ids: Sequence[str],
    prerequisites: Mapping[str, Sequence[str]],
) -> Dict[str, int]:
    """Assign ``1 + max(prerequisite level)`` to every concept.

    Worklist-based depth-first evaluation. ``in_progress`` holds the
    concepts on the current evaluation path; a prerequisite found there
    (a self-loop or a cycle) contributes level 1 instead of recursing.
    """
    levels: Dict[str, int] = {}

    for root in concept_ids:
        if root in levels:
            continue

        in_progress: Set[str] = {root}
        # frame: [concept id, remaining prerequisites, best prerequisite level]
        stack: List[list] = [[root, iter(prerequisites.get(root, ())), 0]]

        while stack:
            frame = stack[-1]
            node, remaining = frame[0], frame[1]
            pushed = False

            for prereq in remaining:
                if prereq in levels:
                    frame[2] = max(frame[2], levels[prereq])
                elif prereq in in_progress:
                    logger.debug("Cycle through %s -> %s; counting it as level 1.", prereq, node)
                    frame[2] = max(frame[2], 1)
                else:
                    in_progress.add(prereq)
                    stack.append([prereq, iter(prerequisites.get(prereq, ())), 0])
                    pushed = True
                    break

            if pushed:
                continue

            stack.pop()
            in_progress.discard(node)
            levels[node] = frame[2] + 1
            if stack:
                stack[-1][2] = max(stack[-1][2], levels[node])

    return levels


def _level_title(level: int, highest: int) -> str:
    if level == 1:
        return "Foundations"
    if level == highest:
        return "Advanced Topics"
    return f"Level {level}"


def organize_levels(
    concepts: Sequence[Concept],
    relationships: Iterable[ConceptRelationship],
    epitome_id: Optional[str] = None,
) -> List[ElaborationLevel]:
    """Partition *concepts* into elaboration levels.

    Concepts sharing a level keep their input order. The epitome, when
    given, is lifted into level 0; every other level keeps its natural
    number, so a level the epitome emptied is simply absent.
    """
    if not concepts:
        return []

    by_id = {c.id: c for c in concepts}
    ids = [c.id for c in concepts]
    levels = compute_levels(ids, prerequisite_map(ids, relationships))

    groups: Dict[int, List[str]] = {}
    for cid in ids:
        if cid == epitome_id:
            continue
        groups.setdefault(levels[cid], []).append(cid)

    result: List[ElaborationLevel] = []
    if epitome_id is not None and epitome_id in by_id:
        epitome = by_id[epitome_id]
        result.append(
            ElaborationLevel(
                level=0,
                title=EPITOME_TITLE,
                concept_ids=[epitome_id],
                estimated_minutes=estimate_concept_minutes(epitome),
                bloom_target=epitome.bloom_level or "understand",
            )
        )

    natural = sorted(groups)
    # Titles follow the natural levels, the epitome's original level included.
    highest = max(levels.values())

    for number in natural:
        member_ids = groups[number]
        result.append(
            ElaborationLevel(
                level=number,
                title=_level_title(number, highest),
                concept_ids=member_ids,
                estimated_minutes=sum(estimate_concept_minutes(by_id[m]) for m in member_ids),
            )
        )

    return result


def create_mastery_gates(levels: Sequence[ElaborationLevel]) -> List[MasteryGate]:
    """One gate per level above the epitome."""
    return [
        MasteryGate(
            after_level=level.level,
            required_score=MASTERY_REQUIRED_SCORE,
            quiz_concept_ids=list(level.concept_ids),
        )
        for level in levels
        if level.level > 0
    ]


# =========================================================================
# Epitome
# =========================================================================


def select_epitome_fallback(
    tier3_concepts: Sequence[Concept],
    thesis_statement: Optional[str],
) -> Optional[Concept]:
    """Deterministic epitome choice used when no collaborator answer matches.

    Prefers a concept named inside the thesis statement, then a concept
    whose name carries an umbrella keyword, then the first concept.
    """
    if not tier3_concepts:
        return None

    if thesis_statement:
        thesis = thesis_statement.lower()
        for concept in tier3_concepts:
            if concept.name.lower() in thesis:
                return concept

    for concept in tier3_concepts:
        name = concept.name.lower()
        if any(keyword in name for keyword in UMBRELLA_KEYWORDS):
            return concept

    return tier3_concepts[0]


def match_concept_name(
    name: Optional[str],
    concepts: Sequence[Concept],
) -> Optional[Concept]:
    """Resolve a free-text concept name: exact (case-insensitive), then containment."""
    if not name or not name.strip():
        return None
    wanted = name.strip().lower()

    for concept in concepts:
        if concept.name.lower() == wanted:
            return concept
    for concept in concepts:
        candidate = concept.name.lower()
        if wanted in candidate or candidate in wanted:
            return concept
    return None
