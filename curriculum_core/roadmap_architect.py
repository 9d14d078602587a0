"""
Roadmap architect: concept set -> leveled roadmap.

Filters mentioned-only concepts, identifies the epitome, levels the rest
by longest prerequisite path, calibrates learning time and emits mastery
gates. The arithmetic lives in ``curriculum_core.leveling``; this class
adds the classifier call for epitome selection and persistence.
"""

import logging
from typing import Optional, Sequence

from curriculum_core.collaborators import Classifier, Repository
from curriculum_core.errors import NoEligibleConcepts
from curriculum_core.graph_algorithms import detect_cycle_dfs, prerequisite_graph
from curriculum_core.leveling import (
    calculate_calibrated_time,
    create_mastery_gates,
    match_concept_name,
    organize_levels,
    select_epitome_fallback,
)
from curriculum_core.models import (
    RHETORICAL_RELATIONSHIP_TYPES,
    ClassificationResult,
    Concept,
    ConceptRelationship,
    Roadmap,
    RoadmapPlan,
    TimeCalibration,
)
from curriculum_core.utils import timed

logger = logging.getLogger(__name__)

DEFAULT_ROADMAP_TITLE = "Learning Roadmap"


class RoadmapArchitect:
    def __init__(
        self,
        repository: Optional[Repository] = None,
        classifier: Optional[Classifier] = None,
    ):
        self.repository = repository
        self.classifier = classifier

    async def build_roadmap(
        self,
        project_id: str,
        concepts: Sequence[Concept],
        relationships: Sequence[ConceptRelationship],
        classification: ClassificationResult,
    ) -> RoadmapPlan:
        """Build the leveled roadmap for *concepts*.

        Raises:
            NoEligibleConcepts: every concept is mentioned-only.
        """
        eligible = [c for c in concepts if not c.mentioned_only]
        if not eligible:
            raise NoEligibleConcepts(
                "No learning concepts found (all marked as mentioned_only)",
                {"project_id": project_id, "total_concepts": len(concepts)},
            )

        with timed(f"Roadmap for {project_id}"):
            eligible_ids = [c.id for c in eligible]
            eligible_set = set(eligible_ids)
            within = [
                r for r in relationships
                if r.from_concept_id in eligible_set and r.to_concept_id in eligible_set
            ]
            if detect_cycle_dfs(prerequisite_graph(within, eligible_ids)):
                logger.warning(
                    "Prerequisite cycle among eligible concepts of %s; "
                    "cyclic prerequisites are leveled as level 1.",
                    project_id,
                )

            epitome_id = await self.identify_epitome(
                [c for c in eligible if c.tier == 3],
                classification.thesis_statement,
            )
            calibration = self.calculate_calibrated_time(classification, eligible)
            levels = organize_levels(eligible, relationships, epitome_id)

        plan = RoadmapPlan(
            epitome_concept_id=epitome_id,
            levels=levels,
            relationships=[
                r for r in relationships
                if r.relationship_type in RHETORICAL_RELATIONSHIP_TYPES
            ],
            time_calibration=calibration,
            mastery_gates=create_mastery_gates(levels),
        )
        logger.info(
            "Roadmap for %s: epitome=%s, levels=%d, minutes=%d, filtered=%d",
            project_id,
            epitome_id is not None,
            len(levels),
            calibration.calculated_learning_time_minutes,
            len(concepts) - len(eligible),
        )
        return plan

    async def identify_epitome(
        self,
        tier3_concepts: Sequence[Concept],
        thesis_statement: Optional[str],
    ) -> Optional[str]:
        """Return the id of the thesis-level concept, or ``None``.

        With several candidates the classifier is asked for a name; any
        failure to resolve that name falls back to
        ``select_epitome_fallback``.
        """
        if not tier3_concepts:
            return None
        if len(tier3_concepts) == 1:
            return tier3_concepts[0].id

        if self.classifier is not None:
            try:
                name = await self.classifier.select_epitome(tier3_concepts, thesis_statement)
            except Exception as exc:
                logger.warning("Epitome selection failed, using fallback: %s", exc)
            else:
                match = match_concept_name(name, tier3_concepts)
                if match is not None:
                    return match.id
                logger.info("Epitome name %r matched no tier-3 concept.", name)

        return select_epitome_fallback(tier3_concepts, thesis_statement).id

    def calculate_calibrated_time(
        self,
        classification: ClassificationResult,
        concepts: Sequence[Concept],
    ) -> TimeCalibration:
        return calculate_calibrated_time(classification, concepts)

    async def store_roadmap(
        self,
        project_id: str,
        plan: RoadmapPlan,
        title: Optional[str] = None,
    ) -> Roadmap:
        if self.repository is None:
            raise RuntimeError("RoadmapArchitect.store_roadmap requires a repository")

        roadmap = Roadmap(
            project_id=project_id,
            title=title or DEFAULT_ROADMAP_TITLE,
            levels=plan.levels,
            total_estimated_minutes=sum(level.estimated_minutes for level in plan.levels),
            mastery_gates=plan.mastery_gates,
            epitome_concept_id=plan.epitome_concept_id,
            time_calibration=plan.time_calibration,
            validation_results=plan.validation_results,
        )
        stored = await self.repository.insert_roadmap(roadmap)
        logger.info("Stored roadmap %s for project %s.", stored.id, project_id)
        return stored
