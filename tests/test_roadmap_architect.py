"""
pytest suite for the roadmap architect.
"""

import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from curriculum_core.db import SqliteRepository
from curriculum_core.errors import NoEligibleConcepts
from curriculum_core.models import (
    ClassificationResult,
    Concept,
    ConceptRelationship,
    SourceSpan,
)
from curriculum_core.roadmap_architect import RoadmapArchitect


# =========================================================================
# Helpers
# =========================================================================


def _concept(cid, name=None, tier=2, mentioned_only=False, difficulty=4):
    return Concept(
        id=cid,
        project_id="p1",
        name=name or f"Concept {cid}",
        difficulty=difficulty,
        cognitive_type="conceptual",
        tier=tier,
        mentioned_only=mentioned_only,
        source_mapping=SourceSpan(start_sec=0, end_sec=30),
    )


def _rel(src, dst, rel_type="prerequisite"):
    return ConceptRelationship(
        project_id="p1",
        from_concept_id=src,
        to_concept_id=dst,
        relationship_type=rel_type,
        strength=0.8,
    )


def _level_of(plan, concept_id):
    for level in plan.levels:
        if concept_id in level.concept_ids:
            return level.level
    return None


def _roadmap_concept_ids(plan):
    return [cid for level in plan.levels for cid in level.concept_ids]


CLASSIFICATION = ClassificationResult(
    content_type="conceptual",
    thesis_statement="Event sourcing replaces mutable state with an append-only log.",
    mode_multiplier=2.5,
    source_duration_seconds=900,
)

TIER3 = [
    _concept("t1", "Command Handlers", tier=3),
    _concept("t2", "Event Sourcing", tier=3),
    _concept("t3", "Projections", tier=3),
]


@pytest.fixture()
def repo(tmp_path):
    repository = SqliteRepository.open(str(tmp_path / "test_roadmap.db"))
    yield repository
    repository.close()


# =========================================================================
# Test: epitome identification
# =========================================================================


class TestIdentifyEpitome:

    @pytest.mark.asyncio
    async def test_no_tier3(self):
        assert await RoadmapArchitect().identify_epitome([], "thesis") is None

    @pytest.mark.asyncio
    async def test_single_tier3_skips_classifier(self):
        classifier = AsyncMock()
        architect = RoadmapArchitect(classifier=classifier)
        assert await architect.identify_epitome(TIER3[:1], None) == "t1"
        classifier.select_epitome.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_classifier_answer_used(self):
        classifier = AsyncMock()
        classifier.select_epitome.return_value = "projections"
        architect = RoadmapArchitect(classifier=classifier)
        assert await architect.identify_epitome(TIER3, CLASSIFICATION.thesis_statement) == "t3"

    @pytest.mark.asyncio
    async def test_classifier_error_falls_back_to_thesis_match(self):
        classifier = AsyncMock()
        classifier.select_epitome.side_effect = RuntimeError("model timeout")
        architect = RoadmapArchitect(classifier=classifier)

        for _ in range(3):
            epitome = await architect.identify_epitome(TIER3, CLASSIFICATION.thesis_statement)
            assert epitome == "t2"

    @pytest.mark.asyncio
    async def test_unmatched_answer_falls_back(self):
        classifier = AsyncMock()
        classifier.select_epitome.return_value = "Quantum Chromodynamics"
        architect = RoadmapArchitect(classifier=classifier)
        assert await architect.identify_epitome(TIER3, CLASSIFICATION.thesis_statement) == "t2"

    @pytest.mark.asyncio
    async def test_without_classifier(self):
        assert await RoadmapArchitect().identify_epitome(TIER3, None) == "t1"


# =========================================================================
# Test: build_roadmap
# =========================================================================


class TestBuildRoadmap:

    @pytest.mark.asyncio
    async def test_all_mentioned_only_raises(self):
        concepts = [_concept("a", mentioned_only=True), _concept("b", mentioned_only=True)]
        with pytest.raises(NoEligibleConcepts):
            await RoadmapArchitect().build_roadmap("p1", concepts, [], CLASSIFICATION)

    @pytest.mark.asyncio
    async def test_three_levels_three_gates(self):
        concepts = [_concept("a"), _concept("b"), _concept("c")]
        rels = [_rel("a", "b"), _rel("b", "c")]

        plan = await RoadmapArchitect().build_roadmap("p1", concepts, rels, CLASSIFICATION)

        assert plan.epitome_concept_id is None
        assert [lvl.level for lvl in plan.levels] == [1, 2, 3]
        assert len(plan.mastery_gates) == 3
        for gate, level in zip(plan.mastery_gates, plan.levels):
            assert gate.required_score == 0.8
            assert gate.quiz_concept_ids == level.concept_ids

    @pytest.mark.asyncio
    async def test_mentioned_only_excluded_and_epitome_lifted(self):
        concepts = [
            _concept("m", mentioned_only=True),
            _concept("t2", "Event Sourcing", tier=3),
            _concept("a"),
            _concept("b"),
        ]
        rels = [_rel("m", "a"), _rel("a", "b")]

        plan = await RoadmapArchitect().build_roadmap("p1", concepts, rels, CLASSIFICATION)

        assert plan.epitome_concept_id == "t2"
        assert _level_of(plan, "t2") == 0
        assert _level_of(plan, "m") is None
        assert sorted(_roadmap_concept_ids(plan)) == ["a", "b", "t2"]
        assert _level_of(plan, "a") < _level_of(plan, "b")

    @pytest.mark.asyncio
    async def test_rhetorical_relationships_copied(self):
        concepts = [_concept("a"), _concept("b")]
        rels = [_rel("a", "b"), _rel("b", "a", "example_of"), _rel("a", "b", "causal")]
        plan = await RoadmapArchitect().build_roadmap("p1", concepts, rels, CLASSIFICATION)
        assert [r.relationship_type for r in plan.relationships] == ["example_of"]

    @pytest.mark.asyncio
    async def test_cycle_logged_but_roadmap_built(self, caplog):
        concepts = [_concept("a"), _concept("b")]
        rels = [_rel("a", "b"), _rel("b", "a")]
        with caplog.at_level("WARNING"):
            plan = await RoadmapArchitect().build_roadmap("p1", concepts, rels, CLASSIFICATION)
        assert "cycle" in caplog.text.lower()
        assert sorted(_roadmap_concept_ids(plan)) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_time_calibration(self):
        concepts = [_concept(c) for c in "abcde"]
        plan = await RoadmapArchitect().build_roadmap("p1", concepts, [], CLASSIFICATION)
        # 15 min x 2.5 x 0.8 (0.33 concepts/min) x 1.0
        assert plan.time_calibration.calculated_learning_time_minutes == 30


# =========================================================================
# Test: store_roadmap
# =========================================================================


class TestStoreRoadmap:

    @pytest.mark.asyncio
    async def test_store_and_reload(self, repo):
        architect = RoadmapArchitect(repo)
        concepts = [_concept("a"), _concept("b")]
        plan = await architect.build_roadmap("p1", concepts, [_rel("a", "b")], CLASSIFICATION)

        stored = await architect.store_roadmap("p1", plan)

        assert stored.id
        assert stored.title == "Learning Roadmap"
        assert stored.total_estimated_minutes == sum(lvl.estimated_minutes for lvl in plan.levels)
        latest = await repo.get_latest_roadmap("p1")
        assert latest.id == stored.id
        assert latest.levels == plan.levels
        assert latest.time_calibration == plan.time_calibration

    @pytest.mark.asyncio
    async def test_store_requires_repository(self):
        plan = await RoadmapArchitect().build_roadmap(
            "p1", [_concept("a")], [], CLASSIFICATION
        )
        with pytest.raises(RuntimeError):
            await RoadmapArchitect().store_roadmap("p1", plan)
