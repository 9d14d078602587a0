"""
pytest suite for the knowledge graph builder.

Uses a temporary SQLite repository and a mocked relationship identifier;
no network needed.
"""

import json
import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from curriculum_core.db import SqliteRepository, insert_concepts_batch, upsert_relationships_batch
from curriculum_core.errors import CircularDependency, ValidationError
from curriculum_core.graph_builder import (
    KnowledgeGraphBuilder,
    main,
    resolve_candidates,
    validate_candidate,
)
from curriculum_core.models import Concept, ConceptRelationship, RelationshipCandidate


# =========================================================================
# Helpers
# =========================================================================


def _concept(cid: str, name: str, project_id: str = "p1") -> Concept:
    return Concept(id=cid, project_id=project_id, name=name)


def _candidate(src, dst, rel_type="prerequisite", strength=0.9):
    return {
        "from_concept_name": src,
        "to_concept_name": dst,
        "relationship_type": rel_type,
        "strength": strength,
    }


def _prereq(src: str, dst: str, project_id: str = "p1") -> ConceptRelationship:
    return ConceptRelationship(
        project_id=project_id,
        from_concept_id=src,
        to_concept_id=dst,
        relationship_type="prerequisite",
        strength=0.8,
    )


CONCEPTS = [
    _concept("c1", "Variables"),
    _concept("c2", "Functions"),
    _concept("c3", "Closures"),
    _concept("c4", "Decorators"),
]


# =========================================================================
# Fixtures
# =========================================================================


@pytest.fixture()
def tmp_db(tmp_path):
    """Return a DB path inside a temporary directory."""
    return str(tmp_path / "test_graph.db")


@pytest.fixture()
def repo(tmp_db):
    repository = SqliteRepository.open(tmp_db)
    yield repository
    repository.close()


@pytest.fixture()
def seeded_repo(repo):
    """Repository with four concepts and a prerequisite chain c1->c2->c3->c4."""
    insert_concepts_batch(repo.conn, CONCEPTS)
    upsert_relationships_batch(
        repo.conn, [_prereq("c1", "c2"), _prereq("c2", "c3"), _prereq("c3", "c4")]
    )
    return repo


# =========================================================================
# Test: candidate validation
# =========================================================================


class TestCandidateValidation:

    def test_valid_mapping(self):
        c = validate_candidate(_candidate("Variables", "Functions"))
        assert isinstance(c, RelationshipCandidate)
        assert c.strength == 0.9

    @pytest.mark.parametrize("strength", [-0.1, 1.5])
    def test_strength_out_of_range(self, strength):
        with pytest.raises(ValidationError):
            validate_candidate(_candidate("a", "b", strength=strength))

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            validate_candidate(_candidate("a", "b", rel_type="is_friends_with"))

    def test_empty_name(self):
        with pytest.raises(ValidationError):
            validate_candidate(_candidate("   ", "b"))

    def test_missing_field(self):
        with pytest.raises(ValidationError):
            validate_candidate({"from_concept_name": "a", "to_concept_name": "b"})


class TestResolveCandidates:

    def test_case_insensitive_and_trimmed(self):
        rels = resolve_candidates("p1", [_candidate("  variables ", "FUNCTIONS")], CONCEPTS)
        assert len(rels) == 1
        assert (rels[0].from_concept_id, rels[0].to_concept_id) == ("c1", "c2")

    def test_drops_invalid_unresolved_and_self_references(self):
        rels = resolve_candidates(
            "p1",
            [
                _candidate("Variables", "Functions"),
                _candidate("Variables", "Unknown Concept"),
                _candidate("Closures", "closures"),
                _candidate("Closures", "Decorators", strength=2.0),
                _candidate("Functions", "Closures", rel_type="example_of", strength=0.4),
            ],
            CONCEPTS,
        )
        pairs = [(r.from_concept_id, r.to_concept_id, r.relationship_type) for r in rels]
        assert pairs == [("c1", "c2", "prerequisite"), ("c2", "c3", "example_of")]


# =========================================================================
# Test: build
# =========================================================================


class TestBuild:

    @pytest.mark.asyncio
    async def test_fewer_than_two_concepts_skips_identifier(self, repo):
        identifier = AsyncMock()
        builder = KnowledgeGraphBuilder(repo, identifier)
        assert await builder.build("p1", CONCEPTS[:1]) == []
        identifier.identify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_build_persists_valid_relationships(self, repo):
        identifier = AsyncMock()
        identifier.identify.return_value = [
            _candidate("Variables", "Functions"),
            _candidate("Functions", "Closures", strength=7),
            RelationshipCandidate(
                from_concept_name="Closures",
                to_concept_name="Decorators",
                relationship_type="prerequisite",
                strength=0.6,
            ),
        ]
        builder = KnowledgeGraphBuilder(repo, identifier)

        stored = await builder.build("p1", CONCEPTS)

        assert [(r.from_concept_id, r.to_concept_id) for r in stored] == [
            ("c1", "c2"),
            ("c3", "c4"),
        ]
        assert all(r.id is not None for r in stored)
        assert len(await builder.project_relationships("p1")) == 2

    @pytest.mark.asyncio
    async def test_build_upserts_on_conflict(self, repo):
        identifier = AsyncMock()
        identifier.identify.side_effect = [
            [_candidate("Variables", "Functions", strength=0.3)],
            [_candidate("Variables", "Functions", rel_type="causal", strength=0.7)],
        ]
        builder = KnowledgeGraphBuilder(repo, identifier)

        await builder.build("p1", CONCEPTS)
        await builder.build("p1", CONCEPTS)

        rels = await builder.project_relationships("p1")
        assert len(rels) == 1
        assert rels[0].relationship_type == "causal"
        assert rels[0].strength == 0.7

    @pytest.mark.asyncio
    async def test_identifier_error_propagates(self, repo):
        identifier = AsyncMock()
        identifier.identify.side_effect = RuntimeError("inference unavailable")
        builder = KnowledgeGraphBuilder(repo, identifier)
        with pytest.raises(RuntimeError):
            await builder.build("p1", CONCEPTS)


# =========================================================================
# Test: queries
# =========================================================================


class TestQueries:

    @pytest.mark.asyncio
    async def test_prerequisites_and_dependents(self, seeded_repo):
        builder = KnowledgeGraphBuilder(seeded_repo)
        assert [c.id for c in await builder.prerequisites_of("c2")] == ["c1"]
        assert [c.id for c in await builder.dependents_of("c2")] == ["c3"]
        assert await builder.prerequisites_of("c1") == []
        assert await builder.dependents_of("c4") == []

    @pytest.mark.asyncio
    async def test_non_prerequisite_edges_ignored(self, seeded_repo):
        upsert_relationships_batch(
            seeded_repo.conn,
            [ConceptRelationship(
                project_id="p1", from_concept_id="c4", to_concept_id="c1",
                relationship_type="contrasts_with", strength=0.5,
            )],
        )
        builder = KnowledgeGraphBuilder(seeded_repo)
        assert await builder.prerequisites_of("c1") == []
        assert await builder.has_circular_dependency("p1") is False

    @pytest.mark.asyncio
    async def test_topological_order(self, seeded_repo):
        builder = KnowledgeGraphBuilder(seeded_repo)
        ordered = await builder.topological_order("p1")
        assert [c.id for c in ordered] == ["c1", "c2", "c3", "c4"]

    @pytest.mark.asyncio
    async def test_cycle_raises_and_is_detected(self, seeded_repo):
        upsert_relationships_batch(seeded_repo.conn, [_prereq("c4", "c2")])
        builder = KnowledgeGraphBuilder(seeded_repo)

        assert await builder.has_circular_dependency("p1") is True
        with pytest.raises(CircularDependency):
            await builder.topological_order("p1")

    @pytest.mark.asyncio
    async def test_empty_project(self, repo):
        builder = KnowledgeGraphBuilder(repo)
        assert await builder.topological_order("nothing") == []
        assert await builder.has_circular_dependency("nothing") is False

    @pytest.mark.asyncio
    async def test_graph_metrics(self, seeded_repo):
        metrics = await KnowledgeGraphBuilder(seeded_repo).graph_metrics("p1")
        assert metrics["total_concepts"] == 4
        assert metrics["total_edges"] == 3
        assert metrics["max_depth"] == 3
        assert metrics["is_dag"] is True


# =========================================================================
# Test: CLI
# =========================================================================


class TestCli:

    def test_prints_learning_order(self, seeded_repo, tmp_db, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", tmp_db, "--project", "p1"])
        assert exc_info.value.code == 0
        out = capsys.readouterr().out
        assert out.index("Variables") < out.index("Functions") < out.index("Decorators")

    def test_check_cycles_exit_code(self, seeded_repo, tmp_db, capsys):
        upsert_relationships_batch(seeded_repo.conn, [_prereq("c4", "c1")])
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", tmp_db, "--project", "p1", "--check-cycles"])
        assert exc_info.value.code == 1
        assert json.loads(capsys.readouterr().out)["has_cycle"] is True

    def test_metrics_json(self, seeded_repo, tmp_db, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--db", tmp_db, "--project", "p1", "--metrics"])
        assert exc_info.value.code == 0
        assert json.loads(capsys.readouterr().out)["total_edges"] == 3
