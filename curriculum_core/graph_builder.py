"""
Knowledge graph construction and queries.

Usage::

    python -m curriculum_core.graph_builder \\
        --db ./data/curriculum.db \\
        --project my-project [--check-cycles | --metrics]

``KnowledgeGraphBuilder.build`` turns name-based relationship candidates
from the identifier into validated, id-based relationships and upserts
them. Ordering queries run over the ``prerequisite`` subgraph only.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Mapping, Optional, Sequence

from curriculum_core.collaborators import CandidateLike, RelationshipIdentifier, Repository
from curriculum_core.errors import CircularDependency, ValidationError
from curriculum_core.graph_algorithms import (
    compute_metrics,
    detect_cycle_dfs,
    prerequisite_graph,
    topological_sort_kahn,
)
from curriculum_core.models import (
    RELATIONSHIP_TYPES,
    Concept,
    ConceptRelationship,
    RelationshipCandidate,
)
from curriculum_core.utils import setup_logging

logger = logging.getLogger(__name__)


# =========================================================================
# Candidate validation
# =========================================================================


def validate_candidate(raw: CandidateLike) -> RelationshipCandidate:
    """Validate one identifier candidate.

    Raises:
        ValidationError: empty names, unknown type, or strength outside
            ``[0, 1]``.
    """
    if isinstance(raw, RelationshipCandidate):
        candidate = raw
    elif isinstance(raw, Mapping):
        try:
            candidate = RelationshipCandidate.model_validate(dict(raw))
        except ValueError as exc:
            raise ValidationError(f"Malformed relationship candidate: {exc}") from exc
    else:
        raise ValidationError(f"Unsupported candidate type: {type(raw).__name__}")

    if not candidate.from_concept_name.strip():
        raise ValidationError("from_concept_name cannot be empty")
    if not candidate.to_concept_name.strip():
        raise ValidationError("to_concept_name cannot be empty")
    if candidate.relationship_type not in RELATIONSHIP_TYPES:
        raise ValidationError(
            f"Invalid relationship type: {candidate.relationship_type}",
            {"relationship_type": candidate.relationship_type},
        )
    if not 0.0 <= candidate.strength <= 1.0:
        raise ValidationError(
            f"Strength must be between 0.0 and 1.0, got {candidate.strength}",
            {"strength": candidate.strength},
        )
    return candidate


def resolve_candidates(
    project_id: str,
    candidates: Sequence[CandidateLike],
    concepts: Sequence[Concept],
) -> List[ConceptRelationship]:
    """Validate candidates and map concept names to ids.

    Invalid candidates, unresolved names and self-references are dropped.
    """
    name_to_id: Dict[str, str] = {}
    for concept in concepts:
        name_to_id.setdefault(concept.name.strip().lower(), concept.id)

    resolved: List[ConceptRelationship] = []
    dropped = 0

    for raw in candidates:
        try:
            candidate = validate_candidate(raw)
        except ValidationError as exc:
            logger.debug("Dropping relationship candidate: %s", exc)
            dropped += 1
            continue

        from_id = name_to_id.get(candidate.from_concept_name.strip().lower())
        to_id = name_to_id.get(candidate.to_concept_name.strip().lower())
        if from_id is None or to_id is None or from_id == to_id:
            dropped += 1
            continue

        resolved.append(
            ConceptRelationship(
                project_id=project_id,
                from_concept_id=from_id,
                to_concept_id=to_id,
                relationship_type=candidate.relationship_type,
                strength=candidate.strength,
            )
        )

    if dropped:
        logger.info(
            "Relationship candidates: kept %d, dropped %d.", len(resolved), dropped
        )
    return resolved


# =========================================================================
# Builder
# =========================================================================


class KnowledgeGraphBuilder:
    """Builds and queries a project's concept relationship graph."""

    def __init__(
        self,
        repository: Repository,
        identifier: Optional[RelationshipIdentifier] = None,
    ):
        self.repository = repository
        self.identifier = identifier

    async def build(
        self, project_id: str, concepts: Sequence[Concept]
    ) -> List[ConceptRelationship]:
        """Identify, validate and persist relationships between *concepts*."""
        if len(concepts) < 2:
            logger.info("Fewer than two concepts for %s; no relationships.", project_id)
            return []
        if self.identifier is None:
            raise RuntimeError("KnowledgeGraphBuilder.build requires an identifier")

        candidates = await self.identifier.identify(concepts)
        relationships = resolve_candidates(project_id, candidates or [], concepts)
        if not relationships:
            return []

        stored = await self.repository.upsert_relationships(relationships)
        logger.info(
            "Stored %d relationship(s) for project %s.", len(stored), project_id
        )
        return stored

    async def project_relationships(self, project_id: str) -> List[ConceptRelationship]:
        return await self.repository.list_relationships(project_id)

    async def prerequisites_of(self, concept_id: str) -> List[Concept]:
        """Concepts with a prerequisite edge pointing into *concept_id*."""
        edges = await self.repository.find_relationships(
            to_concept_id=concept_id, relationship_type="prerequisite"
        )
        if not edges:
            return []
        return await self.repository.get_concepts([e.from_concept_id for e in edges])

    async def dependents_of(self, concept_id: str) -> List[Concept]:
        """Concepts with a prerequisite edge originating from *concept_id*."""
        edges = await self.repository.find_relationships(
            from_concept_id=concept_id, relationship_type="prerequisite"
        )
        if not edges:
            return []
        return await self.repository.get_concepts([e.to_concept_id for e in edges])

    async def topological_order(self, project_id: str) -> List[Concept]:
        """Project concepts in learning order (prerequisites first).

        Raises:
            CircularDependency: the prerequisite subgraph has a cycle.
        """
        concepts = await self.repository.list_concepts(project_id)
        relationships = await self.repository.list_relationships(project_id)
        if not concepts and not relationships:
            return []

        adjacency = prerequisite_graph(relationships, [c.id for c in concepts])
        ordered_ids = topological_sort_kahn(adjacency)
        if ordered_ids is None:
            raise CircularDependency(
                "Cannot determine learning order: circular dependency detected",
                {"project_id": project_id},
            )

        by_id = {c.id: c for c in concepts}
        return [by_id[cid] for cid in ordered_ids if cid in by_id]

    async def has_circular_dependency(self, project_id: str) -> bool:
        concepts = await self.repository.list_concepts(project_id)
        relationships = await self.repository.list_relationships(project_id)
        return detect_cycle_dfs(prerequisite_graph(relationships, [c.id for c in concepts]))

    async def graph_metrics(self, project_id: str) -> Dict[str, Any]:
        concepts = await self.repository.list_concepts(project_id)
        relationships = await self.repository.list_relationships(project_id)
        adjacency = prerequisite_graph(relationships, [c.id for c in concepts])
        return compute_metrics(adjacency, len(concepts))


# =========================================================================
# CLI
# =========================================================================


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="python -m curriculum_core.graph_builder",
        description="Print a project's learning order from its prerequisite graph.",
    )
    parser.add_argument("--db", default="./data/curriculum.db")
    parser.add_argument("--project", required=True)
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--check-cycles", action="store_true",
        help="Only report whether the prerequisite graph has a cycle.",
    )
    mode.add_argument(
        "--metrics", action="store_true",
        help="Print graph metrics as JSON.",
    )
    return parser.parse_args(argv)


async def _run(args) -> int:
    from curriculum_core.db import SqliteRepository

    repository = SqliteRepository.open(args.db)
    try:
        builder = KnowledgeGraphBuilder(repository)

        if args.check_cycles:
            cyclic = await builder.has_circular_dependency(args.project)
            print(json.dumps({"project_id": args.project, "has_cycle": cyclic}))
            return 1 if cyclic else 0

        if args.metrics:
            metrics = await builder.graph_metrics(args.project)
            print(json.dumps(metrics, indent=2))
            return 0

        try:
            ordered = await builder.topological_order(args.project)
        except CircularDependency as exc:
            logger.error("%s", exc)
            return 1
        for position, concept in enumerate(ordered, start=1):
            print(f"{position:3d}. {concept.name}")
        return 0
    finally:
        repository.close()


def main(argv=None):
    """CLI entry-point."""
    setup_logging()
    args = _parse_args(argv)
    logger.info("Graph query: db=%s, project=%s", args.db, args.project)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
