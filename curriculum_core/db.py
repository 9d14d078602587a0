"""
SQLite persistence for the curriculum core.

Tables: ``Concepts``, ``ConceptRelationships`` (unique per
project + from + to, written with upsert), ``ContentAnalyses`` (pass 1
results per source) and ``Roadmaps`` (nested data stored as JSON).

The module-level helpers take an open connection and block; write helpers
run as one transaction that rolls back on error. ``SqliteRepository``
runs them in a worker thread behind the async ``Repository`` interface
the pipeline awaits.
"""

import asyncio
import json
import logging
import os
import sqlite3
import time
import uuid
from typing import Any, List, Optional, Sequence

from curriculum_core.models import (
    ClassificationResult,
    Concept,
    ConceptRelationship,
    Roadmap,
    ValidationResults,
)
from curriculum_core.utils import utc_now

logger = logging.getLogger(__name__)

# =========================================================================
# Schema constants
# =========================================================================

_CREATE_CONCEPTS = """\
CREATE TABLE IF NOT EXISTS Concepts (
    id              TEXT    PRIMARY KEY,
    project_id      TEXT    NOT NULL,
    source_id       TEXT,
    name            TEXT    NOT NULL,
    definition      TEXT,
    key_points      TEXT,
    difficulty      INTEGER CHECK(difficulty IS NULL OR difficulty BETWEEN 1 AND 10),
    cognitive_type  TEXT    CHECK(cognitive_type IN ('declarative','conceptual',
                                                     'procedural','conditional',
                                                     'metacognitive')),
    tier            INTEGER CHECK(tier IN (1, 2, 3)),
    mentioned_only  INTEGER NOT NULL DEFAULT 0,
    bloom_level     TEXT,
    source_mapping  TEXT,
    created_at      TIMESTAMP
);
"""

_CREATE_RELATIONSHIPS = """\
CREATE TABLE IF NOT EXISTS ConceptRelationships (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id         TEXT    NOT NULL,
    from_concept_id    TEXT    NOT NULL,
    to_concept_id      TEXT    NOT NULL,
    relationship_type  TEXT    NOT NULL,
    strength           REAL    NOT NULL CHECK(strength BETWEEN 0.0 AND 1.0),
    created_at         TIMESTAMP,
    UNIQUE(project_id, from_concept_id, to_concept_id)
);
"""

_CREATE_IDX_FROM = """\
CREATE INDEX IF NOT EXISTS idx_relationships_from
    ON ConceptRelationships(from_concept_id);
"""

_CREATE_IDX_TO = """\
CREATE INDEX IF NOT EXISTS idx_relationships_to
    ON ConceptRelationships(to_concept_id);
"""

_CREATE_CONTENT_ANALYSES = """\
CREATE TABLE IF NOT EXISTS ContentAnalyses (
    source_id     TEXT PRIMARY KEY,
    project_id    TEXT NOT NULL,
    result        TEXT NOT NULL,
    updated_at    TIMESTAMP
);
"""

_CREATE_ROADMAPS = """\
CREATE TABLE IF NOT EXISTS Roadmaps (
    id                       TEXT    PRIMARY KEY,
    project_id               TEXT    NOT NULL,
    title                    TEXT,
    levels                   TEXT    NOT NULL,
    total_estimated_minutes  INTEGER,
    mastery_gates            TEXT    NOT NULL,
    status                   TEXT    CHECK(status IN ('draft','active','archived')),
    epitome_concept_id       TEXT,
    time_calibration         TEXT,
    validation_results       TEXT,
    created_at               TIMESTAMP
);
"""


# =========================================================================
# Connection helper
# =========================================================================


def get_connection(db_path: str) -> sqlite3.Connection:
    """Return a new SQLite connection with WAL mode and row-factory enabled."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


# =========================================================================
# Migration
# =========================================================================


def migrate_db(conn: sqlite3.Connection) -> None:
    """Create (or verify) every table and index."""
    for statement in (
        _CREATE_CONCEPTS,
        _CREATE_RELATIONSHIPS,
        _CREATE_IDX_FROM,
        _CREATE_IDX_TO,
        _CREATE_CONTENT_ANALYSES,
        _CREATE_ROADMAPS,
    ):
        conn.execute(statement)
    conn.commit()
    logger.info("Schema migration OK.")


# =========================================================================
# Lock-retry helper
# =========================================================================

_SQLITE_LOCK_RETRIES = 5
_SQLITE_LOCK_BASE_DELAY = 0.1


def _retry_on_lock(fn, *args, **kwargs):  # type: ignore[no-untyped-def]
    """Wrap *fn* with SQLite-lock retry."""
    for attempt in range(1, _SQLITE_LOCK_RETRIES + 1):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() and attempt < _SQLITE_LOCK_RETRIES:
                delay = _SQLITE_LOCK_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    "SQLite locked (attempt %d/%d), retrying in %.2fs",
                    attempt, _SQLITE_LOCK_RETRIES, delay,
                )
                time.sleep(delay)
            else:
                raise


# =========================================================================
# Row conversion
# =========================================================================


def _row_to_concept(row: sqlite3.Row) -> Concept:
    return Concept(
        id=row["id"],
        project_id=row["project_id"],
        source_id=row["source_id"],
        name=row["name"],
        definition=row["definition"] or "",
        key_points=json.loads(row["key_points"] or "[]"),
        difficulty=row["difficulty"],
        cognitive_type=row["cognitive_type"],
        tier=row["tier"],
        mentioned_only=bool(row["mentioned_only"]),
        bloom_level=row["bloom_level"],
        source_mapping=json.loads(row["source_mapping"]) if row["source_mapping"] else None,
    )


def _row_to_relationship(row: sqlite3.Row) -> ConceptRelationship:
    return ConceptRelationship(
        id=row["id"],
        project_id=row["project_id"],
        from_concept_id=row["from_concept_id"],
        to_concept_id=row["to_concept_id"],
        relationship_type=row["relationship_type"],
        strength=row["strength"],
    )


def _row_to_roadmap(row: sqlite3.Row) -> Roadmap:
    return Roadmap(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        levels=json.loads(row["levels"]),
        total_estimated_minutes=row["total_estimated_minutes"],
        mastery_gates=json.loads(row["mastery_gates"]),
        status=row["status"],
        epitome_concept_id=row["epitome_concept_id"],
        time_calibration=(
            json.loads(row["time_calibration"]) if row["time_calibration"] else None
        ),
        validation_results=json.loads(row["validation_results"] or "{}"),
        created_at=row["created_at"],
    )


# =========================================================================
# Concept helpers
# =========================================================================


def insert_concepts_batch(conn: sqlite3.Connection, concepts: Sequence[Concept]) -> int:
    """Insert concepts in a single transaction (``INSERT OR REPLACE`` by id).

    Returns number of rows written.
    """
    now = utc_now().isoformat()

    def _do_insert() -> int:
        with conn:
            for c in concepts:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO Concepts
                        (id, project_id, source_id, name, definition, key_points,
                         difficulty, cognitive_type, tier, mentioned_only,
                         bloom_level, source_mapping, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        c.id, c.project_id, c.source_id, c.name, c.definition,
                        json.dumps(c.key_points), c.difficulty, c.cognitive_type,
                        c.tier, int(c.mentioned_only), c.bloom_level,
                        c.source_mapping.model_dump_json() if c.source_mapping else None,
                        now,
                    ),
                )
            return len(concepts)

    return _retry_on_lock(_do_insert)


def get_project_concepts(conn: sqlite3.Connection, project_id: str) -> List[Concept]:
    """Return every concept of *project_id* in insertion order."""
    rows = conn.execute(
        "SELECT * FROM Concepts WHERE project_id = ? ORDER BY rowid", (project_id,)
    ).fetchall()
    return [_row_to_concept(r) for r in rows]


def get_concepts_by_id(conn: sqlite3.Connection, concept_ids: Sequence[str]) -> List[Concept]:
    """Point lookups by id; unknown ids are skipped."""
    if not concept_ids:
        return []
    placeholders = ",".join("?" for _ in concept_ids)
    rows = conn.execute(
        f"SELECT * FROM Concepts WHERE id IN ({placeholders}) ORDER BY rowid",
        tuple(concept_ids),
    ).fetchall()
    return [_row_to_concept(r) for r in rows]


# =========================================================================
# Relationship helpers
# =========================================================================


def upsert_relationships_batch(
    conn: sqlite3.Connection,
    relationships: Sequence[ConceptRelationship],
) -> List[ConceptRelationship]:
    """Upsert on (project, from, to). Skips self-loops.

    Returns the stored rows.
    """
    now = utc_now().isoformat()

    def _do_upsert() -> List[ConceptRelationship]:
        with conn:
            stored: List[ConceptRelationship] = []
            for r in relationships:
                if r.from_concept_id == r.to_concept_id:
                    continue
                conn.execute(
                    """
                    INSERT INTO ConceptRelationships
                        (project_id, from_concept_id, to_concept_id,
                         relationship_type, strength, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(project_id, from_concept_id, to_concept_id)
                    DO UPDATE SET relationship_type = excluded.relationship_type,
                                  strength = excluded.strength
                    """,
                    (r.project_id, r.from_concept_id, r.to_concept_id,
                     r.relationship_type, r.strength, now),
                )
                row = conn.execute(
                    """SELECT * FROM ConceptRelationships
                       WHERE project_id = ? AND from_concept_id = ? AND to_concept_id = ?""",
                    (r.project_id, r.from_concept_id, r.to_concept_id),
                ).fetchone()
                stored.append(_row_to_relationship(row))
            return stored

    return _retry_on_lock(_do_upsert)


def get_project_relationships(
    conn: sqlite3.Connection, project_id: str
) -> List[ConceptRelationship]:
    rows = conn.execute(
        "SELECT * FROM ConceptRelationships WHERE project_id = ? ORDER BY id",
        (project_id,),
    ).fetchall()
    return [_row_to_relationship(r) for r in rows]


def find_relationships(
    conn: sqlite3.Connection,
    from_concept_id: Optional[str] = None,
    to_concept_id: Optional[str] = None,
    relationship_type: Optional[str] = None,
) -> List[ConceptRelationship]:
    """Filter relationships by any combination of endpoint and type."""
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in (
        ("from_concept_id", from_concept_id),
        ("to_concept_id", to_concept_id),
        ("relationship_type", relationship_type),
    ):
        if value is not None:
            clauses.append(f"{column} = ?")
            params.append(value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM ConceptRelationships {where} ORDER BY id", tuple(params)
    ).fetchall()
    return [_row_to_relationship(r) for r in rows]


# =========================================================================
# Content analysis helpers
# =========================================================================


def save_content_analysis(
    conn: sqlite3.Connection,
    source_id: str,
    project_id: str,
    result: ClassificationResult,
) -> None:
    now = utc_now().isoformat()

    def _do_save() -> None:
        with conn:
            conn.execute(
                """
                INSERT INTO ContentAnalyses (source_id, project_id, result, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    project_id = excluded.project_id,
                    result = excluded.result,
                    updated_at = excluded.updated_at
                """,
                (source_id, project_id, result.model_dump_json(), now),
            )

    _retry_on_lock(_do_save)


def get_content_analysis(
    conn: sqlite3.Connection, source_id: str
) -> Optional[ClassificationResult]:
    row = conn.execute(
        "SELECT result FROM ContentAnalyses WHERE source_id = ?", (source_id,)
    ).fetchone()
    return ClassificationResult.model_validate_json(row["result"]) if row else None


# =========================================================================
# Roadmap helpers
# =========================================================================


def _dump_list(items) -> str:
    return json.dumps([item.model_dump(mode="json") for item in items])


def insert_roadmap(conn: sqlite3.Connection, roadmap: Roadmap) -> Roadmap:
    """Insert a roadmap; assigns ``id`` and ``created_at`` when missing."""
    stored = roadmap.model_copy(
        update={
            "id": roadmap.id or uuid.uuid4().hex,
            "created_at": roadmap.created_at or utc_now(),
        }
    )

    def _do_insert() -> None:
        with conn:
            conn.execute(
                """
                INSERT INTO Roadmaps
                    (id, project_id, title, levels, total_estimated_minutes,
                     mastery_gates, status, epitome_concept_id, time_calibration,
                     validation_results, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.id, stored.project_id, stored.title,
                    _dump_list(stored.levels), stored.total_estimated_minutes,
                    _dump_list(stored.mastery_gates), stored.status,
                    stored.epitome_concept_id,
                    stored.time_calibration.model_dump_json() if stored.time_calibration else None,
                    stored.validation_results.model_dump_json(),
                    stored.created_at.isoformat(),
                ),
            )

    _retry_on_lock(_do_insert)
    return stored


def get_latest_roadmap(conn: sqlite3.Connection, project_id: str) -> Optional[Roadmap]:
    row = conn.execute(
        """SELECT * FROM Roadmaps WHERE project_id = ?
           ORDER BY created_at DESC, rowid DESC LIMIT 1""",
        (project_id,),
    ).fetchone()
    return _row_to_roadmap(row) if row else None


def update_roadmap_validation(
    conn: sqlite3.Connection, roadmap_id: str, results: ValidationResults
) -> None:
    def _do_update() -> None:
        with conn:
            conn.execute(
                "UPDATE Roadmaps SET validation_results = ? WHERE id = ?",
                (results.model_dump_json(), roadmap_id),
            )

    _retry_on_lock(_do_update)


# =========================================================================
# Async repository
# =========================================================================


class SqliteRepository:
    """``Repository`` implementation backed by a single SQLite connection.

    Every call runs the blocking helper in a worker thread, so lock
    backoff and slow queries suspend only the awaiting run. Calls are
    serialised on the shared connection.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = asyncio.Lock()
        migrate_db(conn)

    @classmethod
    def open(cls, db_path: str) -> "SqliteRepository":
        return cls(get_connection(db_path))

    def close(self) -> None:
        self.conn.close()

    async def _call(self, fn, *args):  # type: ignore[no-untyped-def]
        async with self._lock:
            return await asyncio.to_thread(fn, self.conn, *args)

    async def insert_concepts(self, concepts: Sequence[Concept]) -> int:
        return await self._call(insert_concepts_batch, concepts)

    async def list_concepts(self, project_id: str) -> List[Concept]:
        return await self._call(get_project_concepts, project_id)

    async def get_concepts(self, concept_ids: Sequence[str]) -> List[Concept]:
        return await self._call(get_concepts_by_id, concept_ids)

    async def upsert_relationships(
        self, relationships: Sequence[ConceptRelationship]
    ) -> List[ConceptRelationship]:
        return await self._call(upsert_relationships_batch, relationships)

    async def list_relationships(self, project_id: str) -> List[ConceptRelationship]:
        return await self._call(get_project_relationships, project_id)

    async def find_relationships(
        self,
        *,
        from_concept_id: Optional[str] = None,
        to_concept_id: Optional[str] = None,
        relationship_type: Optional[str] = None,
    ) -> List[ConceptRelationship]:
        return await self._call(
            find_relationships, from_concept_id, to_concept_id, relationship_type
        )

    async def save_classification(
        self, source_id: str, project_id: str, result: ClassificationResult
    ) -> None:
        await self._call(save_content_analysis, source_id, project_id, result)

    async def get_classification(self, source_id: str) -> Optional[ClassificationResult]:
        return await self._call(get_content_analysis, source_id)

    async def insert_roadmap(self, roadmap: Roadmap) -> Roadmap:
        return await self._call(insert_roadmap, roadmap)

    async def get_latest_roadmap(self, project_id: str) -> Optional[Roadmap]:
        return await self._call(get_latest_roadmap, project_id)

    async def update_roadmap_validation(
        self, roadmap_id: str, results: ValidationResults
    ) -> None:
        await self._call(update_roadmap_validation, roadmap_id, results)
