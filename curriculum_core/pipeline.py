"""
Pipeline orchestrator: one source -> persisted, validated roadmap.

Stages run strictly in sequence; each owns a progress sub-range and
reports its start on entry and its end on exit::

    transcribing -> routing_content -> extracting_concepts
      -> generating_chapters -> detecting_prerequisites -> generating_agenda
      -> generating_misconceptions -> building_graph -> architecting_roadmap
      -> generating_summary -> validating -> completed

``failed`` is reachable from any stage. A failed run can be resumed with
``retry``: the stage that failed and every later stage run again, while
outputs of earlier stages are reloaded from the repository.

Cancellation is cooperative. Each run owns a ``CancellationToken`` that
is checked before every stage and on every transcription poll.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from curriculum_core.collaborators import (
    AgendaGenerator,
    ChapterGenerator,
    Classifier,
    ConceptExtractor,
    MisconceptionGenerator,
    PrerequisiteDetector,
    RelationshipIdentifier,
    Repository,
    SourceLoader,
    SummaryGenerator,
    TranscriptionProvider,
)
from curriculum_core.config import PipelineConfig
from curriculum_core.errors import (
    AnalysisCancelled,
    AnalysisNotFound,
    CannotRetry,
    CurriculumError,
    RoadmapNotFound,
    SourceNotFound,
    StageFailed,
)
from curriculum_core.graph_builder import KnowledgeGraphBuilder
from curriculum_core.models import (
    ClassificationResult,
    Concept,
    ConceptRelationship,
    PipelineStatus,
    Roadmap,
    RoadmapPlan,
    Source,
    Transcription,
    mode_multiplier_for,
)
from curriculum_core.roadmap_architect import RoadmapArchitect
from curriculum_core.utils import timed, utc_now
from curriculum_core.validator import validate_analysis

logger = logging.getLogger(__name__)


# =========================================================================
# Stage table
# =========================================================================

STAGE_PROGRESS: Dict[str, Tuple[int, int]] = {
    "pending": (0, 0),
    "transcribing": (0, 10),
    "routing_content": (10, 18),
    "extracting_concepts": (18, 30),
    "generating_chapters": (30, 36),
    "detecting_prerequisites": (36, 42),
    "generating_agenda": (42, 48),
    "generating_misconceptions": (48, 55),
    "building_graph": (55, 65),
    "architecting_roadmap": (65, 80),
    "generating_summary": (80, 90),
    "validating": (90, 100),
    "completed": (100, 100),
}

PIPELINE_STAGES: Tuple[str, ...] = (
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
)

# Failures here are logged; the run continues.
NON_BLOCKING_STAGES = frozenset({
    "generating_chapters",
    "detecting_prerequisites",
    "generating_misconceptions",
})


def planned_stages(source: Source) -> List[str]:
    """Stages a fresh run of *source* executes, in order."""
    if source.requires_transcription:
        return list(PIPELINE_STAGES)
    return [s for s in PIPELINE_STAGES if s != "transcribing"]


# =========================================================================
# Run plumbing
# =========================================================================


@dataclass
class PipelineCallbacks:
    """Synchronous hooks fired at every status transition."""

    on_progress: Optional[Callable[[int], None]] = None
    on_stage_change: Optional[Callable[[str, int], None]] = None


class CancellationToken:
    """Cooperative cancellation flag owned by a single run."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AnalysisCancelled()


class StatusStore(Protocol):
    async def get(self, source_id: str) -> Optional[PipelineStatus]:
        ...

    async def set(self, status: PipelineStatus) -> None:
        ...


class InMemoryStatusStore:
    """Process-local status store.

    Records are copied on the way in and out, so a reader never holds an
    object the owning run is still mutating.
    """

    def __init__(self):
        self._records: Dict[str, PipelineStatus] = {}

    async def get(self, source_id: str) -> Optional[PipelineStatus]:
        status = self._records.get(source_id)
        return status.model_copy() if status is not None else None

    async def set(self, status: PipelineStatus) -> None:
        self._records[status.source_id] = status.model_copy()


@dataclass
class RunContext:
    """Outputs produced so far by one run. ``None`` means not loaded yet."""

    source: Source
    token: CancellationToken
    transcription: Optional[Transcription] = None
    classification: Optional[ClassificationResult] = None
    concepts: Optional[List[Concept]] = None
    relationships: Optional[List[ConceptRelationship]] = None
    plan: Optional[RoadmapPlan] = None
    roadmap: Optional[Roadmap] = None


# =========================================================================
# Orchestrator
# =========================================================================


class PipelineOrchestrator:
    def __init__(
        self,
        source_loader: SourceLoader,
        repository: Repository,
        classifier: Classifier,
        extractor: ConceptExtractor,
        identifier: RelationshipIdentifier,
        transcriber: Optional[TranscriptionProvider] = None,
        chapter_generator: Optional[ChapterGenerator] = None,
        prerequisite_detector: Optional[PrerequisiteDetector] = None,
        agenda_generator: Optional[AgendaGenerator] = None,
        misconception_generator: Optional[MisconceptionGenerator] = None,
        summary_generator: Optional[SummaryGenerator] = None,
        status_store: Optional[StatusStore] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.source_loader = source_loader
        self.repository = repository
        self.classifier = classifier
        self.extractor = extractor
        self.transcriber = transcriber
        self.chapter_generator = chapter_generator
        self.prerequisite_detector = prerequisite_detector
        self.agenda_generator = agenda_generator
        self.misconception_generator = misconception_generator
        self.summary_generator = summary_generator
        self.status_store: StatusStore = status_store or InMemoryStatusStore()
        self.config = config or PipelineConfig()

        self.graph_builder = KnowledgeGraphBuilder(repository, identifier)
        self.architect = RoadmapArchitect(repository, classifier)

        self._tokens: Dict[str, CancellationToken] = {}
        self._handlers: Dict[str, Callable[[RunContext], Awaitable[None]]] = {
            "transcribing": self._transcribe,
            "routing_content": self._route_content,
            "extracting_concepts": self._extract_concepts,
            "generating_chapters": self._generate_chapters,
            "detecting_prerequisites": self._detect_prerequisites,
            "generating_agenda": self._generate_agenda,
            "generating_misconceptions": self._generate_misconceptions,
            "building_graph": self._build_graph,
            "architecting_roadmap": self._architect_roadmap,
            "generating_summary": self._generate_summary,
            "validating": self._validate,
        }

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(
        self, source_id: str, callbacks: Optional[PipelineCallbacks] = None
    ) -> PipelineStatus:
        """Analyse *source_id* from the first stage.

        Raises:
            SourceNotFound: the source loader could not load the source.
        """
        source = await self._load_source(source_id)
        return await self._run(source, planned_stages(source), callbacks)

    async def get_status(self, source_id: str) -> Optional[PipelineStatus]:
        return await self.status_store.get(source_id)

    async def retry(
        self, source_id: str, callbacks: Optional[PipelineCallbacks] = None
    ) -> PipelineStatus:
        """Resume a failed run at its last failed stage.

        Raises:
            AnalysisNotFound: *source_id* was never analysed.
            CannotRetry: the most recent run did not fail.
        """
        previous = await self.status_store.get(source_id)
        if previous is None:
            raise AnalysisNotFound(
                f"No analysis found for source {source_id}", {"source_id": source_id}
            )
        if previous.stage != "failed":
            raise CannotRetry(
                f"Cannot retry analysis in stage {previous.stage}",
                {"source_id": source_id, "stage": previous.stage},
            )

        self._tokens.pop(source_id, None)
        source = await self._load_source(source_id)
        stages = planned_stages(source)
        if previous.last_failed_stage in stages:
            stages = stages[stages.index(previous.last_failed_stage):]

        logger.info("Retrying %s from %s.", source_id, stages[0])
        return await self._run(source, stages, callbacks)

    def cancel(self, source_id: str) -> None:
        """Request cooperative cancellation of the active run, if any."""
        token = self._tokens.get(source_id)
        if token is None:
            logger.debug("No active run for %s; cancel ignored.", source_id)
            return
        logger.info("Cancellation requested for %s.", source_id)
        token.cancel()

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _load_source(self, source_id: str) -> Source:
        try:
            return await self.source_loader.fetch(source_id)
        except SourceNotFound:
            raise
        except Exception as exc:
            raise SourceNotFound(
                f"Source not found: {source_id}", {"source_id": source_id}
            ) from exc

    async def _run(
        self,
        source: Source,
        stages: List[str],
        callbacks: Optional[PipelineCallbacks],
    ) -> PipelineStatus:
        token = CancellationToken()
        self._tokens[source.id] = token

        now = utc_now()
        status = PipelineStatus(
            source_id=source.id,
            project_id=source.project_id,
            stage="pending",
            progress=0,
            started_at=now,
            updated_at=now,
        )
        await self.status_store.set(status)

        ctx = RunContext(source=source, token=token)
        current: Optional[str] = None

        try:
            for stage in stages:
                current = stage
                token.raise_if_cancelled()
                start, end = STAGE_PROGRESS[stage]
                await self._transition(status, callbacks, stage=stage, progress=start)

                with timed(f"Stage {stage} for {source.id}"):
                    await self._run_stage(stage, ctx)

                await self._transition(status, callbacks, progress=end)

            token.raise_if_cancelled()
            await self._transition(
                status, callbacks, stage="completed", progress=100, completed_at=utc_now()
            )
            logger.info("Analysis of %s completed.", source.id)

        except Exception as exc:
            failed_stage = current or stages[0]
            error = exc
            if not isinstance(error, CurriculumError):
                error = StageFailed(failed_stage, str(exc) or type(exc).__name__)
            logger.error(
                "Analysis of %s failed at %s (%s): %s",
                source.id, failed_stage, error.code, error,
            )
            await self._transition(
                status,
                callbacks,
                stage="failed",
                error=str(error),
                last_failed_stage=failed_stage,
            )

        finally:
            if self._tokens.get(source.id) is token:
                del self._tokens[source.id]

        return status.model_copy()

    async def _run_stage(self, stage: str, ctx: RunContext) -> None:
        handler = self._handlers[stage]
        if stage not in NON_BLOCKING_STAGES:
            await self._wrap(stage, handler(ctx))
            return

        try:
            await handler(ctx)
        except AnalysisCancelled:
            raise
        except Exception as exc:
            logger.warning(
                "Non-blocking stage %s failed for %s: %s",
                stage, ctx.source.id, exc, exc_info=True,
            )

    @staticmethod
    async def _wrap(stage: str, awaitable: Awaitable[None]) -> None:
        try:
            await awaitable
        except CurriculumError:
            raise
        except Exception as exc:
            raise StageFailed(stage, str(exc) or type(exc).__name__) from exc

    async def _transition(
        self,
        status: PipelineStatus,
        callbacks: Optional[PipelineCallbacks],
        **changes,
    ) -> None:
        for key, value in changes.items():
            setattr(status, key, value)
        status.updated_at = utc_now()
        await self.status_store.set(status)

        if callbacks is None:
            return
        try:
            if callbacks.on_progress is not None:
                callbacks.on_progress(status.progress)
            if "stage" in changes and callbacks.on_stage_change is not None:
                callbacks.on_stage_change(status.stage, status.progress)
        except Exception:
            logger.warning("Progress callback raised for %s.", status.source_id, exc_info=True)

    # ------------------------------------------------------------------
    # Lazy reload of earlier outputs
    # ------------------------------------------------------------------

    async def _transcription(self, ctx: RunContext) -> Optional[Transcription]:
        if ctx.transcription is None and ctx.source.requires_transcription:
            if self.transcriber is None:
                raise StageFailed("transcribing", "No transcription provider configured")
            ctx.transcription = await self.transcriber.fetch(ctx.source.id)
        return ctx.transcription

    async def _text(self, ctx: RunContext, stage: str) -> str:
        transcription = await self._transcription(ctx)
        text = transcription.text if transcription is not None else ctx.source.text_content
        if not text:
            raise StageFailed(stage, f"No text content available for source {ctx.source.id}")
        return text

    async def _classification(self, ctx: RunContext, stage: str) -> ClassificationResult:
        if ctx.classification is None:
            ctx.classification = await self.repository.get_classification(ctx.source.id)
            if ctx.classification is None:
                raise StageFailed(stage, f"No content classification stored for {ctx.source.id}")
        return ctx.classification

    async def _concepts(self, ctx: RunContext) -> List[Concept]:
        if ctx.concepts is None:
            ctx.concepts = await self.repository.list_concepts(ctx.source.project_id)
        return ctx.concepts

    async def _relationships(self, ctx: RunContext) -> List[ConceptRelationship]:
        if ctx.relationships is None:
            ctx.relationships = await self.repository.list_relationships(ctx.source.project_id)
        return ctx.relationships

    async def _roadmap(self, ctx: RunContext, stage: str) -> Roadmap:
        if ctx.roadmap is None:
            ctx.roadmap = await self.repository.get_latest_roadmap(ctx.source.project_id)
            if ctx.roadmap is None:
                raise RoadmapNotFound(
                    f"No roadmap stored for project {ctx.source.project_id}",
                    {"project_id": ctx.source.project_id, "stage": stage},
                )
        return ctx.roadmap

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _transcribe(self, ctx: RunContext) -> None:
        if self.transcriber is None:
            raise StageFailed("transcribing", "No transcription provider configured")

        source_id = ctx.source.id
        job_id = await self.transcriber.start(source_id)
        logger.info("Transcription %s started for %s.", job_id, source_id)

        while True:
            if ctx.token.cancelled:
                try:
                    await self.transcriber.cancel(job_id)
                except Exception:
                    logger.warning("Could not cancel transcription %s.", job_id, exc_info=True)
                raise AnalysisCancelled()

            state = await self.transcriber.poll_status(job_id)
            if state == "completed":
                break
            if state == "failed":
                raise StageFailed("transcribing", f"Transcription {job_id} failed")
            await asyncio.sleep(self.config.poll_interval_seconds)

        ctx.transcription = await self.transcriber.fetch(source_id)

    async def _route_content(self, ctx: RunContext) -> None:
        text = await self._text(ctx, "routing_content")
        transcription = ctx.transcription
        duration = (
            transcription.duration_seconds
            if transcription is not None and transcription.duration_seconds
            else ctx.source.duration_seconds
        )

        result = await self.classifier.classify(text, duration)
        updates: Dict[str, object] = {}
        if result.source_duration_seconds is None and duration:
            updates["source_duration_seconds"] = duration
        multiplier = mode_multiplier_for(result.content_type)
        if result.mode_multiplier != multiplier:
            logger.warning(
                "Classifier gave multiplier %.2f for %s content; using %.2f.",
                result.mode_multiplier, result.content_type, multiplier,
            )
            updates["mode_multiplier"] = multiplier
        if updates:
            result = result.model_copy(update=updates)

        await self.repository.save_classification(ctx.source.id, ctx.source.project_id, result)
        ctx.classification = result
        logger.info(
            "Routed %s as %s (bloom ceiling %s).",
            ctx.source.id, result.content_type, result.bloom_ceiling,
        )

    async def _extract_concepts(self, ctx: RunContext) -> None:
        classification = await self._classification(ctx, "extracting_concepts")
        text = await self._text(ctx, "extracting_concepts")

        concepts = list(await self.extractor.extract(text, classification))
        await self.repository.insert_concepts(concepts)
        ctx.concepts = concepts
        logger.info("Extracted %d concept(s) from %s.", len(concepts), ctx.source.id)

    async def _generate_chapters(self, ctx: RunContext) -> None:
        if self.chapter_generator is None:
            return
        transcription = await self._transcription(ctx)
        if transcription is None:
            logger.debug("No transcription for %s; chapters skipped.", ctx.source.id)
            return
        await self.chapter_generator.generate(ctx.source, transcription)

    async def _detect_prerequisites(self, ctx: RunContext) -> None:
        if self.prerequisite_detector is None:
            return
        concepts = await self._concepts(ctx)
        await self.prerequisite_detector.detect(ctx.source.project_id, concepts)

    async def _generate_agenda(self, ctx: RunContext) -> None:
        if self.agenda_generator is None:
            return
        concepts = await self._concepts(ctx)
        classification = await self._classification(ctx, "generating_agenda")
        await self.agenda_generator.generate(ctx.source.project_id, concepts, classification)

    async def _generate_misconceptions(self, ctx: RunContext) -> None:
        if self.misconception_generator is None:
            return
        concepts = await self._concepts(ctx)
        await self.misconception_generator.generate(ctx.source.project_id, concepts)

    async def _build_graph(self, ctx: RunContext) -> None:
        project_id = ctx.source.project_id
        concepts = await self._concepts(ctx)

        await self.graph_builder.build(project_id, concepts)
        ctx.relationships = await self.repository.list_relationships(project_id)

        if await self.graph_builder.has_circular_dependency(project_id):
            logger.warning("Prerequisite graph of project %s contains a cycle.", project_id)

    async def _architect_roadmap(self, ctx: RunContext) -> None:
        project_id = ctx.source.project_id
        concepts = await self._concepts(ctx)
        relationships = await self._relationships(ctx)
        classification = await self._classification(ctx, "architecting_roadmap")

        ctx.plan = await self.architect.build_roadmap(
            project_id, concepts, relationships, classification
        )
        ctx.roadmap = await self.architect.store_roadmap(
            project_id, ctx.plan, title=self.config.roadmap_title
        )

    async def _generate_summary(self, ctx: RunContext) -> None:
        if self.summary_generator is None:
            return
        roadmap = await self._roadmap(ctx, "generating_summary")
        await self.summary_generator.generate(ctx.source.project_id, roadmap)

    async def _validate(self, ctx: RunContext) -> None:
        concepts = await self._concepts(ctx)
        classification = await self._classification(ctx, "validating")
        roadmap = await self._roadmap(ctx, "validating")

        calibration = roadmap.time_calibration or self.architect.calculate_calibrated_time(
            classification, [c for c in concepts if not c.mentioned_only]
        )
        results = validate_analysis(concepts, calibration, classification)
        await self.repository.update_roadmap_validation(roadmap.id, results)
        ctx.roadmap = roadmap.model_copy(update={"validation_results": results})
