"""End-to-end extraction pipeline.

Runs every stage in order over one batch of notes:

    normalize -> deduplicate -> (pattern || external) -> merge
    -> temporal -> negation -> subtype -> confidence -> timeline
    -> (responses || evolution) -> quality

Deduplication and pattern extraction run in worker threads so concurrent
sessions do not block the event loop. The external extractor is the only
network-bound stage; a session-level ``asyncio.Event`` abandons it.

No stage failure aborts the session. A failing stage logs a warning,
records it on the session, and its neutral value is used downstream.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from clinex.schemas.base import EntityType, ExternalStatus, IssueType, QualityGrade
from clinex.schemas.entities import (
    ClinicalDocument,
    ExtractedEntity,
    FunctionalTrajectory,
    PathologyDetection,
    QualityIssue,
    QualityReport,
    Timeline,
)
from clinex.schemas.session import ExtractionHints, ExtractionSession, UsageReport
from clinex.services.confidence_scorer import ConfidenceScorer, get_confidence_scorer
from clinex.services.deduplicator import DeduplicationResult, Deduplicator, get_deduplicator
from clinex.services.evolution_analyzer import EvolutionAnalyzer, get_evolution_analyzer
from clinex.services.external_extractor import (
    ExternalExtractionResult,
    ExternalExtractor,
    get_external_extractor,
)
from clinex.services.negation_filter import NegationFilter, NegationResult, get_negation_filter
from clinex.services.normalizer import Normalizer, get_normalizer
from clinex.services.pathology_patterns import expected_fields_for
from clinex.services.pattern_extractor import (
    PatternExtractionResult,
    PatternExtractor,
    get_pattern_extractor,
)
from clinex.services.quality_scorer import QualityScorer, get_quality_scorer
from clinex.services.response_tracker import ResponseTracker, get_response_tracker
from clinex.services.result_merger import ResultMerger, get_result_merger
from clinex.services.subtype_classifier import SubtypeClassifier, get_subtype_classifier
from clinex.services.temporal_resolver import TemporalResolver, get_temporal_resolver
from clinex.services.timeline_builder import TimelineBuilder, get_timeline_builder

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExtractionPipeline:
    """Orchestrates one extraction session.

    Every collaborator defaults to its shared singleton; pass instances to
    override (tests inject a stub external extractor this way).

    Usage:
        pipeline = ExtractionPipeline()
        session, usage = await pipeline.run([note_1, note_2])
        print(len(session.entities), session.quality_report.overall)
    """

    def __init__(
        self,
        normalizer: Normalizer | None = None,
        deduplicator: Deduplicator | None = None,
        pattern_extractor: PatternExtractor | None = None,
        external_extractor: ExternalExtractor | None = None,
        merger: ResultMerger | None = None,
        temporal_resolver: TemporalResolver | None = None,
        negation_filter: NegationFilter | None = None,
        subtype_classifier: SubtypeClassifier | None = None,
        confidence_scorer: ConfidenceScorer | None = None,
        timeline_builder: TimelineBuilder | None = None,
        response_tracker: ResponseTracker | None = None,
        evolution_analyzer: EvolutionAnalyzer | None = None,
        quality_scorer: QualityScorer | None = None,
    ):
        self.normalizer = normalizer or get_normalizer()
        self.deduplicator = deduplicator or get_deduplicator()
        self.pattern_extractor = pattern_extractor or get_pattern_extractor()
        self.external_extractor = external_extractor or get_external_extractor()
        self.merger = merger or get_result_merger()
        self.temporal_resolver = temporal_resolver or get_temporal_resolver()
        self.negation_filter = negation_filter or get_negation_filter()
        self.subtype_classifier = subtype_classifier or get_subtype_classifier()
        self.confidence_scorer = confidence_scorer or get_confidence_scorer()
        self.timeline_builder = timeline_builder or get_timeline_builder()
        self.response_tracker = response_tracker or get_response_tracker()
        self.evolution_analyzer = evolution_analyzer or get_evolution_analyzer()
        self.quality_scorer = quality_scorer or get_quality_scorer()

    async def run(
        self,
        documents: Sequence[Any],
        hints: ExtractionHints | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> tuple[ExtractionSession, UsageReport]:
        """Extract a structured record from a batch of notes.

        Args:
            documents: Note texts or ClinicalDocuments, in chronological order
            hints: Optional pathology/age/sex hints and refinement feedback
            cancel_event: Set to abandon the pending external extractor call

        Returns:
            (session, usage). The usage report is returned separately so
            callers aggregate cost across sessions themselves.
        """
        start_time = time.perf_counter()
        hints = hints or ExtractionHints()
        session = ExtractionSession(documents_received=len(documents), hints=hints)

        accepted = self._accept(documents, session)
        session.documents_accepted = len(accepted)
        if not accepted:
            logger.warning("No usable documents; returning empty session")
            session.quality_report = _empty_quality_report()
            return session, UsageReport()

        # Stage 1: normalization
        normalized = self._stage(
            session,
            "normalize",
            lambda: [self.normalizer.normalize_document(d) for d in accepted],
            fallback=accepted,
        )

        # Stage 2: deduplication (CPU-bound, off the event loop)
        dedup = await self._async_stage(
            session,
            "deduplicate",
            lambda: asyncio.to_thread(self.deduplicator.deduplicate, normalized),
            fallback=DeduplicationResult(text="\n\n".join(d.text for d in normalized)),
        )
        text = dedup.text
        session.deduplicated_text = text
        session.deduplication = dedup.stats

        # Stage 3: pattern and external extraction, joined before merging
        pattern_result, external_result = await asyncio.gather(
            self._async_stage(
                session,
                "pattern_extraction",
                lambda: asyncio.to_thread(self.pattern_extractor.extract, text, hints),
                fallback=PatternExtractionResult(),
            ),
            self._async_stage(
                session,
                "external_extraction",
                lambda: self._external(text, hints, cancel_event),
                fallback=ExternalExtractionResult(status=ExternalStatus.ERROR),
            ),
        )
        session.pathology = pattern_result.pathology
        session.external_status = external_result.status
        session.warnings.extend(external_result.warnings)
        usage = external_result.usage

        # Stage 4: fusion
        entities = self._stage(
            session,
            "merge",
            lambda: self.merger.merge(pattern_result.entities, external_result.entities),
            fallback=[e.model_copy(deep=True) for e in pattern_result.entities],
        )

        # Stage 5: dates
        timestamp_hints = {
            d.source_index: d.timestamp_hint for d in accepted if d.timestamp_hint is not None
        }
        entities = self._stage(
            session,
            "temporal",
            lambda: self.temporal_resolver.resolve(
                text, entities, dedup.document_index_at, timestamp_hints
            ).entities,
            fallback=entities,
        )

        # Stage 6: negation
        negation = self._stage(
            session,
            "negation",
            lambda: self.negation_filter.filter(text, entities),
            fallback=NegationResult(entities=entities),
        )
        entities = negation.entities
        session.pathology = _reconcile_pathology(session.pathology, entities, negation.removed)

        # Stage 7: subtypes
        entities = self._stage(
            session,
            "subtype",
            lambda: self.subtype_classifier.apply(text, entities),
            fallback=entities,
        )

        # Stage 8: confidence
        expected = expected_fields_for(session.pathology.primary or hints.pathology)
        confidence = self._stage(
            session,
            "confidence",
            lambda: self.confidence_scorer.score(text, entities, expected),
            fallback=None,
        )
        if confidence is not None:
            session.source_quality = confidence.source_quality
            session.field_confidence = confidence.field_confidence
            session.overall_confidence = confidence.overall
        session.entities = entities

        # Stage 9: timeline
        timeline = self._stage(
            session,
            "timeline",
            lambda: self.timeline_builder.build(entities),
            fallback=Timeline(),
        )
        session.timeline = timeline

        # Stage 10: read-only analyses over the same timeline
        responses, trajectory = await asyncio.gather(
            self._async_stage(
                session,
                "responses",
                lambda: asyncio.to_thread(self.response_tracker.track, timeline, entities),
                fallback=[],
            ),
            self._async_stage(
                session,
                "evolution",
                lambda: asyncio.to_thread(self.evolution_analyzer.analyze, entities, timeline),
                fallback=FunctionalTrajectory(),
            ),
        )
        session.treatment_responses = responses
        session.functional_trajectory = trajectory

        # Stage 11: quality
        session.quality_report = self._stage(
            session,
            "quality",
            lambda: self.quality_scorer.score(
                entities, timeline, trajectory, responses, session.pathology, hints
            ),
            fallback=_empty_quality_report(),
        )

        total_ms = (time.perf_counter() - start_time) * 1000
        session.stage_timings_ms["total"] = round(total_ms, 2)
        logger.info(
            f"Session {session.session_id}: {len(entities)} entities, "
            f"{len(timeline.events)} events, quality {session.quality_report.overall:.2f}, "
            f"external {session.external_status.value} in {total_ms:.0f}ms"
        )
        return session, usage

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _accept(self, documents: Sequence[Any], session: ExtractionSession) -> list[ClinicalDocument]:
        """Keep usable documents; reject the rest with a warning each."""
        accepted: list[ClinicalDocument] = []
        for index, document in enumerate(documents):
            if isinstance(document, ClinicalDocument):
                candidate = document
            elif isinstance(document, str):
                candidate = ClinicalDocument(text=document, source_index=index)
            else:
                self._reject(session, index, f"not text ({type(document).__name__})")
                continue

            if not candidate.text.strip():
                self._reject(session, index, "empty")
                continue
            accepted.append(candidate)
        return accepted

    def _reject(self, session: ExtractionSession, index: int, reason: str) -> None:
        message = f"Document {index} rejected: {reason}"
        logger.warning(message)
        session.warnings.append(message)

    async def _external(
        self,
        text: str,
        hints: ExtractionHints,
        cancel_event: asyncio.Event | None,
    ) -> ExternalExtractionResult:
        if not text.strip():
            return ExternalExtractionResult(status=ExternalStatus.DISABLED)
        return await self.external_extractor.extract(text, hints, cancel_event)

    def _stage(
        self,
        session: ExtractionSession,
        name: str,
        func: Callable[[], T],
        fallback: T,
    ) -> T:
        """Run one synchronous stage, timing it and containing failures."""
        t0 = time.perf_counter()
        try:
            return func()
        except Exception as e:
            logger.warning(f"Stage {name} failed: {e}")
            session.warnings.append(f"Stage {name} failed: {e}")
            return fallback
        finally:
            session.stage_timings_ms[name] = round((time.perf_counter() - t0) * 1000, 2)

    async def _async_stage(
        self,
        session: ExtractionSession,
        name: str,
        func: Callable[[], Awaitable[T]],
        fallback: T,
    ) -> T:
        """Awaitable counterpart of ``_stage``."""
        t0 = time.perf_counter()
        try:
            return await func()
        except Exception as e:
            logger.warning(f"Stage {name} failed: {e}")
            session.warnings.append(f"Stage {name} failed: {e}")
            return fallback
        finally:
            session.stage_timings_ms[name] = round((time.perf_counter() - t0) * 1000, 2)


def _reconcile_pathology(
    detection: PathologyDetection,
    entities: list[ExtractedEntity],
    removed: list[ExtractedEntity],
) -> PathologyDetection:
    """Drop pathologies whose every mention was negated."""
    surviving = {e.normalized_value for e in entities if e.entity_type == EntityType.PATHOLOGY}
    negated = {
        e.normalized_value for e in removed if e.entity_type == EntityType.PATHOLOGY
    } - surviving
    if not negated:
        return detection

    detected = [p for p in detection.detected if p.value not in negated]
    primary = detection.primary
    if primary is not None and primary.value in negated:
        primary = detected[0] if detected else None
    logger.info(f"Negated pathologies dropped from detection: {sorted(negated)}")
    return detection.model_copy(update={"detected": detected, "primary": primary})


def _empty_quality_report() -> QualityReport:
    return QualityReport(
        accuracy=0.0,
        completeness=0.0,
        specificity=0.0,
        timeliness=0.0,
        consistency=0.0,
        narrative_readiness=0.0,
        overall=0.0,
        grade=QualityGrade.from_score(0.0),
        issues=[QualityIssue(issue_type=IssueType.MISSING_FIELD, message="No usable input documents")],
    )


# ============================================================================
# Singleton
# ============================================================================


_pipeline_instance: ExtractionPipeline | None = None
_pipeline_lock = threading.Lock()


def get_extraction_pipeline() -> ExtractionPipeline:
    """Get or create the singleton pipeline instance."""
    global _pipeline_instance

    if _pipeline_instance is None:
        with _pipeline_lock:
            if _pipeline_instance is None:
                _pipeline_instance = ExtractionPipeline()

    return _pipeline_instance


def reset_extraction_pipeline() -> None:
    """Reset the singleton instance."""
    global _pipeline_instance
    with _pipeline_lock:
        _pipeline_instance = None
