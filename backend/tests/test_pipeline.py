"""End-to-end tests for the extraction pipeline."""

import asyncio
from datetime import date
from unittest.mock import MagicMock

import pytest

from clinex.schemas.base import (
    ChangeRate,
    EntityType,
    EventType,
    ExternalStatus,
    IssueType,
    PathologyType,
    QualityGrade,
    RelationType,
    ResponseQuality,
    SourceMethod,
    TrajectoryLabel,
    TrendPattern,
)
from clinex.schemas.entities import ClinicalDocument
from clinex.services.external_extractor import ExternalExtractor, ExternalExtractorConfig
from clinex.services.pipeline import ExtractionPipeline, get_extraction_pipeline
from clinex.services.timeline_builder import TimelineBuilder


@pytest.fixture
def offline_pipeline():
    """Pipeline with the external extractor disabled."""
    return ExtractionPipeline(external_extractor=ExternalExtractor(client=None))


def pipeline_with(client, timeout_seconds: float = 5.0) -> ExtractionPipeline:
    extractor = ExternalExtractor(
        client=client,
        config=ExternalExtractorConfig(timeout_seconds=timeout_seconds),
    )
    return ExtractionPipeline(external_extractor=extractor)


# ==============================================================================
# Full run over one admission
# ==============================================================================


class TestSAHAdmission:
    """Pattern-only run over three chronological SAH notes."""

    @pytest.fixture
    async def session(self, offline_pipeline, sah_notes):
        session, _ = await offline_pipeline.run(sah_notes)
        return session

    @pytest.mark.asyncio
    async def test_documents_accepted(self, session):
        assert session.documents_received == 3
        assert session.documents_accepted == 3
        assert session.external_status == ExternalStatus.DISABLED

    @pytest.mark.asyncio
    async def test_repeated_sentence_removed(self, session):
        assert session.deduplication.kept_sentences < session.deduplication.original_sentences
        assert session.deduplicated_text.count("s/p coiling") == 1

    @pytest.mark.asyncio
    async def test_pathology_and_subtype(self, session):
        assert session.pathology.primary == PathologyType.SAH
        sah = session.find_entity(EntityType.PATHOLOGY, "sah")
        assert sah.subtype.category == "HUNTHESS"
        assert sah.subtype.value == 3

    @pytest.mark.asyncio
    async def test_post_op_day_dating(self, session):
        vasospasm = session.find_entity(EntityType.COMPLICATION, "vasospasm")
        assert vasospasm.resolved_date == date(2025, 1, 16)
        assert vasospasm.date_source == "pod"

    @pytest.mark.asyncio
    async def test_nearest_reference_dating(self, session):
        norepinephrine = session.find_entity(EntityType.MEDICATION, "norepinephrine")
        assert norepinephrine.resolved_date == date(2025, 1, 16)
        assert norepinephrine.date_source == "nearest"

        nimodipine = session.find_entity(EntityType.MEDICATION, "nimodipine")
        assert nimodipine.resolved_date == date(2025, 1, 14)

    @pytest.mark.asyncio
    async def test_negated_finding_removed(self, session):
        assert session.find_entity(EntityType.COMPLICATION, "hydrocephalus") is None
        assert PathologyType.HYDROCEPHALUS not in session.pathology.detected

    @pytest.mark.asyncio
    async def test_complication_prompts_rescue_medication(self, session):
        timeline = session.timeline
        by_description = {e.description: e.event_id for e in timeline.events}
        edges = {(r.source_event_id, r.target_event_id, r.relation_type) for r in timeline.relationships}

        vasospasm = next(e.event_id for e in timeline.events if e.description.startswith("vasospasm"))
        norepinephrine = next(k for d, k in by_description.items() if d.startswith("norepinephrine"))
        assert (vasospasm, norepinephrine, RelationType.PROMPTED) in edges

    @pytest.mark.asyncio
    async def test_disposition_joins_discharge(self, session):
        discharge = session.timeline.events[-1]
        assert discharge.date == date(2025, 1, 24)
        assert discharge.description == "Discharge (rehabilitation facility)"

    @pytest.mark.asyncio
    async def test_functional_trajectory(self, session):
        trajectory = session.functional_trajectory
        assert [p.raw_value for p in trajectory.points] == [13, 12, 15]
        assert trajectory.points[-1].recorded_on == date(2025, 1, 21)
        assert trajectory.label == TrajectoryLabel.IMPROVING
        assert trajectory.net_change == pytest.approx(0.1667)
        assert trajectory.trend == TrendPattern.LINEAR
        assert trajectory.rate == ChangeRate.GRADUAL
        assert trajectory.milestones.worst == 1
        assert trajectory.milestones.post_op_nadir == 1
        assert trajectory.milestones.turning_points == [1]

    @pytest.mark.asyncio
    async def test_prognosis_from_hunt_hess(self, session):
        prognosis = session.functional_trajectory.prognosis
        assert prognosis.category == "HUNTHESS"
        assert prognosis.grade == 3
        assert prognosis.expected_good_outcome == 0.6
        assert prognosis.better_than_expected

    @pytest.mark.asyncio
    async def test_status_post_coiling_is_one_procedure(self, session):
        procedures = [e for e in session.timeline.events if e.event_type == EventType.PROCEDURE]
        assert [e.date for e in procedures] == [date(2025, 1, 14)]

    @pytest.mark.asyncio
    async def test_prophylaxis_failure_recorded(self, session):
        prophylaxis = [
            r for r in session.treatment_responses
            if r.outcome_description == "vasospasm documented despite nimodipine"
        ]
        assert len(prophylaxis) == 1
        assert prophylaxis[0].response_quality == ResponseQuality.POOR

    @pytest.mark.asyncio
    async def test_quality_report(self, session):
        report = session.quality_report
        assert 0.0 < report.overall <= 1.0
        missing = [i.field for i in report.issues if i.issue_type == IssueType.MISSING_FIELD]
        assert missing == ["dates.ictus"]
        assert session.field_confidence["dates.ictus"] == 0.0

    @pytest.mark.asyncio
    async def test_stage_timings(self, session):
        for stage in ("normalize", "deduplicate", "pattern_extraction", "merge", "timeline", "quality", "total"):
            assert stage in session.stage_timings_ms

    @pytest.mark.asyncio
    async def test_deterministic(self, offline_pipeline, sah_notes, session):
        again, _ = await offline_pipeline.run(sah_notes)
        assert [e.model_dump() for e in again.entities] == [e.model_dump() for e in session.entities]
        assert again.timeline.model_dump() == session.timeline.model_dump()


# ==============================================================================
# Mentions on different days
# ==============================================================================


PLANNED_NOTE = (
    "Admission date: 2025-01-14.\nAneurysmal SAH. Plan: nimodipine if vasospasm develops.\n"
    "Underwent coiling on 2025-01-14."
)
STARTED_NOTE = "POD2 (2025-01-16): new confusion, concerning for vasospasm. Started nimodipine."


class TestPlannedThenStarted:
    """A drug planned on admission and started on POD2 for a new complication."""

    @pytest.fixture
    async def session(self, offline_pipeline):
        session, _ = await offline_pipeline.run([PLANNED_NOTE, STARTED_NOTE])
        return session

    @pytest.mark.asyncio
    async def test_conditional_complication_dropped(self, session):
        vasospasm = [
            e for e in session.entities_of(EntityType.COMPLICATION) if e.normalized_value == "vasospasm"
        ]
        assert [(e.resolved_date, e.date_source) for e in vasospasm] == [(date(2025, 1, 16), "pod")]

    @pytest.mark.asyncio
    async def test_each_mention_keeps_its_date(self, session):
        nimodipine = [
            e.resolved_date for e in session.entities_of(EntityType.MEDICATION)
            if e.normalized_value == "nimodipine"
        ]
        assert nimodipine == [date(2025, 1, 14), date(2025, 1, 16)]

    @pytest.mark.asyncio
    async def test_complication_prompts_started_medication(self, session):
        timeline = session.timeline
        complication = next(e for e in timeline.events if e.event_type == EventType.COMPLICATION)
        started = next(
            e for e in timeline.events
            if e.event_type == EventType.MEDICATION and e.date == date(2025, 1, 16)
        )
        edges = {(r.source_event_id, r.target_event_id, r.relation_type) for r in timeline.relationships}

        assert complication.date == date(2025, 1, 16)
        assert started.description == "nimodipine"
        assert (complication.event_id, started.event_id, RelationType.PROMPTED) in edges


class TestMixedScales:
    """GCS held at 15 while mRS improves across two notes."""

    @pytest.fixture
    async def session(self, offline_pipeline):
        session, _ = await offline_pipeline.run([
            "Admission date: 2025-01-14. GCS 15. mRS 2.",
            "HD3: GCS 15. mRS 1.",
        ])
        return session

    @pytest.mark.asyncio
    async def test_scales_compared_separately(self, session):
        trajectory = session.functional_trajectory

        assert trajectory.label == TrajectoryLabel.IMPROVING
        assert not any(c.cross_scale for c in trajectory.changes)
        assert trajectory.net_change_by_scale["gcs"] == 0.0
        assert trajectory.net_change_by_scale["mrs"] > 0
        assert trajectory.net_change > 0


# ==============================================================================
# External extractor
# ==============================================================================


class TestExternalExtraction:
    """Tests for fusion with, and degradation without, the LLM."""

    @pytest.mark.asyncio
    async def test_success_merges_sources(self, success_client, sah_notes):
        session, usage = await pipeline_with(success_client).run(sah_notes)

        assert session.external_status == ExternalStatus.SUCCESS
        assert usage.llm_calls == 1
        assert usage.total_tokens == 1500
        age = next(e for e in session.entities if e.field == "demographics.age")
        assert age.source_method == SourceMethod.MERGED
        assert age.value == 55

    @pytest.mark.asyncio
    async def test_error_degrades_to_patterns(self, error_client, sah_notes):
        session, usage = await pipeline_with(error_client).run(sah_notes)

        assert session.external_status == ExternalStatus.ERROR
        assert "External extractor error: upstream 502" in session.warnings
        assert usage.llm_failures == 1
        assert all(e.source_method == SourceMethod.PATTERN for e in session.entities)
        assert session.find_entity(EntityType.COMPLICATION, "vasospasm") is not None

    @pytest.mark.asyncio
    async def test_timeout(self, slow_client, sah_notes):
        session, usage = await pipeline_with(slow_client, timeout_seconds=0.05).run(sah_notes)
        assert session.external_status == ExternalStatus.TIMEOUT
        assert usage.llm_timeouts == 1
        assert session.entities

    @pytest.mark.asyncio
    async def test_cancelled_before_run(self, success_client, sah_notes):
        cancel = asyncio.Event()
        cancel.set()
        session, usage = await pipeline_with(success_client).run(sah_notes, cancel_event=cancel)

        assert session.external_status == ExternalStatus.CANCELLED
        assert usage.llm_calls == 0
        success_client.extract.assert_not_called()


# ==============================================================================
# Input handling and stage failures
# ==============================================================================


class TestDegradation:
    """Tests for rejected input and contained stage failures."""

    @pytest.mark.asyncio
    async def test_no_usable_documents(self, offline_pipeline):
        session, usage = await offline_pipeline.run(["", "   ", 42])

        assert session.documents_received == 3
        assert session.documents_accepted == 0
        assert session.warnings == [
            "Document 0 rejected: empty",
            "Document 1 rejected: empty",
            "Document 2 rejected: not text (int)",
        ]
        assert session.entities == []
        assert session.quality_report.overall == 0.0
        assert session.quality_report.grade == QualityGrade.INADEQUATE
        assert usage.llm_calls == 0

    @pytest.mark.asyncio
    async def test_rejected_document_does_not_stop_run(self, offline_pipeline, progress_note):
        session, _ = await offline_pipeline.run(["", progress_note])
        assert session.documents_accepted == 1
        assert session.warnings[0] == "Document 0 rejected: empty"
        assert session.find_entity(EntityType.COMPLICATION, "vasospasm") is not None

    @pytest.mark.asyncio
    async def test_document_timestamp_hint(self, offline_pipeline):
        document = ClinicalDocument(text="Seizure yesterday.", source_index=0, timestamp_hint=date(2025, 1, 20))
        session, _ = await offline_pipeline.run([document])

        seizure = session.find_entity(EntityType.COMPLICATION, "seizure")
        assert seizure.resolved_date == date(2025, 1, 19)
        assert seizure.date_source == "relative"

    @pytest.mark.asyncio
    async def test_stage_failure_is_contained(self, sah_notes):
        builder = MagicMock(spec=TimelineBuilder)
        builder.build.side_effect = RuntimeError("boom")
        pipeline = ExtractionPipeline(
            external_extractor=ExternalExtractor(client=None),
            timeline_builder=builder,
        )

        session, _ = await pipeline.run(sah_notes)

        assert "Stage timeline failed: boom" in session.warnings
        assert session.timeline.events == []
        assert session.entities
        assert session.quality_report is not None

    def test_singleton(self):
        assert get_extraction_pipeline() is get_extraction_pipeline()
