"""Tests for Pydantic schemas."""

from datetime import date

import pytest
from pydantic import ValidationError

from clinex.schemas.base import (
    EntityType,
    ExternalStatus,
    PathologyType,
    QualityGrade,
    SourceMethod,
)
from clinex.schemas.entities import (
    AlternativeValue,
    ClinicalDocument,
    ExtractedEntity,
    QualityReport,
)
from clinex.schemas.session import (
    DeduplicationStats,
    ExtractionHints,
    ExtractionSession,
    UsageReport,
)


def create_entity(entity_id: str, entity_type: EntityType, value: str, start: int | None = None) -> ExtractedEntity:
    return ExtractedEntity(
        entity_id=entity_id,
        entity_type=entity_type,
        field="medications",
        value=value,
        normalized_value=value,
        source_method=SourceMethod.PATTERN,
        confidence=0.85,
        source_span=(start, start + len(value)) if start is not None else None,
    )


class TestEnums:
    """Test enum definitions."""

    def test_source_method_values(self) -> None:
        """Test source method enum has correct values."""
        assert SourceMethod.PATTERN.value == "pattern"
        assert SourceMethod.LLM.value == "llm"
        assert SourceMethod.MERGED.value == "merged"

    def test_external_status_values(self) -> None:
        """Test every collaborator outcome is representable."""
        assert {s.value for s in ExternalStatus} == {
            "success", "disabled", "timeout", "error", "malformed", "cancelled",
        }

    @pytest.mark.parametrize(
        "score,grade",
        [
            (0.95, QualityGrade.EXCELLENT),
            (0.90, QualityGrade.EXCELLENT),
            (0.80, QualityGrade.GOOD),
            (0.60, QualityGrade.FAIR),
            (0.40, QualityGrade.POOR),
            (0.39, QualityGrade.INADEQUATE),
        ],
    )
    def test_quality_grade_from_score(self, score: float, grade: QualityGrade) -> None:
        """Test grade bands."""
        assert QualityGrade.from_score(score) == grade


class TestClinicalDocument:
    """Test input document schema."""

    def test_frozen(self) -> None:
        """Test documents cannot be modified after ingestion."""
        document = ClinicalDocument(text="GCS 15.", source_index=0)
        with pytest.raises(ValidationError):
            document.text = "GCS 3."

    def test_negative_index_rejected(self) -> None:
        """Test source index must be non-negative."""
        with pytest.raises(ValidationError):
            ClinicalDocument(text="GCS 15.", source_index=-1)


class TestExtractedEntity:
    """Test entity schema."""

    def test_span_must_be_ordered(self) -> None:
        """Test a span ending before it starts is rejected."""
        with pytest.raises(ValidationError):
            ExtractedEntity(
                entity_id="pat-0001",
                entity_type=EntityType.MEDICATION,
                field="medications",
                value="heparin",
                normalized_value="heparin",
                source_method=SourceMethod.PATTERN,
                confidence=0.85,
                source_span=(10, 10),
            )

    def test_confidence_bounds(self) -> None:
        """Test confidence above 1 is rejected."""
        with pytest.raises(ValidationError):
            ExtractedEntity(
                entity_id="pat-0001",
                entity_type=EntityType.MEDICATION,
                field="medications",
                value="heparin",
                normalized_value="heparin",
                source_method=SourceMethod.PATTERN,
                confidence=1.2,
            )

    def test_position(self) -> None:
        """Test unspanned entities sort after spanned ones."""
        spanned = create_entity("pat-0001", EntityType.MEDICATION, "heparin", 40)
        unspanned = create_entity("llm-0001", EntityType.MEDICATION, "heparin")
        assert spanned.position == 40
        assert unspanned.position > spanned.position

    def test_has_conflict(self) -> None:
        """Test conflict flag follows retained alternatives."""
        entity = create_entity("pat-0001", EntityType.MEDICATION, "heparin", 0)
        assert not entity.has_conflict
        entity.alternatives.append(AlternativeValue(value="enoxaparin", source_method=SourceMethod.LLM, confidence=0.7))
        assert entity.has_conflict


class TestExtractionHints:
    """Test caller hints."""

    @pytest.mark.parametrize("raw,expected", [("M", "male"), ("female", "female"), (" F ", "female")])
    def test_sex_normalized(self, raw: str, expected: str) -> None:
        """Test sex spellings map onto male/female."""
        assert ExtractionHints(sex=raw).sex == expected

    def test_unknown_sex_rejected(self) -> None:
        """Test an unrecognized sex raises."""
        with pytest.raises(ValidationError):
            ExtractionHints(sex="unknown")

    def test_age_bounds(self) -> None:
        """Test age outside 0-120 raises."""
        with pytest.raises(ValidationError):
            ExtractionHints(age=150)

    def test_pathology_from_value(self) -> None:
        """Test pathology accepts enum values."""
        assert ExtractionHints(pathology="sah").pathology == PathologyType.SAH


class TestUsageReport:
    """Test usage accounting."""

    def test_combine(self) -> None:
        """Test two reports sum field by field."""
        first = UsageReport(llm_calls=1, llm_successes=1, prompt_tokens=100, completion_tokens=20,
                            estimated_cost_usd=0.0001, status=ExternalStatus.SUCCESS)
        second = UsageReport(llm_calls=1, llm_timeouts=1, status=ExternalStatus.TIMEOUT)

        total = first.combine(second)

        assert total.llm_calls == 2
        assert total.llm_successes == 1
        assert total.llm_timeouts == 1
        assert total.total_tokens == 120
        assert total.status == ExternalStatus.TIMEOUT
        assert first.llm_calls == 1

    def test_accumulate(self) -> None:
        """Test accumulating many sessions."""
        reports = [UsageReport(llm_calls=1, estimated_cost_usd=0.00036) for _ in range(3)]
        total = UsageReport.accumulate(reports)
        assert total.llm_calls == 3
        assert total.estimated_cost_usd == pytest.approx(0.00108)

    def test_accumulate_empty(self) -> None:
        """Test an empty iterable gives a zero report."""
        assert UsageReport.accumulate([]) == UsageReport()


class TestExtractionSession:
    """Test session output helpers."""

    def test_defaults(self) -> None:
        """Test an empty session is valid."""
        session = ExtractionSession()
        assert session.entities == []
        assert session.quality_report is None
        assert session.external_status == ExternalStatus.DISABLED
        assert len(session.session_id) == 32

    def test_entities_of_sorted(self) -> None:
        """Test typed lookup returns document order."""
        session = ExtractionSession(entities=[
            create_entity("pat-0002", EntityType.MEDICATION, "heparin", 50),
            create_entity("pat-0001", EntityType.MEDICATION, "nimodipine", 10),
            create_entity("pat-0003", EntityType.PROCEDURE, "craniotomy", 0),
        ])
        assert [e.entity_id for e in session.entities_of(EntityType.MEDICATION)] == ["pat-0001", "pat-0002"]

    def test_find_entity(self) -> None:
        """Test lookup by type and normalized value."""
        session = ExtractionSession(entities=[create_entity("pat-0001", EntityType.MEDICATION, "heparin", 0)])
        assert session.find_entity(EntityType.MEDICATION, "heparin").entity_id == "pat-0001"
        assert session.find_entity(EntityType.PROCEDURE, "heparin") is None

    def test_dimensions(self) -> None:
        """Test the report exposes its six dimensions."""
        report = QualityReport(
            accuracy=0.9, completeness=0.8, specificity=0.7, timeliness=0.6,
            consistency=1.0, narrative_readiness=0.5, overall=0.78, grade=QualityGrade.GOOD,
        )
        assert report.dimensions["timeliness"] == 0.6
        assert len(report.dimensions) == 6

    def test_reduction_ratio(self) -> None:
        """Test deduplication ratio, including the empty case."""
        assert DeduplicationStats(original_sentences=10, kept_sentences=8).reduction_ratio == pytest.approx(0.2)
        assert DeduplicationStats().reduction_ratio == 0.0

    def test_round_trip_dates(self) -> None:
        """Test resolved dates serialize as ISO strings."""
        entity = create_entity("pat-0001", EntityType.MEDICATION, "heparin", 0)
        entity.resolved_date = date(2025, 1, 14)
        assert entity.model_dump(mode="json")["resolved_date"] == "2025-01-14"
