"""Extraction session output, usage accounting and refinement hints."""

from collections.abc import Iterable
from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from clinex.schemas.base import EntityType, ExternalStatus, PathologyType
from clinex.schemas.entities import (
    ExtractedEntity,
    FunctionalTrajectory,
    PathologyDetection,
    QualityReport,
    SourceQualityReport,
    Timeline,
    TreatmentResponse,
)


class DeduplicationStats(BaseModel):
    """Sentence counts before and after near-duplicate removal."""

    original_sentences: int = 0
    kept_sentences: int = 0
    clusters: int = 0
    pairs_compared: int = 0
    pairs_pruned: int = 0
    elapsed_ms: float = 0.0

    @property
    def reduction_ratio(self) -> float:
        """Fraction of sentences removed."""
        if self.original_sentences == 0:
            return 0.0
        return 1.0 - self.kept_sentences / self.original_sentences


class ExtractionHints(BaseModel):
    """Optional caller-supplied metadata for one run.

    Hints steer profiles and the external extractor's prompt; they never
    become entities on their own.
    """

    pathology: PathologyType | None = Field(None, description="Expected pathology type")
    age: int | None = Field(None, ge=0, le=120, description="Patient age if already known")
    sex: str | None = Field(None, description="Patient sex if already known")
    feedback: list[str] = Field(
        default_factory=list, description="Refinement feedback for a re-extraction"
    )

    @field_validator("sex")
    @classmethod
    def normalize_sex(cls, v: str | None) -> str | None:
        """Map M/F/male/female spellings onto male/female."""
        if v is None:
            return None
        value = v.strip().lower()
        if value in ("m", "male", "man"):
            return "male"
        if value in ("f", "female", "woman"):
            return "female"
        raise ValueError(f"Unrecognized sex: {v}")


class UsageReport(BaseModel):
    """External-extractor usage for one session.

    Returned alongside the session rather than stored in shared state;
    callers aggregate across sessions with ``UsageReport.accumulate``.
    """

    llm_calls: int = 0
    llm_successes: int = 0
    llm_failures: int = 0
    llm_timeouts: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0
    llm_latency_ms: float = 0.0
    status: ExternalStatus | None = None

    @property
    def total_tokens(self) -> int:
        """Prompt plus completion tokens."""
        return self.prompt_tokens + self.completion_tokens

    def combine(self, other: "UsageReport") -> "UsageReport":
        """Return a new report summing this one and ``other``."""
        return UsageReport(
            llm_calls=self.llm_calls + other.llm_calls,
            llm_successes=self.llm_successes + other.llm_successes,
            llm_failures=self.llm_failures + other.llm_failures,
            llm_timeouts=self.llm_timeouts + other.llm_timeouts,
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            estimated_cost_usd=round(self.estimated_cost_usd + other.estimated_cost_usd, 6),
            llm_latency_ms=self.llm_latency_ms + other.llm_latency_ms,
            status=other.status or self.status,
        )

    @classmethod
    def accumulate(cls, reports: Iterable["UsageReport"]) -> "UsageReport":
        """Sum any number of reports."""
        total = cls()
        for report in reports:
            total = total.combine(report)
        return total


class ExtractionSession(BaseModel):
    """Everything one extraction run produced.

    This is the sole output boundary: the merged, deduplicated,
    date-resolved, negation-filtered entity set plus the timeline and the
    analyses derived from it.
    """

    session_id: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    documents_received: int = 0
    documents_accepted: int = 0
    hints: ExtractionHints = Field(default_factory=ExtractionHints)
    warnings: list[str] = Field(default_factory=list)

    deduplicated_text: str = ""
    deduplication: DeduplicationStats = Field(default_factory=DeduplicationStats)
    pathology: PathologyDetection = Field(default_factory=PathologyDetection)

    entities: list[ExtractedEntity] = Field(default_factory=list)
    timeline: Timeline = Field(default_factory=Timeline)
    treatment_responses: list[TreatmentResponse] = Field(default_factory=list)
    functional_trajectory: FunctionalTrajectory = Field(default_factory=FunctionalTrajectory)

    source_quality: SourceQualityReport | None = None
    field_confidence: dict[str, float] = Field(default_factory=dict)
    overall_confidence: float = Field(0.0, ge=0.0, le=1.0)
    quality_report: QualityReport | None = None

    external_status: ExternalStatus = ExternalStatus.DISABLED
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)

    def entities_of(self, entity_type: EntityType) -> list[ExtractedEntity]:
        """Entities of one type, in document order."""
        return sorted(
            (e for e in self.entities if e.entity_type == entity_type),
            key=lambda e: e.position,
        )

    def find_entity(self, entity_type: EntityType, normalized_value: str) -> ExtractedEntity | None:
        """First entity of ``entity_type`` whose normalized value matches."""
        for entity in self.entities:
            if entity.entity_type == entity_type and entity.normalized_value == normalized_value:
                return entity
        return None

    def conflicts(self) -> list[ExtractedEntity]:
        """Entities that carry a retained disagreeing value."""
        return [e for e in self.entities if e.has_conflict]


class FieldConflict(BaseModel):
    """A fused field whose sources disagreed."""

    field: str
    kept_value: str
    alternative_values: list[str]


class RefinementHints(BaseModel):
    """What an external control loop needs to decide on a re-extraction."""

    should_refine: bool
    overall_quality: float
    weak_dimensions: list[str] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    conflicts: list[FieldConflict] = Field(default_factory=list)
    undated_entities: list[str] = Field(default_factory=list)
    low_confidence_fields: list[str] = Field(default_factory=list)
    feedback: list[str] = Field(default_factory=list)
