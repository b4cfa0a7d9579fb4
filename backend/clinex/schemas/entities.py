"""Documents, entities, timeline and report schemas."""

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from clinex.schemas.base import (
    ChangeRate,
    EntityType,
    EventImportance,
    EventType,
    IssueType,
    PathologyType,
    QualityGrade,
    RelationType,
    ResponseQuality,
    ScoreScale,
    SourceMethod,
    TrajectoryLabel,
    TrendPattern,
)


# ============================================================================
# Input
# ============================================================================


class ClinicalDocument(BaseModel):
    """One input note. Immutable once ingested."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Raw note text")
    source_index: int = Field(..., ge=0, description="Position in the input batch")
    timestamp_hint: date | None = Field(None, description="Document date if known")


class Sentence(BaseModel):
    """A sentence segment of a normalized document."""

    model_config = ConfigDict(frozen=True)

    sentence_id: int = Field(..., ge=0, description="Index across all documents")
    text: str = Field(..., description="Sentence text")
    document_index: int = Field(..., ge=0, description="Originating document")
    offset: int = Field(..., ge=0, description="Character offset in the normalized document")


class SimilarityCluster(BaseModel):
    """Near-duplicate sentences joined by union-find."""

    cluster_id: int = Field(..., ge=0)
    sentence_ids: list[int] = Field(..., min_length=1)
    representative_id: int = Field(..., description="Kept sentence (the longest)")


# ============================================================================
# Entities
# ============================================================================


class AlternativeValue(BaseModel):
    """A value discarded during fusion, retained for conflict detection."""

    value: Any
    source_method: SourceMethod
    confidence: float = Field(..., ge=0.0, le=1.0)


class SubtypeAssignment(BaseModel):
    """Pathology-specific grade, stage or score."""

    category: str = Field(..., description="Subtype category, e.g. HUNTHESS")
    value: str | int = Field(..., description="Grade/stage value")
    text: str | None = Field(None, description="Matched source text")
    confidence: float = Field(0.9, ge=0.0, le=1.0)


class ExtractedEntity(BaseModel):
    """A typed value extracted from note text, with provenance."""

    entity_id: str = Field(..., description="Stable identifier within a session")
    entity_type: EntityType
    field: str = Field(..., description="Fusion field name, e.g. demographics.age")
    value: Any = Field(..., description="Extracted value")
    normalized_value: str = Field(..., description="Comparison key for fusion")
    text: str | None = Field(None, description="Surface text of the first mention")
    source_method: SourceMethod
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_span: tuple[int, int] | None = Field(
        None, description="Offsets into the deduplicated text"
    )
    mention_spans: list[tuple[int, int]] = Field(default_factory=list)
    resolved_date: date | None = None
    date_source: str | None = Field(
        None, description="How the date was bound: field, explicit, pod, hd, relative, nearest"
    )
    negated: bool = False
    subtype: SubtypeAssignment | None = None
    subtypes: list[SubtypeAssignment] = Field(default_factory=list)
    alternatives: list[AlternativeValue] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    context: str | None = Field(None, description="Sentence containing the mention")

    @field_validator("source_span")
    @classmethod
    def span_is_ordered(
        cls, v: tuple[int, int] | None, info: ValidationInfo
    ) -> tuple[int, int] | None:
        """Validate that a span ends after it starts."""
        if v is not None and v[1] <= v[0]:
            raise ValueError("source_span end must be greater than start")
        return v

    @property
    def has_conflict(self) -> bool:
        """Whether fusion retained a disagreeing value."""
        return bool(self.alternatives)

    @property
    def position(self) -> int:
        """Document-order sort key (undated/unspanned entities sort last)."""
        return self.source_span[0] if self.source_span else 10**9


# ============================================================================
# Pathology
# ============================================================================


class PathologyDetection(BaseModel):
    """Multi-pass pathology scoring result."""

    primary: PathologyType | None = None
    detected: list[PathologyType] = Field(default_factory=list)
    scores: dict[str, float] = Field(default_factory=dict)
    hits: dict[str, dict[str, int]] = Field(default_factory=dict)


# ============================================================================
# Timeline
# ============================================================================


class TimelineEvent(BaseModel):
    """One or more entities sharing a resolved date."""

    event_id: str
    date: date
    event_type: EventType
    description: str
    importance: EventImportance = EventImportance.MEDIUM
    entity_ids: list[str] = Field(default_factory=list)
    position: int = Field(0, description="Document-order position for tie breaks")
    is_milestone: bool = False
    context: str | None = None


class CausalRelationship(BaseModel):
    """Directed heuristic edge between two timeline events."""

    source_event_id: str
    target_event_id: str
    relation_type: RelationType
    confidence: float = Field(..., ge=0.0, lt=1.0)
    days_between: int = Field(..., ge=0)
    explicit: bool = Field(False, description="Backed by causal language in the text")
    evidence: str | None = None


class Milestone(BaseModel):
    """A key point in the stay (admission, surgery, discharge...)."""

    label: str
    event_id: str
    date: date


class Timeline(BaseModel):
    """Ordered events with inferred causal edges."""

    events: list[TimelineEvent] = Field(default_factory=list)
    relationships: list[CausalRelationship] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def event_by_id(self, event_id: str) -> TimelineEvent | None:
        """Look up an event by id."""
        for event in self.events:
            if event.event_id == event_id:
                return event
        return None


# ============================================================================
# Derived analyses
# ============================================================================


class TreatmentResponse(BaseModel):
    """An intervention paired with its discovered outcome."""

    intervention: str
    intervention_category: str = Field(..., description="medication or procedure")
    intervention_event_id: str | None = None
    outcome_event_id: str | None = None
    outcome_description: str
    response_quality: ResponseQuality
    time_to_response_days: int | None = None
    effectiveness: int = Field(0, ge=0, le=100)
    confidence: float = Field(0.7, ge=0.0, lt=1.0)


class FunctionalScorePoint(BaseModel):
    """A functional score reading on the common 0-1 scale."""

    scale: ScoreScale
    raw_value: int
    normalized: float = Field(..., ge=0.0, le=1.0)
    recorded_on: date | None = None
    entity_id: str | None = None


class StatusChange(BaseModel):
    """Change between two consecutive normalized readings of one scale."""

    from_index: int
    to_index: int
    delta: float
    direction: str  # improvement | deterioration | unchanged
    significance: str  # major | moderate | minor | minimal
    significant: bool
    scale: ScoreScale | None = Field(None, description="None when compared across scales")
    cross_scale: bool = False


class FunctionalMilestones(BaseModel):
    """Indexes into ``FunctionalTrajectory.points`` for key readings."""

    baseline: int | None = None
    final: int | None = None
    best: int | None = None
    worst: int | None = None
    post_op_nadir: int | None = Field(None, description="Worst reading after the primary surgery")
    turning_points: list[int] = Field(default_factory=list)


class PrognosisComparison(BaseModel):
    """Final functional status against the grade's expected good outcome."""

    category: str
    grade: int
    expected_good_outcome: float = Field(..., ge=0.0, le=1.0)
    final_status: float = Field(..., ge=0.0, le=1.0)
    difference: float
    better_than_expected: bool


class FunctionalTrajectory(BaseModel):
    """Time-ordered normalized functional scores with a trajectory label."""

    points: list[FunctionalScorePoint] = Field(default_factory=list)
    changes: list[StatusChange] = Field(default_factory=list)
    label: TrajectoryLabel = TrajectoryLabel.INSUFFICIENT_DATA
    net_change: float | None = None
    net_change_by_scale: dict[str, float] = Field(default_factory=dict)
    primary_scale: ScoreScale | None = None
    trend: TrendPattern | None = None
    rate: ChangeRate | None = None
    rate_per_week: float | None = None
    duration_days: int | None = None
    description: str = "Insufficient data points for trajectory analysis"
    milestones: FunctionalMilestones = Field(default_factory=FunctionalMilestones)
    prognosis: PrognosisComparison | None = None
    latest_by_scale: dict[str, int] = Field(default_factory=dict)


# ============================================================================
# Quality
# ============================================================================


class SourceQualityReport(BaseModel):
    """Quality of the input text itself, used for confidence calibration."""

    structure: float = Field(..., ge=0.0, le=1.0)
    completeness: float = Field(..., ge=0.0, le=1.0)
    formality: float = Field(..., ge=0.0, le=1.0)
    detail: float = Field(..., ge=0.0, le=1.0)
    consistency: float = Field(..., ge=0.0, le=1.0)
    overall: float = Field(..., ge=0.0, le=1.0)
    grade: QualityGrade


class QualityIssue(BaseModel):
    """A problem that lowered a quality dimension."""

    issue_type: IssueType
    message: str
    field: str | None = None


class QualityReport(BaseModel):
    """Six-dimension quality report with a weighted overall score."""

    accuracy: float = Field(..., ge=0.0, le=1.0)
    completeness: float = Field(..., ge=0.0, le=1.0)
    specificity: float = Field(..., ge=0.0, le=1.0)
    timeliness: float = Field(..., ge=0.0, le=1.0)
    consistency: float = Field(..., ge=0.0, le=1.0)
    narrative_readiness: float = Field(..., ge=0.0, le=1.0)
    overall: float = Field(..., ge=0.0, le=1.0)
    grade: QualityGrade
    issues: list[QualityIssue] = Field(default_factory=list)

    @property
    def dimensions(self) -> dict[str, float]:
        """Dimension name to score."""
        return {
            "accuracy": self.accuracy,
            "completeness": self.completeness,
            "specificity": self.specificity,
            "timeliness": self.timeliness,
            "consistency": self.consistency,
            "narrative_readiness": self.narrative_readiness,
        }
