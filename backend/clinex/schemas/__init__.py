"""Pydantic schemas and shared enums."""

from clinex.schemas.base import (
    ChangeRate,
    EntityType,
    EventImportance,
    EventType,
    ExternalStatus,
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
from clinex.schemas.entities import (
    AlternativeValue,
    CausalRelationship,
    ClinicalDocument,
    ExtractedEntity,
    FunctionalMilestones,
    FunctionalScorePoint,
    FunctionalTrajectory,
    Milestone,
    PathologyDetection,
    PrognosisComparison,
    QualityIssue,
    QualityReport,
    Sentence,
    SimilarityCluster,
    SourceQualityReport,
    StatusChange,
    SubtypeAssignment,
    Timeline,
    TimelineEvent,
    TreatmentResponse,
)
from clinex.schemas.session import (
    DeduplicationStats,
    ExtractionHints,
    ExtractionSession,
    FieldConflict,
    RefinementHints,
    UsageReport,
)

__all__ = [
    # Enums
    "ChangeRate",
    "EntityType",
    "EventImportance",
    "EventType",
    "ExternalStatus",
    "IssueType",
    "PathologyType",
    "QualityGrade",
    "RelationType",
    "ResponseQuality",
    "ScoreScale",
    "SourceMethod",
    "TrajectoryLabel",
    "TrendPattern",
    # Input
    "ClinicalDocument",
    "Sentence",
    "SimilarityCluster",
    # Entities
    "AlternativeValue",
    "ExtractedEntity",
    "PathologyDetection",
    "SubtypeAssignment",
    # Timeline
    "CausalRelationship",
    "Milestone",
    "Timeline",
    "TimelineEvent",
    # Analyses
    "FunctionalMilestones",
    "FunctionalScorePoint",
    "FunctionalTrajectory",
    "PrognosisComparison",
    "StatusChange",
    "TreatmentResponse",
    # Quality
    "QualityIssue",
    "QualityReport",
    "SourceQualityReport",
    # Session
    "DeduplicationStats",
    "ExtractionHints",
    "ExtractionSession",
    "FieldConflict",
    "RefinementHints",
    "UsageReport",
]
