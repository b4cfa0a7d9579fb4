"""Base enums shared across the extraction pipeline."""

from enum import Enum


class SourceMethod(str, Enum):
    """Which extractor produced an entity."""

    PATTERN = "pattern"
    LLM = "llm"
    MERGED = "merged"  # Both sources contributed


class EntityType(str, Enum):
    """Clinical category of an extracted entity."""

    DEMOGRAPHIC = "demographic"
    DATE_REFERENCE = "date_reference"
    PATHOLOGY = "pathology"
    PROCEDURE = "procedure"
    COMPLICATION = "complication"
    MEDICATION = "medication"
    FUNCTIONAL_SCORE = "functional_score"
    IMAGING_FINDING = "imaging_finding"
    CONSULTATION = "consultation"
    DISCHARGE = "discharge"


class PathologyType(str, Enum):
    """Neurosurgical pathology types with a pattern profile."""

    SAH = "sah"  # Subarachnoid hemorrhage
    SDH = "sdh"  # Subdural hematoma
    GLIOBLASTOMA = "glioblastoma"
    MENINGIOMA = "meningioma"
    SPINAL_STENOSIS = "spinal_stenosis"
    AVM = "avm"  # Arteriovenous malformation
    HYDROCEPHALUS = "hydrocephalus"
    ICH = "ich"  # Intracerebral hemorrhage
    TBI = "tbi"  # Traumatic brain injury
    METASTASES = "metastases"


class EventType(str, Enum):
    """Type of a timeline event."""

    ADMISSION = "admission"
    PROCEDURE = "procedure"
    COMPLICATION = "complication"
    MEDICATION = "medication"
    IMAGING = "imaging"
    CONSULTATION = "consultation"
    ASSESSMENT = "assessment"  # Functional score readings
    DISCHARGE = "discharge"
    MILESTONE = "milestone"


class EventImportance(str, Enum):
    """Clinical significance of a timeline event."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RelationType(str, Enum):
    """Heuristic causal link between two timeline events."""

    MAY_HAVE_CAUSED = "may_have_caused"  # intervention -> complication
    PROMPTED = "prompted"  # complication -> intervention
    RESULTED_IN = "resulted_in"  # intervention -> improvement


class ResponseQuality(str, Enum):
    """Quality of a response to an intervention."""

    EXCELLENT = "excellent"
    GOOD = "good"
    PARTIAL = "partial"
    POOR = "poor"
    UNKNOWN = "unknown"


class TrajectoryLabel(str, Enum):
    """Overall direction of functional status over the stay."""

    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    FLUCTUATING = "fluctuating"
    INSUFFICIENT_DATA = "insufficient_data"


class TrendPattern(str, Enum):
    """Shape of the functional-status series."""

    LINEAR = "linear"
    STEPWISE = "stepwise"
    PLATEAU = "plateau"
    U_SHAPED = "u_shaped"
    INVERTED_U = "inverted_u"


class ChangeRate(str, Enum):
    """Speed of functional change per week."""

    RAPID = "rapid"
    GRADUAL = "gradual"
    SLOW = "slow"


class ScoreScale(str, Enum):
    """Functional/neurological status scales."""

    GCS = "gcs"  # 3-15, higher is better
    KPS = "kps"  # 0-100, higher is better
    ECOG = "ecog"  # 0-5, lower is better
    MRS = "mrs"  # 0-6, lower is better


class ExternalStatus(str, Enum):
    """Outcome of the external (LLM) extraction call."""

    SUCCESS = "success"
    DISABLED = "disabled"
    TIMEOUT = "timeout"
    ERROR = "error"
    MALFORMED = "malformed"
    CANCELLED = "cancelled"


class QualityGrade(str, Enum):
    """Grade bands for quality scores."""

    EXCELLENT = "excellent"  # >= 0.90
    GOOD = "good"  # >= 0.75
    FAIR = "fair"  # >= 0.60
    POOR = "poor"  # >= 0.40
    INADEQUATE = "inadequate"

    @classmethod
    def from_score(cls, score: float) -> "QualityGrade":
        """Map a 0-1 score onto its grade band."""
        if score >= 0.90:
            return cls.EXCELLENT
        if score >= 0.75:
            return cls.GOOD
        if score >= 0.60:
            return cls.FAIR
        if score >= 0.40:
            return cls.POOR
        return cls.INADEQUATE


class IssueType(str, Enum):
    """Kinds of problems surfaced by quality scoring."""

    CONFLICT = "conflict"
    MISSING_FIELD = "missing_field"
    CHRONOLOGY = "chronology"
    UNDATED_EVENT = "undated_event"
    LOW_CONFIDENCE = "low_confidence"
