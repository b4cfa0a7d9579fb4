"""Six-dimension quality report over an extraction session.

    accuracy             0.25  mean entity confidence less conflict/hint penalties
    completeness         0.20  expected-for-pathology fields populated
    specificity          0.15  entities carrying concrete detail
    timeliness           0.15  event-eligible entities with a resolved date
    consistency          0.15  conflicts and chronology violations penalized
    narrative_readiness  0.10  record has what a discharge narrative needs

The report lists the issues that lowered each dimension so an external
control loop can decide whether to re-run extraction.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date

from clinex.schemas.base import EntityType, IssueType, QualityGrade, TrajectoryLabel
from clinex.schemas.entities import (
    ExtractedEntity,
    FunctionalTrajectory,
    PathologyDetection,
    QualityIssue,
    QualityReport,
    Timeline,
    TreatmentResponse,
)
from clinex.schemas.session import ExtractionHints
from clinex.services.pathology_patterns import expected_fields_for

logger = logging.getLogger(__name__)


QUALITY_WEIGHTS: dict[str, float] = {
    "accuracy": 0.25,
    "completeness": 0.20,
    "specificity": 0.15,
    "timeliness": 0.15,
    "consistency": 0.15,
    "narrative_readiness": 0.10,
}

# Entity types that become timeline events when dated
EVENT_ENTITY_TYPES: frozenset[EntityType] = frozenset({
    EntityType.PROCEDURE,
    EntityType.COMPLICATION,
    EntityType.MEDICATION,
    EntityType.IMAGING_FINDING,
    EntityType.CONSULTATION,
    EntityType.FUNCTIONAL_SCORE,
})


@dataclass
class QualityScorerConfig:
    """Penalties and thresholds."""

    conflict_penalty: float = 0.10
    hint_mismatch_penalty: float = 0.15
    chronology_penalty: float = 0.20
    consistency_conflict_penalty: float = 0.20
    low_confidence_threshold: float = 0.5


class QualityScorer:
    """Scores a finished extraction.

    Usage:
        scorer = QualityScorer()
        report = scorer.score(entities, timeline, trajectory, responses, detection)
        print(report.overall, report.grade.value)
    """

    def __init__(self, config: QualityScorerConfig | None = None):
        self.config = config or QualityScorerConfig()

    def score(
        self,
        entities: list[ExtractedEntity],
        timeline: Timeline,
        trajectory: FunctionalTrajectory,
        responses: list[TreatmentResponse],
        pathology: PathologyDetection,
        hints: ExtractionHints | None = None,
    ) -> QualityReport:
        """Compute the six dimensions and the weighted overall score.

        Args:
            entities: Final entities
            timeline: Built timeline
            trajectory: Functional trajectory
            responses: Treatment responses
            pathology: Pathology detection result
            hints: Caller hints, checked against extracted demographics

        Returns:
            QualityReport with dimension scores, grade and issues
        """
        issues: list[QualityIssue] = []

        dimensions = {
            "accuracy": self._accuracy(entities, hints, issues),
            "completeness": self._completeness(entities, pathology, hints, issues),
            "specificity": self._specificity(entities),
            "timeliness": self._timeliness(entities, issues),
            "consistency": self._consistency(entities, issues),
            "narrative_readiness": self._narrative_readiness(
                entities, timeline, trajectory, responses, pathology
            ),
        }
        dimensions = {name: round(max(0.0, min(1.0, value)), 4) for name, value in dimensions.items()}
        overall = round(sum(dimensions[name] * weight for name, weight in QUALITY_WEIGHTS.items()), 4)

        report = QualityReport(
            **dimensions,
            overall=max(0.0, min(1.0, overall)),
            grade=QualityGrade.from_score(overall),
            issues=issues,
        )
        logger.info(
            f"Quality {report.overall:.2f} ({report.grade.value}) with {len(issues)} issues"
        )
        return report

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    def _accuracy(
        self,
        entities: list[ExtractedEntity],
        hints: ExtractionHints | None,
        issues: list[QualityIssue],
    ) -> float:
        if not entities:
            return 0.0
        score = sum(e.confidence for e in entities) / len(entities)

        for entity in entities:
            if entity.confidence < self.config.low_confidence_threshold:
                issues.append(QualityIssue(
                    issue_type=IssueType.LOW_CONFIDENCE,
                    message=f"{entity.field} value {entity.value!r} has confidence {entity.confidence:.2f}",
                    field=entity.field,
                ))

        conflicts = [e for e in entities if e.has_conflict]
        score -= self.config.conflict_penalty * len(conflicts)

        if hints is not None:
            for field_name, hinted in (("demographics.age", hints.age), ("demographics.sex", hints.sex)):
                if hinted is None:
                    continue
                extracted = next((e for e in entities if e.field == field_name), None)
                if extracted is not None and extracted.value != hinted:
                    score -= self.config.hint_mismatch_penalty
                    issues.append(QualityIssue(
                        issue_type=IssueType.CONFLICT,
                        message=f"Extracted {field_name} {extracted.value!r} disagrees with hint {hinted!r}",
                        field=field_name,
                    ))
        return score

    def _completeness(
        self,
        entities: list[ExtractedEntity],
        pathology: PathologyDetection,
        hints: ExtractionHints | None,
        issues: list[QualityIssue],
    ) -> float:
        profile = pathology.primary or (hints.pathology if hints else None)
        expected = expected_fields_for(profile)
        present = populated_fields(entities)

        missing = [f for f in expected if f not in present]
        for field_name in missing:
            issues.append(QualityIssue(
                issue_type=IssueType.MISSING_FIELD,
                message=f"No value extracted for {field_name}",
                field=field_name,
            ))
        return (len(expected) - len(missing)) / len(expected) if expected else 1.0

    def _specificity(self, entities: list[ExtractedEntity]) -> float:
        """Share of clinical entities carrying concrete detail."""
        relevant = 0
        specific = 0
        for entity in entities:
            if entity.entity_type == EntityType.MEDICATION:
                relevant += 1
                specific += int("dose" in entity.attributes)
            elif entity.entity_type == EntityType.FUNCTIONAL_SCORE:
                relevant += 1
                specific += 1
            elif entity.entity_type in (EntityType.PROCEDURE, EntityType.COMPLICATION):
                relevant += 1
                specific += int(entity.resolved_date is not None)
            elif entity.entity_type == EntityType.PATHOLOGY:
                relevant += 1
                specific += int(entity.subtype is not None)
            elif entity.entity_type == EntityType.IMAGING_FINDING:
                relevant += 1
                specific += int(str(entity.attributes.get("modality", "imaging")).lower() != "imaging")
        return specific / relevant if relevant else 0.0

    def _timeliness(self, entities: list[ExtractedEntity], issues: list[QualityIssue]) -> float:
        eligible = [
            e for e in entities
            if e.entity_type in EVENT_ENTITY_TYPES and e.attributes.get("trajectory") is not False
        ]
        if not eligible:
            return 0.0
        undated = [e for e in eligible if e.resolved_date is None]
        for entity in undated:
            issues.append(QualityIssue(
                issue_type=IssueType.UNDATED_EVENT,
                message=f"{entity.entity_type.value} {entity.value!r} has no resolved date",
                field=entity.field,
            ))
        return (len(eligible) - len(undated)) / len(eligible)

    def _consistency(self, entities: list[ExtractedEntity], issues: list[QualityIssue]) -> float:
        score = 1.0
        for entity in entities:
            if not entity.has_conflict:
                continue
            score -= self.config.consistency_conflict_penalty
            issues.append(QualityIssue(
                issue_type=IssueType.CONFLICT,
                message=(
                    f"{entity.field}: kept {entity.value!r}, sources also reported "
                    f"{[a.value for a in entity.alternatives]!r}"
                ),
                field=entity.field,
            ))

        for message, field_name in self._chronology_violations(entities):
            score -= self.config.chronology_penalty
            issues.append(QualityIssue(issue_type=IssueType.CHRONOLOGY, message=message, field=field_name))
        return score

    def _chronology_violations(self, entities: list[ExtractedEntity]) -> list[tuple[str, str]]:
        dates: dict[str, date] = {}
        for entity in entities:
            if entity.field.startswith("dates.") and entity.resolved_date is not None:
                dates.setdefault(entity.field, entity.resolved_date)

        admission = dates.get("dates.admission")
        discharge = dates.get("dates.discharge")
        surgery = dates.get("dates.surgery")
        ictus = dates.get("dates.ictus")

        violations = []
        if admission and discharge and discharge < admission:
            violations.append((f"Discharge {discharge} precedes admission {admission}", "dates.discharge"))
        if surgery and admission and surgery < admission:
            violations.append((f"Surgery {surgery} precedes admission {admission}", "dates.surgery"))
        if surgery and discharge and surgery > discharge:
            violations.append((f"Surgery {surgery} follows discharge {discharge}", "dates.surgery"))
        if ictus and discharge and ictus > discharge:
            violations.append((f"Ictus {ictus} follows discharge {discharge}", "dates.ictus"))
        if discharge:
            late = [
                e for e in entities
                if e.resolved_date is not None and e.resolved_date > discharge and not e.field.startswith("dates.")
            ]
            if late:
                violations.append((
                    f"{len(late)} entities dated after discharge {discharge}", "dates.discharge"
                ))
        return violations

    def _narrative_readiness(
        self,
        entities: list[ExtractedEntity],
        timeline: Timeline,
        trajectory: FunctionalTrajectory,
        responses: list[TreatmentResponse],
        pathology: PathologyDetection,
    ) -> float:
        """Whether the record can anchor a discharge narrative."""
        labels = {m.label for m in timeline.milestones}
        checks = [
            pathology.primary is not None,
            len(timeline.events) >= 3,
            "admission" in labels and "discharge" in labels,
            any(e.entity_type == EntityType.DISCHARGE for e in entities),
            trajectory.label != TrajectoryLabel.INSUFFICIENT_DATA or bool(responses),
        ]
        return sum(checks) / len(checks)


def populated_fields(entities: list[ExtractedEntity]) -> set[str]:
    """Field names with at least one value, including ``pathology.subtype``."""
    present = {e.field for e in entities}
    if any(e.entity_type == EntityType.PATHOLOGY and e.subtype is not None for e in entities):
        present.add("pathology.subtype")
    return present


# ============================================================================
# Singleton
# ============================================================================


_quality_instance: QualityScorer | None = None
_quality_lock = threading.Lock()


def get_quality_scorer() -> QualityScorer:
    """Get or create the singleton quality scorer."""
    global _quality_instance

    if _quality_instance is None:
        with _quality_lock:
            if _quality_instance is None:
                _quality_instance = QualityScorer()

    return _quality_instance


def reset_quality_scorer() -> None:
    """Reset the singleton instance."""
    global _quality_instance
    with _quality_lock:
        _quality_instance = None
