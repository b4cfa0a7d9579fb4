"""Refinement hints for an external re-extraction loop.

A pure function of a finished session: nothing here calls the external
extractor again. The caller decides whether to re-run with
``ExtractionHints(feedback=hints.feedback)``.
"""

from clinex.core.config import settings
from clinex.schemas.base import IssueType
from clinex.schemas.entities import ExtractedEntity
from clinex.schemas.session import ExtractionSession, FieldConflict, RefinementHints
from clinex.services.quality_scorer import EVENT_ENTITY_TYPES


def build_refinement_hints(
    session: ExtractionSession,
    threshold: float | None = None,
) -> RefinementHints:
    """Summarize what a re-extraction should focus on.

    Args:
        session: Completed extraction session
        threshold: Quality below which refinement is suggested;
            defaults to ``settings.refinement_quality_threshold``

    Returns:
        RefinementHints; ``should_refine`` is set when overall quality is
        below the threshold or any field carries conflicting values
    """
    if threshold is None:
        threshold = settings.refinement_quality_threshold

    report = session.quality_report
    overall = report.overall if report is not None else 0.0

    weak_dimensions = []
    missing_fields = []
    if report is not None:
        weak_dimensions = [name for name, value in report.dimensions.items() if value < threshold]
        missing_fields = [
            issue.field for issue in report.issues
            if issue.issue_type == IssueType.MISSING_FIELD and issue.field
        ]

    conflicts = [
        FieldConflict(
            field=entity.field,
            kept_value=str(entity.value),
            alternative_values=[str(alt.value) for alt in entity.alternatives],
        )
        for entity in session.conflicts()
    ]
    undated = [entity.entity_id for entity in session.entities if _needs_date(entity)]
    low_confidence = sorted(
        name for name, value in session.field_confidence.items()
        if 0.0 < value < 0.5
    )

    feedback = []
    for name in missing_fields:
        feedback.append(f"Look again for {name}; no value was found.")
    for conflict in conflicts:
        feedback.append(
            f"{conflict.field} is ambiguous: {conflict.kept_value!r} vs "
            f"{', '.join(repr(v) for v in conflict.alternative_values)}. Report the value the text supports."
        )
    if undated:
        feedback.append(f"{len(undated)} clinical events lack a date; report dates where the text gives them.")
    for name in low_confidence:
        feedback.append(f"{name} was extracted with low confidence; confirm it against the text.")

    return RefinementHints(
        should_refine=overall < threshold or bool(conflicts),
        overall_quality=overall,
        weak_dimensions=weak_dimensions,
        missing_fields=missing_fields,
        conflicts=conflicts,
        undated_entities=undated,
        low_confidence_fields=low_confidence,
        feedback=feedback,
    )


def _needs_date(entity: ExtractedEntity) -> bool:
    return (
        entity.entity_type in EVENT_ENTITY_TYPES
        and entity.resolved_date is None
        and entity.attributes.get("trajectory") is not False
    )
