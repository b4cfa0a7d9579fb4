"""Pathology subtype, grade and score classification.

Each pathology profile lists its subtype patterns in priority order (for
SAH: Hunt-Hess, WFNS, modified Fisher, Fisher, aneurysm location). Every
category that matches contributes one assignment, taken from its first
mention; the highest-priority match becomes the entity's primary subtype.
"""

import logging
import re
import threading
from dataclasses import dataclass

from clinex.schemas.base import EntityType, PathologyType
from clinex.schemas.entities import ExtractedEntity, SubtypeAssignment
from clinex.services.pathology_patterns import PATHOLOGY_LIBRARY, SubtypePattern, roman_to_int

logger = logging.getLogger(__name__)


@dataclass
class SubtypeClassifierConfig:
    """Confidence per value kind."""

    grade_confidence: float = 0.90
    number_confidence: float = 0.85
    text_confidence: float = 0.80


class SubtypeClassifier:
    """Attaches pathology-specific grades and scores to pathology entities.

    Usage:
        classifier = SubtypeClassifier()
        assignments = classifier.classify("Hunt-Hess grade 3, Fisher 3", PathologyType.SAH)
        print(assignments[0].category, assignments[0].value)  # HUNTHESS 3
    """

    def __init__(self, config: SubtypeClassifierConfig | None = None):
        self.config = config or SubtypeClassifierConfig()
        self._patterns: dict[PathologyType, list[tuple[SubtypePattern, re.Pattern]]] = {
            pathology: [(sp, re.compile(sp.pattern, re.IGNORECASE)) for sp in profile.subtype_patterns]
            for pathology, profile in PATHOLOGY_LIBRARY.items()
        }

    def classify(self, text: str, pathology: PathologyType) -> list[SubtypeAssignment]:
        """All subtype assignments for a pathology, in priority order."""
        assignments: list[SubtypeAssignment] = []
        for subtype, pattern in self._patterns.get(pathology, []):
            for match in pattern.finditer(text):
                value = self._coerce(subtype, match.group(1))
                if value is None:
                    continue
                assignments.append(SubtypeAssignment(
                    category=subtype.category,
                    value=value,
                    text=match.group(0).strip(),
                    confidence=self._confidence(subtype),
                ))
                break
        return assignments

    def apply(self, text: str, entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
        """Attach subtypes to every pathology entity in place.

        Args:
            text: Deduplicated text
            entities: Entities after negation filtering

        Returns:
            The same entity list
        """
        attached = 0
        for entity in entities:
            if entity.entity_type != EntityType.PATHOLOGY:
                continue
            try:
                pathology = PathologyType(entity.normalized_value)
            except ValueError:
                logger.debug(f"No subtype profile for pathology {entity.normalized_value!r}")
                continue

            subtypes = self.classify(text, pathology)
            entity.subtypes = subtypes
            entity.subtype = subtypes[0] if subtypes else None
            if subtypes:
                attached += 1
                logger.debug(
                    f"{pathology.value}: {[(s.category, s.value) for s in subtypes]}"
                )

        logger.info(f"Attached subtypes to {attached} pathology entities")
        return entities

    def _coerce(self, subtype: SubtypePattern, raw: str | None) -> str | int | None:
        if raw is None:
            return None
        raw = raw.strip()

        if subtype.kind == "grade":
            value = roman_to_int(raw)
            if value is None:
                return None
            if subtype.min_value is not None and value < subtype.min_value:
                return None
            if subtype.max_value is not None and value > subtype.max_value:
                return None
            return value
        if subtype.kind == "number":
            number = float(raw)
            return int(number) if number.is_integer() else raw
        if subtype.kind == "upper":
            # "L4 - 5" -> "L4-5", "anterior  communicating" -> "ANTERIOR COMMUNICATING"
            return re.sub(r"\s+", " ", re.sub(r"\s*([\-/])\s*", r"\1", raw)).upper()
        return re.sub(r"[\s\-]+", " ", raw).lower()

    def _confidence(self, subtype: SubtypePattern) -> float:
        if subtype.kind == "grade":
            return self.config.grade_confidence
        if subtype.kind == "number":
            return self.config.number_confidence
        return self.config.text_confidence


# ============================================================================
# Singleton
# ============================================================================


_classifier_instance: SubtypeClassifier | None = None
_classifier_lock = threading.Lock()


def get_subtype_classifier() -> SubtypeClassifier:
    """Get or create the singleton subtype classifier."""
    global _classifier_instance

    if _classifier_instance is None:
        with _classifier_lock:
            if _classifier_instance is None:
                _classifier_instance = SubtypeClassifier()

    return _classifier_instance


def reset_subtype_classifier() -> None:
    """Reset the singleton instance."""
    global _classifier_instance
    with _classifier_lock:
        _classifier_instance = None
