"""Source-quality assessment and confidence calibration.

The input text is scored on five weighted factors:

    structure     0.25  canonical sections present, paragraphing
    completeness  0.25  expected clinical elements mentioned
    formality     0.15  informal shorthand penalized, professional phrasing rewarded
    detail        0.20  length, measurements, dates, clinical reasoning
    consistency   0.15  contradictory statement pairs penalized

The weighted score ``q`` calibrates every entity's confidence. Pattern-only
entities are scaled by ``0.5 + 0.5q``; LLM and merged entities by
``0.75 + 0.25q``, since LLM extraction holds up better in poorly written
notes.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import ClassVar

from clinex.schemas.base import EntityType, QualityGrade, SourceMethod
from clinex.schemas.entities import ExtractedEntity, SourceQualityReport

logger = logging.getLogger(__name__)


SOURCE_QUALITY_WEIGHTS: dict[str, float] = {
    "structure": 0.25,
    "completeness": 0.25,
    "formality": 0.15,
    "detail": 0.20,
    "consistency": 0.15,
}


@dataclass
class ConfidenceScorerConfig:
    """Calibration multipliers: ``floor + (1 - floor) x quality``."""

    pattern_floor: float = 0.5
    llm_floor: float = 0.75
    contradiction_penalty: float = 0.15


@dataclass
class ConfidenceResult:
    """Source quality plus per-field and overall confidence."""

    source_quality: SourceQualityReport
    field_confidence: dict[str, float] = field(default_factory=dict)
    overall: float = 0.0


class ConfidenceScorer:
    """Assesses source quality and calibrates entity confidence.

    Usage:
        scorer = ConfidenceScorer()
        result = scorer.score(text, entities, expected_fields_for(PathologyType.SAH))
        print(result.source_quality.grade, result.overall)
    """

    CORE_SECTIONS: ClassVar[list[str]] = [
        r"(?:HISTORY|HPI|CHIEF COMPLAINT)[A-Z ]*:",
        r"(?:PHYSICAL EXAM|EXAMINATION|NEUROLOGICAL EXAM|NEURO EXAM):",
        r"(?:ASSESSMENT|IMPRESSION)[A-Z ]*:",
        r"(?:PLAN|RECOMMENDATIONS):",
    ]

    # (pattern, weight)
    EXPECTED_ELEMENTS: ClassVar[list[tuple[str, float]]] = [
        (r"\b(?:age|yo|year[- ]old)\b", 0.10),
        (r"\b(?:diagnosis|diagnosed with|presents? with|presented with)\b", 0.15),
        (r"\b(?:BP|blood pressure|HR|heart rate|RR|respiratory rate)\b", 0.10),
        (r"\b(?:exam|examination|physical|neuro)\b", 0.15),
        (r"\b(?:CT|MRI|CTA|imaging|scan|angiogra\w+)\b", 0.10),
        (r"\b(?:procedure|surgery|operation|intervention|craniotomy|coiling|clipping)\b", 0.10),
        (r"\b(?:medications?|drug|therapy|treatment|started)\b", 0.10),
        (r"\b(?:follow[- ]?up|f/u|appointment|clinic)\b", 0.10),
        (r"\b(?:discharge|disposition|plan)\b", 0.10),
    ]

    # (pattern, penalty per hit); each marker's total penalty is capped
    INFORMAL_MARKERS: ClassVar[list[tuple[str, float]]] = [
        (r"\bpt\b", 0.05),
        (r"\bc/o\b", 0.03),
        (r"\bw/(?!o)", 0.03),
        (r"\bw/o\b", 0.03),
        (r"\bs/p\b", 0.03),
        (r"\b(?:gonna|wanna|gotta)\b", 0.10),
    ]
    INFORMAL_CAP: ClassVar[float] = 0.3

    PROFESSIONAL_MARKERS: ClassVar[list[str]] = [
        r"\b(?:presented with|admitted for|underwent)\b",
        r"\b(?:examination revealed|assessment shows)\b",
        r"\b(?:subsequently|following|during the course)\b",
    ]

    MEASUREMENTS: ClassVar[list[str]] = [
        r"\d+(?:\.\d+)?\s*(?:mm|cm|ml|mg|mcg|units)\b",
        r"\d+/\d+\s*(?:mmHg)?",
        r"\d+\s*bpm\b",
        r"\d+\s*%",
    ]

    DATE_MARKERS: ClassVar[list[str]] = [
        r"\b\d{4}-\d{2}-\d{2}\b",
        r"\b\d{1,2}/\d{1,2}/\d{2,4}\b",
        r"\bPOD\s*#?\s*\d+\b",
        r"\bHD\s*#?\s*\d+\b",
    ]

    REASONING_PHRASES: ClassVar[list[str]] = [
        r"\b(?:due to|because of|secondary to|as a result of)\b",
        r"\b(?:therefore|thus|consequently)\b",
        r"\b(?:given|in light of|considering)\b",
    ]

    CONTRADICTIONS: ClassVar[list[tuple[str, str]]] = [
        (r"\bimproved\b", r"\bworsened\b"),
        (r"\bstable\b", r"\bdeteriorated\b"),
        (r"\bno\s+(?:deficit|weakness)\b", r"\b(?:deficit|weakness)\s+noted\b"),
    ]

    def __init__(self, config: ConfidenceScorerConfig | None = None):
        self.config = config or ConfidenceScorerConfig()
        self._sections = [re.compile(p) for p in self.CORE_SECTIONS]
        self._elements = [(re.compile(p, re.IGNORECASE), w) for p, w in self.EXPECTED_ELEMENTS]
        self._informal = [(re.compile(p, re.IGNORECASE), w) for p, w in self.INFORMAL_MARKERS]
        self._professional = [re.compile(p, re.IGNORECASE) for p in self.PROFESSIONAL_MARKERS]
        self._measurements = [re.compile(p, re.IGNORECASE) for p in self.MEASUREMENTS]
        self._dates = [re.compile(p, re.IGNORECASE) for p in self.DATE_MARKERS]
        self._reasoning = [re.compile(p, re.IGNORECASE) for p in self.REASONING_PHRASES]
        self._contradictions = [
            (re.compile(a, re.IGNORECASE), re.compile(b, re.IGNORECASE)) for a, b in self.CONTRADICTIONS
        ]

    # ------------------------------------------------------------------
    # Source quality
    # ------------------------------------------------------------------

    def assess_source_quality(self, text: str) -> SourceQualityReport:
        """Score the input text on the five source-quality factors."""
        factors = {
            "structure": self._structure(text),
            "completeness": self._completeness(text),
            "formality": self._formality(text),
            "detail": self._detail(text),
            "consistency": self._consistency(text),
        }
        overall = sum(factors[name] * weight for name, weight in SOURCE_QUALITY_WEIGHTS.items())
        overall = round(max(0.0, min(1.0, overall)), 4)
        return SourceQualityReport(
            **{name: round(value, 4) for name, value in factors.items()},
            overall=overall,
            grade=QualityGrade.from_score(overall),
        )

    def _structure(self, text: str) -> float:
        found = sum(1 for p in self._sections if p.search(text))
        score = 0.5 + 0.4 * found / len(self._sections)
        paragraphs = [p for p in re.split(r"\n\s*\n", text) if p.strip()]
        if len(paragraphs) >= 3:
            score += 0.1
        return min(1.0, score)

    def _completeness(self, text: str) -> float:
        return min(1.0, sum(weight for pattern, weight in self._elements if pattern.search(text)))

    def _formality(self, text: str) -> float:
        score = 1.0
        for pattern, penalty in self._informal:
            score -= min(self.INFORMAL_CAP, len(pattern.findall(text)) * penalty)
        score += 0.05 * sum(1 for p in self._professional if p.search(text))
        return max(0.0, min(1.0, score))

    def _detail(self, text: str) -> float:
        score = 0.0
        words = len(text.split())
        if words > 500:
            score += 0.3
        elif words > 200:
            score += 0.2
        elif words > 100:
            score += 0.1

        measurements = sum(len(p.findall(text)) for p in self._measurements)
        dates = sum(len(p.findall(text)) for p in self._dates)
        reasoning = sum(len(p.findall(text)) for p in self._reasoning)
        score += min(0.3, measurements * 0.05)
        score += min(0.2, dates * 0.05)
        score += min(0.2, reasoning * 0.05)
        return min(1.0, score)

    def _consistency(self, text: str) -> float:
        score = 1.0
        for positive, negative in self._contradictions:
            if positive.search(text) and negative.search(text):
                score -= self.config.contradiction_penalty
        return max(0.0, score)

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def calibrate(self, confidence: float, source_method: SourceMethod, quality: float) -> float:
        """Scale an entity confidence by source quality."""
        floor = self.config.pattern_floor if source_method == SourceMethod.PATTERN else self.config.llm_floor
        multiplier = floor + (1.0 - floor) * quality
        return round(max(0.0, min(1.0, confidence * multiplier)), 4)

    def score(
        self,
        text: str,
        entities: list[ExtractedEntity],
        expected_fields: tuple[str, ...] = (),
    ) -> ConfidenceResult:
        """Calibrate entity confidences and summarize them per field.

        Entity confidences are replaced in place; the pre-calibration value
        is kept in ``attributes["raw_confidence"]``.

        Args:
            text: Deduplicated text
            entities: Entities after subtype classification
            expected_fields: Fields a complete record should carry; missing
                ones count as zero confidence

        Returns:
            ConfidenceResult with source quality and field/overall confidence
        """
        quality = self.assess_source_quality(text)

        for entity in entities:
            raw = entity.attributes.setdefault("raw_confidence", entity.confidence)
            entity.confidence = self.calibrate(raw, entity.source_method, quality.overall)

        field_confidence: dict[str, float] = {}
        for entity in entities:
            field_confidence[entity.field] = max(field_confidence.get(entity.field, 0.0), entity.confidence)
            if entity.entity_type == EntityType.PATHOLOGY and entity.subtype is not None:
                subtype_confidence = self.calibrate(
                    entity.subtype.confidence, entity.source_method, quality.overall
                )
                field_confidence["pathology.subtype"] = max(
                    field_confidence.get("pathology.subtype", 0.0), subtype_confidence
                )
        for expected in expected_fields:
            field_confidence.setdefault(expected, 0.0)

        field_confidence = dict(sorted(field_confidence.items()))
        overall = (
            round(sum(field_confidence.values()) / len(field_confidence), 4) if field_confidence else 0.0
        )
        logger.info(
            f"Source quality {quality.overall:.2f} ({quality.grade.value}); "
            f"overall confidence {overall:.2f} over {len(field_confidence)} fields"
        )
        return ConfidenceResult(source_quality=quality, field_confidence=field_confidence, overall=overall)


# ============================================================================
# Singleton
# ============================================================================


_scorer_instance: ConfidenceScorer | None = None
_scorer_lock = threading.Lock()


def get_confidence_scorer() -> ConfidenceScorer:
    """Get or create the singleton confidence scorer."""
    global _scorer_instance

    if _scorer_instance is None:
        with _scorer_lock:
            if _scorer_instance is None:
                _scorer_instance = ConfidenceScorer()

    return _scorer_instance


def reset_confidence_scorer() -> None:
    """Reset the singleton instance."""
    global _scorer_instance
    with _scorer_lock:
        _scorer_instance = None
