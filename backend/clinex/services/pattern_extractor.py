"""Deterministic rule-based extraction over deduplicated note text.

Produces typed entities with ``source_method=pattern`` and a fixed
confidence per pattern class:

- 0.95 structured values (numeric scores, labelled dates, stated age)
- 0.85 controlled-vocabulary terms (procedures, complications, drugs)
- 0.70 free-text fields (imaging findings, consults, secondary pathologies)
- 0.50 weak cues

Extraction is total and deterministic: no input raises, and the same
text always yields the same entities in the same order with the same ids.
"""

import bisect
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, ClassVar

from clinex.schemas.base import EntityType, PathologyType, ScoreScale, SourceMethod
from clinex.schemas.entities import ExtractedEntity, PathologyDetection, Sentence
from clinex.schemas.session import ExtractionHints
from clinex.services.normalizer import Normalizer, get_normalizer
from clinex.services.pathology_patterns import PATHOLOGY_LIBRARY
from clinex.services.vocabulary import VocabularyMatcher, get_matcher

logger = logging.getLogger(__name__)


CONFIDENCE_HIGH = 0.95
CONFIDENCE_MEDIUM = 0.85
CONFIDENCE_LOW = 0.70
CONFIDENCE_MINIMAL = 0.50

_ISO_DATE = r"(\d{4}-\d{2}-\d{2})"
_SCORE_LINK = r"\s*(?:score\s*)?(?:of|:|=|was|is|now|improved\s+to|decreased\s+to)?\s*"


# ============================================================================
# Result
# ============================================================================


@dataclass
class PatternExtractorConfig:
    """Configuration for rule-based extraction."""

    # Secondary pathologies need at least this many primary-pattern hits
    min_primary_hits: int = 1
    max_finding_chars: int = 160
    dose_lookahead_chars: int = 50


@dataclass
class PatternExtractionResult:
    """Entities plus the pathology detection they were scored against."""

    entities: list[ExtractedEntity] = field(default_factory=list)
    pathology: PathologyDetection = field(default_factory=PathologyDetection)


# ============================================================================
# Extractor
# ============================================================================


class PatternExtractor:
    """Regex and vocabulary extraction engine.

    Usage:
        extractor = PatternExtractor()
        result = extractor.extract(deduplicated_text)
        for entity in result.entities:
            print(entity.entity_type, entity.value, entity.confidence)
    """

    # (pattern, confidence); group 1 is the age
    AGE_PATTERNS: ClassVar[list[tuple[str, float]]] = [
        (r"\b(\d{1,3})[\s\-]*(?:year|yr)s?[\s\-]*old\b", CONFIDENCE_HIGH),
        (r"\bage[:\s]+(\d{1,3})\b", CONFIDENCE_HIGH),
        (r"\b(\d{1,3})\s*(?:yo|y/o|y\.o\.)(?!\w)", 0.90),
        (r"\b(\d{2,3})\s?(?-i:[MF])\b", CONFIDENCE_MEDIUM),
    ]

    # (pattern, confidence); group 1 is the sex word
    SEX_PATTERNS: ClassVar[list[tuple[str, float]]] = [
        (r"\b(?:sex|gender)[:\s]+(male|female|m|f)\b", CONFIDENCE_HIGH),
        (
            r"\b\d{1,3}[\s\-]*(?:year|yr)s?[\s\-]*old\s+"
            r"(male|female|man|woman|gentleman|lady|boy|girl)\b",
            CONFIDENCE_HIGH,
        ),
        (r"\b\d{2,3}\s?(?-i:([MF]))\b", CONFIDENCE_MEDIUM),
        (r"\b(male|female|gentleman|lady)\b", CONFIDENCE_MINIMAL),
    ]

    # Labelled key dates: (field, label pattern, which occurrence to keep)
    DATE_FIELDS: ClassVar[list[tuple[str, str, str]]] = [
        ("dates.admission", r"admitted|admission|admit\s+date|presented|date\s+of\s+admission|doa", "first"),
        ("dates.ictus", r"ictus|onset|last\s+known\s+well|lkw|found\s+down", "first"),
        (
            "dates.surgery",
            r"underwent|surgery|operation|operative\s+date|date\s+of\s+surgery|taken\s+to\s+(?:the\s+)?or",
            "first",
        ),
        ("dates.discharge", r"discharged?|discharge\s+date|date\s+of\s+discharge", "last"),
    ]

    # (scale, pattern, min, max); group 1 is the raw value
    SCORE_PATTERNS: ClassVar[list[tuple[str, str, int, int]]] = [
        (ScoreScale.GCS.value, rf"\b(?:GCS|glasgow\s+coma\s+(?:scale|score)){_SCORE_LINK}(\d{{1,2}})(?:T)?\b", 3, 15),
        (
            ScoreScale.KPS.value,
            rf"\b(?:KPS|karnofsky(?:\s+performance\s+(?:status|score|scale))?){_SCORE_LINK}(\d{{1,3}})(?!\d)",
            0, 100,
        ),
        (
            ScoreScale.ECOG.value,
            rf"\bECOG(?:\s+(?:performance\s+status|PS))?{_SCORE_LINK}([0-5])\b",
            0, 5,
        ),
        (
            ScoreScale.MRS.value,
            rf"\b(?:mRS|modified\s+rankin(?:\s+(?:scale|score))?){_SCORE_LINK}([0-6])\b",
            0, 6,
        ),
        # Recorded, but not part of the functional trajectory
        ("nihss", rf"\bNIHSS{_SCORE_LINK}(\d{{1,2}})\b", 0, 42),
    ]

    GCS_COMPONENTS: ClassVar[str] = r"(?-i:\bE\s?([1-4])\s?V\s?([1-5]|T)\s?M\s?([1-6])\b)"

    IMAGING_PATTERN: ClassVar[str] = (
        r"\b(CTA|CTP|CT|MRI|MRA|MRV|DSA|angiogram|angiography|TCDs?|"
        r"transcranial\s+dopplers?|x-?ray|ultrasound|EEG)\b"
        r"[^.\n]{0,60}?\b(showed|shows|revealed|reveals|demonstrated|demonstrates|"
        r"confirmed|confirms|concerning\s+for|consistent\s+with|notable\s+for|"
        r"significant\s+for)\s+([^.\n;]{3,200})"
    )

    IMAGING_MODALITIES: ClassVar[dict[str, str]] = {
        "cta": "CTA", "ctp": "CTP", "ct": "CT", "mri": "MRI", "mra": "MRA",
        "mrv": "MRV", "dsa": "angiogram", "angiogram": "angiogram",
        "angiography": "angiogram", "tcd": "TCD", "tcds": "TCD",
        "transcranial doppler": "TCD", "transcranial dopplers": "TCD",
        "xray": "x-ray", "x-ray": "x-ray", "ultrasound": "ultrasound", "eeg": "EEG",
    }

    CONSULT_CUE: ClassVar[str] = (
        r"\b(?:consult(?:ed|ation|s)?|seen\s+by|evaluated\s+by|evaluation\s+by|"
        r"recommend(?:ed|s|ations)?|input\s+from|referred|referral)\b"
    )

    DISCHARGE_CUE: ClassVar[str] = r"\b(?:discharg\w*|disposition|dispo)\b"

    # Checked in order; the first match in a discharge sentence wins
    DISPOSITIONS: ClassVar[list[tuple[str, str]]] = [
        (r"\bhome\s+with\s+(?:home\s+health|services|vna)\b", "home with services"),
        (r"\b(?:acute\s+)?(?:inpatient\s+)?rehab(?:ilitation)?\b|\birf\b", "rehabilitation facility"),
        (r"\bsnf\b|\bskilled\s+nursing\b|\bnursing\s+(?:home|facility)\b", "skilled nursing facility"),
        (r"\bltac[h]?\b|\blong[\s\-]term\s+acute\s+care\b", "long-term acute care"),
        (r"\bhospice\b", "hospice"),
        (r"\bhome\b", "home"),
    ]

    DEATH_PATTERN: ClassVar[str] = r"\b(?:expired|pronounced\s+dead|passed\s+away)\b"

    DOSE_PATTERN: ClassVar[str] = r"^[\s(]*(\d+(?:\.\d+)?)\s*(mg/kg|mg|mcg|g|units|ml|meq)\b"
    FREQUENCY_PATTERN: ClassVar[str] = (
        r"\b(q\s?\d{1,2}\s?h(?:rs?|ours?)?|every\s+\d{1,2}\s+hours|daily|bid|tid|qid|qhs|prn)\b"
    )
    ROUTE_PATTERN: ClassVar[str] = r"\b(po|iv|im|sq|subq|subcutaneous|intravenous|oral|via\s+ng)\b"

    SEX_WORDS: ClassVar[dict[str, str]] = {
        "m": "male", "male": "male", "man": "male", "gentleman": "male", "boy": "male",
        "f": "female", "female": "female", "woman": "female", "lady": "female", "girl": "female",
    }

    def __init__(
        self,
        config: PatternExtractorConfig | None = None,
        normalizer: Normalizer | None = None,
    ):
        self.config = config or PatternExtractorConfig()
        self.normalizer = normalizer or get_normalizer()

        self._age_patterns = [(re.compile(p, re.IGNORECASE), c) for p, c in self.AGE_PATTERNS]
        self._sex_patterns = [(re.compile(p, re.IGNORECASE), c) for p, c in self.SEX_PATTERNS]
        self._date_patterns = [
            (name, re.compile(rf"\b(?:{label})\b[^\n.;]{{0,40}}?\b{_ISO_DATE}\b", re.IGNORECASE), which)
            for name, label, which in self.DATE_FIELDS
        ]
        self._score_patterns = [
            (scale, re.compile(p, re.IGNORECASE), low, high)
            for scale, p, low, high in self.SCORE_PATTERNS
        ]
        self._gcs_components = re.compile(self.GCS_COMPONENTS)
        self._imaging_pattern = re.compile(self.IMAGING_PATTERN, re.IGNORECASE)
        self._consult_cue = re.compile(self.CONSULT_CUE, re.IGNORECASE)
        self._discharge_cue = re.compile(self.DISCHARGE_CUE, re.IGNORECASE)
        self._dispositions = [(re.compile(p, re.IGNORECASE), v) for p, v in self.DISPOSITIONS]
        self._death_pattern = re.compile(self.DEATH_PATTERN, re.IGNORECASE)
        self._dose_pattern = re.compile(self.DOSE_PATTERN, re.IGNORECASE)
        self._frequency_pattern = re.compile(self.FREQUENCY_PATTERN, re.IGNORECASE)
        self._route_pattern = re.compile(self.ROUTE_PATTERN, re.IGNORECASE)

        self._procedures = get_matcher("procedures")
        self._complications = get_matcher("complications")
        self._medications = get_matcher("medications")
        self._consults = get_matcher("consults")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def extract(self, text: str, hints: ExtractionHints | None = None) -> PatternExtractionResult:
        """Extract every entity type from deduplicated text.

        Args:
            text: Deduplicated note text; spans are offsets into it
            hints: Optional caller hints (pathology tie-break only)

        Returns:
            PatternExtractionResult with ordered entities and pathology detection
        """
        detection = self.detect_pathology(text, hints.pathology if hints else None)
        if not text.strip():
            return PatternExtractionResult(pathology=detection)

        collector = EntityCollector(text, self.normalizer.segment_sentences(text, 0))

        self._extract_demographics(text, collector)
        self._extract_dates(text, collector)
        self._extract_pathologies(text, detection, collector)
        self._extract_vocabulary(
            text, self._procedures, EntityType.PROCEDURE, "procedures", collector
        )
        self._extract_vocabulary(
            text, self._complications, EntityType.COMPLICATION, "complications", collector
        )
        self._extract_medications(text, collector)
        self._extract_functional_scores(text, collector)
        self._extract_imaging(text, collector)
        self._extract_consultations(text, collector)
        self._extract_disposition(text, collector)

        entities = collector.finish("pat")
        logger.debug(f"Pattern extraction produced {len(entities)} entities")
        return PatternExtractionResult(entities=entities, pathology=detection)

    def detect_pathology(
        self,
        text: str,
        hint: PathologyType | None = None,
    ) -> PathologyDetection:
        """Score every pathology profile against the text.

        Score = 0.4 x primary hits + 0.2 x location hits + 0.1 x procedure
        hits. The highest score is primary (ties prefer the hint, then
        library order); every type above zero is returned as detected.
        """
        scores: dict[str, float] = {}
        hits: dict[str, dict[str, int]] = {}
        for pathology, profile in PATHOLOGY_LIBRARY.items():
            score, breakdown = profile.score(text)
            scores[pathology.value] = score
            hits[pathology.value] = breakdown

        detected = [p for p in PATHOLOGY_LIBRARY if scores[p.value] > 0]
        primary = None
        if detected:
            best = max(scores[p.value] for p in detected)
            leaders = [p for p in detected if scores[p.value] == best]
            primary = hint if hint in leaders else leaders[0]
            detected.sort(key=lambda p: -scores[p.value])

        return PathologyDetection(primary=primary, detected=detected, scores=scores, hits=hits)

    # ------------------------------------------------------------------
    # Extractors
    # ------------------------------------------------------------------

    def _extract_demographics(self, text: str, collector: "EntityCollector") -> None:
        """Age and sex; the highest-confidence, earliest mention wins."""
        best_age: tuple[float, int, re.Match] | None = None
        for pattern, confidence in self._age_patterns:
            for match in pattern.finditer(text):
                if not 0 <= int(match.group(1)) <= 120:
                    continue
                candidate = (confidence, -match.start(1), match)
                if best_age is None or candidate[:2] > best_age[:2]:
                    best_age = candidate
                break

        if best_age:
            confidence, _, match = best_age
            age = int(match.group(1))
            collector.add(
                EntityType.DEMOGRAPHIC, "demographics.age", age, str(age),
                match.start(1), match.end(1), confidence,
            )

        best_sex: tuple[float, int, re.Match] | None = None
        for pattern, confidence in self._sex_patterns:
            match = pattern.search(text)
            if match is None:
                continue
            candidate = (confidence, -match.start(1), match)
            if best_sex is None or candidate[:2] > best_sex[:2]:
                best_sex = candidate

        if best_sex:
            confidence, _, match = best_sex
            sex = self.SEX_WORDS[match.group(1).lower()]
            collector.add(
                EntityType.DEMOGRAPHIC, "demographics.sex", sex, sex,
                match.start(1), match.end(1), confidence,
            )

    def _extract_dates(self, text: str, collector: "EntityCollector") -> None:
        """Labelled admission, ictus, surgery and discharge dates."""
        for name, pattern, which in self._date_patterns:
            found: list[tuple[date, re.Match]] = []
            for match in pattern.finditer(text):
                try:
                    found.append((date.fromisoformat(match.group(1)), match))
                except ValueError:
                    logger.debug(f"Skipping impossible date {match.group(1)!r} for {name}")
            if not found:
                continue

            value, match = found[0] if which == "first" else found[-1]
            collector.add(
                EntityType.DATE_REFERENCE, name, value, value.isoformat(),
                match.start(1), match.end(1), CONFIDENCE_HIGH,
                resolved_date=value, date_source="field",
            )

    def _extract_pathologies(
        self,
        text: str,
        detection: PathologyDetection,
        collector: "EntityCollector",
    ) -> None:
        """One entity per pathology with a primary-mention hit."""
        for pathology in detection.detected:
            profile = PATHOLOGY_LIBRARY[pathology]
            if detection.hits[pathology.value]["primary"] < self.config.min_primary_hits:
                continue
            matches = sorted(
                (m for p in profile.compiled["primary"] for m in p.finditer(text)),
                key=lambda m: m.start(),
            )
            if not matches:
                continue
            is_primary = pathology == detection.primary
            first = matches[0]
            entity = collector.add(
                EntityType.PATHOLOGY, "pathology", pathology.value, pathology.value,
                first.start(), first.end(),
                CONFIDENCE_MEDIUM if is_primary else CONFIDENCE_LOW,
                attributes={
                    "display_name": profile.display_name,
                    "score": detection.scores[pathology.value],
                    "is_primary": is_primary,
                },
            )
            for match in matches[1:]:
                collector.add_mention(entity, match.start(), match.end())

    def _extract_vocabulary(
        self,
        text: str,
        matcher: VocabularyMatcher,
        entity_type: EntityType,
        field_name: str,
        collector: "EntityCollector",
        confidence: float = CONFIDENCE_MEDIUM,
    ) -> None:
        """Controlled-vocabulary terms, one entity per canonical name."""
        for match in matcher.find(text):
            collector.add(
                entity_type, field_name, match.canonical, match.canonical.lower(),
                match.start, match.end, confidence,
                attributes={"category": match.category},
            )

    def _extract_medications(self, text: str, collector: "EntityCollector") -> None:
        """Medications with dose, route and frequency when stated nearby."""
        lookahead = self.config.dose_lookahead_chars
        for match in self._medications.find(text):
            entity = collector.add(
                EntityType.MEDICATION, "medications", match.canonical, match.canonical.lower(),
                match.start, match.end, CONFIDENCE_MEDIUM,
                attributes={"category": match.category},
            )
            window = text[match.end:match.end + lookahead].split("\n", 1)[0]
            dose = self._dose_pattern.search(window)
            if dose and "dose" not in entity.attributes:
                entity.attributes["dose"] = float(dose.group(1)) if "." in dose.group(1) else int(dose.group(1))
                entity.attributes["unit"] = dose.group(2).lower()
            frequency = self._frequency_pattern.search(window)
            if frequency and "frequency" not in entity.attributes:
                entity.attributes["frequency"] = re.sub(r"\s+", " ", frequency.group(1).lower())
            route = self._route_pattern.search(window)
            if route and "route" not in entity.attributes:
                entity.attributes["route"] = route.group(1).lower()

    def _extract_functional_scores(self, text: str, collector: "EntityCollector") -> None:
        """GCS, KPS, ECOG, mRS (range-validated) and NIHSS, one entity per reading."""
        gcs_ends: list[int] = []
        for scale, pattern, low, high in self._score_patterns:
            for match in pattern.finditer(text):
                value = int(match.group(1))
                if not low <= value <= high:
                    logger.debug(f"Discarding out-of-range {scale} value {value}")
                    continue
                attributes: dict[str, Any] = {"scale": scale}
                if scale == "nihss":
                    attributes["trajectory"] = False
                if scale == ScoreScale.GCS.value:
                    gcs_ends.append(match.end())
                collector.add(
                    EntityType.FUNCTIONAL_SCORE, "functional_scores", value, f"{scale}:{value}",
                    match.start(), match.end(), CONFIDENCE_HIGH,
                    attributes=attributes, group=False,
                )

        for match in self._gcs_components.finditer(text):
            # "GCS 15 (E4V5M6)" is one reading
            if any(match.start() - 30 <= end <= match.start() for end in gcs_ends):
                continue
            eye, verbal, motor = match.groups()
            intubated = verbal.upper() == "T"
            value = int(eye) + (1 if intubated else int(verbal)) + int(motor)
            collector.add(
                EntityType.FUNCTIONAL_SCORE, "functional_scores", value, f"gcs:{value}",
                match.start(), match.end(), CONFIDENCE_HIGH,
                attributes={
                    "scale": ScoreScale.GCS.value,
                    "components": {"eye": int(eye), "verbal": verbal, "motor": int(motor)},
                    "intubated": intubated,
                },
                group=False,
            )

    def _extract_imaging(self, text: str, collector: "EntityCollector") -> None:
        """Imaging studies with a reported finding."""
        for match in self._imaging_pattern.finditer(text):
            modality_key = re.sub(r"\s+", " ", match.group(1).lower()).replace("x ray", "x-ray")
            modality = self.IMAGING_MODALITIES.get(modality_key, match.group(1).upper())
            finding = match.group(3).strip(" ,:")[: self.config.max_finding_chars]
            if not finding:
                continue
            collector.add(
                EntityType.IMAGING_FINDING, "imaging", finding,
                f"{modality.lower()}|{finding.lower()}",
                match.start(), match.end(), CONFIDENCE_LOW,
                attributes={
                    "modality": modality,
                    "finding": finding,
                    "verb": match.group(2).lower(),
                    "finding_offset": match.start(3) - match.start(),
                },
            )

    def _extract_consultations(self, text: str, collector: "EntityCollector") -> None:
        """Consulting services mentioned alongside a consult cue."""
        for match in self._consults.find(text):
            sentence = collector.sentence_text_at(match.start)
            if not sentence or not self._consult_cue.search(sentence):
                continue
            collector.add(
                EntityType.CONSULTATION, "consultations", match.canonical, match.canonical.lower(),
                match.start, match.end, CONFIDENCE_LOW,
                attributes={"category": match.category},
            )

    def _extract_disposition(self, text: str, collector: "EntityCollector") -> None:
        """Discharge disposition; the last stated disposition wins."""
        found: tuple[str, int, int] | None = None
        for start, end, sentence in collector.sentences_matching(self._discharge_cue):
            for pattern, disposition in self._dispositions:
                match = pattern.search(sentence)
                if match:
                    found = (disposition, start + match.start(), start + match.end())
                    break

        deaths = list(self._death_pattern.finditer(text))
        if deaths:
            found = ("expired", deaths[-1].start(), deaths[-1].end())

        if found:
            disposition, start, end = found
            collector.add(
                EntityType.DISCHARGE, "discharge.disposition", disposition, disposition,
                start, end, CONFIDENCE_MEDIUM,
            )


# ============================================================================
# Entity accumulation
# ============================================================================


class EntityCollector:
    """Accumulates entities, grouping repeated mentions of one value."""

    TYPE_ORDER: ClassVar[dict[EntityType, int]] = {t: i for i, t in enumerate(EntityType)}

    def __init__(
        self,
        text: str,
        sentences: list[Sentence],
        source_method: SourceMethod = SourceMethod.PATTERN,
    ):
        self.text = text
        self.source_method = source_method
        self._sentences = sentences
        self._starts = [s.offset for s in sentences]
        self._grouped: dict[tuple[str, str], ExtractedEntity] = {}
        self._entities: list[ExtractedEntity] = []

    def add(
        self,
        entity_type: EntityType,
        field_name: str,
        value: Any,
        normalized_value: str,
        start: int,
        end: int,
        confidence: float,
        attributes: dict[str, Any] | None = None,
        group: bool = True,
        **extra: Any,
    ) -> ExtractedEntity:
        """Add a mention; repeated grouped values extend the first entity."""
        key = (field_name, normalized_value)
        if group and key in self._grouped:
            entity = self._grouped[key]
            self.add_mention(entity, start, end)
            return entity

        entity = ExtractedEntity(
            entity_id="",
            entity_type=entity_type,
            field=field_name,
            value=value,
            normalized_value=normalized_value,
            text=self.text[start:end],
            source_method=self.source_method,
            confidence=confidence,
            source_span=(start, end),
            mention_spans=[(start, end)],
            attributes=attributes or {},
            context=self.sentence_text_at(start),
            **extra,
        )
        if group:
            self._grouped[key] = entity
        self._entities.append(entity)
        return entity

    def add_mention(self, entity: ExtractedEntity, start: int, end: int) -> None:
        if (start, end) not in entity.mention_spans:
            entity.mention_spans.append((start, end))

    def sentence_text_at(self, offset: int) -> str | None:
        index = bisect.bisect_right(self._starts, offset) - 1
        if index < 0:
            return None
        return self._sentences[index].text

    def sentences_matching(self, pattern: re.Pattern) -> list[tuple[int, int, str]]:
        """(start, end, text) of every sentence the pattern matches."""
        return [
            (s.offset, s.offset + len(s.text), s.text)
            for s in self._sentences
            if pattern.search(s.text)
        ]

    def finish(self, prefix: str) -> list[ExtractedEntity]:
        """Sort into document order and assign stable ids."""
        ordered = sorted(
            self._entities,
            key=lambda e: (e.position, self.TYPE_ORDER[e.entity_type], e.field, e.normalized_value),
        )
        for index, entity in enumerate(ordered, start=1):
            entity.mention_spans.sort()
            entity.entity_id = f"{prefix}-{index:04d}"
        return ordered


# ============================================================================
# Singleton
# ============================================================================


_extractor_instance: PatternExtractor | None = None
_extractor_lock = threading.Lock()


def get_pattern_extractor() -> PatternExtractor:
    """Get or create the singleton pattern extractor."""
    global _extractor_instance

    if _extractor_instance is None:
        with _extractor_lock:
            if _extractor_instance is None:
                _extractor_instance = PatternExtractor()
                logger.info("Initialized pattern extractor")

    return _extractor_instance


def reset_pattern_extractor() -> None:
    """Reset the singleton instance."""
    global _extractor_instance
    with _extractor_lock:
        _extractor_instance = None
