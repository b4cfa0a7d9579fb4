"""Temporal reference detection and date binding.

Detects temporal references in the deduplicated text:
- Absolute ISO dates (the normalizer has already canonicalized numeric and
  month-name forms)
- Post-operative days (``POD<n>``) and hospital days (``HD<n>``)
- Relative references ("yesterday", "this morning", "3 days ago")

and resolves them against anchor dates. POD counts from the surgery date,
HD1 is the admission day, and relative references count from the
document's own date when known. When the natural anchor is missing the
resolver falls back to admission, then to the nearest preceding absolute
date. Anything still unanchored stays None.

Each entity without a date of its own is then bound to a reference in its
own sentence, or else to the nearest preceding resolved reference in the
same document. Every mention of a timeline-bound entity is dated on its
own, so a drug planned on admission and started on POD2 becomes two
entities with two dates.
"""

import bisect
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import ClassVar

from clinex.schemas.base import EntityType
from clinex.schemas.entities import ExtractedEntity
from clinex.services.normalizer import Normalizer, build_date, get_normalizer

logger = logging.getLogger(__name__)

NUMBER_WORDS: dict[str, int] = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}


@dataclass
class TemporalReference:
    """One temporal expression found in the text."""

    kind: str  # explicit | pod | hd | relative
    start: int
    end: int
    text: str
    document_index: int | None = None
    day_number: int | None = None  # n of POD<n> / HD<n>
    offset_days: int | None = None  # signed offset of a relative reference
    explicit_date: date | None = None
    resolved: date | None = None
    anchor: str | None = None  # which anchor resolved it


@dataclass
class TemporalResolution:
    """Resolved references, the anchors used and the dated entities."""

    entities: list[ExtractedEntity]
    references: list[TemporalReference] = field(default_factory=list)
    anchors: dict[str, date] = field(default_factory=dict)

    @property
    def unresolved(self) -> list[TemporalReference]:
        return [r for r in self.references if r.resolved is None]


@dataclass
class TemporalResolverConfig:
    """Configuration for temporal resolution."""

    # A POD token followed this closely by an ISO date is one reference
    pod_date_window: int = 15
    # Entities whose own date came from these sources keep it
    preserved_date_sources: tuple[str, ...] = ("field", "llm")
    # Timeline-bound types whose mentions on different dates become separate entities
    split_types: frozenset[EntityType] = frozenset({
        EntityType.PROCEDURE,
        EntityType.COMPLICATION,
        EntityType.MEDICATION,
        EntityType.IMAGING_FINDING,
        EntityType.CONSULTATION,
    })


class TemporalResolver:
    """Resolves temporal references and binds entities to dates.

    Usage:
        resolver = TemporalResolver()
        resolution = resolver.resolve(text, entities, document_index_at=dedup.document_index_at)
        for entity in resolution.entities:
            print(entity.normalized_value, entity.resolved_date, entity.date_source)
    """

    ISO_DATE: ClassVar[str] = r"\b(\d{4})-(\d{2})-(\d{2})\b"
    POD_TOKEN: ClassVar[str] = r"\bPOD(\d{1,3})\b"
    HD_TOKEN: ClassVar[str] = r"\bHD(\d{1,3})\b"

    # A mention right after these refers back to an earlier event
    HISTORICAL_PREFIX: ClassVar[str] = (
        r"\b(?:s/p|status post|h/o|history of|prior|previous)\s+(?:[\w-]+\s+){0,2}$"
    )

    # (pattern, offset in days; None means read the count from group 1)
    RELATIVE_PATTERNS: ClassVar[list[tuple[str, int | None, int]]] = [
        (r"\bday before yesterday\b", -2, 1),
        (r"\byesterday\b", -1, 1),
        (r"\blast night\b", -1, 1),
        (r"\b(?:today|tonight|this (?:morning|afternoon|evening))\b", 0, 1),
        (r"\b(\d{1,2}|a|an|one|two|three|four|five|six|seven|eight|nine|ten)\s+days?\s+ago\b", None, 1),
        (r"\b(\d{1,2}|a|an|one|two|three|four|five|six|seven|eight|nine|ten)\s+weeks?\s+ago\b", None, 7),
    ]

    def __init__(
        self,
        config: TemporalResolverConfig | None = None,
        normalizer: Normalizer | None = None,
    ):
        self.config = config or TemporalResolverConfig()
        self.normalizer = normalizer or get_normalizer()
        self._iso = re.compile(self.ISO_DATE)
        self._pod = re.compile(self.POD_TOKEN)
        self._hd = re.compile(self.HD_TOKEN)
        self._historical = re.compile(self.HISTORICAL_PREFIX, re.IGNORECASE)
        self._relative = [
            (re.compile(p, re.IGNORECASE), offset, unit) for p, offset, unit in self.RELATIVE_PATTERNS
        ]

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(
        self,
        text: str,
        document_index_at: Callable[[int], int | None] | None = None,
    ) -> list[TemporalReference]:
        """Find every temporal reference, in text order (unresolved)."""
        references: list[TemporalReference] = []

        for match in self._iso.finditer(text):
            parsed = build_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            if parsed is None:
                continue
            references.append(TemporalReference(
                kind="explicit", start=match.start(), end=match.end(),
                text=match.group(), explicit_date=parsed,
            ))

        for kind, pattern in (("pod", self._pod), ("hd", self._hd)):
            for match in pattern.finditer(text):
                references.append(TemporalReference(
                    kind=kind, start=match.start(), end=match.end(),
                    text=match.group(), day_number=int(match.group(1)),
                ))

        taken: list[tuple[int, int]] = []
        for pattern, offset, unit in self._relative:
            for match in pattern.finditer(text):
                if any(s <= match.start() < e for s, e in taken):
                    continue
                if offset is None:
                    count = match.group(1).lower()
                    days = -(NUMBER_WORDS[count] if count in NUMBER_WORDS else int(count)) * unit
                else:
                    days = offset
                taken.append((match.start(), match.end()))
                references.append(TemporalReference(
                    kind="relative", start=match.start(), end=match.end(),
                    text=match.group(), offset_days=days,
                ))

        references.sort(key=lambda r: (r.start, r.end))
        references = self._combine_pod_with_dates(text, references)

        if document_index_at is not None:
            for reference in references:
                reference.document_index = document_index_at(reference.start)
        return references

    def _combine_pod_with_dates(
        self,
        text: str,
        references: list[TemporalReference],
    ) -> list[TemporalReference]:
        """Fold "POD2 (2025-01-16)" into a single POD reference carrying the date."""
        combined: list[TemporalReference] = []
        skip: set[int] = set()
        for index, reference in enumerate(references):
            if index in skip:
                continue
            if reference.kind == "pod" and index + 1 < len(references):
                following = references[index + 1]
                gap = text[reference.end:following.start]
                if (
                    following.kind == "explicit"
                    and len(gap) <= self.config.pod_date_window
                    and "\n" not in gap
                ):
                    reference.explicit_date = following.explicit_date
                    reference.end = following.end
                    reference.text = text[reference.start:following.end]
                    skip.add(index + 1)
            combined.append(reference)
        return combined

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        text: str,
        entities: list[ExtractedEntity],
        document_index_at: Callable[[int], int | None] | None = None,
        timestamp_hints: dict[int, date] | None = None,
    ) -> TemporalResolution:
        """Resolve references and bind every entity to a date where possible.

        Entities are updated in place; dates already bound from a labelled
        field or the external extractor are kept.

        Args:
            text: Deduplicated text the entity spans point into
            entities: Fused entities
            document_index_at: Maps a text offset to its source document
            timestamp_hints: Document index to document date

        Returns:
            TemporalResolution with entities, references and anchors
        """
        timestamp_hints = timestamp_hints or {}
        references = self.detect(text, document_index_at)
        anchors = self._anchors(entities)
        self._resolve_references(references, anchors, timestamp_hints)

        sentence_bounds = [
            (s.offset, s.offset + len(s.text)) for s in self.normalizer.segment_sentences(text, 0)
        ]
        resolved_refs = [r for r in references if r.resolved is not None]
        ref_starts = [r.start for r in resolved_refs]

        def reference_at(offset: int) -> tuple[TemporalReference | None, str | None]:
            document_index = document_index_at(offset) if document_index_at else None
            return self._reference_for(offset, document_index, resolved_refs, ref_starts, sentence_bounds)

        dated: list[ExtractedEntity] = []
        split = 0
        for entity in entities:
            if entity.resolved_date is not None and entity.date_source in self.config.preserved_date_sources:
                dated.append(entity)
                continue
            if entity.source_span is None:
                dated.append(entity)
                continue
            if entity.entity_type not in self.config.split_types or len(entity.mention_spans) < 2:
                reference, source = reference_at(entity.source_span[0])
                self._bind(entity, reference, source)
                dated.append(entity)
                continue

            parts = self._split_by_date(text, entity, reference_at, sentence_bounds)
            split += len(parts) - 1
            dated.extend(parts)

        dated.sort(key=lambda e: e.position)
        bound = sum(1 for e in dated if e.resolved_date is not None)
        logger.info(
            f"Resolved {len(resolved_refs)}/{len(references)} temporal references; "
            f"bound {bound} entities ({split} split by date)"
        )
        return TemporalResolution(entities=dated, references=references, anchors=anchors)

    @staticmethod
    def _bind(entity: ExtractedEntity, reference: TemporalReference | None, source: str | None) -> None:
        entity.resolved_date = reference.resolved if reference is not None else None
        entity.date_source = source if reference is not None else None

    def _split_by_date(
        self,
        text: str,
        entity: ExtractedEntity,
        reference_at: Callable[[int], tuple[TemporalReference | None, str | None]],
        sentence_bounds: list[tuple[int, int]],
    ) -> list[ExtractedEntity]:
        """Date every mention; mentions on different dates become separate entities.

        The original entity keeps the group holding its first mention and its
        id. Later groups are copies with ids suffixed ``-2``, ``-3`` and so on.
        Undated mentions, and status-post mentions such as "s/p coiling",
        join the first dated group.
        """
        groups: dict[date | None, tuple[TemporalReference | None, str | None, list[tuple[int, int]]]] = {}
        historical: list[tuple[int, int]] = []
        for span in sorted(entity.mention_spans):
            if self._historical.search(text[max(0, span[0] - 40):span[0]]):
                historical.append(span)
                continue
            reference, source = reference_at(span[0])
            resolved = reference.resolved if reference is not None else None
            if resolved in groups:
                groups[resolved][2].append(span)
            else:
                groups[resolved] = (reference, source, [span])

        if not groups:
            reference, source = reference_at(historical[0][0])
            self._bind(entity, reference, source)
            return [entity]

        if None in groups and len(groups) > 1:
            _, _, undated = groups.pop(None)
            historical.extend(undated)
        if historical:
            first = next(iter(groups.values()))
            first[2].extend(historical)
            first[2].sort()

        if len(groups) == 1:
            reference, source, _ = next(iter(groups.values()))
            self._bind(entity, reference, source)
            return [entity]

        parts: list[ExtractedEntity] = []
        for number, (reference, source, spans) in enumerate(groups.values(), start=1):
            if number == 1:
                part = entity
                if part.source_span not in spans:
                    part.source_span = spans[0]
                    part.text = text[spans[0][0]:spans[0][1]]
            else:
                part = entity.model_copy(deep=True, update={"entity_id": f"{entity.entity_id}-{number}"})
                part.text = text[spans[0][0]:spans[0][1]]
                sentence = self._sentence_containing(spans[0][0], sentence_bounds)
                part.context = text[sentence[0]:sentence[1]] if sentence else part.context
                part.source_span = spans[0]
            part.mention_spans = spans
            self._bind(part, reference, source)
            parts.append(part)

        logger.debug(
            f"Split {entity.normalized_value} into {len(parts)} entities: "
            f"{[p.resolved_date.isoformat() if p.resolved_date else None for p in parts]}"
        )
        return parts

    def _anchors(self, entities: list[ExtractedEntity]) -> dict[str, date]:
        """Admission/surgery/ictus dates from labelled date entities."""
        anchors: dict[str, date] = {}
        for entity in sorted(entities, key=lambda e: (-e.confidence, e.position)):
            if not entity.field.startswith("dates.") or entity.resolved_date is None:
                continue
            anchors.setdefault(entity.field.split(".", 1)[1], entity.resolved_date)
        return anchors

    def _resolve_references(
        self,
        references: list[TemporalReference],
        anchors: dict[str, date],
        timestamp_hints: dict[int, date],
    ) -> None:
        admission = anchors.get("admission")
        last_absolute: date | None = None

        for reference in references:
            if reference.kind == "explicit":
                reference.resolved = reference.explicit_date
                reference.anchor = "explicit"

            elif reference.kind == "pod":
                if reference.explicit_date is not None:
                    reference.resolved = reference.explicit_date
                    reference.anchor = "explicit"
                    if "surgery" not in anchors:
                        anchors["surgery"] = reference.explicit_date - timedelta(days=reference.day_number)
                        logger.debug(f"Inferred surgery anchor {anchors['surgery']} from {reference.text}")
                else:
                    base, anchor = self._first_anchor(
                        ("surgery", anchors.get("surgery")),
                        ("admission", admission),
                        ("preceding", last_absolute),
                    )
                    if base is not None:
                        reference.resolved = base + timedelta(days=reference.day_number)
                        reference.anchor = anchor

            elif reference.kind == "hd":
                if admission is not None and reference.day_number >= 1:
                    reference.resolved = admission + timedelta(days=reference.day_number - 1)
                    reference.anchor = "admission"

            else:
                hint = timestamp_hints.get(reference.document_index) if reference.document_index is not None else None
                base, anchor = self._first_anchor(
                    ("document", hint),
                    ("admission", admission),
                    ("preceding", last_absolute),
                )
                if base is not None:
                    reference.resolved = base + timedelta(days=reference.offset_days)
                    reference.anchor = anchor

            if reference.anchor == "explicit":
                last_absolute = reference.resolved

    @staticmethod
    def _first_anchor(*candidates: tuple[str, date | None]) -> tuple[date | None, str | None]:
        for name, value in candidates:
            if value is not None:
                return value, name
        return None, None

    def _reference_for(
        self,
        offset: int,
        document_index: int | None,
        references: list[TemporalReference],
        ref_starts: list[int],
        sentence_bounds: list[tuple[int, int]],
    ) -> tuple[TemporalReference | None, str | None]:
        """Reference in the entity's sentence, else the nearest preceding one."""
        if not references:
            return None, None

        sentence = self._sentence_containing(offset, sentence_bounds)
        if sentence is not None:
            in_sentence = [r for r in references if sentence[0] <= r.start < sentence[1]]
            if in_sentence:
                preceding = [r for r in in_sentence if r.start <= offset]
                chosen = preceding[-1] if preceding else in_sentence[0]
                return chosen, chosen.kind

        index = bisect.bisect_right(ref_starts, offset) - 1
        while index >= 0:
            candidate = references[index]
            if document_index is None or candidate.document_index == document_index:
                return candidate, "nearest"
            if candidate.document_index is not None and candidate.document_index < document_index:
                break
            index -= 1
        return None, None

    @staticmethod
    def _sentence_containing(offset: int, bounds: list[tuple[int, int]]) -> tuple[int, int] | None:
        index = bisect.bisect_right([b[0] for b in bounds], offset) - 1
        if index < 0:
            return None
        start, end = bounds[index]
        return (start, end) if offset < end else None


# ============================================================================
# Singleton
# ============================================================================


_resolver_instance: TemporalResolver | None = None
_resolver_lock = threading.Lock()


def get_temporal_resolver() -> TemporalResolver:
    """Get or create the singleton temporal resolver."""
    global _resolver_instance

    if _resolver_instance is None:
        with _resolver_lock:
            if _resolver_instance is None:
                _resolver_instance = TemporalResolver()

    return _resolver_instance


def reset_temporal_resolver() -> None:
    """Reset the singleton instance."""
    global _resolver_instance
    with _resolver_lock:
        _resolver_instance = None
