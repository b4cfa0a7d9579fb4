"""Clinical timeline construction and causal-edge inference.

Dated entities become TimelineEvents: entities sharing a date, event type
and normalized value collapse into one event. Events are ordered by date,
then by their position in the deduplicated text.

Causal edges are temporal-adjacency heuristics, never certainties:

- intervention -> complication within 14 days: ``may_have_caused``,
  confidence falling linearly from 0.85 (same day) to 0.5 (day 14)
- complication -> intervention within 3 days: ``prompted`` at 0.9
- intervention -> one of the next 5 events described with improvement
  language: ``resulted_in`` at 0.7

Explicit causal language in the complication's sentence ("secondary to",
"complicated by") naming the intervention as the cause raises an in-window
edge to 0.97. All thresholds live in ``TimelineConfig``.
"""

import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import ClassVar

from clinex.schemas.base import EntityType, EventImportance, EventType, RelationType
from clinex.schemas.entities import (
    CausalRelationship,
    ExtractedEntity,
    Milestone,
    Timeline,
    TimelineEvent,
)
from clinex.services.vocabulary import IMPROVING_DECREASE

logger = logging.getLogger(__name__)


@dataclass
class TimelineConfig:
    """Causal inference thresholds (empirical defaults, meant to be tuned)."""

    complication_window_days: int = 14
    prompted_window_days: int = 3
    improvement_lookahead_events: int = 5
    may_have_caused_max_confidence: float = 0.85
    may_have_caused_min_confidence: float = 0.5
    prompted_confidence: float = 0.9
    resulted_in_confidence: float = 0.7
    explicit_confidence: float = 0.97


@dataclass
class _PendingEvent:
    """Event under construction before ids are assigned."""

    date: date
    event_type: EventType
    key: str
    entities: list[ExtractedEntity]

    @property
    def position(self) -> int:
        return min(e.position for e in self.entities)


class TimelineBuilder:
    """Builds an ordered, causally linked timeline from dated entities.

    Usage:
        builder = TimelineBuilder()
        timeline = builder.build(entities)
        for event in timeline.events:
            print(event.date, event.event_type.value, event.description)
    """

    EVENT_TYPES: ClassVar[dict[EntityType, EventType]] = {
        EntityType.PROCEDURE: EventType.PROCEDURE,
        EntityType.COMPLICATION: EventType.COMPLICATION,
        EntityType.MEDICATION: EventType.MEDICATION,
        EntityType.IMAGING_FINDING: EventType.IMAGING,
        EntityType.CONSULTATION: EventType.CONSULTATION,
        EntityType.FUNCTIONAL_SCORE: EventType.ASSESSMENT,
        EntityType.DISCHARGE: EventType.DISCHARGE,
    }

    DATE_FIELD_EVENTS: ClassVar[dict[str, EventType]] = {
        "dates.admission": EventType.ADMISSION,
        "dates.discharge": EventType.DISCHARGE,
        "dates.ictus": EventType.MILESTONE,
        "dates.surgery": EventType.MILESTONE,
    }

    IMPORTANCE: ClassVar[dict[EventType, EventImportance]] = {
        EventType.ADMISSION: EventImportance.HIGH,
        EventType.DISCHARGE: EventImportance.HIGH,
        EventType.PROCEDURE: EventImportance.HIGH,
        EventType.COMPLICATION: EventImportance.HIGH,
        EventType.MILESTONE: EventImportance.HIGH,
        EventType.MEDICATION: EventImportance.MEDIUM,
        EventType.IMAGING: EventImportance.MEDIUM,
        EventType.ASSESSMENT: EventImportance.MEDIUM,
        EventType.CONSULTATION: EventImportance.LOW,
    }

    INTERVENTION_TYPES: ClassVar[frozenset[EventType]] = frozenset({
        EventType.PROCEDURE,
        EventType.MEDICATION,
    })

    IMPROVEMENT_VOCABULARY: ClassVar[list[str]] = [
        "improved", "improving", "improvement", "resolved", "resolving", "resolution",
        "better", "recovered", "recovering", "returned to baseline", "back to baseline",
        "weaned", "extubated", "ambulating", "neurologically intact",
    ]

    CAUSAL_LANGUAGE: ClassVar[str] = r"\b(?:secondary\s+to|due\s+to|caused\s+by|complicated\s+by)\b"

    _TYPE_ORDER: ClassVar[dict[EventType, int]] = {t: i for i, t in enumerate(EventType)}

    def __init__(self, config: TimelineConfig | None = None):
        self.config = config or TimelineConfig()
        self._improvement = re.compile(
            r"\b(?:" + "|".join(re.escape(t) for t in self.IMPROVEMENT_VOCABULARY)
            + "|" + IMPROVING_DECREASE + r")\b",
            re.IGNORECASE,
        )
        self._causal = re.compile(self.CAUSAL_LANGUAGE, re.IGNORECASE)

    def build(self, entities: list[ExtractedEntity]) -> Timeline:
        """Build the timeline.

        Args:
            entities: Final entities (after negation filtering)

        Returns:
            Timeline with ordered events, milestones, relationships and metadata
        """
        pending = self._collect(entities)
        pending.sort(key=lambda p: (p.date, p.position, self._TYPE_ORDER[p.event_type], p.key))

        events = [self._to_event(index, p) for index, p in enumerate(pending, start=1)]
        milestones = self._milestones(events)
        terms = {
            event.event_id: {t.lower() for e in p.entities for t in (e.text, str(e.value)) if t}
            for event, p in zip(events, pending)
        }
        relationships = self._relationships(events, terms)

        undated = sum(1 for e in entities if e.resolved_date is None and self._event_type(e) is not None)
        counts = Counter(e.event_type.value for e in events)
        metadata = {
            "total_events": len(events),
            "total_relationships": len(relationships),
            "event_counts": dict(sorted(counts.items())),
            "undated_entities": undated,
            "date_range": (
                {"start": events[0].date.isoformat(), "end": events[-1].date.isoformat()}
                if events else None
            ),
        }
        if events:
            metadata["span_days"] = (events[-1].date - events[0].date).days

        logger.info(
            f"Timeline built: {len(events)} events, {len(relationships)} relationships, "
            f"{len(milestones)} milestones"
        )
        return Timeline(events=events, relationships=relationships, milestones=milestones, metadata=metadata)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _event_type(self, entity: ExtractedEntity) -> EventType | None:
        if entity.entity_type == EntityType.DATE_REFERENCE:
            return self.DATE_FIELD_EVENTS.get(entity.field)
        return self.EVENT_TYPES.get(entity.entity_type)

    def _event_key(self, entity: ExtractedEntity, event_type: EventType) -> str:
        # One admission/discharge event per date regardless of what dated it
        if event_type in (EventType.ADMISSION, EventType.DISCHARGE):
            return event_type.value
        if event_type == EventType.MILESTONE:
            return entity.field.split(".", 1)[1]
        return entity.normalized_value

    def _collect(self, entities: list[ExtractedEntity]) -> list[_PendingEvent]:
        grouped: dict[tuple[date, EventType, str], _PendingEvent] = {}
        for entity in sorted(entities, key=lambda e: (e.position, e.entity_id)):
            if entity.resolved_date is None:
                continue
            event_type = self._event_type(entity)
            if event_type is None:
                continue
            if entity.attributes.get("trajectory") is False:
                # Attribute-only scores (NIHSS) are not timeline readings
                continue
            key = (entity.resolved_date, event_type, self._event_key(entity, event_type))
            if key in grouped:
                grouped[key].entities.append(entity)
            else:
                grouped[key] = _PendingEvent(
                    date=entity.resolved_date, event_type=event_type, key=key[2], entities=[entity]
                )
        return list(grouped.values())

    def _to_event(self, index: int, pending: _PendingEvent) -> TimelineEvent:
        first = pending.entities[0]
        return TimelineEvent(
            event_id=f"evt-{index:03d}",
            date=pending.date,
            event_type=pending.event_type,
            description=self._describe(pending),
            importance=self.IMPORTANCE.get(pending.event_type, EventImportance.MEDIUM),
            entity_ids=[e.entity_id for e in pending.entities],
            position=pending.position,
            context=first.context,
        )

    def _describe(self, pending: _PendingEvent) -> str:
        entity = pending.entities[0]
        event_type = pending.event_type

        if event_type == EventType.ADMISSION:
            return "Admission"
        if event_type == EventType.DISCHARGE:
            disposition = next(
                (e.value for e in pending.entities if e.entity_type == EntityType.DISCHARGE), None
            )
            return f"Discharge ({disposition})" if disposition else "Discharge"
        if event_type == EventType.MILESTONE:
            return {"ictus": "Ictus / symptom onset", "surgery": "Surgery"}.get(pending.key, pending.key)
        if event_type == EventType.MEDICATION:
            dose = entity.attributes.get("dose")
            unit = entity.attributes.get("unit", "")
            return f"{entity.value} {dose} {unit}".strip() if dose is not None else str(entity.value)
        if event_type == EventType.IMAGING:
            modality = entity.attributes.get("modality", "Imaging")
            return f"{modality}: {entity.attributes.get('finding', entity.value)}"
        if event_type == EventType.ASSESSMENT:
            scale = str(entity.attributes.get("scale", "score")).upper()
            return f"{'mRS' if scale == 'MRS' else scale} {entity.value}"
        if event_type == EventType.CONSULTATION:
            return f"{entity.value} consult"
        return str(entity.value)

    def _milestones(self, events: list[TimelineEvent]) -> list[Milestone]:
        """Admission, ictus, primary surgery, first complication, discharge."""

        def first(*types: EventType, key: str | None = None) -> TimelineEvent | None:
            for event in events:
                if event.event_type in types and (key is None or event.description.lower().startswith(key)):
                    return event
            return None

        chosen: list[tuple[str, TimelineEvent | None]] = [
            ("admission", first(EventType.ADMISSION)),
            ("ictus", first(EventType.MILESTONE, key="ictus")),
            ("primary_surgery", first(EventType.PROCEDURE) or first(EventType.MILESTONE, key="surgery")),
            ("first_complication", first(EventType.COMPLICATION)),
            ("discharge", next((e for e in reversed(events) if e.event_type == EventType.DISCHARGE), None)),
        ]

        milestones = []
        for label, event in chosen:
            if event is None:
                continue
            event.is_milestone = True
            milestones.append(Milestone(label=label, event_id=event.event_id, date=event.date))
        return milestones

    # ------------------------------------------------------------------
    # Causal inference
    # ------------------------------------------------------------------

    def _relationships(
        self,
        events: list[TimelineEvent],
        terms: dict[str, set[str]],
    ) -> list[CausalRelationship]:
        config = self.config
        relationships: list[CausalRelationship] = []

        for i, source in enumerate(events):
            for j in range(i + 1, len(events)):
                target = events[j]
                days = (target.date - source.date).days

                if (
                    source.event_type in self.INTERVENTION_TYPES
                    and target.event_type == EventType.COMPLICATION
                    and days <= config.complication_window_days
                ):
                    evidence = self._explicit_evidence(target, terms.get(source.event_id, set()))
                    if evidence is not None:
                        relationships.append(CausalRelationship(
                            source_event_id=source.event_id,
                            target_event_id=target.event_id,
                            relation_type=RelationType.MAY_HAVE_CAUSED,
                            confidence=config.explicit_confidence,
                            days_between=days,
                            explicit=True,
                            evidence=evidence,
                        ))
                    else:
                        relationships.append(CausalRelationship(
                            source_event_id=source.event_id,
                            target_event_id=target.event_id,
                            relation_type=RelationType.MAY_HAVE_CAUSED,
                            confidence=self._decayed_confidence(days),
                            days_between=days,
                        ))

                elif (
                    source.event_type == EventType.COMPLICATION
                    and target.event_type in self.INTERVENTION_TYPES
                    and days <= config.prompted_window_days
                ):
                    relationships.append(CausalRelationship(
                        source_event_id=source.event_id,
                        target_event_id=target.event_id,
                        relation_type=RelationType.PROMPTED,
                        confidence=config.prompted_confidence,
                        days_between=days,
                    ))

            if source.event_type in self.INTERVENTION_TYPES:
                outcome = self._improvement_after(events, i)
                if outcome is not None:
                    relationships.append(CausalRelationship(
                        source_event_id=source.event_id,
                        target_event_id=outcome.event_id,
                        relation_type=RelationType.RESULTED_IN,
                        confidence=config.resulted_in_confidence,
                        days_between=(outcome.date - source.date).days,
                        evidence=outcome.context,
                    ))

        return relationships

    def _decayed_confidence(self, days: int) -> float:
        config = self.config
        span = config.may_have_caused_max_confidence - config.may_have_caused_min_confidence
        fraction = min(1.0, days / config.complication_window_days) if config.complication_window_days else 1.0
        return round(config.may_have_caused_max_confidence - span * fraction, 4)

    def _explicit_evidence(self, complication: TimelineEvent, intervention_terms: set[str]) -> str | None:
        """The complication's sentence if it names the intervention as the cause.

        "X secondary to Y" puts the cause after the phrase and "Y complicated
        by X" before it, so "EVD placed due to hydrocephalus" is not evidence
        that the EVD caused the hydrocephalus.
        """
        context = complication.context or ""
        for match in self._causal.finditer(context):
            if match.group().lower().startswith("complicated"):
                cause_side = context[:match.start()]
            else:
                cause_side = context[match.end():]
            cause_side = cause_side.lower()
            if any(term in cause_side for term in intervention_terms):
                return context
        return None

    def _improvement_after(self, events: list[TimelineEvent], index: int) -> TimelineEvent | None:
        lookahead = events[index + 1:index + 1 + self.config.improvement_lookahead_events]
        for event in lookahead:
            if event.context and self._improvement.search(event.context):
                return event
        return None


# ============================================================================
# Singleton
# ============================================================================


_builder_instance: TimelineBuilder | None = None
_builder_lock = threading.Lock()


def get_timeline_builder() -> TimelineBuilder:
    """Get or create the singleton timeline builder."""
    global _builder_instance

    if _builder_instance is None:
        with _builder_lock:
            if _builder_instance is None:
                _builder_instance = TimelineBuilder()

    return _builder_instance


def reset_timeline_builder() -> None:
    """Reset the singleton instance."""
    global _builder_instance
    with _builder_lock:
        _builder_instance = None
