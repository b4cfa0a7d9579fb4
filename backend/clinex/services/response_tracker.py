"""Intervention-outcome pairing over the timeline.

For every intervention event (procedure or medication) the tracker scans
forward through a bounded time window (7 days for medications, 30 for
procedures) for the first later event whose sentence carries outcome
language, and classifies it as excellent, good, partial or poor.

Prophylactic medications are also judged by absence: nimodipine with no
documented vasospasm, or levetiracetam/phenytoin with no documented
seizure, is a ``good`` response; the target complication documented
anyway makes it ``poor``.

Read-only over the timeline and entities.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import ClassVar

from clinex.schemas.base import EntityType, EventType, ResponseQuality
from clinex.schemas.entities import ExtractedEntity, Timeline, TimelineEvent, TreatmentResponse
from clinex.services.vocabulary import IMPROVING_DECREASE

logger = logging.getLogger(__name__)


@dataclass
class ResponseTrackerConfig:
    """Response windows and confidences."""

    medication_window_days: int = 7
    procedure_window_days: int = 30
    outcome_confidence: float = 0.7
    prophylaxis_confidence: float = 0.8
    max_outcome_chars: int = 200


class ResponseTracker:
    """Pairs interventions with discovered outcomes.

    Usage:
        tracker = ResponseTracker()
        responses = tracker.track(timeline, entities)
        for response in responses:
            print(response.intervention, response.response_quality.value)
    """

    # Checked in order; the first matching quality wins
    RESPONSE_VOCABULARY: ClassVar[list[tuple[ResponseQuality, list[str]]]] = [
        (ResponseQuality.PARTIAL, [
            r"partial(?:ly)?\s+(?:improved|improvement|resolved|resolution|response)",
            r"(?:some|slight|mild|modest)\s+improvement",
            r"slightly\s+improved",
            r"improving\s+but",
        ]),
        (ResponseQuality.POOR, [
            r"no\s+(?:significant\s+)?improvement",
            r"not\s+improv\w*",
            r"worsen\w*",
            r"deteriorat\w*",
            r"refractory",
            r"failed",
            r"unresolved",
            r"persistent",
        ]),
        (ResponseQuality.EXCELLENT, [
            r"complete(?:ly)?\s+(?:resolved|resolution|recovery)",
            r"fully\s+resolved",
            r"resolved",
            r"resolution",
            r"(?:returned|back)\s+to\s+baseline",
            r"neurologically\s+intact",
        ]),
        (ResponseQuality.GOOD, [
            r"improv\w*",
            r"better",
            IMPROVING_DECREASE,
            r"weaned",
            r"extubated",
            r"recover\w*",
        ]),
    ]

    # Prophylactic medication -> complication it prevents
    PROPHYLAXIS: ClassVar[dict[str, str]] = {
        "nimodipine": "vasospasm",
        "levetiracetam": "seizure",
        "phenytoin": "seizure",
    }

    COMPLETENESS_POINTS: ClassVar[dict[ResponseQuality, int]] = {
        ResponseQuality.EXCELLENT: 25,
        ResponseQuality.GOOD: 20,
        ResponseQuality.PARTIAL: 12,
        ResponseQuality.POOR: 0,
        ResponseQuality.UNKNOWN: 5,
    }

    def __init__(self, config: ResponseTrackerConfig | None = None):
        self.config = config or ResponseTrackerConfig()
        self._vocabulary = [
            (quality, re.compile(r"\b(?:" + "|".join(patterns) + r")\b", re.IGNORECASE))
            for quality, patterns in self.RESPONSE_VOCABULARY
        ]

    def classify(self, text: str) -> ResponseQuality | None:
        """Response quality expressed by a sentence, if any."""
        for quality, pattern in self._vocabulary:
            if pattern.search(text):
                return quality
        return None

    def track(self, timeline: Timeline, entities: list[ExtractedEntity]) -> list[TreatmentResponse]:
        """Find treatment responses.

        Args:
            timeline: Built timeline (not modified)
            entities: Final entities, used for prophylaxis checks

        Returns:
            Responses in intervention order
        """
        responses: list[TreatmentResponse] = []
        events = timeline.events

        for index, event in enumerate(events):
            if event.event_type not in (EventType.MEDICATION, EventType.PROCEDURE):
                continue
            response = self._outcome_for(events, index)
            if response is not None:
                responses.append(response)

        responses.extend(self._prophylaxis(timeline, entities))
        logger.info(f"Tracked {len(responses)} treatment responses")
        return responses

    def _outcome_for(self, events: list[TimelineEvent], index: int) -> TreatmentResponse | None:
        intervention = events[index]
        is_medication = intervention.event_type == EventType.MEDICATION
        window = self.config.medication_window_days if is_medication else self.config.procedure_window_days

        complications_in_window = 0
        outcome: TimelineEvent | None = None
        quality: ResponseQuality | None = None
        for candidate in events[index + 1:]:
            days = (candidate.date - intervention.date).days
            if days > window:
                break
            if candidate.event_type == EventType.COMPLICATION:
                complications_in_window += 1
            if outcome is None and candidate.context and candidate.context != intervention.context:
                quality = self.classify(candidate.context)
                if quality is not None:
                    outcome = candidate

        if outcome is None or quality is None:
            return None

        days = (outcome.date - intervention.date).days
        return TreatmentResponse(
            intervention=intervention.description,
            intervention_category="medication" if is_medication else "procedure",
            intervention_event_id=intervention.event_id,
            outcome_event_id=outcome.event_id,
            outcome_description=outcome.context[: self.config.max_outcome_chars],
            response_quality=quality,
            time_to_response_days=days,
            effectiveness=self.effectiveness(quality, days, complications_in_window),
            confidence=self.config.outcome_confidence,
        )

    def _prophylaxis(self, timeline: Timeline, entities: list[ExtractedEntity]) -> list[TreatmentResponse]:
        documented = {
            e.normalized_value for e in entities if e.entity_type == EntityType.COMPLICATION
        }
        event_for_entity = {
            entity_id: event.event_id for event in timeline.events for entity_id in event.entity_ids
        }

        responses = []
        seen: set[str] = set()
        for entity in sorted(entities, key=lambda e: e.position):
            if entity.entity_type != EntityType.MEDICATION:
                continue
            target = self.PROPHYLAXIS.get(entity.normalized_value)
            if target is None or entity.normalized_value in seen:
                continue
            seen.add(entity.normalized_value)

            occurred = target in documented
            quality = ResponseQuality.POOR if occurred else ResponseQuality.GOOD
            description = (
                f"{target} documented despite {entity.value}" if occurred else f"no {target} documented"
            )
            responses.append(TreatmentResponse(
                intervention=str(entity.value),
                intervention_category="medication",
                intervention_event_id=event_for_entity.get(entity.entity_id),
                outcome_description=description,
                response_quality=quality,
                time_to_response_days=None,
                effectiveness=self.effectiveness(quality, None, 0),
                confidence=self.config.prophylaxis_confidence,
            ))
        return responses

    def effectiveness(self, quality: ResponseQuality, days: int | None, complications: int) -> int:
        """0-100 from speed, completeness, durability and side-effect components."""
        if days is None:
            speed = 10
        elif days <= 1:
            speed = 25
        elif days <= 3:
            speed = 20
        else:
            speed = 15
        completeness = self.COMPLETENESS_POINTS[quality]
        durability = 10 if quality in (ResponseQuality.POOR, ResponseQuality.PARTIAL) else 20
        side_effects = max(0, 25 - 5 * complications)
        return max(0, min(100, speed + completeness + durability + side_effects))


# ============================================================================
# Singleton
# ============================================================================


_tracker_instance: ResponseTracker | None = None
_tracker_lock = threading.Lock()


def get_response_tracker() -> ResponseTracker:
    """Get or create the singleton response tracker."""
    global _tracker_instance

    if _tracker_instance is None:
        with _tracker_lock:
            if _tracker_instance is None:
                _tracker_instance = ResponseTracker()

    return _tracker_instance


def reset_response_tracker() -> None:
    """Reset the singleton instance."""
    global _tracker_instance
    with _tracker_lock:
        _tracker_instance = None
