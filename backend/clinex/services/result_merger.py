"""Per-field fusion of pattern and LLM extraction results.

Fusion behavior is driven by an explicit table mapping each field name to
a strategy:

- HIGHEST_CONFIDENCE: single-valued fields (age, sex, key dates,
  disposition). One value is kept; every disagreeing value is retained on
  the winner as an ``AlternativeValue`` so conflicts stay visible.
- UNION: multi-valued fields (procedures, medications, scores, ...).
  Entities are matched by normalized value; each pattern entity pairs
  with at most one LLM entity of the same value, and unmatched entities
  from either side pass through.

Whenever both sources agree on a value the fused entity becomes
``source_method=merged`` with confidence never below either input.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

from clinex.schemas.base import EntityType, SourceMethod
from clinex.schemas.entities import AlternativeValue, ExtractedEntity

logger = logging.getLogger(__name__)


class FusionStrategy(str, Enum):
    """How values for one field are fused."""

    HIGHEST_CONFIDENCE = "highest_confidence"
    UNION = "union"


FUSION_TABLE: dict[str, FusionStrategy] = {
    "demographics.age": FusionStrategy.HIGHEST_CONFIDENCE,
    "demographics.sex": FusionStrategy.HIGHEST_CONFIDENCE,
    "dates.admission": FusionStrategy.HIGHEST_CONFIDENCE,
    "dates.ictus": FusionStrategy.HIGHEST_CONFIDENCE,
    "dates.surgery": FusionStrategy.HIGHEST_CONFIDENCE,
    "dates.discharge": FusionStrategy.HIGHEST_CONFIDENCE,
    "discharge.disposition": FusionStrategy.HIGHEST_CONFIDENCE,
    "pathology": FusionStrategy.UNION,
    "procedures": FusionStrategy.UNION,
    "complications": FusionStrategy.UNION,
    "medications": FusionStrategy.UNION,
    "functional_scores": FusionStrategy.UNION,
    "imaging": FusionStrategy.UNION,
    "consultations": FusionStrategy.UNION,
}

# Tie-break preference when two candidates have equal confidence
_SOURCE_PRIORITY = {SourceMethod.MERGED: 0, SourceMethod.PATTERN: 1, SourceMethod.LLM: 2}
_TYPE_ORDER = {t: i for i, t in enumerate(EntityType)}


def strategy_for(field_name: str) -> FusionStrategy:
    """Fusion strategy for a field; unknown fields are unioned."""
    return FUSION_TABLE.get(field_name, FusionStrategy.UNION)


@dataclass
class MergerConfig:
    """Configuration for source fusion."""

    # Agreement raises confidence by this much, up to the cap
    agreement_boost: float = 0.05
    agreement_cap: float = 0.95


class ResultMerger:
    """Fuses pattern and LLM entity lists field by field.

    Usage:
        merger = ResultMerger()
        entities = merger.merge(pattern_entities, llm_entities)
        conflicts = [e for e in entities if e.has_conflict]
    """

    def __init__(self, config: MergerConfig | None = None):
        self.config = config or MergerConfig()

    def merge(
        self,
        pattern_entities: list[ExtractedEntity],
        llm_entities: list[ExtractedEntity],
    ) -> list[ExtractedEntity]:
        """Fuse two entity lists.

        Inputs are not mutated; fused entities are copies.

        Args:
            pattern_entities: Entities from the pattern extractor
            llm_entities: Entities from the external extractor (may be empty)

        Returns:
            Fused entities in document order
        """
        by_field: dict[str, tuple[list[ExtractedEntity], list[ExtractedEntity]]] = defaultdict(
            lambda: ([], [])
        )
        for entity in pattern_entities:
            by_field[entity.field][0].append(entity)
        for entity in llm_entities:
            by_field[entity.field][1].append(entity)

        merged: list[ExtractedEntity] = []
        for field_name in sorted(by_field):
            pattern_group, llm_group = by_field[field_name]
            if strategy_for(field_name) == FusionStrategy.HIGHEST_CONFIDENCE:
                merged.extend(self._fuse_single_valued(pattern_group, llm_group))
            else:
                merged.extend(self._fuse_union(pattern_group, llm_group))

        merged.sort(key=lambda e: (e.position, _TYPE_ORDER[e.entity_type], e.field, e.normalized_value))

        conflicts = sum(1 for e in merged if e.has_conflict)
        both = sum(1 for e in merged if e.source_method == SourceMethod.MERGED)
        logger.info(
            f"Merged {len(pattern_entities)} pattern + {len(llm_entities)} llm entities "
            f"into {len(merged)} ({both} agreed, {conflicts} conflicts)"
        )
        return merged

    def agreement_confidence(self, first: float, second: float) -> float:
        """Confidence for a value both sources produced; never below either."""
        highest = max(first, second)
        return max(highest, min(self.config.agreement_cap, highest + self.config.agreement_boost))

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _fuse_single_valued(
        self,
        pattern_group: list[ExtractedEntity],
        llm_group: list[ExtractedEntity],
    ) -> list[ExtractedEntity]:
        """Keep the best value, retaining the rest as alternatives."""
        candidates = self._fuse_union(pattern_group, llm_group)
        if not candidates:
            return []

        candidates.sort(
            key=lambda e: (-e.confidence, _SOURCE_PRIORITY[e.source_method], e.position)
        )
        winner, losers = candidates[0], candidates[1:]
        for loser in losers:
            winner.alternatives.append(AlternativeValue(
                value=loser.value,
                source_method=loser.source_method,
                confidence=loser.confidence,
            ))
        if losers:
            logger.debug(
                f"Conflict on {winner.field}: kept {winner.value!r}, "
                f"retained {[a.value for a in winner.alternatives]!r}"
            )
        return [winner]

    def _fuse_union(
        self,
        pattern_group: list[ExtractedEntity],
        llm_group: list[ExtractedEntity],
    ) -> list[ExtractedEntity]:
        """Pair equal values one-to-one; pass the rest through."""
        llm_by_value: dict[str, list[ExtractedEntity]] = defaultdict(list)
        for entity in sorted(llm_group, key=lambda e: e.position):
            llm_by_value[entity.normalized_value].append(entity)

        fused: list[ExtractedEntity] = []
        for entity in sorted(pattern_group, key=lambda e: e.position):
            partners = llm_by_value.get(entity.normalized_value)
            if partners:
                fused.append(self._fuse_pair(entity, partners.pop(0)))
            else:
                fused.append(entity.model_copy(deep=True))

        for remaining in llm_by_value.values():
            fused.extend(e.model_copy(deep=True) for e in remaining)
        return fused

    def _fuse_pair(self, primary: ExtractedEntity, secondary: ExtractedEntity) -> ExtractedEntity:
        """Combine two agreeing entities; the pattern entity's span and id win."""
        fused = primary.model_copy(deep=True)
        fused.source_method = SourceMethod.MERGED
        fused.confidence = self.agreement_confidence(primary.confidence, secondary.confidence)
        fused.mention_spans = sorted(set(primary.mention_spans) | set(secondary.mention_spans))

        if fused.source_span is None and secondary.source_span is not None:
            fused.source_span = secondary.source_span
            fused.text = secondary.text
            fused.context = secondary.context
        if fused.resolved_date is None and secondary.resolved_date is not None:
            fused.resolved_date = secondary.resolved_date
            fused.date_source = secondary.date_source

        for key, value in secondary.attributes.items():
            fused.attributes.setdefault(key, value)
        fused.attributes["merged_from"] = [primary.entity_id, secondary.entity_id]
        return fused


# ============================================================================
# Singleton
# ============================================================================


_merger_instance: ResultMerger | None = None
_merger_lock = threading.Lock()


def get_result_merger() -> ResultMerger:
    """Get or create the singleton result merger."""
    global _merger_instance

    if _merger_instance is None:
        with _merger_lock:
            if _merger_instance is None:
                _merger_instance = ResultMerger()

    return _merger_instance


def reset_result_merger() -> None:
    """Reset the singleton instance."""
    global _merger_instance
    with _merger_lock:
        _merger_instance = None
