"""Tests for per-field fusion of pattern and LLM results."""

import pytest

from clinex.schemas.base import EntityType, SourceMethod
from clinex.schemas.entities import ExtractedEntity
from clinex.services.result_merger import (
    FusionStrategy,
    MergerConfig,
    ResultMerger,
    get_result_merger,
    strategy_for,
)


@pytest.fixture
def merger():
    """Create a merger with default settings."""
    return ResultMerger()


def create_entity(
    entity_id: str,
    field: str,
    value,
    source: SourceMethod,
    confidence: float,
    start: int,
    entity_type: EntityType | None = None,
    normalized: str | None = None,
) -> ExtractedEntity:
    """Helper to create an entity with a one-mention span."""
    if entity_type is None:
        entity_type = {
            "demographics.age": EntityType.DEMOGRAPHIC,
            "demographics.sex": EntityType.DEMOGRAPHIC,
            "medications": EntityType.MEDICATION,
            "functional_scores": EntityType.FUNCTIONAL_SCORE,
        }[field]
    return ExtractedEntity(
        entity_id=entity_id,
        entity_type=entity_type,
        field=field,
        value=value,
        normalized_value=normalized or str(value).lower(),
        text=str(value),
        source_method=source,
        confidence=confidence,
        source_span=(start, start + 5),
        mention_spans=[(start, start + 5)],
    )


# ==============================================================================
# Strategy table
# ==============================================================================


class TestStrategyTable:
    """Tests for the field to strategy table."""

    def test_single_valued_fields(self):
        assert strategy_for("demographics.age") == FusionStrategy.HIGHEST_CONFIDENCE
        assert strategy_for("dates.discharge") == FusionStrategy.HIGHEST_CONFIDENCE
        assert strategy_for("discharge.disposition") == FusionStrategy.HIGHEST_CONFIDENCE

    def test_multi_valued_fields(self):
        assert strategy_for("medications") == FusionStrategy.UNION
        assert strategy_for("functional_scores") == FusionStrategy.UNION

    def test_unknown_field_unioned(self):
        assert strategy_for("something.new") == FusionStrategy.UNION


# ==============================================================================
# Single-valued fields
# ==============================================================================


class TestHighestConfidence:
    """Tests for single-valued fusion with retained alternatives."""

    def test_agreement_becomes_merged(self, merger):
        pattern = create_entity("pat-0001", "demographics.age", 55, SourceMethod.PATTERN, 0.85, 0)
        llm = create_entity("llm-0001", "demographics.age", 55, SourceMethod.LLM, 0.8, 40)

        (age,) = merger.merge([pattern], [llm])

        assert age.source_method == SourceMethod.MERGED
        assert age.confidence == pytest.approx(0.9)
        assert age.entity_id == "pat-0001"
        assert age.mention_spans == [(0, 5), (40, 45)]
        assert age.attributes["merged_from"] == ["pat-0001", "llm-0001"]
        assert not age.has_conflict

    def test_agreement_boost_capped(self, merger):
        pattern = create_entity("pat-0001", "demographics.age", 55, SourceMethod.PATTERN, 0.95, 0)
        llm = create_entity("llm-0001", "demographics.age", 55, SourceMethod.LLM, 0.9, 0)
        (age,) = merger.merge([pattern], [llm])
        assert age.confidence == pytest.approx(0.95)

    def test_agreement_never_lowers_confidence(self):
        merger = ResultMerger(MergerConfig(agreement_boost=0.05, agreement_cap=0.95))
        assert merger.agreement_confidence(0.98, 0.7) == 0.98

    def test_conflict_keeps_alternative(self, merger):
        pattern = create_entity("pat-0001", "demographics.age", 55, SourceMethod.PATTERN, 0.95, 0)
        llm = create_entity("llm-0001", "demographics.age", 56, SourceMethod.LLM, 0.7, 0)

        (age,) = merger.merge([pattern], [llm])

        assert age.value == 55
        assert age.source_method == SourceMethod.PATTERN
        assert age.has_conflict
        assert [(a.value, a.source_method, a.confidence) for a in age.alternatives] == [
            (56, SourceMethod.LLM, 0.7)
        ]

    def test_llm_wins_with_higher_confidence(self, merger):
        pattern = create_entity("pat-0001", "demographics.sex", "female", SourceMethod.PATTERN, 0.5, 10)
        llm = create_entity("llm-0001", "demographics.sex", "male", SourceMethod.LLM, 0.8, 0)

        (sex,) = merger.merge([pattern], [llm])

        assert sex.value == "male"
        assert sex.alternatives[0].value == "female"

    def test_tie_prefers_pattern(self, merger):
        pattern = create_entity("pat-0001", "demographics.age", 55, SourceMethod.PATTERN, 0.8, 10)
        llm = create_entity("llm-0001", "demographics.age", 65, SourceMethod.LLM, 0.8, 0)
        (age,) = merger.merge([pattern], [llm])
        assert age.value == 55


# ==============================================================================
# Multi-valued fields
# ==============================================================================


class TestUnion:
    """Tests for one-to-one pairing of multi-valued fields."""

    def test_matched_and_unmatched(self, merger):
        pattern = [create_entity("pat-0001", "medications", "nimodipine", SourceMethod.PATTERN, 0.85, 0)]
        llm = [
            create_entity("llm-0001", "medications", "nimodipine", SourceMethod.LLM, 0.9, 0),
            create_entity("llm-0002", "medications", "levetiracetam", SourceMethod.LLM, 0.9, 50),
        ]

        merged = merger.merge(pattern, llm)

        assert [(e.normalized_value, e.source_method) for e in merged] == [
            ("nimodipine", SourceMethod.MERGED),
            ("levetiracetam", SourceMethod.LLM),
        ]
        assert merged[0].confidence >= 0.9

    def test_repeated_readings_pair_one_to_one(self, merger):
        pattern = [
            create_entity("pat-0001", "functional_scores", 13, SourceMethod.PATTERN, 0.85, 0, normalized="gcs:13"),
            create_entity("pat-0002", "functional_scores", 13, SourceMethod.PATTERN, 0.85, 30, normalized="gcs:13"),
        ]
        llm = [create_entity("llm-0001", "functional_scores", 13, SourceMethod.LLM, 0.9, 0, normalized="gcs:13")]

        merged = merger.merge(pattern, llm)

        assert [e.source_method for e in merged] == [SourceMethod.MERGED, SourceMethod.PATTERN]
        assert merged[0].attributes["merged_from"] == ["pat-0001", "llm-0001"]

    def test_llm_only(self, merger):
        llm = [create_entity("llm-0001", "medications", "nimodipine", SourceMethod.LLM, 0.9, 0)]
        (entity,) = merger.merge([], llm)
        assert entity.source_method == SourceMethod.LLM

    def test_pattern_only_copies(self, merger):
        pattern = [create_entity("pat-0001", "medications", "nimodipine", SourceMethod.PATTERN, 0.85, 0)]
        merged = merger.merge(pattern, [])
        assert merged[0] == pattern[0]
        assert merged[0] is not pattern[0]


# ==============================================================================
# General properties
# ==============================================================================


class TestMergeProperties:
    """Tests for ordering, immutability and the singleton."""

    def test_inputs_not_mutated(self, merger):
        pattern = create_entity("pat-0001", "demographics.age", 55, SourceMethod.PATTERN, 0.95, 0)
        llm = create_entity("llm-0001", "demographics.age", 56, SourceMethod.LLM, 0.7, 0)
        before = (pattern.model_dump(), llm.model_dump())

        merger.merge([pattern], [llm])

        assert (pattern.model_dump(), llm.model_dump()) == before

    def test_document_order(self, merger):
        pattern = [
            create_entity("pat-0001", "medications", "nimodipine", SourceMethod.PATTERN, 0.85, 80),
            create_entity("pat-0002", "demographics.age", 55, SourceMethod.PATTERN, 0.95, 0),
        ]
        merged = merger.merge(pattern, [])
        assert [e.position for e in merged] == [0, 80]

    def test_singleton(self):
        assert get_result_merger() is get_result_merger()
