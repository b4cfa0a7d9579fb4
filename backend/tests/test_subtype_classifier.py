"""Tests for pathology subtype and grade classification."""

import pytest

from clinex.schemas.base import EntityType, PathologyType
from clinex.services.pattern_extractor import PatternExtractor
from clinex.services.subtype_classifier import SubtypeClassifier, get_subtype_classifier


@pytest.fixture
def classifier():
    """Create a fresh classifier for each test."""
    return SubtypeClassifier()


def summary(assignments):
    return [(a.category, a.value) for a in assignments]


class TestSAHGrades:
    """Tests for SAH grading scales."""

    def test_hunt_hess_and_fisher(self, classifier):
        assignments = classifier.classify("Hunt-Hess grade 3, Fisher 3", PathologyType.SAH)
        assert summary(assignments) == [("HUNTHESS", 3), ("FISHER", 3)]
        assert assignments[0].confidence == 0.90
        assert assignments[0].text == "Hunt-Hess grade 3"

    def test_roman_numeral_grade(self, classifier):
        assignments = classifier.classify("Hunt and Hess grade III on arrival", PathologyType.SAH)
        assert summary(assignments) == [("HUNTHESS", 3)]

    def test_out_of_range_grade_ignored(self, classifier):
        assert classifier.classify("Hunt-Hess grade 6", PathologyType.SAH) == []

    def test_modified_fisher_not_counted_as_fisher(self, classifier):
        assignments = classifier.classify("Modified Fisher 4 on CT.", PathologyType.SAH)
        assert summary(assignments) == [("MODIFIED_FISHER", 4)]

    def test_first_mention_wins(self, classifier):
        text = "WFNS 2 on arrival. WFNS 4 after rebleed."
        assert summary(classifier.classify(text, PathologyType.SAH)) == [("WFNS", 2)]

    def test_aneurysm_location(self, classifier):
        text = "Ruptured anterior communicating artery aneurysm."
        (location,) = classifier.classify(text, PathologyType.SAH)
        assert location.category == "ANEURYSM_LOCATION"
        assert location.value == "ANTERIOR COMMUNICATING"
        assert location.confidence == 0.80


class TestOtherPathologies:
    """Tests for non-SAH profiles."""

    def test_glioblastoma_markers(self, classifier):
        text = "Glioblastoma, WHO grade IV, IDH wild-type, MGMT methylated."
        assert summary(classifier.classify(text, PathologyType.GLIOBLASTOMA)) == [
            ("WHO_GRADE", 4),
            ("IDH", "wild type"),
            ("MGMT", "methylated"),
        ]

    def test_no_match(self, classifier):
        assert classifier.classify("Stable overnight.", PathologyType.SDH) == []


class TestApply:
    """Tests for attaching subtypes to pathology entities."""

    def test_primary_subtype_attached(self, classifier):
        text = "Subarachnoid hemorrhage, Hunt-Hess grade 3, Fisher 3."
        entities = PatternExtractor().extract(text).entities

        classifier.apply(text, entities)

        (sah,) = [e for e in entities if e.entity_type == EntityType.PATHOLOGY]
        assert sah.subtype.category == "HUNTHESS"
        assert sah.subtype.value == 3
        assert [s.category for s in sah.subtypes] == ["HUNTHESS", "FISHER"]

    def test_non_pathology_entities_untouched(self, classifier):
        text = "Started nimodipine. Hunt-Hess grade 3."
        entities = PatternExtractor().extract(text).entities
        classifier.apply(text, entities)
        nimodipine = next(e for e in entities if e.normalized_value == "nimodipine")
        assert nimodipine.subtype is None

    def test_singleton(self):
        assert get_subtype_classifier() is get_subtype_classifier()
