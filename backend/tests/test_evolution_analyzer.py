"""Tests for the functional-status trajectory."""

from datetime import date

import pytest

from clinex.schemas.base import (
    ChangeRate,
    EntityType,
    ScoreScale,
    SourceMethod,
    TrajectoryLabel,
    TrendPattern,
)
from clinex.schemas.entities import ExtractedEntity, Milestone, SubtypeAssignment, Timeline
from clinex.services.evolution_analyzer import (
    EvolutionAnalyzer,
    get_evolution_analyzer,
    normalize_score,
)


def create_score(entity_id, scale, value, resolved=None, start=0, **attributes):
    """Helper to create a functional score entity."""
    return ExtractedEntity(
        entity_id=entity_id,
        entity_type=EntityType.FUNCTIONAL_SCORE,
        field="functional_scores",
        value=value,
        normalized_value=f"{scale}:{value}",
        source_method=SourceMethod.PATTERN,
        confidence=0.85,
        source_span=(start, start + 5),
        resolved_date=resolved,
        attributes={"scale": scale, **attributes},
    )


def create_pathology(grade, category="HUNTHESS"):
    """Helper to create a graded SAH pathology entity."""
    return ExtractedEntity(
        entity_id="pat-0100",
        entity_type=EntityType.PATHOLOGY,
        field="pathology",
        value="SAH",
        normalized_value="sah",
        source_method=SourceMethod.PATTERN,
        confidence=0.9,
        subtypes=[SubtypeAssignment(category=category, value=grade)],
    )


def gcs_series(*values):
    """GCS readings two days apart from 2025-01-14."""
    return [
        create_score(f"pat-{i + 1:04d}", "gcs", value, date(2025, 1, 14 + 2 * i), 50 * i)
        for i, value in enumerate(values)
    ]


@pytest.fixture
def analyzer():
    """Create an analyzer with default thresholds."""
    return EvolutionAnalyzer()


class TestNormalization:
    """Tests for the common 0-1 scale."""

    @pytest.mark.parametrize(
        "scale,value,expected",
        [
            (ScoreScale.GCS, 3, 0.0),
            (ScoreScale.GCS, 15, 1.0),
            (ScoreScale.KPS, 70, 0.7),
            (ScoreScale.ECOG, 1, 0.8),
            (ScoreScale.MRS, 6, 0.0),
            (ScoreScale.MRS, 2, 0.6667),
        ],
    )
    def test_normalize_score(self, scale, value, expected):
        assert normalize_score(scale, value) == expected


class TestTrajectory:
    """Tests for change detection and the trajectory label."""

    def test_improving(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 13, date(2025, 1, 14), 0),
            create_score("pat-0002", "gcs", 15, date(2025, 1, 20), 50),
        ])

        assert trajectory.label == TrajectoryLabel.IMPROVING
        assert trajectory.net_change == pytest.approx(0.1667)
        (change,) = trajectory.changes
        assert change.direction == "improvement"
        assert change.significance == "moderate"
        assert change.significant

    def test_declining(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "mrs", 1, date(2025, 1, 14), 0),
            create_score("pat-0002", "mrs", 4, date(2025, 1, 20), 50),
        ])
        assert trajectory.label == TrajectoryLabel.DECLINING
        assert trajectory.changes[0].significance == "major"

    def test_fluctuating(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 15, date(2025, 1, 14), 0),
            create_score("pat-0002", "gcs", 9, date(2025, 1, 16), 50),
            create_score("pat-0003", "gcs", 15, date(2025, 1, 20), 100),
        ])
        assert trajectory.label == TrajectoryLabel.FLUCTUATING

    def test_stable(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 14, date(2025, 1, 14), 0),
            create_score("pat-0002", "gcs", 14, date(2025, 1, 20), 50),
        ])
        assert trajectory.label == TrajectoryLabel.STABLE
        assert trajectory.changes[0].direction == "unchanged"
        assert trajectory.changes[0].significance == "minimal"

    def test_insufficient_data(self, analyzer):
        trajectory = analyzer.analyze([create_score("pat-0001", "gcs", 14, date(2025, 1, 14))])
        assert trajectory.label == TrajectoryLabel.INSUFFICIENT_DATA
        assert trajectory.net_change is None
        assert trajectory.changes == []


class TestOrdering:
    """Tests for reading order and filtering."""

    def test_undated_readings_sort_last(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 10, None, 0),
            create_score("pat-0002", "gcs", 15, date(2025, 1, 14), 100),
        ])

        assert [p.raw_value for p in trajectory.points] == [15, 10]
        assert trajectory.points[1].recorded_on is None
        assert trajectory.label == TrajectoryLabel.DECLINING

    def test_attribute_only_scores_skipped(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "nihss", 4, date(2025, 1, 14), 0, trajectory=False),
            create_score("pat-0002", "gcs", 14, date(2025, 1, 14), 50),
        ])
        assert [p.entity_id for p in trajectory.points] == ["pat-0002"]

    def test_latest_by_scale(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 13, date(2025, 1, 14), 0),
            create_score("pat-0002", "mrs", 3, date(2025, 1, 18), 50),
            create_score("pat-0003", "gcs", 15, date(2025, 1, 20), 100),
            create_score("pat-0004", "mrs", 2, date(2025, 1, 24), 150),
        ])
        assert trajectory.latest_by_scale == {"gcs": 15, "mrs": 2}

    def test_no_scores(self, analyzer):
        trajectory = analyzer.analyze([])
        assert trajectory.points == []
        assert trajectory.label == TrajectoryLabel.INSUFFICIENT_DATA

    def test_singleton(self):
        assert get_evolution_analyzer() is get_evolution_analyzer()


# ==============================================================================
# Per-scale comparison
# ==============================================================================


class TestPerScale:
    """Tests for comparing readings only within their own scale."""

    def test_mixed_scales_compared_within_scale(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 15, date(2025, 1, 14), 0),
            create_score("pat-0002", "mrs", 2, date(2025, 1, 14), 50),
            create_score("pat-0003", "gcs", 15, date(2025, 1, 17), 100),
            create_score("pat-0004", "mrs", 1, date(2025, 1, 17), 150),
        ])

        assert trajectory.label == TrajectoryLabel.IMPROVING
        assert [(c.from_index, c.to_index, c.scale) for c in trajectory.changes] == [
            (0, 2, ScoreScale.GCS),
            (1, 3, ScoreScale.MRS),
        ]
        assert not any(c.cross_scale for c in trajectory.changes)
        assert trajectory.net_change_by_scale == {"gcs": 0.0, "mrs": pytest.approx(0.1666)}
        assert trajectory.primary_scale == ScoreScale.MRS
        assert trajectory.net_change == pytest.approx(0.1666)

    def test_scales_disagree(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 13, date(2025, 1, 14), 0),
            create_score("pat-0002", "mrs", 1, date(2025, 1, 14), 50),
            create_score("pat-0003", "gcs", 15, date(2025, 1, 20), 100),
            create_score("pat-0004", "mrs", 4, date(2025, 1, 20), 150),
        ])
        assert trajectory.label == TrajectoryLabel.FLUCTUATING
        assert trajectory.primary_scale == ScoreScale.MRS

    def test_cross_scale_fallback(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 9, date(2025, 1, 14), 0),
            create_score("pat-0002", "mrs", 1, date(2025, 1, 20), 50),
        ])

        (change,) = trajectory.changes
        assert change.cross_scale
        assert change.scale is None
        assert trajectory.primary_scale is None
        assert trajectory.net_change_by_scale == {}
        assert trajectory.label == TrajectoryLabel.IMPROVING


# ==============================================================================
# Trend, rate and milestones
# ==============================================================================


class TestTrend:
    """Tests for the shape and speed of the series."""

    @pytest.mark.parametrize(
        "values,expected",
        [
            ((13, 15), TrendPattern.LINEAR),
            ((14, 14), TrendPattern.PLATEAU),
            ((15, 9, 15), TrendPattern.U_SHAPED),
            ((9, 15, 9), TrendPattern.INVERTED_U),
            ((8, 12, 12), TrendPattern.PLATEAU),
            ((14, 14, 7, 7), TrendPattern.STEPWISE),
        ],
    )
    def test_trend(self, analyzer, values, expected):
        assert analyzer.analyze(gcs_series(*values)).trend == expected

    def test_description(self, analyzer):
        trajectory = analyzer.analyze(gcs_series(15, 9, 15))
        assert trajectory.description == (
            "Functional status is fluctuating with initial decline followed by recovery "
            "pattern at slow rate"
        )

    def test_insufficient_description(self, analyzer):
        trajectory = analyzer.analyze(gcs_series(15))
        assert trajectory.trend is None
        assert trajectory.description == "Insufficient data points for trajectory analysis"

    @pytest.mark.parametrize(
        "start,end,days,expected",
        [
            (3, 15, 7, ChangeRate.RAPID),
            (13, 15, 14, ChangeRate.GRADUAL),
            (14, 15, 28, ChangeRate.SLOW),
        ],
    )
    def test_rate(self, analyzer, start, end, days, expected):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", start, date(2025, 1, 1), 0),
            create_score("pat-0002", "gcs", end, date(2025, 1, 1 + days), 50),
        ])
        assert trajectory.rate == expected
        assert trajectory.duration_days == days

    def test_rapid_rate_per_week(self, analyzer):
        trajectory = analyzer.analyze([
            create_score("pat-0001", "gcs", 3, date(2025, 1, 1), 0),
            create_score("pat-0002", "gcs", 15, date(2025, 1, 8), 50),
        ])
        assert trajectory.rate_per_week == 1.0
        assert trajectory.description.endswith("at rapid rate")

    def test_no_rate_without_elapsed_days(self, analyzer):
        same_day = analyzer.analyze([
            create_score("pat-0001", "gcs", 13, date(2025, 1, 14), 0),
            create_score("pat-0002", "gcs", 15, date(2025, 1, 14), 50),
        ])
        undated = analyzer.analyze([
            create_score("pat-0001", "gcs", 13, None, 0),
            create_score("pat-0002", "gcs", 15, None, 50),
        ])

        assert same_day.duration_days == 0
        assert same_day.rate is None
        assert undated.duration_days is None
        assert undated.rate_per_week is None


class TestMilestones:
    """Tests for baseline, extremes, turning points and the post-op nadir."""

    def test_milestones(self, analyzer):
        milestones = analyzer.analyze(gcs_series(13, 8, 11, 15)).milestones

        assert milestones.baseline == 0
        assert milestones.final == 3
        assert milestones.best == 3
        assert milestones.worst == 1
        assert milestones.turning_points == [1]
        assert milestones.post_op_nadir is None

    def test_post_op_nadir(self, analyzer):
        timeline = Timeline(milestones=[
            Milestone(label="primary_surgery", event_id="evt-002", date=date(2025, 1, 17)),
        ])
        milestones = analyzer.analyze(gcs_series(13, 8, 11, 15), timeline).milestones
        assert milestones.post_op_nadir == 2

    def test_earliest_extreme_wins_ties(self, analyzer):
        milestones = analyzer.analyze(gcs_series(15, 9, 15, 9)).milestones
        assert milestones.best == 0
        assert milestones.worst == 1
        assert milestones.turning_points == [1, 2]


class TestPrognosis:
    """Tests for final status against graded expectations."""

    def test_better_than_expected(self, analyzer):
        trajectory = analyzer.analyze([create_pathology(4), *gcs_series(13, 15)])

        prognosis = trajectory.prognosis
        assert prognosis.category == "HUNTHESS"
        assert prognosis.grade == 4
        assert prognosis.expected_good_outcome == 0.3
        assert prognosis.final_status == 1.0
        assert prognosis.difference == pytest.approx(0.7)
        assert prognosis.better_than_expected

    def test_worse_than_expected(self, analyzer):
        trajectory = analyzer.analyze([
            create_pathology(2),
            create_score("pat-0001", "mrs", 1, date(2025, 1, 14), 0),
            create_score("pat-0002", "mrs", 4, date(2025, 1, 20), 50),
        ])

        prognosis = trajectory.prognosis
        assert prognosis.expected_good_outcome == 0.75
        assert prognosis.difference == pytest.approx(-0.4167)
        assert not prognosis.better_than_expected

    def test_ungraded_pathology(self, analyzer):
        trajectory = analyzer.analyze([create_pathology("I", category="WHO"), *gcs_series(13, 15)])
        assert trajectory.prognosis is None
