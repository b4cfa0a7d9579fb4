"""Functional-status trajectory over the stay.

Every GCS, KPS, ECOG and mRS reading is mapped onto a common 0-1 scale
where higher is better:

    GCS   (x - 3) / 12
    KPS   x / 100
    ECOG  1 - x / 5
    mRS   1 - x / 6

Readings are compared only against the previous reading of the same
scale. When no scale has two readings, consecutive readings are compared
across scales instead and the changes are flagged ``cross_scale``. A
change of 0.10 or more is significant. Each scale gets its own label:

- fluctuating when there are significant moves in both directions
- improving / declining when its first-to-last change is at least +/-0.10
- stable otherwise

and the overall label is fluctuating when any scale fluctuates or scales
disagree, otherwise the direction shared by the moving scales. With
fewer than two readings the label is insufficient_data.

Trend shape, rate and milestones are read from the primary scale, the
one with the most readings (largest net change, then earliest, on ties).
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import ClassVar

from clinex.schemas.base import (
    ChangeRate,
    EntityType,
    ScoreScale,
    TrajectoryLabel,
    TrendPattern,
)
from clinex.schemas.entities import (
    ExtractedEntity,
    FunctionalMilestones,
    FunctionalScorePoint,
    FunctionalTrajectory,
    PrognosisComparison,
    StatusChange,
    Timeline,
)

logger = logging.getLogger(__name__)


@dataclass
class EvolutionConfig:
    """Change thresholds on the normalized scale."""

    significant_change: float = 0.10
    major_change: float = 0.30
    moderate_change: float = 0.15
    minor_change: float = 0.05
    # Normalized change per week
    rapid_rate: float = 0.20
    gradual_rate: float = 0.05


def normalize_score(scale: ScoreScale, value: int) -> float:
    """Map a raw score onto 0-1, higher is better."""
    if scale == ScoreScale.GCS:
        normalized = (value - 3) / 12
    elif scale == ScoreScale.KPS:
        normalized = value / 100
    elif scale == ScoreScale.ECOG:
        normalized = 1 - value / 5
    else:
        normalized = 1 - value / 6
    return round(max(0.0, min(1.0, normalized)), 4)


class EvolutionAnalyzer:
    """Builds the functional trajectory from functional-score entities.

    Usage:
        analyzer = EvolutionAnalyzer()
        trajectory = analyzer.analyze(entities, timeline)
        print(trajectory.label.value, trajectory.trend, trajectory.net_change)
    """

    _FAR_FUTURE: ClassVar[date] = date.max

    # Lower bound of the good-outcome range per Hunt-Hess grade
    GOOD_OUTCOME_BY_GRADE: ClassVar[dict[str, dict[int, float]]] = {
        "HUNTHESS": {1: 0.85, 2: 0.75, 3: 0.60, 4: 0.30, 5: 0.10},
    }

    TREND_TEXT: ClassVar[dict[TrendPattern, str]] = {
        TrendPattern.LINEAR: "consistent",
        TrendPattern.STEPWISE: "stepwise",
        TrendPattern.PLATEAU: "plateaued",
        TrendPattern.U_SHAPED: "initial decline followed by recovery",
        TrendPattern.INVERTED_U: "initial improvement followed by decline",
    }

    def __init__(self, config: EvolutionConfig | None = None):
        self.config = config or EvolutionConfig()

    def analyze(
        self,
        entities: list[ExtractedEntity],
        timeline: Timeline | None = None,
    ) -> FunctionalTrajectory:
        """Compute the trajectory.

        Readings are ordered by date then text position; undated readings
        sort after dated ones. Scores marked ``trajectory=False`` (NIHSS)
        are skipped.

        Args:
            entities: Final entities; pathology subtypes feed the prognosis
            timeline: Built timeline; its primary surgery anchors the
                post-operative nadir

        Returns:
            FunctionalTrajectory
        """
        points = self._points(entities)

        latest: dict[str, int] = {}
        by_scale: dict[ScoreScale, list[int]] = defaultdict(list)
        for index, point in enumerate(points):
            latest[point.scale.value] = point.raw_value
            by_scale[point.scale].append(index)

        if len(points) < 2:
            logger.info(f"Functional trajectory: insufficient data from {len(points)} readings")
            return FunctionalTrajectory(points=points, latest_by_scale=latest)

        tracked = {scale: indexes for scale, indexes in by_scale.items() if len(indexes) >= 2}
        nets: dict[str, float] = {}
        if tracked:
            changes: list[StatusChange] = []
            labels = []
            for scale, indexes in tracked.items():
                scale_changes = self._series_changes(points, indexes, scale)
                nets[scale.value] = self._net(points, indexes)
                labels.append(self._label(scale_changes, nets[scale.value]))
                changes.extend(scale_changes)
            changes.sort(key=lambda c: (c.to_index, c.from_index))
            label = self._combine(labels)

            primary = max(
                tracked,
                key=lambda s: (len(tracked[s]), abs(nets[s.value]), -tracked[s][0]),
            )
            series = tracked[primary]
            series_changes = [c for c in changes if c.scale == primary]
        else:
            primary = None
            series = list(range(len(points)))
            changes = self._series_changes(points, series, None)
            series_changes = changes
            label = self._label(changes, self._net(points, series))

        net = self._net(points, series)
        values = [points[i].normalized for i in series]
        trend = self._trend(values, series_changes)
        duration, rate_per_week, rate = self._rate(points, series, net)
        description = f"Functional status is {label.value} with {self.TREND_TEXT[trend]} pattern"
        if rate is not None:
            description += f" at {rate.value} rate"

        if timeline is not None:
            logger.debug(f"Trajectory over {len(timeline.events)} timeline events")
        logger.info(
            f"Functional trajectory: {label.value} ({trend.value}) from {len(points)} readings"
        )
        return FunctionalTrajectory(
            points=points,
            changes=changes,
            label=label,
            net_change=net,
            net_change_by_scale=nets,
            primary_scale=primary,
            trend=trend,
            rate=rate,
            rate_per_week=rate_per_week,
            duration_days=duration,
            description=description,
            milestones=self._milestones(points, series, timeline),
            prognosis=self._prognosis(entities, points[series[-1]]),
            latest_by_scale=latest,
        )

    def _points(self, entities: list[ExtractedEntity]) -> list[FunctionalScorePoint]:
        readings = []
        for entity in entities:
            if entity.entity_type != EntityType.FUNCTIONAL_SCORE:
                continue
            if entity.attributes.get("trajectory") is False:
                continue
            try:
                ScoreScale(entity.attributes.get("scale"))
            except ValueError:
                continue
            readings.append(entity)

        readings.sort(key=lambda e: (e.resolved_date or self._FAR_FUTURE, e.position))
        return [
            FunctionalScorePoint(
                scale=ScoreScale(e.attributes["scale"]),
                raw_value=int(e.value),
                normalized=normalize_score(ScoreScale(e.attributes["scale"]), int(e.value)),
                recorded_on=e.resolved_date,
                entity_id=e.entity_id,
            )
            for e in readings
        ]

    @staticmethod
    def _net(points: list[FunctionalScorePoint], series: list[int]) -> float:
        return round(points[series[-1]].normalized - points[series[0]].normalized, 4)

    def _series_changes(
        self,
        points: list[FunctionalScorePoint],
        series: list[int],
        scale: ScoreScale | None,
    ) -> list[StatusChange]:
        """Changes between consecutive readings of a series."""
        return [
            self._change(before, after, points[before].normalized, points[after].normalized, scale)
            for before, after in zip(series, series[1:])
        ]

    def _change(
        self,
        from_index: int,
        to_index: int,
        before: float,
        after: float,
        scale: ScoreScale | None = None,
    ) -> StatusChange:
        config = self.config
        delta = round(after - before, 4)
        magnitude = abs(delta)
        if magnitude >= config.major_change:
            significance = "major"
        elif magnitude >= config.moderate_change:
            significance = "moderate"
        elif magnitude >= config.minor_change:
            significance = "minor"
        else:
            significance = "minimal"
        if delta > 0:
            direction = "improvement"
        elif delta < 0:
            direction = "deterioration"
        else:
            direction = "unchanged"
        return StatusChange(
            from_index=from_index,
            to_index=to_index,
            delta=delta,
            direction=direction,
            significance=significance,
            significant=magnitude >= config.significant_change,
            scale=scale,
            cross_scale=scale is None,
        )

    def _label(self, changes: list[StatusChange], net: float) -> TrajectoryLabel:
        ups = any(c.significant and c.delta > 0 for c in changes)
        downs = any(c.significant and c.delta < 0 for c in changes)
        if ups and downs:
            return TrajectoryLabel.FLUCTUATING
        if net >= self.config.significant_change:
            return TrajectoryLabel.IMPROVING
        if net <= -self.config.significant_change:
            return TrajectoryLabel.DECLINING
        return TrajectoryLabel.STABLE

    @staticmethod
    def _combine(labels: list[TrajectoryLabel]) -> TrajectoryLabel:
        """Overall label from the per-scale labels."""
        if TrajectoryLabel.FLUCTUATING in labels:
            return TrajectoryLabel.FLUCTUATING
        if TrajectoryLabel.IMPROVING in labels and TrajectoryLabel.DECLINING in labels:
            return TrajectoryLabel.FLUCTUATING
        if TrajectoryLabel.IMPROVING in labels:
            return TrajectoryLabel.IMPROVING
        if TrajectoryLabel.DECLINING in labels:
            return TrajectoryLabel.DECLINING
        return TrajectoryLabel.STABLE

    def _trend(self, values: list[float], changes: list[StatusChange]) -> TrendPattern:
        """Shape of a series from its halves.

        A single major move among several changes is stepwise. Otherwise
        the series is split at its middle reading: a significant drop then
        rise is U-shaped, the reverse inverted-U, and a significant first
        half followed by a near-flat second half is a plateau.
        """
        if all(c.direction == "unchanged" for c in changes):
            return TrendPattern.PLATEAU
        majors = sum(1 for c in changes if c.significance == "major")
        if majors == 1 and len(changes) > 2:
            return TrendPattern.STEPWISE
        if len(values) >= 3:
            threshold = self.config.significant_change
            middle = values[len(values) // 2]
            first_half = middle - values[0]
            second_half = values[-1] - middle
            if first_half < -threshold and second_half > threshold:
                return TrendPattern.U_SHAPED
            if first_half > threshold and second_half < -threshold:
                return TrendPattern.INVERTED_U
            if abs(first_half) > threshold and abs(second_half) < self.config.minor_change:
                return TrendPattern.PLATEAU
        return TrendPattern.LINEAR

    def _rate(
        self,
        points: list[FunctionalScorePoint],
        series: list[int],
        net: float,
    ) -> tuple[int | None, float | None, ChangeRate | None]:
        """Days covered, change per week and its rate class."""
        dated = [points[i].recorded_on for i in series if points[i].recorded_on is not None]
        if len(dated) < 2:
            return None, None, None
        days = (dated[-1] - dated[0]).days
        if days <= 0:
            return days, None, None
        per_week = round(abs(net) / (days / 7), 4)
        if per_week > self.config.rapid_rate:
            rate = ChangeRate.RAPID
        elif per_week > self.config.gradual_rate:
            rate = ChangeRate.GRADUAL
        else:
            rate = ChangeRate.SLOW
        return days, per_week, rate

    @staticmethod
    def _milestones(
        points: list[FunctionalScorePoint],
        series: list[int],
        timeline: Timeline | None,
    ) -> FunctionalMilestones:
        # Earliest reading wins ties
        best = max(series, key=lambda i: (points[i].normalized, -i))
        worst = min(series, key=lambda i: (points[i].normalized, i))

        turning_points = []
        for before, index, after in zip(series, series[1:], series[2:]):
            rise = points[index].normalized - points[before].normalized
            fall = points[after].normalized - points[index].normalized
            if rise * fall < 0:
                turning_points.append(index)

        nadir = None
        surgery = next(
            (m for m in (timeline.milestones if timeline else []) if m.label == "primary_surgery"),
            None,
        )
        if surgery is not None:
            post_op = [
                i for i in series
                if points[i].recorded_on is not None and points[i].recorded_on > surgery.date
            ]
            if post_op:
                nadir = min(post_op, key=lambda i: (points[i].normalized, i))

        return FunctionalMilestones(
            baseline=series[0],
            final=series[-1],
            best=best,
            worst=worst,
            post_op_nadir=nadir,
            turning_points=turning_points,
        )

    def _prognosis(
        self,
        entities: list[ExtractedEntity],
        final: FunctionalScorePoint,
    ) -> PrognosisComparison | None:
        """Compare the final reading with the graded good-outcome rate."""
        for entity in entities:
            if entity.negated:
                continue
            for subtype in entity.subtypes or ([entity.subtype] if entity.subtype else []):
                table = self.GOOD_OUTCOME_BY_GRADE.get(subtype.category)
                if table is None:
                    continue
                try:
                    grade = int(subtype.value)
                except (TypeError, ValueError):
                    continue
                if grade not in table:
                    continue
                expected = table[grade]
                return PrognosisComparison(
                    category=subtype.category,
                    grade=grade,
                    expected_good_outcome=expected,
                    final_status=final.normalized,
                    difference=round(final.normalized - expected, 4),
                    better_than_expected=final.normalized > expected,
                )
        return None


# ============================================================================
# Singleton
# ============================================================================


_analyzer_instance: EvolutionAnalyzer | None = None
_analyzer_lock = threading.Lock()


def get_evolution_analyzer() -> EvolutionAnalyzer:
    """Get or create the singleton evolution analyzer."""
    global _analyzer_instance

    if _analyzer_instance is None:
        with _analyzer_lock:
            if _analyzer_instance is None:
                _analyzer_instance = EvolutionAnalyzer()

    return _analyzer_instance


def reset_evolution_analyzer() -> None:
    """Reset the singleton instance."""
    global _analyzer_instance
    with _analyzer_lock:
        _analyzer_instance = None
