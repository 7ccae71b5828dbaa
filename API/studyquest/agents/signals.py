"""Pure calculators that turn raw learner rows into context signals."""
import math
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from studyquest.core.settings import settings
from studyquest.schemas.context import (
    BehaviorSignals,
    BehaviorTrend,
    EmotionRecord,
    EmotionTrend,
    HistoryMetric,
    MasteryStats,
    MetricComparison,
)

WEAK_THRESHOLD = 0.4
STRONG_THRESHOLD = 0.7
SIGNAL_WINDOW_DAYS = 7
TREND_SPLIT_DAYS = 3
TREND_MARGIN = 0.1
NEGATIVE_EMOTIONS = ("frustrated", "tired")
HISTORY_TREND_MARGIN = 0.05
UNCATEGORIZED_POINT = "未分类"


def round2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def window_start(now: datetime, days: int = SIGNAL_WINDOW_DAYS) -> datetime:
    return _aware(now) - timedelta(days=days)


def compute_recent_error_rate(answers: Iterable[Mapping[str, Any]]) -> float:
    """Share of incorrect answers; rows carry an ``is_correct`` flag."""
    rows = list(answers)
    if not rows:
        return 0.0
    incorrect = sum(1 for row in rows if not row.get("is_correct"))
    return round2(incorrect / len(rows))


def compute_mastery_stats(rows: Iterable[Mapping[str, Any]], recent_error_rate: float = 0.0) -> MasteryStats:
    """Summarise per-knowledge-point mastery rows (``name``, ``mastery_level``)."""
    points = [(str(row.get("name")), float(row.get("mastery_level") or 0.0)) for row in rows]
    if not points:
        return MasteryStats()
    avg = sum(level for _, level in points) / len(points)
    weak = [name for name, level in sorted(points, key=lambda item: item[1]) if level < WEAK_THRESHOLD]
    strong = [name for name, level in points if level >= STRONG_THRESHOLD]
    return MasteryStats(
        avg_mastery=round2(avg),
        weak_points=weak,
        strong_points=strong,
        recent_error_rate=recent_error_rate,
        total_points=len(points),
        mastered_count=len(strong),
    )


def _is_abandoned(task: Mapping[str, Any]) -> bool:
    if task.get("status") == "skipped":
        return True
    return task.get("status") == "in_progress" and bool(task.get("started_at")) and not task.get("completed_at")


def _completion_rate(tasks: list[Mapping[str, Any]]) -> float:
    if not tasks:
        return 0.0
    return sum(1 for t in tasks if t.get("status") == "completed") / len(tasks)


def compute_behavior_signals(tasks: Iterable[Mapping[str, Any]], now: datetime) -> BehaviorSignals:
    """Abandonment, trend and completion time over the task rows of the signal window.

    The trend compares the completion rate of tasks created before
    ``now - 3 days`` with those created after.
    """
    rows = list(tasks)
    if not rows:
        return BehaviorSignals()
    abandon_rate = sum(1 for t in rows if _is_abandoned(t)) / len(rows)
    completed = sum(1 for t in rows if t.get("status") == "completed")

    midpoint = _aware(now) - timedelta(days=TREND_SPLIT_DAYS)
    older = [t for t in rows if _aware(t["created_at"]) < midpoint]
    recent = [t for t in rows if _aware(t["created_at"]) >= midpoint]
    older_rate = _completion_rate(older)
    recent_rate = _completion_rate(recent)
    if recent_rate > older_rate + TREND_MARGIN:
        trend = BehaviorTrend.IMPROVING
    elif recent_rate < older_rate - TREND_MARGIN:
        trend = BehaviorTrend.DECLINING
    else:
        trend = BehaviorTrend.STABLE

    durations = [
        (_aware(t["completed_at"]) - _aware(t["started_at"])).total_seconds()
        for t in rows
        if t.get("status") == "completed" and t.get("started_at") and t.get("completed_at")
    ]
    avg_time = math.floor(sum(durations) / len(durations) + 0.5) if durations else 0
    return BehaviorSignals(
        abandon_rate=round2(abandon_rate),
        avg_completion_time=max(0, avg_time),
        trend=trend,
        recent_tasks_completed=completed,
    )


def summarize_emotion_trend(records: Iterable[EmotionRecord]) -> EmotionTrend:
    """Dominant emotion, leading negative streak and lightening need over newest-first records."""
    ordered = sorted(records, key=lambda r: _aware(r.created_at), reverse=True)
    if not ordered:
        return EmotionTrend()
    counts = Counter(r.emotion for r in ordered)
    dominant = counts.most_common(1)[0][0]
    streak = 0
    for record in ordered:
        if record.emotion not in NEGATIVE_EMOTIONS:
            break
        streak += 1
    negative_total = sum(counts[e] for e in NEGATIVE_EMOTIONS)
    return EmotionTrend(
        recent_emotions=ordered,
        dominant_emotion=dominant,
        frustration_streak=streak,
        needs_lightening=streak >= 3 or negative_total >= len(ordered) * 0.6,
        has_enough_data=len(ordered) >= settings.emotion_min_records,
    )


def metric_value(metric: HistoryMetric | str, rows: Iterable[Mapping[str, Any]]) -> float | None:
    """Value of ``metric`` over one window of rows, or None for an empty window.

    accuracy and mastery read answer rows; completion_rate reads task rows.
    Mastery is the unweighted mean of per-knowledge-point accuracy.
    """
    metric = HistoryMetric(metric)
    rows = list(rows)
    if not rows:
        return None
    if metric == HistoryMetric.COMPLETION_RATE:
        return round2(_completion_rate(rows))
    if metric == HistoryMetric.ACCURACY:
        return round2(sum(1 for r in rows if r.get("is_correct")) / len(rows))
    by_point: dict[str, list[bool]] = defaultdict(list)
    for row in rows:
        by_point[row.get("knowledge_point") or UNCATEGORIZED_POINT].append(bool(row.get("is_correct")))
    return round2(sum(sum(marks) / len(marks) for marks in by_point.values()) / len(by_point))


def compare_with_history(
    metric: HistoryMetric | str,
    current_rows: Iterable[Mapping[str, Any]],
    previous_rows: Iterable[Mapping[str, Any]],
    period_days: int,
) -> MetricComparison:
    metric = HistoryMetric(metric)
    current = metric_value(metric, current_rows)
    historical = metric_value(metric, previous_rows)
    if current is None or historical is None:
        return MetricComparison(
            metric=metric,
            period_days=period_days,
            current_value=current,
            historical_value=historical,
            interpretation="历史数据不足，暂不判断趋势",
        )
    change = round2(current - historical)
    if change > HISTORY_TREND_MARGIN:
        trend, interpretation = BehaviorTrend.IMPROVING, "正在进步中，保持！"
    elif change < -HISTORY_TREND_MARGIN:
        trend, interpretation = BehaviorTrend.DECLINING, "有下降趋势，可能需要调整"
    else:
        trend, interpretation = BehaviorTrend.STABLE, "保持稳定"
    return MetricComparison(
        metric=metric,
        period_days=period_days,
        current_value=current,
        historical_value=historical,
        change=change,
        trend=trend,
        interpretation=interpretation,
    )
