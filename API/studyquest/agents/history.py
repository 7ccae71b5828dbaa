"""Looks back over a learner's records: metric trends, the weekly review and long-term goals."""
from datetime import datetime, timedelta
from typing import Any, Awaitable

from studyquest.agents.base import BaseAgent
from studyquest.agents.schedule import summarize_weekly_review, week_start
from studyquest.agents.signals import compare_with_history, round2
from studyquest.core.logging import DOMAIN_CONTEXT, get_domain_logger
from studyquest.memory.repository import LearnerRepository, utcnow
from studyquest.schemas.context import HistoryMetric, LearningGoal, MetricComparison
from studyquest.schemas.schedule import WeeklyReviewSummary

logger = get_domain_logger(__name__, DOMAIN_CONTEXT)

DEFAULT_COMPARE_DAYS = 7


class LearningHistory(BaseAgent):
    """Read-side history queries. Storage failures degrade to empty windows."""

    name = "learning_history"

    def __init__(self, repository: LearnerRepository):
        self.repository = repository

    async def _rows(self, part: str, child_id: str, fetch: Awaitable[list[dict]]) -> list[dict]:
        try:
            return await fetch
        except Exception as exc:
            logger.warning("History fetch %s failed for child=%s, using no rows: %s", part, child_id, exc)
            return []

    async def compare(
        self,
        child_id: str,
        metric: HistoryMetric | str,
        days: int = DEFAULT_COMPARE_DAYS,
        now: datetime | None = None,
    ) -> MetricComparison:
        """Compare the last ``days`` days with the ``days`` days before them."""
        metric = HistoryMetric(metric)
        now = now or utcnow()
        split = now - timedelta(days=days)
        start = split - timedelta(days=days)
        fetch = self.repository.fetch_tasks if metric == HistoryMetric.COMPLETION_RATE else self.repository.fetch_answers
        previous = await self._rows(metric.value, child_id, fetch(child_id, start, split))
        current = await self._rows(metric.value, child_id, fetch(child_id, split, now))
        comparison = compare_with_history(metric, current, previous, days)
        logger.info(
            "History compare child=%s metric=%s current=%s historical=%s trend=%s",
            child_id,
            metric.value,
            comparison.current_value,
            comparison.historical_value,
            comparison.trend.value if comparison.trend else None,
        )
        return comparison

    async def weekly_review(self, child_id: str, now: datetime | None = None) -> WeeklyReviewSummary:
        now = now or utcnow()
        start = week_start(now)
        answers = await self._rows("answers", child_id, self.repository.fetch_answers(child_id, start - timedelta(days=7)))
        tasks = await self._rows("tasks", child_id, self.repository.fetch_tasks(child_id, start))
        completed = sum(1 for t in tasks if t.get("status") == "completed")
        return summarize_weekly_review(answers, completed, now)

    async def learning_goals(self, child_id: str, status: str | None = None) -> list[LearningGoal]:
        """Goals with progress measured against the current mastery of the goal's subject."""
        goals = await self._rows("goals", child_id, self.repository.fetch_learning_goals(child_id, status))
        points = await self._rows("knowledge_points", child_id, self.repository.fetch_knowledge_points(child_id))
        result = []
        for goal in goals:
            levels = [
                p["mastery_level"]
                for p in points
                if goal.get("subject") is None or p.get("subject") == goal.get("subject")
            ]
            current = round2(sum(levels) / len(levels)) if levels else 0.0
            target = goal.get("target_mastery") or 0.8
            result.append(
                LearningGoal(
                    id=goal["id"],
                    description=goal["description"],
                    subject=goal.get("subject"),
                    target_mastery=target,
                    current_mastery=current,
                    progress=min(1.0, round2(current / target)) if target > 0 else 1.0,
                    status=goal.get("status") or "active",
                    created_at=goal.get("created_at"),
                )
            )
        return result

    async def run(self, input_data: dict[str, Any]) -> dict[str, Any]:
        child_id = str(input_data["child_id"])
        if input_data.get("metric"):
            comparison = await self.compare(child_id, input_data["metric"], input_data.get("days") or DEFAULT_COMPARE_DAYS)
            return comparison.model_dump(mode="json")
        return (await self.weekly_review(child_id)).model_dump(mode="json")
