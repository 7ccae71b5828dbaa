from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from studyquest.agents.context_aggregator import ContextAggregator
from studyquest.memory.child_memory import ChildMemoryService
from studyquest.memory.database import build_engine, build_session_factory, create_all
from studyquest.memory.sql_repository import SqlLearnerRepository
from studyquest.models.entities import (
    AnswerRecord,
    Child,
    DailyTask,
    EmotionRecordRow,
    KnowledgeMastery,
    LearningGoalRow,
)
from studyquest.schemas.context import BehaviorTrend, MemoryLayer, MemoryStatus

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'studyquest.db'}")
    await create_all(engine)
    yield build_session_factory(engine)
    await engine.dispose()


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        async with session.begin():
            session.add(Child(id="c1", name="小明", grade_level=5))
            session.add_all(
                [
                    KnowledgeMastery(user_id="c1", knowledge_point_name="分数", subject="math", mastery_level=0.2),
                    KnowledgeMastery(user_id="c1", knowledge_point_name="古诗", subject="chinese", mastery_level=0.8),
                    AnswerRecord(user_id="c1", is_correct=True, created_at=NOW - timedelta(days=1)),
                    AnswerRecord(user_id="c1", is_correct=False, created_at=NOW - timedelta(days=2)),
                    AnswerRecord(user_id="c1", is_correct=False, created_at=NOW - timedelta(days=30)),
                    DailyTask(
                        user_id="c1",
                        status="completed",
                        created_at=NOW - timedelta(days=5),
                        started_at=NOW - timedelta(days=5),
                        completed_at=NOW - timedelta(days=5) + timedelta(minutes=10),
                    ),
                    DailyTask(user_id="c1", status="skipped", created_at=NOW - timedelta(days=1)),
                    EmotionRecordRow(user_id="c1", emotion="tired", created_at=NOW - timedelta(hours=1)),
                    EmotionRecordRow(user_id="c1", emotion="tired", created_at=NOW - timedelta(hours=2)),
                    EmotionRecordRow(user_id="c1", emotion="happy", created_at=NOW - timedelta(hours=3)),
                ]
            )


@pytest.mark.asyncio
async def test_fetchers_read_the_learner_tables(session_factory):
    await _seed(session_factory)
    repo = SqlLearnerRepository(session_factory)

    profile = await repo.fetch_profile("c1")
    assert (profile.name, profile.grade_level) == ("小明", 5)
    assert await repo.fetch_profile("missing") is None

    mastery = await repo.fetch_mastery("c1", NOW)
    assert mastery.weak_points == ["分数"]
    assert mastery.recent_error_rate == 0.5

    behavior = await repo.fetch_behavior("c1", NOW)
    assert behavior.abandon_rate == 0.5
    assert behavior.trend == BehaviorTrend.DECLINING
    assert behavior.avg_completion_time == 600

    trend = await repo.fetch_emotion_trend("c1", NOW)
    assert trend.frustration_streak == 2
    assert trend.has_enough_data is True

    points = await repo.fetch_knowledge_points("c1")
    assert {p["subject"] for p in points} == {"math", "chinese"}


@pytest.mark.asyncio
async def test_memory_round_trip_through_the_service(session_factory):
    memory = ChildMemoryService(SqlLearnerRepository(session_factory))
    first = await memory.write_memory("c1", "hypothesis", "evening_fatigue", {"note": "晚饭后累"}, now=NOW)
    again = await memory.write_memory("c1", "hypothesis", "evening_fatigue", {"note": "又累了"}, now=NOW)
    assert again.id == first.id
    assert again.evidence_count == 2

    promoted = await memory.promote_memory(first.id, now=NOW)
    assert promoted.layer == MemoryLayer.STABLE
    stored = await memory.repository.get_memory(first.id)
    assert (stored.layer, stored.status, stored.content) == (MemoryLayer.STABLE, MemoryStatus.ACTIVE, {"note": "又累了"})


@pytest.mark.asyncio
async def test_aggregator_over_sql(session_factory):
    await _seed(session_factory)
    context = await ContextAggregator(SqlLearnerRepository(session_factory)).get_context("c1", NOW)
    assert context.profile.name == "小明"
    assert context.emotion_signal.value == "fatigue"


@pytest.mark.asyncio
async def test_history_fetchers_respect_their_windows(session_factory):
    await _seed(session_factory)
    async with session_factory() as session:
        async with session.begin():
            session.add_all(
                [
                    AnswerRecord(user_id="c1", knowledge_point_name="分数", is_correct=False, created_at=NOW - timedelta(days=3)),
                    LearningGoalRow(user_id="c1", description="分数过关", subject="math", created_at=NOW - timedelta(days=9)),
                    LearningGoalRow(user_id="c1", description="古诗 20 首", status="completed", created_at=NOW - timedelta(days=8)),
                ]
            )
    repo = SqlLearnerRepository(session_factory)

    answers = await repo.fetch_answers("c1", NOW - timedelta(days=7))
    assert [a["created_at"] for a in answers] == [NOW - timedelta(days=3), NOW - timedelta(days=2), NOW - timedelta(days=1)]
    assert answers[0]["knowledge_point"] == "分数"
    windowed = await repo.fetch_answers("c1", NOW - timedelta(days=7), NOW - timedelta(days=2))
    assert [a["is_correct"] for a in windowed] == [False]

    tasks = await repo.fetch_tasks("c1", NOW - timedelta(days=7), NOW - timedelta(days=2))
    assert [t["status"] for t in tasks] == ["completed"]

    goals = await repo.fetch_learning_goals("c1")
    assert [g["description"] for g in goals] == ["分数过关", "古诗 20 首"]
    assert goals[0]["target_mastery"] == 0.8
    completed = await repo.fetch_learning_goals("c1", "completed")
    assert [g["status"] for g in completed] == ["completed"]
