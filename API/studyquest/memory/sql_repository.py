from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyquest.agents.signals import (
    compute_behavior_signals,
    compute_mastery_stats,
    compute_recent_error_rate,
    summarize_emotion_trend,
    window_start,
)
from studyquest.memory.repository import LearnerRepository, utcnow
from studyquest.models.entities import (
    AnswerRecord,
    Child,
    ChildMemory,
    DailyTask,
    EmotionRecordRow,
    KnowledgeMastery,
    LearningGoalRow,
)
from studyquest.schemas.context import (
    BehaviorSignals,
    ChildProfile,
    EmotionRecord,
    EmotionTrend,
    MasteryStats,
    MemoryEntry,
    MemoryLayer,
)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _task_row(task: DailyTask) -> dict:
    return {
        "status": task.status,
        "created_at": _aware(task.created_at),
        "started_at": _aware(task.started_at),
        "completed_at": _aware(task.completed_at),
    }


def _to_entry(row: ChildMemory) -> MemoryEntry:
    return MemoryEntry(
        id=row.id,
        child_id=row.child_id,
        layer=row.memory_layer,
        key=row.memory_key,
        content=dict(row.memory_content or {}),
        status=row.status,
        confidence=row.confidence,
        evidence_count=row.evidence_count,
        first_observed=_aware(row.first_observed),
        last_updated=_aware(row.last_updated),
        last_confirmed=_aware(row.last_confirmed),
        expires_at=_aware(row.expires_at),
    )


class SqlLearnerRepository(LearnerRepository):
    """SQLAlchemy async adapter over the learner tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def fetch_profile(self, child_id: str) -> ChildProfile | None:
        async with self.session_factory() as session:
            row = await session.get(Child, child_id)
        if row is None:
            return None
        return ChildProfile(
            id=row.id,
            name=row.name or "孩子",
            grade_level=row.grade_level,
            total_xp=row.total_xp or 0,
            streak_days=row.streak_days or 0,
        )

    async def fetch_mastery(self, child_id: str, now: datetime | None = None) -> MasteryStats:
        since = window_start(now or utcnow())
        async with self.session_factory() as session:
            points = (
                await session.execute(select(KnowledgeMastery).where(KnowledgeMastery.user_id == child_id))
            ).scalars().all()
            answers = (
                await session.execute(
                    select(AnswerRecord.is_correct).where(
                        AnswerRecord.user_id == child_id,
                        AnswerRecord.created_at >= since,
                    )
                )
            ).all()
        error_rate = compute_recent_error_rate({"is_correct": bool(a.is_correct)} for a in answers)
        rows = [{"name": p.knowledge_point_name, "mastery_level": p.mastery_level} for p in points]
        return compute_mastery_stats(rows, error_rate)

    async def fetch_behavior(self, child_id: str, now: datetime | None = None) -> BehaviorSignals:
        now = now or utcnow()
        async with self.session_factory() as session:
            tasks = (
                await session.execute(
                    select(DailyTask).where(DailyTask.user_id == child_id, DailyTask.created_at >= window_start(now))
                )
            ).scalars().all()
        return compute_behavior_signals([_task_row(t) for t in tasks], now)

    async def fetch_emotion_trend(self, child_id: str, now: datetime | None = None) -> EmotionTrend:
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(EmotionRecordRow)
                    .where(
                        EmotionRecordRow.user_id == child_id,
                        EmotionRecordRow.created_at >= window_start(now or utcnow()),
                    )
                    .order_by(EmotionRecordRow.created_at.desc())
                )
            ).scalars().all()
        return summarize_emotion_trend(
            EmotionRecord(
                emotion=r.emotion,
                score_percentage=r.score_percentage or 0.0,
                task_id=r.task_id,
                created_at=_aware(r.created_at),
            )
            for r in rows
        )

    async def fetch_knowledge_points(self, child_id: str) -> list[dict]:
        async with self.session_factory() as session:
            points = (
                await session.execute(select(KnowledgeMastery).where(KnowledgeMastery.user_id == child_id))
            ).scalars().all()
        return [
            {"name": p.knowledge_point_name, "mastery_level": p.mastery_level, "subject": p.subject}
            for p in points
        ]

    async def fetch_answers(self, child_id: str, since: datetime, until: datetime | None = None) -> list[dict]:
        query = select(AnswerRecord).where(AnswerRecord.user_id == child_id, AnswerRecord.created_at >= since)
        if until is not None:
            query = query.where(AnswerRecord.created_at < until)
        async with self.session_factory() as session:
            rows = (await session.execute(query.order_by(AnswerRecord.created_at))).scalars().all()
        return [
            {
                "is_correct": bool(r.is_correct),
                "knowledge_point": r.knowledge_point_name,
                "created_at": _aware(r.created_at),
            }
            for r in rows
        ]

    async def fetch_tasks(self, child_id: str, since: datetime, until: datetime | None = None) -> list[dict]:
        query = select(DailyTask).where(DailyTask.user_id == child_id, DailyTask.created_at >= since)
        if until is not None:
            query = query.where(DailyTask.created_at < until)
        async with self.session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_task_row(t) for t in rows]

    async def fetch_learning_goals(self, child_id: str, status: str | None = None) -> list[dict]:
        query = select(LearningGoalRow).where(LearningGoalRow.user_id == child_id)
        if status is not None:
            query = query.where(LearningGoalRow.status == status)
        async with self.session_factory() as session:
            rows = (await session.execute(query.order_by(LearningGoalRow.created_at))).scalars().all()
        return [
            {
                "id": g.id,
                "description": g.description,
                "subject": g.subject,
                "target_mastery": g.target_mastery,
                "status": g.status,
                "created_at": _aware(g.created_at),
            }
            for g in rows
        ]

    async def list_memory(self, child_id: str) -> list[MemoryEntry]:
        async with self.session_factory() as session:
            rows = (
                await session.execute(select(ChildMemory).where(ChildMemory.child_id == child_id))
            ).scalars().all()
        return [_to_entry(r) for r in rows]

    async def get_memory(self, memory_id: str) -> MemoryEntry | None:
        async with self.session_factory() as session:
            row = await session.get(ChildMemory, memory_id)
        return _to_entry(row) if row is not None else None

    async def find_memory(self, child_id: str, layer: MemoryLayer, key: str) -> MemoryEntry | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(ChildMemory).where(
                        ChildMemory.child_id == child_id,
                        ChildMemory.memory_layer == MemoryLayer(layer).value,
                        ChildMemory.memory_key == key,
                    )
                )
            ).scalar_one_or_none()
        return _to_entry(row) if row is not None else None

    async def upsert_memory(self, entry: MemoryEntry) -> MemoryEntry:
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(ChildMemory, entry.id)
                if row is None:
                    row = (
                        await session.execute(
                            select(ChildMemory).where(
                                ChildMemory.child_id == entry.child_id,
                                ChildMemory.memory_layer == entry.layer.value,
                                ChildMemory.memory_key == entry.key,
                            )
                        )
                    ).scalar_one_or_none()
                if row is None:
                    row = ChildMemory(id=entry.id)
                    session.add(row)
                row.child_id = entry.child_id
                row.memory_layer = entry.layer.value
                row.memory_key = entry.key
                row.memory_content = dict(entry.content)
                row.status = entry.status.value
                row.confidence = entry.confidence.value
                row.evidence_count = entry.evidence_count
                row.first_observed = entry.first_observed
                row.last_updated = entry.last_updated
                row.last_confirmed = entry.last_confirmed
                row.expires_at = entry.expires_at
            saved = _to_entry(row)
        return saved
