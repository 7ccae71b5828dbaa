from abc import ABC, abstractmethod
from datetime import datetime, timezone

from studyquest.agents.signals import (
    compute_behavior_signals,
    compute_mastery_stats,
    compute_recent_error_rate,
    summarize_emotion_trend,
    window_start,
)
from studyquest.schemas.context import (
    BehaviorSignals,
    ChildProfile,
    EmotionRecord,
    EmotionTrend,
    MasteryStats,
    MemoryEntry,
    MemoryLayer,
    MemoryLayers,
    MemoryStatus,
)

# Statuses that still describe the child; resolved and expired entries are history.
LIVE_STATUSES = (MemoryStatus.ACTIVE, MemoryStatus.SUSPECTED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_layers(entries: list[MemoryEntry]) -> MemoryLayers:
    live = [e for e in entries if e.status in LIVE_STATUSES]
    return MemoryLayers(
        ephemeral=[e for e in live if e.layer == MemoryLayer.EPHEMERAL],
        hypotheses=[e for e in live if e.layer == MemoryLayer.HYPOTHESIS],
        stable=[e for e in live if e.layer == MemoryLayer.STABLE],
    )


class LearnerRepository(ABC):
    """Data-access seam for everything the teaching core reads or writes about a child.

    Fetchers return typed snapshots and may raise; callers that must not fail
    (the context aggregator, reader tools) absorb errors into defaults.
    """

    @abstractmethod
    async def fetch_profile(self, child_id: str) -> ChildProfile | None:
        raise NotImplementedError

    @abstractmethod
    async def fetch_mastery(self, child_id: str, now: datetime | None = None) -> MasteryStats:
        raise NotImplementedError

    @abstractmethod
    async def fetch_behavior(self, child_id: str, now: datetime | None = None) -> BehaviorSignals:
        raise NotImplementedError

    @abstractmethod
    async def fetch_emotion_trend(self, child_id: str, now: datetime | None = None) -> EmotionTrend:
        raise NotImplementedError

    @abstractmethod
    async def list_memory(self, child_id: str) -> list[MemoryEntry]:
        """Every memory row of the child, any status."""
        raise NotImplementedError

    @abstractmethod
    async def get_memory(self, memory_id: str) -> MemoryEntry | None:
        raise NotImplementedError

    @abstractmethod
    async def find_memory(self, child_id: str, layer: MemoryLayer, key: str) -> MemoryEntry | None:
        raise NotImplementedError

    @abstractmethod
    async def upsert_memory(self, entry: MemoryEntry) -> MemoryEntry:
        """Insert or replace by ``(child_id, layer, key)``."""
        raise NotImplementedError

    async def fetch_memory(self, child_id: str) -> MemoryLayers:
        return split_layers(await self.list_memory(child_id))

    async def fetch_knowledge_points(self, child_id: str) -> list[dict]:
        return []

    async def fetch_answers(self, child_id: str, since: datetime, until: datetime | None = None) -> list[dict]:
        """Answer rows (``is_correct``, ``knowledge_point``, ``created_at``) created in ``[since, until)``, oldest first."""
        return []

    async def fetch_tasks(self, child_id: str, since: datetime, until: datetime | None = None) -> list[dict]:
        """Task rows (``status``, ``created_at``, ``started_at``, ``completed_at``) created in ``[since, until)``."""
        return []

    async def fetch_learning_goals(self, child_id: str, status: str | None = None) -> list[dict]:
        return []


class InMemoryLearnerRepository(LearnerRepository):
    """Dict-backed repository for tests and offline runs."""

    def __init__(self):
        self.profiles: dict[str, ChildProfile] = {}
        self.mastery_rows: dict[str, list[dict]] = {}
        self.answers: dict[str, list[dict]] = {}
        self.tasks: dict[str, list[dict]] = {}
        self.emotions: dict[str, list[EmotionRecord]] = {}
        self.memories: dict[str, MemoryEntry] = {}
        self.goals: dict[str, list[dict]] = {}

    def add_profile(self, profile: ChildProfile) -> None:
        self.profiles[profile.id] = profile

    def add_mastery(self, child_id: str, name: str, mastery_level: float, subject: str | None = None) -> None:
        self.mastery_rows.setdefault(child_id, []).append(
            {"name": name, "mastery_level": mastery_level, "subject": subject}
        )

    def add_answer(
        self,
        child_id: str,
        is_correct: bool,
        created_at: datetime | None = None,
        knowledge_point: str | None = None,
    ) -> None:
        self.answers.setdefault(child_id, []).append(
            {"is_correct": is_correct, "knowledge_point": knowledge_point, "created_at": created_at or utcnow()}
        )

    def add_task(self, child_id: str, **task) -> None:
        task.setdefault("created_at", utcnow())
        self.tasks.setdefault(child_id, []).append(task)

    def add_emotion(self, child_id: str, record: EmotionRecord) -> None:
        self.emotions.setdefault(child_id, []).append(record)

    def add_goal(self, child_id: str, **goal) -> None:
        goal.setdefault("id", f"goal_{len(self.goals.get(child_id, [])) + 1}")
        goal.setdefault("status", "active")
        goal.setdefault("created_at", utcnow())
        self.goals.setdefault(child_id, []).append(goal)

    async def fetch_profile(self, child_id: str) -> ChildProfile | None:
        return self.profiles.get(child_id)

    async def fetch_mastery(self, child_id: str, now: datetime | None = None) -> MasteryStats:
        since = window_start(now or utcnow())
        recent = [a for a in self.answers.get(child_id, []) if _aware(a["created_at"]) >= since]
        return compute_mastery_stats(self.mastery_rows.get(child_id, []), compute_recent_error_rate(recent))

    async def fetch_behavior(self, child_id: str, now: datetime | None = None) -> BehaviorSignals:
        now = now or utcnow()
        since = window_start(now)
        recent = [t for t in self.tasks.get(child_id, []) if _aware(t["created_at"]) >= since]
        return compute_behavior_signals(recent, now)

    async def fetch_emotion_trend(self, child_id: str, now: datetime | None = None) -> EmotionTrend:
        since = window_start(now or utcnow())
        recent = [r for r in self.emotions.get(child_id, []) if _aware(r.created_at) >= since]
        return summarize_emotion_trend(recent)

    async def fetch_knowledge_points(self, child_id: str) -> list[dict]:
        return [dict(row) for row in self.mastery_rows.get(child_id, [])]

    async def fetch_answers(self, child_id: str, since: datetime, until: datetime | None = None) -> list[dict]:
        rows = [a for a in self.answers.get(child_id, []) if _within(a["created_at"], since, until)]
        return sorted((dict(a) for a in rows), key=lambda a: _aware(a["created_at"]))

    async def fetch_tasks(self, child_id: str, since: datetime, until: datetime | None = None) -> list[dict]:
        return [dict(t) for t in self.tasks.get(child_id, []) if _within(t["created_at"], since, until)]

    async def fetch_learning_goals(self, child_id: str, status: str | None = None) -> list[dict]:
        return [dict(g) for g in self.goals.get(child_id, []) if status is None or g["status"] == status]

    async def list_memory(self, child_id: str) -> list[MemoryEntry]:
        return [e for e in self.memories.values() if e.child_id == child_id]

    async def get_memory(self, memory_id: str) -> MemoryEntry | None:
        return self.memories.get(memory_id)

    async def find_memory(self, child_id: str, layer: MemoryLayer, key: str) -> MemoryEntry | None:
        for entry in self.memories.values():
            if entry.child_id == child_id and entry.layer == layer and entry.key == key:
                return entry
        return None

    async def upsert_memory(self, entry: MemoryEntry) -> MemoryEntry:
        existing = await self.find_memory(entry.child_id, entry.layer, entry.key)
        if existing is not None and existing.id != entry.id:
            self.memories.pop(existing.id, None)
        self.memories[entry.id] = entry
        return entry


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _within(value: datetime, since: datetime, until: datetime | None) -> bool:
    value = _aware(value)
    return value >= _aware(since) and (until is None or value < _aware(until))
