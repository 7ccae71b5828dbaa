import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from studyquest.models.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Child(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    grade_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    learning_period: Mapped[str] = mapped_column(String(32), nullable=False, default="school")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class KnowledgeMastery(Base):
    __tablename__ = "knowledge_mastery"
    __table_args__ = (
        Index("idx_knowledge_mastery_user_id", "user_id"),
        UniqueConstraint("user_id", "knowledge_point_name", name="uq_knowledge_mastery_user_point"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    knowledge_point_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mastery_level: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AnswerRecord(Base):
    __tablename__ = "answer_records"
    __table_args__ = (Index("idx_answer_records_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    knowledge_point_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DailyTask(Base):
    __tablename__ = "daily_tasks"
    __table_args__ = (Index("idx_daily_tasks_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")  # pending | in_progress | completed | skipped
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ChildMemory(Base):
    __tablename__ = "child_memory"
    __table_args__ = (
        UniqueConstraint("child_id", "memory_key", "memory_layer", name="uq_child_memory_key_layer"),
        Index("idx_child_memory_child_status", "child_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    child_id: Mapped[str] = mapped_column(String(64), nullable=False)
    memory_layer: Mapped[str] = mapped_column(String(16), nullable=False)
    memory_key: Mapped[str] = mapped_column(String(255), nullable=False)
    memory_content: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    confidence: Mapped[str] = mapped_column(String(8), nullable=False, default="low")
    evidence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_observed: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_confirmed: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EmotionRecordRow(Base):
    __tablename__ = "emotion_record"
    __table_args__ = (Index("idx_emotion_record_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    emotion: Mapped[str] = mapped_column(String(16), nullable=False)  # happy | calm | tired | frustrated
    score_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LearningGoalRow(Base):
    __tablename__ = "learning_goals"
    __table_args__ = (Index("idx_learning_goals_user_status", "user_id", "status"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_mastery: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")  # active | completed | paused
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
