from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BehaviorTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class EmotionSignal(str, Enum):
    NEUTRAL = "neutral"
    FRUSTRATION = "frustration"
    AVOIDANCE = "avoidance"
    FATIGUE = "fatigue"
    LOW_MOOD = "low_mood"
    ENGAGED = "engaged"


class MemoryLayer(str, Enum):
    EPHEMERAL = "ephemeral"
    HYPOTHESIS = "hypothesis"
    STABLE = "stable"


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    SUSPECTED = "suspected"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


CONFIDENCE_ORDER = {ConfidenceLevel.LOW: 1, ConfidenceLevel.MEDIUM: 2, ConfidenceLevel.HIGH: 3}


class ChildProfile(BaseModel):
    id: str
    name: str = "孩子"
    grade_level: int | None = None
    total_xp: int = 0
    streak_days: int = 0


class MasteryStats(BaseModel):
    avg_mastery: float = Field(0.5, ge=0.0, le=1.0)
    weak_points: list[str] = Field(default_factory=list, description="Ascending mastery")
    strong_points: list[str] = Field(default_factory=list)
    recent_error_rate: float = Field(0.0, ge=0.0, le=1.0)
    total_points: int = Field(0, ge=0)
    mastered_count: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _mastered_within_total(self) -> "MasteryStats":
        if self.mastered_count > self.total_points:
            raise ValueError("mastered_count cannot exceed total_points")
        return self


class BehaviorSignals(BaseModel):
    abandon_rate: float = Field(0.0, ge=0.0, le=1.0)
    avg_completion_time: float = Field(0.0, ge=0.0, description="Seconds")
    trend: BehaviorTrend = BehaviorTrend.STABLE
    recent_tasks_completed: int = Field(0, ge=0)


class MemoryEntry(BaseModel):
    id: str
    child_id: str
    layer: MemoryLayer
    key: str
    content: dict[str, Any] = Field(default_factory=dict)
    status: MemoryStatus = MemoryStatus.ACTIVE
    confidence: ConfidenceLevel = ConfidenceLevel.LOW
    evidence_count: int = 1
    first_observed: datetime
    last_updated: datetime
    last_confirmed: datetime | None = None
    expires_at: datetime | None = None


class MemoryLayers(BaseModel):
    ephemeral: list[MemoryEntry] = Field(default_factory=list)
    hypotheses: list[MemoryEntry] = Field(default_factory=list)
    stable: list[MemoryEntry] = Field(default_factory=list)


class EmotionRecord(BaseModel):
    emotion: str  # happy | calm | tired | frustrated
    score_percentage: float = 0.0
    task_id: str | None = None
    created_at: datetime


class EmotionTrend(BaseModel):
    recent_emotions: list[EmotionRecord] = Field(default_factory=list)
    dominant_emotion: str | None = None
    frustration_streak: int = 0
    needs_lightening: bool = False
    has_enough_data: bool = False


class ChildContext(BaseModel):
    """Immutable per-cycle snapshot of everything the decision engine reads."""

    model_config = ConfigDict(frozen=True)

    profile: ChildProfile
    mastery_stats: MasteryStats
    behavior_signals: BehaviorSignals
    emotion_signal: EmotionSignal = EmotionSignal.NEUTRAL
    active_hypotheses: tuple[MemoryEntry, ...] = ()
    stable_patterns: tuple[MemoryEntry, ...] = ()


class HistoryMetric(str, Enum):
    ACCURACY = "accuracy"
    COMPLETION_RATE = "completion_rate"
    MASTERY = "mastery"


class MetricComparison(BaseModel):
    metric: HistoryMetric
    period_days: int
    current_value: float | None = None
    historical_value: float | None = None
    change: float | None = None
    trend: BehaviorTrend | None = Field(None, description="None when either window has no data")
    interpretation: str = ""


class LearningGoal(BaseModel):
    id: str
    description: str
    subject: str | None = None
    target_mastery: float = Field(0.8, ge=0.0, le=1.0)
    current_mastery: float = Field(0.0, ge=0.0, le=1.0)
    progress: float = Field(0.0, ge=0.0, le=1.0)
    status: str = "active"  # active | completed | paused
    created_at: datetime | None = None
