from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class IntentType(str, Enum):
    REINFORCE = "reinforce"
    VERIFY = "verify"
    CHALLENGE = "challenge"
    LIGHTEN = "lighten"
    INTRODUCE = "introduce"
    PAUSE = "pause"


class DifficultyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CaregiverSignal(BaseModel):
    type: str = Field(..., description="emotion_report | schedule_change | ...")
    content: str = ""


class TeachingIntent(BaseModel):
    type: IntentType
    reason: str
    focus_knowledge_points: list[str] = Field(default_factory=list)
    question_count: int = Field(0, ge=0)
    difficulty_level: DifficultyLevel = DifficultyLevel.LOW

    @model_validator(mode="after")
    def _pause_has_no_questions(self) -> "TeachingIntent":
        if self.type == IntentType.PAUSE and self.question_count != 0:
            raise ValueError("a pause intent cannot carry questions")
        return self


class IntentRequest(BaseModel):
    caregiver_signal: CaregiverSignal | None = None


class EmotionAdvice(BaseModel):
    """Intent hint drawn from recorded moods alone, shown next to the full decision."""

    suggested_intent: Literal["lighten", "challenge", "normal"] = "normal"
    reason: str = ""
