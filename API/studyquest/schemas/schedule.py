from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class LearningPeriod(str, Enum):
    SCHOOL = "school"
    EXAM_PREP = "exam_prep"
    VACATION = "vacation"


class EffectiveMode(str, Enum):
    DAILY_LIGHT = "daily_light"
    WEEKEND_REVIEW = "weekend_review"
    EXAM_PREP = "exam_prep"
    VACATION = "vacation"


class MaterialType(str, Enum):
    COMPLETED_EXAM = "completed_exam"
    BLANK_EXAM = "blank_exam"
    COMPLETED_HOMEWORK = "completed_homework"
    BLANK_HOMEWORK = "blank_homework"
    ESSAY_PROMPT = "essay_prompt"
    STUDENT_ESSAY = "student_essay"
    TEXTBOOK_NOTES = "textbook_notes"
    REVIEW_SUMMARY = "review_summary"


class FrontMode(str, Enum):
    NO_LEARNING = "no_learning"
    MICRO_REMINDER = "micro_reminder"
    FEEDBACK_ONLY = "feedback_only"
    PRACTICE = "practice"


class LearningDecision(BaseModel):
    front_mode: FrontMode
    question_count: int = Field(0, ge=0)
    should_save_to_memory: bool = True
    focus_message: str = ""


class ValidationReport(BaseModel):
    valid: bool
    violations: list[str] = Field(default_factory=list)


class ScheduleResolution(BaseModel):
    effective_mode: EffectiveMode
    learning_decision: LearningDecision | None = None


class WeeklyWeakPoint(BaseModel):
    knowledge_point: str
    error_count: int = Field(0, ge=0)
    last_error_date: datetime
    is_new: bool = Field(True, description="First went wrong this week")


class CarryoverPoint(BaseModel):
    knowledge_point: str
    weeks_unmastered: int = 2
    last_error_date: datetime


class WeeklyReviewSummary(BaseModel):
    week_start: datetime
    weak_points: list[WeeklyWeakPoint] = Field(default_factory=list)
    carryover_points: list[CarryoverPoint] = Field(default_factory=list)
    total_tasks_completed: int = Field(0, ge=0)
    suggested_practice_minutes: int = Field(10, ge=0)
