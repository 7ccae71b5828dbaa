"""
Schedule Resolver: learning-burden scheduling.

Maps the caregiver-set learning period and the calendar date to an effective
mode, maps (material type, mode) to a bounded learning decision, and checks
generated content against the hard constraints that hold in every mode.
"""
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any

from studyquest.core.logging import DOMAIN_SCHEDULING, get_domain_logger
from studyquest.schemas.schedule import (
    CarryoverPoint,
    EffectiveMode,
    FrontMode,
    LearningDecision,
    LearningPeriod,
    MaterialType,
    ScheduleResolution,
    ValidationReport,
    WeeklyReviewSummary,
    WeeklyWeakPoint,
)

logger = get_domain_logger(__name__, DOMAIN_SCHEDULING)


def _span(start: str, days: int) -> list[str]:
    first = date.fromisoformat(start)
    return [(first + timedelta(days=offset)).isoformat() for offset in range(days)]


# Mainland China public holidays, 2024-2026.
PUBLIC_HOLIDAYS: frozenset[str] = frozenset(
    [
        "2024-01-01",
        *_span("2024-02-10", 8),
        *_span("2024-04-04", 3),
        *_span("2024-05-01", 5),
        *_span("2024-06-08", 3),
        *_span("2024-09-15", 3),
        *_span("2024-10-01", 7),
        "2025-01-01",
        *_span("2025-01-28", 8),
        *_span("2025-04-04", 3),
        *_span("2025-05-01", 5),
        *_span("2025-05-31", 3),
        *_span("2025-10-01", 7),
        *_span("2026-01-01", 3),
        *_span("2026-02-17", 7),
        *_span("2026-04-05", 3),
        *_span("2026-05-01", 5),
        *_span("2026-06-19", 3),
        *_span("2026-09-25", 3),
        *_span("2026-10-01", 7),
    ]
)

FORBIDDEN_WORDS = ("测试", "考核", "评估", "排名", "正确率", "对比", "再来一题", "继续挑战")

DAILY_LIGHT_MAX_QUESTIONS = 3
EXAM_PREP_RANGE = (6, 12)
VACATION_RANGE = (10, 15)
DEFAULT_RANGE = (3, 8)

MODE_NAMES = {
    EffectiveMode.DAILY_LIGHT: "日常轻量",
    EffectiveMode.WEEKEND_REVIEW: "周末整理",
    EffectiveMode.EXAM_PREP: "复习备考",
    EffectiveMode.VACATION: "假期深度",
}

PERIOD_NAMES = {
    LearningPeriod.SCHOOL: "上学期",
    LearningPeriod.EXAM_PREP: "复习期",
    LearningPeriod.VACATION: "放假中",
}

_P = FrontMode.PRACTICE
_F = FrontMode.FEEDBACK_ONLY
_N = FrontMode.NO_LEARNING
_M = FrontMode.MICRO_REMINDER
_DL = EffectiveMode.DAILY_LIGHT
_WR = EffectiveMode.WEEKEND_REVIEW
_EP = EffectiveMode.EXAM_PREP
_VA = EffectiveMode.VACATION

DECISION_MATRIX: dict[MaterialType, dict[EffectiveMode, tuple[FrontMode, int, str]]] = {
    MaterialType.COMPLETED_EXAM: {
        _DL: (_M, 0, "已分析错题，存入记忆"),
        _WR: (_P, 8, "根据错题生成巩固练习"),
        _EP: (_P, 12, "错题专项强化"),
        _VA: (_P, 15, "系统性错题复习"),
    },
    MaterialType.BLANK_EXAM: {
        _DL: (_N, 0, "已整理知识点，先完成试卷"),
        _WR: (_P, 5, "知识点预热练习"),
        _EP: (_P, 10, "模拟练习"),
        _VA: (_P, 12, "完整模拟训练"),
    },
    MaterialType.COMPLETED_HOMEWORK: {
        _DL: (_N, 0, "作业完成，今日学习已结束"),
        _WR: (_P, 5, "作业错题巩固"),
        _EP: (_P, 8, "薄弱点强化"),
        _VA: (_P, 10, "知识点拓展"),
    },
    MaterialType.BLANK_HOMEWORK: {
        _DL: (_N, 0, "请先完成作业"),
        _WR: (_P, 5, "知识点练习"),
        _EP: (_P, 10, "专项练习"),
        _VA: (_P, 15, "完整练习"),
    },
    MaterialType.ESSAY_PROMPT: {
        _DL: (_F, 0, "作文审题解析 + 范文参考"),
        _WR: (_F, 0, "作文审题解析 + 范文参考"),
        _EP: (_F, 0, "作文审题 + 范文 + 写作建议"),
        _VA: (_F, 0, "深度解析 + 多角度范文"),
    },
    MaterialType.STUDENT_ESSAY: {
        _DL: (_F, 0, "作文评析：亮点 + 改进建议"),
        _WR: (_F, 0, "作文评析 + 修改示范"),
        _EP: (_F, 0, "详细评析 + 升格示范"),
        _VA: (_F, 0, "深度评析 + 建议重写"),
    },
    MaterialType.TEXTBOOK_NOTES: {
        _DL: (_N, 0, "知识点已存档"),
        _WR: (_P, 5, "知识点理解题"),
        _EP: (_P, 10, "知识点深化练习"),
        _VA: (_P, 12, "系统性练习"),
    },
    MaterialType.REVIEW_SUMMARY: {
        _DL: (_N, 0, "复习资料已存档，周末使用"),
        _WR: (_P, 8, "复习巩固练习"),
        _EP: (_P, 12, "全面复习练习"),
        _VA: (_P, 15, "深度复习 + 拓展"),
    },
}

UNMAPPED_DECISION = (FrontMode.NO_LEARNING, 0, "已记录")

WEEKLY_WEAK_POINT_LIMIT = 5
WEEKLY_CARRYOVER_LIMIT = 3
REVIEW_MINUTES_RANGE = (10, 45)
MINUTES_PER_WEAK_POINT = 5
MINUTES_PER_CARRYOVER = 8
UNCATEGORIZED_POINT = "未分类"


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def is_public_holiday(day: date | datetime | str) -> bool:
    return _as_date(day).isoformat() in PUBLIC_HOLIDAYS


def is_weekend(day: date | datetime | str) -> bool:
    return _as_date(day).weekday() >= 5


def effective_mode(period: LearningPeriod | str, day: date | datetime | str | None = None) -> EffectiveMode:
    """Resolve today's operating mode; only the school period depends on the date."""
    period = LearningPeriod(period)
    if period == LearningPeriod.EXAM_PREP:
        return EffectiveMode.EXAM_PREP
    if period == LearningPeriod.VACATION:
        return EffectiveMode.VACATION
    current = _as_date(day or date.today())
    if is_weekend(current) or is_public_holiday(current):
        return EffectiveMode.WEEKEND_REVIEW
    return EffectiveMode.DAILY_LIGHT


def decide(material_type: MaterialType | str, mode: EffectiveMode | str) -> LearningDecision:
    try:
        cell = DECISION_MATRIX[MaterialType(material_type)][EffectiveMode(mode)]
    except (KeyError, ValueError):
        logger.info("No schedule cell for material=%s mode=%s, using safe default", material_type, mode)
        cell = UNMAPPED_DECISION
    front_mode, question_count, focus_message = cell
    return LearningDecision(
        front_mode=front_mode,
        question_count=question_count,
        should_save_to_memory=True,
        focus_message=focus_message,
    )


def question_range(mode: EffectiveMode | str) -> tuple[int, int]:
    mode = EffectiveMode(mode)
    if mode == EffectiveMode.EXAM_PREP:
        return EXAM_PREP_RANGE
    if mode == EffectiveMode.VACATION:
        return VACATION_RANGE
    return DEFAULT_RANGE


def dynamic_question_count(
    base_count: int,
    mastery: float = 0.7,
    error_rate: float = 0.2,
    mode: EffectiveMode | str = EffectiveMode.WEEKEND_REVIEW,
) -> int:
    """Scale a matrix question count by mastery and recent error rate, clamped to the mode range.

    High mastery trims the count (factor 1.0 down to 0.7); a high error rate
    grows it (factor 1.0 up to 1.5).
    """
    if base_count <= 0:
        return 0
    low, high = question_range(mode)
    mastery_factor = 1 - (mastery * 0.3)
    error_factor = 1 + (error_rate * 0.5)
    adjusted = math.floor(base_count * mastery_factor * error_factor + 0.5)
    return max(low, min(high, adjusted))


def validate(text: str, question_count: int, mode: EffectiveMode | str) -> ValidationReport:
    mode = EffectiveMode(mode)
    violations: list[str] = []
    for word in FORBIDDEN_WORDS:
        if word in (text or ""):
            violations.append(f'禁止词: "{word}"')
    if mode == EffectiveMode.DAILY_LIGHT and question_count > DAILY_LIGHT_MAX_QUESTIONS:
        violations.append(f"日常模式题目超过 {DAILY_LIGHT_MAX_QUESTIONS} 道")
    if mode == EffectiveMode.EXAM_PREP and question_count > EXAM_PREP_RANGE[1]:
        violations.append(f"复习模式题目超过 {EXAM_PREP_RANGE[1]} 道")
    return ValidationReport(valid=not violations, violations=violations)


def _collect_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return "\n".join(_collect_text(v) for v in value.values())
    if isinstance(value, list):
        return "\n".join(_collect_text(v) for v in value)
    return ""


def enforce_learning_decision(payload: dict, decision: LearningDecision, mode: EffectiveMode | str) -> dict:
    """Clamp a generated payload to what the learning decision allows.

    Questions are dropped outright unless the front mode is ``practice`` and
    capped at the decision's question count otherwise. The validation report
    of the surviving content is attached under ``_constraints``.
    """
    result = dict(payload or {})
    challenge = dict(result.get("daily_challenge") or {})
    questions = list(challenge.get("questions") or [])
    allowed = decision.question_count if decision.front_mode == FrontMode.PRACTICE else 0
    if len(questions) > allowed:
        logger.info("Trimming generated questions from %s to %s (front_mode=%s)", len(questions), allowed, decision.front_mode.value)
        questions = questions[:allowed]
    challenge["questions"] = questions
    result["daily_challenge"] = challenge
    report = validate(_collect_text(result), len(questions), mode)
    if not report.valid:
        logger.warning("Generated content violates schedule constraints: %s", report.violations)
    result["_constraints"] = {
        "front_mode": decision.front_mode.value,
        "allowed_questions": allowed,
        "valid": report.valid,
        "violations": report.violations,
    }
    return result


def resolve_schedule(
    period: LearningPeriod | str,
    day: date | datetime | str | None = None,
    material_type: MaterialType | str | None = None,
) -> ScheduleResolution:
    mode = effective_mode(period, day)
    decision = decide(material_type, mode) if material_type else None
    return ScheduleResolution(effective_mode=mode, learning_decision=decision)


def mode_name(mode: EffectiveMode | str) -> str:
    return MODE_NAMES.get(EffectiveMode(mode), str(mode))


def period_name(period: LearningPeriod | str) -> str:
    return PERIOD_NAMES.get(LearningPeriod(period), str(period))


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def week_start(now: datetime) -> datetime:
    """Midnight of the Monday that opens the week containing ``now``."""
    now = _aware(now)
    monday = now.date() - timedelta(days=now.weekday())
    return datetime(monday.year, monday.month, monday.day, tzinfo=now.tzinfo)


def _error_points(answers: list[dict]) -> dict[str, list[datetime]]:
    points: dict[str, list[datetime]] = {}
    for answer in answers:
        if answer.get("is_correct"):
            continue
        points.setdefault(answer.get("knowledge_point") or UNCATEGORIZED_POINT, []).append(answer["created_at"])
    return points


def summarize_weekly_review(
    answers: list[dict],
    completed_tasks: int,
    now: datetime,
) -> WeeklyReviewSummary:
    """Weekend review material drawn from this week's and last week's wrong answers.

    ``answers`` covers at least the last two weeks (rows carry ``is_correct``,
    ``knowledge_point`` and ``created_at``). A weak point is new when it had no
    wrong answer last week; points wrong in both weeks are carried over.
    """
    start = week_start(now)
    previous_start = start - timedelta(days=7)
    rows = [{**a, "created_at": _aware(a["created_at"])} for a in answers]
    this_week = _error_points([a for a in rows if a["created_at"] >= start])
    last_week = _error_points([a for a in rows if previous_start <= a["created_at"] < start])

    weak_points = sorted(
        (
            WeeklyWeakPoint(
                knowledge_point=point,
                error_count=len(dates),
                last_error_date=max(dates),
                is_new=point not in last_week,
            )
            for point, dates in this_week.items()
        ),
        key=lambda p: p.error_count,
        reverse=True,
    )[:WEEKLY_WEAK_POINT_LIMIT]
    carryover = [
        CarryoverPoint(knowledge_point=point, weeks_unmastered=2, last_error_date=max(this_week[point]))
        for point in last_week
        if point in this_week
    ][:WEEKLY_CARRYOVER_LIMIT]

    low, high = REVIEW_MINUTES_RANGE
    minutes = len(weak_points) * MINUTES_PER_WEAK_POINT + len(carryover) * MINUTES_PER_CARRYOVER
    summary = WeeklyReviewSummary(
        week_start=start,
        weak_points=weak_points,
        carryover_points=carryover,
        total_tasks_completed=completed_tasks,
        suggested_practice_minutes=max(low, min(high, minutes)),
    )
    logger.info(
        "Weekly review weak=%s carryover=%s minutes=%s",
        len(weak_points),
        len(carryover),
        summary.suggested_practice_minutes,
    )
    return summary
