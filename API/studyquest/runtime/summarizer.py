"""Shrinks oversized tool outputs before they go back into the model history.

Only the history copy is summarized; the audit trace always keeps the full result.
"""
import json
from typing import Any, Callable

from studyquest.core.settings import settings
from studyquest.tools.base import ToolName, ToolResult

MAX_REASON_CHARS = 100
MAX_GENERIC_KEYS = 5


def _summarize_full_context(data: dict) -> dict:
    context = data.get("context") or {}
    mastery = context.get("mastery_stats") or {}
    behavior = context.get("behavior_signals") or {}
    intent = data.get("teaching_intent") or {}
    memory = data.get("memory_summary") or {}
    avg = mastery.get("avg_mastery")
    return {
        "_summarized": True,
        "profile": (
            f"掌握度{round(avg * 100) if isinstance(avg, (int, float)) else '?'}%, "
            f"情绪{context.get('emotion_signal') or '正常'}, 趋势{behavior.get('trend') or '稳定'}"
        ),
        "teaching_intent": (
            f"{intent['type']}({intent.get('question_count')}题, {intent.get('difficulty_level')}难度)" if intent else "未决定"
        ),
        "weak_points_count": len(mastery.get("weak_points") or []),
        "memory_patterns": len(memory.get("stable_patterns") or []),
    }


def _summarize_student_context(data: dict) -> dict:
    mastery = data.get("mastery_stats") or {}
    return {
        "_summarized": True,
        "mastery": mastery.get("avg_mastery"),
        "error_rate": mastery.get("recent_error_rate"),
        "emotion": data.get("emotion_signal"),
        "trend": (data.get("behavior_signals") or {}).get("trend"),
    }


def _summarize_memory_summary(data: dict) -> dict:
    return {
        "_summarized": True,
        "stable_patterns_count": len(data.get("stable_patterns") or []),
        "active_hypotheses_count": len(data.get("active_hypotheses") or []),
        "recent_observations_count": len(data.get("recent_observations") or []),
    }


def _summarize_generated(data: dict) -> dict:
    challenge = data.get("daily_challenge") or data
    analysis = data.get("analysis") or {}
    reading = challenge.get("reading_material") or {}
    return {
        "_summarized": True,
        "title": reading.get("title") or challenge.get("title") or analysis.get("subject") or "已生成",
        "questions_count": len(challenge.get("questions") or []),
        "subject": analysis.get("subject") or "未分类",
        "success": True,
    }


def _summarize_intent(data: dict) -> dict:
    return {
        "_summarized": True,
        "type": data.get("type"),
        "reason": (data.get("reason") or "")[:MAX_REASON_CHARS],
        "question_count": data.get("question_count"),
        "difficulty": data.get("difficulty_level"),
    }


def _summarize_weekly_review(data: dict) -> dict:
    return {
        "_summarized": True,
        "weak_points": [p.get("knowledge_point") for p in data.get("weak_points") or []],
        "carryover_points": [p.get("knowledge_point") for p in data.get("carryover_points") or []],
        "suggested_practice_minutes": data.get("suggested_practice_minutes"),
    }


SUMMARIZERS: dict[ToolName, Callable[[dict], dict]] = {
    ToolName.GET_FULL_CONTEXT: _summarize_full_context,
    ToolName.GET_STUDENT_CONTEXT: _summarize_student_context,
    ToolName.GET_MEMORY_SUMMARY: _summarize_memory_summary,
    ToolName.GENERATE_READING_MATERIAL: _summarize_generated,
    ToolName.PROCESS_FULL_UPLOAD_TASK: _summarize_generated,
    ToolName.DECIDE_TEACHING_INTENT: _summarize_intent,
    ToolName.GET_WEEKLY_REVIEW_SUMMARY: _summarize_weekly_review,
}


def _generic(data: Any, original_length: int) -> dict:
    keys = list(data.keys())[:MAX_GENERIC_KEYS] if isinstance(data, dict) else []
    return {"_summarized": True, "success": True, "data_keys": keys, "original_length": original_length}


def serialized_length(data: Any) -> int:
    return len(json.dumps(data, ensure_ascii=False, default=str))


def summarize_tool_output(tool_name: str, result: ToolResult, threshold: int | None = None) -> Any:
    """Return the history-safe form of a tool result."""
    limit = settings.tool_output_summary_threshold if threshold is None else threshold
    if not result.success:
        error = result.error or ""
        return {"error": error if len(error) <= limit else error[:limit] + "..."}
    size = serialized_length(result.data)
    if size <= limit:
        return result.data
    try:
        summarizer = SUMMARIZERS.get(ToolName(tool_name))
    except ValueError:
        summarizer = None
    if summarizer is None or not isinstance(result.data, dict):
        return _generic(result.data, size)
    return summarizer(result.data)
