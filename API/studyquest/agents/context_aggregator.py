import asyncio
from datetime import datetime
from typing import Any

from studyquest.agents.base import BaseAgent
from studyquest.agents.intent_engine import emotion_based_intent
from studyquest.core.logging import DOMAIN_CONTEXT, get_domain_logger
from studyquest.memory.repository import LearnerRepository, utcnow
from studyquest.schemas.context import (
    BehaviorSignals,
    BehaviorTrend,
    ChildContext,
    ChildProfile,
    EmotionSignal,
    EmotionTrend,
    MasteryStats,
    MemoryLayers,
)
from studyquest.schemas.intent import EmotionAdvice

logger = get_domain_logger(__name__, DOMAIN_CONTEXT)

_HYPOTHESIS_EMOTION_KEYS = (
    ("fatigue", EmotionSignal.FATIGUE),
    ("frustration", EmotionSignal.FRUSTRATION),
    ("avoidance", EmotionSignal.AVOIDANCE),
)
_DOMINANT_EMOTION_SIGNAL = {
    "frustrated": EmotionSignal.FRUSTRATION,
    "tired": EmotionSignal.FATIGUE,
    "happy": EmotionSignal.ENGAGED,
}


def infer_emotion_signal(
    behavior: BehaviorSignals,
    memory: MemoryLayers,
    emotion_trend: EmotionTrend | None = None,
) -> EmotionSignal:
    """Derive the emotion signal: recorded moods, then hypotheses, then behavior."""
    if emotion_trend is not None and emotion_trend.has_enough_data and emotion_trend.recent_emotions:
        if emotion_trend.needs_lightening:
            return EmotionSignal.LOW_MOOD if emotion_trend.frustration_streak >= 3 else EmotionSignal.FATIGUE
        mapped = _DOMINANT_EMOTION_SIGNAL.get(emotion_trend.dominant_emotion or "")
        if mapped is not None:
            return mapped

    for hypothesis in memory.hypotheses:
        if any(marker in hypothesis.key for marker, _ in _HYPOTHESIS_EMOTION_KEYS):
            for marker, signal in _HYPOTHESIS_EMOTION_KEYS:
                if marker in hypothesis.key:
                    return signal

    if behavior.abandon_rate > 0.6:
        return EmotionSignal.AVOIDANCE
    if behavior.abandon_rate > 0.2 or behavior.trend == BehaviorTrend.DECLINING:
        return EmotionSignal.FATIGUE
    if behavior.trend == BehaviorTrend.IMPROVING and behavior.recent_tasks_completed > 5:
        return EmotionSignal.ENGAGED
    return EmotionSignal.NEUTRAL


class ContextAggregator(BaseAgent):
    """Builds the per-cycle ChildContext snapshot. Never raises."""

    name = "context_aggregator"

    def __init__(self, repository: LearnerRepository):
        self.repository = repository

    async def get_context(self, child_id: str, now: datetime | None = None) -> ChildContext:
        now = now or utcnow()
        profile, mastery, behavior, memory, trend = await asyncio.gather(
            self.repository.fetch_profile(child_id),
            self.repository.fetch_mastery(child_id, now),
            self.repository.fetch_behavior(child_id, now),
            self.repository.fetch_memory(child_id),
            self.repository.fetch_emotion_trend(child_id, now),
            return_exceptions=True,
        )
        profile = self._absorb("profile", child_id, profile, None) or ChildProfile(id=child_id)
        mastery = self._absorb("mastery", child_id, mastery, MasteryStats())
        behavior = self._absorb("behavior", child_id, behavior, BehaviorSignals())
        memory = self._absorb("memory", child_id, memory, MemoryLayers())
        trend = self._absorb("emotion_trend", child_id, trend, None)

        emotion = infer_emotion_signal(behavior, memory, trend)
        logger.info(
            "Context built child=%s avg_mastery=%.2f abandon=%.2f trend=%s emotion=%s",
            child_id,
            mastery.avg_mastery,
            behavior.abandon_rate,
            behavior.trend.value,
            emotion.value,
        )
        return ChildContext(
            profile=profile,
            mastery_stats=mastery,
            behavior_signals=behavior,
            emotion_signal=emotion,
            active_hypotheses=tuple(memory.hypotheses),
            stable_patterns=tuple(memory.stable),
        )

    async def get_emotion_advice(self, child_id: str, now: datetime | None = None) -> EmotionAdvice:
        try:
            trend = await self.repository.fetch_emotion_trend(child_id, now or utcnow())
        except Exception as exc:
            logger.warning("Emotion trend unavailable for child=%s: %s", child_id, exc)
            trend = None
        return emotion_based_intent(trend)

    @staticmethod
    def _absorb(part: str, child_id: str, value: Any, default: Any) -> Any:
        if isinstance(value, BaseException):
            logger.warning("Context sub-fetch %s failed for child=%s, using default: %s", part, child_id, value)
            return default
        return value

    async def run(self, input_data: dict[str, Any]) -> dict[str, Any]:
        context = await self.get_context(str(input_data["child_id"]))
        return context.model_dump(mode="json")
