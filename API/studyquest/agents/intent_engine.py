"""
Intent Decision Engine.

Turns a ChildContext snapshot into exactly one teaching intent. The rules are
a fixed precedence chain, first match wins:

1. pause     - emotional risk signals
2. lighten   - fatigue, frustration, rising abandonment or a declining trend
3. caregiver - an explicit caregiver report can force lighten
4. mastery   - reinforce / verify / introduce / challenge by mastery tier

The engine is pure: no I/O, and the reference time is an argument.
"""
import math
from datetime import datetime, timezone

from studyquest.core.logging import DOMAIN_INTENT, get_domain_logger
from studyquest.schemas.context import BehaviorTrend, ChildContext, EmotionSignal, EmotionTrend
from studyquest.schemas.intent import CaregiverSignal, DifficultyLevel, EmotionAdvice, IntentType, TeachingIntent

logger = get_domain_logger(__name__, DOMAIN_INTENT)

INTENT_CONFIG: dict[IntentType, tuple[int, DifficultyLevel]] = {
    IntentType.REINFORCE: (8, DifficultyLevel.LOW),
    IntentType.VERIFY: (6, DifficultyLevel.MEDIUM),
    IntentType.CHALLENGE: (5, DifficultyLevel.HIGH),
    IntentType.LIGHTEN: (4, DifficultyLevel.LOW),
    IntentType.INTRODUCE: (5, DifficultyLevel.LOW),
    IntentType.PAUSE: (0, DifficultyLevel.LOW),
}

NEGATIVE_AFFECT_KEYWORDS = ("厌学", "不想学", "很烦")
LAST_INTRODUCE_MARKER = "last_introduce"
NO_INTRODUCE_DAYS = 999
INTRODUCE_COOLDOWN_DAYS = 3
INTRODUCE_MASTERY_RATIO = 0.6

REINFORCE_BELOW = 0.4
VERIFY_BELOW = 0.7
CHALLENGE_MIN_MOOD_RECORDS = 3

# Ordered keyword groups for caregiver free-text descriptions.
EMOTION_KEYWORDS: tuple[tuple[EmotionSignal, tuple[str, ...]], ...] = (
    (EmotionSignal.AVOIDANCE, ("不想", "回避", "逃避")),
    (EmotionSignal.FRUSTRATION, ("烦", "生气", "发脾气")),
    (EmotionSignal.FATIGUE, ("累", "疲", "困")),
    (EmotionSignal.LOW_MOOD, ("不开心", "难过", "情绪低")),
    (EmotionSignal.ENGAGED, ("积极", "开心", "主动")),
)


def _should_pause(context: ChildContext) -> bool:
    behavior = context.behavior_signals
    if context.emotion_signal == EmotionSignal.LOW_MOOD and behavior.trend == BehaviorTrend.DECLINING:
        return True
    if behavior.abandon_rate > 0.5:
        return True
    return context.emotion_signal == EmotionSignal.AVOIDANCE and behavior.abandon_rate > 0.3


def _should_lighten(context: ChildContext) -> bool:
    if context.emotion_signal in (EmotionSignal.FATIGUE, EmotionSignal.FRUSTRATION):
        return True
    # abandon_rate above 0.5 was already claimed by pause.
    if context.behavior_signals.abandon_rate > 0.2:
        return True
    return context.behavior_signals.trend == BehaviorTrend.DECLINING


def _caregiver_override(context: ChildContext, signal: CaregiverSignal) -> TeachingIntent | None:
    if signal.type == "emotion_report":
        content = signal.content or ""
        if any(word in content for word in NEGATIVE_AFFECT_KEYWORDS) and context.behavior_signals.abandon_rate > 0.2:
            return build_intent(IntentType.LIGHTEN, context, "家长反馈情绪问题，结合行为数据降低强度")
    if signal.type == "schedule_change":
        return build_intent(IntentType.LIGHTEN, context, "家长反馈需要调整学习安排")
    return None


def days_since_last_introduce(context: ChildContext, now: datetime) -> int:
    for pattern in context.stable_patterns:
        if LAST_INTRODUCE_MARKER in pattern.key:
            last = pattern.last_updated
            if last.tzinfo is None:
                last = last.replace(tzinfo=timezone.utc)
            reference = now if now.tzinfo else now.replace(tzinfo=timezone.utc)
            return math.floor((reference - last).total_seconds() / 86400)
    return NO_INTRODUCE_DAYS


def build_intent(intent_type: IntentType, context: ChildContext, reason: str) -> TeachingIntent:
    question_count, difficulty = INTENT_CONFIG[intent_type]
    stats = context.mastery_stats
    if intent_type in (IntentType.REINFORCE, IntentType.VERIFY):
        focus = list(stats.weak_points[:3])
    elif intent_type == IntentType.CHALLENGE:
        focus = list(stats.strong_points[:2])
    elif intent_type == IntentType.LIGHTEN:
        focus = list(stats.strong_points[:1])
    else:
        focus = []
    return TeachingIntent(
        type=intent_type,
        reason=reason,
        focus_knowledge_points=focus,
        question_count=question_count,
        difficulty_level=difficulty,
    )


def decide_teaching_intent(
    context: ChildContext,
    caregiver_signal: CaregiverSignal | None = None,
    now: datetime | None = None,
) -> TeachingIntent:
    now = now or datetime.now(timezone.utc)
    intent = _decide(context, caregiver_signal, now)
    logger.info("Intent decided child=%s type=%s reason=%s", context.profile.id, intent.type.value, intent.reason)
    return intent


def _decide(context: ChildContext, caregiver_signal: CaregiverSignal | None, now: datetime) -> TeachingIntent:
    if _should_pause(context):
        return build_intent(IntentType.PAUSE, context, "检测到情绪风险信号，今天优先保护孩子状态")

    if _should_lighten(context):
        return build_intent(IntentType.LIGHTEN, context, "最近学习强度较大或放弃率上升，降低强度保持连接")

    if caregiver_signal is not None:
        adjusted = _caregiver_override(context, caregiver_signal)
        if adjusted is not None:
            return adjusted

    stats = context.mastery_stats
    if stats.avg_mastery < REINFORCE_BELOW:
        return build_intent(IntentType.REINFORCE, context, "部分知识点还不够稳固，今天重点巩固")
    if stats.avg_mastery < VERIFY_BELOW:
        return build_intent(IntentType.VERIFY, context, "看起来掌握得不错，今天验证一下是否真正理解")

    ratio = stats.mastered_count / stats.total_points if stats.total_points > 0 else 0.0
    good_condition = context.emotion_signal == EmotionSignal.ENGAGED or (
        context.emotion_signal == EmotionSignal.NEUTRAL and context.behavior_signals.trend != BehaviorTrend.DECLINING
    )
    if (
        ratio >= INTRODUCE_MASTERY_RATIO
        and good_condition
        and days_since_last_introduce(context, now) >= INTRODUCE_COOLDOWN_DAYS
    ):
        percent = math.floor(ratio * 100 + 0.5)
        return build_intent(IntentType.INTRODUCE, context, f"已掌握 {percent}% 的知识点，状态良好，今天可以学点新东西！")

    if context.emotion_signal == EmotionSignal.ENGAGED:
        return build_intent(IntentType.CHALLENGE, context, "基础扎实且状态良好，来点有挑战的！")
    return build_intent(IntentType.CHALLENGE, context, "基础扎实，尝试更有难度的题目")


def translate_emotion_signal(description: str) -> EmotionSignal:
    """Map a caregiver's free-text mood description to an EmotionSignal."""
    text = description or ""
    for signal, keywords in EMOTION_KEYWORDS:
        if any(word in text for word in keywords):
            return signal
    return EmotionSignal.NEUTRAL


def emotion_based_intent(trend: EmotionTrend | None) -> EmotionAdvice:
    """Suggest lighten or challenge from recorded moods alone; ``normal`` defers to the full chain."""
    if trend is None or not trend.recent_emotions:
        return EmotionAdvice(suggested_intent="normal", reason="无情绪数据")
    if trend.needs_lightening:
        if trend.frustration_streak:
            reason = f"连续 {trend.frustration_streak} 天情绪低落，建议减轻学习负担"
        else:
            reason = "近期负面情绪占多数，建议减轻学习负担"
        return EmotionAdvice(suggested_intent="lighten", reason=reason)
    if trend.dominant_emotion == "happy" and len(trend.recent_emotions) >= CHALLENGE_MIN_MOOD_RECORDS:
        return EmotionAdvice(suggested_intent="challenge", reason="近期情绪良好，可以尝试更有挑战的内容")
    return EmotionAdvice(suggested_intent="normal", reason="情绪稳定")
