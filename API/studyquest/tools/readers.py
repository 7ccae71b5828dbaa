"""Read-only tools. They never fail: storage errors degrade to empty best-effort data."""
from typing import Literal

from pydantic import BaseModel, Field

from studyquest.agents.context_aggregator import ContextAggregator
from studyquest.agents.history import DEFAULT_COMPARE_DAYS, LearningHistory
from studyquest.agents.intent_engine import decide_teaching_intent
from studyquest.agents.skills import grade_to_age, select_applicable_skills
from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger
from studyquest.core.settings import settings
from studyquest.memory.child_memory import ChildMemoryService
from studyquest.memory.repository import LearnerRepository
from studyquest.schemas.context import HistoryMetric, MemoryLayer
from studyquest.schemas.intent import IntentType
from studyquest.tools.base import RunContext, Tool, ToolName, ToolResult

logger = get_domain_logger(__name__, DOMAIN_AGENT)

_EMPTY_SUMMARY = {
    "stable_patterns": [],
    "active_hypotheses": [],
    "recent_observations": [],
    "stats": {"total_memories": 0, "stable_count": 0, "hypothesis_count": 0, "ephemeral_count": 0},
}


class StudentArgs(BaseModel):
    student_id: str = Field(..., description="学生 ID")


class ReadMemoryArgs(StudentArgs):
    layer: MemoryLayer | None = Field(None, description="记忆层级: ephemeral / hypothesis / stable")
    key_pattern: str | None = Field(None, description="记忆键的模糊匹配关键词")


class SearchKnowledgeArgs(StudentArgs):
    subject: str | None = Field(None, description="科目")
    min_mastery: float | None = Field(None, ge=0.0, le=1.0, description="最低掌握度")
    max_mastery: float | None = Field(None, ge=0.0, le=1.0, description="最高掌握度")


class CompareHistoryArgs(StudentArgs):
    metric: HistoryMetric = Field(..., description="要对比的指标: accuracy / completion_rate / mastery")
    days: int = Field(DEFAULT_COMPARE_DAYS, ge=1, le=90, description="对比近多少天的数据")


class LearningGoalArgs(StudentArgs):
    status: Literal["active", "completed", "paused"] | None = Field(None, description="目标状态过滤")


class ApplicableSkillsArgs(StudentArgs):
    subject: str = Field(..., description="科目: math / chinese / english / science")
    intent_type: IntentType | None = Field(None, description="当前教学意图")


async def _memory_summary(memory: ChildMemoryService, child_id: str) -> dict:
    try:
        summary = await memory.get_memory_summary(child_id)
    except Exception as exc:
        logger.warning("Memory summary unavailable for child=%s: %s", child_id, exc)
        return dict(_EMPTY_SUMMARY)
    return {
        key: [entry.model_dump(mode="json") for entry in value] if isinstance(value, list) else value
        for key, value in summary.items()
    }


class GetFullContextTool(Tool):
    name = ToolName.GET_FULL_CONTEXT
    description = "一次性获取学生完整上下文：画像、掌握度、行为信号、记忆摘要和系统建议的教学意图。优先使用此工具。"
    args_schema = StudentArgs

    def __init__(self, aggregator: ContextAggregator, memory: ChildMemoryService):
        self.aggregator = aggregator
        self.memory = memory

    async def run(self, args: StudentArgs, run_context: RunContext) -> ToolResult:
        context = await self.aggregator.get_context(args.student_id, run_context.now)
        intent = decide_teaching_intent(context, now=run_context.now)
        await self.memory.note_intent(args.student_id, intent, run_context.now)
        advice = await self.aggregator.get_emotion_advice(args.student_id, run_context.now)
        return ToolResult.ok(
            {
                "context": context.model_dump(mode="json"),
                "memory_summary": await _memory_summary(self.memory, args.student_id),
                "teaching_intent": intent.model_dump(mode="json"),
                "emotion_advice": advice.model_dump(mode="json"),
            }
        )


class GetStudentContextTool(Tool):
    name = ToolName.GET_STUDENT_CONTEXT
    description = "获取学生当前状态：画像、知识点掌握、行为信号和情绪信号。"
    args_schema = StudentArgs

    def __init__(self, aggregator: ContextAggregator):
        self.aggregator = aggregator

    async def run(self, args: StudentArgs, run_context: RunContext) -> ToolResult:
        context = await self.aggregator.get_context(args.student_id, run_context.now)
        return ToolResult.ok(context.model_dump(mode="json"))


class ReadStudentMemoryTool(Tool):
    name = ToolName.READ_STUDENT_MEMORY
    description = "读取学生的长期记忆，可按层级和关键词过滤。"
    args_schema = ReadMemoryArgs

    def __init__(self, memory: ChildMemoryService):
        self.memory = memory

    async def run(self, args: ReadMemoryArgs, run_context: RunContext) -> ToolResult:
        try:
            entries = await self.memory.read_memory(args.student_id, layer=args.layer, key_pattern=args.key_pattern)
        except Exception as exc:
            logger.warning("Memory read unavailable for child=%s: %s", args.student_id, exc)
            entries = []
        return ToolResult.ok([entry.model_dump(mode="json") for entry in entries])


class GetMemorySummaryTool(Tool):
    name = ToolName.GET_MEMORY_SUMMARY
    description = "获取学生记忆摘要：稳定模式、活跃假设和最近观察。"
    args_schema = StudentArgs

    def __init__(self, memory: ChildMemoryService):
        self.memory = memory

    async def run(self, args: StudentArgs, run_context: RunContext) -> ToolResult:
        return ToolResult.ok(await _memory_summary(self.memory, args.student_id))


class SearchKnowledgePointsTool(Tool):
    name = ToolName.SEARCH_KNOWLEDGE_POINTS
    description = "查询学生的知识点掌握情况，可按科目和掌握度区间过滤。"
    args_schema = SearchKnowledgeArgs

    def __init__(self, repository: LearnerRepository):
        self.repository = repository

    async def run(self, args: SearchKnowledgeArgs, run_context: RunContext) -> ToolResult:
        try:
            points = await self.repository.fetch_knowledge_points(args.student_id)
        except Exception as exc:
            logger.warning("Knowledge points unavailable for child=%s: %s", args.student_id, exc)
            points = []
        if args.subject:
            points = [p for p in points if p.get("subject") in (None, args.subject)]
        if args.min_mastery is not None:
            points = [p for p in points if p["mastery_level"] >= args.min_mastery]
        if args.max_mastery is not None:
            points = [p for p in points if p["mastery_level"] <= args.max_mastery]
        return ToolResult.ok(
            {
                "student_id": args.student_id,
                "subject": args.subject,
                "knowledge_points": points,
                "weak_points": [p for p in points if p["mastery_level"] < 0.5],
                "strong_points": [p for p in points if p["mastery_level"] >= 0.7],
            }
        )


class GetApplicableSkillsTool(Tool):
    name = ToolName.GET_APPLICABLE_SKILLS
    description = "根据学生年龄、掌握度、情绪和教学意图，推荐可穿插的思维能力训练。"
    args_schema = ApplicableSkillsArgs

    def __init__(self, aggregator: ContextAggregator):
        self.aggregator = aggregator

    async def run(self, args: ApplicableSkillsArgs, run_context: RunContext) -> ToolResult:
        context = await self.aggregator.get_context(args.student_id, run_context.now)
        grade = context.profile.grade_level or settings.default_grade_level
        skills = select_applicable_skills(
            age=grade_to_age(grade),
            subject=args.subject,
            mastery=context.mastery_stats.avg_mastery,
            emotion_signal=context.emotion_signal.value,
            intent_type=(args.intent_type or IntentType.VERIFY).value,
        )
        top = [
            {
                "id": s.id,
                "name": s.name,
                "category": s.category,
                "description": s.description,
                "prompt_hint": s.prompt_hint(grade),
            }
            for s in skills[:3]
        ]
        return ToolResult.ok(
            {
                "student_id": args.student_id,
                "subject": args.subject,
                "applicable_count": len(skills),
                "suggested_skills": top,
                "recommendation": f"建议穿插 \"{top[0]['name']}\" 能力训练" if top else "当前条件暂不适合穿插能力训练",
            }
        )


class CompareWithHistoryTool(Tool):
    name = ToolName.COMPARE_WITH_HISTORY
    description = "将最近一段时间的正确率、完成率或掌握度与之前同样长的一段时间对比，判断趋势。"
    args_schema = CompareHistoryArgs

    def __init__(self, history: LearningHistory):
        self.history = history

    async def run(self, args: CompareHistoryArgs, run_context: RunContext) -> ToolResult:
        comparison = await self.history.compare(args.student_id, args.metric, args.days, run_context.now)
        return ToolResult.ok({"student_id": args.student_id, **comparison.model_dump(mode="json")})


class GetLearningGoalTool(Tool):
    name = ToolName.GET_LEARNING_GOAL
    description = "获取学生的长期学习目标和进度，了解学习方向。"
    args_schema = LearningGoalArgs

    def __init__(self, history: LearningHistory):
        self.history = history

    async def run(self, args: LearningGoalArgs, run_context: RunContext) -> ToolResult:
        goals = await self.history.learning_goals(args.student_id, args.status)
        return ToolResult.ok(
            {
                "student_id": args.student_id,
                "goals": [goal.model_dump(mode="json") for goal in goals],
                "active_count": sum(1 for goal in goals if goal.status == "active"),
                "completed_count": sum(1 for goal in goals if goal.status == "completed"),
            }
        )


class GetWeeklyReviewSummaryTool(Tool):
    name = ToolName.GET_WEEKLY_REVIEW_SUMMARY
    description = "周末复习用：本周新增的薄弱点、上周遗留未掌握的知识点和建议练习时长。"
    args_schema = StudentArgs

    def __init__(self, history: LearningHistory):
        self.history = history

    async def run(self, args: StudentArgs, run_context: RunContext) -> ToolResult:
        summary = await self.history.weekly_review(args.student_id, run_context.now)
        return ToolResult.ok(summary.model_dump(mode="json"))
