from pydantic import BaseModel, Field

from studyquest.agents.context_aggregator import ContextAggregator
from studyquest.agents.intent_engine import decide_teaching_intent
from studyquest.memory.child_memory import ChildMemoryService
from studyquest.schemas.intent import CaregiverSignal
from studyquest.tools.base import RunContext, Tool, ToolName, ToolResult


class DecideIntentArgs(BaseModel):
    student_id: str = Field(..., description="学生 ID")
    parent_signal: CaregiverSignal | None = Field(None, description="可选的家长反馈信号")


class DecideTeachingIntentTool(Tool):
    name = ToolName.DECIDE_TEACHING_INTENT
    description = "根据学生当前状态决定今天的教学意图（巩固/验证/挑战/减负/引入/暂停）。"
    args_schema = DecideIntentArgs

    def __init__(self, aggregator: ContextAggregator, memory: ChildMemoryService):
        self.aggregator = aggregator
        self.memory = memory

    async def run(self, args: DecideIntentArgs, run_context: RunContext) -> ToolResult:
        context = await self.aggregator.get_context(args.student_id, run_context.now)
        intent = decide_teaching_intent(context, args.parent_signal, now=run_context.now)
        await self.memory.note_intent(args.student_id, intent, run_context.now)
        return ToolResult.ok(intent.model_dump(mode="json"))
