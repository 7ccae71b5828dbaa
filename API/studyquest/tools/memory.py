from typing import Any

from pydantic import BaseModel, Field

from studyquest.core.errors import InvalidLayerError
from studyquest.memory.child_memory import ChildMemoryService
from studyquest.schemas.context import ConfidenceLevel
from studyquest.tools.base import RunContext, Tool, ToolName, ToolResult


class WriteObservationArgs(BaseModel):
    student_id: str = Field(..., description="学生 ID")
    layer: str = Field(..., description="记忆层级，只能是 ephemeral 或 hypothesis")
    key: str = Field(..., description="记忆键，例如 fatigue_after_dinner")
    content: dict[str, Any] = Field(default_factory=dict, description="观察内容")
    confidence: ConfidenceLevel = Field(ConfidenceLevel.LOW, description="置信度")


class WriteObservationTool(Tool):
    name = ToolName.WRITE_OBSERVATION
    description = "记录对学生的观察。只能写入临时观察层(ephemeral)或假设层(hypothesis)。"
    args_schema = WriteObservationArgs

    def __init__(self, memory: ChildMemoryService):
        self.memory = memory

    async def run(self, args: WriteObservationArgs, run_context: RunContext) -> ToolResult:
        try:
            entry = await self.memory.write_observation(
                args.student_id, args.layer, args.key, args.content, args.confidence, now=run_context.now
            )
        except InvalidLayerError as exc:
            return ToolResult.fail(exc.code)
        return ToolResult.ok(entry.model_dump(mode="json"))
