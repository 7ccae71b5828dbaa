from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger
from studyquest.tools.base import RunContext, Tool, ToolName, ToolResult

logger = get_domain_logger(__name__, DOMAIN_AGENT)

CORE_PRINCIPLES = (
    "身心健康优先于学习进度",
    "克制决策，不被单次情绪左右",
    "所有决策可向家长解释",
    "不做诊断性判断",
)
# A checked principle counts when it quotes the first characters of the canonical wording.
PRINCIPLE_PREFIX_LENGTH = 4


class ThinkStepArgs(BaseModel):
    thought: str = Field("", description="当前的思考")
    observation: str | None = Field(None, description="观察到的信息")
    next_action: str = Field("", description="下一步计划")


class VerifyDecisionArgs(BaseModel):
    decision: str = Field("", description="准备做出的决策")
    reason: str = Field("", description="决策理由")
    principles_checked: list[str] = Field(default_factory=list, description="已核对的核心原则")


def _stamp(run_context: RunContext) -> str:
    return (run_context.now or datetime.now(timezone.utc)).isoformat()


class RecordingTool(Tool):
    """A tool that records whatever reasoning it is given. Malformed fields fall back to their defaults."""

    async def execute(self, params: dict[str, Any], run_context: RunContext) -> ToolResult:
        params = dict(params or {})
        try:
            args = self.args_schema.model_validate(params)
        except ValidationError as exc:
            bad = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
            logger.warning("Dropping malformed fields for tool %s: %s", self.name.value, sorted(bad))
            args = self.args_schema.model_validate({k: v for k, v in params.items() if k not in bad})
        return await self.run(args, run_context)


class ThinkStepTool(RecordingTool):
    name = ToolName.THINK_STEP
    description = "记录一步推理：当前思考、观察和下一步行动。"
    args_schema = ThinkStepArgs

    async def run(self, args: ThinkStepArgs, run_context: RunContext) -> ToolResult:
        logger.info("Think run=%s thought=%s next=%s", run_context.run_id, args.thought, args.next_action)
        return ToolResult.ok(
            {
                "recorded": True,
                "thought": args.thought,
                "observation": args.observation,
                "next_action": args.next_action,
                "timestamp": _stamp(run_context),
            }
        )


class VerifyDecisionTool(RecordingTool):
    name = ToolName.VERIFY_DECISION
    description = "在给出最终决策前，核对决策是否符合核心原则。"
    args_schema = VerifyDecisionArgs

    async def run(self, args: VerifyDecisionArgs, run_context: RunContext) -> ToolResult:
        missed = [
            principle
            for principle in CORE_PRINCIPLES
            if not any(principle[:PRINCIPLE_PREFIX_LENGTH] in checked for checked in args.principles_checked)
        ]
        logger.info("Verify run=%s decision=%s missed=%s", run_context.run_id, args.decision, len(missed))
        return ToolResult.ok(
            {
                "decision": args.decision,
                "reason": args.reason,
                "principles_checked": args.principles_checked,
                "principles_missed": missed or None,
                "is_valid": True,
                "timestamp": _stamp(run_context),
            }
        )
