"""
Bounded tool-calling loop.

Each turn sends the full history, the fixed system prompt and the tool
catalog to the model. Tool calls are executed one by one; their full results
go to the audit trace and the returned records, while the history receives a
summarized copy once a result grows past the size threshold. A text-only
reply ends the run; hitting the turn ceiling ends it as a partial success.
"""
import asyncio
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from studyquest.core.errors import (
    MalformedOutputError,
    UnknownToolError,
    UpstreamTerminalError,
    UpstreamTransientError,
)
from studyquest.core.json_parser import extract_final_json
from studyquest.core.llm_provider import BaseModelClient, ModelTurn, ToolCall
from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger
from studyquest.core.resilience import retry_with_backoff
from studyquest.core.settings import settings
from studyquest.runtime.prompts import SYSTEM_PROMPT, build_task_prompt
from studyquest.runtime.summarizer import summarize_tool_output
from studyquest.runtime.trace import RunTrace
from studyquest.schemas.agent import AgentRequest, AgentResponse, AgentStep, RunStatus, ToolCallRecord
from studyquest.tools.base import RunContext, ToolRegistry, ToolResult

logger = get_domain_logger(__name__, DOMAIN_AGENT)

ERROR_UPSTREAM_UNAVAILABLE = "upstream_unavailable"
ERROR_UPSTREAM_REJECTED = "upstream_rejected"
ERROR_EMPTY_RESPONSE = "empty_response"
ERROR_MALFORMED_OUTPUT = "malformed_output"
ERROR_CANCELLED = "cancelled"


class AgentRunState:
    """Mutable state owned by exactly one loop invocation."""

    def __init__(self, request: AgentRequest, run_id: str):
        self.run_id = run_id
        self.messages: list[dict[str, Any]] = [
            {
                "role": "user",
                "text": build_task_prompt(request),
                "attachments": [a for a in request.attachments if a.type == "image"],
            }
        ]
        self.tool_call_count = 0
        self.tool_calls: list[ToolCallRecord] = []
        self.steps: list[AgentStep] = []
        self.trace = RunTrace(run_id=run_id, child_id=request.child_id, task=request.task.value)


class AgentOrchestrator:
    def __init__(
        self,
        client: BaseModelClient,
        registry: ToolRegistry,
        *,
        max_turns: int | None = None,
        summary_threshold: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        trace_dir: Path | None = None,
        persist_traces: bool | None = None,
    ):
        self.client = client
        self.registry = registry
        self.max_turns = max_turns or settings.agent_max_turns
        self.summary_threshold = settings.tool_output_summary_threshold if summary_threshold is None else summary_threshold
        self._sleep = sleep
        self._trace_dir = trace_dir or Path(settings.runtime_data_dir) / "runs"
        self._persist = settings.trace_persist if persist_traces is None else persist_traces

    async def run(
        self,
        request: AgentRequest,
        cancel_event: asyncio.Event | None = None,
        now: datetime | None = None,
    ) -> AgentResponse:
        state = AgentRunState(request, str(uuid.uuid4()))
        run_context = RunContext(
            run_id=state.run_id,
            child_id=request.child_id,
            attachments=list(request.attachments),
            extra=dict(request.context or {}),
            now=now,
        )
        declarations = self.registry.declarations()
        logger.info("Agent run started run=%s child=%s task=%s", state.run_id, request.child_id, request.task.value)

        while state.tool_call_count < self.max_turns:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Agent run cancelled run=%s after %s turns", state.run_id, state.tool_call_count)
                return await self._finish(state, RunStatus.CANCELLED, success=False, error=ERROR_CANCELLED)

            try:
                turn = await self._call_model(state.messages, declarations)
            except (UpstreamTransientError, asyncio.TimeoutError) as exc:
                logger.error("Model unavailable after retries run=%s: %s", state.run_id, exc)
                return await self._finish(state, RunStatus.FAILED, success=False, error=ERROR_UPSTREAM_UNAVAILABLE)
            except UpstreamTerminalError as exc:
                logger.error("Model rejected request run=%s: %s", state.run_id, exc)
                return await self._finish(state, RunStatus.FAILED, success=False, error=ERROR_UPSTREAM_REJECTED)
            except MalformedOutputError as exc:
                logger.error("Model reply unusable run=%s: %s", state.run_id, exc)
                return await self._finish(state, RunStatus.FAILED, success=False, error=ERROR_MALFORMED_OUTPUT)

            state.trace.record_model_turn(
                state.tool_call_count,
                turn.text,
                [{"name": c.name, "args": c.args} for c in turn.tool_calls],
            )
            if turn.text:
                state.steps.append(AgentStep(thought=turn.text))

            if turn.tool_calls:
                state.messages.append(
                    {
                        "role": "model",
                        "text": turn.text,
                        "tool_calls": [{"id": c.id, "name": c.name, "args": c.args} for c in turn.tool_calls],
                    }
                )
                for call in turn.tool_calls:
                    await self._run_tool(state, call, run_context)
                state.tool_call_count += 1
                continue

            if turn.text:
                logger.info("Agent run completed run=%s turns=%s", state.run_id, state.tool_call_count)
                return await self._finish(state, RunStatus.COMPLETED, success=True, result=extract_final_json(turn.text))

            logger.warning("Model returned neither text nor tool calls run=%s", state.run_id)
            return await self._finish(state, RunStatus.FAILED, success=False, error=ERROR_EMPTY_RESPONSE)

        logger.warning("Agent run hit the turn ceiling run=%s max_turns=%s", state.run_id, self.max_turns)
        return await self._finish(
            state,
            RunStatus.PARTIAL,
            success=True,
            result={
                "message": "Agent completed with tool results (max steps reached)",
                "tool_calls": [record.model_dump(mode="json") for record in state.tool_calls],
            },
        )

    async def _call_model(self, history: list[dict], declarations: list[dict]) -> ModelTurn:
        async def _call():
            return await self.client.call(history, SYSTEM_PROMPT, declarations)

        return await retry_with_backoff(
            _call,
            max_retries=settings.model_max_retries,
            base_delay_seconds=settings.retry_base_delay_seconds,
            sleep=self._sleep,
        )

    async def _execute_tool(self, call: ToolCall, run_context: RunContext) -> ToolResult:
        try:
            tool = self.registry.get(call.name)
        except UnknownToolError as exc:
            logger.warning("Model requested unknown tool run=%s name=%s", run_context.run_id, call.name)
            return ToolResult.fail(str(exc))
        try:
            return await tool.execute(call.args, run_context)
        except Exception as exc:
            logger.exception("Tool %s raised run=%s", call.name, run_context.run_id)
            return ToolResult.fail(f"{type(exc).__name__}: {exc}")

    async def _run_tool(self, state: AgentRunState, call: ToolCall, run_context: RunContext) -> None:
        logger.info("Tool call run=%s name=%s", state.run_id, call.name)
        result = await self._execute_tool(call, run_context)
        full_output = result.data if result.success else {"error": result.error}
        for_history = summarize_tool_output(call.name, result, self.summary_threshold)
        summarized = isinstance(for_history, dict) and for_history.get("_summarized") is True

        state.steps.append(AgentStep(tool_call={"name": call.name, "args": call.args}, tool_output=full_output))
        state.tool_calls.append(ToolCallRecord(name=call.name, params=call.args, result=full_output))
        state.trace.record_tool_call(state.tool_call_count, call.name, call.args, full_output, summarized)
        state.messages.append({"role": "tool", "name": call.name, "call_id": call.id, "content": for_history})

    async def _finish(
        self,
        state: AgentRunState,
        status: RunStatus,
        *,
        success: bool,
        result: Any = None,
        error: str | None = None,
    ) -> AgentResponse:
        state.trace.finish(status.value, state.tool_call_count, error)
        if self._persist:
            try:
                await asyncio.to_thread(state.trace.save, self._trace_dir)
            except OSError as exc:
                logger.warning("Could not persist trace run=%s: %s", state.run_id, exc)
        return AgentResponse(
            run_id=state.run_id,
            success=success,
            status=status,
            result=result,
            tool_calls=state.tool_calls,
            steps=state.steps,
            error=error,
        )
