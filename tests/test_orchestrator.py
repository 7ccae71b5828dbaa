from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from studyquest.core.errors import MalformedOutputError, UpstreamTerminalError, UpstreamTransientError
from studyquest.core.llm_provider import BaseModelClient, ModelTurn, ToolCall
from studyquest.memory.repository import InMemoryLearnerRepository
from studyquest.runtime.orchestrator import AgentOrchestrator
from studyquest.schemas.agent import AgentRequest, AgentTask, Attachment, RunStatus
from studyquest.schemas.context import ChildProfile
from studyquest.tools.catalog import build_registry

MONDAY = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class ScriptedClient(BaseModelClient):
    provider_name = "scripted"

    def __init__(self, turns):
        self.turns = list(turns)
        self.histories: list[list[dict]] = []

    async def call(self, history, system_prompt, tools):
        self.histories.append([dict(m) for m in history])
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn


class SilentGenerator:
    async def generate(self, *args, **kwargs):
        return {"daily_challenge": {"questions": []}}

    async def generate_reading_material(self, topic, subject, grade_level=None, source_text=None, style="explanation"):
        return {"title": topic, "reading_material": {"content": "长" * 3000}, "questions": []}


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def registry():
    repo = InMemoryLearnerRepository()
    repo.add_profile(ChildProfile(id="c1", grade_level=3))
    repo.add_mastery("c1", "加法", 0.5)
    return build_registry(repo, SilentGenerator())


def _orchestrator(client, registry, tmp_path: Path, **kwargs) -> AgentOrchestrator:
    kwargs.setdefault("persist_traces", False)
    return AgentOrchestrator(client, registry, sleep=_no_sleep, trace_dir=tmp_path, **kwargs)


def _request(**kwargs) -> AgentRequest:
    return AgentRequest(child_id="c1", task=kwargs.pop("task", AgentTask.DECIDE_TODAY), **kwargs)


@pytest.mark.asyncio
async def test_tool_then_final_answer(registry, tmp_path):
    client = ScriptedClient(
        [
            ModelTurn(text="先看上下文", tool_calls=[ToolCall(name="get_full_context", args={"student_id": "c1"}, id="call-1")]),
            ModelTurn(text='今天验证一下\n```json\n{"intent": "verify", "summary": "ok"}\n```'),
        ]
    )
    response = await _orchestrator(client, registry, tmp_path, summary_threshold=200).run(_request(), now=MONDAY)

    assert response.success is True
    assert response.status == RunStatus.COMPLETED
    assert response.result == {"intent": "verify", "summary": "ok"}
    assert [c.name for c in response.tool_calls] == ["get_full_context"]
    assert response.tool_calls[0].result["teaching_intent"]["type"] == "verify"
    assert [s.thought for s in response.steps if s.thought] == ["先看上下文", '今天验证一下\n```json\n{"intent": "verify", "summary": "ok"}\n```']

    second_history = client.histories[1]
    assert [m["role"] for m in second_history] == ["user", "model", "tool"]
    assert second_history[2]["call_id"] == "call-1"
    # the history copy is summarized, the returned record keeps the full result
    assert second_history[2]["content"]["_summarized"] is True


@pytest.mark.asyncio
async def test_plain_text_answer_is_wrapped(registry, tmp_path):
    client = ScriptedClient([ModelTurn(text="今天好好休息")])
    response = await _orchestrator(client, registry, tmp_path).run(_request(task=AgentTask.CHAT, message="hi"))
    assert response.result == {"answer": "今天好好休息"}
    assert response.tool_calls == []


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_the_model(registry, tmp_path):
    client = ScriptedClient(
        [
            ModelTurn(tool_calls=[ToolCall(name="launch_rocket", args={})]),
            ModelTurn(text='{"done": true}'),
        ]
    )
    response = await _orchestrator(client, registry, tmp_path).run(_request())
    assert response.status == RunStatus.COMPLETED
    assert response.tool_calls[0].result == {"error": "Unknown tool: launch_rocket"}
    assert client.histories[1][-1]["content"] == {"error": "Unknown tool: launch_rocket"}


@pytest.mark.asyncio
async def test_all_calls_of_a_turn_run_in_order_and_count_once(registry, tmp_path):
    client = ScriptedClient(
        [
            ModelTurn(
                tool_calls=[
                    ToolCall(name="think_step", args={"thought": "a", "next_action": "b"}),
                    ToolCall(name="get_student_context", args={"student_id": "c1"}),
                ]
            ),
            ModelTurn(text='{"ok": 1}'),
        ]
    )
    response = await _orchestrator(client, registry, tmp_path, max_turns=1).run(_request())
    # a turn with two calls counts once against the ceiling
    assert [c.name for c in response.tool_calls] == ["think_step", "get_student_context"]
    assert response.status == RunStatus.PARTIAL


@pytest.mark.asyncio
async def test_turn_ceiling_returns_partial_success(registry, tmp_path):
    looping = [ModelTurn(tool_calls=[ToolCall(name="think_step", args={"thought": "t", "next_action": "n"})]) for _ in range(3)]
    client = ScriptedClient(looping)
    response = await _orchestrator(client, registry, tmp_path, max_turns=3).run(_request())
    assert response.success is True
    assert response.status == RunStatus.PARTIAL
    assert response.result["message"] == "Agent completed with tool results (max steps reached)"
    assert len(response.result["tool_calls"]) == 3
    assert len(client.histories) == 3


@pytest.mark.asyncio
async def test_empty_reply_fails(registry, tmp_path):
    response = await _orchestrator(ScriptedClient([ModelTurn()]), registry, tmp_path).run(_request())
    assert (response.success, response.status, response.error) == (False, RunStatus.FAILED, "empty_response")


@pytest.mark.asyncio
async def test_transient_errors_retry_then_surface(registry, tmp_path, monkeypatch):
    from studyquest.core.settings import settings

    monkeypatch.setattr(settings, "model_max_retries", 2)
    recovering = ScriptedClient([UpstreamTransientError("503"), ModelTurn(text='{"ok": true}')])
    response = await _orchestrator(recovering, registry, tmp_path).run(_request())
    assert response.status == RunStatus.COMPLETED

    down = ScriptedClient([UpstreamTransientError("503"), UpstreamTransientError("503")])
    response = await _orchestrator(down, registry, tmp_path).run(_request())
    assert (response.success, response.error) == (False, "upstream_unavailable")


@pytest.mark.asyncio
async def test_safety_rejection_is_not_retried(registry, tmp_path):
    client = ScriptedClient([UpstreamTerminalError("SAFETY"), ModelTurn(text="never reached")])
    response = await _orchestrator(client, registry, tmp_path).run(_request())
    assert (response.success, response.error) == (False, "upstream_rejected")
    assert len(client.histories) == 1


@pytest.mark.asyncio
async def test_cancellation_returns_partial_trace(registry, tmp_path):
    cancel = asyncio.Event()

    class CancellingClient(ScriptedClient):
        async def call(self, history, system_prompt, tools):
            turn = await super().call(history, system_prompt, tools)
            cancel.set()
            return turn

    client = CancellingClient([ModelTurn(tool_calls=[ToolCall(name="get_memory_summary", args={"student_id": "c1"})])])
    response = await _orchestrator(client, registry, tmp_path).run(_request(), cancel_event=cancel)
    assert response.status == RunStatus.CANCELLED
    assert response.success is False
    assert [c.name for c in response.tool_calls] == ["get_memory_summary"]


@pytest.mark.asyncio
async def test_only_image_attachments_reach_the_first_message(registry, tmp_path):
    client = ScriptedClient([ModelTurn(text="{}")])
    request = _request(
        task=AgentTask.PROCESS_UPLOAD,
        attachments=[
            Attachment(id="img", type="image", data="AAAA"),
            Attachment(id="doc", type="pdf", data="BBBB"),
        ],
    )
    await _orchestrator(client, registry, tmp_path).run(request)
    first = client.histories[0][0]
    assert [a.id for a in first["attachments"]] == ["img"]
    assert "2 个学习资料附件" in first["text"]


@pytest.mark.asyncio
async def test_trace_is_persisted_with_full_results(registry, tmp_path):
    client = ScriptedClient(
        [
            ModelTurn(tool_calls=[ToolCall(name="generate_reading_material", args={"topic": "加法", "subject": "math"})]),
            ModelTurn(text='{"done": true}'),
        ]
    )
    response = await _orchestrator(client, registry, tmp_path, persist_traces=True).run(_request())
    saved = json.loads((tmp_path / f"run_{response.run_id}.json").read_text(encoding="utf-8"))
    assert saved["status"] == "completed"
    tool_events = [e for e in saved["events"] if e["kind"] == "tool_call"]
    assert tool_events[0]["summarized"] is True
    assert len(tool_events[0]["result"]["reading_material"]["content"]) == 3000


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_share_state(registry, tmp_path):
    def _client(tag: str) -> ScriptedClient:
        return ScriptedClient(
            [
                ModelTurn(tool_calls=[ToolCall(name="think_step", args={"thought": tag, "next_action": "x"})]),
                ModelTurn(text=json.dumps({"tag": tag})),
            ]
        )

    orchestrator_a = _orchestrator(_client("a"), registry, tmp_path)
    orchestrator_b = _orchestrator(_client("b"), registry, tmp_path)
    first, second = await asyncio.gather(orchestrator_a.run(_request()), orchestrator_b.run(_request()))
    assert first.result == {"tag": "a"}
    assert second.result == {"tag": "b"}
    assert first.tool_calls[0].params["thought"] == "a"
    assert second.tool_calls[0].params["thought"] == "b"
    assert first.run_id != second.run_id


@pytest.mark.asyncio
async def test_repeated_timeouts_surface_as_upstream_unavailable(registry, tmp_path, monkeypatch):
    from studyquest.core.settings import settings

    monkeypatch.setattr(settings, "model_max_retries", 3)
    client = ScriptedClient([asyncio.TimeoutError(), asyncio.TimeoutError(), asyncio.TimeoutError()])
    response = await _orchestrator(client, registry, tmp_path).run(_request())
    assert (response.success, response.status, response.error) == (False, RunStatus.FAILED, "upstream_unavailable")
    assert len(client.histories) == 3


@pytest.mark.asyncio
async def test_unreadable_model_output_fails_the_run(registry, tmp_path):
    client = ScriptedClient([MalformedOutputError("not a turn"), ModelTurn(text="never reached")])
    response = await _orchestrator(client, registry, tmp_path).run(_request())
    assert (response.success, response.status, response.error) == (False, RunStatus.FAILED, "malformed_output")
    assert len(client.histories) == 1


@pytest.mark.asyncio
async def test_failed_runs_still_write_their_trace(registry, tmp_path):
    client = ScriptedClient([UpstreamTerminalError("SAFETY")])
    response = await _orchestrator(client, registry, tmp_path, persist_traces=True).run(_request())
    saved = json.loads((tmp_path / f"run_{response.run_id}.json").read_text(encoding="utf-8"))
    assert saved["status"] == "failed"
