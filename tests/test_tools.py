from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from studyquest.agents.skills import SKILL_LIBRARY, pick_skill, select_applicable_skills
from studyquest.core.errors import MalformedOutputError, UnknownToolError
from studyquest.memory.repository import InMemoryLearnerRepository
from studyquest.runtime.summarizer import serialized_length, summarize_tool_output
from studyquest.schemas.agent import Attachment
from studyquest.schemas.context import ChildProfile
from studyquest.tools.base import RunContext, ToolName, ToolResult
from studyquest.tools.catalog import build_registry

MONDAY = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakeGenerator:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[dict] = []

    async def generate(self, instruction, attachments=None, grade_level=None, recent_accuracy=None, teaching_intent=None, question_count=None):
        self.calls.append({"instruction": instruction, "question_count": question_count, "attachments": attachments})
        if self.fail:
            raise MalformedOutputError("bad json")
        questions = [{"question_text": f"q{i}", "question_type": "fill"} for i in range(question_count or 0)]
        return {"analysis": {"subject": "数学"}, "daily_challenge": {"title": "错题回顾", "questions": questions}}

    async def generate_reading_material(self, topic, subject, grade_level=None, source_text=None, style="explanation"):
        self.calls.append({"topic": topic, "style": style})
        if self.fail:
            raise MalformedOutputError("bad json")
        return {"title": topic, "reading_material": {"content": "..."}, "questions": []}


@pytest.fixture
def repository() -> InMemoryLearnerRepository:
    repo = InMemoryLearnerRepository()
    repo.add_profile(ChildProfile(id="c1", name="小红", grade_level=4))
    repo.add_mastery("c1", "分数", 0.3, "math")
    repo.add_mastery("c1", "古诗", 0.8, "chinese")
    repo.add_mastery("c1", "乘法", 0.95, "math")
    return repo


def _ctx(**extra) -> RunContext:
    return RunContext(run_id="run-1", child_id="c1", extra=extra, now=MONDAY)


def test_catalog_registers_every_tool(repository):
    registry = build_registry(repository, FakeGenerator())
    assert sorted(registry.names()) == sorted(name.value for name in ToolName)
    for declaration in registry.declarations():
        assert declaration["parameters"]["type"] == "object"
        assert "title" not in declaration["parameters"]


def test_declarations_inline_nested_models(repository):
    registry = build_registry(repository, FakeGenerator())
    params = registry.get("decide_teaching_intent").declaration()["parameters"]
    signal = params["properties"]["parent_signal"]
    assert signal["type"] == "object"
    assert set(signal["properties"]) == {"type", "content"}
    assert params["required"] == ["student_id"]


def test_unknown_tool_lookup(repository):
    registry = build_registry(repository, FakeGenerator())
    with pytest.raises(UnknownToolError, match="Unknown tool: launch_rocket"):
        registry.get("launch_rocket")


@pytest.mark.asyncio
async def test_invalid_arguments_fail_without_raising(repository):
    registry = build_registry(repository, FakeGenerator())
    result = await registry.get("get_student_context").execute({}, _ctx())
    assert result.success is False
    assert result.error == "invalid_arguments: student_id"


@pytest.mark.asyncio
async def test_full_context_bundles_intent_and_memory(repository):
    registry = build_registry(repository, FakeGenerator())
    result = await registry.get("get_full_context").execute({"student_id": "c1"}, _ctx())
    assert result.success is True
    assert result.data["context"]["profile"]["name"] == "小红"
    assert result.data["teaching_intent"]["type"] == "verify"
    assert result.data["memory_summary"]["stats"]["total_memories"] == 0


@pytest.mark.asyncio
async def test_search_knowledge_points_filters(repository):
    tool = build_registry(repository, FakeGenerator()).get("search_knowledge_points")
    result = await tool.execute({"student_id": "c1", "subject": "math", "max_mastery": 0.9}, _ctx())
    assert [p["name"] for p in result.data["knowledge_points"]] == ["分数"]
    assert [p["name"] for p in result.data["weak_points"]] == ["分数"]


@pytest.mark.asyncio
async def test_applicable_skills(repository):
    repository.mastery_rows["c1"] = [{"name": "乘法", "mastery_level": 0.9, "subject": "math"}]
    tool = build_registry(repository, FakeGenerator()).get("get_applicable_skills")
    result = await tool.execute({"student_id": "c1", "subject": "math", "intent_type": "challenge"}, _ctx())
    assert result.data["applicable_count"] == 4
    assert len(result.data["suggested_skills"]) == 3
    assert "4年级" in result.data["suggested_skills"][0]["prompt_hint"]


def test_skill_selection_and_seeded_pick():
    import random

    skills = select_applicable_skills(age=8, subject="chinese", mastery=0.55, emotion_signal="neutral", intent_type="lighten")
    assert {s.id for s in skills} == {"expression_describe", "observation_detail", "eq_empathy"}
    assert select_applicable_skills(age=6, subject="math", mastery=1.0, emotion_signal="engaged", intent_type="challenge") == []
    assert pick_skill(skills, random.Random(7)) == pick_skill(skills, random.Random(7))
    assert pick_skill([], random.Random(1)) is None
    assert len(SKILL_LIBRARY) == 10


@pytest.mark.asyncio
async def test_write_observation_rejects_stable(repository):
    tool = build_registry(repository, FakeGenerator()).get("write_observation")
    rejected = await tool.execute({"student_id": "c1", "layer": "stable", "key": "k"}, _ctx())
    assert (rejected.success, rejected.error) == (False, "InvalidLayer")
    accepted = await tool.execute({"student_id": "c1", "layer": "ephemeral", "key": "wrong_q3", "content": {"q": 3}}, _ctx())
    assert accepted.success is True
    assert accepted.data["status"] == "active"


@pytest.mark.asyncio
async def test_verify_decision_reports_missed_principles(repository):
    tool = build_registry(repository, FakeGenerator()).get("verify_decision")
    result = await tool.execute(
        {"decision": "lighten", "reason": "累了", "principles_checked": ["身心健康优先", "所有决策可解释"]},
        _ctx(),
    )
    assert result.data["is_valid"] is True
    assert result.data["principles_missed"] == ["克制决策，不被单次情绪左右", "不做诊断性判断"]


@pytest.mark.asyncio
async def test_think_step_always_succeeds(repository):
    tool = build_registry(repository, FakeGenerator()).get("think_step")
    result = await tool.execute({"thought": "先看状态", "next_action": "get_full_context"}, _ctx())
    assert result.data["recorded"] is True
    assert result.data["timestamp"].startswith("2025-03-10")


@pytest.mark.asyncio
async def test_upload_on_a_school_weekday_produces_no_practice(repository):
    generator = FakeGenerator()
    tool = build_registry(repository, generator).get("process_full_upload_task")
    result = await tool.execute(
        {"instruction": "看看这张卷子", "preferred_subject": "math"},
        _ctx(material_type="completed_exam", learning_period="school"),
    )
    assert result.success is True
    assert generator.calls[0]["question_count"] == 0
    assert generator.calls[0]["instruction"].startswith("[PRIORITY SUBJECT: math]")
    assert result.data["learning_decision"]["front_mode"] == "micro_reminder"
    assert result.data["_constraints"]["allowed_questions"] == 0


@pytest.mark.asyncio
async def test_upload_in_vacation_caps_practice(repository):
    generator = FakeGenerator()
    tool = build_registry(repository, generator).get("process_full_upload_task")
    result = await tool.execute({}, _ctx(material_type="blank_homework", learning_period="vacation"))
    assert generator.calls[0]["question_count"] == 15
    assert len(result.data["daily_challenge"]["questions"]) == 15


@pytest.mark.asyncio
async def test_upload_with_unknown_period_fails(repository):
    tool = build_registry(repository, FakeGenerator()).get("process_full_upload_task")
    result = await tool.execute({}, _ctx(material_type="blank_exam", learning_period="gap_year"))
    assert (result.success, result.error) == (False, "invalid_learning_period")


@pytest.mark.asyncio
async def test_generation_failure_becomes_a_failed_result(repository):
    tool = build_registry(repository, FakeGenerator(fail=True)).get("generate_reading_material")
    result = await tool.execute({"topic": "分数", "subject": "math"}, _ctx())
    assert (result.success, result.error) == (False, "malformed_output")


def test_small_outputs_pass_through_unsummarized():
    result = ToolResult.ok({"type": "verify"})
    assert summarize_tool_output("decide_teaching_intent", result, threshold=800) == {"type": "verify"}


def test_failures_summarize_to_their_error():
    assert summarize_tool_output("get_full_context", ToolResult.fail("boom")) == {"error": "boom"}


def test_large_full_context_is_summarized():
    data = {
        "context": {
            "mastery_stats": {"avg_mastery": 0.62, "weak_points": ["a", "b"]},
            "behavior_signals": {"trend": "stable"},
            "emotion_signal": "neutral",
            "padding": "x" * 2000,
        },
        "teaching_intent": {"type": "verify", "question_count": 6, "difficulty_level": "medium"},
        "memory_summary": {"stable_patterns": [{}]},
    }
    summary = summarize_tool_output("get_full_context", ToolResult.ok(data), threshold=800)
    assert summary["_summarized"] is True
    assert summary["teaching_intent"] == "verify(6题, medium难度)"
    assert summary["weak_points_count"] == 2
    assert "62%" in summary["profile"]
    assert serialized_length(summary) < 800


def test_unknown_tool_outputs_use_the_generic_summary():
    data = {f"k{i}": "y" * 200 for i in range(8)}
    summary = summarize_tool_output("search_knowledge_points", ToolResult.ok(data), threshold=800)
    assert summary["data_keys"] == ["k0", "k1", "k2", "k3", "k4"]
    assert summary["original_length"] == serialized_length(data)


@pytest.mark.asyncio
async def test_recording_tools_accept_empty_and_malformed_arguments(repository):
    registry = build_registry(repository, FakeGenerator())
    thought = await registry.get("think_step").execute({}, _ctx())
    assert thought.success is True
    assert (thought.data["thought"], thought.data["next_action"]) == ("", "")

    verdict = await registry.get("verify_decision").execute({}, _ctx())
    assert verdict.success is True
    assert verdict.data["is_valid"] is True
    assert len(verdict.data["principles_missed"]) == 4

    messy = await registry.get("verify_decision").execute(
        {"decision": "challenge", "reason": ["not", "a", "string"], "principles_checked": "身心健康优先"},
        _ctx(),
    )
    assert messy.success is True
    assert (messy.data["decision"], messy.data["reason"], messy.data["principles_checked"]) == ("challenge", "", [])


@pytest.mark.asyncio
async def test_tools_refuse_another_learners_id(repository):
    repository.add_profile(ChildProfile(id="c2", name="小明", grade_level=3))
    registry = build_registry(repository, FakeGenerator())
    written = await registry.get("write_observation").execute(
        {"student_id": "c2", "layer": "ephemeral", "key": "slipped_in", "content": {"x": 1}},
        _ctx(),
    )
    assert (written.success, written.error) == (False, "student_mismatch")
    assert await repository.list_memory("c2") == []

    read = await registry.get("get_student_context").execute({"student_id": "c2"}, _ctx())
    assert (read.success, read.error) == (False, "student_mismatch")


@pytest.fixture
def ready_repository() -> InMemoryLearnerRepository:
    repo = InMemoryLearnerRepository()
    repo.add_profile(ChildProfile(id="c1", grade_level=4))
    for i in range(10):
        repo.add_mastery("c1", f"kp{i}", 0.9 if i < 7 else 0.5)
    return repo


@pytest.mark.asyncio
@pytest.mark.parametrize("tool_name", ["get_full_context", "decide_teaching_intent"])
async def test_an_introduce_from_a_tool_starts_the_cooldown(ready_repository, tool_name):
    tool = build_registry(ready_repository, FakeGenerator()).get(tool_name)
    first = await tool.execute({"student_id": "c1"}, _ctx())
    second = await tool.execute({"student_id": "c1"}, _ctx())
    if tool_name == "get_full_context":
        first, second = first.data["teaching_intent"], second.data["teaching_intent"]
    else:
        first, second = first.data, second.data
    assert first["type"] == "introduce"
    assert second["type"] == "challenge"
    stable = (await ready_repository.fetch_memory("c1")).stable
    assert [e.key for e in stable] == ["last_introduce"]


@pytest.mark.asyncio
async def test_full_context_carries_emotion_advice(repository):
    result = await build_registry(repository, FakeGenerator()).get("get_full_context").execute({"student_id": "c1"}, _ctx())
    assert result.data["emotion_advice"] == {"suggested_intent": "normal", "reason": "无情绪数据"}


@pytest.mark.asyncio
async def test_compare_with_history_tool(repository):
    for day in (10, 9, 8):
        repository.add_answer("c1", False, MONDAY - timedelta(days=day), "分数")
    for day in (3, 2, 1):
        repository.add_answer("c1", True, MONDAY - timedelta(days=day), "分数")
    tool = build_registry(repository, FakeGenerator()).get("compare_with_history")
    result = await tool.execute({"student_id": "c1", "metric": "accuracy"}, _ctx())
    assert result.success is True
    assert result.data["student_id"] == "c1"
    assert (result.data["current_value"], result.data["historical_value"]) == (1.0, 0.0)
    assert result.data["trend"] == "improving"

    rejected = await tool.execute({"student_id": "c1", "metric": "speed"}, _ctx())
    assert (rejected.success, rejected.error) == (False, "invalid_arguments: metric")


@pytest.mark.asyncio
async def test_learning_goal_tool_reports_progress(repository):
    repository.add_goal("c1", description="数学掌握度达到 80%", subject="math", target_mastery=0.8)
    repository.add_goal("c1", description="背完 20 首古诗", subject="chinese", status="completed")
    tool = build_registry(repository, FakeGenerator()).get("get_learning_goal")

    result = await tool.execute({"student_id": "c1"}, _ctx())
    assert (result.data["active_count"], result.data["completed_count"]) == (1, 1)
    math_goal = result.data["goals"][0]
    assert math_goal["current_mastery"] == 0.63
    assert math_goal["progress"] == 0.79

    active = await tool.execute({"student_id": "c1", "status": "active"}, _ctx())
    assert [g["id"] for g in active.data["goals"]] == ["goal_1"]


@pytest.mark.asyncio
async def test_weekly_review_summary_tool(repository):
    repository.add_answer("c1", False, MONDAY - timedelta(days=5), "分数")
    repository.add_answer("c1", False, MONDAY - timedelta(hours=2), "分数")
    repository.add_answer("c1", False, MONDAY - timedelta(hours=1), "小数")
    tool = build_registry(repository, FakeGenerator()).get("get_weekly_review_summary")
    result = await tool.execute({"student_id": "c1"}, _ctx())
    assert result.success is True
    assert result.data["week_start"].startswith("2025-03-10")
    assert [p["knowledge_point"] for p in result.data["weak_points"]] == ["分数", "小数"]
    assert [p["knowledge_point"] for p in result.data["carryover_points"]] == ["分数"]


@pytest.mark.asyncio
async def test_parse_attachment_tool(repository):
    class ParsingGenerator(FakeGenerator):
        async def parse_attachment(self, attachment):
            if attachment.type == "image":
                raise MalformedOutputError("unreadable")
            return {"type": attachment.type, "text": "一、分数", "source": "decoded"}

    tool = build_registry(repository, ParsingGenerator()).get("parse_attachment")
    ctx = RunContext(
        run_id="run-1",
        child_id="c1",
        now=MONDAY,
        attachments=[Attachment(id="a", type="text", data="5LiA"), Attachment(id="b", type="image", data="AAAA")],
    )
    parsed = await tool.execute({"attachment_index": 0}, ctx)
    assert parsed.data["text"] == "一、分数"
    failed = await tool.execute({"attachment_index": 1}, ctx)
    assert (failed.success, failed.error) == (False, "malformed_output")
    missing = await tool.execute({"attachment_index": 2}, ctx)
    assert (missing.success, missing.error) == (False, "invalid_attachment_index: 2 (available: 2)")


def test_long_failure_text_is_truncated_in_the_summary():
    summary = summarize_tool_output("get_full_context", ToolResult.fail("x" * 5000), threshold=800)
    assert summary["error"].endswith("...")
    assert len(summary["error"]) <= 803
