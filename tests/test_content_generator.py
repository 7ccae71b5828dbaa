from __future__ import annotations

import base64
import json

import pytest

from studyquest.agents.content import ContentGenerator, difficulty_policy
from studyquest.core.errors import MalformedOutputError, UpstreamTerminalError, UpstreamTransientError
from studyquest.core.llm_provider import BaseLLMProvider, NullLLMProvider
from studyquest.schemas.agent import Attachment
from studyquest.schemas.intent import DifficultyLevel, IntentType, TeachingIntent

MATERIAL = {
    "analysis": {"subject": "数学", "language": "zh"},
    "daily_challenge": {"title": "分数小课堂", "reading_material": {"title": "分数", "content": "把一个整体平均分..."}},
}


def _question(i: int, **overrides) -> dict:
    question = {
        "question_text": f"第{i}题",
        "question_type": "choice",
        "options": ["1/2", "1/3", "Easy"],
        "correct_answer": "1/2",
    }
    question.update(overrides)
    return question


class ScriptedProvider(BaseLLMProvider):
    provider_name = "scripted"

    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.prompts: list[str] = []

    async def generate(self, prompt, attachments=None, *, json_output=True):
        self.prompts.append(prompt)
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output, {"provider": self.provider_name}


async def _no_sleep(_delay: float) -> None:
    return None


def test_difficulty_policy_bands():
    assert difficulty_policy(0.5)["band"] == "foundation"
    assert difficulty_policy(0.85)["band"] == "standard"
    assert difficulty_policy(0.9)["band"] == "stretch"


@pytest.mark.asyncio
async def test_two_phase_generation_merges_and_caps():
    bank = {"questions": [_question(i) for i in range(6)] + [_question(9, options=["A", "B"])]}
    provider = ScriptedProvider([json.dumps(MATERIAL), "```json\n" + json.dumps(bank) + "\n```"])
    result = await ContentGenerator(provider, sleep=_no_sleep).generate("复习分数", grade_level=4, question_count=4)

    assert result["analysis"]["subject"] == "数学"
    questions = result["daily_challenge"]["questions"]
    assert len(questions) == 4
    assert questions[0]["options"] == ["1/2", "1/3"]
    assert questions[0]["difficulty_tag"] == "Easy"
    assert len(provider.prompts) == 2
    assert "4 道练习题" in provider.prompts[1]


@pytest.mark.asyncio
async def test_teaching_intent_sets_count_and_reaches_the_prompt():
    intent = TeachingIntent(
        type=IntentType.REINFORCE,
        reason="巩固",
        focus_knowledge_points=["分数加法"],
        question_count=2,
        difficulty_level=DifficultyLevel.LOW,
    )
    bank = {"questions": [_question(i) for i in range(5)]}
    provider = ScriptedProvider([json.dumps(MATERIAL), json.dumps(bank)])
    result = await ContentGenerator(provider, sleep=_no_sleep).generate("", teaching_intent=intent)
    assert len(result["daily_challenge"]["questions"]) == 2
    assert "分数加法" in provider.prompts[0]


@pytest.mark.asyncio
async def test_zero_questions_skips_the_question_phase():
    provider = ScriptedProvider([json.dumps(MATERIAL)])
    result = await ContentGenerator(provider, sleep=_no_sleep).generate("只要材料", question_count=0)
    assert result["daily_challenge"]["questions"] == []
    assert len(provider.prompts) == 1


@pytest.mark.asyncio
async def test_truncated_material_is_repaired():
    truncated = json.dumps(MATERIAL, ensure_ascii=False)[:-3]
    provider = ScriptedProvider([truncated])
    result = await ContentGenerator(provider, sleep=_no_sleep).generate("x", question_count=0)
    assert result["daily_challenge"]["title"] == "分数小课堂"


@pytest.mark.asyncio
async def test_transient_provider_errors_are_retried():
    provider = ScriptedProvider([UpstreamTransientError("503"), json.dumps(MATERIAL)])
    result = await ContentGenerator(provider, sleep=_no_sleep).generate("x", question_count=0)
    assert result["analysis"]["subject"] == "数学"


@pytest.mark.asyncio
async def test_unconfigured_provider_is_terminal():
    with pytest.raises(UpstreamTerminalError):
        await ContentGenerator(NullLLMProvider(), sleep=_no_sleep).generate("x")


@pytest.mark.asyncio
async def test_garbage_output_is_malformed():
    provider = ScriptedProvider(["抱歉，我无法完成"])
    with pytest.raises(MalformedOutputError):
        await ContentGenerator(provider, sleep=_no_sleep).generate("x")


@pytest.mark.asyncio
async def test_generate_reading_material_shape():
    bank = {"questions": [_question(1)]}
    provider = ScriptedProvider([json.dumps(MATERIAL), json.dumps(bank)])
    result = await ContentGenerator(provider, sleep=_no_sleep).generate_reading_material(
        topic="分数", subject="数学", source_text="课本第三单元"
    )
    assert result["title"] == "分数小课堂"
    assert result["reading_material"]["title"] == "分数"
    assert len(result["questions"]) == 1
    assert "[PRIORITY SUBJECT: 数学]" in provider.prompts[0]
    assert "课本第三单元" in provider.prompts[0]


@pytest.mark.asyncio
async def test_text_attachments_are_parsed_without_the_model():
    provider = ScriptedProvider([])
    note = Attachment(id="n", type="markdown", data=base64.b64encode("错题：3/4 + 1/4".encode("utf-8")).decode(), filename="n.md")
    parsed = await ContentGenerator(provider, sleep=_no_sleep).parse_attachment(note)
    assert parsed == {"type": "markdown", "filename": "n.md", "text": "错题：3/4 + 1/4", "source": "decoded"}
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_image_attachments_are_extracted_by_the_model():
    extracted = {"text": "1/2 + 1/3 = 2/5", "subject": "数学", "knowledge_points": ["分数加法"], "wrong_items": ["第1题"]}
    provider = ScriptedProvider([json.dumps(extracted, ensure_ascii=False), "[1, 2]"])
    generator = ContentGenerator(provider, sleep=_no_sleep)
    photo = Attachment(id="p", type="image", data="AAAA")

    parsed = await generator.parse_attachment(photo)
    assert parsed["source"] == "model"
    assert parsed["knowledge_points"] == ["分数加法"]
    assert parsed["wrong_items"] == ["第1题"]
    assert "忠实转写" in provider.prompts[0]

    with pytest.raises(MalformedOutputError):
        await generator.parse_attachment(photo)
