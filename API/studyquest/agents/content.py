import asyncio
from typing import Any, Awaitable, Callable

from studyquest.agents.base import BaseAgent
from studyquest.agents.sanitizer import merge_generation, sanitize_items
from studyquest.core.errors import MalformedOutputError, UpstreamTerminalError
from studyquest.core.json_parser import lenient_decode
from studyquest.core.llm_provider import BaseLLMProvider, decode_text_attachment, get_llm_provider
from studyquest.core.logging import DOMAIN_CONTENT, get_domain_logger
from studyquest.core.resilience import retry_with_backoff
from studyquest.core.settings import settings
from studyquest.schemas.agent import Attachment
from studyquest.schemas.intent import TeachingIntent

logger = get_domain_logger(__name__, DOMAIN_CONTENT)

DEFAULT_QUESTION_COUNT = 5
SOURCE_TEXT_LIMIT = 3000


def difficulty_policy(recent_accuracy: float) -> dict:
    if recent_accuracy < 0.6:
        return {"band": "foundation", "guidance": "简化词汇，句子更短，聚焦基础概念"}
    if recent_accuracy <= 0.85:
        return {"band": "standard", "guidance": "标准难度"}
    return {"band": "stretch", "guidance": "词汇更丰富，推理更深入，例子更复杂"}


def _intent_block(intent: TeachingIntent | None) -> str:
    if intent is None:
        return ""
    focus = "、".join(intent.focus_knowledge_points) or "无"
    return (
        "【教学意图】\n"
        f"- 类型: {intent.type.value}\n"
        f"- 难度: {intent.difficulty_level.value}\n"
        f"- 重点知识点: {focus}\n"
        f"- 原因: {intent.reason}\n"
    )


def material_prompt(instruction: str, grade_level: int, recent_accuracy: float, intent: TeachingIntent | None) -> str:
    policy = difficulty_policy(recent_accuracy)
    return (
        f"你是一位面向中国 {grade_level} 年级学生的辅导老师。\n"
        f"家长指令（最高优先级）: \"{instruction or '无'}\"\n\n"
        "任务: 分析附件（如有），判断科目与语言，生成一篇适合孩子阅读的学习材料。\n"
        "数学/科学只写概念复习：定义、公式、2-4 个分步例题、常见错误；语文/英语写完整段落。\n"
        "有附件时必须忠实于原文内容，不要编造无关故事。\n"
        f"最近正确率 {round(recent_accuracy * 100)}%，难度要求: {policy['guidance']}。\n"
        f"{_intent_block(intent)}\n"
        "只输出 JSON，不要 Markdown 代码块:\n"
        '{"analysis": {"subject": "...", "language": "...", "summary": "..."}, '
        '"daily_challenge": {"title": "...", "reading_material": {"title": "...", "content": "...", "source_style": "..."}}}'
    )


EXTRACTION_PROMPT = (
    "识别这份学习资料（图片或 PDF）。忠实转写其中的文字，判断科目，列出涉及的知识点；"
    "如果是做过的作业或试卷，标出做错的题。\n"
    "只输出 JSON: {\"text\": \"...\", \"subject\": \"...\", \"knowledge_points\": [], \"wrong_items\": []}"
)


def questions_prompt(material: dict, grade_level: int, question_count: int, intent: TeachingIntent | None) -> str:
    reading = ((material.get("daily_challenge") or {}).get("reading_material") or {}).get("content", "")
    return (
        f"根据下面的阅读材料，为 {grade_level} 年级学生出 {question_count} 道练习题。\n"
        "题型 question_type 取值: choice, fill, true_false, short_answer, correction, open_ended。\n"
        "options 只能是选项文本字符串数组，不要写 \"A:\"、\"difficulty:\" 之类的键。\n"
        "choice 题的 correct_answer 必须是正确选项的完整文本；true_false 题的 correct_answer 只能是 True 或 False。\n"
        "每题都要有鼓励性的中文 explanation，difficulty_tag 取 Easy / Medium / Hard / Challenge。\n"
        f"{_intent_block(intent)}\n"
        '只输出 JSON: {"questions": [{"question_text": "...", "question_type": "...", "options": [], '
        '"expected": {"mode": "text", "value": "..."}, "correct_answer": "...", "explanation": "...", '
        '"difficulty_tag": "Easy"}]}\n\n'
        f"阅读材料:\n{reading}"
    )


class ContentGenerator(BaseAgent):
    """Two-phase generation: reading material first, then a sanitized question bank."""

    name = "content_generator"

    def __init__(
        self,
        provider: BaseLLMProvider | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider or get_llm_provider()
        self._sleep = sleep

    async def _generate_json(self, prompt: str, attachments: list[Attachment] | None = None) -> Any:
        async def _call():
            return await self.provider.generate(prompt, attachments)

        text, meta = await retry_with_backoff(
            _call,
            max_retries=settings.model_max_retries,
            base_delay_seconds=settings.retry_base_delay_seconds,
            sleep=self._sleep,
        )
        if text is None:
            reason = meta.get("reason", "no_output")
            if reason in ("missing_api_key", "unsupported_provider"):
                raise UpstreamTerminalError(f"content provider unavailable: {reason}")
            raise MalformedOutputError(f"content provider returned no text: {reason}")
        return lenient_decode(text)

    async def generate(
        self,
        instruction: str,
        attachments: list[Attachment] | None = None,
        grade_level: int | None = None,
        recent_accuracy: float | None = None,
        teaching_intent: TeachingIntent | None = None,
        question_count: int | None = None,
    ) -> dict:
        grade = grade_level or settings.default_grade_level
        accuracy = settings.default_recent_accuracy if recent_accuracy is None else recent_accuracy
        if question_count is None:
            question_count = teaching_intent.question_count if teaching_intent is not None else DEFAULT_QUESTION_COUNT

        logger.info("Generating material grade=%s attachments=%s", grade, len(attachments or []))
        material = await self._generate_json(material_prompt(instruction, grade, accuracy, teaching_intent), attachments)
        if not isinstance(material, dict):
            raise MalformedOutputError("material phase did not return an object")

        questions: list[dict] = []
        if question_count > 0:
            logger.info("Generating %s questions", question_count)
            bank = await self._generate_json(questions_prompt(material, grade, question_count, teaching_intent))
            raw = bank.get("questions") if isinstance(bank, dict) else bank
            questions = sanitize_items(raw if isinstance(raw, list) else [])
        return merge_generation(material, questions, question_count)

    async def generate_reading_material(
        self,
        topic: str,
        subject: str,
        grade_level: int | None = None,
        source_text: str | None = None,
        style: str = "explanation",
    ) -> dict:
        grade = grade_level or settings.default_grade_level
        prefix = f"[PRIORITY SUBJECT: {subject}] "
        if source_text:
            instruction = f"{prefix}基于以下内容，生成一篇适合{grade}年级学生的{subject}阅读材料（风格: {style}）：\n\n{source_text[:SOURCE_TEXT_LIMIT]}"
        else:
            instruction = f"{prefix}请生成一篇关于\"{topic}\"的{subject}阅读材料（风格: {style}），适合{grade}年级学生"
        result = await self.generate(instruction, [], grade)
        challenge = result.get("daily_challenge") or {}
        return {
            "title": challenge.get("title"),
            "reading_material": challenge.get("reading_material"),
            "questions": challenge.get("questions", []),
        }

    async def parse_attachment(self, attachment: Attachment) -> dict:
        """Extract text from one attachment. Text-like files are decoded locally; images and PDFs go to the model."""
        text = decode_text_attachment(attachment)
        if text is not None:
            return {"type": attachment.type, "filename": attachment.filename, "text": text, "source": "decoded"}
        logger.info("Extracting attachment %s type=%s", attachment.id, attachment.type)
        extracted = await self._generate_json(EXTRACTION_PROMPT, [attachment])
        if not isinstance(extracted, dict):
            raise MalformedOutputError("extraction did not return an object")
        return {
            "type": attachment.type,
            "filename": attachment.filename,
            "text": extracted.get("text") or "",
            "subject": extracted.get("subject"),
            "knowledge_points": extracted.get("knowledge_points") or [],
            "wrong_items": extracted.get("wrong_items") or [],
            "source": "model",
        }

    async def run(self, input_data: dict[str, Any]) -> dict[str, Any]:
        return await self.generate(
            input_data.get("instruction", ""),
            input_data.get("attachments"),
            input_data.get("grade_level"),
            input_data.get("recent_accuracy"),
            input_data.get("teaching_intent"),
            input_data.get("question_count"),
        )
