from typing import Literal

from pydantic import BaseModel, Field

from studyquest.agents.content import ContentGenerator
from studyquest.agents.schedule import enforce_learning_decision, resolve_schedule
from studyquest.core.errors import StudyQuestError
from studyquest.core.logging import DOMAIN_CONTENT, get_domain_logger
from studyquest.core.settings import settings
from studyquest.schemas.schedule import FrontMode
from studyquest.tools.base import RunContext, Tool, ToolName, ToolResult

logger = get_domain_logger(__name__, DOMAIN_CONTENT)

DEFAULT_UPLOAD_INSTRUCTION = "请分析上传的学习材料，并生成学习计划。"


class ReadingMaterialArgs(BaseModel):
    topic: str = Field(..., description="阅读材料的主题")
    subject: Literal["math", "chinese", "english", "science", "other"] = Field(..., description="科目")
    grade_level: int = Field(4, ge=1, le=9, description="年级（1-9）")
    source_text: str | None = Field(None, description="从附件提取的原文内容")
    style: Literal["concept_review", "story", "explanation"] = Field("explanation", description="材料风格")


class UploadTaskArgs(BaseModel):
    instruction: str | None = Field(None, description="用户的附加指令")
    grade_level: int | None = Field(None, ge=1, le=9, description="学生年级")
    preferred_subject: str | None = Field(None, description="优先科目")


class ParseAttachmentArgs(BaseModel):
    attachment_index: int = Field(..., ge=0, description="附件在列表中的索引（从0开始）")


class GenerateReadingMaterialTool(Tool):
    name = ToolName.GENERATE_READING_MATERIAL
    description = "根据主题或原文生成适合学生年级的阅读材料和配套习题。"
    args_schema = ReadingMaterialArgs

    def __init__(self, generator: ContentGenerator):
        self.generator = generator

    async def run(self, args: ReadingMaterialArgs, run_context: RunContext) -> ToolResult:
        try:
            data = await self.generator.generate_reading_material(
                args.topic, args.subject, args.grade_level, args.source_text, args.style
            )
        except StudyQuestError as exc:
            logger.warning("Reading material generation failed run=%s: %s", run_context.run_id, exc)
            return ToolResult.fail(exc.code)
        return ToolResult.ok(data)


class ProcessFullUploadTaskTool(Tool):
    name = ToolName.PROCESS_FULL_UPLOAD_TASK
    description = "一键处理上传的附件：分析附件，生成阅读材料和配套习题。用户上传文件时优先使用此工具。"
    args_schema = UploadTaskArgs

    def __init__(self, generator: ContentGenerator):
        self.generator = generator

    async def run(self, args: UploadTaskArgs, run_context: RunContext) -> ToolResult:
        instruction = args.instruction or DEFAULT_UPLOAD_INSTRUCTION
        if args.preferred_subject:
            instruction = f"[PRIORITY SUBJECT: {args.preferred_subject}] {instruction}"
        logger.info("Processing upload run=%s attachments=%s", run_context.run_id, len(run_context.attachments))

        # With a known material type the schedule bounds how much practice the upload may produce.
        resolution = None
        question_count = None
        material_type = run_context.extra.get("material_type")
        if material_type:
            try:
                resolution = resolve_schedule(
                    run_context.extra.get("learning_period", "school"),
                    run_context.now,
                    material_type,
                )
            except ValueError:
                return ToolResult.fail("invalid_learning_period")
            decision = resolution.learning_decision
            question_count = decision.question_count if decision.front_mode == FrontMode.PRACTICE else 0

        try:
            data = await self.generator.generate(
                instruction,
                run_context.attachments,
                args.grade_level or settings.default_grade_level,
                settings.default_recent_accuracy,
                question_count=question_count,
            )
        except StudyQuestError as exc:
            logger.warning("Upload processing failed run=%s: %s", run_context.run_id, exc)
            return ToolResult.fail(exc.code)
        if resolution is not None:
            data = enforce_learning_decision(data, resolution.learning_decision, resolution.effective_mode)
            data["learning_decision"] = resolution.learning_decision.model_dump(mode="json")
        return ToolResult.ok(data)


class ParseAttachmentTool(Tool):
    name = ToolName.PARSE_ATTACHMENT
    description = "解析用户上传的单个附件：文档直接提取文字，图片和 PDF 做识别并列出知识点和错题。"
    args_schema = ParseAttachmentArgs

    def __init__(self, generator: ContentGenerator):
        self.generator = generator

    async def run(self, args: ParseAttachmentArgs, run_context: RunContext) -> ToolResult:
        available = len(run_context.attachments)
        if args.attachment_index >= available:
            return ToolResult.fail(f"invalid_attachment_index: {args.attachment_index} (available: {available})")
        attachment = run_context.attachments[args.attachment_index]
        try:
            data = await self.generator.parse_attachment(attachment)
        except StudyQuestError as exc:
            logger.warning("Attachment parsing failed run=%s: %s", run_context.run_id, exc)
            return ToolResult.fail(exc.code)
        return ToolResult.ok(data)
