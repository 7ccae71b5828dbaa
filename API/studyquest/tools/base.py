from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from studyquest.core.errors import UnknownToolError
from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger
from studyquest.schemas.agent import Attachment

logger = get_domain_logger(__name__, DOMAIN_AGENT)


class ToolName(str, Enum):
    GET_FULL_CONTEXT = "get_full_context"
    GET_STUDENT_CONTEXT = "get_student_context"
    READ_STUDENT_MEMORY = "read_student_memory"
    GET_MEMORY_SUMMARY = "get_memory_summary"
    SEARCH_KNOWLEDGE_POINTS = "search_knowledge_points"
    GET_APPLICABLE_SKILLS = "get_applicable_skills"
    DECIDE_TEACHING_INTENT = "decide_teaching_intent"
    GENERATE_READING_MATERIAL = "generate_reading_material"
    PROCESS_FULL_UPLOAD_TASK = "process_full_upload_task"
    WRITE_OBSERVATION = "write_observation"
    THINK_STEP = "think_step"
    VERIFY_DECISION = "verify_decision"
    COMPARE_WITH_HISTORY = "compare_with_history"
    GET_LEARNING_GOAL = "get_learning_goal"
    GET_WEEKLY_REVIEW_SUMMARY = "get_weekly_review_summary"
    PARSE_ATTACHMENT = "parse_attachment"


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> ToolResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


@dataclass
class RunContext:
    """Request-scoped state handed to every tool of one orchestration run."""

    run_id: str
    child_id: str
    attachments: list[Attachment] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    now: datetime | None = None


_DROPPED_SCHEMA_KEYS = {"title", "default", "additionalProperties", "$defs"}


def declaration_schema(schema: dict, defs: dict | None = None) -> dict:
    """Reduce a pydantic JSON schema to the OpenAPI subset accepted by function declarations.

    ``$ref`` is inlined, ``Optional[X]`` becomes ``X`` and titles/defaults are dropped.
    """
    defs = schema.get("$defs", {}) if defs is None else defs
    if "$ref" in schema:
        return declaration_schema(defs[schema["$ref"].split("/")[-1]], defs)
    if "anyOf" in schema:
        options = [s for s in schema["anyOf"] if s.get("type") != "null"]
        merged = declaration_schema(options[0], defs) if options else {"type": "string"}
        if schema.get("description"):
            merged["description"] = schema["description"]
        return merged
    out: dict[str, Any] = {}
    for key, value in schema.items():
        if key in _DROPPED_SCHEMA_KEYS:
            continue
        if key == "properties":
            out[key] = {name: declaration_schema(prop, defs) for name, prop in value.items()}
        elif key == "items" and isinstance(value, dict):
            out[key] = declaration_schema(value, defs)
        else:
            out[key] = value
    if out.get("type") == "object" and "properties" not in out:
        out["properties"] = {}
    return out


class Tool(ABC):
    name: ToolName
    description: str
    args_schema: type[BaseModel]

    def declaration(self) -> dict:
        return {
            "name": self.name.value,
            "description": self.description,
            "parameters": declaration_schema(self.args_schema.model_json_schema()),
        }

    async def execute(self, params: dict[str, Any], run_context: RunContext) -> ToolResult:
        try:
            args = self.args_schema.model_validate(params or {})
        except ValidationError as exc:
            logger.warning("Invalid arguments for tool %s: %s", self.name.value, exc.errors())
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
            return ToolResult.fail(f"invalid_arguments: {', '.join(fields)}")
        # A run only ever reads or writes the learner it was started for.
        student_id = getattr(args, "student_id", None)
        if student_id is not None and student_id != run_context.child_id:
            logger.warning(
                "Tool %s asked for student=%s in run=%s for child=%s",
                self.name.value,
                student_id,
                run_context.run_id,
                run_context.child_id,
            )
            return ToolResult.fail("student_mismatch")
        return await self.run(args, run_context)

    @abstractmethod
    async def run(self, args: Any, run_context: RunContext) -> ToolResult:
        raise NotImplementedError


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[ToolName, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: ToolName | str) -> Tool:
        try:
            return self._tools[ToolName(name)]
        except (KeyError, ValueError) as exc:
            raise UnknownToolError(f"Unknown tool: {name}") from exc

    def names(self) -> list[str]:
        return [name.value for name in self._tools]

    def declarations(self) -> list[dict]:
        return [tool.declaration() for tool in self._tools.values()]
