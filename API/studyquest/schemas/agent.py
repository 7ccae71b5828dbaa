from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AgentTask(str, Enum):
    DECIDE_TODAY = "decide_today"
    GENERATE_TASKS = "generate_tasks"
    CHAT = "chat"
    PROCESS_UPLOAD = "process_upload"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Attachment(BaseModel):
    id: str
    type: str = Field("image", description="image | pdf | excel | markdown | text")
    data: str = Field(..., description="base64 payload, optionally a data: URL")
    mime_type: str | None = None
    filename: str | None = None


class ToolCallRecord(BaseModel):
    name: str
    params: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class AgentStep(BaseModel):
    thought: str | None = None
    tool_call: dict[str, Any] | None = None
    tool_output: Any = None


class AgentRequest(BaseModel):
    child_id: str
    task: AgentTask
    message: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    run_id: str
    success: bool
    status: RunStatus
    result: Any = None
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    steps: list[AgentStep] = Field(default_factory=list)
    error: str | None = None
