import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StudyQuestError(Exception):
    """Base error for the teaching core."""

    code = "internal_error"


class UpstreamTransientError(StudyQuestError):
    """Network hiccup, rate limit or 5xx from an upstream model. Safe to retry."""

    code = "upstream_unavailable"


class UpstreamTerminalError(StudyQuestError):
    """Safety or policy rejection from an upstream model. Never retried."""

    code = "upstream_rejected"


class MalformedOutputError(StudyQuestError):
    """Generated output could not be repaired into usable JSON or items."""

    code = "malformed_output"


class InvalidLayerError(StudyQuestError):
    """Raised when a caller tries to write a memory layer it does not own."""

    code = "InvalidLayer"


class UnknownToolError(StudyQuestError):
    """Raised at registry lookup for a tool name outside the catalog."""

    code = "unknown_tool"


class AmbiguousBooleanAnswer(StudyQuestError):
    """A true/false answer token matched neither synonym table (strict mode only)."""

    code = "ambiguous_boolean_answer"


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    details=None,
) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(
        request,
        code="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        code="validation_error",
        message="Request validation failed",
        status_code=422,
        details=exc.errors(),
    )


async def studyquest_exception_handler(request: Request, exc: StudyQuestError):
    logger.warning("Request failed | request_id=%s code=%s error=%s", get_request_id(request), exc.code, exc)
    status_code = 400 if isinstance(exc, (InvalidLayerError, UnknownToolError)) else 502
    return error_response(
        request,
        code=exc.code,
        message="Please retry later" if status_code == 502 else str(exc),
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception | request_id=%s", get_request_id(request), exc_info=exc)
    return error_response(
        request,
        code="internal_error",
        message="Internal server error",
        status_code=500,
    )


async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    request.state.request_id = incoming or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.request_id
    return response
