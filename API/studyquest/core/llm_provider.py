import base64
import binascii
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from studyquest.core.errors import UpstreamTerminalError, UpstreamTransientError
from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger
from studyquest.core.settings import settings
from studyquest.schemas.agent import Attachment

logger = get_domain_logger(__name__, DOMAIN_AGENT)

_BLOCKED_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "RECITATION"}
_TEXT_ATTACHMENT_TYPES = {"markdown", "text", "excel"}
_DEFAULT_MIME = {"image": "image/jpeg", "pdf": "application/pdf"}


def _estimate_tokens(text: str) -> int:
    return max(1, len((text or "").strip()) // 4)


@dataclass
class ToolCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class ModelTurn:
    """One reply from the tool-calling model: free text, tool calls, or both."""

    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip() and not self.tool_calls


def _sanitize_url(raw_url: str) -> str:
    parsed = urlparse(raw_url)
    if not parsed.query:
        return raw_url
    filtered = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k.lower() != "key"]
    return urlunparse(parsed._replace(query=urlencode(filtered)))


def _gemini_url(model_name: str) -> str:
    api_url = settings.gemini_api_url.strip()
    if not api_url:
        api_url = f"https://generativelanguage.googleapis.com/v1beta/models/{model_name}:generateContent"
    return _sanitize_url(api_url)


def _classify_http_error(exc: Exception) -> Exception:
    """Map an httpx failure onto the retry taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429 or status >= 500:
            return UpstreamTransientError(f"model endpoint returned {status}")
        body = (exc.response.text or "").lower()
        if "safety" in body or "blocked" in body:
            return UpstreamTerminalError(f"model endpoint rejected the request ({status})")
        return UpstreamTerminalError(f"model endpoint returned {status}")
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return UpstreamTransientError(f"model endpoint unreachable: {type(exc).__name__}")
    if isinstance(exc, ValueError):
        return UpstreamTransientError(f"model endpoint returned an unreadable body: {type(exc).__name__}")
    return exc


def _check_blocked(data: Any) -> None:
    if not isinstance(data, dict):
        raise UpstreamTransientError(f"model endpoint returned {type(data).__name__} instead of an object")
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise UpstreamTerminalError(f"prompt blocked: {feedback['blockReason']}")
    for candidate in data.get("candidates") or []:
        reason = (candidate.get("finishReason") or "").upper()
        if reason in _BLOCKED_FINISH_REASONS:
            raise UpstreamTerminalError(f"response blocked: {reason}")


def split_payload(attachment: Attachment) -> tuple[str, str | None]:
    """Return the bare base64 payload and its mime type, unwrapping a ``data:`` URL."""
    payload = attachment.data
    mime_type = attachment.mime_type
    if payload.startswith("data:") and "," in payload:
        header, payload = payload.split(",", 1)
        mime_type = mime_type or header[5:].split(";", 1)[0]
    return payload, mime_type


def decode_text_attachment(attachment: Attachment) -> str | None:
    """Decoded text of a text-like attachment; None for images and PDFs."""
    if attachment.type not in _TEXT_ATTACHMENT_TYPES:
        return None
    payload, _ = split_payload(attachment)
    try:
        return base64.b64decode(payload).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return payload


def attachment_parts(attachments: list[Attachment] | None) -> list[dict]:
    """Render attachments as Gemini content parts (inline data, or decoded text for text-like files)."""
    parts: list[dict] = []
    for attachment in attachments or []:
        payload, mime_type = split_payload(attachment)
        text = decode_text_attachment(attachment)
        if text is not None:
            label = attachment.filename or attachment.id
            parts.append({"text": f"[附件 {label}]\n{text}"})
            continue
        parts.append(
            {
                "inline_data": {
                    "mime_type": mime_type or _DEFAULT_MIME.get(attachment.type, "application/octet-stream"),
                    "data": payload,
                }
            }
        )
    return parts


def history_to_contents(history: list[dict]) -> list[dict]:
    """Convert provider-neutral history into Gemini ``contents``.

    Consecutive tool messages are folded into one user turn of
    ``functionResponse`` parts so each model turn is answered in one block.
    """
    contents: list[dict] = []
    for message in history:
        role = message.get("role")
        if role == "tool":
            part = {
                "functionResponse": {
                    "name": message["name"],
                    "response": {"content": message.get("content")},
                }
            }
            if contents and contents[-1].get("_tool_block"):
                contents[-1]["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part], "_tool_block": True})
            continue
        parts: list[dict] = []
        if message.get("text"):
            parts.append({"text": message["text"]})
        if role == "model":
            for call in message.get("tool_calls") or []:
                parts.append({"functionCall": {"name": call["name"], "args": call.get("args") or {}}})
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
        else:
            parts.extend(attachment_parts(message.get("attachments")))
            contents.append({"role": "user", "parts": parts or [{"text": ""}]})
    for content in contents:
        content.pop("_tool_block", None)
    return contents


class BaseModelClient(ABC):
    """Tool-calling chat primitive used by the orchestration loop. Single attempt; callers retry."""

    provider_name: str

    @abstractmethod
    async def call(self, history: list[dict], system_prompt: str, tools: list[dict]) -> ModelTurn:
        raise NotImplementedError


class GeminiModelClient(BaseModelClient):
    provider_name = "gemini"

    def __init__(self, model_name: str | None = None, timeout: float | None = None):
        self.model_name = model_name or settings.llm_model
        self.timeout = timeout or settings.llm_timeout_seconds

    async def call(self, history: list[dict], system_prompt: str, tools: list[dict]) -> ModelTurn:
        if not settings.gemini_api_key:
            raise UpstreamTerminalError("missing model API key")
        payload: dict[str, Any] = {
            "contents": history_to_contents(history),
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": {"temperature": settings.llm_temperature},
        }
        if tools:
            payload["tools"] = [{"functionDeclarations": tools}]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    _gemini_url(self.model_name),
                    json=payload,
                    headers={"x-goog-api-key": settings.gemini_api_key},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise _classify_http_error(exc) from exc

        _check_blocked(data)
        candidates = data.get("candidates") or []
        if not candidates:
            return ModelTurn()
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts: list[str] = []
        calls: list[ToolCall] = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            if part.get("functionCall"):
                fc = part["functionCall"]
                calls.append(ToolCall(name=fc.get("name", ""), args=dict(fc.get("args") or {})))
            elif part.get("text"):
                texts.append(part["text"])
        text = "\n".join(texts).strip() or None
        usage = {
            "provider": self.provider_name,
            "model": self.model_name,
            "completion_tokens_estimate": _estimate_tokens(text or ""),
        }
        return ModelTurn(text=text, tool_calls=calls, usage=usage)


class NullModelClient(BaseModelClient):
    provider_name = "none"

    async def call(self, history: list[dict], system_prompt: str, tools: list[dict]) -> ModelTurn:
        return ModelTurn(usage={"provider": self.provider_name, "reason": "unsupported_provider"})


class BaseLLMProvider(ABC):
    """Single-shot text/JSON generation used for content. Single attempt; callers retry."""

    provider_name: str

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        attachments: list[Attachment] | None = None,
        *,
        json_output: bool = True,
    ) -> tuple[str | None, dict]:
        raise NotImplementedError


class GeminiLLMProvider(BaseLLMProvider):
    provider_name = "gemini"

    def __init__(self, model_name: str | None = None, temperature: float | None = None):
        self.model_name = model_name or settings.llm_model
        self.temperature = settings.content_temperature if temperature is None else temperature

    async def generate(
        self,
        prompt: str,
        attachments: list[Attachment] | None = None,
        *,
        json_output: bool = True,
    ) -> tuple[str | None, dict]:
        if not settings.gemini_api_key:
            return None, {"provider": self.provider_name, "model": self.model_name, "reason": "missing_api_key"}

        generation_config: dict[str, Any] = {"temperature": self.temperature}
        if json_output:
            generation_config["responseMimeType"] = "application/json"
        payload = {
            "contents": [{"role": "user", "parts": [*attachment_parts(attachments), {"text": prompt}]}],
            "generationConfig": generation_config,
        }
        try:
            async with httpx.AsyncClient(timeout=settings.llm_timeout_seconds) as client:
                response = await client.post(
                    _gemini_url(self.model_name),
                    json=payload,
                    headers={"x-goog-api-key": settings.gemini_api_key},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise _classify_http_error(exc) from exc

        _check_blocked(data)
        candidates = data.get("candidates") or []
        if not candidates:
            return None, {"provider": self.provider_name, "model": self.model_name, "reason": "no_candidates"}
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "\n".join(p.get("text", "") for p in parts if isinstance(p, dict)).strip()
        usage = {
            "provider": self.provider_name,
            "model": self.model_name,
            "prompt_tokens_estimate": _estimate_tokens(prompt),
            "completion_tokens_estimate": _estimate_tokens(text),
            "finish_reason": candidates[0].get("finishReason"),
        }
        return (text or None), usage


class NullLLMProvider(BaseLLMProvider):
    provider_name = "none"

    async def generate(
        self,
        prompt: str,
        attachments: list[Attachment] | None = None,
        *,
        json_output: bool = True,
    ) -> tuple[str | None, dict]:
        return None, {
            "provider": self.provider_name,
            "model": "none",
            "prompt_tokens_estimate": _estimate_tokens(prompt),
            "reason": "unsupported_provider",
        }


def get_model_client() -> BaseModelClient:
    if (settings.llm_provider or "").lower() == "gemini":
        return GeminiModelClient(model_name=settings.llm_model)
    return NullModelClient()


def get_llm_provider() -> BaseLLMProvider:
    if (settings.llm_provider or "").lower() == "gemini":
        return GeminiLLMProvider(model_name=settings.llm_model)
    return NullLLMProvider()
