import json
import re

from studyquest.core.errors import MalformedOutputError
from studyquest.core.logging import DOMAIN_CONTENT, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_CONTENT)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_FENCED_BLOCK_RE = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL | re.IGNORECASE)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

# Common endings of a response cut off mid-item by the output token limit.
TRUNCATION_SUFFIXES = ('"}]}', '"}]}}', '"}}}', '"}}', "]}", "]}}}", "]}}")


def _from_first_brace(text: str) -> str:
    clean = _FENCE_RE.sub("", text or "").strip()
    start = clean.find("{")
    if start != -1:
        clean = clean[start:]
    return _CONTROL_CHARS_RE.sub("", clean)


def clean_json_text(text: str) -> str:
    """Strip markdown fences and surrounding prose, keep the outermost ``{...}`` span."""
    clean = _from_first_brace(text)
    end = clean.rfind("}")
    if clean.startswith("{") and end > 0:
        clean = clean[: end + 1]
    return clean


def balance_suffix(text: str) -> str:
    """Return the closing characters needed to balance an unterminated JSON document."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    suffix = '"' if in_string else ""
    return suffix + "".join(reversed(stack))


def _try_parse(candidate: str):
    try:
        return json.loads(candidate, strict=False)
    except (json.JSONDecodeError, ValueError):
        return None


def lenient_decode(text: str):
    """Decode model output into JSON using an explicit fallback ladder.

    strict parse -> bracket/quote balancing -> truncation-suffix heuristics.
    Raises ``MalformedOutputError`` when every rung fails.
    """
    cleaned = clean_json_text(text)
    if not cleaned:
        raise MalformedOutputError("empty model output")

    parsed = _try_parse(cleaned)
    if parsed is not None:
        return parsed

    logger.warning("Strict JSON parse failed, attempting repair (length=%s)", len(cleaned))
    # Repair works on the untrimmed tail: a cut-off document has no trustworthy last brace.
    stripped = _from_first_brace(text).rstrip().rstrip(",")
    suffix = balance_suffix(stripped)
    if suffix:
        parsed = _try_parse(stripped + suffix)
        if parsed is not None:
            return parsed

    for fix in TRUNCATION_SUFFIXES:
        parsed = _try_parse(stripped + fix)
        if parsed is not None:
            return parsed

    logger.error("Failed to repair JSON (length=%s)", len(text or ""))
    raise MalformedOutputError("unable to repair model JSON output")


def extract_final_json(text: str) -> dict:
    """Pull the structured answer out of an agent's final text turn.

    A fenced ``json`` block wins, then the widest ``{...}`` span; anything
    unparseable falls back to ``{"answer": text}``.
    """
    fenced = _FENCED_BLOCK_RE.search(text or "")
    candidates = []
    if fenced:
        candidates.append(fenced.group(1))
    start = (text or "").find("{")
    end = (text or "").rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        parsed = _try_parse(candidate)
        if isinstance(parsed, dict):
            return parsed
    return {"answer": text}
