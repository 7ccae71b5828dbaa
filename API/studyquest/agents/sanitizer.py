"""Clean-up of model-generated question banks before they reach a child."""
import re
from typing import Any

from studyquest.core.errors import AmbiguousBooleanAnswer
from studyquest.core.logging import DOMAIN_CONTENT, get_domain_logger
from studyquest.core.settings import settings

logger = get_domain_logger(__name__, DOMAIN_CONTENT)

TRUE_TOKENS = frozenset({"true", "t", "yes", "y", "对", "是", "correct", "right", "1", "正确", "对的"})
FALSE_TOKENS = frozenset({"false", "f", "no", "n", "错", "否", "incorrect", "wrong", "0", "错误", "不对", "错的"})
DIFFICULTY_LABELS = ("easy", "medium", "hard", "challenge")
# Schema field names the model sometimes leaks into the options array.
LEAKED_KEYS = frozenset(
    {
        "common_mistakes",
        "knowledge_points",
        "question_type",
        "expected",
        "explanation",
        "score_value",
        "correct_answer",
        "type",
        "reading",
        "description",
        "analysis",
        "daily_challenge",
        "difficulty_tag",
        "chinese_skill",
        "english_skill",
        "options",
        "questions",
        "null",
        "undefined",
    }
)
NO_OPTION_TYPES = ("fill", "short_answer", "open_ended")

_BARE_LETTER_RE = re.compile(r"^[A-D]$", re.IGNORECASE)
_KEY_VALUE_RE = re.compile(r"^[a-z_]+:\s", re.IGNORECASE)


def normalize_boolean(value: Any, *, strict: bool | None = None) -> str:
    """Return ``"True"`` or ``"False"`` for a true/false answer token."""
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, (int, float)) and value in (0, 1):
        return "True" if value == 1 else "False"
    token = str(value).strip().lower()
    if token in TRUE_TOKENS:
        return "True"
    if token in FALSE_TOKENS:
        return "False"
    if settings.strict_boolean_answers if strict is None else strict:
        raise AmbiguousBooleanAnswer(f"unrecognised true/false answer: {value!r}")
    logger.warning("Ambiguous true/false answer %r, defaulting to True", value)
    return "True"


def _normalize_true_false(item: dict, strict: bool | None) -> None:
    if "correct_answer" in item and item["correct_answer"] is not None:
        item["correct_answer"] = normalize_boolean(item["correct_answer"], strict=strict)
    expected = item.get("expected")
    if isinstance(expected, dict):
        if expected.get("value") is not None:
            expected["value"] = normalize_boolean(expected["value"], strict=strict)
        if item.get("correct_answer"):
            expected["value"] = item["correct_answer"]
    item.pop("options", None)


def clean_choice_options(item: dict) -> list[str]:
    """Filter junk out of an options list, rescuing difficulty labels into ``difficulty_tag``."""
    kept: list[str] = []
    for option in item.get("options") or []:
        text = str(option).strip()
        lowered = text.lower()
        if not text or _BARE_LETTER_RE.match(text):
            continue
        if lowered in DIFFICULTY_LABELS:
            if not item.get("difficulty_tag"):
                item["difficulty_tag"] = text[0].upper() + text[1:]
            continue
        if lowered in LEAKED_KEYS or _KEY_VALUE_RE.match(text):
            continue
        kept.append(option)
    return kept


def _recover_options(original: list) -> list:
    return [o for o in original if str(o).strip() and (len(str(o).strip()) > 1 or not _BARE_LETTER_RE.match(str(o).strip()))]


def sanitize_item(item: dict, *, strict: bool | None = None) -> dict:
    """Sanitize one question in place; sets ``_invalid`` when it cannot be salvaged."""
    question_type = item.get("question_type")
    if question_type == "true_false":
        _normalize_true_false(item, strict)
        return item

    if isinstance(item.get("options"), list):
        original = list(item["options"])
        item["options"] = clean_choice_options(item)
        if question_type == "choice" and not item["options"]:
            recovered = _recover_options(original)
            if recovered:
                logger.warning("All options filtered, recovered %s from original", len(recovered))
                item["options"] = recovered
            else:
                logger.error("Cannot recover options for question: %s", str(item.get("question_text", ""))[:50])
                item["_invalid"] = True

    if question_type in NO_OPTION_TYPES:
        item.pop("options", None)
    return item


def sanitize_items(items: list[Any], *, strict: bool | None = None) -> list[dict]:
    cleaned = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        sanitize_item(item, strict=strict)
        if item.get("_invalid"):
            continue
        cleaned.append(item)
    dropped = len(items or []) - len(cleaned)
    if dropped:
        logger.info("Dropped %s invalid generated items", dropped)
    return cleaned


def merge_generation(material: dict, questions: list[dict], question_count: int | None = None) -> dict:
    """Combine the material phase and the question phase; the bank is capped at ``question_count``."""
    bank = list(questions)
    if question_count is not None:
        bank = bank[: max(0, question_count)]
    merged = dict(material or {})
    merged["daily_challenge"] = {**(merged.get("daily_challenge") or {}), "questions": bank}
    return merged
