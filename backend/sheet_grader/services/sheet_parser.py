import json
import logging
import re
from typing import Dict, List, Optional

from ..schemas import ExtractedAnswer, SheetExtraction

logger = logging.getLogger(__name__)


def _extract_json(text: str) -> Optional[str]:
    if not text:
        return None
    cleaned = text.strip()
    cleaned = re.sub(r"^```json\s*|^```\s*|```$", "", cleaned, flags=re.IGNORECASE | re.MULTILINE)
    cleaned = cleaned.strip()
    if cleaned.startswith("{") and cleaned.endswith("}"):
        return cleaned
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end != -1 and end > start:
        return cleaned[start : end + 1]
    return None


def _as_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_question_number(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        return None
    return number if number > 0 else None


def _parse_answers(raw_answers: object) -> List[ExtractedAnswer]:
    if not isinstance(raw_answers, list):
        return []
    answers: List[ExtractedAnswer] = []
    for raw in raw_answers:
        if not isinstance(raw, dict):
            continue
        number = _as_question_number(raw.get("question_number"))
        if number is None:
            continue
        label = _as_text(raw.get("selected_option")) or None
        answers.append(ExtractedAnswer(question_number=number, selected_option=label))
    return answers


def parse_extraction(raw: object) -> SheetExtraction:
    """Build a SheetExtraction from whatever the vision service returned.

    Never raises: unusable input yields an extraction with no test id and no
    answers, which grades as all wrong once a test id is resolved elsewhere.
    """
    if isinstance(raw, SheetExtraction):
        return raw
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        json_text = _extract_json(text)
        try:
            raw = json.loads(json_text) if json_text else None
        except json.JSONDecodeError:
            logger.warning("[VISION] response is not valid JSON: %s", text[:200])
            raw = None
    if not isinstance(raw, dict):
        return SheetExtraction()

    payload: Dict[str, object] = raw
    raw_answers = payload.get("answers")
    answers = _parse_answers(raw_answers)
    dropped = len(raw_answers) - len(answers) if isinstance(raw_answers, list) else 0
    if dropped:
        logger.info("[VISION] dropped %d malformed answer entries", dropped)
    return SheetExtraction(
        test_id=_as_text(payload.get("test_id")),
        student_name=_as_text(payload.get("student_name")),
        answers=answers,
    )
