"""
Parsing of free-form provider replies.

Two stages: locate the first well-formed JSON object in the reply
(inside a code fence or embedded in prose), then validate it against the
GenerationResult schema. The outcome is tagged ``Parsed`` or ``Fallback``
so substitution of default content is an ordinary return value.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError

from lessongen.generation.models import GenerationResult, QuizItem

logger = logging.getLogger(__name__)

_FENCE_PATTERNS = (
    re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE),
    re.compile(r"```\s*(.*?)\s*```", re.DOTALL),
)

_decoder = json.JSONDecoder()


def _first_object(text: str) -> dict[str, Any] | None:
    """Decode the first JSON object starting at any '{' in ``text``."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def find_json_object(text: str) -> dict[str, Any] | None:
    """
    Locate the first well-formed JSON object in a reply.

    Fenced blocks are tried first, then the raw text.

    Args:
        text: Provider reply

    Returns:
        Decoded object, or None if the reply holds no JSON object
    """
    if not text:
        return None

    for pattern in _FENCE_PATTERNS:
        for match in pattern.finditer(text):
            found = _first_object(match.group(1))
            if found is not None:
                return found

    return _first_object(text)


@dataclass
class Parsed:
    """Reply validated against the schema."""

    result: GenerationResult
    dropped_items: int = 0


@dataclass
class Fallback:
    """Reply unusable; default content substituted."""

    result: GenerationResult
    reason: str


ParseResult = Parsed | Fallback


def _valid_items(raw_items: Any) -> tuple[list[dict[str, Any]], int]:
    """Keep only the quiz items that validate on their own."""
    if not isinstance(raw_items, list):
        return [], 0
    kept: list[dict[str, Any]] = []
    dropped = 0
    for raw in raw_items:
        try:
            kept.append(QuizItem.model_validate(raw).model_dump())
        except ValidationError:
            dropped += 1
    return kept, dropped


def validate_lesson(data: dict[str, Any]) -> tuple[GenerationResult, int]:
    """
    Validate a decoded object as lesson content.

    Malformed quiz items are dropped individually; the lesson is rejected
    only if none survive.

    Raises:
        ValidationError: If required fields are missing or empty
    """
    data = dict(data)
    dropped = 0
    for key in ("assessment_items", "quiz_questions", "quiz"):
        if key in data:
            data[key], dropped = _valid_items(data[key])
            break
    return GenerationResult.model_validate(data), dropped


def parse_generation(text: str, fallback: Callable[[str], GenerationResult]) -> ParseResult:
    """
    Parse a generation reply.

    Args:
        text: Provider reply
        fallback: Builds default content from the raw reply

    Returns:
        Parsed on success, Fallback otherwise (never raises on bad input)
    """
    data = find_json_object(text)
    if data is None:
        logger.warning("No JSON object found in generation reply; using fallback content")
        return Fallback(result=fallback(text), reason="no_json_object")

    try:
        result, dropped = validate_lesson(data)
    except ValidationError as e:
        logger.warning(f"Generation reply failed validation ({e.error_count()} errors); using fallback content")
        return Fallback(result=fallback(text), reason="schema_validation")

    if dropped:
        logger.info(f"Dropped {dropped} malformed quiz items from generation reply")
    return Parsed(result=result, dropped_items=dropped)
