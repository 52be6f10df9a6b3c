"""Tests for reply parsing and lesson validation."""

import json

import pytest
from pydantic import ValidationError

from lessongen.generation.models import GenerationResult, QuizItem, Subject, WorkUnit
from lessongen.generation.parsing import Fallback, Parsed, find_json_object, parse_generation
from lessongen.generation.prompts import fallback_lesson


def _fallback(text: str) -> GenerationResult:
    return fallback_lesson(WorkUnit(2, Subject.SCIENCE, 1), text)


class TestFindJsonObject:
    """Tests for locating a JSON object in free text."""

    def test_json_fence(self) -> None:
        text = 'Sure!\n```json\n{"title": "Plants"}\n```\nEnjoy.'

        assert find_json_object(text) == {"title": "Plants"}

    def test_plain_fence(self) -> None:
        text = '```\n{"title": "Plants"}\n```'

        assert find_json_object(text) == {"title": "Plants"}

    def test_embedded_in_prose(self) -> None:
        """Test an unfenced object surrounded by prose is found."""
        text = 'Here you go: {"appropriate": false, "reason": "violence"} Hope that helps.'

        assert find_json_object(text) == {"appropriate": False, "reason": "violence"}

    def test_skips_broken_braces(self) -> None:
        """Test a stray brace before the object does not stop the search."""
        text = 'Use {curly} braces like this: {"ok": true}'

        assert find_json_object(text) == {"ok": True}

    def test_nested_braces_in_strings(self) -> None:
        text = '{"content": "Use { and } carefully", "n": 1}'

        assert find_json_object(text) == {"content": "Use { and } carefully", "n": 1}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{not json"])
    def test_nothing_found(self, text: str) -> None:
        assert find_json_object(text) is None


class TestQuizItem:
    """Tests for QuizItem validation."""

    def test_accepts_provider_aliases(self) -> None:
        item = QuizItem.model_validate(
            {"question": "2 + 2?", "options": ["3", "4"], "correct_answer": "4"}
        )

        assert item.question_text == "2 + 2?"
        assert item.correct == "4"

    def test_index_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            QuizItem.model_validate({"question": "?", "options": ["a", "b"], "correct_answer": 5})

    def test_value_not_in_options(self) -> None:
        with pytest.raises(ValidationError):
            QuizItem.model_validate({"question": "?", "options": ["a", "b"], "correct_answer": "c"})

    def test_needs_two_options(self) -> None:
        with pytest.raises(ValidationError):
            QuizItem.model_validate({"question": "?", "options": ["a"], "correct_answer": 0})


class TestParseGeneration:
    """Tests for the two-stage parser."""

    def _reply(self, **overrides) -> str:
        data = {
            "title": "Seeds and Sprouts",
            "description": "How plants grow",
            "content_markdown": "# Seeds\n\nSeeds need water.",
            "quiz_questions": [
                {"question": "What do seeds need?", "options": ["Water", "Sand"], "correct_answer": 0},
            ],
        }
        data.update(overrides)
        return f"```json\n{json.dumps(data)}\n```"

    def test_valid_reply(self) -> None:
        result = parse_generation(self._reply(), _fallback)

        assert isinstance(result, Parsed)
        assert result.result.title == "Seeds and Sprouts"
        assert result.result.body_markdown.startswith("# Seeds")
        assert len(result.result.assessment_items) == 1

    def test_malformed_items_dropped(self) -> None:
        """Test bad quiz items are dropped while good ones survive."""
        reply = self._reply(
            quiz_questions=[
                {"question": "Good?", "options": ["Yes", "No"], "correct_answer": 0},
                {"question": "Bad", "options": ["Only one"], "correct_answer": 0},
                "not even an object",
            ]
        )

        result = parse_generation(reply, _fallback)

        assert isinstance(result, Parsed)
        assert result.dropped_items == 2
        assert len(result.result.assessment_items) == 1

    def test_no_json_uses_fallback(self) -> None:
        """Test prose-only replies produce valid fallback content."""
        result = parse_generation("I cannot produce JSON today, sorry.", _fallback)

        assert isinstance(result, Fallback)
        assert result.reason == "no_json_object"
        assert result.result.title
        assert result.result.assessment_items
        assert "I cannot produce JSON today" in result.result.body_markdown

    def test_schema_failure_uses_fallback(self) -> None:
        """Test a JSON object missing required fields falls back."""
        result = parse_generation('{"title": "Only a title"}', _fallback)

        assert isinstance(result, Fallback)
        assert result.reason == "schema_validation"

    def test_all_items_invalid_uses_fallback(self) -> None:
        result = parse_generation(self._reply(quiz_questions=[{"question": "?"}]), _fallback)

        assert isinstance(result, Fallback)
        assert result.reason == "schema_validation"

    def test_fallback_content_is_valid(self) -> None:
        """Test fallback content passes the same schema as parsed content."""
        result = parse_generation("garbage", _fallback)

        GenerationResult.model_validate(result.result.model_dump())
