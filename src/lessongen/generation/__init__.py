"""
Lesson generation: provider client, prompts, reply parsing and persistence.

The orchestrator lives in ``lessongen.generation.orchestrator`` and is
imported from there directly.
"""

from lessongen.generation.client import CompletionClient
from lessongen.generation.models import (
    GRADES,
    BatchSummary,
    GenerationResult,
    QuizItem,
    Subject,
    UnitError,
    WorkMatrix,
    WorkUnit,
)
from lessongen.generation.parsing import Fallback, Parsed, find_json_object, parse_generation

__all__ = [
    "GRADES",
    "BatchSummary",
    "CompletionClient",
    "Fallback",
    "GenerationResult",
    "Parsed",
    "QuizItem",
    "Subject",
    "UnitError",
    "WorkMatrix",
    "WorkUnit",
    "find_json_object",
    "parse_generation",
]
