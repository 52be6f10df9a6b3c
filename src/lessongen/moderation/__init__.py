"""Moderation gate for user-submitted generation requests."""

from lessongen.moderation.gate import (
    ModerationGate,
    ModerationOutcome,
    ModerationRequest,
    ModerationVerdict,
)

__all__ = [
    "ModerationGate",
    "ModerationOutcome",
    "ModerationRequest",
    "ModerationVerdict",
]
