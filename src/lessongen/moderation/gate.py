"""
Moderation gate for free-text generation requests.

Classifies a requested topic before any generation spend. The classifier
is an external completion call; if it fails or replies with something
unparseable, the gate fails open and tags the verdict accordingly.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from lessongen.errors import ProviderError, ProviderPaymentRequiredError
from lessongen.generation.client import CompletionClient
from lessongen.generation.parsing import find_json_object
from lessongen.generation.prompts import MODERATION_SYSTEM_PROMPT, build_moderation_prompt

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Content may not be appropriate for children"


class ModerationOutcome(str, Enum):
    """How a verdict was reached."""

    CLASSIFIED = "classified"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


@dataclass(frozen=True)
class ModerationRequest:
    """Free-text input to screen."""

    topic: str
    subject: str
    grade_level: int


@dataclass
class ModerationVerdict:
    """Result of a moderation check."""

    appropriate: bool
    reason: str | None = None
    outcome: ModerationOutcome = ModerationOutcome.CLASSIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "appropriate": self.appropriate,
            "reason": self.reason,
            "outcome": self.outcome.value,
        }


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
    return None


class ModerationGate:
    """
    Screens requests with an external classifier.

    Usage:
        gate = ModerationGate(client)
        verdict = await gate.classify(ModerationRequest("volcanoes", "Science", 3))
        if not verdict.appropriate:
            ...
    """

    def __init__(
        self,
        client: CompletionClient,
        model: str | None = None,
        temperature: float = 0.3,
        timeout_seconds: float = 10.0,
    ) -> None:
        """
        Initialize the gate.

        Args:
            client: Completion client used for the classifier call
            model: Classifier model (defaults to the client's model)
            temperature: Sampling temperature for the classifier
            timeout_seconds: Timeout for the classifier call
        """
        self._client = client
        self._model = model
        self._temperature = temperature
        self._timeout = timeout_seconds

    def _fail_open(self, why: str) -> ModerationVerdict:
        logger.warning(f"Moderation unavailable ({why}); allowing request")
        return ModerationVerdict(appropriate=True, outcome=ModerationOutcome.DEPENDENCY_UNAVAILABLE)

    async def classify(self, request: ModerationRequest) -> ModerationVerdict:
        """
        Classify a request.

        Args:
            request: Topic, subject and grade to screen

        Returns:
            ModerationVerdict; DEPENDENCY_UNAVAILABLE verdicts are always appropriate
        """
        prompt = build_moderation_prompt(request.topic, request.subject, request.grade_level)

        try:
            reply = await self._client.complete(
                MODERATION_SYSTEM_PROMPT,
                prompt,
                temperature=self._temperature,
                timeout=self._timeout,
                model=self._model,
            )
        except (ProviderError, ProviderPaymentRequiredError) as e:
            return self._fail_open(str(e))

        data = find_json_object(reply)
        if data is None:
            return self._fail_open("unparseable classifier reply")

        appropriate = _as_bool(data.get("appropriate"))
        if appropriate is None:
            return self._fail_open("classifier reply missing 'appropriate'")

        if appropriate:
            return ModerationVerdict(appropriate=True)

        reason = data.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            reason = DEFAULT_REJECTION_REASON
        logger.info(f"Moderation rejected topic for grade {request.grade_level}: {reason}")
        return ModerationVerdict(appropriate=False, reason=reason.strip())
