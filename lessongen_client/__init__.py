"""
Lesson Generation Client SDK
Python client library for the Lesson Generation API.
"""

from .client import AsyncLessonGenClient, LessonGenClient
from .models import (
    CustomLesson,
    JobRun,
    LessonGenAPIError,
    QuotaStatus,
    SeedSummary,
)

__version__ = "0.1.0"
__all__ = [
    "LessonGenClient",
    "AsyncLessonGenClient",
    "LessonGenAPIError",
    "SeedSummary",
    "JobRun",
    "CustomLesson",
    "QuotaStatus",
]
