"""Background scheduling for seeding and pruning jobs."""

from lessongen.scheduler.service import SchedulerService

__all__ = ["SchedulerService"]
