"""Background maintenance: key rotation, cleanup, security check, backups."""

from newsportal.scheduler.runner import Cadence, Job, Scheduler
from newsportal.scheduler.tasks import TaskResult

__all__ = ["Cadence", "Job", "Scheduler", "TaskResult"]
