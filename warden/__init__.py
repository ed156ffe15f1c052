"""
warden: scheduler, live configuration and lease-based command worker for a long-running agent.
"""

from .errors import CommandValidationError, ConfigError, RemoteError, ScheduleError, WardenError
from .guard import GuardedTask, TaskContext
from .scheduler import TaskScheduler

__version__ = "0.1.0"

__all__ = [
    "CommandValidationError",
    "ConfigError",
    "GuardedTask",
    "RemoteError",
    "ScheduleError",
    "TaskContext",
    "TaskScheduler",
    "WardenError",
]
