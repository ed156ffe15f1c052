"""
Execution guard for scheduled tasks.

A GuardedTask wraps a task body with a non-reentrant running flag and rolling
run metrics. A second call while a run is in flight is skipped, not queued.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from .config_values import ConfigField
from .locks import ReadWriteLock

logger = logging.getLogger(__name__)
UTC = timezone.utc
DEFAULT_METRICS_CAPACITY = 100
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass
class TaskContext:
    cancel_event: threading.Event = field(default_factory=threading.Event)
    scheduled_for: Optional[datetime] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Task(Protocol):
    name: str
    schedule: str

    def execute(self, ctx: TaskContext) -> bool:
        ...


@dataclass(frozen=True)
class MetricsSnapshot:
    run_count: int
    success_count: int
    error_count: int
    last_run_at: Optional[datetime]
    last_duration: float
    last_status: str
    last_error: str
    durations: List[float]

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "runCount": self.run_count,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "lastRunDuration": self.last_duration,
            "lastRunStatus": self.last_status,
        }
        if self.last_run_at is not None:
            payload["lastRunAt"] = int(self.last_run_at.timestamp())
        if self.last_error:
            payload["lastError"] = self.last_error
        return payload


class RollingMetrics:
    """Run counters plus a fixed-capacity window of recent durations (seconds)."""

    def __init__(self, capacity: int = DEFAULT_METRICS_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("metrics capacity must be >= 1")
        self.capacity = capacity
        self._lock = ReadWriteLock()
        self._durations: Deque[float] = deque(maxlen=capacity)
        self._run_count = 0
        self._success_count = 0
        self._error_count = 0
        self._last_run_at: Optional[datetime] = None
        self._last_duration = 0.0
        self._last_status = ""
        self._last_error = ""

    def record(self, duration: float, error: Optional[BaseException] = None) -> None:
        with self._lock.write():
            self._run_count += 1
            self._last_run_at = datetime.now(tz=UTC)
            self._last_duration = duration
            self._durations.append(duration)
            if error is None:
                self._success_count += 1
                self._last_status = STATUS_SUCCESS
                self._last_error = ""
            else:
                self._error_count += 1
                self._last_status = STATUS_FAILED
                self._last_error = str(error) or error.__class__.__name__

    def snapshot(self) -> MetricsSnapshot:
        with self._lock.read():
            return MetricsSnapshot(
                run_count=self._run_count,
                success_count=self._success_count,
                error_count=self._error_count,
                last_run_at=self._last_run_at,
                last_duration=self._last_duration,
                last_status=self._last_status,
                last_error=self._last_error,
                durations=list(self._durations),
            )

    def average_duration(self) -> float:
        with self._lock.read():
            if not self._durations:
                return 0.0
            return sum(self._durations) / len(self._durations)

    def max_duration(self) -> float:
        with self._lock.read():
            if not self._durations:
                return 0.0
            return max(self._durations)


class GuardedTask:
    """Single-flight wrapper around a task body.

    The body receives a TaskContext. Its exceptions are recorded as a failed run
    and re-raised to the caller; the running flag is cleared on every exit path.
    """

    def __init__(
        self,
        name: str,
        schedule: str,
        body: Callable[[TaskContext], Any],
        description: str = "",
        config_fields: Optional[Dict[str, ConfigField]] = None,
        metrics_capacity: int = DEFAULT_METRICS_CAPACITY,
    ) -> None:
        self.name = name
        self.schedule = schedule
        self.description = description
        self.config_fields: Dict[str, ConfigField] = dict(config_fields or {})
        self._body = body
        self._running = False
        self._run_lock = threading.Lock()
        self.metrics = RollingMetrics(metrics_capacity)

    @property
    def is_running(self) -> bool:
        with self._run_lock:
            return self._running

    def execute(self, ctx: Optional[TaskContext] = None) -> bool:
        with self._run_lock:
            if self._running:
                logger.debug("Task %s is still running; skipping this run.", self.name)
                return False
            self._running = True

        ctx = ctx or TaskContext()
        started = time.monotonic()
        error: Optional[BaseException] = None
        try:
            self._body(ctx)
        except BaseException as exc:
            error = exc
            raise
        finally:
            with self._run_lock:
                self._running = False
            self.metrics.record(time.monotonic() - started, error)
        return True

    def __repr__(self) -> str:
        return f"GuardedTask(name={self.name!r}, schedule={self.schedule!r})"
