"""
Cron-driven task scheduler.

Schedules use six fields with seconds first (``sec min hour day month weekday``)
and are evaluated in local time. A single dispatcher thread computes fire times
with croniter; every fire event runs on its own daemon thread, so distinct
tasks run in parallel. Overlap of a task with itself is prevented by the
task's execution guard, not here.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .errors import ScheduleError
from .guard import Task, TaskContext
from .locks import ReadWriteLock

logger = logging.getLogger(__name__)

CRON_FIELD_COUNT = 6
MAX_IDLE_SECONDS = 60.0
LOCALTIME_PATH = "/etc/localtime"

TaskBody = Callable[[TaskContext], Any]


def local_timezone() -> ZoneInfo:
    """Resolve the host zone as a ZoneInfo so DST transitions are honoured. Falls back to UTC."""
    tz_name = os.environ.get("TZ", "").lstrip(":")
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning('Unknown TZ "%s"; trying the system zone.', tz_name)
    target = os.path.realpath(LOCALTIME_PATH)
    marker = "zoneinfo" + os.sep
    if marker in target:
        try:
            return ZoneInfo(target.split(marker, 1)[1])
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Cannot load zone from %s; using UTC.", target)
    return ZoneInfo("UTC")


def to_croniter_expression(schedule: Any) -> str:
    """Validate a seconds-first expression and return croniter's seconds-last form."""
    if not isinstance(schedule, str) or not schedule.strip():
        raise ScheduleError("Error: schedule must be a non-empty cron expression.")
    fields = schedule.split()
    if len(fields) != CRON_FIELD_COUNT:
        raise ScheduleError(
            f'Error: schedule "{schedule}" must have {CRON_FIELD_COUNT} fields '
            "(seconds minutes hours day month weekday)."
        )
    expr = " ".join(fields[1:] + fields[:1])
    if not croniter.is_valid(expr):
        raise ScheduleError(f'Error: Invalid cron schedule "{schedule}".')
    return expr


def next_fire_after(schedule: str, after: datetime) -> datetime:
    expr = to_croniter_expression(schedule)
    if after.tzinfo is None:
        after = after.replace(tzinfo=local_timezone())
    nxt = croniter(expr, after).get_next(datetime)
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=after.tzinfo)
    return nxt


def next_fire_times(schedule: str, count: int, now: Optional[datetime] = None) -> List[datetime]:
    cursor = now or datetime.now(tz=local_timezone())
    runs: List[datetime] = []
    while len(runs) < count:
        cursor = next_fire_after(schedule, cursor)
        runs.append(cursor)
    return runs


@dataclass(frozen=True)
class TaskRegistration:
    name: str
    schedule: str
    next_fire: Optional[datetime]


@dataclass
class _Entry:
    name: str
    schedule: str
    body: TaskBody
    next_fire: Optional[datetime]


class TaskScheduler:
    """Owns the registration table and is the only component that starts task runs."""

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._entries: Dict[str, _Entry] = {}
        self._known: Dict[str, _Entry] = {}
        self._tasks: Dict[str, Task] = {}
        self._paused: Set[str] = set()
        self._wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Registration -------------------------------------------------------

    def add(self, name: str, schedule: str, body: TaskBody) -> None:
        to_croniter_expression(schedule)
        now = datetime.now(tz=local_timezone())
        entry = _Entry(name=name, schedule=schedule, body=body, next_fire=next_fire_after(schedule, now))
        with self._lock.write():
            if name in self._entries:
                logger.info("Task %s already registered; replacing prior registration.", name)
            self._entries[name] = entry
            self._known[name] = entry
            self._paused.discard(name)
        self._wakeup.set()
        logger.info("Registered task %s with schedule %s", name, schedule)

    def add_task(self, task: Task) -> None:
        name = task.name
        self.add(name, task.schedule, self._isolated(task))
        with self._lock.write():
            self._tasks[name] = task

    def remove(self, name: str) -> None:
        with self._lock.write():
            removed = self._entries.pop(name, None)
        if removed is not None:
            self._wakeup.set()
            logger.info("Removed task %s from scheduler", name)

    def forget(self, name: str) -> bool:
        """Unregister a task and drop everything remembered about it. Returns True if it was known."""
        with self._lock.write():
            self._entries.pop(name, None)
            self._tasks.pop(name, None)
            self._paused.discard(name)
            known = self._known.pop(name, None)
        if known is not None:
            self._wakeup.set()
            logger.info("Forgot task %s", name)
        return known is not None

    def update_schedule(self, name: str, schedule: str) -> None:
        """Reschedule a task, keeping its body. A paused task keeps the new schedule for resume."""
        with self._lock.read():
            known = self._known.get(name)
            paused = name in self._paused
        if known is None:
            raise ScheduleError(f'Error: Unknown task "{name}".')
        to_croniter_expression(schedule)
        if paused:
            with self._lock.write():
                self._known[name] = _Entry(name=name, schedule=schedule, body=known.body, next_fire=None)
        else:
            self.remove(name)
            self.add(name, schedule, known.body)
        logger.info("Updated schedule for task %s: %s -> %s", name, known.schedule, schedule)

    def enable(self, name: str) -> bool:
        """Re-register a task removed or paused earlier, with its last schedule."""
        with self._lock.read():
            if name in self._entries:
                return False
            known = self._known.get(name)
        if known is None:
            raise ScheduleError(f'Error: Unknown task "{name}".')
        self.add(name, known.schedule, known.body)
        return True

    def pause(self, name: str) -> bool:
        """Unregister until resume or enable. Config projection leaves paused tasks alone."""
        with self._lock.write():
            if name not in self._known:
                raise ScheduleError(f'Error: Unknown task "{name}".')
            registered = self._entries.pop(name, None) is not None
            self._paused.add(name)
        if registered:
            self._wakeup.set()
            logger.info("Paused task %s", name)
        return registered

    def resume(self, name: str) -> bool:
        resumed = self.enable(name)
        if resumed:
            logger.info("Resumed task %s", name)
        return resumed

    # Queries ------------------------------------------------------------

    def is_paused(self, name: str) -> bool:
        with self._lock.read():
            return name in self._paused

    def list_tasks(self) -> Dict[str, TaskRegistration]:
        with self._lock.read():
            return {
                name: TaskRegistration(name=entry.name, schedule=entry.schedule, next_fire=entry.next_fire)
                for name, entry in self._entries.items()
            }

    def is_registered(self, name: str) -> bool:
        with self._lock.read():
            return name in self._entries

    def is_known(self, name: str) -> bool:
        with self._lock.read():
            return name in self._known

    def schedule_of(self, name: str) -> Optional[str]:
        with self._lock.read():
            entry = self._entries.get(name) or self._known.get(name)
            return entry.schedule if entry else None

    def get_task(self, name: str) -> Optional[Task]:
        with self._lock.read():
            return self._tasks.get(name)

    def all_tasks(self) -> Dict[str, Task]:
        with self._lock.read():
            return dict(self._tasks)

    def next_fire_times(self, name: str, count: int = 5) -> List[datetime]:
        schedule = self.schedule_of(name)
        if schedule is None:
            raise ScheduleError(f'Error: Unknown task "{name}".')
        return next_fire_times(schedule, count)

    # Execution ----------------------------------------------------------

    def run_now(self, name: str) -> threading.Thread:
        with self._lock.read():
            entry = self._entries.get(name) or self._known.get(name)
        if entry is None:
            raise ScheduleError(f'Error: Unknown task "{name}".')
        logger.info("Running task %s now", name)
        return self._dispatch(entry, datetime.now(tz=local_timezone()))

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._cancel_event.clear()
        with self._lock.read():
            names = sorted(self._entries)
        logger.info("Starting scheduler with %s registered task(s): %s", len(names), ", ".join(names))
        self._thread = threading.Thread(target=self._run, daemon=True, name="warden-scheduler")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._cancel_event.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler stopped.")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.clear()
            now = datetime.now(tz=local_timezone())
            due: List[_Entry] = []
            fires: List[datetime] = []
            with self._lock.write():
                for entry in self._entries.values():
                    if entry.next_fire is not None and entry.next_fire <= now:
                        due.append(entry)
                        fires.append(entry.next_fire)
                        # Missed slots are not caught up.
                        entry.next_fire = next_fire_after(entry.schedule, now)
                upcoming = [entry.next_fire for entry in self._entries.values() if entry.next_fire]
            for entry, scheduled_for in zip(due, fires):
                self._dispatch(entry, scheduled_for)

            wait = MAX_IDLE_SECONDS
            if upcoming:
                delta = (min(upcoming) - datetime.now(tz=local_timezone())).total_seconds()
                wait = min(max(delta, 0.0), MAX_IDLE_SECONDS)
            self._wakeup.wait(timeout=wait)

    def _dispatch(self, entry: _Entry, scheduled_for: datetime) -> threading.Thread:
        ctx = TaskContext(cancel_event=self._cancel_event, scheduled_for=scheduled_for)
        thread = threading.Thread(
            target=self._invoke,
            args=(entry.name, entry.body, ctx),
            daemon=True,
            name=f"warden-task-{entry.name}",
        )
        thread.start()
        return thread

    @staticmethod
    def _invoke(name: str, body: TaskBody, ctx: TaskContext) -> None:
        try:
            body(ctx)
        except Exception:
            logger.exception("Unhandled error in task %s", name)

    @staticmethod
    def _isolated(task: Task) -> TaskBody:
        def run(ctx: TaskContext) -> None:
            logger.debug("Firing task %s", task.name)
            try:
                ran = task.execute(ctx)
            except Exception as exc:
                logger.exception("Task %s failed: %s", task.name, exc)
                return
            if ran:
                logger.info("Task %s completed successfully", task.name)
            else:
                logger.info("Skipping overlapping run for %s", task.name)

        return run
