"""
Lease-based command worker.

A scheduled poll claims a bounded batch of commands from the remote queue and
hands each one to its own worker thread. A worker owns a heartbeat thread bound
to a stop event, delegates the actual work to a CommandExecutor, and always
writes a terminal status back upstream before releasing the command id.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from .config_values import ConfigField
from .errors import CommandValidationError, RemoteError
from .guard import GuardedTask, TaskContext
from .remote import RemoteClient

logger = logging.getLogger(__name__)

TASK_NAME = "command-worker"
DEFAULT_SCHEDULE = "*/10 * * * * *"

START_WORKFLOW = "START_WORKFLOW"
EXECUTE_STEP = "EXECUTE_STEP"
REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    START_WORKFLOW: ("workflowId", "rootRefId", "rootRefType"),
    EXECUTE_STEP: ("stepId", "rootRefId", "rootRefType"),
}

STATUS_CLAIMED = "claimed"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

DEFAULT_CLAIM_LIMIT = 5
MAX_CLAIM_LIMIT = 100
DEFAULT_HEARTBEAT_SECONDS = 45
MIN_HEARTBEAT_SECONDS = 30
MAX_HEARTBEAT_SECONDS = 60
CANCEL_CHECK_SECONDS = 1.0


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class Command:
    id: str
    command_type: str
    workflow_id: str = ""
    step_id: str = ""
    root_ref_id: str = ""
    root_ref_type: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_CLAIMED

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "Command":
        params = payload.get("params")
        if isinstance(params, str):
            try:
                params = json.loads(params) if params.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Command %s has unparseable params; ignoring them.", payload.get("id"))
                params = {}
        if not isinstance(params, dict):
            params = {}
        return Command(
            id=_text(payload.get("id")),
            command_type=_text(payload.get("commandType")),
            workflow_id=_text(payload.get("workflowId")),
            step_id=_text(payload.get("stepId")),
            root_ref_id=_text(payload.get("rootRefId")),
            root_ref_type=_text(payload.get("rootRefType")),
            params=params,
            status=_text(payload.get("status")) or STATUS_CLAIMED,
        )

    def validate(self) -> None:
        required = REQUIRED_FIELDS.get(self.command_type)
        if required is None:
            raise CommandValidationError(
                f'Unsupported command type "{self.command_type}"; expected {START_WORKFLOW} or {EXECUTE_STEP}.'
            )
        values = {
            "workflowId": self.workflow_id,
            "stepId": self.step_id,
            "rootRefId": self.root_ref_id,
            "rootRefType": self.root_ref_type,
        }
        missing = [name for name in required if not values[name]]
        if missing:
            raise CommandValidationError(
                f"{self.command_type} command is missing required fields: {', '.join(missing)}"
            )


class CommandExecutor(Protocol):
    def start_workflow(self, command: Command) -> Mapping[str, Any]:
        ...

    def execute_step(self, command: Command) -> Mapping[str, Any]:
        ...


class InFlightSet:
    """Command ids currently owned by a local worker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def add(self, command_id: str) -> bool:
        with self._lock:
            if command_id in self._ids:
                return False
            self._ids.add(command_id)
            return True

    def discard(self, command_id: str) -> None:
        with self._lock:
            self._ids.discard(command_id)

    def __contains__(self, command_id: object) -> bool:
        with self._lock:
            return command_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._ids)


class CommandWorker:
    def __init__(
        self,
        remote: RemoteClient,
        executor: CommandExecutor,
        agent_id: str,
        config: Optional[Any] = None,
        task_name: str = TASK_NAME,
        min_heartbeat_seconds: float = MIN_HEARTBEAT_SECONDS,
        max_heartbeat_seconds: float = MAX_HEARTBEAT_SECONDS,
    ) -> None:
        self.remote = remote
        self.executor = executor
        self.agent_id = agent_id
        self.config = config
        self.task_name = task_name
        self.min_heartbeat_seconds = min_heartbeat_seconds
        self.max_heartbeat_seconds = max_heartbeat_seconds
        self.inflight = InFlightSet()
        self._closing = threading.Event()
        self._workers_lock = threading.Lock()
        self._workers: Dict[str, threading.Thread] = {}
        self._stops: Dict[str, threading.Event] = {}

    def task(self, schedule: str = DEFAULT_SCHEDULE) -> GuardedTask:
        return GuardedTask(
            name=self.task_name,
            schedule=schedule,
            body=self.poll,
            description="Claims queued workflow commands and runs them with heartbeats.",
            config_fields={
                "claimLimit": ConfigField(
                    DEFAULT_CLAIM_LIMIT, "claimLimit", "Commands claimed per poll (1-100).", "number"
                ),
                "heartbeatInterval": ConfigField(
                    DEFAULT_HEARTBEAT_SECONDS,
                    "heartbeatInterval",
                    "Seconds between command heartbeats (30-60).",
                    "number",
                ),
            },
        )

    # Polling ------------------------------------------------------------

    def poll(self, ctx: Optional[TaskContext] = None) -> int:
        """Claim pending commands and spawn a worker per new id. Returns the number spawned."""
        if not self.remote.is_authenticated():
            logger.debug("No API token yet; skipping command poll.")
            return 0
        if not self.agent_id:
            logger.warning("Agent id is empty; cannot claim commands.")
            return 0

        limit = max(1, min(self._tunable("claimLimit", DEFAULT_CLAIM_LIMIT), MAX_CLAIM_LIMIT))
        try:
            payloads = self.remote.claim_pending(self.agent_id, limit)
        except RemoteError as exc:
            logger.error("Failed to claim commands: %s", exc)
            return 0
        if not payloads:
            logger.debug("No commands to process.")
            return 0
        logger.info("Claimed %s command(s)", len(payloads))

        cancel_event = ctx.cancel_event if ctx is not None else None
        spawned = 0
        for payload in payloads:
            command = Command.from_payload(payload)
            if not command.id:
                logger.warning("Claimed command has no id; skipping.")
                continue
            if not self.inflight.add(command.id):
                logger.debug("Command %s is already being processed; skipping.", command.id)
                continue
            self._spawn(command, cancel_event)
            spawned += 1
        return spawned

    def _spawn(self, command: Command, cancel_event: Optional[threading.Event]) -> None:
        thread = threading.Thread(
            target=self._run_command,
            args=(command, cancel_event),
            daemon=True,
            name=f"warden-command-{command.id}",
        )
        with self._workers_lock:
            self._workers[command.id] = thread
        thread.start()

    # Worker -------------------------------------------------------------

    def _run_command(self, command: Command, cancel_event: Optional[threading.Event] = None) -> None:
        logger.info("Processing command %s (%s)", command.id, command.command_type or "unknown")
        stop = threading.Event()
        with self._workers_lock:
            self._stops[command.id] = stop
            if self._closing.is_set():
                stop.set()
        heartbeat: Optional[threading.Thread] = None
        reported = False
        try:
            try:
                command.validate()
            except CommandValidationError as exc:
                logger.warning("Command %s rejected: %s", command.id, exc)
                reported = True
                self._report(command, STATUS_FAILED, {"error": str(exc)})
                return

            heartbeat = threading.Thread(
                target=self._heartbeat_loop,
                args=(command, self._heartbeat_interval(), stop, cancel_event),
                daemon=True,
                name=f"warden-heartbeat-{command.id}",
            )
            heartbeat.start()

            if command.command_type == START_WORKFLOW:
                self._progress(command, "starting_workflow", 10, f"Starting workflow {command.workflow_id}")
            else:
                self._progress(command, "starting_step", 10, f"Starting step {command.step_id}")

            try:
                result = self._execute(command)
            except Exception as exc:
                logger.exception("Command %s failed", command.id)
                reported = True
                self._report(command, STATUS_FAILED, {"error": str(exc) or exc.__class__.__name__})
                return

            self._progress(command, "completed", 100, f"{command.command_type} completed")
            reported = True
            self._report(command, STATUS_COMPLETED, dict(result or {}))
            logger.info("Command %s completed", command.id)
        finally:
            stop.set()
            if heartbeat is not None:
                heartbeat.join()
            if not reported:
                self._report(command, STATUS_FAILED, {"error": "worker exited before producing a result"})
            self.inflight.discard(command.id)
            with self._workers_lock:
                self._workers.pop(command.id, None)
                self._stops.pop(command.id, None)

    def _execute(self, command: Command) -> Mapping[str, Any]:
        if command.command_type == START_WORKFLOW:
            return self.executor.start_workflow(command)
        return self.executor.execute_step(command)

    def _heartbeat_loop(
        self,
        command: Command,
        interval: float,
        stop: threading.Event,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Beat every interval until stop is set. Scheduler cancellation is checked at least once a second."""
        next_beat = time.monotonic() + interval
        while True:
            timeout = min(max(0.0, next_beat - time.monotonic()), CANCEL_CHECK_SECONDS)
            if stop.wait(timeout):
                return
            if cancel_event is not None and cancel_event.is_set():
                return
            if time.monotonic() >= next_beat:
                self._progress(command, "processing", 0, f"Processing {command.command_type}")
                next_beat = time.monotonic() + interval

    def _progress(self, command: Command, step: str, percentage: int, message: str) -> None:
        progress = {"step": step, "percentage": percentage, "message": message}
        try:
            self.remote.update_heartbeat(self.agent_id, command.id, progress)
        except RemoteError as exc:
            logger.warning("Heartbeat for command %s failed (continuing): %s", command.id, exc)

    def _report(self, command: Command, status: str, result: Mapping[str, Any]) -> None:
        try:
            self.remote.update_command_status(command.id, status, result)
        except RemoteError as exc:
            logger.error("Failed to report %s status for command %s: %s", status, command.id, exc)

    # Tunables -----------------------------------------------------------

    def _tunable(self, name: str, default: int) -> int:
        if self.config is None:
            return default
        return self.config.get_int(self.task_name, name, default)

    def _heartbeat_interval(self) -> float:
        interval = self._tunable("heartbeatInterval", DEFAULT_HEARTBEAT_SECONDS)
        return float(max(self.min_heartbeat_seconds, min(interval, self.max_heartbeat_seconds)))

    # Lifecycle ----------------------------------------------------------

    def active(self) -> List[str]:
        with self._workers_lock:
            return sorted(self._workers)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight workers. Returns True when none are left."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._workers_lock:
                threads = list(self._workers.values())
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._workers_lock:
                    return not self._workers

    def close(self) -> None:
        """Stop every heartbeat loop now. Running commands still finish and report."""
        with self._workers_lock:
            self._closing.set()
            for stop in self._stops.values():
                stop.set()
