"""
Periodic check-in with the remote authority.

Reports task status and config identity, then acts on the response: control
commands are run through AgentCommandHandler, config updates go to the
ConfigManager.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .config_manager import ConfigManager
from .config_values import ConfigField, to_bool, to_int
from .errors import CommandValidationError, ConfigError, RemoteError, ScheduleError, WardenError
from .guard import GuardedTask, TaskContext
from .remote import RemoteClient
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

TASK_NAME = "check-in"
DEFAULT_SCHEDULE = "*/15 * * * * *"

STATUS_EXECUTING = "executing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

COMMAND_TYPES = (
    "run_task",
    "pause_task",
    "resume_task",
    "disable_task",
    "enable_task",
    "update_task_schedule",
    "reload_config",
)


@dataclass(frozen=True)
class AgentCommand:
    id: str
    type: str
    target: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "AgentCommand":
        params = payload.get("params")
        return AgentCommand(
            id=str(payload.get("id") or ""),
            type=str(payload.get("type") or ""),
            target=str(payload.get("target") or ""),
            params=dict(params) if isinstance(params, Mapping) else {},
        )


def collect_system_info(started_at: float, disk_path: str = ".") -> Dict[str, Any]:
    """Host and runtime facts reported with every check-in."""
    info: Dict[str, Any] = {
        "hostname": socket.gethostname(),
        "os": platform.system().lower(),
        "arch": platform.machine(),
        "pythonVersion": platform.python_version(),
        "pid": os.getpid(),
        "cpuCount": os.cpu_count() or 0,
        "threadCount": threading.active_count(),
        "uptime": int(time.monotonic() - started_at),
    }
    try:
        usage = shutil.disk_usage(disk_path)
    except OSError as exc:
        logger.debug("Disk usage unavailable for %s: %s", disk_path, exc)
    else:
        info["diskUsage"] = round(usage.used * 100.0 / usage.total, 2) if usage.total else 0.0
    return info


class AgentCommandHandler:
    def __init__(self, scheduler: TaskScheduler, config: ConfigManager) -> None:
        self.scheduler = scheduler
        self.config = config

    def execute(self, command: AgentCommand) -> Dict[str, Any]:
        handler = getattr(self, f"_handle_{command.type}", None)
        if command.type not in COMMAND_TYPES or handler is None:
            raise CommandValidationError(f'Unsupported agent command type "{command.type}".')
        logger.info("Executing agent command %s (%s %s)", command.id, command.type, command.target)
        result: Dict[str, Any] = {"success": True, "type": command.type, "target": command.target}
        result.update(handler(command) or {})
        return result

    def _require_target(self, command: AgentCommand) -> str:
        if not command.target:
            raise CommandValidationError(f"{command.type} requires a task name in target.")
        if not self.scheduler.is_known(command.target):
            raise CommandValidationError(f'Unknown task "{command.target}".')
        return command.target

    def _handle_run_task(self, command: AgentCommand) -> Dict[str, Any]:
        name = self._require_target(command)
        self.scheduler.run_now(name)
        task = self.scheduler.get_task(name)
        metrics = getattr(task, "metrics", None)
        if metrics is None:
            return {}
        snapshot = metrics.snapshot()
        return {"taskRunCount": snapshot.run_count, "lastRunStatus": snapshot.last_status}

    def _handle_pause_task(self, command: AgentCommand) -> Dict[str, Any]:
        return {"changed": self.scheduler.pause(self._require_target(command))}

    def _handle_resume_task(self, command: AgentCommand) -> Dict[str, Any]:
        return {"changed": self.scheduler.resume(self._require_target(command))}

    def _handle_disable_task(self, command: AgentCommand) -> Dict[str, Any]:
        name = self._require_target(command)
        changed = self.scheduler.is_registered(name)
        self.scheduler.remove(name)
        return {"changed": changed}

    def _handle_enable_task(self, command: AgentCommand) -> Dict[str, Any]:
        return {"changed": self.scheduler.enable(self._require_target(command))}

    def _handle_update_task_schedule(self, command: AgentCommand) -> Dict[str, Any]:
        name = self._require_target(command)
        schedule = command.params.get("schedule")
        if not isinstance(schedule, str) or not schedule.strip():
            raise CommandValidationError("update_task_schedule requires params.schedule.")
        self.scheduler.update_schedule(name, schedule.strip())
        return {"schedule": schedule.strip()}

    def _handle_reload_config(self, command: AgentCommand) -> Dict[str, Any]:
        return {"source": self.config.load_with_fallback()}


class CheckInService:
    def __init__(
        self,
        remote: RemoteClient,
        config: ConfigManager,
        scheduler: TaskScheduler,
        agent_id: str,
        handler: Optional[AgentCommandHandler] = None,
    ) -> None:
        self.remote = remote
        self.config = config
        self.scheduler = scheduler
        self.agent_id = agent_id
        self.handler = handler or AgentCommandHandler(scheduler, config)
        self._last_check_in: Optional[float] = None
        self._started_at = time.monotonic()
        self._lock = threading.Lock()

    def task(self, schedule: str = DEFAULT_SCHEDULE) -> GuardedTask:
        return GuardedTask(
            name=TASK_NAME,
            schedule=schedule,
            body=self.run,
            description="Reports agent status and applies updates from the server.",
            config_fields={
                "reportMetrics": ConfigField(True, "reportMetrics", "Include task metrics in check-ins.", "boolean"),
            },
        )

    def run(self, ctx: Optional[TaskContext] = None) -> bool:
        """Scheduled body: check in when enabled and the configured interval has elapsed."""
        if not to_bool(self.config.get_agent_value("checkIn.enabled"), True):
            logger.debug("Check-in disabled by config.")
            return False
        interval = self.config.get_agent_int("checkIn.interval", 60)
        with self._lock:
            if self._last_check_in is not None and time.monotonic() - self._last_check_in < interval:
                return False
        return self.check_in()

    def collect(self) -> Dict[str, Any]:
        version, config_hash = self.config.version_and_hash()
        registered = self.scheduler.list_tasks()
        report_metrics = self.config.get_bool(TASK_NAME, "reportMetrics", True)
        tasks: List[Dict[str, Any]] = []
        total_runs = successful = failed = 0
        durations: List[float] = []
        for name, task in sorted(self.scheduler.all_tasks().items()):
            registration = registered.get(name)
            status: Dict[str, Any] = {
                "name": name,
                "schedule": self.scheduler.schedule_of(name) or task.schedule,
                "enabled": registration is not None,
            }
            if registration is not None and registration.next_fire is not None:
                status["nextRunAt"] = int(registration.next_fire.timestamp())
            if isinstance(task, GuardedTask):
                snapshot = task.metrics.snapshot()
                total_runs += snapshot.run_count
                successful += snapshot.success_count
                failed += snapshot.error_count
                durations.extend(snapshot.durations)
                if report_metrics:
                    status["running"] = task.is_running
                    status.update(snapshot.to_payload())
                    status["avgDuration"] = task.metrics.average_duration()
                    status["maxDuration"] = task.metrics.max_duration()
            tasks.append(status)
        return {
            "agentId": self.agent_id,
            "timestamp": int(time.time()),
            "status": "online",
            "systemInfo": collect_system_info(self._started_at),
            "metrics": {
                "uptime": int(time.monotonic() - self._started_at),
                "totalJobsRun": total_runs,
                "successfulJobs": successful,
                "failedJobs": failed,
                "avgJobDuration": sum(durations) / len(durations) if durations else 0.0,
            },
            "tasks": tasks,
            "configVersion": version,
            "configHash": config_hash,
        }

    def check_in(self) -> bool:
        if not self.remote.is_authenticated():
            logger.debug("No API token yet; skipping check-in.")
            return False
        if not self.agent_id:
            logger.warning("Agent id is empty; cannot check in.")
            return False

        if self.config.should_submit():
            self.config.submit()

        try:
            response = self.remote.check_in(self.collect())
        except RemoteError as exc:
            logger.warning("Check-in failed: %s", exc)
            return False
        with self._lock:
            self._last_check_in = time.monotonic()
        logger.info("Check-in succeeded.")
        self.handle_response(response)
        return True

    def handle_response(self, data: Mapping[str, Any]) -> None:
        commands = data.get("commands") or []
        if isinstance(commands, list):
            if commands:
                logger.info("Received %s agent command(s)", len(commands))
            for payload in commands:
                if isinstance(payload, Mapping):
                    self._run_command(AgentCommand.from_payload(payload))

        update = data.get("configUpdate")
        if isinstance(update, Mapping):
            self._apply_config_update(update)

    def _run_command(self, command: AgentCommand) -> None:
        if not command.id:
            logger.warning("Agent command without id; skipping.")
            return
        executed_at = int(time.time())
        self._update_command(command.id, {"status": STATUS_EXECUTING, "executedAt": executed_at})
        try:
            result = self.handler.execute(command)
        except WardenError as exc:
            logger.error("Agent command %s (%s) failed: %s", command.id, command.type, exc)
            self._update_command(
                command.id,
                {
                    "status": STATUS_FAILED,
                    "error": str(exc),
                    "executedAt": executed_at,
                    "completedAt": int(time.time()),
                },
            )
            return
        logger.info("Agent command %s (%s) completed", command.id, command.type)
        self._update_command(
            command.id,
            {
                "status": STATUS_COMPLETED,
                "result": result,
                "executedAt": executed_at,
                "completedAt": int(time.time()),
            },
        )

    def _update_command(self, command_id: str, update: Dict[str, Any]) -> None:
        try:
            self.remote.update_agent_command(command_id, update)
        except RemoteError as exc:
            logger.error("Failed to update agent command %s to %s: %s", command_id, update.get("status"), exc)

    def _apply_config_update(self, update: Mapping[str, Any]) -> None:
        if update.get("needFullConfig"):
            logger.info("Server requested the full config.")
            self.config.mark_need_full_config()
            return
        if not update.get("hasUpdate"):
            return
        version = to_int(update.get("version"), 0)
        config_hash = str(update.get("configHash") or "")
        try:
            if update.get("configData"):
                self.config.apply_full(update["configData"], version, config_hash)
            elif update.get("configDiff"):
                self.config.apply_diff(update["configDiff"])
                self.config.set_version_and_hash(version, config_hash)
            else:
                return
        except (ConfigError, ScheduleError) as exc:
            logger.error("Failed to apply config update from server: %s", exc)
            return
        logger.info("Applied config update from server (version %s)", version)
