"""
Agent wiring: builds every component once and hands references to the ones that need them.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional

from .checkin import TASK_NAME as CHECK_IN_TASK
from .checkin import CheckInService
from .command_worker import Command, CommandExecutor, CommandWorker
from .config_manager import ConfigManager
from .errors import WardenError
from .remote import RemoteClient
from .scheduler import TaskScheduler
from .settings import Settings

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 10.0


class UnconfiguredExecutor:
    """Placeholder executor: every command fails with a readable error."""

    def start_workflow(self, command: Command) -> Mapping[str, Any]:
        raise WardenError(f"No workflow executor configured; cannot start workflow {command.workflow_id}.")

    def execute_step(self, command: Command) -> Mapping[str, Any]:
        raise WardenError(f"No workflow executor configured; cannot execute step {command.step_id}.")


class Agent:
    def __init__(
        self,
        settings: Settings,
        executor: Optional[CommandExecutor] = None,
        remote: Optional[RemoteClient] = None,
        scheduler: Optional[TaskScheduler] = None,
    ) -> None:
        self.settings = settings
        agent_id = settings.agent.agent_id
        self.scheduler = scheduler or TaskScheduler()
        self.remote = remote or RemoteClient(
            settings.agent.api_base_url,
            settings.agent.api_token,
            settings.agent.timeout_ms,
        )
        self.config = ConfigManager(self.scheduler, settings.paths.config_file, self.remote, agent_id)
        self.command_worker = CommandWorker(
            self.remote,
            executor or UnconfiguredExecutor(),
            agent_id,
            config=self.config,
        )
        self.check_in = CheckInService(self.remote, self.config, self.scheduler, agent_id)
        self._stop_event = threading.Event()

    def register_tasks(self) -> None:
        tasks = self.settings.tasks
        for task in (
            self.command_worker.task(tasks[self.command_worker.task_name].schedule),
            self.check_in.task(tasks[CHECK_IN_TASK].schedule),
        ):
            if not tasks[task.name].enabled:
                logger.info("Task %s disabled in settings; not registering it.", task.name)
                continue
            self.scheduler.add_task(task)

    def start(self) -> None:
        if not self.settings.agent.agent_id:
            logger.warning("Agent id is not set; remote features stay idle until it is configured.")
        self.register_tasks()
        source = self.config.load_with_fallback()
        logger.info("Configuration loaded from %s", source)
        self.config.submit()
        self.scheduler.start()

    def stop(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS) -> None:
        self._stop_event.set()
        self.scheduler.stop()
        self.command_worker.close()
        if not self.command_worker.join(timeout):
            logger.warning("Commands still in flight at shutdown: %s", ", ".join(self.command_worker.active()))

    def run_forever(self) -> int:
        self.start()
        logger.info("Agent %s running. Press Ctrl+C to stop.", self.settings.agent.agent_id or "(unset)")
        try:
            while not self._stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down.")
            self.stop()
            return 130
        return 0
