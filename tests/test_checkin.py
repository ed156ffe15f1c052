from __future__ import annotations

from pathlib import Path
from typing import Tuple

import pytest

from warden.checkin import AgentCommand, AgentCommandHandler, CheckInService
from warden.config_manager import ConfigManager
from warden.config_values import content_hash
from warden.errors import CommandValidationError
from warden.guard import GuardedTask, TaskContext
from warden.scheduler import TaskScheduler


def _noop(ctx: TaskContext) -> None:
    return None


def _service(tmp_path: Path, remote) -> Tuple[CheckInService, ConfigManager, TaskScheduler]:
    scheduler = TaskScheduler()
    scheduler.add_task(GuardedTask("sync", "0 */1 * * * *", _noop))
    manager = ConfigManager(scheduler, tmp_path / "agent-config.json", remote=remote, agent_id="agent-1")
    service = CheckInService(remote, manager, scheduler, "agent-1")
    scheduler.add_task(service.task())
    manager.load_with_fallback()
    return service, manager, scheduler


def _statuses(remote, command_id: str):
    return [update["status"] for cid, update in remote.calls_named("update_agent_command") if cid == command_id]


def test_collect_reports_tasks_and_config_identity(tmp_path: Path, remote) -> None:
    service, manager, scheduler = _service(tmp_path, remote)
    scheduler.pause("sync")

    payload = service.collect()
    assert payload["agentId"] == "agent-1"
    assert payload["status"] == "online"
    assert (payload["configVersion"], payload["configHash"]) == manager.version_and_hash()
    assert [task["name"] for task in payload["tasks"]] == ["check-in", "sync"]
    sync = payload["tasks"][1]
    assert sync["enabled"] is False
    assert sync["schedule"] == "0 */1 * * * *"
    assert sync["runCount"] == 0
    assert sync["running"] is False


def test_check_in_submits_pending_config_first(tmp_path: Path, remote) -> None:
    service, manager, _ = _service(tmp_path, remote)

    assert service.check_in() is True
    names = [name for name, _ in remote.calls]
    assert names.index("submit_config") < names.index("check_in")
    (payload,) = remote.calls_named("check_in")[0]
    assert payload["configVersion"] == 1700000000


def test_check_in_skipped_without_token(tmp_path: Path, remote) -> None:
    service, _, _ = _service(tmp_path, remote)
    remote.token = None
    assert service.check_in() is False
    assert remote.calls == []


def test_check_in_failure_is_reported_as_false(tmp_path: Path, remote) -> None:
    service, _, _ = _service(tmp_path, remote)
    remote.fail.add("check_in")
    assert service.check_in() is False


def test_run_respects_interval_and_enabled_flag(tmp_path: Path, remote) -> None:
    service, manager, _ = _service(tmp_path, remote)

    assert service.run() is True
    assert service.run() is False
    assert len(remote.calls_named("check_in")) == 1

    manager.apply_diff({"agent": {"checkIn": {"enabled": {"value": False}}}})
    fresh = CheckInService(remote, manager, manager.scheduler, "agent-1")
    assert fresh.run() is False
    assert len(remote.calls_named("check_in")) == 1


def test_need_full_config_marks_manager(tmp_path: Path, remote) -> None:
    service, manager, _ = _service(tmp_path, remote)
    manager.submit()
    assert not manager.should_submit()

    service.handle_response({"configUpdate": {"needFullConfig": True}})
    assert manager.need_full_config
    assert manager.should_submit()


def test_config_diff_is_applied_with_server_version(tmp_path: Path, remote) -> None:
    service, manager, scheduler = _service(tmp_path, remote)
    remote.check_in_response = {
        "configUpdate": {
            "hasUpdate": True,
            "version": 12,
            "configHash": "server-hash",
            "configDiff": {"agent": {"checkIn": {"interval": 30}}, "tasks": {"sync": {"enabled": False}}},
        }
    }

    service.check_in()
    assert manager.version_and_hash() == (12, "server-hash")
    assert manager.get_agent_int("checkIn.interval", 0) == 30
    assert not scheduler.is_registered("sync")


def test_full_config_replaces_document(tmp_path: Path, remote) -> None:
    service, manager, _ = _service(tmp_path, remote)
    data = {"agent": {"checkIn": {"interval": 90}}, "tasks": [{"name": "sync", "pageSize": 3}]}

    service.handle_response(
        {"configUpdate": {"hasUpdate": True, "version": 20, "configHash": content_hash(data), "configData": data}}
    )
    assert manager.version_and_hash() == (20, content_hash(data))
    assert manager.get_int("sync", "pageSize", 0) == 3


def test_malformed_diff_is_logged_not_applied(tmp_path: Path, remote) -> None:
    service, manager, _ = _service(tmp_path, remote)
    before = manager.version_and_hash()

    service.handle_response({"configUpdate": {"hasUpdate": True, "version": 5, "configDiff": {"tasks": [1]}}})
    assert manager.version_and_hash() == before


def test_pause_command_reports_executing_then_completed(tmp_path: Path, remote) -> None:
    service, _, scheduler = _service(tmp_path, remote)

    service.handle_response({"commands": [{"id": "c1", "type": "pause_task", "target": "sync"}]})
    assert _statuses(remote, "c1") == ["executing", "completed"]
    completed = remote.calls_named("update_agent_command")[-1][1]
    assert completed["result"] == {"success": True, "type": "pause_task", "target": "sync", "changed": True}
    assert "completedAt" in completed
    assert not scheduler.is_registered("sync")


@pytest.mark.parametrize(
    "command, message",
    [
        ({"id": "c2", "type": "format_disk", "target": "sync"}, "Unsupported agent command type"),
        ({"id": "c2", "type": "pause_task", "target": "missing"}, "Unknown task"),
        (
            {"id": "c2", "type": "update_task_schedule", "target": "sync", "params": {"schedule": "hourly"}},
            "hourly",
        ),
    ],
)
def test_failed_commands_report_error(tmp_path: Path, remote, command, message: str) -> None:
    service, _, scheduler = _service(tmp_path, remote)

    service.handle_response({"commands": [command]})
    assert _statuses(remote, "c2") == ["executing", "failed"]
    assert message in remote.calls_named("update_agent_command")[-1][1]["error"]
    assert scheduler.schedule_of("sync") == "0 */1 * * * *"


def test_handler_schedule_and_enable_commands(tmp_path: Path, remote) -> None:
    _, manager, scheduler = _service(tmp_path, remote)
    handler = AgentCommandHandler(scheduler, manager)

    result = handler.execute(
        AgentCommand.from_payload(
            {"id": "c3", "type": "update_task_schedule", "target": "sync", "params": {"schedule": "0 0 * * * *"}}
        )
    )
    assert result["schedule"] == "0 0 * * * *"
    assert scheduler.schedule_of("sync") == "0 0 * * * *"

    assert handler.execute(AgentCommand("c4", "disable_task", "sync"))["changed"] is True
    assert handler.execute(AgentCommand("c5", "enable_task", "sync"))["changed"] is True
    assert handler.execute(AgentCommand("c6", "resume_task", "sync"))["changed"] is False
    assert handler.execute(AgentCommand("c7", "reload_config"))["source"] == "local"

    with pytest.raises(CommandValidationError, match="target"):
        handler.execute(AgentCommand("c8", "run_task"))


def test_collect_reports_system_info_and_agent_metrics(tmp_path: Path, remote) -> None:
    service, _, scheduler = _service(tmp_path, remote)
    assert scheduler.get_task("sync").execute() is True

    payload = service.collect()
    info = payload["systemInfo"]
    assert {"hostname", "os", "arch", "pythonVersion", "pid", "cpuCount", "uptime"} <= set(info)
    assert info["uptime"] >= 0

    metrics = payload["metrics"]
    assert metrics["totalJobsRun"] == 1
    assert metrics["successfulJobs"] == 1
    assert metrics["failedJobs"] == 0
    assert metrics["avgJobDuration"] >= 0.0

    sync = payload["tasks"][1]
    assert sync["name"] == "sync"
    assert sync["maxDuration"] >= sync["avgDuration"] >= 0.0
    assert sync["nextRunAt"] > 0
