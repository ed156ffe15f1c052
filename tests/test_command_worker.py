from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, List, Mapping

import pytest

from warden.command_worker import Command, CommandWorker, InFlightSet
from warden.errors import CommandValidationError


class FakeExecutor:
    def __init__(self, delay: float = 0.0, error: Exception = None) -> None:
        self.delay = delay
        self.error = error
        self.commands: List[Command] = []

    def _run(self, command: Command) -> Mapping[str, Any]:
        self.commands.append(command)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"workflowRunId": f"run-{command.id}"}

    def start_workflow(self, command: Command) -> Mapping[str, Any]:
        return self._run(command)

    def execute_step(self, command: Command) -> Mapping[str, Any]:
        return self._run(command)


class StubConfig:
    def __init__(self, values: Dict[str, int]) -> None:
        self.values = values

    def get_int(self, task_name: str, field_name: str, default: int) -> int:
        return self.values.get(field_name, default)


def _start_workflow(command_id: str = "cmd-1", **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": command_id,
        "commandType": "START_WORKFLOW",
        "workflowId": "wf-1",
        "rootRefId": "conv-1",
        "rootRefType": "conversation",
        "params": {"tone": "friendly"},
    }
    payload.update(overrides)
    return payload


def _worker(remote, executor=None, config=None) -> CommandWorker:
    return CommandWorker(
        remote,
        executor or FakeExecutor(),
        "agent-1",
        config=config,
        min_heartbeat_seconds=0.05,
        max_heartbeat_seconds=0.1,
    )


def test_command_payload_parsing_and_validation() -> None:
    command = Command.from_payload(_start_workflow(params=json.dumps({"a": 1})))
    assert command.params == {"a": 1}
    command.validate()

    broken = Command.from_payload(_start_workflow(params="{oops"))
    assert broken.params == {}

    with pytest.raises(CommandValidationError, match="Unsupported command type"):
        Command.from_payload({"id": "x", "commandType": "DELETE_ALL"}).validate()
    with pytest.raises(CommandValidationError, match="stepId"):
        Command.from_payload({"id": "x", "commandType": "EXECUTE_STEP", "rootRefId": "r", "rootRefType": "t"}).validate()


def test_inflight_set_is_test_and_insert() -> None:
    inflight = InFlightSet()
    assert inflight.add("a") is True
    assert inflight.add("a") is False
    assert "a" in inflight and len(inflight) == 1
    inflight.discard("a")
    inflight.discard("a")
    assert inflight.snapshot() == set()


def test_poll_skips_without_token(remote) -> None:
    remote.token = None
    assert _worker(remote).poll() == 0
    assert remote.calls_named("claim_pending") == []


def test_successful_command_reports_completion_once(remote) -> None:
    remote.claim_batches.append([_start_workflow()])
    worker = _worker(remote)

    assert worker.poll() == 1
    assert worker.join(5)

    statuses = remote.calls_named("update_command_status")
    assert statuses == [("cmd-1", "completed", {"workflowRunId": "run-cmd-1"})]
    percentages = [args[2]["percentage"] for args in remote.calls_named("update_heartbeat")]
    assert 10 in percentages and 100 in percentages
    assert len(worker.inflight) == 0


@pytest.mark.parametrize(
    "payload, message",
    [
        (_start_workflow(commandType="PUBLISH"), "Unsupported command type"),
        (_start_workflow(rootRefId=""), "rootRefId"),
    ],
)
def test_invalid_command_fails_without_executing(remote, payload: Dict[str, Any], message: str) -> None:
    executor = FakeExecutor()
    remote.claim_batches.append([payload])
    worker = _worker(remote, executor)

    worker.poll()
    assert worker.join(5)

    (status,) = remote.calls_named("update_command_status")
    assert status[1] == "failed"
    assert message in status[2]["error"]
    assert executor.commands == []
    assert len(worker.inflight) == 0


def test_executor_error_becomes_failed_status(remote) -> None:
    remote.claim_batches.append([_start_workflow()])
    worker = _worker(remote, FakeExecutor(error=RuntimeError("model unavailable")))

    worker.poll()
    assert worker.join(5)

    assert remote.calls_named("update_command_status") == [("cmd-1", "failed", {"error": "model unavailable"})]
    assert "cmd-1" not in worker.inflight


def test_inflight_and_missing_ids_are_skipped(remote) -> None:
    remote.claim_batches.append([_start_workflow("busy"), {"commandType": "START_WORKFLOW"}, _start_workflow("new")])
    worker = _worker(remote)
    worker.inflight.add("busy")

    assert worker.poll() == 1
    assert worker.join(5)
    assert [args[0] for args in remote.calls_named("update_command_status")] == ["new"]
    assert "busy" in worker.inflight


def test_claim_failure_counts_as_zero(remote) -> None:
    remote.fail.add("claim_pending")
    assert _worker(remote).poll() == 0


def test_claim_limit_is_clamped(remote) -> None:
    _worker(remote, config=StubConfig({"claimLimit": 500})).poll()
    _worker(remote, config=StubConfig({"claimLimit": 0})).poll()
    assert [args[1] for args in remote.calls_named("claim_pending")] == [100, 1]


def test_heartbeats_are_sent_while_work_runs(remote) -> None:
    remote.claim_batches.append([_start_workflow()])
    worker = _worker(remote, FakeExecutor(delay=0.4))

    worker.poll()
    assert worker.join(5)

    steps = [args[2]["step"] for args in remote.calls_named("update_heartbeat")]
    assert "processing" in steps
    assert steps.index("starting_workflow") < steps.index("completed")
    assert steps.count("completed") == 1


def test_heartbeat_failures_do_not_fail_the_command(remote) -> None:
    remote.fail.add("update_heartbeat")
    remote.claim_batches.append([_start_workflow()])
    worker = _worker(remote)

    worker.poll()
    assert worker.join(5)
    assert remote.calls_named("update_command_status")[0][1] == "completed"


def test_close_stops_heartbeat_loops(remote) -> None:
    release = threading.Event()

    class BlockingExecutor(FakeExecutor):
        def _run(self, command: Command) -> Mapping[str, Any]:
            release.wait(5)
            return {}

    remote.claim_batches.append([_start_workflow()])
    worker = _worker(remote, BlockingExecutor())
    worker.poll()
    worker.close()
    time.sleep(0.3)
    before = len(remote.calls_named("update_heartbeat"))
    time.sleep(0.3)
    assert len(remote.calls_named("update_heartbeat")) == before

    release.set()
    assert worker.join(5)
    assert worker.active() == []


def _heartbeat_threads() -> List[threading.Thread]:
    return [thread for thread in threading.enumerate() if thread.name.startswith("warden-heartbeat-")]


def test_close_ends_long_heartbeat_interval_immediately(remote) -> None:
    release = threading.Event()

    class BlockingExecutor(FakeExecutor):
        def _run(self, command: Command) -> Mapping[str, Any]:
            release.wait(5)
            return {}

    remote.claim_batches.append([_start_workflow("slow")])
    worker = CommandWorker(remote, BlockingExecutor(), "agent-1")
    worker.poll()
    time.sleep(0.1)
    assert _heartbeat_threads()

    worker.close()
    deadline = time.monotonic() + 1.0
    while _heartbeat_threads() and time.monotonic() < deadline:
        time.sleep(0.02)
    assert _heartbeat_threads() == []

    release.set()
    assert worker.join(5)
    assert remote.calls_named("update_command_status")[0][1] == "completed"


class SilentRemote:
    def update_heartbeat(self, agent_id: str, command_id: str, progress: Any = None) -> None:
        raise AssertionError("no heartbeat expected")


def test_heartbeat_loop_stops_on_cancellation() -> None:
    worker = CommandWorker(SilentRemote(), FakeExecutor(), "agent-1")
    stop = threading.Event()
    cancel = threading.Event()
    command = Command.from_payload(_start_workflow())
    loop = threading.Thread(target=worker._heartbeat_loop, args=(command, 30.0, stop, cancel))
    loop.start()

    cancel.set()
    loop.join(3)
    assert not loop.is_alive()
