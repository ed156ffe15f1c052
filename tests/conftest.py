from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from warden.errors import RemoteError


class FakeRemote:
    """In-memory stand-in for RemoteClient that records every call."""

    def __init__(self) -> None:
        self.token: Optional[str] = "token"
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.fail: Set[str] = set()
        self.submit_result: Dict[str, Any] = {"version": 1700000000, "configHash": "", "configData": None}
        self.current_config: Optional[Dict[str, Any]] = None
        self.claim_batches: List[List[Dict[str, Any]]] = []
        self.check_in_response: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))
        if name in self.fail:
            raise RemoteError(f"Error: {name} unavailable")

    def calls_named(self, name: str) -> List[Tuple[Any, ...]]:
        with self._lock:
            return [args for call, args in self.calls if call == name]

    def submit_config(self, agent_id: str, config_data: Any, config_hash: str) -> Dict[str, Any]:
        self._record("submit_config", agent_id, config_data, config_hash)
        return dict(self.submit_result)

    def get_current_config(self, agent_id: str) -> Optional[Dict[str, Any]]:
        self._record("get_current_config", agent_id)
        return self.current_config

    def claim_pending(self, agent_id: str, limit: int) -> List[Dict[str, Any]]:
        self._record("claim_pending", agent_id, limit)
        return self.claim_batches.pop(0) if self.claim_batches else []

    def update_heartbeat(self, agent_id: str, command_id: str, progress: Any = None) -> None:
        self._record("update_heartbeat", agent_id, command_id, progress)

    def update_command_status(self, command_id: str, status: str, result: Any = None) -> None:
        self._record("update_command_status", command_id, status, result)

    def check_in(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._record("check_in", payload)
        return self.check_in_response

    def update_agent_command(self, command_id: str, update: Dict[str, Any]) -> None:
        self._record("update_agent_command", command_id, update)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()
