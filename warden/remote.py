"""
HTTP client for the remote authority (config store, command queue, check-in).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from .errors import RemoteError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
MAX_CLAIM_LIMIT = 100
BOT_VERSION = "1.0.0"


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return 0


class RemoteClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token.strip() if token and token.strip() else None
        self.timeout_ms = timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def set_token(self, token: Optional[str]) -> None:
        self.token = token.strip() if token and token.strip() else None

    # Configuration ------------------------------------------------------

    def submit_config(self, agent_id: str, config_data: Mapping[str, Any], config_hash: str) -> Dict[str, Any]:
        """Submit the full config; the server assigns a new version."""
        body = {
            "agentId": agent_id,
            "configData": config_data,
            "configHash": config_hash,
            "botVersion": BOT_VERSION,
            "submittedByBot": True,
            "isActive": True,
        }
        data = self._request("PUT", f"/v1/agent-management/config/{agent_id}/update-data", body=body)
        return self._normalize_config(data)

    def get_current_config(self, agent_id: str) -> Optional[Dict[str, Any]]:
        params = {
            "filter": json.dumps({"agentId": agent_id, "isActive": True}),
            "options": json.dumps({"sort": {"createdAt": -1}, "limit": 1}),
        }
        data = self._request("GET", "/v1/agent-management/config/find", params=params)
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, Mapping):
            return None
        return self._normalize_config(data)

    @staticmethod
    def _normalize_config(data: Any) -> Dict[str, Any]:
        if not isinstance(data, Mapping):
            return {"version": 0, "configHash": "", "configData": None}
        config_data = data.get("configData")
        if isinstance(config_data, str):
            try:
                config_data = json.loads(config_data)
            except json.JSONDecodeError as exc:
                raise RemoteError(f"Error: configData is not valid JSON: {exc}") from exc
        return {
            "version": _as_int(data.get("version")),
            "configHash": str(data.get("configHash") or ""),
            "configData": config_data,
        }

    # Command queue ------------------------------------------------------

    def claim_pending(self, agent_id: str, limit: int) -> List[Dict[str, Any]]:
        limit = max(1, min(limit, MAX_CLAIM_LIMIT))
        data = self._request(
            "POST",
            "/v1/ai/workflow-commands/claim-pending",
            body={"agentId": agent_id, "limit": limit},
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise RemoteError("Error: claim-pending response data must be a list.")
        return [item for item in data if isinstance(item, dict)]

    def update_heartbeat(self, agent_id: str, command_id: str, progress: Optional[Mapping[str, Any]] = None) -> None:
        body: Dict[str, Any] = {"commandId": command_id}
        if progress is not None:
            body["progress"] = dict(progress)
        self._request(
            "POST",
            "/v1/ai/workflow-commands/update-heartbeat",
            body=body,
            params={"agentId": agent_id} if agent_id else None,
        )

    def update_command_status(self, command_id: str, status: str, result: Optional[Mapping[str, Any]] = None) -> None:
        body: Dict[str, Any] = {"status": status}
        if result is not None:
            body["result"] = dict(result)
        self._request("PUT", f"/v1/ai/workflow-commands/update-by-id/{command_id}", body=body)

    # Check-in -----------------------------------------------------------

    def check_in(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", "/v1/agent-management/check-in", body=dict(payload))
        return data if isinstance(data, dict) else {}

    def update_agent_command(self, command_id: str, update: Mapping[str, Any]) -> None:
        self._request("PUT", f"/v1/agent-management/command/update-by-id/{command_id}", body=dict(update))

    # Transport ----------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Any:
        if not self.token:
            raise RemoteError("Error: API token is not available.")
        url = self.base_url + path
        if params:
            url += "?" + urllib_parse.urlencode(params)
        data = json.dumps(body).encode("utf-8") if body is not None else None
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token}",
        }
        req = urllib_request.Request(url=url, data=data, method=method, headers=headers)
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout_ms / 1000.0)) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            raise RemoteError(f"Error: {method} {path} failed with HTTP {exc.code}.") from exc
        except urllib_error.URLError as exc:
            raise RemoteError(f"Error: {method} {path} failed: {exc.reason}") from exc
        except OSError as exc:
            raise RemoteError(f"Error: {method} {path} failed: {exc}") from exc

        try:
            envelope = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RemoteError(f"Error: {method} {path} returned invalid JSON.") from exc
        if not isinstance(envelope, dict) or envelope.get("status") != "success":
            message = envelope.get("message") if isinstance(envelope, dict) else None
            raise RemoteError(f"Error: {method} {path} was rejected: {message or 'unexpected response'}")
        logger.debug("%s %s succeeded", method, path)
        return envelope.get("data")
