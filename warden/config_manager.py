"""
Dynamic configuration manager.

Holds one versioned, hash-identified configuration document, keeps it durable in
a local JSON file, merges partial updates from the remote authority and projects
the result onto the scheduler (enable, disable, reschedule). Everything else in
the document is read on demand by task bodies through the typed accessors.

Document data layout::

    {
      "agent": {"checkIn": {"interval": <field>, "enabled": <field>}, ...},
      "tasks": [{"name": "command-worker", "enabled": <field>, "schedule": <field>, ...}, ...]
    }

where ``<field>`` is either a raw value or a ``{value, name, description, type}``
wrapper.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config_values import (
    ConfigField,
    content_hash,
    deep_merge,
    is_field,
    lookup,
    make_field,
    to_bool,
    to_int,
    to_str,
    unwrap,
)
from .errors import ConfigError, RemoteError, ScheduleError
from .locks import ReadWriteLock
from .remote import RemoteClient
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config") / "agent-config.json"
LOCAL_ONLY_TASK_FIELDS = ("displayName", "description", "icon", "color", "category", "tags")

DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5
DEFAULT_CHECK_IN_INTERVAL = 60

_SCHEDULE_DESCRIPTION = "Cron schedule with six fields: second minute hour day month weekday."


@dataclass
class ConfigDocument:
    version: int = 0
    config_hash: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    last_updated_at: int = 0

    def to_file_payload(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "configHash": self.config_hash,
            "lastUpdatedAt": self.last_updated_at,
            "configData": self.data,
        }


def default_agent_section() -> Dict[str, Any]:
    return {
        "checkIn": {
            "interval": make_field(
                DEFAULT_CHECK_IN_INTERVAL,
                "interval",
                "Seconds between check-ins with the server.",
            ),
            "enabled": make_field(True, "enabled", "Report status to the server on every check-in."),
        },
    }


def _task_entries(data: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return task entries as a list of dicts, accepting the legacy name-keyed map form."""
    tasks = data.get("tasks")
    if tasks is None:
        return []
    if isinstance(tasks, Mapping):
        entries = []
        for name, entry in tasks.items():
            if not isinstance(entry, Mapping):
                raise ConfigError(f"Error: tasks.{name} must be an object.")
            entries.append({**copy.deepcopy(dict(entry)), "name": name})
        return entries
    if isinstance(tasks, list):
        entries = []
        for index, entry in enumerate(tasks):
            if not isinstance(entry, Mapping):
                raise ConfigError(f"Error: tasks[{index}] must be an object.")
            entries.append(copy.deepcopy(dict(entry)))
        return entries
    raise ConfigError("Error: tasks must be a list or an object.")


def _entry_name(entry: Mapping[str, Any]) -> Optional[str]:
    name = unwrap(entry.get("name"))
    return name if isinstance(name, str) and name else None


def strip_local_only(data: Mapping[str, Any]) -> Dict[str, Any]:
    stripped = copy.deepcopy(dict(data))
    if "tasks" in stripped:
        entries = _task_entries(stripped)
        for entry in entries:
            for key in LOCAL_ONLY_TASK_FIELDS:
                entry.pop(key, None)
        stripped["tasks"] = entries
    return stripped


class ConfigManager:
    def __init__(
        self,
        scheduler: TaskScheduler,
        path: Path = DEFAULT_CONFIG_FILE,
        remote: Optional[RemoteClient] = None,
        agent_id: str = "",
    ) -> None:
        self.scheduler = scheduler
        self.path = Path(path)
        self.remote = remote
        self.agent_id = agent_id
        self._doc = ConfigDocument()
        self._doc_lock = ReadWriteLock()
        self._submit_lock = threading.Lock()
        self._submitting = False
        self._need_full_config = False

    # Startup ------------------------------------------------------------

    def load_with_fallback(self) -> str:
        """Adopt the local cache, or build defaults when it is missing or unusable."""
        try:
            self.load_local()
            return "local"
        except ConfigError as exc:
            logger.info("Local config not usable (%s); initializing defaults.", exc)
        self.initialize_defaults()
        return "defaults"

    def load_local(self) -> None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigError(f"Error: local config file not found: {self.path}") from exc
        except OSError as exc:
            raise ConfigError(f"Error: could not read local config file {self.path}: {exc}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Error: local config file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"Error: local config file {self.path} must contain an object.")
        data = payload.get("configData")
        if not isinstance(data, dict) or not data:
            raise ConfigError(f"Error: configData in {self.path} must be a non-empty object.")
        _task_entries(data)

        doc = ConfigDocument(
            version=to_int(payload.get("version"), 0),
            config_hash=to_str(payload.get("configHash"), "") or content_hash(data),
            data=data,
            last_updated_at=to_int(payload.get("lastUpdatedAt"), 0),
        )
        with self._doc_lock.write():
            self._doc = doc
        logger.info("Loaded local config from %s (version %s, hash %s)", self.path, doc.version, doc.config_hash)
        self._project()

    def initialize_defaults(self) -> None:
        with self._doc_lock.read():
            if self._doc.version != 0 and self._doc.data:
                return
        data = self._default_data()
        with self._doc_lock.write():
            self._doc = ConfigDocument(version=0, config_hash=content_hash(data), data=data, last_updated_at=_now())
        logger.info("Initialized default config with %s task(s)", len(data["tasks"]))
        self._persist()
        self._project()

    # Updates from the remote authority ----------------------------------

    def apply_diff(self, diff: Mapping[str, Any]) -> List[str]:
        """Deep-merge a partial update and return the names of updated tasks."""
        if not isinstance(diff, Mapping) or not diff:
            raise ConfigError("Error: config diff must be a non-empty object.")
        agent_diff = diff.get("agent")
        tasks_diff = diff.get("tasks")
        deleted = diff.get("deletedTasks")
        if agent_diff is None and tasks_diff is None and deleted is None:
            raise ConfigError("Error: config diff must contain agent, tasks or deletedTasks.")
        if agent_diff is not None and not isinstance(agent_diff, Mapping):
            raise ConfigError("Error: configDiff.agent must be an object.")
        if tasks_diff is not None:
            if not isinstance(tasks_diff, Mapping):
                raise ConfigError("Error: configDiff.tasks must be an object keyed by task name.")
            for name, partial in tasks_diff.items():
                if not isinstance(partial, Mapping):
                    raise ConfigError(f"Error: configDiff.tasks.{name} must be an object.")
        if deleted is not None:
            if not isinstance(deleted, list) or not all(isinstance(name, str) for name in deleted):
                raise ConfigError("Error: configDiff.deletedTasks must be a list of task names.")

        with self._submit_lock:
            with self._doc_lock.read():
                data = copy.deepcopy(self._doc.data)
            if not data:
                data = self._default_data()

            if agent_diff is not None:
                current = data.get("agent")
                if current is None:
                    data["agent"] = copy.deepcopy(dict(agent_diff))
                elif isinstance(current, Mapping):
                    data["agent"] = deep_merge(current, agent_diff)
                else:
                    raise ConfigError("Error: agent section must be an object to merge into.")

            entries = _task_entries(data)
            updated: List[str] = []
            for name, partial in (tasks_diff or {}).items():
                index = next((i for i, entry in enumerate(entries) if _entry_name(entry) == name), None)
                if index is None:
                    entries.append({**deep_merge({}, partial), "name": name})
                else:
                    entries[index] = {**deep_merge(entries[index], partial), "name": name}
                updated.append(name)
            removed = set(deleted or [])
            if removed:
                entries = [entry for entry in entries if _entry_name(entry) not in removed]
            data["tasks"] = entries

            with self._doc_lock.write():
                self._doc = replace(self._doc, config_hash=content_hash(data), data=data, last_updated_at=_now())
            self._persist()

        for name in sorted(removed):
            logger.info("Deleting task %s (removed from config)", name)
            self.scheduler.forget(name)
        self._project()
        if updated:
            logger.info("Applied config diff for %s task(s): %s", len(updated), ", ".join(updated))
        else:
            logger.info("Applied config diff.")
        return updated

    def apply_full(self, data: Mapping[str, Any], version: int, config_hash: str = "") -> None:
        if not isinstance(data, Mapping) or not data:
            raise ConfigError("Error: configData must be a non-empty object.")
        new_data = copy.deepcopy(dict(data))
        _task_entries(new_data)
        with self._submit_lock:
            with self._doc_lock.write():
                self._doc = ConfigDocument(
                    version=version,
                    config_hash=config_hash or content_hash(new_data),
                    data=new_data,
                    last_updated_at=_now(),
                )
            self._persist()
        logger.info("Applied full config (version %s, hash %s)", version, config_hash)
        self._project()

    def set_version_and_hash(self, version: int, config_hash: str) -> None:
        with self._submit_lock:
            with self._doc_lock.write():
                self._doc = replace(self._doc, version=version, config_hash=config_hash, last_updated_at=_now())
            self._persist()

    def pull(self) -> bool:
        if self.remote is None or not self.remote.is_authenticated() or not self.agent_id:
            logger.info("Skipping config pull: remote authority not configured.")
            return False
        try:
            current = self.remote.get_current_config(self.agent_id)
        except RemoteError as exc:
            logger.warning("Failed to pull config from server: %s", exc)
            return False
        if not current or not current.get("configData"):
            logger.info("Server has no config for agent %s yet.", self.agent_id)
            return False
        data = current["configData"]
        expected = current.get("configHash") or ""
        if expected and content_hash(data) != expected:
            raise ConfigError(f"Error: pulled config hash mismatch (expected {expected}).")
        self.apply_full(data, current.get("version") or 0, expected)
        return True

    # Submission ---------------------------------------------------------

    def mark_need_full_config(self) -> None:
        self._need_full_config = True

    @property
    def need_full_config(self) -> bool:
        return self._need_full_config

    @property
    def is_submitting(self) -> bool:
        return self._submitting

    def effective_config(self) -> Dict[str, Any]:
        """Held data merged with live registry values, with local-only fields removed."""
        with self._doc_lock.read():
            data = copy.deepcopy(self._doc.data)
        if not data:
            data = self._default_data()
        entries = _task_entries(data)
        by_name = {_entry_name(entry): entry for entry in entries}
        for name, task in sorted(self.scheduler.all_tasks().items()):
            entry = by_name.get(name)
            if entry is None:
                entry = {"name": name}
                entries.append(entry)
            for key, default in self._default_task_entry(task).items():
                if key not in entry:
                    entry[key] = default
                elif is_field(default) and not is_field(entry[key]):
                    entry[key] = {**default, "value": entry[key]}
            live_schedule = self.scheduler.schedule_of(name)
            if live_schedule:
                if is_field(entry["schedule"]):
                    entry["schedule"] = {**entry["schedule"], "value": live_schedule}
                else:
                    entry["schedule"] = make_field(live_schedule, "schedule", _SCHEDULE_DESCRIPTION)
        data["tasks"] = entries
        return strip_local_only(data)

    def should_submit(self) -> bool:
        with self._doc_lock.read():
            version = self._doc.version
            current_hash = self._doc.config_hash
        if version == 0 or self._need_full_config:
            return True
        return content_hash(self.effective_config()) != current_hash

    def submit(self, force: bool = False) -> bool:
        """Push the effective config when it changed. Returns True when the server accepted it."""
        with self._submit_lock:
            self._submitting = True
            try:
                return self._submit_locked(force)
            finally:
                self._submitting = False

    def _submit_locked(self, force: bool) -> bool:
        if not self.agent_id:
            logger.warning("Cannot submit config: agent id is empty.")
            return False
        if self.remote is None or not self.remote.is_authenticated():
            logger.info("Skipping config submit: remote authority not configured.")
            return False

        effective = self.effective_config()
        new_hash = content_hash(effective)
        with self._doc_lock.read():
            version = self._doc.version
            current_hash = self._doc.config_hash
        if not force and version != 0 and new_hash == current_hash and not self._need_full_config:
            logger.debug("Config unchanged (version %s, hash %s); skipping submit.", version, new_hash)
            return False

        logger.info("Submitting config (hash %s, current version %s)", new_hash, version)
        try:
            result = self.remote.submit_config(self.agent_id, effective, new_hash)
        except RemoteError as exc:
            logger.warning("Failed to submit config to server: %s. Continuing with current config.", exc)
            return False

        new_version = to_int(result.get("version"), 0) or version
        with self._doc_lock.write():
            self._doc = ConfigDocument(
                version=new_version,
                config_hash=new_hash,
                data=effective,
                last_updated_at=_now(),
            )
        self._need_full_config = False
        self._persist()
        logger.info("Config submitted (version %s, hash %s)", new_version, new_hash)
        return True

    # Accessors ----------------------------------------------------------

    def version_and_hash(self) -> Tuple[int, str]:
        with self._doc_lock.read():
            return self._doc.version, self._doc.config_hash

    def document(self) -> ConfigDocument:
        with self._doc_lock.read():
            return copy.deepcopy(self._doc)

    def get_task_config(self, task_name: str) -> Dict[str, Any]:
        with self._doc_lock.read():
            data = self._doc.data
            try:
                entries = _task_entries(data)
            except ConfigError:
                return {}
        for entry in entries:
            if _entry_name(entry) == task_name:
                return unwrap(entry)
        return {}

    def get_task_value(self, task_name: str, field_name: str) -> Optional[Any]:
        return self.get_task_config(task_name).get(field_name)

    def get_int(self, task_name: str, field_name: str, default: int) -> int:
        return to_int(self.get_task_value(task_name, field_name), default)

    def get_bool(self, task_name: str, field_name: str, default: bool) -> bool:
        return to_bool(self.get_task_value(task_name, field_name), default)

    def get_str(self, task_name: str, field_name: str, default: str) -> str:
        return to_str(self.get_task_value(task_name, field_name), default)

    def get_agent_value(self, path: str, default: Any = None) -> Any:
        with self._doc_lock.read():
            agent = self._doc.data.get("agent")
            if not isinstance(agent, Mapping):
                return default
            value = lookup(agent, path)
        return default if value is None else value

    def get_agent_int(self, path: str, default: int) -> int:
        return to_int(self.get_agent_value(path), default)

    # Internals ----------------------------------------------------------

    def _default_data(self) -> Dict[str, Any]:
        tasks = self.scheduler.all_tasks()
        return {
            "agent": default_agent_section(),
            "tasks": [self._default_task_entry(tasks[name]) for name in sorted(tasks)],
        }

    def _default_task_entry(self, task: Any) -> Dict[str, Any]:
        schedule = self.scheduler.schedule_of(task.name) or task.schedule
        entry: Dict[str, Any] = {
            "name": task.name,
            "enabled": make_field(True, "enabled", "Run this task on its schedule."),
            "schedule": make_field(schedule, "schedule", _SCHEDULE_DESCRIPTION),
            "timeout": make_field(DEFAULT_TIMEOUT_SECONDS, "timeout", "Maximum run time in seconds."),
            "maxRetries": make_field(DEFAULT_MAX_RETRIES, "maxRetries", "Retries before a run is marked failed."),
            "retryDelay": make_field(DEFAULT_RETRY_DELAY_SECONDS, "retryDelay", "Seconds between retries."),
        }
        declared = getattr(task, "config_fields", None) or {}
        for key, declared_field in declared.items():
            if isinstance(declared_field, ConfigField):
                entry[key] = declared_field.to_dict()
            else:
                entry[key] = make_field(declared_field, key)
        return entry

    def _persist(self) -> None:
        with self._doc_lock.read():
            payload = json.dumps(self._doc.to_file_payload(), indent=2, ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(payload + "\n", encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save local config to %s: %s", self.path, exc)

    def _project(self) -> None:
        with self._doc_lock.read():
            data = copy.deepcopy(self._doc.data)
        try:
            entries = _task_entries(data)
        except ConfigError as exc:
            logger.error("Cannot project config onto scheduler: %s", exc)
            return

        for entry in entries:
            name = _entry_name(entry)
            if name is None:
                continue
            if not self.scheduler.is_known(name):
                logger.debug("Task %s is not registered in this agent; skipping.", name)
                continue
            if not to_bool(entry.get("enabled"), True):
                if self.scheduler.is_registered(name):
                    logger.info("Disabling task %s (per config)", name)
                    self.scheduler.remove(name)
                continue
            if self.scheduler.is_paused(name):
                logger.debug("Task %s is paused; not re-enabling it.", name)
            elif not self.scheduler.is_registered(name):
                logger.info("Enabling task %s (per config)", name)
                self.scheduler.enable(name)

            schedule = unwrap(entry.get("schedule"))
            if isinstance(schedule, str) and schedule and schedule != self.scheduler.schedule_of(name):
                try:
                    self.scheduler.update_schedule(name, schedule)
                except ScheduleError as exc:
                    logger.error("Failed to update schedule for task %s: %s", name, exc)


def _now() -> int:
    return int(time.time())
