"""
Command line entry point: ``python -m warden <command>``.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from .agent import Agent
from .errors import ConfigError, WardenError
from .log import setup_logging
from .settings import DEFAULT_SETTINGS_FILE, Settings, load_settings

logger = logging.getLogger("warden")

DEFAULT_PREVIEW_COUNT = 5


def _load(config: Optional[str]) -> Settings:
    return load_settings(Path(config) if config else None)


def command_validate(settings: Settings) -> int:
    print(f"Settings valid: {settings.source or '(defaults + environment)'}")
    print(f"Agent id: {settings.agent.agent_id or '(unset)'}")
    print(f"API base URL: {settings.agent.api_base_url}")
    print(f"API token: {'set' if settings.agent.api_token else 'missing'}")
    print(f"Local config file: {settings.paths.config_file}")
    print(f"Log file: {settings.paths.log_file}")
    for name, task in sorted(settings.tasks.items()):
        print(f"- {name}: {task.schedule} (enabled={task.enabled})")
    return 0


def command_preview(settings: Settings, task_name: Optional[str], count: int) -> int:
    agent = Agent(settings)
    agent.register_tasks()
    try:
        agent.config.load_local()
    except ConfigError as exc:
        logger.info("Previewing settings schedules only: %s", exc)

    names = sorted(agent.scheduler.all_tasks())
    if task_name:
        if task_name not in names:
            raise WardenError(f'Error: Unknown task "{task_name}". Known tasks: {", ".join(names)}')
        names = [task_name]

    for name in names:
        print("=" * 80)
        print(f"Task: {name} (registered={agent.scheduler.is_registered(name)})")
        print(f"Schedule: {agent.scheduler.schedule_of(name)}")
        print(f"Next {count} run(s):")
        for run_dt in agent.scheduler.next_fire_times(name, count):
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_show_config(settings: Settings) -> int:
    path = settings.paths.config_file
    if not path.exists():
        raise ConfigError(f"Error: Local config file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Error: Local config file {path} is not valid JSON: {exc}") from exc
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


def command_daemon(settings: Settings) -> int:
    return Agent(settings).run_forever()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="warden agent control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help=f"Path to warden YAML settings (default: {DEFAULT_SETTINGS_FILE} if present)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate settings and schedules")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming task runs")
    preview_parser.add_argument("--task", help="Preview a single task by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    subparsers.add_parser("show-config", help="Print the locally cached dynamic config")
    subparsers.add_parser("daemon", help="Run the agent until interrupted")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = _load(args.config)
    except WardenError as exc:
        setup_logging()
        logger.error(str(exc))
        return 1
    setup_logging(str(settings.paths.log_file))

    try:
        if args.command == "validate":
            return command_validate(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise WardenError("--count must be >= 1")
            return command_preview(settings, task_name=args.task, count=args.count)
        if args.command == "show-config":
            return command_show_config(settings)
        if args.command == "daemon":
            return command_daemon(settings)
        raise WardenError(f"Unsupported command: {args.command}")
    except WardenError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1
