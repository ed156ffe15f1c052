"""
Error types shared by the warden control plane.
"""

from __future__ import annotations


class WardenError(Exception):
    """Base error for warden."""


class ConfigError(WardenError):
    """Settings or dynamic configuration error."""


class ScheduleError(WardenError):
    """Malformed schedule expression."""


class RemoteError(WardenError):
    """Remote authority unreachable or rejected the request."""


class CommandValidationError(WardenError):
    """Claimed command is missing a supported type or required fields."""
