"""Log levels and verbosity filter directives.

The pipeline works on a five-level scale (trace, debug, info, warn, error)
layered over stdlib logging levels. Filter directives follow the familiar
``default,target=level`` form, e.g. ``"warn,service_telemetry=debug"``.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from service_telemetry.errors import ConfigError

TRACE = 5
"""Stdlib level number used for trace-level records."""

OFF = logging.CRITICAL + 10

logging.addLevelName(TRACE, "TRACE")


class Level(str, Enum):
    """Internal five-level scale and its Cloud Logging severity."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def severity(self) -> str:
        """Cloud Logging severity for this level."""
        return _SEVERITY[self]

    @classmethod
    def from_levelno(cls, levelno: int) -> Level:
        """Map any stdlib level number onto the five-level scale.

        CRITICAL and anything above it fold into ERROR.
        """
        if levelno < logging.DEBUG:
            return cls.TRACE
        if levelno < logging.INFO:
            return cls.DEBUG
        if levelno < logging.WARNING:
            return cls.INFO
        if levelno < logging.ERROR:
            return cls.WARN
        return cls.ERROR


_SEVERITY: dict[Level, str] = {
    Level.TRACE: "DEBUG",
    Level.DEBUG: "DEBUG",
    Level.INFO: "INFO",
    Level.WARN: "WARNING",
    Level.ERROR: "ERROR",
}

LEVEL_NAMES: dict[str, int] = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "off": OFF,
}


class LogFilter(BaseModel):
    """Parsed verbosity filter.

    Attributes:
        default_level: Level applied to the root logger.
        targets: Per-logger level overrides, in directive order.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_level: int = Field(default=logging.INFO)
    targets: dict[str, int] = Field(default_factory=dict)

    def apply(self) -> None:
        """Set the levels on the stdlib logger tree."""
        logging.getLogger().setLevel(self.default_level)
        for target, level in self.targets.items():
            logging.getLogger(target).setLevel(level)


def _parse_level(name: str, directive: str) -> int:
    level = LEVEL_NAMES.get(name.strip().lower())
    if level is None:
        raise ConfigError(
            f"Unknown log level {name.strip()!r} in directive {directive!r}",
            field="log_level",
        )
    return level


def parse_log_filter(directives: str) -> LogFilter:
    """Parse a comma-separated filter directive string.

    Args:
        directives: e.g. ``"info"`` or ``"warn,service_telemetry=debug"``.
            ``::`` is accepted as a module separator in targets.

    Returns:
        Parsed LogFilter. An empty string yields the INFO default.

    Raises:
        ConfigError: On an unknown level name or an empty target.

    Example:
        >>> f = parse_log_filter("warn,grpc::channel=error")
        >>> f.targets
        {'grpc.channel': 40}
    """
    default_level = logging.INFO
    targets: dict[str, int] = {}

    for raw in directives.split(","):
        directive = raw.strip()
        if not directive:
            continue
        if "=" not in directive:
            default_level = _parse_level(directive, directive)
            continue

        target, _, level_name = directive.partition("=")
        target = target.strip().replace("::", ".")
        if not target:
            raise ConfigError(
                f"Empty target in log directive {directive!r}",
                field="log_level",
            )
        targets[target] = _parse_level(level_name, directive)

    return LogFilter(default_level=default_level, targets=targets)
