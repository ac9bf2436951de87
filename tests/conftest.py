"""Shared pytest fixtures for service-telemetry tests.

This module provides common fixtures used across the unit tests:
a clean environment, fresh installation state, and isolation of the
process-global logging and tracing configuration.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from io import StringIO

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.util._once import Once

from service_telemetry.lifecycle import TelemetryState
from service_telemetry.logging import TelemetryStreamHandler

# Variables that influence backend or platform detection
TELEMETRY_ENV_VARS = (
    "GOOGLE_CLOUD_PROJECT",
    "GCLOUD_PROJECT",
    "GCP_PROJECT",
    "K_SERVICE",
    "K_REVISION",
    "FUNCTION_NAME",
    "FUNCTION_TARGET",
    "GAE_SERVICE",
    "GAE_VERSION",
    "CLOUD_RUN_REGION",
    "FUNCTION_REGION",
    "GAE_REGION",
    "OTEL_SERVICE_NAME",
    "OTEL_SERVICE_VERSION",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "OTEL_PYTHON_TRACER_PROVIDER",
    "LOG_LEVEL",
    "LOG_FORMAT",
    "GOOGLE_APPLICATION_CREDENTIALS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every telemetry-related variable from the environment."""
    for name in TELEMETRY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> Generator[None, None, None]:
    """Configure structlog to output to stdout for test capture.

    Restores structlog defaults afterwards so tests that install the
    telemetry pipeline do not leak into each other.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Remove telemetry handlers and restore logger levels after each test."""
    root = logging.getLogger()
    manager = logging.root.manager
    levels = {
        name: existing.level
        for name, existing in manager.loggerDict.items()
        if isinstance(existing, logging.Logger)
    }
    original_level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler, TelemetryStreamHandler):
            root.removeHandler(handler)
    root.setLevel(original_level)
    for name, existing in list(manager.loggerDict.items()):
        if isinstance(existing, logging.Logger):
            existing.setLevel(levels.get(name, logging.NOTSET))


@pytest.fixture(autouse=True)
def reset_tracer_provider() -> Generator[None, None, None]:
    """Allow each test to install its own global tracer provider."""
    yield
    trace._TRACER_PROVIDER_SET_ONCE = Once()  # noqa: SLF001
    trace._TRACER_PROVIDER = None  # noqa: SLF001


@pytest.fixture
def state() -> TelemetryState:
    """Fresh installation state, independent of the process default."""
    return TelemetryState()


@pytest.fixture
def stream() -> StringIO:
    """In-memory log output stream."""
    return StringIO()


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for credential expiry tests."""
    return datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


@pytest.fixture
def one_hour() -> timedelta:
    """Typical access token lifetime."""
    return timedelta(hours=1)
