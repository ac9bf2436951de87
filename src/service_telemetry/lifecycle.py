"""Telemetry bootstrap and shutdown.

This module provides:
- TelemetryState: Guard against installing the pipeline twice
- TelemetryHandle: Owner of the installed tracer provider
- init: One-call bootstrap of tracing and logging

Example:
    >>> from service_telemetry import TelemetryConfig, init
    >>> with init(TelemetryConfig(service_name="api")) as handle:
    ...     tracer = handle.get_tracer(__name__)
    ...     with tracer.start_as_current_span("startup"):
    ...         pass
"""

from __future__ import annotations

import threading
import warnings
from types import TracebackType
from typing import IO, Any

import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from service_telemetry.config import LogFormat, TelemetryConfig
from service_telemetry.errors import (
    AlreadyInitializedError,
    AuthError,
    ConfigError,
    ExporterBuildError,
    InitError,
)
from service_telemetry.logging import SpanCloseLogger, configure_logging
from service_telemetry.providers import provider_for

logger = structlog.get_logger(__name__)


class TelemetryState:
    """Process-scoped installation state.

    Attributes:
        installed: True once a pipeline has been installed.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.installed = False


PROCESS_STATE = TelemetryState()


class TelemetryHandle:
    """Owns the installed tracer provider until close().

    Closing flushes buffered spans (bounded by the shutdown timeout) and
    then shuts the provider down. Closing twice is a no-op. Handles
    cannot be copied; a handle garbage-collected while still open emits
    a ResourceWarning because trailing telemetry may have been lost.
    """

    def __init__(self, tracer_provider: TracerProvider, *, timeout_seconds: float) -> None:
        self.tracer_provider = tracer_provider
        self.timeout_seconds = timeout_seconds
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        """Check if the handle has been closed."""
        return self._closed

    def get_tracer(self, name: str, version: str | None = None) -> trace.Tracer:
        """Get a tracer from the owned provider."""
        return self.tracer_provider.get_tracer(name, version)

    def close(self) -> None:
        """Flush pending spans and shut the provider down."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        timeout_millis = int(self.timeout_seconds * 1000)
        if not self.tracer_provider.force_flush(timeout_millis):
            logger.warning("span_flush_incomplete", timeout_seconds=self.timeout_seconds)
        self.tracer_provider.shutdown()
        logger.info("telemetry_shutdown_completed")

    def __enter__(self) -> TelemetryHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __copy__(self) -> TelemetryHandle:
        raise TypeError("TelemetryHandle cannot be copied")

    def __deepcopy__(self, memo: dict[int, Any]) -> TelemetryHandle:
        raise TypeError("TelemetryHandle cannot be copied")

    def __reduce__(self) -> Any:
        raise TypeError("TelemetryHandle cannot be copied")

    def __del__(self) -> None:
        if getattr(self, "_closed", True):
            return
        warnings.warn(
            "TelemetryHandle was garbage-collected without close(); "
            "buffered spans may have been lost",
            ResourceWarning,
            stacklevel=2,
            source=self,
        )

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<TelemetryHandle {state}>"


def init(
    config: TelemetryConfig | None = None,
    *,
    state: TelemetryState | None = None,
    stream: IO[str] | None = None,
) -> TelemetryHandle:
    """Initialize tracing and structured logging for the process.

    Builds the tracer provider for the configured backend, installs it
    globally, and routes logging through the telemetry pipeline. On any
    failure nothing global is installed.

    Args:
        config: Telemetry configuration. Defaults to TelemetryConfig.from_env().
        state: Installation state. Defaults to the process-wide state.
        stream: Log output stream. Defaults to stdout.

    Returns:
        Handle that must be closed to flush trailing telemetry.

    Raises:
        AlreadyInitializedError: If a pipeline is already installed.
        InitError: If configuration, credentials or the exporter fail.
    """
    state = state or PROCESS_STATE

    with state.lock:
        if state.installed:
            raise AlreadyInitializedError()

        try:
            if config is None:
                config = TelemetryConfig.from_env()
            tracer_provider = provider_for(config.backend).build_tracer_provider(config)
        except (AuthError, ExporterBuildError, ConfigError) as exc:
            logger.error(
                "telemetry_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InitError(cause=exc) from exc

        trace.set_tracer_provider(tracer_provider)
        if trace.get_tracer_provider() is not tracer_provider:
            tracer_provider.shutdown()
            raise AlreadyInitializedError(
                "A global tracer provider was installed outside service-telemetry"
            )

        if config.log_format is LogFormat.PRETTY:
            tracer_provider.add_span_processor(SpanCloseLogger())

        project_id = config.backend.project_id if config.is_cloud else None
        configure_logging(config, stream=stream, project_id=project_id)
        state.installed = True

    logger.info(
        "telemetry_initialized",
        service_name=config.service_name,
        service_version=config.service_version,
        backend=config.backend.kind,
        log_format=config.log_format.value,
    )
    return TelemetryHandle(tracer_provider, timeout_seconds=config.shutdown_timeout_seconds)
