"""Unit tests for telemetry bootstrap and shutdown.

Tests for:
- init: local and cloud bootstrap, failure wrapping, double initialization
- TelemetryHandle: flush and shutdown, idempotent close, copy protection
"""

from __future__ import annotations

import copy
import gc
import json
import logging
from io import StringIO
from unittest.mock import MagicMock, patch

import pytest
import structlog.testing
from google.auth import exceptions as google_exceptions
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from service_telemetry.config import CloudConfig, LogFormat, TelemetryConfig
from service_telemetry.errors import (
    AlreadyInitializedError,
    AuthError,
    ConfigError,
    ExporterBuildError,
    InitError,
)
from service_telemetry.lifecycle import TelemetryHandle, TelemetryState, init
from service_telemetry.logging import TelemetryStreamHandler, get_logger


def telemetry_handlers() -> list[logging.Handler]:
    """Telemetry handlers currently installed on the root logger."""
    return [h for h in logging.getLogger().handlers if isinstance(h, TelemetryStreamHandler)]


def messages(stream: StringIO) -> list[str]:
    """Messages of every JSON record written to the stream."""
    return [json.loads(line)["message"] for line in stream.getvalue().splitlines() if line]


class TestLocalBootstrap:
    """Tests for the local development scenario."""

    def test_init_without_endpoint(self, state: TelemetryState, stream: StringIO) -> None:
        """Test local init installs tracing and logging and closes cleanly."""
        config = TelemetryConfig(service_name="api", log_format=LogFormat.JSON)

        handle = init(config, state=state, stream=stream)

        assert state.installed is True
        assert trace.get_tracer_provider() is handle.tracer_provider
        assert len(telemetry_handlers()) == 1

        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span("startup"):
            get_logger("api").info("ready")

        records = [json.loads(line) for line in stream.getvalue().splitlines()]
        ready = next(record for record in records if record["message"] == "ready")
        assert ready["span"]["name"] == "startup"
        assert "telemetry_initialized" in messages(stream)

        handle.close()
        handle.close()

        assert handle.closed is True
        assert messages(stream).count("telemetry_shutdown_completed") == 1

    def test_context_manager_closes(self, state: TelemetryState, stream: StringIO) -> None:
        """Test leaving the with-block closes the handle."""
        with init(TelemetryConfig(), state=state, stream=stream) as handle:
            assert handle.closed is False

        assert handle.closed is True

    def test_pretty_format_logs_span_closes(
        self, state: TelemetryState, stream: StringIO
    ) -> None:
        """Test the pretty format reports every closed span."""
        with init(TelemetryConfig(service_name="api"), state=state, stream=stream) as handle:
            with handle.get_tracer(__name__).start_as_current_span("migrate"):
                pass

        closed = [line for line in stream.getvalue().splitlines() if "span_closed" in line]
        assert len(closed) == 1
        assert "migrate" in closed[0]

    def test_json_format_skips_span_closes(
        self, state: TelemetryState, stream: StringIO
    ) -> None:
        """Test JSON output carries no span_closed records."""
        config = TelemetryConfig(service_name="api", log_format=LogFormat.JSON)

        with init(config, state=state, stream=stream) as handle:
            with handle.get_tracer(__name__).start_as_current_span("migrate"):
                pass

        assert "span_closed" not in messages(stream)

    def test_config_from_environment(
        self, state: TelemetryState, stream: StringIO, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test init reads the environment when no config is given."""
        monkeypatch.setenv("OTEL_SERVICE_NAME", "from-env")
        monkeypatch.setenv("OTEL_SERVICE_VERSION", "9.9.9")

        with init(state=state, stream=stream) as handle:
            attributes = handle.tracer_provider.resource.attributes

        assert attributes["service.name"] == "from-env"
        assert attributes["service.version"] == "9.9.9"

    def test_resource_attributes_include_identity(
        self, state: TelemetryState, stream: StringIO
    ) -> None:
        """Test the installed provider reports the service identity."""
        config = TelemetryConfig(service_name="billing", service_version="2.3.4")

        with init(config, state=state, stream=stream) as handle:
            attributes = handle.tracer_provider.resource.attributes

        assert attributes["service.name"] == "billing"
        assert attributes["service.version"] == "2.3.4"


class TestCloudBootstrap:
    """Tests for the cloud scenario."""

    @patch("google.auth.default")
    def test_missing_credentials(
        self, mock_default: MagicMock, state: TelemetryState, stream: StringIO
    ) -> None:
        """Test cloud init without credentials fails and installs nothing."""
        mock_default.side_effect = google_exceptions.DefaultCredentialsError("not found")
        config = TelemetryConfig(backend=CloudConfig(project_id="acme-prod"))

        with pytest.raises(InitError) as exc_info:
            init(config, state=state, stream=stream)

        assert isinstance(exc_info.value.cause, AuthError)
        assert exc_info.value.__cause__ is exc_info.value.cause
        assert not isinstance(trace.get_tracer_provider(), TracerProvider)
        assert state.installed is False
        assert telemetry_handlers() == []
        assert stream.getvalue() == ""

    @patch("service_telemetry.exporter.OTLPSpanExporter")
    @patch("service_telemetry.auth.Request")
    @patch("google.auth.default")
    def test_with_credentials(
        self,
        mock_default: MagicMock,
        _mock_request: MagicMock,
        mock_exporter_cls: MagicMock,
        state: TelemetryState,
        stream: StringIO,
    ) -> None:
        """Test cloud init exports with credentials and correlates logs."""
        mock_default.return_value = (MagicMock(token="ya29.token", expiry=None), "acme-prod")
        exporter = InMemorySpanExporter()
        mock_exporter_cls.return_value = exporter
        config = TelemetryConfig(
            service_name="orders",
            log_format=LogFormat.JSON,
            backend=CloudConfig(project_id="acme-prod"),
        )

        with init(config, state=state, stream=stream) as handle:
            tracer = handle.get_tracer(__name__)
            with tracer.start_as_current_span("checkout") as span:
                get_logger("orders").info("charged")
                trace_id = format(span.get_span_context().trace_id, "032x")

        assert mock_exporter_cls.call_args.kwargs["endpoint"] == "https://telemetry.googleapis.com"
        assert [span.name for span in exporter.get_finished_spans()] == ["checkout"]
        record = next(
            json.loads(line)
            for line in stream.getvalue().splitlines()
            if json.loads(line)["message"] == "charged"
        )
        assert record["logging.googleapis.com/trace"] == (
            f"projects/acme-prod/traces/{trace_id}"
        )
        assert "ya29.token" not in stream.getvalue()


class TestInitFailures:
    """Tests for failure handling in init."""

    def test_malformed_endpoint(self, state: TelemetryState, stream: StringIO) -> None:
        """Test exporter build failures are wrapped in InitError."""
        config = TelemetryConfig(otlp_endpoint="invalid-url")

        with pytest.raises(InitError) as exc_info:
            init(config, state=state, stream=stream)

        assert isinstance(exc_info.value.cause, ExporterBuildError)
        assert state.installed is False
        assert telemetry_handlers() == []

    def test_invalid_environment(
        self, state: TelemetryState, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test invalid environment configuration is wrapped in InitError."""
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(InitError) as exc_info:
            init(state=state)

        assert isinstance(exc_info.value.cause, ConfigError)
        assert exc_info.value.cause.field == "log_format"

    def test_double_init(self, state: TelemetryState, stream: StringIO) -> None:
        """Test a second init on the same state is rejected."""
        handle = init(TelemetryConfig(), state=state, stream=stream)

        with patch("service_telemetry.lifecycle.provider_for") as mock_provider_for:
            with pytest.raises(AlreadyInitializedError):
                init(TelemetryConfig(), state=state, stream=stream)

        mock_provider_for.assert_not_called()
        assert trace.get_tracer_provider() is handle.tracer_provider
        handle.close()

    def test_double_init_after_close(self, state: TelemetryState, stream: StringIO) -> None:
        """Test closing does not allow a second installation."""
        init(TelemetryConfig(), state=state, stream=stream).close()

        with pytest.raises(AlreadyInitializedError):
            init(TelemetryConfig(), state=state, stream=stream)

    def test_foreign_global_provider(self, state: TelemetryState, stream: StringIO) -> None:
        """Test init refuses to run when another provider is already global."""
        foreign = TracerProvider()
        trace.set_tracer_provider(foreign)

        with pytest.raises(AlreadyInitializedError, match="outside service-telemetry"):
            init(TelemetryConfig(), state=state, stream=stream)

        assert state.installed is False
        assert trace.get_tracer_provider() is foreign
        assert telemetry_handlers() == []


class TestTelemetryHandle:
    """Tests for TelemetryHandle."""

    def test_close_flushes_then_shuts_down(self) -> None:
        """Test close() flushes with the timeout and shuts down once."""
        provider = MagicMock(spec=TracerProvider)
        provider.force_flush.return_value = True
        handle = TelemetryHandle(provider, timeout_seconds=2.5)

        handle.close()
        handle.close()

        provider.force_flush.assert_called_once_with(2500)
        provider.shutdown.assert_called_once_with()

    def test_incomplete_flush_is_logged(self) -> None:
        """Test a timed-out flush is logged and shutdown still happens."""
        provider = MagicMock(spec=TracerProvider)
        provider.force_flush.return_value = False
        handle = TelemetryHandle(provider, timeout_seconds=1.0)

        with structlog.testing.capture_logs() as logs:
            handle.close()

        provider.shutdown.assert_called_once_with()
        warning = next(log for log in logs if log["event"] == "span_flush_incomplete")
        assert warning["log_level"] == "warning"
        assert warning["timeout_seconds"] == 1.0

    def test_copy_is_rejected(self) -> None:
        """Test handles cannot be copied."""
        handle = TelemetryHandle(MagicMock(spec=TracerProvider), timeout_seconds=1.0)

        with pytest.raises(TypeError):
            copy.copy(handle)
        with pytest.raises(TypeError):
            copy.deepcopy(handle)
        handle.close()

    def test_unclosed_handle_warns(self) -> None:
        """Test garbage-collecting an open handle emits a ResourceWarning."""
        handle = TelemetryHandle(MagicMock(spec=TracerProvider), timeout_seconds=1.0)

        with pytest.warns(ResourceWarning, match="without close"):
            del handle
            gc.collect()

    def test_closed_handle_does_not_warn(self, recwarn: pytest.WarningsRecorder) -> None:
        """Test a closed handle is collected silently."""
        handle = TelemetryHandle(MagicMock(spec=TracerProvider), timeout_seconds=1.0)
        handle.close()

        del handle
        gc.collect()

        assert not [w for w in recwarn if issubclass(w.category, ResourceWarning)]

    def test_repr(self) -> None:
        """Test repr shows the open/closed state."""
        handle = TelemetryHandle(MagicMock(spec=TracerProvider), timeout_seconds=1.0)

        assert repr(handle) == "<TelemetryHandle open>"
        handle.close()
        assert repr(handle) == "<TelemetryHandle closed>"
