"""Structured logging with trace context injection.

This module wires structlog on top of stdlib logging so that both
structlog loggers and plain ``logging`` loggers go through one handler:

- CloudLoggingRenderer: single-line JSON with a top-level ``severity``
- ConsoleRenderer (structlog): human-readable output for local development
- TraceContextProcessor: active span name/attributes, correlation ids,
  and span events for every emitted record
- TelemetryStreamHandler: atomic per-record writes; a record that fails
  to format is reported on stderr and dropped
- TelemetryBoundLogger: structlog logger with a TRACE level
- SpanCloseLogger: span timings for the pretty format

Example output (JSON):
    {"severity":"INFO","timestamp":"2024-01-15T10:30:00.123456Z",
     "target":"app.handlers","span":{"name":"GET /"},"message":"Hello"}
"""

from __future__ import annotations

import json
import logging
import math
import sys
from collections.abc import Mapping, MutableMapping
from typing import IO, Any, cast

import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import ReadableSpan, SpanProcessor
from structlog.stdlib import ProcessorFormatter
from structlog.typing import Processor

from service_telemetry.config import LogFormat, TelemetryConfig
from service_telemetry.levels import TRACE, Level, parse_log_filter

RFC3339_MICROS = "%Y-%m-%dT%H:%M:%S.%fZ"

GOOGLE_TRACE_KEY = "logging.googleapis.com/trace"
GOOGLE_SPAN_ID_KEY = "logging.googleapis.com/spanId"
GOOGLE_TRACE_SAMPLED_KEY = "logging.googleapis.com/trace_sampled"

_HEADER_KEYS = ("severity", "timestamp", "target", "span", "message")
_SPAN_EVENT_SKIP = frozenset({"event", "span", "level_number", "timestamp", "exc_info"})


def _json_value(value: Any) -> Any:
    """Native JSON value for primitives, repr() for everything else."""
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return value
    return repr(value)


def _attribute_value(value: Any) -> str | bool | int | float:
    if isinstance(value, (str, bool, int, float)):
        return value
    return repr(value)


_SCALE_METHODS: dict[Level, str] = {
    Level.TRACE: "trace",
    Level.DEBUG: "debug",
    Level.INFO: "info",
    Level.WARN: "warning",
    Level.ERROR: "error",
}


def _method_level(method_name: str) -> int:
    if method_name == "trace":
        return TRACE
    return structlog.stdlib.NAME_TO_LEVEL.get(method_name, logging.INFO)


def filter_by_level(
    logger: logging.Logger, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Drop events below the logger's effective level, TRACE included."""
    if not logger.disabled and _method_level(method_name) >= logger.getEffectiveLevel():
        return event_dict
    raise structlog.DropEvent


def add_level_number(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Add ``level_number``, preferring the stdlib record's level.

    Unlike structlog's own processor this accepts custom levels such as
    TRACE on foreign records.
    """
    record = event_dict.get("_record")
    if record is not None:
        event_dict["level_number"] = record.levelno
    else:
        event_dict["level_number"] = _method_level(method_name)
    return event_dict


class TelemetryBoundLogger(structlog.stdlib.BoundLogger):
    """Stdlib-backed BoundLogger that also speaks the TRACE level.

    ``trace()`` and ``log(TRACE, ...)`` go to the stdlib logger's
    ``log(TRACE, ...)``. Level numbers structlog has no name for are
    mapped onto the five-level scale instead of raising.
    """

    def trace(self, event: str | None = None, *args: Any, **kw: Any) -> Any:
        """Process event and log it at TRACE."""
        return self._proxy_to_logger("trace", event, *args, **kw)

    def log(self, level: int, event: str | None = None, *args: Any, **kw: Any) -> Any:
        if level >= logging.CRITICAL:
            method_name = "critical"
        else:
            method_name = _SCALE_METHODS[Level.from_levelno(level)]
        return self._proxy_to_logger(method_name, event, *args, **kw)

    def _proxy_to_logger(
        self,
        method_name: str,
        event: str | None = None,
        *event_args: str,
        **event_kw: Any,
    ) -> Any:
        if method_name != "trace":
            return super()._proxy_to_logger(method_name, event, *event_args, **event_kw)

        # stdlib loggers have no trace() method
        if event_args:
            event_kw["positional_args"] = event_args
        try:
            args, kw = self._process_event(method_name, event, event_kw)
        except structlog.DropEvent:
            return None
        return self._logger.log(TRACE, *args, **kw)


class TraceContextProcessor:
    """Attach the active span to each record.

    Adds the span name and attributes under ``span``, trace correlation
    ids, and records the log line as an event on the recording span.
    With a project id the correlation ids use the Cloud Logging keys;
    otherwise plain ``trace_id``/``span_id``. A ``trace_id`` or ``span_id``
    passed explicitly on the event is kept as given.
    """

    def __init__(self, project_id: str | None = None, *, record_span_events: bool = True) -> None:
        self.project_id = project_id or None
        self.record_span_events = record_span_events

    def __call__(
        self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        span = trace.get_current_span()
        span_context = span.get_span_context()
        if not span_context.is_valid:
            return event_dict

        name = getattr(span, "name", None)
        if name is not None:
            attributes = getattr(span, "attributes", None) or {}
            span_fields: dict[str, Any] = {"name": name}
            span_fields.update((k, v) for k, v in attributes.items() if k != "name")
            event_dict["span"] = span_fields

        trace_id = format(span_context.trace_id, "032x")
        span_id = format(span_context.span_id, "016x")
        if self.project_id:
            event_dict[GOOGLE_TRACE_KEY] = f"projects/{self.project_id}/traces/{trace_id}"
            event_dict[GOOGLE_SPAN_ID_KEY] = span_id
            event_dict[GOOGLE_TRACE_SAMPLED_KEY] = span_context.trace_flags.sampled
        else:
            event_dict.setdefault("trace_id", trace_id)
            event_dict.setdefault("span_id", span_id)

        if self.record_span_events and span.is_recording():
            event_attributes = {
                key: _attribute_value(value)
                for key, value in event_dict.items()
                if key not in _SPAN_EVENT_SKIP and value is not None
            }
            span.add_event(str(event_dict.get("event", "")), attributes=event_attributes)

        return event_dict


class CloudLoggingRenderer:
    """Render an event dict as one Cloud Logging compatible JSON line.

    Key order is fixed: ``severity``, ``timestamp``, ``target``, the
    optional ``span`` object, ``message``, then the remaining event
    fields flattened at the top level.
    """

    def __call__(self, logger: Any, method_name: str, event_dict: Mapping[str, Any]) -> str:
        fields = dict(event_dict)
        level_number = fields.pop("level_number", None)
        level_name = fields.pop("level", method_name)
        if not isinstance(level_number, int):
            level_number = structlog.stdlib.NAME_TO_LEVEL.get(str(level_name), logging.INFO)

        record: dict[str, Any] = {
            "severity": Level.from_levelno(level_number).severity,
            "timestamp": fields.pop("timestamp", None),
            "target": str(fields.pop("logger", "") or ""),
        }

        span = fields.pop("span", None)
        if isinstance(span, Mapping):
            record["span"] = {str(key): _json_value(value) for key, value in span.items()}

        message = fields.pop("event", None)
        if message is not None:
            record["message"] = message if isinstance(message, str) else repr(message)

        for key, value in fields.items():
            if key in _HEADER_KEYS:
                continue
            record[key] = _json_value(value)

        return json.dumps(record, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


class TelemetryStreamHandler(logging.StreamHandler):
    """Stream handler that isolates formatting failures.

    Each record is written with a single ``write`` call while the handler
    lock is held. If formatting raises, one line goes to the fallback
    sink (``sys.__stderr__`` by default) and the record is dropped.
    """

    def __init__(self, stream: IO[str] | None = None, *, fallback: IO[str] | None = None) -> None:
        super().__init__(stream)
        self._fallback = fallback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
        except Exception as exc:
            self._report_dropped(record, exc)
            return

        try:
            self.stream.write(msg + self.terminator)
            self.flush()
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)

    def _report_dropped(self, record: logging.LogRecord, exc: Exception) -> None:
        sink = self._fallback or sys.__stderr__
        if sink is None:
            return
        try:
            sink.write(
                f"service-telemetry: dropped log record from {record.name!r}: "
                f"{type(exc).__name__}: {exc}\n"
            )
            sink.flush()
        except (OSError, ValueError):
            # Fallback sink closed or broken; nothing left to report to
            return


def _drop_level_number(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict.pop("level_number", None)
    return event_dict


def _renderer_chain(log_format: LogFormat, stream: IO[str]) -> list[Processor]:
    if log_format is LogFormat.JSON:
        return [structlog.processors.format_exc_info, CloudLoggingRenderer()]
    colors = bool(getattr(stream, "isatty", lambda: False)())
    return [_drop_level_number, structlog.dev.ConsoleRenderer(colors=colors)]


def build_formatter(
    log_format: LogFormat,
    *,
    stream: IO[str],
    project_id: str | None = None,
) -> ProcessorFormatter:
    """Build the stdlib formatter for the chosen log format.

    Args:
        log_format: Output format.
        stream: Destination stream (used to decide on colors).
        project_id: Cloud project for Cloud Logging trace correlation.

    Returns:
        Configured ProcessorFormatter.
    """
    return ProcessorFormatter(
        processors=[
            ProcessorFormatter.remove_processors_meta,
            TraceContextProcessor(project_id),
            *_renderer_chain(log_format, stream),
        ],
        foreign_pre_chain=[*_shared_processors(log_format), structlog.stdlib.ExtraAdder()],
    )


def _shared_processors(log_format: LogFormat) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        add_level_number,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=RFC3339_MICROS, utc=True, key="timestamp"),
    ]
    if log_format is LogFormat.PRETTY:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                ],
                additional_ignores=[__name__],
            )
        )
    return processors


class SpanCloseLogger(SpanProcessor):
    """Log a ``span_closed`` record with the duration of every ended span.

    Installed for the pretty format so local output shows span timings
    next to the log lines emitted inside them.
    """

    def __init__(self, logger_name: str = "service_telemetry.spans") -> None:
        self._logger_name = logger_name

    def on_end(self, span: ReadableSpan) -> None:
        fields: dict[str, Any] = {"span_name": span.name}
        if span.start_time is not None and span.end_time is not None:
            fields["duration_ms"] = round((span.end_time - span.start_time) / 1_000_000, 3)
        get_logger(self._logger_name).info("span_closed", **fields)


def configure_logging(
    config: TelemetryConfig,
    *,
    stream: IO[str] | None = None,
    project_id: str | None = None,
) -> TelemetryStreamHandler:
    """Configure structured logging for the process.

    Applies the verbosity filter to the stdlib logger tree, installs one
    TelemetryStreamHandler on the root logger (replacing any installed
    earlier), and routes structlog through it.

    Args:
        config: Telemetry configuration.
        stream: Output stream. Defaults to stdout.
        project_id: Cloud project for Cloud Logging trace correlation.

    Returns:
        The installed handler.

    Raises:
        ConfigError: If the filter directives are invalid.
    """
    log_filter = parse_log_filter(config.log_level)
    output = stream if stream is not None else sys.stdout

    handler = TelemetryStreamHandler(output)
    handler.setFormatter(build_formatter(config.log_format, stream=output, project_id=project_id))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, TelemetryStreamHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    log_filter.apply()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            filter_by_level,
            *_shared_processors(config.log_format),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=TelemetryBoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Module-level loggers used before this call must pick up the new chain
        cache_logger_on_first_use=False,
    )
    return handler


def get_logger(name: str | None = None) -> TelemetryBoundLogger:
    """Get a structlog logger routed through the telemetry pipeline.

    Args:
        name: Logger name (the ``target`` in JSON output).

    Returns:
        TelemetryBoundLogger, with ``trace()`` available.
    """
    return cast(TelemetryBoundLogger, structlog.stdlib.get_logger(name))
