"""Span exporter construction.

Builds an OTLP/gRPC exporter for an endpoint, or a no-op sink when no
endpoint is configured. Reachability is not checked here; transport
failures after construction belong to the batching processor.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import grpc
import structlog
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from service_telemetry.auth import BearerTokenMetadataPlugin, CredentialProvider
from service_telemetry.errors import ExporterBuildError

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan

logger = structlog.get_logger(__name__)

DEFAULT_EXPORT_TIMEOUT_SECONDS = 10.0


class NoOpSpanExporter(SpanExporter):
    """Exporter that accepts and discards every span.

    Used when tracing is enabled but nothing is configured to receive
    spans. Shutdown and flush are safe to call any number of times.
    """

    def __init__(self) -> None:
        self.exported_count = 0

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        self.exported_count += len(spans)
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        return None

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


def validate_endpoint(endpoint: str) -> str:
    """Check endpoint syntax.

    Args:
        endpoint: Endpoint URL.

    Returns:
        The URL scheme (``http`` or ``https``).

    Raises:
        ExporterBuildError: If the endpoint is not an http(s) URL with a host.
    """
    try:
        parts = urlsplit(endpoint)
        # Accessing port validates it
        _ = parts.port
    except ValueError as exc:
        raise ExporterBuildError(
            "Malformed exporter endpoint",
            endpoint=endpoint,
            cause=str(exc),
        ) from exc

    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ExporterBuildError(
            "Exporter endpoint must be an http:// or https:// URL with a host",
            endpoint=endpoint,
        )
    return parts.scheme


def _cloud_channel_credentials(
    credential_provider: CredentialProvider,
    project_id: str,
) -> grpc.ChannelCredentials:
    """TLS with platform trust roots plus per-RPC bearer metadata."""
    return grpc.composite_channel_credentials(
        grpc.ssl_channel_credentials(),
        grpc.metadata_call_credentials(
            BearerTokenMetadataPlugin(credential_provider, project_id),
            name="bearer-token",
        ),
    )


def build_exporter(
    endpoint: str | None,
    credential_provider: CredentialProvider | None = None,
    *,
    project_id: str = "",
    timeout: float = DEFAULT_EXPORT_TIMEOUT_SECONDS,
) -> SpanExporter:
    """Build a span exporter.

    Args:
        endpoint: OTLP/gRPC endpoint, or None for a no-op sink.
        credential_provider: When given, every RPC carries a bearer token
            and the channel always uses TLS.
        project_id: Quota project header value (authenticated exporters only).
        timeout: Per-export timeout in seconds.

    Returns:
        Configured SpanExporter.

    Raises:
        ExporterBuildError: On malformed endpoint or construction failure.

    Example:
        >>> build_exporter(None)  # doctest: +ELLIPSIS
        <service_telemetry.exporter.NoOpSpanExporter object at ...>
    """
    if endpoint is None:
        if credential_provider is not None:
            raise ExporterBuildError("Authenticated exporter requires an endpoint")
        logger.debug("exporter_disabled")
        return NoOpSpanExporter()

    scheme = validate_endpoint(endpoint)

    if credential_provider is not None and scheme != "https":
        raise ExporterBuildError(
            "Authenticated exporter requires an https:// endpoint",
            endpoint=endpoint,
        )

    try:
        if credential_provider is not None:
            exporter = OTLPSpanExporter(
                endpoint=endpoint,
                insecure=False,
                credentials=_cloud_channel_credentials(credential_provider, project_id),
                timeout=timeout,
            )
        else:
            exporter = OTLPSpanExporter(
                endpoint=endpoint,
                insecure=scheme == "http",
                timeout=timeout,
            )
    except Exception as exc:
        raise ExporterBuildError(
            "Failed to construct OTLP exporter",
            endpoint=endpoint,
            cause=str(exc),
        ) from exc

    logger.info(
        "exporter_built",
        endpoint=endpoint,
        authenticated=credential_provider is not None,
    )
    return exporter
