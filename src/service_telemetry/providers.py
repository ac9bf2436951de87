"""Tracing backend providers.

Each backend composes resource attributes and a span exporter into a
ready TracerProvider:

- LocalProvider: optional OTLP export to a local collector, no-op otherwise
- CloudProvider: authenticated OTLP export to Google Cloud Trace

Example:
    >>> config = TelemetryConfig(service_name="api", service_version="1.0.0")
    >>> tracer_provider = provider_for(config.backend).build_tracer_provider(config)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SimpleSpanProcessor,
    SpanExporter,
)

from service_telemetry.auth import CredentialProvider
from service_telemetry.config import CloudConfig, LocalBackend, TelemetryConfig
from service_telemetry.errors import ConfigError
from service_telemetry.exporter import NoOpSpanExporter, build_exporter
from service_telemetry.resource import CloudResourceBuilder, build_resource

logger = structlog.get_logger(__name__)


def _attach(provider: TracerProvider, exporter: SpanExporter) -> None:
    # The no-op sink gets a simple processor: no worker thread, same shutdown path.
    if isinstance(exporter, NoOpSpanExporter):
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))


class BackendProvider(ABC):
    """Builds a TracerProvider for one backend."""

    name: str

    @abstractmethod
    def build_tracer_provider(self, config: TelemetryConfig) -> TracerProvider:
        """Build the tracer provider for this backend.

        Args:
            config: Telemetry configuration.

        Returns:
            TracerProvider bound to a resource and an exporter.

        Raises:
            AuthError: If credentials are required and unavailable.
            ExporterBuildError: If the exporter cannot be built.
        """


class LocalProvider(BackendProvider):
    """Local development provider.

    - Exports to ``config.otlp_endpoint`` when configured
    - Drops all spans otherwise
    """

    name = "local"

    def build_tracer_provider(self, config: TelemetryConfig) -> TracerProvider:
        resource = build_resource(config)
        exporter = build_exporter(config.otlp_endpoint)

        provider = TracerProvider(resource=resource)
        _attach(provider, exporter)

        logger.info(
            "tracer_provider_built",
            backend=self.name,
            endpoint=config.otlp_endpoint or "(not configured)",
        )
        return provider


class CloudProvider(BackendProvider):
    """Google Cloud Trace provider.

    A credential must be acquired before the exporter is built; failure
    propagates as AuthError and nothing falls back to the local backend.

    Attributes:
        cloud_config: Cloud backend configuration.
        credential_provider: Shared credential cache used by the exporter.
    """

    name = "cloud"

    def __init__(
        self,
        cloud_config: CloudConfig,
        credential_provider: CredentialProvider | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize CloudProvider.

        Args:
            cloud_config: Cloud backend configuration.
            credential_provider: Credential cache. Defaults to one backed by
                Application Default Credentials.
            environ: Environment used for platform resource attributes.
        """
        self.cloud_config = cloud_config
        self.credential_provider = credential_provider or CredentialProvider()
        self._environ = environ

    def build_tracer_provider(self, config: TelemetryConfig) -> TracerProvider:
        cloud = self.cloud_config
        resource = CloudResourceBuilder.from_env(
            cloud.project_id,
            cloud.platform,
            self._environ,
        ).build(config)

        self.credential_provider.acquire()

        exporter = build_exporter(
            cloud.endpoint,
            self.credential_provider,
            project_id=cloud.project_id,
        )

        provider = TracerProvider(resource=resource)
        _attach(provider, exporter)

        logger.info(
            "tracer_provider_built",
            backend=self.name,
            endpoint=cloud.endpoint,
            platform=cloud.platform.value,
        )
        return provider


def provider_for(backend: LocalBackend | CloudConfig) -> BackendProvider:
    """Select the provider for a backend variant.

    Args:
        backend: Backend variant from TelemetryConfig.

    Returns:
        Matching BackendProvider.

    Raises:
        ConfigError: If the backend is not a known variant.
    """
    if isinstance(backend, CloudConfig):
        return CloudProvider(backend)
    if isinstance(backend, LocalBackend):
        return LocalProvider()
    raise ConfigError(f"Unknown telemetry backend: {backend!r}", field="backend")
