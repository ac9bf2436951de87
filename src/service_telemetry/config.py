"""Telemetry configuration models.

This module provides:
- LogFormat: Human-readable or structured log output
- CloudPlatform: Known hosting platforms and their detection markers
- LocalBackend / CloudConfig: The two backend variants
- TelemetryConfig: Immutable per-process configuration
- TelemetryConfigBuilder: Fluent construction helper
- detect_backend: Environment-based backend selection
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from service_telemetry import __version__
from service_telemetry.errors import ConfigError
from service_telemetry.levels import parse_log_filter

DEFAULT_SERVICE_NAME = "service-telemetry"
DEFAULT_SERVICE_VERSION = __version__
DEFAULT_CLOUD_ENDPOINT = "https://telemetry.googleapis.com"

PROJECT_ENV_VARS: tuple[str, ...] = (
    "GOOGLE_CLOUD_PROJECT",
    "GCLOUD_PROJECT",
    "GCP_PROJECT",
)


class LogFormat(str, Enum):
    """Log output format."""

    PRETTY = "pretty"
    JSON = "json"


class CloudPlatform(str, Enum):
    """Hosting platforms, valued by their ``cloud.platform`` semantic convention."""

    CLOUD_RUN = "gcp_cloud_run"
    CLOUD_FUNCTIONS = "gcp_cloud_functions"
    APP_ENGINE = "gcp_app_engine"
    COMPUTE_ENGINE = "gcp_compute_engine"
    KUBERNETES_ENGINE = "gcp_kubernetes_engine"

    @classmethod
    def detect(cls, environ: Mapping[str, str] | None = None) -> CloudPlatform | None:
        """Detect the platform from its well-known environment markers.

        Compute Engine and Kubernetes Engine set no marker variables and
        are never detected; select them explicitly.

        Args:
            environ: Environment mapping. Defaults to ``os.environ``.

        Returns:
            Detected platform, or None when no marker is present.
        """
        env = os.environ if environ is None else environ
        if "K_SERVICE" in env or "K_REVISION" in env:
            return cls.CLOUD_RUN
        if "FUNCTION_NAME" in env or "FUNCTION_TARGET" in env:
            return cls.CLOUD_FUNCTIONS
        if "GAE_SERVICE" in env or "GAE_VERSION" in env:
            return cls.APP_ENGINE
        return None


class LocalBackend(BaseModel):
    """Local development backend.

    Exports to ``TelemetryConfig.otlp_endpoint`` when one is set and
    drops spans otherwise.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["local"] = "local"


class CloudConfig(BaseModel):
    """Google Cloud Trace backend configuration.

    Attributes:
        project_id: Project the spans are billed to. May be empty, in which
            case no project header or project attributes are emitted.
        endpoint: OTLP/gRPC endpoint of the trace ingestion API.
        platform: Hosting platform reported in resource attributes.

    Example:
        >>> cloud = CloudConfig(project_id="my-project")
        >>> cloud.endpoint
        'https://telemetry.googleapis.com'
        >>> cloud.with_platform(CloudPlatform.APP_ENGINE).platform.value
        'gcp_app_engine'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["cloud"] = "cloud"
    project_id: str = Field(
        default="",
        description="Cloud project identifier",
    )
    endpoint: str = Field(
        default=DEFAULT_CLOUD_ENDPOINT,
        min_length=1,
        description="Trace ingestion endpoint",
    )
    platform: CloudPlatform = Field(
        default=CloudPlatform.CLOUD_RUN,
        description="Detected or selected hosting platform",
    )

    def with_endpoint(self, endpoint: str) -> CloudConfig:
        """Return a copy with a different endpoint."""
        return CloudConfig(project_id=self.project_id, endpoint=endpoint, platform=self.platform)

    def with_platform(self, platform: CloudPlatform) -> CloudConfig:
        """Return a copy with a different platform."""
        return CloudConfig(project_id=self.project_id, endpoint=self.endpoint, platform=platform)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CloudConfig | None:
        """Build a cloud configuration if a project variable is present.

        Args:
            environ: Environment mapping. Defaults to ``os.environ``.

        Returns:
            CloudConfig, or None when no project variable is set.
        """
        env = os.environ if environ is None else environ
        project_id = next((env[name] for name in PROJECT_ENV_VARS if name in env), None)
        if project_id is None:
            return None

        return cls(
            project_id=project_id,
            endpoint=env.get("OTEL_EXPORTER_OTLP_ENDPOINT") or DEFAULT_CLOUD_ENDPOINT,
            platform=CloudPlatform.detect(env) or CloudPlatform.CLOUD_RUN,
        )


BackendVariant = Annotated[
    LocalBackend | CloudConfig,
    Discriminator("kind"),
]
"""Backend selection with a discriminated union over local and cloud."""


def detect_backend(environ: Mapping[str, str] | None = None) -> LocalBackend | CloudConfig:
    """Select the backend from the environment.

    Any of ``GOOGLE_CLOUD_PROJECT``, ``GCLOUD_PROJECT`` or ``GCP_PROJECT``
    being present selects the cloud backend; otherwise local.

    Args:
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        The selected backend variant.
    """
    cloud = CloudConfig.from_env(environ)
    if cloud is not None:
        return cloud
    return LocalBackend()


class TelemetryEnvironment(BaseSettings):
    """Raw telemetry settings read from environment variables."""

    model_config = SettingsConfigDict(extra="ignore", frozen=True)

    service_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OTEL_SERVICE_NAME"),
    )
    service_version: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OTEL_SERVICE_VERSION"),
    )
    otlp_endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OTEL_EXPORTER_OTLP_ENDPOINT"),
    )
    log_level: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LOG_LEVEL"),
    )
    log_format: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LOG_FORMAT"),
    )


class TelemetryConfig(BaseModel):
    """Main telemetry configuration.

    Built once per process, then treated as immutable.

    Attributes:
        service_name: Service name reported as ``service.name``.
        service_version: Service version reported as ``service.version``.
        otlp_endpoint: Export endpoint for the local backend (None = no export).
        log_level: Verbosity filter directives (e.g. ``"info"``).
        log_format: Human-readable or structured output.
        backend: Selected backend variant.
        shutdown_timeout_seconds: Upper bound on the flush at shutdown.

    Example:
        >>> config = TelemetryConfig(service_name="api", service_version="1.0.0")
        >>> config.log_format
        <LogFormat.PRETTY: 'pretty'>
        >>> config.with_log_format(LogFormat.JSON).log_format.value
        'json'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str = Field(
        default=DEFAULT_SERVICE_NAME,
        max_length=255,
        description="Service name for traces and logs",
    )
    service_version: str = Field(
        default=DEFAULT_SERVICE_VERSION,
        max_length=255,
        description="Service version for traces and logs",
    )
    otlp_endpoint: str | None = Field(
        default=None,
        description="OTLP endpoint URL (None = disabled)",
    )
    log_level: str = Field(
        default="info",
        description="Log filter directives",
    )
    log_format: LogFormat = Field(
        default=LogFormat.PRETTY,
        description="Log output format",
    )
    backend: BackendVariant = Field(
        default_factory=LocalBackend,
        description="Tracing backend",
    )
    shutdown_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=300,
        description="Maximum time spent flushing spans at shutdown",
    )

    @field_validator("service_name", "service_version")
    @classmethod
    def must_not_be_blank(cls, v: str, info: ValidationInfo) -> str:
        """Reject empty service identity values."""
        if not v.strip():
            msg = f"{info.field_name} must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("otlp_endpoint", mode="before")
    @classmethod
    def blank_endpoint_is_none(cls, v: Any) -> Any:
        """Treat an empty endpoint string as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the filter directives parse."""
        try:
            parse_log_filter(v)
        except ConfigError as exc:
            raise ValueError(exc.message) from exc
        return v

    @field_validator("log_format", mode="before")
    @classmethod
    def normalize_log_format(cls, v: Any) -> Any:
        """Accept format names case-insensitively."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def is_cloud(self) -> bool:
        """Check if the cloud backend is selected."""
        return isinstance(self.backend, CloudConfig)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TelemetryConfig:
        """Create config from environment variables with auto-detected backend.

        Reads ``OTEL_SERVICE_NAME``, ``OTEL_SERVICE_VERSION``,
        ``OTEL_EXPORTER_OTLP_ENDPOINT``, ``LOG_LEVEL`` and ``LOG_FORMAT``.
        The backend is detected with :func:`detect_backend`.

        Args:
            environ: Environment mapping. Defaults to ``os.environ``.

        Returns:
            Validated TelemetryConfig.

        Raises:
            ConfigError: If any environment value is invalid.
        """
        if environ is None:
            env = TelemetryEnvironment()
        else:
            env = TelemetryEnvironment.model_validate(dict(environ))

        values: dict[str, Any] = {
            "service_name": env.service_name,
            "service_version": env.service_version,
            "otlp_endpoint": env.otlp_endpoint,
            "log_level": env.log_level,
            "log_format": env.log_format,
        }
        values = {k: v for k, v in values.items() if v is not None}
        values["backend"] = detect_backend(environ)
        return cls.validated(**values)

    @classmethod
    def validated(cls, **values: Any) -> TelemetryConfig:
        """Construct a config, reporting validation failures as ConfigError."""
        try:
            return cls(**values)
        except ValidationError as exc:
            error = exc.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or None
            raise ConfigError(
                f"Invalid telemetry configuration: {error['msg']}",
                field=field,
            ) from exc

    @classmethod
    def builder(cls) -> TelemetryConfigBuilder:
        """Start a fluent builder."""
        return TelemetryConfigBuilder()

    def _replace(self, **changes: Any) -> TelemetryConfig:
        return self.validated(**{**dict(self), **changes})

    def with_log_format(self, log_format: LogFormat) -> TelemetryConfig:
        """Return a copy with a different log format."""
        return self._replace(log_format=log_format)

    def with_log_level(self, log_level: str) -> TelemetryConfig:
        """Return a copy with different filter directives."""
        return self._replace(log_level=log_level)

    def with_otlp_endpoint(self, endpoint: str) -> TelemetryConfig:
        """Return a copy with an export endpoint."""
        return self._replace(otlp_endpoint=endpoint)

    def with_backend(self, backend: LocalBackend | CloudConfig) -> TelemetryConfig:
        """Return a copy with a different backend."""
        return self._replace(backend=backend)


class TelemetryConfigBuilder:
    """Fluent builder for TelemetryConfig.

    Unset values fall back to the TelemetryConfig defaults.

    Example:
        >>> config = (
        ...     TelemetryConfig.builder()
        ...     .service_name("my-service")
        ...     .service_version("2.0.0")
        ...     .cloud(CloudConfig(project_id="my-project"))
        ...     .json()
        ...     .build()
        ... )
        >>> config.is_cloud
        True
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}

    def _set(self, key: str, value: Any) -> TelemetryConfigBuilder:
        self._values[key] = value
        return self

    def service_name(self, name: str) -> TelemetryConfigBuilder:
        return self._set("service_name", name)

    def service_version(self, version: str) -> TelemetryConfigBuilder:
        return self._set("service_version", version)

    def otlp_endpoint(self, endpoint: str) -> TelemetryConfigBuilder:
        return self._set("otlp_endpoint", endpoint)

    def log_level(self, level: str) -> TelemetryConfigBuilder:
        return self._set("log_level", level)

    def log_format(self, log_format: LogFormat) -> TelemetryConfigBuilder:
        return self._set("log_format", log_format)

    def json(self) -> TelemetryConfigBuilder:
        return self.log_format(LogFormat.JSON)

    def pretty(self) -> TelemetryConfigBuilder:
        return self.log_format(LogFormat.PRETTY)

    def backend(self, backend: LocalBackend | CloudConfig) -> TelemetryConfigBuilder:
        return self._set("backend", backend)

    def cloud(self, cloud_config: CloudConfig) -> TelemetryConfigBuilder:
        return self.backend(cloud_config)

    def shutdown_timeout(self, seconds: float) -> TelemetryConfigBuilder:
        return self._set("shutdown_timeout_seconds", seconds)

    def build(self) -> TelemetryConfig:
        """Build the config.

        Raises:
            ConfigError: If any value is invalid.
        """
        return TelemetryConfig.validated(**self._values)
