"""service-telemetry: OpenTelemetry bootstrap for services.

This package initializes tracing and structured logging in one call:
- Local development: pretty logs, optional OTLP export to a collector
- Google Cloud: authenticated export to Cloud Trace and Cloud Logging
  compatible JSON logs with trace correlation

Example:
    >>> from service_telemetry import TelemetryConfig, init
    >>> config = TelemetryConfig.from_env()
    >>> with init(config):
    ...     serve_forever()
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    # Bootstrap
    "init",
    "TelemetryHandle",
    "TelemetryState",
    # Configuration models
    "TelemetryConfig",
    "TelemetryConfigBuilder",
    "LogFormat",
    "LocalBackend",
    "CloudConfig",
    "CloudPlatform",
    "detect_backend",
    # Logging
    "configure_logging",
    "get_logger",
    # Resources
    "build_resource",
    "build_resource_attributes",
    "CloudResourceBuilder",
    # Credentials
    "Credential",
    "CredentialProvider",
    # Exceptions
    "TelemetryError",
    "AuthError",
    "ExporterBuildError",
    "ConfigError",
    "InitError",
    "AlreadyInitializedError",
]

_MODULES = {
    "init": "lifecycle",
    "TelemetryHandle": "lifecycle",
    "TelemetryState": "lifecycle",
    "TelemetryConfig": "config",
    "TelemetryConfigBuilder": "config",
    "LogFormat": "config",
    "LocalBackend": "config",
    "CloudConfig": "config",
    "CloudPlatform": "config",
    "detect_backend": "config",
    "configure_logging": "logging",
    "get_logger": "logging",
    "build_resource": "resource",
    "build_resource_attributes": "resource",
    "CloudResourceBuilder": "resource",
    "Credential": "auth",
    "CredentialProvider": "auth",
    "TelemetryError": "errors",
    "AuthError": "errors",
    "ExporterBuildError": "errors",
    "ConfigError": "errors",
    "InitError": "errors",
    "AlreadyInitializedError": "errors",
}


def __getattr__(name: str) -> object:
    """Lazy import of public API members."""
    module_name = _MODULES.get(name)
    if module_name is None:
        msg = f"module {__name__!r} has no attribute {name!r}"
        raise AttributeError(msg)

    from importlib import import_module

    module = import_module(f"service_telemetry.{module_name}")
    return getattr(module, name)
