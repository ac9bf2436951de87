"""Custom exceptions for service-telemetry.

This module defines the exception hierarchy:
- TelemetryError (base)
- AuthError
- ExporterBuildError
- ConfigError
- InitError
- AlreadyInitializedError

Bootstrap failures always reach the caller as InitError with the
underlying cause attached, so a service can fail fast on a single type.
"""

from __future__ import annotations


class TelemetryError(Exception):
    """Base exception for all telemetry bootstrap operations.

    Attributes:
        message: Human-readable error description.
        details: Optional additional context about the error.

    Example:
        >>> try:
        ...     handle = init(config)
        ... except TelemetryError as e:
        ...     print(f"Telemetry error: {e}")
    """

    def __init__(self, message: str, *, details: dict[str, str] | None = None) -> None:
        """Initialize TelemetryError.

        Args:
            message: Human-readable error description.
            details: Optional additional context about the error.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation with details if present."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class AuthError(TelemetryError):
    """Credential acquisition failed.

    Raised when:
    - The environment has no usable default credential
    - The token endpoint rejects the refresh request
    - The credential source returns no token

    Security:
        Token material is never included in the message or details.
    """

    def __init__(self, message: str = "Credential acquisition failed") -> None:
        """Initialize AuthError.

        Args:
            message: Human-readable error description.
        """
        super().__init__(message, details={})


class ExporterBuildError(TelemetryError):
    """A span exporter could not be constructed.

    Raised on malformed endpoint syntax or transport construction failure.
    Unreachable endpoints are not detected here; they surface later as
    per-export failures inside the batching processor.
    """

    def __init__(
        self,
        message: str = "Failed to build span exporter",
        *,
        endpoint: str | None = None,
        cause: str | None = None,
    ) -> None:
        """Initialize ExporterBuildError.

        Args:
            message: Human-readable error description.
            endpoint: The endpoint the exporter was built for.
            cause: The underlying cause of the failure.
        """
        details: dict[str, str] = {}
        if endpoint:
            details["endpoint"] = endpoint
        if cause:
            details["cause"] = cause
        super().__init__(message, details=details)
        self.endpoint = endpoint
        self.cause = cause


class ConfigError(TelemetryError):
    """Configuration is invalid or contradictory.

    Example:
        >>> raise ConfigError("Unknown log level 'loud'", field="log_level")
    """

    def __init__(self, message: str, *, field: str | None = None) -> None:
        """Initialize ConfigError.

        Args:
            message: Human-readable error description.
            field: Name of the offending configuration field.
        """
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class InitError(TelemetryError):
    """Telemetry bootstrap failed.

    Wraps the AuthError, ExporterBuildError or ConfigError that stopped
    initialization. The service is expected to refuse to start.

    Attributes:
        cause: The wrapped telemetry error, if any.
    """

    def __init__(
        self,
        message: str = "Telemetry initialization failed",
        *,
        cause: TelemetryError | None = None,
    ) -> None:
        """Initialize InitError.

        Args:
            message: Human-readable error description.
            cause: The telemetry error that stopped initialization.
        """
        details = {"cause": f"{type(cause).__name__}: {cause}"} if cause else None
        super().__init__(message, details=details)
        self.cause = cause


class AlreadyInitializedError(InitError):
    """Telemetry was initialized twice in the same process.

    This is a programming error rather than an environmental failure:
    the global tracer provider can only be installed once.
    """

    def __init__(
        self,
        message: str = "Telemetry is already initialized for this process",
    ) -> None:
        """Initialize AlreadyInitializedError.

        Args:
            message: Human-readable error description.
        """
        super().__init__(message)
