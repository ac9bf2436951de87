"""OpenTelemetry resource attributes.

Base attributes (service name and version) always come first; backend
attributes are appended after them. On a key collision the first value
wins, so callers control precedence through ordering.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Union

from opentelemetry.sdk.resources import (
    CLOUD_ACCOUNT_ID,
    CLOUD_PROVIDER,
    CLOUD_REGION,
    FAAS_NAME,
    FAAS_VERSION,
    SERVICE_NAME,
    SERVICE_VERSION,
    Resource,
)

from service_telemetry.config import CloudPlatform, TelemetryConfig

AttributeValue = Union[str, bool, int, float]
AttributeInput = Union[
    Mapping[str, Union[AttributeValue, None]],
    Iterable[tuple[str, Union[AttributeValue, None]]],
]

CLOUD_PLATFORM = "cloud.platform"
CLOUD_PROVIDER_GCP = "gcp"
GCP_PROJECT_ID = "gcp.project_id"

_REGION_ENV_VARS = ("CLOUD_RUN_REGION", "FUNCTION_REGION", "GAE_REGION")
_SERVICE_ENV_VARS = ("K_SERVICE", "FUNCTION_NAME", "GAE_SERVICE")
_REVISION_ENV_VARS = ("K_REVISION", "GAE_VERSION")


def base_attributes(config: TelemetryConfig) -> list[tuple[str, AttributeValue]]:
    """Attributes every resource carries.

    Args:
        config: Telemetry configuration.

    Returns:
        ``service.name`` and ``service.version`` pairs, in that order.
    """
    return [
        (SERVICE_NAME, config.service_name),
        (SERVICE_VERSION, config.service_version),
    ]


def build_resource_attributes(
    config: TelemetryConfig,
    additional: AttributeInput | None = None,
) -> Mapping[str, AttributeValue]:
    """Compose base and additional attributes.

    Args:
        config: Telemetry configuration.
        additional: Backend attributes as a mapping or ordered pairs.
            None values are skipped.

    Returns:
        Read-only ordered mapping with base attributes first.

    Example:
        >>> config = TelemetryConfig(service_name="api", service_version="1.2.3")
        >>> attrs = build_resource_attributes(config, {"cloud.region": "us-central1"})
        >>> list(attrs)
        ['service.name', 'service.version', 'cloud.region']
    """
    pairs: list[tuple[str, AttributeValue | None]] = list(base_attributes(config))
    if additional is not None:
        items = additional.items() if isinstance(additional, Mapping) else additional
        pairs.extend(items)

    attributes: dict[str, AttributeValue] = {}
    for key, value in pairs:
        if value is None or key in attributes:
            continue
        attributes[key] = value
    return MappingProxyType(attributes)


def build_resource(
    config: TelemetryConfig,
    additional: AttributeInput | None = None,
) -> Resource:
    """Build an OpenTelemetry Resource holding exactly the composed attributes.

    No resource detectors run and ``OTEL_RESOURCE_ATTRIBUTES`` is not merged.
    """
    return Resource(attributes=dict(build_resource_attributes(config, additional)))


def _first_env(env: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    return next((env[name] for name in names if env.get(name)), None)


class CloudResourceBuilder:
    """Google Cloud resource attributes.

    Example:
        >>> builder = CloudResourceBuilder("my-project", CloudPlatform.CLOUD_RUN)
        >>> builder.with_region("us-central1").attributes()["cloud.region"]
        'us-central1'
    """

    def __init__(
        self,
        project_id: str,
        platform: CloudPlatform,
        *,
        region: str | None = None,
        service_id: str | None = None,
        revision: str | None = None,
    ) -> None:
        self.project_id = project_id
        self.platform = platform
        self.region = region
        self.service_id = service_id
        self.revision = revision

    @classmethod
    def from_env(
        cls,
        project_id: str,
        platform: CloudPlatform,
        environ: Mapping[str, str] | None = None,
    ) -> CloudResourceBuilder:
        """Fill region, service and revision from platform variables.

        Args:
            project_id: Cloud project identifier.
            platform: Hosting platform.
            environ: Environment mapping. Defaults to ``os.environ``.
        """
        env = os.environ if environ is None else environ
        return cls(
            project_id,
            platform,
            region=_first_env(env, _REGION_ENV_VARS),
            service_id=_first_env(env, _SERVICE_ENV_VARS),
            revision=_first_env(env, _REVISION_ENV_VARS),
        )

    def _copy(self, **changes: str) -> CloudResourceBuilder:
        values = {
            "region": self.region,
            "service_id": self.service_id,
            "revision": self.revision,
            **changes,
        }
        return CloudResourceBuilder(self.project_id, self.platform, **values)

    def with_region(self, region: str) -> CloudResourceBuilder:
        return self._copy(region=region)

    def with_service(self, service_id: str) -> CloudResourceBuilder:
        return self._copy(service_id=service_id)

    def with_revision(self, revision: str) -> CloudResourceBuilder:
        return self._copy(revision=revision)

    def attributes(self) -> dict[str, AttributeValue]:
        """Cloud attributes in semantic-convention order.

        Project attributes are omitted when the project id is empty.
        """
        project_id = self.project_id or None
        pairs: list[tuple[str, AttributeValue | None]] = [
            (CLOUD_PROVIDER, CLOUD_PROVIDER_GCP),
            (CLOUD_PLATFORM, self.platform.value),
            (CLOUD_ACCOUNT_ID, project_id),
            (GCP_PROJECT_ID, project_id),
            (CLOUD_REGION, self.region),
            (FAAS_NAME, self.service_id),
            (FAAS_VERSION, self.revision),
        ]
        return {key: value for key, value in pairs if value is not None}

    def build(self, config: TelemetryConfig) -> Resource:
        """Build the resource with base attributes first."""
        return build_resource(config, self.attributes())
