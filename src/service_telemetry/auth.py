"""Bearer credentials for the cloud trace API.

This module provides:
- Credential: An in-memory bearer token with its expiry
- GoogleDefaultTokenSource: Tokens from Application Default Credentials
- CredentialProvider: Cached, single-flight token acquisition
- BearerTokenMetadataPlugin: Per-RPC gRPC authorization metadata

Tokens are cached until they come within the refresh margin of their
expiry. Concurrent callers share one in-flight refresh: the first caller
fetches under the lock while the others wait and reuse its result.

Security:
    Token values are held as SecretStr and never logged.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Protocol

import google.auth
import grpc
import structlog
from google.auth import exceptions as google_exceptions
from google.auth.transport.requests import Request
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from service_telemetry.errors import AuthError

if TYPE_CHECKING:
    from google.auth.credentials import Credentials as GoogleCredentials

logger = structlog.get_logger(__name__)

TRACE_SCOPE = "https://www.googleapis.com/auth/trace.append"

# Refresh when within 5 minutes of expiry
DEFAULT_REFRESH_MARGIN_SECONDS = 300.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Credential(BaseModel):
    """Bearer token with an optional expiry.

    Attributes:
        token: Bearer token value (masked in repr).
        expiry: Aware UTC expiry, or None for a token that does not expire.

    Example:
        >>> credential = Credential(token="abc")
        >>> credential
        Credential(token=SecretStr('**********'), expiry=None)
        >>> credential.authorization_header()
        'Bearer abc'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    token: SecretStr = Field(..., description="Bearer token value")
    expiry: datetime | None = Field(default=None, description="Token expiry (UTC)")

    def authorization_header(self) -> str:
        """Value for the ``authorization`` request header."""
        return f"Bearer {self.token.get_secret_value()}"

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        """Check if the token expires within ``margin`` of ``now``.

        Args:
            margin: Refresh margin.
            now: Current time. Defaults to the current UTC time.

        Returns:
            True if the token should be refreshed.
        """
        if self.expiry is None:
            return False
        current = now or _utcnow()
        return current >= self.expiry - margin


class TokenSource(Protocol):
    """Source of bearer tokens for a set of scopes."""

    def fetch(self, scopes: Sequence[str]) -> tuple[str, datetime | None]:
        """Fetch a fresh token and its expiry.

        Raises:
            AuthError: If no token can be obtained.
        """
        ...


class GoogleDefaultTokenSource:
    """Tokens from the Application Default Credentials chain.

    The credential chain is resolved once per scope set; each fetch
    refreshes the resolved credentials against the token endpoint.
    """

    def __init__(self) -> None:
        self._credentials: GoogleCredentials | None = None
        self._scopes: tuple[str, ...] | None = None

    def fetch(self, scopes: Sequence[str]) -> tuple[str, datetime | None]:
        requested = tuple(scopes)
        try:
            if self._credentials is None or self._scopes != requested:
                self._credentials, _ = google.auth.default(scopes=list(requested))
                self._scopes = requested
            self._credentials.refresh(Request())
        except google_exceptions.DefaultCredentialsError as exc:
            raise AuthError("No default credentials available in this environment") from exc
        except google_exceptions.GoogleAuthError as exc:
            raise AuthError("Token endpoint rejected the credential refresh") from exc

        token = self._credentials.token
        if not token:
            raise AuthError("Credential source returned an empty token")

        expiry = self._credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            # google-auth reports naive UTC datetimes
            expiry = expiry.replace(tzinfo=timezone.utc)
        return token, expiry


class CredentialProvider:
    """Cached bearer credential with transparent refresh.

    Attributes:
        scopes: Default scopes requested by acquire().
        refresh_count: Number of successful refreshes so far.

    Example:
        >>> provider = CredentialProvider()
        >>> credential = provider.acquire()  # fetches
        >>> credential is provider.acquire()  # cached
        True
    """

    def __init__(
        self,
        scopes: Sequence[str] = (TRACE_SCOPE,),
        *,
        token_source: TokenSource | None = None,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize CredentialProvider.

        Args:
            scopes: Default scopes for acquire().
            token_source: Token source. Defaults to GoogleDefaultTokenSource.
            refresh_margin_seconds: Refresh this long before expiry.
            clock: Returns the current aware UTC time.
        """
        self.scopes = tuple(scopes)
        self._source: TokenSource = token_source or GoogleDefaultTokenSource()
        self._margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        # (scopes, credential) pair, replaced as one object
        self._cached: tuple[tuple[str, ...], Credential] | None = None
        self.refresh_count = 0

    def _usable(self, scopes: tuple[str, ...]) -> Credential | None:
        cached = self._cached
        if cached is None:
            return None
        cached_scopes, credential = cached
        if cached_scopes != scopes:
            return None
        if credential.expires_within(self._margin, self._clock()):
            return None
        return credential

    def acquire(self, scopes: Sequence[str] | None = None) -> Credential:
        """Return a valid credential, refreshing it if needed.

        Args:
            scopes: Scopes to request. Defaults to the provider scopes.

        Returns:
            Cached or freshly fetched credential.

        Raises:
            AuthError: If the credential source cannot produce a token.
        """
        requested = self.scopes if scopes is None else tuple(scopes)

        credential = self._usable(requested)
        if credential is not None:
            return credential

        with self._lock:
            # Another caller may have refreshed while we waited
            credential = self._usable(requested)
            if credential is not None:
                return credential
            return self._refresh(requested)

    async def acquire_async(self, scopes: Sequence[str] | None = None) -> Credential:
        """Await acquire() without blocking the event loop."""
        return await asyncio.to_thread(self.acquire, scopes)

    def invalidate(self) -> None:
        """Drop the cached credential so the next acquire() refetches."""
        with self._lock:
            self._cached = None

    def _refresh(self, scopes: tuple[str, ...]) -> Credential:
        logger.debug("credential_refresh_started", scopes=list(scopes))
        try:
            token, expiry = self._source.fetch(scopes)
        except AuthError as exc:
            logger.error("credential_refresh_failed", error=str(exc))
            raise

        credential = Credential(token=SecretStr(token), expiry=expiry)
        self._cached = (scopes, credential)
        self.refresh_count += 1
        logger.info(
            "credential_refreshed",
            expires_at=expiry.isoformat() if expiry else None,
        )
        return credential


class BearerTokenMetadataPlugin(grpc.AuthMetadataPlugin):
    """gRPC metadata plugin that attaches a fresh bearer token to every RPC.

    Adds ``authorization`` and, for a non-empty project, the
    ``x-goog-user-project`` quota header.
    """

    def __init__(self, credential_provider: CredentialProvider, project_id: str = "") -> None:
        self._provider = credential_provider
        self._project_id = project_id

    def metadata(self) -> tuple[tuple[str, str], ...]:
        """Build the request metadata.

        Raises:
            AuthError: If no credential can be acquired.
        """
        credential = self._provider.acquire()
        entries = [("authorization", credential.authorization_header())]
        if self._project_id:
            entries.append(("x-goog-user-project", self._project_id))
        return tuple(entries)

    def __call__(
        self,
        context: grpc.AuthMetadataContext,
        callback: grpc.AuthMetadataPluginCallback,
    ) -> None:
        try:
            entries = self.metadata()
        except AuthError as exc:
            logger.warning("export_credential_unavailable", error=str(exc))
            callback((), exc)
            return
        callback(entries, None)
