"""Provider adapter abstract base class and shared HTTP plumbing.

Every provider (HubSpot, Salesforce, Pipedrive) implements ProviderAdapter.
The base class owns the request path that all of them share:

1. Admission through the RateLimiter, keyed by connection id
2. Credential lookup, with proactive refresh of expired OAuth tokens
3. The httpx call, with timeouts and transport failures mapped to TransientError
4. One refresh-and-retry on 401/403 for OAuth providers
5. Normalization of the response status into the shared error taxonomy,
   penalizing the limiter on rate-limit responses
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.core.monitoring import provider_request_duration_seconds, provider_requests_total
from src.crm_sync.errors import (
    AuthError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    TransientError,
    ValidationError,
)
from src.crm_sync.rate_limiter import RateLimiter
from src.crm_sync.schemas import (
    ConnectionRead,
    Credential,
    FetchPage,
    OutboundRecord,
    ProviderType,
    RemoteRecord,
    RemoteWriteResult,
    WebhookChange,
)

logger = structlog.get_logger(__name__)

CredentialSaver = Callable[[str, dict[str, Any]], Awaitable[None]]

# Token endpoint calls retry on transient failures only
_token_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransientError),
    reraise=True,
)


def parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderAdapter(ABC):
    """Abstract interface for a third-party CRM.

    Methods:
        authenticate: Return a usable credential, refreshing or probing it.
        fetch_changed: One page of contacts modified since a checkpoint.
        fetch_record: A single contact by external id.
        upsert_remote: Create or update one contact.
        parse_webhook: Normalize a provider push payload into change events.

    Args:
        limiter: Shared RateLimiter every call passes through.
        http_client: Optional httpx.AsyncClient (injected in tests).
        credential_saver: Callback persisting refreshed credentials.
        settings: Engine settings (defaults to get_settings()).
    """

    provider: ProviderType
    supports_refresh: bool = False

    def __init__(
        self,
        limiter: RateLimiter,
        *,
        http_client: httpx.AsyncClient | None = None,
        credential_saver: CredentialSaver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._limiter = limiter
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.PROVIDER_HTTP_TIMEOUT)
        self._credential_saver = credential_saver
        self._credentials: dict[str, Credential] = {}

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ── Contract ────────────────────────────────────────────────────────────

    async def authenticate(self, connection: ConnectionRead) -> Credential:
        """Return a valid credential for the connection.

        Idempotent: refreshes an expired OAuth token, then probes the API
        with a read-only probe request; revoked credentials surface as AuthError.
        """
        credential = self.credential(connection)
        if self.supports_refresh and credential.is_expired():
            await self._refresh_and_store(connection, credential)
        await self._request(connection, "GET", self._probe_path())
        return self.credential(connection)

    @abstractmethod
    async def fetch_changed(
        self,
        connection: ConnectionRead,
        since: datetime | None,
        page_token: str | None = None,
        *,
        fields: list[str] | None = None,
    ) -> FetchPage:
        """Fetch one page of records modified at or after `since` (all if None)."""
        ...

    @abstractmethod
    async def fetch_record(
        self, connection: ConnectionRead, external_id: str, *, fields: list[str] | None = None
    ) -> RemoteRecord:
        """Fetch one record. Raises NotFoundError if it no longer exists."""
        ...

    @abstractmethod
    async def upsert_remote(
        self, connection: ConnectionRead, record: OutboundRecord
    ) -> RemoteWriteResult:
        """Create (no external_id) or update one record."""
        ...

    @abstractmethod
    def parse_webhook(self, payload: Any) -> list[WebhookChange]:
        """Normalize a verified webhook payload into change events."""
        ...

    # ── Provider hooks ──────────────────────────────────────────────────────

    @abstractmethod
    def _base_url(self, credential: Credential) -> str: ...

    @abstractmethod
    def _probe_path(self) -> str: ...

    def _auth_headers(self, credential: Credential) -> dict[str, str]:
        if not credential.access_token:
            raise AuthError("Connection has no access token", provider=self.provider.value)
        return {"Authorization": f"Bearer {credential.access_token}"}

    def _auth_params(self, credential: Credential) -> dict[str, str]:
        return {}

    async def _refresh(self, connection: ConnectionRead, credential: Credential) -> Credential:
        raise AuthError("Credential cannot be refreshed", provider=self.provider.value)

    def _classify(self, response: httpx.Response) -> ProviderError | None:
        """Provider-specific error detection, checked before the status mapping."""
        return None

    # ── Credentials ─────────────────────────────────────────────────────────

    def forget(self, connection_id: str) -> None:
        """Drop the cached credential after a disconnect or credential change."""
        self._credentials.pop(connection_id, None)

    def credential(self, connection: ConnectionRead) -> Credential:
        cached = self._credentials.get(connection.id)
        if cached is None:
            cached = Credential.model_validate(connection.credentials)
            self._credentials[connection.id] = cached
        return cached

    async def _refresh_and_store(
        self, connection: ConnectionRead, credential: Credential
    ) -> Credential:
        if not credential.refresh_token:
            raise AuthError("No refresh token available", provider=self.provider.value)
        await self._limiter.acquire(connection.id, connection.rate_limit)
        refreshed = await self._refresh(connection, credential)
        self._credentials[connection.id] = refreshed
        logger.info(
            "provider.credential_refreshed",
            provider=self.provider.value,
            connection_id=connection.id,
        )
        if self._credential_saver is not None:
            await self._credential_saver(
                connection.id, refreshed.model_dump(mode="json", exclude_none=True)
            )
        return refreshed

    @_token_retry
    async def _post_token(self, url: str, data: dict[str, str]) -> dict[str, Any]:
        """POST a refresh_token grant and return the token payload."""
        try:
            response = await self._http.post(url, data=data)
        except httpx.TransportError as exc:
            raise TransientError(
                f"Token endpoint unreachable: {exc}", provider=self.provider.value
            ) from exc
        if response.status_code >= 500:
            raise TransientError(
                "Token endpoint failed",
                provider=self.provider.value,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise AuthError(
                "Refresh token rejected",
                provider=self.provider.value,
                status_code=response.status_code,
                details=_safe_json(response),
            )
        return response.json()

    # ── Request path ────────────────────────────────────────────────────────

    async def _request(
        self,
        connection: ConnectionRead,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send one rate-limited, authenticated request and normalize failures."""
        refreshed = False
        while True:
            await self._limiter.acquire(connection.id, connection.rate_limit)
            credential = self.credential(connection)
            if self.supports_refresh and credential.is_expired() and not refreshed:
                credential = await self._refresh_and_store(connection, credential)
                refreshed = True

            url = path if path.startswith("http") else f"{self._base_url(credential)}{path}"
            merged_params = {**(params or {}), **self._auth_params(credential)}
            start = time.monotonic()
            try:
                response = await self._http.request(
                    method,
                    url,
                    params=merged_params or None,
                    json=json,
                    headers=self._auth_headers(credential),
                )
            except httpx.TimeoutException as exc:
                provider_requests_total.labels(provider=self.provider.value, status="timeout").inc()
                raise TransientError(
                    f"{method} {path} timed out", provider=self.provider.value
                ) from exc
            except httpx.TransportError as exc:
                provider_requests_total.labels(provider=self.provider.value, status="network").inc()
                raise TransientError(
                    f"{method} {path} failed: {exc}", provider=self.provider.value
                ) from exc
            finally:
                provider_request_duration_seconds.labels(provider=self.provider.value).observe(
                    time.monotonic() - start
                )

            provider_requests_total.labels(
                provider=self.provider.value, status=str(response.status_code)
            ).inc()

            error = self._error_for(response)
            if error is None:
                return response

            if isinstance(error, AuthError) and self.supports_refresh and not refreshed:
                logger.info(
                    "provider.auth_retry",
                    provider=self.provider.value,
                    connection_id=connection.id,
                    status_code=response.status_code,
                )
                await self._refresh_and_store(connection, credential)
                refreshed = True
                continue

            if isinstance(error, RateLimitError):
                self._limiter.penalize(connection.id, error.retry_after)

            logger.warning(
                "provider.request_failed",
                provider=self.provider.value,
                connection_id=connection.id,
                method=method,
                path=path,
                status_code=response.status_code,
                kind=error.kind,
            )
            raise error

    def _error_for(self, response: httpx.Response) -> ProviderError | None:
        """Map an HTTP response to the error taxonomy (None on success)."""
        classified = self._classify(response)
        if classified is not None:
            return classified

        status = response.status_code
        if status < 400:
            return None

        kwargs: dict[str, Any] = {
            "provider": self.provider.value,
            "status_code": status,
            "details": _safe_json(response),
        }
        message = _error_message(response)
        if status in (401, 403):
            return AuthError(message, **kwargs)
        if status == 429:
            return RateLimitError(message, retry_after=parse_retry_after(response), **kwargs)
        if status in (404, 410):
            return NotFoundError(message, **kwargs)
        if status in (400, 409, 422):
            return ValidationError(message, **kwargs)
        if status >= 500 or status == 408:
            return TransientError(message, **kwargs)
        return ValidationError(message, **kwargs)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:1000] or None


def _error_message(response: httpx.Response) -> str:
    body = _safe_json(response)
    if isinstance(body, dict):
        for key in ("message", "error", "error_description"):
            if isinstance(body.get(key), str):
                return body[key]
    if isinstance(body, list) and body and isinstance(body[0], dict):
        if isinstance(body[0].get("message"), str):
            return body[0]["message"]
    return f"HTTP {response.status_code}"
