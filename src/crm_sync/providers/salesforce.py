"""Salesforce REST API v59.0 adapter for Contact.

- Auth: OAuth2 bearer token against the org's instance_url, refreshed through
  {login_url}/services/oauth2/token (Salesforce issues no expiry, so refresh
  happens on 401)
- Delta: SOQL query on SystemModstamp >= since, paginated via nextRecordsUrl
- Writes: PATCH by external id field (idempotency key derived from the local
  id) for creates; PATCH by record Id for linked records, stamping the
  external id field so later creates cannot duplicate
- Webhooks: Change Data Capture style events (ChangeEventHeader)
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from src.crm_sync.errors import (
    AuthError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from src.crm_sync.providers.base import ProviderAdapter, parse_retry_after
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
from src.crm_sync.timestamps import max_timestamp, parse_timestamp

logger = structlog.get_logger(__name__)

API_VERSION = "v59.0"
DATA_PATH = f"/services/data/{API_VERSION}"

_SALESFORCE_ID = re.compile(r"[A-Za-z0-9]{15}(?:[A-Za-z0-9]{3})?")

_CDC_EVENTS = {
    "CREATE": "created",
    "UPDATE": "updated",
    "UNDELETE": "updated",
    "DELETE": "deleted",
    "GAP_CREATE": "created",
    "GAP_UPDATE": "updated",
    "GAP_DELETE": "deleted",
}


def soql_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _select_list(fields: list[str] | None) -> str:
    names = {"Id", "SystemModstamp"}
    names.update(fields or [])
    return ", ".join(sorted(names))


class SalesforceAdapter(ProviderAdapter):
    """Salesforce Contact sObject through the REST API."""

    provider = ProviderType.SALESFORCE
    supports_refresh = True

    @property
    def external_id_field(self) -> str:
        return self._settings.SALESFORCE_EXTERNAL_ID_FIELD

    def _base_url(self, credential: Credential) -> str:
        if not credential.instance_url:
            raise AuthError("Salesforce credential has no instance_url", provider=self.provider.value)
        return credential.instance_url.rstrip("/")

    def _probe_path(self) -> str:
        return f"{DATA_PATH}/limits"

    async def _refresh(self, connection: ConnectionRead, credential: Credential) -> Credential:
        payload = await self._post_token(
            f"{self._settings.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/token",
            {
                "grant_type": "refresh_token",
                "client_id": self._settings.SALESFORCE_CLIENT_ID,
                "client_secret": self._settings.SALESFORCE_CLIENT_SECRET,
                "refresh_token": credential.refresh_token or "",
            },
        )
        return credential.model_copy(
            update={
                "access_token": payload["access_token"],
                "instance_url": payload.get("instance_url", credential.instance_url),
            }
        )

    def _classify(self, response: httpx.Response) -> ProviderError | None:
        if response.status_code < 400:
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, list) and body and isinstance(body[0], dict):
            if body[0].get("errorCode") == "REQUEST_LIMIT_EXCEEDED":
                return RateLimitError(
                    body[0].get("message", "Request limit exceeded"),
                    retry_after=parse_retry_after(response),
                    provider=self.provider.value,
                    status_code=response.status_code,
                    details=body,
                )
        return None

    @staticmethod
    def _to_record(item: dict[str, Any]) -> RemoteRecord:
        fields = {k: v for k, v in item.items() if k != "attributes"}
        return RemoteRecord(
            external_id=str(item["Id"]),
            fields=fields,
            modified_at=parse_timestamp(item.get("SystemModstamp")),
        )

    async def fetch_changed(
        self,
        connection: ConnectionRead,
        since: datetime | None,
        page_token: str | None = None,
        *,
        fields: list[str] | None = None,
    ) -> FetchPage:
        if page_token:
            response = await self._request(connection, "GET", page_token)
        else:
            soql = f"SELECT {_select_list(fields)} FROM Contact"
            if since is not None:
                soql += f" WHERE SystemModstamp >= {soql_datetime(since)}"
            soql += " ORDER BY SystemModstamp ASC"
            response = await self._request(
                connection, "GET", f"{DATA_PATH}/query", params={"q": soql}
            )

        data = response.json()
        records = [self._to_record(item) for item in data.get("records", [])]
        next_url = None if data.get("done", True) else data.get("nextRecordsUrl")
        logger.debug(
            "salesforce.page_fetched",
            connection_id=connection.id,
            count=len(records),
            has_more=next_url is not None,
        )
        return FetchPage(
            records=records,
            next_page_token=next_url,
            new_checkpoint=max_timestamp(*(r.modified_at for r in records)),
        )

    async def fetch_record(
        self, connection: ConnectionRead, external_id: str, *, fields: list[str] | None = None
    ) -> RemoteRecord:
        # SOQL rather than the sObject endpoint so relationship fields resolve
        if not _SALESFORCE_ID.fullmatch(external_id):
            raise ValidationError(
                f"Malformed Salesforce id {external_id!r}", provider=self.provider.value
            )
        soql = f"SELECT {_select_list(fields)} FROM Contact WHERE Id = '{external_id}'"
        response = await self._request(
            connection, "GET", f"{DATA_PATH}/query", params={"q": soql}
        )
        records = response.json().get("records", [])
        if not records:
            raise NotFoundError(
                f"Contact {external_id} not found",
                provider=self.provider.value,
                status_code=404,
            )
        return self._to_record(records[0])

    async def upsert_remote(
        self, connection: ConnectionRead, record: OutboundRecord
    ) -> RemoteWriteResult:
        # Relationship paths (Account.Name) are read-only on Contact
        body = {k: v for k, v in record.fields.items() if "." not in k}

        if record.external_id:
            body[self.external_id_field] = record.local_id
            await self._request(
                connection,
                "PATCH",
                f"{DATA_PATH}/sobjects/Contact/{record.external_id}",
                json=body,
            )
            read_path = f"{DATA_PATH}/sobjects/Contact/{record.external_id}"
        else:
            key_path = f"{DATA_PATH}/sobjects/Contact/{self.external_id_field}/{record.local_id}"
            await self._request(connection, "PATCH", key_path, json=body)
            read_path = key_path

        response = await self._request(
            connection, "GET", read_path, params={"fields": "Id,SystemModstamp"}
        )
        stored = response.json()
        result = RemoteWriteResult(
            external_id=str(stored["Id"]),
            modified_at=parse_timestamp(stored.get("SystemModstamp")),
        )
        logger.info(
            "salesforce.contact_upserted",
            connection_id=connection.id,
            external_id=result.external_id,
            created=record.external_id is None,
        )
        return result

    def parse_webhook(self, payload: Any) -> list[WebhookChange]:
        events = payload if isinstance(payload, list) else [payload]
        changes: list[WebhookChange] = []
        for event in events:
            if not isinstance(event, dict):
                continue
            header = event.get("ChangeEventHeader") or (event.get("payload") or {}).get(
                "ChangeEventHeader"
            )
            if not header or header.get("entityName", "Contact") != "Contact":
                continue
            kind = _CDC_EVENTS.get(header.get("changeType", ""), "updated")
            occurred = parse_timestamp(header.get("commitTimestamp"))
            for record_id in header.get("recordIds", []):
                changes.append(
                    WebhookChange(external_id=str(record_id), event=kind, occurred_at=occurred)
                )
        return changes
