"""HubSpot CRM v3 adapter.

- Auth: OAuth2 bearer token, refreshed through /oauth/v1/token
- Delta: POST /crm/v3/objects/contacts/search filtered on lastmodifieddate >= since,
  sorted ascending, paginated with the ``after`` cursor
- Full: GET /crm/v3/objects/contacts paginated with ``after``
- Writes: PATCH /crm/v3/objects/contacts/{id}, POST /crm/v3/objects/contacts
- Webhooks: JSON array of subscription events (contact.creation,
  contact.propertyChange, contact.deletion)

HubSpot property values are strings on the wire; outbound values are
stringified here so the mapping engine can stay type-faithful.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog

from src.crm_sync.schemas import (
    ConnectionRead,
    Credential,
    FetchPage,
    OutboundRecord,
    ProviderType,
    RemoteRecord,
    RemoteWriteResult,
    WebhookChange,
    utcnow,
)
from src.crm_sync.providers.base import ProviderAdapter
from src.crm_sync.timestamps import max_timestamp, parse_timestamp

logger = structlog.get_logger(__name__)

HUBSPOT_API_URL = "https://api.hubapi.com"
CONTACTS_PATH = "/crm/v3/objects/contacts"

_WEBHOOK_EVENTS = {
    "contact.creation": "created",
    "contact.propertyChange": "updated",
    "contact.restore": "updated",
    "contact.merge": "updated",
    "contact.deletion": "deleted",
    "contact.privacyDeletion": "deleted",
}


def _wire_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ";".join(str(v) for v in value)
    return str(value)


class HubSpotAdapter(ProviderAdapter):
    """HubSpot contacts through the CRM v3 objects API."""

    provider = ProviderType.HUBSPOT
    supports_refresh = True

    def _base_url(self, credential: Credential) -> str:
        return HUBSPOT_API_URL

    def _probe_path(self) -> str:
        return f"{CONTACTS_PATH}?limit=1"

    async def _refresh(self, connection: ConnectionRead, credential: Credential) -> Credential:
        payload = await self._post_token(
            f"{HUBSPOT_API_URL}/oauth/v1/token",
            {
                "grant_type": "refresh_token",
                "client_id": self._settings.HUBSPOT_CLIENT_ID,
                "client_secret": self._settings.HUBSPOT_CLIENT_SECRET,
                "refresh_token": credential.refresh_token or "",
            },
        )
        return credential.model_copy(
            update={
                "access_token": payload["access_token"],
                "refresh_token": payload.get("refresh_token", credential.refresh_token),
                "expires_at": utcnow() + timedelta(seconds=int(payload.get("expires_in", 1800))),
            }
        )

    @staticmethod
    def _to_record(item: dict[str, Any]) -> RemoteRecord:
        properties = dict(item.get("properties") or {})
        modified = item.get("updatedAt") or properties.get("lastmodifieddate")
        return RemoteRecord(
            external_id=str(item["id"]),
            fields=properties,
            modified_at=parse_timestamp(modified),
        )

    async def fetch_changed(
        self,
        connection: ConnectionRead,
        since: datetime | None,
        page_token: str | None = None,
        *,
        fields: list[str] | None = None,
    ) -> FetchPage:
        limit = self._settings.PROVIDER_PAGE_SIZE
        properties = sorted(set(fields or []) | {"lastmodifieddate"})

        if since is None:
            params: dict[str, Any] = {"limit": limit, "properties": ",".join(properties)}
            if page_token:
                params["after"] = page_token
            response = await self._request(connection, "GET", CONTACTS_PATH, params=params)
        else:
            body: dict[str, Any] = {
                "filterGroups": [
                    {
                        "filters": [
                            {
                                "propertyName": "lastmodifieddate",
                                "operator": "GTE",
                                "value": str(int(since.timestamp() * 1000)),
                            }
                        ]
                    }
                ],
                "sorts": [{"propertyName": "lastmodifieddate", "direction": "ASCENDING"}],
                "properties": properties,
                "limit": limit,
            }
            if page_token:
                body["after"] = page_token
            response = await self._request(
                connection, "POST", f"{CONTACTS_PATH}/search", json=body
            )

        data = response.json()
        records = [self._to_record(item) for item in data.get("results", [])]
        next_token = ((data.get("paging") or {}).get("next") or {}).get("after")
        checkpoint = max_timestamp(*(r.modified_at for r in records))
        logger.debug(
            "hubspot.page_fetched",
            connection_id=connection.id,
            count=len(records),
            has_more=next_token is not None,
        )
        return FetchPage(
            records=records,
            next_page_token=str(next_token) if next_token else None,
            new_checkpoint=checkpoint,
        )

    async def fetch_record(
        self, connection: ConnectionRead, external_id: str, *, fields: list[str] | None = None
    ) -> RemoteRecord:
        properties = sorted(set(fields or []) | {"lastmodifieddate"})
        response = await self._request(
            connection,
            "GET",
            f"{CONTACTS_PATH}/{external_id}",
            params={"properties": ",".join(properties)},
        )
        return self._to_record(response.json())

    async def upsert_remote(
        self, connection: ConnectionRead, record: OutboundRecord
    ) -> RemoteWriteResult:
        body = {"properties": {k: _wire_value(v) for k, v in record.fields.items()}}
        if record.external_id:
            response = await self._request(
                connection, "PATCH", f"{CONTACTS_PATH}/{record.external_id}", json=body
            )
        else:
            response = await self._request(connection, "POST", CONTACTS_PATH, json=body)

        data = response.json()
        result = RemoteWriteResult(
            external_id=str(data["id"]),
            modified_at=parse_timestamp(
                data.get("updatedAt") or (data.get("properties") or {}).get("lastmodifieddate")
            ),
        )
        logger.info(
            "hubspot.contact_upserted",
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
            kind = _WEBHOOK_EVENTS.get(event.get("subscriptionType", ""))
            if kind is None or event.get("objectId") is None:
                continue
            changes.append(
                WebhookChange(
                    external_id=str(event["objectId"]),
                    event=kind,
                    occurred_at=parse_timestamp(event.get("occurredAt")),
                )
            )
        return changes
