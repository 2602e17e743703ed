"""Pipedrive API v1 adapter for persons.

- Auth: static api_token passed as a query parameter; authenticate() validates
  it against /users/me (no refresh, a 401 is terminal)
- Delta: GET /recents?items=person&since_timestamp=... with start/limit offsets
- Full: GET /persons with start/limit offsets
- Writes: PUT /persons/{id}, POST /persons
- Webhooks: v1 (meta + current) and v2 (meta + data) person events carry the
  full object, so no follow-up fetch is needed

Persons store email and phone as lists of {value, primary, label}. They are
flattened to plain value lists (primary first) on read and rebuilt on write.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from src.crm_sync.errors import AuthError, ProviderError, RateLimitError
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

PIPEDRIVE_API_URL = "https://api.pipedrive.com/api/v1"
_MULTI_VALUE_FIELDS = ("email", "phone")

_WEBHOOK_ACTIONS = {
    "added": "created",
    "create": "created",
    "updated": "updated",
    "change": "updated",
    "merged": "updated",
    "deleted": "deleted",
    "delete": "deleted",
}


def pipedrive_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _flatten_person(person: dict[str, Any]) -> dict[str, Any]:
    fields = dict(person)
    for key in _MULTI_VALUE_FIELDS:
        entries = person.get(key) or []
        if isinstance(entries, list):
            ordered = sorted(
                (e for e in entries if isinstance(e, dict) and e.get("value")),
                key=lambda e: not e.get("primary", False),
            )
            fields[key] = [e["value"] for e in ordered]
    org = person.get("org_id")
    if isinstance(org, dict) and "org_name" not in fields:
        fields["org_name"] = org.get("name")
    return fields


def _to_record(person: dict[str, Any]) -> RemoteRecord:
    return RemoteRecord(
        external_id=str(person["id"]),
        fields=_flatten_person(person),
        modified_at=parse_timestamp(person.get("update_time")),
    )


class PipedriveAdapter(ProviderAdapter):
    """Pipedrive persons through the v1 REST API."""

    provider = ProviderType.PIPEDRIVE
    supports_refresh = False

    def _base_url(self, credential: Credential) -> str:
        if credential.api_domain:
            return f"{credential.api_domain.rstrip('/')}/api/v1"
        return PIPEDRIVE_API_URL

    def _probe_path(self) -> str:
        return "/users/me"

    def _auth_headers(self, credential: Credential) -> dict[str, str]:
        return {}

    def _auth_params(self, credential: Credential) -> dict[str, str]:
        if not credential.api_token:
            raise AuthError("Connection has no Pipedrive api_token", provider=self.provider.value)
        return {"api_token": credential.api_token}

    def _classify(self, response: httpx.Response) -> ProviderError | None:
        if response.status_code != 429:
            return None
        retry_after = parse_retry_after(response)
        reset = response.headers.get("x-ratelimit-reset")
        if retry_after is None and reset is not None:
            try:
                retry_after = max(0.0, float(reset))
            except ValueError:
                retry_after = None
        return RateLimitError(
            "Pipedrive rate limit exceeded",
            retry_after=retry_after,
            provider=self.provider.value,
            status_code=429,
        )

    @staticmethod
    def _pagination(body: dict[str, Any]) -> str | None:
        pagination = (body.get("additional_data") or {}).get("pagination") or {}
        if pagination.get("more_items_in_collection"):
            return str(pagination.get("next_start"))
        return None

    async def fetch_changed(
        self,
        connection: ConnectionRead,
        since: datetime | None,
        page_token: str | None = None,
        *,
        fields: list[str] | None = None,
    ) -> FetchPage:
        params: dict[str, Any] = {
            "start": int(page_token) if page_token else 0,
            "limit": self._settings.PROVIDER_PAGE_SIZE,
        }
        if since is None:
            response = await self._request(connection, "GET", "/persons", params=params)
            body = response.json()
            persons = body.get("data") or []
        else:
            params.update({"items": "person", "since_timestamp": pipedrive_timestamp(since)})
            response = await self._request(connection, "GET", "/recents", params=params)
            body = response.json()
            persons = [
                entry["data"]
                for entry in body.get("data") or []
                if entry.get("item") == "person" and entry.get("data")
            ]

        records = [_to_record(p) for p in persons]
        next_token = self._pagination(body)
        logger.debug(
            "pipedrive.page_fetched",
            connection_id=connection.id,
            count=len(records),
            has_more=next_token is not None,
        )
        return FetchPage(
            records=records,
            next_page_token=next_token,
            new_checkpoint=max_timestamp(*(r.modified_at for r in records)),
        )

    async def fetch_record(
        self, connection: ConnectionRead, external_id: str, *, fields: list[str] | None = None
    ) -> RemoteRecord:
        response = await self._request(connection, "GET", f"/persons/{external_id}")
        return _to_record(response.json()["data"])

    @staticmethod
    def _wire_fields(fields: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {}
        for key, value in fields.items():
            if key in _MULTI_VALUE_FIELDS:
                values = value if isinstance(value, list) else ([] if value is None else [value])
                body[key] = [
                    {"value": v, "primary": i == 0, "label": "work"} for i, v in enumerate(values)
                ]
            else:
                body[key] = value
        return body

    async def upsert_remote(
        self, connection: ConnectionRead, record: OutboundRecord
    ) -> RemoteWriteResult:
        body = self._wire_fields(record.fields)
        body.pop("org_name", None)
        if record.external_id:
            response = await self._request(
                connection, "PUT", f"/persons/{record.external_id}", json=body
            )
        else:
            # name is required on create; derive it when only the parts are mapped
            if "name" not in body:
                body["name"] = " ".join(
                    p for p in (body.get("first_name"), body.get("last_name")) if p
                ) or "Unnamed"
            response = await self._request(connection, "POST", "/persons", json=body)

        person = response.json()["data"]
        result = RemoteWriteResult(
            external_id=str(person["id"]),
            modified_at=parse_timestamp(person.get("update_time")),
        )
        logger.info(
            "pipedrive.person_upserted",
            connection_id=connection.id,
            external_id=result.external_id,
            created=record.external_id is None,
        )
        return result

    def parse_webhook(self, payload: Any) -> list[WebhookChange]:
        if not isinstance(payload, dict):
            return []
        meta = payload.get("meta") or {}
        entity = meta.get("object") or meta.get("entity")
        if entity != "person":
            return []
        kind = _WEBHOOK_ACTIONS.get(meta.get("action", ""), "updated")
        person = payload.get("current") or payload.get("data")
        external_id = meta.get("id") or meta.get("entity_id") or (person or {}).get("id")
        if external_id is None:
            return []

        record = None
        if kind != "deleted" and isinstance(person, dict) and person.get("id") is not None:
            record = _to_record(person)
        return [
            WebhookChange(
                external_id=str(external_id),
                event=kind,
                occurred_at=parse_timestamp(meta.get("timestamp")),
                record=record,
            )
        ]
