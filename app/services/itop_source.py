"""iTop REST/JSON client exposing incidents and changes as paginated source records."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.config.logger import app_logger
from app.config.settings import settings
from app.models.knowledge_chunk import Collection
from app.services.errors import ConfigurationError, SourceError
from app.services.sources import LogEntry, SourcePage, SourceRecord

ITOP_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

ITOP_CLASSES = {
    Collection.INCIDENT: "Incident",
    Collection.CHANGE: "Change",
}

OUTPUT_FIELDS = {
    Collection.INCIDENT: (
        "ref,title,description,status,priority,impact,urgency,origin,"
        "team_id_friendlyname,agent_id_friendlyname,service_name,"
        "caller_id_friendlyname,start_date,last_update,public_log"
    ),
    Collection.CHANGE: (
        "ref,title,description,status,impact,outage,finalclass,fallback,"
        "team_id_friendlyname,agent_id_friendlyname,supervisor_id_friendlyname,"
        "start_date,last_update,private_log"
    ),
}


def build_sync_oql(collection: Collection, modified_after: Optional[datetime] = None) -> str:
    """OQL selecting a collection, optionally only rows modified after a timestamp."""
    if collection not in ITOP_CLASSES:
        raise ConfigurationError(f"iTop holds no {collection.value} records")
    oql = f"SELECT {ITOP_CLASSES[collection]}"
    if modified_after is not None:
        stamp = modified_after.astimezone(timezone.utc).strftime(ITOP_DATETIME_FORMAT)
        oql += f" WHERE last_update > '{stamp}'"
    return oql


def parse_itop_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, ITOP_DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        app_logger.warning(f"Unparseable iTop timestamp: {value!r}")
        return None


def _log_entries(case_log: Any) -> List[LogEntry]:
    if not isinstance(case_log, dict):
        return []
    return [
        LogEntry(
            date=str(entry.get("date", "")),
            user_login=str(entry.get("user_login", "")),
            message=entry.get("message") or "",
            message_html=entry.get("message_html") or "",
        )
        for entry in case_log.get("entries") or []
    ]


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def to_source_record(collection: Collection, key: str, fields: Dict[str, Any]) -> SourceRecord:
    """Map an iTop object (key + fields) onto a SourceRecord."""
    record = SourceRecord(
        record_id=str(key),
        collection=collection,
        reference=str(fields.get("ref") or key),
        title=str(fields.get("title") or ""),
        body=fields.get("description") or "",
        updated_at=parse_itop_datetime(fields.get("last_update")),
        status=_text(fields.get("status")),
        impact=_text(fields.get("impact")),
        team=_text(fields.get("team_id_friendlyname")),
        agent=_text(fields.get("agent_id_friendlyname")),
        start_date=_text(fields.get("start_date")),
    )
    if collection == Collection.INCIDENT:
        record.severity = _text(fields.get("severity"))
        record.priority = _text(fields.get("priority"))
        record.urgency = _text(fields.get("urgency"))
        record.origin = _text(fields.get("origin"))
        record.service = _text(fields.get("service_name"))
        record.caller = _text(fields.get("caller_id_friendlyname"))
        record.log_entries = _log_entries(fields.get("public_log"))
    else:
        record.outage = _text(fields.get("outage"))
        record.change_type = _text(fields.get("finalclass"))
        record.fallback = fields.get("fallback") or None
        record.supervisor = _text(fields.get("supervisor_id_friendlyname"))
        record.log_entries = _log_entries(fields.get("private_log"))
    return record


class ITopSource:
    """Paginated read access to iTop tickets over its REST/JSON API."""

    def __init__(
        self,
        base_url: str = settings.ITOP_BASE_URL,
        username: str = settings.ITOP_USERNAME,
        password: str = settings.ITOP_PASSWORD,
        api_version: str = settings.ITOP_API_VERSION,
        timeout: float = settings.ITOP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ConfigurationError("ITOP_BASE_URL must be configured")
        self.base_url = base_url
        self.api_version = api_version
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            auth=httpx.BasicAuth(username, password),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, query: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.get(
                self.base_url,
                params={"version": self.api_version, "json_data": json.dumps(query)},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            app_logger.error(f"iTop API request failed: {exc}")
            raise SourceError(f"iTop API request failed: {exc}") from exc

        if payload.get("code", 0) != 0:
            raise SourceError(f"iTop API error {payload.get('code')}: {payload.get('message')}")
        return payload

    async def count(
        self,
        collection: Collection,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> int:
        """Number of records matching the sync filter."""
        oql = build_sync_oql(collection, modified_after)
        payload = await self._request({
            "operation": "core/get",
            "class": ITOP_CLASSES[collection],
            "key": oql,
            "output_fields": "id",
        })
        return len(payload.get("objects") or {})

    async def fetch_page(
        self,
        collection: Collection,
        page: int,
        limit: int,
        modified_after: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> SourcePage:
        """Fetch one page (1-based) of records."""
        oql = build_sync_oql(collection, modified_after)
        payload = await self._request({
            "operation": "core/get",
            "class": ITOP_CLASSES[collection],
            "key": oql,
            "output_fields": OUTPUT_FIELDS[collection],
            "limit": limit,
            "page": page,
        })
        objects = payload.get("objects") or {}
        records = [
            to_source_record(collection, obj.get("key", name.split("::")[-1]), obj.get("fields") or {})
            for name, obj in objects.items()
        ]
        return SourcePage(records=records, page=page, limit=limit)
