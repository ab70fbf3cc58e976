"""Tests for the iTop REST client (HTTP mocked with pytest-httpx)."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pytest_httpx import HTTPXMock

from app.models.knowledge_chunk import Collection
from app.services.errors import ConfigurationError, SourceError
from app.services.itop_source import ITopSource, build_sync_oql, parse_itop_datetime

ITOP_URL = "https://itop.example.com/webservices/rest.php"


def _query(request: httpx.Request) -> dict:
    return json.loads(request.url.params["json_data"])


@pytest.fixture
def itop():
    return ITopSource(base_url=ITOP_URL, username="svc", password="secret", client=httpx.AsyncClient())


class TestOqlHelpers:
    def test_full_scope(self):
        assert build_sync_oql(Collection.CHANGE) == "SELECT Change"

    def test_documents_are_not_itop_records(self):
        with pytest.raises(ConfigurationError, match="no document records"):
            build_sync_oql(Collection.DOCUMENT)

    def test_incremental_scope_is_utc(self):
        cet = timezone(timedelta(hours=1))
        stamp = datetime(2026, 3, 1, 9, 30, 15, tzinfo=cet)

        assert build_sync_oql(Collection.INCIDENT, stamp) == (
            "SELECT Incident WHERE last_update > '2026-03-01 08:30:15'"
        )

    def test_parse_datetime(self):
        assert parse_itop_datetime("2026-03-01 08:00:00") == datetime(2026, 3, 1, 8, tzinfo=timezone.utc)
        assert parse_itop_datetime("") is None
        assert parse_itop_datetime("yesterday") is None


class TestITopSource:
    def test_missing_base_url(self):
        with pytest.raises(ConfigurationError):
            ITopSource(base_url="")

    @pytest.mark.asyncio
    async def test_count(self, itop, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            json={
                "code": 0,
                "message": "Found: 2",
                "objects": {
                    "Incident::1": {"code": 0, "class": "Incident", "key": "1", "fields": {"id": "1"}},
                    "Incident::2": {"code": 0, "class": "Incident", "key": "2", "fields": {"id": "2"}},
                },
            }
        )

        total = await itop.count(Collection.INCIDENT, datetime(2026, 3, 1, 8, tzinfo=timezone.utc))

        assert total == 2
        request = httpx_mock.get_request()
        assert request.url.params["version"] == "1.3"
        query = _query(request)
        assert query["operation"] == "core/get"
        assert query["output_fields"] == "id"
        assert query["key"] == "SELECT Incident WHERE last_update > '2026-03-01 08:00:00'"

    @pytest.mark.asyncio
    async def test_count_with_no_objects(self, itop, httpx_mock: HTTPXMock):
        httpx_mock.add_response(json={"code": 0, "message": "Found: 0", "objects": None})

        assert await itop.count(Collection.CHANGE) == 0

    @pytest.mark.asyncio
    async def test_fetch_page_maps_records(self, itop, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            json={
                "code": 0,
                "message": "",
                "objects": {
                    "Incident::42": {
                        "key": "42",
                        "fields": {
                            "ref": "I-000042",
                            "title": "VPN down",
                            "description": "<p>Tunnel dropped</p>",
                            "status": "resolved",
                            "priority": "1",
                            "team_id_friendlyname": "Network",
                            "service_name": "Remote Access",
                            "last_update": "2026-03-02 10:15:00",
                            "public_log": {
                                "entries": [
                                    {"date": "2026-03-02 10:00:00", "user_login": "ops", "message": "Rebooted"}
                                ]
                            },
                        },
                    }
                },
            }
        )

        page = await itop.fetch_page(Collection.INCIDENT, page=3, limit=500)

        query = _query(httpx_mock.get_request())
        assert (query["page"], query["limit"]) == (3, 500)
        assert query["key"] == "SELECT Incident"
        assert (page.page, page.limit) == (3, 500)
        record = page.records[0]
        assert record.record_id == "42"
        assert record.reference == "I-000042"
        assert record.priority == "1"
        assert record.team == "Network"
        assert record.service == "Remote Access"
        assert record.updated_at == datetime(2026, 3, 2, 10, 15, tzinfo=timezone.utc)
        assert [entry.message for entry in record.log_entries] == ["Rebooted"]

    @pytest.mark.asyncio
    async def test_fetch_change_page(self, itop, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            json={
                "code": 0,
                "objects": {
                    "NormalChange::7": {
                        "key": "7",
                        "fields": {
                            "ref": "C-000007",
                            "title": "Firewall upgrade",
                            "finalclass": "NormalChange",
                            "outage": "yes",
                            "fallback": "Restore previous image",
                            "supervisor_id_friendlyname": "Ada",
                            "private_log": {"entries": []},
                        },
                    }
                },
            }
        )

        page = await itop.fetch_page(Collection.CHANGE, page=1, limit=50)

        record = page.records[0]
        assert record.collection == Collection.CHANGE
        assert record.change_type == "NormalChange"
        assert record.outage == "yes"
        assert record.fallback == "Restore previous image"
        assert record.supervisor == "Ada"
        assert record.updated_at is None

    @pytest.mark.asyncio
    async def test_api_error_code_raises(self, itop, httpx_mock: HTTPXMock):
        httpx_mock.add_response(json={"code": 1, "message": "Error: No user logged in"})

        with pytest.raises(SourceError, match="No user logged in"):
            await itop.count(Collection.INCIDENT)

    @pytest.mark.asyncio
    async def test_http_error_raises(self, itop, httpx_mock: HTTPXMock):
        httpx_mock.add_response(status_code=502)

        with pytest.raises(SourceError):
            await itop.fetch_page(Collection.INCIDENT, page=1, limit=10)
