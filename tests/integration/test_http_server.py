"""
Integration tests for the HTTP API.

Tests cover:
- Health and record listing
- Triggering exports and the single-flight 409
- Selection exports, with and without claiming
- Downloading a pending archive and reporting its outcome
- Error responses
"""

import io
import tempfile
import zipfile
from datetime import datetime, timezone

import pytest
from aiohttp.test_utils import TestClient, TestServer

from reimburse.export_server.api import create_http_app
from reimburse.export_server.config import HttpConfig
from reimburse.export_server.delivery import InMemoryDeliveryChannel, LocalShareChannel
from reimburse.export_server.export import ExportCoordinator
from reimburse.export_server.store import ClaimStatus, RecordStore

WHEN = datetime(2025, 11, 12, 9, 30, tzinfo=timezone.utc)


class TestHttpApi:
    """Integration tests for the aiohttp application."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return RecordStore(data_dir, wal_mode=False)

    @pytest.fixture
    def channel(self):
        return InMemoryDeliveryChannel()

    @pytest.fixture
    def coordinator(self, store, channel):
        return ExportCoordinator(store, channel)

    @pytest.mark.asyncio
    async def test_health(self, store, coordinator):
        await store.initialize()
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.get("/v1/health")
            assert resp.status == 200
            assert await resp.json() == {"status": "ok", "active_jobs": 0}

    @pytest.mark.asyncio
    async def test_list_records(self, store, coordinator):
        await store.initialize()
        open_record = await store.create_record(
            project_code="ACME", note="Taxi", date=WHEN, amount=12.5, invoice_image=b"img"
        )
        await store.create_record(
            project_code="ACME", note="Lunch", date=WHEN, status=ClaimStatus.CLAIMED
        )

        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.get("/v1/records")
            assert len((await resp.json())["records"]) == 2

            resp = await client.get("/v1/records", params={"status": "unclaimed"})
            (record,) = (await resp.json())["records"]
            assert record["record_id"] == open_record.record_id
            assert record["status"] == "Yet to Claim"
            assert record["amount"] == 12.5
            assert record["has_invoice_image"] is True
            assert record["has_payment_image"] is False

            resp = await client.get("/v1/records", params={"status": "paid"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_claim_export_round_trip(self, store, channel, coordinator):
        """Trigger, download, report delivered, records become claimed."""
        await store.initialize()
        record = await store.create_record(project_code="ACME", note="Taxi", date=WHEN)

        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post("/v1/exports/claim")
            assert resp.status == 202
            job = await resp.json()
            assert job["record_ids"] == [record.record_id]
            job_id = job["job_id"]

            await channel.wait_for_request()

            resp = await client.post("/v1/exports/claim")
            assert resp.status == 409
            assert (await resp.json())["state"] == "delivering"

            resp = await client.get(f"/v1/exports/{job_id}")
            assert (await resp.json())["state"] == "delivering"

            resp = await client.get(f"/v1/exports/{job_id}/archive")
            assert resp.status == 200
            assert resp.headers["Content-Type"] == "application/zip"
            assert 'filename="reimbursements.zip"' in resp.headers["Content-Disposition"]
            with zipfile.ZipFile(io.BytesIO(await resp.read())) as zf:
                assert zf.namelist()[0] == "reimbursements.csv"

            resp = await client.post(f"/v1/exports/{job_id}/outcome", json={"outcome": "delivered"})
            assert resp.status == 200
            body = await resp.json()
            assert body["state"] == "committed"
            assert body["commit"] == {"ok": True, "updated": 1, "error": None}

        assert (await store.get_record(record.record_id)).status is ClaimStatus.CLAIMED

    @pytest.mark.asyncio
    async def test_cancelled_outcome(self, store, channel, coordinator):
        await store.initialize()
        record = await store.create_record(project_code="ACME", note="Taxi", date=WHEN)

        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            job_id = (await (await client.post("/v1/exports/claim")).json())["job_id"]
            await channel.wait_for_request()

            resp = await client.post(f"/v1/exports/{job_id}/outcome", json={"outcome": "CANCELLED"})
            assert (await resp.json())["state"] == "discarded"

            # Archive is gone once the delivery is resolved
            resp = await client.get(f"/v1/exports/{job_id}/archive")
            assert resp.status == 404

        assert (await store.get_record(record.record_id)).status is ClaimStatus.UNCLAIMED

    @pytest.mark.asyncio
    async def test_nothing_to_export(self, store, coordinator):
        await store.initialize()
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post("/v1/exports/claim")
            assert resp.status == 204

    @pytest.mark.asyncio
    async def test_record_export(self, store, channel, coordinator):
        await store.initialize()
        record = await store.create_record(project_code="ACME", note="Taxi", date=WHEN)

        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post(f"/v1/records/{record.record_id}/export")
            assert resp.status == 202
            job = await resp.json()
            assert job["scope"] == "record"

            request = await channel.wait_for_request()
            assert request.file_name == "ACME-2025-11-12_0930.zip"

            resp = await client.post(f"/v1/records/{record.record_id}/export")
            assert resp.status == 409

            resp = await client.post(
                f"/v1/exports/{job['job_id']}/outcome", json={"outcome": "delivered"}
            )
            assert (await resp.json())["state"] == "committed"

    @pytest.mark.asyncio
    async def test_selection_export(self, store, channel, coordinator):
        """Selected records are archived and stay unclaimed without claim."""
        await store.initialize()
        first = await store.create_record(project_code="ACME", note="Taxi", date=WHEN)
        second = await store.create_record(project_code="ACME", note="Hotel", date=WHEN)
        other = await store.create_record(project_code="ACME", note="Lunch", date=WHEN)
        selection = [second.record_id, first.record_id]

        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post("/v1/exports/selection", json={"record_ids": selection})
            assert resp.status == 202
            job = await resp.json()
            assert job["scope"] == "selection"
            assert job["claim"] is False
            assert job["record_ids"] == selection

            request = await channel.wait_for_request()
            assert request.file_name == "reimbursements.zip"
            with zipfile.ZipFile(io.BytesIO(request.archive)) as zf:
                assert len(zf.namelist()) == 3

            resp = await client.post("/v1/exports/selection", json={"record_ids": selection})
            assert resp.status == 409

            resp = await client.post(
                f"/v1/exports/{job['job_id']}/outcome", json={"outcome": "delivered"}
            )
            body = await resp.json()
            assert body["state"] == "delivered"
            assert body["commit"] is None

            resp = await client.get("/v1/exports")
            assert [j["job_id"] for j in (await resp.json())["jobs"]] == [job["job_id"]]

        for record in (first, second, other):
            assert (await store.get_record(record.record_id)).status is ClaimStatus.UNCLAIMED

    @pytest.mark.asyncio
    async def test_selection_export_with_claim(self, store, channel, coordinator):
        await store.initialize()
        record = await store.create_record(project_code="ACME", note="Taxi", date=WHEN)
        other = await store.create_record(project_code="ACME", note="Hotel", date=WHEN)

        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post(
                "/v1/exports/selection",
                json={"record_ids": [record.record_id], "claim": True},
            )
            assert resp.status == 202
            job = await resp.json()

            await channel.wait_for_request()
            resp = await client.post(
                f"/v1/exports/{job['job_id']}/outcome", json={"outcome": "delivered"}
            )
            assert (await resp.json())["state"] == "committed"

        assert (await store.get_record(record.record_id)).status is ClaimStatus.CLAIMED
        assert (await store.get_record(other.record_id)).status is ClaimStatus.UNCLAIMED

    @pytest.mark.asyncio
    async def test_bad_selection_requests(self, store, coordinator):
        await store.initialize()
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post("/v1/exports/selection", data="not json")
            assert resp.status == 400

            for body in (
                ["a"],
                {},
                {"record_ids": []},
                {"record_ids": "a"},
                {"record_ids": [1, 2]},
                {"record_ids": [""]},
                {"record_ids": ["a"], "claim": "yes"},
            ):
                resp = await client.post("/v1/exports/selection", json=body)
                assert resp.status == 400, body

            resp = await client.post("/v1/exports/selection", json={"record_ids": ["missing"]})
            assert resp.status == 204

    @pytest.mark.asyncio
    async def test_record_export_missing(self, store, coordinator):
        await store.initialize()
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post("/v1/records/missing/export")
            assert resp.status == 404
            assert "Record not found" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_unknown_job(self, store, coordinator):
        await store.initialize()
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            assert (await client.get("/v1/exports/nope")).status == 404
            assert (await client.get("/v1/exports/nope/archive")).status == 404
            resp = await client.post("/v1/exports/nope/outcome", json={"outcome": "delivered"})
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_bad_outcome_requests(self, store, coordinator):
        await store.initialize()
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.post("/v1/exports/any/outcome", data="not json")
            assert resp.status == 400

            resp = await client.post("/v1/exports/any/outcome", json=["delivered"])
            assert resp.status == 400

            resp = await client.post("/v1/exports/any/outcome", json={"outcome": "lost"})
            assert resp.status == 400
            assert "delivered" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_manual_outcome_needs_memory_channel(self, store, data_dir):
        await store.initialize()
        coordinator = ExportCoordinator(store, LocalShareChannel(data_dir))
        async with TestClient(TestServer(create_http_app(coordinator))) as client:
            resp = await client.get("/v1/exports/any/archive")
            assert resp.status == 409

    @pytest.mark.asyncio
    async def test_cors_headers(self, store, coordinator):
        await store.initialize()
        app = create_http_app(coordinator, HttpConfig(cors_origins=("http://app.test",)))
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/v1/health", headers={"Origin": "http://app.test"})
            assert resp.headers["Access-Control-Allow-Origin"] == "http://app.test"

            resp = await client.get("/v1/health", headers={"Origin": "http://evil.test"})
            assert "Access-Control-Allow-Origin" not in resp.headers

            resp = await client.options("/v1/exports/claim")
            assert resp.status == 200
            assert "POST" in resp.headers["Access-Control-Allow-Methods"]
