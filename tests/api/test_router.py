"""HTTP tests for the scraper routes.

The intake service, gate status and database session are replaced through
``app.dependency_overrides``; requests go through httpx's ASGITransport.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from bulk_scraper.api.dependencies import get_gate_status, get_scrape_service
from bulk_scraper.api.main import create_app
from bulk_scraper.core.database import get_db
from bulk_scraper.core.exceptions import FlowSubmissionError, InvalidSubmissionError
from bulk_scraper.core.schemas.scraping import GateStatusRead, ScrapeAccepted

HEADERS = {"X-API-Key": "test-api-key"}
SCRAPE_ID = uuid.UUID("7f4c1f7e-8a55-4a6c-9a53-0d7c1a2f9a10")


@pytest.fixture
def service() -> MagicMock:
    svc = MagicMock()
    svc.initiate_scraping.return_value = ScrapeAccepted(
        scrape_id=SCRAPE_ID,
        total_urls=3,
        new_urls=2,
        invalid_urls=1,
        duplicate_urls=0,
        batches=1,
    )
    return svc


@pytest.fixture
def db_session() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def client(service: MagicMock, db_session: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()

    async def _override_get_db() -> AsyncGenerator[AsyncMock, None]:
        yield db_session

    app.dependency_overrides[get_scrape_service] = lambda: service
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gate_status] = lambda: GateStatusRead(
        paused=True,
        memory_percent=91.5,
        cpu_percent=20.0,
        queues={"execution": {"waiting": 4, "active": 2, "reserved": 1}},
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.mark.asyncio
class TestAuth:
    async def test_missing_key_is_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/scraper/bulk", json={"urls": ["http://a.test/1"]})

        assert response.status_code == 401

    async def test_wrong_key_is_rejected(self, client: AsyncClient) -> None:
        response = await client.get("/scraper/status", headers={"X-API-Key": "nope"})

        assert response.status_code == 401

    async def test_health_is_public(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
class TestBulkSubmission:
    async def test_accepted(self, client: AsyncClient, service: MagicMock) -> None:
        urls = ["http://a.test/1", "http://a.test/2", "badurl"]

        response = await client.post(
            "/scraper/bulk", json={"urls": urls, "tag": "t1"}, headers=HEADERS
        )

        assert response.status_code == 202
        body = response.json()
        assert body["scrape_id"] == str(SCRAPE_ID)
        assert body["invalid_urls"] == 1
        assert body["message"] == "Scraping initiated successfully"
        service.initiate_scraping.assert_called_once_with(urls, "t1")

    async def test_empty_url_list_is_unprocessable(
        self, client: AsyncClient, service: MagicMock
    ) -> None:
        response = await client.post("/scraper/bulk", json={"urls": []}, headers=HEADERS)

        assert response.status_code == 422
        service.initiate_scraping.assert_not_called()

    async def test_invalid_submission(self, client: AsyncClient, service: MagicMock) -> None:
        service.initiate_scraping.side_effect = InvalidSubmissionError("At least one URL is required")

        response = await client.post(
            "/scraper/bulk", json={"urls": ["http://a.test/1"]}, headers=HEADERS
        )

        assert response.status_code == 422

    async def test_queue_failure_is_service_unavailable(
        self, client: AsyncClient, service: MagicMock
    ) -> None:
        service.initiate_scraping.side_effect = FlowSubmissionError(
            "broker down", scrape_id=str(SCRAPE_ID), submitted_batches=0
        )

        response = await client.post(
            "/scraper/bulk", json={"urls": ["http://a.test/1"]}, headers=HEADERS
        )

        assert response.status_code == 503
        assert str(SCRAPE_ID) in response.json()["detail"]

    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.post(
            "/scraper/bulk",
            json={"urls": ["http://a.test/1"]},
            headers={**HEADERS, "X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
class TestReads:
    async def test_status(self, client: AsyncClient) -> None:
        response = await client.get("/scraper/status", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["paused"] is True
        assert body["queues"]["execution"]["waiting"] == 4

    async def test_unknown_scrape_is_not_found(
        self, client: AsyncClient, db_session: AsyncMock
    ) -> None:
        db_session.get.return_value = None

        response = await client.get(f"/scraper/{uuid.uuid4()}", headers=HEADERS)

        assert response.status_code == 404

    async def test_scrape_progress(self, client: AsyncClient, db_session: AsyncMock) -> None:
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        db_session.get.return_value = SimpleNamespace(
            id=SCRAPE_ID,
            status="processing",
            tag="t1",
            urls=["http://a.test/1", "http://a.test/2", "badurl"],
            expected_batches=1,
            completed_batches=0,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        rows = MagicMock()
        rows.all.return_value = [("processing", 2), ("invalid", 1)]
        db_session.execute.return_value = rows

        response = await client.get(f"/scraper/{SCRAPE_ID}", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["total_urls"] == 3
        assert body["transaction_counts"] == {"processing": 2, "invalid": 1}
        assert body["progress"] == 0

    async def test_malformed_id_is_unprocessable(self, client: AsyncClient) -> None:
        response = await client.get("/scraper/not-a-uuid", headers=HEADERS)

        assert response.status_code == 422
