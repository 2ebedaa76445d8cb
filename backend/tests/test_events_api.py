"""
DoorCast Backend — Events API Tests
=====================================

What:  HTTP-level tests for /events, /events/{id}, /admin/events and /health.
Why:   Status codes, headers and error bodies are the contract with device
       firmware and viewer apps.
How:   HTTPX AsyncClient over ASGITransport against a fresh app per test,
       backed by a real SQLite store (see conftest.py).

Test Strategy:
    ✅ Upload PNG (JSON and multipart) → 201 → fetch as JSON and raw bytes
    ✅ Content type sniffed from the bytes; contradicting declarations → 400
    ✅ ETag per representation, If-None-Match → 304
    ✅ Invalid uploads → 400 invalid_input, store unchanged
    ✅ Listing: headers, paging, limit errors
    ✅ Unknown / malformed ids → 404
    ✅ Store failure → 500 store_failure without internals
    ✅ Admin delete only when enabled
"""

import base64
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.exc import OperationalError

from app.config import settings
from app.exceptions import DatabaseError
from app.main import create_app


class TestCreateEvent:
    """Tests for POST /events."""

    @pytest.mark.asyncio
    async def test_upload_png_round_trip(self, test_client, png_upload, sample_png_bytes):
        response = await test_client.post("/events", json=png_upload)

        assert response.status_code == 201
        body = response.json()
        assert body["kind"] == "image"
        assert body["size_bytes"] == len(sample_png_bytes)
        assert body["source_label"] == "front-door"
        assert "data" not in body
        assert response.headers["Location"] == f"/events/{body['id']}"

        detail = await test_client.get(f"/events/{body['id']}")
        assert detail.status_code == 200
        assert base64.b64decode(detail.json()["data"]) == sample_png_bytes

    @pytest.mark.asyncio
    async def test_upload_multipart(self, test_client, sample_image_bytes):
        response = await test_client.post(
            "/events",
            data={"kind": "image", "source_label": "garage"},
            files={"file": ("still.jpg", sample_image_bytes, "image/jpeg")},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["content_type"] == "image/jpeg"
        assert body["filename"] == "still.jpg"

    @pytest.mark.asyncio
    async def test_multipart_octet_stream_part_is_sniffed(self, test_client, sample_png_bytes):
        """Browsers and curl label unknown files application/octet-stream."""
        response = await test_client.post(
            "/events",
            data={"kind": "image"},
            files={"file": ("capture", sample_png_bytes, "application/octet-stream")},
        )

        assert response.status_code == 201
        assert response.json()["content_type"] == "image/png"

    @pytest.mark.asyncio
    async def test_declared_type_contradicting_bytes_is_400(self, test_client, store, sample_png_bytes):
        response = await test_client.post(
            "/events",
            data={"kind": "image"},
            files={"file": ("porch.jpg", sample_png_bytes, "image/jpeg")},
        )

        assert response.status_code == 400
        assert response.json()["details"]["field"] == "content_type"
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_button_press(self, test_client):
        response = await test_client.post("/events", json={"kind": "button_press"})

        assert response.status_code == 201
        assert response.json()["kind"] == "button_press"
        assert response.json()["size_bytes"] == 0

    @pytest.mark.asyncio
    async def test_missing_payload_is_400_and_store_unchanged(self, test_client, store):
        response = await test_client.post("/events", json={"kind": "image", "content_type": "image/png"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_input"
        assert body["details"]["field"] == "data"
        assert body["request_id"]
        assert await store.count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "video"},
            {"kind": "button_press", "data": "aGVsbG8="},
            {"kind": "image", "data": "%%%", "content_type": "image/png"},
            {"kind": "image", "data": "aGVsbG8=", "content_type": "text/html"},
        ],
    )
    async def test_invalid_uploads(self, test_client, store, payload):
        response = await test_client.post("/events", json=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_input"
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_non_json_body(self, test_client):
        response = await test_client.post(
            "/events", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_json_array_body(self, test_client):
        response = await test_client.post("/events", json=[{"kind": "button_press"}])
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_two_file_parts_rejected(self, test_client, sample_image_bytes):
        response = await test_client.post(
            "/events",
            data={"kind": "image"},
            files=[
                ("file", ("a.jpg", sample_image_bytes, "image/jpeg")),
                ("file", ("b.jpg", sample_image_bytes, "image/jpeg")),
            ],
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_oversized_content_length_rejected(self, test_client):
        with patch.object(settings, "max_payload_size", 1024):
            response = await test_client.post(
                "/events",
                json={"kind": "image", "data": base64.b64encode(b"x" * 200_000).decode(), "content_type": "image/png"},
            )

        assert response.status_code == 400
        assert "too large" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_store_failure_is_500_without_internals(self, test_client, services):
        error = DatabaseError(context={"sql": "INSERT INTO events ..."})
        with patch.object(services.store, "commit", AsyncMock(side_effect=error)):
            response = await test_client.post("/events", json={"kind": "button_press"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "store_failure"
        assert "INSERT" not in response.text

    @pytest.mark.asyncio
    async def test_upload_is_broadcast(self, test_client, registry, png_upload):
        subscriber = registry.register()

        response = await test_client.post("/events", json=png_upload)

        message = await subscriber.next_message()
        assert message["type"] == "new_image"
        assert message["data"]["id"] == response.json()["id"]


class TestListEvents:
    """Tests for GET /events."""

    @pytest.mark.asyncio
    async def test_list_newest_first_with_headers(self, test_client, png_upload):
        first = (await test_client.post("/events", json=png_upload)).json()
        second = (await test_client.post("/events", json={"kind": "button_press"})).json()

        response = await test_client.get("/events")

        assert response.status_code == 200
        assert response.headers["X-Total-Count"] == "2"
        assert response.headers["Cache-Control"] == "no-cache"
        body = response.json()
        assert [e["id"] for e in body["events"]] == [second["id"], first["id"]]
        assert body["has_more"] is False
        assert "data" not in body["events"][1]

    @pytest.mark.asyncio
    async def test_paging_with_next_cursor(self, test_client):
        ids = [(await test_client.post("/events", json={"kind": "button_press"})).json()["id"] for _ in range(5)]

        page1 = (await test_client.get("/events", params={"limit": 2})).json()
        page2 = (await test_client.get("/events", params={"limit": 2, "before": page1["next_cursor"]})).json()
        page3 = (await test_client.get("/events", params={"limit": 2, "before": page2["next_cursor"]})).json()

        seen = [e["id"] for page in (page1, page2, page3) for e in page["events"]]
        assert seen == list(reversed(ids))
        assert page3["has_more"] is False
        assert page3["next_cursor"] is None

    @pytest.mark.asyncio
    async def test_kind_filter(self, test_client, png_upload):
        await test_client.post("/events", json=png_upload)
        await test_client.post("/events", json={"kind": "button_press"})

        body = (await test_client.get("/events", params={"kind": "button_press"})).json()

        assert [e["kind"] for e in body["events"]] == ["button_press"]
        assert body["total_count"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["0", "-5", "abc"])
    async def test_bad_limit(self, test_client, limit):
        response = await test_client.get("/events", params={"limit": limit})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_input"

    @pytest.mark.asyncio
    async def test_limit_above_max_is_clamped(self, test_client):
        for _ in range(3):
            await test_client.post("/events", json={"kind": "button_press"})

        with patch.object(settings, "list_max_limit", 2):
            body = (await test_client.get("/events", params={"limit": 1000})).json()

        assert len(body["events"]) == 2
        assert body["has_more"] is True

    @pytest.mark.asyncio
    async def test_bad_cursor(self, test_client):
        response = await test_client.get("/events", params={"before": "not-a-cursor"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_large_list_is_gzipped(self, test_client):
        for _ in range(10):
            await test_client.post("/events", json={"kind": "button_press"})

        response = await test_client.get("/events", headers={"Accept-Encoding": "gzip"})

        assert response.headers["content-encoding"] == "gzip"
        assert len(response.json()["events"]) == 10


class TestGetEvent:
    """Tests for GET /events/{id}."""

    @pytest.mark.asyncio
    async def test_raw_image_by_accept(self, test_client, png_upload, sample_png_bytes):
        event_id = (await test_client.post("/events", json=png_upload)).json()["id"]

        response = await test_client.get(f"/events/{event_id}", headers={"Accept": "image/png"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content == sample_png_bytes
        assert response.headers["Cache-Control"] == "private, max-age=3600"
        assert response.headers["ETag"].startswith('"')

    @pytest.mark.asyncio
    async def test_json_by_default(self, test_client, png_upload):
        event_id = (await test_client.post("/events", json=png_upload)).json()["id"]

        response = await test_client.get(f"/events/{event_id}", headers={"Accept": "*/*"})

        assert response.headers["content-type"].startswith("application/json")
        assert response.json()["checksum"]

    @pytest.mark.asyncio
    async def test_if_none_match_returns_304(self, test_client, png_upload):
        event_id = (await test_client.post("/events", json=png_upload)).json()["id"]
        etag = (await test_client.get(f"/events/{event_id}")).headers["ETag"]

        response = await test_client.get(f"/events/{event_id}", headers={"If-None-Match": etag})

        assert response.status_code == 304
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_etag_differs_per_representation(self, test_client, png_upload, sample_png_bytes):
        event_id = (await test_client.post("/events", json=png_upload)).json()["id"]
        json_etag = (await test_client.get(f"/events/{event_id}")).headers["ETag"]
        raw_etag = (await test_client.get(f"/events/{event_id}", headers={"Accept": "image/png"})).headers["ETag"]

        assert json_etag != raw_etag

        # A cached JSON body does not satisfy a request for the raw image
        response = await test_client.get(
            f"/events/{event_id}", headers={"Accept": "image/png", "If-None-Match": json_etag}
        )
        assert response.status_code == 200
        assert response.content == sample_png_bytes

    @pytest.mark.asyncio
    async def test_button_press_has_no_data(self, test_client):
        event_id = (await test_client.post("/events", json={"kind": "button_press"})).json()["id"]

        body = (await test_client.get(f"/events/{event_id}")).json()

        assert body["kind"] == "button_press"
        assert body["data"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_id", [str(uuid.uuid4()), "not-a-uuid", "12345"])
    async def test_unknown_event_is_404(self, test_client, event_id):
        response = await test_client.get(f"/events/{event_id}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_corrupted_blob_is_500(self, test_client, png_upload, blob_service):
        event_id = (await test_client.post("/events", json=png_upload)).json()["id"]
        for path in blob_service.storage_root.rglob("*.png"):
            path.write_bytes(b"garbage")

        response = await test_client.get(f"/events/{event_id}")

        assert response.status_code == 500
        assert response.json()["error"] == "store_failure"


class TestAdminAndHealth:
    @pytest.mark.asyncio
    async def test_admin_delete_not_mounted_by_default(self, test_client):
        response = await test_client.delete("/admin/events")
        assert response.status_code in (404, 405)

    @pytest.mark.asyncio
    async def test_admin_delete_when_enabled(self, services, store):
        with patch.object(settings, "admin_routes_enabled", True):
            app = create_app(services)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            await client.post("/events", json={"kind": "button_press"})
            await client.post("/events", json={"kind": "button_press"})
            response = await client.delete("/admin/events")

        assert response.status_code == 200
        assert response.json() == {"deleted": 2}
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_health(self, test_client, registry):
        registry.register()

        response = await test_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["live_subscribers"] == 1

    @pytest.mark.asyncio
    async def test_health_reports_unreachable_store(self, test_client, services):
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        with patch.object(services.store, "check_connection", AsyncMock(side_effect=error)):
            response = await test_client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["database"] == "disconnected"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, test_client):
        response = await test_client.get("/events", headers={"X-Request-ID": "porch-cam-42"})
        assert response.headers["X-Request-ID"] == "porch-cam-42"

    @pytest.mark.asyncio
    async def test_rate_limit(self, test_client):
        with patch.object(settings, "rate_limit_requests", 2):
            statuses = [(await test_client.get("/events")).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]
