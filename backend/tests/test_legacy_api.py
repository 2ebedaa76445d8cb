"""
DoorCast Backend — Legacy Doorbell Route Tests
================================================

What:  Tests for POST /ping, POST /upload, GET /images, GET /images/id/{id}.
Why:   Deployed firmware still calls these paths with these exact bodies.
"""

import base64
import uuid
from unittest.mock import patch

import pytest

from app.config import settings


class TestLegacyUpload:
    @pytest.mark.asyncio
    async def test_ping_records_button_press(self, test_client, store, registry):
        subscriber = registry.register()

        response = await test_client.post("/ping")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert (await store.get(uuid.UUID(body["id"]))).kind == "button_press"
        assert (await subscriber.next_message())["type"] == "doorbell"

    @pytest.mark.asyncio
    async def test_upload_reads_content_type_from_bytes(self, test_client, sample_image_bytes):
        response = await test_client.post(
            "/upload",
            json={"filename": "porch.JPG", "data": base64.b64encode(sample_image_bytes).decode()},
        )

        assert response.status_code == 200
        event_id = response.json()["id"]
        detail = (await test_client.get(f"/images/id/{event_id}")).json()
        assert detail["content_type"] == "image/jpeg"
        assert detail["filename"] == "porch.JPG"
        assert base64.b64decode(detail["data"]) == sample_image_bytes

    @pytest.mark.asyncio
    async def test_upload_ignores_misleading_filename(self, test_client, sample_png_bytes):
        """A PNG named porch.jpg is stored as a PNG."""
        response = await test_client.post(
            "/upload",
            json={"filename": "porch.jpg", "data": base64.b64encode(sample_png_bytes).decode()},
        )

        assert response.status_code == 200
        detail = (await test_client.get(f"/images/id/{response.json()['id']}")).json()
        assert detail["content_type"] == "image/png"

    @pytest.mark.asyncio
    async def test_upload_accepts_camel_case_content_type(self, test_client, sample_png_bytes):
        response = await test_client.post(
            "/upload",
            json={
                "filename": "still",
                "data": base64.b64encode(sample_png_bytes).decode(),
                "contentType": "image/png",
            },
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_upload_ignores_unrelated_fields(self, test_client, sample_image_bytes):
        """Older firmware sends extra keys; /upload forwards only the ones it knows."""
        response = await test_client.post(
            "/upload",
            json={
                "filename": "porch.jpg",
                "data": base64.b64encode(sample_image_bytes).decode(),
                "firmware": "1.2.0",
            },
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{"filename": "porch.jpg"}, {"data": "aGVsbG8="}, {"filename": "", "data": "aGVsbG8="}],
    )
    async def test_upload_missing_fields(self, test_client, store, body):
        response = await test_client.post("/upload", json=body)

        assert response.status_code == 400
        assert response.json()["message"] == "Missing fields"
        assert await store.count() == 0


class TestLegacyRead:
    @pytest.mark.asyncio
    async def test_images_lists_only_images_newest_first(self, test_client, sample_image_bytes):
        encoded = base64.b64encode(sample_image_bytes).decode()
        first = (await test_client.post("/upload", json={"filename": "a.jpg", "data": encoded})).json()
        await test_client.post("/ping")
        second = (await test_client.post("/upload", json={"filename": "b.jpg", "data": encoded})).json()

        response = await test_client.get("/images")

        assert response.status_code == 200
        assert [e["id"] for e in response.json()] == [second["id"], first["id"]]
        assert response.headers["X-Total-Count"] == "2"

    @pytest.mark.asyncio
    async def test_images_limit(self, test_client, sample_image_bytes):
        encoded = base64.b64encode(sample_image_bytes).decode()
        for name in ("a.jpg", "b.jpg", "c.jpg"):
            await test_client.post("/upload", json={"filename": name, "data": encoded})

        response = await test_client.get("/images", params={"limit": 2})

        assert [e["filename"] for e in response.json()] == ["c.jpg", "b.jpg"]

    @pytest.mark.asyncio
    async def test_images_without_limit_returns_every_image(self, test_client, sample_image_bytes):
        encoded = base64.b64encode(sample_image_bytes).decode()
        names = [f"{n}.jpg" for n in range(5)]
        for name in names:
            await test_client.post("/upload", json={"filename": name, "data": encoded})

        with patch.object(settings, "list_max_limit", 2):
            response = await test_client.get("/images")

        assert [e["filename"] for e in response.json()] == list(reversed(names))
        assert response.headers["X-Total-Count"] == "5"

    @pytest.mark.asyncio
    async def test_image_not_found(self, test_client):
        response = await test_client.get(f"/images/id/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"
