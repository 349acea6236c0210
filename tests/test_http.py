"""Tests for the FastAPI binding, driven through httpx."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from gallery import Photo, Photographer, add
from main import create_app
from restful import RouterOptions
from restful.router import status_code_for


@pytest_asyncio.fixture
async def client(database: AsyncEngine) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(models=[Photographer, Photo], options=RouterOptions(endpoint="/api"))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client: httpx.AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_root_lists_models(client: httpx.AsyncClient) -> None:
    resp = await client.get("/")
    assert resp.json()["models"] == ["Photo", "Photographer"]


@pytest.mark.asyncio
async def test_create_then_fetch(client: httpx.AsyncClient) -> None:
    created = await client.post("/api/photos", json={"name": "my lovely photo"})
    assert created.status_code == 201
    photo = created.json()["data"]

    fetched = await client.get(f"/api/photos/{photo['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["name"] == "my lovely photo"
    # Timestamps are serialized as ISO-8601 text.
    assert isinstance(fetched.json()["data"]["created_at"], str)


@pytest.mark.asyncio
async def test_list_with_query_string(client: httpx.AsyncClient) -> None:
    for i in range(1, 6):
        await add(Photo, name=f"phototest{i}")
    await add(Photo, name="other")

    resp = await client.get(
        "/api/Photos",
        params={
            "where": json.dumps({"name": {"$like": "phototest%"}}),
            "order": "name DESC",
            "offset": "1",
            "limit": "2",
        },
    )

    body = resp.json()
    assert resp.status_code == 200
    assert [row["name"] for row in body["data"]] == ["phototest4", "phototest3"]
    assert (body["count"], body["offset"], body["limit"]) == (5, 1, 2)


@pytest.mark.asyncio
async def test_update_and_delete(client: httpx.AsyncClient) -> None:
    photo = await add(Photo, name="a lovely photo")

    resp = await client.patch(f"/api/Photos/{photo.id}", json={"name": "yet another name"})
    assert resp.json()["data"]["name"] == "yet another name"

    resp = await client.delete(f"/api/Photos/{photo.id}")
    assert resp.status_code == 200
    assert resp.json() == {"status": "success"}

    resp = await client.get(f"/api/Photos/{photo.id}")
    assert resp.status_code == 404
    assert resp.json()["data"]["error"] == "not_found"


@pytest.mark.asyncio
async def test_association_routes(client: httpx.AsyncClient) -> None:
    photographer = await add(Photographer, name="Doctor Who")
    photo = await add(Photo, name="wondercat", photographer_id=photographer.id)

    resp = await client.get(f"/api/photos/{photo.id}/photographer")
    assert resp.json()["data"]["name"] == "Doctor Who"

    resp = await client.delete(f"/api/photos/{photo.id}/photographer")
    assert resp.status_code == 200

    resp = await client.get(f"/api/photos/{photo.id}")
    assert resp.json()["data"]["photographer_id"] is None


@pytest.mark.asyncio
async def test_error_status_codes(client: httpx.AsyncClient) -> None:
    assert (await client.get("/api/Albums")).status_code == 404
    assert (await client.get("/api/Photos/abc")).status_code == 400
    assert (await client.get("/api/Photos", params={"limit": "-1"})).status_code == 400

    resp = await client.post("/api/Photos", content=b"{nope", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["data"]["error"] == "bad_request"

    resp = await client.post("/api/Photos", json=["not", "an", "object"])
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_percent_encoded_segments_are_decoded_once(client: httpx.AsyncClient) -> None:
    resp = await client.get("/api/Photos/1%2525")

    assert resp.status_code == 400
    assert "'1%25'" in resp.json()["data"]["message"]

    photo = await add(Photo, name="wondercat")
    resp = await client.get(f"/api/Photos/{photo.id}/photo%2525grapher")

    assert resp.status_code == 404
    assert "'photo%25grapher'" in resp.json()["data"]["message"]


@pytest.mark.asyncio
async def test_conflict_status(client: httpx.AsyncClient) -> None:
    photo = await add(Photo, name="taken")

    resp = await client.post("/api/Photos", json={"id": photo.id, "name": "again"})

    assert resp.status_code == 409


def test_status_code_mapping() -> None:
    assert status_code_for("POST", {"status": "success", "data": {}}) == 201
    assert status_code_for("GET", {"status": "success", "data": []}) == 200
    assert status_code_for("GET", {"status": "error", "data": {"error": "routing"}}) == 404
    assert status_code_for("GET", {"status": "error", "data": {"error": "data_layer"}}) == 500
    assert status_code_for("GET", {"status": "error", "data": {"error": "mystery"}}) == 500
