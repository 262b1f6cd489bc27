"""Tests for the HTTP endpoints"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from hmaptiles.server.imports import imports_router
from hmaptiles.server.tiles import tiles_router
from hmaptiles.services.importer import HmapImportService
from hmaptiles.services.locks import ImportLockService
from hmaptiles.settings import settings


@pytest.fixture
def client(monkeypatch, tiles, quota, offline_fetcher_factory, tenant, storage):
    monkeypatch.setattr(settings, "storage_path", storage)

    app = FastAPI()
    app.include_router(imports_router)
    app.include_router(tiles_router)

    app.quota = quota
    app.tiles = tiles
    app.locks = ImportLockService(cooldown_seconds=300.0)
    app.importer = HmapImportService(
        tiles=tiles, quota=quota, fetcher_factory=offline_fetcher_factory, locks=app.locks
    )

    with TestClient(app) as client:
        yield client


def upload(client, tenant, data, mode="create-new"):
    return client.post(
        f"/tenants/{tenant}/imports",
        params={"mode": mode},
        files={"file": ("export.hmap", data, "application/octet-stream")},
    )


class TestImports:
    def test_upload_imports_in_background(self, client, tenant, storage, hmap):
        for x in range(2):
            hmap.grid(x + 1, 1, x, 0)

        response = upload(client, tenant, hmap.build())

        assert response.status_code == 202
        assert (storage / "hmap-temp" / response.json()["upload"]).exists()

        status = client.get(f"/tenants/{tenant}/imports/status").json()
        assert status["is_importing"] is False
        assert status["last_was_successful"] is True
        assert status["can_import"] is False

        tile = client.get(f"/tenants/{tenant}/maps/1/0/1_0.png")
        assert tile.status_code == 200
        assert tile.headers["content-type"] == "image/png"
        assert tile.content.startswith(b"\x89PNG")

        assert client.get(f"/tenants/{tenant}/maps/1/6/0_0.png").status_code == 200

    def test_second_upload_waits_for_cooldown(self, client, tenant, hmap):
        data = hmap.grid(1, 1, 0, 0).build()

        assert upload(client, tenant, data).status_code == 202

        response = upload(client, tenant, data)
        assert response.status_code == 409
        assert response.json()["detail"].startswith("Please wait")
        assert int(response.headers["Retry-After"]) > 0

    def test_unknown_tenant(self, client, hmap):
        assert upload(client, "nobody", hmap.build()).status_code == 404
        assert client.get("/tenants/nobody/imports/status").status_code == 404


class TestTiles:
    def test_missing_tile(self, client, tenant):
        assert client.get(f"/tenants/{tenant}/maps/1/0/0_0.png").status_code == 404

    def test_invalid_zoom(self, client, tenant):
        assert client.get(f"/tenants/{tenant}/maps/1/7/0_0.png").status_code == 400

    def test_rebuild(self, client, tiles, tenant):
        response = client.post(f"/tenants/{tenant}/rebuild", params={"max_tiles": 10})

        assert response.status_code == 200
        assert response.json() == {"rebuilt": 0, "remaining": 0}
