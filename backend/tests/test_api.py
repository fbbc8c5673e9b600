"""HTTP surface tests: routing, error mapping and the pending-sync header."""
import json

import pytest
from fastapi.testclient import TestClient

from conftest import BASE_URL, make_mushroom
from fungiscan.core.config import Settings
from fungiscan.core.errors import NetworkError, NotFound, RemoteError, ServerError
from fungiscan.main import create_app, status_for

PINE_RIDGE = {"latitude": 37.1, "longitude": -122.2}


@pytest.fixture
def export_dir(tmp_path):
    return tmp_path / "exports"


@pytest.fixture
def client(tmp_path, backend, reachability, export_dir):
    settings = Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        API_BASE_URL=BASE_URL,
        API_KEY="test-key",
        RECONCILE_INTERVAL_SECONDS=0,
        EVICTION_INTERVAL_SECONDS=0,
        CONNECTIVITY_CACHE_SECONDS=0,
        EXPORT_DIR=str(export_dir),
        LOG_LEVEL="WARNING",
    )
    app = create_app(settings, transport=backend.transport, reachability=reachability)
    with TestClient(app) as test_client:
        yield test_client


def test_status_for_walks_the_error_hierarchy():
    assert status_for(NotFound("x")) == 404
    assert status_for(ServerError(500, "x")) == 502
    assert status_for(NetworkError("x")) == 503
    assert status_for(RemoteError("x")) == 500


class TestHealth:
    def test_health_reports_service_and_pending_count(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Pending-Sync"] == "0"


class TestLocationsApi:
    def test_offline_create_is_accepted_and_counted(self, client, reachability, backend):
        reachability.online = False
        response = client.post("/api/v1/locations/", json={"name": "Pine Ridge", "coordinates": PINE_RIDGE})

        assert response.status_code == 201
        assert response.json()["name"] == "Pine Ridge"
        assert response.headers["X-Pending-Sync"] == "1"
        assert backend.records["locations"] == {}

        pending = client.get("/api/v1/sync/pending").json()
        assert [(p["entity_type"], p["kind"], p["status"]) for p in pending] == [
            ("location", "upsert", "pending")
        ]

    def test_online_create_update_and_delete(self, client, backend):
        created = client.post(
            "/api/v1/locations/",
            json={"name": "Pine Ridge", "notes": "creek", "coordinates": PINE_RIDGE},
        ).json()
        location_id = created["id"]
        assert location_id in backend.records["locations"]

        patched = client.patch(f"/api/v1/locations/{location_id}", json={"notes": "after rain"})
        assert patched.status_code == 200
        assert patched.json()["notes"] == "after rain"
        assert patched.json()["name"] == "Pine Ridge"

        sighting = client.post(
            f"/api/v1/locations/{location_id}/species", json={"speciesName": "Chanterelle"}
        )
        assert sighting.json()["species"] == ["Chanterelle"]

        assert client.delete(f"/api/v1/locations/{location_id}").status_code == 204
        assert location_id not in backend.records["locations"]
        assert client.get("/api/v1/locations/").json() == []

    def test_blank_name_maps_to_422(self, client):
        response = client.post("/api/v1/locations/", json={"name": "  ", "coordinates": PINE_RIDGE})
        assert response.status_code == 422
        assert response.json()["code"] == "FS_422"

    def test_patch_of_unknown_location_is_404(self, client):
        response = client.patch("/api/v1/locations/ghost", json={"name": "Anything"})
        assert response.status_code == 404


class TestReadErrors:
    def test_missing_mushroom_maps_to_404(self, client):
        response = client.get("/api/v1/mushrooms/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "REMOTE_404"

    def test_unreachable_backend_with_empty_cache_is_503(self, client, backend):
        backend.failures[("GET", "/mushrooms")] = "network"
        response = client.get("/api/v1/mushrooms/")
        assert response.status_code == 503
        assert response.json()["error_type"] == "NetworkError"

    def test_backend_5xx_with_empty_cache_is_502(self, client, backend):
        backend.failures[("GET", "/locations")] = 500
        assert client.get("/api/v1/locations/").status_code == 502

    def test_cached_mushroom_survives_an_outage(self, client, backend):
        backend.add("mushrooms", make_mushroom("m1", "Chanterelle", traits=["ridges"]))
        assert client.get("/api/v1/mushrooms/m1").status_code == 200

        backend.failures[("GET", "/mushrooms/m1")] = "network"
        response = client.get("/api/v1/mushrooms/m1")
        assert response.status_code == 200
        assert response.json()["commonName"] == "Chanterelle"

    def test_search_needs_traits(self, client):
        assert client.get("/api/v1/mushrooms/search", params={"traits": " , "}).status_code == 422


class TestIdentificationsApi:
    def test_identify_saves_a_result(self, client, backend):
        backend.add("mushrooms", make_mushroom("m1", "Chanterelle", "Cantharellus cibarius"))
        response = client.post("/api/v1/identifications/identify", json={
            "predictions": [{"label": "Chanterelle", "confidence": 0.91}],
            "imageUrl": "file:///photos/1.jpg",
        })
        assert response.status_code == 201
        body = response.json()
        assert body["identifiedMushroom"]["id"] == "m1"
        assert body["id"] in backend.records["identifications"]

    def test_expert_verification_is_accepted(self, client, backend):
        response = client.post("/api/v1/identifications/ident-1/verify", json={"userQuery": "Gills?"})
        assert response.status_code == 202
        assert backend.verifications == [("ident-1", {"userQuery": "Gills?"})]


class TestSyncApi:
    def test_reconcile_drains_offline_writes(self, client, reachability, backend):
        reachability.online = False
        client.put("/api/v1/preferences/", json={"darkModeEnabled": True})
        reachability.online = True

        report = client.post("/api/v1/sync/reconcile").json()

        assert report["success"] is True
        assert report["remaining"] == 0
        assert backend.preferences["darkModeEnabled"] is True
        assert client.get("/api/v1/sync/status").json()["pending"] == 0

    def test_preferences_default_when_nothing_stored(self, client):
        body = client.get("/api/v1/preferences/").json()
        assert body["id"] == "user_preferences"
        assert body["measurementUnit"] == "metric"

    def test_export_is_confined_to_export_dir(self, client, export_dir):
        response = client.post("/api/v1/sync/export", json={"filename": "../../escape.json"})
        assert response.status_code == 200
        written = export_dir / "escape.json"
        assert response.json()["path"] == str(written)
        assert set(json.loads(written.read_text(encoding="utf-8"))) == {
            "identifications", "locations", "preferences", "exportDate",
        }

    def test_export_rejects_dot_names(self, client):
        assert client.post("/api/v1/sync/export", json={"filename": ".."}).status_code == 422

    def test_storage_and_cache_endpoints(self, client):
        assert client.get("/api/v1/sync/storage").json()["bytes"] > 0
        assert client.delete("/api/v1/sync/cache").json() == {"cleared": True}
        assert client.post("/api/v1/sync/evict", params={"retention_days": 1}).json() == {"evicted": 0}

    def test_user_data_deletion(self, client, backend):
        response = client.delete("/api/v1/sync/user-data")
        assert response.json() == {"local_erased": True, "remote_erased": True}
        assert backend.user_data_deleted
