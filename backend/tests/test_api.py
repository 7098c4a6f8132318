"""End-to-end tests for the HTTP surface using FastAPI's TestClient."""
import threading

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeLocationSource, FakeRecordStore, make_image_bytes
from forkflow_mobile.core.config import Settings
from forkflow_mobile.main import create_app
from forkflow_mobile.services.container import MobileServices, build_services
from forkflow_mobile.services.file_transfer import FileTransferService
from forkflow_mobile.services.geolocation import Coordinates, GeoLocationProvider, StaticLocationSource
from forkflow_mobile.services.interaction_validator import InteractionValidator
from forkflow_mobile.services.local_storage import InMemoryKeyValueStore
from forkflow_mobile.services.offline_sync import OfflineSyncEngine
from forkflow_mobile.services.telemetry import PerformanceTelemetryCollector

INTERACTION_TYPES = [
    {"id": 1, "key": "in_person", "label": "In Person"},
    {"id": 2, "key": "phone_call", "label": "Phone Call"},
]


def make_services(record_store=None, location_source=None, upload_endpoint=None, upload_transport=None):
    store = InMemoryKeyValueStore()
    telemetry = PerformanceTelemetryCollector(store=store)
    validator = InteractionValidator()
    validator.update_settings(INTERACTION_TYPES)
    return MobileServices(
        store=store,
        telemetry=telemetry,
        geolocation=GeoLocationProvider(source=location_source, store=store, telemetry=telemetry),
        file_transfer=FileTransferService(telemetry=telemetry, transport=upload_transport),
        validator=validator,
        # Start offline with a long debounce so only explicit /sync/run calls replay the queue
        sync_engine=OfflineSyncEngine(
            store=store, record_store=record_store, is_online=False, debounce_seconds=60,
        ),
        upload_endpoint=upload_endpoint,
    )


@pytest.fixture()
def record_store():
    return FakeRecordStore()


@pytest.fixture()
def services(record_store):
    return make_services(
        record_store=record_store,
        location_source=FakeLocationSource(coords=Coordinates(latitude=41.8781, longitude=-87.6298, accuracy=9.0)),
    )


@pytest.fixture()
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


VALID = {"organization_id": 12, "type_id": 2, "subject": "  Spring menu tasting  "}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


class TestInteractionsApi:
    def test_validate(self, client):
        resp = client.post("/api/v1/interactions/validate", json={"type_id": 1})
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_valid"] is False
        assert {e["field"] for e in body["errors"]} == {"organization_id", "subject"}
        assert "GPS_RECOMMENDED" in [w["code"] for w in body["warnings"]]

    def test_validate_mistyped_fields_reports_errors(self, client):
        resp = client.post("/api/v1/interactions/validate", json={**VALID, "type_id": [2], "attachments": 5})
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_valid"] is False
        assert {e["code"] for e in body["errors"]} == {"INVALID_INTERACTION_TYPE", "INVALID_ATTACHMENTS"}

    def test_sanitize(self, client):
        resp = client.post("/api/v1/interactions/sanitize", json=VALID)
        assert resp.json()["subject"] == "Spring menu tasting"
        assert resp.json()["is_completed"] is False

    def test_queue_valid_interaction(self, client, services):
        resp = client.post("/api/v1/interactions/", json={"interaction": VALID})
        assert resp.status_code == 202
        body = resp.json()
        assert body["action_id"].startswith("offline_")
        assert body["pending_actions"] == 1

        offline = client.get("/api/v1/interactions/offline").json()
        assert offline[0]["subject"] == "Spring menu tasting"
        assert offline[0]["_pending_sync"] is True

    def test_queue_invalid_interaction_is_422(self, client, services):
        resp = client.post("/api/v1/interactions/", json={"interaction": {"subject": "x"}})
        assert resp.status_code == 422
        codes = [e["code"] for e in resp.json()["detail"]["errors"]]
        assert "REQUIRED_FIELD_MISSING" in codes
        assert services.sync_engine.get_pending_count() == 0

    def test_delete_needs_record_id(self, client):
        resp = client.post("/api/v1/interactions/", json={"kind": "delete", "interaction": {}})
        assert resp.status_code == 422
        ok = client.post("/api/v1/interactions/", json={"kind": "delete", "interaction": {"id": 4}})
        assert ok.status_code == 202

    def test_attachment_validation_with_preview(self, client):
        png = make_image_bytes(320, 200, fmt="PNG")
        resp = client.post(
            "/api/v1/interactions/attachments/validate",
            files={"file": ("shelf.png", png, "image/png")},
        )
        body = resp.json()
        assert resp.status_code == 200
        assert body["is_valid"] is True
        assert body["icon"] == "image"
        assert body["size"] == len(png)
        assert body["preview_data_uri"].startswith("data:image/jpeg;base64,")

    def test_attachment_validation_rejects_type(self, client):
        resp = client.post(
            "/api/v1/interactions/attachments/validate",
            files={"file": ("export.csv", b"a,b\n1,2", "text/csv")},
        )
        body = resp.json()
        assert body["is_valid"] is False
        assert body["errors"][0]["code"] == "UNSUPPORTED_FILE_TYPE"
        assert body["preview_data_uri"] is None

    def test_upload_without_endpoint_is_503(self, client):
        resp = client.post(
            "/api/v1/interactions/attachments",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        assert resp.status_code == 503

    def test_upload_forwards_to_endpoint(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"fileName": "notes.txt", "url": "https://cdn.test/n"})
        )
        services = make_services(upload_endpoint="https://files.test/upload", upload_transport=transport)
        with TestClient(create_app(services)) as client:
            resp = client.post(
                "/api/v1/interactions/attachments",
                files={"file": ("notes.txt", b"hello", "text/plain")},
            )
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["url"] == "https://cdn.test/n"

    def test_cancel_unknown_upload_is_404(self, client):
        assert client.delete("/api/v1/interactions/attachments/upload_nope").status_code == 404


class TestSyncApi:
    def test_status_and_run(self, client, record_store):
        client.post("/api/v1/interactions/", json={"interaction": VALID})

        status = client.get("/api/v1/sync/status").json()
        assert status == {"is_online": False, "pending_actions": 1, "last_sync": None, "sync_in_progress": False}

        offline_run = client.post("/api/v1/sync/run").json()
        assert offline_run["success"] is False

        client.post("/api/v1/sync/connectivity", json={"is_online": True})
        result = client.post("/api/v1/sync/run").json()

        assert result == {"success": True, "processed": 1, "failed": 0, "errors": []}
        assert record_store.calls[0][0] == "create"
        status = client.get("/api/v1/sync/status").json()
        assert status["pending_actions"] == 0
        assert status["last_sync"] is not None

    def test_pending_and_conflicts(self):
        record_store = FakeRecordStore(fail_ids={8})
        services = make_services(record_store=record_store)
        with TestClient(create_app(services)) as client:
            client.post("/api/v1/interactions/", json={"kind": "delete", "interaction": {"id": 8}})
            assert client.get("/api/v1/sync/conflicts/8").json()["has_conflicts"] is False

            client.post("/api/v1/sync/connectivity", json={"is_online": True})
            client.post("/api/v1/sync/run")

            pending = client.get("/api/v1/sync/pending").json()
            assert pending[0]["retry_count"] == 1
            assert pending[0]["kind"] == "delete"
            assert client.get("/api/v1/sync/conflicts/8").json()["has_conflicts"] is True

    def test_visibility(self, client):
        resp = client.post("/api/v1/sync/visibility", json={"visible": True})
        assert resp.status_code == 200

    def test_clear_offline_data(self, client):
        client.post("/api/v1/interactions/", json={"interaction": VALID})
        resp = client.delete("/api/v1/sync/offline-data")
        assert resp.json()["pending_actions"] == 0
        assert client.get("/api/v1/interactions/offline").json() == []

    def test_state_changes_run_on_the_event_loop_thread(self, client, services):
        threads = []
        services.sync_engine.on_status_change(lambda status: threads.append(threading.current_thread().name))

        client.post("/api/v1/sync/connectivity", json={"is_online": False})
        client.post("/api/v1/interactions/", json={"interaction": VALID})
        client.delete("/api/v1/sync/offline-data")

        assert len(threads) >= 3
        assert len(set(threads)) == 1


class TestLocationApi:
    def test_current_then_cached(self, client):
        resp = client.get("/api/v1/location/current")
        body = resp.json()
        assert body["permission"] == "granted"
        assert body["coordinates"]["latitude"] == 41.8781
        assert body["formatted"] == "41.878100, -87.629800"
        assert body["is_accurate"] is True

        cached = client.get("/api/v1/location/cached")
        assert cached.status_code == 200
        assert cached.json()["longitude"] == -87.6298

    def test_cached_missing_is_404(self, client):
        assert client.get("/api/v1/location/cached").status_code == 404

    def test_no_location_source_is_503(self):
        with TestClient(create_app(make_services())) as client:
            assert client.get("/api/v1/location/current").status_code == 503
            assert client.get("/api/v1/location/permission").json() == {"permission": "denied", "available": False}

    def test_distance(self, client):
        resp = client.post("/api/v1/location/distance", json={
            "origin": {"latitude": 0, "longitude": 0},
            "destination": {"latitude": 1, "longitude": 0},
        })
        assert resp.json()["meters"] == pytest.approx(111_195, rel=0.001)

    def test_distance_rejects_bad_coordinates(self, client):
        resp = client.post("/api/v1/location/distance", json={
            "origin": {"latitude": 95, "longitude": 0},
            "destination": {"latitude": 1, "longitude": 0},
        })
        assert resp.status_code == 422


class TestMetricsApi:
    def test_requests_are_timed(self, client):
        client.post("/api/v1/interactions/validate", json=VALID)
        client.get("/api/v1/sync/status")
        client.get("/health")

        summary = client.get("/api/v1/metrics/summary").json()
        assert summary["api"]["total_calls"] == 2

        everything = client.get("/api/v1/metrics/").json()
        assert {m["endpoint"] for m in everything["api"]} == {
            "/api/v1/interactions/validate",
            "/api/v1/sync/status",
        }

    def test_export_and_clear(self, client):
        client.get("/api/v1/sync/status")
        csv_resp = client.get("/api/v1/metrics/export.csv")
        assert csv_resp.headers["content-type"].startswith("text/csv")
        assert csv_resp.text.splitlines()[0] == "timestamp,category,name,value,unit"
        assert "api_get__api_v1_sync_status" in csv_resp.text

        assert client.delete("/api/v1/metrics/").status_code == 204
        assert client.get("/api/v1/metrics/summary").json()["api"]["total_calls"] == 0


def test_build_services_from_settings(tmp_path):
    settings = Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'field.db'}",
        GPS_FALLBACK_LATITUDE=44.97,
        GPS_FALLBACK_LONGITUDE=-93.26,
        INTERACTION_TYPES=INTERACTION_TYPES,
        SYNC_MAX_RETRIES=5,
    )
    services = build_services(settings, record_store=FakeRecordStore())

    assert isinstance(services.geolocation.source, StaticLocationSource)
    assert set(services.validator.interaction_types) == {1, 2}
    assert services.sync_engine.max_retries == 5
    assert services.upload_endpoint is None
