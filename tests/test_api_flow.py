import json

from fastapi.testclient import TestClient

from telemetry_store.config import settings
from telemetry_store.db import Base, engine
from telemetry_store.main import app
from telemetry_store.service import build_service
from telemetry_store.storage import LocalChunkStorage

AUTH_HEADERS = {"X-API-Key": "dev-key"}

CAPTURE = {
    "session_info": {
        "track": "Barcelona",
        "date_start": "2025-12-23T21:04:24",
        "car_model": "bmw_m4_gt3",
        "session_type": 2,
        "laps_total": 2,
        "session_best_lap": 103512,
    },
    "laps": [{"lap": 1, "time_ms": 104001}, {"lap": 2, "time_ms": 103512}],
}


def _reset_state(monkeypatch, tmp_path) -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    service = build_service(
        storage=LocalChunkStorage(str(tmp_path), settings.document_size_limit_bytes),
        config=settings.model_copy(update={"chunk_size_bytes": 32}),
    )
    monkeypatch.setattr(app.state, "service", service)


def _files(*items: tuple[str, bytes]) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("files", (name, data, "application/json")) for name, data in items]


def test_upload_list_get_and_fetch_payload_flow(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    data = json.dumps(CAPTURE).encode("utf-8")
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        upload = client.post("/v1/sessions", files=_files(("race.json", data), ("race-again.json", data)))
        assert upload.status_code == 200, upload.text
        body = upload.json()
        assert body["counts"] == {"ok": 1, "duplicate": 1, "error": 0}
        first, second = body["results"]
        assert first["status"] == "ok"
        assert first["meta"]["track"] == "Barcelona"
        assert first["meta"]["session_category"] == "race"
        assert first["document"] == CAPTURE
        assert second["status"] == "duplicate"
        assert second["session_id"] == first["session_id"]
        session_id = first["session_id"]

        listing = client.get("/v1/sessions")
        assert listing.status_code == 200
        sessions = listing.json()["sessions"]
        assert [item["session_id"] for item in sessions] == [session_id]
        assert sessions[0]["summary"]["best_lap_ms"] == 103512
        assert sessions[0]["chunk_count"] > 1

        record = client.get(f"/v1/sessions/{session_id}")
        assert record.status_code == 200
        assert record.json()["meta"]["car"] == "bmw_m4_gt3"

        payload = client.get(f"/v1/sessions/{session_id}/payload")
        assert payload.status_code == 200
        assert payload.json() == {"session_id": session_id, "document": CAPTURE}


def test_batch_with_bad_file_reports_per_file_results(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        upload = client.post(
            "/v1/sessions",
            params={"include_document": "false"},
            files=_files(
                ("a.json", json.dumps({"track": "A"}).encode()),
                ("notes.txt", b"hello"),
                ("c.json", json.dumps({"track": "C"}).encode()),
            ),
        )
        assert upload.status_code == 200, upload.text
        body = upload.json()
        assert [item["status"] for item in body["results"]] == ["ok", "error", "ok"]
        assert body["results"][1]["error_code"] == "validation_error"
        assert body["results"][0]["document"] is None

        listing = client.get("/v1/sessions", params={"limit": 1})
        assert len(listing.json()["sessions"]) == 1
        assert len(client.get("/v1/sessions").json()["sessions"]) == body["counts"]["ok"]


def test_unknown_and_foreign_sessions_are_not_found(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    monkeypatch.setattr("telemetry_store.auth.settings.api_key_mappings", "dev-key:dev-user,other-key:other-user")
    with TestClient(app) as client:
        upload = client.post("/v1/sessions", files=_files(("mine.json", b'{"track":"Mine"}')), headers=AUTH_HEADERS)
        session_id = upload.json()["results"][0]["session_id"]

        missing = client.get("/v1/sessions/does-not-exist/payload", headers=AUTH_HEADERS)
        assert missing.status_code == 404
        envelope = missing.json()
        assert envelope["error_code"] == "not_found"
        assert envelope["session_id"] == "does-not-exist"
        assert envelope["request_id"]

        foreign = client.get(f"/v1/sessions/{session_id}", headers={"X-API-Key": "other-key"})
        assert foreign.status_code == 404
        assert client.get("/v1/sessions", headers={"X-API-Key": "other-key"}).json()["sessions"] == []


def test_missing_chunk_is_reported_as_corrupt_payload(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        upload = client.post("/v1/sessions", files=_files(("race.json", json.dumps(CAPTURE).encode())))
        session_id = upload.json()["results"][0]["session_id"]
        storage = app.state.service.storage
        storage.delete_key(storage.chunk_key("dev-user", session_id, 1))

        response = client.get(f"/v1/sessions/{session_id}/payload")
        assert response.status_code == 500
        assert response.json()["error_code"] == "corrupt_payload"

        assert client.get(f"/v1/sessions/{session_id}").status_code == 200


def test_requests_without_credentials_are_rejected(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    with TestClient(app) as client:
        response = client.get("/v1/sessions")
        assert response.status_code == 401
        assert response.json()["error_code"] == "missing_credentials"

        invalid = client.get("/v1/sessions", headers={"X-API-Key": "wrong"})
        assert invalid.status_code == 403


def test_health_version_and_metrics(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}

        version = client.get("/version")
        assert version.status_code == 200
        assert version.json()["app_name"] == settings.app_name
        assert version.headers["X-TSS-App-Version"] == settings.app_version

        client.post("/v1/sessions", files=_files(("m.json", b'{"track":"Metrics"}')), headers=AUTH_HEADERS)
        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert 'session_uploads_total{status="ok"} 1.0' in metrics.text
        assert "http_request_duration_seconds" in metrics.text


def test_bulk_payload_read_reports_corrupt_session_and_loads_the_rest(monkeypatch, tmp_path, caplog) -> None:
    _reset_state(monkeypatch, tmp_path)
    caplog.set_level("INFO", logger="tss.audit")
    captures = [
        {**CAPTURE, "session_info": {**CAPTURE["session_info"], "track": track}} for track in ("Spa", "Monza", "Imola")
    ]
    with TestClient(app) as client:
        client.headers.update(AUTH_HEADERS)
        upload = client.post(
            "/v1/sessions",
            files=_files(*[(f"{index}.json", json.dumps(capture).encode()) for index, capture in enumerate(captures)]),
        )
        session_ids = [result["session_id"] for result in upload.json()["results"]]
        storage = app.state.service.storage
        storage.delete_key(storage.chunk_key("dev-user", session_ids[1], 0))

        response = client.get("/v1/sessions/payloads")
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["loaded"] == 2
        assert body["failed"] == 1
        items = {item["session_id"]: item for item in body["items"]}
        assert set(items) == set(session_ids)
        assert items[session_ids[0]]["document"] == captures[0]
        assert items[session_ids[2]]["document"] == captures[2]
        assert items[session_ids[0]]["file_name"] == "0.json"
        assert items[session_ids[1]]["error_code"] == "corrupt_payload"
        assert items[session_ids[1]]["document"] is None

        limited = client.get("/v1/sessions/payloads", params={"limit": 1}).json()
        assert len(limited["items"]) == 1

    audits = [json.loads(record.message) for record in caplog.records if record.name == "tss.audit"]
    assert any(event.get("action") == "session_bulk_read" and event.get("failed") == 1 for event in audits)


def test_bulk_payload_read_without_sessions_is_empty(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    with TestClient(app) as client:
        response = client.get("/v1/sessions/payloads", headers=AUTH_HEADERS)
        assert response.status_code == 200
        assert response.json() == {"items": [], "loaded": 0, "failed": 0}


def test_shutdown_closes_service_and_restart_reopens_it(monkeypatch, tmp_path) -> None:
    _reset_state(monkeypatch, tmp_path)
    service = app.state.service
    with TestClient(app) as client:
        assert not service.executor.closed
        client.post("/v1/sessions", files=_files(("a.json", b'{"track":"A"}')), headers=AUTH_HEADERS)
    assert service.executor.closed

    with TestClient(app) as client:
        assert not service.executor.closed
        upload = client.post("/v1/sessions", files=_files(("b.json", b'{"track":"B"}')), headers=AUTH_HEADERS)
        assert upload.json()["counts"] == {"ok": 1, "duplicate": 0, "error": 0}
    assert service.executor.closed
