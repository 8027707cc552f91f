from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from ideaboard.main import create_app, is_admin, parse_admin_user_ids, parse_api_tokens

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    db_path = tmp_path / "ideaboard.sqlite3"
    app = create_app(database_path=str(db_path))
    with TestClient(app) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "ideaboard"}


def test_request_id_header_and_metrics_snapshot(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/health")
    not_found = client.get("/missing-endpoint")
    metrics = client.get("/metrics")

    assert not_found.status_code == 404
    assert first.headers.get("x-request-id")
    assert second.headers.get("x-request-id")
    assert first.headers["x-request-id"] != second.headers["x-request-id"]

    body = metrics.json()
    assert body["totals"]["requests"] >= 3
    assert body["totals"]["errors"] >= 1
    assert body["endpoints"]["GET /health"]["count"] >= 2
    assert body["endpoints"]["GET /health"]["latency_ms_avg"] >= 0


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})

    assert response.headers.get("x-request-id") == "manual-request-id"


def test_request_completion_is_logged_as_json(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.INFO, logger="ideaboard.api"):
        client.get("/health", headers={"x-request-id": "logged-request"})

    events = [json.loads(record.getMessage()) for record in caplog.records]
    completed = [event for event in events if event["event"] == "request_complete"]
    assert completed[-1]["request_id"] == "logged-request"
    assert completed[-1]["status_code"] == 200


def test_api_tokens_come_from_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("IDEABOARD_API_TOKENS_JSON", json.dumps({"token-ideas": ["ideas:write"]}))
    monkeypatch.setenv("IDEABOARD_API_KEY", "master-key")
    app = create_app(database_path=str(tmp_path / "env.sqlite3"))
    payload = {"ideas": []}
    with TestClient(app) as client:
        denied = client.post("/ideas", json=payload)
        scoped = client.post("/ideas", json=payload, headers={"x-api-key": "token-ideas"})
        master = client.get("/audit-events", headers={"x-api-key": "master-key"})

    assert denied.status_code == 401
    assert scoped.status_code == 200
    assert master.status_code == 200
    assert {event["status"] for event in master.json()} == {"unauthorized", "ok"}


def test_admin_allow_list_parsing() -> None:
    admins = parse_admin_user_ids(" user_admin , ,user_ops")

    assert admins == frozenset({"user_admin", "user_ops"})
    assert is_admin("user_ops", admins)
    assert not is_admin("user_guest", admins)
    assert not is_admin(None, admins)


def test_parse_api_tokens_rejects_non_object() -> None:
    with pytest.raises(ValueError):
        parse_api_tokens('["token"]')
    assert parse_api_tokens('{"t": "audit:read"}') == {"t": {"audit:read"}}
