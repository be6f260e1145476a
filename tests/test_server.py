from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from notify_scheduler.server import create_app


@pytest.fixture
def client(scheduler):
    with TestClient(create_app(scheduler)) as test_client:
        yield test_client


def test_healthz(client) -> None:
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert "X-Process-Time-Ms" in response.headers


def test_queue_then_stats(client) -> None:
    response = client.post(
        "/notifications",
        json={"user_id": "alice", "notification_type": "streak_milestone", "payload": {"streak": 7}},
    )

    assert response.status_code == 200
    assert response.json()["queued"] is True

    stats = client.get("/stats").json()
    assert stats["total"] == 1
    assert stats["queued"] == 1


def test_refusal_is_a_normal_response(client, oracle) -> None:
    oracle.denied["alice"] = "unsubscribed"

    response = client.post("/notifications", json={"user_id": "alice", "notification_type": "achievement_digest"})

    assert response.status_code == 200
    assert response.json()["queued"] is False
    assert response.json()["reason"] == "PermissionDenied"


def test_unknown_notification_type_is_rejected(client) -> None:
    response = client.post("/notifications", json={"user_id": "alice", "notification_type": "newsletter"})
    assert response.status_code == 422


def test_tick_at_an_explicit_time(client, transport) -> None:
    client.post("/notifications", json={"user_id": "alice", "notification_type": "achievement_digest"})

    response = client.post("/tick", params={"now": "2026-02-02T20:01:00Z"})

    assert response.status_code == 200
    report = response.json()
    assert report["phases"] == ["immediate", "daily_digest"]
    assert report["daily"]["processed"] == 1
    assert len(transport.sent) == 1


def test_trigger_phase(client) -> None:
    response = client.post("/trigger/weekly_generate")

    assert response.status_code == 200
    assert response.json()["queued"] == 2


def test_trigger_unknown_phase(client) -> None:
    assert client.post("/trigger/monthly_newsletter").status_code == 422


def test_status(client) -> None:
    body = client.get("/status").json()

    assert body["day_of_week"] == "Monday"
    assert body["active_phases"] == ["immediate"]
    assert set(body["next_runs"]) == {"immediate", "daily_digest", "weekly_generate", "weekly_send", "inactivity_scan"}


def test_reap(client) -> None:
    response = client.post("/reap")

    assert response.status_code == 200
    assert response.json()["retried"] == 0


def test_routes_refuse_without_a_scheduler(scheduler) -> None:
    app = create_app(scheduler)
    client = TestClient(app)  # no lifespan: nothing fills in app.state.scheduler
    app.state.scheduler = None

    assert client.get("/stats").status_code == 503
