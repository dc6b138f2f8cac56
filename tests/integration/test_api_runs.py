from __future__ import annotations

from fastapi.testclient import TestClient

from autoapply.api.app import create_app


def test_health() -> None:
    client = TestClient(create_app())
    body = client.get("/health").json()
    assert body == {"status": "ok", "env": "test"}


def test_start_run_and_already_running(make_user) -> None:
    user_id = make_user()
    client = TestClient(create_app())

    resp = client.post("/api/runs", json={"user_id": user_id})
    assert resp.status_code == 201
    run = resp.json()
    assert run["status"] == "RUNNING"
    assert run["applied_count_today"] == 0

    conflict = client.post("/api/runs", json={"user_id": user_id})
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["run_id"] == run["id"]

    status = client.get(f"/api/users/{user_id}/run")
    assert status.status_code == 200
    assert status.json()["id"] == run["id"]

    metrics = client.get("/api/queues/metrics").json()
    assert metrics["discovery"]["PENDING"] == 1
    assert metrics["apply"]["total"] == 0


def test_start_run_for_unknown_user_is_404() -> None:
    client = TestClient(create_app())
    assert client.post("/api/runs", json={"user_id": 999}).status_code == 404
    assert client.get("/api/users/999/run").status_code == 404


def test_stop_run_semantics(make_user) -> None:
    owner = make_user()
    stranger = make_user(email="stranger@example.com")
    client = TestClient(create_app())
    run_id = client.post("/api/runs", json={"user_id": owner}).json()["id"]

    assert client.post("/api/runs/999/stop", json={"user_id": owner}).status_code == 404
    assert client.post(f"/api/runs/{run_id}/stop", json={"user_id": stranger}).status_code == 403

    stopped = client.post(f"/api/runs/{run_id}/stop", json={"user_id": owner})
    assert stopped.status_code == 200
    body = stopped.json()
    assert body["status"] == "STOPPED"
    assert body["kill_switch"] is True
    assert body["last_checkpoint"] == "STOP_REQUESTED"
    assert body["finished_at"] is not None

    assert client.post(f"/api/runs/{run_id}/stop", json={"user_id": owner}).status_code == 409
    assert client.post("/api/runs", json={"user_id": owner}).status_code == 201


def test_logs_and_stats_endpoints(make_user) -> None:
    user_id = make_user()
    client = TestClient(create_app())
    run_id = client.post("/api/runs", json={"user_id": user_id}).json()["id"]
    client.post(f"/api/runs/{run_id}/stop", json={"user_id": user_id})

    logs = client.get("/api/logs", params={"user_id": user_id, "run_id": run_id}).json()
    assert [item["message"] for item in logs] == ["Run stopped by user", "Run started"]
    assert logs[0]["level"] == "WARN"

    warn_only = client.get("/api/logs", params={"user_id": user_id, "level": "WARN"}).json()
    assert len(warn_only) == 1

    paged = client.get("/api/logs", params={"user_id": user_id, "limit": 1, "skip": 1}).json()
    assert [item["message"] for item in paged] == ["Run started"]

    stats = client.get("/api/logs/stats", params={"user_id": user_id}).json()
    assert stats["total"] == 2
    assert stats["by_stage"] == {"SYSTEM": 2}
    assert stats["warn_count"] == 1

    assert client.get("/api/logs").status_code == 422


def test_policy_round_trip(make_user) -> None:
    user_id = make_user()
    client = TestClient(create_app())

    policy = client.get(f"/api/users/{user_id}/policy").json()["policy"]
    policy["blocked_companies"] = ["Acme"]
    policy["min_match_score"] = 55

    updated = client.put(f"/api/users/{user_id}/policy", json=policy)
    assert updated.status_code == 200
    assert client.get(f"/api/users/{user_id}/policy").json()["policy"]["blocked_companies"] == ["Acme"]

    policy["min_match_score"] = 150
    assert client.put(f"/api/users/{user_id}/policy", json=policy).status_code == 422
    assert client.get("/api/users/999/policy").status_code == 404


def test_applications_and_skipped_are_empty_before_processing(make_user) -> None:
    user_id = make_user()
    client = TestClient(create_app())
    assert client.get(f"/api/users/{user_id}/applications").json() == []
    assert client.get(f"/api/users/{user_id}/skipped").json() == []
