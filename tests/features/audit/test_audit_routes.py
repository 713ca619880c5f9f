from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kombu.exceptions import OperationalError

from app.features.audit.services.crawler_gateway import (
    CrawlerHealth,
    RemoteState,
    RemoteStatus,
    get_crawler_gateway,
)
from app.platform.utils.clock import utcnow


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.health_check = AsyncMock(
        return_value=CrawlerHealth(available=True, checked_at=utcnow(), latency_ms=4.0)
    )
    gateway.start_audit = AsyncMock(return_value="abc")
    gateway.poll_status = AsyncMock(return_value=RemoteStatus(state=RemoteState.RUNNING, progress=20))
    gateway.fetch_results = AsyncMock(return_value={"score": 88})
    return gateway


@pytest.fixture
def api(client, test_app, gateway):
    test_app.dependency_overrides[get_crawler_gateway] = lambda: gateway
    with patch("app.features.audit.routes.audit.track_audit_job") as track_task:
        client.track_task = track_task
        yield client


def request_audit(api, headers, project_id="project-1"):
    return api.post("/api/v1/audits", json={"project_id": project_id}, headers=headers)


def test_request_audit_admitted(api, user_headers):
    response = request_audit(api, user_headers)

    assert response.status_code == 202
    payload = response.json()
    assert payload["status"] == "success"
    assert payload["data"]["status"] == "running"
    assert payload["data"]["remote_job_id"] == "abc"
    api.track_task.delay.assert_called_once_with(payload["data"]["id"])


def test_request_audit_survives_broker_outage(api, user_headers):
    api.track_task.delay.side_effect = OperationalError("broker unreachable")

    response = request_audit(api, user_headers)

    assert response.status_code == 202
    job_id = response.json()["data"]["id"]
    status = api.get(f"/api/v1/audits/{job_id}/status", headers=user_headers).json()["data"]
    assert status["status"] == "running"
    assert status["remote_job_id"] == "abc"

    retry = request_audit(api, user_headers)
    assert retry.status_code == 409
    quota = api.get("/api/v1/audits/quota", headers=user_headers).json()["data"]
    assert quota["used"] == 1


def test_request_audit_requires_authentication(api):
    response = api.post("/api/v1/audits", json={"project_id": "project-1"})
    assert response.status_code in (401, 403)
    assert response.json()["status"] == "error"


def test_request_audit_rejects_bad_token(api):
    response = request_audit(api, {"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"


def test_request_audit_validates_body(api, user_headers):
    response = api.post("/api/v1/audits", json={"options": {}}, headers=user_headers)
    assert response.status_code == 422
    assert response.json()["message"] == "Validation failed"


def test_duplicate_audit_returns_conflict(api, user_headers):
    assert request_audit(api, user_headers).status_code == 202

    response = request_audit(api, user_headers)

    assert response.status_code == 409
    assert response.json()["data"]["reason"] == "audit_in_progress"


def test_quota_exhaustion_returns_429(api, user_headers):
    for i in range(3):
        assert request_audit(api, user_headers, f"project-{i}").status_code == 202

    response = request_audit(api, user_headers, "project-3")

    assert response.status_code == 429
    assert response.json()["data"]["reason"] == "limit_reached"
    assert api.track_task.delay.call_count == 3


def test_unhealthy_crawler_returns_503(api, gateway, user_headers):
    gateway.health_check.return_value = CrawlerHealth(
        available=False, checked_at=utcnow(), latency_ms=5000.0, error="timed out"
    )

    response = request_audit(api, user_headers)

    assert response.status_code == 503
    assert response.json()["data"]["reason"] == "service_unavailable"
    api.track_task.delay.assert_not_called()


def test_status_and_sync_refresh(api, gateway, user_headers):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    response = api.get(f"/api/v1/audits/{job_id}/status", headers=user_headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "running"
    gateway.poll_status.assert_not_awaited()

    gateway.poll_status.return_value = RemoteStatus(state=RemoteState.COMPLETED, progress=100)
    response = api.get(f"/api/v1/audits/{job_id}/status?sync=true", headers=user_headers)

    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["results"] == {"score": 88}
    assert data["result_ref"] is not None


def test_status_of_someone_elses_job_is_not_found(api, user_headers, make_headers):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    response = api.get(f"/api/v1/audits/{job_id}/status", headers=make_headers("user-2"))

    assert response.status_code == 404
    assert response.json()["status"] == "error"


def test_list_audits(api, user_headers):
    request_audit(api, user_headers, "project-a")
    request_audit(api, user_headers, "project-b")

    response = api.get("/api/v1/audits?per_page=1", headers=user_headers)

    data = response.json()["data"]
    assert data["total"] == 2
    assert data["pages"] == 2
    assert len(data["jobs"]) == 1

    filtered = api.get("/api/v1/audits?project_id=project-a", headers=user_headers).json()["data"]
    assert filtered["total"] == 1
    assert filtered["jobs"][0]["project_id"] == "project-a"


def test_quota_endpoint(api, user_headers):
    request_audit(api, user_headers)

    response = api.get("/api/v1/audits/quota", headers=user_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tier"] == "free"
    assert data["used"] == 1
    assert data["limit"] == 3
    assert data["remaining"] == 2


def test_crawler_health_endpoint(api, gateway):
    response = api.get("/api/v1/crawler/health")
    assert response.status_code == 200
    assert response.json()["data"]["available"] is True

    gateway.health_check.return_value = CrawlerHealth(
        available=False, checked_at=utcnow(), latency_ms=12.5, error="connection refused"
    )
    response = api.get("/api/v1/crawler/health")

    assert response.status_code == 503
    assert response.json()["data"]["error"] == "connection refused"


def send_webhook(api, headers, job_id, status, project_id="project-1", **extra):
    body = {"audit_id": job_id, "project_id": project_id, "status": status, **extra}
    return api.post("/api/v1/audits/webhook", json=body, headers=headers)


def test_webhook_completes_audit_with_pushed_result(api, gateway, user_headers, crawler_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    response = send_webhook(api, crawler_auth, job_id, "completed", result={"score": 97})

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "completed"
    status = api.get(f"/api/v1/audits/{job_id}/status", headers=user_headers).json()["data"]
    assert status["results"] == {"score": 97}
    assert status["progress"] == 100
    gateway.fetch_results.assert_not_awaited()
    gateway.poll_status.assert_not_awaited()


def test_webhook_without_result_fetches_it(api, gateway, user_headers, crawler_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    response = send_webhook(api, crawler_auth, job_id, "complete")

    assert response.json()["data"]["status"] == "completed"
    gateway.fetch_results.assert_awaited_once_with("abc")


def test_duplicate_and_late_webhooks_leave_terminal_job_alone(api, user_headers, crawler_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]
    first = send_webhook(api, crawler_auth, job_id, "completed", result={"score": 97}).json()["data"]

    duplicate = send_webhook(api, crawler_auth, job_id, "completed", result={"score": 12})
    late_failure = send_webhook(api, crawler_auth, job_id, "failed", error="worker crashed")

    for response in (duplicate, late_failure):
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "completed"
        assert data["result_ref"] == first["result_ref"]
        assert data["error_message"] is None
    status = api.get(f"/api/v1/audits/{job_id}/status", headers=user_headers).json()["data"]
    assert status["results"] == {"score": 97}


def test_webhook_failure_settles_job(api, user_headers, crawler_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    response = send_webhook(api, crawler_auth, job_id, "error", error="robots.txt disallows crawling")
    late_success = send_webhook(api, crawler_auth, job_id, "completed", result={"score": 50})

    assert response.json()["data"]["status"] == "failed"
    assert response.json()["data"]["error_message"] == "robots.txt disallows crawling"
    assert late_success.json()["data"]["status"] == "failed"
    assert late_success.json()["data"]["result_ref"] is None
    # The project is free for a new audit.
    assert request_audit(api, user_headers).status_code == 202


def test_webhook_progress_keeps_job_running(api, user_headers, crawler_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    response = send_webhook(api, crawler_auth, job_id, "processing", progress=45)

    data = response.json()["data"]
    assert data["status"] == "running"
    assert data["progress"] == 45
    assert data["last_polled_at"] is not None


def test_webhook_requires_crawler_token(api, user_headers, worker_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    for headers in (user_headers, worker_auth):
        response = send_webhook(api, headers, job_id, "completed", result={"score": 1})
        assert response.status_code == 401

    status = api.get(f"/api/v1/audits/{job_id}/status", headers=user_headers).json()["data"]
    assert status["status"] == "running"


def test_webhook_for_unknown_audit_is_not_found(api, user_headers, crawler_auth):
    job_id = request_audit(api, user_headers).json()["data"]["id"]

    assert send_webhook(api, crawler_auth, "missing", "completed").status_code == 404
    assert send_webhook(api, crawler_auth, job_id, "completed", project_id="project-9").status_code == 404


def test_webhook_validates_body(api, crawler_auth):
    response = api.post("/api/v1/audits/webhook", json={"status": "completed"}, headers=crawler_auth)
    assert response.status_code == 422
