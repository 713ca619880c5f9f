from unittest.mock import patch

import pytest


@pytest.fixture
def api(client):
    with patch("app.features.pdf.routes.pdf_jobs.dispatch_pdf_job"):
        yield client


@pytest.fixture
def admin_headers(make_headers):
    return make_headers("admin-1", email="ops@example.com", is_admin=True)


def enqueue(api, headers, project_id):
    return api.post(
        "/api/v1/pdf/jobs",
        json={"project_id": project_id, "template_id": "full-report"},
        headers=headers,
    ).json()["data"]["job_id"]


def test_admin_lists_jobs_with_filters(api, make_headers, admin_headers, worker_auth):
    first = enqueue(api, make_headers("user-1"), "project-1")
    enqueue(api, make_headers("user-2"), "project-2")
    api.post(f"/api/v1/pdf/jobs/{first}/processing", headers=worker_auth)

    response = api.get("/api/v1/admin/pdf-jobs", headers=admin_headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 2
    assert data["page"] == 1

    processing = api.get("/api/v1/admin/pdf-jobs?status=processing", headers=admin_headers).json()["data"]
    assert processing["total"] == 1
    assert processing["jobs"][0]["id"] == first

    by_user = api.get("/api/v1/admin/pdf-jobs?requested_by=user-2", headers=admin_headers).json()["data"]
    assert [job["project_id"] for job in by_user["jobs"]] == ["project-2"]


def test_admin_stats(api, make_headers, admin_headers):
    enqueue(api, make_headers("user-1"), "project-1")
    enqueue(api, make_headers("user-1"), "project-2")

    response = api.get("/api/v1/admin/pdf-jobs/stats", headers=admin_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 2
    assert data["by_status"]["queued"] == 2
    assert data["by_status"]["failed"] == 0


def test_non_admin_is_forbidden(api, user_headers):
    response = api.get("/api/v1/admin/pdf-jobs", headers=user_headers)
    assert response.status_code == 403
    assert response.json()["message"] == "Admin access required"
