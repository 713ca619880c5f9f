from unittest.mock import AsyncMock, patch

from app.features.audit.workers import tasks


def test_track_task_runs_tracker():
    with patch.object(tasks, "_track", AsyncMock(return_value="completed")) as track:
        result = tasks.track_audit_job("job-1")

    assert result == {"job_id": "job-1", "status": "completed"}
    track.assert_awaited_once_with("job-1", None)


def test_reconcile_task_reports_count():
    with patch.object(tasks, "_reconcile", AsyncMock(return_value=["job-1", "job-2"])) as reconcile:
        result = tasks.reconcile_running_audits(limit=50)

    assert result == {"reconciled": 2, "job_ids": ["job-1", "job-2"]}
    reconcile.assert_awaited_once_with(50)
