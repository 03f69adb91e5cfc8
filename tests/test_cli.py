"""Tests for CLI commands"""

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from typer.testing import CliRunner

from cli.main import app
from filevault.v1.core.exceptions import NotFoundError
from filevault.v1.infra.jobs.schemas import JobStatsResponse


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


@pytest.fixture
def mock_database():
    database = Mock()
    database.close = AsyncMock()
    with patch("cli.main.open_database", return_value=database):
        yield database


@pytest.fixture
def mock_service(mock_database):
    service = Mock()
    with patch("cli.main.JobCreationService", return_value=service):
        yield service


def sample_job(**overrides):
    now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    values = dict(
        id=17,
        owner_id=1,
        file_id=3,
        job_type="ocr",
        status="dlq",
        priority=5,
        attempts=3,
        max_attempts=3,
        next_attempt_at=None,
        locked_by=None,
        locked_at=None,
        depends_on_job_id=None,
        output_data={"error_code": "S3_NOT_FOUND"},
        error_message="S3_NOT_FOUND: object missing",
        created_at=now,
        updated_at=now,
        completed_at=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestJobCommands:
    """Test job queue commands"""

    def test_enqueue(self, runner, mock_service, mock_database):
        mock_service.create_job = AsyncMock(return_value=42)

        result = runner.invoke(app, ["enqueue", "1", "3", "ocr", "--priority", "2"])

        assert result.exit_code == 0
        assert "Job 42" in result.stdout
        mock_service.create_job.assert_awaited_once()
        assert mock_service.create_job.await_args.kwargs["priority"] == 2
        mock_database.close.assert_awaited_once()

    def test_enqueue_unknown_file(self, runner, mock_service):
        mock_service.create_job = AsyncMock(side_effect=NotFoundError("File not found: 3"))

        result = runner.invoke(app, ["enqueue", "1", "3", "ocr"])

        assert result.exit_code == 1
        assert "File not found" in result.stdout

    def test_enqueue_rejects_unknown_type(self, runner, mock_service):
        result = runner.invoke(app, ["enqueue", "1", "3", "transcode"])
        assert result.exit_code != 0

    def test_show(self, runner, mock_service):
        mock_service.get_job = AsyncMock(return_value=sample_job())

        result = runner.invoke(app, ["show", "17"])

        assert result.exit_code == 0
        assert "Job 17" in result.stdout
        assert "S3_NOT_FOUND" in result.stdout

    def test_stats(self, runner, mock_service):
        mock_service.get_job_stats = AsyncMock(
            return_value=JobStatsResponse(
                total_jobs=3,
                by_status={"pending": 2, "dlq": 1},
                by_type={"ocr": 3},
                queue_depth=2,
                dead_letter=1,
                stuck_jobs=0,
            )
        )

        result = runner.invoke(app, ["stats"])

        assert result.exit_code == 0
        assert "Queue depth" in result.stdout

    def test_dlq(self, runner, mock_service):
        mock_service.list_dead_letter_jobs = AsyncMock(return_value=[sample_job()])

        result = runner.invoke(app, ["dlq", "--owner-id", "1"])

        assert result.exit_code == 0
        assert "Dead Letter Queue" in result.stdout
        mock_service.list_dead_letter_jobs.assert_awaited_once_with(owner_id=1, limit=50)

    def test_dlq_empty(self, runner, mock_service):
        mock_service.list_dead_letter_jobs = AsyncMock(return_value=[])

        result = runner.invoke(app, ["dlq"])

        assert result.exit_code == 0
        assert "empty" in result.stdout

    def test_reconcile(self, runner, mock_database):
        reconciler = Mock()
        reconciler.reconcile_missing_jobs = AsyncMock(return_value=4)
        with patch("cli.main.JobReconciler", return_value=reconciler):
            result = runner.invoke(app, ["reconcile"])

        assert result.exit_code == 0
        assert "Created 4 missing ocr job(s)" in result.stdout

    def test_worker_refuses_when_disabled(self, runner):
        with patch("cli.main.settings") as settings:
            settings.worker_enabled = False
            result = runner.invoke(app, ["worker"])

        assert result.exit_code == 1
        assert "disabled" in result.stdout
