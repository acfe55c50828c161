"""
Unit tests for identity_quality/core/scheduler_service.py

Tests cover daemon job registration, interval triggers, unknown job ids,
status reporting and error isolation of a daemon tick.

All tests are fully offline (the scheduler is never started).
"""
import pytest
from unittest.mock import MagicMock

from identity_quality.core.config import Settings
from identity_quality.core.scheduler_service import (
    DUPLICATES_JOB_ID,
    RESOLUTION_JOB_ID,
    SUSPICION_CONTROL_JOB_ID,
    get_scheduler,
    get_scheduler_status,
    register_daemon_job,
    register_daemon_jobs,
    reset_scheduler,
    run_daemon_job,
)


@pytest.fixture(autouse=True)
def fresh_scheduler():
    reset_scheduler()
    yield
    reset_scheduler()


def _settings(**overrides):
    values = dict(
        database_url="sqlite:///:memory:",
        duplicates_interval_minutes=30,
        suspicion_control_interval_minutes=2,
        resolution_interval_minutes=45,
    )
    values.update(overrides)
    return Settings(**values)


class TestRunDaemonJob:

    @pytest.mark.unit
    def test_returns_runner_stats(self):
        runner = MagicMock(return_value={"processed": 3})

        assert run_daemon_job("daemon", runner) == {"processed": 3}
        runner.assert_called_once_with()

    @pytest.mark.unit
    def test_error_is_logged_not_raised(self):
        runner = MagicMock(side_effect=RuntimeError("database gone"))

        assert run_daemon_job("daemon", runner) is None


class TestRegisterDaemonJobs:

    @pytest.mark.unit
    def test_registers_known_jobs_with_their_interval(self):
        runners = {
            DUPLICATES_JOB_ID: MagicMock(),
            SUSPICION_CONTROL_JOB_ID: MagicMock(),
            RESOLUTION_JOB_ID: MagicMock(),
        }

        assert register_daemon_jobs(runners, _settings()) == 3

        job = get_scheduler().get_job(SUSPICION_CONTROL_JOB_ID)
        assert job.trigger.interval.total_seconds() == 120
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.args[1] is runners[SUSPICION_CONTROL_JOB_ID]

    @pytest.mark.unit
    def test_unknown_job_is_skipped(self):
        registered = register_daemon_jobs(
            {"mystery_daemon": MagicMock(), RESOLUTION_JOB_ID: MagicMock()}, _settings()
        )

        assert registered == 1
        assert get_scheduler().get_job("mystery_daemon") is None

    @pytest.mark.unit
    def test_reregistering_replaces_job(self):
        first, second = MagicMock(), MagicMock()
        register_daemon_job(DUPLICATES_JOB_ID, "Duplicates", first, 10)
        register_daemon_job(DUPLICATES_JOB_ID, "Duplicates", second, 20)

        jobs = get_scheduler().get_jobs()
        assert len(jobs) == 1
        assert jobs[0].args[1] is second
        assert jobs[0].trigger.interval.total_seconds() == 1200


@pytest.mark.unit
def test_status_lists_registered_jobs():
    register_daemon_job(RESOLUTION_JOB_ID, "Duplicates Resolution Daemon", MagicMock(), 45)

    status = get_scheduler_status()

    assert status["running"] is False
    assert status["job_count"] == 1
    assert status["jobs"][0]["id"] == RESOLUTION_JOB_ID
    assert status["jobs"][0]["name"] == "Duplicates Resolution Daemon"
