"""
Scheduler service for the identity quality daemons.

Uses APScheduler to run the detection, suspicion control and resolution
daemons on fixed intervals. Each daemon is a single job that never overlaps
with itself.
"""
import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from identity_quality.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

DUPLICATES_JOB_ID = "identity_duplicates_daemon"
SUSPICION_CONTROL_JOB_ID = "suspicion_control_daemon"
RESOLUTION_JOB_ID = "identity_duplicates_resolution_daemon"

# Global scheduler instance
_scheduler: Optional[BlockingScheduler] = None


def get_scheduler() -> BlockingScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BlockingScheduler(
            job_defaults={"max_instances": 1, "coalesce": True}
        )
    return _scheduler


def reset_scheduler() -> None:
    """Drop the global scheduler; the next get_scheduler() builds a new one."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None


def run_daemon_job(name: str, runner: Callable[[], Dict[str, int]]) -> Optional[Dict[str, int]]:
    """
    Execute one daemon tick.

    Called by APScheduler; an error is logged so the job stays scheduled.
    """
    try:
        return runner()
    except Exception as e:
        logger.error(f"Error running daemon {name}: {e}", exc_info=True)
        return None


def register_daemon_job(job_id: str, name: str, runner: Callable[[], Dict[str, int]], interval_minutes: int) -> bool:
    """
    Register a daemon with the scheduler.

    Args:
        job_id: Stable job identifier
        name: Display name
        runner: Zero-argument callable running one sweep
        interval_minutes: Minutes between two runs

    Returns:
        True if registered successfully
    """
    scheduler = get_scheduler()

    try:
        # Remove existing job if any
        if scheduler.get_job(job_id):
            scheduler.remove_job(job_id)

        scheduler.add_job(
            run_daemon_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            args=[name, runner],
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        logger.info(f"Registered {name} to run every {interval_minutes} minutes")
        return True

    except Exception as e:
        logger.error(f"Failed to register {name}: {e}")
        return False


def register_daemon_jobs(
    runners: Dict[str, Callable[[], Dict[str, int]]],
    settings: Optional[Settings] = None,
) -> int:
    """
    Register every daemon found in runners, keyed by job id.

    Returns:
        Number of jobs registered
    """
    settings = settings or get_settings()
    intervals = {
        DUPLICATES_JOB_ID: ("Identity Duplicates Daemon", settings.duplicates_interval_minutes),
        SUSPICION_CONTROL_JOB_ID: ("Suspicion Control Daemon", settings.suspicion_control_interval_minutes),
        RESOLUTION_JOB_ID: ("Duplicates Resolution Daemon", settings.resolution_interval_minutes),
    }
    registered = 0
    for job_id, runner in runners.items():
        if job_id not in intervals:
            logger.warning(f"Unknown daemon job {job_id}, not scheduled")
            continue
        name, minutes = intervals[job_id]
        if register_daemon_job(job_id, name, runner, minutes):
            registered += 1
    return registered


def start_scheduler():
    """Start the scheduler; blocks until it is shut down."""
    scheduler = get_scheduler()
    if not scheduler.running:
        logger.info("Scheduler starting")
        scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status() -> Dict[str, Any]:
    """Get current scheduler status."""
    scheduler = get_scheduler()

    jobs = []
    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger),
        })

    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": jobs,
    }
