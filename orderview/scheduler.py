"""
Background job scheduler using APScheduler.

Manages the read model's periodic tasks:
- Projection refresh (every REFRESH_INTERVAL_SECONDS)
- Opaque identifier backfill for new accounts (daily at 3 AM)

Features:
- Job execution history
- Prevents job pile-up (max_instances=1, coalesce=True)
- Graceful shutdown
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from orderview.config import config
from orderview.observability import correlation_context, get_logger
from orderview.refresh import RefreshCoordinator

logger = get_logger(__name__)

SCHEDULER_TIMEZONE = ZoneInfo("UTC")


class JobStatus(Enum):
    """Job execution status."""
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    finished_at: datetime
    status: JobStatus
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class RefreshScheduler:
    """
    Scheduled projection refreshes with monitoring.

    Usage:
        scheduler = RefreshScheduler(service.coordinator)
        await scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        interval_seconds: int = config.refresh.interval_seconds,
    ):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._job_info: Dict[str, JobInfo] = {}
        self._max_history = config.refresh.history_size
        self._started = False

    async def start(self) -> None:
        """Start the scheduler and register all jobs."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._register_jobs()

        self._scheduler.start()
        self._started = True
        logger.info("Refresh scheduler started")

    def _register_jobs(self) -> None:
        self._add_job(
            job_id="projection_refresh",
            name="Projection Refresh",
            description="Rebuild enriched order projections",
            func=self._run_projection_refresh,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
        )

        # Accounts created after the identifier migration have no opaque id
        self._add_job(
            job_id="opaque_id_backfill",
            name="Opaque ID Backfill",
            description="Assign opaque identifiers to accounts lacking one",
            func=self._run_opaque_id_backfill,
            trigger=CronTrigger(hour=3, minute=0),
        )

        logger.info(f"Registered {len(self._job_info)} background jobs")

    def _add_job(self, job_id: str, name: str, description: str, func: Callable, trigger) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._job_info[job_id] = JobInfo(id=job_id, name=name, description=description)
        self._job_history[job_id] = []

    # ═══════════════════════════════════════════════════════════════════════════
    # JOB IMPLEMENTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _run_projection_refresh(self) -> Dict[str, Any]:
        with correlation_context():
            logger.debug("Starting scheduled projection refresh")
            result = await self.coordinator.refresh_all(trigger="schedule")
            logger.debug("Scheduled projection refresh complete", extra={"status": result["status"]})
            return result

    async def _run_opaque_id_backfill(self) -> Dict[str, Any]:
        with correlation_context():
            updated = await self.coordinator.store.backfill_opaque_ids()
            if updated:
                # New mappings change caller resolution for these accounts
                self.coordinator.mark_dirty()
            return {"updated": updated}

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _record(self, event: JobExecutionEvent, status: JobStatus, error: Optional[str] = None) -> None:
        job_id = event.job_id
        if job_id not in self._job_info:
            return

        now = datetime.now(SCHEDULER_TIMEZONE)
        info = self._job_info[job_id]
        info.last_status = status
        if status is not JobStatus.MISSED:
            info.last_run = now
            info.run_count += 1
        if status is JobStatus.FAILED:
            info.error_count += 1
            info.last_error = error

        job = self._scheduler.get_job(job_id) if self._scheduler else None
        if job and job.next_run_time:
            info.next_run = job.next_run_time

        history = self._job_history.setdefault(job_id, [])
        history.append(JobExecution(
            job_id=job_id,
            finished_at=now,
            status=status,
            error=error,
            result=getattr(event, "retval", None),
        ))
        if len(history) > self._max_history:
            self._job_history[job_id] = history[-self._max_history:]

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        self._record(event, JobStatus.SUCCESS)

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        error = str(event.exception) if event.exception else "Unknown error"
        self._record(event, JobStatus.FAILED, error)
        logger.error(f"Job {event.job_id} failed: {error}", extra={"job_id": event.job_id})

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        self._record(event, JobStatus.MISSED)
        logger.warning(f"Job {event.job_id} missed scheduled execution", extra={"job_id": event.job_id})

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Get list of all jobs with their status."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job else "",
                "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "run_count": info.run_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Get execution history for a job, newest first."""
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "finished_at": e.finished_at.isoformat(),
            "status": e.status.value,
            "error": e.error,
        } for e in reversed(history)]

    def shutdown(self, wait: bool = False) -> None:
        """Shutdown the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Refresh scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_scheduler: Optional[RefreshScheduler] = None


async def start_scheduler(coordinator: RefreshCoordinator) -> RefreshScheduler:
    """Start the singleton background scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = RefreshScheduler(coordinator)
    await _scheduler.start()
    return _scheduler


def get_scheduler() -> Optional[RefreshScheduler]:
    return _scheduler


def stop_scheduler() -> None:
    """Stop the background scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown()
        _scheduler = None
