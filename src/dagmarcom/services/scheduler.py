"""APScheduler-based maintenance jobs: retention cleanup and inbox polling."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dagmarcom.config import SchedulerConfig
from dagmarcom.log import get_logger
from dagmarcom.storage.models import utcnow

if TYPE_CHECKING:
    from dagmarcom.messenger.email_adapter import EmailService
    from dagmarcom.storage.audit import AuditLog
    from dagmarcom.storage.conversation_store import ConversationStore

logger = get_logger(__name__)

CLEANUP_JOB_ID = "retention_cleanup"
EMAIL_JOB_ID = "email_inbox"


async def run_retention_cleanup(
    store: ConversationStore,
    audit: AuditLog,
    retention_days: int,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Delete logs, queue rows and idle sessions older than the retention period."""
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    deleted = await store.purge_expired(cutoff)
    deleted["logs"] = await audit.purge_expired(cutoff)
    logger.info("cleanup_done", cutoff=cutoff.isoformat(), **deleted)
    return deleted


class SchedulerService:
    """Background maintenance scheduler using APScheduler."""

    def __init__(self, config: SchedulerConfig):
        self._config = config
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)

    async def start(self) -> None:
        self._scheduler.start()
        logger.info("scheduler_started", timezone=self._config.timezone)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler finishes shutting down on the next loop turn.
            await asyncio.sleep(0)
            logger.info("scheduler_stopped")

    async def health_check(self) -> bool:
        return self._scheduler.running

    def add_cron_job(
        self,
        cron_expr: str,
        callback: Callable[..., Coroutine[Any, Any, Any]],
        job_id: str,
        **kwargs: Any,
    ) -> str:
        """Add a cron-based recurring job. Returns the job ID."""
        parts = cron_expr.split()
        trigger = CronTrigger(
            minute=parts[0] if len(parts) > 0 else "*",
            hour=parts[1] if len(parts) > 1 else "*",
            day=parts[2] if len(parts) > 2 else "*",
            month=parts[3] if len(parts) > 3 else "*",
            day_of_week=parts[4] if len(parts) > 4 else "*",
        )
        self._scheduler.add_job(callback, trigger, id=job_id, kwargs=kwargs, replace_existing=True)
        logger.info("cron_job_added", job_id=job_id, cron=cron_expr)
        return job_id

    def add_interval_job(
        self,
        minutes: int,
        callback: Callable[..., Coroutine[Any, Any, Any]],
        job_id: str,
        **kwargs: Any,
    ) -> str:
        """Add a fixed-interval job that never overlaps itself. Returns the job ID."""
        trigger = IntervalTrigger(minutes=minutes)
        self._scheduler.add_job(
            callback,
            trigger,
            id=job_id,
            kwargs=kwargs,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("interval_job_added", job_id=job_id, minutes=minutes)
        return job_id

    def schedule_cleanup(self, store: ConversationStore, audit: AuditLog, retention_days: int) -> str:
        return self.add_cron_job(
            self._config.cleanup_cron,
            self._cleanup_job,
            job_id=CLEANUP_JOB_ID,
            store=store,
            audit=audit,
            retention_days=retention_days,
        )

    def schedule_email_polling(self, email_service: EmailService, minutes: int) -> str:
        return self.add_interval_job(
            minutes, self._email_job, job_id=EMAIL_JOB_ID, email_service=email_service
        )

    @staticmethod
    async def _cleanup_job(store: ConversationStore, audit: AuditLog, retention_days: int) -> None:
        try:
            await run_retention_cleanup(store, audit, retention_days)
        except Exception as e:
            logger.error("cleanup_failed", error=str(e))

    @staticmethod
    async def _email_job(email_service: EmailService) -> None:
        try:
            await email_service.process_inbox()
        except Exception as e:
            logger.error("email_processing_failed", error=str(e))

    def list_jobs(self) -> list[dict[str, Any]]:
        """List all scheduled jobs."""
        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": str(job.next_run_time) if job.next_run_time else None,
                    "trigger": str(job.trigger),
                }
            )
        return jobs
