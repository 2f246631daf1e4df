"""
Scheduler — background execution of fallback collection jobs.

Infrastructure layer — uses APScheduler (3.x) BackgroundScheduler so jobs
run in a worker thread while the HTTP service keeps serving requests.

When the gateway has no usable delegation for a client it enqueues a
FallbackJob here. Each job runs once, as soon as possible, through an
injected collector callable wrapped in a LoggingExecutionContext for
structured observability (timing, success/failure logging). The surrounding
application supplies the real legacy collector; the default one only logs
the request.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeAlias

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from railway import ErrorCode, LoggingExecutionContext
from railway.result import Result

from delegation_gateway.domain.masking import mask_details
from delegation_gateway.domain.models import FallbackJob

log = structlog.get_logger()

FallbackCollector: TypeAlias = Callable[[FallbackJob], Result[str]]


def log_only_collector(job: FallbackJob) -> Result[str]:
    """Default collector: records that legacy collection was requested."""
    log.info(
        "fallback.collection_requested",
        job_id=str(job.id),
        client_id=job.client_id,
        jurisdiction=job.jurisdiction_code,
        operation=job.operation,
        reason=job.reason_code,
        parameters=mask_details(job.parameters),
    )
    return Result.success(str(job.id))


def create_scheduler(max_workers: int = 4) -> BackgroundScheduler:
    """
    Create a BackgroundScheduler for one-shot fallback jobs.

    Returns:
        A configured, not yet started BackgroundScheduler (call .start()).
    """
    return BackgroundScheduler(
        executors={"default": {"type": "threadpool", "max_workers": max_workers}},
        job_defaults={"coalesce": False, "max_instances": 1, "misfire_grace_time": None},
        timezone=UTC,
    )


class SchedulerFallbackQueue:
    """
    Implements the FallbackJobQueue port on an APScheduler scheduler.

    `enqueue` adds a date-triggered job that fires immediately and returns its id.
    """

    def __init__(
        self,
        scheduler: BackgroundScheduler,
        collector: FallbackCollector = log_only_collector,
    ) -> None:
        self._scheduler = scheduler
        self._collector = collector

    def enqueue(self, job: FallbackJob) -> Result[str]:
        return Result.from_computation(
            lambda: self._add(job),
            ErrorCode.UNKNOWN_ERROR,
            "Failed to enqueue fallback job",
        ).peek(
            lambda job_id: log.info(
                "fallback.enqueued",
                job_id=job_id,
                jurisdiction=job.jurisdiction_code,
                operation=job.operation,
            )
        )

    def _add(self, job: FallbackJob) -> str:
        scheduled = self._scheduler.add_job(
            self.run,
            trigger=DateTrigger(run_date=datetime.now(UTC)),
            args=(job,),
            id=str(job.id),
            name=f"Fallback {job.operation} {job.jurisdiction_code}",
            replace_existing=False,
        )
        return str(scheduled.id)

    def run(self, job: FallbackJob) -> Result[str]:
        """Execute one fallback job within a logging context and log the outcome."""
        ctx = LoggingExecutionContext(operation=f"Fallback[{job.jurisdiction_code}:{job.operation}]")
        result = ctx.execute(lambda: self._collector(job))
        if result.is_success():
            log.info("fallback.job_completed", job_id=str(job.id))
        else:
            log.error("fallback.job_failed", job_id=str(job.id), failure=str(result.error()))
        return result
