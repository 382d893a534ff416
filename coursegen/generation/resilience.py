"""Resilience monitor: periodic health classification and automatic recovery."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from coursegen.config import Settings, settings as default_settings
from coursegen.generation.events import AlertType
from coursegen.generation.models import Job, JobStatus, TaskStatus
from coursegen.generation.orchestrator import CourseGenerationOrchestrator

logger = structlog.get_logger(__name__)

MONITOR_SOURCE = "resilience_monitor"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    STALLED = "stalled"
    STUCK = "stuck"
    FAILED = "failed"
    ABANDONED = "abandoned"


class RecommendedAction(str, Enum):
    WAIT = "wait"
    NUDGE = "nudge"
    RECOVER = "recover"
    RESTART = "restart"
    ESCALATE = "escalate"


USER_MESSAGES: dict[HealthState, str] = {
    HealthState.HEALTHY: "Generation is in progress...",
    HealthState.STALLED: "Generation is taking longer than expected. We can try to resume it.",
    HealthState.STUCK: "Generation appears to be stuck. We can try to resume it automatically.",
    HealthState.FAILED: "Generation failed. You can try restarting the process.",
    HealthState.ABANDONED: "Maximum recovery attempts reached. Manual intervention required.",
}


@dataclass
class JobHealthReport:
    job_id: str
    state: HealthState
    action: RecommendedAction
    status: JobStatus
    progress: int
    seconds_since_activity: float
    recovery_attempts: int
    max_recovery_attempts: int
    task_counts: dict[str, int]
    stale_task_ids: list[str]
    message: str
    can_auto_recover: bool
    checked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "action": self.action.value,
            "status": self.status.value,
            "progress": self.progress,
            "seconds_since_activity": round(self.seconds_since_activity, 1),
            "recovery_attempts": self.recovery_attempts,
            "max_recovery_attempts": self.max_recovery_attempts,
            "task_counts": self.task_counts,
            "stale_task_ids": self.stale_task_ids,
            "message": self.message,
            "can_auto_recover": self.can_auto_recover,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class RecoveryResult:
    job_id: str
    attempted: bool
    success: bool
    message: str
    state: HealthState | None = None
    recovery_attempts: int = 0
    reset_task_ids: list[str] = field(default_factory=list)
    exhausted_task_ids: list[str] = field(default_factory=list)
    restarted_dispatch: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "attempted": self.attempted,
            "success": self.success,
            "message": self.message,
            "state": self.state.value if self.state else None,
            "recovery_attempts": self.recovery_attempts,
            "reset_task_ids": self.reset_task_ids,
            "exhausted_task_ids": self.exhausted_task_ids,
            "restarted_dispatch": self.restarted_dispatch,
        }


class ResilienceMonitor:
    """
    Polls live jobs on a fixed interval and acts on their health.

    healthy   recent activity; nothing to do
    stalled   idle past stall_after; nudge the dispatch loop
    stuck     idle past stuck_after or stale running tasks; reset them
    failed    job failed; optionally restart it
    abandoned stuck with recovery attempts exhausted; escalate and stop
    """

    def __init__(
        self,
        orchestrator: CourseGenerationOrchestrator,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.orchestrator = orchestrator
        self.events = orchestrator.events
        self.settings = settings or orchestrator.settings or default_settings
        self.clock = clock or orchestrator.clock
        self.stall_after = timedelta(seconds=self.settings.stall_after_seconds)
        self.stuck_after = timedelta(seconds=self.settings.stuck_after_seconds)
        self.max_recovery_attempts = self.settings.max_recovery_attempts
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    # Classification

    def classify(self, job: Job, now: datetime) -> JobHealthReport:
        idle = now - job.last_activity_at
        stale_before = now - self.stuck_after
        stale = [
            t.id
            for t in job.tasks.values()
            if t.status == TaskStatus.RUNNING and t.last_activity_at < stale_before
        ]
        exhausted = job.recovery_attempts >= self.max_recovery_attempts

        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            state, action = HealthState.HEALTHY, RecommendedAction.WAIT
        elif job.status == JobStatus.FAILED:
            if job.abandoned:
                state, action = HealthState.ABANDONED, RecommendedAction.ESCALATE
            else:
                state, action = HealthState.FAILED, RecommendedAction.RESTART
        elif idle > self.stuck_after or stale:
            if exhausted:
                state, action = HealthState.ABANDONED, RecommendedAction.ESCALATE
            else:
                state, action = HealthState.STUCK, RecommendedAction.RECOVER
        elif idle > self.stall_after:
            state, action = HealthState.STALLED, RecommendedAction.NUDGE
        else:
            state, action = HealthState.HEALTHY, RecommendedAction.WAIT

        counts = {status.value: 0 for status in TaskStatus}
        for task in job.tasks.values():
            counts[task.status.value] += 1

        message = USER_MESSAGES[state]
        if job.status == JobStatus.COMPLETED:
            message = "Generation completed successfully!"
        elif job.status == JobStatus.CANCELLED:
            message = "Generation was cancelled."

        return JobHealthReport(
            job_id=job.id,
            state=state,
            action=action,
            status=job.status,
            progress=job.progress_percentage,
            seconds_since_activity=idle.total_seconds(),
            recovery_attempts=job.recovery_attempts,
            max_recovery_attempts=self.max_recovery_attempts,
            task_counts=counts,
            stale_task_ids=stale,
            message=message,
            can_auto_recover=action in (RecommendedAction.NUDGE, RecommendedAction.RECOVER)
            or (action == RecommendedAction.RESTART and not exhausted),
            checked_at=now,
        )

    def check_job_health(self, job_id: str) -> JobHealthReport | None:
        job = self.orchestrator.get_job_state(job_id)
        if job is None:
            return None
        return self.classify(job, self.clock())

    # Polling

    async def poll_once(self) -> list[JobHealthReport]:
        """Check every live job once and act on the result."""
        reports: list[JobHealthReport] = []
        now = self.clock()
        for job in self.orchestrator.list_live_jobs():
            report = self.classify(job, now)
            reports.append(report)
            try:
                await self._act(job, report)
            except Exception as e:
                logger.error(
                    "Failed to act on job health",
                    job_id=job.id,
                    state=report.state.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self.orchestrator.evict_expired()
        unhealthy = [r for r in reports if r.state != HealthState.HEALTHY]
        if unhealthy:
            logger.info(
                "Monitor poll complete",
                jobs_checked=len(reports),
                unhealthy={r.job_id: r.state.value for r in unhealthy},
            )
        return reports

    async def _act(self, job: Job, report: JobHealthReport) -> None:
        if report.state == HealthState.HEALTHY:
            self.events.resolve_alert(job.id, AlertType.STALL, resolved_by=MONITOR_SOURCE)
            return

        if report.state == HealthState.STALLED:
            self.events.warning(
                job.id,
                "Job stalled: no activity",
                source=MONITOR_SOURCE,
                seconds_since_activity=round(report.seconds_since_activity, 1),
            )
            self.orchestrator.nudge(job.id)
            return

        if report.state == HealthState.STUCK:
            await self._recover(job, report, reason="stuck")
            return

        if report.state == HealthState.ABANDONED:
            if job.abandoned:
                return
            reason = (
                f"Recovery attempts exhausted ({job.recovery_attempts}/"
                f"{self.max_recovery_attempts}); manual intervention required"
            )
            self.events.critical(
                job.id,
                f"Job abandoned: {reason}",
                source=MONITOR_SOURCE,
                alert_type=AlertType.ABANDONED,
                recovery_attempts=job.recovery_attempts,
            )
            await self.orchestrator.abandon_job(job.id, reason)
            return

        if report.state == HealthState.FAILED:
            if (
                self.settings.auto_restart_failed_jobs
                and job.recovery_attempts < self.max_recovery_attempts
            ):
                attempt = await self.orchestrator.record_recovery_attempt(job.id)
                self.events.log_recovery_attempt(
                    job.id, attempt, self.max_recovery_attempts, reason="job failed"
                )
                await self.orchestrator.restart_job(job.id)

    async def _recover(self, job: Job, report: JobHealthReport, reason: str) -> RecoveryResult:
        self.events.error(
            job.id,
            f"Job stuck: no progress for {int(report.seconds_since_activity)}s",
            source=MONITOR_SOURCE,
            alert_type=AlertType.STALL,
            stale_tasks=report.stale_task_ids,
        )
        attempt = await self.orchestrator.record_recovery_attempt(job.id)
        self.events.log_recovery_attempt(job.id, attempt, self.max_recovery_attempts, reason=reason)

        outcome = await self.orchestrator.recover_stale_tasks(
            job.id, stale_before=self.clock() - self.stuck_after
        )
        for task_id in outcome.exhausted_task_ids:
            self.events.log_recovery_failure(
                job.id,
                f"task {task_id} exhausted its attempts",
                task_id=task_id,
            )

        if outcome.recovered:
            self.events.log_recovery_success(
                job.id,
                reset_tasks=outcome.reset_task_ids,
                restarted_dispatch=outcome.restarted_dispatch,
            )
            self.events.resolve_alert(job.id, AlertType.STALL, resolved_by=MONITOR_SOURCE)
            message = "Job resume initiated. The generation process should continue shortly."
        elif outcome.exhausted_task_ids:
            message = "Stale tasks exhausted their attempts."
        else:
            self.orchestrator.nudge(job.id)
            self.events.warning(
                job.id, "Recovery found nothing to reset", source=MONITOR_SOURCE
            )
            message = "Automatic recovery not possible. Please check logs and try manual recovery."

        return RecoveryResult(
            job_id=job.id,
            attempted=True,
            success=outcome.recovered,
            message=message,
            state=report.state,
            recovery_attempts=attempt,
            reset_task_ids=outcome.reset_task_ids,
            exhausted_task_ids=outcome.exhausted_task_ids,
            restarted_dispatch=outcome.restarted_dispatch,
        )

    async def attempt_recovery(self, job_id: str) -> RecoveryResult:
        """Run one recovery on demand, whatever the job's classification."""
        job = self.orchestrator.get_job_state(job_id)
        if job is None:
            return RecoveryResult(job_id, attempted=False, success=False, message="Job not found")

        report = self.classify(job, self.clock())
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return RecoveryResult(
                job_id,
                attempted=False,
                success=False,
                message=f"Job is {job.status.value}; nothing to recover",
                state=report.state,
                recovery_attempts=job.recovery_attempts,
            )
        if job.abandoned or report.recovery_attempts >= self.max_recovery_attempts:
            return RecoveryResult(
                job_id,
                attempted=False,
                success=False,
                message=USER_MESSAGES[HealthState.ABANDONED],
                state=report.state,
                recovery_attempts=job.recovery_attempts,
            )

        if job.status == JobStatus.FAILED:
            attempt = await self.orchestrator.record_recovery_attempt(job_id)
            self.events.log_recovery_attempt(
                job_id, attempt, self.max_recovery_attempts, reason="manual restart"
            )
            restarted = await self.orchestrator.restart_job(job_id)
            success = restarted is not None and restarted.status != JobStatus.FAILED
            if success:
                self.events.log_recovery_success(job_id, restarted=True)
            return RecoveryResult(
                job_id,
                attempted=True,
                success=success,
                message="Job restarted from its last successful phase."
                if success
                else "Failed to restart job.",
                state=report.state,
                recovery_attempts=attempt,
            )

        return await self._recover(job, report, reason="manual")

    # Background loop

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="coursegen-resilience-monitor")
        logger.info(
            "Resilience monitor started",
            interval_seconds=self.settings.monitor_interval_seconds,
            stall_after_seconds=self.settings.stall_after_seconds,
            stuck_after_seconds=self.settings.stuck_after_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Resilience monitor stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(
                    "Monitor poll failed", error=str(e), error_type=type(e).__name__
                )
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.settings.monitor_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
