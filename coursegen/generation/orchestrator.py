"""Course-generation orchestrator.

Owns the live state of every job, runs one dispatch loop per job and applies
worker results. All writes to a job happen under that job's lock; readers
get detached snapshots and never wait on it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal
import uuid

from pydantic import ValidationError
import structlog

from coursegen.config import Settings, settings as default_settings
from coursegen.generation.content import ContentClient, ContentRequest
from coursegen.generation.errors import (
    InvalidJobSpecError,
    JobLimitExceededError,
    PlanningError,
    TaskRetryError,
    classify_error,
    describe_error,
)
from coursegen.generation.events import AlertType, EventLogger
from coursegen.generation.lifecycle import JobResolution, resolve_job_status
from coursegen.generation.models import (
    Job,
    JobStatus,
    PhaseCounts,
    Task,
    TaskStatus,
    utcnow,
)
from coursegen.generation.plan import GenerationPlanner
from coursegen.generation.progress import ProgressCalculator, progress_calculator
from coursegen.generation.schemas import CourseRequest
from coursegen.generation.store import InMemoryJobStore, JobStore, JobSummary

logger = structlog.get_logger(__name__)

DEFAULT_OWNER = "anonymous"


@dataclass
class RecoveryOutcome:
    """What one stale-task recovery pass did to a job."""

    job_id: str
    reset_task_ids: list[str] = field(default_factory=list)
    exhausted_task_ids: list[str] = field(default_factory=list)
    restarted_dispatch: bool = False

    @property
    def recovered(self) -> bool:
        return bool(self.reset_task_ids) or self.restarted_dispatch


@dataclass
class JobStatusView:
    """Status of a job as served to callers, from live or durable state."""

    job_id: str
    source: Literal["live", "durable"]
    status: JobStatus
    progress: int
    phase_breakdown: dict[str, PhaseCounts]
    tasks: list[dict[str, Any]]
    error: str | None
    error_code: str | None
    failed_tasks: list[str]
    abandoned: bool
    recovery_attempts: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> JobStatusView:
        return cls(
            job_id=job.id,
            source="live",
            status=job.status,
            progress=job.progress_percentage,
            phase_breakdown=job.phase_breakdown,
            tasks=[task.to_dict() for task in job.tasks.values()],
            error=job.error,
            error_code=job.error_code,
            failed_tasks=job.failed_task_ids,
            abandoned=job.abandoned,
            recovery_attempts=job.recovery_attempts,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
        )

    @classmethod
    def from_summary(cls, summary: JobSummary) -> JobStatusView:
        return cls(
            job_id=summary.job_id,
            source="durable",
            status=summary.status,
            progress=summary.progress,
            phase_breakdown=summary.phase_counts(),
            tasks=[task.model_dump(mode="json") for task in summary.tasks],
            error=summary.error,
            error_code=summary.error_code,
            failed_tasks=summary.failed_task_ids,
            abandoned=summary.abandoned,
            recovery_attempts=0,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
            completed_at=summary.completed_at,
        )


@dataclass
class _JobRuntime:
    job: Job
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    dispatcher: asyncio.Task | None = None
    workers: dict[str, asyncio.Task] = field(default_factory=dict)


class CourseGenerationOrchestrator:
    """
    Runs course-generation jobs.

    Each job is decomposed into tasks by the GenerationPlanner. A background
    dispatch loop per job starts eligible tasks up to the job's concurrency
    cap; workers call the content client and hand their outcome back under
    the job lock, where progress and job status are recomputed and the
    summary is persisted.
    """

    def __init__(
        self,
        content_client: ContentClient,
        *,
        store: JobStore | None = None,
        event_logger: EventLogger | None = None,
        settings: Settings | None = None,
        calculator: ProgressCalculator = progress_calculator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or default_settings
        self.content_client = content_client
        self.store: JobStore = store if store is not None else InMemoryJobStore()
        self.events = event_logger or EventLogger(
            max_entries_per_job=self.settings.max_log_entries_per_job, clock=clock
        )
        self.calculator = calculator
        self.clock = clock
        self.planner = GenerationPlanner(
            max_attempts=self.settings.max_task_attempts,
            media_max_attempts=self.settings.media_max_attempts,
            calculator=calculator,
        )
        self._jobs: dict[str, _JobRuntime] = {}
        self._idempotency_keys: dict[tuple[str, str], str] = {}
        self._closed = False
        self.eviction_interval = timedelta(seconds=self.settings.eviction_interval_seconds)
        self._last_eviction = clock()

        logger.info(
            "Orchestrator initialized",
            max_concurrent_tasks_per_job=self.settings.max_concurrent_tasks_per_job,
            max_task_attempts=self.settings.max_task_attempts,
            store=type(self.store).__name__,
        )

    # Public API

    async def create_job(
        self,
        spec: CourseRequest | Mapping[str, Any],
        *,
        owner_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> Job:
        """
        Validate a course request and start generating it in the background.

        Args:
            spec: CourseRequest or a mapping validated into one
            owner_id: Owner of the job (defaults to the request's owner_id)
            idempotency_key: Optional key; repeating it returns the existing job

        Returns:
            Snapshot of the new (or existing) job

        Raises:
            InvalidJobSpecError: The spec does not validate
            JobLimitExceededError: The owner already has too many active jobs
        """
        if self._closed:
            raise RuntimeError("Orchestrator is shut down")

        self._evict_if_due()
        request = self._validate_spec(spec)
        owner = owner_id or request.owner_id or DEFAULT_OWNER

        if idempotency_key:
            existing_id = self._idempotency_keys.get((owner, idempotency_key))
            existing = self._jobs.get(existing_id) if existing_id else None
            if existing is not None:
                logger.info(
                    "Returning existing job for idempotency key",
                    job_id=existing_id,
                    owner_id=owner,
                )
                return existing.job.snapshot()

        active = sum(
            1 for rt in self._jobs.values() if rt.job.owner_id == owner and not rt.job.is_terminal
        )
        if active >= self.settings.max_active_jobs_per_owner:
            logger.warning("Active job limit reached", owner_id=owner, active_jobs=active)
            raise JobLimitExceededError(
                f"Owner {owner} already has {active} active jobs "
                f"(limit {self.settings.max_active_jobs_per_owner})"
            )

        now = self.clock()
        cap = self.settings.max_concurrent_tasks_per_job
        job = Job(
            id=str(uuid.uuid4()),
            owner_id=owner,
            request=request,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
            max_concurrency=min(request.max_concurrency or cap, cap),
            idempotency_key=idempotency_key,
        )
        self.planner.initial_tasks(job, now)
        self._refresh_progress(job)

        runtime = _JobRuntime(job)
        self._jobs[job.id] = runtime
        if idempotency_key:
            self._idempotency_keys[(owner, idempotency_key)] = job.id

        self.events.info(
            job.id,
            "Job created",
            owner_id=owner,
            title=request.title,
            max_concurrency=job.max_concurrency,
        )
        await self._persist(job)
        self._start_dispatcher(runtime)
        return job.snapshot()

    def get_job_state(self, job_id: str) -> Job | None:
        """Detached snapshot of a live job, or None."""
        runtime = self._jobs.get(job_id)
        return runtime.job.snapshot() if runtime else None

    async def get_job_status(self, job_id: str) -> JobStatusView | None:
        """Live status when the job is in memory, otherwise the durable summary."""
        runtime = self._jobs.get(job_id)
        if runtime is not None:
            return JobStatusView.from_job(runtime.job.snapshot())
        try:
            summary = await self.store.load(job_id)
        except Exception as e:
            logger.error("Failed to load job summary", job_id=job_id, error=str(e))
            return None
        return JobStatusView.from_summary(summary) if summary else None

    def list_live_jobs(self) -> list[Job]:
        return [runtime.job.snapshot() for runtime in self._jobs.values()]

    async def cancel_job(self, job_id: str) -> Job | None:
        """Stop dispatching new tasks; running tasks finish on their own. Idempotent."""
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return None
        job = runtime.job
        async with runtime.lock:
            if job.is_terminal:
                return job.snapshot()
            now = self.clock()
            job.status = JobStatus.CANCELLED
            job.completed_at = now
            job.updated_at = now
            self.events.info(job.id, "Job cancelled", running_tasks=job.running_count())
            await self._persist(job)
            runtime.wakeup.set()
            return job.snapshot()

    async def restart_job(self, job_id: str) -> Job | None:
        """Re-run a failed job from its last successful phase."""
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return None
        job = runtime.job
        async with runtime.lock:
            if job.status != JobStatus.FAILED or job.abandoned:
                logger.info(
                    "Restart skipped", job_id=job_id, status=job.status.value, abandoned=job.abandoned
                )
                return job.snapshot()

            now = self.clock()
            reset = job.tasks_with_status(TaskStatus.FAILED)
            for task in reset:
                self._reset_task(task, now)

            self._reopen(job)
            for task in job.tasks_with_status(TaskStatus.COMPLETED):
                self.planner.expand(job, task, now)

            self.events.info(job.id, "Job restarted", reset_tasks=[t.id for t in reset])
            await self._after_change(runtime, now)
            snapshot = job.snapshot()

        if runtime.dispatcher is None or runtime.dispatcher.done():
            self._start_dispatcher(runtime)
        return snapshot

    async def retry_tasks(self, job_id: str, task_ids: list[str]) -> Job | None:
        """
        Give chosen failed tasks a fresh set of attempts.

        Tasks that were skipped only because of these failures are reset with
        them. A finished job (failed, or completed with failed items) is
        reopened; its progress does not move backwards.

        Args:
            job_id: Live job to act on
            task_ids: Failed tasks to retry

        Returns:
            Snapshot of the job, or None when it is not live

        Raises:
            TaskRetryError: The job is cancelled or abandoned, or a task is
                unknown or not failed
        """
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return None
        job = runtime.job
        requested = set(task_ids)

        async with runtime.lock:
            if job.abandoned or job.status == JobStatus.CANCELLED:
                state = "abandoned" if job.abandoned else "cancelled"
                raise TaskRetryError(f"Job is {state}; its tasks cannot be retried")
            if not requested:
                raise TaskRetryError("No tasks to retry")
            unknown = sorted(requested - set(job.tasks))
            if unknown:
                raise TaskRetryError(f"Unknown tasks: {', '.join(unknown)}")
            not_failed = sorted(t for t in requested if job.tasks[t].status != TaskStatus.FAILED)
            if not_failed:
                raise TaskRetryError(f"Only failed tasks can be retried: {', '.join(not_failed)}")

            now = self.clock()
            reset_ids = requested | self._skipped_dependents(job, requested)
            reset = [task for task in job.tasks.values() if task.id in reset_ids]
            for task in reset:
                self._reset_task(task, now)
            if job.is_terminal:
                self._reopen(job)

            self.events.info(
                job.id,
                "Tasks retried",
                requested=sorted(requested),
                reset_tasks=[t.id for t in reset],
            )
            await self._after_change(runtime, now)
            snapshot = job.snapshot()

        if runtime.dispatcher is None or runtime.dispatcher.done():
            self._start_dispatcher(runtime)
        return snapshot

    async def recover_stale_tasks(self, job_id: str, stale_before: datetime) -> RecoveryOutcome:
        """
        Reset running tasks whose worker is presumed dead.

        Each reset counts as a failed attempt: below the ceiling the task goes
        back to pending with backoff, at the ceiling it fails with
        ``worker_lost``. Completed tasks are never touched.
        """
        outcome = RecoveryOutcome(job_id)
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return outcome
        job = runtime.job

        async with runtime.lock:
            if job.is_terminal:
                return outcome
            now = self.clock()
            newly_failed: list[Task] = []
            for task in job.tasks_with_status(TaskStatus.RUNNING):
                if task.last_activity_at >= stale_before:
                    continue
                self._supersede_worker(runtime, task)
                task.attempts += 1
                message = f"Worker lost: no activity since {task.last_activity_at.isoformat()}"
                if task.attempts < task.max_attempts:
                    self._requeue(task, now, message)
                    outcome.reset_task_ids.append(task.id)
                else:
                    self._fail(task, now, message, "worker_lost")
                    outcome.exhausted_task_ids.append(task.id)
                    newly_failed.append(task)
                logger.warning(
                    "Stale task recovered",
                    job_id=job_id,
                    task_id=task.id,
                    attempts=task.attempts,
                    max_attempts=task.max_attempts,
                    status=task.status.value,
                )

            if newly_failed and job.status != JobStatus.CANCELLED:
                self._expand_and_propagate(job, newly_failed, now)
            if outcome.reset_task_ids or outcome.exhausted_task_ids:
                await self._after_change(runtime, now)

        outcome.restarted_dispatch = self.ensure_dispatching(job_id)
        return outcome

    def ensure_dispatching(self, job_id: str) -> bool:
        """Restart the dispatch loop of a non-terminal job if it has died."""
        runtime = self._jobs.get(job_id)
        if runtime is None or runtime.job.is_terminal or self._closed:
            return False
        if runtime.dispatcher is not None and not runtime.dispatcher.done():
            return False
        logger.warning("Restarting dead dispatch loop", job_id=job_id)
        self._start_dispatcher(runtime)
        return True

    def nudge(self, job_id: str) -> bool:
        """Wake a job's dispatch loop early."""
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return False
        runtime.wakeup.set()
        return True

    async def record_recovery_attempt(self, job_id: str) -> int:
        """Count one monitor recovery attempt against a job."""
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return 0
        async with runtime.lock:
            runtime.job.recovery_attempts += 1
            return runtime.job.recovery_attempts

    async def abandon_job(self, job_id: str, reason: str) -> Job | None:
        """Give up on a job: terminal failed, flagged abandoned, dispatch stopped."""
        runtime = self._jobs.get(job_id)
        if runtime is None:
            return None
        job = runtime.job
        async with runtime.lock:
            if job.is_terminal:
                return job.snapshot()
            now = self.clock()
            for task in job.tasks_with_status(TaskStatus.RUNNING):
                self._supersede_worker(runtime, task)
                self._fail(task, now, reason, "job_abandoned")
            job.status = JobStatus.FAILED
            job.abandoned = True
            job.error = reason
            job.error_code = "abandoned"
            job.completed_at = now
            job.updated_at = now
            self._refresh_progress(job)
            await self._persist(job)
            runtime.wakeup.set()
            logger.warning("Job abandoned", job_id=job_id, reason=reason)
            return job.snapshot()

    def evict_expired(self) -> list[str]:
        """Drop terminal jobs from memory once their retention window has passed."""
        now = self.clock()
        self._last_eviction = now
        cutoff = now - timedelta(minutes=self.settings.job_retention_minutes)
        expired = [
            job_id
            for job_id, runtime in self._jobs.items()
            if runtime.job.is_terminal
            and runtime.job.completed_at is not None
            and runtime.job.completed_at < cutoff
            and not runtime.workers
        ]
        for job_id in expired:
            runtime = self._jobs.pop(job_id)
            if runtime.job.idempotency_key:
                self._idempotency_keys.pop((runtime.job.owner_id, runtime.job.idempotency_key), None)
            self.events.forget_job(job_id)

        if expired:
            logger.info("Evicted expired jobs", count=len(expired), remaining=len(self._jobs))
        return expired

    def _evict_if_due(self) -> None:
        """Run eviction if enough time has passed since the last run."""
        if self.clock() - self._last_eviction >= self.eviction_interval:
            self.evict_expired()

    def health_check(self) -> dict[str, Any]:
        self._evict_if_due()
        status_counts: dict[str, int] = {}
        running_tasks = 0
        for runtime in self._jobs.values():
            status = runtime.job.status.value
            status_counts[status] = status_counts.get(status, 0) + 1
            running_tasks += runtime.job.running_count()
        return {
            "orchestrator": "shutdown" if self._closed else "healthy",
            "live_jobs": len(self._jobs),
            "status_breakdown": status_counts,
            "running_tasks": running_tasks,
            "open_alerts": self.events.open_alert_count(),
            "store": type(self.store).__name__,
        }

    async def shutdown(self) -> None:
        """Stop every dispatch loop and worker."""
        self._closed = True
        pending: list[asyncio.Task] = []
        for runtime in self._jobs.values():
            if runtime.dispatcher is not None and not runtime.dispatcher.done():
                runtime.dispatcher.cancel()
                pending.append(runtime.dispatcher)
            for worker in list(runtime.workers.values()):
                worker.cancel()
                pending.append(worker)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Orchestrator shut down", cancelled_tasks=len(pending))

    # Dispatch

    def _start_dispatcher(self, runtime: _JobRuntime) -> None:
        runtime.dispatcher = asyncio.create_task(
            self._dispatch_loop(runtime), name=f"coursegen-dispatch-{runtime.job.id}"
        )

    async def _dispatch_loop(self, runtime: _JobRuntime) -> None:
        job = runtime.job
        logger.debug("Dispatch loop started", job_id=job.id)
        poll_interval = self.settings.dispatch_poll_interval_seconds
        try:
            while True:
                async with runtime.lock:
                    runtime.wakeup.clear()
                    if job.is_terminal:
                        break
                    now = self.clock()
                    self._dispatch_eligible(runtime, now)
                    next_ready = self._seconds_until_next_ready(job, now)

                timeout = poll_interval if next_ready is None else min(poll_interval, next_ready)
                try:
                    await asyncio.wait_for(runtime.wakeup.wait(), timeout=max(timeout, 0.001))
                except asyncio.TimeoutError:
                    pass
        except Exception as e:
            self.events.error(
                job.id,
                f"Dispatch loop crashed: {e}",
                error_code="dispatch_crashed",
                error_type=type(e).__name__,
            )
            return
        logger.debug("Dispatch loop finished", job_id=job.id, status=job.status.value)

    def _dispatch_eligible(self, runtime: _JobRuntime, now: datetime) -> list[Task]:
        job = runtime.job
        slots = job.max_concurrency - job.running_count()
        if slots <= 0:
            return []

        # creation order breaks ties within a phase
        candidates = [
            (task.priority, position, task)
            for position, task in enumerate(job.tasks.values())
            if self._is_eligible(job, task, now)
        ]
        eligible = [task for _, _, task in sorted(candidates, key=lambda c: c[:2])[:slots]]
        for task in eligible:
            self._start_task(runtime, task, now)

        if eligible and job.status == JobStatus.PENDING:
            job.status = JobStatus.RUNNING
        return eligible

    @staticmethod
    def _is_eligible(job: Job, task: Task, now: datetime) -> bool:
        if task.status != TaskStatus.PENDING:
            return False
        if task.available_at is not None and task.available_at > now:
            return False
        return all(
            dep in job.tasks and job.tasks[dep].status == TaskStatus.COMPLETED
            for dep in task.depends_on
        )

    @staticmethod
    def _seconds_until_next_ready(job: Job, now: datetime) -> float | None:
        waits = [
            (t.available_at - now).total_seconds()
            for t in job.tasks.values()
            if t.status == TaskStatus.PENDING and t.available_at is not None and t.available_at > now
        ]
        return min(waits) if waits else None

    def _start_task(self, runtime: _JobRuntime, task: Task, now: datetime) -> None:
        job = runtime.job
        task.status = TaskStatus.RUNNING
        task.lease += 1
        task.started_at = now
        task.available_at = None
        task.touch(now)
        job.last_activity_at = now
        job.updated_at = now

        request = self._build_request(job, task)
        self.events.log_task_start(job.id, task.id, task.type.value, attempt=task.attempts + 1)

        worker = asyncio.create_task(
            self._run_task(runtime, task.id, task.lease, request),
            name=f"coursegen-{job.id}-{task.id}",
        )
        runtime.workers[task.id] = worker
        worker.add_done_callback(lambda w, task_id=task.id: self._worker_done(runtime, task_id, w))

    def _worker_done(self, runtime: _JobRuntime, task_id: str, worker: asyncio.Task) -> None:
        if runtime.workers.get(task_id) is worker:
            del runtime.workers[task_id]
        if worker.cancelled():
            return
        exc = worker.exception()
        if exc is not None:
            logger.error(
                "Worker crashed while applying result",
                job_id=runtime.job.id,
                task_id=task_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    def _supersede_worker(self, runtime: _JobRuntime, task: Task) -> None:
        """Invalidate the current worker of a task so its result is discarded."""
        task.lease += 1
        worker = runtime.workers.pop(task.id, None)
        if worker is not None:
            worker.cancel()

    def _build_request(self, job: Job, task: Task) -> ContentRequest:
        request = job.request
        inputs = {
            dep: job.tasks[dep].result
            for dep in sorted(task.depends_on)
            if dep in job.tasks and job.tasks[dep].result is not None
        }
        return ContentRequest(
            job_id=job.id,
            task_id=task.id,
            task_type=task.type,
            course={
                "title": request.title,
                "description": request.description,
                "audience": request.audience,
                "grade_level": request.grade_level,
            },
            context=copy.deepcopy(task.payload),
            inputs=copy.deepcopy(inputs),
            attempt=task.attempts + 1,
        )

    # Workers

    async def _run_task(
        self, runtime: _JobRuntime, task_id: str, lease: int, request: ContentRequest
    ) -> None:
        started = self.clock()

        async def heartbeat(attempt_number: int) -> None:
            await self._record_heartbeat(runtime, task_id, lease, attempt_number)

        try:
            result = await self.content_client.generate(request, on_retry=heartbeat)
        except Exception as e:
            await self._apply_failure(runtime, task_id, lease, e)
            return
        await self._apply_success(runtime, task_id, lease, result, started)

    async def _record_heartbeat(
        self, runtime: _JobRuntime, task_id: str, lease: int, attempt_number: int
    ) -> None:
        """Mark a task as alive while its worker retries a transient failure."""
        async with runtime.lock:
            task = runtime.job.tasks.get(task_id)
            if task is None or task.status != TaskStatus.RUNNING or task.lease != lease:
                return
            now = self.clock()
            task.touch(now)
            runtime.job.last_activity_at = now
            logger.debug(
                "Worker heartbeat",
                job_id=runtime.job.id,
                task_id=task_id,
                content_attempt=attempt_number,
            )

    def _current(self, runtime: _JobRuntime, task_id: str, lease: int) -> Task | None:
        task = runtime.job.tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING or task.lease != lease:
            logger.info(
                "Discarding superseded worker result",
                job_id=runtime.job.id,
                task_id=task_id,
                lease=lease,
            )
            return None
        return task

    async def _apply_success(
        self,
        runtime: _JobRuntime,
        task_id: str,
        lease: int,
        result: dict[str, Any],
        started: datetime,
    ) -> None:
        job = runtime.job
        async with runtime.lock:
            task = self._current(runtime, task_id, lease)
            if task is None:
                return
            now = self.clock()
            try:
                result = self.planner.validate_result(task, result)
            except PlanningError as e:
                self._record_failure(job, task, e, now)
                await self._after_change(runtime, now)
                return

            task.status = TaskStatus.COMPLETED
            task.result = result
            task.completed_at = now
            task.touch(now)
            self.events.log_task_complete(
                job.id, task.id, task.type.value, (now - started).total_seconds()
            )
            if job.status != JobStatus.CANCELLED:
                self._expand_and_propagate(job, [task], now)
            await self._after_change(runtime, now)

    async def _apply_failure(
        self, runtime: _JobRuntime, task_id: str, lease: int, exc: Exception
    ) -> None:
        async with runtime.lock:
            task = self._current(runtime, task_id, lease)
            if task is None:
                return
            now = self.clock()
            self._record_failure(runtime.job, task, exc, now)
            await self._after_change(runtime, now)

    def _record_failure(self, job: Job, task: Task, exc: BaseException, now: datetime) -> None:
        _, code = classify_error(exc)
        message = describe_error(exc)
        task.attempts += 1
        will_retry = task.attempts < task.max_attempts

        self.events.log_task_failure(
            job.id,
            task.id,
            task.type.value,
            message,
            error_code=code,
            will_retry=will_retry,
            attempts=task.attempts,
            max_attempts=task.max_attempts,
        )
        if will_retry:
            self._requeue(task, now, message)
            return

        self._fail(task, now, message, code)
        if job.status != JobStatus.CANCELLED:
            self._expand_and_propagate(job, [task], now)

    def _requeue(self, task: Task, now: datetime, message: str) -> None:
        delay = min(
            self.settings.retry_backoff_seconds * (2 ** max(task.attempts - 1, 0)),
            self.settings.retry_backoff_max_seconds,
        )
        task.status = TaskStatus.PENDING
        task.last_error = message
        task.error = None
        task.error_code = None
        task.available_at = now + timedelta(seconds=delay)
        task.touch(now)

    @staticmethod
    def _fail(task: Task, now: datetime, message: str, code: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = message
        task.error_code = code
        task.completed_at = now
        task.touch(now)

    @staticmethod
    def _reset_task(task: Task, now: datetime) -> None:
        task.status = TaskStatus.PENDING
        task.attempts = 0
        task.last_error = task.error
        task.error = None
        task.error_code = None
        task.available_at = None
        task.completed_at = None
        task.touch(now)

    @staticmethod
    def _reopen(job: Job) -> None:
        job.status = JobStatus.RUNNING
        job.error = None
        job.error_code = None
        job.completed_at = None

    @staticmethod
    def _skipped_dependents(job: Job, retried: set[str]) -> set[str]:
        """Skipped tasks whose failed dependencies are all being retried, transitively."""
        cleared = set(retried)
        found: set[str] = set()
        changed = True
        while changed:
            changed = False
            for task in job.tasks.values():
                if (
                    task.id in cleared
                    or task.status != TaskStatus.FAILED
                    or task.error_code != "dependency_failed"
                ):
                    continue
                failed_deps = {
                    dep
                    for dep in task.depends_on
                    if dep in job.tasks and job.tasks[dep].status == TaskStatus.FAILED
                }
                if failed_deps and failed_deps <= cleared:
                    cleared.add(task.id)
                    found.add(task.id)
                    changed = True
        return found

    def _expand_and_propagate(self, job: Job, settled: list[Task], now: datetime) -> None:
        """Expand the plan for settled tasks, failing dependents of failed tasks until stable."""
        while settled:
            for task in settled:
                self.planner.expand(job, task, now)
            settled = self._fail_blocked_dependents(job, now)

    def _fail_blocked_dependents(self, job: Job, now: datetime) -> list[Task]:
        blocked: list[Task] = []
        changed = True
        while changed:
            changed = False
            for task in job.tasks.values():
                if task.status != TaskStatus.PENDING:
                    continue
                failed_deps = sorted(
                    dep
                    for dep in task.depends_on
                    if dep in job.tasks and job.tasks[dep].status == TaskStatus.FAILED
                )
                if not failed_deps:
                    continue
                self._fail(task, now, f"Dependency failed: {', '.join(failed_deps)}", "dependency_failed")
                self.events.warning(
                    job.id,
                    f"Task skipped: {task.type.value}",
                    task_id=task.id,
                    error_code="dependency_failed",
                    failed_dependencies=failed_deps,
                )
                blocked.append(task)
                changed = True
        return blocked

    # State bookkeeping

    def _refresh_progress(self, job: Job) -> None:
        job.phase_breakdown = self.calculator.build_phase_breakdown(job.tasks.values())
        computed = self.calculator.calculate_overall_progress(job.phase_breakdown)
        job.progress_percentage = max(job.progress_percentage, computed)

    async def _after_change(self, runtime: _JobRuntime, now: datetime) -> None:
        """Recompute progress and status, persist, wake the dispatcher. Caller holds the lock."""
        job = runtime.job
        job.updated_at = now
        job.last_activity_at = now
        self._refresh_progress(job)

        resolution = resolve_job_status(job, self.calculator)
        if resolution.status != job.status:
            job.status = resolution.status
            if resolution.is_terminal:
                self._finish(job, resolution, now)

        await self._persist(job)
        runtime.wakeup.set()

    def _finish(self, job: Job, resolution: JobResolution, now: datetime) -> None:
        job.completed_at = now
        if resolution.status == JobStatus.COMPLETED:
            job.progress_percentage = 100
            self.events.info(
                job.id,
                "Job completed",
                partial=bool(resolution.failed_task_ids),
                failed_tasks=resolution.failed_task_ids,
            )
            return

        job.error = resolution.error
        job.error_code = resolution.error_code
        self.events.error(
            job.id,
            f"Job failed: {resolution.error}",
            error_code=resolution.error_code,
            alert_type=AlertType.FAILURE,
            failed_tasks=resolution.failed_task_ids,
        )

    async def _persist(self, job: Job) -> None:
        try:
            await self.store.save(JobSummary.from_job(job))
        except Exception as e:
            logger.error(
                "Failed to persist job summary",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
            )

    @staticmethod
    def _validate_spec(spec: CourseRequest | Mapping[str, Any]) -> CourseRequest:
        if isinstance(spec, CourseRequest):
            return spec
        try:
            return CourseRequest.model_validate(dict(spec))
        except (ValidationError, TypeError, ValueError) as e:
            raise InvalidJobSpecError(f"Invalid course request: {e}") from e
