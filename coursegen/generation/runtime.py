"""Process-wide orchestrator, monitor and event logger."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog

from coursegen.config import Settings, settings as default_settings
from coursegen.generation.agents import AgentContentGenerator
from coursegen.generation.content import (
    ContentClient,
    ContentGenerator,
    DeterministicContentGenerator,
)
from coursegen.generation.events import EventLogger
from coursegen.generation.models import utcnow
from coursegen.generation.orchestrator import CourseGenerationOrchestrator
from coursegen.generation.resilience import ResilienceMonitor
from coursegen.generation.store import JobStore, create_job_store

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    orchestrator: CourseGenerationOrchestrator
    monitor: ResilienceMonitor
    events: EventLogger
    store: JobStore
    settings: Settings


_runtime: Runtime | None = None


def build_content_generator(settings: Settings) -> ContentGenerator:
    if settings.content_backend == "deterministic":
        logger.info("Using deterministic content generator")
        return DeterministicContentGenerator()
    return AgentContentGenerator(
        settings.content_model,
        api_key=settings.openai_api_key,
        timeout_seconds=settings.task_timeout_seconds,
    )


def initialize_runtime(
    settings: Settings | None = None,
    *,
    generator: ContentGenerator | None = None,
    store: JobStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Runtime:
    """
    Build and register the global runtime.

    Args:
        settings: Settings to use (defaults to the module settings)
        generator: Content generator override (defaults per content_backend)
        store: Job store override (defaults per store_backend)
        clock: Time source shared by orchestrator, monitor and event log
    """
    global _runtime
    settings = settings or default_settings
    store = store if store is not None else create_job_store(settings.store_backend, settings.store_path)
    client = ContentClient(
        generator or build_content_generator(settings),
        timeout_seconds=settings.task_timeout_seconds,
        retry_attempts=settings.content_retry_attempts,
        retry_wait_seconds=settings.content_retry_wait_seconds,
        rate_limit_per_minute=settings.content_rate_limit_per_minute,
    )
    events = EventLogger(max_entries_per_job=settings.max_log_entries_per_job, clock=clock)
    orchestrator = CourseGenerationOrchestrator(
        client, store=store, event_logger=events, settings=settings, clock=clock
    )
    monitor = ResilienceMonitor(orchestrator, settings=settings, clock=clock)
    _runtime = Runtime(orchestrator, monitor, events, store, settings)
    logger.info(
        "Generation runtime initialized",
        content_backend=settings.content_backend,
        store_backend=settings.store_backend,
    )
    return _runtime


def get_runtime() -> Runtime:
    """
    Get the global runtime.

    Raises:
        RuntimeError: If the runtime has not been initialized
    """
    if _runtime is None:
        raise RuntimeError("Generation runtime not initialized. Call initialize_runtime() first.")
    return _runtime


def get_orchestrator() -> CourseGenerationOrchestrator:
    return get_runtime().orchestrator


def get_monitor() -> ResilienceMonitor:
    return get_runtime().monitor


def get_event_logger() -> EventLogger:
    return get_runtime().events


async def shutdown_runtime() -> None:
    """Stop the monitor and every dispatch loop of the global runtime."""
    if _runtime is None:
        return
    await _runtime.monitor.stop()
    await _runtime.orchestrator.shutdown()


def reset_runtime() -> None:
    """Reset the global runtime (for testing)."""
    global _runtime
    _runtime = None
