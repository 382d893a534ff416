"""Per-job event log and alerting.

Every job gets a bounded, append-only list of structured entries. Error and
critical entries open an alert keyed by ``(job_id, alert_type)``; logging the
same unresolved condition again only bumps the existing alert. Entries written
by the alert machinery itself (source ``alert_system``) never open alerts.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import structlog

from coursegen.generation.models import utcnow

logger = structlog.get_logger(__name__)

ALERT_SYSTEM_SOURCE = "alert_system"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    STALL = "stall"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CRITICAL_ERROR = "critical_error"
    RECOVERY_FAILED = "recovery_failed"
    ABANDONED = "abandoned"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertEvent(str, Enum):
    OPENED = "opened"
    REOPENED = "reopened"
    RESOLVED = "resolved"


ALERTING_LEVELS = frozenset({LogLevel.ERROR, LogLevel.CRITICAL})


@dataclass
class LogEntry:
    job_id: str
    level: LogLevel
    message: str
    source: str
    timestamp: datetime
    task_id: str | None = None
    error_code: str | None = None
    alert_type: AlertType | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "task_id": self.task_id,
            "error_code": self.error_code,
            "alert_type": self.alert_type.value if self.alert_type else None,
            "details": self.details,
        }


@dataclass
class Alert:
    job_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    first_seen: datetime
    last_seen: datetime
    task_id: str | None = None
    occurrences: int = 1
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "task_id": self.task_id,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "occurrences": self.occurrences,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


class EventSink(Protocol):
    """Receives log entries and alert lifecycle events for operator visibility."""

    def publish_entry(self, entry: LogEntry) -> None: ...

    def publish_alert(self, alert: Alert, event: AlertEvent) -> None: ...


class StructlogEventSink:
    """Forwards events to structlog at the matching level."""

    def __init__(self, name: str = "coursegen.events"):
        self._logger = structlog.get_logger(name)

    def publish_entry(self, entry: LogEntry) -> None:
        log = getattr(self._logger, entry.level.value)
        log(
            entry.message,
            job_id=entry.job_id,
            source=entry.source,
            task_id=entry.task_id,
            error_code=entry.error_code,
            alert_type=entry.alert_type.value if entry.alert_type else None,
            **entry.details,
        )

    def publish_alert(self, alert: Alert, event: AlertEvent) -> None:
        log = self._logger.info if event == AlertEvent.RESOLVED else self._logger.warning
        log(
            f"Alert {event.value}",
            job_id=alert.job_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            occurrences=alert.occurrences,
            alert_message=alert.message,
        )


class EventLogger:
    """In-memory audit trail and alert registry for generation jobs."""

    def __init__(
        self,
        *,
        max_entries_per_job: int = 500,
        sinks: Iterable[EventSink] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_entries_per_job = max_entries_per_job
        self.sinks: list[EventSink] = list(sinks) if sinks is not None else [StructlogEventSink()]
        self._clock = clock
        self._entries: dict[str, deque[LogEntry]] = {}
        self._alerts: dict[tuple[str, AlertType], Alert] = {}

    def log(
        self,
        job_id: str,
        level: LogLevel,
        message: str,
        *,
        source: str = "orchestrator",
        task_id: str | None = None,
        error_code: str | None = None,
        alert_type: AlertType | None = None,
        **details: Any,
    ) -> LogEntry:
        """Append an entry; error and critical entries open or bump an alert."""
        entry = LogEntry(
            job_id=job_id,
            level=level,
            message=message,
            source=source,
            timestamp=self._clock(),
            task_id=task_id,
            error_code=error_code,
            alert_type=alert_type,
            details=details,
        )
        entries = self._entries.get(job_id)
        if entries is None:
            entries = self._entries[job_id] = deque(maxlen=self.max_entries_per_job)
        entries.append(entry)

        self._publish_entry(entry)
        if level in ALERTING_LEVELS and source != ALERT_SYSTEM_SOURCE:
            self._upsert_alert(entry)
        return entry

    def info(self, job_id: str, message: str, **kwargs: Any) -> LogEntry:
        return self.log(job_id, LogLevel.INFO, message, **kwargs)

    def warning(self, job_id: str, message: str, **kwargs: Any) -> LogEntry:
        return self.log(job_id, LogLevel.WARNING, message, **kwargs)

    def error(self, job_id: str, message: str, **kwargs: Any) -> LogEntry:
        return self.log(job_id, LogLevel.ERROR, message, **kwargs)

    def critical(self, job_id: str, message: str, **kwargs: Any) -> LogEntry:
        return self.log(job_id, LogLevel.CRITICAL, message, **kwargs)

    def _upsert_alert(self, entry: LogEntry) -> Alert:
        alert_type = entry.alert_type or (
            AlertType.TIMEOUT if entry.error_code == "timeout" else AlertType.CRITICAL_ERROR
        )
        severity = AlertSeverity.CRITICAL if entry.level == LogLevel.CRITICAL else AlertSeverity.HIGH
        key = (entry.job_id, alert_type)
        alert = self._alerts.get(key)

        if alert is None:
            alert = Alert(
                job_id=entry.job_id,
                alert_type=alert_type,
                severity=severity,
                message=entry.message,
                first_seen=entry.timestamp,
                last_seen=entry.timestamp,
                task_id=entry.task_id,
            )
            self._alerts[key] = alert
            self._alert_changed(alert, AlertEvent.OPENED)
            return alert

        alert.last_seen = entry.timestamp
        alert.occurrences += 1
        if alert.resolved:
            alert.resolved = False
            alert.resolved_at = None
            alert.resolved_by = None
            alert.severity = severity
            alert.message = entry.message
            alert.task_id = entry.task_id
            self._alert_changed(alert, AlertEvent.REOPENED)
        return alert

    def resolve_alert(
        self, job_id: str, alert_type: AlertType, resolved_by: str = "system"
    ) -> Alert | None:
        """Close an open alert. Returns None when there is nothing to resolve."""
        alert = self._alerts.get((job_id, alert_type))
        if alert is None or alert.resolved:
            return None
        alert.resolved = True
        alert.resolved_at = self._clock()
        alert.resolved_by = resolved_by
        self._alert_changed(alert, AlertEvent.RESOLVED)
        return alert

    def _alert_changed(self, alert: Alert, event: AlertEvent) -> None:
        self.log(
            alert.job_id,
            LogLevel.INFO,
            f"Alert {event.value}: {alert.alert_type.value}",
            source=ALERT_SYSTEM_SOURCE,
            task_id=alert.task_id,
            alert_type=alert.alert_type,
            severity=alert.severity.value,
        )
        for sink in self.sinks:
            try:
                sink.publish_alert(alert, event)
            except Exception as e:
                logger.error(
                    "Event sink failed to publish alert",
                    sink=type(sink).__name__,
                    job_id=alert.job_id,
                    error=str(e),
                )

    def _publish_entry(self, entry: LogEntry) -> None:
        for sink in self.sinks:
            try:
                sink.publish_entry(entry)
            except Exception as e:
                logger.error(
                    "Event sink failed to publish entry",
                    sink=type(sink).__name__,
                    job_id=entry.job_id,
                    error=str(e),
                )

    # Helpers for common events

    def log_task_start(self, job_id: str, task_id: str, task_type: str, attempt: int) -> LogEntry:
        return self.info(
            job_id,
            f"Task started: {task_type}",
            task_id=task_id,
            task_type=task_type,
            attempt=attempt,
        )

    def log_task_complete(
        self, job_id: str, task_id: str, task_type: str, duration_seconds: float | None = None
    ) -> LogEntry:
        return self.info(
            job_id,
            f"Task completed: {task_type}",
            task_id=task_id,
            task_type=task_type,
            duration_seconds=duration_seconds,
        )

    def log_task_failure(
        self,
        job_id: str,
        task_id: str,
        task_type: str,
        error: str,
        *,
        error_code: str | None,
        will_retry: bool,
        attempts: int,
        max_attempts: int,
    ) -> LogEntry:
        level = LogLevel.WARNING if will_retry else LogLevel.ERROR
        message = (
            f"Task failed, retrying: {task_type}" if will_retry else f"Task failed permanently: {task_type}"
        )
        return self.log(
            job_id,
            level,
            message,
            task_id=task_id,
            error_code=error_code,
            task_type=task_type,
            error=error,
            attempts=attempts,
            max_attempts=max_attempts,
        )

    def log_recovery_attempt(
        self, job_id: str, attempt: int, max_attempts: int, reason: str
    ) -> LogEntry:
        return self.warning(
            job_id,
            "Recovery attempt",
            source="resilience_monitor",
            attempt=attempt,
            max_attempts=max_attempts,
            reason=reason,
        )

    def log_recovery_success(self, job_id: str, **details: Any) -> LogEntry:
        return self.info(job_id, "Recovery successful", source="resilience_monitor", **details)

    def log_recovery_failure(
        self, job_id: str, error: str, *, task_id: str | None = None, **details: Any
    ) -> LogEntry:
        return self.critical(
            job_id,
            f"Recovery failed: {error}",
            source="resilience_monitor",
            task_id=task_id,
            alert_type=AlertType.RECOVERY_FAILED,
            **details,
        )

    # Queries

    def get_job_logs(
        self, job_id: str, limit: int | None = None, level: LogLevel | None = None
    ) -> list[LogEntry]:
        """Entries for a job, newest first."""
        entries = [
            entry
            for entry in reversed(self._entries.get(job_id, ()))
            if level is None or entry.level == level
        ]
        return entries[:limit] if limit is not None else entries

    def get_job_alerts(self, job_id: str, include_resolved: bool = False) -> list[Alert]:
        alerts = [
            alert
            for (alert_job_id, _), alert in self._alerts.items()
            if alert_job_id == job_id and (include_resolved or not alert.resolved)
        ]
        return sorted(alerts, key=lambda a: a.first_seen)

    def has_open_alert(self, job_id: str, alert_type: AlertType) -> bool:
        alert = self._alerts.get((job_id, alert_type))
        return alert is not None and not alert.resolved

    def open_alert_count(self) -> int:
        return sum(1 for alert in self._alerts.values() if not alert.resolved)

    def forget_job(self, job_id: str) -> None:
        """Drop all entries and alerts of an evicted job."""
        self._entries.pop(job_id, None)
        for key in [key for key in self._alerts if key[0] == job_id]:
            del self._alerts[key]
