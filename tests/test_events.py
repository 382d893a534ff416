"""
Tests for the per-job event log and alert registry.
"""

from unittest.mock import Mock

import pytest

from coursegen.generation.events import (
    AlertEvent,
    AlertSeverity,
    AlertType,
    EventLogger,
    LogLevel,
)


@pytest.fixture
def sink():
    return Mock()


@pytest.fixture
def events(clock, sink):
    return EventLogger(max_entries_per_job=50, sinks=[sink], clock=clock)


class TestLogging:
    """Test entry recording and queries."""

    def test_entries_are_newest_first(self, events, clock):
        events.info("job-1", "first")
        clock.advance(1)
        events.warning("job-1", "second")

        logs = events.get_job_logs("job-1")
        assert [entry.message for entry in logs] == ["second", "first"]
        assert logs[0].timestamp > logs[1].timestamp

    def test_entries_are_scoped_per_job(self, events):
        events.info("job-1", "mine")
        events.info("job-2", "theirs")
        assert [e.message for e in events.get_job_logs("job-1")] == ["mine"]
        assert events.get_job_logs("unknown") == []

    def test_limit_and_level_filter(self, events):
        for i in range(5):
            events.info("job-1", f"info {i}")
        events.warning("job-1", "careful")

        assert len(events.get_job_logs("job-1", limit=3)) == 3
        warnings = events.get_job_logs("job-1", level=LogLevel.WARNING)
        assert [e.message for e in warnings] == ["careful"]

    def test_log_is_bounded(self, clock):
        events = EventLogger(max_entries_per_job=3, sinks=[], clock=clock)
        for i in range(10):
            events.info("job-1", f"entry {i}")

        messages = [e.message for e in events.get_job_logs("job-1")]
        assert messages == ["entry 9", "entry 8", "entry 7"]

    def test_details_are_kept(self, events):
        entry = events.log_task_start("job-1", "outline", "outline", attempt=2)
        assert entry.task_id == "outline"
        assert entry.details == {"task_type": "outline", "attempt": 2}
        assert entry.to_dict()["level"] == "info"

    def test_entries_are_published_to_sinks(self, events, sink):
        entry = events.info("job-1", "hello")
        sink.publish_entry.assert_called_once_with(entry)

    def test_failing_sink_does_not_break_logging(self, clock):
        broken = Mock()
        broken.publish_entry.side_effect = RuntimeError("sink down")
        events = EventLogger(sinks=[broken], clock=clock)

        events.info("job-1", "still recorded")
        assert len(events.get_job_logs("job-1")) == 1


class TestAlerts:
    """Test alert upsert and resolution."""

    def test_error_opens_alert(self, events, sink):
        events.error("job-1", "Task failed", task_id="section-0-0-0")

        alerts = events.get_job_alerts("job-1")
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.CRITICAL_ERROR
        assert alerts[0].severity == AlertSeverity.HIGH
        assert alerts[0].task_id == "section-0-0-0"
        sink.publish_alert.assert_called_once_with(alerts[0], AlertEvent.OPENED)

    def test_info_and_warning_never_alert(self, events):
        events.info("job-1", "fine")
        events.warning("job-1", "hmm")
        assert events.get_job_alerts("job-1") == []

    def test_repeated_condition_bumps_existing_alert(self, events, clock):
        events.error("job-1", "Job stuck", alert_type=AlertType.STALL)
        clock.advance(30)
        events.error("job-1", "Job stuck", alert_type=AlertType.STALL)

        alerts = events.get_job_alerts("job-1")
        assert len(alerts) == 1
        assert alerts[0].occurrences == 2
        assert alerts[0].last_seen > alerts[0].first_seen

    def test_timeout_error_code_maps_to_timeout_alert(self, events):
        events.error("job-1", "Task timed out", error_code="timeout")
        assert events.has_open_alert("job-1", AlertType.TIMEOUT)

    def test_critical_sets_critical_severity(self, events):
        events.log_recovery_failure("job-1", "attempts exhausted", task_id="outline")

        alert = events.get_job_alerts("job-1")[0]
        assert alert.alert_type == AlertType.RECOVERY_FAILED
        assert alert.severity == AlertSeverity.CRITICAL

    def test_resolve_and_reopen(self, events, sink):
        events.error("job-1", "Job stuck", alert_type=AlertType.STALL)
        resolved = events.resolve_alert("job-1", AlertType.STALL, resolved_by="resilience_monitor")

        assert resolved.resolved
        assert resolved.resolved_by == "resilience_monitor"
        assert not events.has_open_alert("job-1", AlertType.STALL)
        assert events.get_job_alerts("job-1") == []
        assert len(events.get_job_alerts("job-1", include_resolved=True)) == 1

        events.error("job-1", "Job stuck again", alert_type=AlertType.STALL)
        alert = events.get_job_alerts("job-1")[0]
        assert alert.message == "Job stuck again"
        assert alert.occurrences == 2
        assert alert.resolved_at is None
        assert sink.publish_alert.call_args.args[1] == AlertEvent.REOPENED

    def test_resolving_nothing_returns_none(self, events):
        assert events.resolve_alert("job-1", AlertType.STALL) is None
        events.error("job-1", "x", alert_type=AlertType.STALL)
        events.resolve_alert("job-1", AlertType.STALL)
        assert events.resolve_alert("job-1", AlertType.STALL) is None

    def test_alert_lifecycle_is_logged_without_alerting(self, events):
        events.error("job-1", "boom")

        system_entries = [e for e in events.get_job_logs("job-1") if e.source == "alert_system"]
        assert len(system_entries) == 1
        assert system_entries[0].level == LogLevel.INFO
        assert system_entries[0].message == "Alert opened: critical_error"
        assert len(events.get_job_alerts("job-1")) == 1

    def test_open_alert_count_and_forget(self, events):
        events.error("job-1", "a", alert_type=AlertType.STALL)
        events.error("job-2", "b", alert_type=AlertType.FAILURE)
        assert events.open_alert_count() == 2

        events.forget_job("job-1")
        assert events.open_alert_count() == 1
        assert events.get_job_logs("job-1") == []


class TestTaskHelpers:
    def test_retrying_failure_is_a_warning(self, events):
        entry = events.log_task_failure(
            "job-1",
            "path-0",
            "path",
            "connection reset",
            error_code="transient_exhausted",
            will_retry=True,
            attempts=1,
            max_attempts=3,
        )
        assert entry.level == LogLevel.WARNING
        assert events.get_job_alerts("job-1") == []

    def test_permanent_failure_is_an_error(self, events):
        entry = events.log_task_failure(
            "job-1",
            "path-0",
            "path",
            "connection reset",
            error_code="transient_exhausted",
            will_retry=False,
            attempts=3,
            max_attempts=3,
        )
        assert entry.level == LogLevel.ERROR
        assert entry.message == "Task failed permanently: path"
        assert events.has_open_alert("job-1", AlertType.CRITICAL_ERROR)

    def test_recovery_helpers(self, events):
        attempt = events.log_recovery_attempt("job-1", 1, 3, reason="stuck")
        success = events.log_recovery_success("job-1", reset_tasks=2)

        assert attempt.message == "Recovery attempt"
        assert attempt.source == "resilience_monitor"
        assert attempt.details["max_attempts"] == 3
        assert success.message == "Recovery successful"
        assert success.details == {"reset_tasks": 2}
