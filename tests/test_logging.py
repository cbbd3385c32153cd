"""Tests for structured step events."""

from structlog.testing import capture_logs

from cloudplan.logging import ERROR, STEP_START, WARN, StepEvents, bind_context


class TestStepEvents:
    """step-start/info/warn/error events."""

    def test_event_kinds(self):
        """Test every helper tags its event with the matching kind."""
        with capture_logs() as logs:
            events = StepEvents().bind(run_id="r1")
            events.step_start("run_started", resources=4)
            events.info("resource_ready", resource_id="network")
            events.warn("run_failed", reason="x")
            events.error("run_failed_with_leaks", leaked=["rule"])

        assert [entry["event_kind"] for entry in logs] == [STEP_START, "info", WARN, ERROR]
        assert [entry["log_level"] for entry in logs] == ["info", "info", "warning", "error"]
        assert all(entry["run_id"] == "r1" for entry in logs)
        assert logs[0]["resources"] == 4

    def test_bind_context(self):
        """Test bind_context returns a logger carrying the fields."""
        with capture_logs() as logs:
            bind_context(run_id="r2").info("run_started")

        assert logs == [{"event": "run_started", "run_id": "r2", "log_level": "info"}]
