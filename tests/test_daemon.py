"""Tests for the scheduler daemon: gates, admission, reconciliation, loop."""

import signal
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from cadence import db, schedules
from cadence.daemon import (
    SchedulerDaemon,
    get_daemon_status,
    is_in_quiet_hours,
    locked_or_skip,
    poll_once,
    start_daemon,
    stop_daemon,
)
from cadence.schedules import (
    create_schedule,
    get_execution_history,
    get_schedule,
    update_schedule,
)


# =============================================================================
# Quiet hours
# =============================================================================


class TestQuietHours:
    def test_wrapping_window(self):
        assert is_in_quiet_hours(datetime(2026, 10, 19, 23, 30), "22:00", "06:00") is True
        assert is_in_quiet_hours(datetime(2026, 10, 19, 5, 59), "22:00", "06:00") is True
        assert is_in_quiet_hours(datetime(2026, 10, 19, 12, 0), "22:00", "06:00") is False
        assert is_in_quiet_hours(datetime(2026, 10, 19, 6, 0), "22:00", "06:00") is False

    def test_plain_window(self):
        assert is_in_quiet_hours(datetime(2026, 10, 19, 12, 0), "09:00", "17:00") is True
        assert is_in_quiet_hours(datetime(2026, 10, 19, 17, 0), "09:00", "17:00") is False
        assert is_in_quiet_hours(datetime(2026, 10, 19, 8, 59), "09:00", "17:00") is False

    def test_missing_bound_disables(self):
        assert is_in_quiet_hours(datetime(2026, 10, 19, 23, 30), "22:00", None) is False
        assert is_in_quiet_hours(datetime(2026, 10, 19, 23, 30), None, None) is False


# =============================================================================
# Tick gates
# =============================================================================


@pytest.fixture
def due_schedule(project_dir, monday_9am, make_due):
    schedule_id = create_schedule(project_dir, "standup", "Write the standup", cron_expression="0 9 * * 1-5")
    make_due(schedule_id, monday_9am)
    return schedule_id


class TestGates:
    def test_disabled_scheduler(self, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        project_ctx.config["scheduler"]["enabled"] = False

        result = poll_once(project_ctx, now=monday_9am)

        assert result.gate == "disabled"
        assert result.admitted == []
        fake_spawn.popen.assert_not_called()

    def test_quiet_hours(self, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        project_ctx.config["scheduler"]["quiet_hours_start"] = "08:00"
        project_ctx.config["scheduler"]["quiet_hours_end"] = "10:00"

        result = poll_once(project_ctx, now=monday_9am)

        assert result.gate == "quiet_hours"
        fake_spawn.popen.assert_not_called()

    def test_daily_cost_limit(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        project_ctx.config["settings"]["cost_limit_daily"] = 1.0
        db.record_cost(project_dir, "ceo", "sess-1", 1.0)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.gate.startswith("daily_cost_limit")
        fake_spawn.popen.assert_not_called()

    def test_zero_daily_limit_admits_nothing(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        project_ctx.config["settings"]["cost_limit_daily"] = 0
        db.record_cost(project_dir, "ceo", "sess-1", 3.0)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.gate.startswith("daily_cost_limit")
        assert result.admitted == []
        fake_spawn.popen.assert_not_called()

    def test_zero_daily_limit_with_no_spend(self, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        project_ctx.config["settings"]["cost_limit_daily"] = 0

        result = poll_once(project_ctx, now=monday_9am)

        assert result.gate.startswith("daily_cost_limit")
        fake_spawn.popen.assert_not_called()

    def test_no_active_session(self, project_ctx, due_schedule, monday_9am, fake_spawn):
        result = poll_once(project_ctx, now=monday_9am)

        assert result.gate == "no_active_session"
        fake_spawn.popen.assert_not_called()


# =============================================================================
# Admission
# =============================================================================


class TestAdmission:
    def test_admits_with_scheduled_prefix(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        result = poll_once(project_ctx, now=monday_9am)

        assert result.admitted == [due_schedule]
        schedule = get_schedule(project_dir, due_schedule)
        job = db.get_background_job(project_dir, schedule["last_job_id"])
        assert job["directive"] == f"[SCHEDULED::{due_schedule}] Write the standup"
        assert job["session_id"] == "sess-1"
        assert fake_spawn.popen.call_args[0][0][-1] == "sdk-handle-1"

    def test_max_concurrent_one(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        first = create_schedule(project_dir, "first", "x", cron_expression="0 9 * * *")
        second = create_schedule(project_dir, "second", "x", cron_expression="0 9 * * *")
        make_due(first, monday_9am, seconds_ago=20)
        make_due(second, monday_9am, seconds_ago=10)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.admitted == [first]
        assert get_schedule(project_dir, first)["status"] == "running"
        other = get_schedule(project_dir, second)
        assert other["status"] == "idle"
        assert other["next_run_at"] == db.to_db_timestamp(monday_9am - timedelta(seconds=10))

        # Still busy on the next tick
        result = poll_once(project_ctx, now=monday_9am + timedelta(seconds=30))
        assert result.admitted == []

    def test_running_schedules_use_slots(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        project_ctx.config["scheduler"]["max_concurrent"] = 2
        ids = [create_schedule(project_dir, f"s{i}", "x", cron_expression="0 9 * * *") for i in range(3)]
        for i, schedule_id in enumerate(ids):
            make_due(schedule_id, monday_9am, seconds_ago=30 - i)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.admitted == ids[:2]

    def test_event_triggered_execution_source(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        schedule_id = create_schedule(project_dir, "review", "x", trigger_type="task_completed", trigger_value="9")
        make_due(schedule_id, monday_9am, seconds_ago=600)

        result = poll_once(project_ctx, now=monday_9am)

        # Overdue event schedules are never skipped
        assert result.admitted == [schedule_id]
        [execution] = get_execution_history(project_dir, schedule_id)
        assert execution["trigger_source"] == "trigger"
        assert execution["status"] == "running"

    def test_skip_policy(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        schedule_id = create_schedule(project_dir, "standup", "x", cron_expression="0 9 * * *")
        make_due(schedule_id, monday_9am, seconds_ago=61)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.skipped == [schedule_id]
        assert result.admitted == []
        fake_spawn.popen.assert_not_called()
        schedule = get_schedule(project_dir, schedule_id)
        assert db.from_db_timestamp(schedule["next_run_at"]) > monday_9am
        [execution] = get_execution_history(project_dir, schedule_id)
        assert execution["status"] == "skipped"
        assert execution["job_id"] is None

    def test_skip_does_not_consume_slot(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        missed = create_schedule(project_dir, "missed", "x", cron_expression="0 9 * * *")
        fresh = create_schedule(project_dir, "fresh", "x", cron_expression="0 9 * * *")
        make_due(missed, monday_9am, seconds_ago=3600)
        make_due(fresh, monday_9am)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.skipped == [missed]
        assert result.admitted == [fresh]

    def test_run_once_policy(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        project_ctx.config["scheduler"]["missed_run_policy"] = "run_once"
        schedule_id = create_schedule(project_dir, "standup", "x", cron_expression="0 9 * * *")
        make_due(schedule_id, monday_9am, seconds_ago=3600)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.admitted == [schedule_id]

    def test_cost_breaker_blocks(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        update_schedule(project_dir, due_schedule, run_count=2, total_cost_usd=20.0)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.blocked == [due_schedule]
        fake_spawn.popen.assert_not_called()
        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "error"
        assert schedule["last_error"] == "Average cost per run ($10.00) exceeds cost_limit_per_run ($5.00)"
        assert db.from_db_timestamp(schedule["next_run_at"]) > monday_9am

    def test_cost_breaker_allows_average_within_limit(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        update_schedule(project_dir, due_schedule, run_count=2, total_cost_usd=10.0)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.admitted == [due_schedule]

    def test_skip_path_error_does_not_stop_the_tick(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        missed = create_schedule(project_dir, "missed", "x", cron_expression="0 9 * * *")
        fresh = create_schedule(project_dir, "fresh", "x", cron_expression="0 9 * * *")
        make_due(missed, monday_9am, seconds_ago=3600)
        make_due(fresh, monday_9am)
        real_record = schedules.record_execution

        def record(*args, **kwargs):
            if kwargs.get("status") == "skipped":
                raise RuntimeError("database is locked")
            return real_record(*args, **kwargs)

        with patch("cadence.daemon.schedules.record_execution", side_effect=record):
            result = poll_once(project_ctx, now=monday_9am)

        assert result.errored == [missed]
        assert result.admitted == [fresh]
        schedule = get_schedule(project_dir, missed)
        assert schedule["status"] == "error"
        assert schedule["last_error"] == "database is locked"
        assert get_schedule(project_dir, fresh)["status"] == "running"

    def test_breaker_path_error_does_not_stop_the_tick(self, project_dir, project_ctx, active_session, monday_9am, make_due, fake_spawn):
        project_ctx.config["scheduler"]["max_concurrent"] = 2
        costly = create_schedule(project_dir, "costly", "x", cron_expression="0 9 * * *")
        fresh = create_schedule(project_dir, "fresh", "x", cron_expression="0 9 * * *")
        update_schedule(project_dir, costly, run_count=1, total_cost_usd=50.0)
        make_due(costly, monday_9am, seconds_ago=5)
        make_due(fresh, monday_9am)

        with patch("cadence.daemon.schedules.mark_schedule_failed", side_effect=RuntimeError("disk I/O error")):
            result = poll_once(project_ctx, now=monday_9am)

        assert result.errored == [costly]
        assert result.admitted == [fresh]

    def test_spawn_failure_isolated_to_schedule(self, project_dir, project_ctx, active_session, monday_9am, make_due):
        broken = create_schedule(project_dir, "broken", "x", cron_expression="0 9 * * *")
        make_due(broken, monday_9am)

        with patch("cadence.background.subprocess.Popen", side_effect=OSError("fork failed")):
            result = poll_once(project_ctx, now=monday_9am)

        assert result.errored == [broken]
        schedule = get_schedule(project_dir, broken)
        assert schedule["status"] == "error"
        assert "fork failed" in schedule["last_error"]


# =============================================================================
# Reconciliation
# =============================================================================


class TestReconciliation:
    def _start(self, project_ctx, due_schedule, monday_9am):
        poll_once(project_ctx, now=monday_9am)
        return get_schedule(project_ctx.project_dir, due_schedule)["last_job_id"]

    def test_end_to_end_weekday_schedule(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        result = poll_once(project_ctx, now=monday_9am)

        assert result.admitted == [due_schedule]
        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "running"
        assert schedule["run_count"] == 1
        job_id = schedule["last_job_id"]

        # The worker finishes on its own
        db.update_background_job(
            project_dir, job_id,
            status="completed", completed_at=db.utc_now(),
            total_cost_usd=0.42, num_turns=3, duration_ms=60000,
        )

        result = poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        assert result.reconciled == [due_schedule]
        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "idle"
        assert schedule["total_cost_usd"] == pytest.approx(0.42)
        assert schedule["next_run_at"] == db.to_db_timestamp(monday_9am + timedelta(days=1))
        [execution] = get_execution_history(project_dir, due_schedule)
        assert execution["status"] == "completed"
        assert execution["cost_usd"] == pytest.approx(0.42)
        assert execution["num_turns"] == 3
        assert execution["completed_at"] is not None

    def test_running_job_is_left_running(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        self._start(project_ctx, due_schedule, monday_9am)

        result = poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        assert result.reconciled == []
        assert get_schedule(project_dir, due_schedule)["status"] == "running"

    def test_failed_job_puts_schedule_in_error(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        job_id = self._start(project_ctx, due_schedule, monday_9am)
        db.update_background_job(project_dir, job_id, status="failed", error_message="Rate limited")

        poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "error"
        assert schedule["last_error"] == "Rate limited"
        [execution] = get_execution_history(project_dir, due_schedule)
        assert execution["status"] == "failed"

    def test_failed_job_without_message(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        job_id = self._start(project_ctx, due_schedule, monday_9am)
        db.update_background_job(project_dir, job_id, status="failed")

        poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        assert get_schedule(project_dir, due_schedule)["last_error"] == "Background job failed"

    def test_crashed_worker_is_detected(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        job_id = self._start(project_ctx, due_schedule, monday_9am)
        fake_spawn.alive.return_value = False

        poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        job = db.get_background_job(project_dir, job_id)
        assert job["status"] == "failed"
        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "error"
        assert schedule["last_error"] == f"Worker process crashed or not found (pid {job['pid']})"
        assert len(db.get_background_logs(project_dir, job_id)) == 1

    def test_expensive_run_trips_per_run_limit(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        job_id = self._start(project_ctx, due_schedule, monday_9am)
        db.update_background_job(project_dir, job_id, status="completed", total_cost_usd=7.5)

        poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "error"
        assert schedule["total_cost_usd"] == pytest.approx(7.5)
        assert schedule["last_error"] == "Last execution cost ($7.50) exceeded cost_limit_per_run ($5.00)"

    def test_missing_job_returns_schedule_to_idle(self, project_dir, project_ctx, due_schedule, monday_9am):
        update_schedule(project_dir, due_schedule, status="running", last_job_id=999)

        result = poll_once(project_ctx, now=monday_9am)

        assert result.reconciled == [due_schedule]
        schedule = get_schedule(project_dir, due_schedule)
        assert schedule["status"] == "idle"
        assert schedule["next_run_at"] == db.to_db_timestamp(monday_9am + timedelta(days=1))

    def test_reconciles_during_quiet_hours(self, project_dir, project_ctx, active_session, due_schedule, monday_9am, fake_spawn):
        job_id = self._start(project_ctx, due_schedule, monday_9am)
        db.update_background_job(project_dir, job_id, status="completed", total_cost_usd=0.1)
        project_ctx.config["scheduler"]["quiet_hours_start"] = "09:00"
        project_ctx.config["scheduler"]["quiet_hours_end"] = "10:00"

        result = poll_once(project_ctx, now=monday_9am + timedelta(minutes=1))

        assert result.gate == "quiet_hours"
        assert result.reconciled == [due_schedule]


# =============================================================================
# Daemon loop and control
# =============================================================================


class TestSchedulerDaemon:
    def test_loop_records_state_and_stops(self, project_dir, scheduler_config):
        clock_values = iter(range(0, 1000, 10))
        daemon = SchedulerDaemon(project_dir, scheduler_config, clock=lambda: next(clock_values))
        ticks = []

        def fake_sleep(seconds):
            assert 0 <= seconds <= 1.0
            if len(ticks) >= 2:
                daemon.request_stop()

        daemon.sleep = fake_sleep
        with patch.object(daemon, "tick", side_effect=lambda: ticks.append(1)):
            daemon.run_forever()

        assert len(ticks) >= 2
        assert db.get_state_value(project_dir, db.STATE_CONNECTION_STATE) == "stopped"
        assert db.get_state_value(project_dir, db.STATE_DAEMON_PID) == ""
        assert db.get_state_value(project_dir, db.STATE_DAEMON_HEARTBEAT)

    def test_tick_swallows_errors(self, project_dir, scheduler_config):
        daemon = SchedulerDaemon(project_dir, scheduler_config)

        with patch("cadence.daemon.poll_once", side_effect=RuntimeError("db gone")):
            assert daemon.tick() is None


class TestDaemonControl:
    def test_status_reports_stale_daemon(self, project_dir):
        db.set_state_value(project_dir, db.STATE_DAEMON_PID, "31337")
        db.set_state_value(project_dir, db.STATE_CONNECTION_STATE, "running")

        with patch("cadence.daemon.is_process_running", return_value=False):
            status = get_daemon_status(project_dir)

        assert status.pid == 31337
        assert status.alive is False
        assert status.stale is True

    def test_start_spawns_detached_daemon(self, project_dir):
        with (
            patch("cadence.daemon.is_process_running", return_value=False),
            patch("cadence.daemon.subprocess.Popen", return_value=MagicMock(pid=777)) as popen,
        ):
            assert start_daemon(project_dir, debug=True) == 777

        args, kwargs = popen.call_args
        assert args[0][1:3] == ["-m", "cadence.daemon"]
        assert args[0][-1] == "--debug"
        assert kwargs["start_new_session"] is True

    def test_start_returns_live_daemon_pid(self, project_dir):
        db.set_state_value(project_dir, db.STATE_DAEMON_PID, "31337")

        with (
            patch("cadence.daemon.is_process_running", return_value=True),
            patch("cadence.daemon.subprocess.Popen") as popen,
        ):
            assert start_daemon(project_dir) == 31337

        popen.assert_not_called()

    def test_stop_dead_daemon_clears_state(self, project_dir):
        db.set_state_value(project_dir, db.STATE_DAEMON_PID, "31337")
        db.set_state_value(project_dir, db.STATE_CONNECTION_STATE, "running")

        with (
            patch("cadence.daemon.is_process_running", return_value=False),
            patch("cadence.daemon.os.kill") as kill,
        ):
            assert stop_daemon(project_dir) is False

        kill.assert_not_called()
        assert db.get_state_value(project_dir, db.STATE_CONNECTION_STATE) == "stopped"
        assert db.get_state_value(project_dir, db.STATE_DAEMON_PID) == ""

    def test_stop_escalates_to_sigkill(self, project_dir):
        db.set_state_value(project_dir, db.STATE_DAEMON_PID, "31337")

        with (
            patch("cadence.daemon.is_process_running", return_value=True),
            patch("cadence.daemon.os.kill") as kill,
        ):
            assert stop_daemon(project_dir, timeout=0) is True

        sent = [c.args[1] for c in kill.call_args_list]
        assert sent == [signal.SIGTERM, signal.SIGKILL]

    def test_lock_is_exclusive(self, project_dir):
        lock_path = project_dir / ".cadence" / "scheduler.lock"

        with locked_or_skip(lock_path) as first:
            with locked_or_skip(lock_path) as second:
                assert first is True
                assert second is False
