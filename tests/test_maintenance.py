"""Tests for the periodic maintenance task."""

import asyncio

import pytest

from actiongate.app.security import maintenance
from actiongate.app.security.maintenance import MaintenanceTask


class TestMaintenanceTask:
    """Test start/stop and compaction."""

    def test_run_once(self, gate, clock):
        gate.check_rate_limit("ip:203.0.113.7", "api")
        gate.csrf.issue("sess-A")
        clock.advance(24 * 60 * 60)

        removed = MaintenanceTask(gate).run_once()
        assert removed == {"rate_limit_entries": 1, "csrf_tokens": 1}
        assert len(gate.engine) == 0

    @pytest.mark.asyncio
    async def test_start_runs_cleanup(self, gate, clock):
        gate.check_rate_limit("ip:203.0.113.7", "api")
        clock.advance(61)

        task = MaintenanceTask(gate, interval=60)
        await task.start()
        assert task.running is True
        await asyncio.sleep(0.05)
        await task.stop()

        assert task.running is False
        assert len(gate.engine) == 0

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, gate):
        task = MaintenanceTask(gate, interval=60)
        await task.start()
        first = task._task
        await task.start()
        assert task._task is first
        await task.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, gate):
        await MaintenanceTask(gate).stop()

    @pytest.mark.asyncio
    async def test_cycle_errors_do_not_stop_loop(self, gate, monkeypatch):
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(gate, "cleanup_expired", broken)
        task = MaintenanceTask(gate, interval=0.01)
        await task.start()
        await asyncio.sleep(0.1)
        assert task.running is True
        await task.stop()
        assert len(calls) > 1

    def test_logs_under_gate_logger(self):
        assert maintenance.logger.name == "actiongate.app.security.maintenance"
