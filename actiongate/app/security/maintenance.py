"""Optional periodic compaction of the gate's in-memory stores.

Opportunistic cleanup on every check already bounds memory; this task only
compacts proactively between bursts of traffic.
"""

import asyncio
from typing import Optional

from actiongate.app.core.logging import get_logger
from actiongate.app.security.gate import SecurityGate

logger = get_logger(__name__)


class MaintenanceTask:
    """Runs ``cleanup_expired_entries`` and CSRF cleanup on an interval.

    Usage:
        task = MaintenanceTask(gate, interval=300)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(self, gate: SecurityGate, interval: float = 300.0):
        """Initialize the maintenance task.

        Args:
            gate: Gate whose stores are compacted
            interval: Time between runs in seconds
        """
        self._gate = gate
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    def run_once(self) -> dict[str, int]:
        """Compact both stores once and report what was removed."""
        removed = self._gate.cleanup_expired()
        if any(removed.values()):
            logger.info(f"Maintenance removed {removed}")
        return removed

    async def start(self) -> None:
        """Start the background maintenance loop."""
        if self._task is not None:
            logger.debug("Maintenance task already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started maintenance task (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop the background maintenance loop."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Maintenance task did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped maintenance task")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error during maintenance cycle: {e}")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._interval
                )
            except asyncio.TimeoutError:
                pass
