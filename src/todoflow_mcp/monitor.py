"""Background monitor that advances idle auto-executing workflows."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

# Advance outcomes that moved the workflow cursor.
MOVED_STATUSES = frozenset({"advanced", "completed"})


class AdvanceResult(Protocol):
    status: str


class ProgressTarget(Protocol):
    """What the monitor needs from whoever owns the workflows."""

    def is_completed(self, workflow_id: str) -> bool:
        ...

    def is_executing(self, workflow_id: str) -> bool:
        ...

    async def auto_advance(self, workflow_id: str) -> AdvanceResult:
        ...


class AutoProgressionMonitor:
    """Periodically advances tracked workflows that have been idle too long.

    A failure while advancing one workflow is logged and the sweep moves on to
    the next one.
    """

    def __init__(
        self,
        target: ProgressTarget,
        *,
        interval_seconds: float = 5.0,
        idle_seconds: float = 10.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._target = target
        self._interval = interval_seconds
        self._idle = idle_seconds
        self._clock = clock or time.monotonic
        self._last_activity: dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def track(self, workflow_id: str) -> None:
        with self._lock:
            self._last_activity.setdefault(workflow_id, self._clock())

    def untrack(self, workflow_id: str) -> None:
        with self._lock:
            self._last_activity.pop(workflow_id, None)

    def touch(self, workflow_id: str) -> None:
        with self._lock:
            if workflow_id in self._last_activity:
                self._last_activity[workflow_id] = self._clock()

    def tracked(self) -> list[str]:
        with self._lock:
            return list(self._last_activity)

    def last_activity(self, workflow_id: str) -> float | None:
        with self._lock:
            return self._last_activity.get(workflow_id)

    async def tick(self) -> list[str]:
        """Run one sweep and return the ids whose cursor moved."""

        advanced: list[str] = []
        for workflow_id in self.tracked():
            last = self.last_activity(workflow_id)
            if last is None:
                continue
            try:
                if self._target.is_completed(workflow_id):
                    self.untrack(workflow_id)
                    continue
                if self._target.is_executing(workflow_id):
                    continue
                if self._clock() - last <= self._idle:
                    continue
            except Exception:
                logger.exception(
                    "Auto-progression check failed", extra={"workflow_id": workflow_id}
                )
                continue

            try:
                outcome = await self._target.auto_advance(workflow_id)
                if outcome.status in MOVED_STATUSES:
                    advanced.append(workflow_id)
            except Exception:
                logger.exception(
                    "Auto-progression failed", extra={"workflow_id": workflow_id}
                )
            finally:
                with self._lock:
                    if workflow_id in self._last_activity:
                        self._last_activity[workflow_id] = self._clock()

        if advanced:
            logger.debug("Auto-progression tick", extra={"advanced": advanced})
        return advanced

    async def _run(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self.tick()

    def start(self) -> None:
        """Start ticking on the running event loop."""

        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="todoflow-auto-progression"
        )
        logger.info(
            "Auto-progression monitor started",
            extra={"interval_seconds": self._interval, "idle_seconds": self._idle},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        assert self._stop is not None
        self._stop.set()
        task, self._task = self._task, None
        await task
        logger.info("Auto-progression monitor stopped")


__all__ = ["AdvanceResult", "AutoProgressionMonitor", "MOVED_STATUSES", "ProgressTarget"]
