#!/usr/bin/env python3
"""
HDC Poll Scheduler
Version: 1.0.0

Periodic transport-info polling for decks or configurations without display
timecode notifications. One task at a time; repeated failures halt it.
"""

import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from hdc_connection import CommandError, CommandTimeout, DeviceConnectionError

MIN_POLL_INTERVAL_MS = 15
MAX_POLL_INTERVAL_MS = 10000
DEFAULT_MAX_FAILURES = 3


def clamp_poll_interval(interval_ms: Any) -> int:
    """Bound a poll interval to [15, 10000] ms."""
    try:
        interval_ms = int(interval_ms)
    except (TypeError, ValueError):
        interval_ms = MAX_POLL_INTERVAL_MS
    return max(MIN_POLL_INTERVAL_MS, min(MAX_POLL_INTERVAL_MS, interval_ms))


class PollScheduler:
    """Runs an async poll callable at a fixed interval."""

    def __init__(self, poll: Callable[[], Awaitable[Any]], logger: logging.Logger,
                 interval_ms: int = 500, max_failures: int = DEFAULT_MAX_FAILURES):
        self.poll = poll
        self.logger = logger
        self.interval_ms = clamp_poll_interval(interval_ms)
        self.max_failures = max(1, int(max_failures))

        self.poll_count = 0
        self.consecutive_failures = 0
        self.last_poll = 0.0
        self.halted = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self.halted = False
        self.consecutive_failures = 0
        self._task = asyncio.create_task(self._run())
        self.logger.info(f"Transport polling started ({self.interval_ms} ms)")

    def stop(self):
        """Cancel the polling task. Safe to call when not running."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
            self.logger.info("Transport polling stopped")
        self._task = None

    def set_interval(self, interval_ms: int):
        """Change the interval; a running scheduler is cancelled and restarted."""
        self.interval_ms = clamp_poll_interval(interval_ms)
        if self.running:
            self.stop()
            self.start()

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_ms / 1000)

            try:
                await self.poll()
            except (CommandError, CommandTimeout, DeviceConnectionError) as e:
                if self._record_failure(f"Transport poll failed: {e}"):
                    return
                continue
            except Exception as e:
                if self._record_failure(f"Transport poll raised {type(e).__name__}: {e}"):
                    return
                continue

            self.consecutive_failures = 0
            self.poll_count += 1
            self.last_poll = time.time()

    def _record_failure(self, message: str) -> bool:
        """Count one failed poll; True when the scheduler has halted."""
        self.consecutive_failures += 1
        self.logger.warning(f"{message} ({self.consecutive_failures}/{self.max_failures})")
        if self.consecutive_failures >= self.max_failures:
            self.halted = True
            self.logger.error(
                f"Transport polling halted after {self.consecutive_failures} consecutive failures"
            )
            return True
        return False
