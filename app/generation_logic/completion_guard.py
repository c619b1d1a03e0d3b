"""Exactly-once completion latch for a generation run.

Stages move ``running -> result_emitted -> callbacks_drained``. Every event
handler and side-effect callback enters through :meth:`CompletionGuard.callback`;
once the result is emitted nothing new gets in, while callbacks already in
flight are allowed to finish before the run is considered drained.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from app.models.generation_models import CompletionStage

logger = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL = 0.01


class CompletionGuard:
    def __init__(self, drain_delay: float = 0.2, drain_timeout: float = 5.0, run_id: str = ""):
        self.drain_delay = drain_delay
        self.drain_timeout = drain_timeout
        self.run_id = run_id
        self._lock = threading.Lock()
        self._stage = CompletionStage.RUNNING
        self._in_flight = 0
        self.suppressed = 0

    @property
    def stage(self) -> CompletionStage:
        with self._lock:
            return self._stage

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def try_enter(self) -> bool:
        """Register an in-flight callback if no result has been emitted yet."""
        with self._lock:
            if self._stage is not CompletionStage.RUNNING:
                self.suppressed += 1
                return False
            self._in_flight += 1
            return True

    def exit(self) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    @contextmanager
    def callback(self) -> Iterator[bool]:
        entered = self.try_enter()
        try:
            yield entered
        finally:
            if entered:
                self.exit()

    def latch(self) -> bool:
        """Move to ``result_emitted``. Returns False if a result was already emitted."""
        with self._lock:
            if self._stage is not CompletionStage.RUNNING:
                return False
            self._stage = CompletionStage.RESULT_EMITTED
            return True

    async def drain(self) -> None:
        """Wait the grace delay and for in-flight callbacks, then mark the run drained."""
        await asyncio.sleep(self.drain_delay)
        deadline = time.monotonic() + self.drain_timeout
        while self.in_flight and time.monotonic() < deadline:
            await asyncio.sleep(DRAIN_POLL_INTERVAL)
        with self._lock:
            pending = self._in_flight
            self._stage = CompletionStage.CALLBACKS_DRAINED
        if pending:
            logger.warning("[%s] %d callbacks still running after drain timeout", self.run_id, pending)
        logger.debug("[%s] Callbacks drained (%d late events suppressed)", self.run_id, self.suppressed)
