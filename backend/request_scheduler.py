"""
Request Scheduler - debounces position changes into engine analysis requests.

Only the latest position inside a debounce window is analysed. When the
timer fires, the generation counter advances and the aggregator is reset in
the same step, so output from any earlier search is stale from then on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from analysis_aggregator import AnalysisAggregator
from engine_session import EngineSession
from errors import EngineNotReady, EngineUnavailable

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_S = 0.1


class RequestScheduler:
    def __init__(
        self,
        engine: EngineSession,
        aggregator: AnalysisAggregator,
        *,
        depth: int = 18,
        delay: float = DEFAULT_DEBOUNCE_S,
    ):
        self.engine = engine
        self.aggregator = aggregator
        self.depth = depth
        self.delay = delay
        self.generation = 0
        self.pending_fen: Optional[str] = None
        self.in_flight: Optional[int] = None
        self.analysis_available = True
        self._timer: Optional[asyncio.TimerHandle] = None
        self._dispatch_task: Optional[asyncio.Task] = None

    def position_changed(self, fen: str) -> None:
        """(Re)start the debounce timer for `fen`; must run inside the event loop."""
        if not self.analysis_available:
            return
        self.cancel()
        self.pending_fen = fen
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        """Drop a pending (not yet fired) request. Never touches the engine."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.pending_fen = None

    @property
    def has_pending(self) -> bool:
        return self._timer is not None

    def halt(self) -> None:
        """Drop any pending request and stop the search in flight (game over)."""
        self.cancel()
        if self.in_flight is None:
            return
        logger.info(f"[SCHEDULER] halting generation {self.in_flight}")
        self.in_flight = None
        self._dispatch_task = asyncio.create_task(self._stop_engine(self._dispatch_task))

    def mark_complete(self, generation: int) -> None:
        """Called when the terminal line for `generation` has been seen."""
        if self.in_flight == generation:
            self.in_flight = None

    async def wait_idle(self) -> None:
        """Wait for the most recent dispatch to reach the engine."""
        task = self._dispatch_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _fire(self) -> None:
        fen = self.pending_fen
        self._timer = None
        self.pending_fen = None
        if fen is None:
            return

        self.generation += 1
        generation = self.generation
        self.aggregator.reset(fen, generation)
        self.in_flight = generation
        self._dispatch_task = asyncio.create_task(self._dispatch(fen, generation))

    async def _stop_engine(self, previous: Optional[asyncio.Task]) -> None:
        # Let a dispatch that is still sending finish first, so its `go` is not sent after this stop.
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        try:
            await self.engine.stop()
        except EngineUnavailable as e:
            self.analysis_available = False
            logger.error(f"[SCHEDULER] analysis disabled, engine unavailable: {e}")
        except EngineNotReady as e:
            logger.warning(f"[SCHEDULER] stop not sent: {e}")

    async def _dispatch(self, fen: str, generation: int) -> None:
        try:
            await self.engine.stop()
            await self.engine.analyze(fen, self.depth, generation)
        except EngineUnavailable as e:
            self.analysis_available = False
            self.in_flight = None
            logger.error(f"[SCHEDULER] analysis disabled, engine unavailable: {e}")
        except EngineNotReady as e:
            if self.in_flight == generation:
                self.in_flight = None
            logger.warning(f"[SCHEDULER] generation {generation} not sent: {e}")
