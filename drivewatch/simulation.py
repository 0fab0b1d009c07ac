"""
============================================================
 DriveWatch — Session Simulation Registry
 One ticking simulation per active session:

   tick → motion.advance → hazards.evaluate
        → store write and dispatcher.publish (both detached)

 A tick that blows up is logged and skipped; the ticker keeps
 going. stop() cancels the ticker before it returns. Detached
 tasks are tracked so shutdown() can wait for them.
============================================================
"""

import asyncio
import functools
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from drivewatch import config
from drivewatch.connections import Clock, wall_clock_ms
from drivewatch.dispatcher import BroadcastDispatcher
from drivewatch.hazards import evaluate
from drivewatch.models import HazardAlert, TelemetrySample, utc_from_ms
from drivewatch.motion import SimulationState, advance, initial_state
from drivewatch.storage import TelemetryStore

log = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


# ── Timers ────────────────────────────────────────────────────────────
class Ticker(ABC):
    """Cancellable repeating timer driving one session."""

    def __init__(self, interval_ms: float, callback: TickCallback) -> None:
        self.interval_ms = interval_ms
        self.callback = callback

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def cancel(self) -> None:
        pass

    @property
    @abstractmethod
    def active(self) -> bool:
        pass

    async def wait_closed(self) -> None:
        pass


class AsyncioTicker(Ticker):
    """
    Fixed-rate loop on the running event loop. The callback is awaited
    before the next sleep, so ticks of one session never overlap.
    """

    def __init__(self, interval_ms: float, callback: TickCallback) -> None:
        super().__init__(interval_ms, callback)
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.interval_ms / 1000.0
        next_at = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            try:
                await self.callback()
            except Exception:
                log.exception("[SIM] Tick callback raised")
            next_at += interval
            if next_at < loop.time():
                # fell behind (slow tick / suspended loop): don't burst
                next_at = loop.time() + interval


TickerFactory = Callable[[float, TickCallback], Ticker]


# ── Registry ──────────────────────────────────────────────────────────
@dataclass
class RunningSimulation:
    session_id: str
    interval_ms: int
    state: SimulationState
    ticker: Ticker
    started_at_ms: float
    alerts: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "intervalMs": self.interval_ms,
            "startedAt": utc_from_ms(self.started_at_ms).isoformat(),
            "ticks": self.state.tick_count,
            "alerts": self.alerts,
            "routeProgressM": round(self.state.route_progress, 1),
        }


class SessionSimulationRegistry:
    """Owns every running SimulationState; nothing else mutates them."""

    def __init__(
        self,
        store: TelemetryStore,
        dispatcher: Optional[BroadcastDispatcher] = None,
        ticker_factory: TickerFactory = AsyncioTicker,
        rng: Optional[random.Random] = None,
        clock: Optional[Clock] = None,
        on_tick: Optional[Callable[[TelemetrySample, Optional[HazardAlert]], None]] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.on_tick = on_tick
        self._ticker_factory = ticker_factory
        self._rng = rng or random.Random()
        self._clock = clock or wall_clock_ms
        self._running: Dict[str, RunningSimulation] = {}
        self._pending: Set[asyncio.Task] = set()

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self, session_id: str, interval_ms: int = config.DEFAULT_TICK_MS) -> bool:
        """Begin ticking ``session_id``. Returns False if it was already running."""
        if session_id in self._running:
            log.warning("[SIM] Simulation already active for session %s — ignoring start", session_id)
            return False

        now = self._clock()
        ticker = self._ticker_factory(interval_ms, functools.partial(self.tick, session_id))
        self._running[session_id] = RunningSimulation(
            session_id=session_id,
            interval_ms=interval_ms,
            state=initial_state(self._rng, now),
            ticker=ticker,
            started_at_ms=now,
        )
        ticker.start()
        log.info("[SIM] Simulation STARTED for session %s (every %d ms)", session_id, interval_ms)
        return True

    def stop(self, session_id: str) -> bool:
        """Cancel the ticker and drop the state. No-op if not running."""
        sim = self._running.pop(session_id, None)
        if sim is None:
            return False
        sim.ticker.cancel()
        log.info("[SIM] Simulation STOPPED for session %s after %d tick(s)",
                 session_id, sim.state.tick_count)
        return True

    async def shutdown(self) -> None:
        """Stop everything and wait for tickers, writes and deliveries to finish."""
        sims = list(self._running.values())
        for sim in sims:
            self.stop(sim.session_id)
        for sim in sims:
            await sim.ticker.wait_closed()
        await self.drain()

    def is_running(self, session_id: str) -> bool:
        return session_id in self._running

    def get(self, session_id: str) -> Optional[RunningSimulation]:
        return self._running.get(session_id)

    def running_sessions(self) -> List[str]:
        return list(self._running)

    def __len__(self) -> int:
        return len(self._running)

    # ── Tick ──────────────────────────────────────────────────────────

    async def tick(self, session_id: str) -> Optional[TelemetrySample]:
        """
        Advance one session by one step; never raises (except cancellation).
        Persistence and delivery are detached, so a slow store or a slow
        subscriber never delays the next tick.
        """
        sim = self._running.get(session_id)
        if sim is None:
            return None
        try:
            now = self._clock()
            advance(sim.state, sim.interval_ms, self._rng, now)
            sample = sim.state.sample(session_id, now)
            alert = evaluate(sample, sim.state.cooldown, now)
            if alert is not None:
                sim.alerts += 1
                log.warning("[SIM] Hazard in session %s: %s (%s)",
                            session_id, alert.kind.value, alert.severity.value)

            self._spawn(self._write(sample, alert))
            if self.on_tick is not None:
                self.on_tick(sample, alert)
            if self.dispatcher is not None:
                self._spawn(self.dispatcher.publish(session_id, sample, alert))
            return sample
        except Exception:
            sim.errors += 1
            log.exception("[SIM] Tick failed for session %s — skipping", session_id)
            return None

    # ── Detached work (writes, deliveries) ────────────────────────────

    @property
    def pending_tasks(self) -> int:
        return len(self._pending)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, sample: TelemetrySample, alert: Optional[HazardAlert]) -> None:
        try:
            await self.store.save_telemetry(sample)
        except Exception as e:
            log.warning("[DB] Failed to save telemetry for session %s: %s", sample.session_id, e)
        if alert is None:
            return
        try:
            await self.store.save_alert(sample.session_id, alert)
        except Exception as e:
            log.warning("[DB] Failed to save %s alert for session %s: %s",
                        alert.kind.value, sample.session_id, e)

    async def drain(self) -> None:
        """Wait for every outstanding write and delivery (tests, shutdown)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
