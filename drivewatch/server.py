"""
============================================================
 DriveWatch — Telemetry Server
 FastAPI + WebSocket hub for simulated driving sessions.
 Run locally:  uvicorn drivewatch.server:app --port 8000
           or: drivewatch
============================================================
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from drivewatch import config
from drivewatch.connections import Clock, ConnectionRegistry, Transport
from drivewatch.dispatcher import BroadcastDispatcher
from drivewatch.models import envelope, iso_now
from drivewatch.protocol import ProtocolHandler
from drivewatch.simulation import AsyncioTicker, SessionSimulationRegistry, TickerFactory
from drivewatch.storage import SqlTelemetryStore, TelemetryStore

log = logging.getLogger(__name__)


# ── Transport ─────────────────────────────────────────────────────────
class WebSocketTransport(Transport):
    """Starlette WebSocket behind the core's Transport interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        # sim ticks and command replies share one socket
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.is_open:
            await self.websocket.close(code=code, reason=reason)

    async def ping(self) -> None:
        await self.send(envelope("heartbeat", {"timestamp": iso_now()}))

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )


# ── Hub ───────────────────────────────────────────────────────────────
class TelemetryHub:
    """Wires store, registries, dispatcher and protocol handler together."""

    def __init__(
        self,
        store: Optional[TelemetryStore] = None,
        auto_stop: bool = config.AUTO_STOP_ON_LAST_SUBSCRIBER,
        sweep_interval_s: float = config.SWEEP_INTERVAL_S,
        stale_threshold_ms: float = config.STALE_THRESHOLD_MS,
        ticker_factory: TickerFactory = AsyncioTicker,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store if store is not None else SqlTelemetryStore()
        self.sweep_interval_s = sweep_interval_s
        self.stale_threshold_ms = stale_threshold_ms

        self.connections = ConnectionRegistry(auto_stop=auto_stop, clock=clock)
        self.dispatcher = BroadcastDispatcher(self.connections)
        self.simulations = SessionSimulationRegistry(
            self.store, self.dispatcher, ticker_factory=ticker_factory, clock=clock,
        )
        self.connections.on_session_orphaned = self.simulations.stop
        self.protocol = ProtocolHandler(self.connections, self.simulations, self.dispatcher, self.store)

        self.started_at = time.time()
        self._sweeper: asyncio.Task | None = None

    async def start(self) -> None:
        await asyncio.to_thread(self.store.initialize)
        self.started_at = time.time()
        self._sweeper = asyncio.create_task(self._sweep_loop())
        log.info("[HUB] Telemetry hub STARTED (sweep every %.0fs, stale after %.0fs)",
                 self.sweep_interval_s, self.stale_threshold_ms / 1000.0)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.simulations.shutdown()
        self.store.close()
        log.info("[HUB] Telemetry hub STOPPED")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                await self.connections.sweep_stale(self.stale_threshold_ms)
            except Exception:
                log.exception("[HUB] Stale-connection sweep failed")
            stats = self.stats()
            log.info("[HUB] Active connections: %d, active sessions: %d",
                     stats["totalConnections"], stats["activeSessions"])

    def stats(self) -> Dict[str, Any]:
        return {
            "totalConnections": len(self.connections),
            "activeSessions": len(self.simulations),
            "runningSessions": self.simulations.running_sessions(),
            "uptimeMs": int((time.time() - self.started_at) * 1000),
            "messagesSent": self.dispatcher.sent_count,
            "sendFailures": self.dispatcher.failed_count,
            "framesDropped": self.dispatcher.dropped_count,
        }

    async def full_stats(self) -> Dict[str, Any]:
        """``stats()`` plus the store's counters, read off the event loop."""
        stats = self.stats()
        try:
            stats["storage"] = await asyncio.to_thread(self.store.get_stats)
        except Exception as e:
            log.warning("[DB] Could not read storage stats: %s", e)
            stats["storage"] = {"error": str(e)}
        return stats

    async def serve(self, websocket: WebSocket) -> None:
        """Own one client socket from accept to disconnect."""
        await websocket.accept()
        client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else ""
        entry = await self.protocol.on_connect(WebSocketTransport(websocket), client=client)
        connection_id = entry.connection_id
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.protocol.on_message(connection_id, raw)
        except RuntimeError as e:
            # socket already closed by the stale sweep
            log.debug("[HUB] Receive loop for %s ended: %s", connection_id, e)
        finally:
            await self.protocol.on_disconnect(connection_id)


# ── FastAPI App ───────────────────────────────────────────────────────
def create_app(hub: Optional[TelemetryHub] = None) -> FastAPI:
    hub = hub if hub is not None else TelemetryHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await hub.start()
        yield
        await hub.stop()

    app = FastAPI(title="DriveWatch Telemetry Server", version=config.VERSION, lifespan=lifespan)
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def api_health():
        return {
            "status": "OK",
            "message": "DriveWatch telemetry server is running",
            "timestamp": iso_now(),
            "version": config.VERSION,
        }

    @app.get("/api/stats")
    async def api_stats():
        return await hub.full_stats()

    @app.get("/api/sessions/{session_id}/status")
    async def api_session_status(session_id: str):
        return await hub.protocol.session_status(session_id)

    @app.websocket(config.WS_PATH)
    async def ws_telemetry(websocket: WebSocket):
        await hub.serve(websocket)

    return app


app = create_app()


# ── Main ──────────────────────────────────────────────────────────────
def main() -> None:
    import uvicorn

    from drivewatch.logging_setup import setup_logging

    setup_logging()
    print("\n    +-----------------------------------------------------------+")
    print(f"    |         DRIVEWATCH TELEMETRY SERVER  v{config.VERSION:<20}|")
    print("    |         FastAPI + WebSocket Hub + Hazard Alerts           |")
    print("    +-----------------------------------------------------------+\n")
    log.info("[BOOT] ws://%s:%d%s  db=%s", config.HOST, config.PORT, config.WS_PATH, config.DATABASE_URI)
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_config=None)


if __name__ == "__main__":
    main()
