"""
============================================================
 DriveWatch — Protocol Handler
 Decodes {type, data} frames from a client and drives the
 registries. Client mistakes become error replies on the
 same socket; the connection is never closed for them.
============================================================
"""

import logging
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError

from drivewatch.connections import ConnectionEntry, ConnectionRegistry, Transport
from drivewatch.dispatcher import BroadcastDispatcher
from drivewatch.models import (
    SUPPORTED_TYPES,
    ClientMessage,
    MessageType,
    SessionQuery,
    StartSessionRequest,
    envelope,
    iso_now,
)
from drivewatch.simulation import SessionSimulationRegistry
from drivewatch.storage import TelemetryStore

log = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Awaitable[None]]


def _describe(err: ValidationError) -> str:
    first = err.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


class ProtocolHandler:
    """One instance serves every connection; per-connection state lives in the registry."""

    def __init__(
        self,
        connections: ConnectionRegistry,
        simulations: SessionSimulationRegistry,
        dispatcher: BroadcastDispatcher,
        store: TelemetryStore,
    ) -> None:
        self.connections = connections
        self.simulations = simulations
        self.dispatcher = dispatcher
        self.store = store
        self._handlers: Dict[MessageType, Handler] = {
            MessageType.START_SESSION: self._start_session,
            MessageType.STOP_SESSION: self._stop_session,
            MessageType.SUBSCRIBE_TELEMETRY: self._subscribe,
            MessageType.UNSUBSCRIBE_TELEMETRY: self._unsubscribe,
            MessageType.REQUEST_SESSION_STATUS: self._session_status,
            MessageType.PING: self._ping,
        }

    # ── Connection events ─────────────────────────────────────────────

    async def on_connect(self, transport: Transport, client: str = "") -> ConnectionEntry:
        entry = self.connections.register(transport, client=client)
        await self._reply(entry.connection_id, "connection_established", {
            "connectionId": entry.connection_id,
            "timestamp": iso_now(),
            "message": "Welcome to the DriveWatch real-time telemetry stream",
        })
        return entry

    async def on_disconnect(self, connection_id: str) -> None:
        self.connections.unregister(connection_id)

    async def on_message(self, connection_id: str, raw: str | bytes) -> None:
        if connection_id not in self.connections:
            return
        self.connections.touch(connection_id)

        try:
            message = ClientMessage.model_validate_json(raw)
        except ValidationError as e:
            log.warning("[WS] Bad frame from %s: %s", connection_id, _describe(e))
            await self._reply(connection_id, "error", {
                "message": "Invalid message format",
                "timestamp": iso_now(),
            })
            return

        try:
            msg_type = MessageType(message.type)
        except ValueError:
            await self._reply(connection_id, "error", {
                "message": f"Unknown message type: {message.type}",
                "supportedTypes": SUPPORTED_TYPES,
            })
            return

        log.debug("[WS] %s ← %s", connection_id, msg_type.value)
        try:
            await self._handlers[msg_type](connection_id, message.data)
        except Exception as e:
            log.exception("[WS] %s handler failed for %s", msg_type.value, connection_id)
            await self._reply(connection_id, "error", {
                "message": f"Failed to handle {msg_type.value}",
                "error": str(e),
            })

    # ── Commands ──────────────────────────────────────────────────────

    async def _start_session(self, connection_id: str, data: Dict[str, Any]) -> None:
        try:
            req = StartSessionRequest.model_validate(data)
        except ValidationError as e:
            await self._reply(connection_id, "session_error", {
                "message": "Failed to start session",
                "error": _describe(e),
            })
            return

        try:
            record = await self.store.find_session(req.session_id) if req.session_id else None
            if record is None:
                record = await self.store.create_session(req.session_id, req.weather, req.road_type)
        except Exception as e:
            log.error("[WS] Could not open session for %s: %s", connection_id, e)
            await self._reply(connection_id, "session_error", {
                "message": "Failed to start session",
                "error": str(e),
            })
            return

        self.connections.subscribe(connection_id, record.session_id)
        self.simulations.start(record.session_id, req.simulation_speed)
        # joining a running session keeps its original tick interval
        running = self.simulations.get(record.session_id)
        interval_ms = running.interval_ms if running is not None else req.simulation_speed

        await self._reply(connection_id, "session_started", {
            "sessionId": record.session_id,
            "weather": record.weather,
            "roadType": record.road_type,
            "startTime": record.start_time.isoformat(),
            "simulationSpeed": interval_ms,
            "message": "Session started. Telemetry streaming will begin shortly.",
        })

    async def _stop_session(self, connection_id: str, data: Dict[str, Any]) -> None:
        session_id = self.connections.session_of(connection_id)
        if session_id is None:
            await self._reply(connection_id, "session_error", {
                "message": "No active session for this connection",
            })
            return

        self.simulations.stop(session_id)
        try:
            record = await self.store.end_session(session_id)
        except Exception as e:
            log.error("[WS] Could not end session %s: %s", session_id, e)
            await self._reply(connection_id, "session_error", {
                "message": "Failed to stop session",
                "error": str(e),
            })
            return

        self.connections.unsubscribe(connection_id)
        await self._reply(connection_id, "session_stopped", {
            "sessionId": session_id,
            "endTime": record.end_time.isoformat() if record and record.end_time else iso_now(),
            "durationMs": record.duration_ms() if record else None,
            "message": "Session ended successfully",
        })

    async def _subscribe(self, connection_id: str, data: Dict[str, Any]) -> None:
        try:
            query = SessionQuery.model_validate(data)
        except ValidationError:
            await self._reply(connection_id, "subscription_error", {
                "message": "sessionId required for telemetry subscription",
            })
            return

        self.connections.subscribe(connection_id, query.session_id)
        await self._reply(connection_id, "subscription_confirmed", {
            "sessionId": query.session_id,
            "simulationActive": self.simulations.is_running(query.session_id),
            "message": f"Subscribed to telemetry for session {query.session_id}",
        })

    async def _unsubscribe(self, connection_id: str, data: Dict[str, Any]) -> None:
        previous = self.connections.unsubscribe(connection_id)
        await self._reply(connection_id, "unsubscription_confirmed", {
            "previousSession": previous,
            "message": "Unsubscribed from telemetry stream",
        })

    async def _session_status(self, connection_id: str, data: Dict[str, Any]) -> None:
        try:
            query = SessionQuery.model_validate(data)
        except ValidationError:
            await self._reply(connection_id, "error", {
                "message": "sessionId required for session status",
            })
            return

        try:
            status = await self.session_status(query.session_id)
        except Exception as e:
            await self._reply(connection_id, "session_status_error", {
                "sessionId": query.session_id,
                "message": "Error retrieving session status",
                "error": str(e),
            })
            return
        await self._reply(connection_id, "session_status", status)

    async def _ping(self, connection_id: str, data: Dict[str, Any]) -> None:
        await self._reply(connection_id, "pong", {"timestamp": iso_now()})

    # ── Helpers ───────────────────────────────────────────────────────

    async def session_status(self, session_id: str) -> Dict[str, Any]:
        """Existence / running / metadata snapshot for one session."""
        record = await self.store.find_session(session_id)
        active = self.simulations.is_running(session_id)
        if record is None:
            return {
                "sessionId": session_id,
                "exists": False,
                "simulationActive": active,
                "message": "Session not found",
            }

        status = {
            "sessionId": session_id,
            "exists": True,
            "status": record.status,
            "startTime": record.start_time.isoformat(),
            "endTime": record.end_time.isoformat() if record.end_time else None,
            "durationMs": record.duration_ms(),
            "simulationActive": active,
            "weather": record.weather,
            "roadType": record.road_type,
            "subscribers": self.connections.subscriber_count(session_id),
        }
        sim = self.simulations.get(session_id)
        if sim is not None:
            status["simulation"] = sim.to_dict()
        return status

    async def _reply(self, connection_id: str, msg_type: str, data: Dict[str, Any]) -> bool:
        return await self.dispatcher.send(connection_id, envelope(msg_type, data))
