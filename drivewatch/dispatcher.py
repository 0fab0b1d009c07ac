"""
============================================================
 DriveWatch — Broadcast Dispatcher
 Pushes each tick to the session's subscribers, then (for
 critical alerts only) a global_alert to every connection.
 Read-only view of the connection registry; best effort.

 Every send is bounded by ``send_timeout_s``. A subscriber
 whose previous telemetry frame is still in flight has the
 next one dropped, so one slow reader never piles up work
 or holds back the others.
============================================================
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Set

from drivewatch import config
from drivewatch.connections import ConnectionRegistry
from drivewatch.models import HazardAlert, TelemetrySample, envelope, iso_now

log = logging.getLogger(__name__)


class BroadcastDispatcher:
    """Routes simulation output to connected clients."""

    def __init__(self, connections: ConnectionRegistry, send_timeout_s: float = config.SEND_TIMEOUT_S) -> None:
        self.connections = connections
        self.send_timeout_s = send_timeout_s
        self.sent_count = 0
        self.failed_count = 0
        self.dropped_count = 0
        self._in_flight: Set[str] = set()

    async def send(self, connection_id: str, message: Dict[str, Any]) -> bool:
        """Deliver one message; a failure or timeout is logged and reported as False."""
        entry = self.connections.get(connection_id)
        if entry is None or not entry.transport.is_open:
            return False
        try:
            await asyncio.wait_for(entry.transport.send(message), self.send_timeout_s)
        except asyncio.TimeoutError:
            self.failed_count += 1
            log.warning("[WS] Send to %s timed out after %.1fs", connection_id, self.send_timeout_s)
            return False
        except Exception as e:
            self.failed_count += 1
            log.warning("[WS] Send to %s failed: %s", connection_id, e)
            return False
        self.sent_count += 1
        return True

    async def _fan_out(self, connection_ids: Iterable[str], message: Dict[str, Any]) -> int:
        ids = list(connection_ids)
        if not ids:
            return 0
        results = await asyncio.gather(*(self.send(cid, message) for cid in ids))
        return sum(1 for ok in results if ok)

    async def _send_telemetry(self, connection_id: str, message: Dict[str, Any]) -> bool:
        try:
            return await self.send(connection_id, message)
        finally:
            self._in_flight.discard(connection_id)

    async def publish(self, session_id: str, sample: TelemetrySample, alert: Optional[HazardAlert]) -> int:
        """
        Send ``telemetry_data`` to every subscriber of ``session_id``.
        Subscribers are served before any global alert for the same tick.
        """
        message = envelope("telemetry_data", {
            "telemetry": sample.to_wire(),
            "alert": alert.to_wire() if alert else None,
            "timestamp": iso_now(),
        })

        targets = []
        for cid in self.connections.connections_for(session_id):
            if cid in self._in_flight:
                self.dropped_count += 1
                log.debug("[WS] %s still busy, dropping telemetry frame for session %s", cid, session_id)
                continue
            # claimed before any await so a later tick sees it busy
            self._in_flight.add(cid)
            targets.append(cid)

        delivered = 0
        if targets:
            try:
                results = await asyncio.gather(*(self._send_telemetry(cid, message) for cid in targets))
            except BaseException:
                # sends cancelled before they started never release their claim
                self._in_flight.difference_update(targets)
                raise
            delivered = sum(1 for ok in results if ok)
        if delivered:
            log.debug("[WS] Telemetry for session %s → %d client(s)", session_id, delivered)

        if alert is not None and alert.is_critical:
            await self.broadcast_global_alert(session_id, alert)
        return delivered

    async def broadcast_global_alert(self, session_id: str, alert: HazardAlert) -> int:
        message = envelope("global_alert", {
            "alert": alert.to_wire(),
            "sourceSession": session_id,
            "timestamp": iso_now(),
            "message": "Critical alert from another session",
        })
        delivered = await self._fan_out(self.connections.all_ids(), message)
        log.warning("[WS] Critical alert from session %s broadcast to %d client(s)", session_id, delivered)
        return delivered
