"""
============================================================
 DriveWatch — Connection Registry
 Tracks every live socket, its last activity and the one
 session it is subscribed to. Keeps a reverse index
 session → connection ids for dispatcher fan-out.
============================================================
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from drivewatch import config

log = logging.getLogger(__name__)

Clock = Callable[[], float]


def wall_clock_ms() -> float:
    return time.time() * 1000.0


class Transport(ABC):
    """What the core needs from a client connection (WebSocket, fake, ...)."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Liveness check; returning without error marks the peer alive."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


@dataclass
class ConnectionEntry:
    connection_id: str
    transport: Transport
    last_activity_at: float
    connected_at: float
    client: str = ""
    subscribed_session_id: Optional[str] = None
    messages_received: int = field(default=0)


class ConnectionRegistry:
    """
    Owns every ConnectionEntry. When the last subscriber of a session
    goes away (disconnect or sweep) and ``auto_stop`` is on, the
    ``on_session_orphaned`` hook fires with that session id.

    Activity is any inbound frame (``touch``) or a heartbeat that
    completed within ``heartbeat_timeout_s`` (``mark_alive``), so clients
    that only listen stay registered.
    """

    def __init__(
        self,
        on_session_orphaned: Optional[Callable[[str], Any]] = None,
        auto_stop: bool = config.AUTO_STOP_ON_LAST_SUBSCRIBER,
        clock: Optional[Clock] = None,
        heartbeat_timeout_s: float = config.HEARTBEAT_TIMEOUT_S,
    ) -> None:
        self.on_session_orphaned = on_session_orphaned
        self.auto_stop = auto_stop
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self._clock = clock or wall_clock_ms
        self._entries: Dict[str, ConnectionEntry] = {}
        self._subscribers: Dict[str, Set[str]] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────

    def new_connection_id(self) -> str:
        return f"conn_{int(self._clock())}_{uuid.uuid4().hex[:9]}"

    def register(self, transport: Transport, connection_id: Optional[str] = None, client: str = "") -> ConnectionEntry:
        connection_id = connection_id or self.new_connection_id()
        if connection_id in self._entries:
            raise ValueError(f"connection id already registered: {connection_id}")
        now = self._clock()
        entry = ConnectionEntry(
            connection_id=connection_id,
            transport=transport,
            last_activity_at=now,
            connected_at=now,
            client=client,
        )
        self._entries[connection_id] = entry
        log.info("[HUB] Connection %s registered %s(total: %d)",
                 connection_id, f"from {client} " if client else "", len(self._entries))
        return entry

    def unregister(self, connection_id: str) -> Optional[ConnectionEntry]:
        entry = self._entries.pop(connection_id, None)
        if entry is None:
            return None
        session_id = entry.subscribed_session_id
        if session_id is not None:
            self._drop_subscriber(connection_id, session_id)
            if not self._subscribers.get(session_id):
                self._session_orphaned(session_id)
        log.info("[HUB] Connection %s removed (total: %d)", connection_id, len(self._entries))
        return entry

    def _session_orphaned(self, session_id: str) -> None:
        if not self.auto_stop or self.on_session_orphaned is None:
            log.debug("[HUB] Session %s has no subscribers left — left running", session_id)
            return
        log.info("[HUB] Last subscriber of session %s gone — stopping simulation", session_id)
        self.on_session_orphaned(session_id)

    # ── Subscriptions ─────────────────────────────────────────────────

    def subscribe(self, connection_id: str, session_id: str) -> Optional[str]:
        """Point the connection at ``session_id``; returns the previous subscription."""
        entry = self._require(connection_id)
        previous = entry.subscribed_session_id
        if previous == session_id:
            return previous
        if previous is not None:
            self._drop_subscriber(connection_id, previous)
        entry.subscribed_session_id = session_id
        self._subscribers.setdefault(session_id, set()).add(connection_id)
        return previous

    def unsubscribe(self, connection_id: str) -> Optional[str]:
        entry = self._require(connection_id)
        previous = entry.subscribed_session_id
        if previous is not None:
            self._drop_subscriber(connection_id, previous)
            entry.subscribed_session_id = None
        return previous

    def _drop_subscriber(self, connection_id: str, session_id: str) -> None:
        subs = self._subscribers.get(session_id)
        if subs is None:
            return
        subs.discard(connection_id)
        if not subs:
            del self._subscribers[session_id]

    # ── Lookups ───────────────────────────────────────────────────────

    def connections_for(self, session_id: str) -> Set[str]:
        return set(self._subscribers.get(session_id, ()))

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def get(self, connection_id: str) -> Optional[ConnectionEntry]:
        return self._entries.get(connection_id)

    def session_of(self, connection_id: str) -> Optional[str]:
        entry = self._entries.get(connection_id)
        return entry.subscribed_session_id if entry else None

    def all_ids(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entries

    def _require(self, connection_id: str) -> ConnectionEntry:
        entry = self._entries.get(connection_id)
        if entry is None:
            raise KeyError(f"unknown connection: {connection_id}")
        return entry

    # ── Liveness ──────────────────────────────────────────────────────

    def touch(self, connection_id: str) -> None:
        entry = self._entries.get(connection_id)
        if entry is not None:
            entry.last_activity_at = self._clock()
            entry.messages_received += 1

    def mark_alive(self, connection_id: str) -> None:
        """Heartbeat delivered: refresh activity without counting a message."""
        entry = self._entries.get(connection_id)
        if entry is not None:
            entry.last_activity_at = self._clock()

    async def _heartbeat(self, connection_id: str, transport: Transport) -> bool:
        try:
            await asyncio.wait_for(transport.ping(), self.heartbeat_timeout_s)
        except asyncio.TimeoutError:
            log.warning("[HUB] Heartbeat to %s timed out after %.1fs", connection_id, self.heartbeat_timeout_s)
            return False
        except Exception as e:
            log.warning("[HUB] Heartbeat to %s failed: %s", connection_id, e)
            return False
        self.mark_alive(connection_id)
        return True

    async def sweep_stale(self, threshold_ms: float = config.STALE_THRESHOLD_MS) -> List[str]:
        """
        Force-close and unregister every connection idle for longer than
        ``threshold_ms``; heartbeat the rest concurrently. Returns the removed ids.
        """
        now = self._clock()
        stale = [
            cid for cid, entry in self._entries.items()
            if now - entry.last_activity_at > threshold_ms
        ]

        for cid in stale:
            entry = self._entries.get(cid)
            if entry is None:
                continue
            log.info("[HUB] Cleaning up stale connection %s (idle %.0fs)",
                     cid, (now - entry.last_activity_at) / 1000.0)
            try:
                await asyncio.wait_for(
                    entry.transport.close(code=1001, reason="Connection timed out"),
                    self.heartbeat_timeout_s,
                )
            except asyncio.TimeoutError:
                log.warning("[HUB] Close timed out for %s", cid)
            except Exception as e:
                log.warning("[HUB] Close failed for %s: %s", cid, e)
            self.unregister(cid)

        live = [(cid, entry.transport) for cid, entry in self._entries.items() if entry.transport.is_open]
        if live:
            await asyncio.gather(*(self._heartbeat(cid, transport) for cid, transport in live))

        return stale
