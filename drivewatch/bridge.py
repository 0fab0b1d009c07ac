"""
============================================================
 DriveWatch — Telemetry Bridge (subscriber client)
 Headless WebSocket client that follows one session's
 telemetry stream from a DriveWatch server.

 ARCHITECTURE: Queue-based single-thread WebSocket ownership
   - commands are put into a thread-safe Queue
   - one background thread EXCLUSIVELY owns the socket:
     connect → drain queue → heartbeat → recv → reconnect
   - reconnects back off exponentially and give up after
     BRIDGE_MAX_RECONNECTS consecutive failures

 Usage:
     bridge = TelemetryBridge(session_id="abc12345")
     bridge.connect()
     ...
     bridge.disconnect()

 CLI:
     drivewatch-bridge --session abc12345 --start
============================================================
"""

import argparse
import json
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional

import websocket  # pip install websocket-client

from drivewatch import config
from drivewatch.models import MessageType, envelope

log = logging.getLogger(__name__)

MessageCallback = Callable[[Dict[str, Any]], None]


def reconnect_delay(
    attempt: int,
    base_s: float = config.BRIDGE_RECONNECT_BASE_S,
    cap_s: float = config.BRIDGE_RECONNECT_MAX_S,
) -> float:
    """Seconds to wait before reconnect ``attempt`` (0-based): 1, 2, 4, 8, 10, 10 ..."""
    return min(base_s * (2 ** attempt), cap_s)


class TelemetryBridge:
    """
    Non-blocking subscriber for one session.

    The session the bridge follows is re-subscribed automatically
    after every reconnect, and server heartbeats are answered with
    a ``ping`` so the connection never looks idle.
    """

    def __init__(
        self,
        server_url: str = config.SERVER_URL,
        session_id: Optional[str] = None,
        on_message: Optional[MessageCallback] = None,
        max_reconnects: int = config.BRIDGE_MAX_RECONNECTS,
        heartbeat_s: float = config.BRIDGE_HEARTBEAT_S,
        base_delay_s: float = config.BRIDGE_RECONNECT_BASE_S,
        max_delay_s: float = config.BRIDGE_RECONNECT_MAX_S,
    ) -> None:
        self.server_url = server_url
        self.session_id = session_id
        self.on_message = on_message
        self.max_reconnects = max_reconnects
        self.heartbeat_s = heartbeat_s
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s

        self.connection_id: Optional[str] = None
        self.messages_received = 0
        self.telemetry_received = 0
        self.alerts_received = 0
        self.last_telemetry: Optional[Dict[str, Any]] = None

        self._ws: Optional[websocket.WebSocket] = None
        self._thread: Optional[threading.Thread] = None
        self._connected = threading.Event()
        self._stop_event = threading.Event()
        self._gave_up = threading.Event()
        self._outbox: queue.Queue = queue.Queue(maxsize=config.BRIDGE_QUEUE_SIZE)

    # ── Public API ────────────────────────────────────────────────────

    def connect(self, timeout: float = 8.0) -> bool:
        """
        Start the socket thread and wait up to ``timeout`` seconds
        for the first connection. Returns False if it is still
        retrying in the background.
        """
        self._stop_event.clear()
        self._gave_up.clear()
        self._connected.clear()
        self._thread = threading.Thread(target=self._run_forever, name="drivewatch-bridge", daemon=True)
        self._thread.start()

        connected = self._connected.wait(timeout=timeout)
        if connected:
            log.info("[BRIDGE] Connected to %s", self.server_url)
        else:
            log.warning("[BRIDGE] Server not available yet, retrying in background")
        return connected

    def disconnect(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._connected.clear()
        log.info("[BRIDGE] Disconnected from %s", self.server_url)

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def gave_up(self) -> bool:
        return self._gave_up.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the bridge gives up reconnecting (or ``timeout``)."""
        return self._gave_up.wait(timeout=timeout)

    def send_command(self, msg_type: MessageType, data: Optional[Dict[str, Any]] = None) -> bool:
        """Queue one command; the oldest queued command is dropped when full."""
        payload = json.dumps(envelope(msg_type, data or {}))
        try:
            self._outbox.put_nowait(payload)
            return True
        except queue.Full:
            try:
                self._outbox.get_nowait()
            except queue.Empty:
                pass
            try:
                self._outbox.put_nowait(payload)
                return True
            except queue.Full:
                return False

    def subscribe(self, session_id: str) -> bool:
        self.session_id = session_id
        return self.send_command(MessageType.SUBSCRIBE_TELEMETRY, {"sessionId": session_id})

    def unsubscribe(self) -> bool:
        self.session_id = None
        return self.send_command(MessageType.UNSUBSCRIBE_TELEMETRY)

    def start_session(
        self,
        session_id: Optional[str] = None,
        weather: Optional[str] = None,
        road_type: Optional[str] = None,
        simulation_speed: Optional[int] = None,
    ) -> bool:
        data: Dict[str, Any] = {}
        if session_id:
            data["sessionId"] = session_id
        if weather:
            data["weather"] = weather
        if road_type:
            data["roadType"] = road_type
        if simulation_speed:
            data["simulationSpeed"] = simulation_speed
        return self.send_command(MessageType.START_SESSION, data)

    def stop_session(self) -> bool:
        return self.send_command(MessageType.STOP_SESSION)

    def request_status(self, session_id: Optional[str] = None) -> bool:
        return self.send_command(
            MessageType.REQUEST_SESSION_STATUS, {"sessionId": session_id or self.session_id},
        )

    # ── Inbound frames ────────────────────────────────────────────────

    def _handle_frame(self, raw: str) -> Optional[Dict[str, Any]]:
        """Decode one server frame, update bookkeeping, hand it to ``on_message``."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            log.warning("[BRIDGE] Ignoring non-JSON frame: %r", raw[:80] if isinstance(raw, str) else raw)
            return None
        if not isinstance(message, dict):
            return None

        self.messages_received += 1
        msg_type = message.get("type")
        data = message.get("data") or {}

        if msg_type == "heartbeat":
            self.send_command(MessageType.PING)
        elif msg_type == "connection_established":
            self.connection_id = data.get("connectionId")
        elif msg_type in ("session_started", "subscription_confirmed"):
            self.session_id = data.get("sessionId") or self.session_id
        elif msg_type == "session_stopped":
            self.session_id = None
        elif msg_type == "telemetry_data":
            self.telemetry_received += 1
            self.last_telemetry = data.get("telemetry")
            if data.get("alert"):
                self.alerts_received += 1
        elif msg_type == "global_alert":
            self.alerts_received += 1
        elif msg_type in ("error", "session_error", "subscription_error"):
            log.warning("[BRIDGE] Server %s: %s", msg_type, data.get("message"))

        if self.on_message is not None:
            self.on_message(message)
        return message

    # ── Socket thread ────────────────────────────────────────────────

    def _run_forever(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            try:
                ws = websocket.WebSocket()
                ws.connect(self.server_url, timeout=15)
                self._ws = ws
                self._connected.set()
                failures = 0
                log.info("[BRIDGE] WebSocket link established")

                if self.session_id:
                    ws.send(json.dumps(envelope(MessageType.SUBSCRIBE_TELEMETRY, {"sessionId": self.session_id})))

                self._pump(ws)

            except Exception as e:
                self._connected.clear()
                self._close_socket()
                if self._stop_event.is_set():
                    break
                if failures >= self.max_reconnects:
                    log.error("[BRIDGE] Giving up after %d reconnect attempt(s): %s", failures, e)
                    self._gave_up.set()
                    break
                delay = reconnect_delay(failures, self.base_delay_s, self.max_delay_s)
                failures += 1
                log.warning("[BRIDGE] Connection lost: %s — retry %d/%d in %.0fs",
                            e, failures, self.max_reconnects, delay)
                self._stop_event.wait(timeout=delay)

        self._connected.clear()
        self._close_socket()

    def _pump(self, ws: websocket.WebSocket) -> None:
        """Drain commands, heartbeat and read frames until stopped or the socket dies."""
        ws.settimeout(0.05)
        last_heartbeat = time.time()
        while not self._stop_event.is_set():
            for _ in range(5):
                try:
                    msg = self._outbox.get_nowait()
                except queue.Empty:
                    break
                ws.send(msg)

            now = time.time()
            if (now - last_heartbeat) >= self.heartbeat_s:
                ws.send(json.dumps(envelope(MessageType.PING, {})))
                last_heartbeat = now

            while True:
                try:
                    raw = ws.recv()
                except websocket.WebSocketTimeoutException:
                    break
                if raw == "":
                    raise websocket.WebSocketConnectionClosedException("server closed the connection")
                self._handle_frame(raw)

            self._stop_event.wait(timeout=0.1)

    def _close_socket(self) -> None:
        if self._ws is None:
            return
        try:
            self._ws.close()
        except Exception as e:
            log.debug("[BRIDGE] Close error: %s", e)
        self._ws = None


# ── CLI ───────────────────────────────────────────────────────────────
def _print_frame(message: Dict[str, Any]) -> None:
    msg_type = message.get("type")
    data = message.get("data") or {}
    if msg_type == "telemetry_data":
        t = data.get("telemetry") or {}
        gps = t.get("gps") or {}
        line = (f"{t.get('timestamp')}  speed={t.get('speed'):>6} km/h  "
                f"obstacle={t.get('obstacleDistance'):>6} m  "
                f"gps=({gps.get('lat')}, {gps.get('lng')})")
        alert = data.get("alert")
        if alert:
            line += f"  ⚠ {alert.get('severity').upper()}: {alert.get('message')}"
        print(line)
    elif msg_type == "global_alert":
        alert = data.get("alert") or {}
        print(f"🚨 [{data.get('sourceSession')}] {alert.get('message')}")
    elif msg_type != "pong":
        print(f"[{msg_type}] {json.dumps(data)}")


def main(argv: Optional[list] = None) -> int:
    from drivewatch.logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="DriveWatch telemetry bridge")
    parser.add_argument("--url", default=config.SERVER_URL, help="Server WebSocket URL")
    parser.add_argument("--session", default=None, help="Session ID to follow")
    parser.add_argument("--start", action="store_true", help="Start the session instead of only subscribing")
    parser.add_argument("--weather", default=None)
    parser.add_argument("--road-type", default=None)
    parser.add_argument("--interval", type=int, default=None, help="Simulation tick in ms (with --start)")
    parser.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    args = parser.parse_args(argv)

    if not args.session and not args.start:
        parser.error("either --session or --start is required")

    setup_logging(log_file=None)

    bridge = TelemetryBridge(
        server_url=args.url,
        session_id=None if args.start else args.session,
        on_message=_print_frame,
    )
    bridge.connect()
    if args.start:
        bridge.start_session(args.session, args.weather, args.road_type, args.interval)

    try:
        bridge.wait(timeout=args.duration)
    except KeyboardInterrupt:
        pass
    finally:
        if args.start:
            bridge.stop_session()
            time.sleep(0.3)
        bridge.disconnect()
        print(f"\nReceived {bridge.telemetry_received} telemetry frame(s), {bridge.alerts_received} alert(s)")
    return 1 if bridge.gave_up else 0


if __name__ == "__main__":
    raise SystemExit(main())
