import json

import pytest

from drivewatch.bridge import TelemetryBridge, reconnect_delay
from drivewatch.models import MessageType


def _queued(bridge):
    out = []
    while not bridge._outbox.empty():
        out.append(json.loads(bridge._outbox.get_nowait()))
    return out


def test_reconnect_delay_doubles_up_to_cap():
    assert [reconnect_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert reconnect_delay(3, base_s=0.5, cap_s=3.0) == 3.0


def test_heartbeat_is_answered_with_ping():
    bridge = TelemetryBridge()
    bridge._handle_frame(json.dumps({"type": "heartbeat", "data": {"timestamp": "now"}}))
    assert _queued(bridge) == [{"type": "ping", "data": {}}]


def test_frames_update_bookkeeping():
    seen = []
    bridge = TelemetryBridge(on_message=seen.append)

    bridge._handle_frame(json.dumps({"type": "connection_established", "data": {"connectionId": "conn_1_abc"}}))
    bridge._handle_frame(json.dumps({"type": "session_started", "data": {"sessionId": "abc12345"}}))
    bridge._handle_frame(json.dumps({"type": "telemetry_data", "data": {
        "telemetry": {"sessionId": "abc12345", "speed": 88.1},
        "alert": {"kind": "speed_warning"},
    }}))

    assert bridge.connection_id == "conn_1_abc"
    assert bridge.session_id == "abc12345"
    assert bridge.telemetry_received == 1
    assert bridge.alerts_received == 1
    assert bridge.last_telemetry["speed"] == 88.1
    assert len(seen) == 3

    bridge._handle_frame(json.dumps({"type": "session_stopped", "data": {"sessionId": "abc12345"}}))
    assert bridge.session_id is None


def test_non_json_frame_ignored():
    bridge = TelemetryBridge()
    assert bridge._handle_frame("garbage") is None
    assert bridge.messages_received == 0


def test_commands_are_queued():
    bridge = TelemetryBridge()
    bridge.start_session("abc12345", weather="rainy", simulation_speed=500)
    bridge.subscribe("abc12345")
    bridge.request_status()
    bridge.stop_session()

    assert _queued(bridge) == [
        {"type": "start_session", "data": {"sessionId": "abc12345", "weather": "rainy", "simulationSpeed": 500}},
        {"type": "subscribe_telemetry", "data": {"sessionId": "abc12345"}},
        {"type": "request_session_status", "data": {"sessionId": "abc12345"}},
        {"type": "stop_session", "data": {}},
    ]


def test_full_queue_drops_oldest():
    bridge = TelemetryBridge()
    for i in range(bridge._outbox.maxsize):
        bridge.send_command(MessageType.PING, {"n": i})
    assert bridge.send_command(MessageType.PING, {"n": "last"}) is True

    queued = _queued(bridge)
    assert len(queued) == bridge._outbox.maxsize
    assert queued[0]["data"] == {"n": 1}
    assert queued[-1]["data"] == {"n": "last"}


def test_gives_up_after_max_reconnects():
    bridge = TelemetryBridge(
        server_url="ws://127.0.0.1:9/ws",
        max_reconnects=2,
        base_delay_s=0.01,
        max_delay_s=0.02,
    )
    assert bridge.connect(timeout=0.2) is False
    assert bridge.wait(timeout=10) is True
    assert bridge.gave_up
    assert not bridge.is_connected
    bridge.disconnect()


def test_cli_requires_a_session_or_start():
    from drivewatch.bridge import main

    with pytest.raises(SystemExit):
        main([])
