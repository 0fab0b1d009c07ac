import pytest

from conftest import make_sample
from drivewatch.hazards import CooldownState, classify, evaluate, stopping_distance
from drivewatch.models import AlertKind, Severity


def test_stopping_distance():
    # 100 km/h at 7 m/s^2
    assert stopping_distance(100.0) == pytest.approx(55.11, abs=0.01)
    assert stopping_distance(0.0) == 0.0


@pytest.mark.parametrize("speed, obstacle, kind, severity", [
    (50.0, 3.0, AlertKind.EMERGENCY_BRAKE, Severity.CRITICAL),
    (50.0, 5.0, AlertKind.EMERGENCY_BRAKE, Severity.CRITICAL),
    (90.0, 25.0, AlertKind.COLLISION_WARNING, Severity.HIGH),
    (130.0, 100.0, AlertKind.SPEED_WARNING, Severity.MEDIUM),
    (85.0, 29.0, AlertKind.COLLISION_WARNING, Severity.HIGH),
    (40.0, 15.0, AlertKind.COLLISION_WARNING, Severity.MEDIUM),
])
def test_classify_rules(speed, obstacle, kind, severity):
    verdict = classify(speed, obstacle)
    assert verdict is not None
    assert verdict[0] == kind
    assert verdict[1] == severity


def test_classify_first_match_wins():
    # over the limit AND too close to stop: collision outranks speed
    kind, severity, _ = classify(135.0, 40.0)
    assert (kind, severity) == (AlertKind.COLLISION_WARNING, Severity.HIGH)


def test_classify_messages():
    assert classify(50.0, 3.0)[2] == "EMERGENCY: Immediate braking required!"
    assert "130.0 km/h" in classify(130.0, 100.0)[2]
    assert "following too closely" in classify(40.0, 15.0)[2]


def test_safe_road():
    assert classify(60.0, 150.0) is None
    assert classify(120.0, 300.0) is None


def test_evaluate_builds_alert_with_snapshot():
    cooldown = CooldownState()
    sample = make_sample(speed=50.0, obstacle=3.0)
    alert = evaluate(sample, cooldown, now_ms=1000.0)
    assert alert is not None
    assert alert.is_critical
    assert alert.trigger_snapshot.speed == 50.0
    assert alert.trigger_snapshot.obstacle_distance == 3.0
    assert alert.trigger_snapshot.gps == sample.gps
    assert cooldown.last_alert_at == 1000.0
    wire = alert.to_wire()
    assert wire["kind"] == "emergency_brake"
    assert wire["triggerSnapshot"]["obstacleDistance"] == 3.0


def test_cooldown_suppresses_for_five_seconds():
    cooldown = CooldownState()
    hazardous = make_sample(speed=50.0, obstacle=3.0)

    assert evaluate(hazardous, cooldown, now_ms=1000.0) is not None
    assert evaluate(hazardous, cooldown, now_ms=5999.0) is None
    # suppressed tick leaves the window where it was
    assert cooldown.last_alert_at == 1000.0
    assert cooldown.remaining_ms(5999.0) == pytest.approx(1.0)

    assert evaluate(hazardous, cooldown, now_ms=6001.0) is not None
    assert cooldown.last_alert_at == 6001.0


def test_safe_sample_does_not_start_cooldown():
    cooldown = CooldownState()
    assert evaluate(make_sample(speed=60.0, obstacle=150.0), cooldown, now_ms=1000.0) is None
    assert cooldown.last_alert_at is None
    assert not cooldown.active(1000.0)


def test_first_alert_at_time_zero():
    cooldown = CooldownState()
    assert evaluate(make_sample(speed=50.0, obstacle=3.0), cooldown, now_ms=0.0) is not None
    assert cooldown.active(4999.0)
    assert not cooldown.active(5000.0)
