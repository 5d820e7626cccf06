import json

from lockdown.daemon import handle_command, handle_event, read_command
from lockdown.schema import AlarmEvent, AlarmKey, EnforcementPhase
from lockdown.settings import settings
from conftest import berlin


def test_read_command_consumes_file(tmp_path):
    settings.command_file.write_text(json.dumps({"command": "lock_now"}))

    assert read_command() == {"command": "lock_now"}
    assert not settings.command_file.exists()
    assert read_command() is None


def test_read_command_drops_malformed(tmp_path):
    settings.command_file.write_text("{broken")
    assert read_command() is None
    assert not settings.command_file.exists()

    settings.command_file.write_text(json.dumps(["lock_now"]))
    assert read_command() is None


def test_handle_countdown_command(engine):
    handle_command(engine.core, {"command": "start_countdown", "duration_ms": 5000})

    assert engine.lock.calls == 1
    assert engine.core.state.phase == EnforcementPhase.COUNTDOWN_ACTIVE


def test_handle_window_command(engine):
    handle_command(engine.core, {"command": "set_daily_window", "start": "22:00", "end": "06:30"})

    assert len(engine.dispatcher.records()) == 2
    assert engine.notices.texts == ["Scheduled lock set from 22:00 to 06:30"]


def test_bad_time_format_command(engine):
    handle_command(engine.core, {"command": "set_daily_window", "start": "7:00pm", "end": "06:30"})

    assert engine.dispatcher.records() == []
    assert not (engine.path / "schedules.json").exists()
    assert engine.notices.texts == ["Invalid time format '7:00pm'. Use HH:MM"]


def test_failed_command_does_not_escape(engine):
    engine.gate.granted = False

    handle_command(engine.core, {"command": "lock_now"})
    handle_command(engine.core, {"command": "start_countdown", "duration_ms": "soon"})
    handle_command(engine.core, {"command": "unknown"})

    assert engine.lock.calls == 0


def test_handle_event_routes_alarms(engine):
    engine.core.set_daily_window((22, 0), (6, 30))
    at = berlin(2024, 6, 10, 22, 0)
    engine.now.current = at

    handle_event(engine.core, AlarmEvent(key=AlarmKey.LOCK, scheduled_for=at, delivered_at=at))
    assert engine.core.state.window_on

    handle_event(engine.core, {"command": "cancel_daily_window"})
    assert engine.core.state.is_idle
