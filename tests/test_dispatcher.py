import json
import threading
from datetime import timedelta

import pytest

from lockdown.errors import AlarmArmFailed
from lockdown.dispatcher import AlarmDispatcher
from lockdown.schema import DAY_SECONDS, AlarmKey
from lockdown.utils.time import ClockSource
from conftest import BERLIN, BOOT_TIME, berlin


def test_arm_replaces_existing_key(engine):
    d = engine.dispatcher
    d.arm_oneshot(AlarmKey.COUNTDOWN_END, berlin(2024, 6, 10, 13, 0))
    d.arm_oneshot(AlarmKey.COUNTDOWN_END, berlin(2024, 6, 10, 14, 0))

    records = d.records()
    assert len(records) == 1
    assert records[0].next_fire == berlin(2024, 6, 10, 14, 0)
    assert not records[0].recurring


def test_cancel_is_idempotent(engine):
    d = engine.dispatcher
    d.arm_daily(AlarmKey.LOCK, berlin(2024, 6, 10, 22, 0))
    d.cancel(AlarmKey.LOCK)
    d.cancel(AlarmKey.LOCK)
    d.cancel(AlarmKey.UNLOCK)

    assert d.records() == []


def test_tick_delivers_oneshot_once(engine):
    d = engine.dispatcher
    d.arm_oneshot(AlarmKey.COUNTDOWN_END, berlin(2024, 6, 10, 12, 1))

    assert d.tick(berlin(2024, 6, 10, 12, 0, 59)) == []
    events = d.tick(berlin(2024, 6, 10, 12, 1, 5))

    assert [e.key for e in events] == [AlarmKey.COUNTDOWN_END]
    assert events[0].late is False
    assert engine.posted == events
    assert d.get(AlarmKey.COUNTDOWN_END) is None
    assert d.tick(berlin(2024, 6, 10, 12, 2)) == []


def test_tick_advances_daily_record(engine):
    d = engine.dispatcher
    d.arm_daily(AlarmKey.LOCK, berlin(2024, 6, 10, 22, 0))

    events = d.tick(berlin(2024, 6, 10, 22, 0))
    assert len(events) == 1

    record = d.get(AlarmKey.LOCK)
    assert record.period_seconds == DAY_SECONDS
    assert record.next_fire == berlin(2024, 6, 11, 22, 0)


def test_tick_collapses_missed_periods_and_flags_late(engine):
    d = engine.dispatcher
    d.arm_daily(AlarmKey.LOCK, berlin(2024, 6, 10, 22, 0))

    # Suspended for three days
    events = d.tick(berlin(2024, 6, 13, 23, 0))

    assert len(events) == 1
    assert events[0].late is True
    assert events[0].scheduled_for == berlin(2024, 6, 10, 22, 0)
    assert d.get(AlarmKey.LOCK).next_fire == berlin(2024, 6, 14, 22, 0)


def test_tick_delivers_same_instant_in_key_order(engine):
    d = engine.dispatcher
    at = berlin(2024, 6, 10, 22, 0)
    d.arm_daily(AlarmKey.UNLOCK, at)
    d.arm_daily(AlarmKey.LOCK, at)

    events = d.tick(at)
    assert [e.key for e in events] == [AlarmKey.LOCK, AlarmKey.UNLOCK]


def test_records_survive_restart(engine):
    engine.dispatcher.arm_daily(AlarmKey.LOCK, berlin(2024, 6, 10, 22, 0))

    reloaded = engine._dispatcher()
    assert reloaded.get(AlarmKey.LOCK).next_fire == berlin(2024, 6, 10, 22, 0)

    data = json.loads((engine.path / "alarms.json").read_text())
    assert data["boot_time"] == BOOT_TIME


def test_records_dropped_after_reboot(engine):
    engine.dispatcher.arm_daily(AlarmKey.LOCK, berlin(2024, 6, 10, 22, 0))

    reloaded = engine._dispatcher(boot_time=BOOT_TIME + 3600)
    assert reloaded.records() == []


def test_failed_arm_keeps_previous_record(engine, monkeypatch):
    d = engine.dispatcher
    d.arm_oneshot(AlarmKey.COUNTDOWN_END, berlin(2024, 6, 10, 13, 0))

    def broken(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("lockdown.dispatcher.write_json_atomic", broken)
    with pytest.raises(AlarmArmFailed):
        d.arm_oneshot(AlarmKey.COUNTDOWN_END, berlin(2024, 6, 10, 14, 0))

    assert d.get(AlarmKey.COUNTDOWN_END).next_fire == berlin(2024, 6, 10, 13, 0)


def test_sleep_is_capped_by_poll_interval(engine):
    d = engine.dispatcher
    assert d._sleep_seconds() == 5.0

    d.arm_oneshot(AlarmKey.COUNTDOWN_END, engine.clock.now() + timedelta(seconds=2))
    assert d._sleep_seconds() == pytest.approx(2.0)

    d.arm_oneshot(AlarmKey.COUNTDOWN_END, engine.clock.now() - timedelta(seconds=2))
    assert d._sleep_seconds() == 0.0


def test_background_thread_delivers_and_stops(tmp_path):
    delivered = []
    fired = threading.Event()

    def post(event):
        delivered.append(event)
        fired.set()

    clock = ClockSource(tz=BERLIN)
    d = AlarmDispatcher(
        post=post,
        clock=clock,
        path=tmp_path / "alarms.json",
        poll_seconds=0.05,
        boot_time_fn=lambda: BOOT_TIME,
    )
    d.start()
    thread = d._thread
    d.arm_oneshot(AlarmKey.COUNTDOWN_END, clock.now() + timedelta(milliseconds=30))

    assert fired.wait(timeout=5)
    d.stop()

    assert [e.key for e in delivered] == [AlarmKey.COUNTDOWN_END]
    assert not thread.is_alive()
    assert d.records() == []
