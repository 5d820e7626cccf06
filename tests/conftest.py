from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from lockdown.dispatcher import AlarmDispatcher
from lockdown.settings import settings
from lockdown.store import ScheduleStore
from lockdown.status import StatusSurface
from lockdown.utils.time import ClockSource
from lockdown.core import EnforcementCore
from lockdown.schema import PrivilegeStatus

BERLIN = ZoneInfo("Europe/Berlin")
BOOT_TIME = 1_700_000_000.0


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
    return tmp_path


class FakeClock:
    """Settable wall clock for ClockSource.now_fn."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeGate:
    def __init__(self, granted=True):
        self.granted = granted

    def is_granted(self):
        return PrivilegeStatus.GRANTED if self.granted else PrivilegeStatus.NOT_GRANTED


class FakeLock:
    def __init__(self):
        self.calls = 0
        self.error = None

    def lock_now(self):
        if self.error:
            raise self.error
        self.calls += 1


class Notices:
    """Records every notify call a StatusSurface makes."""

    def __init__(self):
        self.calls = []

    def __call__(self, summary, body="", **kwargs):
        self.calls.append((summary, body, kwargs))
        return 42

    @property
    def texts(self):
        return [body for _, body, _ in self.calls]


def berlin(y, mo, d, h, mi=0, s=0) -> datetime:
    return datetime(y, mo, d, h, mi, s, tzinfo=BERLIN).astimezone(timezone.utc)


class Engine:
    """Core wired to fakes, with the dispatcher's events collected in a list."""

    def __init__(self, path, start: datetime, granted=True):
        self.path = path
        self.now = FakeClock(start)
        self.clock = ClockSource(tz=BERLIN, now_fn=self.now)
        self.gate = FakeGate(granted)
        self.lock = FakeLock()
        self.notices = Notices()
        self.posted = []
        self.dispatcher = self._dispatcher()
        self.core = EnforcementCore(
            gate=self.gate,
            lock=self.lock,
            clock=self.clock,
            dispatcher=self.dispatcher,
            store=ScheduleStore(path / "schedules.json"),
            surface=StatusSurface(notify=self.notices),
        )

    def _dispatcher(self, boot_time=BOOT_TIME):
        return AlarmDispatcher(
            post=self.posted.append,
            clock=self.clock,
            path=self.path / "alarms.json",
            poll_seconds=5.0,
            late_tolerance_seconds=60,
            boot_time_fn=lambda: boot_time,
        )

    def run_until(self, instant: datetime):
        """Jumps the clock and feeds everything that fired to the core, in order."""
        self.now.current = instant
        events = self.dispatcher.tick()
        for event in events:
            self.core.on_alarm(event)
        self.posted.clear()
        return events

    def restart(self, boot_time=BOOT_TIME):
        """Simulates a daemon restart on the same data directory."""
        self.notices = Notices()
        self.dispatcher = self._dispatcher(boot_time)
        self.core = EnforcementCore(
            gate=self.gate,
            lock=self.lock,
            clock=self.clock,
            dispatcher=self.dispatcher,
            store=ScheduleStore(self.path / "schedules.json"),
            surface=StatusSurface(notify=self.notices),
        )
        self.core.on_startup()
        return self.core


@pytest.fixture
def engine(tmp_path):
    return Engine(tmp_path, berlin(2024, 6, 10, 12, 0))
