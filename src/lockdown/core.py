"""
Enforcement core: the lockdown state machine.

Two independent tracks, a one-shot countdown and a recurring daily window,
are folded into a pair of flags. The core is driven from a single thread: the
daemon feeds it user commands and alarm events one at a time, so nothing here
takes a lock.

The lock grant is checked at every site that would lock the session or arm an
alarm, because revocation happens outside the process with no callback.
"""

import functools
from datetime import datetime

from loguru import logger
from pydantic import ValidationError

from lockdown.errors import BadTimeFormat, LockdownError, PrivilegeMissing
from lockdown.schema import (
    AlarmEvent,
    AlarmKey,
    Countdown,
    DailyWindow,
    EnforcementState,
    PrivilegeStatus,
)
from lockdown.status import (
    DEVICE_LOCKED_FOR,
    LOCK_PERIOD_ENDED,
    PRIVILEGE_MISSING_AT_FIRE,
    SCHEDULE_SET,
    SCHEDULED_LOCK_ACTIVATED,
    SCHEDULED_LOCK_DEACTIVATED,
    TIMER_ENDED,
    LockdownPresence,
)
from lockdown.store import COUNTDOWN, DAILY_WINDOW


def user_command(method):
    """Reports a failed user command on the status surface, then re-raises it."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except LockdownError as e:
            logger.error(f"{method.__name__} failed: {e}")
            self.surface.ephemeral(e.notice)
            raise

    return wrapper


def _seconds_label(duration_ms: int) -> str:
    if duration_ms % 1000 == 0:
        return str(duration_ms // 1000)
    return f"{duration_ms / 1000:.3f}".rstrip("0")


class EnforcementCore:
    def __init__(self, gate, lock, clock, dispatcher, store, surface):
        self.gate = gate
        self.lock = lock
        self.clock = clock
        self.dispatcher = dispatcher
        self.store = store
        self.surface = surface
        self.presence = LockdownPresence(surface)
        self.state = EnforcementState()
        self.window: DailyWindow | None = None
        self.countdown: Countdown | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.presence.release()
        return False

    # --- helpers ---

    def _granted(self) -> bool:
        return self.gate.is_granted() == PrivilegeStatus.GRANTED

    def _require_privilege(self, action: str) -> None:
        if not self._granted():
            raise PrivilegeMissing(f"Device Admin not active. Cannot {action}.")

    def _indicator_text(self) -> str:
        parts = []
        if self.state.window_on and self.window is not None:
            parts.append(f"Scheduled lock until {self.window.end_label}.")
        if self.state.countdown_on and self.countdown is not None:
            ends = self.clock.local(self.countdown.ends_at).strftime("%H:%M:%S")
            parts.append(f"Timer lock until {ends}.")
        return " ".join(parts) or "Device is now locked."

    def _sync_presence(self) -> None:
        if self.state.is_idle:
            self.presence.release()
        else:
            self.presence.acquire(self._indicator_text())

    def _arm_window(self, window: DailyWindow, now: datetime) -> None:
        self.dispatcher.arm_daily(
            AlarmKey.LOCK, self.clock.next_occurrence(*window.start_hm, now=now)
        )
        self.dispatcher.arm_daily(
            AlarmKey.UNLOCK, self.clock.next_occurrence(*window.end_hm, now=now)
        )

    def _inside_window(self, now: datetime) -> bool:
        if self.window is None:
            return False
        return self.clock.in_window(self.window.start_hm, self.window.end_hm, now)

    # --- user commands ---

    @user_command
    def start_countdown(self, duration_ms: int) -> Countdown:
        if duration_ms <= 0:
            raise BadTimeFormat("Duration must be at least 1 second")
        self._require_privilege("lock the screen")

        self.lock.lock_now()
        countdown = Countdown(started_at=self.clock.now(), duration_ms=duration_ms)
        self.store.put(COUNTDOWN, countdown)
        self.dispatcher.arm_oneshot(AlarmKey.COUNTDOWN_END, countdown.ends_at)

        self.countdown = countdown
        self.state.countdown_on = True
        logger.info(f"Countdown started for {duration_ms} ms")
        self.surface.ephemeral(DEVICE_LOCKED_FOR.format(seconds=_seconds_label(duration_ms)))
        self._sync_presence()
        return countdown

    @user_command
    def set_daily_window(
        self, start_hm: tuple[int, int], end_hm: tuple[int, int]
    ) -> DailyWindow:
        try:
            window = DailyWindow.from_pairs(start_hm, end_hm)
        except (ValidationError, IndexError, TypeError) as e:
            raise BadTimeFormat(f"Invalid lock window {start_hm} - {end_hm}") from e
        self._require_privilege("schedule screen locks")

        self.store.put(DAILY_WINDOW, window)
        self.window = window
        self._arm_window(window, self.clock.now())

        logger.info(f"Daily window set: {window.start_label} - {window.end_label}")
        self.surface.ephemeral(SCHEDULE_SET.format(start=window.start_label, end=window.end_label))
        self._sync_presence()
        return window

    @user_command
    def cancel_daily_window(self) -> None:
        self.dispatcher.cancel(AlarmKey.LOCK)
        self.dispatcher.cancel(AlarmKey.UNLOCK)
        self.store.delete(DAILY_WINDOW)
        self.window = None
        logger.info("Daily window cancelled.")

        if self.state.window_on:
            self.state.window_on = False
            self.surface.ephemeral(LOCK_PERIOD_ENDED)
        self._sync_presence()

    @user_command
    def lock_immediately(self) -> None:
        self._require_privilege("lock the screen")
        self.lock.lock_now()

    # --- alarms ---

    def on_alarm(self, event: AlarmEvent) -> None:
        """Dispatcher callback. Failures are surfaced and logged, never raised."""
        handlers = {
            AlarmKey.LOCK: self._on_lock,
            AlarmKey.UNLOCK: self._on_unlock,
            AlarmKey.COUNTDOWN_END: self._on_countdown_end,
        }
        try:
            handlers[event.key](event)
        except LockdownError as e:
            logger.error(f"Handling {event.key.value} failed, state unchanged: {e}")
            self.surface.ephemeral(e.notice)

    def _on_lock(self, event: AlarmEvent) -> None:
        if not self._granted():
            logger.warning("LOCK fired without the lock grant; state unchanged.")
            self.surface.ephemeral(PRIVILEGE_MISSING_AT_FIRE)
            return
        if self.window is None:
            logger.info("Ignoring LOCK: no daily window is set.")
            return
        if event.late and not self._inside_window(self.clock.now()):
            logger.info("Ignoring late LOCK: its window has already closed.")
            return

        self.lock.lock_now()
        self.surface.ephemeral(SCHEDULED_LOCK_ACTIVATED)
        self.state.window_on = True
        self._sync_presence()

    def _on_unlock(self, event: AlarmEvent) -> None:
        if self.window is None and not self.state.window_on:
            logger.info("Ignoring UNLOCK: no daily window is set.")
            return
        if event.late and self._inside_window(self.clock.now()):
            logger.info("Late UNLOCK arrived inside the next lock period; keeping it.")
            return

        self.surface.ephemeral(SCHEDULED_LOCK_DEACTIVATED)
        self.state.window_on = False
        self._sync_presence()

    def _on_countdown_end(self, event: AlarmEvent) -> None:
        if self.countdown is not None and event.scheduled_for < self.countdown.ends_at:
            logger.info("Ignoring COUNTDOWN_END of a countdown that was replaced.")
            return

        self.store.delete(COUNTDOWN)
        self.dispatcher.cancel(AlarmKey.COUNTDOWN_END)
        self.countdown = None
        self.state.countdown_on = False
        self.surface.ephemeral(TIMER_ENDED)
        self._sync_presence()

    # --- startup ---

    def on_startup(self) -> None:
        logger.info("Reconciling schedules with the alarm dispatcher...")
        self.reconcile()

    def reconcile(self) -> None:
        """Re-arms alarms from the schedule store and catches state up with the clock."""
        try:
            self._reconcile()
        except LockdownError as e:
            logger.error(f"Reconcile failed: {e}")
            self.surface.ephemeral(e.notice)

    def _reconcile(self) -> None:
        now = self.clock.now()
        self.window = self.store.get(DAILY_WINDOW)
        self.countdown = self.store.get(COUNTDOWN)
        granted = self._granted()

        if self.window is not None:
            if granted:
                self._arm_window(self.window, now)
                if self._inside_window(now):
                    self._on_lock(
                        AlarmEvent(key=AlarmKey.LOCK, scheduled_for=now, delivered_at=now)
                    )
            else:
                logger.warning("Lock grant missing; daily window kept but not armed.")
                self.surface.ephemeral(PRIVILEGE_MISSING_AT_FIRE)

        if self.countdown is not None:
            ends_at = self.countdown.ends_at
            if ends_at > now and granted:
                self.dispatcher.arm_oneshot(AlarmKey.COUNTDOWN_END, ends_at)
                self.state.countdown_on = True
            else:
                if ends_at > now:
                    logger.warning("Lock grant missing; ending the pending countdown.")
                self._on_countdown_end(
                    AlarmEvent(
                        key=AlarmKey.COUNTDOWN_END,
                        scheduled_for=ends_at,
                        delivered_at=now,
                        late=True,
                    )
                )

        self._sync_presence()

    def snapshot(self) -> dict:
        """JSON-friendly view of the engine for the daemon's state file."""
        return {
            "phase": self.state.phase.value,
            "countdown_on": self.state.countdown_on,
            "window_on": self.state.window_on,
            "window": (
                {"start": self.window.start_label, "end": self.window.end_label}
                if self.window
                else None
            ),
            "countdown_ends_at": (
                self.countdown.ends_at.isoformat() if self.countdown else None
            ),
            "alarms": [
                {
                    "key": r.key.value,
                    "next_fire": r.next_fire.isoformat(),
                    "recurring": r.recurring,
                }
                for r in self.dispatcher.records()
            ],
        }
