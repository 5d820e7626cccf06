from enum import Enum

from loguru import logger

from lockdown.settings import settings
from lockdown.utils.notifications import send_notification

# Ephemeral notice texts
DEVICE_LOCKED_FOR = "Device locked for {seconds} seconds"
TIMER_ENDED = "Timer ended. Device can now be unlocked."
SCHEDULE_SET = "Scheduled lock set from {start} to {end}"
SCHEDULED_LOCK_ACTIVATED = "Scheduled Lock Activated"
SCHEDULED_LOCK_DEACTIVATED = "Scheduled Lock Deactivated. You can now unlock your device."
PRIVILEGE_MISSING_AT_FIRE = "Device Admin not active. Cannot perform scheduled lock/unlock."
LOCK_PERIOD_ENDED = "Lock period ended"

INDICATOR_LOCKED_TEXT = "Device is now locked."
INDICATOR_UNLOCKED_TEXT = "Scheduled lock period ended. You can now unlock your device."

UNLOCKED_EXPIRE_MS = 10_000


class IndicatorIcon(str, Enum):
    # freedesktop icon names
    LOCKED = "system-lock-screen"
    UNLOCKED = "changes-allow"


class StatusSurface:
    """Human-visible output: ephemeral notices and one persistent indicator."""

    def __init__(self, notify=send_notification):
        self._notify = notify
        self._indicator_id: int | None = None
        self.indicator_on = False
        self.indicator_text: str | None = None

    def ephemeral(self, text: str) -> None:
        self._notify(settings.notify_title, text)

    def show_indicator(self, text: str) -> None:
        """Turns the persistent indicator on, or refreshes its text in place."""
        if self.indicator_on and text == self.indicator_text:
            return
        notification_id = self._notify(
            settings.indicator_title,
            text,
            icon=IndicatorIcon.LOCKED.value,
            urgency="critical",
            replace_id=self._indicator_id,
        )
        if notification_id is not None:
            self._indicator_id = notification_id
        self.indicator_on = True
        self.indicator_text = text

    def hide_indicator(self) -> None:
        """Replaces the persistent indicator with an expiring UNLOCKED variant."""
        if not self.indicator_on:
            return
        self._notify(
            settings.indicator_title,
            INDICATOR_UNLOCKED_TEXT,
            icon=IndicatorIcon.UNLOCKED.value,
            urgency="normal",
            replace_id=self._indicator_id,
            expire_ms=UNLOCKED_EXPIRE_MS,
        )
        self._indicator_id = None
        self.indicator_on = False
        self.indicator_text = None


class LockdownPresence:
    """
    Scoped handle held while any lockdown interval is active.

    Acquiring shows the persistent indicator; releasing hides it. Both are
    idempotent, and using the handle as a context manager guarantees the
    release on every exit path.
    """

    def __init__(self, surface: StatusSurface):
        self.surface = surface
        self.held = False

    def acquire(self, text: str = INDICATOR_LOCKED_TEXT) -> None:
        if not self.held:
            logger.info("Lockdown presence acquired.")
        self.surface.show_indicator(text)
        self.held = True

    def release(self) -> None:
        if not self.held:
            return
        self.surface.hide_indicator()
        self.held = False
        logger.info("Lockdown presence released.")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
