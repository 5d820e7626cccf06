class LockdownError(Exception):
    """Base class for every error the engine reports to a user or a log."""

    default_notice = "Lockdown error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_notice)

    @property
    def notice(self) -> str:
        """Short text suitable for an ephemeral status notice."""
        return str(self)


class BadTimeFormat(LockdownError, ValueError):
    default_notice = "Invalid time format. Use HH:MM"


class PrivilegeMissing(LockdownError):
    default_notice = "Device Admin not active. Cannot perform scheduled lock/unlock."


class LockUnavailable(LockdownError):
    default_notice = "Could not reach the screen lock. Is a session locker installed?"


class AlarmArmFailed(LockdownError):
    default_notice = "Could not arm the scheduled alarm."


class PersistenceFailure(LockdownError):
    default_notice = "Could not save the lock schedule."
