import subprocess

from loguru import logger

from lockdown.errors import LockUnavailable

HOST_COMMAND_TIMEOUT = 2

# name -> (command, predicate on stdout meaning "locked")
_LOCK_STATE_PROBES = {
    "xdg-screensaver": (
        ["xdg-screensaver", "status"],
        lambda out: "is locked" in out,
    ),
    "loginctl": (
        ["loginctl", "show-session", "self", "-p", "LockedHint", "--value"],
        lambda out: out.strip() == "yes",
    ),
    "gdbus-gnome": (
        [
            "gdbus",
            "call",
            "--session",
            "--dest",
            "org.gnome.ScreenSaver",
            "--object-path",
            "/org/gnome/ScreenSaver",
            "--method",
            "org.gnome.ScreenSaver.GetActive",
        ],
        lambda out: "(true,)" in out,
    ),
}

LOCK_COMMANDS = [
    ["loginctl", "lock-session"],
    ["xdg-screensaver", "lock"],
    ["gnome-screensaver-command", "-l"],
]


def _run(command: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        command, capture_output=True, text=True, timeout=HOST_COMMAND_TIMEOUT
    )


_screen_lock_method_cache: str | None = None


def is_screen_locked() -> bool:
    """Checks if the session is locked, trying the last method that answered first."""
    global _screen_lock_method_cache

    order = list(_LOCK_STATE_PROBES)
    if _screen_lock_method_cache in _LOCK_STATE_PROBES:
        order.remove(_screen_lock_method_cache)
        order.insert(0, _screen_lock_method_cache)

    for name in order:
        command, is_locked = _LOCK_STATE_PROBES[name]
        try:
            result = _run(command)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            if name == _screen_lock_method_cache:
                _screen_lock_method_cache = None  # Invalidate cache if it failed
            continue
        if is_locked(result.stdout):
            _screen_lock_method_cache = name
            return True

    return False


_screen_lock_command_cache: list[str] | None = None


def lock_screen() -> bool:
    """Locks the session using the first lock command that succeeds. Returns False if none did."""
    global _screen_lock_command_cache
    logger.debug("Attempting to lock screen...")

    commands = list(LOCK_COMMANDS)
    if _screen_lock_command_cache:
        commands.remove(_screen_lock_command_cache)
        commands.insert(0, _screen_lock_command_cache)

    for command in commands:
        try:
            result = _run(command)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Lock command {command[0]} unavailable: {e}")
            if command == _screen_lock_command_cache:
                _screen_lock_command_cache = None
            continue
        if result.returncode == 0:
            _screen_lock_command_cache = command
            logger.info(f"Screen locked via {command[0]}")
            return True
        logger.debug(
            f"Lock command {command[0]} exited with {result.returncode}: "
            f"{result.stderr.strip()}"
        )

    return False


class LockPrimitive:
    """Adapter over the host's immediate-lock operation."""

    def lock_now(self) -> None:
        if is_screen_locked():
            logger.debug("Screen already locked, nothing to do.")
            return
        if not lock_screen():
            raise LockUnavailable()
