import json
import os
import tempfile
from datetime import datetime
from pathlib import Path

from loguru import logger

from lockdown.settings import settings


def write_json_atomic(path: Path, data) -> None:
    """Writes JSON durably: temp file in the same dir, fsync, then rename over `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=4)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


_last_written_state: dict | None = None


def write_state(active_info=None):
    """Writes the current daemon state to a file for the 'status' command."""
    global _last_written_state
    state = {
        "pid": os.getpid(),
        "last_update": datetime.now().isoformat(),
        "active_lockout": active_info,
    }

    # last_update always moves, so compare without it
    comparable = {k: v for k, v in state.items() if k != "last_update"}
    if comparable == _last_written_state:
        return

    try:
        write_json_atomic(settings.state_file, state)
        _last_written_state = comparable
    except OSError as e:
        logger.warning(f"Could not write state file: {e}")


def read_state() -> dict | None:
    """Returns the daemon's last written state, or None if absent or unreadable."""
    if not settings.state_file.exists():
        return None
    try:
        with open(settings.state_file) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return None


def cleanup_state():
    """Removes the state file when the daemon stops."""
    global _last_written_state
    _last_written_state = None
    if settings.state_file.exists():
        try:
            settings.state_file.unlink()
        except OSError as e:
            logger.warning(f"Could not remove state file: {e}")
