from pathlib import Path

from platformdirs import user_data_dir, user_log_dir

APP_DIR_NAME = "lockdown"


def get_project_root() -> Path | None:
    """Returns the project root if running from source in a dev environment, else None."""
    # A checkout is recognised by pyproject.toml plus .git, so an installed copy
    # never writes into site-packages' parents.
    potential_root = Path(__file__).resolve().parent.parent.parent.parent
    if (potential_root / "pyproject.toml").exists() and (potential_root / ".git").exists():
        return potential_root
    return None


def get_default_data_dir() -> Path:
    """Returns the default data directory (dev folder or XDG)."""
    root = get_project_root()
    if root:
        return root / "outputs"
    return Path(user_data_dir(appname=APP_DIR_NAME))


def get_default_log_dir() -> Path:
    """Returns the default log directory (dev folder or XDG)."""
    root = get_project_root()
    if root:
        return root / "outputs"
    return Path(user_log_dir(appname=APP_DIR_NAME))
