import subprocess

from loguru import logger

from lockdown.settings import settings


def send_notification(
    summary: str,
    body: str = "",
    icon: str | None = None,
    urgency: str = "normal",
    replace_id: int | None = None,
    expire_ms: int | None = None,
) -> int | None:
    """
    Sends a desktop notification using notify-send.

    Returns the notification id reported by notify-send (``--print-id``) so a
    later call can replace it in place, or None if it could not be sent.
    """
    logger.info(f"Sending notification: {summary} | {body}")
    cmd = [
        "notify-send",
        summary,
        body,
        "-a",
        settings.app_name,
        "-u",
        urgency,
        "--print-id",
    ]
    if icon:
        cmd += ["-i", icon]
    if replace_id is not None:
        cmd += ["-r", str(replace_id)]
    if expire_ms is not None:
        cmd += ["-t", str(expire_ms)]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        logger.error("notify-send not found. Install libnotify-bin.")
        return None
    except OSError as e:
        logger.error(f"Failed to send notification: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"notify-send exited with {result.returncode}: {result.stderr.strip()}")
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        # Older libnotify without --print-id support prints nothing
        return None
