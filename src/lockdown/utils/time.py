import os
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from lockdown.errors import BadTimeFormat

_HM_PATTERN = re.compile(r"([01][0-9]|2[0-3]):([0-5][0-9])")
_DURATION_PATTERN = re.compile(r"[0-9]+")


def parse_hm(text: str) -> tuple[int, int]:
    """Parses a strict 'HH:MM' string (00-23, 00-59) into an (hour, minute) pair."""
    match = _HM_PATTERN.fullmatch(text or "")
    if not match:
        raise BadTimeFormat(f"Invalid time format '{text}'. Use HH:MM")
    return int(match.group(1)), int(match.group(2))


def parse_duration_seconds(text: str) -> int:
    """Parses a base-10 duration in whole seconds; must be at least 1."""
    if not text:
        raise BadTimeFormat("Please enter a duration")
    if not _DURATION_PATTERN.fullmatch(text):
        raise BadTimeFormat(f"Invalid duration '{text}'. Use a whole number of seconds")
    seconds = int(text)
    if seconds < 1:
        raise BadTimeFormat("Duration must be at least 1 second")
    return seconds


def format_duration_seconds(seconds: int) -> str:
    """
    Formats a duration in seconds into a human-readable string (e.g., '2h 30m' or '45m').
    """
    minutes = seconds // 60
    if minutes == 0 and seconds > 0:  # Handle durations less than a minute
        return f"{seconds}s"
    elif minutes <= 60:
        return f"{minutes}m"
    else:
        hours = minutes // 60
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m"


def resolve_local_timezone(name: str | None = None) -> tzinfo:
    """Returns a DST-aware zone: explicit name, $TZ, /etc/localtime, else the fixed local offset."""
    candidates = [name, os.environ.get("TZ", "").lstrip(":") or None]
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone '{candidate}', ignoring.")

    localtime = Path("/etc/localtime")
    if localtime.exists():
        try:
            with open(localtime, "rb") as f:
                return ZoneInfo.from_file(f, key="localtime")
        except (OSError, ValueError) as e:
            logger.debug(f"Could not read /etc/localtime: {e}")

    return datetime.now().astimezone().tzinfo or timezone.utc


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClockSource:
    """Wall-clock access and local-time resolution of (hour, minute) pairs."""

    def __init__(
        self,
        tz: tzinfo | None = None,
        now_fn: Callable[[], datetime] = _utc_now,
    ):
        self.tz = tz or resolve_local_timezone()
        self._now_fn = now_fn

    def now(self) -> datetime:
        return self._now_fn().astimezone(timezone.utc)

    def local(self, instant: datetime) -> datetime:
        return instant.astimezone(self.tz)

    def _resolve(self, day: date, hour: int, minute: int) -> datetime:
        # fold=0 picks the earlier instant of an ambiguous time. A time inside a
        # DST gap is shifted forward by the gap length (02:30 becomes 03:30).
        local = datetime.combine(day, time(hour, minute)).replace(tzinfo=self.tz, fold=0)
        return local.astimezone(timezone.utc)

    def next_occurrence(
        self, hour: int, minute: int, now: datetime | None = None
    ) -> datetime:
        """Smallest instant >= now whose local time is (hour, minute, 0)."""
        if now is None:
            now = self.now()
        today = now.astimezone(self.tz).date()
        candidate = self._resolve(today, hour, minute)
        if candidate < now:
            candidate = self._resolve(today + timedelta(days=1), hour, minute)
        return candidate

    def in_window(
        self,
        start_hm: tuple[int, int],
        end_hm: tuple[int, int],
        now: datetime | None = None,
    ) -> bool:
        """True if the local time of `now` lies in [start, end), wrapping midnight."""
        if now is None:
            now = self.now()
        local = now.astimezone(self.tz)
        current = local.hour * 60 + local.minute
        start = start_hm[0] * 60 + start_hm[1]
        end = end_hm[0] * 60 + end_hm[1]

        if start == end:
            return False
        if start < end:
            return start <= current < end
        # Wraps past midnight
        return current >= start or current < end
