"""
Durable wall-clock alarms keyed by AlarmKey.

Records live in ``alarms.json`` and survive a daemon restart. Each write is
stamped with the host boot time; records written during an earlier boot are
dropped on load, the same way the host's own alarm service forgets them
across a reboot. The enforcement core re-arms from the schedule store on
startup to compensate.

There is no user-level wake alarm on Linux, so the background thread sleeps
until the next due record but never longer than ``alarm_poll_seconds``. After
a suspend/resume the wall clock has jumped and the next poll delivers the
overdue record, flagged ``late``.
"""

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import psutil
from loguru import logger
from pydantic import ValidationError

from lockdown.errors import AlarmArmFailed
from lockdown.schema import DAY_SECONDS, AlarmEvent, AlarmKey, AlarmRecord
from lockdown.settings import settings
from lockdown.utils.state import write_json_atomic
from lockdown.utils.time import ClockSource

# psutil.boot_time() can drift slightly when NTP adjusts the clock
BOOT_TIME_TOLERANCE_SECONDS = 5.0


class AlarmDispatcher:
    def __init__(
        self,
        post: Callable[[AlarmEvent], None],
        clock: ClockSource,
        path: Path | None = None,
        poll_seconds: float | None = None,
        late_tolerance_seconds: int | None = None,
        boot_time_fn: Callable[[], float] = psutil.boot_time,
    ):
        self.post = post
        self.clock = clock
        self.path = path or settings.alarms_file
        self.poll_seconds = poll_seconds or settings.alarm_poll_seconds
        self.late_tolerance_seconds = (
            settings.late_tolerance_seconds
            if late_tolerance_seconds is None
            else late_tolerance_seconds
        )
        self._boot_time_fn = boot_time_fn
        self._records: dict[AlarmKey, AlarmRecord] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._load()

    # --- persistence ---

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
            records = [AlarmRecord(**r) for r in data.get("records", [])]
            stamped_boot = float(data.get("boot_time", 0.0))
        except (OSError, json.JSONDecodeError, ValidationError, TypeError, ValueError) as e:
            logger.error(f"Failed to load alarms from {self.path}, starting empty: {e}")
            return

        if abs(stamped_boot - self._boot_time_fn()) > BOOT_TIME_TOLERANCE_SECONDS:
            logger.info(
                f"Host rebooted since alarms were armed; dropping {len(records)} record(s)."
            )
            return

        self._records = {r.key: r for r in records}
        logger.debug(f"Loaded {len(self._records)} alarm record(s).")

    def _save(self) -> None:
        data = {
            "boot_time": self._boot_time_fn(),
            "records": [r.model_dump(mode="json") for r in self._records.values()],
        }
        try:
            write_json_atomic(self.path, data)
        except OSError as e:
            raise AlarmArmFailed(f"Failed to persist alarms: {e}") from e

    def _replace(self, key: AlarmKey, record: AlarmRecord | None) -> None:
        with self._lock:
            previous = self._records.get(key)
            if record is None:
                self._records.pop(key, None)
            else:
                self._records[key] = record
            try:
                self._save()
            except AlarmArmFailed:
                if previous is None:
                    self._records.pop(key, None)
                else:
                    self._records[key] = previous
                raise
        self._wake.set()

    # --- public API ---

    def arm_oneshot(self, key: AlarmKey, fire_at: datetime) -> AlarmRecord:
        record = AlarmRecord(key=key, next_fire=fire_at)
        self._replace(key, record)
        logger.info(f"Armed one-shot {key.value} at {self.clock.local(record.next_fire)}")
        return record

    def arm_daily(self, key: AlarmKey, fire_at: datetime) -> AlarmRecord:
        record = AlarmRecord(key=key, next_fire=fire_at, period_seconds=DAY_SECONDS)
        self._replace(key, record)
        logger.info(f"Armed daily {key.value} from {self.clock.local(record.next_fire)}")
        return record

    def cancel(self, key: AlarmKey) -> None:
        with self._lock:
            if key not in self._records:
                return
            self._replace(key, None)
        logger.info(f"Cancelled {key.value}")

    def get(self, key: AlarmKey) -> AlarmRecord | None:
        with self._lock:
            return self._records.get(key)

    def records(self) -> list[AlarmRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.next_fire)

    def tick(self, now: datetime | None = None) -> list[AlarmEvent]:
        """Delivers every record due at `now`, then advances or removes it."""
        if now is None:
            now = self.clock.now()

        events = []
        with self._lock:
            due = sorted(
                (r for r in self._records.values() if r.next_fire <= now),
                key=lambda r: r.key.value,
            )
            for record in due:
                overdue = (now - record.next_fire).total_seconds()
                events.append(
                    AlarmEvent(
                        key=record.key,
                        scheduled_for=record.next_fire,
                        delivered_at=now,
                        late=overdue > self.late_tolerance_seconds,
                    )
                )
                if record.recurring:
                    period = timedelta(seconds=record.period_seconds)
                    next_fire = record.next_fire
                    # Missed periods collapse into the single delivery above
                    while next_fire <= now:
                        next_fire += period
                    self._records[record.key] = record.model_copy(
                        update={"next_fire": next_fire}
                    )
                else:
                    del self._records[record.key]

        # Post before persisting so a crash in between re-delivers (at-least-once)
        for event in events:
            if event.late:
                logger.warning(
                    f"Late delivery of {event.key.value} "
                    f"(scheduled {self.clock.local(event.scheduled_for)})"
                )
            else:
                logger.info(f"Alarm {event.key.value} fired")
            self.post(event)

        if events:
            with self._lock:
                try:
                    self._save()
                except AlarmArmFailed as e:
                    logger.error(f"{e}")
        return events

    # --- background thread ---

    def _sleep_seconds(self) -> float:
        records = self.records()
        if not records:
            return self.poll_seconds
        until_due = (records[0].next_fire - self.clock.now()).total_seconds()
        return max(0.0, min(self.poll_seconds, until_due))

    def start(self):
        """Starts delivering alarms from a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("AlarmDispatcher is already running.")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="alarm-dispatcher", daemon=True)
        self._thread.start()

    def stop(self):
        """Stops the background thread."""
        self._stop_event.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        self._thread = None

    def _run(self):
        logger.info("Alarm dispatcher started.")
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Error in AlarmDispatcher: {e}")
            self._wake.wait(timeout=self._sleep_seconds())
            self._wake.clear()
        logger.info("Alarm dispatcher stopped.")
