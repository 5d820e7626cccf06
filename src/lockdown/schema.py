from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

DAY_SECONDS = 24 * 60 * 60


class AlarmKey(str, Enum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    COUNTDOWN_END = "COUNTDOWN_END"


class PrivilegeStatus(str, Enum):
    GRANTED = "granted"
    NOT_GRANTED = "not_granted"


class GrantOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    CANCELLED = "cancelled"


class EnforcementPhase(str, Enum):
    IDLE = "idle"
    COUNTDOWN_ACTIVE = "countdown_active"
    WINDOW_ACTIVE = "window_active"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("instants must be timezone-aware")
    return value.astimezone(timezone.utc)


class Countdown(BaseModel):
    """A one-shot lock that announces its end after `duration_ms`."""

    started_at: datetime
    duration_ms: int = Field(ge=0)

    @field_validator("started_at")
    @classmethod
    def normalize_started_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def ends_at(self) -> datetime:
        return self.started_at + timedelta(milliseconds=self.duration_ms)


class DailyWindow(BaseModel):
    """A recurring local-time lock window; wraps past midnight when end <= start."""

    start_h: int = Field(ge=0, le=23)
    start_m: int = Field(ge=0, le=59)
    end_h: int = Field(ge=0, le=23)
    end_m: int = Field(ge=0, le=59)

    @classmethod
    def from_pairs(
        cls, start_hm: tuple[int, int], end_hm: tuple[int, int]
    ) -> "DailyWindow":
        return cls(
            start_h=start_hm[0], start_m=start_hm[1], end_h=end_hm[0], end_m=end_hm[1]
        )

    @property
    def start_hm(self) -> tuple[int, int]:
        return self.start_h, self.start_m

    @property
    def end_hm(self) -> tuple[int, int]:
        return self.end_h, self.end_m

    @property
    def start_label(self) -> str:
        return f"{self.start_h:02d}:{self.start_m:02d}"

    @property
    def end_label(self) -> str:
        return f"{self.end_h:02d}:{self.end_m:02d}"

    @property
    def wraps_midnight(self) -> bool:
        return self.end_hm <= self.start_hm


class AlarmRecord(BaseModel):
    key: AlarmKey
    next_fire: datetime
    period_seconds: int | None = None

    @field_validator("next_fire")
    @classmethod
    def normalize_next_fire(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def recurring(self) -> bool:
        return self.period_seconds is not None


class AlarmEvent(BaseModel):
    """What the dispatcher hands to the core when an alarm fires."""

    key: AlarmKey
    scheduled_for: datetime
    delivered_at: datetime
    late: bool = False


class LockGrant(BaseModel):
    uid: int
    granted_at: datetime
    reason: str = ""


class EnforcementState(BaseModel):
    """Independent countdown and window tracks; idle when neither is on."""

    countdown_on: bool = False
    window_on: bool = False

    @property
    def is_idle(self) -> bool:
        return not (self.countdown_on or self.window_on)

    @property
    def phase(self) -> EnforcementPhase:
        if self.window_on:
            return EnforcementPhase.WINDOW_ACTIVE
        if self.countdown_on:
            return EnforcementPhase.COUNTDOWN_ACTIVE
        return EnforcementPhase.IDLE
