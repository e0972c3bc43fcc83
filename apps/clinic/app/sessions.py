"""
Session resolution: weekly schedule config + per-date override -> the
effective operating parameters of one (doctor, dispensary, date) session.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from . import stores
from .errors import DoctorAbsent, NoScheduleConfigured
from .models import ScheduleConfig, ScheduleOverride

_log = logging.getLogger("clinic.sessions")

DEFAULT_MINUTES_PER_PATIENT = 15
DEFAULT_BOOKING_CUTOVER_MINUTES = 60
WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def parse_hhmm(val: str) -> int:
    """'HH:MM' (24h) -> minutes from midnight. Raises ValueError."""
    hh, mm = (val or "").strip().split(":")
    hhi, mmi = int(hh), int(mm)
    if hhi < 0 or hhi > 23 or mmi < 0 or mmi > 59:
        raise ValueError(f"time out of range: {val!r}")
    return hhi * 60 + mmi


def format_hhmm(minutes: int) -> str:
    minutes = int(minutes) % (24 * 60)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class EffectiveSession:
    doctor_id: str
    dispensary_id: str
    day: date
    start_time: str
    end_time: str
    max_patients: int
    minutes_per_patient: int
    booking_cutover_minutes: int = DEFAULT_BOOKING_CUTOVER_MINUTES
    is_modified: bool = False
    reason: Optional[str] = None

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start_time)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end_time)

    @property
    def length_minutes(self) -> int:
        return max(0, self.end_minute - self.start_minute)

    def starts_at(self, tz: ZoneInfo) -> datetime:
        return datetime.combine(self.day, time(0, 0), tzinfo=tz) + timedelta(minutes=self.start_minute)


def build_effective_session(
    config: ScheduleConfig, override: Optional[ScheduleOverride], day: date
) -> EffectiveSession:
    """
    Apply the override precedence rules to an already loaded config/override
    pair. A full-absence override refuses the date; a modified session takes
    each parameter from the override when set and from the config otherwise.
    """
    if override is not None and not override.is_modified_session:
        raise DoctorAbsent(
            "doctor is not available on this date",
            doctor_id=config.doctor_id,
            dispensary_id=config.dispensary_id,
            date=day,
            reason=override.reason,
        )
    mpp = config.minutes_per_patient or DEFAULT_MINUTES_PER_PATIENT
    cutover = config.booking_cutover_minutes
    if cutover is None:
        cutover = DEFAULT_BOOKING_CUTOVER_MINUTES
    if override is None:
        return EffectiveSession(
            doctor_id=config.doctor_id,
            dispensary_id=config.dispensary_id,
            day=day,
            start_time=config.start_time,
            end_time=config.end_time,
            max_patients=config.max_patients,
            minutes_per_patient=mpp,
            booking_cutover_minutes=cutover,
        )
    start_time = override.start_time or config.start_time
    end_time = override.end_time or config.end_time
    # a partial override inherits the other end of the window from the config
    if parse_hhmm(end_time) <= parse_hhmm(start_time):
        raise NoScheduleConfigured(
            "modified session has an empty time window",
            doctor_id=config.doctor_id,
            dispensary_id=config.dispensary_id,
            date=day,
            start_time=start_time,
            end_time=end_time,
        )
    return EffectiveSession(
        doctor_id=config.doctor_id,
        dispensary_id=config.dispensary_id,
        day=day,
        start_time=start_time,
        end_time=end_time,
        max_patients=override.max_patients or config.max_patients,
        minutes_per_patient=override.minutes_per_patient or mpp,
        booking_cutover_minutes=cutover,
        is_modified=True,
        reason=override.reason,
    )


def resolve_session(
    s: Session, doctor_id: str, dispensary_id: str, day: date, lock_config: bool = False
) -> EffectiveSession:
    """
    Resolve the EffectiveSession for one session key, or raise
    NoScheduleConfigured / DoctorAbsent. Read-only.

    ``lock_config`` takes a row lock on the weekly config (non-SQLite only),
    which callers inside the allocation critical section use to serialise
    writers across processes.
    """
    config = stores.get_schedule_config(s, doctor_id, dispensary_id, day.weekday(), for_update=lock_config)
    if config is None:
        raise NoScheduleConfigured(
            f"no schedule configured for {WEEKDAY_NAMES[day.weekday()]}",
            doctor_id=doctor_id,
            dispensary_id=dispensary_id,
            date=day,
            day_of_week=day.weekday(),
        )
    override = stores.get_schedule_override(s, doctor_id, dispensary_id, day)
    session = build_effective_session(config, override, day)
    if session.is_modified:
        _log.debug(
            "modified session applied",
            extra={"doctor_id": doctor_id, "dispensary_id": dispensary_id, "booking_date": day.isoformat()},
        )
    return session
