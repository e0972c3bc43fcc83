"""
Slot allocation: first-fit with gap reuse.

Pure functions over an EffectiveSession and the set of occupied appointment
numbers. Creation, rescheduling, restoration and the read-only listings all
go through ``allocate`` / ``slot_for`` so slot math lives in one place.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from .errors import SessionFull
from .sessions import EffectiveSession, format_hhmm


@dataclass(frozen=True)
class SlotAssignment:
    appointment_number: int
    estimated_time: str  # HH:MM
    time_slot: str  # HH:MM-HH:MM


def slot_for(session: EffectiveSession, n: int) -> SlotAssignment:
    """Time window of appointment ``n`` (1-based) in ``session``."""
    if n < 1:
        raise ValueError("appointment numbers start at 1")
    start = session.start_minute + (n - 1) * session.minutes_per_patient
    end = start + session.minutes_per_patient
    return SlotAssignment(
        appointment_number=n,
        estimated_time=format_hhmm(start),
        time_slot=f"{format_hhmm(start)}-{format_hhmm(end)}",
    )


def allocate(session: EffectiveSession, occupied: Iterable[int]) -> SlotAssignment:
    """
    Smallest free appointment number ``n <= max_patients``.

    ``occupied`` holds the numbers of the session's non-cancelled bookings,
    with any booking being moved already left out by the caller.
    """
    taken: Set[int] = set(occupied)
    if len(taken) >= session.max_patients:
        raise SessionFull(
            "no free appointment slot left in this session",
            doctor_id=session.doctor_id,
            dispensary_id=session.dispensary_id,
            date=session.day,
            max_patients=session.max_patients,
            booked=len(taken),
        )
    # fewer than max_patients numbers are taken, so one of 1..max is free
    n = 1
    while n in taken:
        n += 1
    return slot_for(session, n)


def allocate_preferring(session: EffectiveSession, occupied: Iterable[int], preferred: Optional[int]) -> SlotAssignment:
    """Keep ``preferred`` when it is still free and within capacity, else first-fit."""
    taken = set(occupied)
    if preferred is not None and len(taken) < session.max_patients:
        if 1 <= preferred <= session.max_patients and preferred not in taken:
            return slot_for(session, preferred)
    return allocate(session, taken)


def display_capacity(session: EffectiveSession) -> int:
    """Slots shown to users: capped by what fits between start and end."""
    if session.minutes_per_patient <= 0:
        return 0
    return max(0, min(session.max_patients, session.length_minutes // session.minutes_per_patient))


def available_slots(session: EffectiveSession, occupied: Iterable[int]) -> List[SlotAssignment]:
    taken = set(occupied)
    return [slot_for(session, n) for n in range(1, display_capacity(session) + 1) if n not in taken]
