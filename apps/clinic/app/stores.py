"""
Data access for the booking core: schedule configs, overrides, bookings.

Plain functions over a SQLAlchemy ``Session``; no business rules live here.
"""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .models import Booking, BookingEvent, BookingStatus, ScheduleConfig, ScheduleOverride


def _supports_row_locks(s: Session) -> bool:
    return s.get_bind().dialect.name != "sqlite"


def get_schedule_config(
    s: Session, doctor_id: str, dispensary_id: str, day_of_week: int, for_update: bool = False
) -> Optional[ScheduleConfig]:
    stmt = select(ScheduleConfig).where(
        ScheduleConfig.doctor_id == doctor_id,
        ScheduleConfig.dispensary_id == dispensary_id,
        ScheduleConfig.day_of_week == day_of_week,
    )
    if for_update and _supports_row_locks(s):
        stmt = stmt.with_for_update()
    return s.execute(stmt).scalars().first()


def list_schedule_configs(s: Session, doctor_id: str, dispensary_id: str) -> List[ScheduleConfig]:
    stmt = (
        select(ScheduleConfig)
        .where(ScheduleConfig.doctor_id == doctor_id, ScheduleConfig.dispensary_id == dispensary_id)
        .order_by(ScheduleConfig.day_of_week.asc())
    )
    return s.execute(stmt).scalars().all()


def get_schedule_override(s: Session, doctor_id: str, dispensary_id: str, day: date) -> Optional[ScheduleOverride]:
    stmt = select(ScheduleOverride).where(
        ScheduleOverride.doctor_id == doctor_id,
        ScheduleOverride.dispensary_id == dispensary_id,
        ScheduleOverride.day == day,
    )
    return s.execute(stmt).scalars().first()


def list_schedule_overrides(
    s: Session,
    doctor_id: str,
    dispensary_id: str,
    from_day: Optional[date] = None,
    to_day: Optional[date] = None,
) -> List[ScheduleOverride]:
    stmt = select(ScheduleOverride).where(
        ScheduleOverride.doctor_id == doctor_id,
        ScheduleOverride.dispensary_id == dispensary_id,
    )
    if from_day is not None:
        stmt = stmt.where(ScheduleOverride.day >= from_day)
    if to_day is not None:
        stmt = stmt.where(ScheduleOverride.day <= to_day)
    return s.execute(stmt.order_by(ScheduleOverride.day.asc())).scalars().all()


def active_bookings(s: Session, doctor_id: str, dispensary_id: str, day: date) -> List[Booking]:
    """All non-cancelled bookings of one session, by appointment number."""
    stmt = (
        select(Booking)
        .where(
            Booking.doctor_id == doctor_id,
            Booking.dispensary_id == dispensary_id,
            Booking.booking_date == day,
            Booking.status != BookingStatus.CANCELLED.value,
        )
        .order_by(Booking.appointment_number.asc())
    )
    return s.execute(stmt).scalars().all()


def occupied_numbers(
    s: Session, doctor_id: str, dispensary_id: str, day: date, exclude_booking_id: Optional[str] = None
) -> set[int]:
    stmt = select(Booking.appointment_number).where(
        Booking.doctor_id == doctor_id,
        Booking.dispensary_id == dispensary_id,
        Booking.booking_date == day,
        Booking.status != BookingStatus.CANCELLED.value,
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    return set(s.execute(stmt).scalars().all())


def session_bookings(s: Session, doctor_id: str, dispensary_id: str, day: date) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(
            Booking.doctor_id == doctor_id,
            Booking.dispensary_id == dispensary_id,
            Booking.booking_date == day,
        )
        .order_by(Booking.appointment_number.asc(), Booking.created_at.asc())
    )
    return s.execute(stmt).scalars().all()


def get_booking(s: Session, booking_id: str, for_update: bool = False) -> Optional[Booking]:
    if for_update and _supports_row_locks(s):
        return s.execute(select(Booking).where(Booking.id == booking_id).with_for_update()).scalars().first()
    return s.get(Booking, booking_id)


def get_booking_by_transaction(s: Session, transaction_id: str) -> Optional[Booking]:
    return s.execute(select(Booking).where(Booking.transaction_id == transaction_id)).scalars().first()


def booking_events(s: Session, booking_id: str) -> List[BookingEvent]:
    stmt = select(BookingEvent).where(BookingEvent.booking_id == booking_id).order_by(BookingEvent.id.asc())
    return s.execute(stmt).scalars().all()


def patient_bookings(s: Session, patient_id: str, limit: int = 100) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(Booking.patient_id == patient_id)
        .order_by(Booking.booking_date.desc(), Booking.created_at.desc())
        .limit(limit)
    )
    return s.execute(stmt).scalars().all()


def search_bookings(
    s: Session,
    reference: Optional[str] = None,
    appointment_number: Optional[int] = None,
    patient_name: Optional[str] = None,
    patient_phone: Optional[str] = None,
    doctor_id: Optional[str] = None,
    dispensary_id: Optional[str] = None,
    day: Optional[date] = None,
    limit: int = 200,
) -> List[Booking]:
    """Any of the search terms may match; doctor, dispensary and date narrow the result."""
    terms = []
    if reference:
        terms.append(Booking.transaction_id.ilike(f"%{reference}%"))
    if appointment_number is not None:
        terms.append(Booking.appointment_number == appointment_number)
    if patient_name:
        terms.append(Booking.patient_name.ilike(f"%{patient_name}%"))
    if patient_phone:
        terms.append(Booking.patient_phone.ilike(f"%{patient_phone}%"))
    stmt = select(Booking)
    if terms:
        stmt = stmt.where(or_(*terms))
    if doctor_id:
        stmt = stmt.where(Booking.doctor_id == doctor_id)
    if dispensary_id:
        stmt = stmt.where(Booking.dispensary_id == dispensary_id)
    if day is not None:
        stmt = stmt.where(Booking.booking_date == day)
    stmt = stmt.order_by(Booking.booking_date.asc(), Booking.appointment_number.asc()).limit(limit)
    return s.execute(stmt).scalars().all()
