from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .config import DB_SCHEMA, DB_URL


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class BookedBy(str, Enum):
    ONLINE = "ONLINE"
    DISPENSARY_ADMIN = "DISPENSARY-ADMIN"
    DISPENSARY_STAFF = "DISPENSARY-STAFF"
    SUPER_ADMIN = "SUPER-ADMIN"
    CHANNEL_PARTNER = "CHANNEL-PARTNER"


def _table_args(*items):
    return (*items, {"schema": DB_SCHEMA}) if DB_SCHEMA else items


class Base(DeclarativeBase):
    pass


class ScheduleConfig(Base):
    __tablename__ = "schedule_configs"
    __table_args__ = _table_args(
        UniqueConstraint("doctor_id", "dispensary_id", "day_of_week", name="uq_schedule_configs_day"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(String(64), index=True)
    dispensary_id: Mapped[str] = mapped_column(String(64), index=True)
    day_of_week: Mapped[int] = mapped_column(Integer)  # 0=Monday, 6=Sunday
    start_time: Mapped[str] = mapped_column(String(5))  # HH:MM
    end_time: Mapped[str] = mapped_column(String(5))
    max_patients: Mapped[int] = mapped_column(Integer)
    minutes_per_patient: Mapped[int] = mapped_column(Integer, default=15)
    booking_cutover_minutes: Mapped[int] = mapped_column(Integer, default=60)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ScheduleOverride(Base):
    __tablename__ = "schedule_overrides"
    __table_args__ = _table_args(
        UniqueConstraint("doctor_id", "dispensary_id", "day", name="uq_schedule_overrides_date"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(String(64), index=True)
    dispensary_id: Mapped[str] = mapped_column(String(64), index=True)
    day: Mapped[date] = mapped_column(Date)
    is_modified_session: Mapped[int] = mapped_column(Integer, default=0)  # 0=absent, 1=modified
    start_time: Mapped[Optional[str]] = mapped_column(String(5), default=None)
    end_time: Mapped[Optional[str]] = mapped_column(String(5), default=None)
    max_patients: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    minutes_per_patient: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    reason: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FeeConfig(Base):
    __tablename__ = "doctor_dispensary_fees"
    __table_args__ = _table_args(
        UniqueConstraint("doctor_id", "dispensary_id", name="uq_doctor_dispensary_fees_pair"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(String(64))
    dispensary_id: Mapped[str] = mapped_column(String(64))
    doctor_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    dispensary_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    channel_partner_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    booking_commission_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    is_active: Mapped[int] = mapped_column(Integer, default=1)  # 0|1 boolean
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = _table_args(
        # At most one live booking per appointment number in a session;
        # cancelled rows keep their number for audit.
        Index(
            "uq_bookings_active_slot",
            "doctor_id",
            "dispensary_id",
            "booking_date",
            "appointment_number",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_bookings_session", "doctor_id", "dispensary_id", "booking_date"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    doctor_id: Mapped[str] = mapped_column(String(64))
    dispensary_id: Mapped[str] = mapped_column(String(64))
    booking_date: Mapped[date] = mapped_column(Date)
    appointment_number: Mapped[int] = mapped_column(Integer)
    estimated_time: Mapped[str] = mapped_column(String(5))
    time_slot: Mapped[str] = mapped_column(String(11))  # HH:MM-HH:MM
    status: Mapped[str] = mapped_column(String(16), default=BookingStatus.SCHEDULED.value)
    patient_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    patient_name: Mapped[str] = mapped_column(String(120))
    patient_phone: Mapped[str] = mapped_column(String(32))
    patient_email: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    symptoms: Mapped[Optional[str]] = mapped_column(String(1024), default=None)
    notes: Mapped[Optional[str]] = mapped_column(String(2048), default=None)
    is_paid: Mapped[int] = mapped_column(Integer, default=0)
    is_patient_visited: Mapped[int] = mapped_column(Integer, default=0)
    doctor_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    dispensary_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    channel_partner_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    booking_commission_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    booked_by: Mapped[str] = mapped_column(String(24), default=BookedBy.ONLINE.value)
    booked_user_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    transaction_id: Mapped[str] = mapped_column(String(32), unique=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BookingEvent(Base):
    __tablename__ = "booking_events"
    __table_args__ = _table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(36), index=True)
    action: Mapped[str] = mapped_column(String(32))
    from_status: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    to_status: Mapped[Optional[str]] = mapped_column(String(16), default=None)
    actor: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    details: Mapped[Optional[str]] = mapped_column(String(1024), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class QueueStatus(Base):
    __tablename__ = "queue_status"
    __table_args__ = _table_args(
        UniqueConstraint("doctor_id", "dispensary_id", "day", name="uq_queue_status_session"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[str] = mapped_column(String(64))
    dispensary_id: Mapped[str] = mapped_column(String(64))
    day: Mapped[date] = mapped_column(Date)
    current_number: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class Idempotency(Base):
    __tablename__ = "idempotency"
    __table_args__ = _table_args()
    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    ref_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


engine = create_engine(DB_URL, future=True)


def get_session() -> Session:
    with Session(engine) as s:
        yield s
