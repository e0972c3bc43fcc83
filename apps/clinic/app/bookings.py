"""
BookingService: creation, status transitions and slot moves for clinic
appointments.

Every operation that picks an appointment number (create, adjust, restore)
runs read-occupied-set -> allocate -> write -> commit under the session-key
mutex, with the partial unique index ``uq_bookings_active_slot`` as the
safety net: an IntegrityError at commit rolls back and re-allocates, a
bounded number of times. Fee lookups happen before the critical section and
notifications only after the commit.
"""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, stores
from .errors import (
    BookingClosed,
    BookingNotFound,
    ClinicError,
    ConcurrentAllocationConflict,
    InvalidTransition,
)
from .fees import FeeBreakdown, FeeInputs, calculate_fees, fee_inputs_or_zero
from .locks import SessionKey, SessionLocks, session_locks
from .models import BookedBy, Booking, BookingEvent, BookingStatus, Idempotency, QueueStatus
from .notifications import NotificationDispatcher, get_dispatcher, queue_topic
from .sessions import WEEKDAY_NAMES, EffectiveSession, resolve_session
from .slots import SlotAssignment, allocate, allocate_preferring, available_slots

_log = logging.getLogger("clinic.bookings")
_audit_logger = logging.getLogger("clinic.audit")

Clock = Callable[[], datetime]

TRANSITIONS: Dict[BookingStatus, Tuple[BookingStatus, ...]] = {
    BookingStatus.SCHEDULED: (BookingStatus.CHECKED_IN, BookingStatus.CANCELLED, BookingStatus.NO_SHOW),
    BookingStatus.CHECKED_IN: (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
    BookingStatus.COMPLETED: (),
    BookingStatus.CANCELLED: (),
    BookingStatus.NO_SHOW: (),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_transaction_id(now: datetime) -> str:
    return f"TRX-{int(now.timestamp() * 1000)}-{secrets.randbelow(1000):03d}"


@dataclass(frozen=True)
class PatientInfo:
    name: str
    phone: str
    email: Optional[str] = None
    patient_id: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AvailableDay:
    day: date
    weekday: str
    start_time: str
    end_time: str
    max_patients: int
    booked: int
    remaining: int
    next_appointment_number: int
    is_modified: bool


@dataclass(frozen=True)
class QueueView:
    doctor_id: str
    dispensary_id: str
    day: date
    ongoing_number: int
    last_updated: Optional[datetime]


class BookingService:
    def __init__(
        self,
        s: Session,
        clock: Optional[Clock] = None,
        notifier: Optional[NotificationDispatcher] = None,
        locks: Optional[SessionLocks] = None,
        max_retries: Optional[int] = None,
        enforce_cutover: Optional[bool] = None,
    ) -> None:
        self.s = s
        self.clock: Clock = clock or _utcnow
        self.notifier = notifier if notifier is not None else get_dispatcher()
        self.locks = locks if locks is not None else session_locks
        self.max_retries = max(1, max_retries if max_retries is not None else config.ALLOCATION_RETRIES)
        self.enforce_cutover = config.ENFORCE_CUTOVER if enforce_cutover is None else enforce_cutover

    # --- reads ---

    def get_effective_session(self, doctor_id: str, dispensary_id: str, day: date) -> EffectiveSession:
        return resolve_session(self.s, doctor_id, dispensary_id, day)

    def list_available_slots(
        self, doctor_id: str, dispensary_id: str, day: date
    ) -> Tuple[EffectiveSession, List[SlotAssignment]]:
        session = resolve_session(self.s, doctor_id, dispensary_id, day)
        occupied = stores.occupied_numbers(self.s, doctor_id, dispensary_id, day)
        return session, available_slots(session, occupied)

    def next_available(self, doctor_id: str, dispensary_id: str, day: date) -> SlotAssignment:
        session = resolve_session(self.s, doctor_id, dispensary_id, day)
        return allocate(session, stores.occupied_numbers(self.s, doctor_id, dispensary_id, day))

    def list_available_days(
        self, doctor_id: str, dispensary_id: str, from_day: date, count: int = 5
    ) -> List[AvailableDay]:
        out: List[AvailableDay] = []
        horizon = config.AVAILABLE_DAYS_HORIZON
        for i in range(horizon):
            if len(out) >= count:
                break
            day = from_day + timedelta(days=i)
            try:
                session = resolve_session(self.s, doctor_id, dispensary_id, day)
            except ClinicError:
                continue
            occupied = stores.occupied_numbers(self.s, doctor_id, dispensary_id, day)
            if len(occupied) >= session.max_patients:
                continue
            out.append(
                AvailableDay(
                    day=day,
                    weekday=WEEKDAY_NAMES[day.weekday()],
                    start_time=session.start_time,
                    end_time=session.end_time,
                    max_patients=session.max_patients,
                    booked=len(occupied),
                    remaining=session.max_patients - len(occupied),
                    next_appointment_number=allocate(session, occupied).appointment_number,
                    is_modified=session.is_modified,
                )
            )
        return out

    def get(self, booking_id: str) -> Booking:
        b = stores.get_booking(self.s, booking_id)
        if b is None:
            raise BookingNotFound("booking not found", booking_id=booking_id)
        return b

    def get_by_transaction(self, transaction_id: str) -> Booking:
        b = stores.get_booking_by_transaction(self.s, transaction_id)
        if b is None:
            raise BookingNotFound("booking not found", transaction_id=transaction_id)
        return b

    def list_session_bookings(self, doctor_id: str, dispensary_id: str, day: date) -> List[Booking]:
        return stores.session_bookings(self.s, doctor_id, dispensary_id, day)

    def list_events(self, booking_id: str) -> List[BookingEvent]:
        self.get(booking_id)
        return stores.booking_events(self.s, booking_id)

    def list_patient_bookings(self, patient_id: str) -> List[Booking]:
        return stores.patient_bookings(self.s, patient_id)

    def search_bookings(
        self,
        reference: Optional[str] = None,
        appointment_number: Optional[int] = None,
        patient_name: Optional[str] = None,
        patient_phone: Optional[str] = None,
        doctor_id: Optional[str] = None,
        dispensary_id: Optional[str] = None,
        day: Optional[date] = None,
    ) -> List[Booking]:
        """
        Check-in desk lookup. At least one search term is required unless the
        search is already narrowed to a doctor or a date.
        """
        has_term = bool(reference or patient_name or patient_phone) or appointment_number is not None
        if not has_term and not doctor_id and day is None:
            raise ValueError("at least one search parameter is required")
        return stores.search_bookings(
            self.s,
            reference=reference,
            appointment_number=appointment_number,
            patient_name=patient_name,
            patient_phone=patient_phone,
            doctor_id=doctor_id,
            dispensary_id=dispensary_id,
            day=day,
        )

    # --- create ---

    def create(
        self,
        doctor_id: str,
        dispensary_id: str,
        day: date,
        patient: PatientInfo,
        booked_by: BookedBy = BookedBy.ONLINE,
        booked_user_id: Optional[str] = None,
        fee_inputs: Optional[FeeInputs] = None,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        booked_by = BookedBy(booked_by)
        # fee config is read outside the critical section
        if fee_inputs is None:
            fee_inputs = fee_inputs_or_zero(self.s, doctor_id, dispensary_id)
        fees = calculate_fees(fee_inputs, booked_by)
        booking_id = str(uuid.uuid4())
        actor = booked_user_id or booked_by.value
        key: SessionKey = (doctor_id, dispensary_id, day)
        holder: Dict[str, Booking] = {}

        def write(session: EffectiveSession, slot: SlotAssignment) -> None:
            if booked_by == BookedBy.ONLINE:
                self._check_cutover(session)
            b = self._new_booking(booking_id, session, slot, patient, fees, booked_by, booked_user_id)
            self.s.add(b)
            self._record_event(b, "created", None, BookingStatus.SCHEDULED, actor, f"booked_by={booked_by.value}")
            if idempotency_key:
                idem = self.s.get(Idempotency, idempotency_key)
                if idem is not None:
                    idem.ref_id = booking_id
            holder["booking"] = b

        def pick(session: EffectiveSession, occupied: set[int]) -> SlotAssignment:
            return allocate(session, occupied)

        self._allocate_and_write(key, pick, write)
        b = holder["booking"]
        _log.info(
            "booking created",
            extra={
                "booking_id": b.id,
                "doctor_id": doctor_id,
                "dispensary_id": dispensary_id,
                "booking_date": day.isoformat(),
                "appointment_number": b.appointment_number,
            },
        )
        self._notify(b.patient_phone, "booking_confirmed", self._booking_data(b))
        return b

    def _new_booking(
        self,
        booking_id: str,
        session: EffectiveSession,
        slot: SlotAssignment,
        patient: PatientInfo,
        fees: FeeBreakdown,
        booked_by: BookedBy,
        booked_user_id: Optional[str],
    ) -> Booking:
        return Booking(
            id=booking_id,
            doctor_id=session.doctor_id,
            dispensary_id=session.dispensary_id,
            booking_date=session.day,
            appointment_number=slot.appointment_number,
            estimated_time=slot.estimated_time,
            time_slot=slot.time_slot,
            status=BookingStatus.SCHEDULED.value,
            patient_id=patient.patient_id or f"temp-{patient.phone}",
            patient_name=patient.name,
            patient_phone=patient.phone,
            patient_email=patient.email,
            symptoms=patient.symptoms,
            notes=patient.notes,
            is_paid=0,
            is_patient_visited=0,
            doctor_fee_cents=fees.doctor_fee_cents,
            dispensary_fee_cents=fees.dispensary_fee_cents,
            channel_partner_fee_cents=fees.channel_partner_fee_cents,
            booking_commission_cents=fees.booking_commission_cents,
            total_fee_cents=fees.total_fee_cents,
            booked_by=booked_by.value,
            booked_user_id=booked_user_id,
            transaction_id=new_transaction_id(self.clock()),
        )

    def _check_cutover(self, session: EffectiveSession) -> None:
        if not self.enforce_cutover:
            return
        closes_at = session.starts_at(config.clinic_tz()) - timedelta(minutes=session.booking_cutover_minutes)
        now = self.clock()
        if now >= closes_at:
            raise BookingClosed(
                "online booking is closed for this session",
                doctor_id=session.doctor_id,
                dispensary_id=session.dispensary_id,
                date=session.day,
                closes_at=closes_at,
            )

    # --- slot moves ---

    def adjust(
        self,
        booking_id: str,
        new_day: date,
        new_doctor_id: Optional[str] = None,
        new_dispensary_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Booking:
        """
        Move a scheduled booking to another session (same id, fees, patient
        and transaction id). A move onto the session it already occupies
        keeps its current number.
        """
        b = self.get(booking_id)
        self._require_status(b, (BookingStatus.SCHEDULED,), BookingStatus.SCHEDULED, "adjust")
        doctor_id = new_doctor_id or b.doctor_id
        dispensary_id = new_dispensary_id or b.dispensary_id
        key: SessionKey = (doctor_id, dispensary_id, new_day)

        def pick(session: EffectiveSession, occupied: set[int]) -> SlotAssignment:
            same_session = (b.doctor_id, b.dispensary_id, b.booking_date) == key
            return allocate_preferring(session, occupied, b.appointment_number if same_session else None)

        def write(session: EffectiveSession, slot: SlotAssignment) -> None:
            self._require_status(b, (BookingStatus.SCHEDULED,), BookingStatus.SCHEDULED, "adjust")
            details = (
                f"{b.doctor_id}/{b.dispensary_id}/{b.booking_date.isoformat()}#{b.appointment_number}"
                f" -> {doctor_id}/{dispensary_id}/{new_day.isoformat()}#{slot.appointment_number}"
            )
            b.doctor_id = doctor_id
            b.dispensary_id = dispensary_id
            b.booking_date = new_day
            b.appointment_number = slot.appointment_number
            b.estimated_time = slot.estimated_time
            b.time_slot = slot.time_slot
            self._record_event(b, "adjusted", BookingStatus.SCHEDULED, BookingStatus.SCHEDULED, actor, details)

        self._allocate_and_write(key, pick, write, exclude_booking_id=booking_id)
        _log.info(
            "booking adjusted",
            extra={"booking_id": b.id, "booking_date": new_day.isoformat(), "appointment_number": b.appointment_number},
        )
        return b

    def restore_after_payment(
        self, booking_id: str, payment_ref: str, reason: Optional[str] = None, actor: Optional[str] = None
    ) -> Booking:
        """
        Payment-reversal path: bring a cancelled booking back to scheduled.

        The original appointment number is kept when it is still free;
        otherwise the booking takes the current first-fit slot. A full
        session raises SessionFull and the booking stays cancelled.
        """
        b = self.get(booking_id)
        self._require_status(b, (BookingStatus.CANCELLED,), BookingStatus.SCHEDULED, "restore")
        key: SessionKey = (b.doctor_id, b.dispensary_id, b.booking_date)
        original = b.appointment_number

        def pick(session: EffectiveSession, occupied: set[int]) -> SlotAssignment:
            return allocate_preferring(session, occupied, original)

        def write(session: EffectiveSession, slot: SlotAssignment) -> None:
            self._require_status(b, (BookingStatus.CANCELLED,), BookingStatus.SCHEDULED, "restore")
            b.status = BookingStatus.SCHEDULED.value
            b.is_paid = 1
            b.cancelled_at = None
            b.appointment_number = slot.appointment_number
            b.estimated_time = slot.estimated_time
            b.time_slot = slot.time_slot
            details = f"payment_ref={payment_ref}"
            if slot.appointment_number != original:
                details += f"; renumbered {original} -> {slot.appointment_number}"
            if reason:
                details += f"; {reason}"
            self._record_event(b, "restored", BookingStatus.CANCELLED, BookingStatus.SCHEDULED, actor, details)

        self._allocate_and_write(key, pick, write, exclude_booking_id=booking_id)
        self._notify(b.patient_phone, "booking_confirmed", self._booking_data(b))
        return b

    def _allocate_and_write(
        self,
        key: SessionKey,
        pick: Callable[[EffectiveSession, set[int]], SlotAssignment],
        write: Callable[[EffectiveSession, SlotAssignment], None],
        exclude_booking_id: Optional[str] = None,
    ) -> SlotAssignment:
        doctor_id, dispensary_id, day = key
        slot: Optional[SlotAssignment] = None
        for attempt in range(1, self.max_retries + 1):
            with self.locks.hold(key):
                try:
                    session = resolve_session(self.s, doctor_id, dispensary_id, day, lock_config=True)
                    occupied = stores.occupied_numbers(
                        self.s, doctor_id, dispensary_id, day, exclude_booking_id=exclude_booking_id
                    )
                    slot = pick(session, occupied)
                    write(session, slot)
                    self.s.commit()
                    return slot
                except IntegrityError:
                    self.s.rollback()
                    _log.warning(
                        "slot write conflicted, retrying",
                        extra={
                            "doctor_id": doctor_id,
                            "dispensary_id": dispensary_id,
                            "booking_date": day.isoformat(),
                            "appointment_number": slot.appointment_number if slot else None,
                            "attempt": attempt,
                        },
                    )
                except Exception:
                    self.s.rollback()
                    raise
        raise ConcurrentAllocationConflict(
            "could not reserve a slot, concurrent bookings kept colliding",
            doctor_id=doctor_id,
            dispensary_id=dispensary_id,
            date=day,
            attempted_number=slot.appointment_number if slot else None,
            attempts=self.max_retries,
        )

    # --- status transitions ---

    def check_in(self, booking_id: str, actor: Optional[str] = None) -> Booking:
        b = self._locked_booking(booking_id)
        key: SessionKey = (b.doctor_id, b.dispensary_id, b.booking_date)
        if b.is_patient_visited and b.status == BookingStatus.SCHEDULED.value:
            raise InvalidTransition(
                "patient already marked as visited",
                booking_id=b.id,
                current_status=b.status,
                target_status=BookingStatus.CHECKED_IN,
            )
        self._transition(b, BookingStatus.CHECKED_IN, "checked_in", actor)
        now = self.clock()
        b.checked_in_at = now
        b.is_patient_visited = 1
        with self.locks.hold(key):
            self._upsert_queue(b.doctor_id, b.dispensary_id, b.booking_date, b.appointment_number, now)
            self._commit()
        self._notify(b.patient_phone, "booking_checked_in", self._booking_data(b))
        self._notify(
            queue_topic(b.doctor_id, b.dispensary_id),
            "queue_update",
            {
                "doctor_id": b.doctor_id,
                "dispensary_id": b.dispensary_id,
                "date": b.booking_date.isoformat(),
                "ongoing_number": b.appointment_number,
            },
        )
        return b

    def complete(self, booking_id: str, actor: Optional[str] = None) -> Booking:
        b = self._locked_booking(booking_id)
        self._transition(b, BookingStatus.COMPLETED, "completed", actor)
        b.completed_at = self.clock()
        self._commit()
        return b

    def cancel(self, booking_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Booking:
        b = self._locked_booking(booking_id)
        self._transition(b, BookingStatus.CANCELLED, "cancelled", actor, reason)
        b.cancelled_at = self.clock()
        if reason:
            note = f"Cancellation reason: {reason}"
            b.notes = f"{b.notes} {note}" if b.notes else note
        self._commit()
        data = self._booking_data(b)
        if reason:
            data["reason"] = reason
        self._notify(b.patient_phone, "booking_cancelled", data)
        return b

    def mark_no_show(self, booking_id: str, actor: Optional[str] = None) -> Booking:
        b = self._locked_booking(booking_id)
        self._transition(b, BookingStatus.NO_SHOW, "no_show", actor)
        self._commit()
        return b

    def _locked_booking(self, booking_id: str) -> Booking:
        b = stores.get_booking(self.s, booking_id, for_update=True)
        if b is None:
            raise BookingNotFound("booking not found", booking_id=booking_id)
        return b

    def _require_status(
        self, b: Booking, allowed: Tuple[BookingStatus, ...], target: BookingStatus, action: str
    ) -> None:
        if BookingStatus(b.status) not in allowed:
            raise InvalidTransition(
                f"cannot {action} a booking that is {b.status}",
                booking_id=b.id,
                current_status=b.status,
                target_status=target,
            )

    def _transition(
        self, b: Booking, target: BookingStatus, action: str, actor: Optional[str], details: Optional[str] = None
    ) -> None:
        current = BookingStatus(b.status)
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(
                f"cannot move a {current.value} booking to {target.value}",
                booking_id=b.id,
                current_status=current,
                target_status=target,
            )
        b.status = target.value
        self._record_event(b, action, current, target, actor, details)

    def _commit(self) -> None:
        try:
            self.s.commit()
        except Exception:
            self.s.rollback()
            raise

    # --- queue status ---

    def get_queue_status(self, doctor_id: str, dispensary_id: str, day: date) -> QueueView:
        q = self._queue_row(doctor_id, dispensary_id, day)
        return QueueView(
            doctor_id=doctor_id,
            dispensary_id=dispensary_id,
            day=day,
            ongoing_number=q.current_number if q else 0,
            last_updated=q.last_updated if q else None,
        )

    def set_queue_status(self, doctor_id: str, dispensary_id: str, day: date, number: int) -> QueueView:
        if number < 0:
            raise ValueError("ongoing number must be >= 0")
        with self.locks.hold((doctor_id, dispensary_id, day)):
            self._upsert_queue(doctor_id, dispensary_id, day, number, self.clock())
            self._commit()
        self._notify(
            queue_topic(doctor_id, dispensary_id),
            "queue_update",
            {"doctor_id": doctor_id, "dispensary_id": dispensary_id, "date": day.isoformat(), "ongoing_number": number},
        )
        return self.get_queue_status(doctor_id, dispensary_id, day)

    def _queue_row(self, doctor_id: str, dispensary_id: str, day: date) -> Optional[QueueStatus]:
        stmt = select(QueueStatus).where(
            QueueStatus.doctor_id == doctor_id,
            QueueStatus.dispensary_id == dispensary_id,
            QueueStatus.day == day,
        )
        return self.s.execute(stmt).scalars().first()

    def _upsert_queue(self, doctor_id: str, dispensary_id: str, day: date, number: int, now: datetime) -> None:
        q = self._queue_row(doctor_id, dispensary_id, day)
        if q is None:
            q = QueueStatus(doctor_id=doctor_id, dispensary_id=dispensary_id, day=day)
            self.s.add(q)
        q.current_number = number
        q.last_updated = now

    # --- audit & notifications ---

    def _record_event(
        self,
        b: Booking,
        action: str,
        from_status: Optional[BookingStatus],
        to_status: Optional[BookingStatus],
        actor: Optional[str],
        details: Optional[str] = None,
    ) -> None:
        self.s.add(
            BookingEvent(
                booking_id=b.id,
                action=action,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                actor=actor,
                details=details,
            )
        )
        _audit_logger.info(
            {
                "event": "booking",
                "action": action,
                "booking_id": b.id,
                "from_status": from_status.value if from_status else None,
                "to_status": to_status.value if to_status else None,
                "actor": actor,
                "details": details,
            }
        )

    def _notify(self, recipient: Optional[str], template: str, data: dict) -> None:
        if not recipient:
            return
        try:
            self.notifier.send(recipient, template, data)
        except Exception:
            # delivery is fire-and-forget; the booking is already committed
            _log.warning("notification dispatch failed", exc_info=True, extra={"template": template})

    @staticmethod
    def _booking_data(b: Booking) -> dict:
        return {
            "booking_id": b.id,
            "doctor_id": b.doctor_id,
            "dispensary_id": b.dispensary_id,
            "date": b.booking_date.isoformat(),
            "appointment_number": b.appointment_number,
            "estimated_time": b.estimated_time,
            "time_slot": b.time_slot,
            "patient_name": b.patient_name,
            "transaction_id": b.transaction_id,
        }
