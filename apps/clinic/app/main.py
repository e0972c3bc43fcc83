from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Callable, List, Optional
import logging
import os

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_shared import RequestIDMiddleware, add_standard_health, configure_cors, setup_json_logging

from . import config, stores
from .bookings import AvailableDay, BookingService, PatientInfo, QueueView
from .fees import get_fee_config
from .models import (
    Base,
    BookedBy,
    Booking,
    BookingEvent,
    FeeConfig,
    Idempotency,
    ScheduleConfig,
    ScheduleOverride,
    engine,
    get_session,
)
from .notifications import NotificationDispatcher, get_dispatcher
from .sessions import EffectiveSession, parse_hhmm
from .slots import SlotAssignment

_log = logging.getLogger("clinic.api")


def _db_ping() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


def _startup():
    Base.metadata.create_all(engine)
    _seed_demo_data()


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    _startup()
    yield


app = FastAPI(title="Clinic Booking API", version="0.1.0", lifespan=_lifespan)
setup_json_logging(service="clinic")
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", "*"))
add_standard_health(app, check=_db_ping)

router = APIRouter()


def _seed_demo_data():
    if not config.DEMO_SEED:
        return
    with Session(engine) as s:
        if s.execute(select(ScheduleConfig.id).limit(1)).first() is not None:
            return
        for doctor_id, dispensary_id in (("doc-demo-1", "disp-demo-1"), ("doc-demo-2", "disp-demo-1")):
            # Monday-Friday mornings, 15 minute consultations
            for dow in range(5):
                s.add(
                    ScheduleConfig(
                        doctor_id=doctor_id,
                        dispensary_id=dispensary_id,
                        day_of_week=dow,
                        start_time="09:00",
                        end_time="12:00",
                        max_patients=12,
                        minutes_per_patient=15,
                        booking_cutover_minutes=60,
                    )
                )
            s.add(
                FeeConfig(
                    doctor_id=doctor_id,
                    dispensary_id=dispensary_id,
                    doctor_fee_cents=150000,
                    dispensary_fee_cents=30000,
                    channel_partner_fee_cents=10000,
                    booking_commission_cents=25000,
                    is_active=1,
                )
            )
        s.commit()
    _log.info("demo schedules seeded")


# --- dependencies ---


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_clock() -> Callable[[], datetime]:
    return _utcnow


def get_notifier() -> NotificationDispatcher:
    return get_dispatcher()


def get_service(
    s: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BookingService:
    return BookingService(s, clock=clock, notifier=notifier)


def _parse_date(val: str) -> date:
    try:
        return date.fromisoformat(val)
    except Exception:
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")


def _check_hhmm(val: str) -> int:
    try:
        return parse_hhmm(val)
    except Exception:
        raise HTTPException(status_code=400, detail="time must be HH:MM 24h")


def _check_window(start_time: str, end_time: str) -> None:
    if _check_hhmm(end_time) <= _check_hhmm(start_time):
        raise HTTPException(status_code=400, detail="end_time must be after start_time")


def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


# --- schemas ---


class ScheduleConfigIn(BaseModel):
    doctor_id: str = Field(min_length=1, max_length=64)
    dispensary_id: str = Field(min_length=1, max_length=64)
    day_of_week: int = Field(ge=0, le=6, description="0=Monday, 6=Sunday")
    start_time: str = Field(description="HH:MM 24h")
    end_time: str = Field(description="HH:MM 24h")
    max_patients: int = Field(gt=0)
    minutes_per_patient: int = Field(default=15, gt=0)
    booking_cutover_minutes: int = Field(default=60, ge=0)


class ScheduleConfigOut(ScheduleConfigIn):
    id: int
    model_config = ConfigDict(from_attributes=True)


class ScheduleOverrideIn(BaseModel):
    doctor_id: str = Field(min_length=1, max_length=64)
    dispensary_id: str = Field(min_length=1, max_length=64)
    date: str = Field(description="YYYY-MM-DD")
    is_modified_session: bool = False
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    max_patients: Optional[int] = Field(default=None, gt=0)
    minutes_per_patient: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=200)


class ScheduleOverrideOut(BaseModel):
    id: int
    doctor_id: str
    dispensary_id: str
    date: str
    is_modified_session: bool
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    max_patients: Optional[int] = None
    minutes_per_patient: Optional[int] = None
    reason: Optional[str] = None


class FeeConfigIn(BaseModel):
    doctor_id: str = Field(min_length=1, max_length=64)
    dispensary_id: str = Field(min_length=1, max_length=64)
    doctor_fee_cents: int = Field(default=0, ge=0)
    dispensary_fee_cents: int = Field(default=0, ge=0)
    channel_partner_fee_cents: int = Field(default=0, ge=0)
    booking_commission_cents: int = Field(default=0, ge=0)
    is_active: bool = True


class FeeConfigOut(FeeConfigIn):
    id: int
    model_config = ConfigDict(from_attributes=True)


class EffectiveSessionOut(BaseModel):
    doctor_id: str
    dispensary_id: str
    date: str
    day_of_week: int
    start_time: str
    end_time: str
    max_patients: int
    minutes_per_patient: int
    booking_cutover_minutes: int
    is_modified: bool
    reason: Optional[str] = None


class SlotOut(BaseModel):
    appointment_number: int
    estimated_time: str
    time_slot: str


class AvailableSlotsOut(BaseModel):
    session: EffectiveSessionOut
    slots: List[SlotOut]


class AvailableDayOut(BaseModel):
    date: str
    weekday: str
    start_time: str
    end_time: str
    max_patients: int
    booked: int
    remaining: int
    next_appointment_number: int
    is_modified: bool


class BookingCreate(BaseModel):
    doctor_id: str = Field(min_length=1, max_length=64)
    dispensary_id: str = Field(min_length=1, max_length=64)
    date: str = Field(description="YYYY-MM-DD")
    patient_name: str = Field(min_length=1, max_length=120)
    patient_phone: str = Field(min_length=1, max_length=32)
    patient_email: Optional[str] = None
    patient_id: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None
    booked_by: BookedBy = BookedBy.ONLINE
    booked_user_id: Optional[str] = None


class BookingOut(BaseModel):
    id: str
    doctor_id: str
    dispensary_id: str
    date: str
    appointment_number: int
    estimated_time: str
    time_slot: str
    status: str
    patient_id: Optional[str] = None
    patient_name: str
    patient_phone: str
    patient_email: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None
    is_paid: bool
    is_patient_visited: bool
    doctor_fee_cents: int
    dispensary_fee_cents: int
    channel_partner_fee_cents: int
    booking_commission_cents: int
    total_fee_cents: int
    booked_by: str
    booked_user_id: Optional[str] = None
    transaction_id: str
    checked_in_at_iso: Optional[str] = None
    completed_at_iso: Optional[str] = None
    cancelled_at_iso: Optional[str] = None
    created_at_iso: Optional[str] = None
    updated_at_iso: Optional[str] = None


class BookingEventOut(BaseModel):
    id: int
    booking_id: str
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    actor: Optional[str] = None
    details: Optional[str] = None
    created_at_iso: Optional[str] = None


class ActorReq(BaseModel):
    actor: Optional[str] = None


class CancelReq(ActorReq):
    reason: Optional[str] = Field(default=None, max_length=500)


class AdjustReq(ActorReq):
    date: str = Field(description="YYYY-MM-DD")
    doctor_id: Optional[str] = None
    dispensary_id: Optional[str] = None


class RestoreReq(ActorReq):
    payment_ref: str = Field(min_length=1, max_length=120)
    reason: Optional[str] = Field(default=None, max_length=500)


class QueueStatusIn(BaseModel):
    doctor_id: str
    dispensary_id: str
    date: str = Field(description="YYYY-MM-DD")
    ongoing_number: int = Field(ge=0)


class QueueStatusOut(BaseModel):
    doctor_id: str
    dispensary_id: str
    date: str
    ongoing_number: int
    last_updated_iso: Optional[str] = None


def _session_to_out(es: EffectiveSession) -> EffectiveSessionOut:
    return EffectiveSessionOut(
        doctor_id=es.doctor_id,
        dispensary_id=es.dispensary_id,
        date=es.day.isoformat(),
        day_of_week=es.day.weekday(),
        start_time=es.start_time,
        end_time=es.end_time,
        max_patients=es.max_patients,
        minutes_per_patient=es.minutes_per_patient,
        booking_cutover_minutes=es.booking_cutover_minutes,
        is_modified=es.is_modified,
        reason=es.reason,
    )


def _slot_to_out(slot: SlotAssignment) -> SlotOut:
    return SlotOut(
        appointment_number=slot.appointment_number,
        estimated_time=slot.estimated_time,
        time_slot=slot.time_slot,
    )


def _day_to_out(d: AvailableDay) -> AvailableDayOut:
    return AvailableDayOut(
        date=d.day.isoformat(),
        weekday=d.weekday,
        start_time=d.start_time,
        end_time=d.end_time,
        max_patients=d.max_patients,
        booked=d.booked,
        remaining=d.remaining,
        next_appointment_number=d.next_appointment_number,
        is_modified=d.is_modified,
    )


def _override_to_out(o: ScheduleOverride) -> ScheduleOverrideOut:
    return ScheduleOverrideOut(
        id=o.id,
        doctor_id=o.doctor_id,
        dispensary_id=o.dispensary_id,
        date=o.day.isoformat(),
        is_modified_session=bool(o.is_modified_session),
        start_time=o.start_time,
        end_time=o.end_time,
        max_patients=o.max_patients,
        minutes_per_patient=o.minutes_per_patient,
        reason=o.reason,
    )


def _booking_to_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        doctor_id=b.doctor_id,
        dispensary_id=b.dispensary_id,
        date=b.booking_date.isoformat(),
        appointment_number=b.appointment_number,
        estimated_time=b.estimated_time,
        time_slot=b.time_slot,
        status=b.status,
        patient_id=b.patient_id,
        patient_name=b.patient_name,
        patient_phone=b.patient_phone,
        patient_email=b.patient_email,
        symptoms=b.symptoms,
        notes=b.notes,
        is_paid=bool(b.is_paid),
        is_patient_visited=bool(b.is_patient_visited),
        doctor_fee_cents=b.doctor_fee_cents,
        dispensary_fee_cents=b.dispensary_fee_cents,
        channel_partner_fee_cents=b.channel_partner_fee_cents,
        booking_commission_cents=b.booking_commission_cents,
        total_fee_cents=b.total_fee_cents,
        booked_by=b.booked_by,
        booked_user_id=b.booked_user_id,
        transaction_id=b.transaction_id,
        checked_in_at_iso=_iso(b.checked_in_at),
        completed_at_iso=_iso(b.completed_at),
        cancelled_at_iso=_iso(b.cancelled_at),
        created_at_iso=_iso(b.created_at),
        updated_at_iso=_iso(b.updated_at),
    )


def _event_to_out(e: BookingEvent) -> BookingEventOut:
    return BookingEventOut(
        id=e.id,
        booking_id=e.booking_id,
        action=e.action,
        from_status=e.from_status,
        to_status=e.to_status,
        actor=e.actor,
        details=e.details,
        created_at_iso=_iso(e.created_at),
    )


def _queue_to_out(q: QueueView) -> QueueStatusOut:
    return QueueStatusOut(
        doctor_id=q.doctor_id,
        dispensary_id=q.dispensary_id,
        date=q.day.isoformat(),
        ongoing_number=q.ongoing_number,
        last_updated_iso=_iso(q.last_updated),
    )


# --- admin: schedule configs ---


@router.get("/admin/schedule-configs", response_model=List[ScheduleConfigOut])
def list_schedule_configs(doctor_id: str, dispensary_id: str, s: Session = Depends(get_session)):
    return stores.list_schedule_configs(s, doctor_id, dispensary_id)


@router.post("/admin/schedule-configs", response_model=ScheduleConfigOut)
def upsert_schedule_config(req: ScheduleConfigIn, s: Session = Depends(get_session)):
    _check_window(req.start_time, req.end_time)
    row = stores.get_schedule_config(s, req.doctor_id, req.dispensary_id, req.day_of_week)
    if row is None:
        row = ScheduleConfig(doctor_id=req.doctor_id, dispensary_id=req.dispensary_id, day_of_week=req.day_of_week)
        s.add(row)
    row.start_time = req.start_time
    row.end_time = req.end_time
    row.max_patients = req.max_patients
    row.minutes_per_patient = req.minutes_per_patient
    row.booking_cutover_minutes = req.booking_cutover_minutes
    s.commit()
    s.refresh(row)
    return row


@router.put("/admin/schedule-configs/{config_id}", response_model=ScheduleConfigOut)
def update_schedule_config(config_id: int, req: ScheduleConfigIn, s: Session = Depends(get_session)):
    row = s.get(ScheduleConfig, config_id)
    if not row:
        raise HTTPException(status_code=404, detail="schedule config not found")
    _check_window(req.start_time, req.end_time)
    row.doctor_id = req.doctor_id
    row.dispensary_id = req.dispensary_id
    row.day_of_week = req.day_of_week
    row.start_time = req.start_time
    row.end_time = req.end_time
    row.max_patients = req.max_patients
    row.minutes_per_patient = req.minutes_per_patient
    row.booking_cutover_minutes = req.booking_cutover_minutes
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise HTTPException(status_code=409, detail="a schedule config already exists for that day")
    s.refresh(row)
    return row


@router.delete("/admin/schedule-configs/{config_id}")
def delete_schedule_config(config_id: int, s: Session = Depends(get_session)):
    row = s.get(ScheduleConfig, config_id)
    if not row:
        raise HTTPException(status_code=404, detail="schedule config not found")
    s.delete(row)
    s.commit()
    return {"deleted": config_id}


# --- admin: schedule overrides ---


@router.get("/admin/schedule-overrides", response_model=List[ScheduleOverrideOut])
def list_schedule_overrides(
    doctor_id: str,
    dispensary_id: str,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    s: Session = Depends(get_session),
):
    rows = stores.list_schedule_overrides(
        s,
        doctor_id,
        dispensary_id,
        from_day=_parse_date(from_date) if from_date else None,
        to_day=_parse_date(to_date) if to_date else None,
    )
    return [_override_to_out(r) for r in rows]


@router.post("/admin/schedule-overrides", response_model=ScheduleOverrideOut)
def upsert_schedule_override(req: ScheduleOverrideIn, s: Session = Depends(get_session)):
    day = _parse_date(req.date)
    for t in (req.start_time, req.end_time):
        if t:
            _check_hhmm(t)
    if req.start_time and req.end_time:
        _check_window(req.start_time, req.end_time)
    elif req.is_modified_session and (req.start_time or req.end_time):
        # the missing end comes from the weekday config
        cfg = stores.get_schedule_config(s, req.doctor_id, req.dispensary_id, day.weekday())
        if cfg is not None:
            _check_window(req.start_time or cfg.start_time, req.end_time or cfg.end_time)
    row = stores.get_schedule_override(s, req.doctor_id, req.dispensary_id, day)
    if row is None:
        row = ScheduleOverride(doctor_id=req.doctor_id, dispensary_id=req.dispensary_id, day=day)
        s.add(row)
    row.is_modified_session = 1 if req.is_modified_session else 0
    row.start_time = req.start_time or None
    row.end_time = req.end_time or None
    row.max_patients = req.max_patients
    row.minutes_per_patient = req.minutes_per_patient
    row.reason = req.reason or None
    s.commit()
    s.refresh(row)
    return _override_to_out(row)


@router.delete("/admin/schedule-overrides/{override_id}")
def delete_schedule_override(override_id: int, s: Session = Depends(get_session)):
    row = s.get(ScheduleOverride, override_id)
    if not row:
        raise HTTPException(status_code=404, detail="schedule override not found")
    s.delete(row)
    s.commit()
    return {"deleted": override_id}


# --- admin: fees ---


@router.get("/admin/fees", response_model=FeeConfigOut)
def get_fees(doctor_id: str, dispensary_id: str, s: Session = Depends(get_session)):
    row = get_fee_config(s, doctor_id, dispensary_id)
    if not row:
        raise HTTPException(status_code=404, detail="fee configuration not found")
    return row


@router.put("/admin/fees", response_model=FeeConfigOut)
def put_fees(req: FeeConfigIn, s: Session = Depends(get_session)):
    row = get_fee_config(s, req.doctor_id, req.dispensary_id)
    if row is None:
        row = FeeConfig(doctor_id=req.doctor_id, dispensary_id=req.dispensary_id)
        s.add(row)
    row.doctor_fee_cents = req.doctor_fee_cents
    row.dispensary_fee_cents = req.dispensary_fee_cents
    row.channel_partner_fee_cents = req.channel_partner_fee_cents
    row.booking_commission_cents = req.booking_commission_cents
    row.is_active = 1 if req.is_active else 0
    s.commit()
    s.refresh(row)
    return row


# --- sessions ---


@router.get("/sessions/{doctor_id}/{dispensary_id}/{day}", response_model=EffectiveSessionOut)
def get_effective_session(doctor_id: str, dispensary_id: str, day: str, svc: BookingService = Depends(get_service)):
    return _session_to_out(svc.get_effective_session(doctor_id, dispensary_id, _parse_date(day)))


@router.get("/sessions/{doctor_id}/{dispensary_id}/{day}/slots", response_model=AvailableSlotsOut)
def list_available_slots(doctor_id: str, dispensary_id: str, day: str, svc: BookingService = Depends(get_service)):
    es, slots = svc.list_available_slots(doctor_id, dispensary_id, _parse_date(day))
    return AvailableSlotsOut(session=_session_to_out(es), slots=[_slot_to_out(x) for x in slots])


@router.get("/sessions/{doctor_id}/{dispensary_id}/{day}/next", response_model=SlotOut)
def next_available(doctor_id: str, dispensary_id: str, day: str, svc: BookingService = Depends(get_service)):
    return _slot_to_out(svc.next_available(doctor_id, dispensary_id, _parse_date(day)))


@router.get("/sessions/{doctor_id}/{dispensary_id}/{day}/bookings", response_model=List[BookingOut])
def list_session_bookings(doctor_id: str, dispensary_id: str, day: str, svc: BookingService = Depends(get_service)):
    return [_booking_to_out(b) for b in svc.list_session_bookings(doctor_id, dispensary_id, _parse_date(day))]


@router.get("/doctors/{doctor_id}/dispensaries/{dispensary_id}/available-days", response_model=List[AvailableDayOut])
def list_available_days(
    doctor_id: str,
    dispensary_id: str,
    from_date: Optional[str] = None,
    count: int = Query(default=5, ge=1, le=31),
    svc: BookingService = Depends(get_service),
):
    start = _parse_date(from_date) if from_date else svc.clock().astimezone(config.clinic_tz()).date()
    return [_day_to_out(d) for d in svc.list_available_days(doctor_id, dispensary_id, start, count=count)]


# --- bookings ---


def _claim_idempotency_key(s: Session, key: str) -> Optional[Booking]:
    """
    Insert the key row before any slot is allocated. Returns the booking of an
    earlier request with the same key, None when this request owns the key.
    """
    ie = s.get(Idempotency, key)
    if ie is None:
        s.add(Idempotency(key=key))
        try:
            s.commit()
            return None
        except IntegrityError:
            s.rollback()
            ie = s.get(Idempotency, key)
    if ie is not None and ie.ref_id:
        b0 = stores.get_booking(s, ie.ref_id)
        if b0 is not None:
            return b0
    _log.info("idempotency key in flight", extra={"idempotency_key": key})
    raise HTTPException(status_code=409, detail="request with this Idempotency-Key is still in progress")


def _release_idempotency_key(s: Session, key: str) -> None:
    s.rollback()
    s.execute(delete(Idempotency).where(Idempotency.key == key, Idempotency.ref_id.is_(None)))
    s.commit()


@router.post("/bookings", response_model=BookingOut)
def create_booking(
    req: BookingCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    s: Session = Depends(get_session),
    svc: BookingService = Depends(get_service),
):
    day = _parse_date(req.date)
    if idempotency_key:
        b0 = _claim_idempotency_key(s, idempotency_key)
        if b0 is not None:
            return _booking_to_out(b0)
    patient = PatientInfo(
        name=req.patient_name.strip(),
        phone=req.patient_phone.strip(),
        email=req.patient_email or None,
        patient_id=req.patient_id or None,
        symptoms=req.symptoms or None,
        notes=req.notes or None,
    )
    try:
        b = svc.create(
            req.doctor_id,
            req.dispensary_id,
            day,
            patient,
            booked_by=req.booked_by,
            booked_user_id=req.booked_user_id or None,
            idempotency_key=idempotency_key,
        )
    except Exception:
        if idempotency_key:
            _release_idempotency_key(s, idempotency_key)
        raise
    return _booking_to_out(b)


@router.get("/bookings/patient/{patient_id}", response_model=List[BookingOut])
def list_patient_bookings(patient_id: str, svc: BookingService = Depends(get_service)):
    return [_booking_to_out(b) for b in svc.list_patient_bookings(patient_id)]


@router.get("/bookings/search", response_model=List[BookingOut])
def search_bookings(
    reference: Optional[str] = None,
    appointment_number: Optional[int] = Query(default=None, ge=1),
    patient_name: Optional[str] = None,
    patient_phone: Optional[str] = None,
    doctor_id: Optional[str] = None,
    dispensary_id: Optional[str] = None,
    date: Optional[str] = None,
    svc: BookingService = Depends(get_service),
):
    try:
        rows = svc.search_bookings(
            reference=(reference or "").strip() or None,
            appointment_number=appointment_number,
            patient_name=(patient_name or "").strip() or None,
            patient_phone=(patient_phone or "").strip() or None,
            doctor_id=doctor_id or None,
            dispensary_id=dispensary_id or None,
            day=_parse_date(date) if date else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_booking_to_out(b) for b in rows]


@router.get("/bookings/by-transaction/{transaction_id}", response_model=BookingOut)
def get_booking_by_transaction(transaction_id: str, svc: BookingService = Depends(get_service)):
    return _booking_to_out(svc.get_by_transaction(transaction_id))


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, svc: BookingService = Depends(get_service)):
    return _booking_to_out(svc.get(booking_id))


@router.get("/bookings/{booking_id}/events", response_model=List[BookingEventOut])
def list_booking_events(booking_id: str, svc: BookingService = Depends(get_service)):
    return [_event_to_out(e) for e in svc.list_events(booking_id)]


@router.post("/bookings/{booking_id}/check-in", response_model=BookingOut)
def check_in_booking(booking_id: str, req: Optional[ActorReq] = None, svc: BookingService = Depends(get_service)):
    return _booking_to_out(svc.check_in(booking_id, actor=req.actor if req else None))


@router.post("/bookings/{booking_id}/complete", response_model=BookingOut)
def complete_booking(booking_id: str, req: Optional[ActorReq] = None, svc: BookingService = Depends(get_service)):
    return _booking_to_out(svc.complete(booking_id, actor=req.actor if req else None))


@router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: str, req: Optional[CancelReq] = None, svc: BookingService = Depends(get_service)):
    req = req or CancelReq()
    reason = (req.reason or "").strip() or None
    return _booking_to_out(svc.cancel(booking_id, reason=reason, actor=req.actor))


@router.post("/bookings/{booking_id}/no-show", response_model=BookingOut)
def mark_no_show(booking_id: str, req: Optional[ActorReq] = None, svc: BookingService = Depends(get_service)):
    return _booking_to_out(svc.mark_no_show(booking_id, actor=req.actor if req else None))


@router.post("/bookings/{booking_id}/adjust", response_model=BookingOut)
def adjust_booking(booking_id: str, req: AdjustReq, svc: BookingService = Depends(get_service)):
    b = svc.adjust(
        booking_id,
        _parse_date(req.date),
        new_doctor_id=req.doctor_id or None,
        new_dispensary_id=req.dispensary_id or None,
        actor=req.actor,
    )
    return _booking_to_out(b)


@router.post("/bookings/{booking_id}/restore", response_model=BookingOut)
def restore_booking(booking_id: str, req: RestoreReq, svc: BookingService = Depends(get_service)):
    b = svc.restore_after_payment(booking_id, req.payment_ref.strip(), reason=req.reason, actor=req.actor)
    return _booking_to_out(b)


# --- queue status ---


@router.get("/queue-status", response_model=QueueStatusOut)
def get_queue_status(doctor_id: str, dispensary_id: str, date: str, svc: BookingService = Depends(get_service)):
    return _queue_to_out(svc.get_queue_status(doctor_id, dispensary_id, _parse_date(date)))


@router.post("/queue-status", response_model=QueueStatusOut)
def set_queue_status(req: QueueStatusIn, svc: BookingService = Depends(get_service)):
    q = svc.set_queue_status(req.doctor_id, req.dispensary_id, _parse_date(req.date), req.ongoing_number)
    return _queue_to_out(q)


app.include_router(router)
