from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone

import pytest

from apps.clinic.app.bookings import BookingService, PatientInfo  # type: ignore[import]
from apps.clinic.app.errors import (  # type: ignore[import]
    BookingClosed,
    BookingNotFound,
    DoctorAbsent,
    InvalidTransition,
    NoScheduleConfigured,
    SessionFull,
)
from apps.clinic.app.locks import SessionLocks  # type: ignore[import]
from apps.clinic.app.models import BookedBy, BookingStatus  # type: ignore[import]

from conftest import MONDAY, FixedClock, RecordingNotifier, patient  # type: ignore[import]


def _book(service, n=1, day=MONDAY, **kw):
    return service.create("doc1", "disp1", day, patient(n), **kw)


# --- allocation through the service ---


def test_sequential_bookings_fill_session_then_reuse_cancelled_gap(service, make_config):
    make_config()
    bookings = [_book(service, i) for i in range(1, 5)]
    assert [b.appointment_number for b in bookings] == [1, 2, 3, 4]
    assert [b.estimated_time for b in bookings] == ["09:00", "09:30", "10:00", "10:30"]
    assert bookings[0].time_slot == "09:00-09:30"

    with pytest.raises(SessionFull):
        _book(service, 5)

    service.cancel(bookings[1].id)
    b = _book(service, 6)
    assert b.appointment_number == 2
    assert b.estimated_time == "09:30"


def test_modified_override_caps_capacity(service, make_config, make_override):
    make_config()
    make_override(max_patients=2)
    es = service.get_effective_session("doc1", "disp1", MONDAY)
    assert (es.start_time, es.end_time, es.max_patients, es.minutes_per_patient) == ("09:00", "11:00", 2, 30)
    _book(service, 1)
    _book(service, 2)
    with pytest.raises(SessionFull):
        _book(service, 3)


def test_absence_override_blocks_reads_and_create(service, make_config, make_override):
    make_config()
    make_override(is_modified_session=0)
    with pytest.raises(DoctorAbsent):
        service.get_effective_session("doc1", "disp1", MONDAY)
    with pytest.raises(DoctorAbsent):
        _book(service, 1)
    assert service.list_session_bookings("doc1", "disp1", MONDAY) == []


def test_create_without_config_fails(service):
    with pytest.raises(NoScheduleConfigured):
        _book(service, 1)


def test_booking_record_fields(service, make_config, make_fees):
    make_config()
    make_fees()
    b = service.create(
        "doc1",
        "disp1",
        MONDAY,
        PatientInfo(name="Nimal", phone="+94771234567", symptoms="fever"),
        booked_by=BookedBy.CHANNEL_PARTNER,
        booked_user_id="cp-7",
    )
    assert b.status == BookingStatus.SCHEDULED.value
    assert b.patient_id == "temp-+94771234567"
    assert b.symptoms == "fever"
    assert re.fullmatch(r"TRX-\d{13}-\d{3}", b.transaction_id)
    assert b.transaction_id.startswith(f"TRX-{int(datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc).timestamp() * 1000)}-")
    assert b.booked_by == "CHANNEL-PARTNER"
    assert b.booked_user_id == "cp-7"
    assert b.channel_partner_fee_cents == 200
    assert b.booking_commission_cents == 0
    assert b.total_fee_cents == 100_000 + 20_000 + 200
    assert not b.is_paid
    assert service.get_by_transaction(b.transaction_id).id == b.id


def test_explicit_patient_id_is_kept(service, make_config):
    make_config()
    b = service.create("doc1", "disp1", MONDAY, PatientInfo(name="A", phone="+1", patient_id="pat-1"))
    assert b.patient_id == "pat-1"


def test_missing_fee_config_books_with_zero_fees(service, make_config, caplog):
    make_config()
    with caplog.at_level(logging.WARNING, logger="clinic.fees"):
        b = _book(service, 1)
    assert b.total_fee_cents == 0
    assert any(r.name == "clinic.fees" for r in caplog.records)


def test_get_unknown_booking_raises(service):
    with pytest.raises(BookingNotFound):
        service.get("nope")
    with pytest.raises(BookingNotFound):
        service.get_by_transaction("TRX-0-000")


# --- online cutover ---


def test_online_booking_closes_at_cutover(db, make_config, notifier):
    make_config(booking_cutover_minutes=60)
    closes_at = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)
    open_svc = BookingService(db, clock=FixedClock(closes_at - timedelta(minutes=1)), notifier=notifier, locks=SessionLocks(), enforce_cutover=True)
    assert _book(open_svc, 1).appointment_number == 1

    closed_svc = BookingService(db, clock=FixedClock(closes_at), notifier=notifier, locks=SessionLocks(), enforce_cutover=True)
    with pytest.raises(BookingClosed) as ei:
        _book(closed_svc, 2)
    assert ei.value.status_code == 409
    # staff bookings ignore the cutover
    b = _book(closed_svc, 3, booked_by=BookedBy.DISPENSARY_STAFF)
    assert b.appointment_number == 2


def test_cutover_can_be_disabled(db, make_config, notifier):
    make_config()
    late = BookingService(
        db,
        clock=FixedClock(datetime(2024, 6, 10, 10, 0, tzinfo=timezone.utc)),
        notifier=notifier,
        locks=SessionLocks(),
        enforce_cutover=False,
    )
    assert _book(late, 1).appointment_number == 1


def test_default_service_books_without_cutover_enforcement(db, make_config, notifier):
    make_config()
    # real clock, far past the Monday session start
    svc = BookingService(db, notifier=notifier)
    bookings = [_book(svc, i) for i in range(1, 5)]
    assert [b.appointment_number for b in bookings] == [1, 2, 3, 4]
    assert [b.estimated_time for b in bookings] == ["09:00", "09:30", "10:00", "10:30"]
    with pytest.raises(SessionFull):
        _book(svc, 5)
    svc.cancel(bookings[1].id)
    assert _book(svc, 6).appointment_number == 2


# --- state machine ---


def test_check_in_complete_flow(service, make_config, clock):
    make_config()
    b = _book(service)
    b = service.check_in(b.id)
    assert b.status == "checked_in"
    assert b.is_patient_visited
    assert b.checked_in_at is not None
    b = service.complete(b.id)
    assert b.status == "completed"
    assert b.completed_at is not None


@pytest.mark.parametrize("prepare", ["complete", "cancel"])
def test_check_in_on_terminal_booking_fails(service, make_config, prepare):
    make_config()
    b = _book(service)
    if prepare == "complete":
        service.check_in(b.id)
        service.complete(b.id)
    else:
        service.cancel(b.id)
    with pytest.raises(InvalidTransition) as ei:
        service.check_in(b.id)
    assert ei.value.status_code == 409
    assert ei.value.detail["target_status"] == "checked_in"


def test_double_check_in_is_an_error(service, make_config):
    make_config()
    b = _book(service)
    first = service.check_in(b.id)
    stamp = first.checked_in_at
    with pytest.raises(InvalidTransition):
        service.check_in(b.id)
    assert service.get(b.id).checked_in_at == stamp


def test_complete_requires_check_in(service, make_config):
    make_config()
    b = _book(service)
    with pytest.raises(InvalidTransition) as ei:
        service.complete(b.id)
    assert ei.value.detail["current_status"] == "scheduled"


def test_cancel_from_checked_in_and_reason_goes_to_notes(service, make_config):
    make_config()
    b = service.create("doc1", "disp1", MONDAY, PatientInfo(name="A", phone="+1", notes="first visit"))
    service.check_in(b.id)
    b = service.cancel(b.id, reason="felt better")
    assert b.status == "cancelled"
    assert b.cancelled_at is not None
    assert b.notes == "first visit Cancellation reason: felt better"


def test_cancelled_and_no_show_are_terminal(service, make_config):
    make_config()
    b1 = _book(service, 1)
    b2 = _book(service, 2)
    service.cancel(b1.id)
    service.mark_no_show(b2.id)
    assert service.get(b2.id).status == "no_show"
    for bid in (b1.id, b2.id):
        for op in (service.cancel, service.complete, service.mark_no_show):
            with pytest.raises(InvalidTransition):
                op(bid)


def test_no_show_only_from_scheduled(service, make_config):
    make_config()
    b = _book(service)
    service.check_in(b.id)
    with pytest.raises(InvalidTransition):
        service.mark_no_show(b.id)


def test_transition_on_unknown_booking(service):
    with pytest.raises(BookingNotFound):
        service.check_in("missing")


# --- adjust ---


def test_adjust_onto_own_session_keeps_number(service, make_config):
    make_config()
    b1 = _book(service, 1)
    _book(service, 2)
    b3 = _book(service, 3)
    service.cancel(b1.id)  # leave a gap ahead of #3
    moved = service.adjust(b3.id, MONDAY)
    assert moved.appointment_number == 3
    assert moved.estimated_time == "10:00"


def test_adjust_moves_slot_in_place(service, make_config, make_fees):
    make_config()
    make_config(day_of_week=2, start_time="14:00", end_time="16:00")
    make_fees()
    b1 = _book(service, 1)
    b2 = _book(service, 2)
    tx, fee = b2.transaction_id, b2.total_fee_cents
    wednesday = MONDAY + timedelta(days=2)

    moved = service.adjust(b2.id, wednesday)
    assert moved.id == b2.id
    assert moved.booking_date == wednesday
    assert moved.appointment_number == 1
    assert moved.estimated_time == "14:00"
    assert moved.transaction_id == tx
    assert moved.total_fee_cents == fee
    assert moved.patient_name == "Patient 2"
    # old slot is free again
    assert service.next_available("doc1", "disp1", MONDAY).appointment_number == 2
    assert service.get(b1.id).appointment_number == 1


def test_adjust_can_rebind_doctor_and_dispensary(service, make_config):
    make_config()
    make_config(doctor_id="doc2", dispensary_id="disp2")
    b = _book(service)
    moved = service.adjust(b.id, MONDAY, new_doctor_id="doc2", new_dispensary_id="disp2")
    assert (moved.doctor_id, moved.dispensary_id) == ("doc2", "disp2")
    assert moved.appointment_number == 1


def test_adjust_into_full_session_leaves_booking_untouched(service, make_config, make_override):
    make_config()
    make_override(day=MONDAY + timedelta(days=7), max_patients=1)
    other = service.create("doc1", "disp1", MONDAY + timedelta(days=7), patient(9))
    b = _book(service, 1)
    with pytest.raises(SessionFull):
        service.adjust(b.id, MONDAY + timedelta(days=7))
    fresh = service.get(b.id)
    assert fresh.booking_date == MONDAY
    assert fresh.appointment_number == 1
    assert other.appointment_number == 1


def test_adjust_requires_scheduled(service, make_config):
    make_config()
    b = _book(service)
    service.check_in(b.id)
    with pytest.raises(InvalidTransition):
        service.adjust(b.id, MONDAY + timedelta(days=7))


def test_adjust_to_absent_date_fails(service, make_config, make_override):
    make_config()
    make_override(day=MONDAY + timedelta(days=7), is_modified_session=0)
    b = _book(service)
    with pytest.raises(DoctorAbsent):
        service.adjust(b.id, MONDAY + timedelta(days=7))


# --- restore after payment ---


def test_restore_keeps_original_number_when_free(service, make_config):
    make_config()
    _book(service, 1)
    b2 = _book(service, 2)
    service.cancel(b2.id, reason="payment failed")
    restored = service.restore_after_payment(b2.id, "PAY-1")
    assert restored.status == "scheduled"
    assert restored.appointment_number == 2
    assert restored.is_paid
    assert restored.cancelled_at is None


def test_restore_renumbers_when_original_was_taken(service, make_config):
    make_config()
    b1 = _book(service, 1)
    service.cancel(b1.id)
    taker = _book(service, 2)
    assert taker.appointment_number == 1
    restored = service.restore_after_payment(b1.id, "PAY-2")
    assert restored.appointment_number == 2
    assert restored.estimated_time == "09:30"
    events = service.list_events(b1.id)
    assert events[-1].action == "restored"
    assert "renumbered 1 -> 2" in events[-1].details


def test_restore_into_full_session_stays_cancelled(service, make_config):
    make_config()
    b1 = _book(service, 1)
    service.cancel(b1.id)
    for i in range(2, 6):
        _book(service, i)
    with pytest.raises(SessionFull):
        service.restore_after_payment(b1.id, "PAY-3")
    assert service.get(b1.id).status == "cancelled"


def test_restore_only_from_cancelled(service, make_config):
    make_config()
    b = _book(service)
    with pytest.raises(InvalidTransition):
        service.restore_after_payment(b.id, "PAY-4")


# --- audit trail and notifications ---


def test_events_record_every_change(service, make_config, caplog):
    make_config()
    with caplog.at_level(logging.INFO, logger="clinic.audit"):
        b = service.create("doc1", "disp1", MONDAY, patient(1), booked_user_id="staff-1", booked_by=BookedBy.DISPENSARY_STAFF)
        service.check_in(b.id, actor="nurse")
        service.complete(b.id, actor="doctor")
    events = service.list_events(b.id)
    assert [e.action for e in events] == ["created", "checked_in", "completed"]
    assert [(e.from_status, e.to_status) for e in events] == [
        (None, "scheduled"),
        ("scheduled", "checked_in"),
        ("checked_in", "completed"),
    ]
    assert [e.actor for e in events] == ["staff-1", "nurse", "doctor"]
    audit = [r.msg for r in caplog.records if r.name == "clinic.audit"]
    assert [a["action"] for a in audit] == ["created", "checked_in", "completed"]
    assert all(a["booking_id"] == b.id for a in audit)


def test_failed_transition_records_no_event(service, make_config):
    make_config()
    b = _book(service)
    with pytest.raises(InvalidTransition):
        service.complete(b.id)
    assert [e.action for e in service.list_events(b.id)] == ["created"]


def test_notifications_follow_commits(service, make_config, notifier):
    make_config()
    b = _book(service)
    service.check_in(b.id)
    b2 = _book(service, 2)
    service.cancel(b2.id, reason="travel")
    assert notifier.templates() == ["booking_confirmed", "booking_checked_in", "queue_update", "booking_confirmed", "booking_cancelled"]
    queue_msg = notifier.sent[2]
    assert queue_msg["recipient"] == "queue_disp1_doc1"
    assert queue_msg["data"]["ongoing_number"] == 1
    assert notifier.sent[0]["recipient"] == b.patient_phone
    assert notifier.sent[-1]["data"]["reason"] == "travel"


def test_failing_notifier_does_not_undo_booking(db, make_config, clock):
    make_config()
    svc = BookingService(db, clock=clock, notifier=RecordingNotifier(fail=True), locks=SessionLocks())
    b = _book(svc)
    assert svc.get(b.id).status == "scheduled"
    svc.check_in(b.id)
    assert svc.get(b.id).status == "checked_in"


# --- queue status ---


def test_check_in_updates_queue_status(service, make_config):
    make_config()
    _book(service, 1)
    b2 = _book(service, 2)
    assert service.get_queue_status("doc1", "disp1", MONDAY).ongoing_number == 0
    service.check_in(b2.id)
    q = service.get_queue_status("doc1", "disp1", MONDAY)
    assert q.ongoing_number == 2
    assert q.last_updated is not None


def test_set_queue_status_manually(service, notifier):
    q = service.set_queue_status("doc1", "disp1", MONDAY, 5)
    assert q.ongoing_number == 5
    q = service.set_queue_status("doc1", "disp1", MONDAY, 6)
    assert q.ongoing_number == 6
    assert notifier.templates() == ["queue_update", "queue_update"]
    with pytest.raises(ValueError):
        service.set_queue_status("doc1", "disp1", MONDAY, -1)


# --- read operations ---


def test_list_available_slots_and_next(service, make_config):
    make_config(max_patients=6)  # more capacity than fits in two hours
    b1 = _book(service, 1)
    _book(service, 2)
    service.cancel(b1.id)
    es, slots = service.list_available_slots("doc1", "disp1", MONDAY)
    assert es.max_patients == 6
    assert [x.appointment_number for x in slots] == [1, 3, 4]
    assert service.next_available("doc1", "disp1", MONDAY).appointment_number == 1
    # listing reserves nothing
    assert len(service.list_session_bookings("doc1", "disp1", MONDAY)) == 2


def test_list_session_bookings_includes_cancelled(service, make_config):
    make_config()
    b1 = _book(service, 1)
    service.cancel(b1.id)
    _book(service, 2)
    rows = service.list_session_bookings("doc1", "disp1", MONDAY)
    assert sorted((r.appointment_number, r.status) for r in rows) == [(1, "cancelled"), (1, "scheduled")]


def test_list_available_days_skips_absent_and_full_days(service, make_config, make_override):
    make_config()  # Monday
    make_config(day_of_week=2, max_patients=1)  # Wednesday
    wednesday = MONDAY + timedelta(days=2)
    service.create("doc1", "disp1", wednesday, patient(1))  # Wednesday now full
    make_override(day=MONDAY + timedelta(days=7), is_modified_session=0)

    days = service.list_available_days("doc1", "disp1", MONDAY, count=3)
    assert [d.day for d in days] == [MONDAY, date(2024, 6, 19), date(2024, 6, 24)]
    first = days[0]
    assert first.weekday == "Monday"
    assert (first.max_patients, first.booked, first.remaining, first.next_appointment_number) == (4, 0, 4, 1)
    assert days[1].weekday == "Wednesday"


def test_list_available_days_respects_horizon(service, make_config, monkeypatch):
    from apps.clinic.app import config  # type: ignore[import]

    make_config(day_of_week=6)  # Sunday
    monkeypatch.setattr(config, "AVAILABLE_DAYS_HORIZON", 3)
    assert service.list_available_days("doc1", "disp1", MONDAY, count=5) == []


def test_partial_override_with_empty_window_refuses_reads_and_create(service, make_config, make_override):
    make_config()  # 09:00-11:00
    make_override(start_time="12:00")
    with pytest.raises(NoScheduleConfigured):
        service.list_available_slots("doc1", "disp1", MONDAY)
    with pytest.raises(NoScheduleConfigured):
        _book(service, 1)
    assert service.list_session_bookings("doc1", "disp1", MONDAY) == []


# --- patient history and check-in search ---


def test_list_patient_bookings_newest_first(service, make_config):
    make_config()
    next_monday = MONDAY + timedelta(days=7)
    mine = PatientInfo(name="Nimal Perera", phone="+94771234567", patient_id="pat-1")
    older = service.create("doc1", "disp1", MONDAY, mine)
    newer = service.create("doc1", "disp1", next_monday, mine)
    service.cancel(older.id)
    _book(service, 2)  # someone else

    rows = service.list_patient_bookings("pat-1")
    assert [r.id for r in rows] == [newer.id, older.id]
    assert rows[1].status == BookingStatus.CANCELLED.value
    assert service.list_patient_bookings("temp-+94770000002")[0].patient_name == "Patient 2"
    assert service.list_patient_bookings("nobody") == []


def test_search_bookings_matches_any_term(service, make_config):
    make_config()
    b1 = service.create("doc1", "disp1", MONDAY, PatientInfo(name="Nimal Perera", phone="+94771111111"))
    b2 = service.create("doc1", "disp1", MONDAY, PatientInfo(name="Kamala Silva", phone="+94772222222"))

    assert [b.id for b in service.search_bookings(patient_name="nimal")] == [b1.id]
    assert [b.id for b in service.search_bookings(patient_phone="2222")] == [b2.id]
    assert [b.id for b in service.search_bookings(appointment_number=2)] == [b2.id]
    assert [b.id for b in service.search_bookings(reference=b1.transaction_id.lower())] == [b1.id]
    # terms are OR-ed
    both = service.search_bookings(patient_name="silva", appointment_number=1)
    assert [b.appointment_number for b in both] == [1, 2]


def test_search_bookings_filters_narrow_results(service, make_config):
    make_config()
    make_config(doctor_id="doc2")
    b1 = _book(service, 1)
    service.create("doc2", "disp1", MONDAY, patient(1))
    service.create("doc1", "disp1", MONDAY + timedelta(days=7), patient(1))

    rows = service.search_bookings(patient_phone="+94770000001", doctor_id="doc1", day=MONDAY)
    assert [b.id for b in rows] == [b1.id]
    assert len(service.search_bookings(day=MONDAY)) == 2
    assert len(service.search_bookings(doctor_id="doc1")) == 2
    assert service.search_bookings(patient_name="x", dispensary_id="disp9") == []


def test_search_bookings_requires_a_parameter(service):
    with pytest.raises(ValueError):
        service.search_bookings()
    with pytest.raises(ValueError):
        service.search_bookings(dispensary_id="disp1")
