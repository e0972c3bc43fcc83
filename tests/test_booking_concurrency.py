from __future__ import annotations

import threading
from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.clinic.app import stores  # type: ignore[import]
from apps.clinic.app.bookings import BookingService  # type: ignore[import]
from apps.clinic.app.errors import ConcurrentAllocationConflict, SessionFull  # type: ignore[import]
from apps.clinic.app.locks import SessionLocks  # type: ignore[import]
from apps.clinic.app.models import Booking  # type: ignore[import]

from conftest import RecordingNotifier, patient  # type: ignore[import]

MONDAY = date(2024, 6, 10)


def _run_parallel_bookings(engine, clock, locks, n_threads):
    barrier = threading.Barrier(n_threads)
    results = []
    errors = []
    guard = threading.Lock()

    def worker(i: int):
        with Session(engine) as s:
            svc = BookingService(s, clock=clock, notifier=RecordingNotifier(), locks=locks, max_retries=3)
            barrier.wait()
            try:
                b = svc.create("doc1", "disp1", MONDAY, patient(i))
                with guard:
                    results.append(b.appointment_number)
            except Exception as e:  # collected and asserted on below
                with guard:
                    errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


def test_parallel_creates_get_distinct_numbers(clinic_engine, make_config, clock):
    make_config(max_patients=20)
    results, errors = _run_parallel_bookings(clinic_engine, clock, SessionLocks(), 10)
    assert errors == []
    assert sorted(results) == list(range(1, 11))


def test_parallel_creates_never_exceed_capacity(clinic_engine, make_config, clock):
    make_config(max_patients=5)
    results, errors = _run_parallel_bookings(clinic_engine, clock, SessionLocks(), 8)
    assert sorted(results) == [1, 2, 3, 4, 5]
    assert len(errors) == 3
    assert all(isinstance(e, SessionFull) for e in errors)
    with Session(clinic_engine) as s:
        assert len(stores.active_bookings(s, "doc1", "disp1", MONDAY)) == 5


def test_unique_index_rejects_duplicate_live_number(db):
    def _row(i, status="scheduled"):
        return Booking(
            id=f"b{i}",
            doctor_id="doc1",
            dispensary_id="disp1",
            booking_date=MONDAY,
            appointment_number=1,
            estimated_time="09:00",
            time_slot="09:00-09:30",
            status=status,
            patient_name="P",
            patient_phone="+1",
            transaction_id=f"TRX-1-00{i}",
        )

    db.add(_row(1, status="cancelled"))
    db.add(_row(2))
    db.commit()
    db.add(_row(3))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_stale_occupied_set_is_retried(service, make_config, monkeypatch):
    make_config()
    first = service.create("doc1", "disp1", MONDAY, patient(1))
    assert first.appointment_number == 1

    real = stores.occupied_numbers
    calls = {"n": 0}

    def stale_once(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return set()  # concurrent writer not visible yet
        return real(*args, **kwargs)

    monkeypatch.setattr(stores, "occupied_numbers", stale_once)
    second = service.create("doc1", "disp1", MONDAY, patient(2))
    assert second.appointment_number == 2
    assert calls["n"] == 2


def test_retries_are_bounded(db, make_config, clock, monkeypatch):
    make_config()
    svc = BookingService(
        db,
        clock=clock,
        notifier=RecordingNotifier(),
        locks=SessionLocks(),
        max_retries=3,
    )
    svc.create("doc1", "disp1", MONDAY, patient(1))
    calls = {"n": 0}

    def always_stale(*args, **kwargs):
        calls["n"] += 1
        return set()

    monkeypatch.setattr(stores, "occupied_numbers", always_stale)
    with pytest.raises(ConcurrentAllocationConflict) as ei:
        svc.create("doc1", "disp1", MONDAY, patient(2))
    err = ei.value
    assert calls["n"] == 3
    assert err.status_code == 409
    assert err.headers == {"Retry-After": "1"}
    assert err.detail["attempted_number"] == 1
    assert err.detail["attempts"] == 3
    # nothing half-written
    monkeypatch.undo()
    assert len(stores.active_bookings(db, "doc1", "disp1", MONDAY)) == 1


def test_session_locks_are_released_after_use():
    locks = SessionLocks()
    key = ("doc1", "disp1", MONDAY)
    with locks.hold(key):
        assert len(locks) == 1
    assert len(locks) == 0


def test_session_locks_serialise_same_key_only():
    locks = SessionLocks()
    key_a = ("doc1", "disp1", MONDAY)
    key_b = ("doc2", "disp1", MONDAY)
    entered_b = threading.Event()

    def other_key():
        with locks.hold(key_b):
            entered_b.set()

    with locks.hold(key_a):
        t = threading.Thread(target=other_key)
        t.start()
        # a different session key is not blocked by key_a
        assert entered_b.wait(timeout=5)
        t.join(timeout=5)
    assert len(locks) == 0
