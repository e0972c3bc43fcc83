from __future__ import annotations

import os
import tempfile
from datetime import date, datetime, timezone
from typing import Any, Dict, List

# Point the module-level engine at a throwaway database before any clinic
# module is imported.
_TMP_DIR = tempfile.mkdtemp(prefix="clinic-tests-")
os.environ["ENV"] = "test"
os.environ["CLINIC_DB_URL"] = f"sqlite+pysqlite:///{os.path.join(_TMP_DIR, 'clinic.db')}"
os.environ["NOTIFY_BACKEND"] = "log"
os.environ["CLINIC_DEMO_SEED"] = "false"
os.environ["CLINIC_TIMEZONE"] = "UTC"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from apps.clinic.app.bookings import BookingService, PatientInfo  # type: ignore[import]
from apps.clinic.app.locks import SessionLocks  # type: ignore[import]
from apps.clinic.app.models import Base, FeeConfig, ScheduleConfig, ScheduleOverride  # type: ignore[import]

MONDAY = date(2024, 6, 10)


class RecordingNotifier:
    """Stands in for NotificationDispatcher; keeps every send call."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    def send(self, recipient: str, template: str, data: Dict[str, Any]) -> bool:
        if self.fail:
            raise RuntimeError("notification service down")
        self.sent.append({"recipient": recipient, "template": template, "data": data})
        return True

    def templates(self) -> List[str]:
        return [m["template"] for m in self.sent]


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clinic_engine(tmp_path):
    """
    Isolated file-backed SQLite engine (file, not :memory:, so worker
    threads in the concurrency tests share one database).
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'clinic.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(clinic_engine):
    with Session(clinic_engine) as s:
        yield s


@pytest.fixture()
def clock():
    # well ahead of every session used in the tests
    return FixedClock(datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def service(db, clock, notifier):
    return BookingService(db, clock=clock, notifier=notifier, locks=SessionLocks(), max_retries=3, enforce_cutover=True)


@pytest.fixture()
def make_config(db):
    def _make(**kw) -> ScheduleConfig:
        values = dict(
            doctor_id="doc1",
            dispensary_id="disp1",
            day_of_week=0,
            start_time="09:00",
            end_time="11:00",
            max_patients=4,
            minutes_per_patient=30,
            booking_cutover_minutes=60,
        )
        values.update(kw)
        row = ScheduleConfig(**values)
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture()
def make_override(db):
    def _make(**kw) -> ScheduleOverride:
        values = dict(doctor_id="doc1", dispensary_id="disp1", day=MONDAY, is_modified_session=1)
        values.update(kw)
        row = ScheduleOverride(**values)
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture()
def make_fees(db):
    def _make(**kw) -> FeeConfig:
        values = dict(
            doctor_id="doc1",
            dispensary_id="disp1",
            doctor_fee_cents=100_000,
            dispensary_fee_cents=20_000,
            channel_partner_fee_cents=200,
            booking_commission_cents=150,
            is_active=1,
        )
        values.update(kw)
        row = FeeConfig(**values)
        db.add(row)
        db.commit()
        return row

    return _make


def patient(n: int = 1) -> PatientInfo:
    return PatientInfo(name=f"Patient {n}", phone=f"+94770000{n:03d}")


@pytest.fixture()
def new_patient():
    return patient
