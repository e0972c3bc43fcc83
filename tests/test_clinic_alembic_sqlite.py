import os
import sqlite3
import subprocess
import sys
import tempfile


def test_clinic_alembic_upgrade_sqlite_creates_schema_and_partial_index():
    """
    Migrations must run on SQLite and must not use Postgres-only defaults
    like NOW(); the live-slot unique index must keep its status filter.
    """
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "clinic.db")
        env = os.environ.copy()
        env.update({"ENV": "test", "CLINIC_DB_URL": f"sqlite+pysqlite:///{db_path}"})

        # Subprocess so Alembic's fileConfig does not reset pytest's log handlers.
        repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        proc = subprocess.run(
            [sys.executable, "-m", "alembic", "-c", "apps/clinic/alembic.ini", "upgrade", "head"],
            cwd=repo_root,
            env=env,
            text=True,
            capture_output=True,
        )
        assert proc.returncode == 0, f"alembic failed: {proc.stderr.strip()}"

        con = sqlite3.connect(db_path)
        try:
            for table in (
                "schedule_configs",
                "schedule_overrides",
                "doctor_dispensary_fees",
                "bookings",
                "booking_events",
                "queue_status",
                "idempotency",
            ):
                row = con.execute("SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)).fetchone()
                assert row and row[0], table
                assert "NOW()" not in row[0].upper()

            ddl = con.execute(
                "SELECT sql FROM sqlite_master WHERE type='index' AND name='uq_bookings_active_slot'"
            ).fetchone()
            assert ddl and "UNIQUE" in ddl[0].upper()
            assert "WHERE" in ddl[0].upper() and "cancelled" in ddl[0]
        finally:
            con.close()
