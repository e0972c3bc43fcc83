from alembic import op
import sqlalchemy as sa

revision = '0001_initial_clinic'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'schedule_configs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('dispensary_id', sa.String(length=64), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('max_patients', sa.Integer(), nullable=False),
        sa.Column('minutes_per_patient', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('booking_cutover_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.UniqueConstraint('doctor_id', 'dispensary_id', 'day_of_week', name='uq_schedule_configs_day'),
    )
    op.create_index('ix_schedule_configs_doctor_id', 'schedule_configs', ['doctor_id'])
    op.create_index('ix_schedule_configs_dispensary_id', 'schedule_configs', ['dispensary_id'])

    op.create_table(
        'schedule_overrides',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('dispensary_id', sa.String(length=64), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('is_modified_session', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_time', sa.String(length=5), nullable=True),
        sa.Column('end_time', sa.String(length=5), nullable=True),
        sa.Column('max_patients', sa.Integer(), nullable=True),
        sa.Column('minutes_per_patient', sa.Integer(), nullable=True),
        sa.Column('reason', sa.String(length=200), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.UniqueConstraint('doctor_id', 'dispensary_id', 'day', name='uq_schedule_overrides_date'),
    )
    op.create_index('ix_schedule_overrides_doctor_id', 'schedule_overrides', ['doctor_id'])
    op.create_index('ix_schedule_overrides_dispensary_id', 'schedule_overrides', ['dispensary_id'])

    op.create_table(
        'doctor_dispensary_fees',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('dispensary_id', sa.String(length=64), nullable=False),
        sa.Column('doctor_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('dispensary_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('channel_partner_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('booking_commission_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.UniqueConstraint('doctor_id', 'dispensary_id', name='uq_doctor_dispensary_fees_pair'),
    )

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('dispensary_id', sa.String(length=64), nullable=False),
        sa.Column('booking_date', sa.Date(), nullable=False),
        sa.Column('appointment_number', sa.Integer(), nullable=False),
        sa.Column('estimated_time', sa.String(length=5), nullable=False),
        sa.Column('time_slot', sa.String(length=11), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='scheduled'),
        sa.Column('patient_id', sa.String(length=64), nullable=True),
        sa.Column('patient_name', sa.String(length=120), nullable=False),
        sa.Column('patient_phone', sa.String(length=32), nullable=False),
        sa.Column('patient_email', sa.String(length=120), nullable=True),
        sa.Column('symptoms', sa.String(length=1024), nullable=True),
        sa.Column('notes', sa.String(length=2048), nullable=True),
        sa.Column('is_paid', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_patient_visited', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('doctor_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('dispensary_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('channel_partner_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('booking_commission_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('booked_by', sa.String(length=24), nullable=False, server_default='ONLINE'),
        sa.Column('booked_user_id', sa.String(length=64), nullable=True),
        sa.Column('transaction_id', sa.String(length=32), nullable=False),
        sa.Column('checked_in_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.UniqueConstraint('transaction_id', name='uq_bookings_transaction_id'),
    )
    # one live booking per appointment number and session; cancelled rows keep their number
    op.create_index(
        'uq_bookings_active_slot',
        'bookings',
        ['doctor_id', 'dispensary_id', 'booking_date', 'appointment_number'],
        unique=True,
        sqlite_where=sa.text("status != 'cancelled'"),
        postgresql_where=sa.text("status != 'cancelled'"),
    )
    op.create_index('ix_bookings_session', 'bookings', ['doctor_id', 'dispensary_id', 'booking_date'])

    op.create_table(
        'booking_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('booking_id', sa.String(length=36), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('from_status', sa.String(length=16), nullable=True),
        sa.Column('to_status', sa.String(length=16), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('details', sa.String(length=1024), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )
    op.create_index('ix_booking_events_booking_id', 'booking_events', ['booking_id'])

    op.create_table(
        'queue_status',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('doctor_id', sa.String(length=64), nullable=False),
        sa.Column('dispensary_id', sa.String(length=64), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('current_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('doctor_id', 'dispensary_id', 'day', name='uq_queue_status_session'),
    )

    op.create_table(
        'idempotency',
        sa.Column('key', sa.String(length=120), primary_key=True),
        sa.Column('ref_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
    )


def downgrade() -> None:
    op.drop_table('idempotency')
    op.drop_table('queue_status')
    op.drop_index('ix_booking_events_booking_id', table_name='booking_events')
    op.drop_table('booking_events')
    op.drop_index('ix_bookings_session', table_name='bookings')
    op.drop_index('uq_bookings_active_slot', table_name='bookings')
    op.drop_table('bookings')
    op.drop_table('doctor_dispensary_fees')
    op.drop_index('ix_schedule_overrides_dispensary_id', table_name='schedule_overrides')
    op.drop_index('ix_schedule_overrides_doctor_id', table_name='schedule_overrides')
    op.drop_table('schedule_overrides')
    op.drop_index('ix_schedule_configs_dispensary_id', table_name='schedule_configs')
    op.drop_index('ix_schedule_configs_doctor_id', table_name='schedule_configs')
    op.drop_table('schedule_configs')
