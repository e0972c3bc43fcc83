from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import InvalidFeeInput
from .models import BookedBy, FeeConfig

_log = logging.getLogger("clinic.fees")


@dataclass(frozen=True)
class FeeInputs:
    doctor_fee_cents: int = 0
    dispensary_fee_cents: int = 0
    channel_partner_fee_cents: int = 0
    booking_commission_cents: int = 0


@dataclass(frozen=True)
class FeeBreakdown:
    doctor_fee_cents: int
    dispensary_fee_cents: int
    channel_partner_fee_cents: int
    booking_commission_cents: int
    total_fee_cents: int


ZERO_FEES = FeeInputs()


def calculate_fees(inputs: FeeInputs, booked_by: BookedBy) -> FeeBreakdown:
    """
    Final fee split for a new booking.

    A channel partner's fee is paid out of the platform commission
    (clamped at zero); doctor and dispensary fees are never touched. The
    total is always the sum of the four components.
    """
    for field in ("doctor_fee_cents", "dispensary_fee_cents", "channel_partner_fee_cents", "booking_commission_cents"):
        v = getattr(inputs, field)
        if v is None or int(v) < 0:
            raise InvalidFeeInput(f"{field} must be a non-negative amount", field=field, value=v)
    doctor = int(inputs.doctor_fee_cents)
    dispensary = int(inputs.dispensary_fee_cents)
    partner_cfg = int(inputs.channel_partner_fee_cents)
    commission = int(inputs.booking_commission_cents)
    if BookedBy(booked_by) == BookedBy.CHANNEL_PARTNER and partner_cfg > 0:
        partner = partner_cfg
        commission = max(0, commission - partner_cfg)
    else:
        partner = 0
    return FeeBreakdown(
        doctor_fee_cents=doctor,
        dispensary_fee_cents=dispensary,
        channel_partner_fee_cents=partner,
        booking_commission_cents=commission,
        total_fee_cents=doctor + dispensary + partner + commission,
    )


def get_fee_config(s: Session, doctor_id: str, dispensary_id: str) -> Optional[FeeConfig]:
    stmt = select(FeeConfig).where(FeeConfig.doctor_id == doctor_id, FeeConfig.dispensary_id == dispensary_id)
    return s.execute(stmt).scalars().first()


def lookup_fee_inputs(s: Session, doctor_id: str, dispensary_id: str) -> Optional[FeeInputs]:
    """Configured fees for the pair; None means "not configured", not zero."""
    row = get_fee_config(s, doctor_id, dispensary_id)
    if row is None or not row.is_active:
        return None
    return FeeInputs(
        doctor_fee_cents=int(row.doctor_fee_cents or 0),
        dispensary_fee_cents=int(row.dispensary_fee_cents or 0),
        channel_partner_fee_cents=int(row.channel_partner_fee_cents or 0),
        booking_commission_cents=int(row.booking_commission_cents or 0),
    )


def fee_inputs_or_zero(s: Session, doctor_id: str, dispensary_id: str) -> FeeInputs:
    inputs = lookup_fee_inputs(s, doctor_id, dispensary_id)
    if inputs is None:
        _log.warning(
            "no fee configuration for doctor/dispensary, booking with zero fees",
            extra={"doctor_id": doctor_id, "dispensary_id": dispensary_id},
        )
        return ZERO_FEES
    return inputs
