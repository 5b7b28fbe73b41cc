from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from django.db.models import Count, Sum

from payout.models import PayoutBatch
from vendor.models import Cabin, Vendor

from . import batcher, ledger
from .commission import _money, _to_decimal, compute_manual_fee
from .errors import InsufficientBalanceError, PayoutValidationError, VendorNotEligibleError

logger = logging.getLogger(__name__)


def _validate_requested_amount(amount) -> Decimal:
    try:
        value = _money(_to_decimal(amount))
    except ArithmeticError:
        raise PayoutValidationError("Invalid payout amount")
    if value <= Decimal("0.00"):
        raise PayoutValidationError("Invalid payout amount")
    return value


def _check_vendor(vendor: Vendor, cabin: Optional[Cabin]) -> None:
    if not vendor.is_settlement_eligible:
        raise VendorNotEligibleError("Vendor account must be approved and active to request payouts")
    if cabin is not None and cabin.vendor_id != vendor.pk:
        raise VendorNotEligibleError("Cabin does not belong to this vendor")


def _fee_breakdown(vendor: Vendor, requested: Decimal) -> Dict[str, Any]:
    fee_settings = vendor.auto_payout_settings.manual_fee
    fee = compute_manual_fee(fee_settings, requested)
    return {
        "original_amount": requested,
        "manual_fee": fee,
        "final_net_amount": _money(requested - fee),
        "charge_description": fee_settings.description if fee_settings.enabled else "",
        "fee_type": fee_settings.kind,
        "fee_value": fee_settings.value,
    }


# -----------------------------
# Vendor-initiated payouts
# -----------------------------
def request_payout(
    vendor: Vendor,
    requested_amount,
    event_ids: Optional[Iterable] = None,
    cabin: Optional[Cabin] = None,
) -> Dict[str, Any]:
    """
    Create a manual payout batch for part or all of the vendor's available
    net revenue. The manual fee is charged against the requested amount.
    """
    requested = _validate_requested_amount(requested_amount)
    _check_vendor(vendor, cabin)

    explicit_ids = list(event_ids) if event_ids is not None else None
    available = ledger.available_net(vendor, cabin=cabin, event_ids=explicit_ids)
    if requested > available:
        raise InsufficientBalanceError(requested=requested, available=available)

    breakdown = _fee_breakdown(vendor, requested)
    if breakdown["final_net_amount"] < Decimal("0.00"):
        raise PayoutValidationError(
            f"Manual fee {breakdown['manual_fee']} exceeds the requested amount {requested}"
        )

    result = batcher.create_batch(
        vendor,
        payout_type=PayoutBatch.PayoutType.MANUAL,
        cabin=cabin,
        requested_amount=requested,
        event_ids=explicit_ids,
    )
    if not result.created:
        # candidates were settled elsewhere between the balance check and the lock
        raise InsufficientBalanceError(requested=requested, available=Decimal("0.00"))

    logger.info(
        "Vendor %s requested manual payout %s: requested=%s fee=%s net=%s",
        vendor.vendor_code,
        result.batch.reference,
        requested,
        result.batch.manual_fee,
        result.batch.net_amount,
    )
    breakdown.update(
        manual_fee=result.batch.manual_fee,
        final_net_amount=result.batch.net_amount,
        charge_description=result.batch.charge_description,
    )
    return {"batch": result.batch, "breakdown": breakdown}


def preview(vendor: Vendor, requested_amount=None, cabin: Optional[Cabin] = None) -> Dict[str, Any]:
    """Fee estimate for a manual request; nothing is written."""
    if cabin is not None and cabin.vendor_id != vendor.pk:
        raise VendorNotEligibleError("Cabin does not belong to this vendor")

    available = ledger.available_net(vendor, cabin=cabin)
    requested = available if requested_amount in (None, "") else _validate_requested_amount(requested_amount)
    breakdown = _fee_breakdown(vendor, requested)
    settings = vendor.auto_payout_settings
    return {
        "available_net": available,
        "can_request": vendor.is_settlement_eligible and Decimal("0.00") < requested <= available
        and breakdown["final_net_amount"] >= Decimal("0.00"),
        "minimum_payout_amount": settings.minimum_payout_amount,
        "next_auto_payout": settings.next_run,
        **breakdown,
    }


def balance_summary(vendor: Vendor) -> Dict[str, Any]:
    eligible = ledger.eligible_queryset(vendor)
    totals = eligible.aggregate(count=Count("id"), gross=Sum("gross_amount"))

    in_flight = PayoutBatch.objects.filter(
        vendor=vendor,
        status__in=[PayoutBatch.Status.PENDING, PayoutBatch.Status.PROCESSING],
    ).aggregate(count=Count("id"), total=Sum("net_amount"))
    completed = PayoutBatch.objects.filter(
        vendor=vendor,
        status=PayoutBatch.Status.COMPLETED,
    ).aggregate(count=Count("id"), total=Sum("net_amount"))

    settings = vendor.auto_payout_settings
    return {
        "available_net": ledger.available_net(vendor),
        "pending_event_count": totals["count"] or 0,
        "pending_gross": _money(_to_decimal(totals["gross"])),
        "requested_batch_count": in_flight["count"] or 0,
        "requested_total": _money(_to_decimal(in_flight["total"])),
        "paid_out_total": _money(_to_decimal(completed["total"])),
        "pending_payout_balance": _money(_to_decimal(vendor.pending_payout_balance)),
        "auto_payout_enabled": settings.enabled,
        "next_auto_payout": settings.next_run,
        "minimum_payout_amount": settings.minimum_payout_amount,
    }
