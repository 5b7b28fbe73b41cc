from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from payout.models import PayoutBatch, RevenueEvent
from vendor.models import Cabin, Vendor

from .commission import _money, _to_decimal, event_net
from .errors import ClaimConflictError, PayoutValidationError

logger = logging.getLogger(__name__)


# -----------------------------
# Ingestion
# -----------------------------
def record(
    cabin: Cabin,
    gross_amount,
    booking_reference: str,
    commission_amount=None,
    occurred_at: Optional[datetime] = None,
    payment_status: str = RevenueEvent.PaymentStatus.COMPLETED,
) -> RevenueEvent:
    """
    Store the revenue event of a completed booking payment.

    Idempotent on ``booking_reference``: replaying the same booking returns
    the existing event untouched.
    """
    reference = str(booking_reference or "").strip()
    if not reference:
        raise PayoutValidationError("booking_reference is required")

    gross = _money(_to_decimal(gross_amount))
    if gross <= Decimal("0.00"):
        raise PayoutValidationError("gross_amount must be greater than zero")

    commission = None
    if commission_amount is not None:
        commission = _money(_to_decimal(commission_amount))
        if commission < Decimal("0.00") or commission > gross:
            raise PayoutValidationError("commission_amount must be between 0 and gross_amount")

    existing = RevenueEvent.objects.filter(booking_reference=reference).first()
    if existing:
        return existing

    try:
        with transaction.atomic():
            event = RevenueEvent.objects.create(
                booking_reference=reference,
                vendor_id=cabin.vendor_id,
                cabin=cabin,
                gross_amount=gross,
                commission_amount=commission,
                payment_status=payment_status,
                occurred_at=occurred_at or timezone.now(),
            )
    except IntegrityError:
        # concurrent ingestion of the same booking
        return RevenueEvent.objects.get(booking_reference=reference)

    logger.info("Recorded revenue event %s for cabin %s (%s)", reference, cabin.id, gross)
    return event


# -----------------------------
# Eligibility
# -----------------------------
def eligible_queryset(
    vendor: Vendor,
    cabin: Optional[Cabin] = None,
    until: Optional[datetime] = None,
    since: Optional[datetime] = None,
    event_ids: Optional[Iterable] = None,
):
    qs = RevenueEvent.objects.filter(
        vendor=vendor,
        payment_status=RevenueEvent.PaymentStatus.COMPLETED,
        payout_status=RevenueEvent.PayoutStatus.PENDING,
    )
    if cabin is not None:
        qs = qs.filter(cabin=cabin)
    if until is not None:
        qs = qs.filter(occurred_at__lte=until)
    if since is not None:
        qs = qs.filter(occurred_at__gte=since)
    if event_ids is not None:
        qs = qs.filter(id__in=list(event_ids))
    return qs.order_by("occurred_at", "created_at")


def find_eligible(
    vendor: Vendor,
    cabin: Optional[Cabin] = None,
    until: Optional[datetime] = None,
    since: Optional[datetime] = None,
    event_ids: Optional[Iterable] = None,
) -> List[RevenueEvent]:
    return list(eligible_queryset(vendor, cabin=cabin, until=until, since=since, event_ids=event_ids))


def available_net(
    vendor: Vendor,
    cabin: Optional[Cabin] = None,
    event_ids: Optional[Iterable] = None,
) -> Decimal:
    settings = vendor.commission_settings
    events = find_eligible(vendor, cabin=cabin, event_ids=event_ids)
    return _money(sum((event_net(e, settings) for e in events), Decimal("0.00")))


# -----------------------------
# Claim / release
# -----------------------------
def claim(event_ids: Iterable, batch: PayoutBatch) -> int:
    """
    Compare-and-swap: mark every id as included in ``batch`` only if all of
    them are still pending. Must run inside the caller's atomic block so a
    conflict rolls the batch back with it.
    """
    ids = list(dict.fromkeys(event_ids))
    if not ids:
        return 0

    claimed = RevenueEvent.objects.filter(
        id__in=ids,
        payment_status=RevenueEvent.PaymentStatus.COMPLETED,
        payout_status=RevenueEvent.PayoutStatus.PENDING,
        payout_batch__isnull=True,
    ).update(
        payout_status=RevenueEvent.PayoutStatus.INCLUDED,
        payout_batch=batch,
        updated_at=timezone.now(),
    )
    if claimed != len(ids):
        logger.warning(
            "Claim conflict for batch %s: expected %s events, claimed %s",
            batch.reference,
            len(ids),
            claimed,
        )
        raise ClaimConflictError(expected=len(ids), claimed=claimed)
    return claimed


def release(target) -> int:
    """Return the events claimed by a batch (or an explicit id list) to pending."""
    if isinstance(target, PayoutBatch):
        qs = RevenueEvent.objects.filter(payout_batch=target)
    else:
        qs = RevenueEvent.objects.filter(id__in=list(target))

    released = qs.filter(payout_status=RevenueEvent.PayoutStatus.INCLUDED).update(
        payout_status=RevenueEvent.PayoutStatus.PENDING,
        payout_batch=None,
        updated_at=timezone.now(),
    )
    if released:
        logger.info("Released %s revenue events back to pending", released)
    return released
