from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from payout.conf import get_payout_config
from payout.models import PayoutBatch, RevenueEvent
from vendor.models import Cabin, Vendor

from . import balance, ledger
from .commission import _money, _to_decimal, compute_manual_fee, event_commission, event_net
from .errors import (
    ClaimConflictError,
    InsufficientBalanceError,
    PayoutValidationError,
    SettlementConflictError,
    VendorNotEligibleError,
)

logger = logging.getLogger(__name__)

CREATED = "created"
SKIPPED = "skipped"

NO_ELIGIBLE_REVENUE = "no eligible revenue"
BELOW_MINIMUM = "below minimum"


@dataclass(frozen=True)
class BatchResult:
    status: str
    reason: str = ""
    batch: Optional[PayoutBatch] = None
    gross_amount: Decimal = Decimal("0.00")
    commission_amount: Decimal = Decimal("0.00")
    net_amount: Decimal = Decimal("0.00")
    event_ids: List = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.status == CREATED


# -----------------------------
# Per-vendor serialization
# -----------------------------
_registry_guard = threading.Lock()
# entries disappear once no caller holds the lock
_vendor_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()


def _process_lock(vendor_id) -> threading.RLock:
    key = str(vendor_id)
    with _registry_guard:
        lock = _vendor_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _vendor_locks[key] = lock
        return lock


@contextmanager
def vendor_settlement_lock(vendor: Vendor):
    """
    Serialize settlement work for one vendor.

    Holds an in-process lock for the vendor and a row lock on the vendor
    record for the duration of one transaction; yields the locked row.
    """
    with _process_lock(vendor.pk):
        with transaction.atomic():
            yield Vendor.objects.select_for_update().get(pk=vendor.pk)


# -----------------------------
# Batching
# -----------------------------
def create_batch(
    vendor: Vendor,
    payout_type: str = PayoutBatch.PayoutType.AUTO,
    cabin: Optional[Cabin] = None,
    now: Optional[datetime] = None,
    period_start: Optional[datetime] = None,
    requested_amount=None,
    event_ids: Optional[Iterable] = None,
) -> BatchResult:
    """
    Turn the vendor's eligible revenue into one committed payout batch, or a
    skipped result. A lost claim race re-resolves the candidates and retries
    up to PAYOUT_CLAIM_RETRIES times before raising SettlementConflictError.
    """
    if payout_type not in PayoutBatch.PayoutType.values:
        raise PayoutValidationError(f"Unknown payout type: {payout_type}")
    if cabin is not None and cabin.vendor_id != vendor.pk:
        raise VendorNotEligibleError("Cabin does not belong to this vendor")

    explicit_ids = list(event_ids) if event_ids is not None else None
    now = now or timezone.now()
    retries = get_payout_config().claim_retries

    last_error: Optional[ClaimConflictError] = None
    for attempt in range(retries + 1):
        try:
            return _create_batch_once(
                vendor,
                payout_type=payout_type,
                cabin=cabin,
                now=now,
                period_start=period_start,
                requested_amount=requested_amount,
                event_ids=explicit_ids,
            )
        except ClaimConflictError as exc:
            last_error = exc
            logger.warning(
                "Claim race lost for vendor %s (attempt %s/%s): %s",
                vendor.vendor_code,
                attempt + 1,
                retries + 1,
                exc,
            )

    raise SettlementConflictError(
        f"Could not claim revenue for vendor {vendor.vendor_code} after {retries + 1} attempts"
    ) from last_error


def _create_batch_once(
    vendor: Vendor,
    payout_type: str,
    cabin: Optional[Cabin],
    now: datetime,
    period_start: Optional[datetime],
    requested_amount,
    event_ids: Optional[List],
) -> BatchResult:
    is_manual = payout_type == PayoutBatch.PayoutType.MANUAL

    with vendor_settlement_lock(vendor) as locked:
        if not locked.is_settlement_eligible:
            raise VendorNotEligibleError("Vendor is not approved or not active")

        # upper bound only: older events skipped below minimum stay reachable
        candidates = ledger.find_eligible(locked, cabin=cabin, until=now, event_ids=event_ids)
        if not candidates:
            return BatchResult(status=SKIPPED, reason=NO_ELIGIBLE_REVENUE)

        commission_settings = locked.commission_settings
        gross = _money(sum((_to_decimal(e.gross_amount) for e in candidates), Decimal("0.00")))
        commission = _money(
            sum((event_commission(e, commission_settings) for e in candidates), Decimal("0.00"))
        )
        available = _money(sum((event_net(e, commission_settings) for e in candidates), Decimal("0.00")))
        candidate_ids = [e.id for e in candidates]

        manual_fee = Decimal("0.00")
        charge_description = ""
        requested = None
        if is_manual:
            requested = _money(_to_decimal(requested_amount))
            if requested <= Decimal("0.00"):
                raise PayoutValidationError("requested_amount must be greater than zero")
            if requested > available:
                raise InsufficientBalanceError(requested=requested, available=available)
            fee_settings = locked.auto_payout_settings.manual_fee
            manual_fee = compute_manual_fee(fee_settings, requested)
            charge_description = fee_settings.description if fee_settings.enabled else ""
            net = _money(requested - manual_fee)
            if net < Decimal("0.00"):
                raise PayoutValidationError(
                    f"Manual fee {manual_fee} exceeds the requested amount {requested}"
                )
        else:
            net = _money(gross - commission)
            minimum = locked.auto_payout_settings.minimum_payout_amount
            if net < minimum:
                logger.info(
                    "Skipping auto payout for vendor %s cabin %s: net %s below minimum %s",
                    locked.vendor_code,
                    cabin.id if cabin else None,
                    net,
                    minimum,
                )
                return BatchResult(
                    status=SKIPPED,
                    reason=BELOW_MINIMUM,
                    gross_amount=gross,
                    commission_amount=commission,
                    net_amount=net,
                    event_ids=candidate_ids,
                )

        metadata = {
            "event_count": len(candidates),
            "available_net": str(available),
        }
        if is_manual:
            metadata["unrequested_net"] = str(_money(available - requested))

        batch = PayoutBatch.objects.create(
            vendor=locked,
            cabin=cabin,
            gross_amount=gross,
            commission_amount=commission,
            net_amount=net,
            requested_amount=requested,
            manual_fee=manual_fee,
            charge_description=charge_description,
            payout_type=payout_type,
            period_start=period_start or min(e.occurred_at for e in candidates),
            period_end=now,
            status=PayoutBatch.Status.PENDING,
            bank_details=locked.bank_details_snapshot(),
            metadata=metadata,
        )

        # raises ClaimConflictError and rolls the batch back with this block
        ledger.claim(candidate_ids, batch)
        batch.revenue_events.set(candidate_ids)

        # commission is fixed at claim time
        computed = [e for e in candidates if e.commission_amount is None]
        for event in computed:
            event.commission_amount = event_commission(event, commission_settings)
        if computed:
            RevenueEvent.objects.bulk_update(computed, ["commission_amount"])

        if is_manual:
            balance.reserve(locked, net, batch=batch, description=f"Manual payout {batch.reference} requested")
            vendor.pending_payout_balance = locked.pending_payout_balance

    logger.info(
        "Created %s payout batch %s for vendor %s: gross=%s commission=%s net=%s events=%s",
        payout_type,
        batch.reference,
        vendor.vendor_code,
        gross,
        commission,
        net,
        len(candidate_ids),
    )
    return BatchResult(
        status=CREATED,
        batch=batch,
        gross_amount=gross,
        commission_amount=commission,
        net_amount=net,
        event_ids=candidate_ids,
    )
