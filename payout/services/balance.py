from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from django.db import transaction

from payout.models import BalanceEntry, PayoutBatch
from vendor.models import Vendor

from .commission import _money, _to_decimal
from .errors import PayoutValidationError

logger = logging.getLogger(__name__)


def _locked_vendor(vendor: Vendor) -> Vendor:
    return Vendor.objects.select_for_update().get(pk=vendor.pk)


def _validate_amount(amount) -> Decimal:
    value = _money(_to_decimal(amount))
    if value < Decimal("0.00"):
        raise PayoutValidationError("Balance amount must not be negative")
    return value


@transaction.atomic
def reserve(vendor: Vendor, amount, batch: Optional[PayoutBatch] = None, description: str = "") -> BalanceEntry:
    value = _validate_amount(amount)
    locked = _locked_vendor(vendor)
    locked.pending_payout_balance = _money(_to_decimal(locked.pending_payout_balance) + value)
    locked.save(update_fields=["pending_payout_balance", "updated_at"])
    vendor.pending_payout_balance = locked.pending_payout_balance

    return BalanceEntry.objects.create(
        vendor=locked,
        batch=batch,
        entry_type=BalanceEntry.EntryType.RESERVE,
        amount=value,
        balance_after=locked.pending_payout_balance,
        description=description or "Manual payout reserved",
    )


@transaction.atomic
def release(vendor: Vendor, amount, batch: Optional[PayoutBatch] = None, description: str = "") -> BalanceEntry:
    """
    Decrement the in-flight balance. A decrement below zero is floored at
    zero and journaled as an anomaly, it means a reservation went missing.
    """
    value = _validate_amount(amount)
    locked = _locked_vendor(vendor)
    current = _money(_to_decimal(locked.pending_payout_balance))
    remaining = current - value
    is_anomaly = remaining < Decimal("0.00")
    if is_anomaly:
        logger.warning(
            "Pending payout balance for vendor %s would go negative (balance=%s, release=%s, batch=%s); flooring at zero",
            locked.vendor_code,
            current,
            value,
            batch.reference if batch else None,
        )
        remaining = Decimal("0.00")

    locked.pending_payout_balance = _money(remaining)
    locked.save(update_fields=["pending_payout_balance", "updated_at"])
    vendor.pending_payout_balance = locked.pending_payout_balance

    return BalanceEntry.objects.create(
        vendor=locked,
        batch=batch,
        entry_type=BalanceEntry.EntryType.RELEASE,
        amount=value,
        balance_after=locked.pending_payout_balance,
        is_anomaly=is_anomaly,
        description=description or "Payout released",
    )
