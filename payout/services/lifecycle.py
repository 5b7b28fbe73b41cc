from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from payout.conf import get_payout_config
from payout.models import PayoutBatch, RevenueEvent
from vendor.models import Vendor

from . import balance, ledger
from .commission import _money, _to_decimal, event_commission, event_net
from .errors import InvalidTransitionError, PayoutValidationError, ReconciliationError

logger = logging.getLogger(__name__)

_ALLOWED = {
    PayoutBatch.Status.PENDING: {
        PayoutBatch.Status.PROCESSING,
        PayoutBatch.Status.COMPLETED,
        PayoutBatch.Status.FAILED,
        PayoutBatch.Status.CANCELLED,
    },
    PayoutBatch.Status.PROCESSING: {
        PayoutBatch.Status.COMPLETED,
        PayoutBatch.Status.FAILED,
        PayoutBatch.Status.CANCELLED,
    },
}


def _can_transition(current: str, target: str) -> bool:
    for source, targets in _ALLOWED.items():
        if source == current:
            return target in targets
    return False


# -----------------------------
# Status transitions
# -----------------------------
@transaction.atomic
def transition(
    batch: PayoutBatch,
    status: str,
    transaction_id: Optional[str] = None,
    notes: Optional[str] = None,
    actor=None,
) -> PayoutBatch:
    target = str(status or "").strip().upper()
    if target not in PayoutBatch.Status.values:
        raise InvalidTransitionError(f"Invalid status: {status}")

    locked = PayoutBatch.objects.select_for_update().get(pk=batch.pk)
    if not _can_transition(locked.status, target):
        raise InvalidTransitionError(f"Cannot move payout {locked.reference} from {locked.status} to {target}")

    locked.status = target
    if transaction_id:
        locked.transaction_id = transaction_id
    if notes:
        locked.notes = notes
    if actor is not None and getattr(actor, "is_authenticated", False):
        locked.processed_by = actor

    if target in PayoutBatch.TERMINAL_STATUSES:
        locked.processed_at = timezone.now()
    locked.save()

    if target == PayoutBatch.Status.COMPLETED:
        # auto batches never reserved a balance, so completing them is bookkeeping only
        if locked.is_manual:
            balance.release(
                locked.vendor,
                locked.net_amount,
                batch=locked,
                description=f"Payout {locked.reference} completed",
            )
    elif target in (PayoutBatch.Status.FAILED, PayoutBatch.Status.CANCELLED):
        if locked.is_manual:
            balance.release(
                locked.vendor,
                locked.net_amount,
                batch=locked,
                description=f"Payout {locked.reference} {target.lower()}",
            )
        if get_payout_config().release_events_on_failure:
            released = ledger.release(locked)
            meta = dict(locked.metadata or {})
            meta["released_event_count"] = released
            locked.metadata = meta
            locked.save(update_fields=["metadata", "updated_at"])

    logger.info("Payout %s moved to %s", locked.reference, target)
    batch.refresh_from_db()
    return locked


# -----------------------------
# Reconciliation
# -----------------------------
def reconcile(batch: PayoutBatch) -> Dict[str, Any]:
    """
    Recompute batch totals from its recorded revenue events and fail loudly
    when they disagree with what was stored.
    """
    events = list(batch.revenue_events.all())
    commission_settings = batch.vendor.commission_settings

    gross = _money(sum((_to_decimal(e.gross_amount) for e in events), Decimal("0.00")))
    commission = _money(sum((event_commission(e, commission_settings) for e in events), Decimal("0.00")))
    available = _money(sum((event_net(e, commission_settings) for e in events), Decimal("0.00")))

    problems = []
    if not events:
        problems.append("batch has no recorded revenue events")
    if gross != batch.gross_amount:
        problems.append(f"gross {batch.gross_amount} != recomputed {gross}")
    if commission != batch.commission_amount:
        problems.append(f"commission {batch.commission_amount} != recomputed {commission}")

    if batch.is_manual:
        requested = _to_decimal(batch.requested_amount)
        if requested > available:
            problems.append(f"requested {requested} exceeds available net {available}")
        expected_net = _money(requested - _to_decimal(batch.manual_fee))
    else:
        expected_net = _money(gross - commission)
    if expected_net != batch.net_amount:
        problems.append(f"net {batch.net_amount} != recomputed {expected_net}")
    if batch.net_amount < Decimal("0.00"):
        problems.append("net amount is negative")

    releases_events = get_payout_config().release_events_on_failure
    holds_events = batch.status not in (PayoutBatch.Status.FAILED, PayoutBatch.Status.CANCELLED) or not releases_events
    if holds_events:
        detached = [
            str(e.id)
            for e in events
            if e.payout_status != RevenueEvent.PayoutStatus.INCLUDED or e.payout_batch_id != batch.id
        ]
        if detached:
            problems.append(f"{len(detached)} revenue events no longer point at this batch")

    if problems:
        logger.error("Reconciliation failed for payout %s: %s", batch.reference, "; ".join(problems))
        raise ReconciliationError(f"Payout {batch.reference} failed reconciliation: " + "; ".join(problems))

    return {
        "reference": batch.reference,
        "event_count": len(events),
        "gross_amount": gross,
        "commission_amount": commission,
        "net_amount": batch.net_amount,
        "available_net": available,
    }


# -----------------------------
# Admin listing
# -----------------------------
def list_batches(
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    vendor: Optional[Vendor] = None,
    payout_type: Optional[str] = None,
) -> QuerySet:
    qs = PayoutBatch.objects.select_related("vendor", "cabin")
    if status:
        normalized = str(status).strip().upper()
        if normalized not in PayoutBatch.Status.values:
            raise PayoutValidationError(f"Invalid status filter: {status}")
        qs = qs.filter(status=normalized)
    if payout_type:
        normalized_type = str(payout_type).strip().upper()
        if normalized_type not in PayoutBatch.PayoutType.values:
            raise PayoutValidationError(f"Invalid payout type filter: {payout_type}")
        qs = qs.filter(payout_type=normalized_type)
    if vendor is not None:
        qs = qs.filter(vendor=vendor)
    if start is not None:
        qs = qs.filter(requested_at__gte=start)
    if end is not None:
        qs = qs.filter(requested_at__lte=end)
    return qs.order_by("-requested_at")
