from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db.models import Q, QuerySet
from django.utils import timezone

from payout.models import RevenueEvent
from vendor.models import Vendor

from .commission import _money, _to_decimal, event_commission
from .errors import PayoutValidationError

INCOME_PERIODS = ("today", "yesterday", "week", "month")


def _period_bounds(now: datetime) -> Dict[str, tuple]:
    start_of_today = timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "today": (start_of_today, None),
        "yesterday": (start_of_today - timedelta(days=1), start_of_today),
        "week": (now - timedelta(days=7), None),
        "month": (start_of_today.replace(day=1), None),
    }


# -----------------------------
# Vendor income
# -----------------------------
def income_summary(
    vendor: Vendor,
    now: Optional[datetime] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Completed booking revenue for ``vendor`` grouped into today, yesterday,
    the last seven days and the current month.

    ``start``/``end`` narrow every period. Each period keeps its events so
    callers can render a per-booking breakdown.
    """
    now = now or timezone.now()
    commission_settings = vendor.commission_settings

    base = RevenueEvent.objects.filter(
        vendor=vendor,
        payment_status=RevenueEvent.PaymentStatus.COMPLETED,
    ).select_related("cabin")
    if start is not None:
        base = base.filter(occurred_at__gte=start)
    if end is not None:
        base = base.filter(occurred_at__lte=end)

    periods = {}
    for name, (lower, upper) in _period_bounds(now).items():
        qs = base.filter(occurred_at__gte=lower)
        if upper is not None:
            qs = qs.filter(occurred_at__lt=upper)
        events = list(qs.order_by("-occurred_at"))

        revenue = _money(sum((_to_decimal(e.gross_amount) for e in events), Decimal("0.00")))
        commission = _money(sum((event_commission(e, commission_settings) for e in events), Decimal("0.00")))
        periods[name] = {
            "total_revenue": revenue,
            "commission": commission,
            "net_income": _money(revenue - commission),
            "bookings_count": len(events),
            "events": events,
        }

    return {"commission_settings": commission_settings, "periods": periods}


# -----------------------------
# Admin vendor listing
# -----------------------------
def vendors_with_payout_settings(status: Optional[str] = None, search: Optional[str] = None) -> QuerySet:
    qs = Vendor.objects.prefetch_related("cabins").order_by("-created_at")

    normalized = str(status or "").strip().upper()
    if normalized and normalized != "ALL":
        if normalized not in Vendor.Status.values:
            raise PayoutValidationError(f"Invalid vendor status filter: {status}")
        qs = qs.filter(status=normalized)

    term = str(search or "").strip()
    if term:
        qs = qs.filter(
            Q(business_name__icontains=term)
            | Q(contact_person__icontains=term)
            | Q(email__icontains=term)
            | Q(vendor_code__icontains=term)
        )
    return qs
