"""
Automatic settlement sweep.

Every tick selects vendors whose ``next_auto_payout`` is due and settles
their eligible revenue, per cabin or combined depending on the vendor's
settings. The scheduler is an explicit instance; nothing runs on import.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from django.db import close_old_connections
from django.utils import timezone

from payout.conf import get_payout_config
from payout.models import PayoutBatch
from vendor.models import Vendor

from . import batcher
from .errors import PayoutServiceError

logger = logging.getLogger(__name__)


@dataclass
class VendorOutcome:
    vendor_code: str
    created: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    rescheduled: bool = False


@dataclass
class SweepReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[VendorOutcome] = field(default_factory=list)

    @property
    def vendors_processed(self) -> int:
        return len(self.outcomes)

    @property
    def batches_created(self) -> List[str]:
        return [ref for o in self.outcomes for ref in o.created]

    @property
    def failed_vendors(self) -> List[str]:
        return [o.vendor_code for o in self.outcomes if o.errors]

    def as_dict(self) -> Dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "vendors_processed": self.vendors_processed,
            "batches_created": self.batches_created,
            "failed_vendors": self.failed_vendors,
            "outcomes": [
                {
                    "vendor_code": o.vendor_code,
                    "created": o.created,
                    "skipped": o.skipped,
                    "errors": o.errors,
                    "rescheduled": o.rescheduled,
                }
                for o in self.outcomes
            ],
        }


def due_vendors(now: datetime):
    return Vendor.objects.filter(
        auto_payout_enabled=True,
        next_auto_payout__lte=now,
        status=Vendor.Status.APPROVED,
        is_active=True,
    ).order_by("next_auto_payout")


class AutoSettlementScheduler:
    """Runs the settlement sweep now and then every ``interval_hours``."""

    def __init__(self, interval_hours: Optional[float] = None, clock: Callable[[], datetime] = timezone.now):
        if interval_hours is None:
            interval_hours = get_payout_config().scheduler_interval_hours
        self.interval_hours = float(interval_hours)
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="auto-settlement", daemon=True)
        self._thread.start()
        logger.info("Auto settlement scheduler started (interval: %sh)", self.interval_hours)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Auto settlement scheduler stopped")

    def run_forever(self) -> None:
        # bootstrap sweep first, then one per interval
        while not self._stop_event.is_set():
            close_old_connections()
            try:
                self.run_sweep()
            except Exception:
                logger.exception("Auto settlement sweep failed")
            finally:
                close_old_connections()
            if self._stop_event.wait(self.interval_hours * 3600):
                break

    # -----------------------------
    # Sweep
    # -----------------------------
    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(started_at=now)
        vendors = list(due_vendors(now))
        logger.info("Auto settlement sweep at %s: %s vendors due", now.isoformat(), len(vendors))

        for vendor in vendors:
            try:
                outcome = self.settle_vendor(vendor, now=now)
            except Exception as exc:
                logger.exception("Auto settlement failed for vendor %s", vendor.vendor_code)
                outcome = VendorOutcome(vendor_code=vendor.vendor_code, errors=[str(exc)])
            report.outcomes.append(outcome)

        report.finished_at = self.clock()
        logger.info(
            "Auto settlement sweep finished: %s batches created, %s vendors failed",
            len(report.batches_created),
            len(report.failed_vendors),
        )
        return report

    def settle_vendor(self, vendor: Vendor, now: Optional[datetime] = None, force: bool = False) -> VendorOutcome:
        now = now or self.clock()
        outcome = VendorOutcome(vendor_code=vendor.vendor_code)

        with batcher.vendor_settlement_lock(vendor) as locked:
            settings = locked.auto_payout_settings
            if not locked.is_settlement_eligible or not settings.enabled:
                outcome.skipped.append("vendor not eligible for auto payout")
                return outcome
            # a concurrent sweep already settled and rescheduled this vendor
            if not force and (settings.next_run is None or settings.next_run > now):
                outcome.skipped.append("not due")
                return outcome

            period_start = settings.last_run or now - timedelta(days=settings.frequency_days)
            if settings.per_cabin_payout:
                scopes = list(locked.cabins.filter(is_active=True).order_by("created_at"))
            else:
                scopes = [None]

            for cabin in scopes:
                scope_label = cabin.name if cabin else "all cabins"
                try:
                    result = batcher.create_batch(
                        locked,
                        payout_type=PayoutBatch.PayoutType.AUTO,
                        cabin=cabin,
                        now=now,
                        period_start=period_start,
                    )
                except PayoutServiceError as exc:
                    logger.warning(
                        "Auto payout failed for vendor %s (%s): %s",
                        locked.vendor_code,
                        scope_label,
                        exc,
                    )
                    outcome.errors.append(f"{scope_label}: {exc}")
                    continue

                if result.created:
                    outcome.created.append(result.batch.reference)
                else:
                    outcome.skipped.append(f"{scope_label}: {result.reason}")

            # keep the vendor due so the next tick retries
            if outcome.errors:
                return outcome

            locked.last_auto_payout = now
            locked.schedule_next_auto_payout(now)
            locked.save(update_fields=["last_auto_payout", "next_auto_payout", "updated_at"])
            outcome.rescheduled = True

        vendor.last_auto_payout = locked.last_auto_payout
        vendor.next_auto_payout = locked.next_auto_payout
        return outcome
