import logging

from django.db.models.signals import pre_save
from django.dispatch import Signal, receiver

from payout.services import ledger
from payout.services.errors import PayoutServiceError
from vendor.models import Cabin, Vendor

logger = logging.getLogger(__name__)

# sent by the booking subsystem once a booking payment is captured.
# kwargs: cabin (Cabin or cabin id), gross_amount, booking_reference,
# commission_amount (optional), occurred_at (optional)
booking_payment_completed = Signal()


@receiver(booking_payment_completed)
def _record_revenue_event(sender, cabin, gross_amount, booking_reference, **kwargs):
    if not isinstance(cabin, Cabin):
        cabin = Cabin.objects.select_related("vendor").filter(pk=cabin).first()
        if cabin is None:
            logger.warning("Skipping revenue event for booking=%s: cabin not found", booking_reference)
            return None

    try:
        return ledger.record(
            cabin=cabin,
            gross_amount=gross_amount,
            booking_reference=booking_reference,
            commission_amount=kwargs.get("commission_amount"),
            occurred_at=kwargs.get("occurred_at"),
        )
    except PayoutServiceError:
        logger.exception("Failed to record revenue event for booking=%s", booking_reference)
        return None


@receiver(pre_save, sender=Vendor)
def _reschedule_auto_payout(sender, instance: Vendor, update_fields=None, **kwargs):
    if not instance.pk or not instance.auto_payout_enabled:
        return
    if update_fields is not None and "next_auto_payout" not in update_fields:
        return

    previous = (
        Vendor.objects.filter(pk=instance.pk)
        .values("auto_payout_enabled", "payout_frequency_days")
        .first()
    )
    if previous is None:
        return

    turned_on = not previous["auto_payout_enabled"]
    frequency_changed = previous["payout_frequency_days"] != instance.payout_frequency_days
    if turned_on or frequency_changed:
        base = instance.last_auto_payout if frequency_changed and instance.last_auto_payout else None
        instance.schedule_next_auto_payout(base)
        logger.info(
            "Rescheduled auto payout for vendor %s to %s",
            instance.vendor_code,
            instance.next_auto_payout.isoformat(),
        )
