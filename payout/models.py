# payout/models.py

import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models


class RevenueEvent(models.Model):
    """Monetary record of one completed booking, the unit of settlement."""

    class PaymentStatus(models.TextChoices):
        PENDING = "PENDING", "Pending"
        COMPLETED = "COMPLETED", "Completed"
        REFUNDED = "REFUNDED", "Refunded"

    class PayoutStatus(models.TextChoices):
        PENDING = "PENDING", "Pending"
        INCLUDED = "INCLUDED", "Included"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    booking_reference = models.CharField(max_length=150, unique=True)

    vendor = models.ForeignKey(
        "vendor.Vendor",
        on_delete=models.CASCADE,
        related_name="revenue_events"
    )
    cabin = models.ForeignKey(
        "vendor.Cabin",
        on_delete=models.CASCADE,
        related_name="revenue_events"
    )

    gross_amount = models.DecimalField(max_digits=12, decimal_places=2)
    # null means "compute from vendor commission settings when batched"
    commission_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.COMPLETED
    )
    payout_status = models.CharField(
        max_length=20,
        choices=PayoutStatus.choices,
        default=PayoutStatus.PENDING,
        db_index=True
    )
    payout_batch = models.ForeignKey(
        "payout.PayoutBatch",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="claimed_events"
    )

    occurred_at = models.DateTimeField(db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["occurred_at"]

    def __str__(self):
        return f"{self.booking_reference} - {self.gross_amount} ({self.payout_status})"


class PayoutBatch(models.Model):

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PROCESSING = "PROCESSING", "Processing"
        COMPLETED = "COMPLETED", "Completed"
        FAILED = "FAILED", "Failed"
        CANCELLED = "CANCELLED", "Cancelled"

    class PayoutType(models.TextChoices):
        AUTO = "AUTO", "Automatic"
        MANUAL = "MANUAL", "Manual"

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=30, unique=True, blank=True)

    vendor = models.ForeignKey(
        "vendor.Vendor",
        on_delete=models.CASCADE,
        related_name="payout_batches"
    )
    # null cabin means the batch is combined across all of the vendor's cabins
    cabin = models.ForeignKey(
        "vendor.Cabin",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payout_batches"
    )

    gross_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    commission_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    net_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    requested_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    manual_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    charge_description = models.CharField(max_length=255, blank=True)

    payout_type = models.CharField(max_length=20, choices=PayoutType.choices, default=PayoutType.AUTO)

    period_start = models.DateTimeField(null=True, blank=True)
    period_end = models.DateTimeField(null=True, blank=True)

    # fixed at creation, never modified afterwards
    revenue_events = models.ManyToManyField(
        RevenueEvent,
        blank=True,
        related_name="included_in_batches"
    )

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )

    bank_details = models.JSONField(default=dict, blank=True)

    requested_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    transaction_id = models.CharField(max_length=150, blank=True)
    notes = models.TextField(blank=True)
    processed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="processed_payout_batches"
    )

    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-requested_at"]
        verbose_name_plural = "payout batches"

    def __str__(self):
        return f"{self.reference} - {self.net_amount} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_manual(self) -> bool:
        return self.payout_type == self.PayoutType.MANUAL

    def save(self, *args, **kwargs):
        if not self.reference:
            self.reference = f"VP-{uuid.uuid4().hex[:10].upper()}"
        super().save(*args, **kwargs)


class BalanceEntry(models.Model):
    """Journal row for every change of Vendor.pending_payout_balance."""

    class EntryType(models.TextChoices):
        RESERVE = "RESERVE", "Reserve"
        RELEASE = "RELEASE", "Release"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    vendor = models.ForeignKey(
        "vendor.Vendor",
        on_delete=models.CASCADE,
        related_name="balance_entries"
    )
    batch = models.ForeignKey(
        PayoutBatch,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="balance_entries"
    )

    entry_type = models.CharField(max_length=20, choices=EntryType.choices)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    balance_after = models.DecimalField(max_digits=12, decimal_places=2)
    is_anomaly = models.BooleanField(default=False)
    description = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name_plural = "balance entries"

    def __str__(self):
        return f"{self.entry_type} {self.amount} -> {self.balance_after}"
