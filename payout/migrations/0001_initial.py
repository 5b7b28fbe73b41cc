from decimal import Decimal

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("vendor", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="RevenueEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("booking_reference", models.CharField(max_length=150, unique=True)),
                ("gross_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("commission_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("payment_status", models.CharField(choices=[("PENDING", "Pending"), ("COMPLETED", "Completed"), ("REFUNDED", "Refunded")], default="COMPLETED", max_length=20)),
                ("payout_status", models.CharField(choices=[("PENDING", "Pending"), ("INCLUDED", "Included")], db_index=True, default="PENDING", max_length=20)),
                ("occurred_at", models.DateTimeField(db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("cabin", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="revenue_events", to="vendor.cabin")),
                ("vendor", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="revenue_events", to="vendor.vendor")),
            ],
            options={
                "ordering": ["occurred_at"],
            },
        ),
        migrations.CreateModel(
            name="PayoutBatch",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("reference", models.CharField(blank=True, max_length=30, unique=True)),
                ("gross_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("commission_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("net_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("requested_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("manual_fee", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("charge_description", models.CharField(blank=True, max_length=255)),
                ("payout_type", models.CharField(choices=[("AUTO", "Automatic"), ("MANUAL", "Manual")], default="AUTO", max_length=20)),
                ("period_start", models.DateTimeField(blank=True, null=True)),
                ("period_end", models.DateTimeField(blank=True, null=True)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("PROCESSING", "Processing"), ("COMPLETED", "Completed"), ("FAILED", "Failed"), ("CANCELLED", "Cancelled")], db_index=True, default="PENDING", max_length=20)),
                ("bank_details", models.JSONField(blank=True, default=dict)),
                ("requested_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("transaction_id", models.CharField(blank=True, max_length=150)),
                ("notes", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("cabin", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payout_batches", to="vendor.cabin")),
                ("processed_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="processed_payout_batches", to=settings.AUTH_USER_MODEL)),
                ("revenue_events", models.ManyToManyField(blank=True, related_name="included_in_batches", to="payout.revenueevent")),
                ("vendor", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payout_batches", to="vendor.vendor")),
            ],
            options={
                "ordering": ["-requested_at"],
                "verbose_name_plural": "payout batches",
            },
        ),
        migrations.AddField(
            model_name="revenueevent",
            name="payout_batch",
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="claimed_events", to="payout.payoutbatch"),
        ),
        migrations.CreateModel(
            name="BalanceEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("entry_type", models.CharField(choices=[("RESERVE", "Reserve"), ("RELEASE", "Release")], max_length=20)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("balance_after", models.DecimalField(decimal_places=2, max_digits=12)),
                ("is_anomaly", models.BooleanField(default=False)),
                ("description", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("batch", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="balance_entries", to="payout.payoutbatch")),
                ("vendor", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="balance_entries", to="vendor.vendor")),
            ],
            options={
                "ordering": ["created_at"],
                "verbose_name_plural": "balance entries",
            },
        ),
    ]
