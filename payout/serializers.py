from rest_framework import serializers

from vendor.models import Vendor

from .models import BalanceEntry, PayoutBatch, RevenueEvent
from .services.commission import event_commission, event_net


class RevenueEventSerializer(serializers.ModelSerializer):
    """Per-booking row; pass ``commission_settings`` in the context to price unbatched events."""

    cabin_name = serializers.CharField(source="cabin.name", read_only=True)
    commission = serializers.SerializerMethodField()
    net_amount = serializers.SerializerMethodField()

    class Meta:
        model = RevenueEvent
        fields = [
            "id",
            "booking_reference",
            "cabin",
            "cabin_name",
            "gross_amount",
            "commission",
            "net_amount",
            "payment_status",
            "payout_status",
            "payout_batch",
            "occurred_at",
        ]

    def get_commission(self, obj):
        return str(event_commission(obj, self.context.get("commission_settings") or obj.vendor))

    def get_net_amount(self, obj):
        return str(event_net(obj, self.context.get("commission_settings") or obj.vendor))


class PayoutBatchSerializer(serializers.ModelSerializer):
    vendor_code = serializers.CharField(source="vendor.vendor_code", read_only=True)
    vendor_name = serializers.CharField(source="vendor.business_name", read_only=True)
    cabin_name = serializers.CharField(source="cabin.name", read_only=True, default=None)
    revenue_event_ids = serializers.PrimaryKeyRelatedField(source="revenue_events", many=True, read_only=True)

    class Meta:
        model = PayoutBatch
        fields = [
            "id",
            "reference",
            "vendor",
            "vendor_code",
            "vendor_name",
            "cabin",
            "cabin_name",
            "payout_type",
            "status",
            "gross_amount",
            "commission_amount",
            "net_amount",
            "requested_amount",
            "manual_fee",
            "charge_description",
            "period_start",
            "period_end",
            "revenue_event_ids",
            "bank_details",
            "requested_at",
            "processed_at",
            "transaction_id",
            "notes",
            "metadata",
        ]
        read_only_fields = fields


class BalanceEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = BalanceEntry
        fields = ["id", "batch", "entry_type", "amount", "balance_after", "is_anomaly", "description", "created_at"]


class ManualPayoutRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    cabin_id = serializers.UUIDField(required=False, allow_null=True)
    revenue_event_ids = serializers.ListField(child=serializers.UUIDField(), required=False, allow_empty=False)

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Invalid payout amount")
        return value


class PayoutPreviewSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    cabin_id = serializers.UUIDField(required=False)


class DateRangeSerializer(serializers.Serializer):
    start_date = serializers.DateTimeField(required=False)
    end_date = serializers.DateTimeField(required=False)

    def validate(self, attrs):
        start, end = attrs.get("start_date"), attrs.get("end_date")
        if start and end and start > end:
            raise serializers.ValidationError("start_date must be before end_date")
        return attrs


class AdminPayoutFilterSerializer(DateRangeSerializer):
    status = serializers.ChoiceField(choices=PayoutBatch.Status.choices, required=False)
    payout_type = serializers.ChoiceField(choices=PayoutBatch.PayoutType.choices, required=False)
    vendor_id = serializers.UUIDField(required=False)


class AdminVendorFilterSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[("ALL", "All")] + Vendor.Status.choices, required=False)
    search = serializers.CharField(required=False, allow_blank=True, max_length=255)


class PayoutStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=[
            PayoutBatch.Status.PROCESSING,
            PayoutBatch.Status.COMPLETED,
            PayoutBatch.Status.FAILED,
            PayoutBatch.Status.CANCELLED,
        ]
    )
    transaction_id = serializers.CharField(required=False, allow_blank=True, max_length=150)
    notes = serializers.CharField(required=False, allow_blank=True)
