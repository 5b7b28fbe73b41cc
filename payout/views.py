# payout/views.py
import logging
from datetime import datetime
from decimal import Decimal

from django.db.models import Count, Sum
from rest_framework import permissions, status
from rest_framework.generics import ListAPIView
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from vendor.models import Cabin, Vendor
from vendor.serializers import (
    AdminAutoPayoutSettingsSerializer,
    AutoPayoutSettingsSerializer,
    AutoPayoutToggleSerializer,
    VendorSerializer,
)

from .models import PayoutBatch
from .serializers import (
    AdminPayoutFilterSerializer,
    AdminVendorFilterSerializer,
    BalanceEntrySerializer,
    DateRangeSerializer,
    ManualPayoutRequestSerializer,
    PayoutBatchSerializer,
    PayoutPreviewSerializer,
    PayoutStatusUpdateSerializer,
    RevenueEventSerializer,
)
from .services import lifecycle, manual, reporting
from .services.errors import (
    ClaimConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    PayoutConfigurationError,
    PayoutServiceError,
    ReconciliationError,
    SettlementConflictError,
    VendorNotEligibleError,
)
from .services.scheduler import AutoSettlementScheduler

logger = logging.getLogger(__name__)


class PayoutPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = "page_size"
    max_page_size = 100


class IsApprovedVendorUser(permissions.BasePermission):
    message = "Approved vendor account required"

    def has_permission(self, request, view):
        user = request.user
        if not (user and user.is_authenticated):
            return False
        vendor = getattr(user, "vendor_profile", None)
        return bool(vendor and vendor.status == Vendor.Status.APPROVED)


def _error_response(exc: PayoutServiceError) -> Response:
    if isinstance(exc, InsufficientBalanceError):
        return Response(
            {
                "detail": str(exc),
                "requested_amount": str(exc.requested),
                "available_amount": str(exc.available),
            },
            status=status.HTTP_400_BAD_REQUEST,
        )
    if isinstance(exc, VendorNotEligibleError):
        return Response({"detail": str(exc)}, status=status.HTTP_403_FORBIDDEN)
    if isinstance(exc, (InvalidTransitionError, SettlementConflictError, ClaimConflictError, ReconciliationError)):
        return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
    if isinstance(exc, PayoutConfigurationError):
        return Response({"detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)


def _plain(data: dict) -> dict:
    plain = {}
    for key, value in data.items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        plain[key] = value
    return plain


def _find_cabin(cabin_id):
    if not cabin_id:
        return None
    return Cabin.objects.filter(id=cabin_id).first()


# -----------------------------
# Vendor endpoints
# -----------------------------
class VendorBalanceView(APIView):
    permission_classes = [permissions.IsAuthenticated, IsApprovedVendorUser]

    def get(self, request):
        vendor = request.user.vendor_profile
        data = _plain(manual.balance_summary(vendor))
        data["recent_entries"] = BalanceEntrySerializer(vendor.balance_entries.order_by("-created_at")[:10], many=True).data
        return Response(data)


class VendorIncomeView(APIView):
    permission_classes = [permissions.IsAuthenticated, IsApprovedVendorUser]

    def get(self, request):
        filters = DateRangeSerializer(data=request.query_params)
        filters.is_valid(raise_exception=True)
        vendor = request.user.vendor_profile

        summary = reporting.income_summary(
            vendor,
            start=filters.validated_data.get("start_date"),
            end=filters.validated_data.get("end_date"),
        )
        commission_settings = summary["commission_settings"]
        data = {
            "commission_settings": {
                "type": commission_settings.kind,
                "value": str(commission_settings.value),
                "is_fallback": commission_settings.is_fallback,
            },
        }
        for name, period in summary["periods"].items():
            events = period.pop("events")
            data[name] = _plain(period)
            data[name]["bookings"] = RevenueEventSerializer(
                events,
                many=True,
                context={"commission_settings": commission_settings},
            ).data
        return Response(data)


class PayoutPreviewView(APIView):
    permission_classes = [permissions.IsAuthenticated, IsApprovedVendorUser]

    def get(self, request):
        serializer = PayoutPreviewSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        vendor = request.user.vendor_profile

        cabin_id = serializer.validated_data.get("cabin_id")
        cabin = _find_cabin(cabin_id)
        if cabin_id and cabin is None:
            return Response({"detail": "Cabin not found"}, status=status.HTTP_404_NOT_FOUND)

        try:
            data = manual.preview(vendor, serializer.validated_data.get("amount"), cabin=cabin)
        except PayoutServiceError as exc:
            return _error_response(exc)
        return Response(_plain(data))


class ManualPayoutRequestView(APIView):
    permission_classes = [permissions.IsAuthenticated, IsApprovedVendorUser]

    def post(self, request):
        serializer = ManualPayoutRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        vendor = request.user.vendor_profile

        cabin_id = serializer.validated_data.get("cabin_id")
        cabin = _find_cabin(cabin_id)
        if cabin_id and cabin is None:
            return Response({"detail": "Cabin not found"}, status=status.HTTP_404_NOT_FOUND)

        try:
            result = manual.request_payout(
                vendor,
                serializer.validated_data["amount"],
                event_ids=serializer.validated_data.get("revenue_event_ids"),
                cabin=cabin,
            )
        except PayoutServiceError as exc:
            return _error_response(exc)
        except Exception:
            logger.exception("Unexpected manual payout error for vendor=%s", vendor.vendor_code)
            return Response({"detail": "Unexpected payout error"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        breakdown = result["breakdown"]
        return Response(
            {
                "payout": PayoutBatchSerializer(result["batch"]).data,
                "breakdown": {
                    "original_amount": str(breakdown["original_amount"]),
                    "manual_fee": str(breakdown["manual_fee"]),
                    "final_net_amount": str(breakdown["final_net_amount"]),
                    "charge_description": breakdown["charge_description"],
                },
            },
            status=status.HTTP_201_CREATED,
        )


class PayoutHistoryView(ListAPIView):
    permission_classes = [permissions.IsAuthenticated, IsApprovedVendorUser]
    serializer_class = PayoutBatchSerializer
    pagination_class = PayoutPagination

    def get_queryset(self):
        filters = DateRangeSerializer(data=self.request.query_params)
        filters.is_valid(raise_exception=True)
        return lifecycle.list_batches(
            vendor=self.request.user.vendor_profile,
            start=filters.validated_data.get("start_date"),
            end=filters.validated_data.get("end_date"),
        ).prefetch_related("revenue_events")


class VendorAutoPayoutSettingsView(APIView):
    permission_classes = [permissions.IsAuthenticated, IsApprovedVendorUser]

    def get(self, request):
        return Response(AutoPayoutSettingsSerializer(request.user.vendor_profile).data)

    def patch(self, request):
        serializer = AutoPayoutSettingsSerializer(request.user.vendor_profile, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data)


# -----------------------------
# Admin endpoints
# -----------------------------
class AdminPayoutListView(ListAPIView):
    permission_classes = [IsAdminUser]
    serializer_class = PayoutBatchSerializer
    pagination_class = PayoutPagination

    def get_queryset(self):
        filters = AdminPayoutFilterSerializer(data=self.request.query_params)
        filters.is_valid(raise_exception=True)
        data = filters.validated_data
        vendor = None
        if data.get("vendor_id"):
            vendor = Vendor.objects.filter(id=data["vendor_id"]).first()
            if vendor is None:
                return PayoutBatch.objects.none()
        return lifecycle.list_batches(
            status=data.get("status"),
            start=data.get("start_date"),
            end=data.get("end_date"),
            vendor=vendor,
            payout_type=data.get("payout_type"),
        ).prefetch_related("revenue_events")


class AdminPayoutDetailView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request, pk):
        batch = PayoutBatch.objects.filter(id=pk).select_related("vendor", "cabin").first()
        if not batch:
            return Response({"detail": "Payout not found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(PayoutBatchSerializer(batch).data)


class AdminPayoutStatusView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        batch = PayoutBatch.objects.filter(id=pk).first()
        if not batch:
            return Response({"detail": "Payout not found"}, status=status.HTTP_404_NOT_FOUND)

        serializer = PayoutStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            batch = lifecycle.transition(
                batch,
                serializer.validated_data["status"],
                transaction_id=serializer.validated_data.get("transaction_id"),
                notes=serializer.validated_data.get("notes"),
                actor=request.user,
            )
        except PayoutServiceError as exc:
            return _error_response(exc)
        return Response(PayoutBatchSerializer(batch).data)


class AdminPayoutReconcileView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        batch = PayoutBatch.objects.filter(id=pk).select_related("vendor").first()
        if not batch:
            return Response({"detail": "Payout not found"}, status=status.HTTP_404_NOT_FOUND)
        try:
            result = lifecycle.reconcile(batch)
        except PayoutServiceError as exc:
            return _error_response(exc)
        return Response(_plain(result))


class AdminSettlementSweepView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request):
        try:
            report = AutoSettlementScheduler().run_sweep()
        except PayoutServiceError as exc:
            return _error_response(exc)
        return Response(report.as_dict(), status=status.HTTP_200_OK)


class AdminAutoPayoutStatsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        total_vendors = Vendor.objects.count()
        enabled_vendors = Vendor.objects.filter(auto_payout_enabled=True).count()
        by_status = {
            row["status"]: {"count": row["count"], "net_total": str(row["net_total"] or "0.00")}
            for row in PayoutBatch.objects.order_by().values("status").annotate(count=Count("id"), net_total=Sum("net_amount"))
        }
        return Response(
            {
                "total_vendors": total_vendors,
                "enabled_vendors": enabled_vendors,
                "disabled_vendors": total_vendors - enabled_vendors,
                "enabled_percentage": round(enabled_vendors * 100 / total_vendors, 1) if total_vendors else 0,
                "batches": by_status,
            }
        )


class AdminVendorPayoutListView(ListAPIView):
    permission_classes = [IsAdminUser]
    serializer_class = VendorSerializer
    pagination_class = PayoutPagination

    def get_queryset(self):
        filters = AdminVendorFilterSerializer(data=self.request.query_params)
        filters.is_valid(raise_exception=True)
        return reporting.vendors_with_payout_settings(
            status=filters.validated_data.get("status"),
            search=filters.validated_data.get("search"),
        )


class AdminVendorAutoPayoutSettingsView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request, pk):
        vendor = Vendor.objects.filter(id=pk).first()
        if not vendor:
            return Response({"detail": "Vendor not found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(AdminAutoPayoutSettingsSerializer(vendor).data)

    def patch(self, request, pk):
        vendor = Vendor.objects.filter(id=pk).first()
        if not vendor:
            return Response({"detail": "Vendor not found"}, status=status.HTTP_404_NOT_FOUND)
        serializer = AdminAutoPayoutSettingsSerializer(vendor, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data)


class AdminVendorAutoPayoutToggleView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        vendor = Vendor.objects.filter(id=pk).first()
        if not vendor:
            return Response({"detail": "Vendor not found"}, status=status.HTTP_404_NOT_FOUND)
        serializer = AutoPayoutToggleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        vendor.auto_payout_enabled = serializer.validated_data["enabled"]
        if vendor.auto_payout_enabled:
            vendor.schedule_next_auto_payout()
        else:
            vendor.next_auto_payout = None
        vendor.save(update_fields=["auto_payout_enabled", "next_auto_payout", "updated_at"])
        return Response(AdminAutoPayoutSettingsSerializer(vendor).data)
