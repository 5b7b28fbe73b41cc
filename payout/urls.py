# payout/urls.py
from django.urls import path

from .views import (
    AdminAutoPayoutStatsView,
    AdminPayoutDetailView,
    AdminPayoutListView,
    AdminPayoutReconcileView,
    AdminPayoutStatusView,
    AdminSettlementSweepView,
    AdminVendorAutoPayoutSettingsView,
    AdminVendorPayoutListView,
    AdminVendorAutoPayoutToggleView,
    ManualPayoutRequestView,
    PayoutHistoryView,
    PayoutPreviewView,
    VendorAutoPayoutSettingsView,
    VendorBalanceView,
    VendorIncomeView,
)

urlpatterns = [
    # Vendor
    path("balance/", VendorBalanceView.as_view(), name="payout-balance"),
    path("income/", VendorIncomeView.as_view(), name="payout-income"),
    path("preview/", PayoutPreviewView.as_view(), name="payout-preview"),
    path("request/", ManualPayoutRequestView.as_view(), name="payout-request"),
    path("history/", PayoutHistoryView.as_view(), name="payout-history"),
    path("settings/", VendorAutoPayoutSettingsView.as_view(), name="payout-settings"),
    # Admin
    path("admin/batches/", AdminPayoutListView.as_view(), name="admin-payout-list"),
    path("admin/batches/<uuid:pk>/", AdminPayoutDetailView.as_view(), name="admin-payout-detail"),
    path("admin/batches/<uuid:pk>/status/", AdminPayoutStatusView.as_view(), name="admin-payout-status"),
    path("admin/batches/<uuid:pk>/reconcile/", AdminPayoutReconcileView.as_view(), name="admin-payout-reconcile"),
    path("admin/sweep/", AdminSettlementSweepView.as_view(), name="admin-payout-sweep"),
    path("admin/stats/", AdminAutoPayoutStatsView.as_view(), name="admin-payout-stats"),
    path("admin/vendors/", AdminVendorPayoutListView.as_view(), name="admin-vendor-payout-list"),
    path("admin/vendors/<uuid:pk>/settings/", AdminVendorAutoPayoutSettingsView.as_view(), name="admin-vendor-payout-settings"),
    path("admin/vendors/<uuid:pk>/toggle/", AdminVendorAutoPayoutToggleView.as_view(), name="admin-vendor-payout-toggle"),
]
