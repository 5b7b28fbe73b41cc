from django.contrib import admin, messages
from django.utils.translation import gettext_lazy as _

from .models import BalanceEntry, PayoutBatch, RevenueEvent
from .services import lifecycle
from .services.errors import PayoutServiceError
from .services.scheduler import AutoSettlementScheduler


@admin.register(RevenueEvent)
class RevenueEventAdmin(admin.ModelAdmin):
	list_display = ("booking_reference", "vendor", "cabin", "gross_amount", "commission_amount", "payment_status", "payout_status", "payout_batch", "occurred_at")
	list_filter = ("payment_status", "payout_status")
	search_fields = ("booking_reference", "vendor__vendor_code", "vendor__business_name", "cabin__name")
	readonly_fields = ("payout_status", "payout_batch", "created_at", "updated_at")


class BalanceEntryInline(admin.TabularInline):
	model = BalanceEntry
	extra = 0
	can_delete = False
	readonly_fields = ("entry_type", "amount", "balance_after", "is_anomaly", "description", "created_at")


@admin.register(PayoutBatch)
class PayoutBatchAdmin(admin.ModelAdmin):
	list_display = ("reference", "vendor", "cabin", "payout_type", "status", "gross_amount", "commission_amount", "net_amount", "manual_fee", "requested_at", "processed_at")
	list_filter = ("status", "payout_type")
	search_fields = ("reference", "transaction_id", "vendor__vendor_code", "vendor__business_name")
	readonly_fields = (
		"reference", "vendor", "cabin", "payout_type", "status", "gross_amount", "commission_amount", "net_amount",
		"requested_amount", "manual_fee", "charge_description", "period_start", "period_end", "revenue_events",
		"bank_details", "requested_at", "processed_at", "processed_by", "metadata",
	)
	inlines = (BalanceEntryInline,)
	actions = ("mark_processing", "mark_completed", "mark_failed", "mark_cancelled", "reconcile_batches")

	def _transition(self, request, queryset, target):
		succeeded = 0
		failed = 0
		for batch in queryset.all():
			try:
				lifecycle.transition(batch, target, actor=request.user)
				succeeded += 1
			except PayoutServiceError as exc:
				failed += 1
				self.message_user(request, _("Failed to update payout %(ref)s: %(err)s") % {"ref": batch.reference, "err": str(exc)}, messages.ERROR)

		self.message_user(request, _("Payouts moved to %(status)s: %(ok)d, failed: %(bad)d") % {"status": target, "ok": succeeded, "bad": failed}, messages.INFO)

	def mark_processing(self, request, queryset):
		self._transition(request, queryset, PayoutBatch.Status.PROCESSING)

	mark_processing.short_description = "Mark selected payouts as processing"

	def mark_completed(self, request, queryset):
		self._transition(request, queryset, PayoutBatch.Status.COMPLETED)

	mark_completed.short_description = "Mark selected payouts as completed"

	def mark_failed(self, request, queryset):
		self._transition(request, queryset, PayoutBatch.Status.FAILED)

	mark_failed.short_description = "Mark selected payouts as failed"

	def mark_cancelled(self, request, queryset):
		self._transition(request, queryset, PayoutBatch.Status.CANCELLED)

	mark_cancelled.short_description = "Cancel selected payouts"

	def reconcile_batches(self, request, queryset):
		ok = 0
		for batch in queryset.select_related("vendor").all():
			try:
				lifecycle.reconcile(batch)
				ok += 1
			except PayoutServiceError as exc:
				self.message_user(request, str(exc), messages.ERROR)
		self.message_user(request, _("%d payouts reconciled.") % ok, messages.SUCCESS)

	reconcile_batches.short_description = "Reconcile selected payouts against their revenue events"


@admin.register(BalanceEntry)
class BalanceEntryAdmin(admin.ModelAdmin):
	list_display = ("vendor", "batch", "entry_type", "amount", "balance_after", "is_anomaly", "created_at")
	list_filter = ("entry_type", "is_anomaly")
	search_fields = ("vendor__vendor_code", "batch__reference", "description")
	readonly_fields = ("vendor", "batch", "entry_type", "amount", "balance_after", "is_anomaly", "description", "created_at")


def run_settlement_sweep(modeladmin, request, queryset):
	scheduler = AutoSettlementScheduler()
	created = 0
	for vendor in queryset:
		outcome = scheduler.settle_vendor(vendor, force=True)
		created += len(outcome.created)
		for error in outcome.errors:
			modeladmin.message_user(request, f"{vendor.vendor_code}: {error}", messages.ERROR)
	modeladmin.message_user(request, _("%d payout batches created.") % created, messages.SUCCESS)


run_settlement_sweep.short_description = "Run auto settlement now for selected vendors"
