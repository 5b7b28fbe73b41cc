import gc
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.apps import apps
from django.core.management import call_command
from django.db import close_old_connections, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from account.models import User
from payout.conf import get_payout_config
from payout.models import BalanceEntry, PayoutBatch, RevenueEvent
from payout.services import balance, batcher, ledger, lifecycle, manual, reporting
from payout.services.commission import compute_commission, compute_manual_fee, event_commission, event_net
from payout.services.errors import (
    InsufficientBalanceError,
    InvalidTransitionError,
    PayoutConfigurationError,
    PayoutServiceError,
    PayoutValidationError,
    ReconciliationError,
    SettlementConflictError,
    VendorNotEligibleError,
)
from payout.services.scheduler import AutoSettlementScheduler
from payout.signals import booking_payment_completed
from vendor.models import Cabin, Vendor
from vendor.payout_config import CommissionSettings, ManualFeeSettings


def make_vendor(email="vendor@cabins.com", **overrides):
    owner = User.objects.create_user(email=email, password="Pass123!", role="VENDOR")
    fields = {
        "business_name": "Lakeside Cabins",
        "status": Vendor.Status.APPROVED,
        "bank_account_holder": "Lakeside Cabins Ltd",
        "bank_account_number": "000123456789",
        "bank_name": "First Bank",
        "bank_ifsc_code": "FB0001",
    }
    fields.update(overrides)
    return Vendor.objects.create(owner=owner, **fields)


def add_event(cabin, amount, reference, hours_ago=1, **kwargs):
    return ledger.record(
        cabin=cabin,
        gross_amount=Decimal(amount),
        booking_reference=reference,
        occurred_at=timezone.now() - timedelta(hours=hours_ago),
        **kwargs,
    )


def make_due(vendor, when=None):
    Vendor.objects.filter(pk=vendor.pk).update(next_auto_payout=when or timezone.now() - timedelta(minutes=1))
    vendor.refresh_from_db()


class CommissionCalculatorTests(SimpleTestCase):
    def test_percentage_commission(self):
        settings = CommissionSettings(kind="PERCENTAGE", value=Decimal("20"))
        self.assertEqual(compute_commission(Decimal("1000"), settings), Decimal("200.00"))
        self.assertEqual(compute_commission("333.33", settings), Decimal("66.67"))

    def test_fixed_commission_is_flat_per_event(self):
        settings = CommissionSettings(kind="FIXED", value=Decimal("50"))
        self.assertEqual(compute_commission(Decimal("100"), settings), Decimal("50.00"))
        self.assertEqual(compute_commission(Decimal("10000"), settings), Decimal("50.00"))

    def test_fixed_commission_is_capped_at_event_amount(self):
        settings = CommissionSettings(kind="FIXED", value=Decimal("150"))
        self.assertEqual(compute_commission(Decimal("100"), settings), Decimal("100.00"))
        self.assertEqual(compute_commission(Decimal("0.50"), settings), Decimal("0.50"))

    def test_invalid_settings_fall_back_to_default_percent(self):
        settings = CommissionSettings.from_values("tiered", "abc", fallback_percent=Decimal("20"))
        self.assertTrue(settings.is_fallback)
        self.assertEqual(compute_commission(Decimal("1000"), settings), Decimal("200.00"))

        over_hundred = CommissionSettings.from_values("PERCENTAGE", "150", fallback_percent=Decimal("20"))
        self.assertTrue(over_hundred.is_fallback)

    def test_manual_fee(self):
        fixed = ManualFeeSettings(enabled=True, kind="FIXED", value=Decimal("50"))
        self.assertEqual(compute_manual_fee(fixed, Decimal("1000")), Decimal("50.00"))

        percent = ManualFeeSettings(enabled=True, kind="PERCENTAGE", value=Decimal("10"))
        self.assertEqual(compute_manual_fee(percent, Decimal("1005")), Decimal("101.00"))
        self.assertEqual(compute_manual_fee(percent, Decimal("1004")), Decimal("100.00"))

        self.assertEqual(compute_manual_fee(ManualFeeSettings.disabled(), Decimal("1000")), Decimal("0.00"))

    def test_stored_commission_wins(self):
        settings = CommissionSettings(kind="PERCENTAGE", value=Decimal("20"))
        stored = RevenueEvent(gross_amount=Decimal("1000.00"), commission_amount=Decimal("150.00"))
        computed = RevenueEvent(gross_amount=Decimal("1000.00"), commission_amount=None)

        self.assertEqual(event_commission(stored, settings), Decimal("150.00"))
        self.assertEqual(event_net(stored, settings), Decimal("850.00"))
        self.assertEqual(event_commission(computed, settings), Decimal("200.00"))


class PayoutConfigTests(SimpleTestCase):
    @override_settings(PAYOUT_CLAIM_RETRIES="abc")
    def test_invalid_number_raises(self):
        with self.assertRaises(PayoutConfigurationError):
            get_payout_config()

    @override_settings(PAYOUT_RELEASE_EVENTS_ON_FAILURE="no", PAYOUT_DEFAULT_COMMISSION_PERCENT="15")
    def test_values_are_parsed(self):
        config = get_payout_config()
        self.assertFalse(config.release_events_on_failure)
        self.assertEqual(config.default_commission_percent, Decimal("15"))

    def test_payout_app_is_a_regular_package(self):
        import payout

        self.assertIsNotNone(payout.__file__)
        self.assertEqual(apps.get_app_config("payout").path, os.path.dirname(payout.__file__))


class RevenueLedgerTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")

    def test_record_is_idempotent_on_booking_reference(self):
        first = add_event(self.cabin, "1000.00", "BK-1")
        second = add_event(self.cabin, "9999.00", "BK-1")

        self.assertEqual(first.id, second.id)
        self.assertEqual(RevenueEvent.objects.count(), 1)
        self.assertEqual(first.vendor_id, self.vendor.id)
        self.assertEqual(first.gross_amount, Decimal("1000.00"))

    def test_record_rejects_non_positive_amount(self):
        with self.assertRaises(PayoutValidationError):
            add_event(self.cabin, "0", "BK-0")
        self.assertEqual(RevenueEvent.objects.count(), 0)

    def test_signal_records_revenue_event(self):
        booking_payment_completed.send(
            sender=None,
            cabin=self.cabin.id,
            gross_amount="750.00",
            booking_reference="BK-SIGNAL",
        )
        event = RevenueEvent.objects.get(booking_reference="BK-SIGNAL")
        self.assertEqual(event.vendor_id, self.vendor.id)
        self.assertEqual(event.payout_status, RevenueEvent.PayoutStatus.PENDING)

    def test_find_eligible_filters_status_and_scope(self):
        other_cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin B")
        a = add_event(self.cabin, "100.00", "BK-A")
        b = add_event(other_cabin, "200.00", "BK-B")
        add_event(self.cabin, "300.00", "BK-REFUND", payment_status=RevenueEvent.PaymentStatus.REFUNDED)

        self.assertEqual({e.id for e in ledger.find_eligible(self.vendor)}, {a.id, b.id})
        self.assertEqual([e.id for e in ledger.find_eligible(self.vendor, cabin=self.cabin)], [a.id])
        self.assertEqual(ledger.find_eligible(self.vendor, event_ids=[b.id])[0].id, b.id)

    def test_claim_fails_when_any_event_already_claimed(self):
        a = add_event(self.cabin, "100.00", "BK-A")
        b = add_event(self.cabin, "200.00", "BK-B")
        first = PayoutBatch.objects.create(vendor=self.vendor)
        second = PayoutBatch.objects.create(vendor=self.vendor)
        ledger.claim([a.id], first)

        with self.assertRaises(PayoutServiceError):
            with transaction.atomic():
                ledger.claim([a.id, b.id], second)

        a.refresh_from_db()
        b.refresh_from_db()
        self.assertEqual(a.payout_batch_id, first.id)
        self.assertEqual(b.payout_status, RevenueEvent.PayoutStatus.PENDING)

    def test_release_returns_events_to_pending(self):
        a = add_event(self.cabin, "100.00", "BK-A")
        batch = PayoutBatch.objects.create(vendor=self.vendor)
        ledger.claim([a.id], batch)

        self.assertEqual(ledger.release(batch), 1)
        a.refresh_from_db()
        self.assertEqual(a.payout_status, RevenueEvent.PayoutStatus.PENDING)
        self.assertIsNone(a.payout_batch)


class PayoutBatcherTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")

    def test_scenario_a_batches_all_pending_events(self):
        events = [
            add_event(self.cabin, "1000.00", "BK-1"),
            add_event(self.cabin, "2000.00", "BK-2"),
            add_event(self.cabin, "500.00", "BK-3"),
        ]

        result = batcher.create_batch(self.vendor, cabin=self.cabin)

        self.assertTrue(result.created)
        batch = result.batch
        self.assertEqual(batch.gross_amount, Decimal("3500.00"))
        self.assertEqual(batch.commission_amount, Decimal("700.00"))
        self.assertEqual(batch.net_amount, Decimal("2800.00"))
        self.assertEqual(batch.status, PayoutBatch.Status.PENDING)
        self.assertEqual(batch.payout_type, PayoutBatch.PayoutType.AUTO)
        self.assertEqual(batch.bank_details["account_number"], "000123456789")
        self.assertTrue(batch.reference.startswith("VP-"))
        self.assertEqual(batch.revenue_events.count(), 3)
        for event in events:
            event.refresh_from_db()
            self.assertEqual(event.payout_status, RevenueEvent.PayoutStatus.INCLUDED)
            self.assertEqual(event.payout_batch_id, batch.id)
            self.assertEqual(event.commission_amount, event.gross_amount * Decimal("0.2"))

    def test_scenario_b_below_minimum_creates_nothing(self):
        event = add_event(self.cabin, "100.00", "BK-1")

        result = batcher.create_batch(self.vendor, cabin=self.cabin)

        self.assertFalse(result.created)
        self.assertEqual(result.reason, batcher.BELOW_MINIMUM)
        self.assertEqual(result.net_amount, Decimal("80.00"))
        self.assertEqual(PayoutBatch.objects.count(), 0)
        event.refresh_from_db()
        self.assertEqual(event.payout_status, RevenueEvent.PayoutStatus.PENDING)

    def test_no_eligible_revenue_is_a_noop(self):
        result = batcher.create_batch(self.vendor)
        self.assertEqual(result.reason, batcher.NO_ELIGIBLE_REVENUE)
        self.assertEqual(PayoutBatch.objects.count(), 0)

    def test_ineligible_vendor_is_rejected(self):
        add_event(self.cabin, "1000.00", "BK-1")
        Vendor.objects.filter(pk=self.vendor.pk).update(status=Vendor.Status.SUSPENDED)

        with self.assertRaises(VendorNotEligibleError):
            batcher.create_batch(self.vendor)
        self.assertEqual(PayoutBatch.objects.count(), 0)

    def test_stale_candidates_are_resolved_again(self):
        a = add_event(self.cabin, "1000.00", "BK-1")
        b = add_event(self.cabin, "2000.00", "BK-2")
        stale = list(RevenueEvent.objects.filter(pk__in=[a.pk, b.pk]))
        other = PayoutBatch.objects.create(vendor=self.vendor)
        RevenueEvent.objects.filter(pk=b.pk).update(
            payout_status=RevenueEvent.PayoutStatus.INCLUDED,
            payout_batch=other,
        )

        real_find = ledger.find_eligible
        calls = []

        def flaky_find(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                return stale
            return real_find(*args, **kwargs)

        with patch("payout.services.ledger.find_eligible", side_effect=flaky_find):
            result = batcher.create_batch(self.vendor)

        self.assertTrue(result.created)
        self.assertEqual(len(calls), 2)
        self.assertEqual(result.event_ids, [a.id])
        self.assertEqual(result.batch.gross_amount, Decimal("1000.00"))
        b.refresh_from_db()
        self.assertEqual(b.payout_batch_id, other.id)

    def test_claim_conflict_fails_loudly_after_retries(self):
        a = add_event(self.cabin, "1000.00", "BK-1")
        b = add_event(self.cabin, "2000.00", "BK-2")
        stale = list(RevenueEvent.objects.filter(pk__in=[a.pk, b.pk]))
        other = PayoutBatch.objects.create(vendor=self.vendor)
        RevenueEvent.objects.filter(pk=b.pk).update(
            payout_status=RevenueEvent.PayoutStatus.INCLUDED,
            payout_batch=other,
        )

        with patch("payout.services.ledger.find_eligible", return_value=stale):
            with self.assertRaises(SettlementConflictError):
                batcher.create_batch(self.vendor)

        self.assertEqual(PayoutBatch.objects.count(), 1)
        a.refresh_from_db()
        self.assertEqual(a.payout_status, RevenueEvent.PayoutStatus.PENDING)

    def test_fixed_commission_never_makes_event_net_negative(self):
        vendor = make_vendor(
            email="fixed@cabins.com",
            commission_type=Vendor.ChargeType.FIXED,
            commission_value=Decimal("150.00"),
            minimum_payout_amount=Decimal("0.00"),
        )
        cabin = Cabin.objects.create(vendor=vendor, name="Fixed Cabin")
        small = add_event(cabin, "100.00", "BK-SMALL")
        add_event(cabin, "1000.00", "BK-LARGE")

        self.assertEqual(event_net(small, vendor.commission_settings), Decimal("0.00"))
        self.assertEqual(ledger.available_net(vendor), Decimal("850.00"))

        result = batcher.create_batch(vendor)

        self.assertTrue(result.created)
        self.assertEqual(result.batch.gross_amount, Decimal("1100.00"))
        self.assertEqual(result.batch.commission_amount, Decimal("250.00"))
        self.assertEqual(result.batch.net_amount, Decimal("850.00"))
        small.refresh_from_db()
        self.assertEqual(small.commission_amount, Decimal("100.00"))
        lifecycle.reconcile(result.batch)

    def test_net_plus_commission_equals_gross(self):
        for index, rate in enumerate([Decimal("0"), Decimal("12.5"), Decimal("33.33")]):
            vendor = make_vendor(
                email=f"rate{index}@cabins.com",
                commission_value=rate,
                minimum_payout_amount=Decimal("0.00"),
            )
            cabin = Cabin.objects.create(vendor=vendor, name=f"Cabin {index}")
            for n, amount in enumerate(["999.99", "0.05", "1234.56", "10.01"]):
                add_event(cabin, amount, f"BK-{index}-{n}")
            result = batcher.create_batch(vendor)
            lifecycle.transition(result.batch, PayoutBatch.Status.COMPLETED)

        completed = PayoutBatch.objects.filter(status=PayoutBatch.Status.COMPLETED)
        self.assertEqual(completed.count(), 3)
        for batch in completed:
            self.assertEqual(batch.net_amount + batch.commission_amount, batch.gross_amount)


class VendorLockRegistryTests(SimpleTestCase):
    def test_same_lock_while_held_and_dropped_when_unused(self):
        first = batcher._process_lock("vendor-a")
        self.assertIs(batcher._process_lock("vendor-a"), first)
        self.assertIsNot(batcher._process_lock("vendor-b"), first)

        del first
        gc.collect()
        self.assertNotIn("vendor-a", batcher._vendor_locks)
        self.assertNotIn("vendor-b", batcher._vendor_locks)


class ManualPayoutTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")
        self.events = [
            add_event(self.cabin, "1000.00", "BK-1"),
            add_event(self.cabin, "2000.00", "BK-2"),
            add_event(self.cabin, "500.00", "BK-3"),
        ]

    def test_scenario_c_manual_request_reserves_balance(self):
        result = manual.request_payout(self.vendor, Decimal("1000.00"))

        batch = result["batch"]
        self.assertEqual(batch.payout_type, PayoutBatch.PayoutType.MANUAL)
        self.assertEqual(batch.requested_amount, Decimal("1000.00"))
        self.assertEqual(batch.manual_fee, Decimal("50.00"))
        self.assertEqual(batch.net_amount, Decimal("950.00"))
        self.assertEqual(batch.charge_description, "Manual payout request processing fee")
        self.assertEqual(batch.gross_amount, Decimal("3500.00"))
        self.assertEqual(batch.commission_amount, Decimal("700.00"))
        self.assertEqual(batch.metadata["unrequested_net"], "1800.00")
        self.assertEqual(result["breakdown"]["final_net_amount"], Decimal("950.00"))

        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("950.00"))
        entry = BalanceEntry.objects.get(batch=batch)
        self.assertEqual(entry.entry_type, BalanceEntry.EntryType.RESERVE)
        self.assertEqual(entry.balance_after, Decimal("950.00"))

    def test_scenario_d_completion_releases_reservation(self):
        batch = manual.request_payout(self.vendor, Decimal("1000.00"))["batch"]

        batch = lifecycle.transition(batch, PayoutBatch.Status.COMPLETED, transaction_id="TX-123")

        self.assertEqual(batch.status, PayoutBatch.Status.COMPLETED)
        self.assertEqual(batch.transaction_id, "TX-123")
        self.assertIsNotNone(batch.processed_at)
        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("0.00"))

    def test_request_above_available_is_rejected(self):
        with self.assertRaises(InsufficientBalanceError) as ctx:
            manual.request_payout(self.vendor, Decimal("5000.00"))

        self.assertEqual(ctx.exception.available, Decimal("2800.00"))
        self.assertEqual(ctx.exception.requested, Decimal("5000.00"))
        self.assertEqual(PayoutBatch.objects.count(), 0)
        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("0.00"))

    def test_explicit_events_limit_available(self):
        with self.assertRaises(InsufficientBalanceError) as ctx:
            manual.request_payout(self.vendor, Decimal("900.00"), event_ids=[self.events[0].id])
        self.assertEqual(ctx.exception.available, Decimal("800.00"))

        result = manual.request_payout(self.vendor, Decimal("800.00"), event_ids=[self.events[0].id])
        self.assertEqual(list(result["batch"].revenue_events.values_list("id", flat=True)), [self.events[0].id])
        self.events[1].refresh_from_db()
        self.assertEqual(self.events[1].payout_status, RevenueEvent.PayoutStatus.PENDING)

    def test_fee_larger_than_request_is_rejected(self):
        with self.assertRaises(PayoutValidationError):
            manual.request_payout(self.vendor, Decimal("40.00"))
        self.assertEqual(PayoutBatch.objects.count(), 0)

    def test_invalid_amount_is_rejected(self):
        with self.assertRaises(PayoutValidationError):
            manual.request_payout(self.vendor, Decimal("-10"))

    def test_foreign_cabin_is_rejected(self):
        other = make_vendor(email="other@cabins.com")
        foreign_cabin = Cabin.objects.create(vendor=other, name="Other Cabin")

        with self.assertRaises(VendorNotEligibleError):
            manual.request_payout(self.vendor, Decimal("100.00"), cabin=foreign_cabin)

    def test_unapproved_vendor_is_rejected(self):
        Vendor.objects.filter(pk=self.vendor.pk).update(status=Vendor.Status.PENDING)
        self.vendor.refresh_from_db()

        with self.assertRaises(VendorNotEligibleError):
            manual.request_payout(self.vendor, Decimal("100.00"))

    def test_percentage_fee_is_rounded_to_whole_units(self):
        Vendor.objects.filter(pk=self.vendor.pk).update(
            manual_fee_type=Vendor.ChargeType.PERCENTAGE,
            manual_fee_value=Decimal("2.5"),
        )
        self.vendor.refresh_from_db()

        batch = manual.request_payout(self.vendor, Decimal("1030.00"))["batch"]
        self.assertEqual(batch.manual_fee, Decimal("26.00"))
        self.assertEqual(batch.net_amount, Decimal("1004.00"))

    def test_preview_writes_nothing(self):
        data = manual.preview(self.vendor, Decimal("1000.00"))

        self.assertEqual(data["available_net"], Decimal("2800.00"))
        self.assertEqual(data["manual_fee"], Decimal("50.00"))
        self.assertEqual(data["final_net_amount"], Decimal("950.00"))
        self.assertTrue(data["can_request"])
        self.assertEqual(PayoutBatch.objects.count(), 0)

    def test_balance_summary(self):
        manual.request_payout(self.vendor, Decimal("1000.00"))
        self.vendor.refresh_from_db()

        summary = manual.balance_summary(self.vendor)
        self.assertEqual(summary["available_net"], Decimal("0.00"))
        self.assertEqual(summary["pending_event_count"], 0)
        self.assertEqual(summary["requested_batch_count"], 1)
        self.assertEqual(summary["requested_total"], Decimal("950.00"))
        self.assertEqual(summary["pending_payout_balance"], Decimal("950.00"))


class PayoutLifecycleTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")
        self.events = [
            add_event(self.cabin, "1000.00", "BK-1"),
            add_event(self.cabin, "2000.00", "BK-2"),
        ]
        self.batch = batcher.create_batch(self.vendor).batch

    def test_scenario_e_failed_batch_releases_events(self):
        lifecycle.transition(self.batch, PayoutBatch.Status.FAILED, notes="bank rejected")

        for event in self.events:
            event.refresh_from_db()
            self.assertEqual(event.payout_status, RevenueEvent.PayoutStatus.PENDING)
            self.assertIsNone(event.payout_batch)

        make_due(self.vendor)
        report = AutoSettlementScheduler(interval_hours=24).run_sweep()
        self.assertEqual(len(report.batches_created), 1)

        new_batch = PayoutBatch.objects.get(reference=report.batches_created[0])
        self.assertEqual(new_batch.revenue_events.count(), 2)
        # the failed batch keeps its recorded event set
        self.assertEqual(self.batch.revenue_events.count(), 2)

        live_statuses = [PayoutBatch.Status.PENDING, PayoutBatch.Status.PROCESSING, PayoutBatch.Status.COMPLETED]
        for event in self.events:
            self.assertEqual(event.included_in_batches.filter(status__in=live_statuses).count(), 1)

    @override_settings(PAYOUT_RELEASE_EVENTS_ON_FAILURE=False)
    def test_failed_batch_keeps_events_when_release_disabled(self):
        lifecycle.transition(self.batch, PayoutBatch.Status.FAILED)

        for event in self.events:
            event.refresh_from_db()
            self.assertEqual(event.payout_status, RevenueEvent.PayoutStatus.INCLUDED)

    def test_processing_then_completed(self):
        lifecycle.transition(self.batch, "processing")
        batch = lifecycle.transition(self.batch, PayoutBatch.Status.COMPLETED)

        self.assertEqual(batch.status, PayoutBatch.Status.COMPLETED)
        # auto batches never reserved a balance
        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("0.00"))
        self.assertFalse(BalanceEntry.objects.exists())

    def test_terminal_batches_do_not_move(self):
        lifecycle.transition(self.batch, PayoutBatch.Status.COMPLETED)

        with self.assertRaises(InvalidTransitionError):
            lifecycle.transition(self.batch, PayoutBatch.Status.FAILED)
        with self.assertRaises(InvalidTransitionError):
            lifecycle.transition(self.batch, "archived")

        self.batch.refresh_from_db()
        self.assertEqual(self.batch.status, PayoutBatch.Status.COMPLETED)

    def test_cancelled_manual_batch_releases_reservation(self):
        add_event(self.cabin, "1000.00", "BK-3")
        batch = manual.request_payout(self.vendor, Decimal("500.00"))["batch"]
        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("450.00"))

        lifecycle.transition(batch, PayoutBatch.Status.CANCELLED)

        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("0.00"))
        self.assertEqual(ledger.available_net(self.vendor), Decimal("800.00"))

    def test_reconcile_accepts_consistent_batch(self):
        result = lifecycle.reconcile(self.batch)
        self.assertEqual(result["gross_amount"], Decimal("3000.00"))
        self.assertEqual(result["event_count"], 2)

    def test_reconcile_detects_tampered_totals(self):
        PayoutBatch.objects.filter(pk=self.batch.pk).update(net_amount=Decimal("9999.00"))
        self.batch.refresh_from_db()

        with self.assertRaises(ReconciliationError):
            lifecycle.reconcile(self.batch)

    def test_reconcile_detects_detached_events(self):
        RevenueEvent.objects.filter(pk=self.events[0].pk).update(
            payout_status=RevenueEvent.PayoutStatus.PENDING,
            payout_batch=None,
        )
        with self.assertRaises(ReconciliationError):
            lifecycle.reconcile(self.batch)

    def test_list_batches_filters(self):
        lifecycle.transition(self.batch, PayoutBatch.Status.COMPLETED)

        self.assertEqual(lifecycle.list_batches(status="completed").count(), 1)
        self.assertEqual(lifecycle.list_batches(status=PayoutBatch.Status.PENDING).count(), 0)
        self.assertEqual(lifecycle.list_batches(start=timezone.now() + timedelta(days=1)).count(), 0)
        with self.assertRaises(PayoutValidationError):
            lifecycle.list_batches(status="bogus")


class VendorBalanceTrackerTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()

    def test_reserve_and_release(self):
        balance.reserve(self.vendor, Decimal("300.00"))
        entry = balance.release(self.vendor, Decimal("100.00"))

        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("200.00"))
        self.assertFalse(entry.is_anomaly)
        self.assertEqual(BalanceEntry.objects.filter(vendor=self.vendor).count(), 2)

    def test_release_below_zero_is_floored_and_flagged(self):
        balance.reserve(self.vendor, Decimal("50.00"))

        with self.assertLogs("payout.services.balance", level="WARNING") as logs:
            entry = balance.release(self.vendor, Decimal("80.00"))

        self.assertTrue(entry.is_anomaly)
        self.assertEqual(entry.balance_after, Decimal("0.00"))
        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.pending_payout_balance, Decimal("0.00"))
        self.assertIn("would go negative", logs.output[0])


class VendorReportingTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")
        self.now = datetime(2026, 3, 15, 12, 0, tzinfo=dt_timezone.utc)

    def _record(self, amount, reference, occurred_at, **kwargs):
        return ledger.record(
            cabin=self.cabin,
            gross_amount=Decimal(amount),
            booking_reference=reference,
            occurred_at=occurred_at,
            **kwargs,
        )

    def test_income_is_grouped_by_period(self):
        self._record("1000.00", "BK-TODAY", datetime(2026, 3, 15, 9, 0, tzinfo=dt_timezone.utc))
        self._record("500.00", "BK-YESTERDAY", datetime(2026, 3, 14, 20, 0, tzinfo=dt_timezone.utc))
        self._record("200.00", "BK-EARLY-MARCH", datetime(2026, 3, 5, 8, 0, tzinfo=dt_timezone.utc))
        self._record("300.00", "BK-FEBRUARY", datetime(2026, 2, 20, 8, 0, tzinfo=dt_timezone.utc))
        self._record(
            "999.00",
            "BK-REFUNDED",
            datetime(2026, 3, 15, 10, 0, tzinfo=dt_timezone.utc),
            payment_status=RevenueEvent.PaymentStatus.REFUNDED,
        )

        summary = reporting.income_summary(self.vendor, now=self.now)
        periods = summary["periods"]

        self.assertEqual(summary["commission_settings"].value, Decimal("20.00"))
        self.assertEqual(periods["today"]["total_revenue"], Decimal("1000.00"))
        self.assertEqual(periods["today"]["commission"], Decimal("200.00"))
        self.assertEqual(periods["today"]["net_income"], Decimal("800.00"))
        self.assertEqual(periods["yesterday"]["bookings_count"], 1)
        self.assertEqual(periods["yesterday"]["net_income"], Decimal("400.00"))
        self.assertEqual(periods["week"]["total_revenue"], Decimal("1500.00"))
        self.assertEqual(periods["month"]["bookings_count"], 3)
        self.assertEqual(periods["month"]["total_revenue"], Decimal("1700.00"))
        self.assertEqual(
            [e.booking_reference for e in periods["month"]["events"]],
            ["BK-TODAY", "BK-YESTERDAY", "BK-EARLY-MARCH"],
        )

    def test_income_range_narrows_every_period(self):
        self._record("1000.00", "BK-TODAY", datetime(2026, 3, 15, 9, 0, tzinfo=dt_timezone.utc))
        self._record("500.00", "BK-YESTERDAY", datetime(2026, 3, 14, 20, 0, tzinfo=dt_timezone.utc))

        summary = reporting.income_summary(
            self.vendor,
            now=self.now,
            start=datetime(2026, 3, 15, 0, 0, tzinfo=dt_timezone.utc),
        )

        self.assertEqual(summary["periods"]["month"]["bookings_count"], 1)
        self.assertEqual(summary["periods"]["yesterday"]["bookings_count"], 0)

    def test_vendor_listing_filters_and_searches(self):
        make_vendor(email="pending@cabins.com", business_name="Hilltop Huts", status=Vendor.Status.PENDING)
        make_vendor(email="river@cabins.com", business_name="River Retreat", contact_person="Ana Lake")

        self.assertEqual(reporting.vendors_with_payout_settings().count(), 3)
        self.assertEqual(reporting.vendors_with_payout_settings(status="all").count(), 3)
        self.assertEqual(
            list(reporting.vendors_with_payout_settings(status="pending").values_list("business_name", flat=True)),
            ["Hilltop Huts"],
        )
        self.assertEqual(reporting.vendors_with_payout_settings(search="lake").count(), 2)
        self.assertEqual(reporting.vendors_with_payout_settings(search=self.vendor.vendor_code).get(), self.vendor)

        with self.assertRaises(PayoutValidationError):
            reporting.vendors_with_payout_settings(status="archived")


class AutoSettlementSchedulerTests(TestCase):
    def setUp(self):
        self.vendor = make_vendor()
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")
        self.small_cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin B")
        self.scheduler = AutoSettlementScheduler(interval_hours=24)

    def test_per_cabin_sweep(self):
        add_event(self.cabin, "1000.00", "BK-1")
        add_event(self.cabin, "2000.00", "BK-2")
        add_event(self.cabin, "500.00", "BK-3")
        small = add_event(self.small_cabin, "100.00", "BK-4")
        make_due(self.vendor)
        now = timezone.now()

        report = self.scheduler.run_sweep(now=now)

        self.assertEqual(report.vendors_processed, 1)
        self.assertEqual(len(report.batches_created), 1)
        batch = PayoutBatch.objects.get()
        self.assertEqual(batch.cabin_id, self.cabin.id)
        self.assertEqual(batch.net_amount, Decimal("2800.00"))
        small.refresh_from_db()
        self.assertEqual(small.payout_status, RevenueEvent.PayoutStatus.PENDING)

        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.last_auto_payout, now)
        self.assertEqual(self.vendor.next_auto_payout, now + timedelta(days=7))

    def test_combined_sweep(self):
        Vendor.objects.filter(pk=self.vendor.pk).update(per_cabin_payout=False)
        add_event(self.cabin, "3500.00", "BK-1")
        add_event(self.small_cabin, "100.00", "BK-2")
        make_due(self.vendor)

        self.scheduler.run_sweep()

        batch = PayoutBatch.objects.get()
        self.assertIsNone(batch.cabin)
        self.assertEqual(batch.gross_amount, Decimal("3600.00"))
        self.assertEqual(batch.net_amount, Decimal("2880.00"))

    def test_running_twice_does_not_double_claim(self):
        add_event(self.cabin, "3500.00", "BK-1")
        make_due(self.vendor)
        stale_vendor = Vendor.objects.get(pk=self.vendor.pk)

        first = self.scheduler.run_sweep()
        second = self.scheduler.run_sweep()
        again = self.scheduler.settle_vendor(stale_vendor)

        self.assertEqual(len(first.batches_created), 1)
        self.assertEqual(len(second.batches_created), 0)
        self.assertEqual(again.skipped, ["not due"])
        self.assertEqual(PayoutBatch.objects.count(), 1)

    def test_skipped_events_stay_reachable_in_later_cycles(self):
        old = add_event(self.cabin, "300.00", "BK-OLD", hours_ago=24 * 20)
        make_due(self.vendor)
        now = timezone.now()

        first = self.scheduler.run_sweep(now=now)
        self.assertEqual(first.batches_created, [])

        add_event(self.cabin, "400.00", "BK-NEW")
        later = now + timedelta(days=8)
        second = self.scheduler.run_sweep(now=later)

        self.assertEqual(len(second.batches_created), 1)
        old.refresh_from_db()
        self.assertEqual(old.payout_status, RevenueEvent.PayoutStatus.INCLUDED)
        batch = PayoutBatch.objects.get()
        self.assertEqual(batch.net_amount, Decimal("560.00"))
        self.assertEqual(batch.period_start, now)

    def test_vendor_failure_does_not_abort_sweep(self):
        other = make_vendor(email="other@cabins.com")
        other_cabin = Cabin.objects.create(vendor=other, name="Other Cabin")
        add_event(self.cabin, "3500.00", "BK-1")
        add_event(other_cabin, "3500.00", "BK-2")
        make_due(self.vendor)
        make_due(other)

        real_create = batcher.create_batch

        def failing_for_first_vendor(vendor, *args, **kwargs):
            if vendor.pk == self.vendor.pk:
                raise SettlementConflictError("simulated conflict")
            return real_create(vendor, *args, **kwargs)

        with patch("payout.services.batcher.create_batch", side_effect=failing_for_first_vendor):
            report = self.scheduler.run_sweep()

        self.assertEqual(report.failed_vendors, [self.vendor.vendor_code])
        self.assertEqual(len(report.batches_created), 1)
        self.assertEqual(PayoutBatch.objects.get().vendor_id, other.id)

        # failed vendor stays due for the next tick
        self.vendor.refresh_from_db()
        self.assertLessEqual(self.vendor.next_auto_payout, timezone.now())

    def test_disabled_and_unapproved_vendors_are_not_selected(self):
        add_event(self.cabin, "3500.00", "BK-1")
        make_due(self.vendor)
        Vendor.objects.filter(pk=self.vendor.pk).update(auto_payout_enabled=False)

        self.assertEqual(self.scheduler.run_sweep().vendors_processed, 0)

        Vendor.objects.filter(pk=self.vendor.pk).update(auto_payout_enabled=True, status=Vendor.Status.REJECTED)
        self.assertEqual(self.scheduler.run_sweep().vendors_processed, 0)

    def test_start_runs_bootstrap_sweep_and_stops(self):
        swept = threading.Event()

        with patch.object(self.scheduler, "run_sweep", side_effect=lambda: swept.set()):
            self.scheduler.start()
            self.assertTrue(swept.wait(5))
            self.assertTrue(self.scheduler.is_running)
            self.scheduler.stop(timeout=5)

        self.assertFalse(self.scheduler.is_running)

    def test_management_command_runs_single_sweep(self):
        add_event(self.cabin, "3500.00", "BK-1")
        make_due(self.vendor)
        out = StringIO()

        call_command("run_auto_payouts", "--once", stdout=out)

        self.assertIn("Batches=1", out.getvalue())
        self.assertEqual(PayoutBatch.objects.count(), 1)


class SettlementConcurrencyTests(TransactionTestCase):
    reset_sequences = True

    def setUp(self):
        self.vendor = make_vendor(email="vendor_conc@cabins.com")
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Concurrency Cabin")
        add_event(self.cabin, "1000.00", "BK-C1")
        add_event(self.cabin, "2000.00", "BK-C2")
        add_event(self.cabin, "500.00", "BK-C3")

    def _attempt(self, barrier, mode):
        close_old_connections()
        try:
            vendor = Vendor.objects.get(pk=self.vendor.pk)
            barrier.wait(timeout=5)
            if mode == "manual":
                result = manual.request_payout(vendor, Decimal("1000.00"))
                return ("ok", result["batch"].reference)
            result = batcher.create_batch(vendor)
            if result.created:
                return ("ok", result.batch.reference)
            return ("skipped", result.reason)
        except Exception as exc:
            return ("err", str(exc))
        finally:
            close_old_connections()

    def test_auto_and_manual_settlement_never_both_claim(self):
        barrier = threading.Barrier(2)

        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [executor.submit(self._attempt, barrier, mode) for mode in ("auto", "manual")]
            results = [f.result(timeout=20) for f in futures]

        success_count = len([r for r in results if r[0] == "ok"])
        self.assertEqual(success_count, 1, results)
        self.assertEqual(PayoutBatch.objects.count(), 1)

        batch = PayoutBatch.objects.get()
        self.assertEqual(batch.revenue_events.count(), 3)
        self.assertEqual(
            RevenueEvent.objects.filter(payout_batch=batch, payout_status=RevenueEvent.PayoutStatus.INCLUDED).count(),
            3,
        )
        for status, detail in results:
            if status == "err":
                lowered = detail.lower()
                self.assertTrue(
                    ("insufficient balance" in lowered) or ("table is locked" in lowered),
                    results,
                )


class PayoutApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.vendor = make_vendor()
        self.vendor_user = self.vendor.owner
        self.cabin = Cabin.objects.create(vendor=self.vendor, name="Cabin A")
        for n, amount in enumerate(["1000.00", "2000.00", "500.00"]):
            add_event(self.cabin, amount, f"BK-{n}")
        self.admin = User.objects.create_superuser(email="admin@platform.com", password="Pass123!")
        self.customer = User.objects.create_user(email="guest@example.com", password="Pass123!")

    def test_vendor_can_view_balance(self):
        self.client.force_authenticate(self.vendor_user)
        response = self.client.get("/payout/balance/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["available_net"], "2800.00")
        self.assertEqual(response.data["pending_event_count"], 3)

    def test_preview(self):
        self.client.force_authenticate(self.vendor_user)
        response = self.client.get("/payout/preview/", {"amount": "1000"})

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["manual_fee"], "50.00")
        self.assertEqual(response.data["final_net_amount"], "950.00")
        self.assertEqual(PayoutBatch.objects.count(), 0)

    def test_preview_for_foreign_cabin_is_forbidden(self):
        other = make_vendor(email="other@cabins.com")
        foreign_cabin = Cabin.objects.create(vendor=other, name="Other Cabin")
        self.client.force_authenticate(self.vendor_user)

        response = self.client.get("/payout/preview/", {"cabin_id": str(foreign_cabin.id)})

        self.assertEqual(response.status_code, 403, response.data)

    def test_vendor_income_by_period(self):
        self.client.force_authenticate(self.vendor_user)
        response = self.client.get("/payout/income/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["commission_settings"]["type"], "PERCENTAGE")
        self.assertEqual(response.data["week"]["total_revenue"], "3500.00")
        self.assertEqual(response.data["week"]["net_income"], "2800.00")
        self.assertEqual(response.data["week"]["bookings_count"], 3)
        booking = response.data["week"]["bookings"][0]
        self.assertEqual(booking["cabin_name"], "Cabin A")
        self.assertEqual(booking["payout_status"], "PENDING")
        self.assertEqual(Decimal(booking["commission"]) + Decimal(booking["net_amount"]), Decimal(booking["gross_amount"]))

    def test_balance_lists_recent_journal_entries(self):
        manual.request_payout(self.vendor, Decimal("1000.00"))
        self.client.force_authenticate(self.vendor_user)

        response = self.client.get("/payout/balance/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["pending_payout_balance"], "950.00")
        self.assertEqual(len(response.data["recent_entries"]), 1)
        self.assertEqual(response.data["recent_entries"][0]["entry_type"], "RESERVE")

    def test_vendor_requests_manual_payout(self):
        self.client.force_authenticate(self.vendor_user)
        response = self.client.post("/payout/request/", {"amount": "1000.00"}, format="json")

        self.assertEqual(response.status_code, 201, response.data)
        self.assertEqual(response.data["payout"]["net_amount"], "950.00")
        self.assertEqual(response.data["payout"]["status"], "PENDING")
        self.assertEqual(response.data["breakdown"]["manual_fee"], "50.00")

        history = self.client.get("/payout/history/")
        self.assertEqual(history.status_code, 200, history.data)
        self.assertEqual(history.data["count"], 1)

    def test_request_above_available_returns_available_amount(self):
        self.client.force_authenticate(self.vendor_user)
        response = self.client.post("/payout/request/", {"amount": "5000.00"}, format="json")

        self.assertEqual(response.status_code, 400, response.data)
        self.assertEqual(response.data["available_amount"], "2800.00")
        self.assertEqual(PayoutBatch.objects.count(), 0)

    def test_request_for_foreign_cabin_is_forbidden(self):
        other = make_vendor(email="other@cabins.com")
        foreign_cabin = Cabin.objects.create(vendor=other, name="Other Cabin")
        self.client.force_authenticate(self.vendor_user)

        response = self.client.post(
            "/payout/request/",
            {"amount": "100.00", "cabin_id": str(foreign_cabin.id)},
            format="json",
        )
        self.assertEqual(response.status_code, 403, response.data)

    def test_non_vendor_cannot_use_vendor_endpoints(self):
        self.client.force_authenticate(self.customer)
        self.assertEqual(self.client.get("/payout/balance/").status_code, 403)
        self.assertEqual(self.client.post("/payout/request/", {"amount": "10"}, format="json").status_code, 403)

    def test_unapproved_vendor_is_forbidden(self):
        Vendor.objects.filter(pk=self.vendor.pk).update(status=Vendor.Status.PENDING)
        user = User.objects.get(pk=self.vendor_user.pk)
        self.client.force_authenticate(user)

        self.assertEqual(self.client.get("/payout/balance/").status_code, 403)

    def test_vendor_updates_own_auto_payout_settings(self):
        self.client.force_authenticate(self.vendor_user)
        response = self.client.patch(
            "/payout/settings/",
            {"auto_payout_enabled": False, "minimum_payout_amount": "1.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 200, response.data)
        self.vendor.refresh_from_db()
        self.assertFalse(self.vendor.auto_payout_enabled)
        self.assertIsNone(self.vendor.next_auto_payout)
        # minimum is admin-controlled
        self.assertEqual(self.vendor.minimum_payout_amount, Decimal("500.00"))

    def test_admin_completes_batch(self):
        batch = batcher.create_batch(self.vendor).batch
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            f"/payout/admin/batches/{batch.id}/status/",
            {"status": "COMPLETED", "transaction_id": "TX-1"},
            format="json",
        )

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["status"], "COMPLETED")
        self.assertEqual(response.data["transaction_id"], "TX-1")
        batch.refresh_from_db()
        self.assertEqual(batch.processed_by, self.admin)

        again = self.client.post(
            f"/payout/admin/batches/{batch.id}/status/",
            {"status": "FAILED"},
            format="json",
        )
        self.assertEqual(again.status_code, 409, again.data)

    def test_vendor_cannot_use_admin_endpoints(self):
        batch = batcher.create_batch(self.vendor).batch
        self.client.force_authenticate(self.vendor_user)

        response = self.client.post(
            f"/payout/admin/batches/{batch.id}/status/",
            {"status": "COMPLETED"},
            format="json",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get("/payout/admin/batches/").status_code, 403)

    def test_admin_lists_and_filters_batches(self):
        batcher.create_batch(self.vendor)
        self.client.force_authenticate(self.admin)

        response = self.client.get("/payout/admin/batches/", {"status": "PENDING"})
        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["count"], 1)

        response = self.client.get("/payout/admin/batches/", {"status": "COMPLETED"})
        self.assertEqual(response.data["count"], 0)

    def test_admin_reconcile(self):
        batch = batcher.create_batch(self.vendor).batch
        self.client.force_authenticate(self.admin)

        ok = self.client.post(f"/payout/admin/batches/{batch.id}/reconcile/")
        self.assertEqual(ok.status_code, 200, ok.data)
        self.assertEqual(ok.data["net_amount"], "2800.00")

        PayoutBatch.objects.filter(pk=batch.pk).update(gross_amount=Decimal("1.00"))
        broken = self.client.post(f"/payout/admin/batches/{batch.id}/reconcile/")
        self.assertEqual(broken.status_code, 409, broken.data)

    def test_admin_triggers_sweep(self):
        make_due(self.vendor)
        self.client.force_authenticate(self.admin)

        response = self.client.post("/payout/admin/sweep/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(len(response.data["batches_created"]), 1)

    def test_admin_toggles_and_updates_vendor_settings(self):
        self.client.force_authenticate(self.admin)

        off = self.client.post(f"/payout/admin/vendors/{self.vendor.id}/toggle/", {"enabled": False}, format="json")
        self.assertEqual(off.status_code, 200, off.data)
        self.vendor.refresh_from_db()
        self.assertIsNone(self.vendor.next_auto_payout)

        update = self.client.patch(
            f"/payout/admin/vendors/{self.vendor.id}/settings/",
            {"minimum_payout_amount": "1000.00", "commission_value": "15.00"},
            format="json",
        )
        self.assertEqual(update.status_code, 200, update.data)
        self.vendor.refresh_from_db()
        self.assertEqual(self.vendor.minimum_payout_amount, Decimal("1000.00"))
        self.assertEqual(self.vendor.commission_value, Decimal("15.00"))

        invalid = self.client.patch(
            f"/payout/admin/vendors/{self.vendor.id}/settings/",
            {"commission_value": "150.00"},
            format="json",
        )
        self.assertEqual(invalid.status_code, 400, invalid.data)

    def test_admin_lists_vendors_with_payout_settings(self):
        make_vendor(email="pending@cabins.com", business_name="Hilltop Huts", status=Vendor.Status.PENDING)
        self.client.force_authenticate(self.admin)

        response = self.client.get("/payout/admin/vendors/", {"status": "APPROVED"})
        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["count"], 1)
        row = response.data["results"][0]
        self.assertEqual(row["vendor_code"], self.vendor.vendor_code)
        self.assertEqual(row["payout_settings"]["commission_value"], "20.00")
        self.assertTrue(row["payout_settings"]["auto_payout_enabled"])

        search = self.client.get("/payout/admin/vendors/", {"search": "hilltop"})
        self.assertEqual(search.data["count"], 1)
        self.assertEqual(search.data["results"][0]["business_name"], "Hilltop Huts")

        invalid = self.client.get("/payout/admin/vendors/", {"status": "ARCHIVED"})
        self.assertEqual(invalid.status_code, 400)

        self.client.force_authenticate(self.vendor_user)
        self.assertEqual(self.client.get("/payout/admin/vendors/").status_code, 403)

    def test_admin_stats(self):
        batcher.create_batch(self.vendor)
        self.client.force_authenticate(self.admin)

        response = self.client.get("/payout/admin/stats/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["enabled_vendors"], 1)
        self.assertEqual(response.data["batches"]["PENDING"]["count"], 1)
