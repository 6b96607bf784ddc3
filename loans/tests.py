from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import BytesIO, StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import CommandError, call_command
from django.db.models import F
from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from openpyxl import Workbook, load_workbook
from rest_framework import status
from rest_framework.test import APIClient

from . import services
from .exceptions import AlreadyPaidError, ConcurrentModificationError, NotFoundError, ValidationError
from .importer import TEMPLATE_HEADERS, build_template, import_rows, parse_start_date, read_workbook
from .ledger import (
    derive_loan_status,
    plan_amendment,
    plan_overdue,
    plan_payment,
    plan_reconciliation,
    transition,
)
from .ledger import plan_reconciliation as real_plan_reconciliation
from .models import Client, Frequency, Loan, Payment
from .schedule import add_months, generate_schedule, installment_amount, regenerate_schedule, split_balance
from .services import (
    ALL_PAID,
    amend_loan,
    apply_plan,
    delete_client,
    next_due,
    onboard_client,
    record_payment,
    sweep_overdue,
)

START = date(2023, 10, 1)
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=dt_timezone.utc)


class ScheduleGeneratorTest(SimpleTestCase):
    def test_monthly_due_dates(self):
        schedule = generate_schedule(Decimal("1000"), START, Frequency.MONTHLY)
        self.assertEqual(
            [item.due_date for item in schedule],
            [date(2023, 11, 1), date(2023, 12, 1), date(2024, 1, 1), date(2024, 2, 1)],
        )

    def test_bi_weekly_due_dates(self):
        schedule = generate_schedule(Decimal("1000"), START, Frequency.BI_WEEKLY)
        self.assertEqual(len(schedule), 8)
        self.assertEqual(
            [item.due_date for item in schedule],
            [START + timedelta(days=14 * n) for n in range(1, 9)],
        )

    def test_amounts_sum_to_principal(self):
        for principal in (Decimal("1000"), Decimal("10.01"), Decimal("123456.78"), Decimal("0.03")):
            for frequency, tenure in ((Frequency.MONTHLY, 4), (Frequency.BI_WEEKLY, 8)):
                schedule = generate_schedule(principal, START, frequency)
                self.assertEqual(len(schedule), tenure)
                self.assertEqual(sum(item.amount for item in schedule), principal)
                self.assertEqual([item.installment_no for item in schedule], list(range(1, tenure + 1)))
                self.assertTrue(all(item.status == Payment.Status.PENDING for item in schedule))

    def test_equal_split_has_no_remainder_correction(self):
        self.assertEqual(installment_amount(Decimal("10.01"), 8), Decimal("1.25125"))
        amounts = {item.amount for item in generate_schedule(Decimal("10.01"), START, Frequency.BI_WEEKLY)}
        self.assertEqual(amounts, {Decimal("1.25125")})

    def test_month_end_rolls_over(self):
        self.assertEqual(add_months(date(2023, 1, 31), 1), date(2023, 3, 3))
        self.assertEqual(add_months(date(2024, 1, 31), 1), date(2024, 3, 2))
        schedule = generate_schedule(Decimal("400"), date(2023, 1, 31), Frequency.MONTHLY)
        self.assertEqual(
            [item.due_date for item in schedule],
            [date(2023, 3, 3), date(2023, 3, 31), date(2023, 5, 1), date(2023, 5, 31)],
        )

    def test_frequency_aliases(self):
        self.assertEqual(len(generate_schedule(100, START, "bi-weekly")), 8)
        self.assertEqual(len(generate_schedule(100, START, "monthly")), 4)

    def test_deterministic(self):
        self.assertEqual(
            generate_schedule(Decimal("500"), START, Frequency.BI_WEEKLY),
            generate_schedule(Decimal("500"), START, Frequency.BI_WEEKLY),
        )

    def test_rejects_invalid_input(self):
        for principal in (None, 0, -5, "abc", Decimal("NaN")):
            with self.assertRaises(ValidationError):
                generate_schedule(principal, START, Frequency.MONTHLY)
        with self.assertRaises(ValidationError):
            generate_schedule(100, START, "Weekly")
        with self.assertRaises(ValidationError):
            generate_schedule(100, START, None)
        with self.assertRaises(ValidationError):
            generate_schedule(100, None, Frequency.MONTHLY)

    def test_rejects_fractional_cents(self):
        for principal in (Decimal("100.015"), 100.015, "0.001"):
            with self.assertRaises(ValidationError):
                generate_schedule(principal, START, Frequency.BI_WEEKLY)
        self.assertEqual(len(generate_schedule(Decimal("100.010"), START, Frequency.BI_WEEKLY)), 8)

    def test_regenerated_schedule_settles_sub_cent_balance(self):
        balance = Decimal("87.49875")
        amounts = split_balance(balance, 8)
        self.assertEqual(sum(amounts), balance)
        self.assertTrue(all(amount == amount.quantize(Decimal("0.00001")) for amount in amounts))
        self.assertEqual(len(set(amounts[:-1])), 1)

        schedule = regenerate_schedule(balance, START, Frequency.BI_WEEKLY)
        self.assertEqual([item.installment_no for item in schedule], list(range(1, 9)))
        self.assertEqual(sum(item.amount for item in schedule), balance)
        with self.assertRaises(ValidationError):
            regenerate_schedule(Decimal("0"), START, Frequency.MONTHLY)


class InstallmentStatusMachineTest(SimpleTestCase):
    def test_allowed_transitions(self):
        self.assertEqual(transition("Pending", "Overdue"), "Overdue")
        self.assertEqual(transition("Pending", "Paid"), "Paid")
        self.assertEqual(transition("Overdue", "Paid"), "Paid")

    def test_paid_is_terminal(self):
        with self.assertRaises(AlreadyPaidError):
            transition("Paid", "Paid")
        for target in ("Pending", "Overdue"):
            with self.assertRaises(ValidationError):
                transition("Paid", target)

    def test_nothing_reenters_pending(self):
        with self.assertRaises(ValidationError):
            transition("Overdue", "Pending")


def make_loan(amount="1000", total_paid="0", frequency=Frequency.MONTHLY):
    amount = Decimal(amount)
    tenure = 8 if frequency == Frequency.BI_WEEKLY else 4
    return Loan(
        pk=1,
        loan_amount=amount,
        loan_start_date=START,
        frequency=frequency,
        tenure=tenure,
        installment_amount=amount / tenure,
        total_paid=Decimal(total_paid),
        remaining_amount=amount - Decimal(total_paid),
        status=Loan.Status.IN_PROGRESS,
        version=3,
    )


def make_installments(loan, statuses=None):
    schedule = generate_schedule(loan.loan_amount, loan.loan_start_date, loan.frequency)
    statuses = statuses or ["Pending"] * len(schedule)
    return [
        Payment(
            pk=100 + item.installment_no,
            installment_no=item.installment_no,
            amount=item.amount,
            due_date=item.due_date,
            status=state,
        )
        for item, state in zip(schedule, statuses)
    ]


class LoanLedgerTest(SimpleTestCase):
    def test_payment_plan_updates_balance(self):
        loan = make_loan()
        installments = make_installments(loan)
        plan = plan_payment(loan, installments, 101)
        self.assertEqual(plan.mark_paid, [101])
        self.assertEqual(plan.expected_version, 3)
        self.assertEqual(plan.loan_changes["total_paid"], Decimal("250"))
        self.assertEqual(plan.loan_changes["remaining_amount"], Decimal("750"))
        self.assertEqual(plan.loan_changes["status"], Loan.Status.IN_PROGRESS)
        self.assertEqual(plan.delete_ids, [])
        self.assertEqual(plan.inserts, [])

    def test_invariant_holds_across_payments(self):
        loan = make_loan("10.01", frequency=Frequency.BI_WEEKLY)
        installments = make_installments(loan)
        for item in installments:
            plan = plan_payment(loan, installments, item.pk)
            loan.total_paid = plan.loan_changes["total_paid"]
            loan.status = plan.loan_changes["status"]
            item.status = Payment.Status.PAID
            self.assertEqual(loan.total_paid, sum(i.amount for i in installments if i.status == "Paid"))
            self.assertEqual(plan.loan_changes["remaining_amount"], loan.loan_amount - loan.total_paid)
        self.assertEqual(plan.loan_changes["remaining_amount"], Decimal("0"))
        self.assertEqual(loan.status, Loan.Status.COMPLETED)

    def test_paying_overdue_installment(self):
        loan = make_loan()
        installments = make_installments(loan, ["Overdue", "Overdue", "Pending", "Pending"])
        plan = plan_payment(loan, installments, 101)
        self.assertEqual(plan.loan_changes["status"], Loan.Status.OVERDUE)
        plan = plan_payment(loan, installments, 102)
        self.assertEqual(plan.loan_changes["status"], Loan.Status.OVERDUE)

    def test_already_paid(self):
        loan = make_loan(total_paid="250")
        installments = make_installments(loan, ["Paid", "Pending", "Pending", "Pending"])
        with self.assertRaises(AlreadyPaidError):
            plan_payment(loan, installments, 101)

    def test_unknown_installment(self):
        loan = make_loan()
        with self.assertRaises(NotFoundError):
            plan_payment(loan, make_installments(loan), 999)

    def test_stale_installment_set_is_rejected(self):
        loan = make_loan(total_paid="250")
        with self.assertRaises(ConcurrentModificationError):
            plan_payment(loan, make_installments(loan), 101)

    def test_status_derivation(self):
        self.assertEqual(derive_loan_status(Decimal("0"), ["Overdue"]), Loan.Status.COMPLETED)
        self.assertEqual(derive_loan_status(Decimal("-5"), []), Loan.Status.COMPLETED)
        self.assertEqual(derive_loan_status(Decimal("1"), ["Paid", "Overdue"]), Loan.Status.OVERDUE)
        self.assertEqual(derive_loan_status(Decimal("1"), ["Paid", "Pending"]), Loan.Status.IN_PROGRESS)

    def test_amendment_replaces_unsettled_tail(self):
        loan = make_loan(total_paid="500")
        installments = make_installments(loan, ["Paid", "Paid", "Overdue", "Pending"])
        plan = plan_amendment(loan, installments, new_amount=Decimal("1200"))

        self.assertEqual(plan.delete_ids, [103, 104])
        self.assertEqual([item.installment_no for item in plan.inserts], [3, 4, 5, 6])
        self.assertEqual({item.amount for item in plan.inserts}, {Decimal("175")})
        self.assertEqual(sum(item.amount for item in plan.inserts), Decimal("700"))
        self.assertEqual(plan.loan_changes["loan_amount"], Decimal("1200"))
        self.assertEqual(plan.loan_changes["remaining_amount"], Decimal("700"))
        self.assertEqual(plan.loan_changes["status"], Loan.Status.IN_PROGRESS)
        self.assertNotIn("total_paid", plan.loan_changes)
        self.assertEqual(plan.inserts[0].due_date, date(2023, 11, 1))

    def test_amendment_with_new_start_date(self):
        loan = make_loan()
        plan = plan_amendment(loan, make_installments(loan), new_start_date=date(2024, 1, 15))
        self.assertEqual(plan.loan_changes["loan_amount"], Decimal("1000"))
        self.assertEqual(
            [item.due_date for item in plan.inserts],
            [date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15), date(2024, 5, 15)],
        )

    def test_amendment_below_paid_total_completes_loan(self):
        loan = make_loan(total_paid="500")
        installments = make_installments(loan, ["Paid", "Paid", "Pending", "Pending"])
        plan = plan_amendment(loan, installments, new_amount=Decimal("400"))
        self.assertEqual(plan.inserts, [])
        self.assertEqual(plan.loan_changes["status"], Loan.Status.COMPLETED)
        self.assertEqual(plan.loan_changes["remaining_amount"], Decimal("-100"))

    def test_amendment_requires_a_change(self):
        loan = make_loan()
        with self.assertRaises(ValidationError):
            plan_amendment(loan, make_installments(loan))
        with self.assertRaises(ValidationError):
            plan_amendment(loan, make_installments(loan), new_amount=0)

    def test_overdue_pass(self):
        loan = make_loan()
        installments = make_installments(loan)
        overdue = plan_overdue(installments, utc(2023, 12, 15))
        self.assertEqual([item.installment_no for item in overdue], [1, 2])
        self.assertEqual(plan_overdue(installments, utc(2023, 11, 1)), [])
        self.assertEqual(len(plan_overdue(installments, utc(2023, 11, 1, 0, 0, 1))), 1)
        self.assertEqual(len(plan_overdue(installments, date(2023, 11, 2))), 1)

    def test_reconciliation_plan_is_idempotent(self):
        loan = make_loan()
        installments = make_installments(loan)
        now = utc(2023, 12, 15)
        plan = plan_reconciliation(loan, installments, now)
        self.assertEqual(plan.mark_overdue, [101, 102])
        self.assertEqual(plan.loan_changes, {"status": Loan.Status.OVERDUE})
        self.assertIsNone(plan.expected_version)

        for item in installments:
            if item.pk in plan.mark_overdue:
                item.status = Payment.Status.OVERDUE
        loan.status = Loan.Status.OVERDUE
        self.assertTrue(plan_reconciliation(loan, installments, now).is_empty)


class LedgerServiceTestMixin:
    def setUp(self):
        User = get_user_model()
        self.staff = User.objects.create_user(username="staff", password="secret", first_name="Sarah", last_name="Jones")
        self.other_staff = User.objects.create_user(username="other", password="secret")
        self.admin = User.objects.create_superuser(username="admin", password="secret", email="admin@example.com")

    def onboard(self, email="client@example.com", amount="1000", start=START, frequency=None):
        return onboard_client(
            name="Client",
            email=email,
            phone="555",
            assigned_staff=self.staff,
            loan_amount=Decimal(amount),
            loan_start_date=start,
            frequency=frequency,
        )

    def assert_ledger_consistent(self, loan):
        loan.refresh_from_db()
        paid = sum(p.amount for p in loan.payments.filter(status=Payment.Status.PAID))
        self.assertEqual(loan.total_paid, paid)
        self.assertEqual(loan.remaining_amount, loan.loan_amount - loan.total_paid)


class OnboardingServiceTest(LedgerServiceTestMixin, TestCase):
    def test_onboard_creates_client_loan_and_schedule(self):
        loan = self.onboard()
        self.assertEqual(loan.client.status, Client.Status.ACTIVE)
        self.assertEqual(loan.status, Loan.Status.IN_PROGRESS)
        self.assertEqual(loan.tenure, 4)
        self.assertEqual(loan.installment_amount, Decimal("250"))
        self.assertEqual(loan.remaining_amount, Decimal("1000"))
        self.assertEqual(loan.payments.count(), 4)
        self.assertEqual(set(loan.payments.values_list("client_id", flat=True)), {loan.client_id})

    def test_onboard_bi_weekly(self):
        loan = self.onboard(frequency="Bi-Weekly")
        self.assertEqual(loan.tenure, 8)
        self.assertEqual(loan.payments.count(), 8)

    def test_invalid_amount_persists_nothing(self):
        with self.assertRaises(ValidationError):
            self.onboard(amount="0")
        self.assertFalse(Client.objects.exists())
        self.assertFalse(Loan.objects.exists())

    def test_save_recomputes_remaining(self):
        loan = self.onboard()
        loan.total_paid = Decimal("100")
        loan.save(update_fields=["total_paid"])
        loan.refresh_from_db()
        self.assertEqual(loan.remaining_amount, Decimal("900"))

    def test_delete_client_cascades(self):
        loan = self.onboard()
        delete_client(loan.client)
        self.assertFalse(Loan.objects.exists())
        self.assertFalse(Payment.objects.exists())

    def test_next_due(self):
        loan = self.onboard()
        self.assertEqual(next_due(loan, loan.payments.all()), date(2023, 11, 1))
        for payment in loan.payments.all():
            record_payment(payment.pk)
        loan.refresh_from_db()
        self.assertEqual(next_due(loan, loan.payments.all()), ALL_PAID)


class RecordPaymentServiceTest(LedgerServiceTestMixin, TestCase):
    def test_record_payment_updates_ledger(self):
        loan = self.onboard()
        first = loan.payments.get(installment_no=1)
        payment = record_payment(first.pk)
        self.assertEqual(payment.status, Payment.Status.PAID)
        self.assertIsNotNone(payment.paid_at)
        loan.refresh_from_db()
        self.assertEqual(loan.total_paid, Decimal("250"))
        self.assertEqual(loan.remaining_amount, Decimal("750"))
        self.assertEqual(loan.version, 1)
        self.assert_ledger_consistent(loan)

    def test_paying_everything_completes_loan(self):
        loan = self.onboard(amount="10.01", frequency="Bi-Weekly")
        for payment in loan.payments.all():
            record_payment(payment.pk)
            self.assert_ledger_consistent(loan)
        self.assertEqual(loan.status, Loan.Status.COMPLETED)
        self.assertEqual(loan.remaining_amount, Decimal("0"))

    def test_second_payment_is_rejected_without_double_count(self):
        loan = self.onboard()
        first = loan.payments.get(installment_no=1)
        record_payment(first.pk)
        with self.assertRaises(AlreadyPaidError):
            record_payment(first.pk)
        loan.refresh_from_db()
        self.assertEqual(loan.total_paid, Decimal("250"))

    def test_unknown_installment(self):
        with self.assertRaises(NotFoundError):
            record_payment(12345)

    def test_overdue_installment_remains_payable(self):
        loan = self.onboard()
        sweep_overdue(utc(2023, 12, 15))
        first = loan.payments.get(installment_no=1)
        self.assertEqual(first.status, Payment.Status.OVERDUE)
        record_payment(first.pk)
        loan.refresh_from_db()
        self.assertEqual(loan.status, Loan.Status.OVERDUE)
        record_payment(loan.payments.get(installment_no=2).pk)
        loan.refresh_from_db()
        self.assertEqual(loan.status, Loan.Status.IN_PROGRESS)

    def test_completed_wins_over_overdue_flags(self):
        loan = self.onboard()
        sweep_overdue(utc(2024, 6, 1))
        loan.refresh_from_db()
        self.assertEqual(loan.status, Loan.Status.OVERDUE)
        for payment in loan.payments.all():
            record_payment(payment.pk)
        loan.refresh_from_db()
        self.assertEqual(loan.status, Loan.Status.COMPLETED)

    def test_stale_version_is_rejected(self):
        loan = self.onboard()
        first = loan.payments.get(installment_no=1)
        plan = plan_payment(loan, list(loan.payments.all()), first.pk)
        Loan.objects.filter(pk=loan.pk).update(version=F("version") + 1)
        with self.assertRaises(ConcurrentModificationError):
            apply_plan(plan)
        first.refresh_from_db()
        self.assertEqual(first.status, Payment.Status.PENDING)
        loan.refresh_from_db()
        self.assertEqual(loan.total_paid, Decimal("0"))


class AmendmentServiceTest(LedgerServiceTestMixin, TestCase):
    def test_amend_keeps_paid_history(self):
        loan = self.onboard()
        first = loan.payments.get(installment_no=1)
        record_payment(first.pk)

        loan = amend_loan(loan.pk, new_amount=Decimal("2000"))
        first.refresh_from_db()
        self.assertEqual(first.status, Payment.Status.PAID)
        self.assertEqual(first.amount, Decimal("250"))

        pending = list(loan.payments.exclude(status=Payment.Status.PAID))
        self.assertEqual([p.installment_no for p in pending], [2, 3, 4, 5])
        self.assertEqual({p.amount for p in pending}, {Decimal("437.5")})
        self.assertEqual(loan.loan_amount, Decimal("2000"))
        self.assertEqual(loan.remaining_amount, Decimal("1750"))
        self.assertEqual(sum(p.amount for p in pending), loan.remaining_amount)
        self.assert_ledger_consistent(loan)

    def test_amend_start_date_only(self):
        loan = self.onboard()
        loan = amend_loan(loan.pk, new_start_date=date(2024, 1, 15))
        self.assertEqual(loan.loan_start_date, date(2024, 1, 15))
        self.assertEqual(loan.loan_amount, Decimal("1000"))
        self.assertEqual(
            list(loan.payments.values_list("due_date", flat=True)),
            [date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15), date(2024, 5, 15)],
        )

    def test_repeating_amendment_is_stable(self):
        loan = self.onboard()
        amend_loan(loan.pk, new_amount=Decimal("1600"))
        loan = amend_loan(loan.pk, new_amount=Decimal("1600"))
        self.assertEqual(loan.payments.count(), 4)
        self.assertEqual(sum(p.amount for p in loan.payments.all()), Decimal("1600"))

    def test_amend_retries_after_conflict(self):
        loan = self.onboard()
        calls = []

        def conflicting(plan):
            if not calls:
                calls.append(plan)
                raise ConcurrentModificationError()
            return apply_plan(plan)

        with mock.patch("loans.services.apply_plan", side_effect=conflicting):
            loan = amend_loan(loan.pk, new_amount=Decimal("800"))
        self.assertEqual(len(calls), 1)
        self.assertEqual(loan.loan_amount, Decimal("800"))

    def pay_all(self, loan):
        for payment in list(loan.payments.exclude(status=Payment.Status.PAID)):
            record_payment(payment.pk)
            self.assert_ledger_consistent(loan)

    def test_bi_weekly_amendment_after_fractional_payment_completes(self):
        loan = self.onboard(amount="100.01", frequency="Bi-Weekly")
        record_payment(loan.payments.get(installment_no=1).pk)

        loan = amend_loan(loan.pk, new_amount=Decimal("100"))
        pending = list(loan.payments.exclude(status=Payment.Status.PAID))
        self.assertEqual([p.installment_no for p in pending], list(range(2, 10)))
        self.assertEqual(sum(p.amount for p in pending), loan.remaining_amount)
        self.assertEqual(loan.remaining_amount, Decimal("87.49875"))

        self.pay_all(loan)
        self.assertEqual(loan.remaining_amount, Decimal("0"))
        self.assertEqual(loan.status, Loan.Status.COMPLETED)

    def test_monthly_amendment_after_fractional_payment_completes(self):
        loan = self.onboard(amount="100.01")
        record_payment(loan.payments.get(installment_no=1).pk)
        loan = amend_loan(loan.pk, new_amount=Decimal("100.03"), new_start_date=date(2024, 1, 31))

        self.pay_all(loan)
        self.assertEqual(loan.remaining_amount, Decimal("0"))
        self.assertEqual(loan.status, Loan.Status.COMPLETED)

    def test_amend_rejects_fractional_cents(self):
        loan = self.onboard()
        with self.assertRaises(ValidationError):
            amend_loan(loan.pk, new_amount=Decimal("100.015"))
        loan.refresh_from_db()
        self.assertEqual(loan.loan_amount, Decimal("1000"))

    def test_amend_missing_loan(self):
        with self.assertRaises(NotFoundError):
            amend_loan(999, new_amount=Decimal("10"))


class ReconciliationSweepTest(LedgerServiceTestMixin, TestCase):
    def overdue_ids(self):
        return set(Payment.objects.filter(status=Payment.Status.OVERDUE).values_list("pk", flat=True))

    def test_sweep_marks_past_due_installments(self):
        loan = self.onboard()
        report = sweep_overdue(utc(2023, 12, 15))
        self.assertEqual(report.installments_marked, 2)
        self.assertEqual(report.loans_updated, [loan.pk])
        self.assertEqual(report.failures, {})
        loan.refresh_from_db()
        self.assertEqual(loan.status, Loan.Status.OVERDUE)
        self.assertEqual(
            set(loan.payments.filter(status=Payment.Status.OVERDUE).values_list("installment_no", flat=True)),
            {1, 2},
        )

    def test_sweep_is_idempotent(self):
        self.onboard()
        now = utc(2023, 12, 15)
        sweep_overdue(now)
        first = self.overdue_ids()
        report = sweep_overdue(now)
        self.assertEqual(report.installments_marked, 0)
        self.assertEqual(self.overdue_ids(), first)

    def test_sweep_never_touches_paid(self):
        loan = self.onboard()
        first = loan.payments.get(installment_no=1)
        record_payment(first.pk)
        sweep_overdue(utc(2023, 12, 15))
        first.refresh_from_db()
        self.assertEqual(first.status, Payment.Status.PAID)

    def test_failure_is_isolated_per_loan(self):
        bad = self.onboard(email="bad@example.com")
        good = self.onboard(email="good@example.com")

        def flaky(loan, installments, now):
            if loan.pk == bad.pk:
                raise RuntimeError("corrupt record")
            return real_plan_reconciliation(loan, installments, now)

        with mock.patch("loans.services.plan_reconciliation", side_effect=flaky):
            report = sweep_overdue(utc(2023, 12, 15))

        self.assertIn(bad.pk, report.failures)
        self.assertEqual(report.loans_updated, [good.pk])
        good.refresh_from_db()
        bad.refresh_from_db()
        self.assertEqual(good.status, Loan.Status.OVERDUE)
        self.assertEqual(bad.status, Loan.Status.IN_PROGRESS)

    def test_overlapping_sweep_is_skipped(self):
        self.onboard()
        services._sweep_lock.acquire()
        try:
            self.assertIsNone(sweep_overdue(utc(2023, 12, 15)))
        finally:
            services._sweep_lock.release()
        self.assertEqual(self.overdue_ids(), set())

    def test_management_command(self):
        loan = self.onboard(start=date(2020, 1, 1))
        out = StringIO()
        call_command("reconcile_loans", stdout=out)
        self.assertIn("4 installments marked overdue", out.getvalue())
        loan.refresh_from_db()
        self.assertEqual(loan.status, Loan.Status.OVERDUE)

    def test_management_command_rejects_non_positive_interval(self):
        for interval in ("0", "-5"):
            with self.assertRaises(CommandError):
                call_command("reconcile_loans", "--every", interval, stdout=StringIO())


def workbook_bytes(rows) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(TEMPLATE_HEADERS)
    for row in rows:
        sheet.append(row)
    output = BytesIO()
    workbook.save(output)
    return output.getvalue()


class BulkImportTest(LedgerServiceTestMixin, TestCase):
    def test_rows_are_isolated(self):
        Client.objects.create(name="Existing", email="taken@example.com", assigned_staff=self.staff)
        rows = [
            (2, {"Name": "Ann", "Email": "ann@example.com", "Loan Amount": 1000, "Loan Start Date": "2023-10-01", "Assigned Staff": "Sarah Jones"}),
            (3, {"Name": "Bob", "Loan Amount": 500}),
            (4, {"name": "Cara", "email": "taken@example.com", "loanAmount": 500}),
            (5, {"Name": "Dan", "Email": "dan@example.com", "Loan Amount": -1}),
        ]
        report = import_rows(rows, self.admin)

        self.assertEqual(len(report.imported), 1)
        self.assertEqual([error["row"] for error in report.errors], [3, 4, 5])
        self.assertEqual(report.errors[0]["message"], "Missing Name, Email, or Loan Amount")
        ann = Client.objects.get(email="ann@example.com")
        self.assertEqual(ann.assigned_staff, self.staff)
        self.assertEqual(ann.loan.frequency, Frequency.MONTHLY)
        self.assertEqual(ann.loan.payments.count(), 4)

    def test_fractional_cent_amount_is_rejected(self):
        rows = [(2, {"Name": "Ann", "Email": "ann@example.com", "Loan Amount": 100.015})]
        report = import_rows(rows, self.admin)
        self.assertEqual(report.imported, [])
        self.assertEqual(
            report.errors, [{"row": 2, "message": "Loan amount cannot have more than 2 decimal places."}]
        )
        self.assertFalse(Client.objects.filter(email="ann@example.com").exists())

    def test_unknown_staff_defaults_to_uploader(self):
        rows = [(2, {"Name": "Ann", "Email": "ann@example.com", "Loan Amount": "1000", "Assigned Staff (Name)": "Nobody"})]
        import_rows(rows, self.admin)
        self.assertEqual(Client.objects.get(email="ann@example.com").assigned_staff, self.admin)

    def test_start_date_parsing(self):
        self.assertEqual(parse_start_date("2023-10-01"), START)
        self.assertEqual(parse_start_date(datetime(2023, 10, 1, 12, 0)), START)
        self.assertEqual(parse_start_date(45200), START)
        with self.assertRaises(ValidationError):
            parse_start_date("not a date")

    def test_read_template(self):
        rows = read_workbook(BytesIO(build_template()))
        self.assertEqual([number for number, _ in rows], [2, 3])
        self.assertEqual(rows[0][1]["Email"], "john@example.com")


class LoanAPITest(LedgerServiceTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.staff)

    def create_payload(self, **overrides):
        payload = {
            "name": "John Doe",
            "email": "john@example.com",
            "phone": "9876543210",
            "loan_amount": "1000",
            "loan_start_date": "2023-10-01",
        }
        payload.update(overrides)
        return payload

    def test_create_client_with_schedule(self):
        response = self.client.post(reverse("client-list"), data=self.create_payload(), format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        schedule = response.data["loan"]["schedule"]
        self.assertEqual(len(schedule), 4)
        self.assertEqual(schedule[0]["installment_no"], 1)
        self.assertEqual(schedule[0]["due_date"], "2023-11-01")
        self.assertEqual(sum(Decimal(p["amount"]) for p in schedule), Decimal("1000"))
        self.assertEqual(response.data["client"]["assigned_staff"], self.staff.pk)

    def test_create_bi_weekly(self):
        payload = self.create_payload(installment_frequency="Bi-Weekly", loan_start_date="01-10-2023")
        response = self.client.post(reverse("client-list"), data=payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(len(response.data["loan"]["schedule"]), 8)

    def test_create_rejects_invalid_input(self):
        response = self.client.post(
            reverse("client-list"), data=self.create_payload(installment_frequency="Weekly"), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        response = self.client.post(reverse("client-list"), data=self.create_payload(loan_amount="0"), format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_staff_only_see_assigned_clients(self):
        mine = self.onboard(email="mine@example.com")
        theirs = onboard_client(
            name="Other",
            email="theirs@example.com",
            assigned_staff=self.other_staff,
            loan_amount=Decimal("100"),
            loan_start_date=START,
        )
        response = self.client.get(reverse("client-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([c["id"] for c in response.data], [mine.client_id])
        self.assertEqual(response.data[0]["next_due"], "2023-11-01")

        response = self.client.get(reverse("client-detail", args=[theirs.client_id]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        response = self.client.get(reverse("loan-detail", args=[theirs.pk]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_missing_entities(self):
        self.assertEqual(self.client.get(reverse("client-detail", args=[999])).status_code, 404)
        self.assertEqual(self.client.get(reverse("loan-detail", args=[999])).status_code, 404)
        self.assertEqual(self.client.post(reverse("payment-pay", args=[999])).status_code, 404)

    def test_pay_installment(self):
        loan = self.onboard()
        first = loan.payments.get(installment_no=1)
        url = reverse("payment-pay", args=[first.pk])

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["payment"]["status"], "Paid")
        self.assertEqual(Decimal(response.data["loan"]["remaining_amount"]), Decimal("750"))

        response = self.client.post(url)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "already_paid")

    def test_pay_requires_ownership(self):
        loan = onboard_client(
            name="Other",
            email="theirs@example.com",
            assigned_staff=self.other_staff,
            loan_amount=Decimal("100"),
            loan_start_date=START,
        )
        first = loan.payments.get(installment_no=1)
        response = self.client.post(reverse("payment-pay", args=[first.pk]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        first.refresh_from_db()
        self.assertEqual(first.status, Payment.Status.PENDING)

    def test_update_amends_loan(self):
        loan = self.onboard()
        response = self.client.patch(
            reverse("client-detail", args=[loan.client_id]),
            data={"name": "Renamed", "loan_amount": "2000"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["client"]["name"], "Renamed")
        loan.refresh_from_db()
        self.assertEqual(loan.loan_amount, Decimal("2000"))
        self.assertEqual({p.amount for p in loan.payments.all()}, {Decimal("500")})

    def test_delete_is_admin_only(self):
        loan = self.onboard()
        url = reverse("client-detail", args=[loan.client_id])
        self.assertEqual(self.client.delete(url).status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        self.assertEqual(self.client.delete(url).status_code, status.HTTP_200_OK)
        self.assertFalse(Payment.objects.exists())

    def test_import_upload(self):
        self.client.force_authenticate(user=self.admin)
        content = workbook_bytes(
            [
                ["Ann", "ann@example.com", "555", 1000, "2023-10-01", "staff"],
                ["Bob", None, "555", 1000, "2023-10-01", None],
                ["Cara", "cara@example.com", None, 400, datetime(2023, 11, 15), None],
            ]
        )
        upload = SimpleUploadedFile("clients.xlsx", content, content_type=XLSX)
        response = self.client.post(reverse("import-excel"), data={"file": upload}, format="multipart")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["imported"], 2)
        self.assertEqual(response.data["errors"], [{"row": 3, "message": "Missing Name, Email, or Loan Amount"}])
        self.assertEqual(Client.objects.get(email="ann@example.com").assigned_staff, self.staff)
        self.assertEqual(Loan.objects.get(client__email="cara@example.com").loan_start_date, date(2023, 11, 15))

    def test_import_rejects_non_excel(self):
        self.client.force_authenticate(user=self.admin)
        upload = SimpleUploadedFile("clients.txt", b"plain text", content_type="text/plain")
        response = self.client.post(reverse("import-excel"), data={"file": upload}, format="multipart")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_import_is_admin_only(self):
        upload = SimpleUploadedFile("clients.xlsx", workbook_bytes([]), content_type=XLSX)
        response = self.client.post(reverse("import-excel"), data={"file": upload}, format="multipart")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_download_template(self):
        response = self.client.get(reverse("import-template"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], XLSX)
        sheet = load_workbook(BytesIO(response.content)).active
        self.assertEqual([cell.value for cell in sheet[1]], TEMPLATE_HEADERS)
