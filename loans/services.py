import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Union

from django.db import transaction
from django.utils import timezone

from .conf import default_frequency
from .exceptions import ConcurrentModificationError, NotFoundError
from .ledger import (
    OVERDUE,
    PAID,
    PENDING,
    LedgerPlan,
    derive_loan_status,
    plan_amendment,
    plan_payment,
    plan_reconciliation,
)
from .models import Client, Loan, Payment
from .schedule import ScheduledInstallment, generate_schedule, parse_frequency, parse_principal

logger = logging.getLogger(__name__)

ALL_PAID = "All Paid"
CLIENT_FIELDS = ("name", "email", "phone", "status")
AMEND_ATTEMPTS = 3

_sweep_lock = threading.Lock()


def build_payments(loan: Loan, items: Iterable[ScheduledInstallment]) -> List[Payment]:
    return [
        Payment(
            loan=loan,
            client_id=loan.client_id,
            installment_no=item.installment_no,
            amount=item.amount,
            due_date=item.due_date,
            status=item.status,
        )
        for item in items
    ]


def get_loan(loan_id: int, lock: bool = False) -> Loan:
    queryset = Loan.objects.select_for_update() if lock else Loan.objects.all()
    try:
        return queryset.get(pk=loan_id)
    except Loan.DoesNotExist as exc:
        raise NotFoundError(f"Loan {loan_id} not found.") from exc


def apply_plan(plan: LedgerPlan) -> Loan:
    with transaction.atomic():
        loan = get_loan(plan.loan_id, lock=True)
        if plan.expected_version is not None and loan.version != plan.expected_version:
            raise ConcurrentModificationError(
                f"Loan {loan.pk} changed while the operation was being prepared."
            )

        payments = Payment.objects.filter(loan=loan)
        if plan.mark_paid:
            updated = (
                payments.filter(pk__in=plan.mark_paid)
                .exclude(status=PAID)
                .update(status=PAID, paid_at=timezone.now())
            )
            if updated != len(plan.mark_paid):
                raise ConcurrentModificationError(f"Installments of loan {loan.pk} were settled concurrently.")
        if plan.mark_overdue:
            payments.filter(pk__in=plan.mark_overdue, status=PENDING).update(status=OVERDUE)
        if plan.delete_ids:
            payments.filter(pk__in=plan.delete_ids).exclude(status=PAID).delete()
        if plan.inserts:
            Payment.objects.bulk_create(build_payments(loan, plan.inserts))

        for name, value in plan.loan_changes.items():
            setattr(loan, name, value)
        if plan.expected_version is not None:
            loan.version += 1
        loan.status = derive_loan_status(
            loan.loan_amount - loan.total_paid,
            payments.values_list("status", flat=True),
        )
        loan.save()
    return loan


def onboard_client(
    *,
    name: str,
    email: str,
    assigned_staff,
    loan_amount,
    loan_start_date: date,
    phone: str = "",
    frequency: Optional[str] = None,
) -> Loan:
    frequency = parse_frequency(frequency or default_frequency())
    schedule = generate_schedule(loan_amount, loan_start_date, frequency)
    principal = parse_principal(loan_amount)

    with transaction.atomic():
        client = Client.objects.create(
            name=name,
            email=email,
            phone=phone or "",
            assigned_staff=assigned_staff,
            status=Client.Status.ACTIVE,
        )
        loan = Loan.objects.create(
            client=client,
            loan_amount=principal,
            loan_start_date=loan_start_date,
            frequency=frequency,
            tenure=len(schedule),
            installment_amount=schedule[0].amount,
            status=Loan.Status.IN_PROGRESS,
        )
        Payment.objects.bulk_create(build_payments(loan, schedule))

    logger.info("Onboarded client %s with loan %s (%s x %s)", client.pk, loan.pk, loan.tenure, frequency)
    return loan


def record_payment(installment_id: int) -> Payment:
    try:
        installment = Payment.objects.select_related("loan").get(pk=installment_id)
    except Payment.DoesNotExist as exc:
        raise NotFoundError(f"Installment {installment_id} not found.") from exc

    loan = installment.loan
    plan = plan_payment(loan, list(loan.payments.all()), installment.pk)
    loan = apply_plan(plan)
    logger.info(
        "Recorded installment %s on loan %s, remaining %s",
        installment.installment_no,
        loan.pk,
        loan.remaining_amount,
    )
    installment.refresh_from_db()
    return installment


def amend_loan(loan_id: int, new_amount=None, new_start_date: Optional[date] = None) -> Loan:
    # The unsettled tail is always replaced in full, so recomputing from fresh
    # state after a version conflict is safe.
    for attempt in range(1, AMEND_ATTEMPTS + 1):
        loan = get_loan(loan_id)
        plan = plan_amendment(loan, list(loan.payments.all()), new_amount, new_start_date)
        try:
            loan = apply_plan(plan)
        except ConcurrentModificationError:
            if attempt == AMEND_ATTEMPTS:
                raise
            logger.warning("Amendment of loan %s conflicted, retrying (attempt %s)", loan_id, attempt)
            continue
        logger.info(
            "Amended loan %s: amount %s, start %s, %s installments regenerated",
            loan.pk,
            loan.loan_amount,
            loan.loan_start_date,
            len(plan.inserts),
        )
        return loan


def update_client(client: Client, loan_amount=None, loan_start_date: Optional[date] = None, **fields) -> Client:
    with transaction.atomic():
        changed = [name for name in CLIENT_FIELDS if name in fields]
        for name in changed:
            setattr(client, name, fields[name])
        if changed:
            client.save(update_fields=changed + ["updated_at"])

        if loan_amount is not None or loan_start_date is not None:
            loan = Loan.objects.filter(client=client).first()
            if loan is None:
                raise NotFoundError(f"Client {client.pk} has no loan.")
            amend_loan(loan.pk, loan_amount, loan_start_date)
    return client


def delete_client(client: Client) -> None:
    client_id = client.pk
    with transaction.atomic():
        client.delete()
    logger.info("Deleted client %s with its loan and installments", client_id)


def next_due(loan: Optional[Loan], installments: Iterable[Payment]) -> Union[date, str, None]:
    for item in sorted(installments, key=lambda payment: payment.due_date):
        if item.status in (PENDING, OVERDUE):
            return item.due_date
    if loan is not None and loan.status == Loan.Status.COMPLETED:
        return ALL_PAID
    return None


@dataclass
class SweepReport:
    now: Union[date, datetime]
    loans_checked: int = 0
    installments_marked: int = 0
    loans_updated: List[int] = field(default_factory=list)
    failures: Dict[int, str] = field(default_factory=dict)


def _reconcile_loan(loan_id: int, now) -> int:
    with transaction.atomic():
        loan = get_loan(loan_id, lock=True)
        plan = plan_reconciliation(loan, list(loan.payments.all()), now)
        if plan.is_empty:
            return 0
        apply_plan(plan)
    return len(plan.mark_overdue)


def sweep_overdue(now=None) -> Optional[SweepReport]:
    """Flag past-due Pending installments as Overdue and refresh loan status.

    Returns ``None`` without doing anything when another sweep is still running.
    """

    if not _sweep_lock.acquire(blocking=False):
        logger.warning("Overdue sweep already in progress, skipping")
        return None
    try:
        now = now or timezone.now()
        today = now.date() if isinstance(now, datetime) else now
        report = SweepReport(now=now)
        loan_ids = (
            Payment.objects.filter(status=PENDING, due_date__lte=today)
            .order_by("loan_id")
            .values_list("loan_id", flat=True)
            .distinct()
        )
        for loan_id in list(loan_ids):
            report.loans_checked += 1
            try:
                marked = _reconcile_loan(loan_id, now)
            except Exception as exc:
                logger.exception("Overdue reconciliation failed for loan %s", loan_id)
                report.failures[loan_id] = str(exc)
                continue
            if marked:
                report.installments_marked += marked
                report.loans_updated.append(loan_id)

        logger.info(
            "Overdue sweep at %s: %s loans checked, %s installments marked, %s failures",
            now,
            report.loans_checked,
            report.installments_marked,
            len(report.failures),
        )
        return report
    finally:
        _sweep_lock.release()
