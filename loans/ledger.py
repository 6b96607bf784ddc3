"""Ledger rules tying a loan's balance to the payment state of its installments.

The functions here never write to the database. They read a loan and its
installments and return a :class:`LedgerPlan` describing the mutations; the
persistence side (``services.apply_plan``) applies it atomically.
"""
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from .exceptions import AlreadyPaidError, ConcurrentModificationError, NotFoundError, ValidationError
from .models import Loan, Payment
from .schedule import ScheduledInstallment, installment_amount, parse_principal, regenerate_schedule

PENDING = Payment.Status.PENDING
PAID = Payment.Status.PAID
OVERDUE = Payment.Status.OVERDUE

_TRANSITIONS = {
    PENDING: {OVERDUE, PAID},
    OVERDUE: {PAID},
    PAID: set(),
}


@dataclass
class LedgerPlan:
    loan_id: Optional[int]
    # None skips the optimistic version check (used by the overdue sweep).
    expected_version: Optional[int]
    loan_changes: Dict[str, object] = field(default_factory=dict)
    mark_paid: List[int] = field(default_factory=list)
    mark_overdue: List[int] = field(default_factory=list)
    delete_ids: List[int] = field(default_factory=list)
    inserts: List[ScheduledInstallment] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.loan_changes or self.mark_paid or self.mark_overdue or self.delete_ids or self.inserts)


def transition(current: str, target: str) -> str:
    if current == PAID and target == PAID:
        raise AlreadyPaidError()
    if target not in _TRANSITIONS.get(current, ()):
        raise ValidationError(f"Installment cannot move from {current} to {target}.")
    return target


def derive_loan_status(remaining_amount: Decimal, installment_statuses: Iterable[str]) -> str:
    if remaining_amount <= 0:
        return Loan.Status.COMPLETED
    if any(status == OVERDUE for status in installment_statuses):
        return Loan.Status.OVERDUE
    return Loan.Status.IN_PROGRESS


def paid_total(installments: Iterable[Payment]) -> Decimal:
    return sum((item.amount for item in installments if item.status == PAID), Decimal("0"))


def check_invariant(loan: Loan, installments: Sequence[Payment]) -> None:
    if paid_total(installments) != loan.total_paid:
        raise ConcurrentModificationError(
            f"Loan {loan.pk} total paid does not match its paid installments."
        )


def plan_payment(loan: Loan, installments: Sequence[Payment], installment_id: int) -> LedgerPlan:
    installments = list(installments)
    target = next((item for item in installments if item.pk == installment_id), None)
    if target is None:
        raise NotFoundError(f"Installment {installment_id} not found for loan {loan.pk}.")
    transition(target.status, PAID)
    check_invariant(loan, installments)

    total_paid = loan.total_paid + target.amount
    remaining = loan.loan_amount - total_paid
    statuses = [PAID if item.pk == target.pk else item.status for item in installments]
    return LedgerPlan(
        loan_id=loan.pk,
        expected_version=loan.version,
        loan_changes={
            "total_paid": total_paid,
            "remaining_amount": remaining,
            "status": derive_loan_status(remaining, statuses),
        },
        mark_paid=[target.pk],
    )


def plan_amendment(
    loan: Loan,
    installments: Sequence[Payment],
    new_amount=None,
    new_start_date: Optional[date] = None,
) -> LedgerPlan:
    """Replace every unsettled installment with a schedule over the new balance.

    Paid installments are kept as they are. The regenerated installments are
    numbered after the highest retained number so they never collide with it.
    """

    if new_amount is None and new_start_date is None:
        raise ValidationError("Provide a new loan amount or start date.")
    installments = list(installments)
    check_invariant(loan, installments)

    loan_amount = parse_principal(new_amount) if new_amount is not None else loan.loan_amount
    start_date = new_start_date or loan.loan_start_date
    settled = [item for item in installments if item.status == PAID]
    unsettled = [item for item in installments if item.status != PAID]
    remaining = loan_amount - loan.total_paid

    inserts = []
    if remaining > 0:
        offset = max((item.installment_no for item in settled), default=0)
        inserts = [
            replace(item, installment_no=item.installment_no + offset)
            for item in regenerate_schedule(remaining, start_date, loan.frequency)
        ]

    statuses = [PAID] * len(settled) + [item.status for item in inserts]
    return LedgerPlan(
        loan_id=loan.pk,
        expected_version=loan.version,
        loan_changes={
            "loan_amount": loan_amount,
            "loan_start_date": start_date,
            "installment_amount": installment_amount(remaining, loan.tenure) if remaining > 0 else Decimal("0"),
            "remaining_amount": remaining,
            "status": derive_loan_status(remaining, statuses),
        },
        delete_ids=[item.pk for item in unsettled],
        inserts=inserts,
    )


def is_past_due(due_date: date, now) -> bool:
    if isinstance(now, datetime):
        return now > datetime.combine(due_date, time.min, tzinfo=now.tzinfo)
    return now > due_date


def plan_overdue(installments: Iterable[Payment], now) -> List[Payment]:
    return [item for item in installments if item.status == PENDING and is_past_due(item.due_date, now)]


def plan_reconciliation(loan: Loan, installments: Sequence[Payment], now) -> LedgerPlan:
    installments = list(installments)
    overdue_ids = {item.pk for item in plan_overdue(installments, now)}
    statuses = [OVERDUE if item.pk in overdue_ids else item.status for item in installments]
    status = derive_loan_status(loan.loan_amount - loan.total_paid, statuses)

    plan = LedgerPlan(loan_id=loan.pk, expected_version=None, mark_overdue=sorted(overdue_ids))
    if status != loan.status:
        plan.loan_changes["status"] = status
    return plan
