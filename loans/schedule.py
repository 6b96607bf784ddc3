"""Repayment schedule generation.

Everything in this module is pure: given the same principal, start date and
frequency the same installments come back, and nothing touches the database.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from .exceptions import ValidationError
from .models import Frequency, Payment

MONTHLY_TENURE = 4
BI_WEEKLY_TENURE = 8
BI_WEEKLY_DAYS = 14
MONEY_PLACES = Decimal("0.01")
# Matches decimal_places of the installment amount columns.
AMOUNT_PLACES = Decimal("0.00001")

_FREQUENCY_ALIASES = {
    "monthly": Frequency.MONTHLY,
    "bi-weekly": Frequency.BI_WEEKLY,
    "biweekly": Frequency.BI_WEEKLY,
    "bi_weekly": Frequency.BI_WEEKLY,
}


@dataclass(frozen=True)
class ScheduledInstallment:
    installment_no: int
    amount: Decimal
    due_date: date
    status: str = Payment.Status.PENDING


def parse_frequency(value: Optional[str]) -> str:
    if not value or not isinstance(value, str):
        raise ValidationError("Installment frequency is required.")
    frequency = _FREQUENCY_ALIASES.get(value.strip().lower())
    if frequency is None:
        raise ValidationError("Installment frequency must be 'Monthly' or 'Bi-Weekly'.")
    return frequency


def parse_principal(value) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError("Loan amount is required.")
    try:
        principal = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Loan amount must be a number.") from exc
    if not principal.is_finite() or principal <= 0:
        raise ValidationError("Loan amount must be positive.")
    try:
        whole_cents = principal.quantize(MONEY_PLACES) == principal
    except InvalidOperation as exc:
        raise ValidationError("Loan amount is too large.") from exc
    if not whole_cents:
        raise ValidationError("Loan amount cannot have more than 2 decimal places.")
    return principal


def tenure_for(frequency: str) -> int:
    return BI_WEEKLY_TENURE if parse_frequency(frequency) == Frequency.BI_WEEKLY else MONTHLY_TENURE


def installment_amount(principal: Decimal, tenure: int) -> Decimal:
    """Equal split of the principal at stored precision.

    A whole-cent principal divides exactly by 4 or 8, so nothing is rounded
    away at onboarding.
    """

    return (principal / Decimal(tenure)).quantize(AMOUNT_PLACES)


def split_balance(balance: Decimal, tenure: int) -> List[Decimal]:
    # The last installment takes whatever the equal split could not represent.
    amount = installment_amount(balance, tenure)
    return [amount] * (tenure - 1) + [balance - amount * (tenure - 1)]


def add_months(start: date, months: int) -> date:
    # Day-of-month overflow rolls into the following month (Jan 31 + 1 -> Mar 3).
    first_of_month = start.replace(day=1) + relativedelta(months=months)
    return first_of_month + timedelta(days=start.day - 1)


def due_date_for(start_date: date, frequency: str, number: int) -> date:
    if frequency == Frequency.BI_WEEKLY:
        return start_date + timedelta(days=BI_WEEKLY_DAYS * number)
    return add_months(start_date, number)


def _build_schedule(amounts: List[Decimal], start_date: date, frequency: str) -> List[ScheduledInstallment]:
    if not isinstance(start_date, date):
        raise ValidationError("Loan start date is required.")
    return [
        ScheduledInstallment(
            installment_no=number,
            amount=amount,
            due_date=due_date_for(start_date, frequency, number),
        )
        for number, amount in enumerate(amounts, start=1)
    ]


def generate_schedule(principal, start_date: date, frequency: str = Frequency.MONTHLY) -> List[ScheduledInstallment]:
    principal = parse_principal(principal)
    frequency = parse_frequency(frequency)
    tenure = tenure_for(frequency)
    return _build_schedule([installment_amount(principal, tenure)] * tenure, start_date, frequency)


def regenerate_schedule(balance: Decimal, start_date: date, frequency: str) -> List[ScheduledInstallment]:
    """Schedule the outstanding balance of an amended loan.

    The balance may carry the sub-cent precision of already paid installments,
    so the split is settled exactly against it.
    """

    if balance <= 0:
        raise ValidationError("Nothing left to schedule.")
    frequency = parse_frequency(frequency)
    return _build_schedule(split_balance(balance, tenure_for(frequency)), start_date, frequency)
