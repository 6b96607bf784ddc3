"""Bulk onboarding of clients and loans from an Excel workbook."""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from io import BytesIO
from typing import Dict, Iterable, List, Tuple
from zipfile import BadZipFile

from dateutil import parser as date_parser
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.utils import timezone
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .conf import import_max_rows
from .exceptions import LoanLedgerError, ValidationError
from .models import Client, Frequency
from .services import onboard_client

logger = logging.getLogger(__name__)

TEMPLATE_HEADERS = [
    "Name",
    "Email",
    "Phone",
    "Loan Amount",
    "Loan Start Date (YYYY-MM-DD)",
    "Assigned Staff (Name)",
]
TEMPLATE_SAMPLES = [
    ["John Doe", "john@example.com", "9876543210", 10000, "2023-10-01", "Admin"],
    ["Jane Smith", "jane@example.com", "9123456780", 5000, "2023-11-15", "Sarah Jones"],
]
COLUMN_ALIASES = {
    "name": ("Name", "name"),
    "email": ("Email", "email"),
    "phone": ("Phone", "phone"),
    "loan_amount": ("Loan Amount", "loanAmount"),
    "loan_start_date": ("Loan Start Date (YYYY-MM-DD)", "Loan Start Date", "loanStartDate"),
    "staff_name": ("Assigned Staff (Name)", "Assigned Staff", "assignedStaff"),
}
EXCEL_EPOCH = date(1899, 12, 30)


@dataclass
class ImportReport:
    imported: List[int] = field(default_factory=list)
    errors: List[Dict[str, object]] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "message": f"Import completed. {len(self.imported)} imported, {len(self.errors)} failed.",
            "imported": len(self.imported),
            "errors": self.errors,
        }


def build_template() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Template"
    sheet.append(TEMPLATE_HEADERS)
    for sample in TEMPLATE_SAMPLES:
        sheet.append(sample)
    output = BytesIO()
    workbook.save(output)
    return output.getvalue()


def read_workbook(file) -> List[Tuple[int, dict]]:
    """Return ``(row_number, {header: value})`` pairs from the first sheet."""

    workbook = load_workbook(file, read_only=True, data_only=True)
    try:
        rows = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        keys = ["" if cell is None else str(cell).strip() for cell in header]
        records = []
        for row_number, values in enumerate(rows, start=2):
            if all(value in (None, "") for value in values):
                continue
            records.append((row_number, dict(zip(keys, values))))
        return records
    finally:
        workbook.close()


def pick(row: dict, key: str):
    for column in COLUMN_ALIASES[key]:
        value = row.get(column)
        if value not in (None, ""):
            return value
    return None


def parse_start_date(value) -> date:
    if value in (None, ""):
        return timezone.localdate()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return EXCEL_EPOCH + timedelta(days=int(value))
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"Invalid loan start date '{value}'.") from exc


def staff_directory() -> Dict[str, object]:
    directory = {}
    for user in get_user_model().objects.filter(is_active=True):
        directory[user.get_username().lower()] = user
        full_name = user.get_full_name().strip().lower()
        if full_name:
            directory.setdefault(full_name, user)
    return directory


def import_row(row: dict, uploader, staff: Dict[str, object]) -> Client:
    name = pick(row, "name")
    email = pick(row, "email")
    loan_amount = pick(row, "loan_amount")
    if not name or not email or not loan_amount:
        raise ValidationError("Missing Name, Email, or Loan Amount")

    email = str(email).strip()
    try:
        validate_email(email)
    except DjangoValidationError as exc:
        raise ValidationError(f"Invalid email {email}") from exc
    if Client.objects.filter(email__iexact=email).exists():
        raise ValidationError(f"Client with email {email} already exists")

    staff_name = pick(row, "staff_name")
    assigned_staff = uploader
    if staff_name:
        assigned_staff = staff.get(str(staff_name).strip().lower(), uploader)

    phone = pick(row, "phone")
    loan = onboard_client(
        name=str(name).strip(),
        email=email,
        phone="" if phone is None else str(phone),
        assigned_staff=assigned_staff,
        loan_amount=loan_amount,
        loan_start_date=parse_start_date(pick(row, "loan_start_date")),
        frequency=Frequency.MONTHLY,
    )
    return loan.client


def import_rows(rows: Iterable[Tuple[int, dict]], uploader) -> ImportReport:
    rows = list(rows)
    if len(rows) > import_max_rows():
        raise ValidationError(f"Import is limited to {import_max_rows()} rows.")

    staff = staff_directory()
    report = ImportReport()
    for row_number, row in rows:
        try:
            client = import_row(row, uploader, staff)
        except LoanLedgerError as exc:
            report.errors.append({"row": row_number, "message": exc.message})
            continue
        except Exception as exc:
            logger.exception("Import of row %s failed", row_number)
            report.errors.append({"row": row_number, "message": str(exc)})
            continue
        report.imported.append(client.pk)

    logger.info("Imported %s clients, %s rows failed", len(report.imported), len(report.errors))
    return report


def import_workbook(file, uploader) -> ImportReport:
    try:
        rows = read_workbook(file)
    except (InvalidFileException, BadZipFile, KeyError, OSError) as exc:
        raise ValidationError("Only Excel (.xlsx) files are allowed.") from exc
    return import_rows(rows, uploader)
