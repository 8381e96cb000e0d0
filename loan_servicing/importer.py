"""
CSV Bulk Import

Registers (and optionally approves or disburses) many loans from one CSV
upload. Each row goes through the same operations as a single API call, and
a failing row is reported without stopping the rows after it.

Expected header (case-insensitive, spreadsheet-style aliases accepted):

    customer_id,principal,annual_rate_pct,term_months,start_date[,method][,loan_id][,status]

``status`` is ``pending`` (default), ``approved`` or ``disbursed``.
"""

import csv
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .exceptions import CsvImportError, InvalidInputError, ServicingError
from .loans import LoanManager
from .logging_config import get_logger, log_action

REQUIRED_COLUMNS = ("customer_id", "principal", "annual_rate_pct", "term_months", "start_date")
OPTIONAL_COLUMNS = ("method", "loan_id", "status")

COLUMN_ALIASES = {
    "customer id": "customer_id",
    "loan amount": "principal",
    "amount": "principal",
    "interest rate": "annual_rate_pct",
    "rate": "annual_rate_pct",
    "term (months)": "term_months",
    "term": "term_months",
    "start date": "start_date",
    "date applied": "start_date",
    "loan id": "loan_id",
    "amortization method": "method",
}

IMPORT_STATUSES = ("pending", "approved", "disbursed")


@dataclass
class ImportRowError:
    row: int
    error: str
    data: Dict[str, Any] = field(default_factory=dict)
    # Set when the row got as far as registering its loan
    loan_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'row': self.row, 'error': self.error, 'data': self.data}
        if self.loan_id:
            result['loan_id'] = self.loan_id
        return result


class PartialRowImport(ServicingError):
    """A row whose loan was registered but whose requested status was not reached"""

    code = "partial_import"

    def __init__(self, loan_id: str, status: str, cause: ServicingError):
        super().__init__(
            f"Loan {loan_id} registered as pending; {status} step failed: {cause.message}",
            {"loan_id": loan_id, "status": status, "cause": cause.code}
        )
        self.loan_id = loan_id


@dataclass
class ImportResult:
    success: int = 0
    loan_ids: List[str] = field(default_factory=list)
    errors: List[ImportRowError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'loan_ids': list(self.loan_ids),
            'errors': [error.to_dict() for error in self.errors],
        }


def normalize_header(name: Optional[str]) -> str:
    key = (name or "").strip().lower()
    return COLUMN_ALIASES.get(key, key.replace(" ", "_"))


class LoanImporter:
    """Per-row CSV import of loans into one tenant"""

    def __init__(self, loan_manager: LoanManager, max_rows: int = 5000):
        self.loan_manager = loan_manager
        self.max_rows = max_rows
        self.logger = get_logger("loan_servicing.importer")

    def import_csv(self, tenant_id: str, csv_text: str) -> ImportResult:
        """
        Import loans from CSV text

        Returns:
            ImportResult with the number of imported rows and one error per failed row
            (rows are numbered as in a spreadsheet, the header being row 1)

        Raises:
            CsvImportError: empty upload, missing required columns or too many rows
        """
        rows = self._parse(csv_text)
        result = ImportResult()

        for row_number, raw in rows:
            try:
                loan_id = self._import_row(tenant_id, raw)
            except (ServicingError, ValueError) as e:
                message = e.message if isinstance(e, ServicingError) else str(e)
                loan_id = e.loan_id if isinstance(e, PartialRowImport) else None
                result.errors.append(ImportRowError(row=row_number, error=message, data=raw, loan_id=loan_id))
                continue
            result.success += 1
            result.loan_ids.append(loan_id)

        log_action(
            self.logger, "info" if not result.errors else "warning",
            f"Imported {result.success} loan(s), {len(result.errors)} row(s) failed",
            tenant_id=tenant_id, action="import_loans", resource="loan",
            extra={"rows": len(rows), "failed_rows": [error.row for error in result.errors]}
        )
        return result

    def _parse(self, csv_text: str):
        if not csv_text or not csv_text.strip():
            raise CsvImportError("CSV upload is empty")

        reader = csv.reader(io.StringIO(csv_text.lstrip("\ufeff")))
        try:
            header = next(reader)
        except csv.Error as e:
            raise CsvImportError(f"Unreadable CSV: {e}")
        columns = [normalize_header(name) for name in header]
        missing = [name for name in REQUIRED_COLUMNS if name not in columns]
        if missing:
            raise CsvImportError(
                f"CSV is missing required column(s): {', '.join(missing)}", {"missing": missing}
            )

        rows = []
        try:
            for row_number, values in enumerate(reader, start=2):
                if not any(value.strip() for value in values):
                    continue
                rows.append((row_number, {
                    column: values[index].strip() if index < len(values) else ""
                    for index, column in enumerate(columns) if column
                }))
        except csv.Error as e:
            raise CsvImportError(f"Unreadable CSV: {e}")

        if len(rows) > self.max_rows:
            raise CsvImportError(f"CSV has {len(rows)} rows, the limit is {self.max_rows}")
        return rows

    def _import_row(self, tenant_id: str, row: Dict[str, str]) -> str:
        try:
            term_months = int(row["term_months"])
        except ValueError:
            raise InvalidInputError(f"term_months must be a whole number, got {row['term_months']!r}")
        try:
            start_date = date.fromisoformat(row["start_date"])
        except ValueError:
            raise InvalidInputError(f"start_date must be YYYY-MM-DD, got {row['start_date']!r}")

        status = (row.get("status") or "pending").lower()
        if status not in IMPORT_STATUSES:
            raise InvalidInputError(f"status must be one of {', '.join(IMPORT_STATUSES)}, got {status!r}")

        method = row.get("method") or "reducing_balance"
        loan = self.loan_manager.register_loan(
            tenant_id=tenant_id,
            customer_id=row["customer_id"],
            principal=row["principal"],
            annual_rate_pct=row["annual_rate_pct"],
            term_months=term_months,
            start_date=start_date,
            method=method,
            loan_id=row.get("loan_id") or None,
        )
        try:
            if status == "approved":
                self.loan_manager.approve_loan(tenant_id, loan.id)
            elif status == "disbursed":
                self.loan_manager.create_schedule(
                    tenant_id, loan.id, loan.principal, loan.annual_rate_pct,
                    loan.term_months, loan.start_date, loan.method
                )
        except ServicingError as e:
            raise PartialRowImport(loan.id, status, e)
        return loan.id
