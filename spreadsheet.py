import csv
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO, StringIO
from typing import Any, Iterable, Optional, Sequence
from zipfile import BadZipFile

from openpyxl import Workbook, load_workbook
from openpyxl.utils.datetime import from_excel
from openpyxl.utils.exceptions import InvalidFileException

from aggregation import Record, coerce_amount, with_running_balance
from formatting import format_date
from models import TransactionType
from schemas import MAX_AMOUNT, ImportRow


HEADERS = ["Date", "Description", "Income", "Expense", "Balance"]
SHEET_TITLE = "Transactions"
SUPPORTED_EXTENSIONS = (".xlsx", ".csv")
MIN_ROW_CELLS = 4

MONTHS = {
    "jan": 1,
    "januari": 1,
    "january": 1,
    "feb": 2,
    "februari": 2,
    "february": 2,
    "mar": 3,
    "maret": 3,
    "march": 3,
    "apr": 4,
    "april": 4,
    "mei": 5,
    "may": 5,
    "jun": 6,
    "juni": 6,
    "june": 6,
    "jul": 7,
    "juli": 7,
    "july": 7,
    "agu": 8,
    "agt": 8,
    "aug": 8,
    "agustus": 8,
    "august": 8,
    "sep": 9,
    "sept": 9,
    "september": 9,
    "okt": 10,
    "oct": 10,
    "oktober": 10,
    "october": 10,
    "nov": 11,
    "november": 11,
    "des": 12,
    "dec": 12,
    "desember": 12,
    "december": 12,
}

DAY_MONTH_YEAR = re.compile(r"^(\d{1,2})\s+([a-z]+)\.?\s+(\d{4})$")


class SpreadsheetError(ValueError):
    pass


@dataclass
class SpreadsheetPreview:
    rows: list[ImportRow] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: int = 0


def sanitize_cell_value(value: str) -> str:
    """
    Sanitize text cells to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_sheet_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            converted = from_excel(value)
        except (ValueError, OverflowError, TypeError):
            return None
        if isinstance(converted, datetime):
            return converted.date()
        return converted if isinstance(converted, date) else None

    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass

    match = DAY_MONTH_YEAR.match(text.lower())
    if match:
        month = MONTHS.get(match.group(2))
        if month:
            try:
                return date(int(match.group(3)), month, int(match.group(1)))
            except ValueError:
                return None

    for fmt in ("%d/%m/%Y", "%d.%m.%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_sheet_amount(value: Any) -> int:
    if isinstance(value, str):
        value = value.strip().replace(" ", "")
        if not value:
            return 0
    return max(coerce_amount(value), 0)


def _trim_row(raw: Sequence[Any]) -> list[Any]:
    cells = list(raw)
    while cells and (cells[-1] is None or str(cells[-1]).strip() == ""):
        cells.pop()
    return cells


def rows_to_import(raw_rows: Iterable[Sequence[Any]]) -> SpreadsheetPreview:
    preview = SpreadsheetPreview()
    for idx, raw in enumerate(raw_rows, start=1):
        if idx == 1:
            continue  # header
        cells = _trim_row(raw or [])
        if len(cells) < MIN_ROW_CELLS:
            if cells:
                preview.skipped += 1
            continue

        date_raw, description_raw, income_raw, expense_raw = cells[:4]
        description = str(description_raw).strip() if description_raw is not None else ""
        if not description:
            preview.skipped += 1
            continue

        txn_date = parse_sheet_date(date_raw)
        if txn_date is None:
            preview.errors.append(f"Row {idx}: invalid date {date_raw!r}")
            continue

        income = parse_sheet_amount(income_raw)
        expense = parse_sheet_amount(expense_raw)
        if income > expense:
            txn_type, amount = TransactionType.income, income
        elif expense > income:
            txn_type, amount = TransactionType.expense, expense
        else:
            preview.skipped += 1
            continue
        if amount > MAX_AMOUNT:
            preview.errors.append(f"Row {idx}: amount {amount} is too large")
            continue

        preview.rows.append(
            ImportRow(
                row=idx,
                description=description[:200],
                type=txn_type,
                amount=amount,
                date=txn_date,
            )
        )
    return preview


def read_xlsx_rows(content: bytes) -> list[tuple[Any, ...]]:
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError) as exc:
        raise SpreadsheetError("Could not read the Excel file") from exc
    try:
        if not workbook.worksheets:
            return []
        return list(workbook.worksheets[0].iter_rows(values_only=True))
    finally:
        workbook.close()


def read_csv_rows(content: bytes) -> list[list[str]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SpreadsheetError("CSV file must be UTF-8 encoded") from exc
    return list(csv.reader(StringIO(text)))


def parse_spreadsheet(filename: str, content: bytes) -> SpreadsheetPreview:
    name = (filename or "").lower()
    if name.endswith(".xlsx"):
        raw_rows: Iterable[Sequence[Any]] = read_xlsx_rows(content)
    elif name.endswith(".csv"):
        raw_rows = read_csv_rows(content)
    elif name.endswith(".xls"):
        raise SpreadsheetError("Legacy .xls files are not supported, save as .xlsx")
    else:
        raise SpreadsheetError("File must be an .xlsx or .csv spreadsheet")
    return rows_to_import(raw_rows)


def export_rows(transactions: Iterable[Record]) -> list[list[Any]]:
    rows: list[list[Any]] = []
    for entry in with_running_balance(transactions):
        is_income = entry.get("type") == TransactionType.income.value
        amount = coerce_amount(entry.get("amount"))
        rows.append(
            [
                format_date(entry.get("date")),
                sanitize_cell_value(str(entry.get("description") or "")),
                amount if is_income else 0,
                0 if is_income else amount,
                entry["running_balance"],
            ]
        )
    return rows


def export_xlsx(transactions: Iterable[Record]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_TITLE
    sheet.append(HEADERS)
    for row in export_rows(transactions):
        sheet.append(row)
    sheet.column_dimensions["A"].width = 14
    sheet.column_dimensions["B"].width = 40
    for column in ("C", "D", "E"):
        sheet.column_dimensions[column].width = 16
    output = BytesIO()
    workbook.save(output)
    return output.getvalue()


def export_csv(transactions: Iterable[Record]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(HEADERS)
    writer.writerows(export_rows(transactions))
    return output.getvalue()
