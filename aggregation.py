"""Derived views over a user's transaction list.

Every function here is a pure function of its arguments. Records are plain
mappings shaped like ``TransactionService.serialize`` output::

    {"id": 1, "description": "Salary", "type": "income", "amount": 100,
     "date": "2024-01-05", "created_at": "2024-01-05T08:00:00"}

``date`` may also be a ``date`` and ``created_at`` a ``datetime`` or missing.
A non-numeric amount counts as 0. A record whose date cannot be parsed still
counts towards totals, running balances and type/search filters, but is left
out of every date-keyed view (daily/monthly series, insights, heatmap).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Sequence

from models import TransactionType


OTHER_CATEGORY = "Other"
HEATMAP_DAYS = 365
INSIGHT_MONTHS = 6

Record = Mapping[str, Any]


@dataclass(frozen=True)
class TransactionFilters:
    search: str = ""
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    type: Optional[TransactionType] = None


@dataclass(frozen=True)
class Page:
    items: list[dict[str, Any]]
    page: int
    page_size: int
    total: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "page": self.page,
            "page_size": self.page_size,
            "total": self.total,
            "total_pages": self.total_pages,
        }


@dataclass(frozen=True)
class DashboardParams:
    filters: TransactionFilters = field(default_factory=TransactionFilters)
    page: int = 1
    page_size: int = 25
    chart_granularity: str = "day"
    reference_date: Optional[date] = None


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).replace(
                tzinfo=None
            )
        except ValueError:
            return datetime.min
    return datetime.min


def coerce_amount(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return int(round(number))


def _type_of(record: Record) -> Optional[TransactionType]:
    try:
        return TransactionType(record.get("type"))
    except ValueError:
        return None


def signed_amount(record: Record) -> int:
    txn_type = _type_of(record)
    amount = coerce_amount(record.get("amount"))
    if txn_type == TransactionType.income:
        return amount
    if txn_type == TransactionType.expense:
        return -amount
    return 0


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def _chronological_key(record: Record) -> tuple[date, datetime]:
    return (
        parse_date(record.get("date")) or date.min,
        _parse_timestamp(record.get("created_at")),
    )


def order_chronologically(transactions: Iterable[Record]) -> list[Record]:
    """Oldest first: by date, then by created_at (missing sorts earliest)."""
    return sorted(transactions, key=_chronological_key)


def display_order(transactions: Iterable[Record]) -> list[Record]:
    return list(reversed(order_chronologically(transactions)))


def with_running_balance(
    transactions: Iterable[Record], *, newest_first: bool = False
) -> list[dict[str, Any]]:
    balance = 0
    result: list[dict[str, Any]] = []
    for record in order_chronologically(transactions):
        balance += signed_amount(record)
        entry = dict(record)
        entry["running_balance"] = balance
        result.append(entry)
    if newest_first:
        result.reverse()
    return result


def compute_totals(transactions: Iterable[Record]) -> dict[str, int]:
    income = 0
    expense = 0
    for record in transactions:
        txn_type = _type_of(record)
        if txn_type == TransactionType.income:
            income += coerce_amount(record.get("amount"))
        elif txn_type == TransactionType.expense:
            expense += coerce_amount(record.get("amount"))
    return {"income": income, "expense": expense, "balance": income - expense}


def filter_transactions(
    transactions: Iterable[Record], filters: Optional[TransactionFilters] = None
) -> list[Record]:
    filters = filters or TransactionFilters()
    query = (filters.search or "").lower()
    if not query.strip():
        query = ""
    result: list[Record] = []
    for record in transactions:
        if query and query not in str(record.get("description") or "").lower():
            continue
        if filters.date_from or filters.date_to:
            day = parse_date(record.get("date"))
            if day is None:
                continue
            if filters.date_from and day < filters.date_from:
                continue
            if filters.date_to and day > filters.date_to:
                continue
        if filters.type and _type_of(record) != filters.type:
            continue
        result.append(record)
    return result


def paginate(items: Sequence[Record], page: int, page_size: int) -> Page:
    if page_size < 1:
        raise ValueError("page_size must be positive")
    total = len(items)
    total_pages = math.ceil(total / page_size)
    if 1 <= page <= total_pages:
        start = (page - 1) * page_size
        sliced = [dict(item) for item in items[start : start + page_size]]
    else:
        sliced = []
    return Page(
        items=sliced,
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
    )


def _dated(transactions: Iterable[Record]) -> list[tuple[date, Record]]:
    dated = []
    for record in order_chronologically(transactions):
        day = parse_date(record.get("date"))
        if day is not None:
            dated.append((day, record))
    return dated


def _bucket_balance(transactions: Iterable[Record], key_fn) -> list[dict[str, Any]]:
    points: dict[str, int] = {}
    balance = 0
    for day, record in _dated(transactions):
        balance += signed_amount(record)
        points[key_fn(day)] = balance
    return [{"period": period, "balance": value} for period, value in points.items()]


def bucket_by_day(transactions: Iterable[Record]) -> list[dict[str, Any]]:
    return _bucket_balance(transactions, lambda day: day.isoformat())


def bucket_by_month(transactions: Iterable[Record]) -> list[dict[str, Any]]:
    return _bucket_balance(transactions, month_key)


def monthly_income_expense(transactions: Iterable[Record]) -> list[dict[str, Any]]:
    buckets: dict[str, dict[str, Any]] = {}
    for day, record in _dated(transactions):
        key = month_key(day)
        bucket = buckets.setdefault(key, {"period": key, "income": 0, "expense": 0})
        txn_type = _type_of(record)
        if txn_type == TransactionType.income:
            bucket["income"] += coerce_amount(record.get("amount"))
        elif txn_type == TransactionType.expense:
            bucket["expense"] += coerce_amount(record.get("amount"))
    return [buckets[key] for key in sorted(buckets)]


def _category_of(record: Record) -> str:
    description = str(record.get("description") or "").strip()
    return description or OTHER_CATEGORY


def _expense_totals_by_category(records: Iterable[Record]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for record in records:
        if _type_of(record) != TransactionType.expense:
            continue
        category = _category_of(record)
        totals[category] = totals.get(category, 0) + coerce_amount(record.get("amount"))
    return totals


def top_expense_categories(
    transactions: Iterable[Record], limit: int = 10
) -> list[dict[str, Any]]:
    totals = _expense_totals_by_category(transactions)
    # sorted() is stable, so equal totals keep first-encountered order
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [{"category": name, "total": total} for name, total in ranked[:limit]]


def _previous_month(day: date) -> tuple[int, int]:
    if day.month == 1:
        return day.year - 1, 12
    return day.year, day.month - 1


def expense_change_percent(current: int, previous: int) -> float:
    if previous > 0:
        return round((current - previous) / previous * 100, 1)
    return 100.0 if current > 0 else 0.0


def compute_insights(
    transactions: Iterable[Record], reference_date: date
) -> dict[str, Any]:
    dated = _dated(transactions)
    current = (reference_date.year, reference_date.month)
    previous = _previous_month(reference_date)

    current_month: list[Record] = []
    current_expense = 0
    previous_expense = 0
    day_expense: dict[date, int] = {}
    by_month: dict[str, int] = {}
    for day, record in dated:
        by_month[month_key(day)] = by_month.get(month_key(day), 0) + 1
        if _type_of(record) != TransactionType.expense:
            continue
        amount = coerce_amount(record.get("amount"))
        day_expense[day] = day_expense.get(day, 0) + amount
        if (day.year, day.month) == current:
            current_expense += amount
            current_month.append(record)
        elif (day.year, day.month) == previous:
            previous_expense += amount

    categories = top_expense_categories(current_month, limit=1)
    if categories:
        top_category = {
            "name": categories[0]["category"],
            "amount": categories[0]["total"],
        }
    else:
        top_category = {"name": "-", "amount": 0}

    top_day: dict[str, Any] = {"date": None, "amount": 0}
    for day, amount in day_expense.items():
        if top_day["date"] is None or amount > top_day["amount"]:
            top_day = {"date": day.isoformat(), "amount": amount}

    months = sorted(by_month)[-INSIGHT_MONTHS:]
    return {
        "current_month_expense": current_expense,
        "previous_month_expense": previous_expense,
        "expense_change_percent": expense_change_percent(
            current_expense, previous_expense
        ),
        "top_category": top_category,
        "top_day": top_day,
        "transactions_by_month": [
            {"period": key, "count": by_month[key]} for key in months
        ],
    }


def heatmap(transactions: Iterable[Record], reference_date: date) -> dict[str, int]:
    start = reference_date - timedelta(days=HEATMAP_DAYS - 1)
    counts: dict[str, int] = {}
    for day, _record in _dated(transactions):
        if start <= day <= reference_date:
            key = day.isoformat()
            counts[key] = counts.get(key, 0) + 1
    return counts


def build_dashboard(
    transactions: Sequence[Record], params: DashboardParams
) -> dict[str, Any]:
    reference_date = params.reference_date or date.today()
    entries = with_running_balance(transactions, newest_first=True)
    filtered = filter_transactions(entries, params.filters)
    page = paginate(filtered, params.page, params.page_size)
    if params.chart_granularity == "month":
        balance_series = bucket_by_month(transactions)
    else:
        balance_series = bucket_by_day(transactions)
    return {
        "totals": compute_totals(transactions),
        "transactions": page.as_dict(),
        "balance_series": {
            "granularity": params.chart_granularity,
            "points": balance_series,
        },
        "income_expense": monthly_income_expense(transactions),
        "expense_categories": top_expense_categories(transactions),
        "insights": compute_insights(transactions, reference_date),
        "heatmap": heatmap(transactions, reference_date),
    }
