"""Filtering, sorting and paging over in-memory lending records."""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from errors import ValidationError
from fine_policy import LendingStatus, status

STATUS_FILTERS = ("all", "active", "overdue", "returned")
SORT_FIELDS = ("lend_date", "due_date", "return_date", "member", "title", "fine_amount")
SORT_ORDERS = ("asc", "desc")


def matches_search(record, term: str) -> bool:
    """Case-insensitive substring match on reader name/ID and book title/ISBN."""
    term = term.strip().lower()
    if not term:
        return True
    fields = (
        record.member.full_name,
        record.member.member_id,
        record.book.title,
        record.book.isbn,
    )
    return any(term in (value or "").lower() for value in fields)


def filter_lendings(records: Iterable, now: datetime, search: Optional[str] = None,
                    status_filter: str = "all") -> List:
    status_filter = (status_filter or "all").lower()
    if status_filter not in STATUS_FILTERS:
        raise ValidationError(f"Invalid status filter. Allowed: {', '.join(STATUS_FILTERS)}")

    filtered = list(records)
    if search:
        filtered = [r for r in filtered if matches_search(r, search)]
    if status_filter != "all":
        wanted = LendingStatus(status_filter)
        filtered = [r for r in filtered if status(r, now) is wanted]
    return filtered


def _return_date_key(record) -> Tuple[bool, datetime]:
    # open records sort after closed ones in ascending order
    return (record.return_date is None, record.return_date or record.lend_date)


_SORT_KEYS: Dict[str, Callable[[Any], Any]] = {
    "lend_date": lambda r: r.lend_date,
    "due_date": lambda r: r.due_date,
    "return_date": _return_date_key,
    "member": lambda r: (r.member.full_name or "").lower(),
    "title": lambda r: (r.book.title or "").lower(),
    "fine_amount": lambda r: r.fine_amount or Decimal("0"),
}


def sort_lendings(records: Iterable, sort_by: str = "lend_date", order: str = "desc") -> List:
    if sort_by not in _SORT_KEYS:
        raise ValidationError(f"Invalid sort_by. Allowed: {', '.join(SORT_FIELDS)}")
    if order not in SORT_ORDERS:
        raise ValidationError("Invalid order. Allowed: asc, desc")
    # id as a tie-breaker makes the order of equal keys deterministic; it follows the sort direction
    key = _SORT_KEYS[sort_by]
    return sorted(records, key=lambda r: (key(r), r.id or 0), reverse=(order == "desc"))


def paginate(items: List[Any], page: int, page_size: int) -> Tuple[List[Any], Dict[str, int]]:
    """Return one page of items along with paging metadata."""
    total = len(items)
    page = max(page, 1)
    page_size = max(page_size, 1)
    start = (page - 1) * page_size
    return items[start:start + page_size], {
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(total / page_size),
    }
