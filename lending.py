"""The lending ledger and the lend/return workflow.

``LendingService.lend_book`` and ``LendingService.return_book`` are the only
code paths that move a book's ``copies_available`` after creation. Each runs
as one ``BEGIN IMMEDIATE`` transaction: the availability change, the ledger
row and the audit entry commit together or not at all, and concurrent
writers on the same book or record are serialized by SQLite's write lock.
The guarded ``UPDATE ... WHERE`` clauses keep the invariants even if that
serialization were ever relaxed.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from audit import AuditAction, record_audit
from book import Book
from database import format_timestamp, get_db_connection, parse_timestamp, transaction, utc_now
from errors import AlreadyReturnedError, ConflictError, NotFoundError, UnavailableError, ValidationError
from fine_policy import FinePolicy, LendingStatus, days_overdue, status
from member import ByMemberId, ByNic, Member, MemberIdentifier
from queries import filter_lendings, sort_lendings
from utils.validators import ISBNValidator

logger = logging.getLogger(__name__)

_RECORD_QUERY = """
    SELECT l.id, l.lend_date, l.due_date, l.return_date, l.is_returned, l.fine_amount,
           l.lent_by, l.returned_by, l.notes,
           b.id AS book_id, b.title AS book_title, b.isbn AS book_isbn, b.author AS book_author,
           m.id AS reader_id, m.full_name AS reader_full_name, m.member_id AS reader_member_id,
           m.nic AS reader_nic, m.email AS reader_email
    FROM lendings l
    JOIN books b ON b.id = l.book_id
    JOIN members m ON m.id = l.reader_id
"""


class LendingRecord:
    """One copy of one book on loan to one member."""

    def __init__(self, id: int, book: Book, member: Member, lend_date: datetime,
                 due_date: datetime, return_date: Optional[datetime] = None,
                 is_returned: bool = False, fine_amount: Optional[Decimal] = None,
                 lent_by: Optional[str] = None, returned_by: Optional[str] = None,
                 notes: Optional[str] = None) -> None:
        self.id = id
        self.book = book
        self.member = member
        self.lend_date = lend_date
        self.due_date = due_date
        self.return_date = return_date
        self.is_returned = is_returned
        self.fine_amount = fine_amount
        self.lent_by = lent_by
        self.returned_by = returned_by
        self.notes = notes

    def status(self, now: datetime) -> LendingStatus:
        return status(self, now)

    def days_overdue(self, now: datetime) -> int:
        return days_overdue(self, now)

    def is_overdue(self, now: datetime) -> bool:
        return self.status(now) is LendingStatus.OVERDUE

    def to_dict(self, now: datetime) -> dict:
        return {
            "id": self.id,
            "book": self.book.summary(),
            "member": self.member.summary(),
            "lend_date": format_timestamp(self.lend_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date),
            "is_returned": self.is_returned,
            "is_overdue": self.is_overdue(now),
            "status": self.status(now).value,
            "days_overdue": self.days_overdue(now),
            "fine_amount": float(self.fine_amount) if self.fine_amount is not None else None,
            "lent_by": self.lent_by,
            "returned_by": self.returned_by,
            "notes": self.notes,
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "LendingRecord":
        book = Book(
            id=row["book_id"],
            title=row["book_title"],
            author=row["book_author"],
            isbn=row["book_isbn"],
        )
        member = Member(
            id=row["reader_id"],
            member_id=row["reader_member_id"],
            full_name=row["reader_full_name"],
            nic=row["reader_nic"],
            email=row["reader_email"],
        )
        fine = row["fine_amount"]
        return LendingRecord(
            id=row["id"],
            book=book,
            member=member,
            lend_date=parse_timestamp(row["lend_date"]),
            due_date=parse_timestamp(row["due_date"]),
            return_date=parse_timestamp(row["return_date"]),
            is_returned=bool(row["is_returned"]),
            fine_amount=Decimal(fine) if fine is not None else None,
            lent_by=row["lent_by"],
            returned_by=row["returned_by"],
            notes=row["notes"],
        )


class LendingService:
    """Lend and return copies, and read the ledger."""

    def __init__(self, policy: Optional[FinePolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.policy = policy or FinePolicy()
        self.clock = clock or utc_now

    # ------------------------- Workflow ------------------------- #
    def lend_book(self, identifier: MemberIdentifier, isbn: str,
                  performed_by: str = "system", notes: Optional[str] = None) -> LendingRecord:
        """Lend one copy of the book with ``isbn`` to the member named by ``identifier``.

        Not idempotent: each call lends another copy.
        """
        if not isinstance(identifier, (ByMemberId, ByNic)):
            raise ValidationError("Provide either a member ID or a NIC.")
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not isbn:
            raise ValidationError("ISBN is required.")

        with transaction() as conn:
            member = self._resolve_member(conn, identifier)
            book_row = conn.execute(
                "SELECT id, title, copies_available FROM books WHERE isbn = ? AND is_deleted = 0",
                (isbn,),
            ).fetchone()
            if book_row is None:
                raise NotFoundError(f"No book found with ISBN {isbn}.")
            if book_row["copies_available"] <= 0:
                logger.warning(f"Lend refused: no copies of {isbn} left")
                raise UnavailableError(f"No copies of '{book_row['title']}' are available.")

            now = self.clock()
            due = self.policy.due_date_for(now)
            stamp = format_timestamp(now)
            cursor = conn.execute(
                """
                UPDATE books SET copies_available = copies_available - 1, updated_at = ?
                WHERE id = ? AND copies_available > 0 AND is_deleted = 0
                """,
                (stamp, book_row["id"]),
            )
            if cursor.rowcount != 1:
                logger.warning(f"Lend of {isbn} lost the race for the last copy")
                raise ConflictError("The last copy was lent by another request. Please retry.")

            cursor = conn.execute(
                """
                INSERT INTO lendings (book_id, reader_id, lend_date, due_date, is_returned, lent_by, notes)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (book_row["id"], member.id, stamp, format_timestamp(due), performed_by, notes),
            )
            lending_id = cursor.lastrowid
            record_audit(
                conn, AuditAction.LEND, performed_by, "Lending", lending_id,
                details=f"Lent {isbn} to {member.member_id}", timestamp=now,
            )
            record = self._fetch_one(conn, lending_id)

        logger.info(f"Lending {lending_id}: {isbn} lent to {member.member_id}, due {record.due_date.date()}")
        return record

    def return_book(self, lending_id, performed_by: str = "system") -> LendingRecord:
        """Close an open lending record, assess any fine and release the copy."""
        lending_id = self._coerce_id(lending_id)
        with transaction() as conn:
            row = conn.execute(
                "SELECT id, book_id, due_date, is_returned FROM lendings WHERE id = ?",
                (lending_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Lending record {lending_id} not found.")
            if row["is_returned"]:
                logger.warning(f"Return refused: lending {lending_id} already returned")
                raise AlreadyReturnedError(f"Lending record {lending_id} has already been returned.")

            now = self.clock()
            fine = self.policy.fine_for(parse_timestamp(row["due_date"]), now)
            stamp = format_timestamp(now)
            cursor = conn.execute(
                """
                UPDATE lendings SET return_date = ?, is_returned = 1, fine_amount = ?, returned_by = ?
                WHERE id = ? AND is_returned = 0
                """,
                (stamp, str(fine) if fine is not None else None, performed_by, lending_id),
            )
            if cursor.rowcount != 1:
                raise ConflictError(f"Lending record {lending_id} was closed by another request.")

            cursor = conn.execute(
                "UPDATE books SET copies_available = copies_available + 1, updated_at = ? WHERE id = ?",
                (stamp, row["book_id"]),
            )
            if cursor.rowcount != 1:
                raise ConflictError(f"Book for lending record {lending_id} disappeared.")

            details = f"Fine {fine}" if fine is not None else "Returned on time"
            record_audit(conn, AuditAction.RETURN, performed_by, "Lending", lending_id,
                         details=details, timestamp=now)
            record = self._fetch_one(conn, lending_id)

        logger.info(f"Lending {lending_id} returned; {details.lower()}")
        return record

    # ------------------------- Ledger reads ------------------------- #
    def get_lending(self, lending_id) -> LendingRecord:
        lending_id = self._coerce_id(lending_id)
        conn = get_db_connection()
        try:
            return self._fetch_one(conn, lending_id)
        finally:
            conn.close()

    def list_lendings(self, search: Optional[str] = None, status_filter: str = "all",
                      sort_by: str = "lend_date", order: str = "desc") -> List[LendingRecord]:
        records = filter_lendings(self._fetch_all(), self.clock(), search=search, status_filter=status_filter)
        return sort_lendings(records, sort_by=sort_by, order=order)

    def list_overdue(self) -> List[LendingRecord]:
        now = self.clock()
        records = self._fetch_all("WHERE l.is_returned = 0 AND l.due_date < ?", (format_timestamp(now),))
        return sort_lendings([r for r in records if r.is_overdue(now)], sort_by="due_date", order="asc")

    def list_returned_overdue(self) -> List[LendingRecord]:
        """Returned records that incurred a fine."""
        records = self._fetch_all("WHERE l.is_returned = 1 AND l.fine_amount IS NOT NULL")
        fined = [r for r in records if r.fine_amount is not None and r.fine_amount > 0]
        return sort_lendings(fined, sort_by="return_date", order="desc")

    def overdue_notices(self, performed_by: str = "system") -> List[dict]:
        """One notice per reader holding overdue books, with the fine accrued so far.

        Notices are returned to the caller for delivery; the run itself is audited.
        """
        now = self.clock()
        notices: Dict[int, dict] = {}
        for record in self.list_overdue():
            notice = notices.setdefault(record.member.id, {"member": record.member.summary(), "items": []})
            fine = self.policy.fine_for(record.due_date, now)
            notice["items"].append({
                "lending_id": record.id,
                "title": record.book.title,
                "isbn": record.book.isbn,
                "due_date": format_timestamp(record.due_date),
                "days_overdue": record.days_overdue(now),
                "fine_to_date": float(fine) if fine is not None else 0.0,
            })

        with transaction() as conn:
            record_audit(conn, AuditAction.OTHER, performed_by, "Lending", "overdue-notices",
                         details=f"Prepared overdue notices for {len(notices)} readers", timestamp=now)
        logger.info(f"Prepared overdue notices for {len(notices)} readers")
        return list(notices.values())

    def lendings_for_book(self, isbn: str) -> List[LendingRecord]:
        isbn = ISBNValidator.normalize_isbn(isbn)
        return sort_lendings(self._fetch_all("WHERE b.isbn = ?", (isbn,)))

    def lendings_for_member(self, identifier: MemberIdentifier) -> List[LendingRecord]:
        where = f"WHERE m.{identifier.column} = ?"
        return sort_lendings(self._fetch_all(where, (identifier.value,)))

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _coerce_id(lending_id) -> int:
        try:
            return int(lending_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid lending id: {lending_id!r}") from exc

    @staticmethod
    def _resolve_member(conn: sqlite3.Connection, identifier: MemberIdentifier) -> Member:
        row = conn.execute(
            f"SELECT * FROM members WHERE {identifier.column} = ? AND is_active = 1",
            (identifier.value,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"No member found with {identifier}.")
        return Member.from_dict(dict(row))

    @staticmethod
    def _fetch_one(conn: sqlite3.Connection, lending_id: int) -> LendingRecord:
        row = conn.execute(_RECORD_QUERY + " WHERE l.id = ?", (lending_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Lending record {lending_id} not found.")
        return LendingRecord.from_row(row)

    @staticmethod
    def _fetch_all(where: str = "", params: tuple = ()) -> List[LendingRecord]:
        conn = get_db_connection()
        try:
            rows = conn.execute(f"{_RECORD_QUERY} {where} ORDER BY l.id", params).fetchall()
            return [LendingRecord.from_row(row) for row in rows]
        finally:
            conn.close()
