import logging
import sqlite3
from decimal import Decimal
from typing import Any, Dict, List, Optional

import database
from audit import AuditAction, AuditLog, list_audit_logs, record_audit
from book import Book
from config import settings
from database import format_timestamp, get_db_connection, initialize_database, transaction
from errors import ConflictError, ValidationError
from fine_policy import FinePolicy
from lending import LendingRecord, LendingService
from member import Member, MemberIdentifier, identifier_from
from utils.validators import ISBNValidator, NICValidator, TextValidator

logger = logging.getLogger(__name__)

_BOOK_FIELDS = ("title", "author", "genre", "description", "published_date", "copies_available")
_MEMBER_FIELDS = ("full_name", "email", "phone", "address", "date_of_birth")


class Library:
    """Manages the catalog, the readers and the lending desk on one database."""

    def __init__(self, db_file: Optional[str] = None, policy: Optional[FinePolicy] = None,
                 clock=None) -> None:
        # Ensure DB and tables exist; db_file lets tests point at their own file
        initialize_database(db_file)
        self.lending = LendingService(policy or FinePolicy.from_settings(settings), clock)

    @property
    def db_file(self) -> str:
        return database.DATABASE_FILE

    def _now(self):
        return self.lending.clock()

    # ------------------------- Catalog ------------------------- #
    def add_book(self, book: Book, performed_by: str = "system") -> Book:
        """Add a book to the catalog. Prevent duplicates by ISBN."""
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        if not ISBNValidator.is_valid_isbn(book.isbn):
            raise ValidationError("Invalid ISBN format.")
        self._validate_book_fields(book.title, book.author, book.copies_available)

        stamp = format_timestamp(self._now())
        with transaction() as conn:
            existing = conn.execute("SELECT id, is_deleted FROM books WHERE isbn = ?", (book.isbn,)).fetchone()
            if existing is not None and not existing["is_deleted"]:
                raise ValidationError(f"Book with ISBN {book.isbn} already exists.")
            if existing is not None:
                # re-adding a removed title restores its row so lending history stays attached
                conn.execute(
                    """
                    UPDATE books SET title = ?, author = ?, genre = ?, description = ?, published_date = ?,
                           copies_available = ?, is_deleted = 0, updated_at = ?
                    WHERE id = ?
                    """,
                    (book.title, book.author, book.genre, book.description, book.published_date,
                     book.copies_available, stamp, existing["id"]),
                )
                book_id = existing["id"]
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO books (isbn, title, author, genre, description, published_date,
                                       copies_available, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (book.isbn, book.title, book.author, book.genre, book.description,
                     book.published_date, book.copies_available, stamp, stamp),
                )
                book_id = cursor.lastrowid
            record_audit(conn, AuditAction.CREATE, performed_by, "Book", book.isbn,
                         details=f"{book.title} ({book.copies_available} copies)")
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()

        logger.info(f"Added book {book.isbn}: {book.title}")
        return Book.from_dict(dict(row))

    def find_book(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE isbn = ? AND is_deleted = 0", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_book(self, book_id: int) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ? AND is_deleted = 0", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def update_book(self, isbn: str, performed_by: str = "system", **changes: Any) -> Optional[Book]:
        """Update catalog fields of a book by ISBN. Returns the updated book or None if not found.

        Only the given columns are written. A correction of ``copies_available``
        is refused while copies are on loan.
        """
        changes = {k: (v.strip() if isinstance(v, str) else v) for k, v in changes.items() if v is not None}
        unknown = set(changes) - set(_BOOK_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValidationError("Nothing to update.")

        norm = ISBNValidator.normalize_isbn(isbn)
        with transaction() as conn:
            row = conn.execute("SELECT * FROM books WHERE isbn = ? AND is_deleted = 0", (norm,)).fetchone()
            if row is None:
                return None
            merged = {**dict(row), **changes}
            self._validate_book_fields(merged["title"], merged["author"], merged["copies_available"])
            if "copies_available" in changes:
                open_loans = conn.execute(
                    "SELECT COUNT(*) FROM lendings WHERE book_id = ? AND is_returned = 0", (row["id"],)
                ).fetchone()[0]
                if open_loans:
                    raise ConflictError(
                        f"Book {norm} has {open_loans} copies on loan; availability cannot be corrected now."
                    )
                changes["copies_available"] = int(changes["copies_available"])

            assignments = ", ".join(f"{name} = ?" for name in changes)
            conn.execute(
                f"UPDATE books SET {assignments}, updated_at = ? WHERE id = ?",
                (*changes.values(), format_timestamp(self._now()), row["id"]),
            )
            record_audit(conn, AuditAction.UPDATE, performed_by, "Book", norm,
                         details=", ".join(sorted(changes)))
        return self.find_book(norm)

    def remove_book(self, isbn: str, performed_by: str = "system") -> bool:
        """Soft-delete a book. Refused while any copy is still on loan."""
        book = self.find_book(isbn)
        if not book:
            return False
        with transaction() as conn:
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM lendings WHERE book_id = ? AND is_returned = 0", (book.id,)
            ).fetchone()[0]
            if open_loans:
                raise ConflictError(f"Book {book.isbn} has {open_loans} copies on loan and cannot be removed.")
            cursor = conn.execute(
                "UPDATE books SET is_deleted = 1, updated_at = ? WHERE id = ? AND is_deleted = 0",
                (format_timestamp(self._now()), book.id),
            )
            if cursor.rowcount == 0:
                return False
            record_audit(conn, AuditAction.DELETE, performed_by, "Book", book.isbn)
        logger.info(f"Removed book {book.isbn}")
        return True

    def list_books(self, include_deleted: bool = False) -> List[Book]:
        query = "SELECT * FROM books"
        if not include_deleted:
            query += " WHERE is_deleted = 0"
        return self._fetch_books(query + " ORDER BY title")

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title, author, ISBN or genre."""
        pattern = f"%{query.strip()}%"
        return self._fetch_books(
            """
            SELECT * FROM books
            WHERE is_deleted = 0 AND (title LIKE ? OR author LIKE ? OR isbn LIKE ? OR genre LIKE ?)
            ORDER BY title
            """,
            (pattern, pattern, pattern, pattern),
        )

    def list_genres(self) -> List[str]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT DISTINCT genre FROM books WHERE is_deleted = 0 AND genre IS NOT NULL AND genre != '' ORDER BY genre"
            ).fetchall()
            return [row[0] for row in rows]
        finally:
            conn.close()

    # ------------------------- Readers ------------------------- #
    def add_member(self, member: Member, performed_by: str = "system") -> Member:
        """Register a reader and assign a member ID."""
        member.nic = NICValidator.normalize_nic(member.nic)
        self._validate_member_fields(member.full_name, member.email)
        if not NICValidator.is_valid_nic(member.nic):
            raise ValidationError("Invalid NIC format.")

        stamp = format_timestamp(self._now())
        with transaction() as conn:
            clash = conn.execute(
                "SELECT nic, email FROM members WHERE nic = ? OR email = ?", (member.nic, member.email)
            ).fetchone()
            if clash is not None:
                field = "NIC" if clash["nic"] == member.nic else "email"
                raise ValidationError(f"A reader with this {field} already exists.")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO members (nic, full_name, email, phone, address, date_of_birth,
                                         is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (member.nic, member.full_name, member.email, member.phone, member.address,
                     member.date_of_birth, stamp, stamp),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError("A reader with this NIC or email already exists.") from e
            member_id = f"MBR-{cursor.lastrowid:05d}"
            conn.execute("UPDATE members SET member_id = ? WHERE id = ?", (member_id, cursor.lastrowid))
            record_audit(conn, AuditAction.CREATE, performed_by, "Reader", member_id, details=member.full_name)
            row = conn.execute("SELECT * FROM members WHERE id = ?", (cursor.lastrowid,)).fetchone()

        logger.info(f"Registered reader {member_id}")
        return Member.from_dict(dict(row))

    def find_member(self, identifier: MemberIdentifier) -> Optional[Member]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM members WHERE {identifier.column} = ? AND is_active = 1",
                (identifier.value,),
            ).fetchone()
            return Member.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def update_member(self, member_id: str, performed_by: str = "system", **changes: Any) -> Optional[Member]:
        changes = {k: v for k, v in changes.items() if v is not None}
        unknown = set(changes) - set(_MEMBER_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValidationError("Nothing to update.")

        member = self.find_member(identifier_from(member_id=member_id))
        if not member:
            return None
        for name, value in changes.items():
            setattr(member, name, value.strip() if isinstance(value, str) else value)
        member.email = member.email.lower()
        self._validate_member_fields(member.full_name, member.email)

        with transaction() as conn:
            try:
                conn.execute(
                    """
                    UPDATE members SET full_name = ?, email = ?, phone = ?, address = ?, date_of_birth = ?,
                           updated_at = ?
                    WHERE id = ?
                    """,
                    (member.full_name, member.email, member.phone, member.address, member.date_of_birth,
                     format_timestamp(self._now()), member.id),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError("A reader with this email already exists.") from e
            record_audit(conn, AuditAction.UPDATE, performed_by, "Reader", member.member_id,
                         details=", ".join(sorted(changes)))
        return self.find_member(identifier_from(member_id=member.member_id))

    def remove_member(self, member_id: str, performed_by: str = "system") -> bool:
        """Deactivate a reader. Refused while the reader still holds books."""
        member = self.find_member(identifier_from(member_id=member_id))
        if not member:
            return False
        with transaction() as conn:
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM lendings WHERE reader_id = ? AND is_returned = 0", (member.id,)
            ).fetchone()[0]
            if open_loans:
                raise ConflictError(f"Reader {member.member_id} still has {open_loans} books on loan.")
            conn.execute(
                "UPDATE members SET is_active = 0, updated_at = ? WHERE id = ?",
                (format_timestamp(self._now()), member.id),
            )
            record_audit(conn, AuditAction.DELETE, performed_by, "Reader", member.member_id)
        logger.info(f"Deactivated reader {member.member_id}")
        return True

    def list_members(self, include_inactive: bool = False) -> List[Member]:
        query = "SELECT * FROM members"
        if not include_inactive:
            query += " WHERE is_active = 1"
        return self._fetch_members(query + " ORDER BY full_name")

    def search_members(self, query: str) -> List[Member]:
        pattern = f"%{query.strip()}%"
        return self._fetch_members(
            """
            SELECT * FROM members
            WHERE is_active = 1 AND (full_name LIKE ? OR member_id LIKE ? OR nic LIKE ? OR email LIKE ?)
            ORDER BY full_name
            """,
            (pattern, pattern, pattern, pattern),
        )

    # ------------------------- Lending desk ------------------------- #
    def lend_book(self, isbn: str, member_id: Optional[str] = None, nic: Optional[str] = None,
                  performed_by: str = "system", notes: Optional[str] = None) -> LendingRecord:
        """Lend a copy to the reader named by member ID or NIC (member ID wins if both are given)."""
        return self.lending.lend_book(identifier_from(member_id, nic), isbn,
                                      performed_by=performed_by, notes=notes)

    def return_book(self, lending_id, performed_by: str = "system") -> LendingRecord:
        return self.lending.return_book(lending_id, performed_by=performed_by)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        """Get dashboard statistics from one snapshot at one instant."""
        now = format_timestamp(self._now())
        conn = get_db_connection()
        try:
            # a single statement reads one consistent snapshot
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM books WHERE is_deleted = 0) AS total_books,
                    (SELECT COALESCE(SUM(copies_available), 0) FROM books WHERE is_deleted = 0)
                        AS total_copies_available,
                    (SELECT COUNT(*) FROM members WHERE is_active = 1) AS total_readers,
                    (SELECT COUNT(*) FROM lendings WHERE is_returned = 0 AND due_date >= ?) AS active_lendings,
                    (SELECT COUNT(*) FROM lendings WHERE is_returned = 0 AND due_date < ?) AS overdue_lendings,
                    (SELECT GROUP_CONCAT(fine_amount, ' ') FROM lendings
                        WHERE is_returned = 1 AND fine_amount IS NOT NULL) AS fines
                """,
                (now, now),
            ).fetchone()
        finally:
            conn.close()

        fines = [Decimal(value) for value in (row["fines"] or "").split()]
        fines = [fine for fine in fines if fine > 0]
        return {
            "total_books": row["total_books"],
            "total_copies_available": row["total_copies_available"],
            "total_readers": row["total_readers"],
            "active_lendings": row["active_lendings"],
            "overdue_lendings": row["overdue_lendings"],
            "returned_overdue": len(fines),
            "total_fines": float(sum(fines)),
        }

    def list_audit_logs(self, action: Optional[str] = None, entity_type: Optional[str] = None,
                        limit: Optional[int] = None) -> List[AuditLog]:
        return list_audit_logs(action=action, entity_type=entity_type, limit=limit)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _validate_book_fields(title: Optional[str], author: Optional[str], copies) -> None:
        if not TextValidator.validate_title(title):
            raise ValidationError("Title is required.")
        if not TextValidator.validate_author(author):
            raise ValidationError("Author is required.")
        try:
            copies = int(copies)
        except (TypeError, ValueError) as e:
            raise ValidationError("Copies available must be a whole number.") from e
        if copies < 0:
            raise ValidationError("Copies available cannot be negative.")

    @staticmethod
    def _validate_member_fields(full_name: Optional[str], email: Optional[str]) -> None:
        if TextValidator.is_blank(full_name):
            raise ValidationError("Full name is required.")
        if not TextValidator.validate_email(email):
            raise ValidationError("A valid email is required.")

    @staticmethod
    def _fetch_books(query: str, params: tuple = ()) -> List[Book]:
        conn = get_db_connection()
        try:
            return [Book.from_dict(dict(row)) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    @staticmethod
    def _fetch_members(query: str, params: tuple = ()) -> List[Member]:
        conn = get_db_connection()
        try:
            return [Member.from_dict(dict(row)) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
