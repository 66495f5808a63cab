from contextlib import contextmanager

import pytest

import library
from book import Book
from conftest import DUNE_ISBN, ULYSSES_ISBN
from database import get_db_connection
from errors import ConflictError, ValidationError
from member import Member, identifier_from


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.add_book(Book("Ulysses", "James Joyce", "978-0-19-953567-5", copies_available=2))

    assert book.isbn == ULYSSES_ISBN
    assert book.id is not None
    assert lib.find_book(ULYSSES_ISBN).copies_available == 2
    assert [b.title for b in lib.list_books()] == ["Ulysses"]
    assert lib.get_book(book.id).isbn == ULYSSES_ISBN
    assert lib.get_book(book.id + 100) is None


def test_book_and_member_display(stocked):
    assert str(stocked.find_book(DUNE_ISBN)) == f"Dune by Frank Herbert (ISBN: {DUNE_ISBN})"
    member = stocked.find_member(identifier_from(member_id="MBR-00002"))
    assert str(member) == "Kamala Silva (MBR-00002)"
    assert str(identifier_from(nic="123456789V")) == "NIC 123456789V"


def test_add_duplicate_isbn(lib):
    lib.add_book(Book("Test Book", "Test Author", ULYSSES_ISBN))

    with pytest.raises(ValidationError, match=f"Book with ISBN {ULYSSES_ISBN} already exists."):
        lib.add_book(Book("Test Book", "Test Author", ULYSSES_ISBN))

    assert len(lib.list_books()) == 1


@pytest.mark.parametrize("book", [
    Book("Bad ISBN", "Author", "9780321765723"),
    Book("   ", "Author", ULYSSES_ISBN),
    Book("Title", "12345", ULYSSES_ISBN),
    Book("Title", "Author", ULYSSES_ISBN, copies_available=-1),
])
def test_add_book_validation(lib, book):
    with pytest.raises(ValidationError):
        lib.add_book(book)
    assert lib.list_books() == []


def test_search_books_and_genres(stocked):
    assert [b.title for b in stocked.search_books("herbert")] == ["Dune"]
    assert [b.title for b in stocked.search_books("classic")] == ["Ulysses"]
    assert stocked.search_books("nothing-like-this") == []
    assert stocked.list_genres() == ["Classic", "Science Fiction"]


def test_update_book(stocked):
    updated = stocked.update_book(DUNE_ISBN, performed_by="editor", copies_available=4, genre="SF")
    assert updated.copies_available == 4
    assert updated.genre == "SF"
    assert stocked.update_book("9780134686097", title="Missing") is None

    with pytest.raises(ValidationError):
        stocked.update_book(DUNE_ISBN, isbn="0306406152")
    with pytest.raises(ValidationError):
        stocked.update_book(DUNE_ISBN, copies_available=-2)

    entries = stocked.list_audit_logs(action="UPDATE", entity_type="Book")
    assert [(e.performed_by, e.entity_id) for e in entries] == [("editor", DUNE_ISBN)]


def test_update_book_keeps_lends_made_before_the_write(stocked, monkeypatch):
    real_transaction = library.transaction

    @contextmanager
    def lend_first():
        # another desk lends a copy just before the update takes the write lock
        stocked.lend_book(ULYSSES_ISBN, member_id="MBR-00001")
        with real_transaction() as conn:
            yield conn

    monkeypatch.setattr(library, "transaction", lend_first)
    updated = stocked.update_book(ULYSSES_ISBN, title="Ulysses (annotated)")

    assert updated.title == "Ulysses (annotated)"
    assert stocked.find_book(ULYSSES_ISBN).copies_available == 2 - 1


def test_update_book_refuses_availability_correction_during_loans(stocked):
    record = stocked.lend_book(ULYSSES_ISBN, member_id="MBR-00001")

    with pytest.raises(ConflictError, match="on loan"):
        stocked.update_book(ULYSSES_ISBN, copies_available=5)
    assert stocked.find_book(ULYSSES_ISBN).copies_available == 1

    stocked.return_book(record.id)
    assert stocked.update_book(ULYSSES_ISBN, copies_available=5).copies_available == 5


def test_remove_book_is_soft_and_blocked_by_open_loans(stocked):
    record = stocked.lend_book(DUNE_ISBN, member_id="MBR-00001")
    with pytest.raises(ConflictError):
        stocked.remove_book(DUNE_ISBN)

    stocked.return_book(record.id)
    assert stocked.remove_book(DUNE_ISBN) is True
    assert stocked.find_book(DUNE_ISBN) is None
    assert stocked.remove_book(DUNE_ISBN) is False
    assert [b.isbn for b in stocked.list_books(include_deleted=True)].count(DUNE_ISBN) == 1

    # history survives removal
    assert len(stocked.lending.lendings_for_book(DUNE_ISBN)) == 1


def test_re_adding_removed_book_restores_it(stocked):
    stocked.remove_book(DUNE_ISBN)
    restored = stocked.add_book(Book("Dune", "Frank Herbert", DUNE_ISBN, copies_available=3))
    assert restored.copies_available == 3
    assert stocked.find_book(DUNE_ISBN).is_deleted is False


def test_add_member_assigns_member_id(lib):
    member = lib.add_member(Member("Nimal Perera", " 200012345678 ", "Nimal@Example.com"))
    assert member.member_id == "MBR-00001"
    assert member.nic == "200012345678"
    assert member.email == "nimal@example.com"
    assert lib.find_member(identifier_from(nic="200012345678")).member_id == "MBR-00001"


def test_add_member_rejects_duplicates_and_bad_input(stocked):
    with pytest.raises(ValidationError, match="NIC"):
        stocked.add_member(Member("Other", "200012345678", "other@example.com"))
    with pytest.raises(ValidationError, match="email"):
        stocked.add_member(Member("Other", "987654321X", "nimal@example.com"))
    with pytest.raises(ValidationError):
        stocked.add_member(Member("Other", "12345", "other@example.com"))
    with pytest.raises(ValidationError):
        stocked.add_member(Member("Other", "987654321X", "not-an-email"))
    assert len(stocked.list_members()) == 2


def test_list_and_search_members(stocked):
    assert [m.full_name for m in stocked.list_members()] == ["Kamala Silva", "Nimal Perera"]
    assert [m.member_id for m in stocked.search_members("silva")] == ["MBR-00002"]


def test_update_member(stocked):
    member = stocked.update_member("mbr-00001", phone="0771234567", email="NEW@example.com")
    assert member.phone == "0771234567"
    assert member.email == "new@example.com"
    assert stocked.update_member("MBR-09999", phone="1") is None
    with pytest.raises(ValidationError):
        stocked.update_member("MBR-00001", nic="999999999V")


def test_remove_member_blocked_while_holding_books(stocked):
    record = stocked.lend_book(ULYSSES_ISBN, member_id="MBR-00002")
    with pytest.raises(ConflictError):
        stocked.remove_member("MBR-00002")
    stocked.return_book(record.id)

    assert stocked.remove_member("MBR-00002") is True
    assert stocked.find_member(identifier_from(member_id="MBR-00002")) is None
    assert [m.member_id for m in stocked.list_members()] == ["MBR-00001"]


def test_statistics(stocked, clock):
    stocked.lend_book(ULYSSES_ISBN, member_id="MBR-00001")
    late = stocked.lend_book(DUNE_ISBN, member_id="MBR-00002")
    clock.advance(days=10)
    stocked.lend_book(ULYSSES_ISBN, member_id="MBR-00002")
    clock.advance(days=6)
    stocked.return_book(late.id)

    stats = stocked.get_statistics()
    assert stats == {
        "total_books": 2,
        "total_copies_available": 1,
        "total_readers": 2,
        "active_lendings": 1,
        "overdue_lendings": 1,
        "returned_overdue": 1,
        "total_fines": 100.0,
    }


def test_statistics_read_the_clock_once(stocked, clock, monkeypatch):
    stocked.lend_book(ULYSSES_ISBN, member_id="MBR-00001")
    stocked.lend_book(DUNE_ISBN, member_id="MBR-00002")
    clock.advance(days=14, seconds=-1)

    def ticking():
        # each read lands a little later, across the due instant
        return clock.advance(seconds=1)

    monkeypatch.setattr(stocked.lending, "clock", ticking)
    stats = stocked.get_statistics()

    assert stats["active_lendings"] + stats["overdue_lendings"] == 2
    assert (stats["active_lendings"], stats["overdue_lendings"]) == (2, 0)


def test_lendings_table_has_return_columns(lib):
    conn = get_db_connection()
    try:
        columns = [row["name"] for row in conn.execute("PRAGMA table_info(lendings)")]
    finally:
        conn.close()
    assert {"returned_by", "notes"} <= set(columns)


def test_audit_log_rejects_unknown_action(lib):
    with pytest.raises(ValidationError):
        lib.list_audit_logs(action="EXPLODE")
