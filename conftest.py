import os
from datetime import datetime, timedelta, timezone

import pytest

from book import Book
from fine_policy import FinePolicy
from library import Library
from member import Member

ULYSSES_ISBN = "9780199535675"
DUNE_ISBN = "9780099590088"


class FakeClock:
    """Controllable stand-in for ``utc_now``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, request, clock):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, policy=FinePolicy(), clock=clock)
    yield lib
    lib.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_file + suffix):
            os.remove(db_file + suffix)


@pytest.fixture
def stocked(lib):
    """A library with two titles and two registered readers."""
    lib.add_book(Book("Ulysses", "James Joyce", ULYSSES_ISBN, copies_available=2, genre="Classic"))
    lib.add_book(Book("Dune", "Frank Herbert", DUNE_ISBN, copies_available=1, genre="Science Fiction"))
    lib.add_member(Member("Nimal Perera", "200012345678", "nimal@example.com"))
    lib.add_member(Member("Kamala Silva", "123456789V", "kamala@example.com"))
    return lib
