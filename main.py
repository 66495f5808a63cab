import os
import subprocess
import sys
from typing import NoReturn, Optional

import typer

import database
from book import Book
from config import settings, setup_logging
from errors import LibraryError
from library import Library
from member import Member
from utils.ui_helpers import (
    print_audit_list,
    print_book_list,
    print_lending_list,
    print_lending_result,
    print_member_list,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library Lending CLI"


class LibraryManager:
    """Lazily created Library shared by the commands of one CLI run."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.DATABASE_FILE
        # Rebuild when the database file changed (e.g. per-test databases)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def _fail(exc: LibraryError) -> NoReturn:
    print(f"Error: {exc.message}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file to use"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global options for the CLI (output mode, database)."""
    setup_logging("DEBUG" if verbose else "WARNING")
    if output:
        set_output_mode(output)
    if db_file:
        database.DATABASE_FILE = db_file


@app.command("lend")
def cli_lend(
    isbn: str = typer.Argument(..., help="ISBN of the book to lend"),
    member_id: Optional[str] = typer.Option(None, "--member-id", "-m", help="Reader's member ID"),
    nic: Optional[str] = typer.Option(None, "--nic", "-n", help="Reader's NIC"),
    performed_by: str = typer.Option("cli", "--by", help="Staff member recorded in the audit log"),
):
    """Lend one copy of a book to a reader."""
    lib = LibraryManager.get_instance()
    try:
        record = lib.lend_book(isbn, member_id=member_id, nic=nic, performed_by=performed_by)
    except LibraryError as exc:
        _fail(exc)
    print_lending_result(record, lib.lending.clock(), "Lent")


@app.command("return")
def cli_return(
    lending_id: int = typer.Argument(..., help="Lending record ID"),
    performed_by: str = typer.Option("cli", "--by", help="Staff member recorded in the audit log"),
):
    """Return a lent copy and assess any fine."""
    lib = LibraryManager.get_instance()
    try:
        record = lib.return_book(lending_id, performed_by=performed_by)
    except LibraryError as exc:
        _fail(exc)
    print_lending_result(record, lib.lending.clock(), "Returned")


@app.command("lendings")
def cli_lendings(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Reader name, member ID, title or ISBN"),
    status: str = typer.Option("all", "--status", help="all | active | overdue | returned"),
    sort_by: str = typer.Option("lend_date", "--sort-by", help="lend_date | due_date | return_date | member | title | fine_amount"),
    order: str = typer.Option("desc", "--order", help="asc | desc"),
):
    """List lending records."""
    lib = LibraryManager.get_instance()
    try:
        records = lib.lending.list_lendings(search=search, status_filter=status, sort_by=sort_by, order=order)
    except LibraryError as exc:
        _fail(exc)
    print_lending_list(records, lib.lending.clock())


@app.command("overdue")
def cli_overdue():
    """List open lendings that are past due."""
    lib = LibraryManager.get_instance()
    print_lending_list(lib.lending.list_overdue(), lib.lending.clock(), "No overdue lendings.")


@app.command("returned-overdue")
def cli_returned_overdue():
    """List returned lendings that incurred a fine."""
    lib = LibraryManager.get_instance()
    print_lending_list(lib.lending.list_returned_overdue(), lib.lending.clock(), "No fined returns.")


@app.command("books")
def cli_books(search: Optional[str] = typer.Option(None, "--search", "-s", help="Title, author, ISBN or genre")):
    """List the catalog."""
    lib = LibraryManager.get_instance()
    print_book_list(lib.search_books(search) if search else lib.list_books())


@app.command("add-book")
def cli_add_book(
    isbn: str,
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", min=0, help="Copies available for lending"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    performed_by: str = typer.Option("cli", "--by"),
):
    """Add a book to the catalog."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.add_book(Book(title=title, author=author, isbn=isbn, copies_available=copies, genre=genre),
                            performed_by=performed_by)
    except LibraryError as exc:
        _fail(exc)
    print(f"Successfully added: {book.title} by {book.author} ({book.copies_available} copies)")


@app.command("readers")
def cli_readers(search: Optional[str] = typer.Option(None, "--search", "-s", help="Name, member ID, NIC or email")):
    """List registered readers."""
    lib = LibraryManager.get_instance()
    print_member_list(lib.search_members(search) if search else lib.list_members())


@app.command("add-reader")
def cli_add_reader(
    full_name: str,
    nic: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone"),
    address: Optional[str] = typer.Option(None, "--address"),
    performed_by: str = typer.Option("cli", "--by"),
):
    """Register a reader."""
    lib = LibraryManager.get_instance()
    try:
        member = lib.add_member(Member(full_name=full_name, nic=nic, email=email, phone=phone, address=address),
                                performed_by=performed_by)
    except LibraryError as exc:
        _fail(exc)
    print(f"Registered reader {member.member_id}: {member.full_name}")


@app.command("stats")
def cli_stats():
    """Show dashboard statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("audit")
def cli_audit(
    action: Optional[str] = typer.Option(None, "--action", "-a", help="CREATE | UPDATE | DELETE | LEND | RETURN"),
    limit: int = typer.Option(50, "--limit", "-l", min=1),
):
    """Show the most recent audit entries."""
    lib = LibraryManager.get_instance()
    try:
        logs = lib.list_audit_logs(action=action, limit=limit)
    except LibraryError as exc:
        _fail(exc)
    print_audit_list(logs)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no limit)"),
):
    """Start the HTTP API with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    env = dict(os.environ, LIBRARY_DB_FILE=database.DATABASE_FILE)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    proc = subprocess.Popen(args, env=env)
    try:
        proc.wait(timeout=timeout or None)
    except subprocess.TimeoutExpired:
        proc.terminate()
        proc.wait(timeout=5)
    except KeyboardInterrupt:
        proc.terminate()
        print("Server stopped.")


if __name__ == "__main__":
    app()
