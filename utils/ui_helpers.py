import json
import os
from datetime import datetime
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

_STATUS_STYLES = {"active": "blue", "overdue": "red", "returned": "green"}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _date(value: str | None) -> str:
    return value[:10] if value else "-"


def _fine(value: float | None) -> str:
    return f"{value:.2f}" if value else "-"


def print_book_list(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'ISBN - Title by Author [n available]' lines, or 'No books in library.'
    - json: JSON array
    - rich: Rich table
    """
    mode = get_output_mode()
    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="dim")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.isbn, b.title, b.author, b.genre or "", str(b.copies_available))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.isbn} - {b.title} by {b.author} [{b.copies_available} available]")


def print_member_list(members: List[Any]) -> None:
    mode = get_output_mode()
    if not members:
        print("No readers registered.")
        return

    if mode == "json":
        print(json.dumps([m.to_dict() for m in members], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Readers", show_lines=True, header_style="bold cyan")
        table.add_column("Member ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("NIC", style="white")
        table.add_column("Email", style="dim")
        for m in members:
            table.add_row(m.member_id or "", m.full_name, m.nic, m.email)
        _console.print(table)
    else:
        for m in members:
            print(f"{m.member_id} - {m.full_name} (NIC {m.nic}, {m.email})")


def print_lending_list(records: List[Any], now: datetime, empty_message: str = "No lending records.") -> None:
    """Print lending records with their derived status at ``now``."""
    mode = get_output_mode()
    if not records:
        print(empty_message)
        return

    rows = [r.to_dict(now) for r in records]
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Lending Records", show_lines=True, header_style="bold cyan")
        for column in ("ID", "Reader", "Book", "Lent", "Due", "Status", "Fine"):
            table.add_column(column)
        for row in rows:
            label = row["status"].capitalize()
            if row["status"] == "overdue":
                label += f" ({row['days_overdue']}d)"
            style = _STATUS_STYLES[row["status"]]
            table.add_row(
                str(row["id"]),
                f"{row['member']['full_name']} ({row['member']['member_id']})",
                f"{row['book']['title']} ({row['book']['isbn']})",
                _date(row["lend_date"]),
                _date(row["due_date"]),
                f"[{style}]{label}[/]",
                _fine(row["fine_amount"]),
            )
        _console.print(table)
    else:
        for row in rows:
            status = row["status"].upper()
            if row["status"] == "overdue":
                status += f" {row['days_overdue']}d"
            line = (
                f"#{row['id']} {row['book']['title']} -> {row['member']['full_name']} "
                f"({row['member']['member_id']}) due {_date(row['due_date'])} [{status}]"
            )
            if row["fine_amount"]:
                line += f" fine {_fine(row['fine_amount'])}"
            print(line)


def print_lending_result(record: Any, now: datetime, verb: str) -> None:
    """Confirmation for a single lend or return."""
    mode = get_output_mode()
    row = record.to_dict(now)
    if mode == "json":
        print(json.dumps(row, ensure_ascii=False))
        return
    lines = [
        f"{verb}: {row['book']['title']} ({row['book']['isbn']})",
        f"Reader: {row['member']['full_name']} ({row['member']['member_id']})",
        f"Lending ID: {row['id']}",
        f"Due: {_date(row['due_date'])}",
    ]
    if row["is_returned"]:
        lines.append(f"Returned: {_date(row['return_date'])}")
        lines.append(f"Fine: {_fine(row['fine_amount']) if row['fine_amount'] else 'none'}")
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=verb, border_style="green"))
    else:
        for line in lines:
            print(line)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard statistics in the current output mode."""
    mode = get_output_mode()
    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "total_copies_available": "Copies Available",
        "total_readers": "Total Readers",
        "active_lendings": "Active Lendings",
        "overdue_lendings": "Overdue Lendings",
        "returned_overdue": "Returned Overdue",
        "total_fines": "Total Fines",
    }
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")


def print_audit_list(logs: List[Any]) -> None:
    mode = get_output_mode()
    if not logs:
        print("No audit entries.")
        return

    if mode == "json":
        print(json.dumps([log.to_dict() for log in logs], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Audit Log", header_style="bold cyan")
        for column in ("Time", "Action", "By", "Entity", "Details"):
            table.add_column(column)
        for log in logs:
            table.add_row(log.timestamp[:19], log.action, log.performed_by,
                          f"{log.entity_type}:{log.entity_id}", log.details or "")
        _console.print(table)
    else:
        for log in logs:
            print(f"{log.timestamp[:19]} {log.action} {log.entity_type}:{log.entity_id} by {log.performed_by}")
