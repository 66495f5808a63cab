import json

import pytest
from typer.testing import CliRunner
from unittest.mock import MagicMock

from conftest import DUNE_ISBN, ULYSSES_ISBN
from library import Library
from main import LibraryManager, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output writes to the environment; keep it from leaking between tests
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    LibraryManager.reset()
    yield
    LibraryManager.reset()


def test_list_no_books(lib):
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_list_books(stocked):
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert f"{DUNE_ISBN} - Dune by Frank Herbert [1 available]" in result.stdout
    assert f"{ULYSSES_ISBN} - Ulysses by James Joyce [2 available]" in result.stdout


def test_list_books_json(stocked):
    result = runner.invoke(app, ["--output", "json", "books", "--search", "joyce"])
    assert result.exit_code == 0
    assert [b["isbn"] for b in json.loads(result.stdout)] == [ULYSSES_ISBN]


def test_add_book_success(lib):
    result = runner.invoke(app, ["add-book", "0306406152", "Signals", "A. Writer", "--copies", "3"])
    assert result.exit_code == 0
    assert "Successfully added: Signals by A. Writer (3 copies)" in result.stdout
    assert lib.find_book("0306406152").copies_available == 3


def test_add_book_invalid_isbn(lib):
    result = runner.invoke(app, ["add-book", "9780321765723", "Bad", "Nobody"])
    assert result.exit_code == 1
    assert "Error: Invalid ISBN format." in result.stdout


def test_add_reader_and_list(lib):
    result = runner.invoke(app, ["add-reader", "Nimal Perera", "200012345678", "nimal@example.com"])
    assert result.exit_code == 0
    assert "Registered reader MBR-00001: Nimal Perera" in result.stdout

    result = runner.invoke(app, ["readers"])
    assert "MBR-00001 - Nimal Perera (NIC 200012345678, nimal@example.com)" in result.stdout


def test_lend_and_return(stocked):
    result = runner.invoke(app, ["lend", ULYSSES_ISBN, "--member-id", "MBR-00001", "--by", "desk"])
    assert result.exit_code == 0
    assert f"Lent: Ulysses ({ULYSSES_ISBN})" in result.stdout
    assert "Reader: Nimal Perera (MBR-00001)" in result.stdout
    assert "Lending ID: 1" in result.stdout

    result = runner.invoke(app, ["return", "1"])
    assert result.exit_code == 0
    assert "Returned: Ulysses" in result.stdout
    assert "Fine: none" in result.stdout

    result = runner.invoke(app, ["return", "1"])
    assert result.exit_code == 1
    assert "has already been returned" in result.stdout


def test_lend_requires_identifier(stocked):
    result = runner.invoke(app, ["lend", ULYSSES_ISBN])
    assert result.exit_code == 1
    assert "Error: Provide either a member ID or a NIC." in result.stdout


def test_lend_unavailable(stocked):
    assert runner.invoke(app, ["lend", DUNE_ISBN, "-n", "123456789V"]).exit_code == 0
    result = runner.invoke(app, ["lend", DUNE_ISBN, "-m", "MBR-00001"])
    assert result.exit_code == 1
    assert "No copies of 'Dune' are available." in result.stdout


def test_lendings_listing(stocked):
    runner.invoke(app, ["lend", DUNE_ISBN, "-m", "MBR-00002"])
    result = runner.invoke(app, ["lendings", "--status", "active"])
    assert result.exit_code == 0
    assert "#1 Dune -> Kamala Silva (MBR-00002)" in result.stdout
    assert "[ACTIVE]" in result.stdout

    result = runner.invoke(app, ["lendings", "--status", "lost"])
    assert result.exit_code == 1


def test_overdue_and_returned_overdue_empty(stocked):
    assert "No overdue lendings." in runner.invoke(app, ["overdue"]).stdout
    assert "No fined returns." in runner.invoke(app, ["returned-overdue"]).stdout


def test_stats(stocked):
    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Total Books: 2" in result.stdout
    assert "Total Readers: 2" in result.stdout
    assert "Overdue Lendings: 0" in result.stdout


def test_stats_uses_library(lib, monkeypatch):
    stats_mock = MagicMock(return_value={"total_books": 7})
    monkeypatch.setattr(Library, "get_statistics", stats_mock)

    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Total Books: 7" in result.stdout
    stats_mock.assert_called_once_with()


def test_audit(stocked):
    result = runner.invoke(app, ["audit", "--action", "CREATE", "--limit", "1"])
    assert result.exit_code == 0
    assert "CREATE Reader:MBR-00002 by system" in result.stdout

    result = runner.invoke(app, ["audit", "--action", "EXPLODE"])
    assert result.exit_code == 1
    assert "Unknown audit action" in result.stdout


def test_serve_launches_uvicorn(lib, monkeypatch):
    proc = MagicMock()
    popen = MagicMock(return_value=proc)
    monkeypatch.setattr("main.subprocess.Popen", popen)

    result = runner.invoke(app, ["serve", "--host", "0.0.0.0", "--port", "9001"])
    assert result.exit_code == 0
    assert "Starting API on http://0.0.0.0:9001/" in result.stdout
    args = popen.call_args.args[0]
    assert args[1:4] == ["-m", "uvicorn", "api:app"]
    assert args[-2:] == ["--port", "9001"]
    assert popen.call_args.kwargs["env"]["LIBRARY_DB_FILE"] == lib.db_file
    proc.wait.assert_called_once_with(timeout=None)
