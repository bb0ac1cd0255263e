import logging
import subprocess
import sys
import webbrowser
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.prompt import Confirm

from book import Book
from config import settings
from errors import LibraryError, RollbackFailed, RolledBack
from library import Library
from student import Student
from utils.ui_helpers import set_output_mode, print_books, print_students, print_loans, print_stats_result
from utils.validators import DateValidator

logging.basicConfig(level=settings.log_level)

APP_NAME = "Library CLI"

console = Console()

@contextmanager
def open_library() -> Iterator[Library]:
    """Open the library for one command and close it afterwards."""
    lib = Library()
    try:
        yield lib
    finally:
        lib.close()

def handle_errors(func):
    """Turn library failures into an 'Error: ...' line and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RollbackFailed as e:
            print(f"Fatal error: {e}")
            print("The database may be inconsistent. Restore a known good backup.")
            raise typer.Exit(code=2)
        except RolledBack as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
        except (LibraryError, LookupError, ValueError) as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper

# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)

# --- Books ---
@app.command("books")
def cli_books():
    """List all books."""
    with open_library() as lib:
        print_books(lib.list_books())

@app.command("search")
def cli_search(query: str):
    """Search books by title or author."""
    with open_library() as lib:
        print_books(lib.search_books(query))

@app.command("add-book")
@handle_errors
def cli_add_book(
    title: str,
    author: str,
    isbn: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies owned"),
):
    """Catalogue a new book."""
    with open_library() as lib:
        book = lib.add_book(Book(title=title, author=author, isbn=isbn, total_copies=copies))
    print(f"Successfully added: {book.title} by {book.author} (id {book.id})")

@app.command("edit-book")
@handle_errors
def cli_edit_book(
    book_id: int,
    title: Optional[str] = typer.Option(None, "--title"),
    author: Optional[str] = typer.Option(None, "--author"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    copies: Optional[int] = typer.Option(None, "--copies", "-c"),
):
    """Edit a book; changing --copies moves the available count by the same amount."""
    with open_library() as lib:
        book = lib.update_book(book_id, title=title, author=author, isbn=isbn, total_copies=copies)
    if book is None:
        print(f"Book {book_id} not found.")
        raise typer.Exit(code=1)
    print(f"Book updated: {book.title} by {book.author} ({book.available_copies}/{book.total_copies} available)")

@app.command("remove-book")
@handle_errors
def cli_remove_book(book_id: int):
    """Delete a book. Its loan history is kept."""
    with open_library() as lib:
        removed = lib.remove_book(book_id)
    if removed:
        print(f"Book {book_id} has been removed.")
    else:
        print(f"Book {book_id} not found.")

# --- Students ---
@app.command("students")
def cli_students():
    """List all students."""
    with open_library() as lib:
        print_students(lib.list_students())

@app.command("add-student")
@handle_errors
def cli_add_student(
    name: str,
    registration_number: str,
    class_name: str = typer.Option("", "--class-name", help="Class or group"),
):
    """Register a student."""
    with open_library() as lib:
        student = lib.add_student(Student(name=name, registration_number=registration_number, class_name=class_name))
    print(f"Successfully added: {student.name} (id {student.id})")

@app.command("edit-student")
@handle_errors
def cli_edit_student(
    student_id: int,
    name: Optional[str] = typer.Option(None, "--name"),
    registration_number: Optional[str] = typer.Option(None, "--registration-number"),
    class_name: Optional[str] = typer.Option(None, "--class-name"),
):
    """Edit a student."""
    with open_library() as lib:
        student = lib.update_student(
            student_id, name=name, registration_number=registration_number, class_name=class_name
        )
    if student is None:
        print(f"Student {student_id} not found.")
        raise typer.Exit(code=1)
    print(f"Student updated: {student.name} ({student.registration_number})")

@app.command("remove-student")
@handle_errors
def cli_remove_student(student_id: int):
    """Delete a student. Their loan history is kept."""
    with open_library() as lib:
        removed = lib.remove_student(student_id)
    if removed:
        print(f"Student {student_id} has been removed.")
    else:
        print(f"Student {student_id} not found.")

# --- Loans ---
@app.command("checkout")
@handle_errors
def cli_checkout(
    book_id: int,
    student_id: int,
    due: Optional[str] = typer.Option(None, "--due", help="Due date YYYY-MM-DD (default: today + loan period)"),
):
    """Lend a book to a student."""
    due_date = DateValidator.parse(due)
    with open_library() as lib:
        loan = lib.checkout(book_id, student_id, due_date=due_date)
    print(f"Loan {loan.id} recorded, due {loan.due_date.isoformat()}.")

@app.command("return")
@handle_errors
def cli_return(
    loan_id: int,
    on: Optional[str] = typer.Option(None, "--date", help="Return date YYYY-MM-DD (default: today)"),
):
    """Record the return of a loan."""
    return_date = DateValidator.parse(on)
    with open_library() as lib:
        loan = lib.return_loan(loan_id, return_date)
    print(f"Loan {loan.id} returned on {loan.return_date.isoformat()}.")

@app.command("loans")
@handle_errors
def cli_loans(status: Optional[str] = typer.Option(None, "--status", help="active | returned")):
    """List loans, active ones first."""
    with open_library() as lib:
        print_loans(lib.list_loans(status=status))

@app.command("overdue")
def cli_overdue():
    """List overdue loans, most overdue first."""
    with open_library() as lib:
        print_loans(lib.list_overdue())

@app.command("stats")
def cli_stats():
    """Show library statistics."""
    with open_library() as lib:
        print_stats_result(lib.get_statistics())

# --- Backup ---
@app.command("export")
@handle_errors
def cli_export(
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Directory to write the backup to"),
    filename: Optional[str] = typer.Option(None, "--file", "-f", help="File name (default: backup-library-<date>.json)"),
):
    """Write a checksummed JSON backup of the whole database."""
    with open_library() as lib:
        path = lib.export_backup_to_file(directory, filename)
    print(f"Backup exported to {path}")

@app.command("import")
@handle_errors
def cli_import(
    file_path: Path,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Replace ALL data with the contents of a backup file."""
    if not file_path.exists():
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    if not yes and not Confirm.ask("Restoring will replace ALL current data. Continue?", console=console):
        print("Restore cancelled.")
        return
    with open_library() as lib:
        outcome = lib.import_backup_file(file_path)
    print(f"Restore completed: {outcome.record_count} records (backup version {outcome.version}).")

# --- Web API ---
@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    open_browser: bool = typer.Option(True, "--open/--no-open", help="Open the API docs in a browser"),
):
    """Start the HTTP API with uvicorn."""
    url = f"http://{host}:{port}/docs"
    print(f"Starting web API on {url}")
    if open_browser:
        webbrowser.open(url)
    subprocess.run([sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)])


if __name__ == "__main__":
    app()
