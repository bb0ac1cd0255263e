import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _print_rows(title: str, empty: str, columns: List[str], rows: List[Dict[str, Any]], plain_line) -> None:
    """Print rows as plain lines, a JSON array or a Rich table."""
    mode = get_output_mode()

    if not rows:
        print(empty)
        return

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column, style="magenta" if column == "id" else "white", no_wrap=column == "id")
        for row in rows:
            table.add_row(*(str(row.get(column, "") if row.get(column) is not None else "-") for column in columns))
        _console.print(table)
    else:
        for row in rows:
            print(plain_line(row))

def print_books(books: List[Any]) -> None:
    rows = [b.to_dict() for b in books]
    _print_rows(
        "📚 Books",
        "No books in library.",
        ["id", "isbn", "title", "author", "availableCopies", "totalCopies"],
        rows,
        lambda r: f"[{r['id']}] {r['isbn']} - {r['title']} by {r['author']} ({r['availableCopies']}/{r['totalCopies']} available)",
    )

def print_students(students: List[Any]) -> None:
    rows = [s.to_dict() for s in students]
    _print_rows(
        "🎓 Students",
        "No students registered.",
        ["id", "registrationNumber", "name", "className"],
        rows,
        lambda r: f"[{r['id']}] {r['registrationNumber']} - {r['name']} ({r['className']})",
    )

def _loan_state(row: Dict[str, Any]) -> str:
    if row["status"] == "returned":
        return f"Returned on {row['returnDate']}"
    if row["overdueDays"] > 0:
        return f"Overdue ({row['overdueDays']} days)"
    return "Active"

def print_loans(loans: List[Any]) -> None:
    rows = [d.to_dict() for d in loans]
    for row in rows:
        row["state"] = _loan_state(row)
    _print_rows(
        "🔖 Loans",
        "No loans recorded.",
        ["id", "bookTitle", "studentName", "loanDate", "dueDate", "state"],
        rows,
        lambda r: f"[{r['id']}] {r['bookTitle']} -> {r['studentName']} | {r['loanDate']} to {r['dueDate']} | {r['state']}",
    )

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "unique_authors": "Unique Authors",
        "total_students": "Students",
        "active_loans": "Active Loans",
        "overdue_loans": "Overdue Loans",
        "returned_loans": "Returned Loans",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{labels.get(k, k)}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{labels.get(key, key)}: {value}")
