from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

ACTIVE = "active"
RETURNED = "returned"

DELETED_BOOK = "Deleted book"
DELETED_STUDENT = "Deleted student"

DateLike = Union[date, str, None]


def _to_date(value: DateLike) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class Loan:
    """A single checkout of one copy of a book by a student.

    Loans are only created by checkout and only changed by return; ``status``
    and ``return_date`` always move together.
    """

    def __init__(self, book_id: int, student_id: int, loan_date: DateLike, due_date: DateLike,
                 return_date: DateLike = None, status: str = ACTIVE, id: Optional[int] = None) -> None:
        self.id = id
        self.book_id = book_id
        self.student_id = student_id
        self.loan_date = _to_date(loan_date)
        self.due_date = _to_date(due_date)
        self.return_date = _to_date(return_date)
        self.status = status

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"Loan {self.id}: book {self.book_id} -> student {self.student_id} ({self.status})"

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def overdue_days(self, today: Optional[date] = None) -> int:
        """Whole days past the due date, or 0 when returned or not yet due."""
        if not self.is_active or self.due_date is None:
            return 0
        today = today or date.today()
        return max(0, (today - self.due_date).days)

    def is_overdue(self, today: Optional[date] = None) -> bool:
        return self.overdue_days(today) > 0

    def to_dict(self) -> dict:
        data = {
            "bookId": self.book_id,
            "studentId": self.student_id,
            "loanDate": self.loan_date.isoformat() if self.loan_date else None,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "returnDate": self.return_date.isoformat() if self.return_date else None,
            "status": self.status,
        }
        if self.id is not None:
            data["id"] = self.id
        return data

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data.get("id"),
            book_id=data["bookId"],
            student_id=data["studentId"],
            loan_date=data["loanDate"],
            due_date=data["dueDate"],
            return_date=data.get("returnDate"),
            status=data["status"],
        )


@dataclass
class LoanDetails:
    """A loan joined with the title and name of the records it points at."""

    loan: Loan
    book_title: str
    student_name: str
    overdue_days: int = 0

    @property
    def book_deleted(self) -> bool:
        return self.book_title == DELETED_BOOK

    @property
    def student_deleted(self) -> bool:
        return self.student_name == DELETED_STUDENT

    def to_dict(self) -> dict:
        data = self.loan.to_dict()
        data["bookTitle"] = self.book_title
        data["studentName"] = self.student_name
        data["overdueDays"] = self.overdue_days
        return data
