import logging
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional, Dict, Any, Union

from backup import backup_filename, build_backup, dump_backup
from book import Book
from config import settings
from database import BOOKS, LOANS, STUDENTS
from loan import ACTIVE, DELETED_BOOK, DELETED_STUDENT, RETURNED, Loan, LoanDetails
from record_store import RecordStore
from restore import BackupImporter, ImportOutcome
from student import Student
from transactions import TransactionCoordinator
from utils.validators import RecordValidator

logger = logging.getLogger(__name__)


class Library:
    """Application root: owns the record store and exposes the library operations."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.store = RecordStore(db_file).initialize()
        self.coordinator = TransactionCoordinator(self.store)
        self.importer = BackupImporter(self.store, self.coordinator)

    @property
    def db_file(self) -> str:
        return self.store.db_file

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Catalogue a new book. Every copy starts on the shelf."""
        RecordValidator.validate_book(book.title, book.author, book.isbn, book.total_copies)
        book.available_copies = book.total_copies
        record = book.to_dict()
        record.pop("id", None)
        book.id = self.store.save(BOOKS, record)
        logger.info(f"Book added: {book.title} (id {book.id})")
        return book

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    isbn: Optional[str] = None, total_copies: Optional[int] = None) -> Optional[Book]:
        """Edit a book. Changing the total moves the available count by the same amount.

        Returns None if the book does not exist. Raises ValueError when the new
        total is smaller than the number of copies currently on loan.
        """
        if title is None and author is None and isbn is None and total_copies is None:
            raise ValueError("Nothing to update. Provide title, author, isbn and/or total copies.")

        with self.store.transaction() as tx:
            record = tx.get(BOOKS, book_id)
            if record is None:
                return None
            book = Book.from_dict(record)

            new_title = title.strip() if title is not None and title.strip() else book.title
            new_author = author.strip() if author is not None and author.strip() else book.author
            new_isbn = isbn.strip() if isbn is not None and isbn.strip() else book.isbn
            new_total = book.total_copies if total_copies is None else total_copies
            RecordValidator.validate_book(new_title, new_author, new_isbn, new_total)

            new_available = book.available_copies + (new_total - book.total_copies)
            if new_available < 0:
                raise ValueError("Total copies cannot be less than the copies currently on loan.")

            book.title, book.author, book.isbn = new_title, new_author, new_isbn
            book.total_copies, book.available_copies = new_total, new_available
            tx.put(BOOKS, book.to_dict())
        return book

    def remove_book(self, book_id: int) -> bool:
        """Delete a book. Its loans stay in the history."""
        if self.store.get_by_id(BOOKS, book_id) is None:
            return False
        self.store.delete(BOOKS, book_id)
        return True

    def find_book(self, book_id: int) -> Optional[Book]:
        record = self.store.get_by_id(BOOKS, book_id)
        return Book.from_dict(record) if record else None

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        records = self.store.find_by(BOOKS, "isbn", (isbn or "").strip())
        return Book.from_dict(records[0]) if records else None

    def list_books(self) -> List[Book]:
        books = [Book.from_dict(r) for r in self.store.get_all(BOOKS)]
        return sorted(books, key=lambda b: b.title.lower())

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title or author."""
        records = self.store.search(BOOKS, query, ["title", "author"])
        return sorted((Book.from_dict(r) for r in records), key=lambda b: b.title.lower())

    # ------------------------- Students ------------------------- #
    def add_student(self, student: Student) -> Student:
        RecordValidator.validate_student(student.name, student.registration_number)
        record = student.to_dict()
        record.pop("id", None)
        student.id = self.store.save(STUDENTS, record)
        logger.info(f"Student added: {student.name} (id {student.id})")
        return student

    def update_student(self, student_id: int, *, name: Optional[str] = None,
                       registration_number: Optional[str] = None,
                       class_name: Optional[str] = None) -> Optional[Student]:
        if name is None and registration_number is None and class_name is None:
            raise ValueError("Nothing to update. Provide name, registration number and/or class.")

        record = self.store.get_by_id(STUDENTS, student_id)
        if record is None:
            return None
        student = Student.from_dict(record)
        if name is not None and name.strip():
            student.name = name.strip()
        if registration_number is not None and registration_number.strip():
            student.registration_number = registration_number.strip()
        if class_name is not None:
            student.class_name = class_name.strip()
        RecordValidator.validate_student(student.name, student.registration_number)
        self.store.save(STUDENTS, student.to_dict())
        return student

    def remove_student(self, student_id: int) -> bool:
        """Delete a student. Their loans stay in the history."""
        if self.store.get_by_id(STUDENTS, student_id) is None:
            return False
        self.store.delete(STUDENTS, student_id)
        return True

    def find_student(self, student_id: int) -> Optional[Student]:
        record = self.store.get_by_id(STUDENTS, student_id)
        return Student.from_dict(record) if record else None

    def list_students(self) -> List[Student]:
        students = [Student.from_dict(r) for r in self.store.get_all(STUDENTS)]
        return sorted(students, key=lambda s: s.name.lower())

    def search_students(self, query: str) -> List[Student]:
        records = self.store.search(STUDENTS, query, ["name", "registrationNumber"])
        return sorted((Student.from_dict(r) for r in records), key=lambda s: s.name.lower())

    # ------------------------- Loans ------------------------- #
    def checkout(self, book_id: int, student_id: int, due_date: Optional[date] = None,
                 loan_date: Optional[date] = None) -> Loan:
        """Lend one copy of a book to a student.

        Raises LookupError for an unknown student and ``Unavailable`` when the
        book is missing or has no copies left.
        """
        if self.store.get_by_id(STUDENTS, student_id) is None:
            raise LookupError(f"Student {student_id} not found.")
        loan_date = loan_date or date.today()
        due_date = due_date or loan_date + timedelta(days=settings.default_loan_days)
        if due_date < loan_date:
            raise ValueError("Due date cannot be before the loan date.")

        loan = Loan(book_id=book_id, student_id=student_id, loan_date=loan_date, due_date=due_date)
        loan = self.coordinator.checkout(loan)
        logger.info(f"Loan {loan.id}: book {book_id} to student {student_id}, due {due_date}")
        return loan

    def return_loan(self, loan_id: int, return_date: Optional[date] = None) -> Loan:
        loan = self.coordinator.return_loan(loan_id, return_date or date.today())
        logger.info(f"Loan {loan_id} returned")
        return loan

    def find_loan(self, loan_id: int) -> Optional[Loan]:
        record = self.store.get_by_id(LOANS, loan_id)
        return Loan.from_dict(record) if record else None

    def list_loans(self, status: Optional[str] = None, today: Optional[date] = None) -> List[LoanDetails]:
        """Loans joined with book titles and student names, active loans first.

        A loan whose book or student was deleted shows a placeholder instead.
        """
        if status is not None and status not in (ACTIVE, RETURNED):
            raise ValueError(f"Unknown loan status: {status}")

        snapshot = self.store.export_all()
        titles = {b["id"]: b["title"] for b in snapshot[BOOKS]}
        names = {s["id"]: s["name"] for s in snapshot[STUDENTS]}
        loans = [Loan.from_dict(r) for r in snapshot[LOANS]]
        if status is not None:
            loans = [l for l in loans if l.status == status]

        details = [
            LoanDetails(
                loan=l,
                book_title=titles.get(l.book_id, DELETED_BOOK),
                student_name=names.get(l.student_id, DELETED_STUDENT),
                overdue_days=l.overdue_days(today),
            )
            for l in loans
        ]
        # sort() is stable, so ids stay ascending within each status
        details.sort(key=lambda d: 0 if d.loan.is_active else 1)
        return details

    def list_overdue(self, today: Optional[date] = None) -> List[LoanDetails]:
        overdue = [d for d in self.list_loans(status=ACTIVE, today=today) if d.overdue_days > 0]
        return sorted(overdue, key=lambda d: d.overdue_days, reverse=True)

    def get_statistics(self, today: Optional[date] = None) -> Dict[str, Any]:
        """Get library statistics."""
        snapshot = self.store.export_all()
        loans = [Loan.from_dict(r) for r in snapshot[LOANS]]
        active = [l for l in loans if l.is_active]
        return {
            "total_books": len(snapshot[BOOKS]),
            "total_copies": sum(b["totalCopies"] for b in snapshot[BOOKS]),
            "available_copies": sum(b["availableCopies"] for b in snapshot[BOOKS]),
            "unique_authors": len({b["author"] for b in snapshot[BOOKS]}),
            "total_students": len(snapshot[STUDENTS]),
            "active_loans": len(active),
            "overdue_loans": sum(1 for l in active if l.is_overdue(today)),
            "returned_loans": len(loans) - len(active),
        }

    # ------------------------- Backup ------------------------- #
    def export_backup(self) -> Dict[str, Any]:
        """Snapshot every collection into a checksummed backup payload."""
        return build_backup(self.store.export_all())

    def export_backup_to_file(self, directory: Union[str, Path] = ".", filename: Optional[str] = None) -> Path:
        payload = self.export_backup()
        path = Path(directory) / (filename or backup_filename(payload))
        path.write_text(dump_backup(payload), encoding="utf-8")
        logger.info(f"Backup written to {path} ({payload['recordCount']} records)")
        return path

    def import_backup(self, raw: Union[str, bytes]) -> ImportOutcome:
        """Replace all data with the backup. See ``BackupImporter`` for failure modes."""
        return self.importer.import_backup(raw)

    def import_backup_file(self, path: Union[str, Path]) -> ImportOutcome:
        return self.import_backup(Path(path).read_bytes())

    def close(self) -> None:
        self.store.close()
