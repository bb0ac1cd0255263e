from datetime import date
from typing import Optional


class RecordValidator:
    """Input checks for records entered through the CLI or the API."""

    @staticmethod
    def _is_blank(text: Optional[str]) -> bool:
        return text is None or not str(text).strip()

    @staticmethod
    def validate_copies(total_copies) -> None:
        # bool is an int subclass; reject it explicitly
        if isinstance(total_copies, bool) or not isinstance(total_copies, int):
            raise ValueError("Total copies must be a whole number.")
        if total_copies < 0:
            raise ValueError("Total copies cannot be negative.")

    @staticmethod
    def validate_book(title: Optional[str], author: Optional[str], isbn: Optional[str], total_copies) -> None:
        if RecordValidator._is_blank(isbn):
            raise ValueError("ISBN cannot be empty.")
        if RecordValidator._is_blank(title):
            raise ValueError("Title cannot be empty.")
        if RecordValidator._is_blank(author):
            raise ValueError("Author cannot be empty.")
        RecordValidator.validate_copies(total_copies)

    @staticmethod
    def validate_student(name: Optional[str], registration_number: Optional[str]) -> None:
        if RecordValidator._is_blank(registration_number):
            raise ValueError("Registration number cannot be empty.")
        if RecordValidator._is_blank(name):
            raise ValueError("Name cannot be empty.")


class DateValidator:
    """Parse the YYYY-MM-DD dates typed on the command line."""

    @staticmethod
    def parse(text: Optional[str]) -> Optional[date]:
        if text is None or not text.strip():
            return None
        try:
            return date.fromisoformat(text.strip())
        except ValueError:
            raise ValueError(f"Invalid date '{text}'. Use the YYYY-MM-DD format.") from None
