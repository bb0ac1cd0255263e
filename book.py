from __future__ import annotations

from typing import Optional


class Book:
    """Represents a catalogued title and its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, total_copies: int = 1,
                 available_copies: Optional[int] = None, id: Optional[int] = None) -> None:
        self.id = id
        self.title = (title or "").strip()
        self.author = (author or "").strip()
        self.isbn = (isbn or "").strip()
        self.total_copies = total_copies
        # A newly catalogued book has every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    @property
    def on_loan(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        data = {
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
        }
        if self.id is not None:
            data["id"] = self.id
        return data

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            total_copies=data["totalCopies"],
            available_copies=data["availableCopies"],
        )
