from __future__ import annotations

from typing import Optional


class Student:
    """A registered borrower."""

    def __init__(self, name: str, registration_number: str, class_name: str = "",
                 id: Optional[int] = None) -> None:
        self.id = id
        self.name = (name or "").strip()
        self.registration_number = (registration_number or "").strip()
        self.class_name = (class_name or "").strip()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} ({self.registration_number}, {self.class_name})"

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "registrationNumber": self.registration_number,
            "className": self.class_name,
        }
        if self.id is not None:
            data["id"] = self.id
        return data

    @staticmethod
    def from_dict(data: dict) -> "Student":
        return Student(
            id=data.get("id"),
            name=data["name"],
            registration_number=data["registrationNumber"],
            class_name=data.get("className") or "",
        )
