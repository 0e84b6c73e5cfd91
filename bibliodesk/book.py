from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from bibliodesk.errors import ConflictError, ValidationError


class CopyStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    LOST = "lost"

    @classmethod
    def parse(cls, raw: str) -> "CopyStatus":
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(
                f"{raw} não é um status válido",
                fields={"status": [f"{raw} não é um status válido"]},
            ) from None


def check_manual_status_change(
    current: CopyStatus, requested: CopyStatus, has_ongoing_loan: bool = False
) -> CopyStatus:
    """Validate a status change requested by staff, outside the loan flow.

    Only the lost override (and undoing it) may be set by hand; ``borrowed``
    belongs to the loan lifecycle. A copy can be marked lost while on loan,
    but goes back to ``available`` only once no loan is ongoing.
    """
    if requested == current:
        return current
    if requested == CopyStatus.BORROWED:
        raise ValidationError(
            "O status 'borrowed' é definido apenas pelo empréstimo.",
            fields={"status": ["não pode ser definido manualmente"]},
        )
    if requested == CopyStatus.AVAILABLE and (current == CopyStatus.BORROWED or has_ongoing_loan):
        raise ConflictError("Exemplar emprestado: registre a devolução antes de alterar o status.")
    # available/borrowed -> lost, lost -> available
    return requested


@dataclass
class Category:
    id: int
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


@dataclass
class Book:
    """One cataloged title; physical exemplars are Copy rows."""
    id: int
    title: str
    author: str
    description: Optional[str] = None
    categories: List[Category] = field(default_factory=list)
    total_copies: int = 0
    available_copies: int = 0
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "description": self.description,
            "categories": [c.to_dict() for c in self.categories],
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            description=data.get("description"),
            total_copies=data.get("total_copies") or 0,
            available_copies=data.get("available_copies") or 0,
            created_at=data.get("created_at"),
        )


@dataclass
class Copy:
    id: int
    book_id: int
    number: int
    edition: str
    status: CopyStatus = CopyStatus.AVAILABLE
    acquisition_date: Optional[str] = None
    condition: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "number": self.number,
            "edition": self.edition,
            "status": self.status.value,
            "acquisition_date": self.acquisition_date,
            "condition": self.condition,
        }

    @staticmethod
    def from_dict(data: dict) -> "Copy":
        return Copy(
            id=data["id"],
            book_id=data["book_id"],
            number=data["number"],
            edition=data["edition"],
            status=CopyStatus(data["status"]),
            acquisition_date=data.get("acquisition_date"),
            condition=data.get("condition"),
        )
