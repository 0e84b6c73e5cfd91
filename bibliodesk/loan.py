from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from bibliodesk.policies import FinePolicy


class LoanStatus(str, Enum):
    ONGOING = "ongoing"
    RETURNED = "returned"
    # Presentation only: an ongoing loan past its due date. Never stored.
    OVERDUE = "overdue"


def is_overdue(status: LoanStatus, due_date: date, today: date) -> bool:
    """The one place that decides whether a loan is late."""
    return status == LoanStatus.ONGOING and due_date < today


def extend_due_date(due_date: date, period_days: int) -> date:
    # Renewals count from the current due date, not from today.
    return due_date + timedelta(days=period_days)


def accrued_fine(loan: "Loan", policy: "FinePolicy", today: date) -> float:
    """Fine owed for lateness: days late times the daily rate, capped at max_fine."""
    end = loan.return_date if loan.status == LoanStatus.RETURNED and loan.return_date else today
    days_late = (end - loan.due_date).days
    if days_late <= 0:
        return 0.0
    amount = Decimal(str(policy.daily_fine)) * days_late
    amount = min(amount, Decimal(str(policy.max_fine)))
    return float(amount.quantize(Decimal("0.01")))


@dataclass
class Loan:
    id: int
    copy_id: int
    client_id: int
    loan_date: date
    due_date: date
    status: LoanStatus = LoanStatus.ONGOING
    user_id: Optional[int] = None
    return_date: Optional[date] = None
    renewals_count: int = 0
    created_at: Optional[str] = None

    def is_overdue(self, today: Optional[date] = None) -> bool:
        return is_overdue(self.status, self.due_date, today or date.today())

    def effective_status(self, today: Optional[date] = None) -> LoanStatus:
        return LoanStatus.OVERDUE if self.is_overdue(today) else self.status

    def to_dict(self, today: Optional[date] = None, fine_policy: Optional["FinePolicy"] = None) -> dict:
        today = today or date.today()
        payload = {
            "id": self.id,
            "copy_id": self.copy_id,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "loan_date": self.loan_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "status": self.status.value,
            "renewals_count": self.renewals_count,
            "overdue": self.is_overdue(today),
            "effective_status": self.effective_status(today).value,
        }
        if fine_policy is not None:
            payload["fine"] = accrued_fine(self, fine_policy, today)
        return payload

    @staticmethod
    def from_row(row) -> "Loan":
        return Loan(
            id=row["id"],
            copy_id=row["copy_id"],
            client_id=row["client_id"],
            user_id=row["user_id"],
            loan_date=date.fromisoformat(row["loan_date"]),
            due_date=date.fromisoformat(row["due_date"]),
            return_date=date.fromisoformat(row["return_date"]) if row["return_date"] else None,
            status=LoanStatus(row["status"]),
            renewals_count=row["renewals_count"] or 0,
            created_at=row["created_at"],
        )
