"""Loan record and its state machine table."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from clock import parse_iso

SECONDS_PER_DAY = 24 * 60 * 60


class LoanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"


ACTIVE_STATUSES = (LoanStatus.PENDING.value, LoanStatus.APPROVED.value)
TERMINAL_STATUSES = (LoanStatus.REJECTED.value, LoanStatus.RETURNED.value)

# event -> (required source state, target state)
TRANSITIONS: Dict[str, Tuple[LoanStatus, LoanStatus]] = {
    "approve": (LoanStatus.PENDING, LoanStatus.APPROVED),
    "reject": (LoanStatus.PENDING, LoanStatus.REJECTED),
    "return": (LoanStatus.APPROVED, LoanStatus.RETURNED),
}


def pair_key(user_id: str, book_id: str) -> str:
    """Document id for records unique per (user, book): open-loan claims, bookmarks, ratings."""
    return f"{user_id}:{book_id}"


@dataclass
class Loan:
    """A user borrowing one copy of a book."""

    id: str
    user_id: str
    book_id: str
    loan_duration: int
    status: LoanStatus
    request_date: str
    approved_date: Optional[str] = None
    due_date: Optional[str] = None
    rejected_date: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_date: Optional[str] = None
    librarian_id: Optional[str] = None
    return_librarian_id: Optional[str] = None

    def days_remaining(self, now: datetime) -> Optional[int]:
        """Whole days until the due date, rounded up. Negative once overdue."""
        due = parse_iso(self.due_date)
        if due is None:
            return None
        return math.ceil((due - now).total_seconds() / SECONDS_PER_DAY)

    def is_overdue(self, now: datetime) -> bool:
        due = parse_iso(self.due_date)
        return self.status == LoanStatus.APPROVED and due is not None and due < now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "bookId": self.book_id,
            "loanDuration": self.loan_duration,
            "status": self.status.value,
            "requestDate": self.request_date,
            "approvedDate": self.approved_date,
            "dueDate": self.due_date,
            "rejectedDate": self.rejected_date,
            "rejectionReason": self.rejection_reason,
            "returnDate": self.return_date,
            "librarianId": self.librarian_id,
            "returnLibrarianId": self.return_librarian_id,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data["id"],
            user_id=data["userId"],
            book_id=data["bookId"],
            loan_duration=int(data["loanDuration"]),
            status=LoanStatus(data["status"]),
            request_date=data["requestDate"],
            approved_date=data.get("approvedDate"),
            due_date=data.get("dueDate"),
            rejected_date=data.get("rejectedDate"),
            rejection_reason=data.get("rejectionReason"),
            return_date=data.get("returnDate"),
            librarian_id=data.get("librarianId"),
            return_librarian_id=data.get("returnLibrarianId"),
        )
