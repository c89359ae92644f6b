"""Read-side projections over loans.

Joins are best effort: a loan whose book or user document is gone is still
returned, with ``book`` / ``user`` set to ``None``. A missing reference never
fails the whole query.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from book import Book
from clock import Clock, parse_iso, utc_now
from config import settings
from database import DocumentStore
from errors import NotFound, ValidationError
from loan import Loan, LoanStatus
from pagination import paginate
from users import public_user
from validators import PageValidator

BOOKS = "books"
LOANS = "loans"
USERS = "users"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _parse_status(status: Optional[str]) -> Optional[str]:
    if status is None or status == "":
        return None
    try:
        return LoanStatus(status).value
    except ValueError:
        options = ", ".join(s.value for s in LoanStatus)
        raise ValidationError(f"status must be one of: {options}")


def _newest_first(docs: List[Dict[str, Any]], field: str) -> List[Dict[str, Any]]:
    return sorted(docs, key=lambda d: (parse_iso(d.get(field)) or _EPOCH, d["id"]), reverse=True)


class LoanQueryService:

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock

    # ------------------------- Joins ------------------------- #
    def _lookup(self, collection: str, doc_id: Optional[str], cache: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        key = f"{collection}/{doc_id}"
        if key not in cache:
            doc = self.store.get(collection, doc_id)
            if doc is not None and collection == USERS:
                doc = public_user(doc)
            elif doc is not None and collection == BOOKS:
                doc = Book.from_dict(doc).to_dict()
            cache[key] = doc
        return cache[key]

    def _enrich(self, docs: List[Dict[str, Any]], include_user: bool) -> List[Dict[str, Any]]:
        cache: Dict[str, Any] = {}
        enriched = []
        for doc in docs:
            item = Loan.from_dict(doc).to_dict()
            item["book"] = self._lookup(BOOKS, doc.get("bookId"), cache)
            if include_user:
                item["user"] = self._lookup(USERS, doc.get("userId"), cache)
            enriched.append(item)
        return enriched

    # ------------------------- Projections ------------------------- #
    def list_loans(self, status: Optional[str] = None, page: int = 1,
                   limit: Optional[int] = None) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        """All loans, newest request first, each with book and user snapshots.

        The full filtered sequence is materialised and ordered before the page
        is cut, so pages are stable for a given data set.
        """
        if limit is None:
            limit = settings.default_page_size
        page, limit = PageValidator.parse_page(page, limit, settings.max_page_size)
        status = _parse_status(status)
        filters = {"status": status} if status else None
        docs = _newest_first(self.store.query(LOANS, filters), "requestDate")
        page_docs, pagination = paginate(docs, page, limit)
        return self._enrich(page_docs, include_user=True), pagination

    def list_user_loans(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Loan history of one user, newest request first, with book snapshots."""
        filters: Dict[str, Any] = {"userId": user_id}
        status = _parse_status(status)
        if status:
            filters["status"] = status
        docs = _newest_first(self.store.query(LOANS, filters), "requestDate")
        return self._enrich(docs, include_user=False)

    def list_current_loans(self, user_id: str) -> List[Dict[str, Any]]:
        """Approved loans of a user with daysRemaining / isOverdue, newest approval first."""
        now = self._clock()
        docs = self.store.query(LOANS, {"userId": user_id, "status": LoanStatus.APPROVED.value})
        docs = _newest_first(docs, "approvedDate")
        items = self._enrich(docs, include_user=False)
        for doc, item in zip(docs, items):
            days_remaining = Loan.from_dict(doc).days_remaining(now)
            item["daysRemaining"] = days_remaining
            item["isOverdue"] = days_remaining is not None and days_remaining < 0
        return items

    def get_loan_detail(self, loan_id: str) -> Dict[str, Any]:
        doc = self.store.get(LOANS, loan_id)
        if doc is None:
            raise NotFound("Loan not found")
        return self._enrich([doc], include_user=True)[0]

    def dashboard_stats(self) -> Dict[str, int]:
        """Librarian dashboard counters, recomputed by a full scan."""
        now = self._clock()
        books = [b for b in self.store.query(BOOKS) if not b.get("deleting")]
        loans = [Loan.from_dict(doc) for doc in self.store.query(LOANS)]

        by_status = {status: 0 for status in LoanStatus}
        overdue = 0
        for loan in loans:
            by_status[loan.status] += 1
            if loan.is_overdue(now):
                overdue += 1

        return {
            "totalBooks": len(books),
            "availableBooks": sum(int(b.get("availableStock") or 0) for b in books),
            "totalUsers": self.store.count(USERS),
            "pendingLoans": by_status[LoanStatus.PENDING],
            "activeLoans": by_status[LoanStatus.APPROVED],
            "rejectedLoans": by_status[LoanStatus.REJECTED],
            "returnedLoans": by_status[LoanStatus.RETURNED],
            "overdueLoans": overdue,
        }
