"""Book inventory: catalog records and the stock / availableStock counters.

Every change to ``availableStock`` goes through ``DocumentStore.atomic_update``
so two requests can never both observe the last copy and both take it.

Approvals and returns touch two documents (the book and the loan). While one
is between its two writes, the book carries an ``inFlight`` entry keyed by
loan id. Reconciliation counts those loans as holding a copy, so it never
undoes a reservation or repeats a release that is still in progress.
"""

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from book import Book
from clock import Clock, parse_iso, to_iso, utc_now
from config import settings
from database import DocumentStore
from errors import Conflict, InvalidTransition, InvariantViolation, NotFound, Unavailable, ValidationError
from loan import ACTIVE_STATUSES, LoanStatus
from pagination import paginate
from validators import PageValidator, StockValidator, TextValidator

logger = logging.getLogger(__name__)

BOOKS = "books"
LOANS = "loans"

# Catalog fields a librarian may replace through update_book.
EDITABLE_FIELDS = ("title", "author", "year", "category", "description", "pages", "coverUrl")

# inFlight operations
RESERVE = "reserve"
RELEASE = "release"


def _without(in_flight: Dict[str, Any], loan_id: Optional[str]) -> Dict[str, Any]:
    return {k: v for k, v in (in_flight or {}).items() if k != loan_id}


class InventoryManager:
    """Owns book documents and keeps 0 <= availableStock <= stock."""

    def __init__(self, store: DocumentStore, clock: Clock = utc_now,
                 stale_seconds: Optional[int] = None) -> None:
        self.store = store
        self._clock = clock
        self.stale_seconds = settings.stale_claim_seconds if stale_seconds is None else stale_seconds

    # ------------------------- Catalog ------------------------- #
    def create_book(self, fields: Dict[str, Any], initial_stock: Any) -> Book:
        """Add a book with ``availableStock`` equal to its initial stock."""
        stock = StockValidator.parse_stock(initial_stock)
        now = to_iso(self._clock())
        data = {
            "title": TextValidator.require_text(fields.get("title"), "title"),
            "author": TextValidator.require_text(fields.get("author"), "author"),
            "year": fields.get("year"),
            "category": TextValidator.optional_text(fields.get("category")),
            "description": fields.get("description"),
            "pages": fields.get("pages"),
            "coverUrl": fields.get("coverUrl") or settings.default_cover_url,
            "stock": stock,
            "availableStock": stock,
            "createdAt": now,
            "updatedAt": now,
        }
        book_id = self.store.create(BOOKS, data)
        logger.info(f"Book created: id={book_id} title={data['title']!r} stock={stock}")
        return Book.from_dict({**data, "id": book_id})

    def find_book(self, book_id: str) -> Optional[Book]:
        """The book, or None if it is absent or being deleted."""
        doc = self.store.get(BOOKS, book_id)
        if doc is None or doc.get("deleting"):
            return None
        return Book.from_dict(doc)

    def get_book(self, book_id: str) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise NotFound("Book not found")
        return book

    def list_books(self, category: Optional[str] = None, search: Optional[str] = None,
                   page: int = 1, limit: Optional[int] = None) -> Tuple[List[Book], Dict[str, int]]:
        """Filter by exact category, then by title/author substring, ordered by title."""
        if limit is None:
            limit = settings.default_page_size
        page, limit = PageValidator.parse_page(page, limit, settings.max_page_size)
        filters = {"category": category} if category else None
        books = [Book.from_dict(doc) for doc in self.store.query(BOOKS, filters) if not doc.get("deleting")]
        if search:
            term = search.lower()
            books = [b for b in books if term in b.title.lower() or term in b.author.lower()]
        books.sort(key=lambda b: (b.title.lower(), b.id or ""))
        return paginate(books, page, limit)

    def update_book(self, book_id: str, changes: Dict[str, Any]) -> Book:
        """Apply a partial update: keys present replace, keys absent are kept.

        A ``stock`` key changes the total stock with the same rules as
        :meth:`adjust_total_stock`, in the same atomic step as the other fields.
        """
        changes = dict(changes)
        unknown = set(changes) - set(EDITABLE_FIELDS) - {"stock"}
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        for field in ("title", "author"):
            if field in changes:
                changes[field] = TextValidator.require_text(changes[field], field)
        new_stock = None
        if "stock" in changes:
            new_stock = StockValidator.parse_stock(changes.pop("stock"))
        now = to_iso(self._clock())

        def apply(current: Dict[str, Any]) -> Dict[str, Any]:
            if current.get("deleting"):
                raise NotFound("Book not found")
            partial = dict(changes)
            if new_stock is not None:
                partial.update(self._stock_change(current, new_stock))
            partial["updatedAt"] = now
            return partial

        doc = self.store.atomic_update(BOOKS, book_id, apply)
        if doc is None:
            raise NotFound("Book not found")
        return Book.from_dict(doc)

    def delete_book(self, book_id: str) -> None:
        """Delete a book that has no pending or approved loans.

        The book is marked ``deleting`` before loans are checked, so a loan
        request arriving meanwhile no longer sees it. If loans are found the
        mark is lifted again.
        """
        doc = self.store.atomic_update(BOOKS, book_id, lambda _current: {"deleting": True})
        if doc is None:
            raise NotFound("Book not found")
        active = self.store.query(LOANS, {"bookId": book_id, "status": list(ACTIVE_STATUSES)}, limit=1)
        if active:
            self.store.atomic_update(BOOKS, book_id, lambda _current: {"deleting": False})
            raise Conflict("Book has pending or approved loans and cannot be deleted")
        self.store.delete(BOOKS, book_id)
        logger.info(f"Book deleted: id={book_id}")

    # ------------------------- Stock counters ------------------------- #
    @staticmethod
    def _stock_change(current: Dict[str, Any], new_stock: int) -> Dict[str, int]:
        old_stock = int(current.get("stock") or 0)
        available = int(current.get("availableStock") or 0)
        new_available = available + (new_stock - old_stock)
        if new_available < 0:
            on_loan = old_stock - available
            raise InvariantViolation(
                f"Cannot reduce stock to {new_stock}: {on_loan} copies are currently on loan"
            )
        return {"stock": new_stock, "availableStock": new_available}

    def adjust_total_stock(self, book_id: str, new_stock: Any) -> Book:
        """Change the number of copies owned, shifting availability by the same delta."""
        new_stock = StockValidator.parse_stock(new_stock)
        now = to_iso(self._clock())

        def apply(current: Dict[str, Any]) -> Dict[str, Any]:
            return {**self._stock_change(current, new_stock), "updatedAt": now}

        doc = self.store.atomic_update(BOOKS, book_id, apply)
        if doc is None:
            raise NotFound("Book not found")
        logger.info(f"Stock adjusted: book={book_id} stock={doc['stock']} available={doc['availableStock']}")
        return Book.from_dict(doc)

    def reserve_copy(self, book_id: str, loan_id: Optional[str] = None) -> Book:
        """Take one copy. Raises Unavailable when none are left.

        With ``loan_id`` the reservation stays marked in flight until
        :meth:`settle` is called for that loan.
        """
        now = to_iso(self._clock())

        def take_one(current: Dict[str, Any]) -> Dict[str, Any]:
            available = int(current.get("availableStock") or 0)
            if loan_id:
                self._require_idle(current, loan_id, "Loan is not pending approval")
            if available <= 0:
                raise Unavailable("Book is no longer available")
            changes: Dict[str, Any] = {"availableStock": available - 1}
            if loan_id:
                in_flight = _without(current.get("inFlight"), loan_id)
                in_flight[loan_id] = {"op": RESERVE, "since": now}
                changes["inFlight"] = in_flight
            return changes

        doc = self.store.atomic_update(BOOKS, book_id, take_one)
        if doc is None:
            raise NotFound("Book not found")
        return Book.from_dict(doc)

    def mark_release(self, book_id: str, loan_id: str) -> None:
        """Record that the copy held by ``loan_id`` is about to come back."""
        now = to_iso(self._clock())

        def mark(current: Dict[str, Any]) -> Dict[str, Any]:
            self._require_idle(current, loan_id, "Book is not currently loaned")
            in_flight = _without(current.get("inFlight"), loan_id)
            in_flight[loan_id] = {"op": RELEASE, "since": now}
            return {"inFlight": in_flight}

        if self.store.atomic_update(BOOKS, book_id, mark) is None:
            raise NotFound("Book not found")

    def settle(self, book_id: str, loan_id: str) -> None:
        """Drop the in-flight entry of ``loan_id`` without touching the counters."""

        def clear(current: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            in_flight = current.get("inFlight") or {}
            if loan_id not in in_flight:
                return None
            return {"inFlight": _without(in_flight, loan_id)}

        self.store.atomic_update(BOOKS, book_id, clear)

    def release_copy(self, book_id: str, loan_id: Optional[str] = None) -> Book:
        """Give one copy back, never going above the total stock.

        With ``loan_id`` the in-flight entry of that loan is dropped in the
        same step.
        """

        def put_back(current: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            available = int(current.get("availableStock") or 0)
            stock = int(current.get("stock") or 0)
            changes: Dict[str, Any] = {}
            if loan_id and loan_id in (current.get("inFlight") or {}):
                changes["inFlight"] = _without(current.get("inFlight"), loan_id)
            if available >= stock:
                logger.warning(f"Release ignored for book={book_id}: availableStock already at stock ({stock})")
            else:
                changes["availableStock"] = available + 1
            return changes or None

        doc = self.store.atomic_update(BOOKS, book_id, put_back)
        if doc is None:
            raise NotFound("Book not found")
        return Book.from_dict(doc)

    def _require_idle(self, current: Dict[str, Any], loan_id: str, message: str) -> None:
        """A loan can have one approval or return in flight at a time."""
        entry = (current.get("inFlight") or {}).get(loan_id)
        if entry is not None and not self._is_stale(entry):
            raise InvalidTransition(message)

    # ------------------------- Reconciliation ------------------------- #
    def _is_stale(self, entry: Dict[str, Any]) -> bool:
        since = parse_iso(entry.get("since"))
        if since is None:
            return True
        return (self._clock() - since).total_seconds() > self.stale_seconds

    def reconcile(self, book_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Recompute availableStock from the loans holding a copy of each book.

        A copy is held by every approved loan and by every loan with a fresh
        in-flight entry on the book. In-flight entries older than the grace
        period belong to a process that died mid-operation and are dropped.
        Returns one entry per corrected book.
        """
        if book_id is not None:
            if self.store.get(BOOKS, book_id) is None:
                raise NotFound("Book not found")
            book_ids = [book_id]
        else:
            book_ids = [doc["id"] for doc in self.store.query(BOOKS)]

        corrections = []
        for bid in book_ids:
            before: Dict[str, int] = {}

            def recompute(current: Dict[str, Any], bid: str = bid) -> Optional[Dict[str, Any]]:
                stock = int(current.get("stock") or 0)
                available = int(current.get("availableStock") or 0)
                before["availableStock"] = available

                in_flight = current.get("inFlight") or {}
                fresh = {k: v for k, v in in_flight.items() if not self._is_stale(v)}
                holders: Set[str] = set(fresh)
                holders.update(
                    doc["id"] for doc in self.store.query(LOANS, {"bookId": bid, "status": LoanStatus.APPROVED.value})
                )
                if len(holders) > stock:
                    logger.error(f"Book {bid} has {len(holders)} copies out but only {stock} in stock")
                expected = min(max(stock - len(holders), 0), stock)

                changes: Dict[str, Any] = {}
                if len(fresh) != len(in_flight):
                    logger.warning(f"Dropping {len(in_flight) - len(fresh)} abandoned in-flight entries on book={bid}")
                    changes["inFlight"] = fresh
                if expected != available:
                    changes["availableStock"] = expected
                return changes or None

            doc = self.store.atomic_update(BOOKS, bid, recompute)
            if doc is None:
                continue
            if doc["availableStock"] != before.get("availableStock"):
                logger.info(
                    f"Reconciled book={bid}: availableStock {before['availableStock']} -> {doc['availableStock']}"
                )
                corrections.append({
                    "bookId": bid,
                    "before": before["availableStock"],
                    "after": doc["availableStock"],
                })
        return corrections
