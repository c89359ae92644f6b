"""Loan lifecycle: request, approve, reject and return.

The store has no multi-document transactions, so each event is ordered so
that a failure part way through can be undone:

* approve reserves a copy first, then commits ``pending -> approved``; if the
  commit fails the copy is released again.
* return marks the copy as coming back, commits ``approved -> returned`` (so a
  second return cannot release twice), then releases the copy; if the release
  fails the loan is put back to ``approved``.

Between the two steps the book carries an in-flight entry for the loan, so a
concurrent ``InventoryManager.reconcile`` counts the copy as still held. A
crash between the steps leaves an entry behind that reconcile drops once it
is older than the grace period.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from clock import Clock, parse_iso, to_iso, utc_now
from config import settings
from database import DocumentStore
from errors import Conflict, DocumentExists, InvalidTransition, NotFound, StoreError, Unavailable
from inventory import InventoryManager
from loan import ACTIVE_STATUSES, TERMINAL_STATUSES, TRANSITIONS, Loan, LoanStatus, pair_key
from validators import LoanValidator

logger = logging.getLogger(__name__)

LOANS = "loans"
ACTIVE_LOANS = "active_loans"

DUPLICATE_LOAN_MESSAGE = "You already have an active loan request for this book"

TRANSITION_ERRORS = {
    "approve": "Loan is not pending approval",
    "reject": "Loan is not pending approval",
    "return": "Book is not currently loaned",
}


class LoanEngine:
    """State machine for loans. Coordinates with the inventory on approve/return."""

    def __init__(self, store: DocumentStore, inventory: InventoryManager, clock: Clock = utc_now,
                 durations: Optional[Iterable[int]] = None,
                 stale_claim_seconds: Optional[int] = None) -> None:
        self.store = store
        self.inventory = inventory
        self._clock = clock
        self.durations = tuple(durations or settings.loan_durations)
        self.stale_claim_seconds = (
            settings.stale_claim_seconds if stale_claim_seconds is None else stale_claim_seconds
        )

    def get_loan(self, loan_id: str) -> Loan:
        doc = self.store.get(LOANS, loan_id)
        if doc is None:
            raise NotFound("Loan not found")
        return Loan.from_dict(doc)

    # ------------------------- Events ------------------------- #
    def request_loan(self, user_id: Any, book_id: Any, loan_duration: Any) -> Loan:
        """Create a pending loan if the book exists, has copies left and the
        user has no other pending/approved loan for it."""
        user_id = LoanValidator.require_id(user_id, "userId")
        book_id = LoanValidator.require_id(book_id, "bookId")
        duration = LoanValidator.parse_duration(loan_duration, self.durations)

        book = self.inventory.get_book(book_id)
        if book.available_stock <= 0:
            raise Unavailable("Book is not available for loan")

        existing = self.store.query(
            LOANS, {"userId": user_id, "bookId": book_id, "status": list(ACTIVE_STATUSES)}, limit=1
        )
        if existing:
            raise Conflict(DUPLICATE_LOAN_MESSAGE)

        now = to_iso(self._clock())
        loan_id = uuid.uuid4().hex
        self._claim_pair(user_id, book_id, loan_id, now)

        data = {
            "userId": user_id,
            "bookId": book_id,
            "loanDuration": duration,
            "status": LoanStatus.PENDING.value,
            "requestDate": now,
            "approvedDate": None,
            "dueDate": None,
            "returnDate": None,
            "librarianId": None,
        }
        try:
            self.store.create(LOANS, data, doc_id=loan_id)
        except StoreError:
            self._release_pair(user_id, book_id, loan_id)
            raise
        if self.inventory.find_book(book_id) is None:
            # deleted while the loan was being created
            self.store.delete(LOANS, loan_id)
            self._release_pair(user_id, book_id, loan_id)
            raise NotFound("Book not found")
        logger.info(f"Loan requested: id={loan_id} user={user_id} book={book_id} duration={duration}d")
        return Loan.from_dict({**data, "id": loan_id})

    def approve(self, loan_id: str, librarian_id: Any) -> Loan:
        librarian_id = LoanValidator.require_id(librarian_id, "librarianId")
        loan = self.get_loan(loan_id)
        self._require_source(loan, "approve")

        self.inventory.reserve_copy(loan.book_id, loan_id)
        approved_at = self._clock()
        changes = {
            "approvedDate": to_iso(approved_at),
            "dueDate": to_iso(approved_at + timedelta(days=loan.loan_duration)),
            "librarianId": librarian_id,
        }
        try:
            approved = self._transition(loan_id, "approve", changes)
        except Exception:
            self._undo_reservation(loan.book_id, loan_id)
            raise
        self._settle(loan.book_id, loan_id)
        logger.info(f"Loan approved: id={loan_id} by={librarian_id} due={approved.due_date}")
        return approved

    def reject(self, loan_id: str, librarian_id: Any, reason: Optional[str] = None) -> Loan:
        librarian_id = LoanValidator.require_id(librarian_id, "librarianId")
        changes = {
            "rejectedDate": to_iso(self._clock()),
            "rejectionReason": reason or "",
            "librarianId": librarian_id,
        }
        rejected = self._transition(loan_id, "reject", changes)
        self._release_pair(rejected.user_id, rejected.book_id, loan_id)
        logger.info(f"Loan rejected: id={loan_id} by={librarian_id}")
        return rejected

    def return_loan(self, loan_id: str, librarian_id: Any) -> Loan:
        librarian_id = LoanValidator.require_id(librarian_id, "librarianId")
        loan = self.get_loan(loan_id)
        self._require_source(loan, "return")

        returned_at = to_iso(self._clock())
        changes = {
            "returnDate": returned_at,
            "librarianId": librarian_id,
            "returnLibrarianId": librarian_id,
        }
        self.inventory.mark_release(loan.book_id, loan_id)
        try:
            returned = self._transition(loan_id, "return", changes)
        except Exception:
            self._settle(loan.book_id, loan_id)
            raise
        try:
            self.inventory.release_copy(loan.book_id, loan_id)
        except Exception:
            self._undo_return(loan, returned_at)
            self._settle(loan.book_id, loan_id)
            raise
        self._release_pair(returned.user_id, returned.book_id, loan_id)
        logger.info(f"Loan returned: id={loan_id} by={librarian_id}")
        return returned

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _require_source(loan: Loan, event: str) -> None:
        source, _target = TRANSITIONS[event]
        if loan.status != source:
            raise InvalidTransition(TRANSITION_ERRORS[event])

    def _transition(self, loan_id: str, event: str, changes: Dict[str, Any]) -> Loan:
        """Move the loan along ``event`` only if it is still in the source state."""
        source, target = TRANSITIONS[event]

        def apply(current: Dict[str, Any]) -> Dict[str, Any]:
            if current.get("status") != source.value:
                raise InvalidTransition(TRANSITION_ERRORS[event])
            return {**changes, "status": target.value}

        doc = self.store.atomic_update(LOANS, loan_id, apply)
        if doc is None:
            raise NotFound("Loan not found")
        return Loan.from_dict(doc)

    def _undo_reservation(self, book_id: str, loan_id: str) -> None:
        try:
            self.inventory.release_copy(book_id, loan_id)
        except Exception:
            logger.exception(
                f"Could not release reserved copy of book={book_id} after failed approval of loan={loan_id}; "
                "run reconcile"
            )

    def _settle(self, book_id: str, loan_id: str) -> None:
        try:
            self.inventory.settle(book_id, loan_id)
        except Exception:
            logger.exception(f"Could not clear in-flight entry of loan={loan_id} on book={book_id}")

    def _undo_return(self, loan: Loan, returned_at: str) -> None:
        def restore(current: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if current.get("status") != LoanStatus.RETURNED.value or current.get("returnDate") != returned_at:
                return None
            return {
                "status": LoanStatus.APPROVED.value,
                "returnDate": None,
                "returnLibrarianId": loan.return_librarian_id,
                "librarianId": loan.librarian_id,
            }

        try:
            self.store.atomic_update(LOANS, loan.id, restore)
        except Exception:
            logger.exception(f"Could not restore loan={loan.id} to approved after failed release; run reconcile")

    def _claim_pair(self, user_id: str, book_id: str, loan_id: str, now: str) -> None:
        """Insert the (user, book) claim document. Its id doubles as a unique key."""
        key = pair_key(user_id, book_id)
        payload = {"userId": user_id, "bookId": book_id, "loanId": loan_id, "claimedAt": now}
        for _attempt in range(2):
            try:
                self.store.create(ACTIVE_LOANS, payload, doc_id=key)
                return
            except DocumentExists:
                stale = self.store.get(ACTIVE_LOANS, key)
                if stale is not None and not self._is_stale_claim(stale):
                    raise Conflict(DUPLICATE_LOAN_MESSAGE)
                if stale is not None:
                    logger.warning(f"Dropping stale loan claim {key} (loan={stale.get('loanId')})")
                    self.store.delete_where(
                        ACTIVE_LOANS, key, lambda doc, lid=stale.get("loanId"): doc.get("loanId") == lid
                    )
        raise Conflict(DUPLICATE_LOAN_MESSAGE)

    def _release_pair(self, user_id: str, book_id: str, loan_id: str) -> None:
        key = pair_key(user_id, book_id)
        try:
            self.store.delete_where(ACTIVE_LOANS, key, lambda doc: doc.get("loanId") == loan_id)
        except StoreError:
            logger.exception(f"Could not release loan claim {key}; reconcile will clear it")

    def _is_stale_claim(self, claim: Dict[str, Any]) -> bool:
        """A claim is stale when its loan has ended, or never appeared within the grace period."""
        loan_doc = self.store.get(LOANS, claim.get("loanId") or "")
        if loan_doc is not None:
            return loan_doc.get("status") in TERMINAL_STATUSES
        claimed_at = parse_iso(claim.get("claimedAt"))
        if claimed_at is None:
            return True
        age = (self._clock() - claimed_at).total_seconds()
        return age > self.stale_claim_seconds

    def reconcile_claims(self) -> Dict[str, List[str]]:
        """Drop claims whose loan ended or vanished; restore claims missing for open loans."""
        released = []
        for claim in self.store.query(ACTIVE_LOANS):
            if self._is_stale_claim(claim):
                loan_id = claim.get("loanId")
                if self.store.delete_where(ACTIVE_LOANS, claim["id"], lambda doc, lid=loan_id: doc.get("loanId") == lid):
                    released.append(claim["id"])

        restored = []
        now = to_iso(self._clock())
        for doc in self.store.query(LOANS, {"status": list(ACTIVE_STATUSES)}, order_by="requestDate"):
            key = pair_key(doc["userId"], doc["bookId"])
            payload = {"userId": doc["userId"], "bookId": doc["bookId"], "loanId": doc["id"], "claimedAt": now}
            try:
                self.store.create(ACTIVE_LOANS, payload, doc_id=key)
                restored.append(key)
            except DocumentExists:
                owner = self.store.get(ACTIVE_LOANS, key) or {}
                if owner.get("loanId") != doc["id"]:
                    logger.warning(
                        f"Pair {key} has more than one open loan: {owner.get('loanId')} and {doc['id']}"
                    )
        if released or restored:
            logger.info(f"Loan claims reconciled: released={len(released)} restored={len(restored)}")
        return {"releasedClaims": released, "restoredClaims": restored}
