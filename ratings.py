"""Star ratings and short reviews, one per (user, book)."""

import logging
from typing import Any, Dict, List, Optional

from book import Book
from clock import Clock, to_iso, utc_now
from database import DocumentStore
from errors import Conflict, DocumentExists, NotFound
from loan import pair_key
from validators import LoanValidator, RatingValidator

logger = logging.getLogger(__name__)

BOOKS = "books"
RATINGS = "ratings"


class RatingService:

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock

    def add_rating(self, user_id: Any, book_id: Any, rating: Any, review: Optional[str] = "") -> Dict[str, Any]:
        user_id = LoanValidator.require_id(user_id, "userId")
        book_id = LoanValidator.require_id(book_id, "bookId")
        value = RatingValidator.parse_rating(rating)
        if self.store.get(BOOKS, book_id) is None:
            raise NotFound("Book not found")

        now = to_iso(self._clock())
        data = {
            "userId": user_id,
            "bookId": book_id,
            "rating": value,
            "review": review or "",
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            rating_id = self.store.create(RATINGS, data, doc_id=pair_key(user_id, book_id))
        except DocumentExists:
            raise Conflict("User has already rated this book")
        logger.info(f"Rating added: user={user_id} book={book_id} rating={value}")
        return {"id": rating_id, **data}

    def update_rating(self, user_id: str, book_id: str, rating: Any = None,
                      review: Optional[str] = None) -> Dict[str, Any]:
        """Change the stars and/or review of an existing rating."""
        changes: Dict[str, Any] = {}
        if rating is not None:
            changes["rating"] = RatingValidator.parse_rating(rating)
        if review is not None:
            changes["review"] = review
        changes["updatedAt"] = to_iso(self._clock())

        doc = self.store.atomic_update(RATINGS, pair_key(user_id, book_id), lambda _current: changes)
        if doc is None:
            raise NotFound("Rating not found")
        return doc

    def delete_rating(self, user_id: str, book_id: str) -> None:
        if not self.store.delete(RATINGS, pair_key(user_id, book_id)):
            raise NotFound("Rating not found")
        logger.info(f"Rating deleted: user={user_id} book={book_id}")

    def list_user_ratings(self, user_id: str) -> List[Dict[str, Any]]:
        """Ratings of one user with their book. Ratings of deleted books are skipped."""
        result = []
        for doc in self.store.query(RATINGS, {"userId": user_id}, order_by="createdAt", descending=True):
            book_doc = self.store.get(BOOKS, doc["bookId"])
            if book_doc is None:
                continue
            book = Book.from_dict(book_doc).to_dict()
            result.append({
                "id": doc["id"],
                "book": book,
                "rating": doc.get("rating"),
                "review": doc.get("review", ""),
                "createdAt": doc.get("createdAt"),
            })
        return result

    def book_rating_summary(self, book_id: str) -> Dict[str, Any]:
        if self.store.get(BOOKS, book_id) is None:
            raise NotFound("Book not found")
        values = [int(doc["rating"]) for doc in self.store.query(RATINGS, {"bookId": book_id})]
        average = round(sum(values) / len(values), 2) if values else 0
        return {"bookId": book_id, "averageRating": average, "ratingCount": len(values)}
