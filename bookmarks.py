import logging
from typing import Any, Dict, List

from book import Book
from clock import Clock, to_iso, utc_now
from database import DocumentStore
from errors import Conflict, DocumentExists, NotFound
from loan import pair_key
from validators import LoanValidator

logger = logging.getLogger(__name__)

BOOKS = "books"
BOOKMARKS = "bookmarks"


class BookmarkService:
    """One bookmark per (user, book). The document id is the pair itself."""

    def __init__(self, store: DocumentStore, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock

    def add_bookmark(self, user_id: Any, book_id: Any) -> Dict[str, Any]:
        user_id = LoanValidator.require_id(user_id, "userId")
        book_id = LoanValidator.require_id(book_id, "bookId")
        if self.store.get(BOOKS, book_id) is None:
            raise NotFound("Book not found")

        data = {"userId": user_id, "bookId": book_id, "createdAt": to_iso(self._clock())}
        try:
            bookmark_id = self.store.create(BOOKMARKS, data, doc_id=pair_key(user_id, book_id))
        except DocumentExists:
            raise Conflict("Bookmark for this book already exists")
        logger.info(f"Bookmark added: user={user_id} book={book_id}")
        return {"id": bookmark_id, **data}

    def remove_bookmark(self, user_id: str, book_id: str) -> None:
        if not self.store.delete(BOOKMARKS, pair_key(user_id, book_id)):
            raise NotFound("Bookmark not found")

    def list_user_bookmarks(self, user_id: str) -> List[Dict[str, Any]]:
        """Bookmarks with their book. Bookmarks of deleted books are skipped."""
        result = []
        for doc in self.store.query(BOOKMARKS, {"userId": user_id}, order_by="createdAt", descending=True):
            book_doc = self.store.get(BOOKS, doc["bookId"])
            if book_doc is None:
                continue
            book = Book.from_dict(book_doc).to_dict()
            result.append({"bookmarkId": doc["id"], "book": book, "createdAt": doc.get("createdAt")})
        return result
