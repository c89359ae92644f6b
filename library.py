import logging
from typing import Any, Dict, Optional

from bookmarks import BookmarkService
from clock import Clock, utc_now
from config import settings
from database import DocumentStore
from inventory import InventoryManager
from loan_queries import LoanQueryService
from loans import LoanEngine
from ratings import RatingService
from users import UserDirectory

logger = logging.getLogger(__name__)


class Library:
    """Wires the document store and the services that operate on it.

    The HTTP layer and the CLI both go through one ``Library`` so they share
    the same store file and clock.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Clock] = None) -> None:
        self.db_file = db_file or settings.database_file
        self.clock: Clock = clock or utc_now
        self.store = DocumentStore(self.db_file, timeout=settings.database_timeout)
        self.store.initialize()

        self.inventory = InventoryManager(self.store, clock=self.clock)
        self.loans = LoanEngine(self.store, self.inventory, clock=self.clock)
        self.queries = LoanQueryService(self.store, clock=self.clock)
        self.bookmarks = BookmarkService(self.store, clock=self.clock)
        self.ratings = RatingService(self.store, clock=self.clock)
        self.users = UserDirectory(self.store, clock=self.clock)
        logger.debug(f"Library opened on {self.db_file}")

    def reconcile(self, book_id: Optional[str] = None) -> Dict[str, Any]:
        """Repair availableStock counters and open-loan claims.

        Claims are only swept on a full run; a single-book run just fixes the
        counter of that book.
        """
        books = self.inventory.reconcile(book_id)
        report: Dict[str, Any] = {"books": books, "releasedClaims": [], "restoredClaims": []}
        if book_id is None:
            report.update(self.loans.reconcile_claims())
        return report

    def close(self) -> None:
        self.store.close()
