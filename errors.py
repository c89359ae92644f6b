"""Error taxonomy shared by the services, the HTTP layer and the CLI.

Every error carries a stable ``kind`` string so callers can branch on it
without inspecting messages.
"""


class LibraryError(Exception):
    """Base class for all business-rule and store failures."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    """Malformed input, e.g. a rating outside 1..5."""

    kind = "validation_error"


class NotFound(LibraryError):
    """A book, loan, user, bookmark or rating id did not resolve."""

    kind = "not_found"


class Conflict(LibraryError):
    """Duplicate bookmark, rating or active loan; delete blocked by active loans."""

    kind = "conflict"


class InvalidTransition(LibraryError):
    """A loan event was fired against a loan in the wrong state."""

    kind = "invalid_transition"


class Unavailable(LibraryError):
    """No copies of the book are left to loan."""

    kind = "unavailable"


class InvariantViolation(LibraryError):
    """The operation would break 0 <= availableStock <= stock."""

    kind = "invariant_violation"


class StoreError(LibraryError):
    """Underlying document store failure. Treated as internal."""

    kind = "store_error"


class DocumentExists(StoreError):
    """Raised by the store when creating a document under an id already taken."""

    kind = "document_exists"

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"Document {collection}/{doc_id} already exists.")
        self.collection = collection
        self.doc_id = doc_id
