import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from clock import to_iso, utc_now
from config import settings
from errors import LibraryError, StoreError
from library import Library

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Created on first use so importing the module never touches the database.
_library: Optional[Library] = None


def get_library() -> Library:
    """Dependency returning the shared Library instance."""
    global _library
    if _library is None:
        _library = Library()
    return _library


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.app_name} {settings.app_version} starting ({settings.environment})")
    try:
        yield
    finally:
        global _library
        if _library is not None:
            _library.close()
            _library = None
        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Dependency guarding librarian mutations."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
STATUS_BY_KIND = {
    "validation_error": 400,
    "conflict": 400,
    "invalid_transition": 400,
    "unavailable": 400,
    "invariant_violation": 400,
    "not_found": 404,
}


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status == 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return JSONResponse(status_code=status, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def ok(data: Any = None, message: Optional[str] = None, pagination: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


# --- Models ---
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BookCreate(CamelModel):
    title: str | None = None
    author: str | None = None
    year: int | None = None
    category: str | None = None
    description: str | None = None
    pages: int | None = None
    cover_url: str | None = Field(default=None, alias="coverUrl")
    stock: int = 0


class BookUpdate(CamelModel):
    """Every field optional; only the keys sent are applied."""

    title: str | None = None
    author: str | None = None
    year: int | None = None
    category: str | None = None
    description: str | None = None
    pages: int | None = None
    cover_url: str | None = Field(default=None, alias="coverUrl")
    stock: int | None = None


class LoanRequest(CamelModel):
    user_id: str | None = Field(default=None, alias="userId")
    book_id: str | None = Field(default=None, alias="bookId")
    loan_duration: int | None = Field(default=None, alias="loanDuration")


class LibrarianAction(CamelModel):
    librarian_id: str | None = Field(default=None, alias="librarianId")


class RejectAction(LibrarianAction):
    reason: str | None = None


class BookmarkCreate(CamelModel):
    book_id: str | None = Field(default=None, alias="bookId")


class RatingCreate(CamelModel):
    book_id: str | None = Field(default=None, alias="bookId")
    rating: Any = None
    review: str | None = ""


class RatingUpdate(CamelModel):
    rating: Any = None
    review: str | None = None


class UserCreate(CamelModel):
    name: str | None = None
    email: str | None = None
    role: str = "user"
    phone: str | None = None
    address: str | None = None


class ProfileUpdate(CamelModel):
    """Every field optional; only the keys sent are applied."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None


class LibrarianProfileUpdate(ProfileUpdate):
    bio: str | None = None


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Liveness probe with a quick database round trip."""
    db_ok = True
    try:
        library.store.ping()
    except StoreError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": to_iso(utc_now()),
        "db": db_ok,
        "version": settings.app_version,
    }


# --- Books ---
@app.post("/api/books", status_code=201, dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreate, library: Library = Depends(get_library)):
    fields = payload.model_dump(by_alias=True, exclude={"stock"})
    book = library.inventory.create_book(fields, payload.stock)
    return ok(book.to_dict(), "Book added successfully")


@app.get("/api/books")
def list_books(
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    library: Library = Depends(get_library),
):
    books, pagination = library.inventory.list_books(category=category, search=search, page=page, limit=limit)
    return ok([b.to_dict() for b in books], pagination=pagination)


@app.get("/api/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library)):
    return ok(library.inventory.get_book(book_id).to_dict())


@app.put("/api/books/{book_id}", dependencies=[Depends(get_api_key)])
def update_book(book_id: str, payload: BookUpdate, library: Library = Depends(get_library)):
    changes = payload.model_dump(by_alias=True, exclude_unset=True)
    book = library.inventory.update_book(book_id, changes)
    return ok(book.to_dict(), "Book updated successfully")


@app.delete("/api/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str, library: Library = Depends(get_library)):
    library.inventory.delete_book(book_id)
    return ok(message="Book deleted successfully")


@app.get("/api/books/{book_id}/rating")
def get_book_rating(book_id: str, library: Library = Depends(get_library)):
    return ok(library.ratings.book_rating_summary(book_id))


# --- Bookmarks ---
@app.post("/api/books/{user_id}/bookmarks", status_code=201)
def add_bookmark(user_id: str, payload: BookmarkCreate, library: Library = Depends(get_library)):
    bookmark = library.bookmarks.add_bookmark(user_id, payload.book_id)
    return ok(bookmark, "Book bookmarked successfully")


@app.get("/api/books/{user_id}/bookmarks")
def list_bookmarks(user_id: str, library: Library = Depends(get_library)):
    return ok(library.bookmarks.list_user_bookmarks(user_id))


@app.delete("/api/books/{user_id}/bookmarks/{book_id}")
def remove_bookmark(user_id: str, book_id: str, library: Library = Depends(get_library)):
    library.bookmarks.remove_bookmark(user_id, book_id)
    return ok(message="Bookmark removed successfully")


# --- Ratings ---
@app.post("/api/books/{user_id}/ratings", status_code=201)
def add_rating(user_id: str, payload: RatingCreate, library: Library = Depends(get_library)):
    rating = library.ratings.add_rating(user_id, payload.book_id, payload.rating, payload.review)
    return ok(rating, "Rating added successfully")


@app.get("/api/books/{user_id}/ratings")
def list_ratings(user_id: str, library: Library = Depends(get_library)):
    return ok(library.ratings.list_user_ratings(user_id))


@app.put("/api/books/{user_id}/{book_id}/ratings")
def update_rating(user_id: str, book_id: str, payload: RatingUpdate, library: Library = Depends(get_library)):
    rating = library.ratings.update_rating(user_id, book_id, rating=payload.rating, review=payload.review)
    return ok(rating, "Rating updated successfully")


@app.delete("/api/books/{user_id}/{book_id}/ratings")
def delete_rating(user_id: str, book_id: str, library: Library = Depends(get_library)):
    library.ratings.delete_rating(user_id, book_id)
    return ok(message="Rating deleted successfully")


# --- Loans ---
@app.post("/api/loans", status_code=201)
def request_loan(payload: LoanRequest, library: Library = Depends(get_library)):
    loan = library.loans.request_loan(payload.user_id, payload.book_id, payload.loan_duration)
    return ok(loan.to_dict(), "Loan request submitted successfully")


@app.get("/api/loans")
def list_loans(
    status: Optional[str] = None,
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    library: Library = Depends(get_library),
):
    items, pagination = library.queries.list_loans(status=status, page=page, limit=limit)
    return ok(items, pagination=pagination)


@app.get("/api/loans/user/{user_id}")
def list_user_loans(user_id: str, status: Optional[str] = None, library: Library = Depends(get_library)):
    return ok(library.queries.list_user_loans(user_id, status=status))


@app.get("/api/loans/{loan_id}")
def get_loan(loan_id: str, library: Library = Depends(get_library)):
    return ok(library.queries.get_loan_detail(loan_id))


@app.put("/api/loans/{loan_id}/approve", dependencies=[Depends(get_api_key)])
def approve_loan(loan_id: str, payload: LibrarianAction, library: Library = Depends(get_library)):
    loan = library.loans.approve(loan_id, payload.librarian_id)
    return ok(loan.to_dict(), "Loan approved successfully")


@app.put("/api/loans/{loan_id}/reject", dependencies=[Depends(get_api_key)])
def reject_loan(loan_id: str, payload: RejectAction, library: Library = Depends(get_library)):
    loan = library.loans.reject(loan_id, payload.librarian_id, payload.reason)
    return ok(loan.to_dict(), "Loan rejected successfully")


@app.put("/api/loans/{loan_id}/return", dependencies=[Depends(get_api_key)])
def return_loan(loan_id: str, payload: LibrarianAction, library: Library = Depends(get_library)):
    loan = library.loans.return_loan(loan_id, payload.librarian_id)
    return ok(loan.to_dict(), "Book returned successfully")


# --- Users ---
@app.post("/api/users", status_code=201)
def create_user(payload: UserCreate, library: Library = Depends(get_library)):
    user = library.users.create_user(
        payload.name, payload.email, role=payload.role, phone=payload.phone, address=payload.address
    )
    return ok(user, "User created successfully")


@app.get("/api/users")
def list_users(library: Library = Depends(get_library)):
    return ok(library.users.list_users())


@app.get("/api/users/profile/{user_id}")
def get_user_profile(user_id: str, library: Library = Depends(get_library)):
    return ok(library.users.get_user(user_id))


@app.put("/api/users/profile/{user_id}")
def update_user_profile(user_id: str, payload: ProfileUpdate, library: Library = Depends(get_library)):
    changes = payload.model_dump(exclude_unset=True)
    return ok(library.users.update_profile(user_id, changes), "Profile updated successfully")


@app.get("/api/users/loans/{user_id}")
def get_user_loan_history(user_id: str, status: Optional[str] = None, library: Library = Depends(get_library)):
    return ok(library.queries.list_user_loans(user_id, status=status))


@app.get("/api/users/current-loans/{user_id}")
def get_user_current_loans(user_id: str, library: Library = Depends(get_library)):
    return ok(library.queries.list_current_loans(user_id))


# --- Librarian ---
@app.get("/api/librarian/profile/{librarian_id}")
def get_librarian_profile(librarian_id: str, library: Library = Depends(get_library)):
    return ok(library.users.get_librarian(librarian_id))


@app.put("/api/librarian/profile/{librarian_id}", dependencies=[Depends(get_api_key)])
def update_librarian_profile(librarian_id: str, payload: LibrarianProfileUpdate,
                             library: Library = Depends(get_library)):
    changes = payload.model_dump(exclude_unset=True)
    profile = library.users.update_profile(librarian_id, changes, librarian=True)
    return ok(profile, "Librarian profile updated successfully")


@app.get("/api/librarian/dashboard/stats")
def dashboard_stats(library: Library = Depends(get_library)):
    return ok(library.queries.dashboard_stats())


@app.post("/api/librarian/reconcile", dependencies=[Depends(get_api_key)])
def reconcile(book_id: Optional[str] = Query(None, alias="bookId"), library: Library = Depends(get_library)):
    report = library.reconcile(book_id)
    return ok(report, "Reconciliation finished")
