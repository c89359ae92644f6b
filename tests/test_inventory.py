from concurrent.futures import ThreadPoolExecutor

import pytest

from errors import Conflict, InvariantViolation, NotFound, Unavailable, ValidationError


def _book(lib, stock=2, **fields):
    data = {"title": "The Hobbit", "author": "J.R.R. Tolkien", "category": "Fantasy"}
    data.update(fields)
    return lib.inventory.create_book(data, stock)


def test_create_book_sets_available_to_stock(lib):
    book = _book(lib, stock=3)
    assert book.id
    assert book.stock == 3
    assert book.available_stock == 3
    stored = lib.inventory.get_book(book.id)
    assert stored.to_dict()["availableStock"] == 3


def test_create_book_rejects_negative_stock(lib):
    with pytest.raises(ValidationError):
        _book(lib, stock=-1)


def test_create_book_requires_title(lib):
    with pytest.raises(ValidationError):
        lib.inventory.create_book({"author": "Anon"}, 1)


def test_get_missing_book_raises(lib):
    with pytest.raises(NotFound):
        lib.inventory.get_book("missing")


def test_list_books_filters_and_paginates(lib):
    _book(lib, title="Dune", author="Frank Herbert", category="SciFi")
    _book(lib, title="Emma", author="Jane Austen", category="Classic")
    _book(lib, title="Persuasion", author="Jane Austen", category="Classic")

    books, pagination = lib.inventory.list_books(category="Classic")
    assert [b.title for b in books] == ["Emma", "Persuasion"]
    assert pagination["totalItems"] == 2

    books, _ = lib.inventory.list_books(search="herbert")
    assert [b.title for b in books] == ["Dune"]

    books, pagination = lib.inventory.list_books(page=2, limit=2)
    assert [b.title for b in books] == ["Persuasion"]
    assert pagination == {"page": 2, "limit": 2, "totalItems": 3, "totalPages": 2}


def test_update_book_partial(lib):
    book = _book(lib, year=1937)
    updated = lib.inventory.update_book(book.id, {"title": "The Hobbit (Annotated)"})
    assert updated.title == "The Hobbit (Annotated)"
    assert updated.author == "J.R.R. Tolkien"
    assert updated.year == 1937


def test_update_book_rejects_unknown_fields(lib):
    book = _book(lib)
    with pytest.raises(ValidationError):
        lib.inventory.update_book(book.id, {"availableStock": 10})


def test_update_book_stock_shifts_availability(lib):
    book = _book(lib, stock=2)
    lib.inventory.reserve_copy(book.id)
    updated = lib.inventory.update_book(book.id, {"stock": 5})
    assert (updated.stock, updated.available_stock) == (5, 4)


def test_adjust_total_stock_below_on_loan_is_rejected(lib):
    book = _book(lib, stock=3)
    lib.inventory.reserve_copy(book.id)
    lib.inventory.reserve_copy(book.id)
    with pytest.raises(InvariantViolation):
        lib.inventory.adjust_total_stock(book.id, 1)
    unchanged = lib.inventory.get_book(book.id)
    assert (unchanged.stock, unchanged.available_stock) == (3, 1)

    reduced = lib.inventory.adjust_total_stock(book.id, 2)
    assert (reduced.stock, reduced.available_stock) == (2, 0)


def test_adjust_total_stock_negative_is_validation_error(lib):
    book = _book(lib)
    with pytest.raises(ValidationError):
        lib.inventory.adjust_total_stock(book.id, -3)


def test_reserve_until_unavailable(lib):
    book = _book(lib, stock=1)
    assert lib.inventory.reserve_copy(book.id).available_stock == 0
    with pytest.raises(Unavailable):
        lib.inventory.reserve_copy(book.id)
    assert lib.inventory.get_book(book.id).available_stock == 0


def test_release_is_capped_at_stock(lib):
    book = _book(lib, stock=2)
    released = lib.inventory.release_copy(book.id)
    assert released.available_stock == 2


def test_reserve_missing_book(lib):
    with pytest.raises(NotFound):
        lib.inventory.reserve_copy("missing")


def test_concurrent_reservations_never_oversell(lib):
    book = _book(lib, stock=3)

    def attempt(_):
        try:
            lib.inventory.reserve_copy(book.id)
            return True
        except Unavailable:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(10)))

    assert results.count(True) == 3
    assert results.count(False) == 7
    assert lib.inventory.get_book(book.id).available_stock == 0


def test_delete_book_blocked_by_active_loan(lib):
    book = _book(lib)
    lib.loans.request_loan("u1", book.id, 7)
    with pytest.raises(Conflict):
        lib.inventory.delete_book(book.id)


def test_delete_book(lib):
    book = _book(lib)
    lib.inventory.delete_book(book.id)
    assert lib.inventory.find_book(book.id) is None
    with pytest.raises(NotFound):
        lib.inventory.delete_book(book.id)


def test_reconcile_repairs_leaked_reservation(lib):
    book = _book(lib, stock=2)
    loan = lib.loans.request_loan("u1", book.id, 7)
    lib.loans.approve(loan.id, "lib1")
    # A reservation whose approval never committed
    lib.inventory.reserve_copy(book.id)
    assert lib.inventory.get_book(book.id).available_stock == 0

    corrections = lib.inventory.reconcile()
    assert corrections == [{"bookId": book.id, "before": 0, "after": 1}]
    assert lib.inventory.get_book(book.id).available_stock == 1
    assert lib.inventory.reconcile(book.id) == []


def test_reconcile_waits_for_in_flight_reservation(lib, clock):
    book = _book(lib, stock=2)
    # Reserved for a loan whose approval has not committed yet
    lib.inventory.reserve_copy(book.id, "loan-in-progress")
    assert lib.inventory.get_book(book.id).available_stock == 1

    assert lib.inventory.reconcile() == []
    assert lib.inventory.get_book(book.id).available_stock == 1

    clock.advance(seconds=lib.inventory.stale_seconds + 1)
    assert lib.inventory.reconcile() == [{"bookId": book.id, "before": 1, "after": 2}]
    assert lib.store.get("books", book.id)["inFlight"] == {}


def test_settle_keeps_counters(lib):
    book = _book(lib, stock=2)
    lib.inventory.reserve_copy(book.id, "loan1")
    lib.inventory.settle(book.id, "loan1")
    lib.inventory.settle(book.id, "loan1")
    doc = lib.store.get("books", book.id)
    assert doc["inFlight"] == {}
    assert doc["availableStock"] == 1


def test_book_being_deleted_is_hidden(lib):
    book = _book(lib)
    lib.store.update("books", book.id, {"deleting": True})
    assert lib.inventory.find_book(book.id) is None
    assert lib.inventory.list_books()[0] == []
    with pytest.raises(NotFound):
        lib.inventory.update_book(book.id, {"title": "Gone"})
    with pytest.raises(NotFound):
        lib.loans.request_loan("u1", book.id, 7)

    # An interrupted delete can be retried
    lib.inventory.delete_book(book.id)
    assert lib.store.get("books", book.id) is None


def test_blocked_delete_leaves_book_visible(lib):
    book = _book(lib)
    lib.loans.request_loan("u1", book.id, 7)
    with pytest.raises(Conflict):
        lib.inventory.delete_book(book.id)
    assert lib.inventory.get_book(book.id).title == "The Hobbit"
    assert len(lib.inventory.list_books()[0]) == 1


def test_list_books_zero_limit_is_rejected(lib):
    _book(lib)
    with pytest.raises(ValidationError):
        lib.inventory.list_books(limit=0)
