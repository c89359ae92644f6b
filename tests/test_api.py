import pytest
from fastapi.testclient import TestClient

import api as api_module
from config import settings

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(lib):
    api_module.app.dependency_overrides[api_module.get_library] = lambda: lib
    try:
        yield TestClient(api_module.app)
    finally:
        api_module.app.dependency_overrides.clear()


@pytest.fixture
def book_id(client):
    response = client.post("/api/books", headers=HEADERS, json={"title": "Dune", "author": "Frank Herbert", "stock": 1})
    assert response.status_code == 201
    return response.json()["data"]["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["db"] is True


def test_create_book_requires_api_key(client):
    payload = {"title": "Dune", "author": "Frank Herbert", "stock": 1}
    assert client.post("/api/books", json=payload).status_code == 403

    response = client.post("/api/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403
    assert "error" in response.json()


def test_create_and_get_book(client, book_id):
    response = client.get(f"/api/books/{book_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["availableStock"] == 1


def test_create_book_with_negative_stock(client):
    response = client.post("/api/books", headers=HEADERS, json={"title": "Dune", "author": "Frank Herbert", "stock": -2})
    assert response.status_code == 400
    assert response.json() == {"error": "stock cannot be negative."}


def test_list_books_paginated(client, book_id):
    response = client.get("/api/books", params={"page": 1, "limit": 5})
    body = response.json()
    assert response.status_code == 200
    assert [b["id"] for b in body["data"]] == [book_id]
    assert body["pagination"] == {"page": 1, "limit": 5, "totalItems": 1, "totalPages": 1}


def test_update_book_only_sent_fields(client, book_id):
    response = client.put(f"/api/books/{book_id}", headers=HEADERS, json={"year": 1965, "stock": 3})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["title"] == "Dune"
    assert (data["year"], data["stock"], data["availableStock"]) == (1965, 3, 3)


def test_unknown_book_is_404(client):
    response = client.get("/api/books/missing")
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}


def test_loan_lifecycle_over_http(client, book_id):
    response = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 14})
    assert response.status_code == 201
    loan_id = response.json()["data"]["id"]
    assert response.json()["data"]["status"] == "pending"

    assert client.put(f"/api/loans/{loan_id}/approve", json={"librarianId": "lib1"}).status_code == 403
    response = client.put(f"/api/loans/{loan_id}/approve", headers=HEADERS, json={"librarianId": "lib1"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "approved"
    assert client.get(f"/api/books/{book_id}").json()["data"]["availableStock"] == 0

    response = client.put(f"/api/loans/{loan_id}/approve", headers=HEADERS, json={"librarianId": "lib1"})
    assert response.status_code == 400
    assert response.json() == {"error": "Loan is not pending approval"}

    current = client.get("/api/users/current-loans/user1").json()["data"]
    assert current[0]["daysRemaining"] == 14

    response = client.put(f"/api/loans/{loan_id}/return", headers=HEADERS, json={"librarianId": "lib2"})
    assert response.status_code == 200
    assert client.get(f"/api/books/{book_id}").json()["data"]["availableStock"] == 1

    detail = client.get(f"/api/loans/{loan_id}").json()["data"]
    assert detail["status"] == "returned"
    assert detail["book"]["title"] == "Dune"
    assert detail["user"] is None


def test_duplicate_and_unavailable_loans(client, book_id):
    first = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 7})
    assert first.status_code == 201
    duplicate = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 7})
    assert duplicate.status_code == 400
    assert duplicate.json() == {"error": "You already have an active loan request for this book"}

    loan_id = first.json()["data"]["id"]
    client.put(f"/api/loans/{loan_id}/approve", headers=HEADERS, json={"librarianId": "lib1"})
    response = client.post("/api/loans", json={"userId": "user2", "bookId": book_id, "loanDuration": 7})
    assert response.status_code == 400
    assert response.json() == {"error": "Book is not available for loan"}


def test_request_validation_is_400(client, book_id):
    response = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 30})
    assert response.status_code == 400
    response = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": "soon"})
    assert response.status_code == 400
    assert "error" in response.json()


def test_reject_with_reason(client, book_id):
    loan_id = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 7}).json()["data"]["id"]
    response = client.put(
        f"/api/loans/{loan_id}/reject", headers=HEADERS, json={"librarianId": "lib1", "reason": "Reserved for class"}
    )
    assert response.status_code == 200
    assert response.json()["data"]["rejectionReason"] == "Reserved for class"


def test_list_loans_and_stats(client, book_id):
    client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 7})
    body = client.get("/api/loans", params={"status": "pending"}).json()
    assert body["pagination"]["totalItems"] == 1
    assert body["data"][0]["book"]["title"] == "Dune"

    assert client.get("/api/loans", params={"status": "lost"}).status_code == 400
    assert len(client.get("/api/loans/user/user1").json()["data"]) == 1
    assert len(client.get("/api/users/loans/user1").json()["data"]) == 1

    stats = client.get("/api/librarian/dashboard/stats").json()["data"]
    assert stats["pendingLoans"] == 1
    assert stats["totalBooks"] == 1


def test_bookmarks_and_ratings_over_http(client, book_id):
    response = client.post("/api/books/user1/bookmarks", json={"bookId": book_id})
    assert response.status_code == 201
    assert client.post("/api/books/user1/bookmarks", json={"bookId": book_id}).status_code == 400
    assert len(client.get("/api/books/user1/bookmarks").json()["data"]) == 1
    assert client.delete(f"/api/books/user1/bookmarks/{book_id}").status_code == 200

    assert client.post("/api/books/user1/ratings", json={"bookId": book_id, "rating": 6}).status_code == 400
    response = client.post("/api/books/user1/ratings", json={"bookId": book_id, "rating": 3})
    assert response.status_code == 201
    again = client.post("/api/books/user1/ratings", json={"bookId": book_id, "rating": 3})
    assert again.json() == {"error": "User has already rated this book"}

    response = client.put(f"/api/books/user1/{book_id}/ratings", json={"review": "Loved it"})
    assert response.json()["data"]["review"] == "Loved it"
    summary = client.get(f"/api/books/{book_id}/rating").json()["data"]
    assert summary["averageRating"] == 3
    assert client.delete(f"/api/books/user1/{book_id}/ratings").status_code == 200
    assert client.get("/api/books/user1/ratings").json()["data"] == []


def test_users_endpoints(client):
    response = client.post("/api/users", json={"name": "Alice", "email": "alice@example.com"})
    assert response.status_code == 201
    user_id = response.json()["data"]["id"]
    assert client.get(f"/api/users/profile/{user_id}").json()["data"]["name"] == "Alice"
    assert len(client.get("/api/users").json()["data"]) == 1
    assert client.get("/api/users/profile/missing").status_code == 404


def test_delete_book_blocked_then_allowed(client, book_id):
    loan_id = client.post("/api/loans", json={"userId": "user1", "bookId": book_id, "loanDuration": 7}).json()["data"]["id"]
    assert client.delete(f"/api/books/{book_id}", headers=HEADERS).status_code == 400
    client.put(f"/api/loans/{loan_id}/reject", headers=HEADERS, json={"librarianId": "lib1"})
    assert client.delete(f"/api/books/{book_id}", headers=HEADERS).status_code == 200


def test_reconcile_endpoint(client, lib, book_id):
    lib.inventory.reserve_copy(book_id)
    assert client.post("/api/librarian/reconcile").status_code == 403
    response = client.post("/api/librarian/reconcile", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["data"]["books"] == [{"bookId": book_id, "before": 0, "after": 1}]


def test_store_failure_is_generic_500(client, lib, monkeypatch):
    from errors import StoreError

    def broken(*args, **kwargs):
        raise StoreError("Document store read failed.")

    monkeypatch.setattr(lib.queries, "dashboard_stats", broken)
    response = client.get("/api/librarian/dashboard/stats")
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_update_user_profile(client):
    user_id = client.post("/api/users", json={"name": "Alice", "email": "alice@example.com"}).json()["data"]["id"]
    response = client.put(f"/api/users/profile/{user_id}", json={"phone": "555-0100"})
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Profile updated successfully"
    assert body["data"]["phone"] == "555-0100"
    assert body["data"]["name"] == "Alice"

    assert client.put(f"/api/users/profile/{user_id}", json={"name": ""}).status_code == 400
    assert client.put("/api/users/profile/missing", json={"name": "Ghost"}).status_code == 404


def test_librarian_profile_endpoints(client):
    librarian_id = client.post(
        "/api/users", json={"name": "Libby", "email": "libby@example.com", "role": "librarian"}
    ).json()["data"]["id"]
    assert client.get(f"/api/librarian/profile/{librarian_id}").json()["data"]["name"] == "Libby"

    payload = {"bio": "Head librarian"}
    assert client.put(f"/api/librarian/profile/{librarian_id}", json=payload).status_code == 403
    response = client.put(f"/api/librarian/profile/{librarian_id}", headers=HEADERS, json=payload)
    assert response.status_code == 200
    assert response.json()["message"] == "Librarian profile updated successfully"
    assert response.json()["data"]["bio"] == "Head librarian"

    assert client.get("/api/librarian/profile/missing").status_code == 404


def test_zero_limit_is_400(client, book_id):
    assert client.get("/api/books", params={"limit": 0}).status_code == 400
    assert client.get("/api/loans", params={"limit": 0}).status_code == 400
