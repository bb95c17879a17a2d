from datetime import date, datetime, timedelta

import pytest

import models
from config import settings
from conftest import TEST_PASSWORD, auth_headers, make_book


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def member_headers(member):
    return auth_headers(member)


def _request_payload(book_id, days=7, **extra):
    start = date.today()
    payload = {
        "book_id": book_id,
        "from_date": start.isoformat(),
        "to_date": (start + timedelta(days=days)).isoformat(),
    }
    payload.update(extra)
    return payload


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# --- Auth ---

def test_signup_and_login_sets_cookie(client):
    response = client.post("/api/auth/signup", json={
        "full_name": "New Reader", "email": "New@Test.com", "password": TEST_PASSWORD,
    })
    assert response.status_code == 200
    assert response.json()["email"] == "new@test.com"
    assert response.json()["is_admin"] is False

    response = client.post("/api/auth/login", data={"username": "new@test.com", "password": TEST_PASSWORD})
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["is_admin"] is False
    assert settings.session_cookie_name in response.cookies

    # The cookie alone identifies the caller
    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["full_name"] == "New Reader"


def test_login_with_wrong_password(client, member):
    response = client.post("/api/auth/login", data={"username": member.email, "password": "nope"})
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_duplicate_email(client, member):
    response = client.post("/api/auth/signup", json={
        "full_name": "Copycat", "email": member.email, "password": TEST_PASSWORD,
    })
    assert response.status_code == 400
    assert response.json() == {"error": "ValidationError", "message": "Email already registered"}


def test_first_admin_can_bootstrap_but_not_the_second(client):
    first = {"full_name": "Root", "email": "root@library.com", "password": TEST_PASSWORD, "is_admin": True}
    assert client.post("/api/auth/signup", json=first).status_code == 200

    second = dict(first, email="sneaky@library.com")
    response = client.post("/api/auth/signup", json=second)
    assert response.status_code == 403
    assert response.json()["error"] == "RoleError"


def test_me_requires_credentials(client):
    assert client.get("/api/auth/me").status_code == 401
    bad = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401


# --- Catalog ---

def test_book_crud_and_search(client, admin_headers):
    category = client.post("/api/categories", json={"name": "Sci-Fi"}, headers=admin_headers).json()
    created = client.post("/api/books", headers=admin_headers, json={
        "book_name": "Dune", "author": "Frank Herbert", "total_copies": 3,
        "category_ids": [category["id"]],
    })
    assert created.status_code == 200
    book = created.json()
    assert book["available_copies"] == 3
    assert book["categories"][0]["name"] == "Sci-Fi"

    client.post("/api/books", headers=admin_headers, json={
        "book_name": "Emma", "author": "Jane Austen", "total_copies": 0,
    })

    page = client.get("/api/books", params={"q": "herbert"}).json()
    assert page["total"] == 1 and page["items"][0]["book_name"] == "Dune"

    by_category = client.get("/api/books", params={"category_id": category["id"]}).json()
    assert [b["book_name"] for b in by_category["items"]] == ["Dune"]

    available = client.get("/api/books", params={"available_only": True}).json()
    assert [b["book_name"] for b in available["items"]] == ["Dune"]

    assert client.get(f"/api/books/{book['id']}").json()["author"] == "Frank Herbert"
    assert client.get("/api/books/999").status_code == 404


def test_members_cannot_manage_catalog(client, member_headers):
    response = client.post("/api/books", headers=member_headers, json={
        "book_name": "Dune", "author": "Frank Herbert", "total_copies": 1,
    })
    assert response.status_code == 403
    assert response.json()["error"] == "RoleError"


def test_negative_copies_is_a_validation_error(client, admin_headers):
    response = client.post("/api/books", headers=admin_headers, json={
        "book_name": "Dune", "author": "Frank Herbert", "total_copies": -1,
    })
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_unknown_category_on_create(client, admin_headers):
    response = client.post("/api/books", headers=admin_headers, json={
        "book_name": "Dune", "author": "Frank Herbert", "total_copies": 1, "category_ids": [42],
    })
    assert response.status_code == 404


def test_duplicate_category(client, admin_headers):
    client.post("/api/categories", json={"name": "Poetry"}, headers=admin_headers)
    response = client.post("/api/categories", json={"name": "poetry"}, headers=admin_headers)
    assert response.status_code == 400


def test_total_copies_edit_shifts_availability(client, db, admin_headers, member):
    book = make_book(db, copies=2)
    issue = client.post("/api/transactions", headers=admin_headers, json=dict(
        _request_payload(book.id), borrower_id=member.id,
    ))
    assert issue.status_code == 200

    grown = client.put(f"/api/books/{book.id}", headers=admin_headers, json={"total_copies": 5})
    assert grown.status_code == 200
    assert (grown.json()["total_copies"], grown.json()["available_copies"]) == (5, 4)

    shrunk = client.put(f"/api/books/{book.id}", headers=admin_headers, json={"total_copies": 1})
    assert (shrunk.json()["total_copies"], shrunk.json()["available_copies"]) == (1, 0)

    # One copy is on loan, so zero copies is not allowed
    refused = client.put(f"/api/books/{book.id}", headers=admin_headers,
                         json={"total_copies": 0, "publisher": "Chilton"})
    assert refused.status_code == 400
    db.expire_all()
    stored = db.get(models.Book, book.id)
    assert (stored.total_copies, stored.available_copies, stored.publisher) == (1, 0, None)


def test_total_copies_edit_touches_updated_at(client, db, admin_headers):
    book = make_book(db, copies=1)
    stale = datetime(2000, 1, 1)
    db.query(models.Book).filter(models.Book.id == book.id).update({"updated_at": stale})
    db.commit()

    response = client.put(f"/api/books/{book.id}", headers=admin_headers, json={"total_copies": 3})
    assert response.status_code == 200

    db.expire_all()
    assert db.get(models.Book, book.id).updated_at.replace(tzinfo=None) > stale


def test_delete_book_with_open_transaction_is_refused(client, db, admin_headers, member_headers):
    book = make_book(db, copies=1)
    tx = client.post("/api/transactions/request", json=_request_payload(book.id),
                     headers=member_headers).json()["transaction"]

    assert client.delete(f"/api/books/{book.id}", headers=admin_headers).status_code == 400

    client.post(f"/api/transactions/{tx['id']}/reject", headers=admin_headers)
    assert client.delete(f"/api/books/{book.id}", headers=admin_headers).status_code == 200

    # The closed record keeps its title
    kept = client.get(f"/api/transactions/{tx['id']}", headers=admin_headers).json()
    assert kept["book_id"] is None
    assert kept["book_name"] == "Dune"


# --- Circulation ---

def test_request_approve_return_flow(client, db, admin_headers, member_headers):
    book = make_book(db, copies=1)

    requested = client.post("/api/transactions/request", json=_request_payload(book.id),
                            headers=member_headers)
    assert requested.status_code == 200
    tx = requested.json()["transaction"]
    assert tx["status"] == "Pending"
    assert tx["duration"] == 7

    pending = client.get("/api/transactions/pending", headers=admin_headers).json()
    assert [item["id"] for item in pending["items"]] == [tx["id"]]

    approved = client.post(f"/api/transactions/{tx['id']}/approve", headers=admin_headers)
    assert approved.status_code == 200
    assert approved.json()["transaction"]["status"] == "Active"
    assert client.get(f"/api/books/{book.id}").json()["available_copies"] == 0

    active = client.get("/api/transactions/active", headers=admin_headers).json()
    assert active["items"][0]["current_fine"] == 0

    returned = client.post(f"/api/transactions/{tx['id']}/return", headers=admin_headers)
    assert returned.status_code == 200
    assert returned.json()["fine"] == 0
    assert returned.json()["transaction"]["status"] == "Completed"
    assert returned.json()["transaction"]["return_date"] == date.today().isoformat()
    assert client.get(f"/api/books/{book.id}").json()["available_copies"] == 1


def test_admin_request_is_refused(client, db, admin_headers):
    book = make_book(db)
    response = client.post("/api/transactions/request", json=_request_payload(book.id),
                           headers=admin_headers)
    assert response.status_code == 403
    assert response.json()["error"] == "RoleError"


def test_out_of_range_request(client, db, member_headers):
    book = make_book(db)
    response = client.post("/api/transactions/request", json=_request_payload(book.id, days=91),
                           headers=member_headers)
    assert response.status_code == 400
    assert response.json() == {"error": "ValidationError", "message": "Maximum duration is 90 days"}


def test_missing_dates(client, db, member_headers):
    book = make_book(db)
    response = client.post("/api/transactions/request", json={"book_id": book.id},
                           headers=member_headers)
    assert response.status_code == 400
    assert response.json()["message"] == "Both from_date and to_date are required"


def test_state_errors_map_to_conflict(client, db, admin_headers, member_headers):
    book = make_book(db, copies=0)
    tx = client.post("/api/transactions/request", json=_request_payload(book.id),
                     headers=member_headers).json()["transaction"]

    out_of_stock = client.post(f"/api/transactions/{tx['id']}/approve", headers=admin_headers)
    assert out_of_stock.status_code == 409
    assert out_of_stock.json() == {"error": "OutOfStock", "message": "Book not available for issue"}

    client.post(f"/api/transactions/{tx['id']}/reject", headers=admin_headers)
    again = client.post(f"/api/transactions/{tx['id']}/reject", headers=admin_headers)
    assert again.status_code == 409
    assert again.json()["error"] == "NotPending"

    not_active = client.post(f"/api/transactions/{tx['id']}/return", headers=admin_headers)
    assert not_active.json()["error"] == "NotActive"


def test_cancel_own_request_only(client, db, member_headers, other_member):
    book = make_book(db)
    tx = client.post("/api/transactions/request", json=_request_payload(book.id),
                     headers=member_headers).json()["transaction"]

    stranger = client.post(f"/api/transactions/{tx['id']}/cancel", headers=auth_headers(other_member))
    assert stranger.status_code == 403
    assert stranger.json()["error"] == "NotOwner"
    assert client.get(f"/api/transactions/{tx['id']}", headers=auth_headers(other_member)).status_code == 403

    own = client.post(f"/api/transactions/{tx['id']}/cancel", headers=member_headers)
    assert own.status_code == 200
    assert own.json()["transaction"]["status"] == "Cancelled"


def test_transactions_listing_is_paginated(client, db, admin_headers, member_headers, member):
    books = [make_book(db, f"Volume {i}") for i in range(5)]
    for book in books:
        client.post("/api/transactions/request", json=_request_payload(book.id), headers=member_headers)

    first = client.get("/api/transactions", params={"limit": 2, "page": 1}, headers=admin_headers).json()
    assert set(first) == {"items", "page", "limit", "total"}
    assert (first["page"], first["limit"], first["total"]) == (1, 2, 5)
    assert [item["book_name"] for item in first["items"]] == ["Volume 4", "Volume 3"]

    oldest = client.get("/api/transactions", params={"limit": 2, "sort_order": "asc"},
                        headers=admin_headers).json()
    assert [item["book_name"] for item in oldest["items"]] == ["Volume 0", "Volume 1"]

    last = client.get("/api/transactions", params={"limit": 2, "page": 3}, headers=admin_headers).json()
    assert len(last["items"]) == 1

    filtered = client.get("/api/transactions", params={"status": "Active", "borrower_id": member.id},
                          headers=admin_headers).json()
    assert filtered["total"] == 0

    too_big = client.get("/api/transactions", params={"limit": settings.max_page_size + 1},
                         headers=admin_headers)
    assert too_big.status_code == 400


@pytest.mark.parametrize("path", ["/api/books", "/api/categories", "/api/members",
                                  "/api/transactions", "/api/transactions/pending",
                                  "/api/transactions/active", "/api/reports/overdue"])
def test_every_list_uses_the_page_envelope(client, admin_headers, path):
    body = client.get(path, headers=admin_headers).json()
    assert set(body) == {"items", "page", "limit", "total"}


def test_member_endpoints_are_admin_only(client, member_headers):
    for path in ["/api/members", "/api/transactions", "/api/transactions/pending",
                 "/api/reports/stats", "/api/reports/overdue"]:
        assert client.get(path, headers=member_headers).status_code == 403, path


# --- Accounts & reports ---

def test_my_account(client, db, member_headers, member, admin_headers):
    book = make_book(db)
    client.post("/api/transactions/request", json=_request_payload(book.id), headers=member_headers)

    account = client.get("/api/my/account", headers=member_headers).json()
    assert account["member"]["id"] == member.id
    assert account["counts"]["pending"] == 1
    assert account["points"] == 0

    assert client.get(f"/api/members/{member.id}", headers=admin_headers).status_code == 200


def test_member_cannot_see_other_accounts(client, member_headers, other_member):
    response = client.get(f"/api/members/{other_member.id}", headers=member_headers)
    assert response.status_code == 403


def test_overdue_report_and_stats(client, db, admin_headers, member):
    book = make_book(db, copies=2)
    start = date.today() - timedelta(days=10)
    client.post("/api/transactions", headers=admin_headers, json={
        "book_id": book.id, "borrower_id": member.id, "transaction_type": "Issued",
        "from_date": start.isoformat(), "to_date": (start + timedelta(days=7)).isoformat(),
    })

    overdue = client.get("/api/reports/overdue", headers=admin_headers).json()
    assert overdue["total"] == 1
    assert overdue["items"][0]["days_overdue"] == 3
    assert overdue["items"][0]["fine"] == 30

    stats = client.get("/api/reports/stats", headers=admin_headers).json()
    assert stats["active_transactions"] == 1
    assert stats["overdue_transactions"] == 1
    assert stats["available_copies"] == 1
