import os
import shutil
import tempfile
from datetime import date

import pytest

# Point the app at a throwaway database before any backend module is imported
_TEST_DIR = tempfile.mkdtemp(prefix="library-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("FINE_PER_DAY", "10")

from fastapi.testclient import TestClient  # noqa: E402

import models  # noqa: E402
from auth import actor_for, hash_password, token_for  # noqa: E402
from database import Base, SessionLocal, engine  # noqa: E402
from main import app  # noqa: E402

TEST_PASSWORD = "secret123"


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(_TEST_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def fresh_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def make_member(db, full_name="Member", email=None, is_admin=False, member_code=None):
    member = models.Member(
        full_name=full_name,
        email=email or f"{full_name.lower().replace(' ', '.')}@test.com",
        hashed_password=hash_password(TEST_PASSWORD),
        is_admin=is_admin,
        member_code=member_code,
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


def make_book(db, book_name="Dune", copies=1, author="Frank Herbert"):
    book = models.Book(book_name=book_name, author=author,
                       total_copies=copies, available_copies=copies)
    db.add(book)
    db.commit()
    db.refresh(book)
    return book


def auth_headers(member):
    return {"Authorization": f"Bearer {token_for(member)}"}


@pytest.fixture
def admin(db):
    return make_member(db, "Head Librarian", email="admin@library.com", is_admin=True)


@pytest.fixture
def member(db):
    return make_member(db, "Alice Reader", email="alice@test.com")


@pytest.fixture
def other_member(db):
    return make_member(db, "Bob Reader", email="bob@test.com")


@pytest.fixture
def admin_actor(admin):
    return actor_for(admin)


@pytest.fixture
def member_actor(member):
    return actor_for(member)


@pytest.fixture
def window():
    """A valid five day borrowing window."""
    return date(2024, 1, 15), date(2024, 1, 20)
