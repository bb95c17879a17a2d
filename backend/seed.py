import logging
from datetime import date, timedelta

import lifecycle
import models
from auth import actor_for, hash_password
from database import Base, SessionLocal, engine
from models import TransactionType

logger = logging.getLogger("seed")

DEMO_PASSWORD = "library123"

CATEGORIES = ["Tech", "Fiction", "Fantasy", "Sci-Fi", "Non-Fiction"]

BOOKS = [
    {"book_name": "Python Crash Course", "author": "Eric Matthes", "categories": ["Tech"], "copies": 2},
    {"book_name": "Clean Code", "author": "Robert C. Martin", "categories": ["Tech"], "copies": 1},
    {"book_name": "Introduction to Algorithms", "author": "Thomas H. Cormen", "categories": ["Tech"], "copies": 1},
    {"book_name": "The Great Gatsby", "author": "F. Scott Fitzgerald", "categories": ["Fiction"], "copies": 2},
    {"book_name": "1984", "author": "George Orwell", "categories": ["Fiction", "Sci-Fi"], "copies": 1},
    {"book_name": "The Hobbit", "author": "J.R.R. Tolkien", "categories": ["Fantasy"], "copies": 1,
     "alternate_title": "There and Back Again"},
    {"book_name": "Dune", "author": "Frank Herbert", "categories": ["Sci-Fi"], "copies": 1},
    {"book_name": "Sapiens", "author": "Yuval Noah Harari", "categories": ["Non-Fiction"], "copies": 3,
     "language": "English", "publisher": "Harper"},
    {"book_name": "Neuromancer", "author": "William Gibson", "categories": ["Sci-Fi"], "copies": 0},
]

MEMBERS = [
    {"full_name": "Alice Active", "email": "alice@test.com", "member_code": "M-1001"},
    {"full_name": "Bob The Debtor", "email": "bob@test.com", "member_code": "M-1002"},
    {"full_name": "Charlie Queue", "email": "charlie@test.com", "member_code": "M-1003"},
    {"full_name": "Eve Reader", "email": "eve@test.com", "member_code": "M-1004"},
]


def reset_db():
    logger.warning("Resetting database at %s", engine.url)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.info("Database reset complete")


def seed_db():
    db = SessionLocal()
    today = date.today()
    try:
        # 1. Accounts
        pw = hash_password(DEMO_PASSWORD)
        admin = models.Member(full_name="Super Admin", email="admin@library.com",
                              hashed_password=pw, is_admin=True)
        members = {m["email"]: models.Member(hashed_password=pw, **m) for m in MEMBERS}
        db.add(admin)
        db.add_all(members.values())
        db.commit()

        # 2. Catalog
        categories = {name: models.Category(name=name) for name in CATEGORIES}
        db.add_all(categories.values())
        books = {}
        for data in BOOKS:
            data = dict(data)
            copies = data.pop("copies")
            names = data.pop("categories")
            book = models.Book(total_copies=copies, available_copies=copies,
                               categories=[categories[n] for n in names], **data)
            db.add(book)
            books[book.book_name] = book
        db.commit()
        logger.info("Created %s categories and %s books", len(categories), len(books))

        # 3. Circulation, driven through the lifecycle so inventory stays consistent
        staff = actor_for(admin)
        alice = members["alice@test.com"]
        bob = members["bob@test.com"]
        charlie = members["charlie@test.com"]
        eve = members["eve@test.com"]

        # Bob holds an overdue copy
        lifecycle.create_transaction(
            db, staff, books["Clean Code"].id, bob.id, TransactionType.ISSUED,
            today - timedelta(days=20), today - timedelta(days=6)
        )

        # Alice has the only copy of 1984
        lifecycle.create_transaction(
            db, staff, books["1984"].id, alice.id, TransactionType.ISSUED,
            today, today + timedelta(days=14)
        )

        # Charlie queues for 1984 and for Dune
        lifecycle.request_book(db, actor_for(charlie), books["1984"].id,
                               today + timedelta(days=1), today + timedelta(days=8))
        lifecycle.request_book(db, actor_for(charlie), books["Dune"].id,
                               today + timedelta(days=2), today + timedelta(days=9),
                               TransactionType.RESERVED)

        # Eve borrowed The Hobbit and brought it back three days late
        hobbit = lifecycle.create_transaction(
            db, staff, books["The Hobbit"].id, eve.id, TransactionType.ISSUED,
            today - timedelta(days=30), today - timedelta(days=10)
        )
        lifecycle.return_book(db, staff, hobbit.id, as_of=today - timedelta(days=7))

        # Eve's request for Sapiens was turned down
        declined = lifecycle.request_book(db, actor_for(eve), books["Sapiens"].id,
                                          today, today + timedelta(days=7))
        lifecycle.reject(db, staff, declined.id)

        logger.info("Seeding complete")
        print("------------------------------------------------")
        print(f"Admin: admin@library.com / {DEMO_PASSWORD}")
        print("------------------------------------------------")
        print("alice@test.com   -> borrowing '1984'")
        print("bob@test.com     -> 'Clean Code' overdue")
        print("charlie@test.com -> pending requests for '1984' and 'Dune'")
        print("eve@test.com     -> returned 'The Hobbit' late, Sapiens request rejected")
        print(f"(all member passwords: {DEMO_PASSWORD})")
        print("------------------------------------------------")
    except Exception:
        logger.exception("Error seeding data")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    reset_db()
    seed_db()
