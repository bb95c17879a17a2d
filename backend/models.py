import enum

from sqlalchemy import (Boolean, CheckConstraint, Column, Date, DateTime, Enum, ForeignKey,
                        Integer, String, Table)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from policy import calculate_duration


class TransactionType(str, enum.Enum):
    ISSUED = "Issued"
    RESERVED = "Reserved"


class TransactionStatus(str, enum.Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


# Statuses that still tie a transaction to its book
OPEN_STATUSES = (TransactionStatus.PENDING, TransactionStatus.ACTIVE)


def _enum_values(enum_cls):
    # Store "Pending", not "PENDING"
    return [member.value for member in enum_cls]


# --- Catalog ---

book_categories = Table(
    "book_categories",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    books = relationship("Book", secondary=book_categories, back_populates="categories")


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_within_total"),
    )

    id = Column(Integer, primary_key=True, index=True)
    book_name = Column(String, index=True, nullable=False)
    alternate_title = Column(String, nullable=True)
    author = Column(String, index=True, nullable=False)
    language = Column(String, nullable=True)
    publisher = Column(String, nullable=True)
    cover_url = Column(String, nullable=True)

    # Inventory: available_copies only changes through inventory.py
    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    categories = relationship("Category", secondary=book_categories, back_populates="books")
    transactions = relationship("Transaction", back_populates="book")


# --- Users ---

class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    mobile_number = Column(String, nullable=True)
    # Admission / employee / membership number, depending on the role
    member_code = Column(String, unique=True, index=True, nullable=True)
    hashed_password = Column(String, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    points = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    transactions = relationship("Transaction", back_populates="borrower")


# --- Circulation ---

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    # Cleared when a book is deleted; book_name keeps the history readable
    book_id = Column(Integer, ForeignKey("books.id", ondelete="SET NULL"), nullable=True, index=True)
    book_name = Column(String, nullable=False)
    borrower_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    borrower_name = Column(String, nullable=False)

    transaction_type = Column(Enum(TransactionType, native_enum=False, length=16,
                                   values_callable=_enum_values),
                              nullable=False, default=TransactionType.ISSUED)
    status = Column(Enum(TransactionStatus, native_enum=False, length=16,
                         values_callable=_enum_values),
                    nullable=False, default=TransactionStatus.PENDING, index=True)

    from_date = Column(Date, nullable=False)
    to_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=True)
    fine = Column(Integer, nullable=False, default=0)

    # True while this transaction owns a copy taken from the book's inventory
    holds_copy = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="transactions")
    borrower = relationship("Member", back_populates="transactions")

    @property
    def duration(self) -> int:
        """Length of the requested window in days."""
        if self.from_date is None or self.to_date is None:
            return 0
        return calculate_duration(self.from_date, self.to_date)
