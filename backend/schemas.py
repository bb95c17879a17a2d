from datetime import date, datetime
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from models import TransactionStatus, TransactionType

T = TypeVar("T")


# --- Pagination ---

class Page(BaseModel, Generic[T]):
    """Envelope shared by every list endpoint."""
    items: List[T]
    page: int
    limit: int
    total: int


# --- Category Schemas ---

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)


class CategoryResponse(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


# --- Book Schemas ---

class BookBase(BaseModel):
    book_name: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    alternate_title: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    cover_url: Optional[str] = None


class BookCreate(BookBase):
    total_copies: int = Field(..., ge=0)
    category_ids: List[int] = []


class BookUpdate(BaseModel):
    book_name: Optional[str] = None
    author: Optional[str] = None
    alternate_title: Optional[str] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    cover_url: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=0)
    category_ids: Optional[List[int]] = None


class BookResponse(BookBase):
    id: int
    total_copies: int
    available_copies: int
    categories: List[CategoryResponse] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --- Member Schemas ---

class MemberCreate(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    mobile_number: Optional[str] = None
    member_code: Optional[str] = None
    is_admin: bool = False


class MemberResponse(BaseModel):
    id: int
    full_name: str
    email: str
    mobile_number: Optional[str] = None
    member_code: Optional[str] = None
    is_admin: bool
    points: int = 0
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --- Auth Schemas ---

class Token(BaseModel):
    access_token: str
    token_type: str
    is_admin: bool
    user_id: int


# --- Circulation Schemas ---

class BookRequest(BaseModel):
    """Member-initiated request. Dates are checked by the lifecycle so that
    missing ones come back as a ValidationError naming the rule."""
    book_id: int
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    transaction_type: TransactionType = TransactionType.ISSUED


class TransactionCreate(BaseModel):
    book_id: int
    borrower_id: int
    transaction_type: TransactionType = TransactionType.ISSUED
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class TransactionResponse(BaseModel):
    id: int
    book_id: Optional[int] = None
    book_name: str
    borrower_id: int
    borrower_name: str
    transaction_type: TransactionType
    status: TransactionStatus
    from_date: date
    to_date: date
    duration: int = 0
    return_date: Optional[date] = None
    fine: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ActiveTransactionResponse(TransactionResponse):
    # Computed at read time, not stored
    days_overdue: int = 0
    current_fine: int = 0


class TransactionActionResponse(BaseModel):
    message: str
    transaction: TransactionResponse


class ReturnResponse(BaseModel):
    message: str
    transaction: TransactionResponse
    fine: int


# --- Account & Reports ---

class MemberAccountResponse(BaseModel):
    member: MemberResponse
    pending: List[TransactionResponse]
    active_issued: List[ActiveTransactionResponse]
    active_reserved: List[TransactionResponse]
    history: List[TransactionResponse]
    declined: List[TransactionResponse]
    points: int
    counts: Dict[str, int]
    total_fine: int


class DashboardStats(BaseModel):
    total_titles: int
    total_copies: int
    available_copies: int
    total_members: int
    pending_requests: int
    pending_requested_today: int
    pending_borrowers: int
    active_transactions: int
    overdue_transactions: int


class OverdueReportItem(BaseModel):
    transaction_id: int
    book_name: str
    borrower_id: int
    borrower_name: str
    to_date: date
    days_overdue: int
    fine: int
