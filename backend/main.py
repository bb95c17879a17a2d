import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import accounts
import lifecycle
import models
import schemas
from auth import (get_current_actor, get_optional_actor, hash_password, require_admin,
                  token_for, verify_password)
from config import settings
from database import Base, engine, get_db, paginate
from errors import LibraryError, NotFound, NotOwner, RoleError, ValidationError
from lifecycle import Actor
from models import OPEN_STATUSES, TransactionStatus

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    logger.info("Starting %s, creating tables if needed", settings.app_name)
    Base.metadata.create_all(bind=engine)
    yield
    # --- Shutdown ---
    logger.info("Shutting down %s", settings.app_name)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error Handling ---

@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())[1:])
        problems.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    body = ValidationError("; ".join(problems) or "Invalid request").to_dict()
    return JSONResponse(status_code=400, content=body)


# --- Helpers ---

def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    return page, limit


def _load_categories(db: Session, category_ids: List[int]) -> List[models.Category]:
    if not category_ids:
        return []
    wanted = set(category_ids)
    found = db.query(models.Category).filter(models.Category.id.in_(wanted)).all()
    missing = wanted - {c.id for c in found}
    if missing:
        raise NotFound(f"Unknown category id(s): {', '.join(str(i) for i in sorted(missing))}")
    return found


def _get_book_or_404(db: Session, book_id: int) -> models.Book:
    book = db.get(models.Book, book_id)
    if not book:
        raise NotFound(f"Book {book_id} not found")
    return book


# --- API Routes ---

@app.get("/api/health")
def health_check():
    return {"status": "ok", "message": "Library circulation service is running"}


# --- Auth ---

@app.post("/api/auth/signup", response_model=schemas.MemberResponse)
def signup(
    member: schemas.MemberCreate,
    actor: Optional[Actor] = Depends(get_optional_actor),
    db: Session = Depends(get_db)
):
    # 1. Admin accounts: only admins may create them, except the very first one
    if member.is_admin:
        admin_exists = db.query(models.Member.id).filter(models.Member.is_admin.is_(True)).first()
        if admin_exists and not (actor and actor.is_admin):
            raise RoleError("Only admins can create admin accounts")

    # 2. Uniqueness
    email = member.email.strip().lower()
    if db.query(models.Member).filter(models.Member.email == email).first():
        raise ValidationError("Email already registered")
    member_code = member.member_code.strip() if member.member_code else None
    if member_code and db.query(models.Member).filter(models.Member.member_code == member_code).first():
        raise ValidationError("Member ID already in use")

    # 3. Create
    db_member = models.Member(
        full_name=member.full_name.strip(),
        email=email,
        mobile_number=member.mobile_number,
        member_code=member_code,
        hashed_password=hash_password(member.password),
        is_admin=member.is_admin,
    )
    db.add(db_member)
    db.commit()
    db.refresh(db_member)
    logger.info("Registered %s %s", "admin" if db_member.is_admin else "member", db_member.id)
    return db_member


@app.post("/api/auth/login", response_model=schemas.Token)
def login(response: Response, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    # OAuth2 form sends 'username', we treat it as email
    member = db.query(models.Member).filter(
        models.Member.email == form_data.username.strip().lower()
    ).first()
    if not member or not verify_password(form_data.password, member.hashed_password):
        raise ValidationError("Incorrect email or password")

    token = token_for(member)
    response.set_cookie(
        settings.session_cookie_name, token,
        httponly=True, samesite="lax",
        max_age=settings.access_token_expire_minutes * 60,
    )
    return {"access_token": token, "token_type": "bearer", "is_admin": member.is_admin, "user_id": member.id}


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(settings.session_cookie_name)
    return {"message": "Logged out"}


@app.get("/api/auth/me", response_model=schemas.MemberResponse)
def get_me(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return db.get(models.Member, actor.member_id)


# --- Categories ---

@app.get("/api/categories", response_model=schemas.Page[schemas.CategoryResponse])
def list_categories(paging=Depends(page_params), db: Session = Depends(get_db)):
    page, limit = paging
    query = db.query(models.Category).order_by(models.Category.name.asc())
    return paginate(query, page, limit)


@app.post("/api/categories", response_model=schemas.CategoryResponse)
def add_category(
    category: schemas.CategoryCreate,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    name = category.name.strip()
    if not name:
        raise ValidationError("Category name is required")
    if db.query(models.Category).filter(models.Category.name.ilike(name)).first():
        raise ValidationError(f"Category '{name}' already exists")

    db_category = models.Category(name=name)
    db.add(db_category)
    db.commit()
    db.refresh(db_category)
    return db_category


# --- Books ---

@app.get("/api/books", response_model=schemas.Page[schemas.BookResponse])
def get_books(
    q: str = "",
    category_id: Optional[int] = None,
    available_only: bool = False,
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    paging=Depends(page_params),
    db: Session = Depends(get_db)
):
    """Catalog search by name, alternate title or author."""
    page, limit = paging
    query = db.query(models.Book)

    if q:
        pattern = f"%{q}%"
        query = query.filter(or_(
            models.Book.book_name.ilike(pattern),
            models.Book.alternate_title.ilike(pattern),
            models.Book.author.ilike(pattern),
        ))
    if category_id is not None:
        query = query.filter(models.Book.categories.any(models.Category.id == category_id))
    if available_only:
        query = query.filter(models.Book.available_copies > 0)

    if sort_order == "asc":
        query = query.order_by(models.Book.created_at.asc(), models.Book.id.asc())
    else:
        query = query.order_by(models.Book.created_at.desc(), models.Book.id.desc())
    return paginate(query, page, limit)


@app.get("/api/books/{book_id}", response_model=schemas.BookResponse)
def get_book(book_id: int, db: Session = Depends(get_db)):
    return _get_book_or_404(db, book_id)


@app.post("/api/books", response_model=schemas.BookResponse)
def create_book(
    book: schemas.BookCreate,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    categories = _load_categories(db, book.category_ids)
    db_book = models.Book(
        **book.dict(exclude={"category_ids", "total_copies"}),
        total_copies=book.total_copies,
        available_copies=book.total_copies,
        categories=categories,
    )
    db.add(db_book)
    db.commit()
    db.refresh(db_book)
    logger.info("Admin %s added book %s with %s copies", actor.member_id, db_book.id, db_book.total_copies)
    return db_book


@app.put("/api/books/{book_id}", response_model=schemas.BookResponse)
def update_book(
    book_id: int,
    book_data: schemas.BookUpdate,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    book = _get_book_or_404(db, book_id)
    updates = book_data.dict(exclude_unset=True)
    category_ids = updates.pop("category_ids", None)
    new_total = updates.pop("total_copies", None)

    for key in ("book_name", "author"):
        if key in updates and not (updates[key] or "").strip():
            raise ValidationError(f"{key} cannot be empty")

    if category_ids is not None:
        book.categories = _load_categories(db, category_ids)

    if new_total is not None and new_total != book.total_copies:
        # Shift available copies by the same delta, unless that would strand copies on loan
        changed = db.query(models.Book).filter(
            models.Book.id == book_id,
            models.Book.total_copies - models.Book.available_copies <= new_total
        ).update({
            models.Book.available_copies: models.Book.available_copies + (new_total - models.Book.total_copies),
            models.Book.total_copies: new_total,
            models.Book.updated_at: func.now(),
        }, synchronize_session=False)
        if not changed:
            db.rollback()
            raise ValidationError("Total copies cannot be lower than the number of copies on loan")

    for key, value in updates.items():
        setattr(book, key, value)

    db.commit()
    db.refresh(book)
    return book


@app.delete("/api/books/{book_id}")
def delete_book(
    book_id: int,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    book = _get_book_or_404(db, book_id)

    # Block while a request or a loan still depends on this title
    open_count = db.query(models.Transaction).filter(
        models.Transaction.book_id == book_id,
        models.Transaction.status.in_(OPEN_STATUSES)
    ).count()
    if open_count:
        raise ValidationError(
            f"Cannot remove book. It has {open_count} pending or active transaction(s)."
        )

    db.query(models.Transaction).filter(
        models.Transaction.book_id == book_id
    ).update({"book_id": None}, synchronize_session=False)
    db.delete(book)
    db.commit()
    logger.info("Admin %s removed book %s", actor.member_id, book_id)
    return {"message": "Book removed"}


# --- Members ---

@app.get("/api/members", response_model=schemas.Page[schemas.MemberResponse])
def list_members(
    q: str = "",
    is_admin: Optional[bool] = None,
    paging=Depends(page_params),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    page, limit = paging
    query = db.query(models.Member)
    if q:
        pattern = f"%{q}%"
        query = query.filter(or_(
            models.Member.full_name.ilike(pattern),
            models.Member.email.ilike(pattern),
            models.Member.member_code.ilike(pattern),
            models.Member.mobile_number.ilike(pattern),
        ))
    if is_admin is not None:
        query = query.filter(models.Member.is_admin.is_(is_admin))
    query = query.order_by(models.Member.created_at.desc(), models.Member.id.desc())
    return paginate(query, page, limit)


@app.get("/api/members/{member_id}", response_model=schemas.MemberAccountResponse)
def get_member(
    member_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    if not actor.is_admin and actor.member_id != member_id:
        raise RoleError("You can only view your own account")
    return accounts.get_member_view(db, member_id)


@app.get("/api/my/account", response_model=schemas.MemberAccountResponse)
def get_my_account(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return accounts.get_member_view(db, actor.member_id)


# --- Circulation ---

@app.post("/api/transactions/request", response_model=schemas.TransactionActionResponse)
def request_book(
    request: schemas.BookRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    tx = lifecycle.request_book(
        db, actor, request.book_id, request.from_date, request.to_date, request.transaction_type
    )
    return {"message": "Book request submitted successfully", "transaction": tx}


@app.post("/api/transactions", response_model=schemas.TransactionResponse)
def add_transaction(
    payload: schemas.TransactionCreate,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return lifecycle.create_transaction(
        db, actor, payload.book_id, payload.borrower_id,
        payload.transaction_type, payload.from_date, payload.to_date
    )


@app.get("/api/transactions", response_model=schemas.Page[schemas.TransactionResponse])
def get_transactions(
    status: Optional[TransactionStatus] = None,
    borrower_id: Optional[int] = None,
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    paging=Depends(page_params),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    page, limit = paging
    return lifecycle.list_transactions(
        db, status=status, borrower_id=borrower_id, page=page, limit=limit, sort_order=sort_order
    )


@app.get("/api/transactions/pending", response_model=schemas.Page[schemas.TransactionResponse])
def get_pending_requests(
    paging=Depends(page_params),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    page, limit = paging
    return lifecycle.list_pending(db, page=page, limit=limit)


@app.get("/api/transactions/active", response_model=schemas.Page[schemas.ActiveTransactionResponse])
def get_active_transactions(
    paging=Depends(page_params),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    page, limit = paging
    return lifecycle.list_active(db, page=page, limit=limit)


@app.get("/api/transactions/{transaction_id}", response_model=schemas.TransactionResponse)
def get_transaction(
    transaction_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    tx = lifecycle.get_transaction(db, transaction_id)
    if not actor.is_admin and tx.borrower_id != actor.member_id:
        raise NotOwner("You can only view your own transactions")
    return tx


@app.post("/api/transactions/{transaction_id}/approve", response_model=schemas.TransactionActionResponse)
def approve_request(
    transaction_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    tx = lifecycle.approve(db, actor, transaction_id)
    return {"message": "Request approved and book issued successfully", "transaction": tx}


@app.post("/api/transactions/{transaction_id}/reject", response_model=schemas.TransactionActionResponse)
def reject_request(
    transaction_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    tx = lifecycle.reject(db, actor, transaction_id)
    return {"message": "Request rejected successfully", "transaction": tx}


@app.post("/api/transactions/{transaction_id}/cancel", response_model=schemas.TransactionActionResponse)
def cancel_request(
    transaction_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    tx = lifecycle.cancel(db, actor, transaction_id)
    return {"message": "Request cancelled successfully", "transaction": tx}


@app.post("/api/transactions/{transaction_id}/return", response_model=schemas.ReturnResponse)
def return_book(
    transaction_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    tx, fine = lifecycle.return_book(db, actor, transaction_id)
    message = "Book returned successfully"
    if fine > 0:
        message += f". Fine: {fine} (Overdue)"
    return {"message": message, "transaction": tx, "fine": fine}


# --- Reports ---

@app.get("/api/reports/stats", response_model=schemas.DashboardStats)
def get_dashboard_stats(actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    return accounts.dashboard_stats(db)


@app.get("/api/reports/overdue", response_model=schemas.Page[schemas.OverdueReportItem])
def get_overdue_report(
    paging=Depends(page_params),
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db)
):
    page, limit = paging
    return lifecycle.overdue_transactions(db, page=page, limit=limit)
