from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import models
from config import settings
from database import get_db
from errors import RoleError
from lifecycle import Actor

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# auto_error=False so the session cookie can be used when there is no header
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_minutes: Optional[int] = None) -> str:
    to_encode = data.copy()
    if expires_minutes is None:
        expires_minutes = settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def token_for(member: models.Member) -> str:
    return create_access_token({
        "sub": str(member.id),
        "role": "Admin" if member.is_admin else "Member",
    })


def actor_for(member: models.Member) -> Actor:
    return Actor(member_id=member.id, is_admin=member.is_admin, name=member.full_name)


def _resolve_actor(request: Request, token: Optional[str], db: Session) -> Optional[Actor]:
    """
    Turns the bearer token (or session cookie) into an Actor.
    Returns None when no credentials were sent at all.
    """
    if not token:
        token = request.cookies.get(settings.session_cookie_name)
    if not token:
        return None

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        member_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise credentials_exception

    # Role comes from the database row, not from the token claims
    member = db.get(models.Member, member_id)
    if member is None:
        raise credentials_exception
    return actor_for(member)


def get_current_actor(request: Request, token: Optional[str] = Depends(oauth2_scheme),
                      db: Session = Depends(get_db)) -> Actor:
    actor = _resolve_actor(request, token, db)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def get_optional_actor(request: Request, token: Optional[str] = Depends(oauth2_scheme),
                       db: Session = Depends(get_db)) -> Optional[Actor]:
    return _resolve_actor(request, token, db)


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise RoleError("Admin access required")
    return actor
