import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Request, HTTPException
from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlmodel import Session, select

from .models import User

log = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_SECRET")
ALGO = "HS256"
TOKEN_MINUTES = int(os.getenv("TOKEN_MINUTES", str(60 * 24)))
COOKIE = "token"

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_pw(p: str) -> str:
    return pwd.hash(p)


def authenticate(session: Session, username: str, password: str) -> Optional[User]:
    """Active user with a matching password, else None."""
    u = session.exec(select(User).where(User.username == username, User.is_active == True)).first()
    if u and pwd.verify(password, u.password_hash):
        return u
    log.warning("Failed login for %r", username)
    return None


def ensure_admin(session: Session, password: str) -> None:
    if session.exec(select(User).where(User.username == "admin")).first():
        return
    session.add(User(username="admin", password_hash=hash_pw(password), role="ADMIN"))
    session.commit()
    log.info("Seeded default admin user")


def create_token(username: str, role: str, minutes: int = TOKEN_MINUTES) -> str:
    claims = {
        "sub": username,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGO)


def current_user(request: Request) -> dict:
    # API clients send a bearer token, browsers carry the login cookie
    header = request.headers.get("authorization", "")
    token = header[7:].strip() if header.lower().startswith("bearer ") else request.cookies.get(COOKIE)
    if not token:
        raise HTTPException(401, "Login required")
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGO])
    except JWTError:
        raise HTTPException(401, "Invalid login")
    request.state.user = claims
    return claims


def require_roles(*roles: str) -> Callable:
    def guard(request: Request):
        claims = current_user(request)
        if roles and claims.get("role") not in roles:
            raise HTTPException(403, f"Role {claims.get('role')} may not do this")
        return claims
    return guard
