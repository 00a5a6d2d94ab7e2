"""
Identity and request-guard dependencies.

Users are provisioned by the external identity service, which issues JWT
access tokens ({"sub": user_id, "type": "access"}). This module verifies them,
loads the local user mirror, and enforces per-caller rate limits.
"""
from fastapi import APIRouter, Depends, HTTPException, Header, Request
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError

from config import SECRET_KEY, JWT_ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES
from database import get_db
from models import User, Role
from services.clock import Clock, SystemClock

router = APIRouter(prefix="/api/auth", tags=["auth"])


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def _subject(authorization: Optional[str]) -> Optional[str]:
    """User id from a valid access token, or None."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    try:
        payload = jwt.decode(authorization.split(" ")[1], SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    sub = payload.get("sub")
    return str(sub) if sub is not None else None


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> User:
    """Dependency to extract current user from JWT Bearer token."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = _subject(authorization)
    if user_id is None or not user_id.isdigit():
        raise HTTPException(status_code=401, detail="Token expired or invalid")

    user = db.query(User).filter(User.id == int(user_id)).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


def require_role(*roles: str):
    """Dependency factory: current user must hold one of ``roles`` (ADMIN always passes)."""
    def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles and current_user.role != Role.ADMIN:
            raise HTTPException(status_code=403, detail=f"Only {' / '.join(r.lower() for r in roles)} users can do this")
        return current_user
    return checker


def get_clock() -> Clock:
    """Time source for services; tests override it with a FixedClock."""
    return SystemClock()


def enforce_rate_limit(request: Request, authorization: Optional[str] = Header(None)):
    """
    Per-caller fixed window: authenticated callers keyed by user id,
    anonymous callers by client address with a tighter limit.
    """
    user_id = _subject(authorization)
    if user_id is not None:
        limiter, key = request.app.state.user_rate_limiter, f"user:{user_id}"
    else:
        host = request.client.host if request.client else "unknown"
        limiter, key = request.app.state.anon_rate_limiter, f"ip:{host}"

    result = limiter.check(key)
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "Too many requests", "code": "RATE_LIMITED", "retry_after": result.retry_after},
            headers={"Retry-After": str(result.retry_after)},
        )


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "wallet_address": user.wallet_address,
        "kyc_status": user.kyc_status,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return user_to_dict(current_user)
