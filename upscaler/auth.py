"""
Authentication utilities for access tokens issued by the managed auth provider.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .ledger import get_or_create_profile
from .models.profile import Profile
from .config import get_settings

settings = get_settings()

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, email: Optional[str] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    """Create a token shaped like the provider's (used by seed data and tests)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    to_encode = {
        "sub": user_id,
        "aud": settings.auth_jwt_audience,
        "role": "authenticated",
        "exp": expire,
    }
    if email:
        to_encode["email"] = email
    return jwt.encode(to_encode, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def verify_token(token: str) -> Optional[dict]:
    """Verify a JWT and return its payload."""
    if not settings.auth_jwt_secret:
        return None
    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
    except JWTError:
        return None


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Optional[Profile]:
    """Get the current user's profile from the bearer token (optional auth)."""
    if not credentials:
        return None

    payload = verify_token(credentials.credentials)
    if not payload:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None

    metadata = payload.get("user_metadata") or {}
    return get_or_create_profile(
        db,
        str(user_id),
        email=payload.get("email"),
        full_name=metadata.get("full_name"),
    )


def get_required_user(
    current_user: Optional[Profile] = Depends(get_current_user)
) -> Profile:
    """Get the current user, raising 401 if not authenticated."""
    if not current_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_user
