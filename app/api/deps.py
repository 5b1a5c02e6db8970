"""
Shared helpers for authenticated profile endpoints.

Maps auth-engine exceptions onto the JSON error envelope:
401 ``{error, attempts_remaining}``, 429 ``{error, locked, retry_after_seconds}``,
404 ``{error}``.
"""

from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ..models.models import Profile
from ..services.auth_service import (
    AuthInvalidError,
    AuthLockedError,
    ProfileNotFoundError,
    get_profile_or_raise,
    verify_and_upgrade,
)


def profile_not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")


def require_password_hash(password_hash: Optional[str]) -> str:
    if not password_hash:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Password required")
    return password_hash


def auth_error_to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthLockedError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": str(exc),
                "locked": True,
                "retry_after_seconds": exc.retry_after_seconds,
            },
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )
    if isinstance(exc, AuthInvalidError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": str(exc), "attempts_remaining": exc.attempts_remaining},
        )
    if isinstance(exc, ProfileNotFoundError):
        return profile_not_found()
    raise TypeError(f"Not an auth error: {exc!r}")


def authenticate_profile(
    db: Session,
    profile_id: str,
    password_hash: Optional[str],
    upgrade: bool = True,
) -> Profile:
    """
    Load a profile and verify the caller's transport hash.

    Raises:
        HTTPException: 401 missing/invalid password, 404 unknown profile,
            429 locked out
    """
    transport_hash = require_password_hash(password_hash)
    try:
        profile = get_profile_or_raise(db, profile_id)
        return verify_and_upgrade(db, profile, transport_hash, upgrade=upgrade)
    except (ProfileNotFoundError, AuthInvalidError, AuthLockedError) as e:
        raise auth_error_to_http(e)
