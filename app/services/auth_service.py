"""
Auth Service

Password verification with brute-force protection for profile access.

The server never sees a raw password. Clients send a *transport hash*
(``<clientSalt>:<base64 sha256(clientSalt + password)>``) and the server keeps a
slow-KDF record derived from it:

    v2:<serverSalt b64>:<base64 PBKDF2-HMAC-SHA256(transport hash)>

Older profiles stored the transport hash itself ("legacy"); those verify by
direct comparison and are upgraded to v2 after the first successful check.
"""

from __future__ import annotations

import base64
import logging
import math
import secrets
from datetime import datetime, timedelta
from typing import NamedTuple, Optional, Tuple

from passlib.crypto.digest import pbkdf2_hmac
from passlib.utils import consteq
from sqlalchemy.orm import Session

from ..config import (
    AUTH_ATTEMPT_WINDOW_MINUTES,
    AUTH_LOCKOUT_MINUTES,
    AUTH_MAX_ATTEMPTS,
    PBKDF2_ITERATIONS,
    PBKDF2_KEY_BYTES,
    SERVER_SALT_BYTES,
)
from ..models.models import Profile
from ..utils.time_utils import utcnow

logger = logging.getLogger(__name__)

V2_PREFIX = "v2"


class ProfileNotFoundError(Exception):
    def __init__(self, profile_id: str):
        super().__init__("Profile not found")
        self.profile_id = profile_id


class AuthInvalidError(Exception):
    def __init__(self, attempts_remaining: int):
        super().__init__("Invalid password")
        self.attempts_remaining = attempts_remaining


class AuthLockedError(Exception):
    def __init__(self, retry_after_seconds: int):
        super().__init__("Too many failed attempts. Try again later.")
        self.retry_after_seconds = retry_after_seconds


class VerificationResult(NamedTuple):
    valid: bool
    is_legacy: bool


class LockoutStatus(NamedTuple):
    locked: bool
    retry_after_seconds: int = 0


def _derive_key(transport_hash: str, server_salt: bytes) -> bytes:
    return pbkdf2_hmac("sha256", transport_hash.encode("utf-8"), server_salt, PBKDF2_ITERATIONS, PBKDF2_KEY_BYTES)


def _safe_equal(a: str, b: str) -> bool:
    return consteq(a.encode("utf-8"), b.encode("utf-8"))


def client_salt_of(transport_hash: str) -> Optional[str]:
    """Return the client-side salt prefix of a transport hash, if present."""
    if ":" not in transport_hash:
        return None
    return transport_hash.split(":", 1)[0] or None


def hash_password_with_salt(transport_hash: str) -> Tuple[str, Optional[str]]:
    """Build a fresh v2 record for a transport hash.

    Returns the record and the client salt to publish alongside it.
    """
    server_salt = secrets.token_bytes(SERVER_SALT_BYTES)
    derived = _derive_key(transport_hash, server_salt)
    record = ":".join([
        V2_PREFIX,
        base64.b64encode(server_salt).decode("ascii"),
        base64.b64encode(derived).decode("ascii"),
    ])
    return record, client_salt_of(transport_hash)


def is_legacy_record(stored_hash: str) -> bool:
    return not stored_hash.startswith(V2_PREFIX + ":")


def verify_password_record(stored_hash: str, transport_hash: str) -> VerificationResult:
    """Check a transport hash against a stored record of either format."""
    if is_legacy_record(stored_hash):
        return VerificationResult(valid=_safe_equal(stored_hash, transport_hash), is_legacy=True)

    parts = stored_hash.split(":")
    if len(parts) != 3:
        logger.warning("Malformed v2 password record")
        return VerificationResult(valid=False, is_legacy=False)

    try:
        server_salt = base64.b64decode(parts[1])
    except ValueError:
        logger.warning("Malformed v2 password record salt")
        return VerificationResult(valid=False, is_legacy=False)

    derived = base64.b64encode(_derive_key(transport_hash, server_salt)).decode("ascii")
    return VerificationResult(valid=_safe_equal(derived, parts[2]), is_legacy=False)


def check_lockout(profile: Profile, now: Optional[datetime] = None) -> LockoutStatus:
    """Locked while now < lockout_until."""
    if not profile.lockout_until:
        return LockoutStatus(locked=False)
    now = now or utcnow()
    if now < profile.lockout_until:
        remaining = (profile.lockout_until - now).total_seconds()
        return LockoutStatus(locked=True, retry_after_seconds=max(1, math.ceil(remaining)))
    return LockoutStatus(locked=False)


def should_reset_attempts(profile: Profile, now: Optional[datetime] = None) -> bool:
    """True when the last failure is older than the attempt window."""
    if not profile.last_failed_at or not profile.failed_attempts:
        return False
    now = now or utcnow()
    return now > profile.last_failed_at + timedelta(minutes=AUTH_ATTEMPT_WINDOW_MINUTES)


def record_failure(db: Session, profile: Profile, now: Optional[datetime] = None) -> int:
    """Count a failed attempt and lock the profile at the threshold.

    Committed immediately, since the surrounding request is about to fail.
    Returns the number of attempts remaining before lockout.
    """
    now = now or utcnow()
    if should_reset_attempts(profile, now):
        profile.failed_attempts = 0

    profile.failed_attempts = (profile.failed_attempts or 0) + 1
    profile.last_failed_at = now
    if profile.failed_attempts >= AUTH_MAX_ATTEMPTS:
        profile.lockout_until = now + timedelta(minutes=AUTH_LOCKOUT_MINUTES)
        logger.warning("Profile %s locked out after %d failed attempts", profile.id, profile.failed_attempts)

    db.commit()
    return max(0, AUTH_MAX_ATTEMPTS - profile.failed_attempts)


def record_success(profile: Profile) -> None:
    profile.failed_attempts = 0
    profile.lockout_until = None


def upgrade_password_record(profile: Profile, transport_hash: str) -> None:
    """Replace a legacy record with v2 and keep the client salt publishable."""
    record, client_salt = hash_password_with_salt(transport_hash)
    profile.password_hash = record
    if client_salt:
        profile.password_salt = client_salt
    logger.info("Upgraded password record for profile %s to v2", profile.id)


def get_profile(db: Session, profile_id: str) -> Optional[Profile]:
    return db.query(Profile).filter(Profile.id == profile_id).first()


def get_profile_or_raise(db: Session, profile_id: str) -> Profile:
    profile = get_profile(db, profile_id)
    if profile is None:
        raise ProfileNotFoundError(profile_id)
    return profile


def verify_and_upgrade(
    db: Session,
    profile: Profile,
    transport_hash: str,
    upgrade: bool = True,
    now: Optional[datetime] = None,
) -> Profile:
    """
    Full authentication flow for one request.

    Args:
        db: Database session
        profile: Profile being accessed
        transport_hash: Client-derived password hash
        upgrade: Rewrite legacy records to v2 after a successful check
        now: Clock override (tests)

    Returns:
        The authenticated profile

    Raises:
        AuthLockedError: Profile is inside its lockout window
        AuthInvalidError: Wrong password (failure already recorded)
    """
    now = now or utcnow()

    lockout = check_lockout(profile, now)
    if lockout.locked:
        raise AuthLockedError(lockout.retry_after_seconds)

    result = verify_password_record(profile.password_hash, transport_hash)
    if not result.valid:
        remaining = record_failure(db, profile, now)
        logger.info("Failed password attempt for profile %s (%d remaining)", profile.id, remaining)
        raise AuthInvalidError(remaining)

    record_success(profile)
    if result.is_legacy and upgrade:
        upgrade_password_record(profile, transport_hash)
    db.commit()
    return profile
