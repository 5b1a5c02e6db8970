"""
Profile API Endpoints

Registration, authenticated read/update/delete, and the public share card.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.models import EncryptedDiff, EncryptedStar, Profile
from ..schemas.profile import (
    ProfileCreate,
    ProfileCreateResponse,
    ProfileResponse,
    ProfileUpdate,
    ShareResponse,
    SuccessResponse,
)
from ..services.auth_service import (
    AuthInvalidError,
    AuthLockedError,
    client_salt_of,
    get_profile,
    hash_password_with_salt,
    is_legacy_record,
    verify_and_upgrade,
)
from ..services.sync_service import SyncService
from ..utils.time_utils import isoformat_utc, utcnow
from .deps import auth_error_to_http, authenticate_profile, profile_not_found

logger = logging.getLogger(__name__)

router = APIRouter(tags=["profiles"])


@router.post("/profile/create", response_model=ProfileCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_profile(body: ProfileCreate, db: Session = Depends(get_db)):
    """
    Register a profile, or update an existing one.

    An existing id must authenticate with its current password. The stored
    password is never replaced here; rotation goes through the password
    endpoint so the first registered password wins.

    Raises:
        400: Missing required fields
        401: Wrong password for an existing id
        429: Existing profile is locked out
    """
    if not body.name or not body.password_hash or not body.encrypted_api_key or not body.salt:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    profile_id = body.id or str(uuid.uuid4())

    try:
        existing = get_profile(db, profile_id)
        now = utcnow()

        if existing:
            try:
                verify_and_upgrade(db, existing, body.password_hash)
            except (AuthInvalidError, AuthLockedError) as e:
                raise auth_error_to_http(e)

            existing.name = body.name
            existing.encrypted_api_key = body.encrypted_api_key
            existing.salt = body.salt
            existing.keys_hash = body.keys_hash
            SyncService.apply_metadata(existing, body.model_dump(
                include={'languages', 'frameworks', 'tools', 'topics', 'depth', 'custom_focus'}
            ))
            existing.content_updated_at = now
            logger.info("Updated profile %s", profile_id)
        else:
            record, client_salt = hash_password_with_salt(body.password_hash)
            db.add(Profile(
                id=profile_id,
                name=body.name,
                password_hash=record,
                password_salt=client_salt,
                encrypted_api_key=body.encrypted_api_key,
                salt=body.salt,
                keys_hash=body.keys_hash,
                languages=body.languages,
                frameworks=body.frameworks,
                tools=body.tools,
                topics=body.topics,
                depth=body.depth or 'standard',
                custom_focus=body.custom_focus,
                content_updated_at=now,
            ))
            logger.info("Created profile %s", profile_id)

        db.commit()
        return ProfileCreateResponse(id=profile_id, name=body.name)
    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.exception("Create profile failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create profile: {str(e)}"
        )


@router.get("/profile/{profile_id}", response_model=ProfileResponse)
async def read_profile(
    profile_id: str,
    password_hash: Optional[str] = Query(None),
    include_data: bool = Query(False),
    db: Session = Depends(get_db)
):
    """Authenticated profile read, optionally with every stored blob."""
    profile = authenticate_profile(db, profile_id, password_hash)

    response = ProfileResponse(
        id=profile.id,
        **SyncService.profile_metadata(profile).model_dump(),
        encrypted_api_key=profile.encrypted_api_key,
        salt=profile.salt,
        keys_hash=profile.keys_hash,
        diffs_hash=profile.diffs_hash,
        stars_hash=profile.stars_hash,
        content_updated_at=isoformat_utc(profile.content_updated_at),
    )

    if include_data:
        diffs = db.query(EncryptedDiff).filter(
            EncryptedDiff.profile_id == profile.id
        ).order_by(EncryptedDiff.created_at.desc()).all()
        stars = db.query(EncryptedStar).filter(
            EncryptedStar.profile_id == profile.id
        ).order_by(EncryptedStar.created_at.desc()).all()
        response.encrypted_diffs = [d.encrypted_data for d in diffs]
        response.encrypted_stars = [s.encrypted_data for s in stars]

    return response


@router.put("/profile/{profile_id}", response_model=SuccessResponse)
async def update_profile(profile_id: str, body: ProfileUpdate, db: Session = Depends(get_db)):
    """Partial metadata update; fields the client did not send stay as they are."""
    profile = authenticate_profile(db, profile_id, body.password_hash)

    try:
        updates = body.model_dump(exclude_unset=True, exclude={'password_hash'})
        SyncService.apply_metadata(profile, updates)
        profile.updated_at = utcnow()
        db.commit()
        return SuccessResponse()
    except Exception as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update profile: {str(e)}"
        )


@router.delete("/profile/{profile_id}", response_model=SuccessResponse)
async def delete_profile(
    profile_id: str,
    password_hash: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """Delete a profile together with all of its diffs and stars."""
    profile = authenticate_profile(db, profile_id, password_hash)

    try:
        db.delete(profile)
        db.commit()
        logger.info("Deleted profile %s", profile_id)
        return SuccessResponse()
    except Exception as e:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to delete profile: {str(e)}"
        )


@router.get("/share/{profile_id}", response_model=ShareResponse)
async def read_share_card(profile_id: str, response: Response, db: Session = Depends(get_db)):
    """
    Public profile card used to import a shared profile.

    Carries the client transport salt so the importer can build the same
    transport hash; never the password record or any ciphertext.
    """
    profile = get_profile(db, profile_id)
    if profile is None:
        raise profile_not_found()

    password_salt = profile.password_salt
    if not password_salt and is_legacy_record(profile.password_hash):
        password_salt = client_salt_of(profile.password_hash)

    response.headers["Cache-Control"] = "no-cache"
    metadata = SyncService.profile_metadata(profile)
    return ShareResponse(
        id=profile.id,
        name=metadata.name,
        languages=metadata.languages,
        frameworks=metadata.frameworks,
        tools=metadata.tools,
        topics=metadata.topics,
        depth=metadata.depth,
        password_salt=password_salt,
    )
