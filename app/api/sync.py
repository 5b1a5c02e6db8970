"""
Sync API Endpoints

Handles hash-only status checks, encrypted content download, atomic upload
batches and password rotation with full content replacement.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.profile import SuccessResponse
from ..schemas.sync import (
    ContentRequest,
    ContentResponse,
    PasswordUpdateRequest,
    StatusResponse,
    SyncRequest,
    SyncResponse,
)
from ..services.auth_service import get_profile, hash_password_with_salt
from ..services.sync_service import SyncService
from .deps import authenticate_profile, profile_not_found

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/profile", tags=["sync"])


@router.get("/{profile_id}/status", response_model=StatusResponse)
async def sync_status(
    profile_id: str,
    diffs_hash: Optional[str] = Query(None),
    stars_hash: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """
    Cheap staleness check: compares the caller's last-known hashes with the
    server's without transferring any ciphertext. No password required.

    Raises:
        404: Profile not found (server copy deleted)
    """
    profile = get_profile(db, profile_id)
    if profile is None:
        raise profile_not_found()
    return SyncService.compute_status(profile, diffs_hash, stars_hash)


@router.post("/{profile_id}/content", response_model=ContentResponse)
async def download_content(profile_id: str, body: ContentRequest, db: Session = Depends(get_db)):
    """
    Authenticated download of every stored blob.

    Collections whose hash matches the caller's are skipped.

    Raises:
        401: Missing or invalid password
        404: Profile not found
        429: Locked out
    """
    profile = authenticate_profile(db, profile_id, body.password_hash)

    try:
        return SyncService.fetch_content(
            db=db,
            profile=profile,
            diffs_hash=body.diffs_hash,
            stars_hash=body.stars_hash,
            keys_hash=body.keys_hash,
        )
    except Exception as e:
        logger.exception("Content download failed for profile %s", profile_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to fetch content: {str(e)}"
        )


@router.post("/{profile_id}/sync", response_model=SyncResponse)
async def upload_batch(profile_id: str, body: SyncRequest, db: Session = Depends(get_db)):
    """
    Apply an upload batch atomically.

    Args:
        profile_id: Profile being synced
        body: Upserts, deletions, client hashes and optional metadata/keys
        db: Database session

    Returns:
        SyncResponse: Post-write hashes and per-kind counts

    Raises:
        401: Missing or invalid password
        404: Profile not found
        429: Locked out
    """
    profile = authenticate_profile(db, profile_id, body.password_hash)

    try:
        result = SyncService.apply_sync_batch(db=db, profile=profile, request=body)
        logger.info(
            "Synced profile %s: %d diffs, %d stars, %d/%d deleted",
            profile_id,
            result.synced.diffs,
            result.synced.stars,
            result.synced.deleted_diffs,
            result.synced.deleted_stars,
        )
        return result
    except Exception as e:
        logger.exception("Sync failed for profile %s", profile_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to sync: {str(e)}"
        )


@router.post("/{profile_id}/password", response_model=SuccessResponse)
async def change_password(profile_id: str, body: PasswordUpdateRequest, db: Session = Depends(get_db)):
    """
    Rotate the password and replace all content in one transaction.

    Every blob must already be re-encrypted client-side under the new key.

    Raises:
        400: Missing new password material
        401: Invalid old password
        404: Profile not found
        429: Locked out
    """
    if not body.old_password_hash or not body.new_password_hash:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Both old and new passwords required"
        )
    if not body.new_encrypted_api_key or not body.new_salt:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="New encrypted API key and salt required"
        )

    profile = authenticate_profile(db, profile_id, body.old_password_hash, upgrade=False)

    try:
        record, client_salt = hash_password_with_salt(body.new_password_hash)
        SyncService.replace_all_content(
            db=db,
            profile=profile,
            request=body,
            password_record=record,
            password_salt=client_salt,
        )
        logger.info("Password rotated for profile %s", profile_id)
        return SuccessResponse(message="Password updated")
    except Exception as e:
        logger.exception("Password change failed for profile %s", profile_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to change password: {str(e)}"
        )
