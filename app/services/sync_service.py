"""
Sync Service

Durable storage for client-encrypted diffs and stars. Blobs are opaque; the only
thing the server ever inspects is the leading byte that marks a public
(plaintext JSON) diff.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from sqlalchemy.orm import Session

from ..config import MAX_DIFFS_PER_PROFILE
from ..models.models import EncryptedDiff, EncryptedStar, Profile
from ..schemas.profile import ProfileMetadata
from ..schemas.sync import (
    ContentResponse,
    EncryptedItem,
    PasswordUpdateRequest,
    StatusResponse,
    SyncCounts,
    SyncRequest,
    SyncResponse,
)
from ..utils.time_utils import isoformat_utc, utcnow

logger = logging.getLogger(__name__)

LIST_FIELDS = ('languages', 'frameworks', 'tools', 'topics')


def _dedupe(items: Iterable[EncryptedItem]) -> Dict[str, str]:
    """Last write wins for repeated ids within one batch."""
    return {item.id: item.encrypted_data for item in items}


class SyncService:
    """Service for handling encrypted sync operations"""

    @staticmethod
    def profile_metadata(profile: Profile) -> ProfileMetadata:
        return ProfileMetadata(
            name=profile.name,
            languages=profile.languages or [],
            frameworks=profile.frameworks or [],
            tools=profile.tools or [],
            topics=profile.topics or [],
            depth=profile.depth or 'standard',
            custom_focus=profile.custom_focus,
        )

    @staticmethod
    def apply_metadata(profile: Profile, updates: Dict[str, Any]) -> None:
        """
        Apply a partial metadata update.

        Args:
            profile: Profile to mutate
            updates: Only the fields the client actually sent
                (``model_dump(exclude_unset=True)``)
        """
        for field, value in updates.items():
            if field in LIST_FIELDS:
                setattr(profile, field, list(value or []))
            elif field == 'name':
                if value:
                    profile.name = value
            elif field == 'depth':
                profile.depth = value or 'standard'
            elif field == 'custom_focus':
                profile.custom_focus = value

    @staticmethod
    def _upsert(
        db: Session,
        model: Type[EncryptedDiff] | Type[EncryptedStar],
        profile_id: str,
        items: Dict[str, str],
        now: datetime,
    ) -> None:
        for item_id, data in items.items():
            existing = db.get(model, (profile_id, item_id))
            if existing:
                # created_at is kept so retention reflects creation order
                existing.encrypted_data = data
            else:
                db.add(model(profile_id=profile_id, id=item_id, encrypted_data=data, created_at=now))

    @staticmethod
    def _delete(
        db: Session,
        model: Type[EncryptedDiff] | Type[EncryptedStar],
        profile_id: str,
        ids: List[str],
    ) -> int:
        if not ids:
            return 0
        rows = db.query(model).filter(
            model.profile_id == profile_id,
            model.id.in_(set(ids))
        ).all()
        for row in rows:
            db.delete(row)
        return len(rows)

    @staticmethod
    def prune_diffs(db: Session, profile_id: str, keep: int = MAX_DIFFS_PER_PROFILE) -> int:
        """
        Enforce the per-profile diff cap, evicting oldest-created first.

        Runs inside the caller's transaction so a concurrent reader sees either
        the state before the batch or after it.

        Returns:
            Number of diffs evicted
        """
        stale = db.query(EncryptedDiff).filter(
            EncryptedDiff.profile_id == profile_id
        ).order_by(
            EncryptedDiff.created_at.desc(),
            EncryptedDiff.id.desc()
        ).offset(keep).all()

        for row in stale:
            db.delete(row)
        if stale:
            logger.info("Pruned %d diff(s) beyond cap for profile %s", len(stale), profile_id)
        return len(stale)

    @staticmethod
    def apply_sync_batch(
        db: Session,
        profile: Profile,
        request: SyncRequest,
        max_diffs: int = MAX_DIFFS_PER_PROFILE,
    ) -> SyncResponse:
        """
        Apply one upload batch atomically.

        Upserts, deletions, retention pruning, hash and metadata updates all
        commit together or not at all.

        Args:
            db: Database session
            profile: Authenticated profile
            request: Upload batch from the client
            max_diffs: Retention cap

        Returns:
            SyncResponse with the post-write hashes and item counts
        """
        now = utcnow()
        diffs = _dedupe(request.diffs)
        stars = _dedupe(request.stars)

        try:
            SyncService._upsert(db, EncryptedDiff, profile.id, diffs, now)
            SyncService._upsert(db, EncryptedStar, profile.id, stars, now)
            db.flush()

            SyncService._delete(db, EncryptedDiff, profile.id, request.deleted_diff_ids)
            SyncService._delete(db, EncryptedStar, profile.id, request.deleted_star_ids)
            db.flush()

            SyncService.prune_diffs(db, profile.id, keep=max_diffs)

            if request.diffs_hash:
                profile.diffs_hash = request.diffs_hash
            if request.stars_hash:
                profile.stars_hash = request.stars_hash
            if request.encrypted_api_key:
                profile.encrypted_api_key = request.encrypted_api_key
            if request.keys_hash:
                profile.keys_hash = request.keys_hash
            if request.profile_metadata is not None:
                SyncService.apply_metadata(profile, request.profile_metadata.model_dump(exclude_unset=True))

            profile.failed_attempts = 0
            profile.lockout_until = None
            profile.content_updated_at = now
            profile.updated_at = now

            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(profile)
        return SyncResponse(
            success=True,
            diffs_hash=profile.diffs_hash,
            stars_hash=profile.stars_hash,
            keys_hash=profile.keys_hash,
            synced=SyncCounts(
                diffs=len(diffs),
                stars=len(stars),
                deleted_diffs=len(set(request.deleted_diff_ids)),
                deleted_stars=len(set(request.deleted_star_ids)),
            ),
        )

    @staticmethod
    def fetch_content(
        db: Session,
        profile: Profile,
        diffs_hash: Optional[str] = None,
        stars_hash: Optional[str] = None,
        keys_hash: Optional[str] = None,
    ) -> ContentResponse:
        """
        Read a profile's blobs, skipping collections the caller already holds.

        A collection is skipped when the caller's hash equals the server's
        current hash; its list is then empty and its ``*_skipped`` flag set.
        """
        skip_diffs = bool(diffs_hash) and diffs_hash == profile.diffs_hash
        skip_stars = bool(stars_hash) and stars_hash == profile.stars_hash
        skip_keys = bool(keys_hash) and keys_hash == profile.keys_hash

        diffs: List[EncryptedItem] = []
        stars: List[EncryptedItem] = []

        if not skip_diffs:
            rows = db.query(EncryptedDiff).filter(
                EncryptedDiff.profile_id == profile.id
            ).order_by(EncryptedDiff.created_at.desc()).all()
            diffs = [EncryptedItem(id=row.id, encrypted_data=row.encrypted_data) for row in rows]

        if not skip_stars:
            rows = db.query(EncryptedStar).filter(
                EncryptedStar.profile_id == profile.id
            ).order_by(EncryptedStar.created_at.desc()).all()
            stars = [EncryptedItem(id=row.id, encrypted_data=row.encrypted_data) for row in rows]

        return ContentResponse(
            diffs=diffs,
            stars=stars,
            diffs_skipped=skip_diffs,
            stars_skipped=skip_stars,
            encrypted_api_key=None if skip_keys else profile.encrypted_api_key,
            keys_skipped=skip_keys,
            salt=profile.salt,
            diffs_hash=profile.diffs_hash,
            stars_hash=profile.stars_hash,
            keys_hash=profile.keys_hash,
            profile_metadata=SyncService.profile_metadata(profile),
        )

    @staticmethod
    def replace_all_content(
        db: Session,
        profile: Profile,
        request: PasswordUpdateRequest,
        password_record: str,
        password_salt: Optional[str],
    ) -> None:
        """
        Swap every blob and the password record in one transaction.

        Prior ciphertext is unreadable under the new password-derived key, so
        nothing from the old generation survives.
        """
        now = utcnow()
        try:
            db.query(EncryptedDiff).filter(EncryptedDiff.profile_id == profile.id).delete(synchronize_session=False)
            db.query(EncryptedStar).filter(EncryptedStar.profile_id == profile.id).delete(synchronize_session=False)
            db.flush()

            for item_id, data in _dedupe(request.diffs).items():
                db.add(EncryptedDiff(profile_id=profile.id, id=item_id, encrypted_data=data, created_at=now))
            for item_id, data in _dedupe(request.stars).items():
                db.add(EncryptedStar(profile_id=profile.id, id=item_id, encrypted_data=data, created_at=now))
            db.flush()
            SyncService.prune_diffs(db, profile.id)

            profile.password_hash = password_record
            profile.password_salt = password_salt
            profile.salt = request.new_salt
            profile.encrypted_api_key = request.new_encrypted_api_key
            if request.new_keys_hash:
                profile.keys_hash = request.new_keys_hash
            if request.diffs_hash:
                profile.diffs_hash = request.diffs_hash
            if request.stars_hash:
                profile.stars_hash = request.stars_hash
            profile.failed_attempts = 0
            profile.lockout_until = None
            profile.content_updated_at = now
            profile.updated_at = now

            db.commit()
        except Exception:
            db.rollback()
            raise

    @staticmethod
    def compute_status(
        profile: Profile,
        diffs_hash: Optional[str] = None,
        stars_hash: Optional[str] = None,
    ) -> StatusResponse:
        diffs_needed = not diffs_hash or diffs_hash != profile.diffs_hash
        stars_needed = not stars_hash or stars_hash != profile.stars_hash
        return StatusResponse(
            exists=True,
            needs_sync=diffs_needed or stars_needed,
            diffs_sync_needed=diffs_needed,
            stars_sync_needed=stars_needed,
            server_diffs_hash=profile.diffs_hash,
            server_stars_hash=profile.stars_hash,
            server_updated_at=isoformat_utc(profile.content_updated_at),
        )

    @staticmethod
    def get_public_diff(db: Session, diff_id: str) -> Optional[Tuple[EncryptedDiff, Dict[str, Any]]]:
        """
        Fetch a diff only if its owner stored it as plaintext.

        Returns:
            (row, parsed payload), or None when missing or encrypted

        Raises:
            ValueError: Stored plaintext is not valid JSON
        """
        row = db.query(EncryptedDiff).filter(EncryptedDiff.id == diff_id).first()
        if row is None or not row.is_public:
            return None
        try:
            payload = json.loads(row.encrypted_data)
        except json.JSONDecodeError as e:
            raise ValueError("Invalid diff data") from e
        if not isinstance(payload, dict):
            raise ValueError("Invalid diff data")
        return row, payload
