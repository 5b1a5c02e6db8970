"""
Sync Session

Per-profile reconciler between the local store and the sync server. A session
owns the cached password, the ``syncing`` guard and the auto-sync debounce
timer; ``close()`` tears all three down.

Profile lifecycle:

    local-only -> shared-pending-password <-> synced   (syncing while a call runs)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .api_client import SyncApiClient
from .config import AUTO_SYNC_DELAY_SECONDS, MAX_LOCAL_DIFFS, STALE_AFTER
from .crypto import (
    compute_content_hash,
    compute_keys_hash,
    generate_salt,
    hash_password_for_transport,
    transport_salt_of,
)
from .errors import (
    AuthInvalidError,
    AuthLockedError,
    DecryptionError,
    NotSharedError,
    PasswordRequiredError,
    ProfileNotFoundError,
    SyncError,
    SyncInProgressError,
)
from .merge import (
    build_profile_metadata,
    decrypt_and_merge_diffs,
    decrypt_and_merge_stars,
    decrypt_keys_blob,
    encrypt_diffs,
    encrypt_keys_blob,
    encrypt_stars,
    enforce_diff_cap,
    remove_orphan_stars,
)
from .models import Diff, LocalProfile, PendingChanges, Star, star_id
from .pending import ChangeTracker
from .store import LocalStore
from ..utils.time_utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

METADATA_FIELDS = ('name', 'languages', 'frameworks', 'tools', 'topics', 'depth', 'custom_focus')


class SyncState(str, Enum):
    LOCAL_ONLY = "local-only"
    SHARED_PENDING_PASSWORD = "shared-pending-password"
    SYNCED = "synced"
    SYNCING = "syncing"


class SyncOutcome(str, Enum):
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    SYNCED = "synced"


class DownloadResult(NamedTuple):
    downloaded: int
    decryption_errors: int


class SyncResult(NamedTuple):
    uploaded: int
    downloaded: int
    status: SyncOutcome


class StatusReport(NamedTuple):
    exists: bool
    needs_sync: bool = False
    diffs_sync_needed: bool = False
    stars_sync_needed: bool = False
    server_diffs_hash: Optional[str] = None
    server_stars_hash: Optional[str] = None
    server_updated_at: Optional[str] = None


def classify(uploaded: int, downloaded: int) -> SyncOutcome:
    if uploaded > 0 and downloaded == 0:
        return SyncOutcome.UPLOADED
    if downloaded > 0 and uploaded == 0:
        return SyncOutcome.DOWNLOADED
    return SyncOutcome.SYNCED


class SyncSession:
    def __init__(
        self,
        store: LocalStore,
        api: SyncApiClient,
        profile_id: str,
        timer_factory: Callable[..., Any] = threading.Timer,
        auto_sync_delay: float = AUTO_SYNC_DELAY_SECONDS,
    ):
        self.store = store
        self.api = api
        self.profile_id = profile_id
        self.timer_factory = timer_factory
        self.auto_sync_delay = auto_sync_delay
        self.tracker = ChangeTracker(store, profile_id, on_change=self.schedule_auto_sync)

        self._password: Optional[str] = None
        self._lock = threading.Lock()
        self._timer = None

        self.last_error: Optional[str] = None
        self.last_status: Optional[StatusReport] = None

    # State

    @property
    def profile(self) -> Optional[LocalProfile]:
        return self.store.get_profile(self.profile_id)

    @property
    def pending(self) -> PendingChanges:
        return self.tracker.pending

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def state(self) -> SyncState:
        profile = self.profile
        if profile is None or not profile.is_shared:
            return SyncState.LOCAL_ONLY
        if self.is_syncing:
            return SyncState.SYNCING
        if self._password:
            return SyncState.SYNCED
        return SyncState.SHARED_PENDING_PASSWORD

    def has_pending_changes(self) -> bool:
        return self.tracker.has_pending()

    # Password cache

    @property
    def password(self) -> Optional[str]:
        return self._password

    def set_password(self, password: str, remember: bool = False) -> None:
        self._password = password
        if remember:
            self.store.remember_password(self.profile_id, password)

    def clear_password(self, forget: bool = False) -> None:
        self._password = None
        if forget:
            self.store.forget_password(self.profile_id)

    def restore_password(self) -> bool:
        remembered = self.store.get_remembered_password(self.profile_id)
        if remembered:
            self._password = remembered
        return remembered is not None

    def close(self) -> None:
        """Tear down: stop the debounce timer and drop the session password."""
        self.cancel_auto_sync()
        self._password = None

    # Guards

    @contextmanager
    def _syncing(self):
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError("Sync in progress, please wait")
        try:
            yield
        finally:
            self._lock.release()

    def _require_profile(self) -> LocalProfile:
        profile = self.profile
        if profile is None:
            raise NotSharedError(f"Unknown profile {self.profile_id}")
        return profile

    def _require_shared(self) -> LocalProfile:
        profile = self._require_profile()
        if not profile.is_shared:
            raise NotSharedError("Profile not synced to server")
        if not profile.password_salt:
            raise NotSharedError("Profile missing password salt - try re-sharing the profile")
        return profile

    def _resolve_password(self, password: Optional[str]) -> str:
        password = password or self._password
        if not password:
            raise PasswordRequiredError("Password required")
        return password

    def _transport_hash(self, profile: LocalProfile, password: str) -> str:
        return hash_password_for_transport(password, profile.password_salt)

    def _handle_error(self, error: Exception) -> None:
        if isinstance(error, AuthInvalidError):
            self.clear_password(forget=True)
            self.last_error = "Invalid password"
        elif isinstance(error, AuthLockedError):
            self.last_error = error.message
        else:
            self.last_error = f"Sync failed: {error}" if str(error) else "Sync failed"
        logger.warning("Sync error for profile %s: %s", self.profile_id, self.last_error)

    # Local edits; each runs under the store lock so the auto-sync thread
    # never sees a half-applied edit

    def add_diff(self, diff: Diff) -> List[str]:
        """
        Store a new or regenerated diff, evicting the oldest beyond the local cap.

        Returns:
            Ids of evicted diffs
        """
        with self.store.lock:
            diffs = [d for d in self.store.get_diffs(self.profile_id) if d.id != diff.id]
            diffs.append(diff)
            kept, kept_stars, evicted, removed_stars = enforce_diff_cap(
                diffs, self.store.get_stars(self.profile_id), MAX_LOCAL_DIFFS
            )
            self.store.set_diffs(self.profile_id, kept)
            self.store.set_stars(self.profile_id, kept_stars)

            for item_id in removed_stars:
                self.tracker.track_deleted_star(item_id)
            for diff_id in evicted:
                self.tracker.track_deleted_diff(diff_id)
            if diff.id not in evicted:
                self.tracker.track_modified_diff(diff.id)
        return evicted

    def delete_diff(self, diff_id: str) -> List[str]:
        """Delete a diff and every star pointing into it. Returns the removed star ids."""
        with self.store.lock:
            stars = self.store.get_stars(self.profile_id)
            doomed = [star.id for star in stars if star.diff_id == diff_id]
            self.store.set_stars(self.profile_id, [star for star in stars if star.diff_id != diff_id])
            for item_id in doomed:
                self.tracker.track_deleted_star(item_id)

            self.store.set_diffs(self.profile_id, [d for d in self.store.get_diffs(self.profile_id) if d.id != diff_id])
            self.tracker.track_deleted_diff(diff_id)
        return doomed

    def set_diff_public(self, diff_id: str, is_public: bool) -> None:
        with self.store.lock:
            diffs = self.store.get_diffs(self.profile_id)
            for diff in diffs:
                if diff.id == diff_id:
                    diff.is_public = is_public
                    break
            else:
                raise KeyError(diff_id)
            self.store.set_diffs(self.profile_id, diffs)
            self.tracker.track_modified_diff(diff_id)

    def add_star(self, diff_id: str, p_index: int, added_at: Optional[str] = None) -> Star:
        with self.store.lock:
            if not any(d.id == diff_id for d in self.store.get_diffs(self.profile_id)):
                raise KeyError(diff_id)
            star = Star(diff_id=diff_id, p_index=p_index, added_at=added_at or utcnow().isoformat() + "Z")
            stars = [s for s in self.store.get_stars(self.profile_id) if s.id != star.id]
            stars.append(star)
            self.store.set_stars(self.profile_id, stars)
            self.tracker.track_modified_star(star.id)
        return star

    def remove_star(self, diff_id: str, p_index: int) -> None:
        item_id = star_id(diff_id, p_index)
        with self.store.lock:
            self.store.set_stars(self.profile_id, [s for s in self.store.get_stars(self.profile_id) if s.id != item_id])
            self.tracker.track_deleted_star(item_id)

    def update_profile(self, **updates: Any) -> None:
        """Update metadata locally; only metadata fields mark the profile for upload."""
        with self.store.lock:
            profile = self._require_profile()
            for field, value in updates.items():
                setattr(profile, field, value)
            self.store.save_profile(profile)
            if any(field in METADATA_FIELDS for field in updates):
                self.tracker.mark_profile_modified()

    def update_api_keys(
        self,
        api_keys: Optional[Dict[str, str]] = None,
        provider_selections: Optional[Dict[str, str]] = None,
    ) -> None:
        with self.store.lock:
            profile = self._require_profile()
            if api_keys is not None:
                profile.api_keys = dict(api_keys)
            if provider_selections is not None:
                profile.provider_selections = dict(provider_selections)
            self.store.save_profile(profile)
            self.tracker.mark_keys_modified()

    # Network operations; callers hold the syncing guard. The store lock is
    # taken only around local reads and writes, never across a request.

    def _download(self, password: str) -> DownloadResult:
        profile = self._require_shared()
        data = self.api.get_content(
            self.profile_id,
            self._transport_hash(profile, password),
            diffs_hash=profile.diffs_hash,
            stars_hash=profile.stars_hash,
            keys_hash=profile.keys_hash,
        )
        salt = data.get("salt") or profile.salt

        with self.store.lock:
            pending = self.tracker.pending
            diffs = self.store.get_diffs(self.profile_id)
            stars = self.store.get_stars(self.profile_id)
            downloaded = 0
            errors = 0

            if not data.get("diffs_skipped"):
                result = decrypt_and_merge_diffs(data.get("diffs", []), diffs, pending, password, salt)
                diffs, downloaded, errors = result.merged, downloaded + result.downloaded, errors + result.errors
            if not data.get("stars_skipped"):
                result = decrypt_and_merge_stars(data.get("stars", []), stars, pending, password, salt)
                stars, downloaded, errors = result.merged, downloaded + result.downloaded, errors + result.errors

            stars, orphaned = remove_orphan_stars(diffs, stars)
            self.store.set_diffs(self.profile_id, diffs)
            self.store.set_stars(self.profile_id, stars)
            for item_id in orphaned:
                self.tracker.track_deleted_star(item_id)

            encrypted_keys = data.get("encrypted_api_key")
            if encrypted_keys and not data.get("keys_skipped") and not pending.keys_modified:
                try:
                    profile.api_keys, profile.provider_selections = decrypt_keys_blob(encrypted_keys, password, salt)
                except DecryptionError:
                    logger.warning("Could not decrypt key blob for profile %s", self.profile_id)
                    errors += 1

            metadata = data.get("profile_metadata") or {}
            if metadata and not pending.profile_modified:
                for field in METADATA_FIELDS:
                    if field in metadata and (metadata[field] is not None or field == 'custom_focus'):
                        setattr(profile, field, metadata[field])

            profile.salt = salt
            profile.diffs_hash = data.get("diffs_hash")
            profile.stars_hash = data.get("stars_hash")
            profile.keys_hash = data.get("keys_hash")
            profile.synced_at = utcnow()
            self.store.save_profile(profile)

            if errors:
                # Stored ciphertext may predate the current salt; re-send everything
                logger.warning("%d item(s) failed to decrypt for profile %s, scheduling full re-upload", errors, self.profile_id)
                self.tracker.mark_all_modified(
                    [d.id for d in diffs],
                    [s.id for s in stars],
                )
                self.tracker.mark_keys_modified()

        return DownloadResult(downloaded, errors)

    def _upload(self, password: str) -> int:
        profile = self._require_shared()
        if not self.tracker.has_pending():
            return 0
        if not profile.salt:
            raise NotSharedError("Profile missing encryption salt")

        with self.store.lock:
            sent = self.tracker.snapshot()
            diffs = self.store.get_diffs(self.profile_id)
            stars = self.store.get_stars(self.profile_id)
            diffs_hash = compute_content_hash(d.hash_payload() for d in diffs)
            stars_hash = compute_content_hash(s.hash_payload() for s in stars)

            body: Dict[str, Any] = {
                "password_hash": self._transport_hash(profile, password),
                "diffs": encrypt_diffs(diffs, sent.modified_diffs, password, profile.salt),
                "stars": encrypt_stars(stars, sent.modified_stars, password, profile.salt),
                "deleted_diff_ids": sorted(sent.deleted_diffs),
                "deleted_star_ids": sorted(sent.deleted_stars),
                "diffs_hash": diffs_hash,
                "stars_hash": stars_hash,
            }
            if sent.profile_modified:
                body["profile_metadata"] = build_profile_metadata(profile)
            if sent.keys_modified:
                body["encrypted_api_key"] = encrypt_keys_blob(profile, password, profile.salt)
                body["keys_hash"] = compute_keys_hash(profile.api_keys, profile.provider_selections)

        result = self.api.sync(self.profile_id, body)

        with self.store.lock:
            self.tracker.discard(sent)
            profile.diffs_hash = result.get("diffs_hash") or diffs_hash
            profile.stars_hash = result.get("stars_hash") or stars_hash
            if result.get("keys_hash"):
                profile.keys_hash = result["keys_hash"]
            profile.synced_at = utcnow()
            self.store.save_profile(profile)

        return (
            len(sent.modified_diffs)
            + len(sent.modified_stars)
            + len(sent.deleted_diffs)
            + len(sent.deleted_stars)
            + int(sent.profile_modified)
            + int(sent.keys_modified)
        )

    # Public operations

    def download(self, password: Optional[str] = None) -> DownloadResult:
        password = self._resolve_password(password)
        with self._syncing():
            try:
                result = self._download(password)
            except Exception as e:
                self._handle_error(e)
                raise
        self.last_error = None
        self.set_password(password)
        return result

    def upload(self, password: Optional[str] = None) -> int:
        password = self._resolve_password(password)
        with self._syncing():
            try:
                uploaded = self._upload(password)
            except Exception as e:
                self._handle_error(e)
                raise
        self.last_error = None
        self.set_password(password)
        return uploaded

    def sync(self, password: Optional[str] = None) -> SyncResult:
        """
        Full sync: download first so the upload never overwrites a newer
        server state unseen, then upload whatever is still pending.
        """
        password = self._resolve_password(password)
        with self._syncing():
            try:
                downloaded = self._download(password)
                uploaded = self._upload(password)
            except Exception as e:
                self._handle_error(e)
                raise
        self.last_error = None
        self.set_password(password)
        return SyncResult(uploaded, downloaded.downloaded, classify(uploaded, downloaded.downloaded))

    def share(self, password: str, remember: bool = False) -> str:
        """
        Register this profile on the server and push all of its content.

        A failed content upload is reported through ``last_error``; the profile
        stays shared and the items stay pending for the next sync.
        """
        profile = self._require_profile()
        with self._syncing():
            salt = generate_salt()
            transport_hash = hash_password_for_transport(password, profile.password_salt)
            keys_hash = compute_keys_hash(profile.api_keys, profile.provider_selections)
            try:
                self.api.create_profile({
                    "id": profile.id,
                    **build_profile_metadata(profile),
                    "password_hash": transport_hash,
                    "encrypted_api_key": encrypt_keys_blob(profile, password, salt),
                    "salt": salt,
                    "keys_hash": keys_hash,
                })
            except Exception as e:
                self._handle_error(e)
                raise

            with self.store.lock:
                profile.salt = salt
                profile.password_salt = transport_salt_of(transport_hash)
                profile.keys_hash = keys_hash
                profile.synced_at = utcnow()
                self.store.save_profile(profile)
                diffs = self.store.get_diffs(self.profile_id)
                stars = self.store.get_stars(self.profile_id)
                if diffs or stars:
                    self.tracker.mark_all_modified([d.id for d in diffs], [s.id for s in stars])
            self.set_password(password, remember=remember)

            if diffs or stars:
                try:
                    self._upload(password)
                    self.last_error = None
                except SyncError as e:
                    self._handle_error(e)
        logger.info("Shared profile %s", self.profile_id)
        return self.profile_id

    def change_password(self, old_password: str, new_password: str) -> None:
        """
        Re-encrypt everything under the new password and replace the server copy.

        Raises:
            AuthInvalidError: Old password rejected
            SyncInProgressError: Another sync holds the guard
        """
        profile = self._require_shared()
        with self._syncing():
            new_salt = generate_salt()
            new_transport_hash = hash_password_for_transport(new_password)
            with self.store.lock:
                sent = self.tracker.snapshot()
                diffs = self.store.get_diffs(self.profile_id)
                stars = self.store.get_stars(self.profile_id)
                diffs_hash = compute_content_hash(d.hash_payload() for d in diffs)
                stars_hash = compute_content_hash(s.hash_payload() for s in stars)
                keys_hash = compute_keys_hash(profile.api_keys, profile.provider_selections)

            try:
                self.api.change_password(self.profile_id, {
                    "old_password_hash": self._transport_hash(profile, old_password),
                    "new_password_hash": new_transport_hash,
                    "new_encrypted_api_key": encrypt_keys_blob(profile, new_password, new_salt),
                    "new_salt": new_salt,
                    "new_keys_hash": keys_hash,
                    "diffs": encrypt_diffs(diffs, None, new_password, new_salt),
                    "stars": encrypt_stars(stars, None, new_password, new_salt),
                    "diffs_hash": diffs_hash,
                    "stars_hash": stars_hash,
                })
            except Exception as e:
                self._handle_error(e)
                raise

            # The full replace covers everything pending when it was built
            with self.store.lock:
                profile.salt = new_salt
                profile.password_salt = transport_salt_of(new_transport_hash)
                profile.diffs_hash = diffs_hash
                profile.stars_hash = stars_hash
                profile.keys_hash = keys_hash
                profile.synced_at = utcnow()
                self.store.save_profile(profile)
                self.tracker.discard(sent)

            remembered = self.store.get_remembered_password(self.profile_id) is not None
            self.set_password(new_password, remember=remembered)
            self.last_error = None
        logger.info("Password changed for profile %s", self.profile_id)

    def delete_remote(self, password: Optional[str] = None) -> None:
        """Delete the server copy; the local profile returns to local-only."""
        password = self._resolve_password(password)
        profile = self._require_shared()
        with self._syncing():
            try:
                self.api.delete_profile(self.profile_id, self._transport_hash(profile, password))
            except Exception as e:
                self._handle_error(e)
                raise
            self._mark_local_only(profile)

    def _mark_local_only(self, profile: LocalProfile) -> None:
        with self.store.lock:
            profile.synced_at = None
            profile.diffs_hash = None
            profile.stars_hash = None
            profile.keys_hash = None
            self.store.save_profile(profile)
            self.tracker.clear()
        self.clear_password(forget=True)

    # Status / polling

    def check_status(self) -> Optional[StatusReport]:
        """
        Compare cached hashes with the server's, and run a full sync when they
        differ or local edits are pending and a password is cached.

        Returns None for profiles that were never shared.
        """
        profile = self.profile
        if profile is None or not profile.is_shared:
            return None

        try:
            data = self.api.get_status(self.profile_id, profile.diffs_hash, profile.stars_hash)
        except ProfileNotFoundError:
            logger.info("Server copy of profile %s is gone, reverting to local-only", self.profile_id)
            self._mark_local_only(profile)
            self.last_status = StatusReport(exists=False)
            return self.last_status

        report = StatusReport(
            exists=True,
            needs_sync=bool(data.get("needs_sync")) or self.tracker.has_pending(),
            diffs_sync_needed=bool(data.get("diffs_sync_needed")),
            stars_sync_needed=bool(data.get("stars_sync_needed")),
            server_diffs_hash=data.get("server_diffs_hash"),
            server_stars_hash=data.get("server_stars_hash"),
            server_updated_at=data.get("server_updated_at"),
        )
        self.last_status = report

        if report.needs_sync and self._password and not self.is_syncing:
            try:
                self.sync()
            except SyncError:
                pass  # reported via last_error
        return report

    def sync_if_stale(self, now: Optional[datetime] = None) -> bool:
        """Visibility hook: re-sync only with a cached password and a sync older than an hour."""
        profile = self.profile
        if not self._password or profile is None or not profile.is_shared:
            return False
        now = as_naive_utc(now) if now else utcnow()
        if now - as_naive_utc(profile.synced_at) <= STALE_AFTER:
            return False
        return self.auto_sync()

    # Auto-sync

    def schedule_auto_sync(self) -> None:
        self.cancel_auto_sync()
        timer = self.timer_factory(self.auto_sync_delay, self.auto_sync)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def cancel_auto_sync(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def auto_sync(self) -> bool:
        """
        Background sync, run on the timer thread. Never raises; failures land
        in ``last_error``.

        Returns:
            True when a sync ran to completion
        """
        profile = self.profile
        password = self._password
        if not password or profile is None or not profile.is_shared:
            return False

        try:
            with self._syncing():
                self._download(password)
                if self.tracker.has_pending():
                    self._upload(password)
        except SyncInProgressError:
            return False
        except Exception as e:
            self._handle_error(e)
            return False
        self.last_error = None
        return True

    @classmethod
    def import_profile(
        cls,
        store: LocalStore,
        api: SyncApiClient,
        profile_id: str,
        password: str,
        remember: bool = False,
        **kwargs: Any,
    ) -> "SyncSession":
        """
        Pull a shared profile onto this device.

        Raises:
            NotSharedError: Server has no transport salt for the profile
            AuthInvalidError: Wrong password
            DecryptionError: Key blob does not decrypt under this password
        """
        share = api.get_share(profile_id)
        password_salt = share.get("password_salt")
        if not password_salt:
            raise NotSharedError("Profile is missing password data")

        data = api.get_profile(profile_id, hash_password_for_transport(password, password_salt))
        api_keys, provider_selections = decrypt_keys_blob(data["encrypted_api_key"], password, data["salt"])

        profile = LocalProfile(
            id=data["id"],
            name=data["name"],
            languages=data.get("languages") or [],
            frameworks=data.get("frameworks") or [],
            tools=data.get("tools") or [],
            topics=data.get("topics") or [],
            depth=data.get("depth") or 'standard',
            custom_focus=data.get("custom_focus"),
            api_keys=api_keys,
            provider_selections=provider_selections,
            salt=data["salt"],
            password_salt=password_salt,
            synced_at=utcnow(),
        )
        store.save_profile(profile)
        store.set_diffs(profile_id, [])
        store.set_stars(profile_id, [])
        store.set_pending(profile_id, PendingChanges())

        session = cls(store, api, profile_id, **kwargs)
        session.set_password(password, remember=remember)
        try:
            session.download()
        except SyncError as e:
            logger.warning("Content download after import failed for %s: %s", profile_id, e)
        return session
