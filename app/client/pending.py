"""
Change Tracker

Pure local bookkeeping of what must still be sent to the server. No network.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable, Optional

from .models import PendingChanges

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    DIFF = "diff"
    STAR = "star"


class ChangeAction(str, Enum):
    MODIFIED = "modified"
    DELETED = "deleted"


def track_change(pending: PendingChanges, kind: ChangeKind, action: ChangeAction, item_id: str) -> PendingChanges:
    """
    Record one edit. The most recent action for an id wins: a modify after a
    delete un-deletes, a delete after a modify drops the pending upload.
    """
    if kind == ChangeKind.DIFF:
        modified, deleted = pending.modified_diffs, pending.deleted_diffs
    else:
        modified, deleted = pending.modified_stars, pending.deleted_stars

    if action == ChangeAction.MODIFIED:
        deleted.discard(item_id)
        modified.add(item_id)
    else:
        modified.discard(item_id)
        deleted.add(item_id)
    return pending


def has_pending(pending: Optional[PendingChanges]) -> bool:
    return pending is not None and not pending.is_empty()


class ChangeTracker:
    """
    Pending set for one profile, persisted through the local store.

    Every method is a no-op for profiles that have never been shared. The
    pending set is edited in place under the store lock.
    """

    def __init__(self, store, profile_id: str, on_change: Optional[Callable[[], None]] = None):
        self.store = store
        self.profile_id = profile_id
        self.on_change = on_change

    @property
    def pending(self) -> PendingChanges:
        return self.store.get_pending(self.profile_id)

    def is_tracking(self) -> bool:
        profile = self.store.get_profile(self.profile_id)
        return profile is not None and profile.is_shared

    def _commit(self, pending: PendingChanges) -> None:
        self.store.set_pending(self.profile_id, pending)

    def track(self, kind: ChangeKind, action: ChangeAction, item_id: str) -> bool:
        """Returns False when the edit was ignored because the profile is unshared."""
        with self.store.lock:
            if not self.is_tracking():
                return False
            pending = track_change(self.pending, ChangeKind(kind), ChangeAction(action), item_id)
            self._commit(pending)
        if self.on_change:
            self.on_change()
        return True

    def track_modified_diff(self, diff_id: str) -> bool:
        return self.track(ChangeKind.DIFF, ChangeAction.MODIFIED, diff_id)

    def track_deleted_diff(self, diff_id: str) -> bool:
        return self.track(ChangeKind.DIFF, ChangeAction.DELETED, diff_id)

    def track_modified_star(self, item_id: str) -> bool:
        return self.track(ChangeKind.STAR, ChangeAction.MODIFIED, item_id)

    def track_deleted_star(self, item_id: str) -> bool:
        return self.track(ChangeKind.STAR, ChangeAction.DELETED, item_id)

    def _mark(self, flag: str) -> bool:
        with self.store.lock:
            if not self.is_tracking():
                return False
            pending = self.pending
            setattr(pending, flag, True)
            self._commit(pending)
        if self.on_change:
            self.on_change()
        return True

    def mark_profile_modified(self) -> bool:
        return self._mark('profile_modified')

    def mark_keys_modified(self) -> bool:
        return self._mark('keys_modified')

    def has_pending(self) -> bool:
        with self.store.lock:
            return has_pending(self.pending)

    def snapshot(self) -> PendingChanges:
        """Independent copy of the current pending set, taken before an upload."""
        with self.store.lock:
            return self.pending.model_copy(deep=True)

    def discard(self, sent: PendingChanges) -> None:
        """
        Remove exactly what an upload sent. Edits made while it was in flight
        stay pending.
        """
        with self.store.lock:
            pending = self.pending
            pending.modified_diffs -= sent.modified_diffs
            pending.deleted_diffs -= sent.deleted_diffs
            pending.modified_stars -= sent.modified_stars
            pending.deleted_stars -= sent.deleted_stars
            pending.profile_modified = pending.profile_modified and not sent.profile_modified
            pending.keys_modified = pending.keys_modified and not sent.keys_modified
            self._commit(pending)

    def mark_all_modified(self, diff_ids: Iterable[str], star_ids: Iterable[str]) -> None:
        """Force every listed item into the next upload; pending deletes are kept."""
        with self.store.lock:
            pending = self.pending
            for diff_id in diff_ids:
                track_change(pending, ChangeKind.DIFF, ChangeAction.MODIFIED, diff_id)
            for item_id in star_ids:
                track_change(pending, ChangeKind.STAR, ChangeAction.MODIFIED, item_id)
            self._commit(pending)

    def clear(self) -> None:
        self._commit(PendingChanges())
