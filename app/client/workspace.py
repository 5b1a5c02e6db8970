"""
Workspace: the set of local profiles and the one active sync session.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from .api_client import SyncApiClient
from .crypto import generate_id
from .errors import SyncError
from .models import LocalProfile
from .session import SyncSession
from .store import LocalStore

logger = logging.getLogger(__name__)


class Workspace:
    def __init__(
        self,
        store: LocalStore,
        api: SyncApiClient,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.store = store
        self.api = api
        self.timer_factory = timer_factory
        self.session: Optional[SyncSession] = None
        # Per-run caches of the content generator, dropped on profile switch
        self.generation_cache: Dict[str, Any] = {}
        self._generating = threading.Event()

        if store.active_profile_id and store.get_profile(store.active_profile_id):
            self.session = self._open_session(store.active_profile_id)

    def _open_session(self, profile_id: str) -> SyncSession:
        session = SyncSession(self.store, self.api, profile_id, timer_factory=self.timer_factory)
        session.restore_password()
        return session

    @property
    def profiles(self) -> List[LocalProfile]:
        return self.store.list_profiles()

    @property
    def active_profile(self) -> Optional[LocalProfile]:
        if not self.store.active_profile_id:
            return None
        return self.store.get_profile(self.store.active_profile_id)

    def create_profile(self, name: str, **fields: Any) -> LocalProfile:
        """Create a local-only profile; it becomes active if none is."""
        profile = LocalProfile(id=fields.pop('id', None) or generate_id(), name=name, **fields)
        self.store.save_profile(profile)
        if self.session is None:
            self.store.active_profile_id = profile.id
            self.session = self._open_session(profile.id)
        return profile

    # Generation guard

    def is_generating(self) -> bool:
        return self._generating.is_set()

    @contextmanager
    def generating(self):
        """Held while a diff is being produced; profile switches are refused meanwhile."""
        self._generating.set()
        try:
            yield
        finally:
            self._generating.clear()

    # Switching

    def switch_profile_with_sync(self, profile_id: str) -> bool:
        """
        Make another profile active and check it against the server.

        Returns:
            False if the profile is unknown or a generation is in flight
        """
        if self.store.get_profile(profile_id) is None:
            return False
        if self.is_generating():
            return False

        self.generation_cache.clear()
        if self.session is not None:
            self.session.close()

        self.store.active_profile_id = profile_id
        self.session = self._open_session(profile_id)
        try:
            self.session.check_status()
        except SyncError as e:
            logger.warning("Status check after switching to %s failed: %s", profile_id, e)
        return True

    def delete_profile_with_sync(self, profile_id: str) -> None:
        """Remove a profile locally, including its remembered password."""
        if self.session is not None and self.session.profile_id == profile_id:
            self.session.close()
            self.session = None

        self.store.delete_profile(profile_id)

        if self.session is None and self.store.active_profile_id:
            self.session = self._open_session(self.store.active_profile_id)

    def import_profile(self, profile_id: str, password: str, remember: bool = False) -> SyncSession:
        """Import a shared profile and make it active."""
        session = SyncSession.import_profile(
            self.store, self.api, profile_id, password, remember=remember, timer_factory=self.timer_factory
        )
        if self.session is not None:
            self.session.close()
        self.store.active_profile_id = profile_id
        self.session = session
        return session
