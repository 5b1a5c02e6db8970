"""
Local persistence for profiles, diffs, stars, pending sets and remembered
passwords.

With a path, state is written as JSON under that directory with owner-only
permissions; without one, everything stays in memory.

The store is shared between the caller's thread and the auto-sync timer
thread. ``lock`` is reentrant and guards every read-modify-write, both here
and in the tracker and session code that edits store objects in place.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .models import Diff, LocalProfile, PendingChanges, Star

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
PASSWORDS_FILE = "passwords.json"


class LocalState(BaseModel):
    active_profile_id: Optional[str] = None
    profiles: Dict[str, LocalProfile] = Field(default_factory=dict)
    diffs: Dict[str, List[Diff]] = Field(default_factory=dict)
    stars: Dict[str, List[Star]] = Field(default_factory=dict)
    pending: Dict[str, PendingChanges] = Field(default_factory=dict)


class LocalStore:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self.state = LocalState()
        self.lock = threading.RLock()
        self._passwords: Dict[str, str] = {}
        if self.path:
            self.path.mkdir(parents=True, exist_ok=True)
            self.load()

    @property
    def state_path(self) -> Optional[Path]:
        return self.path / STATE_FILE if self.path else None

    @property
    def passwords_path(self) -> Optional[Path]:
        return self.path / PASSWORDS_FILE if self.path else None

    def load(self) -> None:
        with self.lock:
            if self.state_path and self.state_path.exists():
                self.state = LocalState.model_validate_json(self.state_path.read_text(encoding="utf-8"))
            if self.passwords_path and self.passwords_path.exists():
                self._passwords = json.loads(self.passwords_path.read_text(encoding="utf-8"))

    def _write_private(self, target: Path, text: str) -> None:
        # mkstemp creates the file 0600
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=target.parent, prefix=target.name + ".", suffix=".tmp", delete=False
        ) as f:
            f.write(text)
            tmp = f.name
        try:
            os.replace(tmp, target)
        except OSError:
            os.unlink(tmp)
            raise

    def save(self) -> None:
        if not self.path:
            return
        with self.lock:
            self._write_private(self.state_path, self.state.model_dump_json(indent=2))
            self._write_private(self.passwords_path, json.dumps(self._passwords, indent=2))

    # Profiles

    @property
    def active_profile_id(self) -> Optional[str]:
        return self.state.active_profile_id

    @active_profile_id.setter
    def active_profile_id(self, profile_id: Optional[str]) -> None:
        with self.lock:
            self.state.active_profile_id = profile_id
            self.save()

    def list_profiles(self) -> List[LocalProfile]:
        with self.lock:
            return list(self.state.profiles.values())

    def get_profile(self, profile_id: str) -> Optional[LocalProfile]:
        return self.state.profiles.get(profile_id)

    def save_profile(self, profile: LocalProfile) -> None:
        with self.lock:
            self.state.profiles[profile.id] = profile
            self.save()

    def delete_profile(self, profile_id: str) -> None:
        """Drop a profile and everything held for it locally."""
        with self.lock:
            self.state.profiles.pop(profile_id, None)
            self.state.diffs.pop(profile_id, None)
            self.state.stars.pop(profile_id, None)
            self.state.pending.pop(profile_id, None)
            self._passwords.pop(profile_id, None)
            if self.state.active_profile_id == profile_id:
                remaining = list(self.state.profiles)
                self.state.active_profile_id = remaining[0] if remaining else None
            self.save()

    # Content

    def get_diffs(self, profile_id: str) -> List[Diff]:
        with self.lock:
            return list(self.state.diffs.get(profile_id, []))

    def set_diffs(self, profile_id: str, diffs: List[Diff]) -> None:
        with self.lock:
            self.state.diffs[profile_id] = list(diffs)
            self.save()

    def get_stars(self, profile_id: str) -> List[Star]:
        with self.lock:
            return list(self.state.stars.get(profile_id, []))

    def set_stars(self, profile_id: str, stars: List[Star]) -> None:
        with self.lock:
            self.state.stars[profile_id] = list(stars)
            self.save()

    # Pending sets

    def get_pending(self, profile_id: str) -> PendingChanges:
        with self.lock:
            return self.state.pending.setdefault(profile_id, PendingChanges())

    def set_pending(self, profile_id: str, pending: PendingChanges) -> None:
        with self.lock:
            self.state.pending[profile_id] = pending
            self.save()

    # Remembered passwords (opt-in, kept apart from the main state file)

    def get_remembered_password(self, profile_id: str) -> Optional[str]:
        return self._passwords.get(profile_id)

    def remember_password(self, profile_id: str, password: str) -> None:
        with self.lock:
            self._passwords[profile_id] = password
            self.save()

    def forget_password(self, profile_id: str) -> None:
        with self.lock:
            if self._passwords.pop(profile_id, None) is not None:
                self.save()
