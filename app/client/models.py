from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from ..utils.time_utils import utcnow


def star_id(diff_id: str, p_index: int) -> str:
    """Stars are addressed by what they point at, not by a random id."""
    return f"{diff_id}:{p_index}"


class Diff(BaseModel):
    """A generated digest. Unknown fields produced by the generator are kept."""
    model_config = ConfigDict(extra='allow')

    id: str
    content: str
    generated_at: str
    title: Optional[str] = None
    is_public: bool = False

    def hash_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def wire_payload(self) -> Dict[str, Any]:
        """Body that is encrypted, or stored as plaintext when public."""
        return self.model_dump(exclude_none=True, exclude={'is_public'})


class Star(BaseModel):
    """Bookmark on one paragraph of a diff"""
    model_config = ConfigDict(extra='allow')

    diff_id: str
    p_index: int
    added_at: str

    @property
    def id(self) -> str:
        return star_id(self.diff_id, self.p_index)

    def hash_payload(self) -> Dict[str, Any]:
        return {**self.model_dump(exclude_none=True), 'id': self.id}

    def wire_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class LocalProfile(BaseModel):
    id: str
    name: str
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    depth: str = 'standard'
    custom_focus: Optional[str] = None

    # Decrypted locally, encrypted as one blob for the server
    api_keys: Dict[str, str] = Field(default_factory=dict)
    provider_selections: Dict[str, str] = Field(default_factory=dict)

    # Key-derivation salt for content encryption
    salt: Optional[str] = None
    # Published transport-hash salt
    password_salt: Optional[str] = None

    # None until the profile has been shared
    synced_at: Optional[datetime] = None
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None
    keys_hash: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_shared(self) -> bool:
        return self.synced_at is not None


class PendingChanges(BaseModel):
    """Local edits not yet accepted by the server"""
    modified_diffs: Set[str] = Field(default_factory=set)
    deleted_diffs: Set[str] = Field(default_factory=set)
    modified_stars: Set[str] = Field(default_factory=set)
    deleted_stars: Set[str] = Field(default_factory=set)
    profile_modified: bool = False
    keys_modified: bool = False

    def is_empty(self) -> bool:
        return not (
            self.modified_diffs
            or self.deleted_diffs
            or self.modified_stars
            or self.deleted_stars
            or self.profile_modified
            or self.keys_modified
        )
