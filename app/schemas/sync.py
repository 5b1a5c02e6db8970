"""
Sync Schemas

Pydantic models for encrypted content transmission between client and server.
Diff and star payloads are opaque strings: base64 AES-GCM ciphertext, or
plaintext JSON for diffs the owner explicitly made public.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from .profile import ProfileMetadata, ProfileMetadataUpdate


class EncryptedItem(BaseModel):
    """One stored blob addressed by its client-generated id"""
    id: str = Field(..., description="Diff id, or '<diff_id>:<p_index>' for stars")
    encrypted_data: str = Field(..., description="Base64 ciphertext, or plaintext JSON for public diffs")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "550e8400-e29b-41d4-a716-446655440000",
            "encrypted_data": "q83vEjRWeJAS...base64..."
        }
    })


class ContentRequest(BaseModel):
    """Authenticated download; hashes let the server skip unchanged collections"""
    password_hash: Optional[str] = None
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None
    keys_hash: Optional[str] = None


class ContentResponse(BaseModel):
    diffs: List[EncryptedItem] = Field(default_factory=list)
    stars: List[EncryptedItem] = Field(default_factory=list)
    diffs_skipped: bool = False
    stars_skipped: bool = False
    encrypted_api_key: Optional[str] = None
    keys_skipped: bool = False
    salt: str
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None
    keys_hash: Optional[str] = None
    profile_metadata: ProfileMetadata


class SyncRequest(BaseModel):
    """Atomic upload batch, pre-encrypted and pre-hashed client-side"""
    password_hash: Optional[str] = None
    diffs: List[EncryptedItem] = Field(default_factory=list)
    stars: List[EncryptedItem] = Field(default_factory=list)
    deleted_diff_ids: List[str] = Field(default_factory=list)
    deleted_star_ids: List[str] = Field(default_factory=list)
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None
    encrypted_api_key: Optional[str] = None
    keys_hash: Optional[str] = None
    profile_metadata: Optional[ProfileMetadataUpdate] = None


class SyncCounts(BaseModel):
    diffs: int = 0
    stars: int = 0
    deleted_diffs: int = 0
    deleted_stars: int = 0


class SyncResponse(BaseModel):
    success: bool = True
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None
    keys_hash: Optional[str] = None
    synced: SyncCounts


class PasswordUpdateRequest(BaseModel):
    """Full replace: every blob re-encrypted under the new password-derived key"""
    old_password_hash: Optional[str] = None
    new_password_hash: Optional[str] = None
    new_encrypted_api_key: Optional[str] = None
    new_salt: Optional[str] = None
    new_keys_hash: Optional[str] = None
    diffs: List[EncryptedItem] = Field(default_factory=list)
    stars: List[EncryptedItem] = Field(default_factory=list)
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None


class StatusResponse(BaseModel):
    exists: bool = True
    needs_sync: bool
    diffs_sync_needed: bool
    stars_sync_needed: bool
    server_diffs_hash: Optional[str] = None
    server_stars_hash: Optional[str] = None
    server_updated_at: Optional[str] = None


class PublicDiffResponse(BaseModel):
    id: str
    content: str
    title: Optional[str] = None
    generated_at: Optional[str] = None
    profile_name: str
