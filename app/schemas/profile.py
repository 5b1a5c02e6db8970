from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List


class ProfileMetadata(BaseModel):
    """Plaintext profile metadata (not encrypted, low sensitivity)"""
    name: str
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    depth: str = 'standard'
    custom_focus: Optional[str] = None


class ProfileMetadataUpdate(BaseModel):
    """Partial metadata update.

    Absent fields are left untouched; callers read the update with
    ``model_dump(exclude_unset=True)`` so an explicit ``null`` is distinguishable
    from a field that was never sent.
    """
    name: Optional[str] = None
    languages: Optional[List[str]] = None
    frameworks: Optional[List[str]] = None
    tools: Optional[List[str]] = None
    topics: Optional[List[str]] = None
    depth: Optional[str] = None
    custom_focus: Optional[str] = None


class ProfileCreate(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    password_hash: Optional[str] = None
    encrypted_api_key: Optional[str] = None
    salt: Optional[str] = None
    keys_hash: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    depth: str = 'standard'
    custom_focus: Optional[str] = None


class ProfileCreateResponse(BaseModel):
    id: str
    name: str


class ProfileUpdate(ProfileMetadataUpdate):
    password_hash: Optional[str] = None


class ProfileResponse(ProfileMetadata):
    id: str
    encrypted_api_key: str
    salt: str
    keys_hash: Optional[str] = None
    diffs_hash: Optional[str] = None
    stars_hash: Optional[str] = None
    content_updated_at: Optional[str] = None
    # Only when include_data=true
    encrypted_diffs: Optional[List[str]] = None
    encrypted_stars: Optional[List[str]] = None

    model_config = ConfigDict(from_attributes=True)


class ShareResponse(BaseModel):
    """Public profile card: no secrets, but the transport salt needed to import"""
    id: str
    name: str
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    depth: str = 'standard'
    password_salt: Optional[str] = None


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
