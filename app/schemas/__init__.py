from .profile import (
    ProfileMetadata,
    ProfileMetadataUpdate,
    ProfileCreate,
    ProfileCreateResponse,
    ProfileUpdate,
    ProfileResponse,
    ShareResponse,
    SuccessResponse
)
from .sync import (
    EncryptedItem,
    ContentRequest,
    ContentResponse,
    SyncRequest,
    SyncCounts,
    SyncResponse,
    PasswordUpdateRequest,
    StatusResponse,
    PublicDiffResponse
)

__all__ = [
    'ProfileMetadata',
    'ProfileMetadataUpdate',
    'ProfileCreate',
    'ProfileCreateResponse',
    'ProfileUpdate',
    'ProfileResponse',
    'ShareResponse',
    'SuccessResponse',
    'EncryptedItem',
    'ContentRequest',
    'ContentResponse',
    'SyncRequest',
    'SyncCounts',
    'SyncResponse',
    'PasswordUpdateRequest',
    'StatusResponse',
    'PublicDiffResponse',
]
