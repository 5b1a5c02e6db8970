from __future__ import annotations

from datetime import datetime
from sqlalchemy import String, DateTime, Integer, ForeignKey, JSON, Text, Index
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column

from app.utils.time_utils import utcnow

Base = declarative_base()

PUBLIC_MARKER = "{"


class Profile(Base):
    __tablename__ = 'profiles'

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)

    # Stored password record: legacy transport hash or v2:<serverSalt>:<derivedKey>
    password_hash: Mapped[str] = mapped_column(String)
    # Client-visible transport salt, republished for import
    password_salt: Mapped[str | None] = mapped_column(String)

    # Opaque to the server
    encrypted_api_key: Mapped[str] = mapped_column(Text)
    salt: Mapped[str] = mapped_column(String)
    keys_hash: Mapped[str | None] = mapped_column(String)

    # Plaintext metadata (NOT encrypted - needed without a password)
    languages: Mapped[list | None] = mapped_column(JSON, default=list)
    frameworks: Mapped[list | None] = mapped_column(JSON, default=list)
    tools: Mapped[list | None] = mapped_column(JSON, default=list)
    topics: Mapped[list | None] = mapped_column(JSON, default=list)
    depth: Mapped[str] = mapped_column(String, default='standard')
    custom_focus: Mapped[str | None] = mapped_column(Text)

    # Client-computed rolling content hashes
    diffs_hash: Mapped[str | None] = mapped_column(String)
    stars_hash: Mapped[str | None] = mapped_column(String)
    content_updated_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Rate limiting
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    lockout_until: Mapped[datetime | None] = mapped_column(DateTime)
    last_failed_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships with cascade delete
    diffs: Mapped[list[EncryptedDiff]] = relationship(
        'EncryptedDiff', back_populates='profile', cascade='all, delete-orphan', passive_deletes=True
    )
    stars: Mapped[list[EncryptedStar]] = relationship(
        'EncryptedStar', back_populates='profile', cascade='all, delete-orphan', passive_deletes=True
    )


class EncryptedDiff(Base):
    __tablename__ = 'diffs'

    profile_id: Mapped[str] = mapped_column(String, ForeignKey('profiles.id', ondelete='CASCADE'), primary_key=True)
    id: Mapped[str] = mapped_column(String, primary_key=True)

    # AES-GCM encrypted JSON blob (base64), or plaintext JSON if public
    encrypted_data: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    profile: Mapped[Profile] = relationship('Profile', back_populates='diffs')

    __table_args__ = (
        Index('ix_diffs_id', 'id'),
        Index('ix_diffs_profile_created', 'profile_id', 'created_at'),
    )

    @property
    def is_public(self) -> bool:
        return self.encrypted_data.startswith(PUBLIC_MARKER)


class EncryptedStar(Base):
    __tablename__ = 'stars'

    profile_id: Mapped[str] = mapped_column(String, ForeignKey('profiles.id', ondelete='CASCADE'), primary_key=True)
    # "<diff_id>:<p_index>"
    id: Mapped[str] = mapped_column(String, primary_key=True)

    encrypted_data: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    profile: Mapped[Profile] = relationship('Profile', back_populates='stars')
