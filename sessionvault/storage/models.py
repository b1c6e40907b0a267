from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthProvider(str, Enum):
    """How an identity last established its login path."""

    LOCAL = "local"
    GOOGLE = "google"


@dataclass
class Identity:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    federated_subject_id: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.LOCAL
    avatar_url: Optional[str] = None
    last_login_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass(frozen=True)
class PublicIdentity:
    """Identity view safe to hand to callers; carries no credential material."""

    id: str
    email: str
    name: str
    auth_provider: AuthProvider
    federated: bool
    avatar_url: Optional[str]
    last_login_at: datetime
    created_at: datetime


def to_public_identity(identity: Identity) -> PublicIdentity:
    return PublicIdentity(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        auth_provider=identity.auth_provider,
        federated=bool(identity.federated_subject_id),
        avatar_url=identity.avatar_url,
        last_login_at=identity.last_login_at,
        created_at=identity.created_at,
    )


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_fingerprint: str
    expires_at: datetime
    device: str = "Unknown Device"
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_fingerprint: str,
        device: str,
        expires_at: datetime,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_fingerprint=token_fingerprint,
            device=device,
            expires_at=expires_at,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str

    def as_dict(self) -> dict[str, str]:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}


@dataclass(frozen=True)
class FederatedClaims:
    subject: str
    email: str
    email_verified: bool = False
    name: Optional[str] = None
    picture: Optional[str] = None
    issuer: Optional[str] = None
    audience: Optional[str] = None
