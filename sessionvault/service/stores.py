"""Interfaces the session core expects from its storage collaborators.

Both :class:`~sessionvault.storage.memory.MemoryStore` and
:class:`~sessionvault.storage.postgres.PostgresStore` satisfy these protocols.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from sessionvault.storage.models import AuthProvider, Identity, RefreshTokenRecord


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        auth_provider: AuthProvider = AuthProvider.LOCAL,
        federated_subject_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Identity: ...

    def get_user_by_email(self, email: str) -> Optional[Identity]: ...

    def get_user(self, user_id: str) -> Optional[Identity]: ...

    def update_federation_link(
        self, user_id: str, subject_id: str, provider: AuthProvider
    ) -> Optional[Identity]: ...

    def touch_last_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...


class RefreshTokenLedger(Protocol):
    def store_refresh_token(
        self, user_id: str, fingerprint: str, device: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def consume_refresh_token(
        self, fingerprint: str, now: Optional[datetime] = None
    ) -> RefreshTokenRecord: ...

    def revoke_refresh_token(self, fingerprint: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def purge_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def count_purgeable_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...


class SessionStore(UserDirectory, RefreshTokenLedger, Protocol):
    """A single backend serving both the directory and the ledger."""

    def close(self) -> None: ...
