from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sessionvault.logging import get_logger
from sessionvault.storage.errors import (
    DuplicateFingerprint,
    ForeignKeyViolation,
    RecordExpired,
    RecordNotFound,
    UniqueConstraintViolation,
)
from sessionvault.storage.models import (
    AuthProvider,
    Identity,
    RefreshTokenRecord,
    utcnow,
)


class MemoryStore:
    """In-process user directory and refresh token ledger.

    Used by the test-suite and for ``USE_MEMORY_STORE=true`` deployments.
    Nothing is persisted across restarts.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Identity] = {}
        # keyed by token fingerprint
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock for all data operations; consume is find-and-delete under one hold
        self._data_lock = threading.RLock()

    # -- user directory -------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        auth_provider: AuthProvider = AuthProvider.LOCAL,
        federated_subject_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Identity:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise UniqueConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = Identity(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                password_hash=password_hash,
                federated_subject_id=federated_subject_id,
                auth_provider=auth_provider,
                avatar_url=avatar_url,
                last_login_at=now,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_federation_link(
        self, user_id: str, subject_id: str, provider: AuthProvider
    ) -> Optional[Identity]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.federated_subject_id = subject_id
            user.auth_provider = provider
            user.updated_at = utcnow()
            return user

    def touch_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ForeignKeyViolation("user does not exist", {"user_id": user_id})
            user.last_login_at = at or utcnow()
            user.updated_at = user.last_login_at

    # -- refresh token ledger -------------------------------------------

    def store_refresh_token(
        self, user_id: str, fingerprint: str, device: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ForeignKeyViolation("user does not exist", {"user_id": user_id})
            if fingerprint in self.refresh_tokens:
                raise DuplicateFingerprint(
                    "refresh token already recorded", {"field": "token_fingerprint"}
                )
            record = RefreshTokenRecord.new(user_id, fingerprint, device, expires_at)
            self.refresh_tokens[fingerprint] = record
            return record

    def consume_refresh_token(
        self, fingerprint: str, now: Optional[datetime] = None
    ) -> RefreshTokenRecord:
        with self._data_lock:
            record = self.refresh_tokens.get(fingerprint)
            if record is None or record.revoked:
                raise RecordNotFound("no usable refresh token", {"token_fingerprint": fingerprint})
            del self.refresh_tokens[fingerprint]
        if record.is_expired(now):
            raise RecordExpired("refresh token expired", {"user_id": record.user_id})
        return record

    def revoke_refresh_token(self, fingerprint: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(fingerprint, None) is not None

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            return revoked

    def purge_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            stale = [
                fp
                for fp, record in self.refresh_tokens.items()
                if not record.is_usable(now)
            ]
            for fp in stale:
                del self.refresh_tokens[fp]
            return len(stale)

    def count_purgeable_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            return sum(
                1
                for record in self.refresh_tokens.values()
                if not record.is_usable(now)
            )

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [r for r in self.refresh_tokens.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at)

    def close(self) -> None:
        return None
