from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionvault.logging import get_logger
from sessionvault.storage.errors import (
    DuplicateFingerprint,
    ForeignKeyViolation,
    RecordExpired,
    RecordNotFound,
    StoreUnavailable,
    UniqueConstraintViolation,
)
from sessionvault.storage.models import (
    AuthProvider,
    Identity,
    RefreshTokenRecord,
    utcnow,
)

REQUIRED_TABLES = ("app_user", "refresh_token")


class PostgresStore:
    """Postgres-backed user directory and refresh token ledger."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; commits on success, rolls back on error."""

        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("database pool exhausted") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the tables this store writes to exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ----------------------------------------------------

    @staticmethod
    def _identity_from_row(row: dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            federated_subject_id=row.get("federated_subject_id"),
            auth_provider=AuthProvider(row.get("auth_provider") or AuthProvider.LOCAL.value),
            avatar_url=row.get("avatar_url"),
            last_login_at=row.get("last_login_at") or utcnow(),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _record_from_row(row: dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_fingerprint=row["token_fingerprint"],
            expires_at=row["expires_at"],
            device=row.get("device") or "Unknown Device",
            revoked=bool(row.get("revoked")),
            created_at=row.get("created_at") or utcnow(),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, name, password_hash, federated_subject_id,
                        auth_provider, avatar_url
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        name,
                        password_hash,
                        federated_subject_id,
                        auth_provider.value,
                        avatar_url,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise UniqueConstraintViolation("email already exists", {"field": "email"})
        return self._identity_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._identity_from_row(row) if row else None

    def update_federation_link(
        self, user_id: str, subject_id: str, provider: AuthProvider
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET federated_subject_id = %s, auth_provider = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (subject_id, provider.value, user_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def touch_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        at = at or utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET last_login_at = %s, updated_at = %s WHERE id = %s",
                (at, at, user_id),
            )
            updated = cur.rowcount
        if not updated:
            raise ForeignKeyViolation("user does not exist", {"user_id": user_id})

    # -- refresh token ledger -------------------------------------------

    def store_refresh_token(
        self, user_id: str, fingerprint: str, device: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(user_id, fingerprint, device, expires_at)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token_fingerprint, device, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (record.id, user_id, fingerprint, device, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateFingerprint(
                "refresh token already recorded", {"field": "token_fingerprint"}
            )
        except errors.ForeignKeyViolation:
            raise ForeignKeyViolation("refresh token user missing", {"user_id": user_id})
        return self._record_from_row(row) if row else record

    def consume_refresh_token(
        self, fingerprint: str, now: Optional[datetime] = None
    ) -> RefreshTokenRecord:
        # Single statement: of two concurrent consumers only one gets the row
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE token_fingerprint = %s AND revoked = FALSE
                RETURNING *
                """,
                (fingerprint,),
            ).fetchone()
        if not row:
            raise RecordNotFound("no usable refresh token", {"token_fingerprint": fingerprint})
        record = self._record_from_row(row)
        if record.is_expired(now):
            raise RecordExpired("refresh token expired", {"user_id": record.user_id})
        return record

    def revoke_refresh_token(self, fingerprint: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE token_fingerprint = %s", (fingerprint,)
            )
            return bool(cur.rowcount)

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return cur.rowcount or 0

    def purge_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE revoked = TRUE OR expires_at <= %s",
                (now or utcnow(),),
            )
            return cur.rowcount or 0

    def count_purgeable_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_token WHERE revoked = TRUE OR expires_at <= %s",
                (now or utcnow(),),
            ).fetchone()
        return int(row["n"]) if row else 0

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._record_from_row(row) for row in rows]
