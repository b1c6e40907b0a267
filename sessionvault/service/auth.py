from __future__ import annotations

import contextlib
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional
from urllib.parse import quote

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.credentials import GoogleIdTokenVerifier, PasswordVerifier
from sessionvault.service.errors import (
    AlreadyExists,
    AuthenticationError,
    IdentityNotFound,
    InternalAuthError,
    InvalidCredentials,
    RefreshExpired,
    RefreshReuseOrInvalid,
    ServiceError,
    SessionPersistFailed,
    WrongAuthMethod,
)
from sessionvault.service.federation import FederationLinker, normalize_email
from sessionvault.service.stores import RefreshTokenLedger, UserDirectory
from sessionvault.service.tokens import InvalidSignature, TokenCodec, TokenExpired
from sessionvault.storage.errors import (
    RecordExpired,
    RecordNotFound,
    StorageError,
    UniqueConstraintViolation,
)
from sessionvault.storage.models import AuthProvider, Identity, TokenPair

logger = get_logger(__name__)

MAX_DEVICE_LABEL_LENGTH = 255


class SessionStage(str, Enum):
    INIT = "init"
    CREDENTIAL_CHECK = "credential_check"
    TOKEN_ISSUANCE = "token_issuance"
    LEDGER_PERSIST = "ledger_persist"
    COMPLETE = "complete"
    FAILED = "failed"


class SessionAttempt:
    """Tracks how far a session-establishing call got."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.stage = SessionStage.INIT
        self.failed_at: Optional[SessionStage] = None
        self.user_id: Optional[str] = None

    def advance(self, stage: SessionStage) -> None:
        self.stage = stage

    def fail(self) -> None:
        self.failed_at = self.stage
        self.stage = SessionStage.FAILED


def default_avatar_url(name: str) -> str:
    return (
        "https://ui-avatars.com/api/?name="
        f"{quote(name, safe='')}&background=random&color=fff&size=128"
    )


class SessionManager:
    """Login, registration, federated login, refresh rotation and logout.

    Every successful call yields a fresh access/refresh token pair whose
    refresh half is recorded in the ledger. A refresh token is consumed
    atomically on use, so replaying one fails regardless of interleaving.
    """

    def __init__(
        self,
        settings: Settings,
        directory: UserDirectory,
        ledger: RefreshTokenLedger,
        codec: TokenCodec,
        passwords: PasswordVerifier,
        google: GoogleIdTokenVerifier,
        *,
        linker: Optional[FederationLinker] = None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.ledger = ledger
        self.codec = codec
        self.passwords = passwords
        self.google = google
        self.linker = linker or FederationLinker(directory)
        self.logger = logger

    def _now(self) -> datetime:
        return self.codec.now()

    @contextlib.contextmanager
    def _attempt(self, operation: str) -> Iterator[SessionAttempt]:
        attempt = SessionAttempt(operation)
        try:
            yield attempt
        except ServiceError as exc:
            attempt.fail()
            log = self.logger.error if exc.status_code >= 500 else self.logger.info
            log(
                "session_attempt_failed",
                operation=operation,
                stage=attempt.failed_at.value,
                error_code=exc.error_code,
                user_id=attempt.user_id,
            )
            raise
        except Exception as exc:
            attempt.fail()
            self.logger.error(
                "session_attempt_failed",
                operation=operation,
                stage=attempt.failed_at.value,
                error=type(exc).__name__,
                user_id=attempt.user_id,
            )
            raise
        attempt.advance(SessionStage.COMPLETE)
        self.logger.info(
            "session_established", operation=operation, user_id=attempt.user_id
        )

    def _device_label(self, device: Optional[str]) -> str:
        label = (device or "").strip()
        return label[:MAX_DEVICE_LABEL_LENGTH] or self.settings.default_device_label

    async def register(
        self, email: str, name: str, password: str, device: Optional[str] = None
    ) -> TokenPair:
        email = normalize_email(email)
        with self._attempt("register") as attempt:
            attempt.advance(SessionStage.CREDENTIAL_CHECK)
            if self.directory.get_user_by_email(email):
                raise AlreadyExists("an account with this email already exists")
            password_hash = await self.passwords.hash_password(password)
            try:
                identity = self.directory.create_user(
                    email,
                    name,
                    password_hash=password_hash,
                    auth_provider=AuthProvider.LOCAL,
                    avatar_url=default_avatar_url(name),
                )
            except UniqueConstraintViolation:
                raise AlreadyExists("an account with this email already exists") from None
            attempt.user_id = identity.id
            self.logger.info("user_registered", user_id=identity.id)
            return self._establish(attempt, identity, device)

    async def login(
        self, email: str, password: str, device: Optional[str] = None
    ) -> TokenPair:
        email = normalize_email(email)
        with self._attempt("login") as attempt:
            attempt.advance(SessionStage.CREDENTIAL_CHECK)
            identity = self.directory.get_user_by_email(email)
            if identity is None:
                raise IdentityNotFound("no account is registered with this email")
            attempt.user_id = identity.id
            if not identity.has_password:
                raise WrongAuthMethod("this account signs in with Google")
            if not await self.passwords.verify_password(identity, password):
                raise InvalidCredentials("invalid email or password")
            return self._establish(attempt, identity, device)

    async def login_with_federated_token(
        self, raw_id_token: str, device: Optional[str] = None
    ) -> TokenPair:
        with self._attempt("federated_login") as attempt:
            attempt.advance(SessionStage.CREDENTIAL_CHECK)
            claims = await self.google.verify(raw_id_token, self.settings.google_client_id)
            identity = self.linker.resolve_or_create(claims)
            attempt.user_id = identity.id
            return self._establish(attempt, identity, device)

    async def refresh(self, refresh_token: str) -> TokenPair:
        with self._attempt("refresh") as attempt:
            attempt.advance(SessionStage.CREDENTIAL_CHECK)
            fingerprint = self.codec.fingerprint(refresh_token)
            try:
                claims = self.codec.verify_refresh_token(refresh_token)
            except InvalidSignature:
                raise RefreshReuseOrInvalid("refresh token is invalid") from None
            except TokenExpired as exc:
                attempt.user_id = exc.claims.get("sub")
                self._discard_expired(fingerprint)
                raise RefreshExpired("refresh token has expired") from None

            attempt.user_id = claims["sub"]
            try:
                record = self.ledger.consume_refresh_token(fingerprint, self._now())
            except RecordNotFound:
                self._on_reuse(claims)
                raise RefreshReuseOrInvalid("refresh token is invalid") from None
            except RecordExpired:
                raise RefreshExpired("refresh token has expired") from None

            identity = self.directory.get_user(record.user_id)
            if identity is None or record.user_id != claims["sub"]:
                self.logger.error(
                    "refresh_record_user_mismatch",
                    record_user_id=record.user_id,
                    claims_user_id=claims["sub"],
                    user_found=identity is not None,
                )
                raise InternalAuthError("session could not be refreshed")
            return self._establish(attempt, identity, record.device)

    def _discard_expired(self, fingerprint: str) -> None:
        """Consume the ledger row of an expired token so it cannot linger."""

        try:
            self.ledger.consume_refresh_token(fingerprint, self._now())
        except RecordExpired:
            pass
        except RecordNotFound:
            # An expired token whose record is already gone is a replay
            raise RefreshReuseOrInvalid("refresh token is invalid") from None

    def _on_reuse(self, claims: dict[str, Any]) -> None:
        user_id = claims.get("sub")
        self.logger.warning("refresh_token_reuse_detected", user_id=user_id)
        if self.settings.revoke_sessions_on_refresh_reuse and user_id:
            revoked = self.ledger.revoke_user_refresh_tokens(user_id)
            self.logger.warning(
                "refresh_tokens_revoked_after_reuse", user_id=user_id, revoked=revoked
            )

    async def logout(self, refresh_token: str) -> dict:
        try:
            removed = self.ledger.revoke_refresh_token(self.codec.fingerprint(refresh_token))
        except Exception as exc:
            self.logger.warning("logout_revoke_failed", error=str(exc))
            return {}
        self.logger.info("logout", removed=removed)
        return {}

    async def authenticate(self, access_token: str) -> Identity:
        """Resolve a bearer access token to the identity it was issued for."""

        try:
            claims = self.codec.verify_access_token(access_token)
        except (InvalidSignature, TokenExpired):
            raise AuthenticationError("invalid or expired access token") from None
        identity = self.directory.get_user(claims["sub"])
        if identity is None:
            raise AuthenticationError("invalid or expired access token")
        return identity

    def _establish(
        self, attempt: SessionAttempt, identity: Identity, device: Optional[str]
    ) -> TokenPair:
        attempt.advance(SessionStage.TOKEN_ISSUANCE)
        now = self._now()
        pair = TokenPair(
            access_token=self.codec.issue_access_token(identity.id, identity.email),
            refresh_token=self.codec.issue_refresh_token(identity.id, identity.email),
        )
        fingerprint = self.codec.fingerprint(pair.refresh_token)

        attempt.advance(SessionStage.LEDGER_PERSIST)
        try:
            self.ledger.store_refresh_token(
                identity.id,
                fingerprint,
                self._device_label(device),
                now + self.codec.refresh_ttl,
            )
        except StorageError as exc:
            self.logger.error(
                "refresh_token_persist_failed",
                user_id=identity.id,
                error=type(exc).__name__,
            )
            raise SessionPersistFailed("session could not be recorded") from exc
        try:
            self.directory.touch_last_login(identity.id, now)
        except StorageError as exc:
            self.logger.error(
                "last_login_update_failed", user_id=identity.id, error=type(exc).__name__
            )
            self._rollback_refresh_token(identity.id, fingerprint)
            raise SessionPersistFailed("session could not be recorded") from exc
        return pair

    def _rollback_refresh_token(self, user_id: str, fingerprint: str) -> None:
        try:
            self.ledger.revoke_refresh_token(fingerprint)
        except StorageError as exc:
            self.logger.error(
                "refresh_token_rollback_failed", user_id=user_id, error=type(exc).__name__
            )


__all__ = ["SessionManager", "SessionStage", "SessionAttempt", "default_avatar_url"]
