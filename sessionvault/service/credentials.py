"""Credential verification: local passwords and Google ID tokens."""

from __future__ import annotations

import asyncio
import re
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

import httpx
import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.service.errors import (
    FederatedClaimsIncomplete,
    FederatedProviderUnavailable,
    InvalidFederatedToken,
)
from sessionvault.storage.models import FederatedClaims, Identity

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"accounts.google.com", "https://accounts.google.com"})
_MAX_AGE_RE = re.compile(r"max-age=(\d+)")


class PasswordVerifier:
    """argon2id hashing with the slow work kept off the event loop."""

    def __init__(
        self, settings: Settings, *, executor: Optional[ThreadPoolExecutor] = None
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost_kib,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.password_hash_workers,
            thread_name_prefix="password-hash",
        )

    def hash_password_sync(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password_sync(self, identity: Identity, candidate: str) -> bool:
        """Return True only if ``candidate`` matches the stored hash.

        A missing or unparseable hash is treated as a mismatch.
        """
        if not identity.password_hash:
            return False
        try:
            return self._hasher.verify(identity.password_hash, candidate)
        except InvalidHashError:
            logger.warning("password_hash_unparseable", user_id=identity.id)
            return False
        except VerificationError:
            return False

    async def hash_password(self, password: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.hash_password_sync, password)

    async def verify_password(self, identity: Identity, candidate: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self.verify_password_sync, identity, candidate
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)


class GoogleIdTokenVerifier:
    """Validates Google-issued ID tokens against Google's published signing keys.

    Keys are cached for the lifetime announced by ``Cache-Control: max-age``,
    capped by ``google_keys_max_cache_seconds``. A token whose ``kid`` is not in
    the cache triggers one early refresh, which covers Google's key rotation.
    Concurrent cache misses share a single fetch.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        monotonic: Callable[[], float] = time.monotonic,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._monotonic = monotonic
        self._retry_backoff = retry_backoff_seconds
        self._keys: dict[str, dict[str, Any]] = {}
        self._keys_expire_at = 0.0
        self._last_fetch_at = float("-inf")
        self._lock = asyncio.Lock()

    async def verify(self, raw_id_token: str, audience: Optional[str]) -> FederatedClaims:
        if not audience:
            logger.error("google_client_id_missing")
            raise FederatedProviderUnavailable("Google sign-in is not configured")
        try:
            header = jwt.get_unverified_header(raw_id_token)
        except jwt.InvalidTokenError as exc:
            raise InvalidFederatedToken(f"malformed ID token: {exc}") from None
        if header.get("alg") != "RS256":
            raise InvalidFederatedToken("unsupported ID token algorithm")

        jwk = await self._signing_key(header.get("kid"))
        if jwk is None:
            logger.warning("google_signing_key_unknown", kid=header.get("kid"))
            raise InvalidFederatedToken("ID token signed with an unknown key")

        try:
            key = jwt.PyJWK(jwk, algorithm="RS256").key
            payload = jwt.decode(
                raw_id_token,
                key,
                algorithms=["RS256"],
                audience=audience,
                leeway=self.settings.clock_skew_leeway_seconds,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except (jwt.InvalidTokenError, jwt.PyJWKError) as exc:
            logger.warning("google_id_token_rejected", reason=type(exc).__name__)
            raise InvalidFederatedToken(f"invalid ID token: {exc}") from None

        if payload.get("iss") not in GOOGLE_ISSUERS:
            logger.warning("google_id_token_rejected", reason="issuer")
            raise InvalidFederatedToken("ID token issuer is not Google")

        email = payload.get("email")
        # Google serialises this claim as a bool, older tokens as a string
        verified = payload.get("email_verified") in (True, "true")
        if not email or not verified:
            raise FederatedClaimsIncomplete("ID token has no verified email")

        aud = payload.get("aud")
        return FederatedClaims(
            subject=str(payload["sub"]),
            email=email,
            email_verified=verified,
            name=payload.get("name"),
            picture=payload.get("picture"),
            issuer=payload.get("iss"),
            audience=aud if isinstance(aud, str) else audience,
        )

    async def _signing_key(self, kid: Optional[str]) -> Optional[dict[str, Any]]:
        if not kid:
            return None
        keys = await self._get_keys()
        if kid in keys:
            return keys[kid]
        keys = await self._get_keys(force=True)
        return keys.get(kid)

    async def _get_keys(self, *, force: bool = False) -> dict[str, dict[str, Any]]:
        requested_at = self._monotonic()
        async with self._lock:
            fresh = bool(self._keys) and self._monotonic() < self._keys_expire_at
            # another waiter may have refreshed while we queued on the lock
            refreshed_meanwhile = self._last_fetch_at > requested_at
            if fresh and (not force or refreshed_meanwhile):
                return self._keys
            keys, max_age = await self._fetch_keys()
            cap = self.settings.google_keys_max_cache_seconds
            ttl = cap if max_age is None else min(max_age, cap)
            self._keys = keys
            self._last_fetch_at = self._monotonic()
            self._keys_expire_at = self._last_fetch_at + ttl
            logger.info("google_signing_keys_refreshed", key_count=len(keys), ttl=ttl)
            return self._keys

    async def _fetch_keys(self) -> tuple[dict[str, dict[str, Any]], Optional[int]]:
        url = self.settings.google_certs_url
        attempts = self.settings.google_keys_fetch_attempts
        last_error: Optional[str] = None
        async with httpx.AsyncClient(
            timeout=self.settings.google_keys_timeout_seconds,
            transport=self._transport,
            follow_redirects=False,
        ) as client:
            for attempt in range(1, attempts + 1):
                try:
                    response = await client.get(url, headers={"Accept": "application/json"})
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    last_error = f"status {exc.response.status_code}"
                    if exc.response.status_code < 500:
                        break
                except httpx.TransportError as exc:
                    last_error = type(exc).__name__
                else:
                    return self._parse_keys(response)
                logger.warning(
                    "google_keys_fetch_failed",
                    attempt=attempt,
                    attempts=attempts,
                    error=last_error,
                )
                if attempt < attempts and self._retry_backoff:
                    await asyncio.sleep(self._retry_backoff * attempt)
        logger.error("google_keys_unavailable", url=url, error=last_error)
        raise FederatedProviderUnavailable("could not fetch Google signing keys")

    def _parse_keys(
        self, response: httpx.Response
    ) -> tuple[dict[str, dict[str, Any]], Optional[int]]:
        try:
            body = response.json()
        except ValueError:
            logger.error("google_keys_parse_failed")
            raise FederatedProviderUnavailable("Google signing keys were not JSON") from None
        entries = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(entries, list):
            logger.error("google_keys_parse_failed")
            raise FederatedProviderUnavailable("Google signing keys were malformed")
        keys = {
            entry["kid"]: entry
            for entry in entries
            if isinstance(entry, dict) and entry.get("kid")
        }
        match = _MAX_AGE_RE.search(response.headers.get("cache-control", ""))
        max_age = int(match.group(1)) if match else None
        return keys, max_age


__all__ = ["PasswordVerifier", "GoogleIdTokenVerifier", "GOOGLE_ISSUERS"]
