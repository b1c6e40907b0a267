from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sessionvault.config import Settings
from sessionvault.logging import get_logger
from sessionvault.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token decoding failures."""


class InvalidSignature(TokenError):
    """Token is malformed, signed with another key, or of the wrong type."""


class TokenExpired(TokenError):
    """Token signature is valid but its lifetime has elapsed."""

    def __init__(self, claims: dict[str, Any]):
        super().__init__("token expired")
        self.claims = claims


def fingerprint(token: str) -> str:
    """Deterministic SHA-256 hex digest of a raw token, used as its ledger key."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Issues and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with separate secrets so a leaked
    access secret cannot mint refresh tokens and vice versa.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }
        self._leeway = settings.clock_skew_leeway_seconds

    def now(self) -> datetime:
        return self._clock()

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    def issue_access_token(self, user_id: str, email: str) -> str:
        return self._issue(ACCESS, user_id, email)

    def issue_refresh_token(self, user_id: str, email: str) -> str:
        return self._issue(REFRESH, user_id, email)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self._verify(ACCESS, token)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self._verify(REFRESH, token)

    @staticmethod
    def fingerprint(token: str) -> str:
        return fingerprint(token)

    def _issue(self, token_type: str, user_id: str, email: str) -> str:
        now = self.now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user_id,
            "email": email,
            "token_type": token_type,
            # random jti keeps two tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[token_type]).timestamp()),
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    def _sign(self, signing_input: str, secret: bytes) -> str:
        digest = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _verify(self, token_type: str, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidSignature("token must be a string")
        if not token.isascii():
            raise InvalidSignature("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignature("malformed token") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=token_type)
            raise InvalidSignature("malformed header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignature("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secrets[token_type])
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignature("signature mismatch")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidSignature("malformed payload") from None
        if not isinstance(payload, dict):
            raise InvalidSignature("malformed payload")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignature("issuer mismatch")
        if payload.get("token_type") != token_type:
            raise InvalidSignature("token type mismatch")
        if not payload.get("sub"):
            raise InvalidSignature("missing subject")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidSignature("missing expiry") from None
        if exp_ts <= self.now().timestamp() - self._leeway:
            raise TokenExpired(payload)
        return payload


__all__ = [
    "TokenCodec",
    "TokenError",
    "InvalidSignature",
    "TokenExpired",
    "fingerprint",
]
