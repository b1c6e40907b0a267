import asyncio
import inspect
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any imports that might read settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("LOG_JSON", "false")

import httpx  # noqa: E402
import jwt  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionvault.config import Settings, reset_settings_cache  # noqa: E402
from sessionvault.service.auth import SessionManager  # noqa: E402
from sessionvault.service.credentials import (  # noqa: E402
    GoogleIdTokenVerifier,
    PasswordVerifier,
)
from sessionvault.service.tokens import TokenCodec  # noqa: E402
from sessionvault.storage.memory import MemoryStore  # noqa: E402

GOOGLE_CLIENT_ID = "test-client.apps.googleusercontent.com"
GOOGLE_KID = "test-kid-1"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class GoogleKeys:
    """Locally generated RSA key pair standing in for Google's signing keys."""

    def __init__(self, kid: str = GOOGLE_KID):
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        public_jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        public_jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
        self.jwk = public_jwk

    def jwks(self) -> dict:
        return {"keys": [self.jwk]}

    def sign(self, *, kid: str | None = None, **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": "https://accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "sub": "google-subject-1",
            "email": "federated@example.com",
            "email_verified": True,
            "name": "Fed User",
            "picture": "https://example.com/avatar.png",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(
            claims, self.private_key, algorithm="RS256", headers={"kid": kid or self.kid}
        )


class CertsEndpoint:
    """httpx handler serving a JWKS document and counting requests."""

    def __init__(self, keys: GoogleKeys, cache_control: str = "public, max-age=600"):
        self.keys = [keys]
        self.cache_control = cache_control
        self.calls = 0
        self.failures: list = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure)
        body = {"keys": [k.jwk for k in self.keys]}
        return httpx.Response(200, json=body, headers={"Cache-Control": self.cache_control})


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Settings with cheap argon2 parameters so the suite stays fast."""
    return Settings(
        access_token_secret="Test-Access-Secret_for-Automation-Only-123456789",
        refresh_token_secret="Test-Refresh-Secret_for-Automation-Only-987654321",
        use_memory_store=True,
        test_mode=True,
        password_hash_time_cost=1,
        password_hash_memory_cost_kib=8,
        password_hash_parallelism=1,
        password_hash_workers=2,
        google_client_id=GOOGLE_CLIENT_ID,
        google_certs_url="https://certs.test/oauth2/v3/certs",
        google_keys_fetch_attempts=3,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


@pytest.fixture
def passwords(settings):
    verifier = PasswordVerifier(settings)
    yield verifier
    verifier.close()


@pytest.fixture
def google_keys():
    return GoogleKeys()


@pytest.fixture
def certs_endpoint(google_keys):
    return CertsEndpoint(google_keys)


@pytest.fixture
def google_verifier(settings, certs_endpoint):
    return GoogleIdTokenVerifier(
        settings,
        transport=httpx.MockTransport(certs_endpoint),
        retry_backoff_seconds=0,
    )


@pytest.fixture
def session_manager(settings, memory_store, codec, passwords, google_verifier):
    return SessionManager(
        settings, memory_store, memory_store, codec, passwords, google_verifier
    )
