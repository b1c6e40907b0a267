from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionvault.config import Settings, get_settings
from sessionvault.logging import get_logger
from sessionvault.service.auth import SessionManager
from sessionvault.service.credentials import GoogleIdTokenVerifier, PasswordVerifier
from sessionvault.service.federation import FederationLinker
from sessionvault.service.stores import SessionStore
from sessionvault.service.tokens import TokenCodec
from sessionvault.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""

    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> SessionStore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: SessionStore = MemoryStore()
        else:
            # imported lazily so memory-only deployments need no libpq
            from sessionvault.storage.postgres import PostgresStore

            store = PostgresStore(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Holds the service instances for one process.

    Built once at start-up and handed to the HTTP layer, which keeps it on
    ``app.state``. Tests build their own with a ``MemoryStore``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[SessionStore] = None,
        google: Optional[GoogleIdTokenVerifier] = None,
        passwords: Optional[PasswordVerifier] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or build_store(self.settings)
        self.codec = codec or TokenCodec(self.settings)
        self.passwords = passwords or PasswordVerifier(self.settings)
        self.google = google or GoogleIdTokenVerifier(self.settings)
        self.linker = FederationLinker(self.store)
        self.sessions = SessionManager(
            self.settings,
            self.store,
            self.store,
            self.codec,
            self.passwords,
            self.google,
            linker=self.linker,
        )

    def close(self) -> None:
        self.passwords.close()
        self.store.close()
        logger.info("runtime_closed")


__all__ = ["Runtime", "build_store"]
