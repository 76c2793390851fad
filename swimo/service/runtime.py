from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from swimo.config import Settings
from swimo.logging import get_logger
from swimo.service.auth import AuthService
from swimo.service.credentials import CredentialVerifier
from swimo.service.rate_limit import GuestRateLimiter
from swimo.storage.memory import MemoryStore
from swimo.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
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


class Runtime:
    """Wires settings, store and services together for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, PostgresStore]
        if self.settings.use_memory_store:
            # test mode keeps state in process only
            fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
            self.store = MemoryStore(fs_root=fs_root)
        else:
            try:
                self.store = PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.store_timeout_seconds,
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    database_url=_mask_url_password(self.settings.database_url),
                    error=str(exc),
                )
                raise
        self.credentials = CredentialVerifier()
        self.rate_limiter = GuestRateLimiter(
            self.store, self.settings.guest_rate_per_minute
        )
        self.auth = AuthService(
            self.settings,
            self.store,
            self.store,
            self.credentials,
            rate_limiter=self.rate_limiter,
        )
        logger.info(
            "runtime_init_completed",
            store=type(self.store).__name__,
            guest_enabled=self.settings.guest_enabled,
            guest_rate_per_minute=self.settings.guest_rate_per_minute,
        )

    def check_store(self) -> None:
        """Raise if the backing store cannot serve a trivial query."""
        if isinstance(self.store, PostgresStore):
            self.store.verify_connection()

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from the current environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
