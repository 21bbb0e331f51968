from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from kleroteria.config import Settings, get_settings, reset_settings_cache
from kleroteria.logging import get_logger
from kleroteria.service.auth import AuthService
from kleroteria.service.notifications import NotificationDispatcher, build_dispatcher
from kleroteria.service.passwords import CredentialVerifier
from kleroteria.service.sessions import SessionManager
from kleroteria.service.verification import VerificationTokenManager
from kleroteria.storage.memory import MemoryStore
from kleroteria.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:secret@db/kleroteria -> postgresql://app:***@db/kleroteria
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Owns the store handle and the service instances built on top of it."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(state_dir=self.settings.state_dir)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.verifier = CredentialVerifier(self.settings)
        self.sessions = SessionManager(self.store)
        self.tokens = VerificationTokenManager.from_settings(self.store, self.settings)
        self.notifier: NotificationDispatcher = build_dispatcher(self.settings)
        logger.info(
            "runtime_notifications_initialized",
            email_configured=self.notifier.email.is_configured,
            sms_configured=self.notifier.sms.is_configured,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            notifier=self.notifier,
            verifier=self.verifier,
            sessions=self.sessions,
            tokens=self.tokens,
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
