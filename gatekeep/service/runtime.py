from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatekeep.config import get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.actions import AuthActions
from gatekeep.service.claims import SessionClaimsPipeline
from gatekeep.service.credentials import CredentialVerifier
from gatekeep.service.email import EmailService
from gatekeep.service.signin import SignInDecisionMachine
from gatekeep.service.tokens import TokenLifecycleManager, default_policies
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
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

        self.tokens = TokenLifecycleManager(
            self.store, policies=default_policies(self.settings)
        )
        self.credentials = CredentialVerifier(self.store)
        self.signin = SignInDecisionMachine(self.store, self.tokens, self.credentials)
        self.claims = SessionClaimsPipeline(self.store, self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.actions = AuthActions(
            self.store,
            self.tokens,
            self.credentials,
            self.signin,
            self.claims,
            self.email,
            password_min_length=self.settings.password_min_length,
        )
        if not self.email.is_configured:
            logger.warning("email_delivery_log_only")
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    The first check skips the lock once the runtime exists; the second, under
    the lock, keeps two threads from both building one.
    """
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
        runtime = Runtime()
        return runtime
