"""
Platform credential management.

Tokens are persisted in the database so they survive restarts. Refresh is
single-flight within one process: concurrent callers wait for the login in
progress and then read its result from the store instead of logging in again.

The lock is process-local. Several bridge instances sharing one database can
still refresh concurrently; each refresh replaces the row atomically, so the
worst case is an extra login.
"""

import hashlib
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from esl_bridge.client import PlatformClient
from esl_bridge.config import BridgeSettings
from esl_bridge.db import CachedToken, utcnow
from esl_bridge.models import PlatformResponse

logger = structlog.get_logger(__name__)


def hash_password(password: str) -> str:
    """Lowercase hex MD5 digest, the form the platform login expects."""
    return hashlib.md5(password.encode("utf-8")).hexdigest().lower()


def extract_token(response: PlatformResponse) -> str | None:
    """Token sits at the top level on some accounts, under data on others."""
    if not response.ok:
        return None
    extra = response.model_extra or {}
    token = extra.get("token")
    if not token and isinstance(response.data, dict):
        token = response.data.get("token")
    if not token or not isinstance(token, str):
        return None
    return token


class CredentialStore:
    """Durable token rows, one live row per account."""

    def __init__(self, session_factory: sessionmaker, owner_account: str):
        self.session_factory = session_factory
        self.owner_account = owner_account

    def get_valid(self, now: datetime) -> CachedToken | None:
        """Most recently refreshed token that has not expired."""
        with self.session_factory() as session:
            return session.execute(
                select(CachedToken)
                .where(
                    CachedToken.owner_account == self.owner_account,
                    CachedToken.expires_at > now,
                )
                .order_by(CachedToken.last_refreshed_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def replace(self, token: str, expires_at: datetime, refreshed_at: datetime) -> None:
        """Delete-then-insert in one transaction so readers never see a partial row."""
        with self.session_factory.begin() as session:
            session.execute(
                delete(CachedToken).where(CachedToken.owner_account == self.owner_account)
            )
            session.add(
                CachedToken(
                    token=token,
                    owner_account=self.owner_account,
                    expires_at=expires_at,
                    last_refreshed_at=refreshed_at,
                )
            )

    def clear(self) -> int:
        with self.session_factory.begin() as session:
            result = session.execute(
                delete(CachedToken).where(CachedToken.owner_account == self.owner_account)
            )
            return result.rowcount or 0


class TokenManager:
    """
    Acquires, refreshes and invalidates the platform token.

    None is an expected return value meaning "platform temporarily
    unavailable"; callers fall back to queueing.

    Usage:
        tokens = TokenManager(settings, session_factory, client)
        token = tokens.acquire()
        if token is None:
            ...enqueue for later...
    """

    def __init__(
        self,
        settings: BridgeSettings,
        session_factory: sessionmaker,
        client: PlatformClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.client = client
        self.clock = clock
        self.store = CredentialStore(session_factory, settings.username)
        self.token_ttl = timedelta(hours=settings.token_ttl_hours)

        self._refresh_lock = threading.Lock()
        self._login_count = 0

        self._log = logger.bind(account=settings.username)

    def acquire(self, force_refresh: bool = False) -> str | None:
        """Valid token from cache, or a fresh one from the platform."""
        if force_refresh:
            self._log.info("Force refresh requested")
            return self.refresh()

        try:
            cached = self.store.get_valid(self.clock())
        except SQLAlchemyError as e:
            self._log.error("Token cache read failed", error=str(e))
            return None

        if cached is not None:
            self._log.debug("Using cached token", expires_at=cached.expires_at.isoformat())
            return cached.token

        return self.refresh()

    def refresh(self) -> str | None:
        """Log in and replace the stored token. Single-flight within the process."""
        if not self._refresh_lock.acquire(blocking=False):
            self._log.info("Waiting for concurrent refresh to complete")
            if self._refresh_lock.acquire(timeout=self.settings.refresh_wait_seconds):
                self._refresh_lock.release()
            return self._read_after_wait()

        try:
            return self._login_and_store()
        finally:
            self._refresh_lock.release()

    def invalidate(self) -> None:
        """Drop the stored token so the next acquire performs a real login."""
        try:
            removed = self.store.clear()
            self._log.info("Token invalidated", removed=removed)
        except SQLAlchemyError as e:
            self._log.error("Token invalidation failed", error=str(e))

    def cached_token(self) -> CachedToken | None:
        """Current non-expired row, for status reporting."""
        try:
            return self.store.get_valid(self.clock())
        except SQLAlchemyError as e:
            self._log.error("Token cache read failed", error=str(e))
            return None

    def get_stats(self) -> dict[str, Any]:
        cached = self.cached_token()
        return {
            "account": self.settings.username,
            "logins": self._login_count,
            "token_expires_at": cached.expires_at.isoformat() if cached else None,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _read_after_wait(self) -> str | None:
        cached = self.cached_token()
        return cached.token if cached else None

    def _login_and_store(self) -> str | None:
        if not self.settings.has_credentials:
            self._log.error("Platform credentials are not configured")
            return None

        self._log.info("Refreshing token")
        self._login_count += 1
        response = self.client.login(self.settings.username, hash_password(self.settings.password))

        token = extract_token(response)
        if token is None:
            self._log.error(
                "Failed to refresh token",
                code=response.code,
                message=response.msg,
            )
            return None

        now = self.clock()
        expires_at = now + self.token_ttl
        try:
            self.store.replace(token, expires_at=expires_at, refreshed_at=now)
        except SQLAlchemyError as e:
            self._log.error("Failed to store refreshed token", error=str(e))
            return None

        self._log.info("Token refreshed", expires_at=expires_at.isoformat())
        return token
