"""
Default store resolution.

Nearly every platform call needs the store id. It is fetched once from the
store listing and kept in the config table; empty results are never cached.
"""

from collections.abc import Callable
from datetime import datetime

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from esl_bridge.client import PlatformClient
from esl_bridge.db import StoreConfig, utcnow
from esl_bridge.models import extract_stores

logger = structlog.get_logger(__name__)

DEFAULT_STORE_KEY = "default_store_id"
DEFAULT_STORE_DESCRIPTION = "Default platform store ID for all products"


class StoreResolver:
    """Resolves the default store id, caching it in StoreConfig."""

    def __init__(
        self,
        session_factory: sessionmaker,
        client: PlatformClient,
        key: str = DEFAULT_STORE_KEY,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.client = client
        self.key = key
        self.clock = clock
        self._log = logger.bind(config_key=key)

    def cached(self) -> str | None:
        with self.session_factory() as session:
            row = session.execute(
                select(StoreConfig).where(StoreConfig.key == self.key)
            ).scalar_one_or_none()
            return row.value if row and row.value else None

    def resolve(self) -> str | None:
        """Cached store id, or the first active store from the platform."""
        try:
            store_id = self.cached()
        except SQLAlchemyError as e:
            self._log.error("Store config read failed", error=str(e))
            return None
        if store_id:
            return store_id

        token = self.client.token_manager.acquire()
        if not token:
            self._log.error("Cannot resolve store id without a token")
            return None

        response = self.client.list_stores(active=1)
        if not response.ok:
            self._log.error("Store listing failed", code=response.code, message=response.msg)
            return None

        store_id = next(
            (s.resolved_id for s in extract_stores(response) if s.resolved_id),
            None,
        )
        if not store_id:
            self._log.error("No active stores found in platform account")
            return None

        try:
            self._save(store_id)
        except SQLAlchemyError as e:
            # Still usable for this call; the next resolve will retry the write.
            self._log.error("Failed to cache store id", store_id=store_id, error=str(e))
            return store_id

        self._log.info("Saved default store id", store_id=store_id)
        return store_id

    def clear(self) -> None:
        """Forget the cached value so the next resolve asks the platform."""
        with self.session_factory.begin() as session:
            session.execute(delete(StoreConfig).where(StoreConfig.key == self.key))
        self._log.info("Cleared cached store id")

    def _save(self, store_id: str) -> None:
        with self.session_factory.begin() as session:
            row = session.execute(
                select(StoreConfig).where(StoreConfig.key == self.key)
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    StoreConfig(
                        key=self.key,
                        value=store_id,
                        description=DEFAULT_STORE_DESCRIPTION,
                        updated_at=self.clock(),
                    )
                )
            else:
                row.value = store_id
                row.updated_at = self.clock()
