"""
ESL Bridge

Wires the reliability layer together: database, platform client, token
manager, store resolver, sync queue, processor, dispatcher, webhook
ingestor and button log poller, all sharing one settings object and one clock.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from esl_bridge.button_poller import ButtonLogPoller
from esl_bridge.client import PlatformClient
from esl_bridge.config import BridgeSettings, load_settings
from esl_bridge.db import build_engine, build_session_factory, init_db, utcnow
from esl_bridge.dispatcher import SyncDispatcher
from esl_bridge.models import BatchResult, PollResult
from esl_bridge.store_resolver import StoreResolver
from esl_bridge.sync_queue import QueueProcessor, SyncQueue
from esl_bridge.token_manager import TokenManager
from esl_bridge.webhook import WebhookIngestor

logger = structlog.get_logger(__name__)


class EslBridge:
    """
    Entry point for business code and the HTTP/CLI surfaces.

    Example:
        bridge = EslBridge.from_settings(load_settings())
        bridge.create_schema()

        outcome = bridge.dispatcher.sync("product", 42, "create", goods)
        result = bridge.processor.process_batch()
    """

    def __init__(
        self,
        settings: BridgeSettings,
        engine: Engine,
        http: httpx.Client | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.engine = engine
        self.session_factory: sessionmaker = build_session_factory(engine)
        self.clock = clock

        self.client = PlatformClient(settings, http=http)
        self.tokens = TokenManager(settings, self.session_factory, self.client, clock=clock)
        self.client.token_manager = self.tokens

        self.stores = StoreResolver(self.session_factory, self.client, clock=clock)
        self.queue = SyncQueue(settings, self.session_factory, clock=clock)
        self.processor = QueueProcessor(
            settings,
            self.session_factory,
            self.queue,
            self.client,
            self.stores,
            clock=clock,
        )
        self.dispatcher = SyncDispatcher(
            self.session_factory,
            self.queue,
            self.client,
            self.stores,
            clock=clock,
        )
        self.webhook = WebhookIngestor(
            settings,
            self.session_factory,
            client=self.client,
            stores=self.stores,
            clock=clock,
        )
        self.button_poller = ButtonLogPoller(
            settings,
            self.session_factory,
            self.client,
            self.stores,
            self.webhook,
            clock=clock,
        )

        logger.info(
            "Bridge initialized",
            api_base=settings.api_base,
            account=settings.username,
            batch_size=settings.batch_size,
            max_retries=settings.max_retries,
        )

    @classmethod
    def from_settings(
        cls,
        settings: BridgeSettings | None = None,
        http: httpx.Client | None = None,
    ) -> "EslBridge":
        settings = settings or load_settings()
        return cls(settings, build_engine(settings.database_url), http=http)

    def create_schema(self) -> None:
        init_db(self.engine)

    def process_queue(self, limit: int | None = None) -> BatchResult:
        return self.processor.process_batch(limit)

    def poll_button_logs(self, minutes: int | None = None) -> PollResult:
        return self.button_poller.poll(minutes)

    def close(self) -> None:
        self.client.close()
        self.engine.dispose()

    def __enter__(self) -> "EslBridge":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_stats(self) -> dict[str, Any]:
        """Get bridge statistics for monitoring."""
        return {
            "client": self.client.get_stats(),
            "tokens": self.tokens.get_stats(),
            "store_id": self.stores.cached(),
            "queue": self.queue.stats(),
        }
