"""
Immediate sync with queue fallback.

Every mutation path goes through SyncDispatcher.sync(): it tries the platform
now and, when that is not possible, leaves the work in the sync queue. The
local business write has already happened by then, so callers always get a
result and show a soft sync status.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.orm import sessionmaker

from esl_bridge.client import PlatformClient
from esl_bridge.db import utcnow
from esl_bridge.handlers import HANDLERS, SyncJob, get_handler
from esl_bridge.models import SyncEntity, SyncOperation, SyncOutcome
from esl_bridge.store_resolver import StoreResolver
from esl_bridge.sync_queue import SyncQueue, run_handler

logger = structlog.get_logger(__name__)


class SyncDispatcher:
    """
    Usage:
        outcome = dispatcher.sync("product", product.id, "create", goods)
        if outcome.queued:
            ...show "sync pending"...
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        queue: SyncQueue,
        client: PlatformClient,
        stores: StoreResolver,
        handlers: dict | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.client = client
        self.stores = stores
        self.handlers = HANDLERS if handlers is None else handlers
        self.clock = clock

    def sync(
        self,
        entity_type: SyncEntity | str,
        entity_id: int,
        operation: SyncOperation | str,
        payload: dict[str, Any] | None = None,
    ) -> SyncOutcome:
        job = SyncJob(
            entity_type=SyncEntity(entity_type),
            entity_id=entity_id,
            operation=SyncOperation(operation),
            payload=payload or {},
        )
        log = logger.bind(
            entity_type=job.entity_type.value,
            entity_id=entity_id,
            operation=job.operation.value,
        )

        handler = get_handler(job, self.handlers)
        if handler is None:
            raise ValueError(f"No handler for {job.entity_type.value} {job.operation.value}")

        token = self.client.token_manager.acquire()
        store_id = self.stores.resolve() if token else None
        if not token or not store_id:
            return self._defer(job, "Platform unavailable (no token or store id)", log)

        try:
            error = run_handler(handler, job, self.client, store_id, self.session_factory, self.clock)
        except Exception as e:
            log.exception("Unexpected error during immediate sync")
            error = str(e) or type(e).__name__
        if error is not None:
            return self._defer(job, error, log)

        log.info("Synced immediately")
        return SyncOutcome(synced=True)

    def _defer(self, job: SyncJob, reason: str, log: Any) -> SyncOutcome:
        queue_id = self.queue.enqueue(job.entity_type, job.entity_id, job.operation, job.payload)
        log.warning("Immediate sync failed, queued for retry", reason=reason, queue_id=queue_id)
        return SyncOutcome(queued=True, queue_id=queue_id, error=reason)
