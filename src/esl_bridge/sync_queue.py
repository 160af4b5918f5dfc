"""
Durable outbox for platform mutations.

SyncQueue writes and maintains rows; QueueProcessor drains them in bounded
batches. Claiming a row is a conditional UPDATE on its status, so two
overlapping processor runs never dispatch the same item.
"""

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from esl_bridge.client import PlatformClient
from esl_bridge.config import BridgeSettings
from esl_bridge.db import SyncQueueItem, utcnow
from esl_bridge.handlers import SyncHandler, SyncJob, get_handler
from esl_bridge.models import BatchResult, SyncEntity, SyncOperation, SyncStatus
from esl_bridge.store_resolver import StoreResolver

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 1000


def job_from_item(item: SyncQueueItem) -> SyncJob:
    try:
        payload = json.loads(item.payload or "{}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Corrupt queue payload: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("Queue payload must be a JSON object")
    return SyncJob(
        entity_type=SyncEntity(item.entity_type),
        entity_id=item.entity_id,
        operation=SyncOperation(item.operation),
        payload=payload,
    )


class SyncQueue:
    """
    Row-level operations on the sync queue.

    enqueue() never touches the network, so any business handler can call it
    inside its own request.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock

    def enqueue(
        self,
        entity_type: SyncEntity | str,
        entity_id: int,
        operation: SyncOperation | str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Append one pending item and return its id."""
        entity_type = SyncEntity(entity_type)
        operation = SyncOperation(operation)

        with self.session_factory.begin() as session:
            item = SyncQueueItem(
                entity_type=entity_type,
                entity_id=entity_id,
                operation=operation,
                payload=json.dumps(payload or {}, default=str),
                status=SyncStatus.PENDING,
                retry_count=0,
                max_retries=self.settings.max_retries,
                scheduled_at=self.clock(),
                created_at=self.clock(),
            )
            session.add(item)
            session.flush()
            item_id = item.id

        logger.info(
            "Added to sync queue",
            queue_id=item_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            operation=operation.value,
        )
        return item_id

    def due_ids(self, limit: int) -> list[int]:
        """Pending items whose scheduled time has passed, oldest first."""
        with self.session_factory() as session:
            return list(
                session.execute(
                    select(SyncQueueItem.id)
                    .where(
                        SyncQueueItem.status == SyncStatus.PENDING,
                        SyncQueueItem.scheduled_at <= self.clock(),
                    )
                    .order_by(SyncQueueItem.scheduled_at.asc(), SyncQueueItem.id.asc())
                    .limit(limit)
                ).scalars()
            )

    def claim(self, item_id: int) -> SyncQueueItem | None:
        """
        Atomically move an item from pending to processing.

        Returns the claimed row, or None when another run got there first.
        """
        with self.session_factory.begin() as session:
            result = session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.id == item_id,
                    SyncQueueItem.status == SyncStatus.PENDING,
                )
                .values(status=SyncStatus.PROCESSING, claimed_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return session.get(SyncQueueItem, item_id)

    def mark_success(self, item_id: int) -> None:
        with self.session_factory.begin() as session:
            session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item_id)
                .values(
                    status=SyncStatus.SUCCESS,
                    processed_at=self.clock(),
                    claimed_at=None,
                    last_error=None,
                )
            )

    def mark_failed_attempt(self, item: SyncQueueItem, error: str) -> bool:
        """
        Record a failed attempt with exponential backoff.

        Returns True when the item is now terminally failed.
        """
        retry_count = item.retry_count + 1
        terminal = retry_count >= item.max_retries
        values: dict[str, Any] = {
            "retry_count": retry_count,
            "last_error": error[:MAX_ERROR_LENGTH],
            "claimed_at": None,
        }
        if terminal:
            values["status"] = SyncStatus.FAILED
            values["processed_at"] = self.clock()
        else:
            values["status"] = SyncStatus.PENDING
            values["scheduled_at"] = self.clock() + self.backoff(retry_count)

        with self.session_factory.begin() as session:
            session.execute(
                update(SyncQueueItem).where(SyncQueueItem.id == item.id).values(**values)
            )
        return terminal

    def mark_terminal(self, item_id: int, error: str) -> None:
        """Fail an item without scheduling another attempt."""
        with self.session_factory.begin() as session:
            session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item_id)
                .values(
                    status=SyncStatus.FAILED,
                    last_error=error[:MAX_ERROR_LENGTH],
                    processed_at=self.clock(),
                    claimed_at=None,
                )
            )

    def backoff(self, retry_count: int) -> timedelta:
        """base ** retry_count minutes: 2, 4, 8... with the default base."""
        return timedelta(minutes=self.settings.backoff_base ** retry_count)

    def reclaim_stale(self) -> int:
        """Return items stuck in processing by a crashed run to pending."""
        cutoff = self.clock() - timedelta(minutes=self.settings.stale_after_minutes)
        with self.session_factory.begin() as session:
            result = session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.status == SyncStatus.PROCESSING,
                    SyncQueueItem.claimed_at < cutoff,
                )
                .values(status=SyncStatus.PENDING, claimed_at=None)
                .execution_options(synchronize_session=False)
            )
            reclaimed = result.rowcount or 0
        if reclaimed:
            logger.warning("Reclaimed stale queue items", count=reclaimed)
        return reclaimed

    def retry_failed(self, ids: list[int] | None = None) -> int:
        """Put terminally failed items back in the queue with a fresh retry budget."""
        stmt = (
            update(SyncQueueItem)
            .where(SyncQueueItem.status == SyncStatus.FAILED)
            .values(
                status=SyncStatus.PENDING,
                retry_count=0,
                scheduled_at=self.clock(),
                processed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if ids:
            stmt = stmt.where(SyncQueueItem.id.in_(ids))
        with self.session_factory.begin() as session:
            count = session.execute(stmt).rowcount or 0
        logger.info("Requeued failed items", count=count)
        return count

    def get(self, item_id: int) -> SyncQueueItem | None:
        with self.session_factory() as session:
            return session.get(SyncQueueItem, item_id)

    def stats(self) -> dict[str, int]:
        """Item counts per status."""
        counts = {status.value: 0 for status in SyncStatus}
        with self.session_factory() as session:
            rows = session.execute(
                select(SyncQueueItem.status, func.count(SyncQueueItem.id)).group_by(SyncQueueItem.status)
            ).all()
        for status, count in rows:
            counts[SyncStatus(status).value] = count
        return counts


class QueueProcessor:
    """
    Drains due queue items in bounded batches.

    Invoked by an external trigger (HTTP endpoint or CLI); it owns no loop.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        session_factory: sessionmaker,
        queue: SyncQueue,
        client: PlatformClient,
        stores: StoreResolver,
        handlers: dict | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.queue = queue
        self.client = client
        self.stores = stores
        self.handlers = handlers
        self.clock = clock

    def process_batch(self, limit: int | None = None) -> BatchResult:
        results = BatchResult()
        # Never more than one configured batch per run, whatever the caller asks for.
        if limit is None or limit < 1:
            limit = self.settings.batch_size
        limit = min(limit, self.settings.batch_size)

        self.queue.reclaim_stale()

        due = self.queue.due_ids(limit)
        if not due:
            logger.info("No pending items to process")
            return results

        # Once per batch, not per item.
        token = self.client.token_manager.acquire()
        store_id = self.stores.resolve() if token else None
        if not token or not store_id:
            logger.error(
                "Cannot process queue without token and store id",
                has_token=bool(token),
                has_store=bool(store_id),
            )
            return results

        logger.info("Processing pending items", count=len(due))

        for item_id in due:
            item = self.queue.claim(item_id)
            if item is None:
                logger.debug("Item claimed by another run", queue_id=item_id)
                continue

            log = logger.bind(
                queue_id=item.id,
                entity_type=item.entity_type.value,
                entity_id=item.entity_id,
                operation=item.operation.value,
            )

            if item.retry_count >= item.max_retries:
                self.queue.mark_terminal(item.id, item.last_error or "Max retries exceeded")
                results.failed += 1
                continue

            results.processed += 1
            if self._process_item(item, store_id, log):
                results.succeeded += 1
            else:
                results.failed += 1

        logger.info(
            "Batch complete",
            processed=results.processed,
            succeeded=results.succeeded,
            failed=results.failed,
        )
        return results

    def _process_item(self, item: SyncQueueItem, store_id: str, log: Any) -> bool:
        try:
            job = job_from_item(item)
        except ValueError as e:
            log.error("Unreadable queue item", error=str(e))
            self.queue.mark_terminal(item.id, str(e))
            return False

        handler = get_handler(job, self.handlers)
        if handler is None:
            log.error("No handler for queue item")
            self.queue.mark_terminal(
                item.id, f"No handler for {job.entity_type.value} {job.operation.value}"
            )
            return False

        try:
            error = run_handler(handler, job, self.client, store_id, self.session_factory, self.clock)
        except Exception as e:
            log.exception("Unexpected error processing queue item")
            error = str(e) or type(e).__name__
        if error is None:
            self.queue.mark_success(item.id)
            log.info("Queue item succeeded")
            return True

        terminal = self.queue.mark_failed_attempt(item, error)
        log.warning(
            "Queue item failed",
            attempt=item.retry_count + 1,
            max_retries=item.max_retries,
            terminal=terminal,
            error=error,
        )
        return False


def run_handler(
    handler: SyncHandler,
    job: SyncJob,
    client: PlatformClient,
    store_id: str,
    session_factory: sessionmaker,
    clock: Callable[[], datetime] = utcnow,
) -> str | None:
    """
    Send one job and apply its local side effects.

    Returns None on success, otherwise the error message. Failures are
    recorded by the caller, not raised.
    """
    try:
        response = handler.send(client, store_id, job)
    except ValueError as e:
        error = str(e)
    else:
        error = None if response.ok else (response.msg or f"Platform returned code {response.code}")

    try:
        with session_factory.begin() as session:
            if error is None and handler.on_success:
                handler.on_success(session, job, clock())
            elif error is not None and handler.on_failure:
                handler.on_failure(session, job, error)
    except SQLAlchemyError as e:
        logger.error("Failed to apply local sync side effect", error=str(e))
        if error is None:
            # Remote call is idempotent; retry until the local flag is written.
            return f"Local update failed: {e}"
    return error
