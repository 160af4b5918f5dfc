"""
Button press ingestion from the platform operation log.

Not every gateway pushes presses to the webhook, but every press lands in
the label operation log as action type 6. A scheduled poll reads the recent
log, wakes MIX firmware tags so they keep reporting, and turns unseen presses
into replenishment requests.

The poller shares the webhook ingestor's write lock and requester fallback,
so a press delivered both ways produces one request.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from esl_bridge.client import PlatformClient
from esl_bridge.config import BridgeSettings
from esl_bridge.db import Product, ReplenishmentRequest, utcnow
from esl_bridge.errors import AuthError, BridgeError, NotFoundLocally, PlatformRejection
from esl_bridge.models import (
    ButtonLogEntry,
    LabelInfo,
    PollResult,
    RequestStatus,
    envelope_items,
    extract_labels,
)
from esl_bridge.store_resolver import StoreResolver
from esl_bridge.webhook import REQUEST_METHOD, WebhookIngestor, find_recent_request, map_press

logger = structlog.get_logger(__name__)

BUTTON_CLICK_ACTION = "6"
BLE_FIRMWARE_CODE = 54041  # batchWake answer when no tag needs waking

LOG_PAGE_SIZE = 50
MAX_LOG_PAGES = 10
LABEL_PAGE_SIZE = 100
MAX_LABEL_PAGES = 20

# Requests for the same tag this close to a logged press are that press.
SAME_PRESS_SECONDS = 60


class ButtonLogPoller:
    """
    Usage:
        poller = ButtonLogPoller(settings, session_factory, client, stores, ingestor)
        result = poller.poll()
    """

    def __init__(
        self,
        settings: BridgeSettings,
        session_factory: sessionmaker,
        client: PlatformClient,
        stores: StoreResolver,
        ingestor: WebhookIngestor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.client = client
        self.stores = stores
        self.ingestor = ingestor
        self.clock = clock

    def poll(self, minutes: int | None = None) -> PollResult:
        """
        Ingest button presses logged in the last `minutes` minutes.

        Raises:
            AuthError: no platform token
            BridgeError: no store id
            PlatformRejection: the first log page could not be read
        """
        result = PollResult()
        since = self.clock() - timedelta(minutes=minutes or self.settings.button_poll_minutes)

        if not self.client.token_manager.acquire():
            raise AuthError("Failed to get platform token")
        store_id = self.stores.resolve()
        if not store_id:
            raise BridgeError("No platform store id available")

        if self.settings.wake_mix_tags:
            result.woken_tags = self.wake_mix_tags(store_id)

        entries = self.fetch_button_logs(store_id, since)
        result.total_events = len(entries)

        for entry in entries:
            self._ingest(entry, result)

        logger.info("Button log poll complete", store_id=store_id, **result.model_dump())
        return result

    # -------------------------------------------------------------------------
    # Platform side
    # -------------------------------------------------------------------------

    def wake_mix_tags(self, store_id: str) -> int:
        """Wake every MIX firmware tag in the store. Returns how many were woken."""
        macs = [label.mac for label in self.list_all_labels(store_id) if label.needs_wake and label.mac]
        if not macs:
            logger.debug("No MIX firmware tags to wake")
            return 0

        response = self.client.wake_labels(store_id, macs)
        if response.code == BLE_FIRMWARE_CODE:
            logger.info("Tags run BLE firmware, wake-up not needed")
            return 0
        if not response.ok:
            logger.warning("Tag wake-up failed", code=response.code, error=response.msg)
            return 0

        logger.info("Woke MIX firmware tags", count=len(macs))
        return len(macs)

    def list_all_labels(self, store_id: str) -> list[LabelInfo]:
        labels: list[LabelInfo] = []
        for page in range(1, MAX_LABEL_PAGES + 1):
            response = self.client.list_labels(store_id, page=page, size=LABEL_PAGE_SIZE)
            if not response.ok:
                logger.warning("Label listing failed", page=page, code=response.code, error=response.msg)
                break
            items = extract_labels(response)
            labels.extend(items)
            if len(items) < LABEL_PAGE_SIZE:
                break
        return labels

    def fetch_button_logs(self, store_id: str, since: datetime) -> list[ButtonLogEntry]:
        """Button click entries created at or after since, oldest first."""
        entries: list[ButtonLogEntry] = []
        for page in range(1, MAX_LOG_PAGES + 1):
            response = self.client.query_logs(
                store_id,
                action_type=BUTTON_CLICK_ACTION,
                page=page,
                page_size=LOG_PAGE_SIZE,
            )
            if not response.ok:
                if page == 1:
                    raise PlatformRejection(response.code, response.msg or "Log query failed")
                logger.warning("Log page unavailable, using earlier pages", page=page, code=response.code)
                break

            items = envelope_items(response)
            for item in items:
                try:
                    entry = ButtonLogEntry.model_validate(item)
                except ValidationError as e:
                    logger.warning("Unreadable log entry", error_count=e.error_count())
                    continue
                if entry.action_type != BUTTON_CLICK_ACTION:
                    continue
                created_at = entry.created_at
                if created_at is None or created_at < since:
                    continue
                entries.append(entry)

            if len(items) < LOG_PAGE_SIZE:
                break

        entries.sort(key=lambda e: e.created_at)
        return entries

    # -------------------------------------------------------------------------
    # Local side
    # -------------------------------------------------------------------------

    def _ingest(self, entry: ButtonLogEntry, result: PollResult) -> None:
        log = logger.bind(tag_mac=entry.tag_mac, goods_id=entry.goods_id, create_time=entry.create_time)
        if not entry.tag_mac or not entry.goods_id:
            log.debug("Log entry without tag or goods")
            result.skipped += 1
            return

        created = duplicates = failed = 0
        try:
            with self.ingestor.write_lock, self.session_factory.begin() as session:
                products = self._find_products(session, entry.goods_id)
                if not products:
                    raise NotFoundLocally(entry.tag_mac, goods_id=entry.goods_id)

                for product in products:
                    if self._already_recorded(session, product, entry):
                        duplicates += 1
                        continue

                    requester_id = self.ingestor.fallback_requester(session, product.owner_id)
                    if requester_id is None:
                        log.error("No account found for owner", owner_id=product.owner_id)
                        failed += 1
                        continue

                    session.add(self._build_request(entry, product, requester_id))
                    created += 1
        except NotFoundLocally as e:
            log.info("No product synced for logged goods", goods_id=e.goods_id)
            result.skipped += 1
            return
        except SQLAlchemyError as e:
            log.error("Failed to ingest logged press", error=str(e))
            result.errors += 1
            return

        if created:
            log.info("Replenishment request created from log", count=created)
        result.processed += created
        result.duplicates += duplicates
        result.errors += failed

    def _find_products(self, session: Session, goods_id: str) -> list[Product]:
        return list(
            session.execute(
                select(Product).where(Product.platform_goods_id == goods_id).order_by(Product.id.asc())
            ).scalars()
        )

    def _already_recorded(self, session: Session, product: Product, entry: ButtonLogEntry) -> bool:
        margin = timedelta(seconds=SAME_PRESS_SECONDS)
        existing = find_recent_request(
            session,
            product,
            entry.tag_mac,
            since=entry.created_at - margin,
            until=entry.created_at + margin,
            pending_only=False,
        )
        return existing is not None

    def _build_request(self, entry: ButtonLogEntry, product: Product, requester_id: int) -> ReplenishmentRequest:
        # The log carries no press type, so every logged press is a short press.
        priority, quantity = map_press(False, product.standard_order_qty)
        return ReplenishmentRequest(
            owner_id=product.owner_id,
            product_id=product.id,
            requested_by_id=requester_id,
            request_method=REQUEST_METHOD,
            device_info=entry.tag_mac,
            requested_qty=quantity,
            priority=priority,
            status=RequestStatus.PENDING,
            location=product.location,
            notes=f"ESL button auto-synced at {entry.create_time}. Gateway: {entry.gateway_mac or 'N/A'}",
            created_at=entry.created_at,
            updated_at=self.clock(),
        )
