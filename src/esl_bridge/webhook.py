"""
ESL button webhook ingestion.

Turns button presses pushed by the platform into replenishment requests.
Every outcome, including internal failures, is returned as a plain dict so
the HTTP layer can always answer 200: the platform retries anything else,
and bouncing buttons already produce enough duplicates.

Press mapping:
    short press ("01" or anything else) -> NORMAL, standard qty or 10
    long press  ("02")                  -> URGENT, 2 x standard qty or 50
"""

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from esl_bridge.client import PlatformClient
from esl_bridge.config import BridgeSettings
from esl_bridge.db import Account, Product, ReplenishmentRequest, utcnow
from esl_bridge.errors import DuplicateEvent, NotFoundLocally
from esl_bridge.models import ButtonEvent, Priority, RequestStatus
from esl_bridge.store_resolver import StoreResolver

logger = structlog.get_logger(__name__)

REQUEST_METHOD = "EINK_BUTTON"
WEBHOOK_PATH = "/api/esl/button-event"

SHORT_PRESS_FALLBACK_QTY = 10
LONG_PRESS_FALLBACK_QTY = 50


def map_press(is_long_press: bool, standard_qty: int | None) -> tuple[Priority, int]:
    """Fixed press -> (priority, quantity) policy."""
    if is_long_press:
        return Priority.URGENT, standard_qty * 2 if standard_qty else LONG_PRESS_FALLBACK_QTY
    return Priority.NORMAL, standard_qty or SHORT_PRESS_FALLBACK_QTY


def find_recent_request(
    session: Session,
    product: Product,
    tag_mac: str,
    since: datetime,
    until: datetime | None = None,
    pending_only: bool = True,
) -> int | None:
    """Id of a button request for this product and tag created in [since, until]."""
    stmt = select(ReplenishmentRequest.id).where(
        ReplenishmentRequest.owner_id == product.owner_id,
        ReplenishmentRequest.product_id == product.id,
        ReplenishmentRequest.request_method == REQUEST_METHOD,
        ReplenishmentRequest.device_info == tag_mac,
        ReplenishmentRequest.created_at >= since,
    )
    if until is not None:
        stmt = stmt.where(ReplenishmentRequest.created_at <= until)
    if pending_only:
        stmt = stmt.where(ReplenishmentRequest.status == RequestStatus.PENDING)
    return session.execute(stmt.order_by(ReplenishmentRequest.id.asc()).limit(1)).scalar_one_or_none()


class WebhookIngestor:
    """
    Usage:
        ingestor = WebhookIngestor(settings, session_factory, client, stores)
        body = ingestor.handle(request_json)   # always a dict
    """

    def __init__(
        self,
        settings: BridgeSettings,
        session_factory: sessionmaker,
        client: PlatformClient | None = None,
        stores: StoreResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.client = client
        self.stores = stores
        self.clock = clock
        self.dedup_window = timedelta(minutes=settings.dedup_window_minutes)

        # Serializes dedup check + insert within this process.
        self.write_lock = threading.Lock()

    def handle(self, payload: Any) -> dict[str, Any]:
        try:
            return self._handle(payload)
        except Exception as e:
            logger.exception("Error processing button event")
            return {"status": "error", "message": str(e) or "Internal server error"}

    def describe(self) -> dict[str, Any]:
        """Static descriptor for the liveness check."""
        return {
            "status": "active",
            "endpoint": WEBHOOK_PATH,
            "description": "ESL button event webhook endpoint",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _handle(self, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            return {"status": "error", "message": "Invalid JSON body"}

        try:
            event = ButtonEvent.model_validate(payload)
        except ValidationError as e:
            return {"status": "error", "message": f"Invalid payload: {e.error_count()} error(s)"}

        if not event.mac:
            logger.error("Button event missing mac")
            return {"status": "error", "message": "Missing required field: mac"}

        tag_mac = event.tag_mac
        log = logger.bind(
            tag_mac=tag_mac,
            button_id=event.button_id,
            press_type=event.press_type,
            opcode=event.opcode,
        )
        log.info("Button event received", button_time=event.button_time)

        try:
            with self.write_lock, self.session_factory.begin() as session:
                product = self._find_product(session, event)
                if product is None:
                    raise NotFoundLocally(tag_mac)

                self._check_duplicate(session, product, tag_mac)

                priority, quantity = map_press(event.is_long_press, product.standard_order_qty)

                requester_id = event.requested_by_id or self.fallback_requester(session, product.owner_id)
                if requester_id is None:
                    log.error("No account found for owner", owner_id=product.owner_id)
                    return {"status": "error", "message": "No account found for this owner"}

                request = self._create_request(session, event, product, requester_id, priority, quantity)
                session.flush()
                request_id = request.id
                product_id, product_name, location = product.id, product.name, product.location
        except NotFoundLocally as e:
            goods_id = e.goods_id or self._remote_goods_id(e.mac)
            log.warning("No product bound to tag", goods_id=goods_id)
            body: dict[str, Any] = {"status": "skipped", "mac": tag_mac}
            if goods_id:
                body["message"] = f"Tag goodsId {goods_id} not found in local database"
                body["goodsId"] = goods_id
            else:
                body["message"] = f"No product bound to ESL tag {tag_mac}"
            return body
        except DuplicateEvent as e:
            log.info("Duplicate button event", existing_request_id=e.existing_id)
            return {
                "status": "duplicate",
                "message": "Request already created within the dedup window",
                "existingRequestId": e.existing_id,
                "mac": tag_mac,
            }

        log.info(
            "Replenishment request created",
            request_id=request_id,
            product_id=product_id,
            priority=priority.value,
            quantity=quantity,
        )
        return {
            "status": "success",
            "message": "Replenishment request created successfully",
            "data": {
                "requestId": request_id,
                "productId": product_id,
                "productName": product_name,
                "quantity": quantity,
                "priority": priority.value,
                "pressType": event.press_type,
                "location": location,
                "tagMac": tag_mac,
            },
        }

    def _find_product(self, session: Session, event: ButtonEvent) -> Product | None:
        candidates = {event.tag_mac, event.mac}
        return session.execute(
            select(Product)
            .where(
                or_(
                    Product.eink_device_id.in_(candidates),
                    Product.bound_label.in_(candidates),
                )
            )
            .order_by(Product.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def _remote_goods_id(self, tag_mac: str) -> str | None:
        """Ask the platform whether the label is bound to goods we do not know."""
        if self.client is None or self.stores is None:
            return None
        store_id = self.stores.resolve()
        if not store_id:
            return None
        label = self.client.find_label(tag_mac, store_id)
        return label.goods_id if label else None

    def _check_duplicate(self, session: Session, product: Product, tag_mac: str) -> None:
        existing = find_recent_request(session, product, tag_mac, self.clock() - self.dedup_window)
        if existing is not None:
            raise DuplicateEvent(existing)

    def fallback_requester(self, session: Session, owner_id: int) -> int | None:
        """First account scoped to the owner, ordered by id."""
        return session.execute(
            select(Account.id).where(Account.owner_id == owner_id).order_by(Account.id.asc()).limit(1)
        ).scalar_one_or_none()

    def _create_request(
        self,
        session: Session,
        event: ButtonEvent,
        product: Product,
        requester_id: int,
        priority: Priority,
        quantity: int,
    ) -> ReplenishmentRequest:
        press = "long press - urgent" if event.is_long_press else "short press - normal"
        now = self.clock()
        request = ReplenishmentRequest(
            owner_id=product.owner_id,
            product_id=product.id,
            requested_by_id=requester_id,
            request_method=REQUEST_METHOD,
            device_info=event.tag_mac,
            requested_qty=quantity,
            priority=priority,
            status=RequestStatus.PENDING,
            location=product.location,
            notes=(
                f"ESL button pressed ({press}). Tag MAC: {event.tag_mac}. "
                f"Button time: {event.button_time or 'N/A'}"
            ),
            created_at=now,
            updated_at=now,
        )
        session.add(request)
        return request
