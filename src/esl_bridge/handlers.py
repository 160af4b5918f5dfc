"""
Sync handler table.

Each (entity, operation) pair maps to one remote call plus optional local
side effects. The queue processor and the immediate-sync dispatcher share
this table, so a mutation behaves the same whichever path delivers it.

Remote calls are keyed by stable ids (goods id, label MAC), so repeating one
after a crash is harmless.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from esl_bridge.client import PlatformClient
from esl_bridge.db import Product
from esl_bridge.models import PlatformResponse, SyncEntity, SyncOperation, normalize_mac


@dataclass(frozen=True)
class SyncJob:
    """One mutation to deliver, independent of how it is stored."""

    entity_type: SyncEntity
    entity_id: int
    operation: SyncOperation
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[SyncEntity, SyncOperation]:
        return (self.entity_type, self.operation)

    def require(self, name: str) -> Any:
        value = self.payload.get(name)
        if value in (None, "", []):
            raise ValueError(f"{self.entity_type.value} {self.operation.value} payload is missing '{name}'")
        return value


Send = Callable[[PlatformClient, str, SyncJob], PlatformResponse]
OnSuccess = Callable[[Session, SyncJob, datetime], None]
OnFailure = Callable[[Session, SyncJob, str], None]


@dataclass(frozen=True)
class SyncHandler:
    send: Send
    on_success: OnSuccess | None = None
    on_failure: OnFailure | None = None


# ---------------------------------------------------------------------------
# Products (platform goods)
# ---------------------------------------------------------------------------

def _goods_id(job: SyncJob) -> str:
    return str(job.payload.get("id") or job.entity_id)


def _send_product_create(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    return client.add_goods(store_id, {**job.payload, "id": _goods_id(job)})


def _send_product_update(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    return client.update_goods(store_id, {**job.payload, "id": _goods_id(job)})


def _send_product_delete(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    return client.delete_goods(store_id, [str(job.payload.get("goodsId") or job.entity_id)])


def _product_created(session: Session, job: SyncJob, now: datetime) -> None:
    session.execute(
        update(Product)
        .where(Product.id == job.entity_id)
        .values(
            platform_synced=True,
            platform_synced_at=now,
            platform_goods_id=_goods_id(job),
            platform_sync_error=None,
        )
    )


def _product_updated(session: Session, job: SyncJob, now: datetime) -> None:
    session.execute(
        update(Product)
        .where(Product.id == job.entity_id)
        .values(platform_synced_at=now, platform_sync_error=None)
    )


def _product_failed(session: Session, job: SyncJob, error: str) -> None:
    session.execute(
        update(Product)
        .where(Product.id == job.entity_id)
        .values(platform_sync_error=error[:1000])
    )


# ---------------------------------------------------------------------------
# Devices (labels)
# ---------------------------------------------------------------------------

def _send_device_create(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    return client.import_labels(store_id, [normalize_mac(job.require("mac"))])


def _send_device_update(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    return client.bind_label(
        store_id,
        normalize_mac(job.require("mac")),
        str(job.require("goodsId")),
        template_id=job.payload.get("templateId"),
    )


def _send_device_delete(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    return client.unbind_label(store_id, normalize_mac(job.require("mac")))


def _device_bound(session: Session, job: SyncJob, now: datetime) -> None:
    product_id = job.payload.get("productId")
    if product_id is None:
        return
    session.execute(
        update(Product)
        .where(Product.id == int(product_id))
        .values(bound_label=normalize_mac(job.payload["mac"]))
    )


def _device_unbound(session: Session, job: SyncJob, now: datetime) -> None:
    mac = normalize_mac(job.payload["mac"])
    products = session.execute(select(Product).where(Product.bound_label == mac)).scalars()
    for product in products:
        product.bound_label = None


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def _send_order_update(client: PlatformClient, store_id: str, job: SyncJob) -> PlatformResponse:
    # Order changes only need the affected labels redrawn.
    macs = [normalize_mac(m) for m in job.require("macs")]
    return client.refresh_labels(store_id, macs)


HANDLERS: dict[tuple[SyncEntity, SyncOperation], SyncHandler] = {
    (SyncEntity.PRODUCT, SyncOperation.CREATE): SyncHandler(
        _send_product_create, _product_created, _product_failed
    ),
    (SyncEntity.PRODUCT, SyncOperation.UPDATE): SyncHandler(
        _send_product_update, _product_updated, _product_failed
    ),
    (SyncEntity.PRODUCT, SyncOperation.DELETE): SyncHandler(_send_product_delete),
    (SyncEntity.DEVICE, SyncOperation.CREATE): SyncHandler(_send_device_create),
    (SyncEntity.DEVICE, SyncOperation.UPDATE): SyncHandler(_send_device_update, _device_bound),
    (SyncEntity.DEVICE, SyncOperation.DELETE): SyncHandler(_send_device_delete, _device_unbound),
    (SyncEntity.ORDER, SyncOperation.UPDATE): SyncHandler(_send_order_update),
}


def get_handler(
    job: SyncJob,
    table: dict[tuple[SyncEntity, SyncOperation], SyncHandler] | None = None,
) -> SyncHandler | None:
    return (HANDLERS if table is None else table).get(job.key)
