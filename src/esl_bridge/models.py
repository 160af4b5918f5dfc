"""
Pydantic models for Minew platform payloads and bridge results.

These give type-safe parsing of platform responses and inbound webhook
bodies. Persistent rows live in esl_bridge.db.
"""

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from esl_bridge.errors import CODE_INTERNAL, CODE_OK

LONG_PRESS_EVENT = "02"
MIX_FIRMWARE = "0"


class SyncEntity(str, enum.Enum):
    PRODUCT = "product"
    ORDER = "order"
    DEVICE = "device"


class SyncOperation(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class Priority(str, enum.Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"


class RequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Platform responses
# ---------------------------------------------------------------------------

class PlatformResponse(BaseModel):
    """
    Envelope returned by every platform endpoint.

    The platform uses `msg` on most endpoints and `message` on a few;
    both land in `msg`.
    """

    model_config = ConfigDict(extra="allow")

    code: int = CODE_INTERNAL
    msg: str = ""
    data: Any = None

    @model_validator(mode="before")
    @classmethod
    def merge_message(cls, values: Any) -> Any:
        if isinstance(values, dict) and not values.get("msg") and values.get("message"):
            values = {**values, "msg": values["message"]}
        return values

    @field_validator("msg", mode="before")
    @classmethod
    def normalize_msg(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v)

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    @classmethod
    def failure(cls, msg: str, code: int = CODE_INTERNAL) -> "PlatformResponse":
        """Structured failure used instead of raising."""
        return cls(code=code, msg=msg)


class PlatformStore(BaseModel):
    """Store entry from the store listing endpoint."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    store_id: str | None = Field(None, alias="storeId")
    name: str | None = None
    active: int | None = None

    @field_validator("id", "store_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return str(v)

    @property
    def resolved_id(self) -> str | None:
        return self.id or self.store_id


class LabelInfo(BaseModel):
    """Label record returned by findByMac and the label listing."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    mac: str | None = None
    goods_id: str | None = Field(None, alias="goodsId")
    store_id: str | None = Field(None, alias="storeId")
    firmware_type: str | None = Field(None, alias="firmwareType")

    @property
    def needs_wake(self) -> bool:
        """MIX firmware tags sleep until woken; BLE tags are always listening."""
        return self.firmware_type == MIX_FIRMWARE

    @field_validator("mac", "goods_id", "firmware_type", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return str(v)


def envelope_items(response: PlatformResponse) -> list[dict[str, Any]]:
    """
    Pull the item list from a listing response.

    Items normally sit under data.items; some accounts and the log endpoint
    return them at the root of the envelope.
    """
    items: Any = None
    if isinstance(response.data, dict):
        items = response.data.get("items")
    if not items:
        items = (response.model_extra or {}).get("items")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def extract_stores(response: PlatformResponse) -> list[PlatformStore]:
    return [PlatformStore.model_validate(item) for item in envelope_items(response)]


def extract_labels(response: PlatformResponse) -> list[LabelInfo]:
    return [LabelInfo.model_validate(item) for item in envelope_items(response)]


# ---------------------------------------------------------------------------
# Operation logs
# ---------------------------------------------------------------------------

class LogGoods(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return str(v)


class ButtonLogEntry(BaseModel):
    """
    One entry from the label operation log.

    Example item:
        {"id": "9f1", "labelMac": "e10000031c76", "actionType": "6",
         "createTime": "2026-03-02 08:58:10", "gatewayMac": "ac233fc0ffee",
         "goods": {"id": "100", "name": "Nitrile Gloves (M)"}}
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    label_mac: str | None = Field(None, alias="labelMac")
    action_type: str | None = Field(None, alias="actionType")
    create_time: str | None = Field(None, alias="createTime")
    gateway_mac: str | None = Field(None, alias="gatewayMac")
    goods: LogGoods | None = None

    @field_validator("label_mac", "action_type", "create_time", "gateway_mac", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str | None:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def tag_mac(self) -> str:
        return normalize_mac(self.label_mac or "")

    @property
    def goods_id(self) -> str | None:
        return self.goods.id if self.goods else None

    @property
    def created_at(self) -> datetime | None:
        """createTime as naive UTC, None when missing or unparseable."""
        if not self.create_time:
            return None
        try:
            value = datetime.fromisoformat(self.create_time.replace("Z", "+00:00"))
        except ValueError:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


# ---------------------------------------------------------------------------
# Inbound webhook
# ---------------------------------------------------------------------------

def normalize_mac(mac: str) -> str:
    """Canonical label MAC: lowercase, no separators."""
    return mac.strip().lower().replace(":", "").replace("-", "")


class ButtonEvent(BaseModel):
    """
    Button press pushed by the platform.

    Example payload:
        {"mac": "e10000031c76", "buttonId": "1", "buttonEvent": "02",
         "buttonTime": "2026-02-18 10:30:00", "opcode": "12345678"}
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    mac: str | None = None
    button_id: str | None = Field(None, alias="buttonId")
    button_event: str | None = Field(None, alias="buttonEvent")
    button_time: str | None = Field(None, alias="buttonTime")
    opcode: str | None = None
    requested_by_id: int | None = Field(None, alias="requestedById")

    @field_validator("mac", "button_id", "button_event", "button_time", "opcode", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str | None:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def tag_mac(self) -> str:
        return normalize_mac(self.mac or "")

    @property
    def is_long_press(self) -> bool:
        return self.button_event == LONG_PRESS_EVENT

    @property
    def press_type(self) -> str:
        return "long" if self.is_long_press else "short"


# ---------------------------------------------------------------------------
# Bridge results
# ---------------------------------------------------------------------------

class BatchResult(BaseModel):
    """Counts from one queue processor run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0


class SyncOutcome(BaseModel):
    """Result of an immediate-or-queued sync attempt."""

    synced: bool = False
    queued: bool = False
    queue_id: int | None = None
    error: str | None = None


class PollResult(BaseModel):
    """Counts from one button log poll."""

    total_events: int = 0
    processed: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0
    woken_tags: int = 0
