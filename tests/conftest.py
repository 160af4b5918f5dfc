"""
Pytest configuration and fixtures for ESL bridge tests.

The platform is faked at the transport level with httpx.MockTransport, so
every test exercises the real client, retry and token code paths.
"""

import json
import threading
from datetime import datetime, timedelta

import httpx
import pytest

from esl_bridge.bridge import EslBridge
from esl_bridge.config import BridgeSettings
from esl_bridge.db import Account, Product, build_engine

LOGIN_PATH = "/apis/action/login"
STORES_PATH = "/apis/esl/store/listPage"
FIND_LABEL_PATH = "/apis/esl/label/findByMac"
LABEL_LIST_PATH = "/apis/esl/label/cascadQuery"
WAKE_PATH = "/apis/esl/label/batchWake"
LOGS_PATH = "/apis/esl/logs/queryList"


class FakePlatform:
    """
    In-memory stand-in for the Minew cloud.

    scripted[path] is a list of canned replies consumed before the normal
    routing: a dict (JSON body), an httpx.Response, or "connect_error".
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.logins = 0
        self.login_ok = True
        self.login_started: threading.Event | None = None
        self.login_gate: threading.Event | None = None
        self.valid_tokens: set[str] = set()
        self.reject_all = False
        self.scripted: dict[str, list] = {}
        self.stores: list[dict] = [{"id": "store-1", "name": "Main Warehouse", "active": 1}]
        self.labels: dict[str, str] = {}
        self.tags: list[dict] = []
        self.logs: list[dict] = []
        self.wake_code = 200
        self.goods_code = 200
        self._lock = threading.Lock()

    def count(self, path: str) -> int:
        return sum(1 for c in self.calls if c["path"] == path)

    def last(self, path: str) -> dict:
        return [c for c in self.calls if c["path"] == path][-1]

    def revoke_tokens(self) -> None:
        self.valid_tokens.clear()

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        with self._lock:
            self.calls.append(
                {
                    "method": request.method,
                    "path": path,
                    "params": dict(request.url.params),
                    "body": body,
                    "token": request.headers.get("token"),
                }
            )

        queue = self.scripted.get(path)
        if queue:
            reply = queue.pop(0)
            if reply == "connect_error":
                raise httpx.ConnectError("connection refused", request=request)
            if isinstance(reply, httpx.Response):
                return reply
            return httpx.Response(200, json=reply)

        if path == LOGIN_PATH:
            return self._login()

        token = request.headers.get("token")
        if self.reject_all or token not in self.valid_tokens:
            return httpx.Response(200, json={"code": 14002, "msg": "token invalid"})

        if path == STORES_PATH:
            return httpx.Response(200, json={"code": 200, "msg": "success", "data": {"items": self.stores}})

        if path == FIND_LABEL_PATH:
            mac = request.url.params.get("mac")
            if mac in self.labels:
                return httpx.Response(
                    200,
                    json={"code": 200, "data": {"mac": mac, "goodsId": self.labels[mac]}},
                )
            return httpx.Response(200, json={"code": 10404, "msg": "label not found"})

        if path == LABEL_LIST_PATH:
            page = int(request.url.params.get("page", 1))
            size = int(request.url.params.get("size", 50))
            items = self.tags[(page - 1) * size : page * size]
            return httpx.Response(200, json={"code": 200, "data": {"items": items, "totalNum": len(self.tags)}})

        if path == WAKE_PATH:
            return httpx.Response(200, json={"code": self.wake_code, "msg": "wake"})

        if path == LOGS_PATH:
            page, size = body["currentPage"], body["pageSize"]
            items = self.logs[(page - 1) * size : page * size]
            # The log endpoint answers with items at the envelope root.
            return httpx.Response(200, json={"code": 200, "items": items, "totalNum": len(self.logs)})

        msg = "success" if self.goods_code == 200 else "goods rejected"
        return httpx.Response(200, json={"code": self.goods_code, "msg": msg})

    def _login(self) -> httpx.Response:
        with self._lock:
            self.logins += 1
            token = f"tok-{self.logins}"
        if self.login_started is not None:
            self.login_started.set()
        if self.login_gate is not None:
            self.login_gate.wait(timeout=5)
        if not self.login_ok:
            return httpx.Response(200, json={"code": 10001, "msg": "bad credentials"})
        self.valid_tokens.add(token)
        return httpx.Response(200, json={"code": 200, "msg": "success", "data": {"token": token}})


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_bridge(settings, fake_platform, clock) -> tuple[EslBridge, httpx.Client]:
    http = httpx.Client(transport=httpx.MockTransport(fake_platform.handler))
    bridge = EslBridge(settings, build_engine(settings.database_url), http=http, clock=clock)
    bridge.create_schema()
    return bridge, http


@pytest.fixture
def fake_platform():
    return FakePlatform()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return BridgeSettings(
        api_base="https://cloud.example.test",
        username="ops@example.com",
        password="s3cret",
        database_url="sqlite://",
        retry_delay_seconds=0,
    )


@pytest.fixture
def bridge(settings, fake_platform, clock):
    """Bridge on an in-memory database."""
    bridge, http = make_bridge(settings, fake_platform, clock)
    yield bridge
    bridge.close()
    http.close()


@pytest.fixture
def file_bridge(settings, fake_platform, clock, tmp_path):
    """Bridge on a file database, for tests that use several threads."""
    file_settings = settings.model_copy(update={"database_url": f"sqlite:///{tmp_path / 'bridge.db'}"})
    bridge, http = make_bridge(file_settings, fake_platform, clock)
    yield bridge
    bridge.close()
    http.close()


def seed(bridge: EslBridge) -> None:
    with bridge.session_factory.begin() as session:
        session.add_all(
            [
                Account(id=1, owner_id=10, name="Warehouse Lead"),
                Account(id=2, owner_id=10, name="Night Shift"),
                Account(id=3, owner_id=20, name="Other Tenant"),
            ]
        )
        session.add_all(
            [
                Product(
                    id=100,
                    owner_id=10,
                    name="Nitrile Gloves (M)",
                    sku="GLV-M",
                    location="Aisle 3, Bin 4",
                    standard_order_qty=20,
                    eink_device_id="e10000031c76",
                ),
                Product(
                    id=101,
                    owner_id=10,
                    name="Gauze Pads",
                    location="Aisle 1",
                    bound_label="aabbccddeeff",
                ),
                Product(
                    id=102,
                    owner_id=30,
                    name="Unowned Widget",
                    eink_device_id="ffff00000001",
                ),
            ]
        )


@pytest.fixture
def seeded(bridge):
    seed(bridge)
    return bridge


@pytest.fixture
def seeded_file_bridge(file_bridge):
    seed(file_bridge)
    return file_bridge
