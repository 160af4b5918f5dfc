"""
Tests for the HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from esl_bridge.app import create_app
from esl_bridge.db import Product
from esl_bridge.models import SyncStatus

WEBHOOK = "/api/esl/button-event"
TRIGGER = "/api/cron/sync-queue"
POLL = "/api/cron/esl-buttons"


@pytest.fixture
def http(seeded):
    with TestClient(create_app(seeded)) as client:
        yield client


class TestWebhookEndpoint:
    """Tests for the button webhook route."""

    def test_success(self, http):
        response = http.post(WEBHOOK, json={"mac": "e10000031c76", "buttonEvent": "02"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["priority"] == "URGENT"
        assert body["data"]["quantity"] == 40

    def test_invalid_json_still_200(self, http):
        response = http.post(
            WEBHOOK,
            content=b"{broken",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "error", "message": "Invalid JSON body"}

    def test_missing_mac_still_200(self, http):
        response = http.post(WEBHOOK, json={"buttonEvent": "01"})

        assert response.status_code == 200
        assert response.json()["status"] == "error"

    def test_duplicate(self, http):
        http.post(WEBHOOK, json={"mac": "e10000031c76"})
        response = http.post(WEBHOOK, json={"mac": "e10000031c76"})

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_unknown_tag(self, http):
        response = http.post(WEBHOOK, json={"mac": "000000000000"})

        assert response.status_code == 200
        assert response.json()["status"] == "skipped"

    def test_liveness(self, http):
        response = http.get(WEBHOOK)

        assert response.status_code == 200
        assert response.json()["status"] == "active"


class TestQueueTrigger:
    """Tests for the queue trigger and stats routes."""

    def test_process(self, http, seeded):
        item_id = seeded.queue.enqueue("product", 100, "create", {"name": "Gloves"})

        response = http.post(TRIGGER)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert (body["processed"], body["succeeded"], body["failed"]) == (1, 1, 0)
        assert "durationMs" in body
        assert "timestamp" in body
        assert seeded.queue.get(item_id).status == SyncStatus.SUCCESS

    def test_get_with_limit(self, http, seeded):
        for product_id in (100, 101):
            seeded.queue.enqueue("product", product_id, "update")

        response = http.get(TRIGGER, params={"limit": 1})

        assert response.json()["processed"] == 1

    @pytest.mark.parametrize("limit", [-1, 0, 501])
    def test_out_of_range_limit_rejected(self, http, seeded, limit):
        seeded.queue.enqueue("product", 100, "update")

        response = http.get(TRIGGER, params={"limit": limit})

        assert response.status_code == 422
        assert seeded.queue.stats()["pending"] == 1

    def test_secret_required(self, http, seeded):
        seeded.settings.cron_secret = "trigger-secret"

        assert http.post(TRIGGER).status_code == 401
        assert http.post(TRIGGER, headers={"Authorization": "Bearer wrong"}).status_code == 401

        response = http.post(TRIGGER, headers={"Authorization": "Bearer trigger-secret"})
        assert response.status_code == 200

    def test_stats(self, http, seeded):
        seeded.queue.enqueue("product", 100, "create")

        response = http.get("/api/sync-queue/stats")

        assert response.status_code == 200
        assert response.json()["queue"]["pending"] == 1
        assert response.json()["storeId"] is None

    def test_stats_requires_secret(self, http, seeded):
        seeded.settings.cron_secret = "trigger-secret"
        assert http.get("/api/sync-queue/stats").status_code == 401


class TestButtonPollTrigger:
    """Tests for the button log poll route."""

    def test_poll(self, http, seeded, fake_platform):
        with seeded.session_factory.begin() as session:
            session.get(Product, 100).platform_goods_id = "G-100"
        fake_platform.logs = [
            {
                "labelMac": "e10000031c76",
                "actionType": "6",
                "createTime": "2026-03-02 08:58:10",
                "gatewayMac": "ac233fc0ffee",
                "goods": {"id": "G-100"},
            }
        ]

        response = http.post(POLL)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert (body["totalEvents"], body["totalProcessed"], body["duplicates"]) == (1, 1, 0)
        assert "durationMs" in body

    def test_secret_required(self, http, seeded):
        seeded.settings.cron_secret = "trigger-secret"

        assert http.get(POLL).status_code == 401
        assert http.get(POLL, headers={"Authorization": "Bearer trigger-secret"}).status_code == 200

    def test_platform_unavailable(self, http, fake_platform):
        fake_platform.login_ok = False

        response = http.get(POLL)

        assert response.status_code == 503
        assert response.json()["details"] == "Failed to get platform token"

    @pytest.mark.parametrize("minutes", [0, 1441])
    def test_out_of_range_window_rejected(self, http, fake_platform, minutes):
        assert http.get(POLL, params={"minutes": minutes}).status_code == 422
        assert fake_platform.count("/apis/esl/logs/queryList") == 0
