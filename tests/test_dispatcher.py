"""
Tests for immediate sync with queue fallback.
"""

import pytest

from esl_bridge.db import Product
from esl_bridge.dispatcher import SyncDispatcher
from esl_bridge.handlers import SyncHandler
from esl_bridge.models import SyncEntity, SyncOperation, SyncStatus


class TestSyncDispatcher:
    """Tests for SyncDispatcher.sync."""

    def test_immediate_success(self, seeded, fake_platform):
        outcome = seeded.dispatcher.sync("product", 100, "create", {"name": "Nitrile Gloves (M)"})

        assert outcome.synced
        assert not outcome.queued
        assert outcome.queue_id is None
        assert seeded.queue.stats()["pending"] == 0
        assert fake_platform.count("/apis/esl/goods/addToStore") == 1

        with seeded.session_factory() as session:
            assert session.get(Product, 100).platform_synced

    def test_platform_rejection_is_queued(self, seeded, fake_platform):
        fake_platform.goods_code = 10010

        outcome = seeded.dispatcher.sync("product", 100, "update", {"name": "Gloves"})

        assert not outcome.synced
        assert outcome.queued
        assert outcome.error == "goods rejected"
        item = seeded.queue.get(outcome.queue_id)
        assert item.status == SyncStatus.PENDING
        assert item.retry_count == 0
        with seeded.session_factory() as session:
            assert session.get(Product, 100).platform_sync_error == "goods rejected"

    def test_unavailable_platform_is_queued(self, seeded, fake_platform):
        fake_platform.login_ok = False

        outcome = seeded.dispatcher.sync("device", 7, "create", {"mac": "e10000031c76"})

        assert outcome.queued
        assert "Platform unavailable" in outcome.error
        assert seeded.queue.get(outcome.queue_id).payload == '{"mac": "e10000031c76"}'

    def test_missing_field_is_queued(self, seeded):
        outcome = seeded.dispatcher.sync("device", 7, "update", {"mac": "e10000031c76"})

        assert outcome.queued
        assert "missing 'goodsId'" in outcome.error

    def test_queued_item_delivered_later(self, seeded, fake_platform):
        fake_platform.stores = []
        outcome = seeded.dispatcher.sync("product", 100, "create")
        assert outcome.queued

        fake_platform.stores = [{"id": "store-1"}]
        assert seeded.process_queue().succeeded == 1
        assert seeded.queue.get(outcome.queue_id).status == SyncStatus.SUCCESS

    def test_unknown_pair_raises(self, seeded):
        with pytest.raises(ValueError, match="No handler for order delete"):
            seeded.dispatcher.sync("order", 1, "delete")
        assert seeded.queue.stats()["pending"] == 0

    def test_unexpected_handler_error_is_queued(self, seeded, clock):
        def send(client, store_id, job):
            raise KeyError("price")

        dispatcher = SyncDispatcher(
            seeded.session_factory,
            seeded.queue,
            seeded.client,
            seeded.stores,
            handlers={(SyncEntity.PRODUCT, SyncOperation.UPDATE): SyncHandler(send)},
            clock=clock,
        )

        outcome = dispatcher.sync("product", 100, "update", {"name": "Gloves"})

        assert outcome.queued
        assert "price" in outcome.error

    def test_malformed_reply_is_queued(self, seeded, fake_platform):
        seeded.tokens.acquire()
        fake_platform.scripted["/apis/esl/goods/update"] = [{"code": "oops"}]

        outcome = seeded.dispatcher.sync("product", 100, "update", {"name": "Gloves"})

        assert outcome.queued
        assert "Malformed response envelope" in outcome.error
