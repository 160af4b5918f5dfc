"""
Tests for platform token caching and refresh.
"""

import hashlib
import threading
import time

from sqlalchemy import func, select

from esl_bridge.config import BridgeSettings
from esl_bridge.db import CachedToken
from esl_bridge.models import PlatformResponse
from esl_bridge.token_manager import TokenManager, extract_token, hash_password


def token_rows(bridge) -> int:
    with bridge.session_factory() as session:
        return session.execute(select(func.count(CachedToken.id))).scalar_one()


class TestHelpers:
    """Tests for password hashing and token extraction."""

    def test_hash_password(self):
        digest = hash_password("s3cret")

        assert digest == hashlib.md5(b"s3cret").hexdigest()
        assert digest == digest.lower()
        assert len(digest) == 32

    def test_token_under_data(self):
        response = PlatformResponse.model_validate({"code": 200, "data": {"token": "abc"}})
        assert extract_token(response) == "abc"

    def test_token_at_top_level(self):
        response = PlatformResponse.model_validate({"code": 200, "token": "top"})
        assert extract_token(response) == "top"

    def test_no_token(self):
        assert extract_token(PlatformResponse.model_validate({"code": 200, "data": {}})) is None
        assert extract_token(PlatformResponse.failure("down")) is None

    def test_failed_response_data_ignored(self):
        response = PlatformResponse.model_validate({"code": 10001, "data": {"token": "stale"}})
        assert extract_token(response) is None

    def test_failed_response_top_level_ignored(self):
        response = PlatformResponse.model_validate({"code": 10001, "token": "stale"})
        assert extract_token(response) is None


class TestTokenManager:
    """Tests for acquire / refresh / invalidate."""

    def test_login_sends_md5_digest(self, bridge, fake_platform):
        bridge.tokens.acquire()

        login = fake_platform.last("/apis/action/login")
        assert login["method"] == "POST"
        assert login["body"] == {
            "username": "ops@example.com",
            "password": hashlib.md5(b"s3cret").hexdigest(),
        }

    def test_acquire_caches_token(self, bridge, fake_platform):
        """Test that a second acquire reuses the stored token."""
        first = bridge.tokens.acquire()
        second = bridge.tokens.acquire()

        assert first == "tok-1"
        assert second == first
        assert fake_platform.logins == 1

    def test_cached_token_survives_restart(self, bridge, fake_platform, clock):
        """A new manager on the same database reuses the persisted token."""
        bridge.tokens.acquire()

        restarted = TokenManager(bridge.settings, bridge.session_factory, bridge.client, clock=clock)

        assert restarted.acquire() == "tok-1"
        assert fake_platform.logins == 1

    def test_expiry(self, bridge, fake_platform, clock):
        """Tokens are trusted for 23 hours, then refreshed."""
        bridge.tokens.acquire()

        clock.advance(hours=22, minutes=59)
        assert bridge.tokens.acquire() == "tok-1"

        clock.advance(minutes=1)
        assert bridge.tokens.acquire() == "tok-2"
        assert fake_platform.logins == 2

    def test_expires_at(self, bridge, clock):
        bridge.tokens.acquire()

        cached = bridge.tokens.cached_token()
        assert cached.expires_at == clock.now + bridge.tokens.token_ttl
        assert cached.last_refreshed_at == clock.now

    def test_force_refresh(self, bridge, fake_platform):
        bridge.tokens.acquire()

        assert bridge.tokens.acquire(force_refresh=True) == "tok-2"
        assert fake_platform.logins == 2

    def test_refresh_replaces_row(self, bridge):
        """Delete-then-insert leaves one live row per account."""
        bridge.tokens.acquire()
        bridge.tokens.refresh()
        bridge.tokens.refresh()

        assert token_rows(bridge) == 1
        assert bridge.tokens.cached_token().token == "tok-3"

    def test_invalidate(self, bridge, fake_platform):
        bridge.tokens.acquire()
        bridge.tokens.invalidate()

        assert bridge.tokens.cached_token() is None
        assert bridge.tokens.acquire() == "tok-2"

    def test_login_failure_returns_none(self, bridge, fake_platform):
        fake_platform.login_ok = False

        assert bridge.tokens.acquire() is None
        assert token_rows(bridge) == 0

    def test_login_network_failure_returns_none(self, bridge, fake_platform):
        fake_platform.login_ok = False
        fake_platform.scripted["/apis/action/login"] = ["connect_error"]

        assert bridge.tokens.acquire() is None

    def test_malformed_login_reply_returns_none(self, bridge, fake_platform):
        fake_platform.scripted["/apis/action/login"] = [{"code": "oops", "token": "tok-x"}]

        assert bridge.tokens.acquire() is None
        assert token_rows(bridge) == 0

    def test_missing_credentials(self, bridge, fake_platform, clock):
        tokens = TokenManager(BridgeSettings(), bridge.session_factory, bridge.client, clock=clock)

        assert tokens.acquire() is None
        assert fake_platform.logins == 0

    def test_stats(self, bridge):
        assert bridge.tokens.get_stats()["token_expires_at"] is None

        bridge.tokens.acquire()
        stats = bridge.tokens.get_stats()

        assert stats["account"] == "ops@example.com"
        assert stats["logins"] == 1
        assert stats["token_expires_at"] is not None

    def test_concurrent_refresh_is_single_flight(self, file_bridge, fake_platform):
        """Callers arriving during a refresh wait for it instead of logging in."""
        fake_platform.login_started = threading.Event()
        fake_platform.login_gate = threading.Event()
        results: list[str | None] = []

        def acquire():
            results.append(file_bridge.tokens.acquire())

        leader = threading.Thread(target=acquire)
        leader.start()
        assert fake_platform.login_started.wait(timeout=5)

        waiters = [threading.Thread(target=acquire) for _ in range(4)]
        for t in waiters:
            t.start()
        time.sleep(0.2)
        fake_platform.login_gate.set()

        for t in [leader, *waiters]:
            t.join(timeout=10)

        assert fake_platform.logins == 1
        assert results == ["tok-1"] * 5
