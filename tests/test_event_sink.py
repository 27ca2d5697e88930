"""Tests for the bounded security logs and administrator notifications."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FailingCache, FailingSender, RecordingSender
from matchguard.schemas.security import BanRecord
from matchguard.services.event_sink import SecurityEventSink
from matchguard.services.notifier import AdminNotifier, LoggingNotificationSender
from matchguard.storage.memory import InMemoryLockManager


@pytest.fixture
def notifier(sender):
    return AdminNotifier(sender, "security@example.com", "MatchGuard")


@pytest.fixture
def sink(cache, locks, notifier, clock):
    return SecurityEventSink(
        cache, locks, notifier=notifier, describe_user=lambda uid: f"user {uid}", clock=clock
    )


class TestSecurityEventSink:
    def test_login_attempts_capped_at_100(self, sink):
        for i in range(120):
            sink.log_login_attempt("203.0.113.5", f"user{i}", False)
        attempts = sink.recent_login_attempts()
        assert len(attempts) == 100
        assert attempts[0]["username"] == "user20"
        assert attempts[-1]["username"] == "user119"

    def test_user_login_attempts_capped_at_10(self, sink):
        for _ in range(15):
            sink.log_user_login("u1", "203.0.113.5", True)
        assert len(sink.recent_login_attempts("u1")) == 10
        assert sink.recent_login_attempts() == []

    def test_blocked_attempts(self, sink, clock):
        sink.log_blocked_attempt("203.0.113.5", "Bot/1.0", "/api/auth/login")
        [entry] = sink.recent_blocked_attempts()
        assert entry == {
            "timestamp": clock(),
            "identity": "203.0.113.5",
            "user_agent": "Bot/1.0",
            "request_path": "/api/auth/login",
        }

    def test_logs_expire(self, sink, clock):
        sink.log_login_attempt("203.0.113.5", "alice", False)
        sink.log_security_event("203.0.113.5", "lockout")
        clock.advance(86401)
        assert sink.recent_login_attempts() == []
        assert len(sink.recent_security_events()) == 1
        clock.advance(6 * 86400)
        assert sink.recent_security_events() == []

    def test_user_events_capped_at_20(self, sink):
        for _ in range(25):
            sink.log_user_event("u1", "ip_change", "203.0.113.5")
        assert len(sink.recent_security_events("u1")) == 20

    def test_high_severity_event_notifies(self, sink, sender):
        sink.log_user_event("u1", "concurrent_sessions", "203.0.113.5", data={"ip": "203.0.113.5"})
        assert sender.subjects == ["[MatchGuard] Security Alert: Concurrent Sessions"]
        to, _, body = sender.sent[0]
        assert to == "security@example.com"
        assert "User: user u1" in body
        assert "IP Address: 203.0.113.5" in body

    def test_info_event_does_not_notify(self, sink, sender):
        sink.log_user_event("u1", "ip_change", "198.51.100.9")
        assert sender.sent == []
        [event] = sink.recent_security_events("u1")
        assert event["severity"] == "info"

    def test_failing_cache_is_swallowed(self, notifier, clock):
        sink = SecurityEventSink(FailingCache(), InMemoryLockManager(), notifier=notifier, clock=clock)
        sink.log_login_attempt("203.0.113.5", "alice", False)
        sink.log_security_event("203.0.113.5", "lockout")
        assert sink.recent_login_attempts() == []

    def test_user_lookup_failure_drops_alert(self, cache, locks, notifier, sender, clock):
        from matchguard.core.exceptions import StorageUnavailableError

        def lookup(user_id):
            raise StorageUnavailableError("get", "users")

        sink = SecurityEventSink(cache, locks, notifier=notifier, describe_user=lookup, clock=clock)
        sink.log_user_event("u1", "user_agent_change", "203.0.113.5")
        assert sender.sent == []
        assert len(sink.recent_security_events("u1")) == 1


class TestAdminNotifier:
    def _ban(self, clock):
        return BanRecord(
            identity="203.0.113.5",
            started_at=clock(),
            duration=86400,
            reason="Multiple lockouts due to failed login attempts",
        )

    def test_ban_mail(self, notifier, sender, clock):
        notifier.notify_ban(self._ban(clock), "Bot/1.0")
        [(to, subject, body)] = sender.sent
        assert to == "security@example.com"
        assert subject == "[MatchGuard] IP Address Banned: 203.0.113.5"
        assert "Duration: 24 hours" in body
        assert "Reason: Multiple lockouts due to failed login attempts" in body
        assert "User Agent: Bot/1.0" in body

    def test_delivery_failure_is_swallowed(self, clock):
        notifier = AdminNotifier(FailingSender(), "security@example.com", "MatchGuard")
        notifier.notify_ban(self._ban(clock))

    def test_background_delivery(self, clock):
        sender = RecordingSender()
        executor = ThreadPoolExecutor(max_workers=1)
        notifier = AdminNotifier(sender, "security@example.com", "MatchGuard", executor=executor)
        notifier.notify_ban(self._ban(clock))
        executor.shutdown(wait=True)
        assert len(sender.sent) == 1

    def test_submit_after_shutdown_is_dropped(self, clock):
        sender = RecordingSender()
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown(wait=True)
        notifier = AdminNotifier(sender, "security@example.com", "MatchGuard", executor=executor)
        notifier.notify_ban(self._ban(clock))
        assert sender.sent == []

    def test_logging_sender(self, caplog):
        with caplog.at_level("WARNING"):
            LoggingNotificationSender().send("", "[MatchGuard] Test", "body")
        assert "[MatchGuard] Test" in caplog.text
