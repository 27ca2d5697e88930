"""Tests for session integrity validation."""
import pytest

from conftest import ATTACKER_IP, USER_AGENT, make_ctx
from matchguard.services.session_monitor import SESSION_CACHE_PREFIX, SESSION_FIELD

OTHER_IP = "198.51.100.9"


def _login(services, user_id, ctx):
    """Issue a platform token and start the monitored session, as /auth/login does."""
    token = services.tokens.create(user_id, services.resolver.resolve(ctx), ctx.user_agent)
    ctx.user_id = user_id
    ctx.session_token = token
    services.monitor.on_login(user_id, ctx)
    return token


def _request(user_id, token, **kwargs):
    ctx = make_ctx(path="/api/auth/session", **kwargs)
    ctx.user_id = user_id
    ctx.session_token = token
    return ctx


@pytest.fixture
def monitor(services):
    return services.monitor


@pytest.fixture
def alice(services):
    return services.users.register("alice", "alice@example.com", "correct-horse")


class TestLogin:
    def test_login_creates_state_in_both_tiers(self, services, cache, durable):
        _login(services, "u1", make_ctx())
        cached = cache.get(f"{SESSION_CACHE_PREFIX}u1")
        assert cached["ip_address"] == ATTACKER_IP
        assert cached["user_agent"] == USER_AGENT
        assert cached["login_count"] == 1
        assert durable.get_user_field("u1", SESSION_FIELD) == cached

    def test_login_count_increments(self, services):
        _login(services, "u1", make_ctx())
        _login(services, "u1", make_ctx())
        assert services.monitor.get_session_info("u1").login_count == 2

    def test_new_login_revokes_other_tokens(self, services):
        first = _login(services, "u1", make_ctx())
        second = _login(services, "u1", make_ctx(ip=OTHER_IP))
        assert services.tokens.verify("u1", first) is False
        assert services.tokens.verify("u1", second) is True
        assert services.tokens.count("u1") == 1

    def test_login_is_logged_per_user(self, services):
        _login(services, "u1", make_ctx())
        [entry] = services.events.recent_login_attempts("u1")
        assert entry["user_id"] == "u1"
        assert entry["success"] is True

    def test_logout_removes_state(self, services, cache, durable):
        _login(services, "u1", make_ctx())
        services.monitor.on_logout("u1")
        assert cache.get(f"{SESSION_CACHE_PREFIX}u1") is None
        assert durable.get_user_field("u1", SESSION_FIELD) is None
        assert services.monitor.get_session_info("u1") is None


class TestValidateSession:
    def test_valid_request_refreshes_activity(self, services, monitor, clock, durable):
        token = _login(services, "u1", make_ctx())
        clock.advance(600)

        result = monitor.validate_session(_request("u1", token))
        assert result.valid is True
        info = monitor.get_session_info("u1")
        assert info.last_activity == clock()
        assert info.time_since_activity == 0
        assert info.session_age == 600
        assert durable.get_user_field("u1", "last_activity") == clock()

    def test_activity_keeps_session_alive(self, services, monitor, clock):
        token = _login(services, "u1", make_ctx())
        for _ in range(3):
            clock.advance(1500)
            assert monitor.validate_session(_request("u1", token)).valid is True

    def test_idle_session_expires(self, services, monitor, clock, cache, durable):
        token = _login(services, "u1", make_ctx())
        clock.advance(1801)

        result = monitor.validate_session(_request("u1", token))
        assert result.valid is False
        assert result.reason == "expired"
        assert cache.get(f"{SESSION_CACHE_PREFIX}u1") is None
        assert durable.get_user_field("u1", SESSION_FIELD) is None
        assert services.tokens.count("u1") == 0

    def test_session_older_than_max_age_expires(self, services, monitor, clock, cache):
        token = _login(services, "u1", make_ctx())
        state = cache.get(f"{SESSION_CACHE_PREFIX}u1")
        state["login_time"] = clock() - 86401
        cache.set(f"{SESSION_CACHE_PREFIX}u1", state, 3600)

        result = monitor.validate_session(_request("u1", token))
        assert result.valid is False
        assert result.reason == "expired"

    def test_get_session_info_reports_expiry(self, services, monitor, clock):
        _login(services, "u1", make_ctx())
        clock.advance(1801)
        assert monitor.get_session_info("u1").is_expired is True

    def test_user_agent_change_invalidates_and_alerts(self, services, monitor, sender, alice):
        token = _login(services, alice["id"], make_ctx())

        result = monitor.validate_session(_request(alice["id"], token, user_agent="curl/8.0"))
        assert result.valid is False
        assert result.reason == "user_agent_change"
        assert services.tokens.verify(alice["id"], token) is False

        [event] = services.events.recent_security_events(alice["id"])
        assert event["event_type"] == "user_agent_change"
        assert event["severity"] == "high"
        assert event["data"] == {"old_ua": USER_AGENT, "new_ua": "curl/8.0"}

        assert sender.subjects == ["[MatchGuard] Security Alert: User Agent Change"]
        _, _, body = sender.sent[0]
        assert "alice (alice@example.com)" in body

    def test_ip_change_alone_is_logged_only(self, services, monitor, sender, alice):
        token = _login(services, alice["id"], make_ctx())

        result = monitor.validate_session(_request(alice["id"], token, ip=OTHER_IP))
        assert result.valid is True

        [event] = services.events.recent_security_events(alice["id"])
        assert event["event_type"] == "ip_change"
        assert event["severity"] == "info"
        assert event["data"] == {"old_ip": ATTACKER_IP, "new_ip": OTHER_IP}
        assert sender.sent == []

    def test_concurrent_sessions_invalidate(self, services, monitor, alice):
        token = _login(services, alice["id"], make_ctx())
        services.tokens.create(alice["id"], OTHER_IP, "Other/1.0")

        result = monitor.validate_session(_request(alice["id"], token))
        assert result.valid is False
        assert result.reason == "concurrent_sessions"
        assert services.tokens.count(alice["id"]) == 0

    def test_alert_skipped_for_unknown_user(self, services, monitor, sender):
        token = _login(services, "ghost", make_ctx())
        result = monitor.validate_session(_request("ghost", token, user_agent="curl/8.0"))
        assert result.valid is False
        assert sender.sent == []

    def test_no_state_is_valid(self, monitor):
        assert monitor.validate_session(_request("nobody", "tok")).valid is True

    def test_anonymous_request_is_valid(self, monitor):
        assert monitor.validate_session(make_ctx()).valid is True


class TestDurableFallback:
    def test_cache_eviction_falls_back_and_repairs(self, services, monitor, clock, cache):
        token = _login(services, "u1", make_ctx())
        cache.delete(f"{SESSION_CACHE_PREFIX}u1")
        clock.advance(600)

        assert monitor.validate_session(_request("u1", token)).valid is True
        assert cache.get(f"{SESSION_CACHE_PREFIX}u1") is not None
        assert cache.ttl(f"{SESSION_CACHE_PREFIX}u1") == 86400 - 600

    def test_durable_copy_still_expires(self, services, monitor, clock, cache):
        token = _login(services, "u1", make_ctx())
        cache.delete(f"{SESSION_CACHE_PREFIX}u1")
        clock.advance(1801)

        result = monitor.validate_session(_request("u1", token))
        assert result.reason == "expired"

    def test_unreachable_state_defers_to_token_check(self, services, monitor, cache, durable):
        token = _login(services, "u1", make_ctx())
        cache.delete(f"{SESSION_CACHE_PREFIX}u1")
        durable.fail = True
        assert monitor.validate_session(_request("u1", token)).valid is True
