"""Tests for the brute-force guard: lockouts, ban escalation and admin bans."""
import threading

import pytest

from conftest import ATTACKER_IP, FailingSender, make_ctx
from matchguard.core.exceptions import (
    InvalidBanDurationError,
    InvalidCredentialsError,
    InvalidIdentityError,
    PermanentBlockError,
    TemporaryBlockError,
)
from matchguard.schemas.security import GuardState
from matchguard.services.ban_registry import BAN_CACHE_PREFIX, BAN_OPTION_NAME
from matchguard.services.container import build_services

OTHER_IP = "198.51.100.9"


def _fail(guard, ctx, times, username="alice"):
    for _ in range(times):
        guard.on_login_failed(username, ctx)


def _lockout_cycle(guard, ctx, clock):
    """Five failures, then wait out the resulting lockout."""
    _fail(guard, ctx, 5)
    clock.advance(1801)


def _fail_concurrently(guard, ctx, threads=40):
    """Fire one failure per thread, all released together."""
    barrier = threading.Barrier(threads)
    errors = []

    def worker():
        barrier.wait()
        try:
            guard.on_login_failed("alice", ctx)
        except Exception as e:  # surfaced to the test thread below
            errors.append(e)

    workers = [threading.Thread(target=worker) for _ in range(threads)]
    for t in workers:
        t.start()
    for t in workers:
        t.join()
    assert errors == []


@pytest.fixture
def guard(services):
    return services.guard


class TestLockout:
    def test_four_failures_do_not_lock(self, guard):
        ctx = make_ctx()
        _fail(guard, ctx, 4)
        assert guard.check_login_attempt(None, "alice", "pw", ctx) is None
        assert guard.get_state(ATTACKER_IP).state == GuardState.NORMAL

    def test_fifth_failure_locks_out(self, guard):
        ctx = make_ctx()
        _fail(guard, ctx, 5)

        result = guard.check_login_attempt(None, "alice", "pw", ctx)
        assert isinstance(result, TemporaryBlockError)
        assert result.retry_after == 1800
        assert "30 minutes" in result.message

        status = guard.get_state(ATTACKER_IP)
        assert status.state == GuardState.LOCKED_OUT
        assert status.retry_after == 1800
        assert status.lockout_count == 1

    def test_lockout_remaining_counts_down(self, guard, clock):
        ctx = make_ctx()
        _fail(guard, ctx, 5)
        clock.advance(1000)
        result = guard.check_login_attempt(None, "alice", "pw", ctx)
        assert result.retry_after == 800
        assert "14 minutes" in result.message

    def test_lockout_expires(self, guard, clock):
        ctx = make_ctx()
        _fail(guard, ctx, 5)
        clock.advance(1801)
        assert guard.check_login_attempt(None, "alice", "pw", ctx) is None
        assert guard.get_state(ATTACKER_IP).state == GuardState.NORMAL

    def test_failures_outside_window_do_not_count(self, guard, clock):
        ctx = make_ctx()
        _fail(guard, ctx, 4)
        clock.advance(901)
        _fail(guard, ctx, 4)
        assert guard.get_state(ATTACKER_IP).state == GuardState.NORMAL
        _fail(guard, ctx, 1)
        assert guard.get_state(ATTACKER_IP).state == GuardState.LOCKED_OUT

    def test_success_clears_failed_attempts(self, guard, cache):
        ctx = make_ctx()
        _fail(guard, ctx, 4)
        guard.on_login_success("alice", ctx)
        assert cache.get(f"failed_attempts_{ATTACKER_IP}") is None
        _fail(guard, ctx, 4)
        assert guard.get_state(ATTACKER_IP).state == GuardState.NORMAL

    def test_identities_are_independent(self, guard):
        _fail(guard, make_ctx(), 5)
        assert guard.get_state(ATTACKER_IP).state == GuardState.LOCKED_OUT
        assert guard.get_state(OTHER_IP).state == GuardState.NORMAL
        assert guard.check_login_attempt(None, "alice", "pw", make_ctx(ip=OTHER_IP)) is None

    def test_lockout_event_logged(self, guard, services):
        _fail(guard, make_ctx(), 5)
        events = services.events.recent_security_events()
        assert [e["event_type"] for e in events] == ["lockout"]
        assert events[0]["data"]["lockout_count"] == 1

    def test_short_lockout_needs_fresh_failures(self, guard, clock):
        guard.lockout_duration = 300
        ctx = make_ctx()
        _fail(guard, ctx, 5)
        clock.advance(301)

        _fail(guard, ctx, 1)
        assert guard.get_state(ATTACKER_IP).state == GuardState.NORMAL
        _fail(guard, ctx, 4)
        assert guard.get_state(ATTACKER_IP).state == GuardState.LOCKED_OUT


class TestCheckLoginAttempt:
    def test_empty_credentials_pass_through(self, guard):
        ctx = make_ctx()
        _fail(guard, ctx, 5)
        assert guard.check_login_attempt(None, "", "pw", ctx) is None
        assert guard.check_login_attempt(None, "alice", "", ctx) is None

    def test_existing_error_passes_through(self, guard):
        ctx = make_ctx()
        _fail(guard, ctx, 5)
        error = InvalidCredentialsError()
        assert guard.check_login_attempt(error, "alice", "pw", ctx) is error

    def test_candidate_returned_when_not_blocked(self, guard):
        user = {"id": "u1"}
        assert guard.check_login_attempt(user, "alice", "pw", make_ctx()) is user


class TestBanEscalation:
    def test_three_lockouts_ban_and_notify_once(self, guard, clock, sender, durable):
        ctx = make_ctx()
        _lockout_cycle(guard, ctx, clock)
        _lockout_cycle(guard, ctx, clock)
        _fail(guard, ctx, 5)

        status = guard.get_state(ATTACKER_IP)
        assert status.state == GuardState.BANNED
        assert status.retry_after == 86400
        assert status.lockout_count == 3

        assert sender.subjects == [f"[MatchGuard] IP Address Banned: {ATTACKER_IP}"]
        assert ATTACKER_IP in durable.get_option(BAN_OPTION_NAME)

        # Still banned after the third lockout has elapsed
        clock.advance(1801)
        result = guard.check_login_attempt(None, "alice", "pw", ctx)
        assert isinstance(result, PermanentBlockError)

    def test_ban_record_contents(self, guard, clock):
        ctx = make_ctx()
        _lockout_cycle(guard, ctx, clock)
        _lockout_cycle(guard, ctx, clock)
        _fail(guard, ctx, 5)

        [ban] = guard.list_bans()
        assert ban.identity == ATTACKER_IP
        assert ban.duration == 86400
        assert ban.reason == "Multiple lockouts due to failed login attempts"
        assert ban.manual is False

    def test_lockout_count_window(self, guard, clock):
        ctx = make_ctx()
        _lockout_cycle(guard, ctx, clock)
        _lockout_cycle(guard, ctx, clock)
        clock.advance(86400)
        _fail(guard, ctx, 5)
        status = guard.get_state(ATTACKER_IP)
        assert status.state == GuardState.LOCKED_OUT
        assert status.lockout_count == 1

    def test_notification_failure_does_not_block_ban(
        self, settings, clock, cache, durable, locks
    ):
        services = build_services(
            settings,
            clock=clock,
            cache=cache,
            durable=durable,
            locks=locks,
            sender=FailingSender(),
            background_notifications=False,
        )
        ctx = make_ctx()
        _lockout_cycle(services.guard, ctx, clock)
        _lockout_cycle(services.guard, ctx, clock)
        _fail(services.guard, ctx, 5)
        assert services.guard.get_state(ATTACKER_IP).state == GuardState.BANNED

    def test_check_ip_ban_logs_blocked_attempt(self, guard, services):
        guard.manual_ban_ip(ATTACKER_IP)
        ctx = make_ctx(path="/api/rate-limits/message_send")

        error = guard.check_ip_ban(ctx)
        assert isinstance(error, PermanentBlockError)
        assert error.retry_after == 86400
        assert error.headers() == {"Retry-After": "86400"}

        [blocked] = services.events.recent_blocked_attempts()
        assert blocked["identity"] == ATTACKER_IP
        assert blocked["request_path"] == "/api/rate-limits/message_send"

    def test_check_ip_ban_allows_unbanned(self, guard, services):
        assert guard.check_ip_ban(make_ctx()) is None
        assert services.events.recent_blocked_attempts() == []


class TestConcurrentFailures:
    def test_parallel_failures_lock_out_once(self, guard, services):
        _fail_concurrently(guard, make_ctx())

        status = guard.get_state(ATTACKER_IP)
        assert status.state == GuardState.LOCKED_OUT
        assert status.lockout_count == 1
        lockouts = [
            e for e in services.events.recent_security_events()
            if e["event_type"] == "lockout"
        ]
        assert len(lockouts) == 1

    def test_parallel_failures_at_third_lockout_ban_once(self, guard, clock, sender):
        ctx = make_ctx()
        _lockout_cycle(guard, ctx, clock)
        _lockout_cycle(guard, ctx, clock)
        _fail_concurrently(guard, ctx)

        status = guard.get_state(ATTACKER_IP)
        assert status.state == GuardState.BANNED
        assert status.lockout_count == 3
        assert sender.subjects == [f"[MatchGuard] IP Address Banned: {ATTACKER_IP}"]
        assert len(guard.list_bans()) == 1

    def test_lock_registry_does_not_grow_per_address(self, guard, locks):
        for i in range(500):
            subnet = "203.0.113" if i < 250 else "198.51.100"
            guard.on_login_failed("alice", make_ctx(ip=f"{subnet}.{i % 250 + 1}"))
        assert len(locks) == 0


class TestManualBans:
    def test_manual_ban_and_unban(self, guard, services):
        ban = guard.manual_ban_ip(OTHER_IP, reason="Abuse report")
        assert ban.manual is True
        assert ban.reason == "Abuse report"
        assert guard.get_state(OTHER_IP).state == GuardState.BANNED
        assert guard.check_login_attempt(None, "bob", "pw", make_ctx(ip=OTHER_IP)) is not None

        assert guard.manual_unban_ip(OTHER_IP) is True
        assert guard.get_state(OTHER_IP).state == GuardState.NORMAL
        events = [e["event_type"] for e in services.events.recent_security_events()]
        assert events == ["manual_ban", "manual_unban"]

    def test_manual_ban_custom_duration(self, guard, clock):
        guard.manual_ban_ip(OTHER_IP, duration=600)
        clock.advance(601)
        assert guard.get_state(OTHER_IP).state == GuardState.NORMAL

    @pytest.mark.parametrize("bad", ["not-an-ip", "", "300.1.1.1"])
    def test_invalid_identity_rejected(self, guard, durable, bad):
        with pytest.raises(InvalidIdentityError):
            guard.manual_ban_ip(bad)
        assert durable.get_option(BAN_OPTION_NAME) is None

    @pytest.mark.parametrize("banned, seen, stored", [
        ("2606:4700::ABCD", "2606:4700::abcd", "2606:4700::abcd"),
        ("2606:4700::1111", "2606:4700:0:0:0:0:0:1111", "2606:4700::1111"),
    ])
    def test_ban_matches_other_spellings(self, guard, banned, seen, stored):
        ban = guard.manual_ban_ip(banned)
        assert ban.identity == stored
        assert guard.check_ip_ban(make_ctx(ip=seen)) is not None

        guard.manual_unban_ip(seen)
        assert guard.check_ip_ban(make_ctx(ip=banned)) is None

    @pytest.mark.parametrize("duration", [0, -5])
    def test_non_positive_duration_rejected(self, guard, durable, duration):
        with pytest.raises(InvalidBanDurationError):
            guard.manual_ban_ip(OTHER_IP, duration=duration)
        assert durable.get_option(BAN_OPTION_NAME) is None
        assert guard.get_state(OTHER_IP).state == GuardState.NORMAL

    def test_unban_invalid_identity(self, guard):
        with pytest.raises(InvalidIdentityError):
            guard.manual_unban_ip("nope")

    def test_manual_ban_sends_no_notification(self, guard, sender):
        guard.manual_ban_ip(OTHER_IP)
        assert sender.sent == []


class TestBanDurability:
    def test_cache_eviction_repairs_with_remaining_time(self, guard, cache, clock):
        guard.manual_ban_ip(OTHER_IP)
        cache.delete(f"{BAN_CACHE_PREFIX}{OTHER_IP}")
        clock.advance(3600)

        status = guard.get_state(OTHER_IP)
        assert status.state == GuardState.BANNED
        assert status.retry_after == 82800
        assert cache.ttl(f"{BAN_CACHE_PREFIX}{OTHER_IP}") == 82800

    def test_expired_durable_ban_is_purged(self, guard, durable, clock):
        guard.manual_ban_ip(OTHER_IP, duration=100)
        clock.advance(101)

        assert guard.get_state(OTHER_IP).state == GuardState.NORMAL
        assert durable.get_option(BAN_OPTION_NAME) == {}
        assert guard.list_bans() == []

    def test_confirmed_ban_fails_closed(self, guard, cache, durable):
        guard.manual_ban_ip(ATTACKER_IP)
        ctx = make_ctx()
        assert guard.check_ip_ban(ctx) is not None

        cache.delete(f"{BAN_CACHE_PREFIX}{ATTACKER_IP}")
        durable.fail = True
        result = guard.check_login_attempt(None, "alice", "pw", ctx)
        assert isinstance(result, PermanentBlockError)

    def test_unconfirmed_ban_fails_open(self, guard, cache, durable):
        guard.manual_ban_ip(ATTACKER_IP)
        cache.delete(f"{BAN_CACHE_PREFIX}{ATTACKER_IP}")
        durable.fail = True
        assert guard.check_ip_ban(make_ctx()) is None


class TestSecurityStats:
    def test_stats(self, guard):
        _fail(guard, make_ctx(), 5)
        guard.on_login_success("bob", make_ctx(ip=OTHER_IP))

        stats = guard.get_security_stats()
        assert stats.total_login_attempts == 6
        assert stats.failed_attempts_24h == 5
        assert stats.active_lockouts == 1
        assert stats.security_events == 1
        assert stats.banned_ips == 0
        assert stats.blocked_attempts == 0

    def test_stats_after_ban_and_block(self, guard):
        guard.manual_ban_ip(OTHER_IP)
        guard.check_ip_ban(make_ctx(ip=OTHER_IP))
        stats = guard.get_security_stats()
        assert stats.banned_ips == 1
        assert stats.blocked_attempts == 1
        assert stats.security_events == 1

    def test_lockouts_drop_out_of_stats(self, guard, clock):
        _fail(guard, make_ctx(), 5)
        clock.advance(1801)
        assert guard.get_security_stats().active_lockouts == 0
