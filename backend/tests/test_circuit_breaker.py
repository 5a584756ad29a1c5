"""
Tests for the persisted circuit breaker.
"""

import pytest
from datetime import datetime, timedelta, timezone

from scrapers.stealth.circuit_breaker import CircuitBreaker, BreakerConfig


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(db_session, clock):
    return CircuitBreaker(db_session, BreakerConfig(), clock=clock)


def trip(breaker, service="realtor", times=5):
    for i in range(times):
        breaker.record_failure(service, f"timeout #{i}")


class TestClosed:

    def test_new_service_is_closed(self, breaker):
        decision = breaker.can_execute("realtor")

        assert decision.allowed is True
        assert decision.state == "closed"

    def test_opens_at_threshold(self, breaker):
        trip(breaker, times=4)
        assert breaker.can_execute("realtor").allowed is True

        breaker.record_failure("realtor", "timeout #5")
        decision = breaker.can_execute("realtor")

        assert decision.allowed is False
        assert decision.state == "open"
        assert "too many failures" in decision.reason

    def test_success_resets_failures(self, breaker):
        trip(breaker, times=4)
        breaker.record_success("realtor")
        trip(breaker, times=4)

        assert breaker.can_execute("realtor").allowed is True
        assert breaker.get_status("realtor")["failure_count"] == 4

    def test_services_are_independent(self, breaker):
        trip(breaker, "realtor")

        assert breaker.can_execute("realtor").allowed is False
        assert breaker.can_execute("centris").allowed is True


class TestRecovery:

    def test_stays_open_during_cooldown(self, breaker, clock):
        trip(breaker)
        clock.advance(minutes=29)

        assert breaker.can_execute("realtor").allowed is False

    def test_half_open_after_cooldown(self, breaker, clock):
        trip(breaker)
        clock.advance(minutes=30)
        decision = breaker.can_execute("realtor")

        assert decision.allowed is True
        assert decision.state == "half_open"
        assert breaker.get_status("realtor")["state"] == "half_open"

    def test_closes_after_enough_successes(self, breaker, clock):
        trip(breaker)
        clock.advance(minutes=31)
        breaker.can_execute("realtor")

        breaker.record_success("realtor")
        breaker.record_success("realtor")
        assert breaker.get_status("realtor")["state"] == "half_open"

        breaker.record_success("realtor")
        status = breaker.get_status("realtor")
        assert status["state"] == "closed"
        assert status["opened_at"] is None

    def test_failure_in_half_open_reopens(self, breaker, clock):
        trip(breaker)
        clock.advance(minutes=31)
        breaker.can_execute("realtor")

        breaker.record_failure("realtor", "HTTP 403")
        decision = breaker.can_execute("realtor")

        assert decision.allowed is False
        assert breaker.get_status("realtor")["last_failure_reason"] == "HTTP 403"

    def test_quiet_period_restarts_counts(self, breaker, clock):
        breaker.record_success("realtor")
        breaker.record_success("realtor")
        clock.advance(minutes=61)
        breaker.record_success("realtor")

        assert breaker.get_status("realtor")["success_count"] == 1

    def test_reset(self, breaker):
        trip(breaker)
        breaker.reset("realtor")

        status = breaker.get_status("realtor")
        assert status["state"] == "closed"
        assert status["failure_count"] == 0


class TestPersistence:

    def test_state_survives_new_instance(self, db_session, breaker, clock):
        trip(breaker)

        fresh = CircuitBreaker(db_session, BreakerConfig(), clock=clock)
        assert fresh.can_execute("realtor").allowed is False

    def test_custom_thresholds(self, db_session, clock):
        breaker = CircuitBreaker(db_session, BreakerConfig(failure_threshold=2), clock=clock)
        trip(breaker, times=2)

        assert breaker.can_execute("realtor").allowed is False
