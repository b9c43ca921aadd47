"""Tests for session types and configuration loading."""

import pytest

from relay_session.types import (
    RateLimitConfig,
    Session,
    SessionConfig,
    SessionState,
)


class TestSession:
    def test_defaults(self):
        s = Session(id="s1")
        assert s.state == SessionState.UNINITIALIZED
        assert s.retry_attempt == 0
        assert s.fatal_error is None

    def test_snapshot(self):
        s = Session(id="s1", state=SessionState.READY, last_error=ValueError("x"))
        snap = s.snapshot()
        assert snap["state"] == "ready"
        assert snap["last_error"] == "ValueError('x')"
        assert snap["fatal_error"] is None


class TestSessionConfig:
    def test_defaults(self):
        c = SessionConfig()
        assert c.ready_timeout == 60.0
        assert c.pairing_timeout == 120.0
        assert c.max_init_retries == 3
        assert c.max_reconnect_attempts == 5
        assert c.rate_limit == RateLimitConfig(40, 60.0, 0.35)
        assert c.health_check_enabled

    def test_zero_interval_disables_health(self):
        assert not SessionConfig(health_check_interval=0).health_check_enabled

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"state_retry_delay": (30.0, 15.0)},
            {"state_retry_delay": (-1.0, 5.0)},
            {"in_flight_warn_after": 600.0, "in_flight_force_after": 300.0},
            {"health_check_interval": -1},
            {"fallback_poll_interval": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SessionConfig(**kwargs)

    def test_with_overrides(self):
        c = SessionConfig().with_overrides(ready_timeout=5.0)
        assert c.ready_timeout == 5.0
        assert c.pairing_timeout == 120.0


class TestFromMapping:
    def test_camel_case_ms(self):
        c = SessionConfig.from_mapping(
            {
                "readyTimeoutMs": 30000,
                "maxInitRetries": "4",
                "rateLimit": {"capacity": 10, "windowMs": 5000, "minSpacingMs": 100},
                "terminalReasons": ["BANNED"],
            }
        )
        assert c.ready_timeout == 30.0
        assert c.max_init_retries == 4
        assert c.rate_limit == RateLimitConfig(10, 5.0, 0.1)
        assert c.terminal_reasons == ("BANNED",)

    def test_snake_case(self):
        c = SessionConfig.from_mapping({"pairing_timeout": 10.0, "state_retry_delay": [1, 2]})
        assert c.pairing_timeout == 10.0
        assert c.state_retry_delay == (1.0, 2.0)

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="bogus"):
            SessionConfig.from_mapping({"bogus": 1})

    def test_unknown_rate_limit_key(self):
        with pytest.raises(ValueError):
            RateLimitConfig.from_mapping({"burst": 3})


class TestFromEnv:
    def test_empty_environment_gives_defaults(self):
        assert SessionConfig.from_env({}) == SessionConfig()

    def test_reads_ms_and_counts(self):
        c = SessionConfig.from_env(
            {
                "RELAY_READY_TIMEOUT_MS": "45000",
                "RELAY_HEALTH_CHECK_INTERVAL_MS": "0",
                "RELAY_MAX_REINIT_ATTEMPTS": "5",
                "RELAY_AUTH_CLEAR_SESSION_ON_REINIT": "true",
                "RELAY_TRANSIENT_REASONS": "PROXY_RESET, GATEWAY",
                "RELAY_RATE_LIMIT_CAPACITY": "20",
                "RELAY_RATE_LIMIT_MIN_SPACING_MS": "500",
            }
        )
        assert c.ready_timeout == 45.0
        assert not c.health_check_enabled
        assert c.max_reinit_attempts == 5
        assert c.clear_credentials_on_reinit is True
        assert c.transient_reasons == ("PROXY_RESET", "GATEWAY")
        assert c.rate_limit.capacity == 20
        assert c.rate_limit.min_spacing == 0.5
        assert c.rate_limit.window == 60.0

    def test_blank_values_ignored(self):
        c = SessionConfig.from_env({"RELAY_READY_TIMEOUT_MS": "  "})
        assert c.ready_timeout == 60.0

    def test_custom_prefix(self):
        c = SessionConfig.from_env({"WA_PAIRING_TIMEOUT_MS": "1000"}, prefix="WA_")
        assert c.pairing_timeout == 1.0

    def test_invalid_number(self):
        with pytest.raises(ValueError):
            SessionConfig.from_env({"RELAY_MAX_INIT_RETRIES": "many"})
