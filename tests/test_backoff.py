"""Tests for exponential backoff with jitter."""

import random

import pytest

from relay_session.backoff import BackoffPolicy


class TestBackoffPolicy:
    def test_exponential_growth(self):
        p = BackoffPolicy(base_delay=5.0, jitter_ratio=0)
        assert [p.delay(n) for n in (1, 2, 3, 4)] == [5.0, 10.0, 20.0, 40.0]

    def test_capped(self):
        p = BackoffPolicy(base_delay=5.0, cap=900.0, jitter_ratio=0)
        assert p.delay(20) == 900.0

    def test_huge_attempt_does_not_overflow(self):
        p = BackoffPolicy(base_delay=5.0, cap=900.0, jitter_ratio=0)
        assert p.delay(5000) == 900.0

    def test_attempt_below_one_treated_as_first(self):
        p = BackoffPolicy(base_delay=5.0, jitter_ratio=0)
        assert p.delay(0) == 5.0

    @pytest.mark.parametrize("attempt", [1, 2, 5, 10, 30])
    def test_jitter_bounds(self, attempt):
        p = BackoffPolicy(base_delay=10.0, cap=900.0, rng=random.Random(attempt))
        capped = p.base(attempt)
        for _ in range(50):
            d = p.delay(attempt)
            assert capped <= d <= capped * 1.2

    def test_seeded_rng_is_reproducible(self):
        a = BackoffPolicy(rng=random.Random(42))
        b = BackoffPolicy(rng=random.Random(42))
        assert [a.delay(n) for n in range(1, 8)] == [b.delay(n) for n in range(1, 8)]

    def test_exhausted(self):
        p = BackoffPolicy(max_attempts=3)
        assert not p.exhausted(3)
        assert p.exhausted(4)

    def test_presets(self):
        init = BackoffPolicy.for_init()
        reconnect = BackoffPolicy.for_reconnect()
        assert (init.base_delay, init.max_attempts) == (10.0, 3)
        assert (reconnect.base_delay, reconnect.max_attempts) == (5.0, 5)
        assert init.cap == reconnect.cap == 900.0

    def test_preset_overrides(self):
        p = BackoffPolicy.for_init(base_delay=1.0, max_attempts=7)
        assert (p.base_delay, p.max_attempts) == (1.0, 7)
