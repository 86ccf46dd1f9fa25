"""
Tests for rate limiting functionality.

This module tests the SlidingWindow budgets and RateLimitManager
to ensure proper rate limiting behavior across the model-backed endpoints.
"""

import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

from fastapi import HTTPException

from medchronos.config import Settings
from medchronos.rate_limiter import (
    DEFAULT_LIMITS,
    RateLimitConfig,
    RateLimitManager,
    SlidingWindow,
    client_ip,
    limits_from_settings,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _request(host="127.0.0.1", headers=None):
    request = MagicMock()
    request.headers = headers or {}
    request.client.host = host
    request.state = SimpleNamespace()
    return request


class TestRateLimitConfig(unittest.TestCase):
    """Test budget parsing."""

    def test_parse(self):
        self.assertEqual(RateLimitConfig.parse("20/30"), RateLimitConfig(max_units=20, window_seconds=30))

    def test_parse_default_window(self):
        self.assertEqual(RateLimitConfig.parse(" 5 ").window_seconds, 60)

    def test_parse_invalid(self):
        for value in ("abc", "10/x", "0/60", "5/0"):
            with self.assertRaises(ValueError):
                RateLimitConfig.parse(value)

    def test_from_settings(self):
        settings = Settings(rate_limit_studies="12/60", rate_limit_chat="3/10")
        limits = limits_from_settings(settings)
        self.assertEqual(limits["studies"].max_units, 12)
        self.assertEqual(limits["chat"], RateLimitConfig(max_units=3, window_seconds=10))
        self.assertEqual(limits["reports-generate"], DEFAULT_LIMITS["reports-generate"])


class TestSlidingWindow(unittest.TestCase):
    """Test the SlidingWindow class."""

    def setUp(self):
        self.clock = FakeClock()

    def test_first_request_allowed(self):
        """Test that first request is always allowed."""
        window = SlidingWindow(RateLimitConfig(max_units=5), clock=self.clock)
        self.assertEqual(window.acquire("127.0.0.1"), (True, 4, 0))

    def test_limit_exceeded(self):
        """Test that requests beyond limit are denied."""
        window = SlidingWindow(RateLimitConfig(max_units=3, window_seconds=60), clock=self.clock)
        for _ in range(3):
            allowed, _, _ = window.acquire("127.0.0.1")
            self.assertTrue(allowed)

        allowed, remaining, retry_after = window.acquire("127.0.0.1")
        self.assertFalse(allowed)
        self.assertEqual(remaining, 0)
        self.assertEqual(retry_after, 61)

    def test_units_charged_per_image(self):
        """Test that a multi-image charge consumes several units."""
        window = SlidingWindow(RateLimitConfig(max_units=10, window_seconds=60), clock=self.clock)
        self.assertEqual(window.acquire("127.0.0.1", units=7), (True, 3, 0))

        allowed, remaining, _ = window.acquire("127.0.0.1", units=4)
        self.assertFalse(allowed)
        self.assertEqual(remaining, 3)

        self.assertEqual(window.acquire("127.0.0.1", units=3), (True, 0, 0))

    def test_retry_after_waits_for_enough_units(self):
        """Test that retry-after points at the charge that frees enough budget."""
        window = SlidingWindow(RateLimitConfig(max_units=4, window_seconds=60), clock=self.clock)
        window.acquire("127.0.0.1", units=1)
        self.clock.now += 10
        window.acquire("127.0.0.1", units=3)
        self.clock.now += 5

        # Needs 3 units back: the first charge frees 1, the second frees 3
        allowed, _, retry_after = window.acquire("127.0.0.1", units=3)
        self.assertFalse(allowed)
        self.assertEqual(retry_after, 56)

    def test_oversized_charge_clamped_to_budget(self):
        """Test that a charge larger than the budget can still succeed."""
        window = SlidingWindow(RateLimitConfig(max_units=5), clock=self.clock)
        self.assertEqual(window.acquire("127.0.0.1", units=50), (True, 0, 0))

    def test_different_clients(self):
        """Test that different IPs have separate limits."""
        window = SlidingWindow(RateLimitConfig(max_units=3), clock=self.clock)
        for _ in range(3):
            window.acquire("192.168.1.1")

        allowed, _, _ = window.acquire("192.168.1.1")
        self.assertFalse(allowed)

        allowed, remaining, _ = window.acquire("192.168.1.2")
        self.assertTrue(allowed)
        self.assertEqual(remaining, 2)

    def test_window_expiration(self):
        """Test that old charges expire from the window."""
        window = SlidingWindow(RateLimitConfig(max_units=2, window_seconds=1), clock=self.clock)
        window.acquire("127.0.0.1")
        window.acquire("127.0.0.1")
        allowed, _, _ = window.acquire("127.0.0.1")
        self.assertFalse(allowed)

        self.clock.now += 1.1

        allowed, remaining, _ = window.acquire("127.0.0.1")
        self.assertTrue(allowed)
        self.assertEqual(remaining, 1)

    def test_reset(self):
        """Test that reset clears the budget for a client."""
        window = SlidingWindow(RateLimitConfig(max_units=2), clock=self.clock)
        window.acquire("127.0.0.1")
        window.acquire("127.0.0.1")
        window.reset("127.0.0.1")

        self.assertEqual(window.acquire("127.0.0.1"), (True, 1, 0))


class TestRateLimitManager(unittest.TestCase):
    """Test the RateLimitManager class."""

    def setUp(self):
        """Set up test fixtures."""
        self.manager = RateLimitManager(clock=FakeClock())

    def test_defaults_for_unknown_endpoint(self):
        """Test that unknown endpoints get the default budget."""
        self.assertEqual(self.manager.window("test-endpoint").config, RateLimitConfig())

    def test_window_reused(self):
        """Test that window returns the existing instance."""
        self.assertIs(self.manager.window("chat"), self.manager.window("chat"))

    def test_overrides_merge_with_defaults(self):
        """Test that partial overrides keep the other endpoint budgets."""
        manager = RateLimitManager({"chat": RateLimitConfig(max_units=1)})
        self.assertEqual(manager.window("chat").config.max_units, 1)
        self.assertEqual(manager.window("studies").config, DEFAULT_LIMITS["studies"])

    def test_check_returns_and_stores_headers(self):
        """Test that allowed requests get rate limit headers."""
        request = _request()
        headers = self.manager.check("reports-generate", request)
        self.assertEqual(headers["X-RateLimit-Limit"], "10")
        self.assertEqual(headers["X-RateLimit-Remaining"], "9")
        self.assertEqual(headers["X-RateLimit-Window"], "60")
        self.assertNotIn("Retry-After", headers)
        self.assertEqual(request.state.rate_limit_headers, headers)

    def test_study_upload_charged_per_image(self):
        """Test that study uploads spend one unit per image."""
        manager = RateLimitManager({"studies": RateLimitConfig(max_units=5)}, clock=FakeClock())
        headers = manager.check("studies", _request(), units=4)
        self.assertEqual(headers["X-RateLimit-Remaining"], "1")

        with self.assertRaises(HTTPException) as ctx:
            manager.check("studies", _request(), units=2)
        self.assertEqual(ctx.exception.status_code, 429)

    def test_check_raises_429(self):
        """Test that exceeding the limit raises HTTPException."""
        manager = RateLimitManager({"chat": RateLimitConfig(max_units=1, window_seconds=60)}, clock=FakeClock())
        manager.check("chat", _request())

        with self.assertRaises(HTTPException) as ctx:
            manager.check("chat", _request())
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.headers["Retry-After"], "61")

    def test_managers_are_independent(self):
        """Test that each app gets its own counters."""
        first = RateLimitManager({"chat": RateLimitConfig(max_units=1)})
        second = RateLimitManager({"chat": RateLimitConfig(max_units=1)})
        first.check("chat", _request())
        second.check("chat", _request())


class TestClientIp(unittest.TestCase):
    """Test client IP resolution."""

    def test_forwarded_for(self):
        request = _request(headers={"X-Forwarded-For": "10.0.0.1, 172.16.0.1"})
        self.assertEqual(client_ip(request), "10.0.0.1")

    def test_direct(self):
        self.assertEqual(client_ip(_request(host="192.168.0.9")), "192.168.0.9")

    def test_no_client(self):
        request = _request()
        request.client = None
        self.assertEqual(client_ip(request), "unknown")


if __name__ == "__main__":
    unittest.main()
