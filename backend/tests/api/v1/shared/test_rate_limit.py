"""Tests for rate limiter configuration."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from slowapi import Limiter


def _settings(**overrides):
    values = dict(
        rate_limit_enabled=True,
        rate_limit_storage_uri="memory://",
        rate_limit_requests_per_minute=60,
        rate_limit_requests_per_hour=1000,
        rate_limit_requests_per_day=10000,
        rate_limit_admin_per_minute=10,
    )
    values.update(overrides)
    return MagicMock(**values)


class TestGetLimiter:
    """Tests for get_limiter function."""

    def setup_method(self):
        """Reset the global limiter before each test."""
        import shipyard.api.v1.shared.rate_limit as rate_limit_module

        self._saved = rate_limit_module._limiter
        rate_limit_module._limiter = None

    def teardown_method(self):
        import shipyard.api.v1.shared.rate_limit as rate_limit_module

        rate_limit_module._limiter = self._saved

    def test_returns_limiter_instance(self):
        from shipyard.api.v1.shared.rate_limit import get_limiter

        with patch("shipyard.api.v1.shared.rate_limit.get_settings") as mock_settings:
            mock_settings.return_value = _settings()
            limiter = get_limiter()

        assert isinstance(limiter, Limiter)
        assert limiter.enabled is True

    def test_caches_limiter_instance(self):
        from shipyard.api.v1.shared.rate_limit import get_limiter

        with patch("shipyard.api.v1.shared.rate_limit.get_settings") as mock_settings:
            mock_settings.return_value = _settings()
            assert get_limiter() is get_limiter()

    def test_disabled_creates_disabled_limiter(self):
        from shipyard.api.v1.shared.rate_limit import get_limiter

        with patch("shipyard.api.v1.shared.rate_limit.get_settings") as mock_settings:
            mock_settings.return_value = _settings(rate_limit_enabled=False)
            limiter = get_limiter()

        assert limiter.enabled is False


def test_admin_limit_reads_settings():
    from shipyard.api.v1.shared.rate_limit import admin_limit

    with patch("shipyard.api.v1.shared.rate_limit.get_settings") as mock_settings:
        mock_settings.return_value = _settings(rate_limit_admin_per_minute=3)
        assert admin_limit() == "3/minute"
