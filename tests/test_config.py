"""Tests for Settings parsing and validation."""

import pytest
from pydantic import ValidationError

from actiongate.app.core.config import DEFAULT_TRUSTED_IP_HEADERS, Settings


class TestTrustedIpHeaders:
    """Test trusted_ip_headers parsing."""

    def test_default(self, monkeypatch):
        monkeypatch.delenv("TRUSTED_IP_HEADERS", raising=False)
        assert Settings().trusted_ip_headers == DEFAULT_TRUSTED_IP_HEADERS

    def test_comma_separated_env(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_IP_HEADERS", "X-Real-IP, x-forwarded-for")
        assert Settings().trusted_ip_headers == ["x-real-ip", "x-forwarded-for"]

    def test_json_env(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_IP_HEADERS", '["CF-Connecting-IP", "X-Real-IP"]')
        assert Settings().trusted_ip_headers == ["cf-connecting-ip", "x-real-ip"]

    def test_order_kept_and_deduplicated(self):
        settings = Settings(trusted_ip_headers="x-real-ip x-forwarded-for x-real-ip")
        assert settings.trusted_ip_headers == ["x-real-ip", "x-forwarded-for"]

    def test_list_value(self):
        settings = Settings(trusted_ip_headers=["X-Real-IP"])
        assert settings.trusted_ip_headers == ["x-real-ip"]

    @pytest.mark.parametrize("value", ["", "[]", " , "])
    def test_empty_rejected(self, value):
        with pytest.raises(ValidationError):
            Settings(trusted_ip_headers=value)


class TestDurations:
    """Test duration validators."""

    def test_defaults(self):
        settings = Settings()
        assert settings.csrf_token_ttl_seconds == 24 * 60 * 60
        assert settings.anon_bucket_seconds == 300
        assert settings.cleanup_interval_seconds == 0
        assert settings.session_cookie_name == "session_token"
        assert settings.csrf_form_field == "csrf_token"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("csrf_token_ttl_seconds", 0),
            ("anon_bucket_seconds", -5),
            ("csrf_max_sessions", 0),
            ("lock_timeout_seconds", 0),
            ("cleanup_interval_seconds", -1),
            ("cleanup_interval_seconds", 5),
        ],
    )
    def test_invalid(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_cleanup_interval_enabled(self):
        assert Settings(cleanup_interval_seconds=60).cleanup_interval_seconds == 60

    def test_csrf_max_sessions_default(self):
        assert Settings().csrf_max_sessions == 100_000


class TestLogFormat:
    """Test log_format validation."""

    @pytest.mark.parametrize("value,expected", [("text", "text"), (" JSON ", "json")])
    def test_normalised(self, value, expected):
        assert Settings(log_format=value).log_format == expected

    @pytest.mark.parametrize("value", ["structured", ""])
    def test_unknown_rejected(self, value):
        with pytest.raises(ValidationError):
            Settings(log_format=value)
