"""
Tests for Configuration and Logging Helpers.
============================================
"""

from src.ingest.config import IngestConfig
from src.ingest.logging import mask_principal, redact_sensitive


class TestIngestConfig:
    def test_defaults(self):
        config = IngestConfig(_env_file=None)

        assert config.session_ttl_minutes == 30
        assert config.request_timeout_seconds == 45.0
        assert config.crawl_concurrency == 8
        assert config.baseline_dept_drop_threshold == 0.5
        assert config.batch_delay == 0.3
        assert config.term_probe_delay == 0.5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CRAWL_CONCURRENCY", "3")
        monkeypatch.setenv("PORTAL_URL", "https://portal.test/j_aisis")

        config = IngestConfig(_env_file=None)

        assert config.crawl_concurrency == 3
        assert config.portal_url == "https://portal.test/j_aisis"


class TestLoggingHelpers:
    def test_mask_principal(self):
        assert mask_principal("2012345") == "20123***"
        assert mask_principal("") == ""

    def test_redact_sensitive(self):
        event = {"event": "login_attempt", "password": "hunter2", "rnd": "tok", "path": "/login.do"}

        redacted = redact_sensitive(None, "info", event)

        assert redacted["password"] == "***"
        assert redacted["rnd"] == "***"
        assert redacted["path"] == "/login.do"
