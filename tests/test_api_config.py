"""Tests for API service configuration."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from deal_extraction.api.config import Settings


REQUIRED_ENV = {
    "OPENAI_API_KEY": "sk-test-key",
    "DOCUMENT_ROOT": "/srv/deal-documents",
    "WORKER_API_KEY": "worker-secret-123",
}


class TestApiConfig:
    def test_config_loads_from_env(self):
        env = {
            **REQUIRED_ENV,
            "DATABASE_URL": "postgresql://u:p@db/extraction",
            "BLOCKING_PRIORITY_THRESHOLD": "7",
            "PAUSE_POLICY": "eager",
        }
        with patch.dict(os.environ, env, clear=False):
            settings = Settings()
            assert settings.OPENAI_API_KEY == "sk-test-key"
            assert settings.DOCUMENT_ROOT == "/srv/deal-documents"
            assert settings.DATABASE_URL == "postgresql://u:p@db/extraction"
            assert settings.BLOCKING_PRIORITY_THRESHOLD == 7
            assert settings.PAUSE_POLICY == "eager"

    def test_config_defaults(self):
        with patch.dict(os.environ, REQUIRED_ENV, clear=True):
            settings = Settings()
            assert settings.OPENAI_CHAT_MODEL == "gpt-4.1-mini"
            assert settings.DATABASE_URL is None
            assert settings.BLOCKING_PRIORITY_THRESHOLD == 8
            assert settings.AUTO_RESOLVE_CONFIDENCE == 0.95
            assert settings.ALL_FAILED_POLICY == "error"
            assert settings.SSE_HEARTBEAT_SECONDS == 15.0

    def test_missing_required_setting(self):
        env = {k: v for k, v in REQUIRED_ENV.items() if k != "WORKER_API_KEY"}
        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ValidationError):
                Settings()
