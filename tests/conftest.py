"""Shared test configuration for the dental booking test suite."""

from __future__ import annotations

import os


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("DENTALLY_API_KEY", "test-dentally-token-456")
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("AGENT_KEYS", "test-agent-key,second-key")
    os.environ.setdefault("ELEVENLABS_AGENT_ID", "agent_test")
    os.environ.setdefault("ELEVENLABS_WEBHOOK_SECRET", "wsec_test")
    os.environ["METRICS_ENABLED"] = "false"
    os.environ["DATABASE_URL"] = "sqlite://"
    os.environ["PRICING_POLICY_PATH"] = ""
