"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/chat_relay_test.log")


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def test_config(tmp_path):
    """Create test configuration."""
    from config import AppConfig

    return AppConfig(
        groq_base_url="https://api.groq.com/openai/v1",
        groq_api_key="test-key",
        user_agent="test-agent",
        https_proxy="",
        http_proxy="",
        request_timeout_s=60.0,
        stream_idle_timeout_s=30.0,
        upstream_streaming=True,
        default_temperature=0.7,
        max_tokens_cap=4096,
        pollinations_base_url="https://gen.pollinations.ai/image",
        pollinations_api_key="",
        port=3000,
        log_level="INFO",
        max_request_bytes=2_000_000,
        log_path=str(tmp_path / "chat_relay.log"),
        log_color=False,
    )


@pytest.fixture
def routing_config():
    """Routing table with the built-in defaults."""
    from config import RoutingConfig

    return RoutingConfig()
