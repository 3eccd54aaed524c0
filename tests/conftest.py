"""
Pytest configuration and fixtures for trirelay tests.
"""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from trirelay.audit.logger import reset_audit_logger
from trirelay.config.loader import clear_config_cache


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_trirelay_home(
    temp_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[Path, None, None]:
    """Point TRIRELAY_HOME at an empty directory and clear TRIRELAY_* overrides."""
    home = temp_dir / ".trirelay"
    home.mkdir()

    for key in list(os.environ):
        if key.startswith("TRIRELAY_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("TRIRELAY_HOME", str(home))

    clear_config_cache()
    reset_audit_logger()
    yield home
    clear_config_cache()
    reset_audit_logger()


@pytest.fixture
def sample_config() -> dict:
    """Provide a sample configuration dictionary."""
    return {
        "discord": {
            "webhook_url": "https://discord.com/api/webhooks/1/abc",
            "bot_token": "discord-token",
            "channel_id": "42",
        },
        "telegram": {
            "bot_token": "123:telegram",
            "chat_id": "-100200300",
        },
        "qq": {
            "base_url": "ws://127.0.0.1:3001",
            "token": "napcat",
            "group_id": "123456",
        },
    }
