"""Pytest fixtures for KeeNotes tests.

This module provides fixtures for test configuration and databases.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from keenotes.core.config import PASSWORD_ENV_VAR, Config
from keenotes.core.database import Database

TEST_ENDPOINT = "https://notes.example.com/api/notes"
TEST_TOKEN = "test-token-0123456789"
TEST_PASSWORD = "correct horse battery staple"

# The C binding keeps envelope tests fast; the built-in Argon2 is
# checked against it in test_kdf.py
FAST_KDF = "argon2-cffi"

# Notes of populated_db: (id, content, channel, created_at)
SAMPLE_NOTES = [
    (1, "Meeting notes from project kickoff", "desktop", "2024-01-10 09:00:00"),
    (2, "Remember to update documentation", "mobile-android", "2024-01-11 10:30:00"),
    (3, "Doctor appointment next Tuesday", "mobile-ios", "2024-01-12 08:15:00"),
    (4, "Buy milk and eggs", "cli", "2024-01-13 18:45:00"),
    (5, "שלום עולם - Hebrew text test", "desktop", "2024-01-14 12:00:00"),
    (6, "100% discount_code for MILK", "cli", "2024-01-15 07:20:00"),
]


@pytest.fixture(autouse=True)
def no_password_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a password from the developer's environment out of tests."""
    monkeypatch.delenv(PASSWORD_ENV_VAR, raising=False)


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "keenotes_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create an unconfigured test configuration.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    return Config(config_dir=test_config_dir)


@pytest.fixture
def server_config(test_config: Config) -> Config:
    """Config with endpoint, token, password and the fast KDF backend."""
    test_config.set("endpoint_url", TEST_ENDPOINT)
    test_config.set("token", TEST_TOKEN)
    test_config.set("kdf_backend", FAST_KDF)
    test_config.set("reconnect_delay", 0.05)
    test_config.set_encryption_password(TEST_PASSWORD)
    return test_config


@pytest.fixture
def test_db_path(test_config_dir: Path) -> Path:
    """Get path for test database.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Path to test database file.
    """
    return test_config_dir / "test_notes.db"


@pytest.fixture
def empty_db(test_db_path: Path) -> Generator[Database, None, None]:
    """Create empty test database.

    Args:
        test_db_path: Path to test database

    Yields:
        Empty Database instance.
    """
    db = Database(test_db_path)
    yield db
    db.close()


@pytest.fixture
def populated_db(test_config: Config, test_db_path: Path) -> Generator[Database, None, None]:
    """Create test database with the SAMPLE_NOTES and last_sync_id 6.

    Also points the config's database_file at it so CLI runs see the same data.

    Args:
        test_config: Config for the same directory
        test_db_path: Path to test database

    Yields:
        Populated Database instance.
    """
    test_config.set("database_file", str(test_db_path))
    db = Database(test_db_path)
    db.apply_sync_batch(
        [
            {"id": note_id, "content": content, "channel": channel, "created_at": created_at}
            for note_id, content, channel, created_at in SAMPLE_NOTES
        ]
    )
    yield db
    db.close()
