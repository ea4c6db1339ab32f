"""Shared test fixtures."""

import tempfile
from pathlib import Path

import pytest

from banksync.config import (
    AggregatorConfig,
    Config,
    CredentialsConfig,
    DatabaseConfig,
    SecurityConfig,
)
from banksync.db.repository import Repository


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir):
    """Create a temporary database path."""
    return temp_dir / "test.db"


@pytest.fixture
def aggregator_config():
    """Create a test aggregator config."""
    return AggregatorConfig(
        secret_id="test-secret-id",
        secret_key="test-secret-key",
        redirect_url="http://localhost:3000/api/bank/callback",
    )


@pytest.fixture
def database_config(temp_db_path):
    """Create a test database config."""
    return DatabaseConfig(path=temp_db_path)


@pytest.fixture
def security_config():
    """Create a test security config without encryption."""
    return SecurityConfig(encryption_key=None)


@pytest.fixture
def security_config_with_encryption():
    """Create a test security config with encryption."""
    from cryptography.fernet import Fernet

    key = Fernet.generate_key().decode()
    return SecurityConfig(encryption_key=key)


@pytest.fixture
def credentials_config(temp_dir):
    """Create a test credential cache config."""
    return CredentialsConfig(cache_path=temp_dir / "tokens.json")


@pytest.fixture
def config(aggregator_config, database_config, security_config, credentials_config):
    """Create a test config."""
    return Config(
        aggregator=aggregator_config,
        database=database_config,
        security=security_config,
        credentials=credentials_config,
        institutions={"danske": "DANSKEBANK_DABADKKK", "nordea": "NORDEA_NDEADKKK"},
    )


@pytest.fixture
async def repository(temp_db_path):
    """Create a repository with a temporary database."""
    repo = Repository(temp_db_path)
    await repo.connect()
    yield repo
    await repo.close()
