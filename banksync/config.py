"""Configuration loading from TOML files with environment variable fallbacks."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

DEFAULT_CONFIG_PATHS = [
    Path("config.toml"),
    Path.home() / ".config" / "banksync" / "config.toml",
]

DEFAULT_BASE_URL = "https://bankaccountdata.gocardless.com/api/v2"
DEFAULT_REDIRECT_URL = "http://localhost:3000/api/bank/callback"
DEFAULT_DB_PATH = "banksync.db"
DEFAULT_CREDENTIALS_PATH = ".banksync-tokens.json"
DEFAULT_TOKEN_VALIDITY_SECONDS = 50 * 60


@dataclass(frozen=True)
class AggregatorConfig:
    """Open-banking aggregator API configuration."""

    secret_id: str
    secret_key: str
    base_url: str = DEFAULT_BASE_URL
    redirect_url: str = DEFAULT_REDIRECT_URL
    language: str = "DA"
    country: str = "DK"
    token_validity_seconds: int = DEFAULT_TOKEN_VALIDITY_SECONDS
    request_timeout: float = 30.0

    @property
    def has_credentials(self) -> bool:
        """Check if both client secrets are set."""
        return bool(self.secret_id and self.secret_key)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""

    path: Path


@dataclass(frozen=True)
class SecurityConfig:
    """Security configuration."""

    encryption_key: str | None


@dataclass(frozen=True)
class CredentialsConfig:
    """Location of the aggregator credential cache."""

    cache_path: Path


@dataclass(frozen=True)
class SyncConfig:
    """Synchronization and bank-link tuning."""

    lookback_days: int = 90
    overlap_days: int = 1
    stale_after_hours: float = 6.0
    link_initial_delay: float = 2.0
    link_retry_delay: float = 5.0
    max_attempts: int = 3
    base_delay: float = 2.0
    reference_prefix: str = "banksync"
    default_currency: str = "DKK"


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file: Path | None = None


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    aggregator: AggregatorConfig
    database: DatabaseConfig
    security: SecurityConfig
    credentials: CredentialsConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    institutions: dict[str, str] = field(default_factory=dict)


def find_config_file() -> Path | None:
    """Find the first existing config file from default paths."""
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file with environment variable fallbacks."""
    path = config_path or find_config_file()
    toml_data = _load_toml_data(path)
    return _build_config(toml_data, path)


def _load_toml_data(path: Path | None) -> dict:
    """Load TOML data from file if it exists."""
    if path and path.exists():
        with open(path, "rb") as f:
            return tomli.load(f)
    return {}


def _build_config(toml_data: dict, config_path: Path | None) -> Config:
    """Build Config object from TOML data and environment variables."""
    return Config(
        aggregator=_build_aggregator_config(toml_data.get("aggregator", {})),
        database=_build_database_config(toml_data.get("database", {}), config_path),
        security=_build_security_config(toml_data.get("security", {})),
        credentials=_build_credentials_config(toml_data.get("credentials", {}), config_path),
        sync=_build_sync_config(toml_data.get("sync", {})),
        logging=_build_logging_config(toml_data.get("logging", {}), config_path),
        institutions=_build_institutions(toml_data.get("institutions", {})),
    )


def _build_aggregator_config(data: dict) -> AggregatorConfig:
    """Build aggregator config from TOML data and env vars."""
    return AggregatorConfig(
        secret_id=os.environ.get("BANKSYNC_SECRET_ID", data.get("secret_id", "")),
        secret_key=os.environ.get("BANKSYNC_SECRET_KEY", data.get("secret_key", "")),
        base_url=os.environ.get("BANKSYNC_BASE_URL", data.get("base_url", DEFAULT_BASE_URL)),
        redirect_url=os.environ.get(
            "BANKSYNC_REDIRECT_URL", data.get("redirect_url", DEFAULT_REDIRECT_URL)
        ),
        language=data.get("language", "DA"),
        country=data.get("country", "DK"),
        token_validity_seconds=int(
            data.get("token_validity_seconds", DEFAULT_TOKEN_VALIDITY_SECONDS)
        ),
        request_timeout=float(data.get("request_timeout", 30.0)),
    )


def _resolve_path(path_str: str, config_path: Path | None) -> Path:
    """Resolve a relative path against the config file location."""
    path = Path(path_str)
    if not path.is_absolute() and config_path:
        path = config_path.parent / path
    return path


def _build_database_config(db_data: dict, config_path: Path | None) -> DatabaseConfig:
    """Build database config, resolving relative paths against config file location."""
    db_path_str = os.environ.get("BANKSYNC_DB_PATH", db_data.get("path", DEFAULT_DB_PATH))
    return DatabaseConfig(path=_resolve_path(db_path_str, config_path))


def _build_security_config(security_data: dict) -> SecurityConfig:
    """Build security config from TOML data and env vars."""
    encryption_key = os.environ.get(
        "BANKSYNC_ENCRYPTION_KEY", security_data.get("encryption_key") or None
    )
    return SecurityConfig(encryption_key=encryption_key)


def _build_credentials_config(data: dict, config_path: Path | None) -> CredentialsConfig:
    """Build credential cache config."""
    cache_path_str = os.environ.get(
        "BANKSYNC_CREDENTIALS_PATH", data.get("cache_path", DEFAULT_CREDENTIALS_PATH)
    )
    return CredentialsConfig(cache_path=_resolve_path(cache_path_str, config_path))


def _build_sync_config(data: dict) -> SyncConfig:
    """Build sync config, falling back to dataclass defaults per key."""
    defaults = SyncConfig()
    return SyncConfig(
        lookback_days=int(data.get("lookback_days", defaults.lookback_days)),
        overlap_days=int(data.get("overlap_days", defaults.overlap_days)),
        stale_after_hours=float(data.get("stale_after_hours", defaults.stale_after_hours)),
        link_initial_delay=float(data.get("link_initial_delay", defaults.link_initial_delay)),
        link_retry_delay=float(data.get("link_retry_delay", defaults.link_retry_delay)),
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        base_delay=float(data.get("base_delay", defaults.base_delay)),
        reference_prefix=data.get("reference_prefix", defaults.reference_prefix),
        default_currency=data.get("default_currency", defaults.default_currency),
    )


def _build_logging_config(data: dict, config_path: Path | None) -> LoggingConfig:
    """Build logging config from TOML data and env vars."""
    level = os.environ.get("BANKSYNC_LOG_LEVEL", data.get("level", "INFO")).upper()
    file_str = os.environ.get("BANKSYNC_LOG_FILE", data.get("file") or "")
    log_file = _resolve_path(file_str, config_path) if file_str else None
    return LoggingConfig(level=level, file=log_file)


def _build_institutions(data: dict) -> dict[str, str]:
    """Build the institution key to aggregator institution ID mapping."""
    return {str(key): str(value) for key, value in data.items()}
