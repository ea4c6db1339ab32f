"""Credential management for the open-banking aggregator.

The aggregator hands out a short-lived access token and a longer-lived
refresh token in exchange for the application's client secrets. The pair is
an application-level secret shared by every user of one installation, cached
in a single record and renewed transparently by :class:`TokenManager`.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import httpx
from cryptography.fernet import Fernet, InvalidToken

from banksync.config import AggregatorConfig, SecurityConfig

log = logging.getLogger('banksync.auth')


class AuthFailure(Exception):
    """Raised when neither refreshing nor issuing a token succeeds."""

    pass


@dataclass
class CredentialPair:
    """Cached access/refresh token pair."""

    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        """Check if the access token can still be used."""
        return now < self.expires_at


class TokenEncryption:
    """Handles encryption and decryption of cached tokens."""

    def __init__(self, encryption_key: str | None):
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    def encrypt(self, value: str) -> str:
        """Encrypt a value if encryption is configured."""
        if self._fernet:
            return self._fernet.encrypt(value.encode()).decode()
        return value

    def decrypt(self, value: str) -> str:
        """Decrypt a value if encryption is configured."""
        if self._fernet:
            return self._fernet.decrypt(value.encode()).decode()
        return value


class CredentialStore(Protocol):
    """Persistence for the single credential pair of an installation."""

    def load(self) -> CredentialPair | None: ...

    def save(self, pair: CredentialPair) -> None: ...

    def clear(self) -> None: ...


class MemoryCredentialStore:
    """Credential store that keeps the pair in memory only."""

    def __init__(self, pair: CredentialPair | None = None):
        self.pair = pair
        self.save_count = 0

    def load(self) -> CredentialPair | None:
        return self.pair

    def save(self, pair: CredentialPair) -> None:
        self.pair = pair
        self.save_count += 1

    def clear(self) -> None:
        self.pair = None


class FileCredentialStore:
    """Credential store backed by one JSON file, overwritten whole on save.

    There is no locking: at most one process may manage the file.
    """

    def __init__(self, path: Path, security_config: SecurityConfig | None = None):
        self._path = path
        self._encryption = TokenEncryption(
            security_config.encryption_key if security_config else None
        )

    @property
    def path(self) -> Path:
        """Location of the cache file."""
        return self._path

    def load(self) -> CredentialPair | None:
        """Load the cached pair, discarding an unreadable file."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text())
            return CredentialPair(
                access_token=self._encryption.decrypt(data["access_token"]),
                refresh_token=self._encryption.decrypt(data["refresh_token"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (OSError, ValueError, KeyError, TypeError, InvalidToken) as e:
            log.warning(f'Discarding unreadable credential cache {self._path}: {e!r}')
            self.clear()
            return None

    def save(self, pair: CredentialPair) -> None:
        """Write the pair, replacing any previous content."""
        data = {
            "access_token": self._encryption.encrypt(pair.access_token),
            "refresh_token": self._encryption.encrypt(pair.refresh_token),
            "expires_at": pair.expires_at.isoformat(),
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2))
        log.debug(f'Credential cache written to {self._path}')

    def clear(self) -> None:
        """Delete the cache file if present."""
        self._path.unlink(missing_ok=True)


class TokenManager:
    """Hands out a valid access token, refreshing or re-issuing as needed.

    ``expires_at`` is always ``issue time + validity window`` from config,
    never the lifetime reported by the aggregator, so tokens are retired
    before the aggregator would reject them.

    Not safe for concurrent refreshes from several tasks or processes.
    """

    def __init__(
        self,
        config: AggregatorConfig,
        store: CredentialStore,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._config = config
        self._store = store
        self._clock = clock
        self._validity = timedelta(seconds=config.token_validity_seconds)
        self._pair: CredentialPair | None = None
        self._loaded = False

    @property
    def credentials(self) -> CredentialPair | None:
        """The currently cached pair, if any."""
        self._ensure_loaded()
        return self._pair

    async def get_valid_token(self) -> str:
        """Return an access token that is valid right now."""
        self._ensure_loaded()
        if self._pair and self._pair.is_valid(self._clock()):
            return self._pair.access_token
        if self._pair and self._pair.refresh_token:
            try:
                return await self._refresh(self._pair.refresh_token)
            except (httpx.HTTPError, KeyError, ValueError) as e:
                log.info(f'Token refresh failed ({e!r}), issuing a new token pair')
                self.clear()
        return await self._issue()

    def clear(self) -> None:
        """Forget the cached pair in memory and in the store."""
        self._pair = None
        self._store.clear()

    def _ensure_loaded(self) -> None:
        """Load the persisted pair once; an expired pair counts as no cache."""
        if self._loaded:
            return
        self._loaded = True
        pair = self._store.load()
        if pair is not None and not pair.is_valid(self._clock()):
            log.info('Cached credentials expired, discarding cache')
            self._store.clear()
            pair = None
        self._pair = pair

    async def _refresh(self, refresh_token: str) -> str:
        """Exchange the refresh token for a new access token."""
        log.info('Refreshing access token')
        data = await self._post("token/refresh/", {"refresh": refresh_token})
        self._pair = CredentialPair(
            access_token=data["access"],
            refresh_token=refresh_token,
            expires_at=self._clock() + self._validity,
        )
        self._store.save(self._pair)
        return self._pair.access_token

    async def _issue(self) -> str:
        """Issue a brand-new token pair from the client secrets."""
        if not self._config.has_credentials:
            raise AuthFailure("Aggregator secret_id/secret_key are not configured")
        log.info('Issuing new token pair')
        try:
            data = await self._post(
                "token/new/",
                {"secret_id": self._config.secret_id, "secret_key": self._config.secret_key},
            )
            self._pair = CredentialPair(
                access_token=data["access"],
                refresh_token=data["refresh"],
                expires_at=self._clock() + self._validity,
            )
        except (httpx.HTTPError, KeyError, ValueError) as e:
            self._pair = None
            raise AuthFailure(f"Could not obtain aggregator token: {e}") from e
        self._store.save(self._pair)
        return self._pair.access_token

    async def _post(self, endpoint: str, payload: dict) -> dict:
        """POST to a token endpoint and return the decoded body."""
        async with httpx.AsyncClient(
            base_url=self._config.base_url.rstrip("/") + "/",
            timeout=self._config.request_timeout,
        ) as client:
            response = await client.post(
                endpoint, json=payload, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
            return response.json()
