"""In-memory store of short-lived download tokens.

Each token stands for one resolved source: the canonical URL, the title used
to name the file and the containers known for its encodings. Records never
change after mint. Expiry is checked on every lookup, so the periodic sweep
only reclaims memory and is never what keeps an expired token from working.

Evicted tokens leave a tombstone for ``TOKEN_TOMBSTONE_SECONDS`` so that a
client coming back late is told the link expired instead of that it never
existed.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from config.settings import TOKEN_TOMBSTONE_SECONDS, TOKEN_TTL_SECONDS

logger = logging.getLogger(__name__)

_MAX_MINT_ATTEMPTS = 8


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Return a URL-safe token: 144 random bits plus a hex millisecond stamp."""
    return f"{secrets.token_urlsafe(18)}{int(time.time() * 1000):x}"


def token_label(token: str) -> str:
    """Shortened token for log lines."""
    return (token or "")[:8]


@dataclass(frozen=True)
class TokenRecord:
    token: str
    resolved_url: str
    title: str
    default_container: str
    expires_at: datetime
    containers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def container_for(self, selector: Optional[str]) -> str:
        if selector and self.containers.get(selector):
            return self.containers[selector]
        return self.default_container


class LookupStatus(str, Enum):
    FOUND = "found"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TokenLookup:
    status: LookupStatus
    record: Optional[TokenRecord] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class TokenStore:
    """Thread-safe token map with lazy expiry and bulk sweeping.

    The lock only guards dictionary work; callers never hold it across I/O.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = TOKEN_TTL_SECONDS,
        tombstone_seconds: float = TOKEN_TOMBSTONE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._tombstone_retention = timedelta(seconds=tombstone_seconds)
        self._clock = clock
        self._token_factory = token_factory
        self._records: dict[str, TokenRecord] = {}
        # token -> expires_at of the evicted record
        self._tombstones: dict[str, datetime] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl.total_seconds()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def mint(
        self,
        resolved_url: str,
        title: str,
        default_container: str,
        *,
        ttl_seconds: Optional[float] = None,
        containers: Optional[Mapping[str, str]] = None,
    ) -> str:
        return self.mint_record(
            resolved_url,
            title,
            default_container,
            ttl_seconds=ttl_seconds,
            containers=containers,
        ).token

    def mint_record(
        self,
        resolved_url: str,
        title: str,
        default_container: str,
        *,
        ttl_seconds: Optional[float] = None,
        containers: Optional[Mapping[str, str]] = None,
    ) -> TokenRecord:
        """Like ``mint`` but return the stored record."""
        ttl = self._ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)
        expires_at = self._clock() + ttl
        frozen_containers = MappingProxyType(dict(containers or {}))

        with self._lock:
            for _ in range(_MAX_MINT_ATTEMPTS):
                token = self._token_factory()
                if token in self._records or token in self._tombstones:
                    logger.warning("Token collision on mint; regenerating (token=%s)", token_label(token))
                    continue
                record = TokenRecord(
                    token=token,
                    resolved_url=resolved_url,
                    title=title,
                    default_container=default_container,
                    expires_at=expires_at,
                    containers=frozen_containers,
                )
                self._records[token] = record
                return record
        raise RuntimeError(f"token generation collided {_MAX_MINT_ATTEMPTS} times in a row")

    def lookup(self, token: str) -> TokenLookup:
        now = self._clock()
        with self._lock:
            record = self._records.get(token)
            if record is None:
                if token in self._tombstones:
                    return TokenLookup(LookupStatus.EXPIRED)
                return TokenLookup(LookupStatus.NOT_FOUND)
            if record.is_expired(now):
                del self._records[token]
                self._tombstones[token] = record.expires_at
                return TokenLookup(LookupStatus.EXPIRED)
            return TokenLookup(LookupStatus.FOUND, record)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Evict expired records and forget stale tombstones.

        Returns:
            Number of records evicted by this pass.
        """
        now = now or self._clock()
        purge_before = now - self._tombstone_retention
        with self._lock:
            expired = [token for token, record in self._records.items() if record.is_expired(now)]
            for token in expired:
                record = self._records.pop(token)
                self._tombstones[token] = record.expires_at
            stale = [token for token, expires_at in self._tombstones.items() if expires_at <= purge_before]
            for token in stale:
                del self._tombstones[token]
        if stale:
            logger.debug("Forgot %d token tombstones", len(stale))
        return len(expired)
