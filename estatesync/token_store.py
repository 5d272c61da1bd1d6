from __future__ import annotations

import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from estatesync.errors import DATA_MISMATCH, TOKEN_EXPIRED, TOKEN_INVALID, TokenError
from estatesync.models import serialize_datetime, utc_now
from estatesync.state_store import StateStore

logger = logging.getLogger(__name__)


class ExpiringStore(Protocol):
    def put(self, key: str, value: str, expires_at: datetime) -> None: ...

    def get(self, key: str) -> tuple[str, datetime] | None: ...

    def delete(self, key: str) -> bool: ...

    def sweep(self, now: datetime) -> int: ...


class InMemoryExpiringStore:
    """Process-local store. Tokens do not survive a restart."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str, expires_at: datetime) -> None:
        with self._lock:
            self._items[key] = (value, expires_at)

    def get(self, key: str) -> tuple[str, datetime] | None:
        with self._lock:
            return self._items.get(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def sweep(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, (_, expires_at) in self._items.items() if now > expires_at]
            for key in expired:
                del self._items[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class SqliteExpiringStore:
    """Shares tokens between processes that use the same state database."""

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def put(self, key: str, value: str, expires_at: datetime) -> None:
        self.state_store.put_token(key, value, expires_at)

    def get(self, key: str) -> tuple[str, datetime] | None:
        return self.state_store.get_token(key)

    def delete(self, key: str) -> bool:
        return self.state_store.delete_token(key)

    def sweep(self, now: datetime) -> int:
        return self.state_store.sweep_tokens(now)


@dataclass(frozen=True)
class ConfirmationToken:
    token: str
    snapshot_hash: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"confirmationToken": self.token, "expiresAt": serialize_datetime(self.expires_at)}


class ConfirmationTokenStore:
    def __init__(
        self,
        backend: ExpiringStore | None = None,
        *,
        ttl: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend: ExpiringStore = backend if backend is not None else InMemoryExpiringStore()
        self.ttl = ttl
        self._clock = clock

    def issue(self, snapshot_hash: str) -> ConfirmationToken:
        now = self._clock()
        token = ConfirmationToken(
            token=secrets.token_hex(32),
            snapshot_hash=snapshot_hash,
            expires_at=now + self.ttl,
        )
        self.backend.put(token.token, token.snapshot_hash, token.expires_at)
        self.sweep(now)
        return token

    def redeem(self, token: str, snapshot_hash: str) -> None:
        """Consume ``token`` for the payload hashing to ``snapshot_hash``.

        A hash mismatch leaves the token in place so the exact payload can be
        resubmitted. Expired tokens are removed.
        """
        entry = self.backend.get(token) if token else None
        if entry is None:
            raise TokenError(TOKEN_INVALID)
        stored_hash, expires_at = entry
        if self._clock() > expires_at:
            self.backend.delete(token)
            raise TokenError(TOKEN_EXPIRED)
        if not hmac.compare_digest(stored_hash, snapshot_hash):
            raise TokenError(DATA_MISMATCH)
        if not self.backend.delete(token):
            # Lost a race with a concurrent redeem of the same token.
            raise TokenError(TOKEN_INVALID)

    def sweep(self, now: datetime | None = None) -> int:
        removed = self.backend.sweep(now or self._clock())
        if removed:
            logger.debug("Swept %s expired confirmation tokens", removed)
        return removed


def build_token_store(
    backend_name: str,
    state_store: StateStore,
    *,
    ttl_minutes: int = 15,
    clock: Callable[[], datetime] = utc_now,
) -> ConfirmationTokenStore:
    backend: ExpiringStore
    if backend_name == "sqlite":
        backend = SqliteExpiringStore(state_store)
    else:
        backend = InMemoryExpiringStore()
    return ConfirmationTokenStore(backend, ttl=timedelta(minutes=ttl_minutes), clock=clock)
