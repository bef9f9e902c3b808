"""Short-lived storage for OAuth authorization state.

A state nonce binds an authorization request to its callback. Entries are
single use and expire after ``oauth_state_ttl_minutes``.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

import structlog
from litestar.stores.base import Store
from litestar.stores.memory import MemoryStore

from credvault_server.core.clock import Clock, system_clock
from credvault_server.core.config import settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class OAuthFlowState:
    """Who started an authorization and where the provider should send them back."""

    user_id: str
    integration_id: str
    redirect_uri: str
    issued_at: datetime

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.issued_at > ttl

    def to_json(self) -> str:
        data = asdict(self)
        data["issued_at"] = self.issued_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "OAuthFlowState":
        data = json.loads(raw)
        data["issued_at"] = datetime.fromisoformat(data["issued_at"])
        return cls(**data)


class OAuthStateStore(ABC):
    """Where pending authorization states live between redirect and callback."""

    @abstractmethod
    async def put(self, nonce: str, state: OAuthFlowState) -> None:
        """Remember a state under its nonce."""

    @abstractmethod
    async def take_if_valid(self, nonce: str) -> OAuthFlowState | None:
        """Remove and return the state, or None if unknown or expired."""

    @abstractmethod
    async def sweep_expired(self) -> int:
        """Drop expired entries.

        Returns:
            Number of entries removed
        """


class InMemoryOAuthStateStore(OAuthStateStore):
    """Bounded in-process state store with TTL.

    Limits the number of pending states so a flood of authorization requests
    cannot exhaust memory; when full, the oldest entries are evicted. Only
    suitable for a single process.
    """

    def __init__(
        self,
        maxsize: int | None = None,
        ttl_minutes: int | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._cache: OrderedDict[str, OAuthFlowState] = OrderedDict()
        self._maxsize = maxsize or settings.oauth_state_max_entries
        self._ttl = timedelta(minutes=ttl_minutes or settings.oauth_state_ttl_minutes)
        self._clock = clock
        self._lock = asyncio.Lock()

    async def put(self, nonce: str, state: OAuthFlowState) -> None:
        async with self._lock:
            self._cleanup_expired()
            # If at max, evict oldest entry and log warning
            if len(self._cache) >= self._maxsize:
                logger.warning(
                    "OAuth state cache full, evicting oldest entries", maxsize=self._maxsize
                )
            while len(self._cache) >= self._maxsize:
                self._cache.popitem(last=False)
            self._cache[nonce] = state

    async def take_if_valid(self, nonce: str) -> OAuthFlowState | None:
        async with self._lock:
            state = self._cache.pop(nonce, None)
            if state is None or state.is_expired(self._clock.now(), self._ttl):
                return None
            return state

    async def sweep_expired(self) -> int:
        async with self._lock:
            return self._cleanup_expired()

    def __len__(self) -> int:
        return len(self._cache)

    def _cleanup_expired(self) -> int:
        """Remove expired entries. Must be called with lock held."""
        now = self._clock.now()
        before = len(self._cache)
        self._cache = OrderedDict(
            (k, v) for k, v in self._cache.items() if not v.is_expired(now, self._ttl)
        )
        return before - len(self._cache)


class LitestarOAuthStateStore(OAuthStateStore):
    """State store backed by a Litestar ``Store``.

    Use a shared store (e.g. ``RedisStore``) when running more than one
    worker. Expiry is left to the store's own TTL.
    """

    KEY_PREFIX = "oauth_state:"

    def __init__(
        self,
        store: Store,
        ttl_minutes: int | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._store = store
        self._ttl = timedelta(minutes=ttl_minutes or settings.oauth_state_ttl_minutes)
        self._clock = clock
        self._lock = asyncio.Lock()

    async def put(self, nonce: str, state: OAuthFlowState) -> None:
        remaining = self._ttl - (self._clock.now() - state.issued_at)
        if remaining <= timedelta(0):
            return
        await self._store.set(self._key(nonce), state.to_json(), expires_in=remaining)

    async def take_if_valid(self, nonce: str) -> OAuthFlowState | None:
        """Remove and return the state, or None if unknown or expired.

        ``Store`` has no get-and-delete, so the read and the delete are two
        calls. They are serialized within this process, which makes a nonce
        single use per worker. Workers sharing a backend can still both read
        a nonce before either deletes it.
        """
        key = self._key(nonce)
        async with self._lock:
            raw = await self._store.get(key)
            if raw is None:
                return None
            await self._store.delete(key)

        state = OAuthFlowState.from_json(raw)
        if state.is_expired(self._clock.now(), self._ttl):
            return None
        return state

    async def sweep_expired(self) -> int:
        # Shared stores expire keys themselves; only the memory store needs a nudge
        if isinstance(self._store, MemoryStore):
            await self._store.delete_expired()
        return 0

    def _key(self, nonce: str) -> str:
        return f"{self.KEY_PREFIX}{nonce}"
