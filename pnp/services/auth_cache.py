from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class CachedDecision:
    permitted: bool
    # Absolute epoch seconds after which the decision is treated as absent.
    expires_at: float
    reason: int = 0


class BadAuthCache:
    """Negative cache of tokens that recently failed validation."""

    def __init__(self, *, ttl_s: float = 30.0, time_source: Callable[[], float] | None = None) -> None:
        self._ttl_s = ttl_s
        self._time = time_source or time.time
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def add_bad_auth(self, token: str) -> None:
        if not token:
            return
        with self._lock:
            self._entries[token] = self._time() + self._ttl_s

    def is_bad_auth(self, token: str) -> bool:
        if not token:
            return False
        now = self._time()
        with self._lock:
            expires_at = self._entries.get(token)
            if expires_at is None:
                return False
            if expires_at <= now:
                # Drop expired entries on first lookup after expiry.
                self._entries.pop(token, None)
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DecisionCache:
    """Positive and negative credential decisions keyed by token."""

    def __init__(self, *, time_source: Callable[[], float] | None = None) -> None:
        self._time = time_source or time.time
        self._entries: dict[str, CachedDecision] = {}
        self._lock = threading.Lock()

    def get(self, token: str) -> CachedDecision | None:
        now = self._time()
        with self._lock:
            decision = self._entries.get(token)
            if decision is None:
                return None
            if decision.expires_at <= now:
                self._entries.pop(token, None)
                return None
            return decision

    def put(self, token: str, *, permitted: bool, ttl_s: float, reason: int = 0) -> CachedDecision:
        decision = CachedDecision(permitted=permitted, expires_at=self._time() + ttl_s, reason=reason)
        if not token or ttl_s <= 0:
            return decision
        with self._lock:
            self._entries[token] = decision
        return decision

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
