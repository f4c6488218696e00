"""
Evaluation-time enforcement of grant expiry.

Background for newcomers:
    Policies and role assignments may carry ``expires_at``. Casbin knows
    nothing about time, so an expired rule keeps matching until it is removed
    from the engine. ``ExpiryWatch`` remembers the earliest pending expiry it
    has seen; before every evaluation the evaluator calls ``sweep_if_due()``,
    and once that moment has passed the bound sweep (the admin service's
    ``expire_stale_grants``) runs synchronously before any decision is read
    from cache or engine. The background ``ExpirySweeper`` is then only a
    tidy-up, not what makes expiry take effect.

    The watch is per process. Grants created by another process are picked up
    at startup (the stack sweeps once) or when this process next sweeps.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime

from hierarchy_authz.db.base import as_naive_utc, utcnow

from .errors import SubsystemUnavailable

logger = logging.getLogger(__name__)


class ExpiryWatch:
    def __init__(self, now: Callable[[], datetime] = utcnow) -> None:
        self._now = now
        self._lock = threading.RLock()
        self._next: datetime | None = None
        self._sweep: Callable[[datetime], object] | None = None

    @property
    def next_expiry(self) -> datetime | None:
        return self._next

    def bind(self, sweep: Callable[[datetime], object]) -> None:
        self._sweep = sweep

    def note(self, expires_at: datetime | None) -> None:
        """Record a new grant's expiry; only the earliest pending one is kept."""
        expires_at = as_naive_utc(expires_at)
        if expires_at is None:
            return
        with self._lock:
            if self._next is None or expires_at < self._next:
                self._next = expires_at

    def reset(self, next_expiry: datetime | None) -> None:
        with self._lock:
            self._next = as_naive_utc(next_expiry)

    def sweep_if_due(self) -> bool:
        """Run the bound sweep when the earliest expiry has passed. Returns True if it ran."""
        pending = self._next
        if pending is None or self._sweep is None or pending > self._now():
            return False
        # Held across the sweep; concurrent evaluations wait for it.
        with self._lock:
            now = self._now()
            if self._next is None or self._next > now:
                return False
            logger.info("Grant expiry due; sweeping before evaluation due=%s", self._next.isoformat())
            self._sweep(now)
            if self._next is not None and self._next <= now:
                raise SubsystemUnavailable("grant expiry", "expired grants could not all be revoked")
            return True
