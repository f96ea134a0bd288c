"""
ratelimit/limiter.py -- Sliding-window rate limiter over the shared event log.

allow() records the request and reads the post-insert count in one serialized
step (UsageStore.record_and_count). A request is allowed iff that count does
not exceed the limit. A denied request has still been recorded, so a retry
storm keeps the window full instead of resetting it.

Fail closed: any exception from the store -- connection refused, lock wait
timeout, statement timeout -- makes allow() return False. An outage must
never look like unlimited headroom.

Pruning: with a small fixed probability per call, events older than the
retention horizon are deleted on a background worker. allow() never waits for
it and prune errors are logged at DEBUG and dropped.

Keying: callers pass client_key(email=..., ip=...). A verified identity wins
over the network origin because rotating source addresses cannot evade it;
the IP key is the fallback for callers that are not signed in yet.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from ratelimit.store import UsageStore

logger = logging.getLogger("pcompass.ratelimit")

DEFAULT_RETENTION_SECONDS = 48 * 3600
DEFAULT_PRUNE_PROBABILITY = 0.02


def client_key(email: str | None = None, ip: str | None = None) -> str:
    """Return the rate-limit key for a caller: email:<addr> or ip:<addr>."""
    email = (email or "").strip().lower()
    if email:
        return f"email:{email}"
    return f"ip:{(ip or '').strip() or 'unknown'}"


class RateLimiter:
    """Shared sliding-window limiter.

    Args:
        store:             UsageStore (or anything with record_and_count / purge_older_than).
        clock:             Time source; SystemClock when omitted.
        retention_seconds: Events older than this are eligible for pruning.
        prune_probability: Chance per allow() call of scheduling a prune.
        rng:               Returns a float in [0, 1). Injected for tests.
    """

    def __init__(
        self,
        store: UsageStore,
        clock: Clock | None = None,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        prune_probability: float = DEFAULT_PRUNE_PROBABILITY,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._retention = retention_seconds
        self._prune_probability = prune_probability
        self._rng = rng
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ratelimit-prune")

    def allow(self, client_key: str, endpoint: str, limit: int, window_seconds: int) -> bool:
        """Record a request for client_key on endpoint; True if within limit."""
        now = self._clock.now()
        try:
            count = self._store.record_and_count(client_key, endpoint, now, window_seconds)
        except Exception as exc:  # fail closed on any datastore error
            logger.warning("Rate limit check failed for %s (%s); denying", endpoint, type(exc).__name__)
            count = None

        if self._rng() < self._prune_probability:
            self._schedule_prune(now)

        if count is None:
            return False
        return count <= limit

    def _schedule_prune(self, now: int) -> None:
        try:
            self._executor.submit(self._prune, now - self._retention)
        except RuntimeError:
            # Executor already shut down (application stopping).
            pass

    def _prune(self, cutoff: int) -> None:
        try:
            removed = self._store.purge_older_than(cutoff)
            logger.debug("Pruned %d rate-limit events", removed)
        except Exception as exc:
            logger.debug("Rate-limit prune failed (%s)", type(exc).__name__)

    def close(self, wait: bool = True) -> None:
        """Stop the prune worker. Pending prunes finish first when wait=True."""
        self._executor.shutdown(wait=wait)
