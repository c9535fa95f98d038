"""Per-host request spacing shared by all threads of one fetcher, backed by pyrate-limiter."""

import logging
import threading
from typing import Dict, Optional, Tuple

from pyrate_limiter import Duration, Limiter, Rate
from pyrate_limiter.buckets import InMemoryBucket

logger = logging.getLogger(__name__)

# Longest a caller waits for a slot before the limiter gives up
MAX_DELAY_MS = int(Duration.HOUR)


class HostRateLimiter:
    """
    Registry of one pyrate-limiter ``Limiter`` per host, each admitting one request per
    interval.

    ``acquire`` blocks until the host's bucket admits the request. Callers for the same
    host queue behind the limiter's own lock; hosts never block each other. A host whose
    interval changes (policy reload) gets a fresh bucket.
    """

    def __init__(self, max_delay_ms: int = MAX_DELAY_MS):
        self.max_delay_ms = max_delay_ms
        self._lock = threading.Lock()
        self._limiters: Dict[str, Tuple[int, Limiter]] = {}

    def _limiter_for(self, host: str, interval_ms: int) -> Limiter:
        with self._lock:
            entry = self._limiters.get(host)
            if entry is not None and entry[0] == interval_ms:
                return entry[1]
            limiter = Limiter(
                InMemoryBucket([Rate(1, interval_ms)]),
                raise_when_fail=False,
                max_delay=self.max_delay_ms,
                retry_until_max_delay=True,
            )
            self._limiters[host] = (interval_ms, limiter)
            logger.debug(f"Rate limiter for {host}: 1 request / {interval_ms}ms")
            return limiter

    def acquire(self, host: str, interval: float) -> None:
        """
        Block until a request to host is allowed.

        Args:
            host: Canonical host name
            interval: Minimum seconds between requests; 0 or less disables spacing

        Raises:
            RuntimeError: If the limiter gives up after ``max_delay_ms``
        """
        interval_ms = int(round(interval * 1000))
        if interval_ms <= 0:
            return
        limiter = self._limiter_for(host, interval_ms)
        if limiter.try_acquire(host) is not True:
            raise RuntimeError(f"Rate limiter for {host} did not grant a slot")

    def interval_ms(self, host: str) -> Optional[int]:
        with self._lock:
            entry = self._limiters.get(host)
            return entry[0] if entry else None
