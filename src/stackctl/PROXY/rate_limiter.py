# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Per-zone token bucket rate limiting.
"""
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from ..errors import ConfigurationError
from ..MODELS.routing_config import RateLimitZone
from ..UTILS.logging import get_logger

logger = get_logger(__name__)


class Admission(str, Enum):
    ALLOW = "allow"
    REJECT = "reject"


class TokenBucket:
    """
    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    A new bucket starts full.
    """
    def __init__(self, rate: float, capacity: int, now: float):
        self.rate = rate
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self.updated = now
        self.lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.updated)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.updated = now

    def take(self, now: float) -> bool:
        """Consumes one token if available. Caller holds ``lock``."""
        self._refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def full_at(self) -> float:
        """Clock value at which the bucket is back to capacity."""
        return self.updated + (self.capacity - self.tokens) / self.rate


class _Zone:
    def __init__(self, config: RateLimitZone):
        self.config = config
        self.buckets: Dict[str, TokenBucket] = {}
        self.lock = threading.Lock()


class RateLimiter:
    """
    Admits or rejects requests per zone and key without blocking.

    Idle buckets are swept from within :meth:`admit`, at most once per
    ``idle_ttl``, so the bucket maps stay bounded without a caller having to
    call :meth:`evict_idle`.

    :param zones: Zone definitions.
    :param clock: Monotonic clock in seconds.
    :param idle_ttl: Seconds a bucket must sit unused before it may be evicted.
    """
    def __init__(
        self,
        zones: Iterable[RateLimitZone],
        clock: Callable[[], float] = time.monotonic,
        idle_ttl: float = 60.0,
    ):
        self._zones = {z.name: _Zone(z) for z in zones}
        self._clock = clock
        self.idle_ttl = idle_ttl
        self._next_sweep = clock() + idle_ttl
        self._sweep_lock = threading.Lock()

    def add_zones(self, zones: Iterable[RateLimitZone]) -> List[str]:
        """
        Registers zones not known yet. Zones already present keep their
        buckets.

        :return: Names of the zones added.
        """
        added = {z.name: _Zone(z) for z in zones if z.name not in self._zones}
        if added:
            # Readers look zones up without a lock; publish a new dict.
            self._zones = {**self._zones, **added}
            logger.info("rate-limit zones added", zones=sorted(added))
        return sorted(added)

    def admit(self, zone: str, key: str) -> Admission:
        """
        Charges one token to ``key`` in ``zone``.

        :raises ConfigurationError: For an unknown zone.
        """
        z = self._zones.get(zone)
        if z is None:
            raise ConfigurationError(f"unknown rate-limit zone {zone!r}", {"zone": zone})

        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)

        while True:
            with z.lock:
                bucket = z.buckets.get(key)
                if bucket is None:
                    bucket = TokenBucket(z.config.rate, z.config.burst, now)
                    z.buckets[key] = bucket

            with bucket.lock:
                # Eviction deletes under the bucket lock; a bucket evicted
                # since the lookup is retried with a fresh one.
                if z.buckets.get(key) is bucket:
                    allowed = bucket.take(now)
                    break

        if not allowed:
            logger.debug("request rejected", zone=zone, key=key)
            return Admission.REJECT
        return Admission.ALLOW

    def _sweep(self, now: float) -> None:
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            if now < self._next_sweep:
                return
            self._next_sweep = now + self.idle_ttl
            self._evict(now)
        finally:
            self._sweep_lock.release()

    def evict_idle(self) -> int:
        """
        Drops buckets idle for at least ``idle_ttl`` that would already be full
        again, which makes them indistinguishable from a fresh bucket.

        :return: Number of buckets evicted.
        """
        return self._evict(self._clock())

    def _evict(self, now: float) -> int:
        evicted = 0
        for z in self._zones.values():
            with z.lock:
                for key, bucket in list(z.buckets.items()):
                    with bucket.lock:
                        idle = now - bucket.updated
                        if idle >= self.idle_ttl and now >= bucket.full_at():
                            del z.buckets[key]
                            evicted += 1
        if evicted:
            logger.debug("evicted idle buckets", count=evicted)
        return evicted

    def bucket_count(self, zone: str) -> int:
        return len(self._zones[zone].buckets)

    def tokens(self, zone: str, key: str) -> Optional[float]:
        """Current token count for a key without charging it; None if untracked."""
        bucket = self._zones[zone].buckets.get(key)
        if bucket is None:
            return None
        with bucket.lock:
            bucket._refill(self._clock())
            return bucket.tokens


def key_for(zone: RateLimitZone, client_address: str, headers: Optional[Mapping[str, str]] = None) -> str:
    """
    Derives the bucket key of a request for ``zone``.
    A missing header falls back to the client address.
    """
    if zone.key.startswith("header:"):
        name = zone.key[len("header:"):].lower()
        for k, v in (headers or {}).items():
            if k.lower() == name and v:
                return v
    return client_address
