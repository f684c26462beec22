from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Mapping, Optional

log = logging.getLogger("sfdelta.api")

# Token cost of a request that submits a job to an org (validate, deploy).
SUBMIT_COST = 3
READ_COST = 1


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: float = 0.0


@dataclass(slots=True)
class _Bucket:
    tokens: float
    updated: float


class TokenBucketRateLimiter:
    """Per-actor token buckets refilled at `rpm` tokens per minute.

    Requests carry a cost: reads and plans take READ_COST, anything that
    submits a deploy job takes SUBMIT_COST. A cost above the bucket
    capacity is clamped to it, so a burst of 1 still admits one submission
    per refill. Buckets live in process memory only.
    """

    def __init__(
        self,
        *,
        rpm: int = 120,
        burst: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        max_identity_len: int = 128,
    ):
        self.rpm = max(1, int(rpm))
        self.capacity = float(burst) if burst else float(max(2, self.rpm))
        self._per_second = self.rpm / 60.0
        self._clock = clock
        self._max_identity_len = max_identity_len
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = Lock()

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "TokenBucketRateLimiter":
        """SFDELTA_RATE_LIMIT_RPM (default 120) and SFDELTA_RATE_LIMIT_BURST (default max(2, rpm))."""

        env = os.environ if env is None else env
        rpm = _int_setting(env, "SFDELTA_RATE_LIMIT_RPM", 120)
        burst = _int_setting(env, "SFDELTA_RATE_LIMIT_BURST", 0)
        return cls(rpm=rpm, burst=burst or None)

    def check(self, identity: str, *, cost: int = READ_COST) -> RateLimitDecision:
        """Take `cost` tokens from the identity's bucket if it holds enough."""

        key = (identity or "anonymous")[: self._max_identity_len]
        need = min(float(max(1, cost)), self.capacity)
        now = self._clock()

        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(self.capacity, now))
            bucket.tokens = min(self.capacity, bucket.tokens + max(0.0, now - bucket.updated) * self._per_second)
            bucket.updated = now

            if bucket.tokens >= need:
                bucket.tokens -= need
                return RateLimitDecision(allowed=True, remaining=bucket.tokens)

            wait = (need - bucket.tokens) / self._per_second
            return RateLimitDecision(
                allowed=False,
                retry_after_seconds=max(1, int(wait + 0.999)),
                remaining=bucket.tokens,
            )


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("invalid_rate_limit_setting", extra={"setting": name, "value": raw})
        return default
