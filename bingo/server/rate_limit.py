"""Per-connection message throttling."""

import time


class TokenBucket:
    """Token bucket: refills at `rate` tokens/second up to `burst`.

    consume() spends one token and returns False once the bucket is dry.
    """

    def __init__(self, rate: float, burst: int) -> None:
        self._rate = rate
        self._burst = burst
        self._tokens = float(burst)
        self._last_refill = time.monotonic()

    @property
    def tokens(self) -> float:
        return self._tokens

    def consume(self) -> bool:
        now = time.monotonic()
        self._tokens = min(self._burst, self._tokens + (now - self._last_refill) * self._rate)
        self._last_refill = now
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        return True
