import asyncio
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry timing for a single external fetch.

    Rate-limited attempts wait ``base`` seconds, doubling after every
    rate-limited attempt up to ``ceiling``. A server ``Retry-After`` hint
    wins when it is longer than the computed backoff, and is also clamped
    to ``ceiling``. Other failures wait a fixed ``retry_delay`` and are
    abandoned after ``max_retries`` of them.
    """
    base: float = 1.0
    ceiling: float = 60.0
    retry_delay: float = 1.0
    max_retries: int = 3

    def rate_limit_delay(self, backoff: float, retry_after: Optional[float] = None) -> float:
        delay = backoff
        if retry_after and retry_after > delay:
            delay = retry_after
        return min(delay, self.ceiling)

    def next_backoff(self, backoff: float) -> float:
        return min(backoff * 2, self.ceiling)


async def cancellable_sleep(delay: float, cancel_event: Optional[asyncio.Event] = None) -> bool:
    """Sleep for ``delay`` seconds. Returns False if ``cancel_event`` fired first."""
    if cancel_event is not None and cancel_event.is_set():
        return False
    if delay <= 0:
        return True
    if cancel_event is None:
        await asyncio.sleep(delay)
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False
