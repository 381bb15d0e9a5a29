"""
Retry and polling policies

RetryPolicy drives transport-level retries inside the fetcher and
submitter. PollPolicy drives status and propagation polling; it always has
an attempt cap and a total timeout. Waits between attempts go through
`wait_or_cancel`, which returns early when the cancel event is set instead
of sleeping blindly.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, Optional, TypeVar

from loguru import logger

from .errors import TransportError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0 or self.backoff < 1:
            raise ValueError("delay_seconds must be >= 0 and backoff >= 1")

    def delays(self) -> Iterator[float]:
        delay = self.delay_seconds
        for _ in range(self.max_attempts - 1):
            yield delay
            delay *= self.backoff

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=int(data.get("max_attempts", cls.max_attempts)),
            delay_seconds=float(data.get("delay_seconds", cls.delay_seconds)),
            backoff=float(data.get("backoff", cls.backoff)),
        )


@dataclass(frozen=True)
class PollPolicy:
    interval_seconds: float = 1.0
    backoff: float = 1.5
    max_interval_seconds: float = 5.0
    max_attempts: int = 60
    timeout_seconds: float = 120.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval_seconds < 0 or self.backoff < 1:
            raise ValueError("interval_seconds must be >= 0 and backoff >= 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    def intervals(self) -> Iterator[float]:
        """Wait before each attempt after the first."""
        interval = self.interval_seconds
        for _ in range(self.max_attempts - 1):
            yield min(interval, self.max_interval_seconds)
            interval *= self.backoff

    @classmethod
    def from_dict(cls, data: Optional[Dict], base: Optional["PollPolicy"] = None) -> "PollPolicy":
        base = base or cls()
        data = data or {}
        return cls(
            interval_seconds=float(data.get("interval_seconds", base.interval_seconds)),
            backoff=float(data.get("backoff", base.backoff)),
            max_interval_seconds=float(data.get("max_interval_seconds", base.max_interval_seconds)),
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            timeout_seconds=float(data.get("timeout_seconds", base.timeout_seconds)),
        )


DEFAULT_STATUS_POLICY = PollPolicy()
DEFAULT_PROPAGATION_POLICY = PollPolicy(
    interval_seconds=2.0, backoff=1.5, max_interval_seconds=10.0,
    max_attempts=30, timeout_seconds=180.0,
)


async def wait_or_cancel(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """
    Sleep for `delay` seconds.

    Returns:
        True if the cancel event fired during (or before) the wait
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


async def retry_transport(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
) -> T:
    """
    Run `operation`, retrying TransportError with exponential backoff.

    Non-retryable errors propagate immediately. The last TransportError is
    re-raised once attempts are exhausted.
    """
    delays = policy.delays()
    attempt = 1
    while True:
        try:
            return await operation()
        except TransportError as e:
            delay = next(delays, None)
            if delay is None:
                logger.error(f"✗ {description} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"⚠ {description} attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
            attempt += 1
