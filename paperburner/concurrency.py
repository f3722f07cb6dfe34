"""Admission control, cancellation and retry for concurrent provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Mapping, Optional, Sequence, TypeVar

from .errors import (
    AuthenticationError,
    CredentialExhaustedError,
    ProcessingCancelledError,
    find_cause,
)
from .keys import KeyPoolManager, mask_key

log = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# FIFO semaphore
# ---------------------------------------------------------------------------


class FifoSemaphore:
    """Counting semaphore that hands permits to waiters in arrival order.

    ``release()`` passes the permit straight to the oldest waiter instead
    of incrementing the counter, so a late ``acquire()`` can never jump
    the queue.
    """

    def __init__(self, permits: int) -> None:
        if permits < 1:
            raise ValueError(f"permits must be >= 1, got {permits}")
        self._permits = permits
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def available(self) -> int:
        return self._permits

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def locked(self) -> bool:
        return self._permits == 0

    async def acquire(self) -> None:
        if self._permits > 0:
            self._permits -= 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Permit already handed over; give it to the next waiter.
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._permits += 1

    async def __aenter__(self) -> "FifoSemaphore":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Run-wide cooperative cancellation.

    ``cancel()`` sets the flag and cancels every registered task, which
    aborts in-flight HTTP awaits.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def register(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.cancelled:
            task.cancel()
        return task

    def cancel(self) -> None:
        if self.cancelled:
            return
        log.warning("Processing run cancelled")
        self._event.set()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ProcessingCancelledError("processing cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds unless the run is cancelled first."""
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


# ---------------------------------------------------------------------------
# Bounded retry with key rotation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff: attempt *n* waits ``backoff_base * n`` seconds."""

    max_attempts: int = 3
    backoff_base: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_base * attempt


CHUNK_RETRY = RetryPolicy(max_attempts=3, backoff_base=1.0)
DOCUMENT_RETRY = RetryPolicy(max_attempts=3, backoff_base=2.0)


@dataclass
class AttemptOutcome(Generic[T]):
    """Final value or error of a retried operation."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    keys: dict[str, str] = field(default_factory=dict)
    tried: dict[str, set[str]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.error is None


def charge_failure(
    key_pools: KeyPoolManager, keys: Mapping[str, str], exc: BaseException
) -> None:
    """Blacklist the key an auth error names, else count soft errors."""
    auth = find_cause(exc, AuthenticationError)
    if auth is not None:
        for pool, key in keys.items():
            if key == auth.key:
                key_pools.mark_invalid(pool, key)
                return
    for pool, key in keys.items():
        key_pools.record_error(pool, key)


async def run_with_key_rotation(
    operation: Callable[[dict[str, str], int], Awaitable[T]],
    *,
    key_pools: KeyPoolManager,
    pools: Sequence[str],
    semaphore: FifoSemaphore,
    policy: RetryPolicy,
    initial_keys: Optional[Mapping[str, str]] = None,
    cancel_token: Optional[CancellationToken] = None,
    label: str = "",
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> AttemptOutcome[T]:
    """Run *operation* with fresh keys per attempt until it succeeds.

    Each attempt holds one *semaphore* permit and draws, for every pool,
    a key not yet tried by this task. The operation receives
    ``{pool: key}`` and the 1-based attempt number. The loop stops early
    with :class:`CredentialExhaustedError` once a pool has no untried key.
    Cancellation propagates; every other failure ends up in the outcome.
    """
    tried: dict[str, set[str]] = {pool: set() for pool in pools}
    keys: dict[str, str] = {}
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        async with semaphore:
            keys = {}
            for pool in pools:
                key = None
                if attempt == 1 and initial_keys and initial_keys.get(pool):
                    candidate = initial_keys[pool]
                    if not key_pools.is_blacklisted(pool, candidate):
                        key = candidate
                if key is None:
                    key = key_pools.get_specific_key(pool, tried[pool])
                if key is None:
                    return AttemptOutcome(
                        error=_exhausted(pool, last_error),
                        attempts=attempt - 1,
                        tried=tried,
                    )
                tried[pool].add(key)
                keys[pool] = key

            try:
                value = await operation(dict(keys), attempt)
            except (asyncio.CancelledError, ProcessingCancelledError):
                raise
            except Exception as exc:
                last_error = exc
                charge_failure(key_pools, keys, exc)
                log.warning(
                    "%s: attempt %s/%s failed with %s: %s",
                    label,
                    attempt,
                    policy.max_attempts,
                    ", ".join(mask_key(k) for k in keys.values()),
                    exc,
                )
            else:
                return AttemptOutcome(
                    value=value, attempts=attempt, keys=keys, tried=tried
                )

        if attempt >= policy.max_attempts:
            break

        for pool in pools:
            if key_pools.available_count(pool, tried[pool]) == 0:
                return AttemptOutcome(
                    error=_exhausted(pool, last_error),
                    attempts=attempt,
                    keys=keys,
                    tried=tried,
                )

        delay = policy.delay_for(attempt)
        if on_retry is not None:
            on_retry(attempt, last_error, delay)
        if cancel_token is not None:
            await cancel_token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    return AttemptOutcome(
        error=last_error,
        attempts=policy.max_attempts,
        keys=keys,
        tried=tried,
    )


def _exhausted(pool: str, last_error: Optional[BaseException]) -> CredentialExhaustedError:
    message = f"credential exhaustion: no untried {pool} key left"
    if last_error is not None:
        message = f"{message} (last error: {last_error})"
    error = CredentialExhaustedError(pool, message)
    error.__cause__ = last_error
    return error
