"""FIFO semaphore, cancellation token and the retry-with-key-rotation loop."""

from __future__ import annotations

import asyncio

import pytest

from paperburner.concurrency import (
    CHUNK_RETRY,
    DOCUMENT_RETRY,
    CancellationToken,
    FifoSemaphore,
    RetryPolicy,
    charge_failure,
    run_with_key_rotation,
)
from paperburner.errors import (
    AuthenticationError,
    CredentialExhaustedError,
    DocumentProcessingError,
    ProcessingCancelledError,
    ProviderError,
)
from paperburner.keys import KeyPoolManager

NO_BACKOFF = RetryPolicy(max_attempts=3, backoff_base=0.0)


def _pools(*keys: str) -> KeyPoolManager:
    pools = KeyPoolManager()
    pools.set_keys("p", keys)
    return pools


# =========================================================================
# 1. FifoSemaphore
# =========================================================================


class TestFifoSemaphore:
    def test_rejects_zero_permits(self):
        with pytest.raises(ValueError):
            FifoSemaphore(0)

    def test_bounds_in_flight_work(self):
        async def scenario():
            sem = FifoSemaphore(3)
            state = {"now": 0, "max": 0}

            async def worker():
                async with sem:
                    state["now"] += 1
                    state["max"] = max(state["max"], state["now"])
                    await asyncio.sleep(0.01)
                    state["now"] -= 1

            await asyncio.gather(*(worker() for _ in range(12)))
            return state["max"], sem.available

        peak, available = asyncio.run(scenario())
        assert peak == 3
        assert available == 3

    def test_waiters_are_served_in_arrival_order(self):
        async def scenario():
            sem = FifoSemaphore(1)
            order: list[int] = []
            await sem.acquire()

            async def waiter(i: int):
                async with sem:
                    order.append(i)
                    await asyncio.sleep(0)

            tasks = []
            for i in range(5):
                tasks.append(asyncio.ensure_future(waiter(i)))
                await asyncio.sleep(0)
            assert sem.waiting == 5
            sem.release()
            await asyncio.gather(*tasks)
            return order

        assert asyncio.run(scenario()) == [0, 1, 2, 3, 4]

    def test_release_hands_permit_to_waiter_not_late_arrival(self):
        async def scenario():
            sem = FifoSemaphore(1)
            order: list[str] = []
            await sem.acquire()

            async def take(name: str):
                async with sem:
                    order.append(name)

            first = asyncio.ensure_future(take("queued"))
            await asyncio.sleep(0)
            sem.release()
            assert sem.locked()
            late = asyncio.ensure_future(take("late"))
            await asyncio.gather(first, late)
            return order

        assert asyncio.run(scenario()) == ["queued", "late"]

    def test_cancelled_waiter_is_skipped(self):
        async def scenario():
            sem = FifoSemaphore(1)
            order: list[str] = []
            await sem.acquire()

            async def take(name: str):
                async with sem:
                    order.append(name)

            a = asyncio.ensure_future(take("a"))
            b = asyncio.ensure_future(take("b"))
            await asyncio.sleep(0)
            a.cancel()
            await asyncio.gather(a, return_exceptions=True)
            sem.release()
            await b
            return order, sem.available

        order, available = asyncio.run(scenario())
        assert order == ["b"]
        assert available == 1

    def test_permit_handed_to_cancelled_waiter_moves_on(self):
        async def scenario():
            sem = FifoSemaphore(1)
            order: list[str] = []
            await sem.acquire()

            async def take(name: str):
                async with sem:
                    order.append(name)

            a = asyncio.ensure_future(take("a"))
            b = asyncio.ensure_future(take("b"))
            await asyncio.sleep(0)
            sem.release()
            a.cancel()
            results = await asyncio.gather(a, b, return_exceptions=True)
            return order, results, sem.available

        order, results, available = asyncio.run(scenario())
        assert order == ["b"]
        assert isinstance(results[0], asyncio.CancelledError)
        assert available == 1


# =========================================================================
# 2. CancellationToken
# =========================================================================


class TestCancellationToken:
    def test_cancel_cancels_registered_tasks(self):
        async def scenario():
            token = CancellationToken()
            task = token.register(asyncio.ensure_future(asyncio.sleep(10)))
            await asyncio.sleep(0)
            token.cancel()
            result = await asyncio.gather(task, return_exceptions=True)
            return token.cancelled, result[0]

        cancelled, outcome = asyncio.run(scenario())
        assert cancelled is True
        assert isinstance(outcome, asyncio.CancelledError)

    def test_sleep_wakes_up_on_cancel(self):
        async def scenario():
            token = CancellationToken()

            async def sleeper():
                await token.sleep(10)

            task = asyncio.ensure_future(sleeper())
            await asyncio.sleep(0)
            token.cancel()
            return await asyncio.wait_for(
                asyncio.gather(task, return_exceptions=True), timeout=2
            )

        (outcome,) = asyncio.run(scenario())
        assert isinstance(outcome, ProcessingCancelledError)

    def test_raise_if_cancelled(self):
        async def scenario():
            token = CancellationToken()
            token.raise_if_cancelled()
            token.cancel()
            token.raise_if_cancelled()

        with pytest.raises(ProcessingCancelledError):
            asyncio.run(scenario())


# =========================================================================
# 3. Retry policy and key rotation
# =========================================================================


class TestRetryPolicy:
    def test_linear_backoff(self):
        assert [CHUNK_RETRY.delay_for(n) for n in (1, 2)] == [1.0, 2.0]
        assert [DOCUMENT_RETRY.delay_for(n) for n in (1, 2)] == [2.0, 4.0]
        assert CHUNK_RETRY.max_attempts == DOCUMENT_RETRY.max_attempts == 3


class TestChargeFailure:
    def test_chained_auth_error_blacklists_named_key_only(self):
        pools = KeyPoolManager()
        pools.set_keys("ocr", ["o1"])
        pools.set_keys("tr", ["t1"])
        try:
            try:
                raise AuthenticationError("401", status=401, key="o1")
            except AuthenticationError as exc:
                raise DocumentProcessingError("a.pdf", "failed") from exc
        except DocumentProcessingError as wrapped:
            charge_failure(pools, {"ocr": "o1", "tr": "t1"}, wrapped)

        assert pools.is_blacklisted("ocr", "o1")
        assert not pools.is_blacklisted("tr", "t1")

    def test_soft_error_counts_against_every_key(self):
        pools = KeyPoolManager()
        pools.set_keys("ocr", ["o1"])
        pools.set_keys("tr", ["t1"])
        charge_failure(pools, {"ocr": "o1", "tr": "t1"}, ProviderError("boom", status=500))
        assert pools.key_stats("ocr")[0]["errors"] == 1
        assert pools.key_stats("tr")[0]["errors"] == 1
        assert pools.available_count("ocr") == 1


def _rotate(operation, pools, **kwargs):
    kwargs.setdefault("policy", NO_BACKOFF)
    return asyncio.run(
        run_with_key_rotation(
            operation,
            key_pools=pools,
            pools=["p"],
            semaphore=FifoSemaphore(1),
            **kwargs,
        )
    )


class TestRunWithKeyRotation:
    def test_first_attempt_success(self):
        async def op(keys, attempt):
            return f"ok:{keys['p']}:{attempt}"

        outcome = _rotate(op, _pools("a", "b"))
        assert outcome.success
        assert outcome.value == "ok:a:1"
        assert outcome.attempts == 1

    def test_soft_failure_rotates_to_untried_key(self):
        seen: list[str] = []

        async def op(keys, attempt):
            seen.append(keys["p"])
            if attempt == 1:
                raise ProviderError("502", status=502, key=keys["p"])
            return "done"

        pools = _pools("a", "b")
        outcome = _rotate(op, pools)
        assert outcome.success and outcome.attempts == 2
        assert seen == ["a", "b"]
        assert pools.is_blacklisted("p", "a") is False
        assert pools.key_stats("p")[0]["errors"] == 1

    def test_auth_failure_blacklists_key(self):
        async def op(keys, attempt):
            if keys["p"] == "a":
                raise AuthenticationError("401", status=401, key="a")
            return keys["p"]

        pools = _pools("a", "b")
        outcome = _rotate(op, pools)
        assert outcome.value == "b"
        assert outcome.attempts == 2
        assert pools.is_blacklisted("p", "a")

    def test_initial_key_is_used_first(self):
        async def op(keys, attempt):
            return keys["p"]

        outcome = _rotate(op, _pools("a", "b", "c"), initial_keys={"p": "c"})
        assert outcome.value == "c"

    def test_blacklisted_initial_key_is_replaced(self):
        async def op(keys, attempt):
            return keys["p"]

        pools = _pools("a", "b")
        pools.mark_invalid("p", "b")
        outcome = _rotate(op, pools, initial_keys={"p": "b"})
        assert outcome.value == "a"

    def test_exhaustion_stops_without_backoff(self):
        retries: list[int] = []

        async def op(keys, attempt):
            raise ProviderError("boom", status=500, key=keys["p"])

        outcome = _rotate(
            op,
            _pools("only"),
            policy=RetryPolicy(max_attempts=3, backoff_base=30.0),
            on_retry=lambda n, exc, delay: retries.append(n),
        )
        assert not outcome.success
        assert outcome.attempts == 1
        assert isinstance(outcome.error, CredentialExhaustedError)
        assert "credential exhaustion" in str(outcome.error)
        assert retries == []

    def test_gives_up_after_max_attempts(self):
        delays: list[float] = []

        async def op(keys, attempt):
            raise ProviderError(f"fail {attempt}", status=500, key=keys["p"])

        outcome = _rotate(
            op,
            _pools("a", "b", "c", "d", "e"),
            policy=RetryPolicy(max_attempts=3, backoff_base=0.01),
            on_retry=lambda n, exc, delay: delays.append(delay),
        )
        assert outcome.attempts == 3
        assert isinstance(outcome.error, ProviderError)
        assert str(outcome.error) == "fail 3"
        assert delays == [0.01, 0.02]
        assert outcome.tried["p"] == {"a", "b", "c"}

    def test_empty_pool_is_exhausted_immediately(self):
        async def op(keys, attempt):
            raise AssertionError("must not be called")

        outcome = _rotate(op, _pools())
        assert outcome.attempts == 0
        assert isinstance(outcome.error, CredentialExhaustedError)

    def test_cancellation_propagates(self):
        async def op(keys, attempt):
            raise ProcessingCancelledError("stop")

        with pytest.raises(ProcessingCancelledError):
            _rotate(op, _pools("a", "b"))

    def test_cancelled_token_stops_before_first_attempt(self):
        async def scenario():
            token = CancellationToken()
            token.cancel()

            async def op(keys, attempt):
                return "never"

            return await run_with_key_rotation(
                op,
                key_pools=_pools("a"),
                pools=["p"],
                semaphore=FifoSemaphore(1),
                policy=NO_BACKOFF,
                cancel_token=token,
            )

        with pytest.raises(ProcessingCancelledError):
            asyncio.run(scenario())

    def test_semaphore_is_released_between_attempts(self):
        async def scenario():
            sem = FifoSemaphore(1)
            pools = _pools("a", "b")

            async def op(keys, attempt):
                assert sem.locked()
                if attempt == 1:
                    raise ProviderError("once", status=500, key=keys["p"])
                return "ok"

            outcome = await run_with_key_rotation(
                op, key_pools=pools, pools=["p"], semaphore=sem, policy=NO_BACKOFF
            )
            return outcome, sem.available

        outcome, available = asyncio.run(scenario())
        assert outcome.success
        assert available == 1
