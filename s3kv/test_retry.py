import time

import anyio
import pytest

from s3kv.errors import ErrorKind, KvStoreError
from s3kv.retry import Outcome, RetryPolicy, RetryState, run_with_retry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_delays_are_monotonic_and_capped() -> None:
    policy = RetryPolicy(max_retries=10, initial_delay=0.5, max_delay=4.0, jitter=False)
    delays = [policy.next_delay(attempt, Outcome.SERVER_ERROR) for attempt in range(1, 10)]
    assert delays == [0.5, 1.0, 2.0, 4.0, 4.0, 4.0, 4.0, 4.0, 4.0]
    assert policy.next_delay(10, Outcome.SERVER_ERROR) is None


def test_jitter_stays_between_base_and_cap() -> None:
    policy = RetryPolicy(max_retries=8, initial_delay=1.0, max_delay=5.0)
    for attempt in range(1, 8):
        base = policy.backoff(attempt)
        for _ in range(20):
            delay = policy.next_delay(attempt, Outcome.THROTTLED)
            assert delay is not None
            assert base <= delay <= min(5.0, 2 * base)


@pytest.mark.parametrize("outcome", [Outcome.SUCCESS, Outcome.FATAL])
def test_terminal_outcomes_are_not_retried(outcome: Outcome) -> None:
    assert RetryPolicy().next_delay(1, outcome) is None


def test_huge_attempt_counts_do_not_overflow() -> None:
    policy = RetryPolicy(max_retries=10_000, jitter=False)
    assert policy.next_delay(5_000, Outcome.NETWORK_UNAVAILABLE) == policy.max_delay


@pytest.mark.parametrize(
    "kwargs",
    [{"max_retries": 0}, {"initial_delay": 0}, {"max_delay": -1.0}],
)
def test_policy_validation(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_outcome_classification() -> None:
    assert Outcome.from_status(200) is Outcome.SUCCESS
    assert Outcome.from_status(503) is Outcome.THROTTLED
    assert Outcome.from_status(500) is Outcome.SERVER_ERROR
    assert Outcome.from_status(404) is Outcome.FATAL
    assert Outcome.from_error(KvStoreError.unavailable("no route")) is Outcome.NETWORK_UNAVAILABLE
    assert (
        Outcome.from_error(KvStoreError(ErrorKind.UNAVAILABLE, "boom", status_code=500))
        is Outcome.SERVER_ERROR
    )
    assert Outcome.from_error(KvStoreError(ErrorKind.THROTTLED, "slow")) is Outcome.THROTTLED
    assert Outcome.from_error(KvStoreError.permission_denied("no")) is Outcome.FATAL


@pytest.mark.anyio
async def test_run_with_retry_recovers() -> None:
    policy = RetryPolicy(max_retries=3, initial_delay=0.001, max_delay=0.01)
    attempts: list[int] = []

    async def operation(state: RetryState) -> str:
        attempts.append(state.attempt)
        if state.attempt < 3:
            raise KvStoreError.unavailable("connection reset")
        return "ok"

    start = time.monotonic()
    assert await run_with_retry(operation, policy) == "ok"
    assert attempts == [1, 2, 3]
    # 1ms + 2ms of backoff at least
    assert time.monotonic() - start >= 0.003


@pytest.mark.anyio
async def test_run_with_retry_reraises_last_transient_error() -> None:
    policy = RetryPolicy(max_retries=2, initial_delay=0.001, max_delay=0.001)
    errors = [KvStoreError.unavailable("first"), KvStoreError.unavailable("second")]

    async def operation(state: RetryState) -> None:
        raise errors[state.attempt - 1]

    with pytest.raises(KvStoreError) as exc_info:
        await run_with_retry(operation, policy)
    assert exc_info.value is errors[1]


@pytest.mark.anyio
async def test_run_with_retry_does_not_retry_fatal_errors() -> None:
    calls = 0

    async def operation(state: RetryState) -> None:
        nonlocal calls
        calls += 1
        raise KvStoreError.invalid_argument("bad key")

    with pytest.raises(KvStoreError) as exc_info:
        await run_with_retry(operation, RetryPolicy(initial_delay=0.001))
    assert exc_info.value.kind is ErrorKind.INVALID_ARGUMENT
    assert calls == 1


@pytest.mark.anyio
async def test_run_with_retry_deadline_cuts_backoff() -> None:
    policy = RetryPolicy(max_retries=32, initial_delay=10.0, max_delay=10.0, jitter=False)

    async def operation(state: RetryState) -> None:
        raise KvStoreError.unavailable("down")

    start = time.monotonic()
    with pytest.raises(KvStoreError) as exc_info:
        await run_with_retry(operation, policy, timeout=0.05)
    assert exc_info.value.kind is ErrorKind.DEADLINE_EXCEEDED
    assert time.monotonic() - start < 5


@pytest.mark.anyio
async def test_run_with_retry_deadline_cuts_slow_attempt() -> None:
    async def operation(state: RetryState) -> None:
        await anyio.sleep(10)

    with pytest.raises(KvStoreError) as exc_info:
        await run_with_retry(operation, RetryPolicy(), timeout=0.05)
    assert exc_info.value.kind is ErrorKind.DEADLINE_EXCEEDED
