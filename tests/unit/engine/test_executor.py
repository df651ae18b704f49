"""RetryingExecutor tests."""

import asyncio

from adforge.config import ExecutionConfig
from adforge.directory.adapter import AdapterOutcome, AdapterResult
from adforge.directory.memory_adapter import InMemoryDirectory
from adforge.engine.executor import RetryingExecutor
from adforge.engine.scheduler import CancellationToken
from adforge.errors import PermanentDirectoryError, TransientDirectoryError
from adforge.model.schemas import ObjectType


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyOperation:
    """Raises TransientDirectoryError `failures` times, then returns `result`."""

    def __init__(self, failures: int, result: AdapterResult = AdapterResult.created()) -> None:
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self) -> AdapterResult:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientDirectoryError("server busy")
        return self.result


def make_executor(token: CancellationToken = None, **overrides) -> tuple[RetryingExecutor, FakeSleep]:
    settings = dict(max_attempts=4, base_delay=0.1, max_delay=0.3, call_timeout=1.0)
    settings.update(overrides)
    sleep = FakeSleep()
    return RetryingExecutor(ExecutionConfig(**settings), token, sleep=sleep), sleep


class TestRetryingExecutor:
    async def test_success_first_try(self) -> None:
        executor, sleep = make_executor()
        operation = FlakyOperation(0)

        result = await executor.run(operation, "CN=a", "user")
        assert result.outcome == AdapterOutcome.CREATED
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_transient_failures_are_retried_with_backoff(self) -> None:
        executor, sleep = make_executor()
        operation = FlakyOperation(3)

        result = await executor.run(operation, "CN=a", "user")
        assert result.ok
        assert operation.calls == 4
        assert sleep.delays == [0.1, 0.2, 0.3]
        assert executor.retries == 3

    async def test_retries_exhausted(self) -> None:
        executor, sleep = make_executor(max_attempts=3)
        operation = FlakyOperation(10)

        result = await executor.run(operation, "CN=a", "user")
        assert result.outcome == AdapterOutcome.FAILED
        assert result.reason == "retries exhausted: server busy"
        assert operation.calls == 3
        assert len(sleep.delays) == 2

    async def test_permanent_error_is_not_retried(self) -> None:
        executor, sleep = make_executor()
        calls = []

        async def operation() -> AdapterResult:
            calls.append(1)
            raise PermanentDirectoryError("insufficient access rights")

        result = await executor.run(operation, "CN=a", "user")
        assert result.outcome == AdapterOutcome.FAILED
        assert result.reason == "insufficient access rights"
        assert len(calls) == 1
        assert sleep.delays == []

    async def test_failed_result_is_final(self) -> None:
        executor, _ = make_executor()
        operation = FlakyOperation(0, AdapterResult.failed("parent container missing"))

        result = await executor.run(operation, "CN=a", "user")
        assert result.reason == "parent container missing"
        assert operation.calls == 1

    async def test_timeout_is_transient(self) -> None:
        executor, sleep = make_executor(max_attempts=2, call_timeout=0.01)

        async def operation() -> AdapterResult:
            await asyncio.sleep(1)
            return AdapterResult.created()

        result = await executor.run(operation, "CN=slow", "ou")
        assert result.outcome == AdapterOutcome.FAILED
        assert "timed out" in result.reason
        assert executor.timeouts == 2
        assert len(sleep.delays) == 1

    async def test_write_landed_before_timeout_is_already_existing(self) -> None:
        executor, _ = make_executor(max_attempts=2, call_timeout=0.01)
        directory = InMemoryDirectory()
        calls = []

        async def operation() -> AdapterResult:
            calls.append(1)
            result = await directory.create_object(ObjectType.OU, "OU=IT,DC=corp,DC=local", {"ou": "IT"})
            if len(calls) == 1:
                # The reply is lost after the write landed
                await asyncio.sleep(1)
            return result

        result = await executor.run(operation, "OU=IT,DC=corp,DC=local", "ou")
        assert result.outcome == AdapterOutcome.ALREADY_EXISTS
        assert result.ok
        assert executor.timeouts == 1
        assert directory.count(ObjectType.OU) == 1

    async def test_no_retry_after_cancellation(self) -> None:
        token = CancellationToken()
        token.cancel()
        executor, sleep = make_executor(token)
        operation = FlakyOperation(1)

        result = await executor.run(operation, "CN=a", "user")
        assert result.outcome == AdapterOutcome.FAILED
        assert "cancelled" in result.reason
        assert operation.calls == 1
        assert sleep.delays == []

    def test_backoff_is_capped(self) -> None:
        executor = RetryingExecutor(ExecutionConfig(base_delay=1.0, max_delay=8.0))

        assert [executor.backoff(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]
