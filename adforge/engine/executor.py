"""
Retrying Executor
=================

Wraps every adapter call with a timeout and a capped exponential backoff.

Retry Policy:
- TransientDirectoryError and timeouts are retried, waiting
  base_delay * 2**attempt seconds (capped at max_delay) between attempts
- PermanentDirectoryError and FAILED results are final
- After max_attempts transient failures the call is reported FAILED
- Once the run is cancelled no further attempt is started
- A timed-out call is abandoned, not undone: a blocking adapter call running
  in a worker thread may still land its write. The next attempt then gets
  ALREADY_EXISTS, which counts as success, so create calls stay idempotent
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..config import ExecutionConfig
from ..directory.adapter import AdapterResult
from ..errors import PermanentDirectoryError, TransientDirectoryError
from .scheduler import CancellationToken

logger = logging.getLogger(__name__)


class RetryingExecutor:
    """Runs adapter calls under the retry policy.

    Usage:
        executor = RetryingExecutor(config.execution, token)
        result = await executor.run(
            lambda: adapter.create_object(ObjectType.OU, dn, attrs),
            identifier=dn, stage="ou"
        )
    """

    def __init__(
        self,
        config: ExecutionConfig,
        token: Optional[CancellationToken] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize the executor.

        Args:
            config: Attempts, backoff bounds and call timeout
            token: Run cancellation token
            sleep: Coroutine used to wait between attempts
        """
        self.config = config
        self.token = token or CancellationToken()
        self._sleep = sleep

        self.retries = 0
        self.timeouts = 0

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the given (0-based) attempt."""
        return min(self.config.base_delay * (2 ** attempt), self.config.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[AdapterResult]],
        identifier: str,
        stage: str
    ) -> AdapterResult:
        """Execute one adapter call with retries.

        Args:
            operation: Zero-argument callable returning the adapter coroutine
            identifier: Object the call is about (for logging)
            stage: Stage name (for logging)

        Returns:
            The adapter result, or FAILED with the last error as reason
        """
        last_error = "no attempt made"
        for attempt in range(self.config.max_attempts):
            try:
                return await asyncio.wait_for(operation(), timeout=self.config.call_timeout)
            except asyncio.TimeoutError:
                self.timeouts += 1
                last_error = f"call timed out after {self.config.call_timeout}s"
            except TransientDirectoryError as e:
                last_error = str(e)
            except PermanentDirectoryError as e:
                return AdapterResult.failed(str(e))

            if attempt == self.config.max_attempts - 1:
                break
            if self.token.cancelled:
                return AdapterResult.failed(f"cancelled after transient failure: {last_error}")

            delay = self.backoff(attempt)
            self.retries += 1
            logger.debug(
                "[%s] %s: transient failure (%s), retry %d/%d in %.2fs",
                stage, identifier, last_error, attempt + 1, self.config.max_attempts - 1, delay
            )
            await self._sleep(delay)

        return AdapterResult.failed(f"retries exhausted: {last_error}")
