import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from loguru import logger

from evo_dispatch.errors import GateTimeoutError, PermanentOperationError, classify_error
from evo_dispatch.models import (
    OperationContext,
    OperationDescriptor,
    OperationOutcome,
    OperationResult,
    RetryPolicy,
)

Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], float]

NETWORK_ERRORS = (aiohttp.ClientConnectionError, asyncio.TimeoutError, OSError)


def loop_time() -> float:
    return asyncio.get_running_loop().time()


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable and return its result"""
    value = func(*args)
    if inspect.isawaitable(value):
        value = await value
    return value


class RetryExecutor:
    """Runs a single operation with bounded retries and exponential backoff"""

    def __init__(self, sleep: Optional[Sleep] = None, clock: Optional[Clock] = None):
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or loop_time
        self.logger = logger

    async def _attempt(
        self, descriptor: OperationDescriptor, context: OperationContext
    ) -> tuple[OperationOutcome, float, bool]:
        """Invoke the operation once, turning any exception into a failed outcome"""
        start_time = self.clock()
        retryable = True
        try:
            outcome = await call_maybe_async(descriptor.operation, context)
            if not isinstance(outcome, OperationOutcome):
                outcome = OperationOutcome.model_validate(outcome)
        except PermanentOperationError as e:
            outcome = OperationOutcome(ok=False, message=str(e))
            retryable = False
        except NETWORK_ERRORS as e:
            outcome = OperationOutcome(
                ok=False, message=f"Network error: {type(e).__name__}: {e}"
            )
        except Exception as e:
            self.logger.error(f"Unexpected error in {descriptor.operation_id}: {e}")
            outcome = OperationOutcome(ok=False, message=f"{type(e).__name__}: {e}")
        return outcome, self.clock() - start_time, retryable

    def _calculate_delay(
        self, attempt: int, policy: RetryPolicy, outcome: OperationOutcome
    ) -> float:
        delay = policy.delay_for(attempt)
        if outcome.retry_after is not None:
            delay = max(delay, min(outcome.retry_after, policy.max_delay))
        return delay

    async def _wait_before_retry(
        self, attempt: int, policy: RetryPolicy, outcome: OperationOutcome
    ) -> None:
        delay = self._calculate_delay(attempt, policy, outcome)
        self.logger.debug(f"Attempt {attempt} failed, waiting {delay:.2f}s before retrying")
        await self.sleep(delay)

    async def execute(
        self,
        descriptor: OperationDescriptor,
        policy: RetryPolicy,
        index: int = 0,
        cancel_event: Optional[asyncio.Event] = None,
        before_retry: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> OperationResult:
        """Run the operation until it succeeds or the attempt budget is spent.

        Only the final attempt's diagnostics are kept on the returned result.
        Failures never raise; they come back as a result with ok=False.
        ``before_retry`` is awaited after each backoff, right before the next
        attempt; a GateTimeoutError from it ends the run with the last failure.
        """
        attempt = 0
        while True:
            attempt += 1
            context = OperationContext(
                operation_id=descriptor.operation_id,
                index=index,
                attempt=attempt,
                metadata=descriptor.metadata,
            )
            outcome, latency, retryable = await self._attempt(descriptor, context)
            result = OperationResult(
                operation_id=descriptor.operation_id,
                index=index,
                ok=outcome.ok,
                status_code=outcome.status_code,
                error_message=None if outcome.ok else (outcome.message or None),
                latency=latency,
                attempt=attempt,
                metadata=descriptor.metadata,
            )
            if outcome.ok:
                return result

            error_class = classify_error(outcome.status_code, outcome.message)
            self.logger.warning(
                f"{descriptor.operation_id} attempt {attempt}/{policy.max_attempts} "
                f"failed ({error_class.value}, status {outcome.status_code}): {outcome.message}"
            )
            if not retryable or error_class in policy.non_retryable:
                self.logger.debug(f"{descriptor.operation_id} is not retryable, giving up")
                return result
            if attempt >= policy.max_attempts:
                return result
            if cancel_event is not None and cancel_event.is_set():
                return result

            await self._wait_before_retry(attempt, policy, outcome)

            if cancel_event is not None and cancel_event.is_set():
                return result
            if before_retry is not None:
                try:
                    await before_retry()
                except GateTimeoutError as e:
                    self.logger.warning(f"{descriptor.operation_id} retry skipped: {e}")
                    return result
