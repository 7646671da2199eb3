import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional

from loguru import logger

from evo_dispatch.errors import GATE_DEADLINE_EXCEEDED, GateTimeoutError
from evo_dispatch.models import (
    DispatchConfig,
    DispatchEvent,
    DispatchEventKind,
    OperationDescriptor,
    OperationResult,
    RetryPolicy,
)
from evo_dispatch.rate_limit import RateLimitGate
from evo_dispatch.retry import Clock, RetryExecutor, Sleep, call_maybe_async, loop_time


class PacedBatchDispatcher:
    """Runs an ordered batch of operations with pacing between items.

    One result is returned per descriptor, in input order, whatever the mix of
    successes and failures. With ``concurrency > 1`` several workers run items
    at once but every call, retries included, goes through a RateLimitGate, so
    calls stay spaced across workers. A caller-owned ``gate`` is shared with
    other dispatches and paces sequential runs too; otherwise each concurrent
    run builds a private gate from ``inter_item_delay``.
    """

    def __init__(
        self,
        executor: Optional[RetryExecutor] = None,
        sleep: Optional[Sleep] = None,
        clock: Optional[Clock] = None,
        on_event: Optional[Callable[[DispatchEvent], Any]] = None,
        gate: Optional[RateLimitGate] = None,
    ):
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or loop_time
        self.executor = executor or RetryExecutor(sleep=self.sleep, clock=self.clock)
        self.on_event = on_event
        self.gate = gate
        self.logger = logger

    async def _emit(
        self,
        kind: DispatchEventKind,
        index: int,
        descriptor: OperationDescriptor,
        result: Optional[OperationResult] = None,
    ) -> None:
        if self.on_event is None:
            return
        event = DispatchEvent(
            kind=kind, index=index, operation_id=descriptor.operation_id, result=result
        )
        try:
            await call_maybe_async(self.on_event, event)
        except Exception as e:
            self.logger.error(f"Dispatch event callback failed on {kind.value}: {e}")

    async def _run_item(
        self,
        index: int,
        descriptor: OperationDescriptor,
        policy: RetryPolicy,
        cancel_event: Optional[asyncio.Event],
        before_retry: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> OperationResult:
        await self._emit(DispatchEventKind.item_started, index, descriptor)
        result = await self.executor.execute(
            descriptor, policy, index=index, cancel_event=cancel_event, before_retry=before_retry
        )
        await self._emit(DispatchEventKind.item_completed, index, descriptor, result)
        return result

    async def _run_gated_item(
        self,
        index: int,
        descriptor: OperationDescriptor,
        policy: RetryPolicy,
        gate: RateLimitGate,
        gate_timeout: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> OperationResult:
        """Run one item with every attempt, retries included, taken through ``gate``"""
        try:
            await gate.acquire(timeout=gate_timeout)
        except GateTimeoutError as e:
            self.logger.warning(f"Item {index} skipped: {e}")
            return OperationResult(
                operation_id=descriptor.operation_id,
                index=index,
                ok=False,
                error_message=f"{GATE_DEADLINE_EXCEEDED}: {e}",
                attempt=0,
                metadata=descriptor.metadata,
            )
        if _is_set(cancel_event):
            return await self._cancelled(index, descriptor)

        async def before_retry() -> None:
            await gate.acquire(timeout=gate_timeout)

        return await self._run_item(index, descriptor, policy, cancel_event, before_retry)

    async def _cancelled(self, index: int, descriptor: OperationDescriptor) -> OperationResult:
        result = OperationResult(
            operation_id=descriptor.operation_id,
            index=index,
            ok=False,
            error_message="Cancelled before execution",
            attempt=0,
            metadata=descriptor.metadata,
            cancelled=True,
        )
        await self._emit(DispatchEventKind.item_cancelled, index, descriptor, result)
        return result

    async def _dispatch_sequential(
        self,
        descriptors: list[OperationDescriptor],
        policy: RetryPolicy,
        config: DispatchConfig,
        cancel_event: Optional[asyncio.Event],
    ) -> list[OperationResult]:
        results = []
        for index, descriptor in enumerate(descriptors):
            if _is_set(cancel_event):
                results.append(await self._cancelled(index, descriptor))
                continue

            if index > 0 and config.inter_item_delay > 0:
                self.logger.debug(f"Waiting {config.inter_item_delay:.2f}s before item {index}")
                await self.sleep(config.inter_item_delay)
                if _is_set(cancel_event):
                    results.append(await self._cancelled(index, descriptor))
                    continue

            if self.gate is None:
                results.append(await self._run_item(index, descriptor, policy, cancel_event))
            else:
                results.append(
                    await self._run_gated_item(
                        index, descriptor, policy, self.gate, config.gate_timeout, cancel_event
                    )
                )
        return results

    async def _dispatch_concurrent(
        self,
        descriptors: list[OperationDescriptor],
        policy: RetryPolicy,
        config: DispatchConfig,
        cancel_event: Optional[asyncio.Event],
    ) -> list[OperationResult]:
        gate = self.gate or RateLimitGate(
            config.inter_item_delay, sleep=self.sleep, clock=self.clock
        )
        results: list[Optional[OperationResult]] = [None] * len(descriptors)
        pending = iter(enumerate(descriptors))

        async def worker() -> None:
            for index, descriptor in pending:
                if _is_set(cancel_event):
                    results[index] = await self._cancelled(index, descriptor)
                    continue
                results[index] = await self._run_gated_item(
                    index, descriptor, policy, gate, config.gate_timeout, cancel_event
                )

        workers = min(config.concurrency, len(descriptors))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return [result for result in results if result is not None]

    async def dispatch(
        self,
        descriptors: Iterable[OperationDescriptor],
        policy: Optional[RetryPolicy] = None,
        config: Optional[DispatchConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[OperationResult]:
        """Execute every descriptor and return results aligned with the input order"""
        descriptors = list(descriptors)
        policy = policy or RetryPolicy()
        config = config or DispatchConfig()
        if not descriptors:
            return []

        self.logger.info(
            f"Dispatching {len(descriptors)} operations "
            f"(concurrency={config.concurrency}, inter_item_delay={config.inter_item_delay}s, "
            f"max_attempts={policy.max_attempts})"
        )
        if config.concurrency == 1:
            results = await self._dispatch_sequential(descriptors, policy, config, cancel_event)
        else:
            results = await self._dispatch_concurrent(descriptors, policy, config, cancel_event)

        successful = sum(1 for result in results if result.ok)
        self.logger.info(f"Dispatch finished: {successful}/{len(results)} succeeded")
        return results


def _is_set(event: Optional[asyncio.Event]) -> bool:
    return event is not None and event.is_set()
