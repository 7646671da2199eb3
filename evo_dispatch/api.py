"""Entry points for batch dispatch and state polling.

``dispatch_batch`` runs an ordered list of operations and returns both the raw
results and an aggregated report. ``poll_until`` polls a state fetch until a
target predicate matches. Configuration is validated before anything runs.
"""

import asyncio
from typing import Any, Callable, Iterable, Optional, Union

from evo_dispatch.aggregator import ResultAggregator, ResultLog
from evo_dispatch.dispatcher import PacedBatchDispatcher
from evo_dispatch.models import (
    DispatchConfig,
    DispatchEvent,
    DispatchReport,
    OperationDescriptor,
    PollConfig,
    PollOutcome,
    PollSnapshot,
    RemoteOperation,
    RetryPolicy,
    StateFetch,
)
from evo_dispatch.poller import StatePoller, StopCallback
from evo_dispatch.rate_limit import RateLimitGate
from evo_dispatch.retry import Clock, Sleep

OperationSpec = Union[OperationDescriptor, tuple[RemoteOperation, Optional[dict[str, Any]]]]


def build_descriptors(operations: Iterable[OperationSpec]) -> list[OperationDescriptor]:
    """Normalize (operation, metadata) pairs into descriptors.

    A pair's ``operation_id`` comes from ``metadata["operation_id"]`` when
    present, otherwise from its position in the batch.
    """
    descriptors = []
    for index, item in enumerate(operations):
        if isinstance(item, OperationDescriptor):
            descriptors.append(item)
            continue
        try:
            operation, metadata = item
        except (TypeError, ValueError) as e:
            raise ValueError(
                f"item {index} must be an OperationDescriptor or an (operation, metadata) pair"
            ) from e
        metadata = dict(metadata or {})
        descriptors.append(
            OperationDescriptor(
                operation_id=str(metadata.get("operation_id", f"op-{index}")),
                operation=operation,
                metadata=metadata,
            )
        )
    return descriptors


async def dispatch_batch(
    operations: Iterable[OperationSpec],
    policy: Optional[RetryPolicy] = None,
    inter_item_delay: float = 1.0,
    concurrency: int = 1,
    gate_timeout: Optional[float] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_event: Optional[Callable[[DispatchEvent], Any]] = None,
    result_log: Optional[ResultLog] = None,
    gate: Optional[RateLimitGate] = None,
    sleep: Optional[Sleep] = None,
    clock: Optional[Clock] = None,
) -> DispatchReport:
    """Dispatch a batch and aggregate its results.

    Pass the same ``gate`` to dispatches that target the same remote so their
    calls are paced against each other.
    """
    config = DispatchConfig(
        inter_item_delay=inter_item_delay, concurrency=concurrency, gate_timeout=gate_timeout
    )
    policy = policy or RetryPolicy()
    descriptors = build_descriptors(operations)

    dispatcher = PacedBatchDispatcher(sleep=sleep, clock=clock, on_event=on_event, gate=gate)
    results = await dispatcher.dispatch(descriptors, policy, config, cancel_event=cancel_event)
    if result_log is not None:
        result_log.extend(results)
    return DispatchReport(report=ResultAggregator().aggregate(results), results=results)


async def poll_until(
    fetch: StateFetch,
    target: Callable[[Any], bool],
    interval_delay: float = 2.0,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    stop_callback: Optional[StopCallback] = None,
    on_state_change: Optional[Callable[[PollSnapshot], Any]] = None,
    sleep: Optional[Sleep] = None,
    clock: Optional[Clock] = None,
) -> PollOutcome:
    config = PollConfig(interval_delay=interval_delay, max_attempts=max_attempts, timeout=timeout)
    poller = StatePoller(sleep=sleep, clock=clock, on_state_change=on_state_change)
    return await poller.poll(fetch, target, config, stop_callback=stop_callback)
