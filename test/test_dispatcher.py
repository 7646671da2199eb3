import asyncio

import pytest
from pydantic import ValidationError

from evo_dispatch.api import build_descriptors, dispatch_batch
from evo_dispatch.dispatcher import PacedBatchDispatcher
from evo_dispatch.errors import ErrorClass
from evo_dispatch.rate_limit import RateLimitGate
from evo_dispatch.models import (
    DispatchConfig,
    DispatchEventKind,
    OperationOutcome,
    RetryPolicy,
)

OK = OperationOutcome(ok=True, status_code=200)
SERVER_ERROR = OperationOutcome(ok=False, status_code=500, message="Internal Server Error")
RATE_LIMITED = OperationOutcome(ok=False, status_code=429, message="Too Many Requests")


@pytest.fixture
def dispatcher(fake_clock) -> PacedBatchDispatcher:
    return PacedBatchDispatcher(sleep=fake_clock.sleep, clock=fake_clock)


@pytest.mark.asyncio
async def test_results_align_with_input_order(dispatcher, scripted, descriptor):
    operations = [scripted(OK), scripted(SERVER_ERROR), scripted(OK), scripted(SERVER_ERROR)]
    descriptors = [descriptor(op, operation_id=f"item-{i}") for i, op in enumerate(operations)]

    results = await dispatcher.dispatch(descriptors, RetryPolicy(max_attempts=1), DispatchConfig())

    assert len(results) == len(descriptors)
    assert [result.index for result in results] == [0, 1, 2, 3]
    assert [result.operation_id for result in results] == ["item-0", "item-1", "item-2", "item-3"]
    assert [result.ok for result in results] == [True, False, True, False]


@pytest.mark.asyncio
async def test_empty_batch_returns_no_results(dispatcher, fake_clock):
    assert await dispatcher.dispatch([]) == []
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_inter_item_delay_only_between_items(dispatcher, fake_clock, scripted, descriptor):
    descriptors = [descriptor(scripted(OK)) for _ in range(3)]

    await dispatcher.dispatch(descriptors, RetryPolicy(), DispatchConfig(inter_item_delay=1.5))

    assert fake_clock.sleeps == [1.5, 1.5]


@pytest.mark.asyncio
async def test_backoff_and_pacing_interleave(dispatcher, fake_clock, scripted, descriptor):
    descriptors = [descriptor(scripted(SERVER_ERROR, OK)), descriptor(scripted(OK))]
    policy = RetryPolicy(max_attempts=2, base_delay=0.25)

    results = await dispatcher.dispatch(descriptors, policy, DispatchConfig(inter_item_delay=1.0))

    assert fake_clock.sleeps == [0.25, 1.0]
    assert [result.attempt for result in results] == [2, 1]


@pytest.mark.asyncio
async def test_failing_items_do_not_abort_the_batch(fake_clock, scripted):
    """Items 1 and 3 always fail with 500; every other item succeeds."""
    operations = [
        (scripted(SERVER_ERROR if index in (1, 3) else OK), {"operation_id": f"msg-{index}"})
        for index in range(5)
    ]

    dispatch = await dispatch_batch(
        operations,
        policy=RetryPolicy(max_attempts=2, base_delay=0.1),
        inter_item_delay=0.5,
        sleep=fake_clock.sleep,
        clock=fake_clock,
    )

    report = dispatch.report
    assert len(dispatch.results) == 5
    assert report.successful == 3
    assert report.failed == 2
    assert report.error_breakdown_by_class == {ErrorClass.server_fault: 2}
    assert [item.index for item in report.failed_items] == [1, 3]
    assert all(item.attempts == 2 for item in report.failed_items)
    codes = [recommendation.code for recommendation in report.recommendations]
    assert "increase_inter_item_delay" not in codes
    assert "check_credentials" not in codes


@pytest.mark.asyncio
async def test_rate_limited_items_trigger_delay_recommendation(fake_clock, scripted):
    operations = [(scripted(RATE_LIMITED if index in (2, 7) else OK), None) for index in range(10)]

    dispatch = await dispatch_batch(
        operations, inter_item_delay=0.2, sleep=fake_clock.sleep, clock=fake_clock
    )

    assert dispatch.report.error_breakdown_by_code == {429: 2}
    codes = [recommendation.code for recommendation in dispatch.report.recommendations]
    assert "increase_inter_item_delay" in codes


@pytest.mark.asyncio
async def test_dispatch_events_are_emitted_in_order(fake_clock, scripted, descriptor):
    events = []
    dispatcher = PacedBatchDispatcher(
        sleep=fake_clock.sleep, clock=fake_clock, on_event=events.append
    )

    await dispatcher.dispatch([descriptor(scripted(OK)), descriptor(scripted(SERVER_ERROR))])

    assert [(event.kind, event.index) for event in events] == [
        (DispatchEventKind.item_started, 0),
        (DispatchEventKind.item_completed, 0),
        (DispatchEventKind.item_started, 1),
        (DispatchEventKind.item_completed, 1),
    ]
    assert events[3].result is not None and not events[3].result.ok


@pytest.mark.asyncio
async def test_failing_event_callback_does_not_break_dispatch(fake_clock, scripted, descriptor):
    def explode(event):
        raise RuntimeError("telemetry sink down")

    dispatcher = PacedBatchDispatcher(sleep=fake_clock.sleep, clock=fake_clock, on_event=explode)

    results = await dispatcher.dispatch([descriptor(scripted(OK))])

    assert results[0].ok


@pytest.mark.asyncio
async def test_cancellation_keeps_one_result_per_item(fake_clock, scripted, descriptor):
    cancel_event = asyncio.Event()

    async def cancel_after_second(event):
        if event.kind is DispatchEventKind.item_completed and event.index == 1:
            cancel_event.set()

    dispatcher = PacedBatchDispatcher(
        sleep=fake_clock.sleep, clock=fake_clock, on_event=cancel_after_second
    )
    descriptors = [descriptor(scripted(OK), operation_id=f"item-{i}") for i in range(4)]

    results = await dispatcher.dispatch(descriptors, cancel_event=cancel_event)

    assert len(results) == 4
    assert [result.cancelled for result in results] == [False, False, True, True]
    assert [result.attempt for result in results] == [1, 1, 0, 0]
    assert [result.operation_id for result in results] == ["item-0", "item-1", "item-2", "item-3"]


@pytest.mark.asyncio
async def test_concurrent_dispatch_preserves_order_and_spacing(fake_clock, descriptor):
    starts = []
    in_flight = 0
    peak = 0

    def timed(latency: float, ok: bool = True):
        async def operation(context):
            nonlocal in_flight, peak
            starts.append(fake_clock())
            in_flight += 1
            peak = max(peak, in_flight)
            await fake_clock.sleep(latency)
            in_flight -= 1
            return OperationOutcome(ok=ok, status_code=200 if ok else 503)

        return operation

    latencies = [0.3, 0.05, 0.2, 0.0, 0.1, 0.4]
    descriptors = [
        descriptor(timed(latency, ok=index != 2), operation_id=f"item-{index}")
        for index, latency in enumerate(latencies)
    ]
    dispatcher = PacedBatchDispatcher(sleep=fake_clock.sleep, clock=fake_clock)

    results = await dispatcher.dispatch(
        descriptors,
        RetryPolicy(max_attempts=1),
        DispatchConfig(inter_item_delay=0.1, concurrency=3),
    )

    assert [result.index for result in results] == list(range(6))
    assert [result.operation_id for result in results] == [f"item-{i}" for i in range(6)]
    assert [result.ok for result in results] == [True, True, False, True, True, True]
    assert peak <= 3
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= 0.1 - 1e-9 for gap in gaps)


@pytest.mark.asyncio
async def test_gate_timeout_fails_the_item(fake_clock, scripted, descriptor):
    dispatcher = PacedBatchDispatcher(sleep=fake_clock.sleep, clock=fake_clock)
    descriptors = [descriptor(scripted(OK)) for _ in range(3)]

    results = await dispatcher.dispatch(
        descriptors,
        RetryPolicy(),
        DispatchConfig(inter_item_delay=10.0, concurrency=2, gate_timeout=1.0),
    )

    assert len(results) == 3
    assert results[0].ok
    assert [result.ok for result in results[1:]] == [False, False]
    assert all(result.attempt == 0 for result in results[1:])
    assert all(result.error_message.startswith("Gate deadline exceeded") for result in results[1:])


@pytest.mark.asyncio
async def test_concurrent_cancellation_keeps_one_result_per_item(fake_clock, descriptor):
    cancel_event = asyncio.Event()

    async def yielding(context):
        await asyncio.sleep(0)
        return OK

    def cancel_after_first(event):
        if event.kind is DispatchEventKind.item_completed and event.index == 0:
            cancel_event.set()

    dispatcher = PacedBatchDispatcher(
        sleep=fake_clock.sleep, clock=fake_clock, on_event=cancel_after_first
    )
    descriptors = [descriptor(yielding, operation_id=f"item-{i}") for i in range(4)]

    results = await dispatcher.dispatch(
        descriptors,
        RetryPolicy(),
        DispatchConfig(inter_item_delay=1.0, concurrency=2),
        cancel_event=cancel_event,
    )

    assert len(results) == len(descriptors)
    assert [result.index for result in results] == [0, 1, 2, 3]
    assert [result.operation_id for result in results] == [f"item-{i}" for i in range(4)]
    assert [result.cancelled for result in results] == [False, True, True, True]
    assert [result.attempt for result in results] == [1, 0, 0, 0]


@pytest.mark.asyncio
async def test_retries_are_paced_by_the_gate_across_workers(fake_clock, descriptor):
    calls = []

    def recording(*script):
        remaining = list(script)

        async def operation(context):
            calls.append((context.index, context.attempt, fake_clock()))
            return remaining.pop(0) if len(remaining) > 1 else remaining[0]

        return operation

    descriptors = [
        descriptor(recording(SERVER_ERROR, OK), operation_id="item-0"),
        descriptor(recording(OK), operation_id="item-1"),
    ]
    dispatcher = PacedBatchDispatcher(sleep=fake_clock.sleep, clock=fake_clock)

    results = await dispatcher.dispatch(
        descriptors,
        RetryPolicy(max_attempts=2, base_delay=0.1),
        DispatchConfig(inter_item_delay=1.0, concurrency=2),
    )

    assert [result.ok for result in results] == [True, True]
    assert [result.attempt for result in results] == [2, 1]
    assert [(index, attempt) for index, attempt, _ in calls] == [(0, 1), (1, 1), (0, 2)]
    assert [at for _, _, at in calls] == pytest.approx([0.0, 1.0, 2.0])


@pytest.mark.asyncio
async def test_shared_gate_paces_separate_dispatches(fake_clock):
    gate = RateLimitGate(1.0, sleep=fake_clock.sleep, clock=fake_clock)
    starts = []

    async def operation(context):
        starts.append(fake_clock())
        return OK

    await asyncio.gather(
        *(
            dispatch_batch(
                [(operation, None)],
                inter_item_delay=1.0,
                gate=gate,
                sleep=fake_clock.sleep,
                clock=fake_clock,
            )
            for _ in range(2)
        )
    )

    assert starts == pytest.approx([0.0, 1.0])


@pytest.mark.asyncio
async def test_gate_timeout_on_retry_keeps_the_last_failure(fake_clock, scripted, descriptor):
    gate = RateLimitGate(5.0, sleep=fake_clock.sleep, clock=fake_clock)
    operation = scripted(SERVER_ERROR, OK)
    dispatcher = PacedBatchDispatcher(sleep=fake_clock.sleep, clock=fake_clock, gate=gate)

    results = await dispatcher.dispatch(
        [descriptor(operation)],
        RetryPolicy(max_attempts=3, base_delay=0.1),
        DispatchConfig(gate_timeout=1.0),
    )

    assert operation.calls == 1
    assert not results[0].ok
    assert results[0].attempt == 1
    assert results[0].status_code == 500


def test_invalid_dispatch_config_is_rejected():
    with pytest.raises(ValidationError):
        DispatchConfig(inter_item_delay=-1)
    with pytest.raises(ValidationError):
        DispatchConfig(concurrency=0)


@pytest.mark.asyncio
async def test_invalid_config_is_rejected_before_anything_runs(scripted):
    operation = scripted(OK)

    with pytest.raises(ValidationError):
        await dispatch_batch([(operation, None)], inter_item_delay=-0.5)

    assert operation.calls == 0


def test_build_descriptors_uses_metadata_operation_id(scripted, descriptor):
    operation = scripted(OK)
    existing = descriptor(operation, operation_id="kept")

    descriptors = build_descriptors(
        [(operation, {"operation_id": "welcome", "number": "1"}), (operation, None), existing]
    )

    assert [d.operation_id for d in descriptors] == ["welcome", "op-1", "kept"]
    assert descriptors[0].metadata == {"operation_id": "welcome", "number": "1"}


def test_build_descriptors_rejects_malformed_items():
    with pytest.raises(ValueError):
        build_descriptors(["not a pair"])
