import asyncio
from typing import Any, Callable, Optional

from loguru import logger

from evo_dispatch.errors import StateFetchError
from evo_dispatch.models import (
    PollConfig,
    PollContext,
    PollOutcome,
    PollSignal,
    PollSnapshot,
    PollState,
    StateFetch,
    StateSnapshot,
)
from evo_dispatch.retry import NETWORK_ERRORS, Clock, Sleep, call_maybe_async, loop_time

StopCallback = Callable[[Any, int, Any], Any]


def _as_signal(value: Any) -> PollSignal:
    if value is None:
        return PollSignal.CONTINUE
    if isinstance(value, PollSignal):
        return value
    raise TypeError(
        f"stop callback must return a PollSignal or None, got {type(value).__name__}"
    )


class StatePoller:
    """Polls a remote state until a target predicate matches.

    Every run ends in exactly one of SUCCEEDED, CANCELLED or TIMED_OUT.
    Fetch errors are recorded in the history and count against the budget,
    but they never end the run by themselves.
    """

    def __init__(
        self,
        sleep: Optional[Sleep] = None,
        clock: Optional[Clock] = None,
        on_state_change: Optional[Callable[[PollSnapshot], Any]] = None,
    ):
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or loop_time
        self.on_state_change = on_state_change
        self.logger = logger

    async def _fetch_once(self, fetch: StateFetch, attempt: int) -> PollSnapshot:
        """Fetch the current state once, recording failures instead of raising"""
        start_time = self.clock()
        try:
            snapshot = await call_maybe_async(fetch, PollContext(attempt=attempt))
            if not isinstance(snapshot, StateSnapshot):
                snapshot = StateSnapshot.model_validate(snapshot)
            return PollSnapshot(
                attempt=attempt,
                ok=True,
                state=snapshot.state,
                raw=snapshot.raw,
                latency=self.clock() - start_time,
            )
        except StateFetchError as e:
            self.logger.warning(f"Poll attempt {attempt} failed with status {e.status_code}: {e}")
            status_code, message = e.status_code, str(e)
        except NETWORK_ERRORS as e:
            self.logger.warning(f"Poll attempt {attempt} failed: {e!r}")
            status_code, message = 0, f"Network error: {type(e).__name__}: {e}"
        except Exception as e:
            self.logger.error(f"Unexpected error while polling: {e}")
            status_code, message = 0, f"{type(e).__name__}: {e}"

        return PollSnapshot(
            attempt=attempt,
            ok=False,
            status_code=status_code,
            error_message=message,
            latency=self.clock() - start_time,
        )

    async def _handle_state_change(self, snapshot: PollSnapshot, last_state: Any) -> None:
        """Invoke the state change callback if the observed state has changed"""
        if snapshot.state != last_state and self.on_state_change is not None:
            self.logger.debug(f"State changed to {snapshot.state!r}")
            try:
                await call_maybe_async(self.on_state_change, snapshot)
            except Exception as e:
                self.logger.error(f"State change callback failed: {e}")

    def _budget_exhausted(
        self, attempt: int, deadline: Optional[float], config: PollConfig
    ) -> bool:
        if config.max_attempts is not None and attempt >= config.max_attempts:
            return True
        return deadline is not None and self.clock() + config.interval_delay >= deadline

    async def poll(
        self,
        fetch: StateFetch,
        target: Callable[[Any], bool],
        config: PollConfig,
        stop_callback: Optional[StopCallback] = None,
    ) -> PollOutcome:
        """Poll ``fetch`` every ``config.interval_delay`` seconds until ``target`` matches"""
        start_time = self.clock()
        deadline = None if config.timeout is None else start_time + config.timeout
        history: list[PollSnapshot] = []
        last_state = None
        signal = None
        attempt = 0
        final_state = PollState.polling

        while final_state is PollState.polling:
            attempt += 1
            snapshot = await self._fetch_once(fetch, attempt)
            history.append(snapshot)

            if snapshot.ok:
                await self._handle_state_change(snapshot, last_state)
                last_state = snapshot.state
                if target(snapshot.state):
                    final_state = PollState.succeeded
                    break

            if stop_callback is not None:
                signal = _as_signal(
                    await call_maybe_async(stop_callback, snapshot.state, attempt, snapshot.raw)
                )
                if signal is not PollSignal.CONTINUE:
                    final_state = PollState.cancelled
                    break

            if self._budget_exhausted(attempt, deadline, config):
                final_state = PollState.timed_out
                break

            self.logger.debug(
                f"State {snapshot.state!r} does not match yet, "
                f"waiting {config.interval_delay:.2f}s before attempt {attempt + 1}"
            )
            await self.sleep(config.interval_delay)

        elapsed_time = self.clock() - start_time
        self.logger.info(
            f"Polling ended as {final_state.value} after {attempt} attempts "
            f"({elapsed_time:.2f}s, last state {last_state!r})"
        )
        return PollOutcome(
            final_state=final_state,
            attempts_used=attempt,
            elapsed_time=elapsed_time,
            last_state=last_state,
            signal=signal,
            history=history,
        )
