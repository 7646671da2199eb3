import asyncio

import pytest

from evo_dispatch.models import OperationContext, OperationDescriptor, OperationOutcome


class FakeClock:
    """Clock whose sleep records the delay and advances time instantly"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class ScriptedOperation:
    """Operation that plays back a script of outcomes, repeating the last entry"""

    def __init__(self, *script):
        self.script = list(script)
        self.contexts: list[OperationContext] = []

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def __call__(self, context: OperationContext) -> OperationOutcome:
        self.contexts.append(context)
        step = self.script[min(len(self.contexts), len(self.script)) - 1]
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted():
    """Build a ScriptedOperation from a list of outcomes or exceptions"""
    return ScriptedOperation


@pytest.fixture
def descriptor():
    def build(operation, operation_id: str = "op", **metadata) -> OperationDescriptor:
        return OperationDescriptor(operation_id=operation_id, operation=operation, metadata=metadata)

    return build
