from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from evo_dispatch.errors import ErrorClass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationOutcome(BaseModel):
    """What a remote operation reports about a single call"""

    ok: bool
    status_code: int = 0
    message: str = ""
    payload: Any = None
    retry_after: Optional[float] = None


class OperationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation_id: str
    index: int
    attempt: int
    metadata: dict[str, Any] = Field(default_factory=dict)


RemoteOperation = Callable[
    [OperationContext], Union[OperationOutcome, Awaitable[OperationOutcome]]
]


class OperationDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    operation_id: str
    operation: Callable[..., Any]
    metadata: dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    """Final result of one descriptor, after all of its attempts"""

    model_config = ConfigDict(frozen=True)

    operation_id: str
    index: int
    ok: bool
    status_code: int = 0
    error_message: Optional[str] = None
    latency: float = 0.0
    attempt: int = 1
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
    cancelled: bool = False


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=32.0, ge=0)
    non_retryable: frozenset[ErrorClass] = frozenset()

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after the given 1-based attempt fails"""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


class DispatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    inter_item_delay: float = Field(default=1.0, ge=0)
    concurrency: int = Field(default=1, ge=1)
    gate_timeout: Optional[float] = Field(default=None, gt=0)


class DispatchEventKind(str, Enum):
    item_started = "item_started"
    item_completed = "item_completed"
    item_cancelled = "item_cancelled"


class DispatchEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: DispatchEventKind
    index: int
    operation_id: str
    result: Optional[OperationResult] = None
    timestamp: datetime = Field(default_factory=utcnow)


class PollState(str, Enum):
    polling = "polling"
    succeeded = "succeeded"
    cancelled = "cancelled"
    timed_out = "timed_out"


class PollSignal(str, Enum):
    """Control value returned by a poll stop callback"""

    CONTINUE = "continue"
    STOP = "stop"
    CANCEL = "cancel"


class PollConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval_delay: float = Field(default=2.0, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _require_budget(self) -> "PollConfig":
        if self.max_attempts is None and self.timeout is None:
            raise ValueError("either max_attempts or timeout is required")
        return self


class PollContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt: int


class StateSnapshot(BaseModel):
    state: Any = None
    raw: Any = None


StateFetch = Callable[[PollContext], Union[StateSnapshot, Awaitable[StateSnapshot]]]


class PollSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt: int
    ok: bool
    state: Any = None
    raw: Any = None
    status_code: int = 0
    error_message: Optional[str] = None
    latency: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


class PollOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    final_state: PollState
    attempts_used: int
    elapsed_time: float
    last_state: Any = None
    signal: Optional[PollSignal] = None
    history: list[PollSnapshot] = Field(default_factory=list)

    def as_results(self, operation_id: str = "poll") -> list[OperationResult]:
        """Express the poll history as one OperationResult per fetch"""
        return [
            OperationResult(
                operation_id=f"{operation_id}#{snapshot.attempt}",
                index=position,
                ok=snapshot.ok,
                status_code=snapshot.status_code,
                error_message=snapshot.error_message,
                latency=snapshot.latency,
                attempt=1,
                timestamp=snapshot.timestamp,
                metadata={"state": snapshot.state},
            )
            for position, snapshot in enumerate(self.history)
        ]


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str


class FailedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    operation_id: str
    attempts: int
    status_code: int
    error_class: ErrorClass
    error_message: Optional[str] = None
    friendly_message: Optional[str] = None
    suggestions: list[str] = Field(default_factory=list)


class PerformanceStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    avg_latency: float = 0.0
    min_latency: float = 0.0
    max_latency: float = 0.0
    operations_per_minute: float = 0.0
    throughput_score: str = "N/A"


class AggregatedReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    successful: int
    failed: int
    cancelled: int = 0
    success_rate_percent: float
    error_rate_percent: float
    total_attempts: int
    error_breakdown_by_class: dict[ErrorClass, int] = Field(default_factory=dict)
    error_breakdown_by_code: dict[int, int] = Field(default_factory=dict)
    most_common_error: Optional[ErrorClass] = None
    failed_items: list[FailedItem] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    performance: PerformanceStats = Field(default_factory=PerformanceStats)
    performance_grade: str = "D"


class DispatchReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    report: AggregatedReport
    results: list[OperationResult]
