from collections import Counter, deque
from typing import Iterable, Optional

from evo_dispatch.errors import (
    GATE_DEADLINE_EXCEEDED,
    ErrorClass,
    classify_error,
    friendly_message,
    suggestions,
)
from evo_dispatch.models import (
    AggregatedReport,
    FailedItem,
    OperationResult,
    PerformanceStats,
    PollOutcome,
    Recommendation,
)

# (grade, success rate must exceed, average latency must stay under)
GRADE_THRESHOLDS = (
    ("A+", 95.0, 1.0),
    ("A", 90.0, 2.0),
    ("B+", 85.0, 3.0),
    ("B", 80.0, 5.0),
    ("C", 70.0, 10.0),
)
LOWEST_GRADE = "D"

VERY_LOW_SUCCESS_RATE = 50.0
MODERATE_SUCCESS_RATE = 80.0

HIGH_THROUGHPUT = 30.0
MEDIUM_THROUGHPUT = 10.0


def performance_grade(avg_latency: float, success_rate_percent: float) -> str:
    """Grade a run from its average latency and success rate; ties go to the lower grade"""
    for grade, min_rate, max_latency in GRADE_THRESHOLDS:
        if success_rate_percent > min_rate and avg_latency < max_latency:
            return grade
    return LOWEST_GRADE


def throughput_score(operations_per_minute: float) -> str:
    if operations_per_minute > HIGH_THROUGHPUT:
        return "High"
    if operations_per_minute > MEDIUM_THROUGHPUT:
        return "Medium"
    return "Low"


def _percent(part: int, whole: int) -> float:
    return round(100 * part / whole, 2) if whole else 0.0


class ResultAggregator:
    """Builds an AggregatedReport from a sequence of OperationResults.

    The aggregator keeps no state; every call recomputes the report from the
    results it is given, so the same input always yields the same report.
    Cancelled items count toward ``total`` and ``cancelled`` only. Failure
    counts, latency stats and the rate-based recommendations look at the items
    that actually ran.
    """

    def _performance(self, latencies: list[float]) -> PerformanceStats:
        if not latencies:
            return PerformanceStats()
        avg_latency = sum(latencies) / len(latencies)
        operations_per_minute = round(60 / avg_latency, 2) if avg_latency > 0 else 0.0
        return PerformanceStats(
            avg_latency=round(avg_latency, 3),
            min_latency=min(latencies),
            max_latency=max(latencies),
            operations_per_minute=operations_per_minute,
            throughput_score=throughput_score(operations_per_minute),
        )

    def _recommendations(
        self,
        attempted: int,
        success_rate: float,
        by_class: dict[ErrorClass, int],
        gate_deadlines: int,
    ) -> list[Recommendation]:
        if attempted == 0:
            return []

        recommendations = []
        if success_rate < VERY_LOW_SUCCESS_RATE:
            recommendations.append(
                Recommendation(
                    code="very_low_success_rate",
                    message="Success rate is very low. Check configuration and connectivity.",
                )
            )
        elif success_rate < MODERATE_SUCCESS_RATE:
            recommendations.append(
                Recommendation(
                    code="tune_retry_policy",
                    message="Success rate is moderate. Consider more retry attempts.",
                )
            )
        if by_class.get(ErrorClass.rate_limited):
            recommendations.append(
                Recommendation(
                    code="increase_inter_item_delay",
                    message="Rate limiting detected. Increase the delay between operations.",
                )
            )
        if by_class.get(ErrorClass.authentication):
            recommendations.append(
                Recommendation(
                    code="check_credentials",
                    message="Authentication errors detected. Check the API key.",
                )
            )
        if gate_deadlines:
            recommendations.append(
                Recommendation(
                    code="raise_gate_timeout",
                    message="Items never got a dispatch slot. Raise gate_timeout or "
                    "lower the delay between operations.",
                )
            )
        return recommendations

    def aggregate(self, results: Iterable[OperationResult]) -> AggregatedReport:
        results = list(results)
        attempted = [result for result in results if not result.cancelled]
        total = len(results)
        successful = sum(1 for result in attempted if result.ok)
        cancelled = total - len(attempted)
        failed = len(attempted) - successful

        failed_items = []
        class_counts: Counter = Counter()
        code_counts: Counter = Counter()
        gate_deadlines = 0
        for result in attempted:
            if result.ok:
                continue
            if (result.error_message or "").startswith(GATE_DEADLINE_EXCEEDED):
                gate_deadlines += 1
            error_class = classify_error(result.status_code, result.error_message)
            class_counts[error_class] += 1
            code_counts[result.status_code] += 1
            failed_items.append(
                FailedItem(
                    index=result.index,
                    operation_id=result.operation_id,
                    attempts=result.attempt,
                    status_code=result.status_code,
                    error_class=error_class,
                    error_message=result.error_message,
                    friendly_message=friendly_message(result.status_code),
                    suggestions=suggestions(result.status_code, result.error_message),
                )
            )

        # Taxonomy order and ascending codes keep repeated reports identical.
        by_class = {
            error_class: class_counts[error_class]
            for error_class in ErrorClass
            if class_counts[error_class]
        }
        by_code = {code: code_counts[code] for code in sorted(code_counts)}
        most_common = max(by_class, key=by_class.get) if by_class else None

        success_rate = _percent(successful, total)
        latencies = [result.latency for result in attempted]
        grade = LOWEST_GRADE
        if latencies:
            grade = performance_grade(sum(latencies) / len(latencies), success_rate)
        return AggregatedReport(
            total=total,
            successful=successful,
            failed=failed,
            cancelled=cancelled,
            success_rate_percent=success_rate,
            error_rate_percent=_percent(failed, total),
            total_attempts=sum(result.attempt for result in results),
            error_breakdown_by_class=by_class,
            error_breakdown_by_code=by_code,
            most_common_error=most_common,
            failed_items=failed_items,
            recommendations=self._recommendations(
                len(attempted), _percent(successful, len(attempted)), by_class, gate_deadlines
            ),
            performance=self._performance(latencies),
            performance_grade=grade,
        )

    def summarize_health(self, outcome: PollOutcome) -> AggregatedReport:
        """Aggregate the fetch history of a poll run"""
        return self.aggregate(outcome.as_results())


class ResultLog:
    """Caller-owned rolling history of results across dispatch calls"""

    def __init__(self, max_entries: int = 1000):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._results: deque = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._results)

    @property
    def results(self) -> list[OperationResult]:
        return list(self._results)

    def extend(self, results: Iterable[OperationResult]) -> None:
        self._results.extend(results)

    def clear(self) -> None:
        self._results.clear()

    def report(self, aggregator: Optional[ResultAggregator] = None) -> AggregatedReport:
        return (aggregator or ResultAggregator()).aggregate(self._results)
