from dataclasses import dataclass


@dataclass
class MetricBucket:
    total: int = 0
    degraded: int = 0
    errors: int = 0
    latency_total_ms: float = 0.0

    def record(self, duration_ms: float, degraded: bool, error: bool) -> None:
        self.total += 1
        if degraded:
            self.degraded += 1
        if error:
            self.errors += 1
        self.latency_total_ms += duration_ms

    def snapshot(self) -> dict[str, float | int]:
        avg = self.latency_total_ms / self.total if self.total else 0.0
        return {
            "total": self.total,
            "degraded": self.degraded,
            "errors": self.errors,
            "avg_latency_ms": round(avg, 2),
        }


class SelectionMetrics:
    """Counters for the selection pipeline.

    ``degraded`` means the step completed through a fallback: a select whose
    remote write failed, or an order written through the direct path.
    """

    def __init__(self) -> None:
        self.selects = MetricBucket()
        self.unselects = MetricBucket()
        self.syncs = MetricBucket()
        self.orders = MetricBucket()
        self.repaired = 0

    def record_select(self, duration_ms: float, degraded: bool, error: bool) -> None:
        self.selects.record(duration_ms, degraded, error)

    def record_unselect(self, duration_ms: float, degraded: bool, error: bool) -> None:
        self.unselects.record(duration_ms, degraded, error)

    def record_sync(self, duration_ms: float, repaired: int, error: bool) -> None:
        self.syncs.record(duration_ms, False, error)
        self.repaired += repaired

    def record_order(self, duration_ms: float, via_fallback: bool, error: bool) -> None:
        self.orders.record(duration_ms, via_fallback, error)

    def snapshot(self) -> dict[str, object]:
        return {
            "select": self.selects.snapshot(),
            "unselect": self.unselects.snapshot(),
            "sync": {**self.syncs.snapshot(), "repaired": self.repaired},
            "order": self.orders.snapshot(),
        }


selection_metrics = SelectionMetrics()
