from prometheus_client import Counter, Histogram

from typing import Optional

# =====================================
# METRICS COLLECTOR
# =====================================

class MetricsCollector:
    """Prometheus metrics for the contract lifecycle engine"""

    def __init__(self):
        self.contract_transitions_total = Counter(
            'contract_transitions_total',
            'Guarded contract writes by operation and outcome',
            ['operation', 'outcome']  # outcome=applied|rejected
        )

        self.queue_tasks_enqueued_total = Counter(
            'queue_tasks_enqueued_total',
            'Queue tasks produced for downstream workers',
            ['event', 'destination']
        )

        self.scheduler_runs_total = Counter(
            'scheduler_runs_total',
            'Scheduled job outcomes per contract',
            ['job', 'result']
        )

        self.side_effect_failures_total = Counter(
            'side_effect_failures_total',
            'Side effects that failed after the contract write committed',
            ['effect']
        )

        self.side_effect_duration = Histogram(
            'side_effect_duration_seconds',
            'Duration of post-transition side effects',
            ['effect']
        )

    def record_transition(self, operation: str, applied: bool):
        self.contract_transitions_total.labels(
            operation=operation,
            outcome="applied" if applied else "rejected"
        ).inc()

    def record_enqueue(self, event: str, destination: Optional[str]):
        self.queue_tasks_enqueued_total.labels(
            event=event,
            destination=destination or "unknown"
        ).inc()

    def record_scheduler_result(self, job: str, result: str):
        self.scheduler_runs_total.labels(job=job, result=result).inc()

    def record_side_effect_failure(self, effect: str):
        self.side_effect_failures_total.labels(effect=effect).inc()

    def record_side_effect_duration(self, effect: str, seconds: float):
        self.side_effect_duration.labels(effect=effect).observe(seconds)


# Global metrics instance
_metrics_collector = MetricsCollector()

def get_metrics() -> MetricsCollector:
    """Process-wide metrics collector"""
    return _metrics_collector
