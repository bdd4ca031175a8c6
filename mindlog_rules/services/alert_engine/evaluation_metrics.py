"""
Rules Engine Metrics
In-process counters and histograms for the evaluation pipeline.

Fail-open evaluators never raise, so these counters are the operator-visible
signal that a rule has been silently disabled (e.g. journal sentiment
failing on every call).
"""

import json
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, List, Optional

import numpy as np


class MetricCounter:
    """Counter keyed by a label set"""

    def __init__(self, name: str):
        self.name = name
        self._counts: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def inc(self, labels: Optional[Dict[str, str]] = None, value: int = 1):
        key = json.dumps(labels or {}, sort_keys=True)
        with self._lock:
            self._counts[key] += value

    def get(self, labels: Optional[Dict[str, str]] = None) -> int:
        key = json.dumps(labels or {}, sort_keys=True)
        with self._lock:
            return self._counts.get(key, 0)

    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def by_label(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)


class MetricHistogram:
    """Bounded sample window for latency distributions"""

    def __init__(self, name: str, max_samples: int = 10000):
        self.name = name
        self.max_samples = max_samples
        self._values: List[float] = []
        self._lock = Lock()
        self._total_count = 0
        self._sum = 0.0

    def observe(self, value: float):
        with self._lock:
            self._values.append(value)
            self._total_count += 1
            self._sum += value
            if len(self._values) > self.max_samples:
                self._values = self._values[-self.max_samples:]

    def percentile(self, p: float) -> float:
        """p in [0, 1]"""
        with self._lock:
            if not self._values:
                return 0.0
            return float(np.percentile(self._values, p * 100))

    def count(self) -> int:
        return self._total_count

    def stats(self) -> Dict[str, float]:
        return {
            "count": self._total_count,
            "sum": self._sum,
            "mean": self._sum / self._total_count if self._total_count else 0.0,
            "p50": self.percentile(0.5),
            "p95": self.percentile(0.95),
            "p99": self.percentile(0.99),
        }


class MetricGauge:
    def __init__(self, name: str):
        self.name = name
        self._value = 0.0
        self._lock = Lock()

    def inc(self, value: float = 1):
        with self._lock:
            self._value += value

    def dec(self, value: float = 1):
        with self._lock:
            self._value -= value

    def get(self) -> float:
        return self._value


class EvaluationMetrics:
    """
    Metrics for one worker process. Constructed at process start and
    injected into the orchestrator, analyzer, publisher and worker.
    """

    def __init__(self):
        self.evaluator_failures = MetricCounter("rules_evaluator_failures_total")
        self.alerts_created = MetricCounter("rules_alerts_created_total")
        self.alerts_suppressed = MetricCounter("rules_alerts_suppressed_total")
        self.broadcasts = MetricCounter("rules_broadcasts_total")
        self.journal_sentiment_skipped = MetricCounter("rules_journal_sentiment_skipped_total")
        self.risk_factor_failures = MetricCounter("risk_factor_failures_total")
        self.jobs = MetricCounter("rules_jobs_total")
        self.evaluation_latency_ms = MetricHistogram("rules_evaluation_latency_ms")
        self.jobs_in_flight = MetricGauge("rules_jobs_in_flight")

    def record_evaluator_failure(self, rule_key: str):
        self.evaluator_failures.inc({"rule": rule_key})

    def record_alert_created(self, rule_key: str, severity: str):
        self.alerts_created.inc({"rule": rule_key, "severity": severity})

    def record_alert_suppressed(self, rule_key: str):
        self.alerts_suppressed.inc({"rule": rule_key})

    def record_broadcast(self, delivered: bool):
        self.broadcasts.inc({"outcome": "delivered" if delivered else "failed"})

    def record_journal_skipped(self, reason: str):
        self.journal_sentiment_skipped.inc({"reason": reason})

    def record_job(self, outcome: str):
        self.jobs.inc({"outcome": outcome})

    def snapshot(self) -> Dict[str, Any]:
        """Dump every metric for the operator status line"""
        return {
            "evaluator_failures": self.evaluator_failures.by_label(),
            "alerts_created": self.alerts_created.by_label(),
            "alerts_suppressed": self.alerts_suppressed.by_label(),
            "broadcasts": self.broadcasts.by_label(),
            "journal_sentiment_skipped": self.journal_sentiment_skipped.by_label(),
            "risk_factor_failures": self.risk_factor_failures.by_label(),
            "jobs": self.jobs.by_label(),
            "evaluation_latency_ms": self.evaluation_latency_ms.stats(),
            "jobs_in_flight": self.jobs_in_flight.get(),
        }
