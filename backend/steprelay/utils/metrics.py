"""
In-process metrics for the relay.

Series recorded by the runtime:
- step_execution_total{scenario,outcome}: every step invocation
- step_duration_ms{scenario}: work duration of completed steps
- run_completed_total{scenario,status}: runs reaching a terminal status
- race_timeout_total{scenario}: steps that failed on a self-imposed limit
- trigger_failures_total{step}: continuations that never reached the next step

Values live per process and reset on restart.  ``/api/metrics`` serves them as
Prometheus text, ``/api/runs/metrics/summary`` as JSON.
"""
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger("steprelay.metrics")

PROMETHEUS_PREFIX = "steprelay_"

# (metric name, sorted label pairs)
SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _series(name: str, labels: dict[str, str] | None) -> SeriesKey:
    return name, tuple(sorted((labels or {}).items()))


def _summary_key(key: SeriesKey) -> str:
    name, pairs = key
    if not pairs:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in pairs) + "}"


def _prometheus_labels(pairs: tuple[tuple[str, str], ...], *extra: tuple[str, str]) -> str:
    rendered = [f'{k}="{v}"' for k, v in (*pairs, *extra)]
    return "{" + ",".join(rendered) + "}" if rendered else ""


class MetricsCollector:
    """Counters and raw histogram samples keyed by name plus labels."""

    def __init__(self):
        self.counters: dict[SeriesKey, int] = defaultdict(int)
        self.histograms: dict[SeriesKey, list[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        self.counters[_series(name, labels)] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        self.histograms[_series(name, labels)].append(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self.counters.get(_series(name, labels), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        return self._stats(self.histograms.get(_series(name, labels), []))

    @staticmethod
    def _stats(samples: list[float]) -> dict[str, Any]:
        if not samples:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
        ordered = sorted(samples)
        total = sum(ordered)
        return {
            "count": len(ordered),
            "sum": total,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": total / len(ordered),
            "p95": ordered[max(0, int(len(ordered) * 0.95) - 1)],
        }

    def get_all_metrics(self) -> dict[str, Any]:
        return {
            "counters": {_summary_key(k): v for k, v in self.counters.items()},
            "histograms": {_summary_key(k): self._stats(v) for k, v in self.histograms.items()},
        }

    def reset(self):
        self.counters.clear()
        self.histograms.clear()

    def render_prometheus(self, prefix: str = PROMETHEUS_PREFIX) -> str:
        """Text exposition format.  Histograms become summaries with a p95 quantile."""
        lines: list[str] = []

        families: dict[str, list[tuple[tuple, int]]] = defaultdict(list)
        for (name, pairs), value in self.counters.items():
            families[prefix + name].append((pairs, value))
        for family, series in families.items():
            lines.append(f"# TYPE {family} counter")
            lines.extend(f"{family}{_prometheus_labels(pairs)} {value}" for pairs, value in series)

        summaries: dict[str, list[tuple[tuple, dict[str, Any]]]] = defaultdict(list)
        for (name, pairs), samples in self.histograms.items():
            summaries[prefix + name].append((pairs, self._stats(samples)))
        for family, series in summaries.items():
            lines.append(f"# TYPE {family} summary")
            for pairs, stats in series:
                lines.append(f"{family}_count{_prometheus_labels(pairs)} {stats['count']}")
                lines.append(f"{family}_sum{_prometheus_labels(pairs)} {stats['sum']:.6f}")
                quantile = _prometheus_labels(pairs, ("quantile", "0.95"))
                lines.append(f"{family}{quantile} {stats['p95']:.6f}")

        return "\n".join(lines) + "\n"


metrics = MetricsCollector()


def record_step_outcome(scenario: str, outcome: str, duration_ms: int | None = None):
    """Count one step invocation.

    ``outcome`` is the wire outcome: complete, already_completed, aborted,
    race_timeout, timeout or failed.  Both timeout kinds also feed
    ``race_timeout_total``.
    """
    metrics.increment_counter("step_execution_total", labels={"scenario": scenario, "outcome": outcome})
    if duration_ms is not None:
        metrics.observe_histogram("step_duration_ms", duration_ms, labels={"scenario": scenario})
    if outcome in ("race_timeout", "timeout"):
        metrics.increment_counter("race_timeout_total", labels={"scenario": scenario})


def record_run_finished(scenario: str, status: str):
    metrics.increment_counter("run_completed_total", labels={"scenario": scenario, "status": status})
    if status == "failed":
        metrics.increment_counter("run_failures_total")


def record_trigger_failure(step: int):
    metrics.increment_counter("trigger_failures_total", labels={"step": str(step)})
    logger.warning("Trigger failure recorded for step %d", step)


def get_metrics_summary() -> dict:
    return metrics.get_all_metrics()


def to_prometheus_text() -> str:
    return metrics.render_prometheus()
