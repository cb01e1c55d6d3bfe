"""
In-memory metrics counters for the workflow runner and prompt engine.

A ``MetricsCollector`` is created by the caller and handed to every component
that reports metrics; there is no process-wide instance.

Key metrics:
- workflow_runs_total{status}: Counter of runs by outcome (succeeded, halted, failed)
- workflow_duration_seconds: Histogram of run execution times
- node_execution_total{node_type,status}: Counter of node executions
- prompt_build_ms: Histogram of prompt build latency
- token_budget_violations_total{code}: Counter of budget rejections
- circuit_breaker_trips_total{model_id}: Counter of automatic trips
"""
import re as _re
from collections import defaultdict
from typing import Any

_EMPTY_STATS = {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}


def metric_key(name: str, labels: dict[str, str] | None = None) -> str:
    """``name`` or ``name{k1=v1,k2=v2}`` with labels sorted by key."""
    if not labels:
        return name
    pairs = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{pairs}}}"


def _summarize(values: list[float]) -> dict[str, Any]:
    if not values:
        return dict(_EMPTY_STATS)
    ordered = sorted(values)
    total = sum(ordered)
    # Nearest-rank p95, clamped to the first sample
    rank = max(int(len(ordered) * 0.95) - 1, 0)
    return {
        "count": len(ordered),
        "sum": total,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": total / len(ordered),
        "p95": ordered[rank],
    }


class MetricsCollector:
    """Counters and raw histogram samples keyed by :func:`metric_key`."""

    def __init__(self):
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, list[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        self.counters[metric_key(name, labels)] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        self.histograms[metric_key(name, labels)].append(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self.counters.get(metric_key(name, labels), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        """count, sum, min, max, avg and p95 of the recorded samples."""
        return _summarize(self.histograms.get(metric_key(name, labels), []))

    def get_all_metrics(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {key: _summarize(samples) for key, samples in self.histograms.items()},
        }

    def reset(self):
        self.counters.clear()
        self.histograms.clear()


def record_workflow_result(collector: MetricsCollector, status: str, duration_seconds: float):
    """
    Record the end of a graph run.

    Args:
        status: succeeded, halted or failed
    """
    collector.increment_counter("workflow_runs_total", labels={"status": status})
    collector.observe_histogram("workflow_duration_seconds", duration_seconds, labels={"status": status})


def record_node_execution(collector: MetricsCollector, node_type: str, status: str):
    """Record a node execution by outcome (continued, halted, failed)."""
    collector.increment_counter("node_execution_total", labels={"node_type": node_type, "status": status})


def record_prompt_build(collector: MetricsCollector, build_ms: float, truncated: bool, pii_detected: bool):
    collector.observe_histogram("prompt_build_ms", build_ms)
    if truncated:
        collector.increment_counter("prompt_truncations_total")
    if pii_detected:
        collector.increment_counter("prompt_pii_detected_total")


def _parse_metric_key(key: str) -> tuple[str, str]:
    """Split an internal metric key into (base_name, prometheus_label_string).

    Internal keys look like ``name`` or ``name{k1=v1,k2=v2}``; the label
    block is rebuilt with quoted values, e.g. ``{node_type="Router"}``.
    """
    m = _re.match(r"^([^{]+)(?:\{(.+)\})?$", key)
    if not m:
        return key, ""
    base_name = m.group(1)
    raw_labels = m.group(2) or ""
    if not raw_labels:
        return base_name, ""
    label_parts: list[str] = []
    for pair in raw_labels.split(","):
        if "=" in pair:
            k, v = pair.split("=", 1)
            label_parts.append(f'{k.strip()}="{v.strip()}"')
    label_str = "{" + ",".join(label_parts) + "}" if label_parts else ""
    return base_name, label_str


def to_prometheus_text(collector: MetricsCollector, prefix: str = "flowrunner_") -> str:
    """Render a collector as Prometheus text exposition format.

    Counters sharing a family name are grouped under one ``# TYPE`` line;
    histograms are rendered as summaries with count, sum and p95/max quantiles.
    """
    summary = collector.get_all_metrics()
    lines: list[str] = []

    counter_families: dict[str, list[tuple[str, int]]] = defaultdict(list)
    for key, val in summary["counters"].items():
        base_name, label_str = _parse_metric_key(key)
        counter_families[prefix + base_name].append((label_str, val))
    for prom_name, entries in counter_families.items():
        lines.append(f"# TYPE {prom_name} counter")
        for label_str, val in entries:
            lines.append(f"{prom_name}{label_str} {val}")

    histogram_families: dict[str, list[tuple[str, dict]]] = defaultdict(list)
    for key, stats in summary["histograms"].items():
        base_name, label_str = _parse_metric_key(key)
        histogram_families[prefix + base_name].append((label_str, stats))
    for prom_name, entries in histogram_families.items():
        lines.append(f"# TYPE {prom_name} summary")
        for label_str, stats in entries:
            lines.append(f"{prom_name}_count{label_str} {stats['count']}")
            lines.append(f"{prom_name}_sum{label_str} {stats['sum']:.6f}")
            for quantile, field in (("0.95", "p95"), ("1.0", "max")):
                q_pair = f'quantile="{quantile}"'
                q_label = label_str[:-1] + "," + q_pair + "}" if label_str else "{" + q_pair + "}"
                lines.append(f"{prom_name}{q_label} {stats[field]:.6f}")
    return "\n".join(lines) + "\n"
