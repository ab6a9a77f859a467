"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, Tuple


class MetricsCollector:
    """Thread-safe metrics collector for API and graph-maintenance instrumentation."""

    REQUEST_DURATION_BUCKETS = (
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
    )

    SWEEP_KINDS = ("entities", "relations", "links", "aliases")

    def __init__(self) -> None:
        self._lock = threading.Lock()

        # Counters
        self._requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self._sweeps_total: int = 0
        self._sweep_removed_total: Dict[str, int] = defaultdict(int)
        self._merges_total: int = 0
        self._extraction_failures_total: int = 0

        # Histogram (cumulative bucket counts)
        self._request_duration_bucket_counts: Dict[str, list[int]] = {}
        self._request_duration_sum: Dict[str, float] = defaultdict(float)
        self._request_duration_count: Dict[str, int] = defaultdict(int)

        # Gauges
        self._graph_rows_by_library: Dict[Tuple[str, str], int] = {}

    def reset(self) -> None:
        """Reset all metrics (used by tests)."""
        with self._lock:
            self._requests_total.clear()
            self._sweeps_total = 0
            self._sweep_removed_total.clear()
            self._merges_total = 0
            self._extraction_failures_total = 0
            self._request_duration_bucket_counts.clear()
            self._request_duration_sum.clear()
            self._request_duration_count.clear()
            self._graph_rows_by_library = {}

    def record_request(self, method: str, path: str, status: int, duration_seconds: float) -> None:
        """Record request counter and latency histogram observation."""
        method_norm = (method or "GET").upper()
        path_norm = path or "/"
        status_norm = str(status)
        duration = max(0.0, float(duration_seconds))

        with self._lock:
            self._requests_total[(method_norm, path_norm, status_norm)] += 1

            buckets = self._request_duration_bucket_counts.get(path_norm)
            if buckets is None:
                buckets = [0 for _ in self.REQUEST_DURATION_BUCKETS]
                self._request_duration_bucket_counts[path_norm] = buckets

            for idx, upper_bound in enumerate(self.REQUEST_DURATION_BUCKETS):
                if duration <= upper_bound:
                    buckets[idx] += 1

            self._request_duration_sum[path_norm] += duration
            self._request_duration_count[path_norm] += 1

    def record_sweep(self, removed: Dict[str, int]) -> None:
        """Count one sweep and its removed rows (keys: entities, relations, links, aliases)."""
        with self._lock:
            self._sweeps_total += 1
            for kind in self.SWEEP_KINDS:
                self._sweep_removed_total[kind] += max(0, int(removed.get(kind, 0)))

    def inc_merge(self, count: int = 1) -> None:
        with self._lock:
            self._merges_total += max(0, int(count))

    def inc_extraction_failure(self, count: int = 1) -> None:
        with self._lock:
            self._extraction_failures_total += max(0, int(count))

    def set_graph_gauges(self, *, rows_by_library: Dict[str, Dict[str, int]]) -> None:
        """Update per-library row-count gauges (table -> count)."""
        cleaned = {
            (str(library), str(table)): max(0, int(total))
            for library, tables in rows_by_library.items()
            for table, total in tables.items()
        }
        with self._lock:
            self._graph_rows_by_library = cleaned

    def snapshot(self) -> Dict[str, Any]:
        """Take an immutable snapshot for exposition."""
        with self._lock:
            return {
                "requests_total": dict(self._requests_total),
                "request_duration_bucket_counts": {
                    path: list(counts)
                    for path, counts in self._request_duration_bucket_counts.items()
                },
                "request_duration_sum": dict(self._request_duration_sum),
                "request_duration_count": dict(self._request_duration_count),
                "sweeps_total": int(self._sweeps_total),
                "sweep_removed_total": dict(self._sweep_removed_total),
                "merges_total": int(self._merges_total),
                "extraction_failures_total": int(self._extraction_failures_total),
                "graph_rows_by_library": dict(self._graph_rows_by_library),
            }

    def render_prometheus(self) -> str:
        """Render snapshot in Prometheus exposition format (text/plain)."""
        snap = self.snapshot()
        lines: list[str] = []

        lines.append("# HELP notegraph_requests_total Total HTTP requests processed.")
        lines.append("# TYPE notegraph_requests_total counter")
        for (method, path, status), count in sorted(snap["requests_total"].items()):
            lines.append(
                "notegraph_requests_total"
                f'{{method="{_label_escape(method)}",path="{_label_escape(path)}",status="{_label_escape(status)}"}} '
                f"{int(count)}"
            )

        lines.append("# HELP notegraph_request_duration_seconds HTTP request latency in seconds.")
        lines.append("# TYPE notegraph_request_duration_seconds histogram")
        duration_buckets: Dict[str, list[int]] = snap["request_duration_bucket_counts"]
        duration_sum: Dict[str, float] = snap["request_duration_sum"]
        duration_count: Dict[str, int] = snap["request_duration_count"]
        for path in sorted(duration_buckets.keys()):
            path_label = _label_escape(path)
            for upper_bound, bucket_value in zip(self.REQUEST_DURATION_BUCKETS, duration_buckets[path]):
                lines.append(
                    "notegraph_request_duration_seconds_bucket"
                    f'{{path="{path_label}",le="{_format_bucket(upper_bound)}"}} '
                    f"{int(bucket_value)}"
                )
            lines.append(
                "notegraph_request_duration_seconds_bucket"
                f'{{path="{path_label}",le="+Inf"}} '
                f"{int(duration_count.get(path, 0))}"
            )
            lines.append(
                "notegraph_request_duration_seconds_sum"
                f'{{path="{path_label}"}} '
                f"{_format_float(float(duration_sum.get(path, 0.0)))}"
            )
            lines.append(
                "notegraph_request_duration_seconds_count"
                f'{{path="{path_label}"}} '
                f"{int(duration_count.get(path, 0))}"
            )

        lines.append("# HELP notegraph_sweeps_total Consistency sweeps committed.")
        lines.append("# TYPE notegraph_sweeps_total counter")
        lines.append(f"notegraph_sweeps_total {snap['sweeps_total']}")

        lines.append("# HELP notegraph_sweep_removed_total Rows removed by consistency sweeps, by kind.")
        lines.append("# TYPE notegraph_sweep_removed_total counter")
        for kind in self.SWEEP_KINDS:
            lines.append(
                f'notegraph_sweep_removed_total{{kind="{kind}"}} '
                f"{int(snap['sweep_removed_total'].get(kind, 0))}"
            )

        lines.append("# HELP notegraph_merges_total Entity merges committed.")
        lines.append("# TYPE notegraph_merges_total counter")
        lines.append(f"notegraph_merges_total {snap['merges_total']}")

        lines.append("# HELP notegraph_extraction_failures_total Extraction calls that failed.")
        lines.append("# TYPE notegraph_extraction_failures_total counter")
        lines.append(f"notegraph_extraction_failures_total {snap['extraction_failures_total']}")

        lines.append("# HELP notegraph_graph_rows Rows stored per table, by library.")
        lines.append("# TYPE notegraph_graph_rows gauge")
        for (library, table), total in sorted(snap["graph_rows_by_library"].items()):
            lines.append(
                "notegraph_graph_rows"
                f'{{library="{_label_escape(library)}",table="{_label_escape(table)}"}} '
                f"{int(total)}"
            )

        return "\n".join(lines) + "\n"


collector = MetricsCollector()


def record_request_metric(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    collector.record_request(method=method, path=path, status=status, duration_seconds=duration_seconds)


def record_sweep(removed: Dict[str, int]) -> None:
    collector.record_sweep(removed)


def record_merge(count: int = 1) -> None:
    collector.inc_merge(count=count)


def record_extraction_failure(count: int = 1) -> None:
    collector.inc_extraction_failure(count=count)


def set_graph_gauges(*, rows_by_library: Dict[str, Dict[str, int]]) -> None:
    collector.set_graph_gauges(rows_by_library=rows_by_library)


def render_prometheus_metrics() -> str:
    return collector.render_prometheus()


def reset_metrics() -> None:
    collector.reset()


def _label_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_bucket(value: float) -> str:
    return f"{float(value):g}"


def _format_float(value: float) -> str:
    text = f"{float(value):.9f}".rstrip("0").rstrip(".")
    return text if text else "0"
