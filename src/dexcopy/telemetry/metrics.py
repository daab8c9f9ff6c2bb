from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from statistics import median
from typing import Any, Protocol


class SnapshotSink(Protocol):
    def write_snapshot(self, row: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class PercentileSummary:
    p50: float
    p95: float
    p99: float


@dataclass(frozen=True)
class TelemetrySnapshot:
    interval_s: float
    messages: int
    events: dict[str, int]
    stages: dict[str, int]
    event_rates: dict[str, float] = field(default_factory=dict)
    messages_per_s: float = 0.0
    execution_latency_ms: PercentileSummary | None = None

    def stage(self, name: str) -> int:
        return self.stages.get(name, 0)


class TelemetryAggregator:
    """Counts per event kind and per pipeline stage.

    ``snapshot_window()`` reads and resets the interval counters in one locked
    step; rates are over the time since the previous reset. Cumulative totals
    survive resets and config reloads.
    """

    def __init__(
        self,
        *,
        exporter: SnapshotSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._exporter = exporter
        self._clock = clock
        self._log = logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._window_started = clock()
        self._events: Counter[str] = Counter()
        self._stages: Counter[str] = Counter()
        self._latencies: list[float] = []
        self._total_events: Counter[str] = Counter()
        self._total_stages: Counter[str] = Counter()
        self._started = self._window_started

    def record(self, event_kind: str) -> None:
        with self._lock:
            self._events[event_kind] += 1
            self._total_events[event_kind] += 1

    def record_stage(self, stage: str, outcome: str = "ok") -> None:
        key = f"{stage}.{outcome}"
        with self._lock:
            self._stages[key] += 1
            self._total_stages[key] += 1

    def record_execution_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._latencies.append(latency_ms)

    def snapshot(self) -> TelemetrySnapshot:
        with self._lock:
            return _build(
                self._clock() - self._started,
                self._total_events,
                self._total_stages,
                [],
            )

    def snapshot_window(self) -> TelemetrySnapshot:
        with self._lock:
            now = self._clock()
            snap = _build(now - self._window_started, self._events, self._stages, self._latencies)
            self._events = Counter()
            self._stages = Counter()
            self._latencies = []
            self._window_started = now
        return snap

    def flush(self, *, final: bool = False) -> TelemetrySnapshot:
        """Report the current window and start a new one. Export failures never propagate."""
        snap = self.snapshot_window()
        payload = snapshot_payload(snap)
        if final:
            payload["final_snapshot"] = True
        if self._exporter is not None:
            try:
                self._exporter.write_snapshot(payload)
            except Exception as exc:
                self._log.warning("telemetry_export_error error=%s", exc)
        self._log.info("telemetry_snapshot", extra={"extra_fields": payload})
        return snap


def snapshot_payload(snap: TelemetrySnapshot) -> dict[str, Any]:
    latency = snap.execution_latency_ms
    payload: dict[str, Any] = {
        "interval_s": snap.interval_s,
        "messages": snap.messages,
        "messages_per_s": round(snap.messages_per_s, 3),
        "execution_latency_p50_ms": latency.p50 if latency else None,
        "execution_latency_p95_ms": latency.p95 if latency else None,
        "execution_latency_p99_ms": latency.p99 if latency else None,
    }
    for kind, count in sorted(snap.events.items()):
        payload[f"events.{kind}"] = count
    for key, count in sorted(snap.stages.items()):
        payload[f"stage.{key}"] = count
    return payload


def _build(
    elapsed_s: float,
    events: Counter[str],
    stages: Counter[str],
    latencies: list[float],
) -> TelemetrySnapshot:
    messages = sum(events.values())
    elapsed = max(elapsed_s, 1e-9)
    return TelemetrySnapshot(
        interval_s=round(elapsed_s, 3),
        messages=messages,
        events=dict(events),
        stages=dict(stages),
        event_rates={kind: count / elapsed for kind, count in events.items()},
        messages_per_s=messages / elapsed,
        execution_latency_ms=_summary(latencies),
    )


def _summary(values: list[float]) -> PercentileSummary | None:
    if not values:
        return None
    ordered = sorted(values)
    return PercentileSummary(
        p50=median(ordered),
        p95=_percentile(ordered, 95),
        p99=_percentile(ordered, 99),
    )


def _percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return sorted_values[0]
    index = int(round((p / 100) * (len(sorted_values) - 1)))
    return sorted_values[max(0, min(index, len(sorted_values) - 1))]
