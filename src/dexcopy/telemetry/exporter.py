from __future__ import annotations

import csv
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class ExportConfig:
    out_dir: str = "runs/telemetry"
    csv_name: str = "snapshots.csv"
    jsonl_name: str = "snapshots.jsonl"


class TelemetryExporter:
    """Appends every snapshot to a JSONL file (all keys) and a CSV file (fixed columns).

    The per-reason ``failure.*`` counters are only in the JSONL file.
    """

    def __init__(self, cfg: ExportConfig = ExportConfig()) -> None:
        self._out_dir = Path(cfg.out_dir)
        self._out_dir.mkdir(parents=True, exist_ok=True)
        self._jsonl_path = self._out_dir / cfg.jsonl_name
        self._csv_path = self._open_csv(self._out_dir / cfg.csv_name)

    @property
    def csv_path(self) -> Path:
        return self._csv_path

    def write_snapshot(self, row: dict[str, Any]) -> None:
        payload = {"ts": datetime.now(timezone.utc).isoformat(), **row}
        with self._jsonl_path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(payload, separators=(",", ":"), default=str) + "\n")

        with self._csv_path.open("a", encoding="utf-8", newline="") as fp:
            csv.DictWriter(fp, fieldnames=_FIELDS).writerow(_coerce_row(payload))

    def _open_csv(self, path: Path) -> Path:
        if path.exists():
            with path.open(encoding="utf-8", newline="") as fp:
                header = next(csv.reader(fp), [])
            if header == _FIELDS:
                return path
            # Columns changed since this file was started; leave it as is.
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
            path = path.with_name(f"{path.stem}-{stamp}{path.suffix}")
        with path.open("w", encoding="utf-8", newline="") as fp:
            csv.DictWriter(fp, fieldnames=_FIELDS).writeheader()
        return path


_FIELDS = [
    "ts",
    "interval_s",
    "messages",
    "messages_per_s",
    "events.trade",
    "events.order",
    "events.pool",
    "events.transfer",
    "events.balance_update",
    "events.transaction",
    "events.unknown",
    "stage.intent.rejected",
    "stage.strategy.approved",
    "stage.strategy.rejected",
    "stage.dry_run.sent",
    "stage.execution.dropped",
    "stage.execution.ok",
    "stage.execution.failed",
    "stage.execution.crashed",
    "stage.quote.ok",
    "stage.quote.no_route",
    "stage.quote.error",
    "stage.route.pinned",
    "stage.route.best",
    "stage.build.ok",
    "stage.build.error",
    "stage.sign.error",
    "stage.broadcast.ok",
    "stage.broadcast.retry",
    "stage.broadcast.error",
    "stage.confirm.ok",
    "stage.confirm.timeout",
    "stage.confirm.error",
    "stage.confirm.failed_on_chain",
    "stage.stream.fault",
    "stage.stream.end",
    "stage.stream.error",
    "stage.reload.ok",
    "stage.reload.rejected",
    "stage.classify.decode_error",
    "execution_latency_p50_ms",
    "execution_latency_p95_ms",
    "execution_latency_p99_ms",
    "final_snapshot",
]


def _coerce_row(row: dict[str, Any]) -> dict[str, Any]:
    coerced: dict[str, Any] = {}
    for key in _FIELDS:
        value = row.get(key)
        if isinstance(value, bool):
            coerced[key] = "true" if value else "false"
        elif value is None:
            coerced[key] = ""
        else:
            coerced[key] = str(value)
    return coerced
