from __future__ import annotations

import csv
import json
import tempfile
import unittest
from pathlib import Path

from dexcopy.telemetry.exporter import ExportConfig, TelemetryExporter
from dexcopy.telemetry.metrics import TelemetryAggregator, snapshot_payload


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class BrokenSink:
    def write_snapshot(self, row: dict) -> None:
        raise OSError("disk full")


class TelemetryAggregatorTests(unittest.TestCase):
    def test_window_snapshot_resets_interval_metrics(self) -> None:
        clock = FakeClock()
        telemetry = TelemetryAggregator(clock=clock)
        for _ in range(4):
            telemetry.record("trade")
        telemetry.record("pool")
        telemetry.record_stage("quote", "no_route")
        telemetry.record_execution_latency(120.0)
        telemetry.record_execution_latency(80.0)
        clock.now += 2.0

        first = telemetry.snapshot_window()
        self.assertEqual(first.messages, 5)
        self.assertEqual(first.events, {"trade": 4, "pool": 1})
        self.assertAlmostEqual(first.event_rates["trade"], 2.0)
        self.assertAlmostEqual(first.messages_per_s, 2.5)
        self.assertEqual(first.stage("quote.no_route"), 1)
        assert first.execution_latency_ms is not None
        self.assertEqual(first.execution_latency_ms.p50, 100.0)

        clock.now += 1.0
        second = telemetry.snapshot_window()
        self.assertEqual(second.messages, 0)
        self.assertEqual(second.stage("quote.no_route"), 0)
        self.assertIsNone(second.execution_latency_ms)

    def test_cumulative_snapshot_survives_window_reset(self) -> None:
        telemetry = TelemetryAggregator(clock=FakeClock())
        telemetry.record("trade")
        telemetry.snapshot_window()
        telemetry.record("trade")
        self.assertEqual(telemetry.snapshot().events, {"trade": 2})

    def test_flush_swallows_export_errors(self) -> None:
        telemetry = TelemetryAggregator(exporter=BrokenSink(), clock=FakeClock())
        telemetry.record("order")
        with self.assertLogs("TelemetryAggregator", level="INFO") as logs:
            snap = telemetry.flush()
        self.assertEqual(snap.events, {"order": 1})
        self.assertTrue(any("telemetry_export_error" in line for line in logs.output))

    def test_payload_flattens_counters(self) -> None:
        telemetry = TelemetryAggregator(clock=FakeClock())
        telemetry.record("trade")
        telemetry.record_stage("broadcast", "retry")
        payload = snapshot_payload(telemetry.snapshot_window())
        self.assertEqual(payload["events.trade"], 1)
        self.assertEqual(payload["stage.broadcast.retry"], 1)
        self.assertIsNone(payload["execution_latency_p95_ms"])


class TelemetryExporterTests(unittest.TestCase):
    def test_flush_writes_jsonl_and_csv(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            exporter = TelemetryExporter(ExportConfig(out_dir=tmp))
            telemetry = TelemetryAggregator(exporter=exporter, clock=FakeClock())
            telemetry.record("trade")
            telemetry.flush(final=True)

            lines = (Path(tmp) / "snapshots.jsonl").read_text(encoding="utf-8").splitlines()
            row = json.loads(lines[-1])
            self.assertEqual(row["events.trade"], 1)
            self.assertTrue(row["final_snapshot"])

            csv_lines = (Path(tmp) / "snapshots.csv").read_text(encoding="utf-8").splitlines()
            self.assertTrue(csv_lines[0].startswith("ts,interval_s,messages"))
            self.assertEqual(len(csv_lines), 2)
            self.assertTrue(csv_lines[1].endswith(",true"))

    def test_stale_csv_header_starts_new_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            stale = Path(tmp) / "snapshots.csv"
            stale.write_text("ts,reject_rate\n1,0.5\n", encoding="utf-8")
            exporter = TelemetryExporter(ExportConfig(out_dir=tmp))
            exporter.write_snapshot({"messages": 3})
            self.assertNotEqual(exporter.csv_path, stale)
            self.assertEqual(stale.read_text(encoding="utf-8"), "ts,reject_rate\n1,0.5\n")
            self.assertEqual(len(exporter.csv_path.read_text(encoding="utf-8").splitlines()), 2)

    def test_recorded_stage_outcomes_have_csv_columns(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            exporter = TelemetryExporter(ExportConfig(out_dir=tmp))
            telemetry = TelemetryAggregator(exporter=exporter, clock=FakeClock())
            for stage, outcome in (
                ("build", "error"),
                ("broadcast", "error"),
                ("confirm", "failed_on_chain"),
                ("execution", "crashed"),
                ("route", "pinned"),
                ("stream", "error"),
            ):
                telemetry.record_stage(stage, outcome)
            telemetry.flush()

            with exporter.csv_path.open(encoding="utf-8", newline="") as fp:
                row = next(csv.DictReader(fp))
            for column in (
                "stage.build.error",
                "stage.broadcast.error",
                "stage.confirm.failed_on_chain",
                "stage.execution.crashed",
                "stage.route.pinned",
                "stage.stream.error",
            ):
                self.assertEqual(row[column], "1", column)


if __name__ == "__main__":
    unittest.main()
