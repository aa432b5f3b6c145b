"""Thread-safe metrics sink shared by concurrent runs."""

from __future__ import annotations

import csv
import math
import statistics
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

RunKey = tuple[str, str, int]


@dataclass
class RunRecord:
    app: str
    scenario: str
    repetition: int
    success: Optional[bool] = None
    metrics: dict[tuple[int, str, str], float] = field(default_factory=dict)

    def columns(self) -> dict[str, float]:
        return {metric_column(index, action, name): value for (index, action, name), value in self.metrics.items()}


@dataclass
class MetricSummary:
    app: str
    scenario: str
    step_index: int
    action: str
    metric: str
    count: int
    mean: float
    median: float
    p95: float
    minimum: float
    maximum: float


def metric_column(step_index: int, action: str, metric: str) -> str:
    return f"step{step_index + 1}_{action}_{metric}"


def percentile(values: list[float], fraction: float) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    rank = max(0, math.ceil(fraction * len(ordered)) - 1)
    return ordered[rank]


class MetricsSink:
    """Accumulates per-step metrics; every mutation is serialized by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[RunKey, RunRecord] = {}
        self._order: list[RunKey] = []

    def begin_run(self, app: str, scenario: str, repetition: int) -> None:
        key = (app, scenario, repetition)
        with self._lock:
            if key not in self._runs:
                self._order.append(key)
            self._runs[key] = RunRecord(app=app, scenario=scenario, repetition=repetition)

    def record_step_metric(
        self,
        app: str,
        scenario: str,
        repetition: int,
        step_index: int,
        action: str,
        metric_name: str,
        value: Any,
    ) -> None:
        key = (app, scenario, repetition)
        with self._lock:
            record = self._runs.get(key)
            if record is None:
                record = RunRecord(app=app, scenario=scenario, repetition=repetition)
                self._runs[key] = record
                self._order.append(key)
            record.metrics[(step_index, action, metric_name)] = float(value)

    def end_run(self, app: str, scenario: str, repetition: int, success: bool) -> None:
        with self._lock:
            record = self._runs.get((app, scenario, repetition))
            if record is not None:
                record.success = success

    def runs(self) -> list[RunRecord]:
        with self._lock:
            return [self._runs[key] for key in self._order]

    def run_metrics(self, app: str, scenario: str, repetition: int) -> dict[str, float]:
        with self._lock:
            record = self._runs.get((app, scenario, repetition))
            return record.columns() if record is not None else {}

    def summary(self) -> list[MetricSummary]:
        """Aggregate each step metric over successful runs."""

        grouped: dict[tuple[str, str, int, str, str], list[float]] = {}
        for record in self.runs():
            if not record.success:
                continue
            for (index, action, name), value in record.metrics.items():
                grouped.setdefault((record.app, record.scenario, index, action, name), []).append(value)

        rows: list[MetricSummary] = []
        for (app, scenario, index, action, name), values in sorted(grouped.items()):
            rows.append(
                MetricSummary(
                    app=app,
                    scenario=scenario,
                    step_index=index,
                    action=action,
                    metric=name,
                    count=len(values),
                    mean=round(statistics.mean(values), 3),
                    median=round(statistics.median(values), 3),
                    p95=round(percentile(values, 0.95) or values[0], 3),
                    minimum=round(min(values), 3),
                    maximum=round(max(values), 3),
                )
            )
        return rows

    def write_csv(self, path: Path) -> Path:
        """One row per run, one column per recorded step metric."""

        records = self.runs()
        columns = sorted({column for record in records for column in record.columns()})
        fieldnames = ["app", "scenario", "repetition", "success", *columns]
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            writer.writeheader()
            for record in records:
                writer.writerow(
                    {
                        "app": record.app,
                        "scenario": record.scenario,
                        "repetition": record.repetition,
                        "success": record.success,
                        **record.columns(),
                    }
                )
        return path
