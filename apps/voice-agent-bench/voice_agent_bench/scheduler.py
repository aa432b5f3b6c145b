"""Bounded worker pool that drains the benchmark matrix."""

from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Optional, Protocol, Sequence

import structlog

from .controller import RunController
from .errors import short_message
from .models import ApplicationConfig, BenchmarkSummary, RunResult, RunSpec, ScenarioConfig

LOGGER = structlog.get_logger("voice_agent_bench")

ControllerFactory = Callable[[RunSpec], RunController]


class RunReporter(Protocol):
    def run_started(self, spec: RunSpec) -> None: ...

    def run_finished(self, result: RunResult) -> None: ...


class RunQueue:
    """Shared cursor over the planned runs.

    Workers live on one event loop and ``claim`` never awaits, so each index is
    handed out exactly once without a lock.
    """

    def __init__(self, specs: Sequence[RunSpec]) -> None:
        self._specs = list(specs)
        self._cursor = 0

    def claim(self) -> Optional[RunSpec]:
        if self._cursor >= len(self._specs):
            return None
        spec = self._specs[self._cursor]
        self._cursor += 1
        return spec

    @property
    def remaining(self) -> int:
        return len(self._specs) - self._cursor


def plan(
    applications: Sequence[ApplicationConfig],
    scenarios: Sequence[ScenarioConfig],
    repeat: int = 1,
) -> list[RunSpec]:
    """Application-major, scenario-minor, repetitions innermost; run numbers start at 1."""

    if repeat < 1:
        raise ValueError("repeat must be at least 1")
    specs: list[RunSpec] = []
    for app in applications:
        for scenario in scenarios:
            for repetition in range(repeat):
                specs.append(
                    RunSpec(app=app, scenario=scenario, repetition=repetition, run_number=len(specs) + 1)
                )
    return specs


class BenchmarkScheduler:
    def __init__(
        self,
        *,
        concurrency: int,
        controller_factory: ControllerFactory,
        reporter: Optional[RunReporter] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.worker_count = 0
        self._controller_factory = controller_factory
        self._reporter = reporter
        self._live: set[RunController] = set()

    def plan(
        self,
        applications: Sequence[ApplicationConfig],
        scenarios: Sequence[ScenarioConfig],
        repeat: int = 1,
    ) -> list[RunSpec]:
        return plan(applications, scenarios, repeat)

    def abort(self, reason: str = "benchmark cancelled") -> None:
        for controller in list(self._live):
            controller.abort(reason)

    async def run(self, specs: Iterable[RunSpec]) -> BenchmarkSummary:
        specs = list(specs)
        queue = RunQueue(specs)
        results: list[RunResult] = []
        self.worker_count = min(self.concurrency, len(specs))
        LOGGER.info("benchmark_started", total_runs=len(specs), workers=self.worker_count)

        workers = [
            asyncio.ensure_future(self._worker(worker_id, queue, results))
            for worker_id in range(self.worker_count)
        ]
        try:
            if workers:
                await asyncio.wait(workers)
        except asyncio.CancelledError:
            # waiters fail first, then the workers unwind and close their sessions
            self.abort("benchmark cancelled")
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        for worker in workers:
            worker.result()

        results.sort(key=lambda result: result.run_number)
        successful = sum(1 for result in results if result.success)
        summary = BenchmarkSummary(
            total_runs=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )
        LOGGER.info(
            "benchmark_finished",
            total_runs=summary.total_runs,
            successful=summary.successful,
            failed=summary.failed,
        )
        return summary

    async def _worker(self, worker_id: int, queue: RunQueue, results: list[RunResult]) -> None:
        while True:
            spec = queue.claim()
            if spec is None:
                return
            LOGGER.debug("run_claimed", worker=worker_id, run=spec.run_number, remaining=queue.remaining)
            if self._reporter is not None:
                self._reporter.run_started(spec)
            result = await self._run_one(spec)
            results.append(result)
            if self._reporter is not None:
                self._reporter.run_finished(result)

    async def _run_one(self, spec: RunSpec) -> RunResult:
        try:
            controller = self._controller_factory(spec)
        except Exception as exc:
            LOGGER.error("controller_setup_failed", run=spec.run_number, error=str(exc))
            return RunResult(
                app=spec.app.name,
                scenario=spec.scenario.name,
                repetition=spec.repetition,
                run_number=spec.run_number,
                success=False,
                error=short_message(exc),
            )
        self._live.add(controller)
        try:
            return await controller.run()
        finally:
            self._live.discard(controller)
