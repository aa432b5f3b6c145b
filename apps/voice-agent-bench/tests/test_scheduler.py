from __future__ import annotations

import asyncio

import pytest

from voice_agent_bench.models import ApplicationConfig, RunResult, RunSpec, ScenarioConfig
from voice_agent_bench.scheduler import BenchmarkScheduler, RunQueue, plan

APPS = [ApplicationConfig(name=f"app{n}", url=f"https://example.test/{n}") for n in range(5)]
SCENARIOS = [ScenarioConfig(name=f"scenario{n}") for n in range(3)]


class Tracker:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.started: list[int] = []
        self.aborted: list[str] = []


class FakeController:
    def __init__(self, spec: RunSpec, tracker: Tracker, *, fail: bool = False, hang: bool = False) -> None:
        self.spec = spec
        self.tracker = tracker
        self.fail = fail
        self.hang = hang
        self._release = asyncio.Event()

    def abort(self, reason: str = "process teardown") -> int:
        self.tracker.aborted.append(reason)
        self._release.set()
        return 1

    async def run(self) -> RunResult:
        tracker = self.tracker
        tracker.active += 1
        tracker.peak = max(tracker.peak, tracker.active)
        tracker.started.append(self.spec.run_number)
        try:
            if self.hang:
                await self._release.wait()
            else:
                await asyncio.sleep(0.001)
        finally:
            tracker.active -= 1
        return RunResult(
            app=self.spec.app.name,
            scenario=self.spec.scenario.name,
            repetition=self.spec.repetition,
            run_number=self.spec.run_number,
            success=not self.fail,
            error="Step 1 (click) failed: boom" if self.fail else None,
        )


class RecordingReporter:
    def __init__(self) -> None:
        self.started: list[int] = []
        self.finished: list[int] = []

    def run_started(self, spec: RunSpec) -> None:
        self.started.append(spec.run_number)

    def run_finished(self, result: RunResult) -> None:
        self.finished.append(result.run_number)


def test_plan_is_application_major_with_repetitions_innermost() -> None:
    specs = plan(APPS[:2], SCENARIOS[:2], repeat=2)

    assert [(s.app.name, s.scenario.name, s.repetition) for s in specs] == [
        ("app0", "scenario0", 0),
        ("app0", "scenario0", 1),
        ("app0", "scenario1", 0),
        ("app0", "scenario1", 1),
        ("app1", "scenario0", 0),
        ("app1", "scenario0", 1),
        ("app1", "scenario1", 0),
        ("app1", "scenario1", 1),
    ]
    assert [s.run_number for s in specs] == list(range(1, 9))
    assert specs[3].label == "app0 + scenario1 (rep 1)"


def test_plan_rejects_non_positive_repeat() -> None:
    with pytest.raises(ValueError):
        plan(APPS, SCENARIOS, repeat=0)


def test_run_queue_hands_out_each_spec_once() -> None:
    specs = plan(APPS[:1], SCENARIOS, repeat=1)
    queue = RunQueue(specs)

    claimed = [queue.claim() for _ in range(4)]

    assert [spec.run_number for spec in claimed[:3]] == [1, 2, 3]
    assert claimed[3] is None
    assert queue.remaining == 0


@pytest.mark.parametrize("concurrency", [1, 3, 15, 100])
def test_concurrency_bounds_live_runs(concurrency: int) -> None:
    tracker = Tracker()
    scheduler = BenchmarkScheduler(
        concurrency=concurrency,
        controller_factory=lambda spec: FakeController(spec, tracker),
    )
    # five application/scenario combinations, three repetitions each
    specs = scheduler.plan(APPS, SCENARIOS[:1], repeat=3)

    summary = asyncio.run(scheduler.run(specs))

    assert len(specs) == 15
    assert scheduler.worker_count == min(concurrency, 15)
    assert tracker.peak <= min(concurrency, 15)
    assert sorted(tracker.started) == list(range(1, 16))
    assert [result.run_number for result in summary.results] == list(range(1, 16))
    executed = [(result.app, result.scenario, result.repetition) for result in summary.results]
    assert sorted(executed) == sorted({(f"app{a}", "scenario0", rep) for a in range(5) for rep in range(3)})
    assert (summary.total_runs, summary.successful, summary.failed) == (15, 15, 0)


def test_single_worker_runs_in_plan_order() -> None:
    tracker = Tracker()
    scheduler = BenchmarkScheduler(concurrency=1, controller_factory=lambda spec: FakeController(spec, tracker))

    asyncio.run(scheduler.run(scheduler.plan(APPS[:2], SCENARIOS, repeat=2)))

    assert tracker.started == list(range(1, 13))
    assert tracker.peak == 1


def test_failures_are_isolated_and_reported() -> None:
    tracker = Tracker()
    failing = {2, 5}
    reporter = RecordingReporter()
    scheduler = BenchmarkScheduler(
        concurrency=3,
        controller_factory=lambda spec: FakeController(spec, tracker, fail=spec.run_number in failing),
        reporter=reporter,
    )

    summary = asyncio.run(scheduler.run(scheduler.plan(APPS[:2], SCENARIOS, repeat=1)))

    assert (summary.total_runs, summary.successful, summary.failed) == (6, 4, 2)
    assert [error.run_number for error in summary.errors] == [2, 5]
    assert sorted(tracker.started) == [1, 2, 3, 4, 5, 6]
    assert sorted(reporter.started) == sorted(reporter.finished) == [1, 2, 3, 4, 5, 6]


def test_controller_setup_error_becomes_failed_result() -> None:
    tracker = Tracker()

    def factory(spec: RunSpec) -> FakeController:
        if spec.run_number == 1:
            raise RuntimeError("no browser available")
        return FakeController(spec, tracker)

    scheduler = BenchmarkScheduler(concurrency=2, controller_factory=factory)
    summary = asyncio.run(scheduler.run(scheduler.plan(APPS[:1], SCENARIOS, repeat=1)))

    assert summary.failed == 1
    assert summary.results[0].error == "no browser available"
    assert summary.successful == 2


def test_cancellation_aborts_live_controllers_first() -> None:
    tracker = Tracker()
    scheduler = BenchmarkScheduler(
        concurrency=3,
        controller_factory=lambda spec: FakeController(spec, tracker, hang=True),
    )

    async def scenario():
        running = asyncio.ensure_future(scheduler.run(scheduler.plan(APPS, SCENARIOS, repeat=1)))
        while tracker.active < 3:
            await asyncio.sleep(0.001)
        running.cancel()
        await running

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())

    assert tracker.aborted == ["benchmark cancelled"] * 3
    assert tracker.active == 0


def test_empty_plan_spawns_no_workers() -> None:
    scheduler = BenchmarkScheduler(concurrency=4, controller_factory=lambda spec: None)

    summary = asyncio.run(scheduler.run([]))

    assert scheduler.worker_count == 0
    assert summary.total_runs == 0


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BenchmarkScheduler(concurrency=0, controller_factory=lambda spec: None)
