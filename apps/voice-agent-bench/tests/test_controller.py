from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest
import structlog
from structlog.testing import CapturingLogger

from fakes import FakeSession
from voice_agent_bench.controller import RunController, RunState
from voice_agent_bench.metrics import MetricsSink
from voice_agent_bench.models import ApplicationConfig, RunSettings, RunSpec, ScenarioConfig

SETTINGS = RunSettings(settle_delay_ms=0, event_timeout_ms=2000)

LIFECYCLE_OK = [
    RunState.IDLE,
    RunState.LAUNCHING,
    RunState.READY,
    RunState.EXECUTING,
    RunState.CLOSING,
    RunState.SUCCEEDED,
]


def _spec(app_steps: list[dict], scenario_steps: list[dict]) -> RunSpec:
    app = ApplicationConfig.model_validate(
        {"name": "widget", "url": "https://example.test/agent", "steps": app_steps}
    )
    scenario = ScenarioConfig.model_validate({"name": "greeting", "steps": scenario_steps})
    return RunSpec(app=app, scenario=scenario, repetition=0, run_number=1)


def _controller(session: FakeSession, spec: RunSpec, settings: RunSettings = SETTINGS, **kwargs) -> RunController:
    return RunController(spec, settings=settings, session_factory=lambda _: session, **kwargs)


def test_successful_run_walks_every_state_and_releases_session() -> None:
    session = FakeSession()
    spec = _spec([{"action": "click", "selector": "#open"}], [{"action": "sleep", "time": 5, "metrics": ["elapsed_time"]}])
    controller = _controller(session, spec)

    result = asyncio.run(controller.run())

    assert result.success and result.error is None
    assert controller.history == LIFECYCLE_OK
    assert session.call_names == [
        "launch",
        "expose_event_channel",
        "inject_instrumentation",
        "navigate",
        "click",
        "close",
    ]
    assert controller.broker is not None and controller.broker.closed
    assert "step2_sleep_elapsed_time" in result.metrics
    assert result.duration_ms > 0


def test_page_events_reach_the_run_broker() -> None:
    session = FakeSession(reactions={"speak_text": [("speechend", {}, 0.01)]})
    spec = _spec([], [{"action": "speak", "text": "hi"}])

    result = asyncio.run(_controller(session, spec).run())

    assert result.success


def test_step_failure_fails_run_with_short_error() -> None:
    session = FakeSession(failures={"click": RuntimeError("element detached\nsecond line")})
    spec = _spec([{"action": "click", "selector": "#open"}], [{"action": "click", "selector": "#never"}])
    controller = _controller(session, spec)

    result = asyncio.run(controller.run())

    assert not result.success
    assert result.error == "Step 1 (click) failed: element detached"
    assert controller.history[-2:] == [RunState.CLOSING, RunState.FAILED]
    assert session.closed
    assert session.call_names.count("click") == 1


def test_launch_failure_still_closes_session() -> None:
    session = FakeSession(failures={"launch": RuntimeError("browser missing")})
    controller = _controller(session, _spec([], []))

    result = asyncio.run(controller.run())

    assert not result.success
    assert result.error == "browser missing"
    assert session.closed
    assert RunState.READY not in controller.history


def test_input_audio_failure_only_warns() -> None:
    session = FakeSession(failures={"start_input_audio": RuntimeError("blocked")})
    settings = SETTINGS.model_copy(update={"audio_url": "https://example.test/noise.mp3", "audio_volume": 0.5})

    result = asyncio.run(_controller(session, _spec([], []), settings=settings).run())

    assert result.success
    assert "stop_input_audio" not in session.call_names


def test_input_audio_is_stopped_on_close() -> None:
    session = FakeSession()
    settings = SETTINGS.model_copy(update={"audio_url": "https://example.test/noise.mp3"})

    asyncio.run(_controller(session, _spec([], []), settings=settings).run())

    assert session.call_names[-2:] == ["stop_input_audio", "close"]
    assert ("start_input_audio", "https://example.test/noise.mp3", 1.0) in session.calls


def test_close_failure_fails_an_otherwise_successful_run() -> None:
    session = FakeSession(failures={"close": RuntimeError("context gone")})

    result = asyncio.run(_controller(session, _spec([], [])).run())

    assert not result.success
    assert result.error == "Failed to close browser session: context gone"


def test_abort_fails_outstanding_wait() -> None:
    session = FakeSession()
    controller = _controller(session, _spec([], [{"action": "wait_for_voice"}]))

    async def scenario():
        running = asyncio.ensure_future(controller.run())
        while controller.broker is None or controller.broker.pending() == 0:
            await asyncio.sleep(0.001)
        assert controller.abort("operator stop") == 1
        return await running

    result = asyncio.run(scenario())

    assert not result.success
    assert result.error == "Step 1 (wait_for_voice) failed: Stopped waiting for 'audiostart': operator stop"
    assert session.closed


def test_cancellation_closes_session_and_propagates() -> None:
    session = FakeSession()
    metrics = MetricsSink()
    controller = _controller(session, _spec([], [{"action": "wait_for_silence"}]), metrics=metrics)

    async def scenario():
        running = asyncio.ensure_future(controller.run())
        while controller.broker is None or controller.broker.pending() == 0:
            await asyncio.sleep(0.001)
        running.cancel()
        await running

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(scenario())

    assert session.closed
    assert controller.broker.closed
    assert controller.state == RunState.FAILED
    assert metrics.runs()[0].success is False


@pytest.fixture
def compressed_timeouts(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Run event waits at 1/100 of their requested timeout and record what was asked for."""
    requested: list[float] = []
    real_wait_for = asyncio.wait_for

    async def wait_for(awaitable, timeout):
        requested.append(timeout)
        return await real_wait_for(awaitable, timeout / 100)

    monkeypatch.setattr(asyncio, "wait_for", wait_for)
    return requested


def _speak_file_spec(tmp_path: Path) -> tuple[RunSettings, RunSpec]:
    (tmp_path / "hello.wav").write_bytes(b"RIFF0000WAVE")
    settings = RunSettings(settle_delay_ms=0, debug=True, assets_dir=str(tmp_path), output_dir=str(tmp_path / "out"))
    return settings, _spec([], [{"action": "speak", "file": "hello.wav"}])


def test_speak_file_succeeds_when_speech_ends_in_time(tmp_path: Path, compressed_timeouts: list[float]) -> None:
    session = FakeSession(reactions={"speak_url": [("speechend", {}, 0.005)]})
    settings, spec = _speak_file_spec(tmp_path)

    result = asyncio.run(_controller(session, spec, settings=settings).run())

    assert result.success
    assert compressed_timeouts == [30.0]
    (speak,) = [call for call in session.calls if call[0] == "speak_url"]
    assert speak[1].startswith("data:audio/wav;base64,")


def test_speak_file_without_speech_end_times_out_with_snapshot(
    tmp_path: Path, compressed_timeouts: list[float]
) -> None:
    session = FakeSession(
        diagnostics={
            "audioMonitorAvailable": True,
            "monitoredElementsCount": 1,
            "monitoredElements": [{"elementId": "agent-audio", "isPlaying": False}],
        }
    )
    settings, spec = _speak_file_spec(tmp_path)
    captured = CapturingLogger()
    logger = structlog.wrap_logger(
        captured, processors=[], wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG)
    )

    result = asyncio.run(_controller(session, spec, settings=settings, logger=logger).run())

    assert settings.event_timeout_ms == 30000
    assert compressed_timeouts == [30.0]
    assert not result.success
    assert result.error == "Step 1 (speak) failed: Timeout waiting for 'speechend' event after 30000ms"
    assert session.closed

    failures = [call.kwargs for call in captured.calls if call.kwargs.get("event") == "step_failed"]
    assert len(failures) == 1
    assert "Audio monitor diagnostics:" in failures[0]["error"]
    assert "agent-audio" in failures[0]["error"]
