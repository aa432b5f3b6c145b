"""Lifecycle of one browser session for one (application, scenario, repetition)."""

from __future__ import annotations

import asyncio
import re
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from .errors import StepFailure, short_message
from .evaluation import Evaluator
from .events import EventBroker
from .executor import StepExecutor
from .metrics import MetricsSink
from .models import RunResult, RunSettings, RunSpec
from .session import AutomationSession, PlaywrightSession

LOGGER = structlog.get_logger("voice_agent_bench")

SessionFactory = Callable[[RunSpec], AutomationSession]


class RunState(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    READY = "ready"
    EXECUTING = "executing"
    CLOSING = "closing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def playwright_session_factory(settings: RunSettings) -> SessionFactory:
    """Fresh Playwright browser per run; videos land under ``output_dir/recordings``."""

    def _factory(spec: RunSpec) -> AutomationSession:
        video_dir = None
        if settings.record:
            name = f"{_slug(spec.app.name)}_{_slug(spec.scenario.name)}_{spec.repetition}"
            video_dir = Path(settings.output_dir) / "recordings" / name
        return PlaywrightSession(settings, video_dir=video_dir)

    return _factory


class RunController:
    """Owns one automation session and one event broker from launch to close."""

    def __init__(
        self,
        spec: RunSpec,
        *,
        settings: RunSettings,
        session_factory: SessionFactory,
        metrics: Optional[MetricsSink] = None,
        evaluator: Optional[Evaluator] = None,
        logger: Any = None,
    ) -> None:
        self.spec = spec
        self.settings = settings
        self.metrics = metrics or MetricsSink()
        self.state = RunState.IDLE
        self.history: list[RunState] = [RunState.IDLE]
        self.broker: Optional[EventBroker] = None
        self._session_factory = session_factory
        self._evaluator = evaluator
        self._logger = logger or LOGGER

    def abort(self, reason: str = "process teardown") -> int:
        """Fail this run's outstanding waiters; used before sessions are released."""

        if self.broker is None:
            return 0
        return self.broker.cancel_all(reason)

    async def run(self) -> RunResult:
        spec = self.spec
        with structlog.contextvars.bound_contextvars(
            app=spec.app.name,
            scenario=spec.scenario.name,
            repetition=spec.repetition,
            run=spec.run_number,
        ):
            return await self._run()

    async def _run(self) -> RunResult:
        spec = self.spec
        settings = self.settings
        app, scenario, repetition = spec.app.name, spec.scenario.name, spec.repetition

        timer = time.perf_counter()
        session: Optional[AutomationSession] = None
        input_audio = False
        success = False
        error: Optional[str] = None

        self.metrics.begin_run(app, scenario, repetition)
        try:
            self._transition(RunState.LAUNCHING)
            self.broker = EventBroker(debug=settings.debug)
            session = self._session_factory(spec)
            self.broker.set_snapshot_provider(session.collect_diagnostics)
            await session.launch(spec.app.url)

            self._transition(RunState.READY)
            await session.expose_event_channel(self.broker.publish)
            scripts_dir = Path(settings.instrumentation_dir) if settings.instrumentation_dir else None
            await session.inject_instrumentation(settings.assets_server_url, scripts_dir)
            await session.navigate(spec.app.url, settings.network_idle_timeout_ms)
            await asyncio.sleep(settings.settle_delay_ms / 1000)
            if settings.audio_url:
                input_audio = await self._start_input_audio(session)

            self._transition(RunState.EXECUTING)
            executor = StepExecutor(
                session,
                self.broker,
                metrics=self.metrics,
                evaluator=self._evaluator,
                assets_dir=Path(settings.assets_dir),
                output_dir=Path(settings.output_dir),
                event_timeout_ms=settings.event_timeout_ms,
                logger=self._logger,
            )
            await executor.run(spec.steps, app=app, scenario=scenario, repetition=repetition)
            await asyncio.sleep(settings.settle_delay_ms / 1000)
            success = True
        except Exception as exc:
            error = short_message(exc)
            if isinstance(exc, StepFailure):
                self._logger.error("run_failed", error=error)
            else:
                self._logger.error("run_failed", error=error, detail=str(exc))
        finally:
            self._transition(RunState.CLOSING)
            close_error = await self._close(session, input_audio, success)
            if close_error and success:
                success, error = False, close_error
            self._transition(RunState.SUCCEEDED if success else RunState.FAILED)

        duration_ms = (time.perf_counter() - timer) * 1000
        self._logger.info("run_finished", success=success, duration_s=round(duration_ms / 1000, 3))
        return RunResult(
            app=app,
            scenario=scenario,
            repetition=repetition,
            run_number=spec.run_number,
            success=success,
            error=error,
            duration_ms=round(duration_ms, 3),
            metrics=self.metrics.run_metrics(app, scenario, repetition),
        )

    async def _start_input_audio(self, session: AutomationSession) -> bool:
        try:
            await session.start_input_audio(self.settings.audio_url or "", self.settings.audio_volume)
        except Exception as exc:
            self._logger.warning("input_audio_failed", url=self.settings.audio_url, error=short_message(exc))
            return False
        return True

    async def _close(self, session: Optional[AutomationSession], input_audio: bool, success: bool) -> Optional[str]:
        spec = self.spec
        if session is not None and input_audio:
            try:
                await session.stop_input_audio()
            except Exception as exc:  # page may already be gone
                self._logger.debug("input_audio_stop_failed", error=str(exc))

        self.metrics.end_run(spec.app.name, spec.scenario.name, spec.repetition, success)
        if self.broker is not None:
            self.broker.cancel_all("run closing")
        if session is None:
            return None
        try:
            await session.close()
        except Exception as exc:
            message = f"Failed to close browser session: {short_message(exc)}"
            self._logger.error("session_close_failed", error=message)
            return message
        return None

    def _transition(self, state: RunState) -> None:
        self.state = state
        self.history.append(state)
        self._logger.debug("run_state", state=state.value)


def _slug(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]+", "_", value).strip("_") or "run"
