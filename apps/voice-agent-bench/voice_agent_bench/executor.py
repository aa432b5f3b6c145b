"""Sequential step interpreter driving one page under the event model."""

from __future__ import annotations

import asyncio
import base64
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from .errors import StepFailure
from .evaluation import Evaluator, save_recording
from .events import DEFAULT_TIMEOUT_MS, EventBroker
from .metrics import MetricsSink
from .models import (
    BrokerEvent,
    ClickStep,
    EventType,
    FillStep,
    ListenStep,
    ScreenshotStep,
    SelectStep,
    SleepStep,
    SpeakStep,
    TypeStep,
    WaitForElementStep,
    WaitStep,
)
from .session import AutomationSession

LOGGER = structlog.get_logger("voice_agent_bench")

ELAPSED_TIME = "elapsed_time"

HandlerResult = Optional[dict[str, float]]


class StepExecutor:
    """Runs steps strictly in order; no step starts before the previous resolves."""

    def __init__(
        self,
        session: AutomationSession,
        broker: EventBroker,
        *,
        metrics: Optional[MetricsSink] = None,
        evaluator: Optional[Evaluator] = None,
        assets_dir: Path = Path("assets"),
        output_dir: Path = Path("output"),
        event_timeout_ms: float = DEFAULT_TIMEOUT_MS,
        logger: Any = None,
    ) -> None:
        self._session = session
        self._broker = broker
        self._metrics = metrics
        self._evaluator = evaluator
        self._assets_dir = assets_dir
        self._output_dir = output_dir
        self._event_timeout_ms = event_timeout_ms
        self._logger = logger or LOGGER
        self._handlers: dict[str, Callable[[Any], Awaitable[HandlerResult]]] = {
            "click": self._click,
            "wait": self._wait,
            "wait_for_element": self._wait_for_element,
            "wait_for_voice": self._wait_for_voice,
            "wait_for_silence": self._wait_for_silence,
            "speak": self._speak,
            "listen": self._listen,
            "sleep": self._sleep,
            "type": self._type,
            "fill": self._fill,
            "select": self._select,
            "screenshot": self._screenshot,
        }

    async def run(self, steps: Sequence[Any], *, app: str = "", scenario: str = "", repetition: int = 0) -> None:
        for index, step in enumerate(steps):
            await self.execute(step, index, app=app, scenario=scenario, repetition=repetition)

    async def execute(
        self,
        step: Any,
        index: int,
        *,
        app: str = "",
        scenario: str = "",
        repetition: int = 0,
    ) -> HandlerResult:
        logger = self._logger.bind(step=index + 1, action=step.action)
        logger.info("step_started")
        handler = self._handlers.get(step.action)

        timer = time.perf_counter()
        try:
            if handler is None:
                logger.warning("unknown_action_skipped")
                result = None
            else:
                result = await handler(step)
        except Exception as exc:
            logger.error("step_failed", error=str(exc))
            raise StepFailure(index, step.action, exc) from exc
        elapsed_ms = (time.perf_counter() - timer) * 1000
        logger.info("step_completed", elapsed_s=round(elapsed_ms / 1000, 3))

        if self._metrics is not None and step.metrics:
            if ELAPSED_TIME in step.metrics:
                self._metrics.record_step_metric(app, scenario, repetition, index, step.action, ELAPSED_TIME, elapsed_ms)
            for name, value in (result or {}).items():
                if name in step.metrics:
                    self._metrics.record_step_metric(app, scenario, repetition, index, step.action, name, value)
        return result

    async def _trigger_then_wait(
        self,
        event_type: EventType,
        trigger: Callable[[], Awaitable[None]],
    ) -> BrokerEvent:
        waiting = asyncio.ensure_future(self._broker.wait_for(event_type, self._event_timeout_ms))
        # registers the waiter before the page gets a chance to publish
        await asyncio.sleep(0)
        try:
            await trigger()
        except BaseException:
            waiting.cancel()
            await asyncio.gather(waiting, return_exceptions=True)
            raise
        return await waiting

    async def _click(self, step: ClickStep) -> HandlerResult:
        await self._session.click(step.selector)
        return None

    async def _wait(self, step: WaitStep) -> HandlerResult:
        self._logger.info("waiting_for_selector", selector=step.selector)
        await self._session.wait_for_selector(step.selector)
        return None

    async def _wait_for_element(self, step: WaitForElementStep) -> HandlerResult:
        await self._session.wait_for_selector(step.selector)
        return None

    async def _wait_for_voice(self, step: Any) -> HandlerResult:
        self._logger.debug("waiting_for_voice")
        await self._broker.wait_for(EventType.AUDIO_START, self._event_timeout_ms)
        return None

    async def _wait_for_silence(self, step: Any) -> HandlerResult:
        self._logger.debug("waiting_for_silence")
        await self._broker.wait_for(EventType.AUDIO_STOP, self._event_timeout_ms)
        return None

    async def _speak(self, step: SpeakStep) -> HandlerResult:
        if step.file:
            audio_path = self._assets_dir / step.file
            if not audio_path.exists():
                raise FileNotFoundError(f"Audio file not found: {step.file}")
            mime_type = "audio/wav" if step.file.endswith(".wav") else "audio/mpeg"
            encoded = base64.b64encode(audio_path.read_bytes()).decode("ascii")
            data_url = f"data:{mime_type};base64,{encoded}"
            await self._trigger_then_wait(EventType.SPEECH_END, lambda: self._session.speak_url(data_url))
        else:
            text = step.text or ""
            await self._trigger_then_wait(EventType.SPEECH_END, lambda: self._session.speak_text(text))
        return None

    async def _listen(self, step: ListenStep) -> HandlerResult:
        if self._evaluator is None:
            raise RuntimeError("No evaluator configured for listen action")

        await self._trigger_then_wait(EventType.RECORDING_START, self._session.start_recording)
        await self._broker.wait_for(EventType.AUDIO_START, self._event_timeout_ms)
        await self._broker.wait_for(EventType.AUDIO_STOP, self._event_timeout_ms)
        complete = await self._trigger_then_wait(EventType.RECORDING_COMPLETE, self._session.stop_recording)

        audio_path = save_recording(complete.data or {}, self._output_dir)
        self._logger.info("recording_written", path=str(audio_path))
        transcript = await self._evaluator.transcribe(audio_path)
        evaluation = await self._evaluator.evaluate(transcript, step.evaluation)
        self._logger.info("listen_scored", score=evaluation.score, explanation=evaluation.explanation)
        return {"score": evaluation.score}

    async def _sleep(self, step: SleepStep) -> HandlerResult:
        await asyncio.sleep(step.time / 1000)
        return None

    async def _type(self, step: TypeStep) -> HandlerResult:
        await self._session.type_text(step.selector, step.text)
        return None

    async def _fill(self, step: FillStep) -> HandlerResult:
        await self._session.fill(step.selector, step.text)
        return None

    async def _select(self, step: SelectStep) -> HandlerResult:
        await self._session.select(
            step.selector,
            value=step.value,
            values=step.values,
            text=step.text,
            checked=step.checked,
        )
        return None

    async def _screenshot(self, step: ScreenshotStep) -> HandlerResult:
        filename = step.filename or f"screenshot_{int(time.time() * 1000)}.png"
        directory = Path(step.output_dir) if step.output_dir else self._output_dir
        saved = await self._session.screenshot(directory / filename)
        self._logger.info("screenshot_saved", path=str(saved))
        return None
