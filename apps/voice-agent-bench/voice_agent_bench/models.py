"""Scenario, event and result models."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator


class EventType(str, Enum):
    """Event names reported by the in-page instrumentation."""

    AUDIO_START = "audiostart"
    AUDIO_STOP = "audiostop"
    SPEECH_END = "speechend"
    RECORDING_START = "recordingstart"
    RECORDING_COMPLETE = "recordingcomplete"


class BrokerEvent(BaseModel):
    """One asynchronous fact published by the page."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    data: Any = None
    timestamp: float


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    metrics: list[str] = Field(default_factory=list)


class ClickStep(_StepBase):
    action: Literal["click"] = "click"
    selector: str


class WaitStep(_StepBase):
    action: Literal["wait"] = "wait"
    selector: str


class WaitForElementStep(_StepBase):
    action: Literal["wait_for_element"] = "wait_for_element"
    selector: str


class WaitForVoiceStep(_StepBase):
    action: Literal["wait_for_voice"] = "wait_for_voice"


class WaitForSilenceStep(_StepBase):
    action: Literal["wait_for_silence"] = "wait_for_silence"


class SpeakStep(_StepBase):
    """Speak either synthesized text or a prerecorded audio file."""

    action: Literal["speak"] = "speak"
    text: Optional[str] = None
    file: Optional[str] = None

    @model_validator(mode="after")
    def _text_or_file(self) -> "SpeakStep":
        if not self.text and not self.file:
            raise ValueError("No text or file specified for speak action")
        if self.text and self.file:
            raise ValueError("Cannot specify both text and file for speak action")
        return self


class ListenStep(_StepBase):
    action: Literal["listen"] = "listen"
    evaluation: str = Field(min_length=1)


class SleepStep(_StepBase):
    action: Literal["sleep"] = "sleep"
    time: float = Field(gt=0, description="Duration in milliseconds.")


class TypeStep(_StepBase):
    action: Literal["type"] = "type"
    selector: str
    text: str = Field(min_length=1)


class FillStep(_StepBase):
    action: Literal["fill"] = "fill"
    selector: str
    text: str


class SelectStep(_StepBase):
    action: Literal["select"] = "select"
    selector: str
    value: Optional[str] = None
    values: Optional[list[str]] = None
    text: Optional[str] = None
    checked: Optional[bool] = None


class ScreenshotStep(_StepBase):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    action: Literal["screenshot"] = "screenshot"
    filename: Optional[str] = None
    output_dir: Optional[str] = Field(default=None, alias="outputDir")


class UnknownStep(_StepBase):
    """Action this version does not understand; executed as a no-op."""

    model_config = ConfigDict(frozen=True, extra="allow")

    action: str


STEP_TYPES: dict[str, type[_StepBase]] = {
    "click": ClickStep,
    "wait": WaitStep,
    "wait_for_element": WaitForElementStep,
    "wait_for_voice": WaitForVoiceStep,
    "wait_for_silence": WaitForSilenceStep,
    "speak": SpeakStep,
    "listen": ListenStep,
    "sleep": SleepStep,
    "type": TypeStep,
    "fill": FillStep,
    "select": SelectStep,
    "screenshot": ScreenshotStep,
}


def _step_tag(value: Any) -> str:
    if isinstance(value, dict):
        action = value.get("action")
    else:
        action = getattr(value, "action", None)
    return action if action in STEP_TYPES else "unknown"


Step = Annotated[
    Union[
        Annotated[ClickStep, Tag("click")],
        Annotated[WaitStep, Tag("wait")],
        Annotated[WaitForElementStep, Tag("wait_for_element")],
        Annotated[WaitForVoiceStep, Tag("wait_for_voice")],
        Annotated[WaitForSilenceStep, Tag("wait_for_silence")],
        Annotated[SpeakStep, Tag("speak")],
        Annotated[ListenStep, Tag("listen")],
        Annotated[SleepStep, Tag("sleep")],
        Annotated[TypeStep, Tag("type")],
        Annotated[FillStep, Tag("fill")],
        Annotated[SelectStep, Tag("select")],
        Annotated[ScreenshotStep, Tag("screenshot")],
        Annotated[UnknownStep, Tag("unknown")],
    ],
    Discriminator(_step_tag),
]


class ApplicationConfig(BaseModel):
    """Target page plus the preamble steps that open a conversation."""

    name: str
    url: str
    steps: list[Step] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class ScenarioConfig(BaseModel):
    """Scripted interaction executed after the application preamble."""

    name: str
    steps: list[Step] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class RunSpec(BaseModel):
    """One (application, scenario, repetition) triple."""

    model_config = ConfigDict(frozen=True)

    app: ApplicationConfig
    scenario: ScenarioConfig
    repetition: int
    run_number: int

    @property
    def steps(self) -> list[Any]:
        return [*self.app.steps, *self.scenario.steps]

    @property
    def label(self) -> str:
        return f"{self.app.name} + {self.scenario.name} (rep {self.repetition})"


class RunResult(BaseModel):
    """Outcome of a single run."""

    model_config = ConfigDict(frozen=True)

    app: str
    scenario: str
    repetition: int
    run_number: int
    success: bool
    error: Optional[str] = None
    duration_ms: float = 0.0
    metrics: dict[str, float] = Field(default_factory=dict)


class BenchmarkSummary(BaseModel):
    """Aggregated counts for a batch of runs."""

    total_runs: int
    successful: int
    failed: int
    results: list[RunResult] = Field(default_factory=list)

    @property
    def errors(self) -> list[RunResult]:
        return [result for result in self.results if not result.success]


class RunSettings(BaseModel):
    """Per-run knobs shared by every controller in a batch."""

    headless: bool = True
    verbose: bool = False
    debug: bool = False
    record: bool = False
    assets_server_url: str = "http://localhost:3333"
    instrumentation_dir: Optional[str] = None
    assets_dir: str = "assets"
    output_dir: str = "output"
    audio_url: Optional[str] = None
    audio_volume: float = Field(default=1.0, ge=0.0, le=1.0)
    event_timeout_ms: int = 30000
    network_idle_timeout_ms: int = 5000
    settle_delay_ms: int = 500
