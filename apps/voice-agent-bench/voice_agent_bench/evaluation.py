"""Transcription and scoring of captured agent audio."""

from __future__ import annotations

import base64
import io
import json
import os
import wave
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

LOGGER = structlog.get_logger("voice_agent_bench")

DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_EVALUATION_MODEL = "gpt-4o-mini"

_EVALUATION_INSTRUCTIONS = (
    "You grade a voice agent's reply. Compare the transcript with the expectation and "
    'answer with JSON {"score": <number between 0 and 1>, "explanation": <short string>}.'
)


class Evaluation(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    explanation: str = ""


class Evaluator(Protocol):
    async def transcribe(self, audio_path: Path) -> str: ...

    async def evaluate(self, transcript: str, expectation: str) -> Evaluation: ...


def pcm_to_wav(pcm: bytes, sample_rate: int, channels: int = 1, bits_per_sample: int = 16) -> bytes:
    """Wrap raw little-endian PCM frames in a WAV container."""

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(bits_per_sample // 8)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm)
    return buffer.getvalue()


def save_recording(data: dict[str, Any], output_dir: Path) -> Path:
    """Persist a ``recordingcomplete`` payload as a WAV file."""

    audio = data.get("audioData")
    if not audio:
        raise ValueError("Recording event carried no audio data")
    wav_bytes = pcm_to_wav(
        base64.b64decode(audio),
        sample_rate=int(data.get("sampleRate") or 48000),
        channels=int(data.get("channels") or 1),
        bits_per_sample=int(data.get("bitsPerSample") or 16),
    )
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    destination = output_dir / f"recording_{stamp}.wav"
    destination.write_bytes(wav_bytes)
    return destination


class OpenAIEvaluator:
    """Evaluator backed by the OpenAI transcription and chat completion APIs."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = DEFAULT_OPENAI_URL,
        transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL,
        evaluation_model: str = DEFAULT_EVALUATION_MODEL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ) -> None:
        key = api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise ValueError("OPENAI_API_KEY is required for listen steps")
        self._base_url = base_url.rstrip("/")
        self._transcription_model = transcription_model
        self._evaluation_model = evaluation_model
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {key}"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def transcribe(self, audio_path: Path) -> str:
        files = {"file": (audio_path.name, audio_path.read_bytes(), "audio/wav")}
        response = await self._client.post(
            f"{self._base_url}/audio/transcriptions",
            headers=self._headers,
            data={"model": self._transcription_model},
            files=files,
        )
        response.raise_for_status()
        transcript = str(response.json().get("text", "")).strip()
        LOGGER.info("transcription_ready", path=str(audio_path), transcript=transcript)
        return transcript

    async def evaluate(self, transcript: str, expectation: str) -> Evaluation:
        payload = {
            "model": self._evaluation_model,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": _EVALUATION_INSTRUCTIONS},
                {"role": "user", "content": f"Expectation: {expectation}\nTranscript: {transcript}"},
            ],
        }
        response = await self._client.post(
            f"{self._base_url}/chat/completions",
            headers=self._headers,
            json=payload,
        )
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"]
        result = Evaluation.model_validate(json.loads(content))
        LOGGER.info("evaluation_ready", score=result.score, explanation=result.explanation)
        return result
