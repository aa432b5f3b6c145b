"""Browser automation session backed by Playwright."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlsplit

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .models import RunSettings

LOGGER = structlog.get_logger("voice_agent_bench")

PUBLISH_BINDING = "__publishEvent"

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--use-fake-ui-for-media-stream",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-web-security",
    "--allow-running-insecure-content",
    "--no-first-run",
    "--no-default-browser-check",
]

_DIAGNOSTICS_SCRIPT = """
() => {
  const info = {
    audioMonitorAvailable: typeof window.audioMonitor !== 'undefined',
    audioDiagnosticsAvailable: typeof window.__getAudioDiagnostics === 'function',
    rtpStatsAvailable: typeof window.__getRtpStats === 'function',
    monitoredElementsCount: 0,
    monitoredElements: [],
    mediaStreamsInfo: null,
    audioContextState: null,
    timestamp: Date.now()
  };
  if (typeof window.__getAudioDiagnostics === 'function') {
    const detailed = window.__getAudioDiagnostics();
    info.monitoredElementsCount = detailed.monitoredElementsCount;
    info.audioContextState = detailed.audioContextState;
    info.monitoredElements = detailed.elements || [];
  } else if (window.audioMonitor && window.audioMonitor.monitoredElements) {
    info.monitoredElementsCount = window.audioMonitor.monitoredElements.size;
    window.audioMonitor.monitoredElements.forEach((data, elementId) => {
      info.monitoredElements.push({
        elementId,
        isPlaying: data.isPlaying,
        isProgrammatic: data.isProgrammatic || false,
        silenceThreshold: data.silenceThreshold,
        timeSinceLastAudio: data.lastAudioTime ? Date.now() - data.lastAudioTime : null
      });
    });
  }
  if (typeof window.__getMediaStreamInfo === 'function') {
    info.mediaStreamsInfo = window.__getMediaStreamInfo();
  }
  return info;
}
"""

_RTP_STATS_SCRIPT = """
async () => (typeof window.__getRtpStats === 'function') ? await window.__getRtpStats() : null
"""

_SPEAK_SCRIPT = """
async ([payload, fromUrl]) => {
  if (typeof window.__waitForMediaStream === 'function') {
    await window.__waitForMediaStream();
  }
  if (fromUrl && typeof window.__speakFromUrl === 'function') {
    window.__speakFromUrl(payload);
  } else if (typeof window.__speak === 'function') {
    window.__speak(payload);
  } else {
    throw new Error(fromUrl ? '__speakFromUrl method not available' : '__speak method not available');
  }
}
"""

_CALL_HOOK_SCRIPT = """
(name) => {
  if (typeof window[name] !== 'function') {
    throw new Error(name + ' method not available');
  }
  window[name]();
}
"""

_START_AUDIO_SCRIPT = """
async ([url, volume]) => {
  if (typeof window.__waitForMediaStream === 'function') {
    await window.__waitForMediaStream();
  }
  if (typeof window.__startAudioFromUrl !== 'function') {
    throw new Error('__startAudioFromUrl not available in browser context');
  }
  await window.__startAudioFromUrl(url, volume);
}
"""

_STOP_AUDIO_SCRIPT = """
() => { if (typeof window.__stopAudioFromUrl === 'function') { window.__stopAudioFromUrl(); } }
"""

_ELEMENT_INFO_SCRIPT = """
(el) => ({ tagName: el.tagName, type: el.type || null, multiple: el.multiple || false })
"""

_SELECT_BY_TEXT_SCRIPT = """
(el, optionText) => {
  const option = Array.from(el.options).find(opt => opt.textContent.trim() === optionText.trim());
  if (!option) {
    throw new Error(`Option with text "${optionText}" not found`);
  }
  el.value = option.value;
  el.dispatchEvent(new Event('change', { bubbles: true }));
  el.dispatchEvent(new Event('input', { bubbles: true }));
}
"""

_CUSTOM_OPTION_SCRIPT = """
(parent, optionText) => {
  for (const sel of ['[role="option"]', 'li', 'a', '.option', 'div']) {
    const option = Array.from(parent.querySelectorAll(sel))
      .find(opt => opt.textContent.trim() === optionText.trim());
    if (option) {
      option.click();
      return;
    }
  }
  throw new Error(`Option with text "${optionText}" not found in custom dropdown`);
}
"""

EventCallback = Callable[[str, Any], Any]


class AutomationSession(Protocol):
    """Capability consumed by the run controller and step executor."""

    async def launch(self, url: str) -> None: ...

    async def expose_event_channel(self, callback: EventCallback) -> None: ...

    async def inject_instrumentation(self, assets_server_url: str, scripts_dir: Optional[Path]) -> None: ...

    async def navigate(self, url: str, network_idle_timeout_ms: int) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def wait_for_selector(self, selector: str) -> None: ...

    async def type_text(self, selector: str, text: str) -> None: ...

    async def fill(self, selector: str, text: str) -> None: ...

    async def select(
        self,
        selector: str,
        *,
        value: Optional[str] = None,
        values: Optional[list[str]] = None,
        text: Optional[str] = None,
        checked: Optional[bool] = None,
    ) -> None: ...

    async def screenshot(self, path: Path) -> Path: ...

    async def speak_text(self, text: str) -> None: ...

    async def speak_url(self, url: str) -> None: ...

    async def start_recording(self) -> None: ...

    async def stop_recording(self) -> None: ...

    async def start_input_audio(self, url: str, volume: float) -> None: ...

    async def stop_input_audio(self) -> None: ...

    async def collect_diagnostics(self) -> Optional[dict[str, Any]]: ...

    async def close(self) -> None: ...


class PlaywrightSession:
    """One isolated browser, context and page. Never reused across runs."""

    def __init__(self, settings: RunSettings, *, video_dir: Optional[Path] = None, logger: Any = None) -> None:
        self._settings = settings
        self._video_dir = video_dir
        self._logger = logger or LOGGER
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("Browser not launched. Call launch() first.")
        return self._page

    async def launch(self, url: str) -> None:
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._settings.headless,
            args=BROWSER_ARGS,
        )
        self._logger.info("browser_launched", version=self._browser.version)

        context_options: dict[str, Any] = {"ignore_https_errors": True}
        if self._settings.record and self._video_dir is not None:
            self._video_dir.mkdir(parents=True, exist_ok=True)
            context_options["record_video_dir"] = str(self._video_dir)
        self._context = await self._browser.new_context(**context_options)

        # data: and file: targets have no origin to grant media permissions on
        if url.startswith(("http://", "https://")):
            parts = urlsplit(url)
            await self._context.grant_permissions(
                ["camera", "microphone"],
                origin=f"{parts.scheme}://{parts.netloc}",
            )

        self._page = await self._context.new_page()
        if self._settings.verbose:
            self._page.on("console", lambda msg: self._logger.info("browser_console", text=msg.text))
        self._page.on("pageerror", lambda error: self._logger.error("page_error", error=str(error)))

    async def expose_event_channel(self, callback: EventCallback) -> None:
        def _publish(event_type: str, data: Any = None) -> None:
            callback(event_type, data)

        await self.page.expose_function(PUBLISH_BINDING, _publish)

    async def inject_instrumentation(self, assets_server_url: str, scripts_dir: Optional[Path]) -> None:
        context = self._require_context()
        await context.add_init_script(f"window.__assetsServerUrl = {json.dumps(assets_server_url)};")
        if scripts_dir is None or not scripts_dir.is_dir():
            self._logger.info("instrumentation_skipped", directory=str(scripts_dir))
            return
        for script in sorted(scripts_dir.glob("*.js")):
            await context.add_init_script(path=str(script))
            self._logger.debug("instrumentation_configured", script=script.name)

    async def navigate(self, url: str, network_idle_timeout_ms: int) -> None:
        await self.page.goto(url, wait_until="load")
        try:
            await self.page.wait_for_load_state("networkidle", timeout=network_idle_timeout_ms)
        except PlaywrightTimeoutError:
            self._logger.warning("network_idle_timeout", url=url, timeout_ms=network_idle_timeout_ms)

    async def click(self, selector: str) -> None:
        await self.page.wait_for_selector(selector)
        await self.page.click(selector)

    async def wait_for_selector(self, selector: str) -> None:
        await self.page.wait_for_selector(selector)

    async def type_text(self, selector: str, text: str) -> None:
        await self.page.wait_for_selector(selector)
        await self.page.focus(selector)
        await self.page.type(selector, text)

    async def fill(self, selector: str, text: str) -> None:
        await self.page.wait_for_selector(selector)
        await self.page.fill(selector, text)

    async def select(
        self,
        selector: str,
        *,
        value: Optional[str] = None,
        values: Optional[list[str]] = None,
        text: Optional[str] = None,
        checked: Optional[bool] = None,
    ) -> None:
        page = self.page
        await page.wait_for_selector(selector)
        info = await page.eval_on_selector(selector, _ELEMENT_INFO_SCRIPT)
        tag = info["tagName"]

        if tag == "SELECT":
            if values:
                if not info["multiple"]:
                    raise ValueError("Cannot select multiple values on a single-select dropdown")
                await page.select_option(selector, values)
            elif value is not None:
                await page.select_option(selector, value)
            elif text is not None:
                await page.eval_on_selector(selector, _SELECT_BY_TEXT_SCRIPT, text)
            else:
                raise ValueError("No value, values, or text specified for select dropdown")
        elif tag == "INPUT" and info["type"] == "checkbox":
            current = await page.is_checked(selector)
            target = (not current) if checked is None else checked
            if current != target:
                await page.click(selector)
        elif tag == "INPUT" and info["type"] == "radio":
            await page.click(selector)
        elif tag == "INPUT":
            raise ValueError(f"Select action not supported for input type: {info['type']}")
        elif text is not None:
            await page.eval_on_selector(selector, _CUSTOM_OPTION_SCRIPT, text)
        else:
            await page.click(selector)

    async def screenshot(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        await self.page.screenshot(path=str(path))
        return path

    async def speak_text(self, text: str) -> None:
        await self.page.evaluate(_SPEAK_SCRIPT, [text, False])

    async def speak_url(self, url: str) -> None:
        await self.page.evaluate(_SPEAK_SCRIPT, [url, True])

    async def start_recording(self) -> None:
        await self.page.evaluate(_CALL_HOOK_SCRIPT, "__startRecording")

    async def stop_recording(self) -> None:
        await self.page.evaluate(_CALL_HOOK_SCRIPT, "__stopRecording")

    async def start_input_audio(self, url: str, volume: float) -> None:
        await self.page.evaluate(_START_AUDIO_SCRIPT, [url, volume])
        self._logger.info("input_audio_started", url=url, volume=volume)

    async def stop_input_audio(self) -> None:
        await self.page.evaluate(_STOP_AUDIO_SCRIPT)
        self._logger.info("input_audio_stopped")

    async def collect_diagnostics(self) -> Optional[dict[str, Any]]:
        if self._page is None or self._page.is_closed():
            return None
        info = await self._page.evaluate(_DIAGNOSTICS_SCRIPT)
        try:
            info["rtpStats"] = await self._page.evaluate(_RTP_STATS_SCRIPT)
        except Exception as exc:  # RTP stats are optional; keep the audio snapshot
            self._logger.debug("rtp_stats_failed", error=str(exc))
            info["rtpStats"] = None
        return info

    async def close(self) -> None:
        video = self._page.video if self._page is not None else None
        try:
            if self._context is not None:
                await self._context.close()
                if video is not None:
                    self._logger.info("recording_saved", path=str(await video.path()))
            if self._browser is not None:
                await self._browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._playwright = None
            self._browser = None
            self._context = None
            self._page = None

    def _require_context(self) -> BrowserContext:
        if self._context is None:
            raise RuntimeError("Browser not launched. Call launch() first.")
        return self._context
