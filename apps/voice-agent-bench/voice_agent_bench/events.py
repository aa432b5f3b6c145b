"""Per-run broker correlating page events with waiting steps."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from .errors import EventCancelled, EventTimeout
from .models import BrokerEvent

LOGGER = structlog.get_logger("voice_agent_bench")

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_SAMPLE_INTERVAL = 10.0

SnapshotProvider = Callable[[], Awaitable[Optional[dict[str, Any]]]]


@dataclass
class Waiter:
    """Pending request for the next event of one type."""

    event_type: str
    future: asyncio.Future
    started_at: float
    deadline: float
    sampler: Optional[asyncio.Task] = None
    samples: int = 0

    def retire(self) -> None:
        if self.sampler is not None and not self.sampler.done():
            self.sampler.cancel()


class EventBroker:
    """Matches published events to waiters, oldest first, same type only.

    A broker belongs to exactly one run. Events with no outstanding waiter are
    dropped. All matching happens on the event loop that registered the
    waiters; ``publish_threadsafe`` marshals foreign-thread events onto it.
    """

    def __init__(
        self,
        *,
        debug: bool = False,
        snapshot_provider: Optional[SnapshotProvider] = None,
        sample_interval: float = DEFAULT_SAMPLE_INTERVAL,
        logger: Any = None,
    ) -> None:
        self.debug = debug
        self._snapshot_provider = snapshot_provider
        self._sample_interval = sample_interval
        self._logger = logger or LOGGER
        self._queues: dict[str, deque[Waiter]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False
        self._close_reason = "broker closed"

    @property
    def closed(self) -> bool:
        return self._closed

    def set_snapshot_provider(self, provider: Optional[SnapshotProvider]) -> None:
        self._snapshot_provider = provider

    def pending(self, event_type: Union[str, Enum, None] = None) -> int:
        if event_type is None:
            return sum(len(queue) for queue in self._queues.values())
        return len(self._queues.get(_event_name(event_type), ()))

    async def wait_for(
        self,
        event_type: Union[str, Enum],
        timeout_ms: float = DEFAULT_TIMEOUT_MS,
    ) -> BrokerEvent:
        name = _event_name(event_type)
        if self._closed:
            raise EventCancelled(name, self._close_reason)

        loop = asyncio.get_running_loop()
        self._loop = loop
        now = loop.time()
        waiter = Waiter(
            event_type=name,
            future=loop.create_future(),
            started_at=now,
            deadline=now + timeout_ms / 1000,
        )
        self._queues.setdefault(name, deque()).append(waiter)
        if self.debug:
            waiter.sampler = loop.create_task(self._sample(waiter))

        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            self._discard(waiter)
            diagnostics = None
            if self.debug:
                diagnostics = format_snapshot(await self._collect_snapshot())
            self._logger.warning("wait_timeout", event_type=name, timeout_ms=timeout_ms)
            raise EventTimeout(name, timeout_ms, diagnostics) from None
        finally:
            self._discard(waiter)

    def publish(self, event_type: Union[str, Enum], data: Any = None) -> bool:
        """Deliver an event from the loop thread; returns True if a waiter took it."""

        event = BrokerEvent(
            event_type=_event_name(event_type),
            data=data,
            timestamp=time.time() * 1000,
        )
        return self._dispatch(event)

    def publish_threadsafe(self, event_type: Union[str, Enum], data: Any = None) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self.publish(event_type, data)
            return
        loop.call_soon_threadsafe(self.publish, event_type, data)

    def cancel_all(self, reason: str = "broker closed") -> int:
        """Fail every outstanding waiter with EventCancelled. Idempotent."""

        if self._closed:
            return 0
        self._closed = True
        self._close_reason = reason
        cancelled = 0
        for queue in self._queues.values():
            for waiter in queue:
                waiter.retire()
                if not waiter.future.done():
                    waiter.future.set_exception(EventCancelled(waiter.event_type, reason))
                    cancelled += 1
        self._queues.clear()
        if cancelled:
            self._logger.info("waiters_cancelled", count=cancelled, reason=reason)
        return cancelled

    def _dispatch(self, event: BrokerEvent) -> bool:
        element = event.data.get("elementId") if isinstance(event.data, dict) else None
        if self._closed:
            self._logger.debug("event_ignored", event_type=event.event_type, reason="closed")
            return False
        self._logger.info("event_published", event_type=event.event_type, element=element)

        queue = self._queues.get(event.event_type)
        delivered = False
        while queue:
            waiter = queue.popleft()
            if waiter.future.done():
                continue
            waiter.retire()
            waiter.future.set_result(event)
            delivered = True
            break
        if queue is not None and not queue:
            self._queues.pop(event.event_type, None)
        if not delivered:
            self._logger.debug("event_dropped", event_type=event.event_type)
        return delivered

    def _discard(self, waiter: Waiter) -> None:
        waiter.retire()
        queue = self._queues.get(waiter.event_type)
        if not queue:
            return
        try:
            queue.remove(waiter)
        except ValueError:
            pass
        if not queue:
            self._queues.pop(waiter.event_type, None)

    async def _sample(self, waiter: Waiter) -> None:
        loop = asyncio.get_running_loop()
        while not waiter.future.done():
            await asyncio.sleep(self._sample_interval)
            if waiter.future.done():
                return
            waiter.samples += 1
            elapsed = round(loop.time() - waiter.started_at)
            snapshot = await self._collect_snapshot()
            if snapshot is None:
                self._logger.info("still_waiting", event_type=waiter.event_type, elapsed_s=elapsed)
                continue
            elements = snapshot.get("monitoredElements") or []
            self._logger.info(
                "still_waiting",
                event_type=waiter.event_type,
                elapsed_s=elapsed,
                monitored=snapshot.get("monitoredElementsCount", len(elements)),
                elements=", ".join(
                    f"{item.get('elementId')}(playing={item.get('isPlaying')})" for item in elements
                )
                or "none",
            )

    async def _collect_snapshot(self) -> Optional[dict[str, Any]]:
        if self._snapshot_provider is None:
            return None
        try:
            return await self._snapshot_provider()
        except Exception as exc:  # diagnostics must never mask the original wait
            self._logger.warning("diagnostics_failed", error=str(exc))
            return None


def _event_name(event_type: Union[str, Enum]) -> str:
    if isinstance(event_type, Enum):
        return str(event_type.value)
    return str(event_type)


def format_snapshot(snapshot: Optional[dict[str, Any]]) -> str:
    """Render an instrumentation snapshot as the multi-line timeout detail."""

    if not snapshot:
        return "  (Could not collect browser diagnostics)"

    lines = ["", "Audio monitor diagnostics:"]
    lines.append(f"  - Audio monitor available: {snapshot.get('audioMonitorAvailable')}")
    if snapshot.get("audioContextState"):
        lines.append(f"  - AudioContext state: {snapshot['audioContextState']}")
    elements = snapshot.get("monitoredElements") or []
    lines.append(f"  - Monitored elements count: {snapshot.get('monitoredElementsCount', len(elements))}")
    if elements:
        lines.append("  - Monitored elements:")
        for element in elements:
            lines.append(f"    * {element.get('elementId')}:")
            lines.append(
                f"        isPlaying={element.get('isPlaying')}, isProgrammatic={element.get('isProgrammatic', False)}"
            )
            if element.get("currentAudioLevel") is not None:
                lines.append(
                    f"        audioLevel={element['currentAudioLevel']} (threshold={element.get('silenceThreshold')})"
                )
            if element.get("timeSinceLastAudio") is not None:
                lines.append(f"        lastAudioAge={element['timeSinceLastAudio']}ms")
    else:
        lines.append("  - No audio elements are being monitored; the page may not have created one yet,")
        lines.append("    the element may lack a valid src/srcObject, or the hooks were not injected")

    streams = snapshot.get("mediaStreamsInfo")
    if streams:
        lines.append(f"  - Media streams (input): {streams.get('totalStreams')} stream(s)")

    rtp = snapshot.get("rtpStats")
    if rtp:
        lines.append("")
        lines.append("WebRTC/RTP stats:")
        lines.append(f"  - Active connections: {rtp.get('connectionCount')}")
        connections = rtp.get("connections") or []
        for number, conn in enumerate(connections, start=1):
            lines.append(
                f"  - Connection {number}: state={conn.get('connectionState')}, ice={conn.get('iceConnectionState')}"
            )
            inbound = conn.get("inboundAudio") or []
            for audio in inbound:
                lines.append(
                    f"      inbound: received={audio.get('packetsReceived')}, lost={audio.get('packetsLost')},"
                    f" bytes={audio.get('bytesReceived')}, jitter={audio.get('jitter')}"
                )
            if not inbound:
                lines.append("      no inbound audio streams")
            for audio in conn.get("outboundAudio") or []:
                lines.append(f"      outbound: sent={audio.get('packetsSent')}, bytes={audio.get('bytesSent')}")
            pairs = conn.get("candidatePairs") or []
            if pairs and pairs[0].get("currentRoundTripTime") is not None:
                lines.append(f"      RTT: {pairs[0]['currentRoundTripTime'] * 1000:.1f}ms")
        if not connections and rtp.get("connectionCount") == 0:
            lines.append("  - No WebRTC connections established")
    return "\n".join(lines)
