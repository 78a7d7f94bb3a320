"""Periodic frame analysis for screen and webcam widgets.

The loop owns at most one analysis at a time per widget activation. The
timer task only schedules ticks; each tick runs in its own task so that
stopping the timer never cancels a request already on the wire. A response
is applied only if the widget is still on the generation that captured the
frame.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from .. import metrics
from ..config import Settings
from ..db.state_store import StateStore
from ..errors import AnalysisFailed, AnalysisInFlight, ServiceError, WidgetNotActive
from ..transcript import MessageChannel, TranscriptMessage
from . import frames
from .devices import DeviceHandle
from .lifecycle import WidgetLifecycleManager, WidgetState

logger = logging.getLogger(__name__)

CONTEXT_KEY = "analysis-context"


@dataclass(frozen=True)
class AnalysisRequest:
    widget_type: str
    trigger: str  # auto | manual
    priority: str  # normal | high
    captured_at: float
    generation: int
    quality: str
    image: str


class AdaptiveCaptureLoop:
    def __init__(
        self,
        manager: WidgetLifecycleManager,
        clients,
        store: StateStore,
        channel: MessageChannel,
        session_id: str,
        settings: Optional[Settings] = None,
    ):
        self.manager = manager
        self.clients = clients
        self.store = store
        self.channel = channel
        self.session_id = session_id
        self.settings = settings or Settings()
        self.generation: Optional[int] = None
        self.handle: Optional[DeviceHandle] = None
        self.tier = frames.POOR
        self.interval_ms = 0
        self.auto_count = 0
        # generation that owns the single analysis slot, if any
        self._slot: Optional[int] = None
        self._timer: Optional[asyncio.Task] = None
        self._ticks: set = set()
        manager.on_active(self.start)
        manager.on_close(self.stop)

    @property
    def in_flight(self) -> bool:
        """True while the current activation has an analysis on the wire.

        A request left over from a closed activation does not count.
        """
        return self._slot is not None and self.manager.is_current(self._slot)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self, generation: int, handle: DeviceHandle) -> None:
        self.stop()
        self.generation = generation
        self.handle = handle
        self.tier = frames.quality_for_width(handle.width)
        base = self.settings.interval_base_for(self.manager.type)
        self.interval_ms = frames.auto_interval_ms(base, handle.width)
        self.auto_count = 0
        logger.info("%s capture loop started: %dx%d %s every %dms",
                    self.manager.type, handle.width, handle.height, self.tier.name, self.interval_ms)
        self._timer = asyncio.create_task(self._run(generation))

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.handle = None

    async def _run(self, generation: int) -> None:
        while self.manager.is_current(generation) and self.auto_count < self.settings.max_auto_analyses:
            await asyncio.sleep(self.interval_ms / 1000.0)
            if not self.manager.is_current(generation):
                return
            task = asyncio.create_task(self.tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
        if self.auto_count >= self.settings.max_auto_analyses:
            logger.info("%s auto-analysis budget of %d reached", self.manager.type, self.settings.max_auto_analyses)

    async def tick(self) -> bool:
        """One auto capture. Returns False when skipped."""
        if self.in_flight or self.manager.state is not WidgetState.ACTIVE or self.handle is None:
            return False
        if self.auto_count >= self.settings.max_auto_analyses:
            return False
        generation = self._claim()
        try:
            request = await self._capture("auto", "normal", frames.AUTO_MAX_WIDTH, False, self.tier.jpeg_quality)
            if request is None:
                return False
            self.auto_count += 1
            await self._submit(request)
            return True
        finally:
            self._release(generation)

    async def analyze_now(self) -> Optional[TranscriptMessage]:
        """Manual high-priority capture. Returns None if the widget moved on before the reply."""
        if self.in_flight:
            raise AnalysisInFlight(f"{self.manager.type} analysis already in progress")
        if self.manager.state is not WidgetState.ACTIVE or self.handle is None:
            raise WidgetNotActive(f"{self.manager.type} widget is not active")
        generation = self._claim()
        try:
            request = await self._capture("manual", "high", frames.MANUAL_MAX_WIDTH, True, frames.MANUAL_JPEG_QUALITY)
            if request is None:
                raise AnalysisFailed("no frame available")
            return await self._submit(request)
        finally:
            self._release(generation)

    def _claim(self) -> int:
        self._slot = self.generation
        return self.generation

    def _release(self, generation: int) -> None:
        # a newer activation may have claimed the slot meanwhile
        if self._slot == generation:
            self._slot = None

    async def _capture(self, trigger: str, priority: str, max_width: int, smooth: bool,
                       quality: float) -> Optional[AnalysisRequest]:
        generation = self.generation
        frame = await self.handle.read_frame()
        if frame is None or generation is None or not self.manager.is_current(generation):
            return None
        image = await asyncio.to_thread(self._encode, frame, max_width, smooth, quality)
        return AnalysisRequest(
            widget_type=self.manager.type,
            trigger=trigger,
            priority=priority,
            captured_at=time.time(),
            generation=generation,
            quality=self.tier.name,
            image=image,
        )

    @staticmethod
    def _encode(frame: np.ndarray, max_width: int, smooth: bool, quality: float) -> str:
        return frames.encode_jpeg(frames.downscale(frame, max_width, smooth), quality)

    # --- rolling context ---
    def _context_key(self) -> str:
        return f"{CONTEXT_KEY}:{self.session_id}"

    def context_entries(self) -> List[Dict[str, Any]]:
        return self.store.get_session(self.session_id, self._context_key(), []) or []

    def _push_context(self, entry: Dict[str, Any]) -> None:
        entries = self.context_entries() + [entry]
        window = self.settings.analysis_context_window
        self.store.set_session(self.session_id, self._context_key(), entries[-window:])

    def _build_context(self, request: AnalysisRequest) -> Dict[str, Any]:
        previous = self.context_entries()
        lines = [f"[{e['widget_type']}] {e['analysis']}" for e in previous]
        return {
            "sessionId": self.session_id,
            "trigger": request.trigger,
            "priority": request.priority,
            "quality": request.quality,
            "previousAnalyses": lines,
            "prompt": ("Previous observations:\n" + "\n".join(lines)) if lines else "",
        }

    async def _submit(self, request: AnalysisRequest) -> Optional[TranscriptMessage]:
        labels = dict(widget_type=request.widget_type, trigger=request.trigger)
        try:
            with metrics.analysis_latency_histogram.labels(**labels).time():
                analysis = await self.clients.analyze_frame(request.image, self._build_context(request),
                                                            request.widget_type)
        except ServiceError as e:
            metrics.analyses_counter.labels(outcome="error", **labels).inc()
            if request.trigger == "manual":
                raise AnalysisFailed(str(e)) from e
            logger.warning("auto analysis failed for %s: %s", request.widget_type, e)
            return None

        if not self.manager.is_current(request.generation):
            metrics.analyses_counter.labels(outcome="stale", **labels).inc()
            logger.debug("discarding stale %s analysis (generation %d)", request.widget_type, request.generation)
            return None

        metrics.analyses_counter.labels(outcome="ok", **labels).inc()
        message = TranscriptMessage(
            type="analysis",
            content=analysis,
            metadata={
                "widget_type": request.widget_type,
                "trigger": request.trigger,
                "quality": request.quality,
                "generation": request.generation,
            },
        )
        self.channel.append(message)
        self._push_context({
            "widget_type": request.widget_type,
            "analysis": analysis,
            "trigger": request.trigger,
            "at": request.captured_at,
        })
        return message
