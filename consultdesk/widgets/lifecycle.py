"""Widget lifecycle: one state machine per capture tool type.

    Closed -> Connecting -> Active <-> Minimized
                 |            |
                 +--> Error <-+      (Error always continues to Closed)

``generation`` increments on every open, so work started under an earlier
activation can tell it is stale via ``is_current(generation)``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .. import metrics
from ..config import Settings
from ..errors import DeviceError, DeviceErrorKind, device_message
from ..logging_utils import emit_event
from ..transcript import MessageChannel, TranscriptMessage
from .devices import DeviceHandle, DeviceSource

logger = logging.getLogger(__name__)

WIDGET_TYPES = ("voice", "webcam", "screen")


class WidgetState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    ACTIVE = "active"
    MINIMIZED = "minimized"
    ERROR = "error"


class WidgetEvent(str, Enum):
    OPEN = "open"
    ACQUIRED = "acquired"
    FAILED = "failed"
    MINIMIZE = "minimize"
    EXPAND = "expand"
    CLOSE = "close"


@dataclass(frozen=True)
class Widget:
    type: str
    state: WidgetState = WidgetState.CLOSED
    generation: int = 0
    error: Optional[DeviceErrorKind] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "state": self.state.value,
            "generation": self.generation,
            "error": self.error.value if self.error else None,
        }


_TRANSITIONS: Dict[Tuple[WidgetState, WidgetEvent], WidgetState] = {
    (WidgetState.CLOSED, WidgetEvent.OPEN): WidgetState.CONNECTING,
    (WidgetState.CONNECTING, WidgetEvent.ACQUIRED): WidgetState.ACTIVE,
    (WidgetState.CONNECTING, WidgetEvent.FAILED): WidgetState.ERROR,
    (WidgetState.ACTIVE, WidgetEvent.FAILED): WidgetState.ERROR,
    (WidgetState.ACTIVE, WidgetEvent.MINIMIZE): WidgetState.MINIMIZED,
    (WidgetState.MINIMIZED, WidgetEvent.EXPAND): WidgetState.ACTIVE,
}


def transition(widget: Widget, event: WidgetEvent, error: Optional[DeviceErrorKind] = None) -> Widget:
    """Pure transition function; events that do not apply return the widget unchanged."""
    if event is WidgetEvent.CLOSE:
        if widget.state is WidgetState.CLOSED:
            return widget
        return replace(widget, state=WidgetState.CLOSED, error=None)
    target = _TRANSITIONS.get((widget.state, event))
    if target is None:
        return widget
    if event is WidgetEvent.OPEN:
        return replace(widget, state=target, generation=widget.generation + 1, error=None)
    if event is WidgetEvent.FAILED:
        return replace(widget, state=target, error=error or DeviceErrorKind.UNKNOWN)
    return replace(widget, state=target)


ActiveHook = Callable[[int, DeviceHandle], None]
CloseHook = Callable[[], None]


class WidgetLifecycleManager:
    """Owns one widget type's state, device handle and timers."""

    def __init__(
        self,
        widget_type: str,
        source: DeviceSource,
        fallback: Optional[DeviceSource] = None,
        channel: Optional[MessageChannel] = None,
        settings: Optional[Settings] = None,
    ):
        self.widget = Widget(widget_type)
        self.source = source
        self.fallback = fallback
        self.channel = channel
        self.settings = settings or Settings()
        self.handle: Optional[DeviceHandle] = None
        self._timers: set = set()
        self._active_hooks: List[ActiveHook] = []
        self._close_hooks: List[CloseHook] = []

    @property
    def type(self) -> str:
        return self.widget.type

    @property
    def state(self) -> WidgetState:
        return self.widget.state

    def on_active(self, hook: ActiveHook) -> None:
        self._active_hooks.append(hook)

    def on_close(self, hook: CloseHook) -> None:
        self._close_hooks.append(hook)

    def is_current(self, generation: int) -> bool:
        return self.widget.state is not WidgetState.CLOSED and self.widget.generation == generation

    def _apply(self, event: WidgetEvent, error: Optional[DeviceErrorKind] = None) -> bool:
        updated = transition(self.widget, event, error)
        if updated is self.widget:
            return False
        self.widget = updated
        metrics.widget_transitions_counter.labels(widget_type=self.type, state=updated.state.value).inc()
        if self.channel is not None:
            self.channel.event("widget_state", widget=updated.to_dict())
        return True

    async def _acquire(self) -> DeviceHandle:
        try:
            return await self.source.acquire()
        except DeviceError as e:
            if self.fallback is None or e.kind is DeviceErrorKind.PERMISSION_DENIED:
                raise
            logger.info("%s acquisition failed (%s), trying fallback source", self.type, e.kind.value)
            return await self.fallback.acquire()

    async def open(self) -> Widget:
        """Acquire the device and go Active. Raises DeviceError after auto-closing on failure."""
        if not self._apply(WidgetEvent.OPEN):
            return self.widget
        generation = self.widget.generation
        try:
            handle = await self._acquire()
        except Exception as e:
            if not self.is_current(generation):
                return self.widget
            error = e if isinstance(e, DeviceError) else DeviceError(DeviceErrorKind.UNKNOWN, f"{type(e).__name__}: {e}")
            self._apply(WidgetEvent.FAILED, error.kind)
            message = device_message(self.type, error.kind)
            emit_event("device_error", level="warning", widget_type=self.type, kind=error.kind.value,
                       detail=error.detail)
            if self.channel is not None:
                self.channel.event("device_error", widget_type=self.type, kind=error.kind.value, message=message)
                self.channel.append(TranscriptMessage(role="system", type="system", content=message,
                                                      metadata={"widget_type": self.type, "kind": error.kind.value}))
            self.close()
            if error is e:
                raise
            raise error from e

        if not self.is_current(generation) or self.widget.state is not WidgetState.CONNECTING:
            # closed (or closed and reopened) while we were waiting on the device
            handle.stop()
            return self.widget

        self.handle = handle
        handle.on_ended(lambda: self._device_ended(generation))
        self._apply(WidgetEvent.ACQUIRED)
        if self.type == "voice":
            self._start_timer(self._auto_stop(generation, self.settings.voice_max_seconds))
        for hook in list(self._active_hooks):
            hook(generation, handle)
        return self.widget

    def minimize(self) -> Widget:
        self._apply(WidgetEvent.MINIMIZE)
        return self.widget

    def expand(self) -> Widget:
        self._apply(WidgetEvent.EXPAND)
        return self.widget

    def close(self) -> Widget:
        if self.widget.state is WidgetState.CLOSED:
            return self.widget
        self._apply(WidgetEvent.CLOSE)
        current = asyncio.current_task() if self._in_loop() else None
        for task in list(self._timers):
            if task is not current:
                task.cancel()
        self._timers.clear()
        handle, self.handle = self.handle, None
        if handle is not None:
            handle.stop()
        for hook in list(self._close_hooks):
            try:
                hook()
            except Exception:
                logger.exception("%s close hook failed", self.type)
        return self.widget

    @staticmethod
    def _in_loop() -> bool:
        try:
            asyncio.get_running_loop()
            return True
        except RuntimeError:
            return False

    def _start_timer(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    async def _auto_stop(self, generation: int, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if self.is_current(generation):
            logger.info("voice widget reached %.0fs limit, closing", seconds)
            self.close()

    def _device_ended(self, generation: int) -> None:
        if self.is_current(generation):
            logger.info("%s device ended, closing widget", self.type)
            self.close()


class WidgetRegistry:
    """One lifecycle manager per widget type (the dock view)."""

    def __init__(self, managers: Dict[str, WidgetLifecycleManager]):
        self._managers = dict(managers)

    @classmethod
    def from_sources(cls, sources: Dict[str, tuple], channel: Optional[MessageChannel] = None,
                     settings: Optional[Settings] = None) -> "WidgetRegistry":
        return cls({
            t: WidgetLifecycleManager(t, primary, fallback, channel, settings)
            for t, (primary, fallback) in sources.items()
        })

    def get(self, widget_type: str) -> WidgetLifecycleManager:
        """Raises KeyError for unknown widget types."""
        return self._managers[widget_type]

    def __contains__(self, widget_type: str) -> bool:
        return widget_type in self._managers

    def all(self) -> List[Widget]:
        return [m.widget for m in self._managers.values()]

    def active(self) -> List[Widget]:
        return [m.widget for m in self._managers.values() if m.state is not WidgetState.CLOSED]

    def close_all(self) -> None:
        for m in self._managers.values():
            m.close()
