"""Exclusive capture devices behind a small async source/handle interface.

A *source* knows how to acquire a device; ``acquire()`` either returns a
handle or raises ``DeviceError`` with a typed kind. A *handle* owns the
device until ``stop()`` (idempotent) and reports device-side termination
through ``on_ended`` callbacks, which always run on the event loop.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional

import cv2
import numpy as np

from ..config import Settings
from ..errors import DeviceError, DeviceErrorKind

logger = logging.getLogger(__name__)

CAMERA_IDEAL_WIDTH = 1280
CAMERA_IDEAL_HEIGHT = 720
VOICE_SAMPLE_RATE = 16000


class DeviceHandle:
    """Base handle: width/height of the negotiated stream plus lifecycle plumbing."""

    def __init__(self, width: int = 0, height: int = 0, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.width = width
        self.height = height
        self.stopped = False
        self._ended_callbacks: List[Callable[[], None]] = []
        self._loop = loop

    def on_ended(self, callback: Callable[[], None]) -> None:
        self._ended_callbacks.append(callback)

    def _fire_ended(self) -> None:
        if self.stopped:
            return
        for cb in list(self._ended_callbacks):
            if self._loop is not None:
                self._loop.call_soon_threadsafe(cb)
            else:
                cb()

    async def read_frame(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _release(self) -> None:
        pass

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        try:
            self._release()
        except Exception as e:
            logger.warning('error releasing %s: %s', type(self).__name__, e)


class DeviceSource:
    widget_type = ''

    async def acquire(self) -> DeviceHandle:
        raise NotImplementedError


class DisabledSource(DeviceSource):
    """Stand-in used when device capture is switched off in the settings."""

    def __init__(self, widget_type: str):
        self.widget_type = widget_type

    async def acquire(self) -> DeviceHandle:
        raise DeviceError(DeviceErrorKind.UNSUPPORTED, 'device capture is disabled (ENABLE_DEVICE_CAPTURE=0)')


# --- screen ---
class ScreenHandle(DeviceHandle):
    def __init__(self, backend, width: int, height: int, loop=None):
        super().__init__(width, height, loop)
        self._backend = backend

    async def read_frame(self) -> Optional[np.ndarray]:
        if self.stopped:
            return None
        try:
            img = await asyncio.to_thread(self._backend.screenshot)
        except Exception as e:
            logger.warning('screenshot failed, ending screen share: %s', e)
            self._fire_ended()
            return None
        return cv2.cvtColor(np.array(img), cv2.COLOR_RGB2BGR)


class ScreenSource(DeviceSource):
    widget_type = 'screen'

    async def acquire(self) -> ScreenHandle:
        try:
            import pyautogui
        except Exception as e:
            # missing DISPLAY and similar headless failures surface here
            raise DeviceError(DeviceErrorKind.UNSUPPORTED, f'screen backend unavailable: {e}') from e
        try:
            size = await asyncio.to_thread(pyautogui.size)
        except Exception as e:
            raise DeviceError(DeviceErrorKind.NOT_FOUND, f'no display: {e}') from e
        return ScreenHandle(pyautogui, size.width, size.height, asyncio.get_running_loop())


# --- webcam ---
class CameraHandle(DeviceHandle):
    def __init__(self, cap, width: int, height: int, loop=None):
        super().__init__(width, height, loop)
        self._cap = cap
        self._lock = threading.Lock()

    def _read(self):
        with self._lock:
            if self.stopped:
                return False, None
            return self._cap.read()

    async def read_frame(self) -> Optional[np.ndarray]:
        if self.stopped:
            return None
        ok, frame = await asyncio.to_thread(self._read)
        if not ok:
            if not self.stopped:
                logger.info('camera stopped delivering frames')
                self._fire_ended()
            return None
        return frame

    def _release(self) -> None:
        with self._lock:
            self._cap.release()


class CameraSource(DeviceSource):
    widget_type = 'webcam'

    def __init__(self, index: int = 0, width: int = CAMERA_IDEAL_WIDTH, height: int = CAMERA_IDEAL_HEIGHT):
        self.index = index
        self.width = width
        self.height = height

    def _open(self):
        cap = cv2.VideoCapture(self.index)
        if not cap.isOpened():
            cap.release()
            raise DeviceError(DeviceErrorKind.NOT_FOUND, f'camera {self.index} could not be opened')
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        # warm-up read; an opened but unreadable camera is usually held by another app
        ok, frame = cap.read()
        if not ok:
            cap.release()
            raise DeviceError(DeviceErrorKind.BUSY, f'camera {self.index} returned no frames')
        h, w = frame.shape[:2]
        return cap, w, h

    async def acquire(self) -> CameraHandle:
        try:
            cap, w, h = await asyncio.to_thread(self._open)
        except cv2.error as e:
            raise DeviceError(DeviceErrorKind.UNKNOWN, str(e)) from e
        return CameraHandle(cap, w, h, asyncio.get_running_loop())


# --- microphone ---
def _classify_audio_error(message: str) -> DeviceErrorKind:
    text = message.lower()
    if 'permission' in text or 'not authorized' in text or 'access denied' in text:
        return DeviceErrorKind.PERMISSION_DENIED
    if 'invalid device' in text or 'no default' in text or 'no such device' in text:
        return DeviceErrorKind.NOT_FOUND
    if 'unavailable' in text or 'busy' in text:
        return DeviceErrorKind.BUSY
    if 'sample rate' in text or 'channels' in text:
        return DeviceErrorKind.CONSTRAINTS
    return DeviceErrorKind.UNKNOWN


class MicrophoneHandle(DeviceHandle):
    """Holds the open input stream for the voice widget's lifetime.

    Audio is not sampled server-side, so ``read_frame`` always returns None.
    """

    def __init__(self, stream, samplerate: int, loop=None):
        super().__init__(0, 0, loop)
        self.samplerate = samplerate
        self._stream = stream

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug('audio input status: %s', status)

    def _finished(self):
        if not self.stopped:
            self._fire_ended()

    async def read_frame(self) -> Optional[np.ndarray]:
        return None

    def _release(self) -> None:
        self._stream.stop()
        self._stream.close()


class MicrophoneSource(DeviceSource):
    widget_type = 'voice'

    def __init__(self, samplerate: Optional[int] = VOICE_SAMPLE_RATE, device=None):
        """samplerate=None lets PortAudio pick the device default (used as the relaxed fallback)."""
        self.samplerate = samplerate
        self.device = device

    def _open(self, loop) -> MicrophoneHandle:
        import sounddevice as sd

        handle_box: Dict[str, MicrophoneHandle] = {}

        def callback(indata, frames, time_info, status):
            handle_box['h']._callback(indata, frames, time_info, status)

        def finished():
            h = handle_box.get('h')
            if h is not None:
                h._finished()

        try:
            stream = sd.InputStream(samplerate=self.samplerate, channels=1, dtype='float32',
                                    device=self.device, callback=callback, finished_callback=finished)
        except sd.PortAudioError as e:
            raise DeviceError(_classify_audio_error(str(e)), str(e)) from e
        except ValueError as e:
            raise DeviceError(DeviceErrorKind.NOT_FOUND, str(e)) from e
        handle = MicrophoneHandle(stream, int(stream.samplerate), loop)
        handle_box['h'] = handle
        try:
            stream.start()
        except sd.PortAudioError as e:
            stream.close()
            raise DeviceError(_classify_audio_error(str(e)), str(e)) from e
        return handle

    async def acquire(self) -> MicrophoneHandle:
        try:
            import sounddevice  # noqa: F401
        except OSError as e:
            # PortAudio library missing
            raise DeviceError(DeviceErrorKind.UNSUPPORTED, f'audio backend unavailable: {e}') from e
        return await asyncio.to_thread(self._open, asyncio.get_running_loop())


def default_sources(settings: Settings) -> Dict[str, tuple]:
    """Map widget type to (primary source, fallback source or None)."""
    if not settings.enable_device_capture:
        return {t: (DisabledSource(t), None) for t in ('voice', 'webcam', 'screen')}
    return {
        'voice': (MicrophoneSource(), MicrophoneSource(samplerate=None)),
        'webcam': (CameraSource(), None),
        'screen': (ScreenSource(), None),
    }
