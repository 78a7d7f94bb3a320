"""Exception types shared across the orchestration core.

Background work (auto research, auto analysis) logs and swallows these;
user-initiated routes translate them into HTTP errors.
"""
from enum import Enum
from typing import Optional


class ConsultDeskError(Exception):
    """Base class for all consultdesk errors."""


class ServiceError(ConsultDeskError):
    """An external collaborator failed (transport error, non-2xx, malformed body)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(f'{service}: {message}')
        self.service = service
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class ConsentServiceUnavailable(ConsultDeskError):
    """The consent service could not be reached; never interpreted as a denial."""


class DeviceErrorKind(str, Enum):
    PERMISSION_DENIED = 'permission_denied'
    NOT_FOUND = 'not_found'
    BUSY = 'busy'
    UNSUPPORTED = 'unsupported'
    CONSTRAINTS = 'constraints'
    UNKNOWN = 'unknown'


_DEVICE_MESSAGES = {
    'voice': {
        DeviceErrorKind.PERMISSION_DENIED: 'Microphone access denied. Please allow microphone access and try again.',
        DeviceErrorKind.NOT_FOUND: 'No microphone found. Please connect a microphone and try again.',
        DeviceErrorKind.BUSY: 'Microphone is already in use by another application.',
        DeviceErrorKind.UNSUPPORTED: 'Microphone capture is not supported on this system.',
        DeviceErrorKind.CONSTRAINTS: 'Microphone constraints cannot be satisfied.',
    },
    'webcam': {
        DeviceErrorKind.PERMISSION_DENIED: 'Camera access denied. Please check permissions.',
        DeviceErrorKind.NOT_FOUND: 'No camera found. Please connect a camera and try again.',
        DeviceErrorKind.BUSY: 'Camera is already in use by another application.',
        DeviceErrorKind.UNSUPPORTED: 'Camera capture is not supported on this system.',
        DeviceErrorKind.CONSTRAINTS: 'Camera resolution constraints cannot be satisfied.',
    },
    'screen': {
        DeviceErrorKind.PERMISSION_DENIED: 'Screen capture permission denied.',
        DeviceErrorKind.NOT_FOUND: 'No display available to share.',
        DeviceErrorKind.BUSY: 'Screen capture is busy. Try again in a moment.',
        DeviceErrorKind.UNSUPPORTED: 'Screen sharing is not supported on this system.',
        DeviceErrorKind.CONSTRAINTS: 'Screen capture constraints cannot be satisfied.',
    },
}


def device_message(widget_type: str, kind: DeviceErrorKind) -> str:
    """User-facing text for a device failure of the given widget type."""
    return _DEVICE_MESSAGES.get(widget_type, {}).get(kind, 'Unknown device error')


class DeviceError(ConsultDeskError):
    def __init__(self, kind: DeviceErrorKind, detail: str = ''):
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail


class WidgetNotActive(ConsultDeskError):
    """A widget operation needs the widget to be Active."""


class AnalysisInFlight(ConsultDeskError):
    """The widget's single analysis slot is taken."""


class AnalysisFailed(ConsultDeskError):
    """A manual analysis could not be completed."""


class ArtifactStreamError(ConsultDeskError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message
