"""Frame sizing and encoding for analysis requests."""
import base64
from dataclasses import dataclass

import cv2
import numpy as np

AUTO_MAX_WIDTH = 1280
MANUAL_MAX_WIDTH = 1920
MANUAL_JPEG_QUALITY = 0.92


@dataclass(frozen=True)
class QualityTier:
    name: str
    interval_factor: float
    jpeg_quality: float


EXCELLENT = QualityTier('excellent', 1.0, 0.8)
GOOD = QualityTier('good', 1.2, 0.7)
POOR = QualityTier('poor', 1.5, 0.6)


def quality_for_width(width: int) -> QualityTier:
    if width >= 1920:
        return EXCELLENT
    if width >= 1280:
        return GOOD
    return POOR


def auto_interval_ms(base_interval_ms: int, width: int) -> int:
    return int(round(base_interval_ms * quality_for_width(width).interval_factor))


def downscale(frame: np.ndarray, max_width: int, smooth: bool) -> np.ndarray:
    """Shrink to max_width keeping aspect ratio; frames already small enough pass through."""
    h, w = frame.shape[:2]
    if w <= max_width:
        return frame
    new_h = max(1, int(round(h * max_width / w)))
    interpolation = cv2.INTER_AREA if smooth else cv2.INTER_NEAREST
    return cv2.resize(frame, (max_width, new_h), interpolation=interpolation)


def encode_jpeg(frame: np.ndarray, quality: float) -> str:
    """Encode a BGR frame as a ``data:image/jpeg;base64,...`` URL; quality is 0..1."""
    ok, buf = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100))])
    if not ok:
        raise ValueError('JPEG encoding failed')
    return 'data:image/jpeg;base64,' + base64.b64encode(buf.tobytes()).decode('ascii')
