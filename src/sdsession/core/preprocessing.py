"""Control-image preprocessors."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from PIL import Image

from .raster import RasterBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CannyParams:
    """Thresholds are fractions of the strongest gradient in the image."""

    high_threshold: float = 0.08
    low_threshold: float = 0.08
    weak: float = 0.8
    strong: float = 1.0
    inverse: bool = False


DEFAULT_CANNY = CannyParams()


def preprocess_canny(buffer: RasterBuffer, params: CannyParams = DEFAULT_CANNY) -> RasterBuffer:
    """Run canny edge detection and return a new edge-map buffer.

    Strong edges (above the high threshold) are painted with ``params.strong``
    and edges kept only through hysteresis linking with ``params.weak``.  The
    input buffer is borrowed; the caller releases it.

    Args:
        buffer: RGB source image.
        params: Threshold and weighting tuple.

    Returns:
        RGB buffer of the same geometry holding the edge map.
    """
    gray = cv2.cvtColor(np.asarray(buffer.image), cv2.COLOR_RGB2GRAY)
    blurred = cv2.GaussianBlur(gray, (5, 5), 1.4)

    # cv2.Canny uses the L1 norm of 3x3 Sobel gradients by default; scale the
    # fractional thresholds against that same magnitude.
    grad_x = cv2.Sobel(blurred, cv2.CV_32F, 1, 0, ksize=3)
    grad_y = cv2.Sobel(blurred, cv2.CV_32F, 0, 1, ksize=3)
    max_magnitude = float((np.abs(grad_x) + np.abs(grad_y)).max())

    values = np.zeros(gray.shape, dtype=np.float32)
    if max_magnitude > 0:
        high = params.high_threshold * max_magnitude
        low = min(params.low_threshold * max_magnitude, high)
        linked = cv2.Canny(blurred, low, high) > 0
        strong = cv2.Canny(blurred, high, high) > 0
        values[linked & ~strong] = params.weak
        values[strong] = params.strong
    else:
        logger.debug("Control image is flat; canny produced no edges")

    if params.inverse:
        values = 1.0 - values

    pixels = np.round(np.clip(values, 0.0, 1.0) * 255.0).astype(np.uint8)
    return RasterBuffer(Image.fromarray(np.dstack([pixels] * 3)))
