"""Input and control image preparation.

The preparer turns a file path into a buffer at exactly the target geometry.
Ownership moves linearly: decode -> (resize) -> (preprocess).  Each
predecessor is released only after its successor exists, and released on
failure too, so a failed preparation never leaks a buffer.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .codec import PillowCodec
from .errors import ImageLoadError, InvalidGeometryError
from .preprocessing import DEFAULT_CANNY, CannyParams, preprocess_canny
from .raster import ControlImage, RasterBuffer

logger = logging.getLogger(__name__)


class ImagePreparer:
    """Loads, validates and resizes images for the backend.

    Args:
        codec: Codec collaborator (defaults to :class:`PillowCodec`).
        canny_params: Threshold tuple for control-image edge detection.
    """

    def __init__(
        self,
        codec: PillowCodec | None = None,
        canny_params: CannyParams = DEFAULT_CANNY,
    ) -> None:
        self._codec = codec or PillowCodec()
        self._canny_params = canny_params

    def prepare_input(self, path: str | Path, width: int, height: int) -> RasterBuffer:
        """Load an image and bring it to ``width`` x ``height``.

        Raises:
            ImageLoadError: Missing path, unreadable or corrupt file.
            UnsupportedFormatError: Fewer than three channels.
            InvalidGeometryError: Non-positive source or target geometry.
            ResourceExhaustedError: Allocation failure while resizing.
        """
        if not path:
            raise ImageLoadError("no input image path configured")
        if width <= 0 or height <= 0:
            raise InvalidGeometryError(f"target geometry {width}x{height} must be positive")

        buffer = self._codec.decode(path)
        if buffer.size == (width, height):
            return buffer

        logger.info(
            "resize input image from %dx%d to %dx%d", buffer.width, buffer.height, width, height
        )
        try:
            resized = self._codec.resize(buffer, width, height)
        finally:
            buffer.release()
        return resized

    def prepare_control(
        self, path: str | Path, width: int, height: int, canny: bool = False
    ) -> ControlImage:
        """Load a control image, optionally replacing it with its edge map."""
        buffer = self.prepare_input(path, width, height)
        if not canny:
            return ControlImage(buffer=buffer)

        logger.info("Applying canny preprocessor to control image")
        try:
            edges = preprocess_canny(buffer, self._canny_params)
        finally:
            buffer.release()
        return ControlImage(buffer=edges, preprocessed=True)
