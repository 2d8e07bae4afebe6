"""Owned raster buffers passed between pipeline stages.

A :class:`RasterBuffer` owns one RGB image.  Ownership is move-only: a stage
that supersedes a buffer takes the old one, produces a new one, and releases
the old one once the new one exists.  After :meth:`RasterBuffer.release` or
:meth:`RasterBuffer.take` the buffer is empty and any pixel access raises,
so a released buffer can never be read by mistake.

An empty buffer is also how the backend reports a failed or skipped entry
("null data"); such entries are skipped, not treated as errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from PIL import Image

logger = logging.getLogger(__name__)

RGB_CHANNELS = 3


class EmptyBufferError(RuntimeError):
    """Pixel data was requested from an empty or released buffer."""


class RasterBuffer:
    """Exclusively owned RGB pixel buffer.

    Args:
        image: Pixel data, or ``None`` for a null-data buffer.  Non-RGB images
            are converted to RGB on construction.
    """

    __slots__ = ("_image",)

    def __init__(self, image: Image.Image | None = None) -> None:
        if image is not None and image.mode != "RGB":
            converted = image.convert("RGB")
            image.close()
            image = converted
        self._image: Image.Image | None = image

    @classmethod
    def empty(cls) -> RasterBuffer:
        """Create a null-data buffer."""
        return cls(None)

    @property
    def is_empty(self) -> bool:
        return self._image is None

    @property
    def image(self) -> Image.Image:
        """Borrow the pixel data without transferring ownership.

        Raises:
            EmptyBufferError: If the buffer holds no pixels.
        """
        if self._image is None:
            raise EmptyBufferError("raster buffer has no pixel data")
        return self._image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    @property
    def channels(self) -> int:
        return RGB_CHANNELS

    def take(self) -> RasterBuffer:
        """Move the pixels into a new buffer, leaving this one empty."""
        moved = RasterBuffer.__new__(RasterBuffer)
        moved._image = self._image
        self._image = None
        return moved

    def release(self) -> None:
        """Free the pixel data.  Safe to call on an empty buffer."""
        if self._image is not None:
            self._image.close()
            self._image = None

    def __repr__(self) -> str:
        if self._image is None:
            return "RasterBuffer(empty)"
        return f"RasterBuffer({self._image.width}x{self._image.height})"


@dataclass
class ControlImage:
    """Control-net conditioning image."""

    buffer: RasterBuffer
    preprocessed: bool = False

    def release(self) -> None:
        self.buffer.release()


@dataclass
class GenerationResult:
    """Ordered backend output: one buffer per batch item or video frame."""

    entries: list[RasterBuffer] = field(default_factory=list)
    is_video: bool = False

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def release(self) -> None:
        for entry in self.entries:
            entry.release()
