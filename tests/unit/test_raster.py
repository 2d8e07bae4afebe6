"""Tests for sdsession.core.raster — owned buffers."""

from __future__ import annotations

import pytest
from PIL import Image

from sdsession.core.raster import ControlImage, EmptyBufferError, GenerationResult, RasterBuffer


class TestRasterBuffer:
    def test_geometry_properties(self):
        buffer = RasterBuffer(Image.new("RGB", (40, 30)))
        assert buffer.size == (40, 30)
        assert buffer.width == 40
        assert buffer.height == 30
        assert buffer.channels == 3

    def test_rgba_converted_to_rgb(self):
        buffer = RasterBuffer(Image.new("RGBA", (8, 8), (1, 2, 3, 4)))
        assert buffer.image.mode == "RGB"
        assert buffer.image.getpixel((0, 0)) == (1, 2, 3)

    def test_empty_buffer_raises_on_access(self):
        buffer = RasterBuffer.empty()
        assert buffer.is_empty
        with pytest.raises(EmptyBufferError):
            _ = buffer.image

    def test_release_empties_buffer(self):
        buffer = RasterBuffer(Image.new("RGB", (4, 4)))
        buffer.release()
        assert buffer.is_empty
        with pytest.raises(EmptyBufferError):
            _ = buffer.width

    def test_release_twice_is_safe(self):
        buffer = RasterBuffer(Image.new("RGB", (4, 4)))
        buffer.release()
        buffer.release()
        assert buffer.is_empty

    def test_take_moves_ownership(self):
        buffer = RasterBuffer(Image.new("RGB", (4, 4)))
        moved = buffer.take()
        assert buffer.is_empty
        assert moved.size == (4, 4)

    def test_repr(self):
        assert repr(RasterBuffer.empty()) == "RasterBuffer(empty)"
        assert repr(RasterBuffer(Image.new("RGB", (3, 2)))) == "RasterBuffer(3x2)"


class TestContainers:
    def test_control_image_release(self):
        control = ControlImage(RasterBuffer(Image.new("RGB", (4, 4))))
        control.release()
        assert control.buffer.is_empty

    def test_generation_result_iterates_and_releases(self):
        entries = [RasterBuffer(Image.new("RGB", (2, 2))) for _ in range(3)]
        result = GenerationResult(entries)
        assert len(result) == 3
        assert list(result) == entries
        result.release()
        assert all(entry.is_empty for entry in entries)
