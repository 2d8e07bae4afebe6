"""Tests for sdsession.core.image_preparer and the canny preprocessor."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from sdsession.core.codec import PillowCodec
from sdsession.core.errors import (
    ImageLoadError,
    InvalidGeometryError,
    ResourceExhaustedError,
)
from sdsession.core.image_preparer import ImagePreparer
from sdsession.core.preprocessing import CannyParams, preprocess_canny
from sdsession.core.raster import RasterBuffer


@pytest.fixture
def preparer() -> ImagePreparer:
    return ImagePreparer()


class TestPrepareInput:
    @pytest.mark.parametrize("size", [(100, 60), (64, 64), (512, 768), (1, 1), (33, 200)])
    def test_output_matches_target_geometry(self, preparer, sample_image: Path, size):
        buffer = preparer.prepare_input(sample_image, *size)
        assert buffer.size == size

    def test_same_geometry_skips_resize(self, sample_image: Path):
        codec = PillowCodec()
        codec.resize = MagicMock(side_effect=AssertionError("resize called"))
        buffer = ImagePreparer(codec).prepare_input(sample_image, 100, 60)
        assert buffer.size == (100, 60)

    def test_source_released_after_resize(self, sample_image: Path):
        codec = PillowCodec()
        decoded = codec.decode(sample_image)
        codec.decode = MagicMock(return_value=decoded)
        ImagePreparer(codec).prepare_input(sample_image, 20, 20)
        assert decoded.is_empty

    def test_source_released_when_resize_fails(self, sample_image: Path):
        codec = PillowCodec()
        decoded = codec.decode(sample_image)
        codec.decode = MagicMock(return_value=decoded)
        codec.resize = MagicMock(side_effect=ResourceExhaustedError("out of memory"))
        with pytest.raises(ResourceExhaustedError):
            ImagePreparer(codec).prepare_input(sample_image, 20, 20)
        assert decoded.is_empty

    def test_empty_path(self, preparer):
        with pytest.raises(ImageLoadError):
            preparer.prepare_input("", 64, 64)

    def test_missing_file(self, preparer, temp_dir: Path):
        with pytest.raises(ImageLoadError):
            preparer.prepare_input(temp_dir / "nope.png", 64, 64)

    def test_invalid_target(self, preparer, sample_image: Path):
        with pytest.raises(InvalidGeometryError):
            preparer.prepare_input(sample_image, 64, 0)


class TestPrepareControl:
    def test_plain_control_image(self, preparer, sample_image: Path):
        control = preparer.prepare_control(sample_image, 64, 32)
        assert control.buffer.size == (64, 32)
        assert not control.preprocessed

    def test_canny_control_image(self, preparer, sample_image: Path):
        control = preparer.prepare_control(sample_image, 100, 60, canny=True)
        assert control.preprocessed
        assert control.buffer.size == (100, 60)
        pixels = np.asarray(control.buffer.image)
        # The vertical boundary between the bright and dark halves is an edge.
        assert pixels[:, 45:55].max() == 255
        assert pixels[:, :30].max() == 0


class TestPreprocessCanny:
    def test_flat_image_has_no_edges(self):
        buffer = RasterBuffer(Image.new("RGB", (32, 32), (90, 90, 90)))
        edges = preprocess_canny(buffer)
        assert np.asarray(edges.image).max() == 0
        assert not buffer.is_empty

    def test_inverse(self):
        buffer = RasterBuffer(Image.new("RGB", (32, 32), (90, 90, 90)))
        edges = preprocess_canny(buffer, CannyParams(inverse=True))
        assert np.asarray(edges.image).min() == 255

    def test_output_is_rgb_with_equal_channels(self, sample_image: Path):
        buffer = PillowCodec().decode(sample_image)
        pixels = np.asarray(preprocess_canny(buffer).image)
        assert pixels.shape == (60, 100, 3)
        assert (pixels[..., 0] == pixels[..., 1]).all()
        assert (pixels[..., 1] == pixels[..., 2]).all()
