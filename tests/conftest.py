"""Shared pytest fixtures for sdsession tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image

from sdsession.core.backend import ContextSettings, GenerationBackend, UpscalerBackend
from sdsession.core.config import SessionConfig
from sdsession.core.orchestrator import GenerationOrchestrator
from sdsession.core.params import ParameterState
from sdsession.core.raster import RasterBuffer
from sdsession.core.requests import Img2VidRequest


class FakeBackend(GenerationBackend):
    """In-memory generation backend.

    Produces solid-colour images at the requested geometry: one per batch
    item, or one per frame for video requests.

    Attributes:
        fail_create: Number of upcoming ``create_context`` calls that fail.
        fail_generate: Number of upcoming ``generate`` calls that fail.
        empty_entries: Indices of entries returned as null data.
    """

    name = "fake"

    def __init__(self):
        self.fail_create = 0
        self.fail_generate = 0
        self.empty_entries: set[int] = set()
        self.created: list[ContextSettings] = []
        self.freed: list[object] = []
        self.requests: list = []
        self._next_handle = 0

    def create_context(self, settings):
        self.created.append(settings)
        if self.fail_create > 0:
            self.fail_create -= 1
            return None
        self._next_handle += 1
        return f"ctx-{self._next_handle}"

    def generate(self, handle, request):
        self.requests.append(request)
        if self.fail_generate > 0:
            self.fail_generate -= 1
            return None

        count = request.video_frames if isinstance(request, Img2VidRequest) else request.batch_count
        entries = []
        for index in range(count):
            if index in self.empty_entries:
                entries.append(RasterBuffer.empty())
            else:
                colour = (10 * index % 256, 128, 200)
                entries.append(RasterBuffer(Image.new("RGB", (request.width, request.height), colour)))
        return entries

    def free_context(self, handle):
        self.freed.append(handle)


class FakeUpscaler(UpscalerBackend):
    """Nearest-neighbour upscaler that can be told to fail on given calls.

    Attributes:
        fail_calls: 1-based indices of ``upscale`` calls that return null data.
        fail_create: Whether ``create_context`` fails.
    """

    name = "fake-upscaler"

    def __init__(self):
        self.fail_calls: set[int] = set()
        self.fail_create = False
        self.calls = 0
        self.created = 0
        self.freed = 0

    def create_context(self, model_path, n_threads, weight_type):
        self.created += 1
        if self.fail_create:
            return None
        return "upscaler"

    def upscale(self, handle, buffer, factor):
        self.calls += 1
        if self.calls in self.fail_calls:
            return RasterBuffer.empty()
        image = buffer.image.resize((buffer.width * factor, buffer.height * factor), Image.Resampling.NEAREST)
        return RasterBuffer(image)

    def free_context(self, handle):
        self.freed += 1


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> SessionConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        SessionConfig instance for testing
    """
    return SessionConfig(
        device="cpu",  # Use CPU for tests
        torch_dtype="float32",
        models_dir=temp_dir / "models",
        outputs_dir=temp_dir / "outputs",
        viewer_command="",
        _env_file=None,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_upscaler() -> FakeUpscaler:
    return FakeUpscaler()


@pytest.fixture
def orchestrator(fake_backend, fake_upscaler, test_config) -> GenerationOrchestrator:
    """Orchestrator wired to the in-memory backends."""
    return GenerationOrchestrator(fake_backend, fake_upscaler, test_config)


@pytest.fixture
def state() -> ParameterState:
    """Text-to-image parameters with a small geometry."""
    return ParameterState(
        model_path="models/sd_v1-5.safetensors",
        prompt="a red fox in the snow",
        width=64,
        height=48,
        sample_steps=4,
    )


@pytest.fixture
def sample_image(temp_dir: Path) -> Path:
    """Write a 100x60 RGB PNG with a bright left half and a dark right half.

    Returns:
        Path to the image file
    """
    image = Image.new("RGB", (100, 60), (20, 20, 20))
    image.paste((240, 240, 240), (0, 0, 50, 60))
    path = temp_dir / "input.png"
    image.save(path)
    return path
