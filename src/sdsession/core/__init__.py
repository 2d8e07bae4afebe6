"""Core generation pipeline: parameters, image preparation, dispatch and persistence."""

from .artifacts import ArtifactWriter, PersistReport, ReproducibilityManifest
from .backend import ContextSettings, GenerationBackend, UpscalerBackend
from .config import SessionConfig, config
from .dispatcher import ModeDispatcher
from .errors import (
    BackendInvocationError,
    CommandParseError,
    ImageLoadError,
    ImagePreparationError,
    InvalidGeometryError,
    ResourceExhaustedError,
    SessionError,
    UnsupportedFormatError,
    UnsupportedModeError,
    WriteError,
)
from .image_preparer import ImagePreparer
from .orchestrator import GenerationOrchestrator
from .params import ParameterState, resolve_seed
from .postprocess import PostProcessor
from .raster import ControlImage, GenerationResult, RasterBuffer

__all__ = [
    "ArtifactWriter",
    "BackendInvocationError",
    "CommandParseError",
    "ContextSettings",
    "ControlImage",
    "GenerationBackend",
    "GenerationOrchestrator",
    "GenerationResult",
    "ImageLoadError",
    "ImagePreparationError",
    "ImagePreparer",
    "InvalidGeometryError",
    "ModeDispatcher",
    "ParameterState",
    "PersistReport",
    "PostProcessor",
    "RasterBuffer",
    "ReproducibilityManifest",
    "ResourceExhaustedError",
    "SessionConfig",
    "SessionError",
    "UnsupportedFormatError",
    "UnsupportedModeError",
    "UpscalerBackend",
    "WriteError",
    "config",
    "resolve_seed",
]
