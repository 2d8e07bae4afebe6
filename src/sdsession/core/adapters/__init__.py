"""Backend implementations built on HuggingFace diffusers."""

from sdsession.core.adapters.diffusers_backend import DiffusersBackend, DiffusersContext
from sdsession.core.adapters.diffusers_upscaler import DiffusersUpscaler, UpscalerContext

__all__ = [
    "DiffusersBackend",
    "DiffusersContext",
    "DiffusersUpscaler",
    "UpscalerContext",
]
