"""Super-resolution collaborator backed by ``StableDiffusionUpscalePipeline``."""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sdsession.core.backend import UpscalerBackend
from sdsession.core.config import SessionConfig, config as default_config
from sdsession.core.params import WeightType
from sdsession.core.raster import RasterBuffer

logger = logging.getLogger(__name__)

# The diffusion upscaler always produces a 4x result.
NATIVE_FACTOR = 4


@dataclass
class UpscalerContext:
    pipeline: Any
    model_path: str


class DiffusersUpscaler(UpscalerBackend):
    """Loads an x4 diffusion upscaler and applies it one buffer at a time.

    Args:
        config: Session configuration (device, dtype, cache dir).
    """

    name = "diffusers-x4-upscaler"

    def __init__(self, config: SessionConfig | None = None) -> None:
        self.config = config or default_config

    def create_context(
        self, model_path: str, n_threads: int, weight_type: WeightType | None
    ) -> UpscalerContext | None:
        try:
            import torch
            from diffusers import StableDiffusionUpscalePipeline

            if n_threads > 0:
                torch.set_num_threads(n_threads)

            dtype_name = {
                WeightType.F32: "float32",
                WeightType.F16: "float16",
            }.get(weight_type, self.config.torch_dtype)
            torch_dtype = getattr(torch, dtype_name)

            logger.info("Loading upscaler '%s'.", model_path)
            if Path(model_path).is_file():
                pipeline = StableDiffusionUpscalePipeline.from_single_file(
                    model_path, torch_dtype=torch_dtype
                )
            else:
                pipeline = StableDiffusionUpscalePipeline.from_pretrained(
                    model_path, torch_dtype=torch_dtype, cache_dir=str(self.config.models_dir)
                )
            pipeline = pipeline.to(self.config.device)
        except Exception:
            logger.exception("Failed to load upscaler '%s'.", model_path)
            return None

        return UpscalerContext(pipeline=pipeline, model_path=model_path)

    def upscale(self, handle: UpscalerContext, buffer: RasterBuffer, factor: int) -> RasterBuffer:
        if factor != NATIVE_FACTOR:
            logger.debug("Upscaler is fixed at x%d; requested x%d.", NATIVE_FACTOR, factor)
        try:
            output = handle.pipeline(prompt="", image=buffer.image)
            return RasterBuffer(output.images[0])
        except Exception:
            logger.exception("Upscaling failed.")
            return RasterBuffer.empty()

    def free_context(self, handle: UpscalerContext) -> None:
        handle.pipeline = None
        gc.collect()
        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
