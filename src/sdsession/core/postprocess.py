"""Iterative upscaling of generated images."""

from __future__ import annotations

import logging

from .backend import UpscalerBackend
from .params import WeightType
from .raster import GenerationResult

logger = logging.getLogger(__name__)


class PostProcessor:
    """Applies the upscaler ``repeats`` times to every generated image.

    Each pass consumes the previous pass's output.  A pass that yields no
    pixels ends the repeats for that image and keeps the last good buffer.
    If the upscaler cannot be loaded the whole batch is left as generated.

    Args:
        upscaler: Upscaling collaborator.
        factor: Scale factor requested on each pass.
    """

    def __init__(self, upscaler: UpscalerBackend, factor: int = 4) -> None:
        self._upscaler = upscaler
        self._factor = factor

    def apply(
        self,
        result: GenerationResult,
        model_path: str,
        repeats: int,
        n_threads: int = -1,
        weight_type: WeightType | None = None,
    ) -> GenerationResult:
        """Upscale ``result`` in place and return it.

        Args:
            result: Generated buffers; empty entries are skipped.
            model_path: Upscaler weights.  Empty disables post-processing.
            repeats: Passes per image.
            n_threads: Thread hint for the upscaler.
            weight_type: Weight type hint for the upscaler.
        """
        if not model_path or repeats < 1:
            return result

        handle = self._upscaler.create_context(model_path, n_threads, weight_type)
        if handle is None:
            logger.warning("Upscaler could not be loaded - saving images without upscaling.")
            return result

        try:
            for index, entry in enumerate(result.entries):
                if entry.is_empty:
                    continue

                current = entry
                for upscale_pass in range(repeats):
                    upscaled = self._upscaler.upscale(handle, current, self._factor)
                    if upscaled.is_empty:
                        logger.warning(
                            "upscale failed on pass %d for image %d - keeping previous result",
                            upscale_pass + 1,
                            index,
                        )
                        break
                    current.release()
                    current = upscaled

                result.entries[index] = current
                logger.debug("Image %d upscaled to %dx%d", index, current.width, current.height)
        finally:
            self._upscaler.free_context(handle)

        return result
