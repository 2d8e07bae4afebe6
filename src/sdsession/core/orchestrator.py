"""End-to-end generation pipeline.

:class:`GenerationOrchestrator` wires the pipeline stages together::

    ParameterState
        -> ImagePreparer   (input / control buffers, when the mode needs them)
        -> ModeDispatcher  (backend call on the long-lived context)
        -> PostProcessor   (optional iterative upscaling)
        -> ArtifactWriter  (PNG + manifest per entry)

It is used by both the one-shot CLI and the interactive session.  The
caller resolves the seed; the orchestrator uses that one value for the
backend call and for every manifest.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .artifacts import ArtifactWriter, PersistReport
from .backend import ContextSettings, GenerationBackend, UpscalerBackend
from .codec import PillowCodec
from .config import SessionConfig, config as default_config
from .dispatcher import ModeDispatcher
from .errors import UnsupportedModeError
from .image_preparer import ImagePreparer
from .params import GenerationMode, ParameterState
from .postprocess import PostProcessor
from .raster import ControlImage, RasterBuffer
from .requests import build_request

logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """Runs one generation call per :meth:`run` against a shared backend context.

    Args:
        backend: Inference collaborator.
        upscaler: Upscaling collaborator.
        config: Session configuration (defaults to the global config).
        codec: Codec shared by the preparer and writer.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        upscaler: UpscalerBackend,
        config: SessionConfig | None = None,
        codec: PillowCodec | None = None,
    ) -> None:
        self.config = config or default_config
        codec = codec or PillowCodec()

        self.dispatcher = ModeDispatcher(backend)
        self.preparer = ImagePreparer(codec)
        self.postprocessor = PostProcessor(upscaler, factor=self.config.upscale_factor)
        self.writer = ArtifactWriter(codec)

    def run(self, state: ParameterState, output_path: str | Path, seed: int) -> PersistReport:
        """Generate, post-process and persist according to ``state``.

        Args:
            state: Parameters for this call (read only).
            output_path: Filename template for the results.
            seed: Seed resolved for this call.

        Returns:
            Persist report for the written images.

        Raises:
            UnsupportedModeError: ``convert`` mode.
            ImagePreparationError: Input or control image could not be prepared.
            BackendInvocationError: The backend failed; its context was discarded.
        """
        if state.mode == GenerationMode.CONVERT:
            raise UnsupportedModeError("convert mode performs no generation")

        init_image: RasterBuffer | None = None
        control_image: ControlImage | None = None
        try:
            if state.mode in (GenerationMode.IMG2IMG, GenerationMode.IMG2VID):
                init_image = self.preparer.prepare_input(
                    state.init_image_path, state.width, state.height
                )

            if state.has_control_image():
                control_image = self.preparer.prepare_control(
                    state.control_image_path,
                    state.width,
                    state.height,
                    canny=state.canny_preprocess,
                )

            request = build_request(state, seed, init_image, control_image)
            result = self.dispatcher.dispatch(request, ContextSettings.from_state(state))
        finally:
            if init_image is not None:
                init_image.release()
            if control_image is not None:
                control_image.release()

        try:
            if not result.is_video:
                self.postprocessor.apply(
                    result,
                    model_path=state.upscale_model_path,
                    repeats=state.upscale_repeats,
                    n_threads=state.n_threads,
                    weight_type=state.weight_type,
                )

            report = self.writer.write(result, output_path, state, seed)
        finally:
            result.release()

        logger.info(
            "Generation complete: %d written, %d failed, %d skipped.",
            len(report.written),
            len(report.failed),
            report.skipped,
        )
        return report

    def close(self) -> None:
        """Unload the backend context."""
        self.dispatcher.unload()
