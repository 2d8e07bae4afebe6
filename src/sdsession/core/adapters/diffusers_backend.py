"""HuggingFace diffusers implementation of the generation backend.

This module provides :class:`DiffusersBackend`, the collaborator that owns
model weights and runs the actual denoising.  The orchestration layer only
sees opaque :class:`DiffusersContext` handles.

Context Construction
--------------------
- **Model source** - ``model_path`` (or ``diffusion_model_path`` when no full
  model is given).  Single-file checkpoints (``.safetensors``, ``.ckpt``...)
  are loaded with ``from_single_file`` and converted to the mode's pipeline
  with ``from_pipe``; directories and Hub IDs use ``from_pretrained``.
- **Mode pipelines** - text-to-image and image-to-image use the diffusers
  AutoPipelines (ControlNet attached when configured); image-to-video uses
  ``StableVideoDiffusionPipeline``.
- **Components** - an explicit VAE or a TAESD tiny autoencoder replaces the
  model's VAE; textual-inversion embeddings are loaded from
  ``embeddings_path``.
- **Placement hints** - any CPU-placement flag enables model CPU offloading,
  otherwise the pipeline moves to ``config.device``.  ``n_threads`` is
  forwarded to ``torch.set_num_threads``.

Sampling
--------
Sampler names map onto diffusers scheduler classes; the ``karras`` and
``exponential`` schedules set the matching sigma flags.  Flow-matching
models keep their own scheduler.  Every batch entry gets its own generator
seeded with ``seed + i`` so each saved image is reproducible on its own.
``std_default`` RNG draws on the CPU, ``cuda`` RNG on ``config.device``.

Failure Contract
----------------
Exceptions never escape: failures are logged with their traceback and
reported as ``None`` (see :mod:`sdsession.core.backend`).
"""

from __future__ import annotations

import gc
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sdsession.core.backend import ContextSettings, GenerationBackend
from sdsession.core.config import SessionConfig, config as default_config
from sdsession.core.params import GenerationMode, RngType, SampleMethod, Schedule, WeightType
from sdsession.core.raster import RasterBuffer
from sdsession.core.requests import (
    GenerationRequest,
    Img2ImgRequest,
    Img2VidRequest,
    Txt2ImgRequest,
)

logger = logging.getLogger(__name__)

SINGLE_FILE_SUFFIXES = {".safetensors", ".ckpt", ".pt", ".pth", ".bin", ".gguf"}
EMBEDDING_SUFFIXES = {".safetensors", ".pt", ".bin"}

# ---------------------------------------------------------------------------
# Lazily built lookup tables.  torch and diffusers are only imported when a
# context is actually created.
# ---------------------------------------------------------------------------
_DTYPE_MAP: dict | None = None
_SCHEDULER_MAP: dict | None = None

# Weight types with a native torch dtype; quantised types fall back to the
# configured dtype.
_WEIGHT_DTYPES = {
    WeightType.F32: "float32",
    WeightType.F16: "float16",
}

_SCHEDULE_FLAGS = {
    Schedule.KARRAS: {"use_karras_sigmas": True},
    Schedule.EXPONENTIAL: {"use_exponential_sigmas": True},
}


def _get_dtype_map() -> dict:
    """Return the dtype string -> ``torch.dtype`` mapping."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


def _get_scheduler_map() -> dict:
    """Return the sampler -> (scheduler class, extra config) mapping."""
    global _SCHEDULER_MAP
    if _SCHEDULER_MAP is None:
        from diffusers import (
            DPMSolverMultistepScheduler,
            DPMSolverSinglestepScheduler,
            EulerAncestralDiscreteScheduler,
            EulerDiscreteScheduler,
            HeunDiscreteScheduler,
            KDPM2DiscreteScheduler,
            LCMScheduler,
            PNDMScheduler,
        )

        _SCHEDULER_MAP = {
            SampleMethod.EULER_A: (EulerAncestralDiscreteScheduler, {}),
            SampleMethod.EULER: (EulerDiscreteScheduler, {}),
            SampleMethod.HEUN: (HeunDiscreteScheduler, {}),
            SampleMethod.DPM2: (KDPM2DiscreteScheduler, {}),
            SampleMethod.DPMPP2S_A: (DPMSolverSinglestepScheduler, {}),
            SampleMethod.DPMPP2M: (DPMSolverMultistepScheduler, {}),
            SampleMethod.DPMPP2MV2: (
                DPMSolverMultistepScheduler,
                {"lower_order_final": True, "euler_at_final": True},
            ),
            SampleMethod.IPNDM: (PNDMScheduler, {}),
            SampleMethod.IPNDM_V: (PNDMScheduler, {"skip_prk_steps": True}),
            SampleMethod.LCM: (LCMScheduler, {}),
        }
    return _SCHEDULER_MAP


def _is_single_file(source: str) -> bool:
    return Path(source).suffix.lower() in SINGLE_FILE_SUFFIXES


def _accepts(pipeline: Any, name: str) -> bool:
    """Check whether ``pipeline.__call__`` takes a ``name`` keyword."""
    try:
        parameters = inspect.signature(pipeline.__call__).parameters
    except (TypeError, ValueError):
        return False
    # A catch-all **kwargs does not count; pipelines swallow unknown keywords.
    return name in parameters


@dataclass
class DiffusersContext:
    """Handle returned by :meth:`DiffusersBackend.create_context`."""

    pipeline: Any
    settings: ContextSettings
    scheduler_key: tuple[SampleMethod, Schedule] | None = None


class DiffusersBackend(GenerationBackend):
    """Generation backend built on diffusers pipelines.

    Args:
        config: Session configuration (device, dtype fallback, cache dir).
    """

    name = "diffusers"

    def __init__(self, config: SessionConfig | None = None) -> None:
        self.config = config or default_config

    # -- Context lifecycle --------------------------------------------------

    def create_context(self, settings: ContextSettings) -> DiffusersContext | None:
        """Load the pipeline for ``settings``.  Returns ``None`` on failure."""
        source = settings.model_path or settings.diffusion_model_path
        if not source:
            logger.error("No model path configured - cannot create backend context.")
            return None

        self._warn_unsupported(settings)

        try:
            import torch

            if settings.n_threads > 0:
                torch.set_num_threads(settings.n_threads)

            torch_dtype = self._resolve_dtype(settings.weight_type)
            logger.info(
                "Loading model '%s' (mode=%s, dtype=%s, device=%s).",
                source,
                settings.mode.value,
                torch_dtype,
                self.config.device,
            )

            components = self._load_components(settings, torch_dtype)
            pipeline = self._load_pipeline(settings, source, torch_dtype, components)

            # --- Move to device or enable CPU offloading -------------------
            if settings.clip_on_cpu or settings.vae_on_cpu or settings.control_net_cpu:
                pipeline.enable_model_cpu_offload()
                logger.info("Model CPU offloading enabled.")
            else:
                pipeline = pipeline.to(self.config.device)

            if settings.vae_tiling and hasattr(pipeline, "enable_vae_tiling"):
                pipeline.enable_vae_tiling()
                logger.info("VAE tiling enabled.")

            if settings.diffusion_flash_attn:
                denoiser = getattr(pipeline, "transformer", None) or getattr(pipeline, "unet", None)
                if denoiser is not None and hasattr(denoiser, "set_attention_backend"):
                    denoiser.set_attention_backend("flash")
                    logger.info("Flash attention backend enabled.")
                else:
                    logger.warning("Flash attention requested but not supported by this model.")

            if settings.embeddings_path:
                self._load_embeddings(pipeline, Path(settings.embeddings_path))

        except Exception:
            logger.exception("Failed to create backend context for '%s'.", source)
            self._empty_cuda_cache()
            return None

        logger.info("Model '%s' loaded successfully.", source)
        return DiffusersContext(pipeline=pipeline, settings=settings)

    def free_context(self, handle: DiffusersContext) -> None:
        """Drop the pipeline and return CUDA memory."""
        handle.pipeline = None
        gc.collect()
        self._empty_cuda_cache()

    # -- Generation ---------------------------------------------------------

    def generate(self, handle: DiffusersContext, request: GenerationRequest) -> list[RasterBuffer] | None:
        """Run ``request``.  Returns ``None`` on failure."""
        try:
            if isinstance(request, Txt2ImgRequest):
                self._configure_scheduler(handle, request.sample_method)
                images = self._txt2img(handle, request)
            elif isinstance(request, Img2ImgRequest):
                self._configure_scheduler(handle, request.sample_method)
                images = self._img2img(handle, request)
            elif isinstance(request, Img2VidRequest):
                images = self._img2vid(handle, request)
            else:
                raise TypeError(f"unsupported request type {type(request).__name__}")
        except Exception:
            logger.exception("Generation failed.")
            return None

        return [RasterBuffer(image) for image in images]

    def _txt2img(self, ctx: DiffusersContext, request: Txt2ImgRequest) -> list:
        pipeline = ctx.pipeline
        kwargs = self._prompt_kwargs(ctx, request)
        kwargs.update(
            width=request.width,
            height=request.height,
            num_images_per_prompt=request.batch_count,
            generator=self._generators(ctx, request.seed, request.batch_count),
        )

        if request.slg_scale != 0 and request.skip_layers:
            if _accepts(pipeline, "skip_guidance_layers"):
                kwargs.update(
                    skip_guidance_layers=list(request.skip_layers),
                    skip_layer_guidance_scale=request.slg_scale,
                    skip_layer_guidance_start=request.skip_layer_start,
                    skip_layer_guidance_stop=request.skip_layer_end,
                )
            else:
                logger.warning("Skip-layer guidance is not supported by this model; ignoring.")

        if request.control_image is not None:
            kwargs["image"] = request.control_image.buffer.image
            kwargs["controlnet_conditioning_scale"] = request.control_strength

        return list(pipeline(**kwargs).images)

    def _img2img(self, ctx: DiffusersContext, request: Img2ImgRequest) -> list:
        kwargs = self._prompt_kwargs(ctx, request)
        kwargs.update(
            image=request.init_image.image,
            strength=request.strength,
            num_images_per_prompt=request.batch_count,
            generator=self._generators(ctx, request.seed, request.batch_count),
        )

        if request.control_image is not None:
            kwargs["control_image"] = request.control_image.buffer.image
            kwargs["controlnet_conditioning_scale"] = request.control_strength

        return list(ctx.pipeline(**kwargs).images)

    def _img2vid(self, ctx: DiffusersContext, request: Img2VidRequest) -> list:
        output = ctx.pipeline(
            image=request.init_image.image,
            width=request.width,
            height=request.height,
            num_frames=request.video_frames,
            motion_bucket_id=request.motion_bucket_id,
            fps=request.fps,
            noise_aug_strength=request.augmentation_level,
            min_guidance_scale=request.min_cfg,
            max_guidance_scale=request.cfg_scale,
            num_inference_steps=request.sample_steps,
            generator=self._generators(ctx, request.seed, 1)[0],
        )
        return list(output.frames[0])

    def _prompt_kwargs(self, ctx: DiffusersContext, request: Txt2ImgRequest | Img2ImgRequest) -> dict:
        """Arguments shared by the text-conditioned modes."""
        pipeline = ctx.pipeline
        kwargs: dict = {
            "prompt": request.prompt,
            "num_inference_steps": request.sample_steps,
        }

        # Guidance-distilled models (Flux) take the distilled guidance as
        # guidance_scale and real CFG as true_cfg_scale.
        if "Flux" in type(pipeline).__name__:
            kwargs["guidance_scale"] = request.guidance
            if _accepts(pipeline, "true_cfg_scale"):
                kwargs["true_cfg_scale"] = request.cfg_scale
        else:
            kwargs["guidance_scale"] = request.cfg_scale

        if request.negative_prompt:
            kwargs["negative_prompt"] = request.negative_prompt

        # clip_skip 1 means "use the last layer"; diffusers counts skipped layers.
        if request.clip_skip > 1 and _accepts(pipeline, "clip_skip"):
            kwargs["clip_skip"] = request.clip_skip - 1

        if request.input_id_images_path:
            logger.warning(
                "Identity images (%s) are not supported by the diffusers backend; ignoring.",
                request.input_id_images_path,
            )

        return kwargs

    # -- Helpers ------------------------------------------------------------

    def _generators(self, ctx: DiffusersContext, seed: int, count: int) -> list:
        import torch

        device = "cpu" if ctx.settings.rng_type == RngType.STD_DEFAULT else self.config.device
        return [torch.Generator(device=device).manual_seed(seed + i) for i in range(count)]

    def _configure_scheduler(self, ctx: DiffusersContext, method: SampleMethod) -> None:
        """Swap the pipeline scheduler to match ``method`` and the schedule."""
        schedule = ctx.settings.schedule
        key = (method, schedule)
        if ctx.scheduler_key == key:
            return

        pipeline = ctx.pipeline
        current = pipeline.scheduler
        if "FlowMatch" in type(current).__name__:
            logger.debug("Flow-matching scheduler kept; sampler '%s' ignored.", method.value)
            ctx.scheduler_key = key
            return

        scheduler_class, extra = _get_scheduler_map()[method]
        extra = dict(extra)
        if schedule in _SCHEDULE_FLAGS:
            extra.update(_SCHEDULE_FLAGS[schedule])
        elif schedule not in (Schedule.DEFAULT, Schedule.DISCRETE):
            logger.warning("Schedule '%s' is not available; using the default.", schedule.value)

        pipeline.scheduler = scheduler_class.from_config(current.config, **extra)
        ctx.scheduler_key = key
        logger.info("Sampler set to %s (%s schedule).", method.value, schedule.value)

    def _resolve_dtype(self, weight_type: WeightType | None) -> Any:
        dtype_map = _get_dtype_map()
        if weight_type is None:
            return dtype_map[self.config.torch_dtype]
        if weight_type not in _WEIGHT_DTYPES:
            logger.warning(
                "Weight type '%s' has no torch equivalent; using %s.",
                weight_type.value,
                self.config.torch_dtype,
            )
            return dtype_map[self.config.torch_dtype]
        return dtype_map[_WEIGHT_DTYPES[weight_type]]

    def _load_components(self, settings: ContextSettings, torch_dtype: Any) -> dict:
        """Load ControlNet and VAE overrides."""
        components: dict = {}

        if settings.controlnet_path and settings.mode != GenerationMode.IMG2VID:
            from diffusers import ControlNetModel

            components["controlnet"] = self._load_model(
                ControlNetModel, settings.controlnet_path, torch_dtype
            )
            logger.info("ControlNet loaded from '%s'.", settings.controlnet_path)

        if settings.vae_path:
            from diffusers import AutoencoderKL

            components["vae"] = self._load_model(AutoencoderKL, settings.vae_path, torch_dtype)
            logger.info("VAE loaded from '%s'.", settings.vae_path)
        elif settings.taesd_path:
            from diffusers import AutoencoderTiny

            components["vae"] = self._load_model(AutoencoderTiny, settings.taesd_path, torch_dtype)
            logger.info("TAESD decoder loaded from '%s'.", settings.taesd_path)

        return components

    def _load_pipeline(
        self, settings: ContextSettings, source: str, torch_dtype: Any, components: dict
    ) -> Any:
        from diffusers import (
            AutoPipelineForImage2Image,
            AutoPipelineForText2Image,
            StableDiffusionPipeline,
            StableDiffusionXLPipeline,
            StableVideoDiffusionPipeline,
        )

        if settings.mode == GenerationMode.IMG2VID:
            if _is_single_file(source):
                raise ValueError("image-to-video requires a diffusers model directory or Hub ID")
            return StableVideoDiffusionPipeline.from_pretrained(
                source, torch_dtype=torch_dtype, cache_dir=str(self.config.models_dir)
            )

        pipeline_class = (
            AutoPipelineForText2Image
            if settings.mode == GenerationMode.TXT2IMG
            else AutoPipelineForImage2Image
        )

        if _is_single_file(source):
            base_class = (
                StableDiffusionXLPipeline if "xl" in Path(source).name.lower() else StableDiffusionPipeline
            )
            base = base_class.from_single_file(source, torch_dtype=torch_dtype)
            return pipeline_class.from_pipe(base, **components)

        return pipeline_class.from_pretrained(
            source,
            torch_dtype=torch_dtype,
            cache_dir=str(self.config.models_dir),
            **components,
        )

    def _load_model(self, model_class: Any, path: str, torch_dtype: Any) -> Any:
        if _is_single_file(path):
            return model_class.from_single_file(path, torch_dtype=torch_dtype)
        return model_class.from_pretrained(
            path, torch_dtype=torch_dtype, cache_dir=str(self.config.models_dir)
        )

    def _load_embeddings(self, pipeline: Any, directory: Path) -> None:
        if not hasattr(pipeline, "load_textual_inversion"):
            logger.warning("Model does not support textual-inversion embeddings.")
            return
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() in EMBEDDING_SUFFIXES:
                pipeline.load_textual_inversion(str(path), token=path.stem)
                logger.info("Loaded embedding '%s'.", path.stem)

    def _warn_unsupported(self, settings: ContextSettings) -> None:
        ignored = {
            "clip_l_path": settings.clip_l_path,
            "clip_g_path": settings.clip_g_path,
            "t5xxl_path": settings.t5xxl_path,
            "lora_model_dir": settings.lora_model_dir,
            "stacked_id_embeddings_path": settings.stacked_id_embeddings_path,
        }
        if settings.model_path and settings.diffusion_model_path:
            ignored["diffusion_model_path"] = settings.diffusion_model_path
        for name, value in ignored.items():
            if value:
                logger.warning("%s is not used by the diffusers backend: %s", name, value)

    @staticmethod
    def _empty_cuda_cache() -> None:
        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                torch.cuda.synchronize()
        except ImportError:
            pass
