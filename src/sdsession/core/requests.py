"""Mode-specific backend requests.

Each generation mode has its own frozen request type carrying exactly the
parameters its backend entry point consumes.  :func:`build_request` is the
only place that maps a :class:`ParameterState` onto a request, and the
backend adapters match on the request type.

Skip-layer guidance
-------------------
Text-to-image forwards the skip-layer guidance settings; image-to-image does
not.  This mirrors the established behaviour of the generation CLI this
session drives and is kept deliberately visible rather than unified.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import UnsupportedModeError
from .params import GenerationMode, ParameterState, SampleMethod
from .raster import ControlImage, RasterBuffer


def vae_decode_only(mode: GenerationMode) -> bool:
    """Whether the backend only needs the decoder half of the VAE.

    True iff ``mode`` is text-to-image; every other mode encodes an input.
    """
    return mode == GenerationMode.TXT2IMG


@dataclass(frozen=True)
class Txt2ImgRequest:
    prompt: str
    negative_prompt: str
    clip_skip: int
    cfg_scale: float
    guidance: float
    width: int
    height: int
    sample_method: SampleMethod
    sample_steps: int
    seed: int
    batch_count: int
    control_image: ControlImage | None
    control_strength: float
    style_ratio: float
    normalize_input: bool
    input_id_images_path: str
    skip_layers: tuple[int, ...] = field(default=(7, 8, 9))
    slg_scale: float = 0.0
    skip_layer_start: float = 0.01
    skip_layer_end: float = 0.2

    mode = GenerationMode.TXT2IMG


@dataclass(frozen=True)
class Img2ImgRequest:
    init_image: RasterBuffer
    prompt: str
    negative_prompt: str
    clip_skip: int
    cfg_scale: float
    guidance: float
    width: int
    height: int
    sample_method: SampleMethod
    sample_steps: int
    strength: float
    seed: int
    batch_count: int
    control_image: ControlImage | None
    control_strength: float
    style_ratio: float
    normalize_input: bool
    input_id_images_path: str

    mode = GenerationMode.IMG2IMG


@dataclass(frozen=True)
class Img2VidRequest:
    init_image: RasterBuffer
    width: int
    height: int
    video_frames: int
    motion_bucket_id: int
    fps: int
    augmentation_level: float
    min_cfg: float
    cfg_scale: float
    sample_method: SampleMethod
    sample_steps: int
    strength: float
    seed: int

    mode = GenerationMode.IMG2VID


GenerationRequest = Txt2ImgRequest | Img2ImgRequest | Img2VidRequest


def build_request(
    state: ParameterState,
    seed: int,
    init_image: RasterBuffer | None = None,
    control_image: ControlImage | None = None,
) -> GenerationRequest:
    """Assemble the request for ``state.mode``.

    Args:
        state: Current parameters.
        seed: Seed already resolved for this call.
        init_image: Prepared input image (required for img2img/img2vid).
        control_image: Prepared control image, if any.

    Raises:
        UnsupportedModeError: For ``convert`` mode.
        ValueError: If an image mode is missing its input buffer.
    """
    mode = state.mode

    if mode == GenerationMode.TXT2IMG:
        return Txt2ImgRequest(
            prompt=state.prompt,
            negative_prompt=state.negative_prompt,
            clip_skip=state.clip_skip,
            cfg_scale=state.cfg_scale,
            guidance=state.guidance,
            width=state.width,
            height=state.height,
            sample_method=state.sample_method,
            sample_steps=state.sample_steps,
            seed=seed,
            batch_count=state.batch_count,
            control_image=control_image,
            control_strength=state.control_strength,
            style_ratio=state.style_ratio,
            normalize_input=state.normalize_input,
            input_id_images_path=state.input_id_images_path,
            skip_layers=tuple(state.skip_layers),
            slg_scale=state.slg_scale,
            skip_layer_start=state.skip_layer_start,
            skip_layer_end=state.skip_layer_end,
        )

    if mode == GenerationMode.CONVERT:
        raise UnsupportedModeError("convert mode performs no generation")

    if init_image is None:
        raise ValueError(f"{mode.value} requires a prepared input image")

    if mode == GenerationMode.IMG2IMG:
        return Img2ImgRequest(
            init_image=init_image,
            prompt=state.prompt,
            negative_prompt=state.negative_prompt,
            clip_skip=state.clip_skip,
            cfg_scale=state.cfg_scale,
            guidance=state.guidance,
            width=state.width,
            height=state.height,
            sample_method=state.sample_method,
            sample_steps=state.sample_steps,
            strength=state.strength,
            seed=seed,
            batch_count=state.batch_count,
            control_image=control_image,
            control_strength=state.control_strength,
            style_ratio=state.style_ratio,
            normalize_input=state.normalize_input,
            input_id_images_path=state.input_id_images_path,
        )

    return Img2VidRequest(
        init_image=init_image,
        width=state.width,
        height=state.height,
        video_frames=state.video_frames,
        motion_bucket_id=state.motion_bucket_id,
        fps=state.fps,
        augmentation_level=state.augmentation_level,
        min_cfg=state.min_cfg,
        cfg_scale=state.cfg_scale,
        sample_method=state.sample_method,
        sample_steps=state.sample_steps,
        strength=state.strength,
        seed=seed,
    )
