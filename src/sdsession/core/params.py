"""Generation parameter state.

:class:`ParameterState` is the single mutable record of every generation
setting.  It is populated by the one-shot CLI, mutated by interactive
commands, and read (never written) by the orchestration pipeline.  Field
assignment is validated, so an interactive ``!height 0`` fails with a
``ValueError`` instead of silently producing an unusable state.
"""

from __future__ import annotations

import logging
import random
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# Random seeds are drawn from the non-negative 31-bit range so they round
# trip through every backend's seed argument.
MAX_SEED = 2**31 - 1


class GenerationMode(str, Enum):
    TXT2IMG = "txt2img"
    IMG2IMG = "img2img"
    IMG2VID = "img2vid"
    CONVERT = "convert"


class SampleMethod(str, Enum):
    EULER_A = "euler_a"
    EULER = "euler"
    HEUN = "heun"
    DPM2 = "dpm2"
    DPMPP2S_A = "dpm++2s_a"
    DPMPP2M = "dpm++2m"
    DPMPP2MV2 = "dpm++2mv2"
    IPNDM = "ipndm"
    IPNDM_V = "ipndm_v"
    LCM = "lcm"


class Schedule(str, Enum):
    DEFAULT = "default"
    DISCRETE = "discrete"
    KARRAS = "karras"
    EXPONENTIAL = "exponential"
    AYS = "ays"
    GITS = "gits"


class RngType(str, Enum):
    STD_DEFAULT = "std_default"
    CUDA = "cuda"


class WeightType(str, Enum):
    F32 = "f32"
    F16 = "f16"
    Q4_0 = "q4_0"
    Q4_1 = "q4_1"
    Q5_0 = "q5_0"
    Q5_1 = "q5_1"
    Q8_0 = "q8_0"
    Q2_K = "q2_k"
    Q3_K = "q3_k"
    Q4_K = "q4_k"


class ParameterState(BaseModel):
    """Every setting that shapes a generation call.

    Attributes are grouped by concern below.  Paths are plain strings where
    an empty string means "not configured", matching how the CLI fills them.

    Notes
    -----
    - ``seed`` is the *session* seed: a negative value means a fresh random
      seed is drawn for every generation call (see :func:`resolve_seed`).
    - Geometry must be positive; the backend additionally expects multiples
      of 64, which the ``ratio`` command produces but is not enforced here.
    """

    model_config = ConfigDict(validate_assignment=True)

    # Identity / mode
    mode: GenerationMode = Field(default=GenerationMode.TXT2IMG)
    model_path: str = ""
    diffusion_model_path: str = ""
    clip_l_path: str = ""
    clip_g_path: str = ""
    t5xxl_path: str = ""
    vae_path: str = ""
    taesd_path: str = ""
    controlnet_path: str = ""
    upscale_model_path: str = ""
    embeddings_path: str = ""
    lora_model_dir: str = ""
    stacked_id_embeddings_path: str = ""
    input_id_images_path: str = ""
    weight_type: WeightType | None = Field(
        default=None,
        description="Weight type override; None keeps the type of the weight file",
    )

    # Inputs
    init_image_path: str = ""
    control_image_path: str = ""
    canny_preprocess: bool = False
    normalize_input: bool = False

    # Prompt
    prompt: str = ""
    negative_prompt: str = ""

    # Geometry
    width: int = Field(default=512, gt=0)
    height: int = Field(default=512, gt=0)

    # Sampling
    sample_method: SampleMethod = SampleMethod.EULER_A
    schedule: Schedule = Schedule.DEFAULT
    rng_type: RngType = RngType.CUDA
    sample_steps: int = Field(default=20, ge=1)
    seed: int = Field(default=-1, ge=-(2**63), lt=2**63)

    # Guidance
    cfg_scale: float = 7.0
    min_cfg: float = 1.0
    guidance: float = 3.5
    clip_skip: int = Field(default=-1, description="<= 0 means unspecified")
    slg_scale: float = Field(default=0.0, description="0 disables skip-layer guidance")
    skip_layers: list[int] = Field(default_factory=lambda: [7, 8, 9])
    skip_layer_start: float = Field(default=0.01, ge=0.0, le=1.0)
    skip_layer_end: float = Field(default=0.2, ge=0.0, le=1.0)

    # Batch / strength
    batch_count: int = Field(default=1, ge=1)
    strength: float = Field(default=0.75, ge=0.0, le=1.0)
    control_strength: float = 0.9
    style_ratio: float = 20.0
    upscale_repeats: int = Field(default=1, ge=1)

    # Video
    video_frames: int = Field(default=6, ge=1)
    motion_bucket_id: int = 127
    fps: int = Field(default=6, ge=1)
    augmentation_level: float = 0.0

    # Backend hints
    n_threads: int = -1
    vae_tiling: bool = False
    clip_on_cpu: bool = False
    vae_on_cpu: bool = False
    control_net_cpu: bool = False
    diffusion_flash_attn: bool = False

    def has_control_image(self) -> bool:
        """Check whether both a control net and a control image are configured."""
        return bool(self.controlnet_path and self.control_image_path)


def resolve_seed(seed: int) -> int:
    """Resolve a session seed into the seed used by one generation call.

    Args:
        seed: Session seed; negative means "draw a fresh one".

    Returns:
        ``seed`` unchanged when non-negative, otherwise a random value in
        ``[0, MAX_SEED]``.
    """
    if seed >= 0:
        return seed
    resolved = random.randint(0, MAX_SEED)
    logger.debug("Drew random seed %d", resolved)
    return resolved
