"""Collaborator interfaces for the inference and upscaling backends.

The orchestration layer never touches model weights directly.  It talks to
two collaborators through opaque context handles:

- :class:`GenerationBackend` builds a context from :class:`ContextSettings`,
  runs mode-specific requests against it and frees it.
- :class:`UpscalerBackend` builds an upscaler context and upscales one
  buffer per call.

Failure Contract
----------------
Collaborators report failure by value, not by exception: ``create_context``
returns ``None``, ``generate`` returns ``None`` and ``upscale`` returns an
empty buffer.  The dispatcher and post-processor turn those values into the
session's error policy.  Implementations log the underlying cause.

See Also
--------
- :mod:`sdsession.core.adapters` - the diffusers implementations.
- :class:`sdsession.core.dispatcher.ModeDispatcher` - context lifecycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .params import GenerationMode, ParameterState, RngType, Schedule, WeightType
from .raster import RasterBuffer
from .requests import GenerationRequest, vae_decode_only


@dataclass(frozen=True)
class ContextSettings:
    """Everything the backend needs to build a context.

    Two requests can share a context only when their settings compare equal.
    """

    mode: GenerationMode
    model_path: str
    clip_l_path: str
    clip_g_path: str
    t5xxl_path: str
    diffusion_model_path: str
    vae_path: str
    taesd_path: str
    controlnet_path: str
    lora_model_dir: str
    embeddings_path: str
    stacked_id_embeddings_path: str
    vae_decode_only: bool
    vae_tiling: bool
    n_threads: int
    weight_type: WeightType | None
    rng_type: RngType
    schedule: Schedule
    clip_on_cpu: bool
    control_net_cpu: bool
    vae_on_cpu: bool
    diffusion_flash_attn: bool

    @classmethod
    def from_state(cls, state: ParameterState) -> ContextSettings:
        return cls(
            mode=state.mode,
            model_path=state.model_path,
            clip_l_path=state.clip_l_path,
            clip_g_path=state.clip_g_path,
            t5xxl_path=state.t5xxl_path,
            diffusion_model_path=state.diffusion_model_path,
            vae_path=state.vae_path,
            taesd_path=state.taesd_path,
            # A control net without a control image is ignored.
            controlnet_path=state.controlnet_path if state.has_control_image() else "",
            lora_model_dir=state.lora_model_dir,
            embeddings_path=state.embeddings_path,
            stacked_id_embeddings_path=state.stacked_id_embeddings_path,
            vae_decode_only=vae_decode_only(state.mode),
            vae_tiling=state.vae_tiling,
            n_threads=state.n_threads,
            weight_type=state.weight_type,
            rng_type=state.rng_type,
            schedule=state.schedule,
            clip_on_cpu=state.clip_on_cpu,
            control_net_cpu=state.control_net_cpu,
            vae_on_cpu=state.vae_on_cpu,
            diffusion_flash_attn=state.diffusion_flash_attn,
        )


class GenerationBackend(ABC):
    """Inference engine collaborator."""

    name: str = "Base Generation Backend"

    @abstractmethod
    def create_context(self, settings: ContextSettings) -> Any | None:
        """Build a context (load weights).  Returns ``None`` on failure."""

    @abstractmethod
    def generate(self, handle: Any, request: GenerationRequest) -> list[RasterBuffer] | None:
        """Run one request.  Returns ``None`` when the backend fails."""

    @abstractmethod
    def free_context(self, handle: Any) -> None:
        """Release a context and everything it holds."""


class UpscalerBackend(ABC):
    """Super-resolution collaborator."""

    name: str = "Base Upscaler Backend"

    @abstractmethod
    def create_context(
        self, model_path: str, n_threads: int, weight_type: WeightType | None
    ) -> Any | None:
        """Load an upscaler model.  Returns ``None`` on failure."""

    @abstractmethod
    def upscale(self, handle: Any, buffer: RasterBuffer, factor: int) -> RasterBuffer:
        """Upscale ``buffer`` (borrowed).  Returns an empty buffer on failure."""

    @abstractmethod
    def free_context(self, handle: Any) -> None:
        """Release an upscaler context."""
