"""Persisting generated images with their reproducibility manifest.

Every saved PNG carries a JSON manifest in its ``parameters`` text chunk so
the image can be regenerated from the file alone.  The manifest records the
seed of *that* entry: batch item or video frame ``i`` is stored with
``seed + i``.

Filename Derivation
-------------------
For an output template ``out.png`` and three entries the files are::

    out.png, out_2.png, out_3.png

A template without an extension gets ``.png``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from .codec import PillowCodec
from .errors import WriteError
from .params import ParameterState, Schedule
from .raster import GenerationResult

logger = logging.getLogger(__name__)

GENERATOR_NAME = "sdsession"
MANIFEST_ROOT_KEY = "sdsession_params"
DEFAULT_EXTENSION = ".png"


def model_basename(path: str) -> str:
    """Return the last path component, accepting ``/`` and ``\\`` separators."""
    return re.split(r"[\\/]", path)[-1]


class ReproducibilityManifest(BaseModel):
    """Immutable record of the parameters that produced one image."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    negative_prompt: str | None = None
    steps: int
    cfg_scale: float
    slg_scale: float | None = None
    skip_layers: list[int] | None = None
    skip_layer_start: float | None = None
    skip_layer_end: float | None = None
    guidance: float
    seed: int
    width: int
    height: int
    model: str
    rng: str
    sampler: str
    generator: str = GENERATOR_NAME

    @classmethod
    def from_state(cls, state: ParameterState, seed: int) -> ReproducibilityManifest:
        """Build the manifest for one entry.

        Args:
            state: Parameters of the generation call.
            seed: Seed of this entry (resolved seed + entry index).
        """
        slg: dict = {}
        if state.slg_scale != 0 and state.skip_layers:
            slg = {
                "slg_scale": state.slg_scale,
                "skip_layers": list(state.skip_layers),
                "skip_layer_start": state.skip_layer_start,
                "skip_layer_end": state.skip_layer_end,
            }

        sampler = state.sample_method.value
        if state.schedule == Schedule.KARRAS:
            sampler += " karras"

        return cls(
            prompt=state.prompt,
            negative_prompt=state.negative_prompt or None,
            steps=state.sample_steps,
            cfg_scale=state.cfg_scale,
            guidance=state.guidance,
            seed=seed,
            width=state.width,
            height=state.height,
            model=model_basename(state.model_path),
            rng=state.rng_type.value,
            sampler=sampler,
            **slg,
        )

    def to_text(self) -> str:
        """Serialise as indented JSON under a single root key."""
        payload = {MANIFEST_ROOT_KEY: self.model_dump(exclude_none=True)}
        return json.dumps(payload, indent=2, ensure_ascii=False)


def derive_output_paths(template: str | Path, count: int) -> list[Path]:
    """Derive one output path per entry from ``template``.

    Args:
        template: User-supplied output path.
        count: Number of entries.

    Returns:
        ``[base + ext, base + "_2" + ext, ...]`` where ``ext`` is the
        template's final extension (``.png`` if it has none).
    """
    template = Path(template)
    extension = template.suffix or DEFAULT_EXTENSION
    base = template.with_suffix("") if template.suffix else template

    paths = []
    for index in range(count):
        suffix = f"_{index + 1}" if index > 0 else ""
        paths.append(base.with_name(f"{base.name}{suffix}{extension}"))
    return paths


@dataclass
class PersistReport:
    """Outcome of persisting one generation result."""

    written: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


class ArtifactWriter:
    """Writes generated buffers as PNG files with embedded manifests."""

    def __init__(self, codec: PillowCodec | None = None) -> None:
        self._codec = codec or PillowCodec()

    def write(
        self,
        result: GenerationResult,
        output_path: str | Path,
        state: ParameterState,
        seed: int,
    ) -> PersistReport:
        """Persist every non-empty entry of ``result``.

        Each buffer is released as soon as it has been handled.  A failed write
        is logged and recorded; the remaining entries are still written.

        Args:
            result: Buffers to persist.
            output_path: Filename template.
            state: Parameters recorded in each manifest.
            seed: Resolved seed of the call; entry ``i`` records ``seed + i``.

        Returns:
            Report of written, failed and skipped entries.
        """
        report = PersistReport()
        paths = derive_output_paths(output_path, len(result.entries))

        for index, (entry, path) in enumerate(zip(result.entries, paths)):
            if entry.is_empty:
                report.skipped += 1
                continue

            manifest = ReproducibilityManifest.from_state(state, seed + index)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._codec.encode(entry, path, manifest.to_text())
            except (WriteError, OSError) as e:
                logger.error("Failed to save result image to '%s': %s", path, e)
                report.failed.append((path, str(e)))
            else:
                logger.info("save result image to '%s'", path)
                report.written.append(path)
            finally:
                entry.release()

        return report
