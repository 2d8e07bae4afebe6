"""Command-line entry point.

Flags are applied in order: every ``-o/--output`` runs one generation with
the flags given *before* it, so a single invocation can render several
variations::

    sdsession -m sd15.safetensors -p "a lighthouse" -o a.png -s 7 -o b.png

``-I/--interactive`` starts a :class:`~sdsession.session.SessionController`
after all one-shot outputs have been written, using the final flags as the
initial session parameters.
"""

from __future__ import annotations

import argparse
import copy
import logging
import re
import sys

from sdsession import __version__
from sdsession.core.backend import GenerationBackend, UpscalerBackend
from sdsession.core.config import config
from sdsession.core.errors import SessionError
from sdsession.core.orchestrator import GenerationOrchestrator
from sdsession.core.params import (
    GenerationMode,
    ParameterState,
    RngType,
    SampleMethod,
    Schedule,
    WeightType,
    resolve_seed,
)
from sdsession.session import SessionController

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

LEVEL_COLORS = {
    logging.DEBUG: 37,
    logging.INFO: 34,
    logging.WARNING: 35,
    logging.ERROR: 31,
}
DEFAULT_LEVEL_COLOR = 33


class ColorFormatter(logging.Formatter):
    """Formatter that wraps the level name in an ANSI colour."""

    def format(self, record: logging.LogRecord) -> str:
        record = copy.copy(record)
        color = LEVEL_COLORS.get(record.levelno, DEFAULT_LEVEL_COLOR)
        record.levelname = f"\033[{color};1m{record.levelname}\033[0m"
        return super().format(record)


def configure_logging(verbose: bool = False, color: bool = False) -> None:
    """Configure the root logger for CLI use."""
    handler = logging.StreamHandler()
    formatter_class = ColorFormatter if color else logging.Formatter
    handler.setFormatter(formatter_class(LOG_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[handler],
        force=True,
    )


class _OutputAction(argparse.Action):
    """Record the output path together with the flags parsed so far."""

    def __call__(self, parser, namespace, values, option_string=None):
        snapshot = {k: v for k, v in vars(namespace).items() if k != "runs"}
        runs = list(getattr(namespace, "runs", None) or [])
        runs.append((values, snapshot))
        namespace.runs = runs


class _SkipLayersAction(argparse.Action):
    """Parse ``[7,8,9]`` (possibly split across arguments) into a list."""

    def __call__(self, parser, namespace, values, option_string=None):
        text = " ".join(values).strip()
        if not (text.startswith("[") and text.endswith("]")):
            parser.error(f"{option_string} expects a bracketed list such as [7,8,9]")
        tokens = [t for t in re.split(r"[, ]+", text[1:-1]) if t]
        try:
            layers = [int(t) for t in tokens]
        except ValueError:
            parser.error(f"{option_string}: invalid layer list {text!r}")
        setattr(namespace, self.dest, layers)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sdsession",
        description="Stable Diffusion generation with ordered outputs and an interactive session.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Models
    models = parser.add_argument_group("models")
    models.add_argument("-M", "--mode", dest="mode", choices=[m.value for m in GenerationMode],
                        help="run mode (default: txt2img)")
    models.add_argument("-t", "--threads", dest="n_threads", type=int,
                        help="CPU threads; <= 0 uses the physical core count (default: -1)")
    models.add_argument("-m", "--model", dest="model_path", help="path to full model")
    models.add_argument("--diffusion-model", dest="diffusion_model_path",
                        help="path to the standalone diffusion model")
    models.add_argument("--clip_l", dest="clip_l_path", help="path to the clip-l text encoder")
    models.add_argument("--clip_g", dest="clip_g_path", help="path to the clip-g text encoder")
    models.add_argument("--t5xxl", dest="t5xxl_path", help="path to the t5xxl text encoder")
    models.add_argument("--vae", dest="vae_path", help="path to vae")
    models.add_argument("--taesd", dest="taesd_path", help="path to taesd (fast, low quality decoding)")
    models.add_argument("--control-net", dest="controlnet_path", help="path to control net model")
    models.add_argument("--embd-dir", dest="embeddings_path", help="path to embeddings")
    models.add_argument("--stacked-id-embd-dir", dest="stacked_id_embeddings_path",
                        help="path to PhotoMaker stacked id embeddings")
    models.add_argument("--input-id-images-dir", dest="input_id_images_path",
                        help="path to PhotoMaker input id images dir")
    models.add_argument("--normalize-input", dest="normalize_input", action="store_true", default=None,
                        help="normalize PhotoMaker input id images")
    models.add_argument("--upscale-model", dest="upscale_model_path", help="path to the upscaler model")
    models.add_argument("--upscale-repeats", dest="upscale_repeats", type=int,
                        help="run the upscaler this many times (default: 1)")
    models.add_argument("--type", dest="weight_type", choices=[w.value for w in WeightType],
                        help="weight type (default: type of the weight file)")
    models.add_argument("--lora-model-dir", dest="lora_model_dir", help="lora model directory")

    # Inputs / outputs
    io = parser.add_argument_group("inputs and outputs")
    io.add_argument("-i", "--init-img", dest="init_image_path", help="input image, required by img2img")
    io.add_argument("--control-image", dest="control_image_path", help="control net condition image")
    io.add_argument("--canny", dest="canny_preprocess", action="store_true", default=None,
                    help="apply canny edge detection to the control image")
    io.add_argument("-o", "--output", action=_OutputAction, metavar="OUTPUT",
                    help="generate now and write the result to OUTPUT (repeatable)")

    # Prompt and guidance
    prompt = parser.add_argument_group("prompt and guidance")
    prompt.add_argument("-p", "--prompt", dest="prompt", help="the prompt to render")
    prompt.add_argument("-n", "--negative-prompt", dest="negative_prompt", help="the negative prompt")
    prompt.add_argument("--cfg-scale", dest="cfg_scale", type=float,
                        help="unconditional guidance scale (default: 7.0)")
    prompt.add_argument("--guidance", dest="guidance", type=float, help="guidance scale (default: 3.5)")
    prompt.add_argument("--slg-scale", dest="slg_scale", type=float,
                        help="skip layer guidance scale, 0 disables (default: 0)")
    prompt.add_argument("--skip-layers", dest="skip_layers", nargs="+", action=_SkipLayersAction,
                        metavar="LAYERS", help="layers to skip for SLG steps (default: [7,8,9])")
    prompt.add_argument("--skip-layer-start", dest="skip_layer_start", type=float,
                        help="SLG enabling point (default: 0.01)")
    prompt.add_argument("--skip-layer-end", dest="skip_layer_end", type=float,
                        help="SLG disabling point (default: 0.2)")
    prompt.add_argument("--strength", dest="strength", type=float,
                        help="strength for noising/unnoising (default: 0.75)")
    prompt.add_argument("--style-ratio", dest="style_ratio", type=float,
                        help="strength for keeping input identity (default: 20)")
    prompt.add_argument("--control-strength", dest="control_strength", type=float,
                        help="strength to apply the control net (default: 0.9)")
    prompt.add_argument("--clip-skip", dest="clip_skip", type=int,
                        help="ignore last CLIP layers; 1 ignores none, <= 0 unspecified (default: -1)")

    # Sampling
    sampling = parser.add_argument_group("sampling")
    sampling.add_argument("-H", "--height", dest="height", type=int, help="image height (default: 512)")
    sampling.add_argument("-W", "--width", dest="width", type=int, help="image width (default: 512)")
    sampling.add_argument("--sampling-method", dest="sample_method", choices=[s.value for s in SampleMethod],
                          help="sampling method (default: euler_a)")
    sampling.add_argument("--steps", dest="sample_steps", type=int, help="number of sample steps (default: 20)")
    sampling.add_argument("--rng", dest="rng_type", choices=[r.value for r in RngType],
                          help="RNG (default: cuda)")
    sampling.add_argument("-s", "--seed", dest="seed", type=int,
                          help="RNG seed; < 0 draws a random seed per generation (default: -1)")
    sampling.add_argument("-b", "--batch-count", dest="batch_count", type=int,
                          help="number of images to generate")
    sampling.add_argument("--schedule", dest="schedule", choices=[s.value for s in Schedule],
                          help="denoiser sigma schedule (default: default)")
    sampling.add_argument("--video-frames", dest="video_frames", type=int,
                          help="frames generated in img2vid mode (default: 6)")
    sampling.add_argument("--motion-bucket-id", dest="motion_bucket_id", type=int,
                          help="img2vid motion bucket (default: 127)")
    sampling.add_argument("--fps", dest="fps", type=int, help="img2vid frame rate (default: 6)")
    sampling.add_argument("--augmentation-level", dest="augmentation_level", type=float,
                          help="img2vid noise augmentation (default: 0)")
    sampling.add_argument("--min-cfg", dest="min_cfg", type=float,
                          help="img2vid minimum guidance scale (default: 1.0)")

    # Memory / placement hints
    hints = parser.add_argument_group("memory")
    hints.add_argument("--vae-tiling", dest="vae_tiling", action="store_true", default=None,
                       help="process vae in tiles to reduce memory usage")
    hints.add_argument("--vae-on-cpu", dest="vae_on_cpu", action="store_true", default=None,
                       help="keep vae in cpu (for low vram)")
    hints.add_argument("--clip-on-cpu", dest="clip_on_cpu", action="store_true", default=None,
                       help="keep clip in cpu (for low vram)")
    hints.add_argument("--control-net-cpu", dest="control_net_cpu", action="store_true", default=None,
                       help="keep controlnet in cpu (for low vram)")
    hints.add_argument("--diffusion-fa", dest="diffusion_flash_attn", action="store_true", default=None,
                       help="use flash attention in the diffusion model")

    # Session
    session = parser.add_argument_group("session")
    session.add_argument("-I", "--interactive", action="store_true",
                         help="read prompts and commands from the terminal after all outputs")
    session.add_argument("-v", "--verbose", action="store_true", help="print extra info")
    session.add_argument("--color", action="store_true", help="colour log levels")

    return parser


def state_from_args(values: dict) -> ParameterState:
    """Build a :class:`ParameterState` from parsed flag values.

    Flags that were not given keep the state defaults; the thread hint
    falls back to ``SDSESSION_N_THREADS``.
    """
    fields = {"n_threads": config.n_threads}
    fields.update(
        (name, value)
        for name, value in values.items()
        if name in ParameterState.model_fields and value is not None
    )
    return ParameterState(**fields)


def main(
    argv: list[str] | None = None,
    backend: GenerationBackend | None = None,
    upscaler: UpscalerBackend | None = None,
) -> int:
    """Run the CLI.

    Args:
        argv: Arguments (defaults to ``sys.argv[1:]``).
        backend: Generation backend (defaults to :class:`DiffusersBackend`).
        upscaler: Upscaler backend (defaults to :class:`DiffusersUpscaler`).

    Returns:
        Process exit status.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, color=args.color)

    runs = getattr(args, "runs", None) or []
    if not runs and not args.interactive:
        parser.print_usage(sys.stderr)
        logger.warning("Nothing to do: pass -o/--output or -I/--interactive.")
        return 0

    try:
        final_state = state_from_args(vars(args))
        planned = [(output, state_from_args(snapshot)) for output, snapshot in runs]
    except ValueError as e:
        parser.error(str(e))

    if backend is None or upscaler is None:
        from sdsession.core.adapters import DiffusersBackend, DiffusersUpscaler

        backend = backend or DiffusersBackend(config)
        upscaler = upscaler or DiffusersUpscaler(config)

    orchestrator = GenerationOrchestrator(backend, upscaler, config)
    exit_code = 0
    try:
        for output, state in planned:
            if args.verbose:
                logger.debug("Parameters: %s", state.model_dump(mode="json"))
            seed = resolve_seed(state.seed)
            report = orchestrator.run(state, output, seed)
            if not report.ok:
                exit_code = 1
    except SessionError as e:
        logger.error("%s", e)
        orchestrator.close()
        return 1

    if args.interactive:
        SessionController(orchestrator, final_state, config).run()
    else:
        orchestrator.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
