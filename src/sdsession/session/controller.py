"""Interactive generation session.

:class:`SessionController` reads one line at a time and either mutates the
:class:`~sdsession.core.params.ParameterState` (command lines) or runs a
generation with the line as the prompt.  One line is processed to
completion before the next is read.

Command Surface
---------------
Lines starting with the command marker (``!`` by default)::

    !seed <int>            !s <int>       session seed (negative: random per prompt)
    !display <command>                    viewer command, run with the image path
    !quit                  !q             end the session
    !ratio <w> <h>                        pick width/height for an aspect ratio
    !negative-prompt <t>   !neg <t>       negative prompt
    !cfg-scale <float>
    !guidance <float>
    !strength <float>
    !height <int>          !h <int>
    !width <int>           !w <int>
    !steps <int>
    !batch <int>
    !help                                 list commands

Output Paths
------------
Each prompt is written to ``<outputs_dir>/<seed>-<slug>-<n>.png`` where
``slug`` keeps the ASCII letters and digits of the first 32 prompt
characters (spaces become ``_``) and ``n`` is the first index whose file
does not exist yet.

Error Policy
------------
Handlers return a :class:`CommandResult`.  Malformed arguments raise
:class:`~sdsession.core.errors.CommandParseError`; :meth:`SessionController.run`
reports any exception raised for a line and reads the next one.
"""

from __future__ import annotations

import logging
import math
import shlex
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from sdsession.core.config import SessionConfig, config as default_config
from sdsession.core.errors import CommandParseError, SessionError
from sdsession.core.orchestrator import GenerationOrchestrator
from sdsession.core.params import ParameterState, resolve_seed

logger = logging.getLogger(__name__)

PROMPT = "> "


@dataclass
class CommandResult:
    """Outcome of one input line.

    Attributes:
        ok: False when the line was rejected or generation partly failed.
        message: Text reported to the operator (may be empty).
        quit: True when the session should end.
    """

    ok: bool = True
    message: str = ""
    quit: bool = False


@dataclass(frozen=True)
class Command:
    names: tuple[str, ...]
    usage: str
    handler: Callable[[SessionController, str], CommandResult]


def prompt_slug(prompt: str, length: int = 32) -> str:
    """Filesystem-safe slice of ``prompt`` used in output filenames.

    Examples:
        >>> prompt_slug("a cat, on a mat!")
        'a_cat_on_a_mat'
    """
    chars = []
    for ch in prompt[:length]:
        if ch.isascii() and ch.isalnum():
            chars.append(ch)
        elif ch == " ":
            chars.append("_")
    return "".join(chars)


def ratio_dimensions(w: float, h: float, budget: int = 1024 * 1024, alignment: int = 64) -> tuple[int, int]:
    """Width and height with aspect ``w:h`` covering about ``budget`` pixels.

    Each side is rounded half-up to the nearest multiple of ``alignment``
    and is never smaller than one alignment step.

    Examples:
        >>> ratio_dimensions(16, 9)
        (1344, 768)
    """
    scale = math.sqrt(budget / (w * h))
    width = math.floor(scale * w / alignment + 0.5) * alignment
    height = math.floor(scale * h / alignment + 0.5) * alignment
    return max(width, alignment), max(height, alignment)


def _parse_int(name: str, arg: str) -> int:
    try:
        return int(arg.strip())
    except ValueError:
        raise CommandParseError(f"{name} expects an integer, got {arg!r}") from None


def _parse_float(name: str, arg: str) -> float:
    try:
        value = float(arg.strip())
    except ValueError:
        raise CommandParseError(f"{name} expects a number, got {arg!r}") from None
    if not math.isfinite(value):
        raise CommandParseError(f"{name} expects a finite number, got {arg!r}")
    return value


class SessionController:
    """Line-oriented command loop around a :class:`GenerationOrchestrator`.

    Args:
        orchestrator: Pipeline that runs each prompt.
        state: Parameters shared by every prompt of the session.
        config: Session configuration (defaults to the global config).
        echo: Callable used to report messages to the operator.
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        state: ParameterState | None = None,
        config: SessionConfig | None = None,
        echo: Callable[[str], None] = print,
    ) -> None:
        self.orchestrator = orchestrator
        self.state = state or ParameterState()
        self.config = config or default_config
        self.viewer_command = self.config.viewer_command
        self._echo = echo

        self._commands: dict[str, Command] = {}
        for command in _COMMANDS:
            for name in command.names:
                self._commands[name] = command

    # -- Loop ---------------------------------------------------------------

    def run(self, lines: Iterable[str] | None = None) -> None:
        """Process lines until ``quit``, end of input or Ctrl-C.

        Args:
            lines: Input lines.  ``None`` reads from the terminal.
        """
        source = iter(lines) if lines is not None else None
        try:
            while True:
                try:
                    line = next(source) if source is not None else input(PROMPT)
                except (StopIteration, EOFError, KeyboardInterrupt):
                    break

                try:
                    result = self.handle_line(line)
                except SessionError as e:
                    logger.error("%s", e)
                    self._echo(f"ERROR: {e}")
                    continue
                except Exception as e:
                    logger.exception("Unexpected error while processing line")
                    self._echo(f"ERROR: {e}")
                    continue

                if result.message:
                    self._echo(result.message)
                if result.quit:
                    break
        finally:
            self.orchestrator.close()

    def handle_line(self, line: str) -> CommandResult:
        """Process one input line.

        Raises:
            CommandParseError: Malformed command argument.
            SessionError: Generation failed for a prompt line.
        """
        line = line.rstrip("\r\n")
        if not line.strip():
            return CommandResult()

        marker = self.config.command_marker
        if line.startswith(marker):
            return self.handle_command(line[len(marker):])
        return self.generate(line)

    def handle_command(self, text: str) -> CommandResult:
        """Run a command line with the marker already stripped."""
        parts = text.strip().split(None, 1)
        name = parts[0] if parts else ""
        arg = parts[1] if len(parts) > 1 else ""

        command = self._commands.get(name)
        if command is None:
            logger.warning("Unrecognized command %r", name)
            return CommandResult(ok=False, message=f"Unrecognized command {name}")

        return command.handler(self, arg)

    # -- Prompts ------------------------------------------------------------

    def generate(self, prompt: str) -> CommandResult:
        """Run one generation with ``prompt`` and the current parameters."""
        self.state.prompt = prompt
        seed = resolve_seed(self.state.seed)
        output_path = self.next_output_path(seed, prompt)

        report = self.orchestrator.run(self.state, output_path, seed)

        if report.written and self.viewer_command:
            self.show(report.written[0])

        if not report.ok:
            failed = ", ".join(str(path) for path, _ in report.failed)
            return CommandResult(ok=False, message=f"Failed to save {failed}")
        return CommandResult(message=", ".join(str(path) for path in report.written))

    def next_output_path(self, seed: int, prompt: str) -> Path:
        """First free ``<outputs_dir>/<seed>-<slug>-<n>.png`` path."""
        prefix = f"{seed}-{prompt_slug(prompt, self.config.prompt_slug_length)}-"
        index = 0
        while True:
            path = self.config.outputs_dir / f"{prefix}{index}.png"
            if not path.exists():
                return path
            index += 1

    def show(self, path: Path) -> None:
        """Run the viewer command with ``path`` appended."""
        cmd = f"{self.viewer_command} {shlex.quote(str(path))}"
        logger.debug("Running viewer: %s", cmd)
        completed = subprocess.run(cmd, shell=True, check=False)
        if completed.returncode != 0:
            logger.warning("Viewer exited with status %d", completed.returncode)

    # -- Command handlers ---------------------------------------------------

    def _assign(self, field: str, value) -> None:
        try:
            setattr(self.state, field, value)
        except ValidationError as e:
            raise CommandParseError(f"invalid {field}: {e.errors()[0]['msg']}") from e

    def _set_seed(self, arg: str) -> CommandResult:
        seed = _parse_int("seed", arg)
        self._assign("seed", seed)
        if seed < 0:
            return CommandResult(message="Seed: random")
        return CommandResult(message=f"Seed: {seed}")

    def _set_display(self, arg: str) -> CommandResult:
        self.viewer_command = arg.strip()
        if not self.viewer_command:
            return CommandResult(message="Viewer disabled")
        return CommandResult(message=f"Viewer: {self.viewer_command}")

    def _quit(self, arg: str) -> CommandResult:
        return CommandResult(quit=True)

    def _set_ratio(self, arg: str) -> CommandResult:
        parts = arg.split()
        if len(parts) != 2:
            raise CommandParseError(f"ratio expects two numbers, got {arg!r}")
        w = _parse_float("ratio", parts[0])
        h = _parse_float("ratio", parts[1])
        if w <= 0 or h <= 0:
            raise CommandParseError("ratio sides must be positive")
        area = w * h
        try:
            in_range = area > 0 and math.isfinite(area) and math.isfinite(self.config.pixel_budget / area)
        except OverflowError:
            in_range = False
        if not in_range:
            raise CommandParseError(f"ratio {w:g}:{h:g} is out of range")

        width, height = ratio_dimensions(
            w, h, self.config.pixel_budget, self.config.dimension_alignment
        )
        self._assign("width", width)
        self._assign("height", height)
        return CommandResult(message=f"Chose {width}x{height}")

    def _set_negative_prompt(self, arg: str) -> CommandResult:
        self._assign("negative_prompt", arg)
        return CommandResult()

    def _help(self, arg: str) -> CommandResult:
        marker = self.config.command_marker
        lines = ["Commands:"]
        for command in _COMMANDS:
            names = " | ".join(f"{marker}{name}" for name in command.names)
            lines.append(f"  {names} {command.usage}".rstrip())
        lines.append("Any other line is used as the prompt.")
        return CommandResult(message="\n".join(lines))


def _field_setter(field: str, parse: Callable[[str, str], object], label: str):
    """Handler that parses its argument and assigns it to one state field."""

    def handler(controller: SessionController, arg: str) -> CommandResult:
        controller._assign(field, parse(label, arg))
        return CommandResult(message=f"{label}: {getattr(controller.state, field)}")

    return handler


_COMMANDS = (
    Command(("seed", "s"), "<int>", SessionController._set_seed),
    Command(("display",), "<command>", SessionController._set_display),
    Command(("quit", "q"), "", SessionController._quit),
    Command(("ratio",), "<w> <h>", SessionController._set_ratio),
    Command(("negative-prompt", "neg"), "<text>", SessionController._set_negative_prompt),
    Command(("cfg-scale",), "<float>", _field_setter("cfg_scale", _parse_float, "cfg-scale")),
    Command(("guidance",), "<float>", _field_setter("guidance", _parse_float, "guidance")),
    Command(("strength",), "<float>", _field_setter("strength", _parse_float, "strength")),
    Command(("height", "h"), "<int>", _field_setter("height", _parse_int, "height")),
    Command(("width", "w"), "<int>", _field_setter("width", _parse_int, "width")),
    Command(("steps",), "<int>", _field_setter("sample_steps", _parse_int, "steps")),
    Command(("batch",), "<int>", _field_setter("batch_count", _parse_int, "batch")),
    Command(("help",), "", SessionController._help),
)
