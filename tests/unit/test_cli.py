"""Tests for sdsession.cli — argument parsing and ordered outputs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from sdsession import cli
from sdsession.core.artifacts import MANIFEST_ROOT_KEY
from sdsession.core.codec import METADATA_KEY
from sdsession.core.params import GenerationMode, SampleMethod, WeightType


@pytest.fixture(autouse=True)
def _use_test_config(monkeypatch, test_config):
    monkeypatch.setattr(cli, "config", test_config)


def _manifest(path: Path) -> dict:
    with Image.open(path) as saved:
        return json.loads(saved.text[METADATA_KEY])[MANIFEST_ROOT_KEY]


class TestParser:
    def test_flags_map_onto_state(self):
        args = cli._build_parser().parse_args(
            [
                "-M", "img2img", "-m", "model.safetensors", "-p", "a fox", "-n", "blurry",
                "--cfg-scale", "5.5", "-W", "768", "-H", "640", "--sampling-method", "dpm++2m",
                "--type", "q8_0", "--steps", "12", "-b", "2", "--vae-tiling",
            ]
        )
        state = cli.state_from_args(vars(args))
        assert state.mode is GenerationMode.IMG2IMG
        assert state.model_path == "model.safetensors"
        assert state.negative_prompt == "blurry"
        assert state.cfg_scale == 5.5
        assert (state.width, state.height) == (768, 640)
        assert state.sample_method is SampleMethod.DPMPP2M
        assert state.weight_type is WeightType.Q8_0
        assert state.batch_count == 2
        assert state.vae_tiling is True

    def test_unset_flags_keep_defaults(self):
        state = cli.state_from_args(vars(cli._build_parser().parse_args([])))
        assert state.width == 512
        assert state.seed == -1
        assert state.vae_tiling is False

    def test_skip_layers_bracketed_list(self):
        args = cli._build_parser().parse_args(["--skip-layers", "[7,", "8,", "9]"])
        assert args.skip_layers == [7, 8, 9]

    def test_skip_layers_requires_brackets(self):
        with pytest.raises(SystemExit):
            cli._build_parser().parse_args(["--skip-layers", "7,8"])

    def test_unknown_sampler_rejected(self):
        with pytest.raises(SystemExit) as exc:
            cli._build_parser().parse_args(["--sampling-method", "ddim"])
        assert exc.value.code == 2


class TestOrderedOutputs:
    def test_each_output_uses_flags_given_before_it(self, fake_backend, fake_upscaler, temp_dir):
        first = temp_dir / "a.png"
        second = temp_dir / "b.png"
        code = cli.main(
            ["-m", "m.safetensors", "-p", "a fox", "-W", "64", "-H", "64", "-s", "3", "-o", str(first),
             "-s", "8", "-p", "a wolf", "-o", str(second)],
            backend=fake_backend,
            upscaler=fake_upscaler,
        )
        assert code == 0
        assert _manifest(first)["seed"] == 3
        assert _manifest(first)["prompt"] == "a fox"
        assert _manifest(second)["seed"] == 8
        assert _manifest(second)["prompt"] == "a wolf"
        assert len(fake_backend.created) == 1

    def test_flags_after_last_output_do_not_affect_it(self, fake_backend, fake_upscaler, temp_dir):
        out = temp_dir / "a.png"
        cli.main(
            ["-W", "64", "-H", "64", "-s", "1", "-o", str(out), "-W", "128"],
            backend=fake_backend,
            upscaler=fake_upscaler,
        )
        with Image.open(out) as saved:
            assert saved.size == (64, 64)

    def test_backend_failure_exits_non_zero(self, fake_backend, fake_upscaler, temp_dir):
        fake_backend.fail_create = 1
        code = cli.main(["-W", "64", "-H", "64", "-o", str(temp_dir / "a.png")],
                        backend=fake_backend, upscaler=fake_upscaler)
        assert code == 1

    def test_missing_init_image_exits_non_zero(self, fake_backend, fake_upscaler, temp_dir):
        code = cli.main(["-M", "img2img", "-o", str(temp_dir / "a.png")],
                        backend=fake_backend, upscaler=fake_upscaler)
        assert code == 1
        assert fake_backend.created == []

    def test_invalid_value_is_usage_error(self, fake_backend, fake_upscaler, temp_dir):
        with pytest.raises(SystemExit) as exc:
            cli.main(["-W", "0", "-o", str(temp_dir / "a.png")], backend=fake_backend, upscaler=fake_upscaler)
        assert exc.value.code == 2

    def test_nothing_to_do(self, fake_backend, fake_upscaler):
        assert cli.main([], backend=fake_backend, upscaler=fake_upscaler) == 0
        assert fake_backend.created == []


class TestInteractive:
    def test_session_starts_with_final_flags(self, fake_backend, fake_upscaler, test_config):
        with patch("builtins.input", side_effect=["hello", EOFError]):
            code = cli.main(["-W", "64", "-H", "64", "-s", "4", "-I"], backend=fake_backend, upscaler=fake_upscaler)
        assert code == 0
        assert (test_config.outputs_dir / "4-hello-0.png").exists()
        assert fake_backend.freed == ["ctx-1"]


class TestLogging:
    def test_color_formatter_wraps_level(self):
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)
        text = cli.ColorFormatter("%(levelname)s %(message)s").format(record)
        assert text == "\033[31;1mERROR\033[0m boom"
        assert record.levelname == "ERROR"

    def test_unknown_level_uses_fallback_colour(self):
        record = logging.LogRecord("x", logging.CRITICAL, __file__, 1, "boom", None, None)
        text = cli.ColorFormatter("%(levelname)s").format(record)
        assert text.startswith("\033[33;1m")
