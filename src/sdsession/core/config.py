"""Configuration management for sdsession.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the SDSESSION_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (SDSESSION_* prefix)
2. .env file in the project root
3. Default values defined in SessionConfig

Example .env file:
    SDSESSION_DEVICE=cuda
    SDSESSION_TORCH_DTYPE=float16
    SDSESSION_OUTPUTS_DIR=output
    SDSESSION_VIEWER_COMMAND="setsid -f feh -."

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Components that accept an optional config fall back to it.

Usage Example
-------------
    from sdsession.core.config import config

    print(config.device)
    print(config.outputs_dir)

Separation From ParameterState
------------------------------
SessionConfig holds *process* settings that do not change between
generations (device, dtype, directories, interactive-mode constants).
Everything an operator can change between runs lives in
:class:`sdsession.core.params.ParameterState`.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionConfig(BaseSettings):
    """Main configuration for sdsession.

    Attributes
    ----------
    Backend Settings:
        device : str
            Torch device used for inference and for ``cuda`` RNG generators.
        torch_dtype : Literal["bfloat16", "float16", "float32"]
            Dtype used when the requested weight type has no torch equivalent.
        models_dir : Path
            Cache directory passed to diffusers ``from_pretrained``.
        n_threads : int
            Default CPU thread hint (<= 0 means physical core count).
        upscale_factor : int
            Factor passed to the upscaler collaborator on each pass.

    Interactive Session:
        outputs_dir : Path
            Directory where interactive prompts write their images.
        viewer_command : str
            Shell command run with the produced path appended (empty = none).
        command_marker : str
            Prefix that marks an input line as a command.
        prompt_slug_length : int
            Number of prompt characters considered for output filenames.
        pixel_budget : int
            Total pixel target used by the ``ratio`` command.
        dimension_alignment : int
            Width/height alignment required by the backend.

    Notes
    -----
    - ``outputs_dir`` is created automatically if it doesn't exist
    - To modify config, set environment variables and restart the process
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SDSESSION_",
        case_sensitive=False,
    )

    # Backend settings
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/mps/cpu)",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(
        default="float16",
        description="Fallback torch dtype for model weights",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache downloaded models",
    )
    n_threads: int = Field(
        default=-1,
        description="CPU thread hint forwarded to the backend (<= 0: physical cores)",
    )
    upscale_factor: int = Field(
        default=4,
        description="Upscale factor requested from the upscaler on every pass",
        ge=1,
    )

    # Interactive session settings
    outputs_dir: Path = Field(
        default=Path("output"),
        description="Directory for images produced in interactive mode",
    )
    viewer_command: str = Field(
        default="",
        description="Command used to display each produced image (e.g. 'setsid -f feh -.')",
    )
    command_marker: str = Field(
        default="!",
        min_length=1,
        description="Prefix marking an interactive line as a command",
    )
    prompt_slug_length: int = Field(default=32, ge=1)
    pixel_budget: int = Field(default=1024 * 1024, ge=1)
    dimension_alignment: int = Field(default=64, ge=1)

    def __init__(self, **kwargs):
        """Initialize configuration and create the outputs directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.outputs_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance
# Loads values from environment variables (SDSESSION_* prefix) and .env file.
config = SessionConfig()
