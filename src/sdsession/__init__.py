"""sdsession - Stable Diffusion generation sessions with reproducible outputs."""

__version__ = "0.1.0"

from sdsession.core.config import SessionConfig, config
from sdsession.core.orchestrator import GenerationOrchestrator
from sdsession.core.params import ParameterState

__all__ = [
    "GenerationOrchestrator",
    "ParameterState",
    "SessionConfig",
    "config",
]
