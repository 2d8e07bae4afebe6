"""Interactive session loop."""

from sdsession.session.controller import (
    CommandResult,
    SessionController,
    prompt_slug,
    ratio_dimensions,
)

__all__ = ["CommandResult", "SessionController", "prompt_slug", "ratio_dimensions"]
