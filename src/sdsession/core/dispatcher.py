"""Backend context lifecycle and mode dispatch.

:class:`ModeDispatcher` is the single owner of the long-lived backend
context (model weights in memory).  It replaces a process-wide lazily
initialised handle with an explicit two-state machine:

- **UNLOADED** - no context.  The next :meth:`ModeDispatcher.dispatch`
  builds one from the request's :class:`ContextSettings`.
- **LOADED** - a context built for a specific set of settings.  It is reused
  as long as later requests need the same settings.

Transitions
-----------
- UNLOADED -> LOADED: successful ``create_context``.
- LOADED -> LOADED: settings changed; the old context is freed first.
- LOADED -> UNLOADED: the backend returned no result, or :meth:`unload`.
- UNLOADED -> UNLOADED: ``create_context`` failed.  Nothing is cached, so
  the next call tries again.

Both failure transitions raise :class:`BackendInvocationError`; neither ends
the process.

Usage
-----
::

    dispatcher = ModeDispatcher(DiffusersBackend(config))
    settings = ContextSettings.from_state(state)
    result = dispatcher.dispatch(build_request(state, seed), settings)
    dispatcher.unload()
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from .backend import ContextSettings, GenerationBackend
from .errors import BackendInvocationError
from .raster import GenerationResult
from .requests import GenerationRequest, Img2VidRequest

logger = logging.getLogger(__name__)


class ContextState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"


class ModeDispatcher:
    """Owns the backend context and issues mode-specific backend calls.

    Attributes:
        _backend (GenerationBackend):
            Inference collaborator.
        _handle:
            Current backend context, or ``None`` when unloaded.
        _settings (ContextSettings | None):
            Settings the current context was built with.
    """

    def __init__(self, backend: GenerationBackend) -> None:
        self._backend = backend

        # Context state - initialised to "nothing loaded".
        self._handle: Any | None = None
        self._settings: ContextSettings | None = None

    # -- Public interface ---------------------------------------------------

    def ensure_loaded(self, settings: ContextSettings) -> Any:
        """Return a context built for ``settings``, creating it if needed.

        Raises:
            BackendInvocationError: If the backend cannot build a context.
        """
        if self._handle is not None and self._settings == settings:
            logger.debug("Reusing loaded backend context.")
            return self._handle

        if self._handle is not None:
            logger.info("Context settings changed - unloading current backend context.")
            self.unload()

        logger.info(
            "Creating backend context (mode=%s, vae_decode_only=%s).",
            settings.mode.value,
            settings.vae_decode_only,
        )
        handle = self._backend.create_context(settings)
        if handle is None:
            logger.error("Backend context creation failed.")
            raise BackendInvocationError("backend context creation failed")

        self._handle = handle
        self._settings = settings
        return handle

    def dispatch(self, request: GenerationRequest, settings: ContextSettings) -> GenerationResult:
        """Run ``request`` against a context built for ``settings``.

        Args:
            request: Mode-specific request from :func:`build_request`.
            settings: Context settings derived from the same parameter state.

        Returns:
            The backend's output; video requests yield frames.

        Raises:
            BackendInvocationError: If the context cannot be built or the
                backend returns no result.  In the latter case the context is
                discarded so the next call rebuilds it.
        """
        handle = self.ensure_loaded(settings)

        logger.info("Dispatching %s request (seed=%d).", request.mode.value, request.seed)
        entries = self._backend.generate(handle, request)
        if entries is None:
            logger.error("Backend returned no result - discarding context.")
            self.unload()
            raise BackendInvocationError(f"{request.mode.value} generation failed")

        return GenerationResult(entries=list(entries), is_video=isinstance(request, Img2VidRequest))

    def unload(self) -> None:
        """Free the backend context.  Safe to call when nothing is loaded."""
        if self._handle is None:
            return

        handle = self._handle
        self._handle = None
        self._settings = None
        self._backend.free_context(handle)
        logger.info("Backend context unloaded.")

    # -- Properties ---------------------------------------------------------

    @property
    def state(self) -> ContextState:
        return ContextState.LOADED if self._handle is not None else ContextState.UNLOADED

    @property
    def is_loaded(self) -> bool:
        """Whether a backend context is currently held."""
        return self._handle is not None
