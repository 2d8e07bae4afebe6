"""Exception taxonomy for the generation orchestrator.

Errors local to one image or one command never end an interactive session;
the session controller reports them and reads the next line.  The one-shot
CLI turns any :class:`SessionError` into a non-zero exit status.
"""


class SessionError(Exception):
    """Base class for every error raised by sdsession."""


class ImagePreparationError(SessionError):
    """An input or control image could not be prepared.

    Fatal to the current generation call only; the backend is not invoked.
    """


class ImageLoadError(ImagePreparationError):
    """The image path is unreadable or the file could not be decoded."""


class UnsupportedFormatError(ImagePreparationError):
    """The decoded image has fewer than three colour channels."""


class InvalidGeometryError(ImagePreparationError):
    """The decoded image (or requested target) has a non-positive dimension."""


class ResourceExhaustedError(ImagePreparationError):
    """Memory could not be allocated while producing a new buffer."""


class BackendInvocationError(SessionError):
    """The backend failed to build a context or returned no result.

    The backend context has been discarded and is rebuilt on the next call.
    """


class UnsupportedModeError(SessionError):
    """The requested mode is not a generation mode (e.g. ``convert``)."""


class WriteError(SessionError):
    """A single output image could not be persisted."""


class CommandParseError(SessionError):
    """An interactive command had a missing or malformed argument."""
