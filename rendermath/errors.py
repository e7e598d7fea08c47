"""Exception types raised inside the render pipeline."""


class RenderMathError(Exception):
    """Base class for all rendermath errors."""


class BadRequest(RenderMathError):
    """
    The client sent something we can't work with.

    The message is sent back verbatim as the body of a 400 response, so it
    must never carry internal details.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EngineError(RenderMathError):
    """The typesetting engine is gone or answered with garbage."""


class WorkerStartupError(RenderMathError):
    """A worker died before it was ready to serve; respawning would only repeat it."""
