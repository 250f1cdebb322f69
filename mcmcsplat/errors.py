class SplatError(Exception):
    """Base class for all errors raised by mcmcsplat."""


class ConfigurationError(SplatError):
    """Invalid configuration or empty inputs. Fatal before training starts."""


class ModelInitError(SplatError):
    """The initial Gaussian set could not be built."""


class RenderError(SplatError):
    """A single render failed, e.g. a degenerate camera or nothing visible."""

    def __init__(self, message: str, camera_uid: str = ""):
        super().__init__(message)
        self.camera_uid = camera_uid


class NonFiniteLossError(SplatError):
    """The loss for one iteration was NaN or infinite."""


class CheckpointError(SplatError):
    """A checkpoint could not be written or read."""
