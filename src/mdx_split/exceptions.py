"""Error types raised while loading the model or separating a job."""


class SeparationError(Exception):
    """Base class for every failure that ends a separation job."""


class DownloadFailure(SeparationError):
    """Every model mirror failed. ``last_error`` holds the final underlying error."""

    def __init__(self, message, last_error=None):
        super().__init__(message)
        self.last_error = last_error


class ModelLoadFailure(SeparationError):
    """The inference runtime or session could not be built."""


class DecodeFailure(SeparationError):
    """The supplied audio could not be decoded or extracted."""


class InferenceFailure(SeparationError):
    """The inference engine failed while running a segment."""


class SeparationCancelled(Exception):
    """Raised internally when a cancellation request is seen at a checked boundary."""
