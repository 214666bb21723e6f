"""Exception hierarchy for openspacenet.

All custom exceptions inherit from OpenSpaceNetError to enable catch-all
error handling. Each exception type maps to one failure domain of a run
and carries keyword context describing what went wrong.
"""

from __future__ import annotations


class OpenSpaceNetError(Exception):
    """Base exception for all openspacenet errors.

    Catching this exception will catch any error raised by the library,
    providing a convenient catch-all for CLI and GUI front-ends.
    """

    def __init__(self, message: str = "", **kwargs: object) -> None:
        self.context = kwargs
        super().__init__(message)


class ConfigurationError(OpenSpaceNetError):
    """Raised before dispatch for invalid run configuration.

    This covers invalid window or step sizes, thresholds outside their
    range, missing required inputs, and a region of interest that does
    not intersect the image.
    """

    pass


class SourceAccessError(OpenSpaceNetError):
    """Raised when an image source cannot be opened or described."""

    pass


class MissingCRSError(SourceAccessError):
    """Raised when an image has no spatial reference.

    Detections cannot be geo-referenced without one, so this is fatal.
    """

    pass


class WindowIOError(OpenSpaceNetError):
    """Raised when fetching or classifying a single window fails.

    The failing window is stored in ``context["window"]``. A run never
    skips a failed window; this error aborts the whole run.
    """

    pass


class ModelError(OpenSpaceNetError):
    """Raised for inference client construction or loading failures.

    This covers a missing rfdetr installation, unsupported model sizes,
    and invalid weight paths.
    """

    pass


class WriteError(OpenSpaceNetError):
    """Raised when the output sink fails to write the feature collection."""

    pass


class CoverageGapWarning(UserWarning):
    """Warning issued when the step size exceeds the window size.

    Such a grid leaves uncovered strips between windows. The gaps are
    deterministic, but features inside them will never be detected.
    """

    pass
