"""Custom exceptions for oasisbuild."""


class OasisBuildError(Exception):
    """Base exception for all oasisbuild errors."""

    pass


class PrerequisiteError(OasisBuildError):
    """Raised when required host tools are missing."""

    def __init__(self, message: str, missing: list = None):
        """
        Initialize prerequisite error.

        Args:
            message: Error message
            missing: Names of the tools that could not be found
        """
        super().__init__(message)
        self.missing = list(missing or [])


class StageError(OasisBuildError):
    """Raised when a pipeline stage cannot complete."""

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        self.stage = stage


class StalePreconditionError(StageError):
    """Raised when a stage's input from a preceding stage is missing."""

    pass


class DownloadError(StageError):
    """Raised when an archive download fails after all attempts."""

    pass


class BuildFailedError(OasisBuildError):
    """Raised when the build-retry loop ends in a failure state.

    Carries the BuildResult so callers can report the transcript tail.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
