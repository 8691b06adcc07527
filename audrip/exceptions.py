"""
Defines custom exceptions used throughout the application.

Every failure that can end a job is one of the `AudRipError` subclasses below,
so callers can react to the classification (``kind``) instead of parsing text.
"""
from typing import Optional


class AudRipError(Exception):
    """Base class for classified pipeline errors."""
    kind = 'error'

    def __init__(self, message: str = ''):
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__


class AcquisitionFailed(AudRipError):
    """The content-fetch engine exited with a non-zero status."""
    kind = 'acquisition_failed'


class AcquisitionTimeout(AudRipError):
    """The content-fetch engine ran past its wall-clock limit and was killed."""
    kind = 'acquisition_timeout'

    @classmethod
    def default_message(cls) -> str:
        return "Download timed out."


class TranscodeFailed(AudRipError):
    """The transcoding engine exited with a non-zero status."""
    kind = 'transcode_failed'


class TranscodeTimeout(AudRipError):
    """The transcoding engine ran past its wall-clock limit and was killed."""
    kind = 'transcode_timeout'

    @classmethod
    def default_message(cls) -> str:
        return "Conversion timed out."


class JobCancelledError(AudRipError):
    """The job was cancelled by the user."""
    kind = 'cancelled'

    @classmethod
    def default_message(cls) -> str:
        return "Cancelled"


class MissingOutput(AudRipError):
    """Acquisition reported success but no raw media file could be found."""
    kind = 'missing_output'

    @classmethod
    def default_message(cls) -> str:
        return "Audio file missing after download."


class CacheIOError(AudRipError):
    """A cache file could not be read or parsed."""
    kind = 'cache_io'


class DependencyMissing(AudRipError):
    """An external engine binary could not be resolved."""
    kind = 'dependency_missing'

    def __init__(self, dependency: str, message: Optional[str] = None):
        self.dependency = dependency
        super().__init__(message or f"{dependency} is not installed or could not be found.")


class URLExtractionError(Exception):
    """Custom exception for URL info lookup failures."""
    pass


class InvalidStateTransition(ValueError):
    """Raised when a job is asked to move backwards or leave a terminal state."""
    pass
