"""
Error taxonomy for the transcoding pipeline and message truncation helpers.

Stage errors (probe, encode, package integrity) are raised by the pipeline
stages and caught once by the worker's job handler, which decides between a
retry and a terminal failure. Cleanup errors are only ever logged.
"""
import logging
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH, PROBE_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate text to max_length characters, ending with "..." when shortened.

    Args:
        text: Text to truncate (None is passed through)
        max_length: Maximum length of the returned string

    Returns:
        The original text if short enough, otherwise a truncated copy
    """
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length < 4:
        # No room for an ellipsis
        return text[:max_length]
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message for storage or display."""
    return truncate_string(error, max_length)


class TranscodeError(Exception):
    """
    Base class for errors raised by a pipeline stage.

    Attributes:
        retryable: Whether the job may be attempted again
        retry_limit: Cap on total attempts for this error kind (None = job's max_attempts)
    """

    retryable: bool = True
    retry_limit: Optional[int] = None

    def attempt_limit(self, max_attempts: int) -> int:
        """Total number of attempts allowed for a job failing with this error."""
        if not self.retryable:
            return 0
        if self.retry_limit is None:
            return max_attempts
        return min(max_attempts, self.retry_limit)


class ProbeError(TranscodeError):
    """
    Input is unreadable or has no decodable video stream.

    Deterministic failures (corrupt file, audio-only input) are never retried.
    Transient failures (I/O errors, ffprobe timeouts) are retried once.
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient
        self.retryable = transient
        if transient:
            self.retry_limit = PROBE_MAX_ATTEMPTS


class InputMissingError(ProbeError):
    """Input file does not exist (yet); retried up to the job's max attempts."""

    def __init__(self, message: str):
        super().__init__(message, transient=True)
        self.retry_limit = None


class EncodeError(TranscodeError):
    """External encoder exited non-zero, timed out, or produced an incomplete rendition."""


class PackageIntegrityError(TranscodeError):
    """Encoder reported success but the HLS package is missing or unusable."""

    retryable = False


class CleanupError(Exception):
    """Removing job artifacts failed. Logged only, never propagated."""


class QueueEnqueueError(Exception):
    """Publishing a transcode job failed on the upload path."""


class RecordNotFoundError(TranscodeError):
    """The durable video record referenced by a job does not exist."""

    retryable = False


class InvalidJobError(TranscodeError):
    """The job message itself is unusable (e.g. an unsafe video id)."""

    retryable = False


class AttemptsExhaustedError(TranscodeError):
    """The job was delivered more times than its max attempts allow."""

    retryable = False
