"""
Error taxonomy for stream resolution, job management and proxying.

Every failure that crosses a component boundary is one of these types so
callers can decide between retrying, evicting, or surfacing the error.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Failure categories."""

    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"  # ffmpeg/browser cannot launch
    CHALLENGE_BLOCKED = "challenge_blocked"  # Anti-bot interstitial not cleared
    DETECTION_TIMEOUT = "detection_timeout"  # No stream candidate found in time
    MANIFEST_NOT_READY = "manifest_not_ready"  # Transcoder produced no output in time
    PROCESS_CRASHED = "process_crashed"
    PROCESS_DEGRADED = "process_degraded"
    UPSTREAM_FETCH_FAILED = "upstream_fetch_failed"


class StreamingError(Exception):
    """Base class for streaming errors."""

    category: ErrorCategory = ErrorCategory.PROCESS_CRASHED
    default_retryable: bool = True

    def __init__(
        self,
        message: str,
        channel_id: Optional[str] = None,
        is_retryable: Optional[bool] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.channel_id = channel_id
        self.is_retryable = self.default_retryable if is_retryable is None else is_retryable
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "channel_id": self.channel_id,
            "is_retryable": self.is_retryable,
            "original_error": str(self.original_error) if self.original_error else None,
        }


class DependencyUnavailable(StreamingError):
    """The transcoder binary or the browser engine cannot be launched."""

    category = ErrorCategory.DEPENDENCY_UNAVAILABLE
    default_retryable = False


class ChallengeBlocked(StreamingError):
    """An anti-bot challenge page could not be cleared."""

    category = ErrorCategory.CHALLENGE_BLOCKED
    default_retryable = False


class DetectionTimeout(StreamingError):
    """No stream candidate was found within the detection window."""

    category = ErrorCategory.DETECTION_TIMEOUT


class NoStreamDetected(DetectionTimeout):
    """Neither sniffing nor player inspection produced a stream."""


class ManifestNotReady(StreamingError):
    """The transcoder did not write its output manifest in time."""

    category = ErrorCategory.MANIFEST_NOT_READY


class ProcessCrashed(StreamingError):
    """A transcoder or worker process exited unexpectedly."""

    category = ErrorCategory.PROCESS_CRASHED


class ProcessDegraded(StreamingError):
    """A transcoder is running but stale or erroring."""

    category = ErrorCategory.PROCESS_DEGRADED


class UpstreamFetchFailed(StreamingError):
    """Fetching an upstream manifest or segment failed."""

    category = ErrorCategory.UPSTREAM_FETCH_FAILED

    def __init__(
        self,
        message: str,
        channel_id: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message, channel_id=channel_id, original_error=original_error)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data
