"""
Stream resolution, capture, job management and manifest proxying.

Submodules are imported directly (embedtv.streaming.jobs, ...); only the
error taxonomy is re-exported here so the FFmpeg layer can import it
without pulling in the browser stack.
"""

from embedtv.streaming.errors import (
    ChallengeBlocked,
    DependencyUnavailable,
    DetectionTimeout,
    ManifestNotReady,
    NoStreamDetected,
    ProcessCrashed,
    ProcessDegraded,
    StreamingError,
    UpstreamFetchFailed,
)

__all__ = [
    "ChallengeBlocked",
    "DependencyUnavailable",
    "DetectionTimeout",
    "ManifestNotReady",
    "NoStreamDetected",
    "ProcessCrashed",
    "ProcessDegraded",
    "StreamingError",
    "UpstreamFetchFailed",
]
