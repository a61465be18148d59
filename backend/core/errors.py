"""
Error taxonomy for the timeline pipeline

InsufficientData    too few or low-quality samples (reported as a null result)
UpstreamFetch       a source query failed, the window is aborted and retried
MalformedInput      one record failed to parse, only that record is skipped
ConcurrencyConflict a run was requested while one is active, the request is dropped
"""

from typing import Optional


class TimelineError(Exception):
    """Base class for timeline pipeline errors"""

    kind = "timeline_error"


class InsufficientDataError(TimelineError):
    kind = "insufficient_data"


class UpstreamFetchError(TimelineError):
    """Raised when an external source query fails"""

    kind = "upstream_fetch_failure"

    def __init__(self, source: str, message: str = ""):
        self.source = source
        super().__init__(f"{source}: {message}" if message else source)


class MalformedInputError(TimelineError):
    """Raised for a single record that cannot be parsed"""

    kind = "malformed_input"

    def __init__(self, message: str, record_id: Optional[str] = None):
        self.record_id = record_id
        super().__init__(message)


class ConcurrencyConflictError(TimelineError):
    kind = "concurrency_conflict"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Ingestion already running for user {user_id}")
