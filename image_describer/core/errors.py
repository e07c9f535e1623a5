"""Error taxonomy for the describe pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for failures that end a single invocation."""


class ValidationError(PipelineError):
    """Raised when an event envelope is malformed or incomplete."""


class FetchError(PipelineError):
    """Raised when an object cannot be downloaded from Cloud Storage."""

    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    TRANSFER_FAILED = "transfer_failed"

    def __init__(self, message: str, bucket: str, name: str, reason: str = TRANSFER_FAILED):
        super().__init__(message)
        self.bucket = bucket
        self.name = name
        self.reason = reason


class InferenceError(PipelineError):
    """Raised when Gemini rejects the request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StreamError(PipelineError):
    """Raised when the response stream breaks after chunks were delivered."""

    def __init__(self, message: str, chunks_received: int):
        super().__init__(message)
        self.chunks_received = chunks_received


class StreamNotDrainedError(RuntimeError):
    """Raised when the aggregated response is requested before the stream is exhausted."""
