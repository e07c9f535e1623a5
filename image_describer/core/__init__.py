"""Core components for the Storage Image Describer."""

from .errors import (
    PipelineError,
    ValidationError,
    FetchError,
    InferenceError,
    StreamError,
    StreamNotDrainedError,
)
from .events import EventEnvelope, StorageObjectData
from .storage_fetcher import StorageObjectFetcher
from .payload_builder import InferenceRequest, build_request
from .inference_client import AggregatedResponse, GeminiInferenceClient, InferenceStream
from .stream_aggregator import StreamAggregator
from .event_handler import EventHandler, HandlerResult, Outcome

__all__ = [
    "PipelineError",
    "ValidationError",
    "FetchError",
    "InferenceError",
    "StreamError",
    "StreamNotDrainedError",
    "EventEnvelope",
    "StorageObjectData",
    "StorageObjectFetcher",
    "InferenceRequest",
    "build_request",
    "AggregatedResponse",
    "GeminiInferenceClient",
    "InferenceStream",
    "StreamAggregator",
    "EventHandler",
    "HandlerResult",
    "Outcome",
]
