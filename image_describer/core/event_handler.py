"""
Event handler for the describe pipeline.

Coordinates the pipeline components for one storage event:
1. Validate the event envelope
2. Download the object (Cloud Storage)
3. Build the multimodal request
4. Open the Gemini stream
5. Drain it, logging every chunk, and log the aggregated response

Failures are isolated per invocation: they are logged and reported in the
returned HandlerResult, never raised.
"""

from enum import Enum
from typing import Any, Optional

import structlog

from image_describer.config.settings import PipelineConfig
from image_describer.core.errors import FetchError, InferenceError, StreamError, ValidationError
from image_describer.core.events import EventEnvelope, raw_log_context
from image_describer.core.inference_client import AggregatedResponse, GeminiInferenceClient
from image_describer.core.payload_builder import build_request
from image_describer.core.storage_fetcher import StorageObjectFetcher
from image_describer.core.stream_aggregator import StreamAggregator, serialize_chunk

logger = structlog.get_logger(__name__)


class Outcome(str, Enum):
    """How an invocation ended."""
    SUCCESS = "success"
    INVALID_EVENT = "invalid_event"
    FETCH_FAILED = "fetch_failed"
    INFERENCE_FAILED = "inference_failed"
    STREAM_FAILED = "stream_failed"
    INTERNAL_ERROR = "internal_error"


RETRYABLE_OUTCOMES = frozenset({
    Outcome.FETCH_FAILED,
    Outcome.INFERENCE_FAILED,
    Outcome.STREAM_FAILED,
})


class HandlerResult:
    """Outcome of one invocation, for the calling harness to act on."""

    def __init__(
        self,
        status: Outcome,
        event_id: Optional[str] = None,
        response: Optional[AggregatedResponse] = None,
        error: Optional[Exception] = None,
        chunks_received: int = 0
    ):
        self.status = status
        self.event_id = event_id
        self.response = response
        self.error = error
        self.chunks_received = chunks_received

    @property
    def ok(self) -> bool:
        return self.status == Outcome.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE_OUTCOMES

    def __repr__(self):
        return f"HandlerResult(status={self.status.value}, event_id={self.event_id!r}, chunks={self.chunks_received})"


class EventHandler:
    """Runs the describe pipeline for a single storage event."""

    def __init__(
        self,
        fetcher: StorageObjectFetcher,
        inference: GeminiInferenceClient,
        config: PipelineConfig,
        aggregator: Optional[StreamAggregator] = None
    ):
        """
        Initialize the handler.

        Args:
            fetcher: Shared Cloud Storage fetcher
            inference: Shared Gemini client
            config: Pipeline configuration (instruction text, MIME default)
            aggregator: Stream aggregator (default: StreamAggregator())
        """
        self.fetcher = fetcher
        self.inference = inference
        self.config = config
        self.aggregator = aggregator or StreamAggregator()

    async def handle(self, cloud_event: Any) -> HandlerResult:
        """
        Process one storage event.

        Args:
            cloud_event: CloudEvent (or equivalent mapping) for the new object

        Returns:
            HandlerResult describing success or the failure kind
        """
        try:
            envelope = EventEnvelope.from_cloud_event(cloud_event)
        except ValidationError as e:
            context = raw_log_context(cloud_event)
            logger.error("Invalid storage event, dropping", error=str(e), **context)
            return HandlerResult(Outcome.INVALID_EVENT, context.get("event_id"), error=e)

        log = logger.bind(**envelope.log_context())
        log.info(
            "Storage event received",
            metageneration=envelope.data.metageneration,
            time_created=envelope.data.time_created,
            updated=envelope.data.updated,
        )

        chunks_logged = 0

        def log_chunk(index, chunk):
            nonlocal chunks_logged
            chunks_logged += 1
            log.info("Chunk received", chunk_index=index, chunk=serialize_chunk(chunk))

        try:
            data = await self.fetcher.fetch(envelope.data.bucket, envelope.data.name)
            log.info("Object downloaded", size_bytes=len(data))

            mime_type = envelope.resolve_mime_type(self.config.default_mime_type)
            request = build_request(data, mime_type, self.config.instruction_text)

            stream = await self.inference.generate_stream(request)
            response = await self.aggregator.consume(stream, on_chunk=log_chunk)

        except FetchError as e:
            log.error("Object download failed", error=str(e), reason=e.reason)
            return HandlerResult(Outcome.FETCH_FAILED, envelope.id, error=e)

        except InferenceError as e:
            log.error("Gemini request failed", error=str(e), status_code=e.status_code)
            return HandlerResult(Outcome.INFERENCE_FAILED, envelope.id, error=e)

        except StreamError as e:
            log.error("Gemini stream interrupted", error=str(e), chunks_received=e.chunks_received)
            return HandlerResult(
                Outcome.STREAM_FAILED, envelope.id, error=e, chunks_received=chunks_logged
            )

        except Exception as e:
            log.error("Unexpected pipeline failure", error=str(e), exc_info=True)
            return HandlerResult(
                Outcome.INTERNAL_ERROR, envelope.id, error=e, chunks_received=chunks_logged
            )

        log.info("Aggregated response", response=response.model_dump(mode="json"))
        return HandlerResult(
            Outcome.SUCCESS, envelope.id, response=response, chunks_received=chunks_logged
        )
