"""
Cloud Function entry point for the Storage Image Describer.

Triggered by Cloud Storage "object finalized" events. Each event is handed
to the EventHandler, which downloads the object, asks Gemini to describe it
and logs the streamed answer.

Deploy with:
    gcloud functions deploy describe-object --gen2 --runtime=python312 \
        --entry-point=describe_object \
        --trigger-event-filters="type=google.cloud.storage.object.v1.finalized" \
        --trigger-event-filters="bucket=YOUR_BUCKET"
"""

import json
import asyncio
import logging
import threading
from datetime import datetime, UTC
from typing import Any, Optional

import functions_framework
import structlog

from image_describer import __version__
from image_describer.config.settings import PipelineConfig, get_pipeline_config
from image_describer.core.event_handler import EventHandler, HandlerResult
from image_describer.core.inference_client import GeminiInferenceClient
from image_describer.core.storage_fetcher import StorageObjectFetcher

logger = logging.getLogger(__name__)


def _add_severity(logger_, method_name, event_dict):
    # Cloud Logging reads the level from "severity"
    event_dict["severity"] = method_name.upper()
    return event_dict


def configure_logging(level: str = "INFO"):
    """Configure stdlib logging and JSON structlog output."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_severity,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
    )


class Pipeline:
    """
    Process-wide pipeline state.

    Holds the shared client handles and one event loop, running in a
    background thread, on which every invocation is scheduled. Concurrent
    invocations interleave at their suspension points on that loop.
    """

    def __init__(self, config: PipelineConfig, handler: EventHandler):
        self.config = config
        self.handler = handler
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self.loop.run_forever, name="describe-event-loop", daemon=True
        )
        self._thread.start()

    def run(self, cloud_event: Any) -> HandlerResult:
        """Run one invocation to completion and return its result."""
        future = asyncio.run_coroutine_threadsafe(self.handler.handle(cloud_event), self.loop)
        return future.result()

    def close(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self.loop.close()


_pipeline: Optional[Pipeline] = None
_pipeline_lock = threading.Lock()


def init_pipeline(
    config: Optional[PipelineConfig] = None,
    fetcher: Optional[StorageObjectFetcher] = None,
    inference: Optional[GeminiInferenceClient] = None
) -> Pipeline:
    """
    Create the process-wide clients and handler.

    Called once at cold start (or lazily on the first event). Later calls
    return the existing pipeline.

    Args:
        config: Pipeline configuration (default: from environment)
        fetcher: Storage fetcher (default: backed by storage.Client())
        inference: Gemini client (default: Vertex AI client from config)
    """
    global _pipeline
    with _pipeline_lock:
        if _pipeline is not None:
            return _pipeline

        config = config or get_pipeline_config()
        configure_logging(config.log_level)

        handler = EventHandler(
            fetcher=fetcher or StorageObjectFetcher(),
            inference=inference or GeminiInferenceClient(config.vertex, config.generation),
            config=config,
        )
        _pipeline = Pipeline(config, handler)
        logger.info(f"Describe pipeline initialized (model={config.vertex.model_name})")
        return _pipeline


def shutdown_pipeline():
    """Stop the background loop and forget the process-wide pipeline."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is not None:
            _pipeline.close()
            _pipeline = None


@functions_framework.cloud_event
def describe_object(cloud_event):
    """
    Cloud Function entry point for storage object events.

    Failures are logged and swallowed by default so the platform does not
    redeliver. With RETRY_ON_FAILURE=true, fetch/inference/stream failures
    are raised instead, which lets a retry-enabled trigger redeliver the
    event. Invalid events are never retried.
    """
    pipeline = init_pipeline()
    result = pipeline.run(cloud_event)

    if pipeline.config.retry_on_failure and result.retryable:
        raise RuntimeError(
            f"Event {result.event_id} failed with {result.status.value}; requesting redelivery"
        ) from result.error

    return result


@functions_framework.http
def health_check(request):
    """Health check endpoint for the Cloud Function."""
    return json.dumps({
        "status": "healthy",
        "service": "storage-image-describer",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat()
    }), 200, {"Content-Type": "application/json"}
