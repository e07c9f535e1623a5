"""
Gemini streaming inference client.

Opens a streaming generate-content call on Vertex AI and exposes it as an
InferenceStream: a lazy, single-use async iterator of chunks plus a deferred
aggregated response that can only be resolved once the iterator has been
exhausted.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional

import httpx
from google import genai
from google.auth import exceptions as auth_exceptions
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel

from image_describer.config.settings import GenerationSettings, VertexConfig
from image_describer.core.errors import InferenceError, StreamError, StreamNotDrainedError
from image_describer.core.payload_builder import InferenceRequest, InlineDataPart, TextPart

logger = logging.getLogger(__name__)

# Transport and service failures that can surface while opening or reading a stream
SERVICE_FAILURES = (
    genai_errors.APIError,
    auth_exceptions.GoogleAuthError,
    httpx.HTTPError,
    asyncio.TimeoutError,
    OSError,
)


class UsageSummary(BaseModel):
    """Token accounting reported with the final chunk."""
    prompt_token_count: Optional[int] = None
    candidates_token_count: Optional[int] = None
    total_token_count: Optional[int] = None


class AggregatedResponse(BaseModel):
    """Fully resolved model output for one invocation."""
    text: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[UsageSummary] = None
    model_version: Optional[str] = None
    chunk_count: int = 0


def chunk_text(chunk: types.GenerateContentResponse) -> str:
    """Concatenate the text parts of the first candidate, skipping thoughts."""
    if not chunk.candidates:
        return ""
    content = chunk.candidates[0].content
    if content is None or not content.parts:
        return ""
    return "".join(part.text for part in content.parts if part.text and not part.thought)


def _status_code(error: Exception) -> Optional[int]:
    if isinstance(error, genai_errors.APIError):
        return error.code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


class InferenceStream:
    """
    A single streaming response.

    Usage:
        stream = await client.generate_stream(request)
        async for chunk in stream.chunks():
            ...
        response = await stream.response()
    """

    def __init__(self, chunks: AsyncIterator[types.GenerateContentResponse], model_name: str):
        self._source = chunks
        self.model_name = model_name
        self._started = False
        self._drained = False
        self._error: Optional[Exception] = None
        self._chunks_received = 0
        self._texts: List[str] = []
        self._finish_reason: Optional[str] = None
        self._usage: Optional[UsageSummary] = None
        self._model_version: Optional[str] = None

    def _record(self, chunk: types.GenerateContentResponse):
        self._chunks_received += 1
        self._texts.append(chunk_text(chunk))

        if chunk.candidates and chunk.candidates[0].finish_reason is not None:
            reason = chunk.candidates[0].finish_reason
            self._finish_reason = getattr(reason, "value", str(reason))

        usage = chunk.usage_metadata
        if usage is not None:
            self._usage = UsageSummary(
                prompt_token_count=usage.prompt_token_count,
                candidates_token_count=usage.candidates_token_count,
                total_token_count=usage.total_token_count,
            )

        if chunk.model_version:
            self._model_version = chunk.model_version

    async def chunks(self) -> AsyncIterator[types.GenerateContentResponse]:
        """
        Yield chunks in generation order as the service emits them.

        Raises:
            InferenceError: If the stream fails before the first chunk.
            StreamError: If the stream fails after at least one chunk.
            RuntimeError: If the stream is iterated a second time.
        """
        if self._started:
            raise RuntimeError("InferenceStream can only be consumed once")
        self._started = True

        while True:
            try:
                chunk = await self._source.__anext__()
            except StopAsyncIteration:
                break
            except SERVICE_FAILURES as e:
                if self._chunks_received == 0:
                    self._error = InferenceError(
                        f"Gemini stream failed before any output: {e}",
                        status_code=_status_code(e)
                    )
                else:
                    self._error = StreamError(
                        f"Gemini stream dropped after {self._chunks_received} chunk(s): {e}",
                        chunks_received=self._chunks_received
                    )
                raise self._error from e

            self._record(chunk)
            yield chunk

        self._drained = True

    async def response(self) -> AggregatedResponse:
        """
        Resolve the aggregated response.

        Raises:
            StreamNotDrainedError: If called before chunks() is exhausted.
            InferenceError, StreamError: If the stream ended abnormally.
        """
        if self._error is not None:
            raise self._error
        if not self._drained:
            raise StreamNotDrainedError(
                "Aggregated response requested before the chunk stream was fully consumed"
            )

        return AggregatedResponse(
            text="".join(self._texts),
            finish_reason=self._finish_reason,
            usage=self._usage,
            model_version=self._model_version or self.model_name,
            chunk_count=self._chunks_received,
        )

    async def aclose(self):
        """Release the underlying connection without consuming the rest of the stream."""
        close = getattr(self._source, "aclose", None)
        if close is not None:
            await close()


def to_genai_contents(request: InferenceRequest) -> List[types.Content]:
    """Convert an InferenceRequest into google-genai Content objects."""
    contents = []
    for turn in request.contents:
        parts = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                parts.append(types.Part(text=part.text))
            elif isinstance(part, InlineDataPart):
                parts.append(types.Part(
                    inline_data=types.Blob(mime_type=part.mime_type, data=part.decoded())
                ))
        contents.append(types.Content(role=turn.role, parts=parts))
    return contents


def build_generate_config(settings: GenerationSettings) -> types.GenerateContentConfig:
    """Translate the fixed generation settings into a request config."""
    return types.GenerateContentConfig(
        max_output_tokens=settings.max_output_tokens,
        temperature=settings.temperature,
        top_p=settings.top_p,
        safety_settings=[
            types.SafetySetting(category=category, threshold=threshold)
            for category, threshold in settings.safety_settings.items()
        ],
    )


class GeminiInferenceClient:
    """
    Streaming multimodal inference against Gemini on Vertex AI.

    The model identifier and generation config are fixed at construction and
    shared by every request, so one instance can serve concurrent invocations.
    """

    def __init__(
        self,
        vertex_config: VertexConfig,
        generation_settings: GenerationSettings,
        client: Optional[Any] = None
    ):
        """
        Initialize the inference client.

        Args:
            vertex_config: Project, location and model selection
            generation_settings: Generation parameters and safety policy
            client: Shared google-genai client. Created for Vertex AI when omitted.
        """
        self.model_name = vertex_config.model_name
        self.client = client or genai.Client(
            vertexai=True,
            project=vertex_config.project_id,
            location=vertex_config.location,
        )
        self.config = build_generate_config(generation_settings)

        logger.info(f"Gemini inference client initialized with model: {self.model_name}")

    async def generate_stream(self, request: InferenceRequest) -> InferenceStream:
        """
        Open a streaming call for the request.

        Args:
            request: The multimodal request to send

        Returns:
            InferenceStream over the response

        Raises:
            InferenceError: If the call cannot be opened.
        """
        try:
            chunks = await self.client.aio.models.generate_content_stream(
                model=self.model_name,
                contents=to_genai_contents(request),
                config=self.config,
            )
        except SERVICE_FAILURES as e:
            raise InferenceError(
                f"Could not open Gemini stream: {e}",
                status_code=_status_code(e)
            ) from e

        return InferenceStream(chunks, self.model_name)
