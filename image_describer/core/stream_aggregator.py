"""
Stream aggregation.

Drains an InferenceStream in delivery order and resolves its aggregated
response. A broken stream never produces a partial result.
"""

import logging
from typing import Any, Callable, Dict, Optional

from google.genai import types

from image_describer.core.inference_client import AggregatedResponse, InferenceStream

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[int, types.GenerateContentResponse], None]


def serialize_chunk(chunk: types.GenerateContentResponse) -> Dict[str, Any]:
    """JSON-safe dict of a chunk for logging."""
    return chunk.model_dump(mode="json", exclude_none=True)


class StreamAggregator:
    """Consumes a chunk stream and returns the aggregated response."""

    async def consume(
        self,
        stream: InferenceStream,
        on_chunk: Optional[ChunkCallback] = None
    ) -> AggregatedResponse:
        """
        Drain the stream, then resolve the aggregate.

        Args:
            stream: Stream returned by the inference client
            on_chunk: Called with (index, chunk) for every chunk, in order

        Returns:
            The aggregated response

        Raises:
            StreamError: If the stream terminates abnormally; propagated as-is.
        """
        chunks = stream.chunks()
        index = 0
        try:
            async for chunk in chunks:
                if on_chunk is not None:
                    on_chunk(index, chunk)
                index += 1
        finally:
            # Release the connection even when consumption stops early
            await chunks.aclose()
            await stream.aclose()

        response = await stream.response()
        logger.debug(f"Aggregated {response.chunk_count} chunk(s), finish_reason={response.finish_reason}")
        return response
