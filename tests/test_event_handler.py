import asyncio

import httpx
from google.auth.exceptions import RefreshError
from google.genai import errors as genai_errors
from structlog.testing import capture_logs

from image_describer.core.event_handler import EventHandler, Outcome
from image_describer.core.storage_fetcher import StorageObjectFetcher

from conftest import (
    JPEG_BYTES,
    FakeModels,
    FakeStorageClient,
    cat_chunks,
    make_chunk,
    make_cloud_event,
    make_inference,
)


class CountingFetcher(StorageObjectFetcher):
    def __init__(self, client):
        super().__init__(client=client)
        self.calls = 0

    async def fetch(self, bucket, name):
        self.calls += 1
        return await super().fetch(bucket, name)


def _handler(config, storage_client, models):
    fetcher = CountingFetcher(storage_client)
    return EventHandler(fetcher, make_inference(config, models), config), fetcher


def _messages(logs, text):
    return [entry for entry in logs if entry["event"] == text]


def test_successful_event_logs_chunks_and_aggregate(pipeline_config, storage_client) -> None:
    models = FakeModels(cat_chunks())
    handler, fetcher = _handler(pipeline_config, storage_client, models)

    with capture_logs() as logs:
        result = asyncio.run(handler.handle(make_cloud_event(bucket="b", name="cat.jpg")))

    assert result.ok
    assert result.status == Outcome.SUCCESS
    assert result.response.text == "Uma imagem de um gato."
    assert result.chunks_received == 3

    assert fetcher.calls == 1
    assert len(models.calls) == 1
    parts = models.calls[0]["contents"][0].parts
    assert parts[0].text == "Describe this image in portuguese"
    assert parts[1].inline_data.data == JPEG_BYTES
    assert parts[1].inline_data.mime_type == "image/jpeg"

    received = _messages(logs, "Storage event received")[0]
    assert received["event_id"] == "evt-1"
    assert received["event_type"] == "google.cloud.storage.object.v1.finalized"
    assert received["bucket"] == "b"
    assert received["object_name"] == "cat.jpg"
    assert received["metageneration"] == "1"

    assert _messages(logs, "Object downloaded")[0]["size_bytes"] == len(JPEG_BYTES)
    chunk_lines = _messages(logs, "Chunk received")
    assert [line["chunk_index"] for line in chunk_lines] == [0, 1, 2]
    aggregate_lines = _messages(logs, "Aggregated response")
    assert len(aggregate_lines) == 1
    assert aggregate_lines[0]["response"]["text"] == "Uma imagem de um gato."


def test_missing_object_is_logged_and_never_reaches_gemini(pipeline_config) -> None:
    models = FakeModels(cat_chunks())
    handler, fetcher = _handler(pipeline_config, FakeStorageClient(), models)

    with capture_logs() as logs:
        result = asyncio.run(handler.handle(make_cloud_event(name="missing.jpg")))

    assert result.status == Outcome.FETCH_FAILED
    assert result.retryable
    assert fetcher.calls == 1
    assert models.calls == []

    errors = [entry for entry in logs if entry["log_level"] == "error"]
    assert len(errors) == 1
    assert errors[0]["object_name"] == "missing.jpg"
    assert errors[0]["reason"] == "not_found"
    assert _messages(logs, "Aggregated response") == []


def test_stream_drop_logs_partial_chunks_without_aggregate(pipeline_config, storage_client) -> None:
    script = [make_chunk("Uma"), make_chunk(" imagem"), httpx.ReadError("connection reset")]
    handler, _ = _handler(pipeline_config, storage_client, FakeModels(script))

    with capture_logs() as logs:
        result = asyncio.run(handler.handle(make_cloud_event()))

    assert result.status == Outcome.STREAM_FAILED
    assert result.chunks_received == 2
    assert len(_messages(logs, "Chunk received")) == 2
    assert _messages(logs, "Aggregated response") == []
    interrupted = _messages(logs, "Gemini stream interrupted")
    assert len(interrupted) == 1
    assert interrupted[0]["chunks_received"] == 2


def test_rejected_request_is_an_inference_failure(pipeline_config, storage_client) -> None:
    error = genai_errors.ClientError(
        400, {"error": {"code": 400, "message": "Invalid argument", "status": "INVALID_ARGUMENT"}}
    )
    handler, _ = _handler(pipeline_config, storage_client, FakeModels(open_error=error))

    with capture_logs() as logs:
        result = asyncio.run(handler.handle(make_cloud_event()))

    assert result.status == Outcome.INFERENCE_FAILED
    assert _messages(logs, "Gemini request failed")[0]["status_code"] == 400


def test_invalid_event_is_dropped_before_fetch(pipeline_config, storage_client) -> None:
    models = FakeModels(cat_chunks())
    handler, fetcher = _handler(pipeline_config, storage_client, models)

    with capture_logs() as logs:
        result = asyncio.run(handler.handle(make_cloud_event(bucket="b", name="", event_id="evt-bad")))

    assert result.status == Outcome.INVALID_EVENT
    assert result.event_id == "evt-bad"
    assert not result.retryable
    assert fetcher.calls == 0
    assert models.calls == []

    dropped = _messages(logs, "Invalid storage event, dropping")
    assert len(dropped) == 1
    assert dropped[0]["event_id"] == "evt-bad"
    assert dropped[0]["event_type"] == "google.cloud.storage.object.v1.finalized"
    assert dropped[0]["bucket"] == "b"
    assert dropped[0]["object_name"] == ""


def test_non_object_payload_is_dropped_with_event_identity(pipeline_config, storage_client) -> None:
    handler, fetcher = _handler(pipeline_config, storage_client, FakeModels(cat_chunks()))

    with capture_logs() as logs:
        result = asyncio.run(handler.handle({"id": "evt-raw", "type": "t", "data": "cat.jpg"}))

    assert result.status == Outcome.INVALID_EVENT
    assert result.event_id == "evt-raw"
    assert fetcher.calls == 0
    dropped = _messages(logs, "Invalid storage event, dropping")[0]
    assert dropped["event_id"] == "evt-raw"
    assert "bucket" not in dropped


def test_credential_failure_is_a_retryable_fetch_failure(pipeline_config) -> None:
    storage_client = FakeStorageClient(errors={("b", "cat.jpg"): RefreshError("token refresh failed")})
    models = FakeModels(cat_chunks())
    handler, _ = _handler(pipeline_config, storage_client, models)

    result = asyncio.run(handler.handle(make_cloud_event()))

    assert result.status == Outcome.FETCH_FAILED
    assert result.retryable
    assert models.calls == []


def test_aborted_stream_is_closed_before_handle_returns(pipeline_config, storage_client, monkeypatch) -> None:
    closed = []

    async def source():
        try:
            for chunk in cat_chunks():
                yield chunk
        finally:
            closed.append(True)

    class ClosingModels(FakeModels):
        async def generate_content_stream(self, *, model, contents, config):
            self.calls.append({"model": model, "contents": contents, "config": config})
            return source()

    def failing_serializer(chunk):
        raise ValueError("cannot serialize chunk")

    monkeypatch.setattr("image_describer.core.event_handler.serialize_chunk", failing_serializer)
    handler, _ = _handler(pipeline_config, storage_client, ClosingModels())

    result = asyncio.run(handler.handle(make_cloud_event()))

    assert result.status == Outcome.INTERNAL_ERROR
    assert closed == [True]


def test_same_event_twice_builds_the_same_request(pipeline_config, storage_client) -> None:
    models = FakeModels(cat_chunks())
    handler, _ = _handler(pipeline_config, storage_client, models)
    event = make_cloud_event()

    first = asyncio.run(handler.handle(event))
    second = asyncio.run(handler.handle(event))

    assert first.response == second.response
    assert len(models.calls) == 2
    assert models.calls[0]["contents"] == models.calls[1]["contents"]


def test_concurrent_events_do_not_share_state(pipeline_config) -> None:
    storage_client = FakeStorageClient(objects={("b", "cat.jpg"): JPEG_BYTES, ("b", "dog.jpg"): b"dog"})
    handler, fetcher = _handler(pipeline_config, storage_client, FakeModels(cat_chunks()))

    async def run():
        return await asyncio.gather(
            handler.handle(make_cloud_event(name="cat.jpg", event_id="evt-cat")),
            handler.handle(make_cloud_event(name="dog.jpg", event_id="evt-dog")),
        )

    cat, dog = asyncio.run(run())

    assert cat.ok and dog.ok
    assert (cat.event_id, dog.event_id) == ("evt-cat", "evt-dog")
    assert cat.chunks_received == dog.chunks_received == 3
    assert fetcher.calls == 2
