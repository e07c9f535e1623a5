"""Shared fakes and fixtures for the test suite."""

import asyncio
from types import SimpleNamespace

import pytest
from cloudevents.http import CloudEvent
from google.api_core import exceptions as gcs_exceptions
from google.genai import types

from image_describer.config.settings import GenerationSettings, PipelineConfig, VertexConfig
from image_describer.core.inference_client import GeminiInferenceClient
from image_describer.core.storage_fetcher import StorageObjectFetcher

JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00\xff\xd9"
MODEL_NAME = "gemini-1.5-flash-002"


def make_chunk(text, finish_reason=None, usage=None):
    candidate = {"content": {"role": "model", "parts": [{"text": text}]}, "index": 0}
    if finish_reason:
        candidate["finish_reason"] = finish_reason
    payload = {"candidates": [candidate], "model_version": MODEL_NAME}
    if usage:
        payload["usage_metadata"] = usage
    return types.GenerateContentResponse.model_validate(payload)


def cat_chunks():
    return [
        make_chunk("Uma"),
        make_chunk(" imagem"),
        make_chunk(
            " de um gato.",
            finish_reason="STOP",
            usage={"prompt_token_count": 263, "candidates_token_count": 7, "total_token_count": 270},
        ),
    ]


def make_cloud_event(bucket="b", name="cat.jpg", event_id="evt-1", **extra):
    data = {
        "bucket": bucket,
        "name": name,
        "metageneration": "1",
        "timeCreated": "2024-10-01T12:00:00.000Z",
        "updated": "2024-10-01T12:00:00.000Z",
        **extra,
    }
    attributes = {
        "id": event_id,
        "type": "google.cloud.storage.object.v1.finalized",
        "source": f"//storage.googleapis.com/projects/_/buckets/{bucket}",
    }
    return CloudEvent(attributes, data)


class FakeBlob:
    def __init__(self, client, bucket, name):
        self.client = client
        self.bucket = bucket
        self.name = name

    def download_as_bytes(self, retry=None):
        key = (self.bucket, self.name)
        self.client.downloads.append(key)
        if key in self.client.errors:
            raise self.client.errors[key]
        if key not in self.client.objects:
            raise gcs_exceptions.NotFound(f"No such object: {self.bucket}/{self.name}")
        return self.client.objects[key]


class FakeStorageClient:
    """Stands in for google.cloud.storage.Client."""

    def __init__(self, objects=None, errors=None):
        self.objects = dict(objects or {})
        self.errors = dict(errors or {})
        self.downloads = []

    def bucket(self, name):
        return SimpleNamespace(blob=lambda blob_name: FakeBlob(self, name, blob_name))


class FakeModels:
    """
    Stands in for client.aio.models.

    The script is a list of chunks and exceptions, replayed in order.
    """

    def __init__(self, script=(), open_error=None):
        self.script = list(script)
        self.open_error = open_error
        self.calls = []

    async def generate_content_stream(self, *, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.open_error is not None:
            raise self.open_error
        return self._replay()

    async def _replay(self):
        for item in self.script:
            await asyncio.sleep(0)
            if isinstance(item, BaseException):
                raise item
            yield item


def make_genai_client(models):
    return SimpleNamespace(aio=SimpleNamespace(models=models))


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        vertex=VertexConfig(project_id="test-project", location="us-central1", model_name=MODEL_NAME),
        generation=GenerationSettings(),
    )


@pytest.fixture
def storage_client():
    return FakeStorageClient(objects={("b", "cat.jpg"): JPEG_BYTES})


@pytest.fixture
def fetcher(storage_client):
    return StorageObjectFetcher(client=storage_client)


def make_inference(config, models):
    return GeminiInferenceClient(config.vertex, config.generation, client=make_genai_client(models))
