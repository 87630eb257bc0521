"""Pytest configuration and shared fixtures."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from igen.artifacts import ArtifactMaterializer
from igen.blobs.store import FileBlobStore
from igen.config import Settings
from igen.errors import InvalidWebhook
from igen.generations.store import FileGenerationStore
from igen.orchestrator import GenerationOrchestrator
from igen.providers import ProviderRegistry
from igen.providers.base import (
    ArtifactSource,
    Completed,
    Failed,
    Pending,
    ProviderCapabilities,
    Submission,
    WebhookEvent,
)
from igen.reconciler import CompletionReconciler

WEBHOOK_SECRET = "test-secret"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeProvider:
    """Scripted provider adapter.

    ``outcomes`` maps request id to what ``poll`` returns (or raises, when an
    exception instance is stored). Webhook bodies are JSON:
    ``{"request_id", "status": "OK"|"ERROR", "url"?, "error"?}``.
    """

    def __init__(self, name: str = "fake", webhooks: bool = True, poll: bool = True, cancel: bool = True):
        self.name = name
        self.capabilities = ProviderCapabilities(webhooks=webhooks, poll=poll, cancel=cancel)
        self.submitted: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.polled: list[str] = []
        self.outcomes: dict[str, Any] = {}
        self.submit_error: Exception | None = None
        self._counter = 0

    def submit(self, endpoint, input, callback_url):
        if self.submit_error is not None:
            raise self.submit_error
        self._counter += 1
        request_id = f"req-{self._counter}"
        self.submitted.append(
            {"endpoint": endpoint, "input": input, "callback_url": callback_url, "request_id": request_id}
        )
        return Submission(request_id=request_id, metadata={"queue_position": 0})

    def poll(self, request_id, endpoint):
        self.polled.append(request_id)
        outcome = self.outcomes.get(request_id, Pending())
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def cancel(self, request_id, endpoint):
        self.cancelled.append(request_id)

    def parse_webhook(self, body):
        try:
            data = json.loads(body)
        except ValueError as e:
            raise InvalidWebhook("Failed to parse webhook body") from e
        if not isinstance(data, dict) or not data.get("request_id"):
            raise InvalidWebhook("Webhook body has no request_id")
        if data.get("status") == "ERROR":
            return WebhookEvent(data["request_id"], Failed(code="FAKE_ERROR", message=data.get("error", "boom")))
        url = data.get("url")
        output = ArtifactSource(url=url) if url else None
        return WebhookEvent(data["request_id"], Completed(output=output, metadata={"seed": 42}))


def _webhook_body(request_id: str, url: str | None = "https://cdn.test/image.png", **extra) -> bytes:
    body: dict[str, Any] = {"request_id": request_id, "status": "OK", **extra}
    if url is not None:
        body["url"] = url
    return json.dumps(body).encode()


def cdn_handler(request: httpx.Request) -> httpx.Response:
    """Artifact host: /missing is 404, everything else serves a PNG."""
    if request.url.path == "/missing":
        return httpx.Response(404, text="not found")
    return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        igen_data_dir=str(tmp_path / "data"),
        igen_database_url=None,
        igen_public_url="https://igen.test",
        igen_webhook_secret=WEBHOOK_SECRET,
        igen_poll_grace_seconds=60,
        igen_poll_interval_seconds=30,
        igen_poll_batch_size=50,
        igen_sweeper_enabled=False,
    )


@pytest.fixture
def store(tmp_path):
    return FileGenerationStore(tmp_path / "data")


@pytest.fixture
def blobs(tmp_path):
    return FileBlobStore(tmp_path / "data" / "blobs")


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    return ProviderRegistry({"fake": fake_provider}, default="fake")


@pytest.fixture
def materializer(blobs):
    client = httpx.Client(transport=httpx.MockTransport(cdn_handler), base_url="https://cdn.test")
    return ArtifactMaterializer(blobs, client=client)


@pytest.fixture
def reconciler(store, blobs, registry, settings, materializer):
    return CompletionReconciler(store, blobs, registry, settings, materializer=materializer)


@pytest.fixture
def orchestrator(store, blobs, registry, settings):
    return GenerationOrchestrator(store, blobs, registry, settings)


@pytest.fixture
def long_ago():
    """A timestamp safely past the poll grace period."""
    return datetime.now(timezone.utc) - timedelta(minutes=10)


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def webhook_body():
    """Builds a FakeProvider webhook body: ``webhook_body(request_id, url=..., **extra)``."""
    return _webhook_body


@pytest.fixture
def make_provider():
    """Factory for extra FakeProvider instances (polling-only, webhook-only, ...)."""
    return FakeProvider
