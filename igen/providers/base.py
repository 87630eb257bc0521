"""Provider adapter protocol and the value types adapters return."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Union


@dataclass(frozen=True)
class ProviderCapabilities:
    """Optional operations an adapter supports. Queried at runtime by the reconciler."""

    webhooks: bool = False
    poll: bool = False
    cancel: bool = False


@dataclass
class Submission:
    """Provider acknowledgement of a submitted job."""

    request_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ArtifactSource:
    """Where the produced output lives: a URL to fetch, or inline bytes."""

    url: str | None = None
    data: bytes | None = None
    content_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Pending:
    queue_position: int | None = None


@dataclass
class Completed:
    """Provider reports success. ``output`` is None when the payload had nothing usable."""

    output: ArtifactSource | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Failed:
    code: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


ProviderOutcome = Union[Pending, Completed, Failed]


@dataclass
class WebhookEvent:
    request_id: str
    outcome: ProviderOutcome


class ProviderAdapter(Protocol):
    """Uniform interface to a generation backend.

    ``submit`` is a single external call and is never retried by the adapter:
    the provider may have accepted the job even when the response was lost.
    Operations not listed in ``capabilities`` raise ``CapabilityNotSupported``.
    """

    name: str
    capabilities: ProviderCapabilities

    def submit(self, endpoint: str, input: dict[str, Any], callback_url: str | None) -> Submission:
        """Submit a job; returns the provider request id. Raises ProviderError subclasses."""
        ...

    def poll(self, request_id: str, endpoint: str) -> ProviderOutcome:
        """Return the current outcome of a submitted job."""
        ...

    def cancel(self, request_id: str, endpoint: str) -> None:
        """Best-effort cancellation."""
        ...

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        """Decode a provider callback body. Raises InvalidWebhook on undecodable input."""
        ...
