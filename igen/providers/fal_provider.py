"""fal.ai queue adapter: webhook delivery with status polling and cancel."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from igen.errors import InvalidWebhook, ProviderAuthError, ProviderRejected
from igen.providers.base import (
    ArtifactSource,
    Completed,
    Failed,
    Pending,
    ProviderCapabilities,
    ProviderOutcome,
    Submission,
    WebhookEvent,
)
from igen.providers.http import json_body, send

logger = logging.getLogger(__name__)

# Payload fields copied onto the generation's provider metadata
METADATA_FIELDS = ("timings", "has_nsfw_concepts", "seed", "prompt")

# Fields that may hold file outputs, checked in order
FILE_FIELDS = ("image", "images", "video", "audio", "audio_url")

# Fields that may hold text outputs
TEXT_FIELDS = ("output", "text")

_SUBMIT_METADATA = ("status_url", "response_url", "cancel_url", "queue_position")


def find_output(payload: dict[str, Any]) -> ArtifactSource | None:
    """Locate the first output in a fal result payload."""
    for field in FILE_FIELDS:
        value = payload.get(field)
        candidates = value if isinstance(value, list) else [value]
        for item in candidates:
            if isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"]:
                meta = {k: item[k] for k in ("width", "height", "file_name") if k in item}
                return ArtifactSource(url=item["url"], content_type=item.get("content_type"), metadata=meta)
    for field in TEXT_FIELDS:
        value = payload.get(field)
        if isinstance(value, str):
            return ArtifactSource(data=value.encode("utf-8"), content_type="text/plain; charset=utf-8")
    return None


def _payload_metadata(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: payload[k] for k in METADATA_FIELDS if k in payload}


class FalProvider:
    """fal.ai queue API. Results arrive by webhook; status polling is the safety net."""

    name = "fal"
    capabilities = ProviderCapabilities(webhooks=True, poll=True, cancel=True)

    def __init__(
        self,
        api_key: str | None = None,
        queue_url: str = "https://queue.fal.run",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self._api_key = api_key
        self._queue_url = queue_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ProviderAuthError("FAL_KEY is not configured", provider=self.name)
        return {"Authorization": f"Key {self._api_key}"}

    @staticmethod
    def app_id(endpoint: str) -> str:
        """Queue status/result URLs use owner/app, without the sub-path."""
        parts = [p for p in endpoint.strip("/").split("/") if p]
        return "/".join(parts[:2])

    def submit(self, endpoint: str, input: dict[str, Any], callback_url: str | None) -> Submission:
        params = {"fal_webhook": callback_url} if callback_url else None
        response = send(
            self._client,
            "POST",
            f"{self._queue_url}/{endpoint.strip('/')}",
            provider=self.name,
            json=input,
            params=params,
            headers=self._headers(),
        )
        data = json_body(response, self.name)
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise ProviderRejected("fal did not return a request_id", provider=self.name, body=str(data)[:300])
        return Submission(request_id=request_id, metadata={k: data[k] for k in _SUBMIT_METADATA if k in data})

    def poll(self, request_id: str, endpoint: str) -> ProviderOutcome:
        base = f"{self._queue_url}/{self.app_id(endpoint)}/requests/{request_id}"
        status = json_body(
            send(self._client, "GET", f"{base}/status", provider=self.name, headers=self._headers()),
            self.name,
        )
        state = status.get("status")
        if state in ("IN_QUEUE", "IN_PROGRESS"):
            return Pending(queue_position=status.get("queue_position"))
        if state != "COMPLETED":
            logger.warning("fal_poll_unknown_status request_id=%s status=%s", request_id, state)
            return Pending()
        if status.get("error"):
            return Failed(code="FAL_ERROR", message=str(status["error"]))

        try:
            response = send(self._client, "GET", base, provider=self.name, headers=self._headers())
        except ProviderRejected as e:
            # Completed with a client-side error (e.g. model input validation)
            return Failed(code="FAL_ERROR", message=e.message)
        payload = json_body(response, self.name)
        return Completed(output=find_output(payload), metadata=_payload_metadata(payload))

    def cancel(self, request_id: str, endpoint: str) -> None:
        send(
            self._client,
            "PUT",
            f"{self._queue_url}/{self.app_id(endpoint)}/requests/{request_id}/cancel",
            provider=self.name,
            headers=self._headers(),
        )

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidWebhook("Failed to parse webhook body") from e
        if not isinstance(data, dict):
            raise InvalidWebhook("Webhook body is not an object")
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            raise InvalidWebhook("Webhook body has no request_id")

        payload = data.get("payload")
        if data.get("status") == "ERROR":
            message = data.get("error") or "Unknown error"
            meta = {"payload": payload} if payload else {}
            return WebhookEvent(request_id, Failed(code="FAL_ERROR", message=str(message), metadata=meta))
        if not isinstance(payload, dict):
            return WebhookEvent(request_id, Completed(output=None))
        return WebhookEvent(
            request_id, Completed(output=find_output(payload), metadata=_payload_metadata(payload))
        )
