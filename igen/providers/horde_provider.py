"""AI Horde adapter: polling-only async generation.

The Horde has no result callbacks, so ``submit`` ignores the callback URL and
the poll sweep drives completion. Status responses carry ``done``/``faulted``
flags and a queue position while waiting.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from igen.errors import CapabilityNotSupported, ProviderRejected
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
from igen.providers.outputs import decode_base64

logger = logging.getLogger(__name__)

ENDPOINT_PREFIX = "horde/"
_PARAM_KEYS = ("width", "height", "steps", "cfg_scale", "sampler_name", "seed", "n")
_CLIENT_AGENT = "igen:0.1.0:anonymous"


class HordeProvider:
    """AI Horde async API (submit, poll status, cancel)."""

    name = "horde"
    capabilities = ProviderCapabilities(webhooks=False, poll=True, cancel=True)

    def __init__(
        self,
        api_key: str = "0000000000",
        api_url: str = "https://aihorde.net/api/v2",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {"apikey": self._api_key, "Client-Agent": _CLIENT_AGENT}

    @staticmethod
    def model_for(endpoint: str) -> str | None:
        if endpoint.startswith(ENDPOINT_PREFIX):
            return endpoint[len(ENDPOINT_PREFIX):] or None
        return None

    def build_payload(self, endpoint: str, input: dict[str, Any]) -> dict[str, Any]:
        """Move top-level sampler fields into ``params`` and pin the model."""
        payload = {k: v for k, v in input.items() if k not in _PARAM_KEYS}
        params = dict(input.get("params") or {})
        for key in _PARAM_KEYS:
            if key in input:
                params.setdefault(key, input[key])
        if params:
            payload["params"] = params
        model = self.model_for(endpoint)
        if model and "models" not in payload:
            payload["models"] = [model]
        return payload

    def submit(self, endpoint: str, input: dict[str, Any], callback_url: str | None) -> Submission:
        response = send(
            self._client,
            "POST",
            f"{self._api_url}/generate/async",
            provider=self.name,
            json=self.build_payload(endpoint, input),
            headers=self._headers(),
        )
        data = json_body(response, self.name)
        job_id = data.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise ProviderRejected(
                f"AI Horde did not return a job id: {data.get('message', '')}".strip(),
                provider=self.name,
                body=str(data)[:300],
            )
        metadata = {"kudos": data["kudos"]} if "kudos" in data else {}
        return Submission(request_id=job_id, metadata=metadata)

    def poll(self, request_id: str, endpoint: str) -> ProviderOutcome:
        try:
            response = send(
                self._client,
                "GET",
                f"{self._api_url}/generate/status/{request_id}",
                provider=self.name,
                headers=self._headers(),
            )
        except ProviderRejected as e:
            if e.status_code == 404:
                # Horde forgets expired or cancelled jobs
                return Failed(code="HORDE_NOT_FOUND", message=e.message)
            raise
        data = json_body(response, self.name)

        if data.get("faulted"):
            logger.info("horde_job_faulted request_id=%s", request_id)
            return Failed(code="HORDE_FAULTED", message=data.get("message") or "Generation faulted")
        if not data.get("done"):
            return Pending(queue_position=data.get("queue_position"))

        generations = data.get("generations") or []
        first = generations[0] if generations and isinstance(generations[0], dict) else None
        if first is None:
            return Completed(output=None)
        metadata = {k: first[k] for k in ("seed", "model", "worker_name", "censored") if k in first}
        return Completed(output=self._source(first.get("img")), metadata=metadata)

    @staticmethod
    def _source(img: Any) -> ArtifactSource | None:
        if not isinstance(img, str) or not img:
            return None
        if img.startswith(("http://", "https://", "data:")):
            return ArtifactSource(url=img, content_type="image/webp")
        # r2=false responses inline the image as base64 webp
        data = decode_base64(img)
        if data is None:
            return None
        return ArtifactSource(data=data, content_type="image/webp")

    def cancel(self, request_id: str, endpoint: str) -> None:
        send(
            self._client,
            "DELETE",
            f"{self._api_url}/generate/status/{request_id}",
            provider=self.name,
            headers=self._headers(),
        )

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        raise CapabilityNotSupported("AI Horde does not deliver webhooks", provider=self.name)
