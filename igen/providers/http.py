"""HTTP plumbing shared by provider adapters: one call, mapped errors, no retries."""

from __future__ import annotations

import json
from typing import Any

import httpx

from igen.errors import ProviderAuthError, ProviderRejected, ProviderUnreachable

_MAX_BODY_CHARS = 2000


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("detail", "message", "error", "errors"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
            if value:
                return json.dumps(value)[:300]
    return f"HTTP {response.status_code}"


def check_status(response: httpx.Response, provider: str) -> None:
    """Map HTTP error statuses onto the provider error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    body = response.text[:_MAX_BODY_CHARS]
    message = f"{provider} API error {status}: {_error_message(response)}"
    if status in (401, 403):
        raise ProviderAuthError(message, provider=provider, status_code=status, body=body)
    if status == 429 or status >= 500:
        raise ProviderUnreachable(message, provider=provider, status_code=status, body=body)
    raise ProviderRejected(message, provider=provider, status_code=status, body=body)


def send(client: httpx.Client, method: str, url: str, *, provider: str, **kwargs: Any) -> httpx.Response:
    """Perform exactly one request. Transport failures become ProviderUnreachable."""
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderUnreachable(f"{provider} request timed out", provider=provider) from e
    except httpx.HTTPError as e:
        raise ProviderUnreachable(f"{provider} unreachable: {e.__class__.__name__}", provider=provider) from e
    check_status(response, provider)
    return response


def json_body(response: httpx.Response, provider: str) -> dict[str, Any]:
    """Parse a JSON object body; anything else counts as a rejected request."""
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderRejected(
            f"{provider} returned a non-JSON body", provider=provider, body=response.text[:_MAX_BODY_CHARS]
        ) from e
    if not isinstance(data, dict):
        raise ProviderRejected(f"{provider} returned an unexpected body", provider=provider, body=str(data)[:300])
    return data
